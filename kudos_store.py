"""Kudos counters on top of a plain key-value store.

A counter is one entry per key whose value is the decimal text of a
non-negative integer. Stores that support a conditional put get exact
increments; plain last-writer-wins stores can lose concurrent increments.
"""
import abc
import asyncio
import logging

from botocore.exceptions import (
    ClientError,
    ConnectionError as BotoConnectionError,
    ConnectTimeoutError,
    ReadTimeoutError,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 5

TRANSIENT_ERROR_CODES = {
    "ProvisionedThroughputExceededException",
    "RequestLimitExceeded",
    "ThrottlingException",
    "InternalServerError",
    "ServiceUnavailable",
}


class StoreError(Exception):
    """Base class for counter store failures."""


class BackendUnavailable(StoreError):
    """The store could not be reached. Safe to retry with backoff."""


class ReadFailed(StoreError):
    def __init__(self, key, cause=None):
        super().__init__(f"reading {key!r} failed: {cause}")
        self.key = key
        self.retryable = isinstance(cause, BackendUnavailable)


class WriteFailed(StoreError):
    """The write failed after a successful read.

    Retrying must start again from the read, never replay the same value.
    """

    def __init__(self, key, cause=None):
        super().__init__(f"writing {key!r} failed: {cause}")
        self.key = key
        self.retryable = isinstance(cause, BackendUnavailable)


class Contention(StoreError):
    def __init__(self, key, attempts):
        super().__init__(f"gave up on {key!r} after {attempts} conflicting writes")
        self.key = key
        self.attempts = attempts
        self.retryable = True


class KeyMissing(ValueError):
    pass


def parse_count(raw, key=None):
    """Turn a stored value into a count; absent or malformed values count as 0."""
    if raw is None:
        return 0
    if not isinstance(raw, str):
        # Written by something else, e.g. a DynamoDB Number.
        raw = str(raw)
    if raw.isascii() and raw.isdigit():
        return int(raw)
    logger.warning("Malformed kudos value for %r: %r, treating as 0", key, raw)
    return 0


class KeyValueStore(abc.ABC):
    supports_conditional_put = False

    @abc.abstractmethod
    async def get(self, key):
        """Return the stored value for key, or None when absent.

        The value is returned as stored so it can be passed back to
        ``put_if`` as the expected version.
        """

    @abc.abstractmethod
    async def put(self, key, value):
        """Unconditionally store value under key."""

    async def put_if(self, key, value, expected):
        """Store value only if the current value equals expected.

        ``expected=None`` means the key must be absent. Returns False on a
        version mismatch.
        """
        raise NotImplementedError(f"{type(self).__name__} has no conditional put")


class MemoryStore(KeyValueStore):
    """Dict-backed store for local runs and tests."""

    def __init__(self, conditional=True, data=None):
        self.supports_conditional_put = conditional
        self.data = dict(data or {})

    async def get(self, key):
        value = self.data.get(key)
        # A network round trip would suspend here; let other requests run.
        await asyncio.sleep(0)
        return value

    async def put(self, key, value):
        self.data[key] = value

    async def put_if(self, key, value, expected):
        if not self.supports_conditional_put:
            return await super().put_if(key, value, expected)
        if self.data.get(key) != expected:
            return False
        self.data[key] = value
        return True


class DynamoDBStore(KeyValueStore):
    """Counters kept in a DynamoDB table keyed on ``path``."""

    def __init__(self, table, conditional=True, key_attr="path", value_attr="kudos"):
        self.table = table
        self.supports_conditional_put = conditional
        self.key_attr = key_attr
        self.value_attr = value_attr

    async def get(self, key):
        response = await self._call(
            self.table.get_item, Key={self.key_attr: key}, ConsistentRead=True
        )
        item = response.get("Item")
        if not item or self.value_attr not in item:
            return None
        return item[self.value_attr]

    async def put(self, key, value):
        await self._call(
            self.table.put_item, Item={self.key_attr: key, self.value_attr: value}
        )

    async def put_if(self, key, value, expected):
        if not self.supports_conditional_put:
            return await super().put_if(key, value, expected)
        kwargs = {
            "Item": {self.key_attr: key, self.value_attr: value},
            "ExpressionAttributeNames": {"#v": self.value_attr},
        }
        if expected is None:
            kwargs["ConditionExpression"] = "attribute_not_exists(#v)"
        else:
            kwargs["ConditionExpression"] = "#v = :expected"
            kwargs["ExpressionAttributeValues"] = {":expected": expected}
        try:
            await self._call(self.table.put_item, **kwargs)
        except StoreError as e:
            if _error_code(e.__cause__) == "ConditionalCheckFailedException":
                return False
            raise
        return True

    async def _call(self, method, **kwargs):
        try:
            return await asyncio.to_thread(method, **kwargs)
        except ClientError as e:
            if _error_code(e) in TRANSIENT_ERROR_CODES:
                raise BackendUnavailable(str(e)) from e
            raise StoreError(str(e)) from e
        except (BotoConnectionError, ConnectTimeoutError, ReadTimeoutError) as e:
            raise BackendUnavailable(str(e)) from e


def _error_code(exc):
    if isinstance(exc, ClientError):
        return exc.response.get("Error", {}).get("Code")
    return None


class KudosCounter:
    """Read and increment kudos counters held in ``store``."""

    def __init__(self, store, max_attempts=DEFAULT_MAX_ATTEMPTS):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.store = store
        self.max_attempts = max_attempts

    async def get_count(self, key):
        _check_key(key)
        raw = await self._read(key)
        return parse_count(raw, key)

    async def increment_count(self, key):
        """Add one to the counter for key and return the new count.

        Without conditional put this is a plain read-modify-write, so
        overlapping increments on the same key may be lost.
        """
        _check_key(key)
        if not self.store.supports_conditional_put:
            new_count = parse_count(await self._read(key), key) + 1
            await self._write(self.store.put, key, str(new_count))
            return new_count

        for attempt in range(1, self.max_attempts + 1):
            token = await self._read(key)
            new_count = parse_count(token, key) + 1
            if await self._write(self.store.put_if, key, str(new_count), token):
                return new_count
            logger.debug("Conditional put on %r lost a race (attempt %d)", key, attempt)
        raise Contention(key, self.max_attempts)

    async def _read(self, key):
        try:
            return await self.store.get(key)
        except StoreError as e:
            raise ReadFailed(key, e) from e

    async def _write(self, put, key, *args):
        try:
            return await put(key, *args)
        except StoreError as e:
            raise WriteFailed(key, e) from e


def _check_key(key):
    if not key:
        raise KeyMissing("a non-empty key is required")
