import asyncio
import base64
import binascii
import json
import logging
import os
from urllib.parse import parse_qs

import boto3

from kudos_store import (
    DEFAULT_MAX_ATTEMPTS,
    DynamoDBStore,
    KeyMissing,
    KudosCounter,
    StoreError,
)

TABLE_NAME = os.environ.get("TABLE_NAME", "kudos")
CONDITIONAL_WRITES = os.environ.get("KUDOS_CONDITIONAL_WRITES", "true").lower() in (
    "1",
    "true",
    "yes",
)
MAX_ATTEMPTS = int(os.environ.get("KUDOS_MAX_ATTEMPTS", DEFAULT_MAX_ATTEMPTS))
POST_URL = os.environ.get("KUDOS_POST_URL", "https://kudos.knopoff.dev/kudo")
ALLOWED_ORIGIN = os.environ.get("ALLOWED_ORIGIN", "*")

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

logger = logging.getLogger(__name__)
for name in (__name__, "kudos_store"):
    logging.getLogger(name).setLevel(LOG_LEVEL)

dynamodb = boto3.resource("dynamodb")
table = dynamodb.Table(TABLE_NAME)
kudos = KudosCounter(
    DynamoDBStore(table, conditional=CONDITIONAL_WRITES),
    max_attempts=MAX_ATTEMPTS,
)


def lambda_handler(event, context):
    method, route = _request_line(event)
    logger.info("Handling %s %s", method, route)

    if method == "OPTIONS":
        return _response(200, "ok")

    try:
        if method in ("GET", "HEAD") and route == "/":
            path = (event.get("queryStringParameters") or {}).get("path")
            count = asyncio.run(kudos.get_count(path))
            return _response(
                200,
                f"<a id='kudos' hx-post='{POST_URL}' hx-swap='outerHTML'>"
                f"\N{WAVING HAND SIGN} {count}</a>",
            )
        if method == "POST" and route == "/kudo":
            path = _form(event).get("path")
            new_count = asyncio.run(kudos.increment_count(path))
            return _response(
                200, f"<div id='kudos'>\N{WAVING HAND SIGN} {new_count}</div>"
            )
    except (json.JSONDecodeError, binascii.Error, UnicodeDecodeError):
        return _response(400, "Malformed body")
    except KeyMissing:
        return _response(400, "Need a path")
    except StoreError as e:
        logger.error("Kudos store failure: %s", e, exc_info=True)
        if getattr(e, "retryable", False):
            return _response(503, "Kudos are temporarily unavailable")
        return _response(500, "Kudos store error")

    return _response(404, "Not found")


def _request_line(event):
    # REST API (v1) and HTTP API (v2) events name these differently.
    http = event.get("requestContext", {}).get("http", {})
    method = event.get("httpMethod") or http.get("method", "GET")
    route = event.get("path") or event.get("rawPath") or http.get("path") or "/"
    return method.upper(), route


def _form(event):
    body = event.get("body") or ""
    if event.get("isBase64Encoded"):
        body = base64.b64decode(body).decode("utf-8")
    if isinstance(body, dict):
        return body

    headers = {k.lower(): v for k, v in (event.get("headers") or {}).items()}
    if headers.get("content-type", "").startswith("application/json"):
        data = json.loads(body or "{}")
        return data if isinstance(data, dict) else {}
    return {name: values[0] for name, values in parse_qs(body).items()}


def _response(status, body):
    return {
        "statusCode": status,
        "headers": {
            "Access-Control-Allow-Origin": ALLOWED_ORIGIN,
            "Access-Control-Allow-Methods": "GET,HEAD,POST,OPTIONS,PUT,DELETE",
            "Access-Control-Allow-Headers": "*",
            "Access-Control-Expose-Headers": "*",
            "Content-Type": "text/html",
        },
        "body": body,
    }
