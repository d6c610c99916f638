"""
Inbound trigger payload parsing.

Triggers come from arbitrary third-party systems, so the payload is
parsed leniently: a body that cannot be parsed for its declared content
type is replaced by an error-shaped payload instead of failing the request.
"""
import json
from typing import Any, Mapping
from urllib.parse import parse_qsl

from fastapi import Request

from hookrelay.exceptions import PayloadParseError
from hookrelay.logging_config import get_logger

log = get_logger(component="trigger_parser")

BODY_METHODS = {"POST", "PUT", "PATCH"}
PARSE_ERROR_PAYLOAD = {"error": "Failed to parse request payload"}


def reject_constant(name: str):
    """NaN and Infinity are not JSON; json.loads accepts them unless told otherwise."""
    raise ValueError(f"Invalid JSON constant: {name}")


def decode_payload(
    method: str,
    content_type: str,
    body: bytes,
    query_params: Mapping[str, str],
) -> Any:
    """
    Decode a trigger payload.

    GET uses the query string (last value wins on repeated keys). Body
    methods use JSON, urlencoded form fields, or {"body": text}. Other
    methods carry no payload.

    Raises:
        PayloadParseError: body does not match its content type
    """
    method = method.upper()
    if method == "GET":
        return dict(query_params)
    if method not in BODY_METHODS:
        return {}

    content_type = (content_type or "").lower()
    try:
        if "application/json" in content_type:
            return json.loads(body, parse_constant=reject_constant)
        if "application/x-www-form-urlencoded" in content_type:
            return dict(parse_qsl(body.decode("utf-8"), keep_blank_values=True))
    except (ValueError, UnicodeDecodeError) as e:
        raise PayloadParseError(str(e)) from e

    return {"body": body.decode("utf-8", errors="replace")}


async def parse_trigger_payload(request: Request) -> Any:
    """Read and decode the request payload, never raising on bad input."""
    try:
        body = await request.body() if request.method.upper() in BODY_METHODS else b""
        return decode_payload(
            request.method,
            request.headers.get("content-type", ""),
            body,
            request.query_params,
        )
    except PayloadParseError as e:
        log.warning(
            "trigger_payload_unparseable",
            method=request.method,
            content_type=request.headers.get("content-type"),
            error=str(e),
        )
        return dict(PARSE_ERROR_PAYLOAD)
