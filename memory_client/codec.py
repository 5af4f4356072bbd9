"""JSON-RPC transport codec.

Encodes request envelopes and decodes response bodies, which the server
may send either as a single JSON object or framed as Server-Sent Events:

    event: message
    data: {"jsonrpc": "2.0", "id": 1, "result": {...}}

Pure data transformation: no retries, no sessions, no I/O.
"""

import json
import logging
from typing import Any, Dict, Optional

from pydantic import ValidationError

from .exceptions import ParseError, ProtocolError
from .models import JsonRpcErrorResponse, JsonRpcRequest, JsonRpcResponse, JsonRpcResult

logger = logging.getLogger("memory_client.codec")

_DATA_PREFIX = "data:"


def encode_request(method: str, params: Optional[Dict[str, Any]], request_id: int) -> bytes:
    """Serialize a request envelope to UTF-8 JSON bytes."""
    envelope = JsonRpcRequest(id=request_id, method=method, params=params or {})
    return envelope.model_dump_json().encode("utf-8")


def encode_notification(method: str, params: Optional[Dict[str, Any]] = None) -> bytes:
    """Serialize a notification (an envelope without ``id``)."""
    envelope = JsonRpcRequest(method=method, params=params or {})
    return envelope.model_dump_json(exclude={"id"}).encode("utf-8")


def _to_envelope(payload: Any, body_length: int) -> JsonRpcResponse:
    """Validate a parsed JSON value into one of the two response variants."""
    if not isinstance(payload, dict):
        raise ParseError(
            f"expected a JSON object, got {type(payload).__name__}", body_length
        )

    has_result = "result" in payload
    has_error = "error" in payload
    if has_result and has_error:
        raise ProtocolError("response carries both result and error")
    if not has_result and not has_error:
        raise ProtocolError("response carries neither result nor error")

    try:
        if has_error:
            return JsonRpcErrorResponse.model_validate(payload)
        return JsonRpcResult.model_validate(payload)
    except ValidationError as e:
        raise ParseError(f"malformed envelope ({e.error_count()} errors)", body_length) from e


def _loads(text: str, body_length: int) -> Any:
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise ParseError(f"invalid JSON at position {e.pos}", body_length) from e


def decode_response(body: str) -> JsonRpcResponse:
    """Decode a raw response body into a response envelope.

    A body that is itself a JSON object is parsed directly. Otherwise the
    body is scanned as an event stream and the first ``data:`` line whose
    payload carries ``result`` or ``error`` wins.

    Raises:
        ParseError: If JSON or envelope parsing fails.
        ProtocolError: If an event stream holds no result or error.
    """
    body_length = len(body)
    stripped = body.strip()

    if stripped.startswith("{"):
        return _to_envelope(_loads(stripped, body_length), body_length)

    for line in stripped.splitlines():
        line = line.strip()
        if not line.startswith(_DATA_PREFIX):
            continue
        payload = _loads(line[len(_DATA_PREFIX):].strip(), body_length)
        if isinstance(payload, dict) and ("result" in payload or "error" in payload):
            return _to_envelope(payload, body_length)
        logger.debug("Skipping event without result or error")

    logger.warning("Event stream held no result", extra={"body_length": body_length})
    raise ProtocolError("no valid result in event stream")
