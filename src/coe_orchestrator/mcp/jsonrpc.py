"""JSON-RPC 2.0 envelope parsing and response construction.

A request without an ``id`` member is a notification and gets no response.
A request whose ``id`` is explicitly null is not a notification: it gets a
response carrying ``"id": null``.
"""

import json
from dataclasses import dataclass, field
from typing import Any

from mcp.types import INTERNAL_ERROR, INVALID_PARAMS, INVALID_REQUEST, METHOD_NOT_FOUND, PARSE_ERROR
from mcp.types import ErrorData

JSONRPC_VERSION = "2.0"

# Application-defined codes sit in the server error range.
ANSWER_TIMEOUT = -32001

__all__ = [
    "ANSWER_TIMEOUT",
    "INTERNAL_ERROR",
    "INVALID_PARAMS",
    "INVALID_REQUEST",
    "METHOD_NOT_FOUND",
    "PARSE_ERROR",
    "ParseResult",
    "Request",
    "error_response",
    "parse_message",
    "success_response",
]


@dataclass
class Request:
    method: str
    params: Any = None
    id: str | int | None = None
    has_id: bool = False

    @property
    def is_notification(self) -> bool:
        return not self.has_id


@dataclass
class ParseResult:
    requests: list[Request] = field(default_factory=list)
    errors: list[dict] = field(default_factory=list)


def error_response(request_id, code: int, message: str, data: Any = None) -> dict:
    error = ErrorData(code=code, message=message, data=data)
    return {
        "jsonrpc": JSONRPC_VERSION,
        "id": request_id,
        "error": error.model_dump(exclude_none=True),
    }


def success_response(request_id, result: Any) -> dict:
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "result": result}


def _valid_id(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    return value is None or isinstance(value, (str, int))


def _parse_candidate(candidate: Any) -> Request | dict:
    """Return a Request, or an error response for an invalid envelope."""
    if not isinstance(candidate, dict):
        return error_response(None, INVALID_REQUEST, "Invalid Request: expected an object")

    has_id = "id" in candidate
    request_id = candidate.get("id")
    if has_id and not _valid_id(request_id):
        return error_response(None, INVALID_REQUEST, "Invalid Request: id must be a string, number or null")

    if candidate.get("jsonrpc") != JSONRPC_VERSION:
        return error_response(request_id, INVALID_REQUEST, 'Invalid Request: jsonrpc must be "2.0"')

    method = candidate.get("method")
    if not isinstance(method, str) or not method:
        return error_response(request_id, INVALID_REQUEST, "Invalid Request: method must be a non-empty string")

    return Request(method=method, params=candidate.get("params"), id=request_id, has_id=has_id)


def parse_message(text: str | bytes) -> ParseResult:
    """Parse one inbound line into valid requests and per-candidate errors."""
    try:
        payload = json.loads(text)
    except (ValueError, RecursionError) as e:
        # JSONDecodeError and UnicodeDecodeError are ValueErrors; deep nesting is a RecursionError
        return ParseResult(errors=[error_response(None, PARSE_ERROR, f"Parse error: {e}")])

    if isinstance(payload, list):
        if not payload:
            return ParseResult(errors=[error_response(None, INVALID_REQUEST, "Invalid Request: empty batch")])
        candidates = payload
    else:
        candidates = [payload]

    result = ParseResult()
    for candidate in candidates:
        parsed = _parse_candidate(candidate)
        if isinstance(parsed, Request):
            result.requests.append(parsed)
        else:
            result.errors.append(parsed)
    return result
