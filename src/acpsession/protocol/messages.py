"""Typed JSON-RPC 2.0 envelopes and line classification."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union

from acpsession.errors import ACPError, InvalidJson, UnhandledMessageShape

JSONRPC_VERSION = "2.0"
METHOD_NOT_FOUND = -32601
PREVIEW_CHARS = 240


@dataclass(frozen=True)
class RequestMessage:
    """Server-initiated request (has both ``method`` and ``id``)."""

    id: Any
    method: str
    params: Any = None
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)


@dataclass(frozen=True)
class ResponseMessage:
    id: Any
    result: Any = None
    error: Optional[Dict[str, Any]] = None
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def is_error(self) -> bool:
        return self.error is not None

    @property
    def correlation_id(self) -> Optional[int]:
        """Integer id used for correlation, or None when it cannot match any call."""

        value = self.id
        if isinstance(value, bool):
            return None
        if isinstance(value, int):
            return value
        if isinstance(value, str):
            text = value.strip()
            if text.isdigit():
                return int(text)
        return None

    @property
    def error_message(self) -> str:
        if not self.error:
            return ""
        return str(self.error.get("message") or "agent returned an error")


@dataclass(frozen=True)
class NotificationMessage:
    method: str
    params: Any = None
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)


@dataclass(frozen=True)
class ParseFailure:
    """A line that could not be turned into a message."""

    error: ACPError
    line: str

    @property
    def kind(self) -> str:
        return self.error.kind


Message = Union[RequestMessage, ResponseMessage, NotificationMessage]
ClassifyResult = Union[RequestMessage, ResponseMessage, NotificationMessage, ParseFailure]


def classify(line: str) -> ClassifyResult:
    """Parse one framed line and tag it as Request, Response or Notification."""

    preview = line[:PREVIEW_CHARS]
    try:
        value = json.loads(line)
    except (json.JSONDecodeError, TypeError, ValueError) as exc:
        return ParseFailure(
            error=InvalidJson("invalid json from agent: {0}".format(exc), preview=preview),
            line=line,
        )
    except RecursionError:
        return ParseFailure(
            error=InvalidJson("invalid json from agent: nesting too deep", preview=preview),
            line=line,
        )

    if not isinstance(value, dict):
        return ParseFailure(
            error=UnhandledMessageShape(
                "unhandled message shape: expected object, got {0}".format(type(value).__name__),
                preview=preview,
            ),
            line=line,
        )

    has_id = value.get("id") is not None
    error = value.get("error")
    if has_id and ("result" in value or "error" in value):
        if error is not None and not isinstance(error, dict):
            error = {"code": None, "message": str(error)}
        return ResponseMessage(
            id=value.get("id"),
            result=value.get("result") if error is None else None,
            error=error,
            raw=value,
        )

    method = value.get("method")
    if isinstance(method, str) and method.strip():
        if not has_id:
            return NotificationMessage(method=method, params=value.get("params"), raw=value)
        return RequestMessage(id=value.get("id"), method=method, params=value.get("params"), raw=value)

    return ParseFailure(
        error=UnhandledMessageShape(
            "unhandled message shape: no method and no result/error",
            preview=preview,
        ),
        line=line,
    )


def build_request(request_id: int, method: str, params: Any = None) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "jsonrpc": JSONRPC_VERSION,
        "id": request_id,
        "method": method,
    }
    if params is not None:
        payload["params"] = params
    return payload


def build_notification(method: str, params: Any = None) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "method": method}
    if params is not None:
        payload["params"] = params
    return payload


def build_error_response(
    request_id: Any,
    code: int,
    message: str,
    data: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    error: Dict[str, Any] = {"code": int(code), "message": message}
    if data:
        error["data"] = data
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "error": error}


def encode_line(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, ensure_ascii=True, separators=(",", ":")) + "\n"
