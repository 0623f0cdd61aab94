"""Error taxonomy shared by the framer, correlator, supervisor and session manager."""

from __future__ import annotations

from typing import Any, Dict


class ACPError(RuntimeError):
    """Base error for ACP session failures.

    ``kind`` is a stable identifier surfaced to callers in operation results;
    ``details`` carries structured context (provider id, method, request id...).
    """

    kind = "acp_error"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self._details: Dict[str, Any] = {}
        for key, value in details.items():
            if value is None:
                continue
            self._details[str(key)] = value

    @property
    def details(self) -> Dict[str, Any]:
        return dict(self._details)


def error_summary(exc: BaseException) -> str:
    detail = exc.details if isinstance(exc, ACPError) else {}
    ordered_keys = (
        "session_id",
        "provider_id",
        "method",
        "request_id",
        "code",
    )
    segments = [str(exc)]
    for key in ordered_keys:
        value = detail.get(key)
        if value in ("", None):
            continue
        segments.append("{0}={1}".format(key, value))
    return " | ".join(segments)


def error_kind(exc: BaseException) -> str:
    if isinstance(exc, ACPError):
        return exc.kind
    return "internal_error"


class SpawnError(ACPError):
    """Raised when a provider id is not registered (caller mistake)."""

    kind = "spawn_error"


class ProcessSpawnFailed(ACPError):
    """Raised when the OS refuses to launch the provider binary."""

    kind = "process_spawn_failed"


class HandshakeTimeout(ACPError):
    """Raised when ``initialize`` gets no response in time."""

    kind = "handshake_timeout"


class UnsupportedProtocolVersion(ACPError):
    """Raised when the agent negotiates a protocol version below the minimum."""

    kind = "unsupported_protocol_version"


class InvalidJson(ACPError):
    """One stdout line was not valid JSON. Never fatal to the session."""

    kind = "invalid_json"


class UnhandledMessageShape(ACPError):
    """A well-formed JSON value that this client does not handle."""

    kind = "unhandled_message_shape"


class RequestTimeout(ACPError):
    """A single call expired before its response arrived."""

    kind = "request_timeout"


class RemoteError(ACPError):
    """The agent answered a call with a JSON-RPC ``error`` object."""

    kind = "remote_error"

    def __init__(self, message: str, code: Any = None, data: Any = None, **details: Any) -> None:
        super().__init__(message, code=code, **details)
        self.code = code
        self.data = data


class SessionNotFound(ACPError):
    kind = "session_not_found"


class SessionNotReady(ACPError):
    kind = "session_not_ready"


class SessionDisposed(ACPError):
    """Pending calls are rejected with this when their session is torn down."""

    kind = "session_disposed"


class WriteFailed(ACPError):
    """Writing to the agent's stdin failed (broken pipe, closed stream)."""

    kind = "write_failed"


class ProcessExited(ACPError):
    """The agent process terminated without being disposed."""

    kind = "process_exited"


class FeatureDisabled(ACPError):
    kind = "feature_disabled"
