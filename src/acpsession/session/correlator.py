"""Request/response correlation with per-call timeouts."""

from __future__ import annotations

import itertools
import threading
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Tuple

from acpsession.errors import ACPError, RemoteError, RequestTimeout, WriteFailed
from acpsession.kernel.types import now_ms
from acpsession.protocol.messages import (
    ResponseMessage,
    build_notification,
    build_request,
    encode_line,
)

CallKey = Tuple[str, int]
LineWriter = Callable[[str, str], None]
CorrelatorEventSink = Callable[[str, str, Dict[str, Any]], None]


@dataclass
class PendingCall:
    key: CallKey
    method: str
    future: "Future[Any]"
    timeout_ms: int
    started_ms: int = field(default_factory=now_ms)
    timer: Optional[threading.Timer] = None


class RpcCorrelator:
    """Match agent responses to outstanding calls.

    Ids come from one process-wide counter so they never repeat while the
    process lives, even across sessions. Each pending call is removed from the
    map exactly once: by its response, by its timer, or by ``reject_session``.
    Whoever pops it settles the future; everyone else is a no-op.
    """

    def __init__(
        self,
        writer: LineWriter,
        event_sink: Optional[CorrelatorEventSink] = None,
    ) -> None:
        self._writer = writer
        self._event_sink = event_sink
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        self._pending: Dict[CallKey, PendingCall] = {}

    def call(
        self,
        session_id: str,
        method: str,
        params: Any,
        timeout_ms: int,
    ) -> "Future[Any]":
        future: "Future[Any]" = Future()
        future.set_running_or_notify_cancel()
        timeout_ms = max(1, int(timeout_ms))

        with self._lock:
            request_id = next(self._ids)
            key = (session_id, request_id)
            pending = PendingCall(key=key, method=method, future=future, timeout_ms=timeout_ms)
            timer = threading.Timer(timeout_ms / 1000.0, self._expire, args=(key,))
            timer.daemon = True
            pending.timer = timer
            self._pending[key] = pending
            timer.start()

        line = encode_line(build_request(request_id, method, params))
        self._emit(
            session_id,
            "request",
            {"request_id": request_id, "method": method, "params": params},
        )
        try:
            self._writer(session_id, line)
        except ACPError as exc:
            self._settle(key, error=exc)
        except Exception as exc:
            self._settle(
                key,
                error=WriteFailed(
                    "failed to write {0} request: {1}".format(method, exc),
                    method=method,
                    request_id=request_id,
                ),
            )
        return future

    def notify(self, session_id: str, method: str, params: Any) -> None:
        line = encode_line(build_notification(method, params))
        self._emit(session_id, "notify", {"method": method, "params": params})
        try:
            self._writer(session_id, line)
        except ACPError:
            raise
        except Exception as exc:
            raise WriteFailed(
                "failed to write {0} notification: {1}".format(method, exc),
                method=method,
            ) from exc

    def handle_response(self, session_id: str, message: ResponseMessage) -> bool:
        request_id = message.correlation_id
        if request_id is None:
            self._emit(session_id, "orphaned", {"request_id": message.id, "reason": "uncorrelatable_id"})
            return False

        key = (session_id, request_id)
        if message.is_error:
            error = message.error or {}
            settled = self._settle(
                key,
                error=RemoteError(
                    message.error_message,
                    code=error.get("code"),
                    data=error.get("data"),
                    request_id=request_id,
                ),
            )
        else:
            settled = self._settle(key, result=message.result)

        if not settled:
            self._emit(session_id, "orphaned", {"request_id": request_id, "reason": "no_pending_call"})
        return settled

    def reject_session(self, session_id: str, error: BaseException) -> int:
        with self._lock:
            keys = [key for key in self._pending if key[0] == session_id]
        count = 0
        for key in keys:
            if self._settle(key, error=error):
                count += 1
        return count

    def pending_count(self, session_id: Optional[str] = None) -> int:
        with self._lock:
            if session_id is None:
                return len(self._pending)
            return sum(1 for key in self._pending if key[0] == session_id)

    def _expire(self, key: CallKey) -> None:
        with self._lock:
            pending = self._pending.pop(key, None)
        if pending is None:
            return
        self._emit(
            key[0],
            "timeout",
            {"request_id": key[1], "method": pending.method, "timeout_ms": pending.timeout_ms},
        )
        self._complete(
            pending,
            error=RequestTimeout(
                "request {0} timed out after {1}ms".format(pending.method, pending.timeout_ms),
                session_id=key[0],
                method=pending.method,
                request_id=key[1],
            ),
        )

    def _settle(
        self,
        key: CallKey,
        result: Any = None,
        error: Optional[BaseException] = None,
    ) -> bool:
        with self._lock:
            pending = self._pending.pop(key, None)
        if pending is None:
            return False
        self._complete(pending, result=result, error=error)
        return True

    @staticmethod
    def _complete(pending: PendingCall, result: Any = None, error: Optional[BaseException] = None) -> None:
        if pending.timer is not None:
            pending.timer.cancel()
        if pending.future.done():
            return
        if error is not None:
            pending.future.set_exception(error)
        else:
            pending.future.set_result(result)

    def _emit(self, session_id: str, event_type: str, payload: Dict[str, Any]) -> None:
        if self._event_sink is None:
            return
        try:
            self._event_sink(session_id, event_type, payload)
        except Exception:
            # Observers never break the request path.
            pass

