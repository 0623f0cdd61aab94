"""ACP session lifecycle: spawn, handshake, prompt, cancel, dispose."""

from __future__ import annotations

import json
import re
import threading
from concurrent.futures import Future
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from pathlib import Path
from typing import Any, Dict, List, Optional

from acpsession.config import Settings
from acpsession.errors import (
    ACPError,
    FeatureDisabled,
    HandshakeTimeout,
    ProcessExited,
    RequestTimeout,
    SessionDisposed,
    SessionNotFound,
    SessionNotReady,
    SpawnError,
    UnhandledMessageShape,
    UnsupportedProtocolVersion,
    WriteFailed,
    error_kind,
    error_summary,
)
from acpsession.kernel.debug_log import DebugLogWriter
from acpsession.kernel.types import now_ms, short_token
from acpsession.protocol.framing import LineFramer
from acpsession.protocol.messages import (
    METHOD_NOT_FOUND,
    PREVIEW_CHARS,
    NotificationMessage,
    ParseFailure,
    RequestMessage,
    ResponseMessage,
    build_error_response,
    classify,
    encode_line,
)
from acpsession.session.correlator import RpcCorrelator
from acpsession.session.router import (
    EVENT_ERROR,
    EVENT_EXIT,
    EVENT_NOTIFICATION,
    EVENT_STDERR,
    EventHandler,
    NotificationRouter,
    SessionEvent,
    Subscription,
)
from acpsession.session.sidecar import SessionLogSidecar
from acpsession.session.supervisor import ProcessCallbacks, ProcessHandle, ProcessSupervisor, SpawnSpec

CLIENT_NAME = "acpsession"
CLIENT_VERSION = "0.1.0"
MIN_PROTOCOL_VERSION = 1

METHOD_INITIALIZE = "initialize"
METHOD_PROMPT = "prompt"
METHOD_CANCEL = "cancel"

_UNSAFE_FILENAME_RE = re.compile(r"[^A-Za-z0-9._-]+")
_VERSION_RE = re.compile(r"\s*([+-]?\d+)")


class SessionState(str, Enum):
    INITIALIZING = "initializing"
    READY = "ready"
    ERROR = "error"
    EXITED = "exited"


_ALLOWED_TRANSITIONS = {
    SessionState.INITIALIZING: {SessionState.READY, SessionState.ERROR, SessionState.EXITED},
    SessionState.READY: {SessionState.ERROR, SessionState.EXITED},
    SessionState.ERROR: {SessionState.EXITED},
    SessionState.EXITED: set(),
}


def default_initialize_params() -> Dict[str, Any]:
    return {
        "clientInfo": {
            "name": CLIENT_NAME,
            "version": CLIENT_VERSION,
        },
        "capabilities": {
            "fs": {
                "read_text_file": True,
                "write_text_file": True,
            },
            "terminal": True,
            "meta": {
                "terminal_output": True,
            },
        },
    }


@dataclass(frozen=True)
class SessionInfo:
    """Read-only snapshot of one session, safe to hand to other threads."""

    session_id: str
    provider_id: str
    workspace_id: str
    cwd: str
    state: SessionState
    protocol_version: Optional[str] = None
    capabilities: Any = None
    exit_code: Optional[int] = None
    pid: Optional[int] = None
    log_path: Optional[str] = None
    created_at_ms: int = 0


@dataclass
class OperationResult:
    success: bool
    session_id: Optional[str] = None
    result: Any = None
    error: Optional[str] = None
    error_kind: Optional[str] = None

    @classmethod
    def failure(cls, exc: BaseException, session_id: Optional[str] = None) -> "OperationResult":
        return cls(success=False, session_id=session_id, error=str(exc), error_kind=error_kind(exc))

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"success": self.success}
        if self.session_id is not None:
            payload["sessionId"] = self.session_id
        if self.result is not None:
            payload["result"] = self.result
        if self.error is not None:
            payload["error"] = self.error
            payload["errorKind"] = self.error_kind
        return payload


@dataclass
class _SessionRuntime:
    session_id: str
    provider_id: str
    workspace_id: str
    cwd: str
    framer: LineFramer
    sidecar: SessionLogSidecar
    state: SessionState = SessionState.INITIALIZING
    process: Optional[ProcessHandle] = None
    protocol_version: Optional[str] = None
    capabilities: Any = None
    exit_code: Optional[int] = None
    created_at_ms: int = field(default_factory=now_ms)
    lock: threading.Lock = field(default_factory=threading.Lock)

    def snapshot(self) -> SessionInfo:
        with self.lock:
            return SessionInfo(
                session_id=self.session_id,
                provider_id=self.provider_id,
                workspace_id=self.workspace_id,
                cwd=self.cwd,
                state=self.state,
                protocol_version=self.protocol_version,
                capabilities=self.capabilities,
                exit_code=self.exit_code,
                pid=self.process.pid if self.process is not None else None,
                log_path=str(self.sidecar.path),
                created_at_ms=self.created_at_ms,
            )


class SessionManager:
    """Service value owning the session registry and the call correlator.

    Construct one per host process and pass it to whoever needs sessions.
    All registry access goes through ``_lock``; per-session fields are
    guarded by the session's own lock. Subprocess callbacks arrive on reader
    threads and only ever reach a session by looking its id up here.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        supervisor: Optional[ProcessSupervisor] = None,
        router: Optional[NotificationRouter] = None,
        debug_log: Optional[DebugLogWriter] = None,
    ) -> None:
        self._settings = settings
        self._supervisor = supervisor or ProcessSupervisor(settings)
        self._owns_router = router is None
        self._router = router or NotificationRouter()
        self._debug_log = debug_log or DebugLogWriter(
            logs_dir=settings.logs_dir,
            enabled=settings.logs_enabled,
            max_file_bytes=settings.logs_max_file_bytes,
            max_files=settings.logs_max_files,
            redaction=settings.logs_redaction,
        )
        self._lock = threading.Lock()
        self._sessions: Dict[str, _SessionRuntime] = {}
        self._correlator = RpcCorrelator(writer=self._write_line, event_sink=self._on_rpc_event)

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def router(self) -> NotificationRouter:
        return self._router

    @property
    def correlator(self) -> RpcCorrelator:
        return self._correlator

    @property
    def supervisor(self) -> ProcessSupervisor:
        return self._supervisor

    # -- public operations -------------------------------------------------

    def new_session(
        self,
        provider_id: str,
        workspace_id: str,
        cwd: Any,
        spawn_override: Optional[SpawnSpec] = None,
        init_params: Optional[Dict[str, Any]] = None,
    ) -> OperationResult:
        return self.new_session_future(
            provider_id,
            workspace_id,
            cwd,
            spawn_override=spawn_override,
            init_params=init_params,
        ).result()

    def new_session_future(
        self,
        provider_id: str,
        workspace_id: str,
        cwd: Any,
        spawn_override: Optional[SpawnSpec] = None,
        init_params: Optional[Dict[str, Any]] = None,
    ) -> "Future[OperationResult]":
        """Spawn an agent and start the handshake without waiting for it.

        The returned future resolves once ``initialize`` was answered and the
        protocol version checked, or once the attempt failed and the agent was
        torn down.
        """

        outcome: "Future[OperationResult]" = Future()
        outcome.set_running_or_notify_cancel()
        provider_id = str(provider_id or "").strip()
        workspace_id = str(workspace_id or "").strip() or "default"

        if not self._settings.acp.enabled:
            outcome.set_result(OperationResult.failure(FeatureDisabled("ACP sessions are disabled in settings")))
            return outcome

        try:
            self._supervisor.resolve(provider_id, spawn_override)
        except SpawnError as exc:
            self._debug_log.warning("supervisor", str(exc), provider_id=provider_id)
            outcome.set_result(OperationResult.failure(exc))
            return outcome

        session_id = "{0}-{1}-{2}-{3}".format(provider_id, workspace_id, now_ms(), short_token())
        runtime = _SessionRuntime(
            session_id=session_id,
            provider_id=provider_id,
            workspace_id=workspace_id,
            cwd=str(cwd),
            framer=LineFramer(on_oversized=partial(self._on_oversized_line, session_id)),
            sidecar=SessionLogSidecar(
                self._settings.session_logs_root / "{0}.log".format(_UNSAFE_FILENAME_RE.sub("_", session_id)),
                enabled=self._settings.session_logs_enabled,
            ),
        )
        runtime.sidecar.open(session_id)
        with self._lock:
            self._sessions[session_id] = runtime

        callbacks = ProcessCallbacks(
            on_stdout=partial(self._on_stdout, session_id),
            on_stderr=partial(self._on_stderr, session_id),
            on_exit=partial(self._on_exit, session_id),
            on_error=partial(self._on_process_error, session_id),
        )
        try:
            process = self._supervisor.spawn(
                provider_id,
                Path(str(cwd)),
                callbacks,
                override=spawn_override,
                label=session_id,
            )
        except ACPError as exc:
            outcome.set_result(self._abort_new_session(session_id, exc))
            return outcome

        with runtime.lock:
            runtime.process = process
        runtime.sidecar.write("lifecycle", "spawned pid={0} provider={1}".format(process.pid, provider_id))
        self._debug_log.info("supervisor", "agent spawned", session_id, pid=process.pid, provider_id=provider_id)

        params = init_params if init_params is not None else default_initialize_params()
        call = self._correlator.call(session_id, METHOD_INITIALIZE, params, self._settings.acp.initialize_ms)

        def _complete(done: "Future[Any]") -> None:
            try:
                result = self._finish_handshake(runtime, done)
            except Exception as exc:
                result = self._abort_new_session(session_id, exc)
            outcome.set_result(result)

        call.add_done_callback(_complete)
        return outcome

    def prompt(self, session_id: str, text: str) -> OperationResult:
        # Results are settled on the router thread, so never block on this from a subscriber.
        return self.prompt_future(session_id, text).result()

    def prompt_future(self, session_id: str, text: str) -> "Future[OperationResult]":
        outcome: "Future[OperationResult]" = Future()
        outcome.set_running_or_notify_cancel()

        runtime = self._lookup(session_id)
        if runtime is None:
            outcome.set_result(OperationResult.failure(SessionNotFound("Session not found", session_id=session_id)))
            return outcome
        with runtime.lock:
            state = runtime.state
        if state is not SessionState.READY:
            outcome.set_result(
                OperationResult.failure(
                    SessionNotReady(
                        "Session not ready (status: {0})".format(state.value),
                        session_id=session_id,
                    ),
                    session_id=session_id,
                )
            )
            return outcome

        call = self._correlator.call(
            session_id,
            METHOD_PROMPT,
            {"prompt": text},
            self._settings.acp.prompt_ms,
        )

        def _complete(done: "Future[Any]") -> None:
            exc = done.exception()
            if exc is not None:
                outcome.set_result(OperationResult.failure(exc, session_id=session_id))
            else:
                outcome.set_result(OperationResult(success=True, session_id=session_id, result=done.result()))

        call.add_done_callback(_complete)
        return outcome

    def cancel(self, session_id: str) -> OperationResult:
        if self._lookup(session_id) is None:
            return OperationResult.failure(SessionNotFound("Session not found", session_id=session_id))
        try:
            self._correlator.notify(session_id, METHOD_CANCEL, {})
        except ACPError as exc:
            return OperationResult.failure(exc, session_id=session_id)
        return OperationResult(success=True, session_id=session_id)

    def dispose(self, session_id: str) -> None:
        self._teardown(
            session_id,
            SessionDisposed("Session disposed", session_id=session_id),
            reason="disposed",
        )

    def dispose_all(self) -> None:
        with self._lock:
            session_ids = list(self._sessions)
        for session_id in session_ids:
            self.dispose(session_id)

    def get_session(self, session_id: str) -> Optional[SessionInfo]:
        runtime = self._lookup(session_id)
        return runtime.snapshot() if runtime is not None else None

    def list_sessions(self) -> List[SessionInfo]:
        with self._lock:
            runtimes = list(self._sessions.values())
        return [runtime.snapshot() for runtime in runtimes]

    def subscribe(self, handler: EventHandler, session_id: Optional[str] = None) -> Subscription:
        return self._router.subscribe(handler, session_id=session_id)

    def close(self) -> None:
        self.dispose_all()
        if self._owns_router:
            self._router.close()

    # -- lifecycle internals -----------------------------------------------

    def _lookup(self, session_id: str) -> Optional[_SessionRuntime]:
        with self._lock:
            return self._sessions.get(session_id)

    def _finish_handshake(self, runtime: _SessionRuntime, call: "Future[Any]") -> OperationResult:
        session_id = runtime.session_id
        initialize_ms = self._settings.acp.initialize_ms
        try:
            result = call.result()
        except RequestTimeout:
            return self._abort_new_session(
                session_id,
                HandshakeTimeout(
                    "initialize timed out after {0}ms".format(initialize_ms),
                    session_id=session_id,
                    provider_id=runtime.provider_id,
                ),
            )
        except ACPError as exc:
            return self._abort_new_session(session_id, exc)

        try:
            version = _negotiated_version(result)
        except UnsupportedProtocolVersion as exc:
            return self._abort_new_session(session_id, exc)

        with runtime.lock:
            if runtime.state is not SessionState.INITIALIZING:
                state = runtime.state
                ready = False
            else:
                runtime.state = SessionState.READY
                runtime.protocol_version = version
                runtime.capabilities = result.get("capabilities")
                ready = True
        if not ready:
            return self._abort_new_session(
                session_id,
                ProcessExited(
                    "agent left the handshake in state {0}".format(state.value),
                    session_id=session_id,
                ),
            )

        runtime.sidecar.write("lifecycle", "ready protocolVersion={0}".format(version))
        self._debug_log.info("session", "session initialized", session_id, protocol_version=version)
        return OperationResult(success=True, session_id=session_id)

    def _abort_new_session(self, session_id: str, exc: BaseException) -> OperationResult:
        runtime = self._lookup(session_id)
        if runtime is not None:
            with runtime.lock:
                _transition(runtime, SessionState.ERROR)
        self._debug_log.error("session", "session failed to start: {0}".format(error_summary(exc)), session_id)
        self._emit(session_id, EVENT_ERROR, {"kind": error_kind(exc), "error": str(exc)})
        self._teardown(session_id, exc, reason="handshake_failed")
        return OperationResult.failure(exc)

    def _teardown(self, session_id: str, pending_error: BaseException, reason: str) -> bool:
        with self._lock:
            runtime = self._sessions.pop(session_id, None)
        if runtime is None:
            return False

        with runtime.lock:
            _transition(runtime, SessionState.EXITED)
            process = runtime.process
        if process is not None:
            process.kill()
        rejected = self._correlator.reject_session(session_id, pending_error)
        runtime.sidecar.write("lifecycle", "{0} rejected_calls={1}".format(reason, rejected))
        runtime.sidecar.close()
        self._debug_log.info("session", "session {0}".format(reason), session_id, rejected_calls=rejected)
        return True

    def _write_line(self, session_id: str, line: str) -> None:
        runtime = self._lookup(session_id)
        if runtime is None:
            raise SessionNotFound("Session not available", session_id=session_id)
        with runtime.lock:
            process = runtime.process
        if process is None:
            raise WriteFailed("agent process is not running", session_id=session_id)
        process.write_line(line)

    def _emit(self, session_id: str, event_type: str, payload: Any) -> None:
        self._router.emit(SessionEvent(session_id=session_id, type=event_type, payload=payload))

    # -- subprocess callbacks (reader / waiter threads) --------------------

    def _on_stdout(self, session_id: str, chunk: bytes) -> None:
        runtime = self._lookup(session_id)
        if runtime is None:
            return
        for line in runtime.framer.feed(chunk):
            self._dispatch_line_safely(runtime, line)

    def _on_stderr(self, session_id: str, chunk: bytes) -> None:
        runtime = self._lookup(session_id)
        if runtime is None:
            return
        text = chunk.decode("utf-8", errors="replace")
        runtime.sidecar.write("stderr", text)
        self._emit(session_id, EVENT_STDERR, text)

    def _on_exit(self, session_id: str, code: Optional[int]) -> None:
        runtime = self._lookup(session_id)
        if runtime is None:
            return
        for line in runtime.framer.flush():
            self._dispatch_line_safely(runtime, line)
        # Queued behind every response read before the exit.
        self._router.call_soon(partial(self._finish_exit, session_id, code))

    def _finish_exit(self, session_id: str, code: Optional[int]) -> None:
        runtime = self._lookup(session_id)
        if runtime is None:
            return
        with runtime.lock:
            process = runtime.process
            if process is not None and process.killed:
                return
            _transition(runtime, SessionState.EXITED)
            runtime.exit_code = code
        runtime.sidecar.write("lifecycle", "exited code={0}".format(code))
        self._debug_log.info("supervisor", "agent exited", session_id, code=code)
        self._emit(session_id, EVENT_EXIT, {"code": code})
        self._teardown(
            session_id,
            ProcessExited("agent process exited with code {0}".format(code), session_id=session_id, code=code),
            reason="exited",
        )

    def _on_process_error(self, session_id: str, exc: BaseException) -> None:
        runtime = self._lookup(session_id)
        if runtime is None:
            return
        with runtime.lock:
            _transition(runtime, SessionState.ERROR)
        self._debug_log.error("supervisor", "agent process error: {0}".format(exc), session_id)
        runtime.sidecar.write("lifecycle", "process error: {0}".format(exc))
        self._emit(session_id, EVENT_ERROR, {"kind": error_kind(exc), "error": str(exc)})

    def _on_oversized_line(self, session_id: str, size: int) -> None:
        self._debug_log.warning("framer", "ignoring oversized line ({0} bytes)".format(size), session_id, size=size)
        runtime = self._lookup(session_id)
        if runtime is not None:
            runtime.sidecar.write("oversized", "dropped line of {0} bytes".format(size))

    def _on_rpc_event(self, session_id: str, event_type: str, payload: Dict[str, Any]) -> None:
        runtime = self._lookup(session_id)
        if event_type == "request":
            message = "{0}#{1}: {2}".format(payload.get("method"), payload.get("request_id"), _to_json(payload.get("params")))
        elif event_type == "notify":
            message = "{0}: {1}".format(payload.get("method"), _to_json(payload.get("params")))
        else:
            message = _to_json(payload)
            self._debug_log.warning("correlator", "rpc {0}".format(event_type), session_id, **payload)
        if runtime is not None:
            runtime.sidecar.write(event_type, message)

    def _dispatch_line_safely(self, runtime: _SessionRuntime, line: str) -> None:
        # A failure on one line must not drop the lines after it.
        try:
            self._dispatch_line(runtime, line)
        except Exception as exc:
            preview = line[:PREVIEW_CHARS]
            self._debug_log.error("classifier", "failed to dispatch line: {0}".format(exc), runtime.session_id, preview=preview)
            runtime.sidecar.write("invalid", preview)
            self._emit(runtime.session_id, EVENT_ERROR, {"kind": error_kind(exc), "error": str(exc), "line": preview})

    def _dispatch_line(self, runtime: _SessionRuntime, line: str) -> None:
        session_id = runtime.session_id
        message = classify(line)
        if isinstance(message, ResponseMessage):
            body = message.error if message.is_error else message.result
            runtime.sidecar.write("response", "#{0} {1}".format(message.id, _to_json(body)))
            # Settled on the router thread so earlier notifications reach subscribers first.
            self._router.call_soon(partial(self._correlator.handle_response, session_id, message))
        elif isinstance(message, NotificationMessage):
            runtime.sidecar.write("notification", "{0}: {1}".format(message.method, _to_json(message.params)))
            self._emit(session_id, EVENT_NOTIFICATION, dict(message.raw))
        elif isinstance(message, RequestMessage):
            self._reject_agent_request(runtime, message)
        elif isinstance(message, ParseFailure):
            preview = message.line[:PREVIEW_CHARS]
            runtime.sidecar.write("invalid", preview)
            self._debug_log.warning("classifier", str(message.error), session_id, kind=message.kind, preview=preview)
            self._emit(session_id, EVENT_ERROR, {"kind": message.kind, "error": str(message.error), "line": preview})

    def _reject_agent_request(self, runtime: _SessionRuntime, message: RequestMessage) -> None:
        session_id = runtime.session_id
        error = UnhandledMessageShape(
            "unsupported agent request: {0}".format(message.method),
            session_id=session_id,
            method=message.method,
            request_id=message.id,
        )
        runtime.sidecar.write("unhandled", "{0}#{1}: {2}".format(message.method, message.id, _to_json(message.params)))
        self._debug_log.warning("classifier", str(error), session_id, method=message.method)
        self._emit(
            session_id,
            EVENT_ERROR,
            {"kind": error.kind, "error": str(error), "message": dict(message.raw)},
        )
        reply = build_error_response(
            message.id,
            METHOD_NOT_FOUND,
            "method not supported by client: {0}".format(message.method),
        )
        try:
            self._write_line(session_id, encode_line(reply))
        except ACPError as exc:
            self._debug_log.warning("correlator", "failed to reject agent request: {0}".format(exc), session_id)


def _transition(runtime: _SessionRuntime, target: SessionState) -> bool:
    # Caller holds runtime.lock.
    if target is runtime.state:
        return True
    if target not in _ALLOWED_TRANSITIONS[runtime.state]:
        return False
    runtime.state = target
    return True


def _negotiated_version(result: Any) -> str:
    if not isinstance(result, dict):
        raise UnsupportedProtocolVersion("initialize result is not an object")
    raw = result.get("protocolVersion")
    # Leading integer only: 1, 1.0, "1" and "1.0" all negotiate as version 1.
    match = _VERSION_RE.match(str(raw)) if isinstance(raw, (int, float, str)) and not isinstance(raw, bool) else None
    if match is None:
        raise UnsupportedProtocolVersion(
            "agent reported no usable protocol version: {0!r}".format(raw),
            protocol_version=raw,
        )
    version = int(match.group(1))
    text = str(version)
    if version < MIN_PROTOCOL_VERSION:
        raise UnsupportedProtocolVersion(
            "Unsupported protocol version {0} (requires v{1}+)".format(text, MIN_PROTOCOL_VERSION),
            protocol_version=text,
        )
    return text


def _to_json(value: Any) -> str:
    try:
        return json.dumps(value, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return str(value)
