"""Fan-out of asynchronous session events to subscribers."""

from __future__ import annotations

import itertools
import queue
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Tuple, Union

from acpsession.kernel.types import now_ms

EVENT_NOTIFICATION = "notification"
EVENT_STDERR = "stderr"
EVENT_EXIT = "exit"
EVENT_ERROR = "error"
EVENT_TYPES = (EVENT_NOTIFICATION, EVENT_STDERR, EVENT_EXIT, EVENT_ERROR)


@dataclass(frozen=True)
class SessionEvent:
    session_id: str
    type: str
    payload: Any
    ts_ms: int = field(default_factory=now_ms)

    def __post_init__(self) -> None:
        if self.type not in EVENT_TYPES:
            raise ValueError("unknown session event type: {0}".format(self.type))

    def as_dict(self) -> Dict[str, Any]:
        return {"sessionId": self.session_id, "type": self.type, "payload": self.payload}


EventHandler = Callable[[SessionEvent], None]
QueuedCallback = Callable[[], None]


class Subscription:
    """Handle returned by ``subscribe``; call ``unsubscribe`` to stop delivery."""

    def __init__(self, router: "NotificationRouter", token: int, session_id: Optional[str]) -> None:
        self._router = router
        self._token = token
        self.session_id = session_id
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self) -> None:
        if not self._active:
            return
        self._active = False
        self._router._remove(self._token)


class NotificationRouter:
    """Queue-backed pub-sub scoped to one service instance.

    ``emit`` never runs handlers on the caller's thread, so the stdout reader
    is never held up by a slow subscriber. A single dispatcher thread delivers
    events in the order they were emitted.
    """

    def __init__(self) -> None:
        self._handlers: Dict[int, Tuple[Optional[str], EventHandler]] = {}
        self._tokens = itertools.count(1)
        self._lock = threading.Lock()
        self._queue: "queue.Queue[Union[SessionEvent, threading.Event, QueuedCallback, None]]" = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self._closed = False
        self.handler_errors = 0

    def subscribe(self, handler: EventHandler, session_id: Optional[str] = None) -> Subscription:
        with self._lock:
            token = next(self._tokens)
            self._handlers[token] = (session_id, handler)
        return Subscription(self, token, session_id)

    def emit(self, event: SessionEvent) -> None:
        with self._lock:
            if self._closed:
                return
            self._ensure_thread_locked()
        self._queue.put(event)

    def call_soon(self, callback: QueuedCallback) -> None:
        """Run ``callback`` on the dispatcher after every event emitted so far.

        Once the router is closed the callback runs on the caller's thread.
        """

        with self._lock:
            if not self._closed:
                self._ensure_thread_locked()
                self._queue.put(callback)
                return
        callback()

    def flush(self, timeout: float = 5.0) -> bool:
        """Block until every event emitted so far was delivered."""

        with self._lock:
            if self._closed or self._thread is None:
                return True
        done = threading.Event()
        self._queue.put(done)
        return done.wait(timeout)

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            thread = self._thread
        self._queue.put(None)
        if thread is not None and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=1)

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._handlers)

    def _remove(self, token: int) -> None:
        with self._lock:
            self._handlers.pop(token, None)

    def _ensure_thread_locked(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self._dispatch_loop, name="acp-event-router", daemon=True)
        self._thread.start()

    def _dispatch_loop(self) -> None:
        while True:
            event = self._queue.get()
            if event is None:
                return
            if isinstance(event, threading.Event):
                event.set()
                continue
            if isinstance(event, SessionEvent):
                self._deliver(event)
                continue
            try:
                event()
            except Exception:
                self.handler_errors += 1

    def _deliver(self, event: SessionEvent) -> None:
        with self._lock:
            targets = [
                handler
                for scope, handler in self._handlers.values()
                if scope is None or scope == event.session_id
            ]
        for handler in targets:
            try:
                handler(event)
            except Exception:
                # Subscribers are isolated from the protocol path and each other.
                self.handler_errors += 1
