from __future__ import annotations

import json
import threading

import pytest

from acpsession.errors import (
    ProcessExited,
    RemoteError,
    RequestTimeout,
    SessionDisposed,
    SessionNotFound,
    WriteFailed,
)
from acpsession.protocol.messages import classify
from acpsession.session.correlator import RpcCorrelator


class _Wire:
    def __init__(self) -> None:
        self.lines = []
        self.events = []
        self._lock = threading.Lock()

    def write(self, session_id: str, line: str) -> None:
        with self._lock:
            self.lines.append((session_id, json.loads(line)))

    def sink(self, session_id: str, event_type: str, payload) -> None:
        with self._lock:
            self.events.append((session_id, event_type, dict(payload)))

    def request_ids(self):
        return [payload["id"] for _, payload in self.lines if "id" in payload]


def _respond(correlator: RpcCorrelator, session_id: str, payload) -> bool:
    return correlator.handle_response(session_id, classify(json.dumps(payload)))


def test_concurrent_calls_get_distinct_ids_and_settle_independently():
    wire = _Wire()
    correlator = RpcCorrelator(writer=wire.write, event_sink=wire.sink)

    first = correlator.call("s1", "initialize", {}, 5000)
    second = correlator.call("s1", "prompt", {"prompt": "hi"}, 5000)
    first_id, second_id = wire.request_ids()
    assert second_id > first_id
    assert correlator.pending_count("s1") == 2

    assert _respond(correlator, "s1", {"jsonrpc": "2.0", "id": second_id, "result": "two"}) is True
    assert second.result(timeout=1) == "two"
    assert not first.done()

    assert _respond(correlator, "s1", {"jsonrpc": "2.0", "id": first_id, "result": "one"}) is True
    assert first.result(timeout=1) == "one"
    assert correlator.pending_count() == 0


def test_ids_are_unique_across_sessions():
    wire = _Wire()
    correlator = RpcCorrelator(writer=wire.write)

    for session_id in ("a", "b", "a", "c"):
        correlator.call(session_id, "prompt", {}, 5000)

    ids = wire.request_ids()
    assert len(set(ids)) == len(ids)
    assert ids == sorted(ids)


def test_response_for_other_session_does_not_settle_call():
    wire = _Wire()
    correlator = RpcCorrelator(writer=wire.write, event_sink=wire.sink)

    future = correlator.call("s1", "prompt", {}, 5000)
    request_id = wire.request_ids()[0]

    assert _respond(correlator, "s2", {"id": request_id, "result": {}}) is False
    assert not future.done()
    assert ("s2", "orphaned", {"request_id": request_id, "reason": "no_pending_call"}) in wire.events


def test_timeout_then_late_response_is_orphaned():
    wire = _Wire()
    correlator = RpcCorrelator(writer=wire.write, event_sink=wire.sink)

    future = correlator.call("s1", "prompt", {}, 50)
    request_id = wire.request_ids()[0]

    error = future.exception(timeout=2)
    assert isinstance(error, RequestTimeout)
    assert "timed out after 50ms" in str(error)
    assert correlator.pending_count() == 0

    assert _respond(correlator, "s1", {"id": request_id, "result": "late"}) is False
    kinds = [event_type for _, event_type, _ in wire.events]
    assert "timeout" in kinds
    assert kinds[-1] == "orphaned"


def test_string_digit_id_is_correlated():
    wire = _Wire()
    correlator = RpcCorrelator(writer=wire.write)

    future = correlator.call("s1", "prompt", {}, 5000)
    request_id = wire.request_ids()[0]

    assert _respond(correlator, "s1", {"id": str(request_id), "result": 1}) is True
    assert future.result(timeout=1) == 1


def test_uncorrelatable_id_is_reported_not_raised():
    wire = _Wire()
    correlator = RpcCorrelator(writer=wire.write, event_sink=wire.sink)

    assert _respond(correlator, "s1", {"id": "not-a-number", "result": 1}) is False
    assert wire.events[-1][1] == "orphaned"
    assert wire.events[-1][2]["reason"] == "uncorrelatable_id"


def test_remote_error_carries_code_and_data():
    wire = _Wire()
    correlator = RpcCorrelator(writer=wire.write)

    future = correlator.call("s1", "prompt", {}, 5000)
    request_id = wire.request_ids()[0]
    _respond(
        correlator,
        "s1",
        {"id": request_id, "error": {"code": -32000, "message": "agent failed", "data": {"why": "x"}}},
    )

    error = future.exception(timeout=1)
    assert isinstance(error, RemoteError)
    assert str(error) == "agent failed"
    assert error.code == -32000
    assert error.data == {"why": "x"}


def test_write_failure_settles_call_with_write_failed():
    def _broken(session_id: str, line: str) -> None:
        raise BrokenPipeError("pipe closed")

    correlator = RpcCorrelator(writer=_broken)
    future = correlator.call("s1", "prompt", {}, 5000)

    assert isinstance(future.exception(timeout=1), WriteFailed)
    assert correlator.pending_count() == 0


def test_writer_domain_error_is_kept():
    def _gone(session_id: str, line: str) -> None:
        raise SessionNotFound("Session not available", session_id=session_id)

    correlator = RpcCorrelator(writer=_gone)
    future = correlator.call("s1", "prompt", {}, 5000)

    assert isinstance(future.exception(timeout=1), SessionNotFound)


def test_reject_session_only_touches_that_session():
    wire = _Wire()
    correlator = RpcCorrelator(writer=wire.write)

    doomed = [correlator.call("s1", "prompt", {}, 5000) for _ in range(3)]
    survivor = correlator.call("s2", "prompt", {}, 5000)

    assert correlator.reject_session("s1", SessionDisposed("Session disposed")) == 3
    for future in doomed:
        assert isinstance(future.exception(timeout=1), SessionDisposed)
    assert not survivor.done()
    assert correlator.pending_count("s2") == 1

    assert correlator.reject_session("s1", ProcessExited("gone")) == 0


def test_first_settlement_wins():
    wire = _Wire()
    correlator = RpcCorrelator(writer=wire.write)

    future = correlator.call("s1", "prompt", {}, 5000)
    request_id = wire.request_ids()[0]
    correlator.reject_session("s1", SessionDisposed("Session disposed"))

    assert _respond(correlator, "s1", {"id": request_id, "result": "late"}) is False
    assert isinstance(future.exception(timeout=1), SessionDisposed)


def test_notify_writes_without_id_and_raises_on_failure():
    wire = _Wire()
    correlator = RpcCorrelator(writer=wire.write, event_sink=wire.sink)

    correlator.notify("s1", "cancel", {})
    assert wire.lines == [("s1", {"jsonrpc": "2.0", "method": "cancel", "params": {}})]
    assert wire.events[-1] == ("s1", "notify", {"method": "cancel", "params": {}})

    def _broken(session_id: str, line: str) -> None:
        raise OSError("closed")

    with pytest.raises(WriteFailed):
        RpcCorrelator(writer=_broken).notify("s1", "cancel", {})


def test_event_sink_failure_does_not_break_calls():
    wire = _Wire()

    def _bad_sink(*_args) -> None:
        raise RuntimeError("observer down")

    correlator = RpcCorrelator(writer=wire.write, event_sink=_bad_sink)
    future = correlator.call("s1", "prompt", {}, 5000)
    _respond(correlator, "s1", {"id": wire.request_ids()[0], "result": "ok"})

    assert future.result(timeout=1) == "ok"
