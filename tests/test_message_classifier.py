from __future__ import annotations

import json

from acpsession.errors import InvalidJson, UnhandledMessageShape
from acpsession.protocol.messages import (
    METHOD_NOT_FOUND,
    NotificationMessage,
    ParseFailure,
    RequestMessage,
    ResponseMessage,
    build_error_response,
    build_notification,
    build_request,
    classify,
    encode_line,
)


def test_invalid_json_is_a_parse_failure():
    outcome = classify("not json at all")

    assert isinstance(outcome, ParseFailure)
    assert isinstance(outcome.error, InvalidJson)
    assert outcome.kind == "invalid_json"
    assert outcome.line == "not json at all"


def test_deeply_nested_line_is_invalid_json_not_an_exception():
    line = "[" * 50000

    outcome = classify(line)

    assert isinstance(outcome, ParseFailure)
    assert outcome.kind == "invalid_json"
    assert outcome.line == line


def test_non_object_json_is_unhandled_shape():
    outcome = classify("[1, 2, 3]")

    assert isinstance(outcome, ParseFailure)
    assert isinstance(outcome.error, UnhandledMessageShape)


def test_object_without_method_or_result_is_unhandled_shape():
    outcome = classify('{"jsonrpc":"2.0","id":3}')

    assert isinstance(outcome, ParseFailure)
    assert outcome.kind == "unhandled_message_shape"


def test_response_with_result():
    outcome = classify('{"jsonrpc":"2.0","id":7,"result":{"ok":true}}')

    assert isinstance(outcome, ResponseMessage)
    assert outcome.is_error is False
    assert outcome.result == {"ok": True}
    assert outcome.correlation_id == 7


def test_error_takes_precedence_over_result():
    outcome = classify('{"jsonrpc":"2.0","id":1,"result":{"x":1},"error":{"code":-1,"message":"bad"}}')

    assert isinstance(outcome, ResponseMessage)
    assert outcome.is_error is True
    assert outcome.result is None
    assert outcome.error_message == "bad"


def test_null_error_is_treated_as_success():
    outcome = classify('{"jsonrpc":"2.0","id":1,"result":5,"error":null}')

    assert isinstance(outcome, ResponseMessage)
    assert outcome.is_error is False
    assert outcome.result == 5


def test_non_object_error_is_wrapped():
    outcome = classify('{"jsonrpc":"2.0","id":1,"error":"kaboom"}')

    assert isinstance(outcome, ResponseMessage)
    assert outcome.error == {"code": None, "message": "kaboom"}


def test_notification_has_method_and_no_id():
    outcome = classify('{"jsonrpc":"2.0","method":"session/update","params":{"a":1}}')

    assert isinstance(outcome, NotificationMessage)
    assert outcome.method == "session/update"
    assert outcome.params == {"a": 1}


def test_null_id_with_method_is_a_notification():
    outcome = classify('{"jsonrpc":"2.0","id":null,"method":"tick"}')

    assert isinstance(outcome, NotificationMessage)


def test_method_with_id_is_a_server_request():
    outcome = classify('{"jsonrpc":"2.0","id":"agent-1","method":"fs/read_text_file","params":{}}')

    assert isinstance(outcome, RequestMessage)
    assert outcome.id == "agent-1"
    assert outcome.method == "fs/read_text_file"


def test_correlation_id_normalization():
    assert classify('{"id":"12","result":null}').correlation_id == 12
    assert classify('{"id":"abc","result":null}').correlation_id is None
    assert classify('{"id":true,"result":null}').correlation_id is None
    assert classify('{"id":1.5,"result":null}').correlation_id is None


def test_builders_produce_single_compact_lines():
    line = encode_line(build_request(4, "initialize", {"clientInfo": {"name": "héllo"}}))

    assert line.endswith("\n")
    assert line.count("\n") == 1
    assert " " not in line
    assert json.loads(line) == {
        "jsonrpc": "2.0",
        "id": 4,
        "method": "initialize",
        "params": {"clientInfo": {"name": "héllo"}},
    }

    assert build_notification("cancel") == {"jsonrpc": "2.0", "method": "cancel"}
    assert build_notification("cancel", {}) == {"jsonrpc": "2.0", "method": "cancel", "params": {}}

    error = build_error_response("agent-1", METHOD_NOT_FOUND, "nope")
    assert error == {"jsonrpc": "2.0", "id": "agent-1", "error": {"code": -32601, "message": "nope"}}
