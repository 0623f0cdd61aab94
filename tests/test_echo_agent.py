from __future__ import annotations

import json
from io import StringIO

from acpsession.agents.echo_agent import NOISE_LINE, EchoAgent, serve


def _written(stream: StringIO):
    return [json.loads(line) for line in stream.getvalue().splitlines() if line.startswith("{")]


def test_initialize_reports_configured_version():
    agent = EchoAgent(protocol_version="3", stdout=StringIO())

    reply = agent.handle(
        {"jsonrpc": "2.0", "id": 1, "method": "initialize", "params": {"clientInfo": {"name": "acpsession"}}}
    )

    assert reply["id"] == 1
    assert reply["result"]["protocolVersion"] == "3"
    assert reply["result"]["client"] == "acpsession"


def test_silent_initialize_never_replies():
    agent = EchoAgent(silent_initialize=True, stdout=StringIO())

    assert agent.handle({"jsonrpc": "2.0", "id": 1, "method": "initialize"}) is None


def test_unknown_method_is_method_not_found():
    agent = EchoAgent(stdout=StringIO())

    reply = agent.handle({"jsonrpc": "2.0", "id": 9, "method": "session/load"})

    assert reply["error"]["code"] == -32601
    assert "session/load" in reply["error"]["message"]


def test_prompt_streams_updates_before_result():
    stdout = StringIO()
    agent = EchoAgent(stdout=stdout)

    reply = agent.handle({"jsonrpc": "2.0", "id": 2, "method": "prompt", "params": {"prompt": "a b"}})

    updates = _written(stdout)
    assert [item["params"]["update"]["content"]["text"] for item in updates] == ["a", "b"]
    assert all(item["method"] == "session/update" for item in updates)
    assert reply["result"] == {"stopReason": "end_turn", "text": "a b"}


def test_cancel_before_streaming_stops_prompt():
    agent = EchoAgent(stdout=StringIO())
    agent.begin_prompt()

    assert agent.handle({"jsonrpc": "2.0", "method": "cancel", "params": {}}) is None
    reply = agent.handle({"jsonrpc": "2.0", "id": 3, "method": "prompt", "params": {"prompt": "x y"}})

    assert reply["result"]["stopReason"] == "cancelled"


def test_noise_precedes_every_message():
    stdout = StringIO()
    agent = EchoAgent(noise=True, stdout=stdout)

    agent.write({"jsonrpc": "2.0", "method": "ping"})

    assert stdout.getvalue().splitlines()[0] == NOISE_LINE


def test_serve_answers_each_line_and_stops_after_initialize():
    stdout = StringIO()
    agent = EchoAgent(exit_after_initialize=True, stdout=stdout)
    lines = [
        "\n",
        "garbage\n",
        json.dumps({"jsonrpc": "2.0", "id": 5, "method": "nope"}) + "\n",
        json.dumps({"jsonrpc": "2.0", "id": 6, "method": "initialize"}) + "\n",
        json.dumps({"jsonrpc": "2.0", "id": 7, "method": "nope"}) + "\n",
    ]

    assert serve(agent, stdin=iter(lines)) == 0

    assert [item["id"] for item in _written(stdout)] == [5, 6]
