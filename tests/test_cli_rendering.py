from __future__ import annotations

from io import StringIO

from acpsession.ui.render import (
    format_event_line,
    preview_rendered_result,
    render_notice,
    render_providers,
    render_result_panel,
)


def test_result_panel_non_tty_uses_box():
    rendered = preview_rendered_result(
        {"success": True, "sessionId": "echo-ws-1", "result": {"stopReason": "end_turn", "text": "第一行\n第二行"}}
    )

    assert "智能体回复 (Agent)" in rendered
    assert "+-" in rendered
    assert "| 第一行" in rendered
    assert "| 第二行" in rendered
    assert "| stopReason=end_turn" in rendered


def test_failed_result_shows_error_kind():
    rendered = preview_rendered_result(
        {"success": False, "error": "Session not found", "errorKind": "session_not_found"}
    )

    assert "执行失败 (Failed)" in rendered
    assert "session_not_found: Session not found" in rendered


def test_result_panel_tty_uses_rich():
    stream = StringIO()
    render_result_panel({"success": True, "result": {"text": "hi"}}, stream=stream, is_tty=True)

    text = stream.getvalue()
    assert "hi" in text
    assert "+-" not in text


def test_event_lines():
    notification = {
        "sessionId": "s",
        "type": "notification",
        "payload": {
            "method": "session/update",
            "params": {"update": {"content": {"type": "text", "text": "chunk"}}},
        },
    }
    assert format_event_line(notification) == "[session/update] chunk"
    assert format_event_line({"type": "stderr", "payload": "warn\n"}) == "[stderr] warn"
    assert format_event_line({"type": "exit", "payload": {"code": 3}}) == "[exit] code=3"
    assert (
        format_event_line({"type": "error", "payload": {"kind": "invalid_json", "error": "bad"}})
        == "[error] invalid_json: bad"
    )
    assert format_event_line({"type": "notification", "payload": {"method": "tick", "params": {}}}) == "[tick] {}"


def test_providers_plain_listing():
    stream = StringIO()
    render_providers(
        [{"provider_id": "gemini", "command": "gemini", "override": ""}],
        stream=stream,
        is_tty=False,
    )

    assert stream.getvalue().splitlines() == [
        "已注册 Provider (Registered Providers)",
        "gemini command=gemini override=-",
    ]


def test_notice_prefixes():
    assert render_notice("error", "失败", "Failed") == "错误 (Error): 失败 (Failed)"
    assert render_notice("unknown", "x") == "提示 (Info): x"
