"""Presentation helpers for acpsession CLI output."""

from __future__ import annotations

import io
import json
from typing import Any, Dict, Iterable, List, Optional, TextIO

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text


def bilingual_text(zh: str, en: Optional[str] = None) -> str:
    if not en:
        return zh
    return "{0} ({1})".format(zh, en)


def render_notice(level: str, zh: str, en: Optional[str] = None) -> str:
    prefix_map = {
        "info": bilingual_text("提示", "Info"),
        "warn": bilingual_text("警告", "Warning"),
        "error": bilingual_text("错误", "Error"),
        "success": bilingual_text("成功", "Success"),
    }
    prefix = prefix_map.get(level, bilingual_text("提示", "Info"))
    return "{0}: {1}".format(prefix, bilingual_text(zh, en))


def _is_tty(stream: TextIO, forced: Optional[bool]) -> bool:
    if forced is not None:
        return forced
    isatty = getattr(stream, "isatty", None)
    if callable(isatty):
        try:
            return bool(isatty())
        except Exception:
            return False
    return False


def _result_text(result: Dict[str, Any]) -> str:
    payload = result.get("result")
    if isinstance(payload, dict) and "text" in payload:
        return str(payload.get("text") or "")
    if payload is None:
        return ""
    return json.dumps(payload, ensure_ascii=False, indent=2, default=str)


def render_result_panel(
    result: Dict[str, Any],
    stream: TextIO,
    is_tty: Optional[bool] = None,
) -> None:
    """Render a prompt outcome in the ``{success, sessionId, result, error}`` shape."""

    tty = _is_tty(stream, is_tty)
    success = bool(result.get("success"))
    if success:
        title = bilingual_text("智能体回复", "Agent")
        body = _result_text(result)
        stop_reason = ""
        if isinstance(result.get("result"), dict):
            stop_reason = str(result["result"].get("stopReason") or "")
    else:
        title = bilingual_text("执行失败", "Failed")
        body = "{0}: {1}".format(result.get("errorKind") or "error", result.get("error") or "")
        stop_reason = ""

    if tty:
        console = Console(file=stream, highlight=False, soft_wrap=True)
        console.print(
            Panel(
                body,
                title=title,
                subtitle=stop_reason or None,
                border_style="cyan" if success else "red",
                box=box.ROUNDED,
            )
        )
        return

    lines = body.splitlines() or [""]
    if stop_reason:
        lines.append("stopReason={0}".format(stop_reason))
    width = max([len(title)] + [len(line) for line in lines])

    stream.write("+-{0}-+\n".format(title.ljust(width, "-")))
    for line in lines:
        stream.write("| {0} |\n".format(line.ljust(width)))
    stream.write("+-{0}-+\n".format("-" * width))
    stream.flush()


def format_event_line(event: Dict[str, Any]) -> str:
    """One-line rendering of a ``{sessionId, type, payload}`` event."""

    event_type = str(event.get("type") or "")
    payload = event.get("payload")
    if event_type == "notification" and isinstance(payload, dict):
        params = payload.get("params") if isinstance(payload.get("params"), dict) else {}
        update = params.get("update") if isinstance(params.get("update"), dict) else {}
        content = update.get("content") if isinstance(update.get("content"), dict) else {}
        if content.get("text") is not None:
            return "[{0}] {1}".format(payload.get("method") or "notification", content.get("text"))
        return "[{0}] {1}".format(payload.get("method") or "notification", json.dumps(params, ensure_ascii=False))
    if event_type == "stderr":
        return "[stderr] {0}".format(str(payload or "").rstrip("\n"))
    if event_type == "exit":
        code = payload.get("code") if isinstance(payload, dict) else payload
        return "[exit] code={0}".format(code)
    if event_type == "error" and isinstance(payload, dict):
        return "[error] {0}: {1}".format(payload.get("kind") or "error", payload.get("error") or "")
    return "[{0}] {1}".format(event_type or "event", json.dumps(payload, ensure_ascii=False, default=str))


def render_event_line(
    event: Dict[str, Any],
    stream: TextIO,
    is_tty: Optional[bool] = None,
) -> None:
    tty = _is_tty(stream, is_tty)
    line = format_event_line(event)
    if tty:
        style = "red" if event.get("type") in {"error", "stderr"} else "dim"
        console = Console(file=stream, highlight=False, soft_wrap=True)
        console.print(Text(line, style=style))
        return
    stream.write(line + "\n")
    stream.flush()


def _provider_lines(rows: Iterable[Dict[str, str]]) -> List[str]:
    lines = [bilingual_text("已注册 Provider", "Registered Providers")]
    for row in rows:
        lines.append(
            "{0} command={1} override={2}".format(
                row.get("provider_id", ""),
                row.get("command", ""),
                row.get("override") or "-",
            )
        )
    return lines


def render_providers(
    rows: List[Dict[str, str]],
    stream: TextIO,
    is_tty: Optional[bool] = None,
) -> None:
    tty = _is_tty(stream, is_tty)
    if tty:
        table = Table(title=bilingual_text("已注册 Provider", "Registered Providers"), box=box.SIMPLE)
        table.add_column("provider")
        table.add_column("command")
        table.add_column("override")
        for row in rows:
            table.add_row(row.get("provider_id", ""), row.get("command", ""), row.get("override") or "-")
        Console(file=stream, highlight=False, soft_wrap=True).print(table)
        return

    for line in _provider_lines(rows):
        stream.write(line + "\n")
    stream.flush()


def preview_rendered_result(result: Dict[str, Any]) -> str:
    """Helper for tests that need a deterministic text snapshot."""

    stream = io.StringIO()
    render_result_panel(result=result, stream=stream, is_tty=False)
    return stream.getvalue()
