from __future__ import annotations

import json

from acpsession.kernel.debug_log import DebugLogWriter


def _records(writer: DebugLogWriter):
    return [json.loads(line) for line in writer.active_log_file.read_text(encoding="utf-8").splitlines()]


def test_debug_log_rotation_respects_size_and_max_files(tmp_path):
    writer = DebugLogWriter(
        logs_dir=tmp_path / "logs",
        enabled=True,
        max_file_bytes=256,
        max_files=2,
        redaction="none",
    )

    for idx in range(40):
        writer.info("session", "rotation-{0}".format(idx), "echo-ws-1", blob="x" * 80, idx=idx)

    logs = tmp_path / "logs"
    assert writer.active_log_file.stat().st_size <= 256
    assert (logs / "debug.log.jsonl.1").exists()
    assert (logs / "debug.log.jsonl.2").exists()
    assert not (logs / "debug.log.jsonl.3").exists()
    newest = json.loads((logs / "debug.log.jsonl.1").read_text(encoding="utf-8").splitlines()[-1])
    assert newest["data"]["idx"] < _records(writer)[0]["data"]["idx"]


def test_entries_carry_component_and_session(tmp_path):
    writer = DebugLogWriter(logs_dir=tmp_path, enabled=True)

    writer.warning("framer", "ignoring oversized line (70000 bytes)", "gemini-ws-1", size=70000)

    record = _records(writer)[-1]
    assert record["level"] == "warning"
    assert record["component"] == "framer"
    assert record["session_id"] == "gemini-ws-1"
    assert record["data"] == {"size": 70000}


def test_default_redaction_masks_secrets(tmp_path):
    writer = DebugLogWriter(logs_dir=tmp_path, enabled=True, redaction="default")

    writer.error(
        "supervisor",
        "spawn failed with api_key=abc123 and Bearer tok-999",
        api_token="shhh",
        nested={"password": "p", "note": "sk-ABCDEFGHIJKL"},
    )

    record = _records(writer)[-1]
    assert "abc123" not in record["message"]
    assert "tok-999" not in record["message"]
    assert record["data"]["api_token"] == "***REDACTED***"
    assert record["data"]["nested"]["password"] == "***REDACTED***"
    assert record["data"]["nested"]["note"] == "***REDACTED***"


def test_strict_redaction_masks_all_scalars(tmp_path):
    writer = DebugLogWriter(logs_dir=tmp_path, enabled=True, redaction="strict")

    writer.info("session", "ready", pid=1234, meta={"method": "initialize"})

    record = _records(writer)[-1]
    assert record["data"] == {"pid": "***REDACTED***", "meta": {"method": "***REDACTED***"}}


def test_disabled_writer_touches_nothing(tmp_path):
    writer = DebugLogWriter(logs_dir=tmp_path / "logs", enabled=False)

    writer.info("session", "hello")

    assert not (tmp_path / "logs").exists()
    assert writer.enabled is False


def test_fail_open_tracks_write_errors(tmp_path):
    blocked_path = tmp_path / "not-a-dir"
    blocked_path.write_text("file", encoding="utf-8")
    writer = DebugLogWriter(logs_dir=blocked_path, enabled=True, max_file_bytes=1024, max_files=2)

    writer.info("session", "should not raise", token="secret")

    assert writer.write_errors >= 1


def test_env_style_assignments_are_masked_in_text(tmp_path):
    writer = DebugLogWriter(logs_dir=tmp_path, enabled=True)

    writer.warning("supervisor", "agent stderr: GEMINI_API_KEY=AIzaSyExampleKey123 missing scope", "gemini-ws-1")

    message = _records(writer)[-1]["message"]
    assert "AIzaSyExampleKey123" not in message
    assert message.startswith("agent stderr: GEMINI_API_KEY=***REDACTED***")
