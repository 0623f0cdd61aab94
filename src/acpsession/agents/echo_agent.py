"""Bundled stdio ACP agent that echoes prompts back as streamed updates."""

from __future__ import annotations

import json
import sys
import threading
import time
from typing import Any, Dict, Optional

import typer

AGENT_NAME = "acpsession-echo"
AGENT_VERSION = "0.1.0"
NOISE_LINE = "echo-agent: this line is not json"
CLIENT_REQUEST_ID = "echo-ask-1"
CLIENT_REPLY_WAIT_SEC = 5.0
EXIT_DELAY_SEC = 0.3


class EchoAgentError(RuntimeError):
    def __init__(self, code: int, message: str, data: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.code = int(code)
        self.message = message
        self.data = data or {}


class EchoAgent:
    """Minimal ACP agent used by the ``echo`` provider and integration tests."""

    def __init__(
        self,
        *,
        protocol_version: str = "1",
        prompt_delay: float = 0.0,
        silent_initialize: bool = False,
        noise: bool = False,
        exit_after_initialize: bool = False,
        ask_client: bool = False,
        stdout: Any = None,
    ) -> None:
        self._protocol_version = protocol_version
        self._prompt_delay = max(0.0, float(prompt_delay))
        self._silent_initialize = silent_initialize
        self._noise = noise
        self._exit_after_initialize = exit_after_initialize
        self._ask_client = ask_client
        self._stdout = stdout or sys.stdout
        self._write_lock = threading.Lock()
        self._cancelled = threading.Event()
        self._client_reply: Optional[Dict[str, Any]] = None
        self._client_reply_ready = threading.Event()
        self.should_exit = False

    def begin_prompt(self) -> None:
        self._cancelled.clear()

    def write(self, payload: Dict[str, Any]) -> None:
        with self._write_lock:
            if self._noise:
                self._stdout.write(NOISE_LINE + "\n")
            self._stdout.write(json.dumps(payload, ensure_ascii=True) + "\n")
            self._stdout.flush()

    def handle(self, message: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Handle one inbound message; return the reply to write, if any."""

        method = str(message.get("method") or "")
        request_id = message.get("id")
        params = message.get("params")
        if not isinstance(params, dict):
            params = {}

        if not method:
            if request_id == CLIENT_REQUEST_ID:
                self._client_reply = message
                self._client_reply_ready.set()
            return None

        if request_id is None:
            if method == "cancel":
                self._cancelled.set()
            return None

        try:
            if method == "initialize":
                if self._silent_initialize:
                    return None
                result = self._handle_initialize(params)
                if self._exit_after_initialize:
                    self.should_exit = True
            elif method == "prompt":
                result = self._handle_prompt(params)
            else:
                raise EchoAgentError(-32601, "unknown method: {0}".format(method))
            return {"jsonrpc": "2.0", "id": request_id, "result": result}
        except EchoAgentError as exc:
            return {
                "jsonrpc": "2.0",
                "id": request_id,
                "error": {"code": exc.code, "message": exc.message, "data": exc.data},
            }

    def _handle_initialize(self, params: Dict[str, Any]) -> Dict[str, Any]:
        client_info = params.get("clientInfo") if isinstance(params.get("clientInfo"), dict) else {}
        return {
            "protocolVersion": self._protocol_version,
            "agentInfo": {"name": AGENT_NAME, "version": AGENT_VERSION},
            "capabilities": {"streaming": True, "cancel": True},
            "client": str(client_info.get("name") or ""),
        }

    def _handle_prompt(self, params: Dict[str, Any]) -> Dict[str, Any]:
        text = str(params.get("prompt") or "")
        words = text.split() or [text]
        step = self._prompt_delay / max(1, len(words))

        for index, word in enumerate(words):
            if self._cancelled.wait(step) if step > 0 else self._cancelled.is_set():
                return {"stopReason": "cancelled", "text": " ".join(words[:index])}
            self.write(
                {
                    "jsonrpc": "2.0",
                    "method": "session/update",
                    "params": {
                        "update": {
                            "kind": "agent_message_chunk",
                            "index": index,
                            "content": {"type": "text", "text": word},
                        }
                    },
                }
            )

        result: Dict[str, Any] = {"stopReason": "end_turn", "text": text}
        if self._ask_client:
            result["clientReply"] = self._ask_client_once()
        return result

    def _ask_client_once(self) -> Optional[Dict[str, Any]]:
        self._client_reply_ready.clear()
        self.write(
            {
                "jsonrpc": "2.0",
                "id": CLIENT_REQUEST_ID,
                "method": "fs/read_text_file",
                "params": {"path": "README.md"},
            }
        )
        if not self._client_reply_ready.wait(CLIENT_REPLY_WAIT_SEC):
            return None
        return self._client_reply


def _read_json_line(line: str) -> Optional[Dict[str, Any]]:
    text = line.strip()
    if not text:
        return None
    try:
        value = json.loads(text)
    except json.JSONDecodeError:
        return None
    if not isinstance(value, dict):
        return None
    return value


def serve(agent: EchoAgent, stdin: Any = None) -> int:
    def _handle_async(message: Dict[str, Any]) -> None:
        reply = agent.handle(message)
        if reply is not None:
            agent.write(reply)

    sys.stderr.write("echo agent ready\n")
    sys.stderr.flush()
    for line in stdin or sys.stdin:
        message = _read_json_line(line)
        if message is None:
            continue
        if message.get("method") == "prompt":
            # Reset before reading on, so a cancel that follows is never lost.
            agent.begin_prompt()
            worker = threading.Thread(target=_handle_async, args=(dict(message),), daemon=True)
            worker.start()
            continue
        reply = agent.handle(message)
        if reply is not None:
            agent.write(reply)
        if agent.should_exit:
            # Let the client finish the handshake before the pipe closes.
            time.sleep(EXIT_DELAY_SEC)
            return 0
    return 0


def run(
    protocol_version: str = typer.Option("1", "--protocol-version", help="Protocol version reported by initialize."),
    prompt_delay: float = typer.Option(0.0, "--prompt-delay", help="Seconds spread across streamed prompt chunks."),
    silent_initialize: bool = typer.Option(False, "--silent-initialize", help="Never answer initialize."),
    noise: bool = typer.Option(False, "--noise", help="Write a non-JSON line before each message."),
    exit_after_initialize: bool = typer.Option(False, "--exit-after-initialize", help="Exit after the handshake."),
    ask_client: bool = typer.Option(False, "--ask-client", help="Send one request to the client during prompt."),
) -> None:
    agent = EchoAgent(
        protocol_version=protocol_version,
        prompt_delay=prompt_delay,
        silent_initialize=silent_initialize,
        noise=noise,
        exit_after_initialize=exit_after_initialize,
        ask_client=ask_client,
    )
    raise typer.Exit(code=serve(agent))


def main() -> None:
    typer.run(run)


if __name__ == "__main__":  # pragma: no cover
    main()
