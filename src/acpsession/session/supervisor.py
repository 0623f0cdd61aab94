"""Provider registry and subprocess supervision for ACP agents."""

from __future__ import annotations

import os
import subprocess
import sys
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional

from acpsession.config import Settings
from acpsession.errors import ProcessSpawnFailed, SpawnError, WriteFailed

READ_CHUNK_BYTES = 64 * 1024
KILL_WAIT_SEC = 1.0
DRAIN_WAIT_SEC = 2.0

ECHO_AGENT_MODULE = "acpsession.agents.echo_agent"


@dataclass(frozen=True)
class SpawnSpec:
    command: str
    args: List[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)

    @property
    def argv(self) -> List[str]:
        return [self.command] + list(self.args)


SpawnSpecFactory = Callable[[Settings], SpawnSpec]


def _gemini_spec(settings: Settings) -> SpawnSpec:
    command = settings.acp.provider_path("gemini") or ("gemini.cmd" if sys.platform == "win32" else "gemini")
    return SpawnSpec(command=command)


def _echo_spec(settings: Settings) -> SpawnSpec:
    command = settings.acp.provider_path("echo") or sys.executable
    return SpawnSpec(command=command, args=["-m", ECHO_AGENT_MODULE])


class ProviderRegistry:
    """Static map of provider id to a spawn specification factory."""

    def __init__(self, factories: Optional[Dict[str, SpawnSpecFactory]] = None) -> None:
        self._factories: Dict[str, SpawnSpecFactory] = dict(factories or {})

    def register(self, provider_id: str, factory: SpawnSpecFactory) -> None:
        self._factories[str(provider_id).strip().lower()] = factory

    def provider_ids(self) -> List[str]:
        return sorted(self._factories)

    def lookup(self, provider_id: str, settings: Settings) -> Optional[SpawnSpec]:
        factory = self._factories.get(str(provider_id or "").strip().lower())
        if factory is None:
            return None
        return factory(settings)


def default_provider_registry() -> ProviderRegistry:
    return ProviderRegistry({"gemini": _gemini_spec, "echo": _echo_spec})


@dataclass
class ProcessCallbacks:
    on_stdout: Callable[[bytes], None]
    on_stderr: Callable[[bytes], None]
    on_exit: Callable[[Optional[int]], None]
    on_error: Callable[[BaseException], None]


class ProcessHandle:
    """Exclusive owner of one agent subprocess and its three pipes."""

    def __init__(self, process: "subprocess.Popen[bytes]", callbacks: ProcessCallbacks, label: str = "") -> None:
        self._process = process
        self._callbacks = callbacks
        self._label = label or "agent"
        self._write_lock = threading.Lock()
        self._kill_lock = threading.Lock()
        self._killed = False
        self._stdout_thread = threading.Thread(
            target=self._read_loop,
            args=(process.stdout, callbacks.on_stdout),
            name="{0}-stdout".format(self._label),
            daemon=True,
        )
        self._stderr_thread = threading.Thread(
            target=self._read_loop,
            args=(process.stderr, callbacks.on_stderr),
            name="{0}-stderr".format(self._label),
            daemon=True,
        )
        self._exit_thread = threading.Thread(
            target=self._wait_loop,
            name="{0}-exit".format(self._label),
            daemon=True,
        )

    def start(self) -> None:
        self._stdout_thread.start()
        self._stderr_thread.start()
        self._exit_thread.start()

    @property
    def pid(self) -> int:
        return int(self._process.pid)

    @property
    def killed(self) -> bool:
        return self._killed

    def write_line(self, line: str) -> None:
        stdin = self._process.stdin
        if stdin is None:
            raise WriteFailed("agent stdin is not available")
        data = line.encode("utf-8")
        with self._write_lock:
            try:
                stdin.write(data)
                stdin.flush()
            except BrokenPipeError as exc:
                raise WriteFailed("agent pipe is closed: {0}".format(exc)) from exc
            except (OSError, ValueError) as exc:
                raise WriteFailed("failed to write to agent: {0}".format(exc)) from exc

    def kill(self) -> None:
        with self._kill_lock:
            if self._killed:
                return
            self._killed = True
        process = self._process

        try:
            if process.stdin:
                process.stdin.close()
        except Exception:
            pass

        if process.poll() is None:
            try:
                process.terminate()
                process.wait(timeout=KILL_WAIT_SEC)
            except Exception:
                try:
                    process.kill()
                    process.wait(timeout=KILL_WAIT_SEC)
                except Exception:
                    pass

    def _read_loop(self, stream, sink: Callable[[bytes], None]) -> None:
        if stream is None:
            return
        try:
            while True:
                chunk = stream.read1(READ_CHUNK_BYTES)
                if not chunk:
                    break
                try:
                    sink(chunk)
                except Exception as exc:
                    self._report_error(exc)
        except (OSError, ValueError) as exc:
            if not self._killed:
                self._report_error(exc)
        finally:
            try:
                stream.close()
            except Exception:
                pass

    def _wait_loop(self) -> None:
        try:
            code = self._process.wait()
        except Exception as exc:
            self._report_error(exc)
            code = None
        # Deliver everything the agent wrote before announcing the exit.
        self._stdout_thread.join(timeout=DRAIN_WAIT_SEC)
        self._stderr_thread.join(timeout=DRAIN_WAIT_SEC)
        try:
            self._callbacks.on_exit(code)
        except Exception as exc:
            self._report_error(exc)

    def _report_error(self, exc: BaseException) -> None:
        try:
            self._callbacks.on_error(exc)
        except Exception:
            pass


class ProcessSupervisor:
    """Resolve providers to spawn specs and launch them."""

    def __init__(self, settings: Settings, registry: Optional[ProviderRegistry] = None) -> None:
        self._settings = settings
        self._registry = registry or default_provider_registry()

    @property
    def registry(self) -> ProviderRegistry:
        return self._registry

    def resolve(self, provider_id: str, override: Optional[SpawnSpec] = None) -> SpawnSpec:
        if override is not None:
            if not str(override.command or "").strip():
                raise SpawnError("spawn override command is empty", provider_id=provider_id)
            return override
        spec = self._registry.lookup(provider_id, self._settings)
        if spec is None:
            raise SpawnError(
                "Provider {0} not found in registry".format(provider_id or "<empty>"),
                provider_id=provider_id,
            )
        return spec

    def spawn(
        self,
        provider_id: str,
        cwd: Path,
        callbacks: ProcessCallbacks,
        override: Optional[SpawnSpec] = None,
        label: str = "",
    ) -> ProcessHandle:
        spec = self.resolve(provider_id, override)
        try:
            process = subprocess.Popen(
                spec.argv,
                cwd=str(cwd),
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=self._build_env(spec),
            )
        except FileNotFoundError as exc:
            raise ProcessSpawnFailed(
                "agent command not found: {0}".format(spec.command),
                provider_id=provider_id,
            ) from exc
        except OSError as exc:
            raise ProcessSpawnFailed(
                "failed to start agent: {0}".format(exc),
                provider_id=provider_id,
            ) from exc

        handle = ProcessHandle(process, callbacks, label=label or provider_id)
        handle.start()
        return handle

    @staticmethod
    def _build_env(spec: SpawnSpec) -> Dict[str, str]:
        env = dict(os.environ)
        # Let the bundled agent import this package even when running from a
        # source checkout that is not installed.
        try:
            src_root = Path(__file__).resolve().parents[2]
            if (src_root / "acpsession").is_dir():
                src_text = str(src_root)
                current = str(env.get("PYTHONPATH") or "")
                parts = [item for item in current.split(os.pathsep) if item]
                if src_text not in parts:
                    env["PYTHONPATH"] = os.pathsep.join([src_text] + parts) if parts else src_text
        except Exception:
            pass
        env.update(spec.env)
        return env
