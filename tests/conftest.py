from __future__ import annotations

import sys
import threading
from pathlib import Path
from typing import Callable, List

import pytest

from acpsession.config import (
    ACPSettings,
    Settings,
    initialize_project_config,
    resolve_project_config_root,
)
from acpsession.session.manager import SessionManager
from acpsession.session.router import SessionEvent
from acpsession.session.supervisor import ECHO_AGENT_MODULE, SpawnSpec


@pytest.fixture
def isolated_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    workspace = tmp_path / "workspace"
    workspace.mkdir(parents=True, exist_ok=True)

    monkeypatch.chdir(workspace)
    initialize_project_config(workspace_dir=workspace)

    return {
        "workspace": workspace,
        "config_root": resolve_project_config_root(workspace),
    }


def _make_settings(
    root: Path,
    *,
    enabled: bool = True,
    initialize_ms: int = 10000,
    prompt_ms: int = 10000,
    session_logs_enabled: bool = True,
) -> Settings:
    return Settings(
        project_root=root,
        config_root=root / ".acpsession_config",
        acp=ACPSettings(enabled=enabled, initialize_ms=initialize_ms, prompt_ms=prompt_ms),
        session_logs_enabled=session_logs_enabled,
    )


def _echo_spec(*flags: str) -> SpawnSpec:
    return SpawnSpec(command=sys.executable, args=["-m", ECHO_AGENT_MODULE] + list(flags))


class EventRecorder:
    """Subscriber that keeps every event and lets tests wait for one."""

    def __init__(self) -> None:
        self.events: List[SessionEvent] = []
        self._lock = threading.Lock()
        self._changed = threading.Condition(self._lock)

    def __call__(self, event: SessionEvent) -> None:
        with self._changed:
            self.events.append(event)
            self._changed.notify_all()

    def of_type(self, event_type: str) -> List[SessionEvent]:
        with self._lock:
            return [event for event in self.events if event.type == event_type]

    def wait_for(self, predicate: Callable[[SessionEvent], bool], timeout: float = 5.0) -> bool:
        with self._changed:
            return self._changed.wait_for(
                lambda: any(predicate(event) for event in self.events),
                timeout=timeout,
            )


@pytest.fixture
def settings_factory(tmp_path: Path) -> Callable[..., Settings]:
    def _factory(**overrides) -> Settings:
        return _make_settings(tmp_path, **overrides)

    return _factory


@pytest.fixture
def settings(settings_factory) -> Settings:
    return settings_factory()


@pytest.fixture
def echo_spec() -> Callable[..., SpawnSpec]:
    return _echo_spec


@pytest.fixture
def manager(settings: Settings):
    service = SessionManager(settings)
    yield service
    service.close()


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder()
