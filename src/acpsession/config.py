"""Configuration loading and directory resolution for acpsession."""

from __future__ import annotations

import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

try:  # pragma: no cover - exercised on Python 3.11+
    import tomllib
except ModuleNotFoundError:  # pragma: no cover - fallback for Python 3.9/3.10
    import tomli as tomllib  # type: ignore[no-redef]

CONFIG_DIR_NAME = ".acpsession_config"
CONFIG_FILE_NAME = "config.toml"
LOGS_DIR_NAME = "logs"
SESSION_LOGS_SUBDIR = "acp"

KNOWN_PROVIDER_IDS = ("gemini", "echo")

DEFAULT_ACP_ENABLED = True
DEFAULT_INITIALIZE_MS = 15000
MIN_INITIALIZE_MS = 1000
MAX_INITIALIZE_MS = 60000
DEFAULT_PROMPT_MS = 600000
MIN_PROMPT_MS = 10000
MAX_PROMPT_MS = 3600000

DEFAULT_LOGS_ENABLED = True
DEFAULT_LOGS_MAX_FILE_BYTES = 10 * 1024 * 1024
DEFAULT_LOGS_MAX_FILES = 5
DEFAULT_LOGS_REDACTION = "default"
ALLOWED_LOG_REDACTION = ("default", "none", "strict")
DEFAULT_SESSION_LOGS_ENABLED = True


class ProjectConfigError(RuntimeError):
    """Raised when project configuration is missing or invalid."""


@dataclass
class ACPSettings:
    enabled: bool = DEFAULT_ACP_ENABLED
    provider_paths: Dict[str, str] = field(default_factory=dict)
    initialize_ms: int = DEFAULT_INITIALIZE_MS
    prompt_ms: int = DEFAULT_PROMPT_MS

    def provider_path(self, provider_id: str) -> str:
        return str(self.provider_paths.get(provider_id) or "").strip()


@dataclass
class ProjectConfig:
    acp: ACPSettings = field(default_factory=ACPSettings)
    logs_enabled: bool = DEFAULT_LOGS_ENABLED
    logs_max_file_bytes: int = DEFAULT_LOGS_MAX_FILE_BYTES
    logs_max_files: int = DEFAULT_LOGS_MAX_FILES
    logs_redaction: str = DEFAULT_LOGS_REDACTION
    session_logs_enabled: bool = DEFAULT_SESSION_LOGS_ENABLED
    session_logs_dir: str = ""


@dataclass
class Settings:
    """Resolved runtime settings for one service instance."""

    project_root: Path
    config_root: Path
    acp: ACPSettings = field(default_factory=ACPSettings)
    logs_enabled: bool = DEFAULT_LOGS_ENABLED
    logs_max_file_bytes: int = DEFAULT_LOGS_MAX_FILE_BYTES
    logs_max_files: int = DEFAULT_LOGS_MAX_FILES
    logs_redaction: str = DEFAULT_LOGS_REDACTION
    session_logs_enabled: bool = DEFAULT_SESSION_LOGS_ENABLED
    session_logs_dir: Optional[Path] = None

    @property
    def logs_dir(self) -> Path:
        return self.config_root / LOGS_DIR_NAME

    @property
    def session_logs_root(self) -> Path:
        if self.session_logs_dir is not None:
            return self.session_logs_dir
        return self.logs_dir / SESSION_LOGS_SUBDIR


def resolve_project_root(workspace_dir: Optional[Path] = None) -> Path:
    return (workspace_dir or Path.cwd()).resolve()


def resolve_project_config_root(workspace_dir: Optional[Path] = None) -> Path:
    return resolve_project_root(workspace_dir) / CONFIG_DIR_NAME


def project_config_exists(workspace_dir: Optional[Path] = None) -> bool:
    config_root = resolve_project_config_root(workspace_dir)
    return config_root.is_dir() and (config_root / CONFIG_FILE_NAME).is_file()


def _clamp(value: object, default: int, minimum: int, maximum: int) -> int:
    try:
        converted = int(value)  # type: ignore[call-overload]
    except (TypeError, ValueError):
        converted = default
    return max(minimum, min(maximum, converted))


def clamp_initialize_ms(value: object) -> int:
    return _clamp(value, DEFAULT_INITIALIZE_MS, MIN_INITIALIZE_MS, MAX_INITIALIZE_MS)


def clamp_prompt_ms(value: object) -> int:
    return _clamp(value, DEFAULT_PROMPT_MS, MIN_PROMPT_MS, MAX_PROMPT_MS)


def _safe_positive_int_or_default(value: object, default: int) -> int:
    try:
        converted = int(value)  # type: ignore[call-overload]
    except (TypeError, ValueError):
        return default
    if converted <= 0:
        return default
    return converted


def _safe_bool(value: object, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
    return default


def _safe_redaction(value: object, default: str) -> str:
    normalized = str(value or default).strip().lower()
    if normalized not in ALLOWED_LOG_REDACTION:
        return default
    return normalized


def _safe_provider_paths(data: object) -> Dict[str, str]:
    if not isinstance(data, dict):
        return {}
    paths: Dict[str, str] = {}
    for key, raw in data.items():
        provider_id = str(key or "").strip().lower()
        if not provider_id or not isinstance(raw, dict):
            continue
        path = str(raw.get("path") or "").strip()
        if path:
            paths[provider_id] = path
    return paths


def _parse_project_config_data(data: Dict[str, object]) -> ProjectConfig:
    acp = data.get("acp") if isinstance(data.get("acp"), dict) else {}
    timeouts = acp.get("timeouts") if isinstance(acp.get("timeouts"), dict) else {}  # type: ignore[union-attr]
    runtime = data.get("runtime") if isinstance(data.get("runtime"), dict) else {}
    logs = runtime.get("logs") if isinstance(runtime.get("logs"), dict) else {}  # type: ignore[union-attr]
    session_logs = (
        runtime.get("session_logs")  # type: ignore[union-attr]
        if isinstance(runtime.get("session_logs"), dict)  # type: ignore[union-attr]
        else {}
    )

    acp_settings = ACPSettings(
        enabled=_safe_bool(acp.get("enabled"), DEFAULT_ACP_ENABLED),  # type: ignore[union-attr]
        provider_paths=_safe_provider_paths(acp.get("providers")),  # type: ignore[union-attr]
        initialize_ms=clamp_initialize_ms(timeouts.get("initialize_ms", DEFAULT_INITIALIZE_MS)),  # type: ignore[union-attr]
        prompt_ms=clamp_prompt_ms(timeouts.get("prompt_ms", DEFAULT_PROMPT_MS)),  # type: ignore[union-attr]
    )
    return ProjectConfig(
        acp=acp_settings,
        logs_enabled=_safe_bool(logs.get("enabled"), DEFAULT_LOGS_ENABLED),  # type: ignore[union-attr]
        logs_max_file_bytes=_safe_positive_int_or_default(
            logs.get("max_file_bytes"),  # type: ignore[union-attr]
            DEFAULT_LOGS_MAX_FILE_BYTES,
        ),
        logs_max_files=_safe_positive_int_or_default(
            logs.get("max_files"),  # type: ignore[union-attr]
            DEFAULT_LOGS_MAX_FILES,
        ),
        logs_redaction=_safe_redaction(logs.get("redaction"), DEFAULT_LOGS_REDACTION),  # type: ignore[union-attr]
        session_logs_enabled=_safe_bool(
            session_logs.get("enabled"),  # type: ignore[union-attr]
            DEFAULT_SESSION_LOGS_ENABLED,
        ),
        session_logs_dir=str(session_logs.get("dir") or "").strip(),  # type: ignore[union-attr]
    )


def _toml_string(value: str) -> str:
    return '"{0}"'.format(str(value or "").replace("\\", "\\\\").replace('"', '\\"'))


def _render_project_config(config: ProjectConfig) -> str:
    lines: List[str] = [
        "[acp]",
        "enabled = {0}".format(str(bool(config.acp.enabled)).lower()),
        "",
    ]
    provider_ids = list(KNOWN_PROVIDER_IDS)
    for provider_id in sorted(config.acp.provider_paths):
        if provider_id not in provider_ids:
            provider_ids.append(provider_id)
    for provider_id in provider_ids:
        lines.extend(
            [
                "[acp.providers.{0}]".format(provider_id),
                "path = {0}".format(_toml_string(config.acp.provider_path(provider_id))),
                "",
            ]
        )
    lines.extend(
        [
            "[acp.timeouts]",
            "initialize_ms = {0}".format(clamp_initialize_ms(config.acp.initialize_ms)),
            "prompt_ms = {0}".format(clamp_prompt_ms(config.acp.prompt_ms)),
            "",
            "[runtime.logs]",
            "enabled = {0}".format(str(bool(config.logs_enabled)).lower()),
            "max_file_bytes = {0}".format(
                _safe_positive_int_or_default(config.logs_max_file_bytes, DEFAULT_LOGS_MAX_FILE_BYTES)
            ),
            "max_files = {0}".format(_safe_positive_int_or_default(config.logs_max_files, DEFAULT_LOGS_MAX_FILES)),
            "redaction = {0}".format(_toml_string(_safe_redaction(config.logs_redaction, DEFAULT_LOGS_REDACTION))),
            "",
            "[runtime.session_logs]",
            "enabled = {0}".format(str(bool(config.session_logs_enabled)).lower()),
            "dir = {0}".format(_toml_string(config.session_logs_dir)),
            "",
        ]
    )
    return "\n".join(lines)


def initialize_project_config(workspace_dir: Optional[Path] = None, force: bool = False) -> Path:
    project_root = resolve_project_root(workspace_dir)
    config_root = resolve_project_config_root(project_root)
    config_file = config_root / CONFIG_FILE_NAME

    if config_root.exists():
        if not force:
            raise ProjectConfigError(
                "configuration directory already exists: {0}".format(config_root)
            )
        shutil.rmtree(config_root)

    (config_root / LOGS_DIR_NAME / SESSION_LOGS_SUBDIR).mkdir(parents=True, exist_ok=True)
    config_file.write_text(_render_project_config(ProjectConfig()), encoding="utf-8")
    return config_root


def load_project_config(config_root: Optional[Path] = None, workspace_dir: Optional[Path] = None) -> ProjectConfig:
    """Read the project config; a missing file yields defaults."""

    resolved_root = (config_root or resolve_project_config_root(workspace_dir)).resolve()
    config_file = resolved_root / CONFIG_FILE_NAME
    if not config_file.is_file():
        return ProjectConfig()

    try:
        parsed = tomllib.loads(config_file.read_text(encoding="utf-8"))
    except Exception as exc:
        raise ProjectConfigError("invalid config file: {0}".format(config_file)) from exc

    if not isinstance(parsed, dict):
        raise ProjectConfigError("invalid config file: {0}".format(config_file))

    return _parse_project_config_data(parsed)


def save_project_config(
    config: ProjectConfig,
    config_root: Optional[Path] = None,
    workspace_dir: Optional[Path] = None,
) -> Path:
    resolved_root = (config_root or resolve_project_config_root(workspace_dir)).resolve()
    config_file = resolved_root / CONFIG_FILE_NAME
    if not resolved_root.is_dir():
        raise ProjectConfigError(
            "missing project config directory: {0}, run `acpsession init` first".format(resolved_root)
        )
    config_file.write_text(_render_project_config(config), encoding="utf-8")
    return config_file


def load_settings(workspace_dir: Optional[Path] = None) -> Settings:
    """Resolve settings from project config, falling back to defaults."""

    project_root = resolve_project_root(workspace_dir)
    config_root = resolve_project_config_root(project_root)
    project_config = load_project_config(config_root=config_root)

    session_logs_dir: Optional[Path] = None
    if project_config.session_logs_dir:
        candidate = Path(project_config.session_logs_dir).expanduser()
        if not candidate.is_absolute():
            candidate = project_root / candidate
        session_logs_dir = candidate

    return Settings(
        project_root=project_root,
        config_root=config_root,
        acp=project_config.acp,
        logs_enabled=project_config.logs_enabled,
        logs_max_file_bytes=project_config.logs_max_file_bytes,
        logs_max_files=project_config.logs_max_files,
        logs_redaction=project_config.logs_redaction,
        session_logs_enabled=project_config.session_logs_enabled,
        session_logs_dir=session_logs_dir,
    )
