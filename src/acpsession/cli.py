"""Typer CLI entrypoints for acpsession."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import List, Optional

import typer

from acpsession.config import (
    ProjectConfigError,
    Settings,
    initialize_project_config,
    load_settings,
)
from acpsession.session.manager import SessionManager
from acpsession.session.router import SessionEvent
from acpsession.session.supervisor import default_provider_registry
from acpsession.ui.render import (
    render_event_line,
    render_notice,
    render_providers,
    render_result_panel,
)

app = typer.Typer(
    no_args_is_help=True,
    help="ACP 会话管理器 (ACP session manager)",
)


def _load_settings_or_exit() -> Settings:
    try:
        return load_settings()
    except ProjectConfigError as exc:
        typer.echo(
            render_notice(
                "error",
                "项目配置无效：{0}".format(exc),
                "Invalid project config. Fix it or run `acpsession init --force`.",
            ),
            err=True,
        )
        raise typer.Exit(code=2)


@app.command("init")
def init_cmd(
    force: bool = typer.Option(
        False,
        "--force",
        help="重建 .acpsession_config（会先删除已有目录） (Recreate config directory)",
    ),
) -> None:
    try:
        config_root = initialize_project_config(force=force)
    except ProjectConfigError as exc:
        typer.echo(render_notice("error", str(exc)), err=True)
        raise typer.Exit(code=2)

    typer.echo(
        render_notice(
            "success",
            "项目配置初始化完成：{0}".format(config_root),
            "Initialized project config at: {0}".format(config_root),
        )
    )


@app.command("providers")
def providers_cmd() -> None:
    settings = _load_settings_or_exit()
    registry = default_provider_registry()
    rows = []
    for provider_id in registry.provider_ids():
        spec = registry.lookup(provider_id, settings)
        if spec is None:
            continue
        rows.append(
            {
                "provider_id": provider_id,
                "command": " ".join(spec.argv),
                "override": settings.acp.provider_path(provider_id),
            }
        )
    render_providers(rows, stream=sys.stdout)


@app.command("run")
def run_cmd(
    text_parts: List[str] = typer.Argument(..., help="发送给智能体的提示 (Prompt for the agent)"),
    provider: str = typer.Option("echo", "--provider", help="Provider ID，例如 echo|gemini (Provider id)"),
    workspace: str = typer.Option("default", "--workspace", help="工作区 ID (Workspace id)"),
    cwd: Optional[Path] = typer.Option(None, "--cwd", help="智能体工作目录 (Agent working directory)"),
) -> None:
    settings = _load_settings_or_exit()
    stream = sys.stdout
    manager = SessionManager(settings)

    def _on_event(event: SessionEvent) -> None:
        render_event_line(event.as_dict(), stream=stream)

    subscription = manager.subscribe(_on_event)
    exit_code = 1
    try:
        opened = manager.new_session(provider, workspace, (cwd or settings.project_root).resolve())
        if not opened.success or not opened.session_id:
            typer.echo(
                render_notice(
                    "error",
                    "会话启动失败：{0}".format(opened.error),
                    "Failed to start session ({0}).".format(opened.error_kind),
                ),
                err=True,
            )
        else:
            outcome = manager.prompt(opened.session_id, " ".join(text_parts))
            render_result_panel(outcome.as_dict(), stream=stream)
            exit_code = 0 if outcome.success else 1
    finally:
        subscription.unsubscribe()
        manager.close()

    raise typer.Exit(code=exit_code)


def main() -> None:
    app()


if __name__ == "__main__":  # pragma: no cover
    main()
