"""CLI entrypoint for phaseloop."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from phaseloop.config.loader import load_config, resolve_goal, validate_config
from phaseloop.config.schema import PhaseloopConfig
from phaseloop.coordinator.feedback import FeedbackInbox
from phaseloop.coordinator.loop import Orchestrator
from phaseloop.coordinator.state_store import CheckpointManager, SessionStore
from phaseloop.errors import OrchestratorError
from phaseloop.logger import setup_logging
from phaseloop.protocol.io import read_json
from phaseloop.protocol.models import FeedbackAttachment

logger = logging.getLogger(__name__)

_config_option = click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="YAML config file (default: ./phaseloop.yaml if present)",
)
_project_option = click.option(
    "--project-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Override the project directory from config",
)


@click.group()
def main() -> None:
    """Phaseloop autonomous development orchestrator."""


def _load(config_path: Path | None, project_dir: Path | None) -> PhaseloopConfig:
    try:
        cfg = load_config(config_path)
    except OrchestratorError as exc:
        raise click.ClickException(str(exc)) from exc
    if project_dir is not None:
        cfg.run.project_dir = str(project_dir)
    return cfg


@main.command("run")
@_config_option
@_project_option
@click.option("--goal", default=None, help="Goal text; overrides GOAL.md and GOAL")
@click.option(
    "--max-iterations",
    type=int,
    default=None,
    help="Override the iteration cap, including for resumed sessions",
)
@click.option("--debug", "debug_flag", is_flag=True, help="Enable debug logging")
@click.option("--json-logs", is_flag=True, help="Emit JSON log lines")
def run_command(
    config_path: Path | None,
    project_dir: Path | None,
    goal: str | None,
    max_iterations: int | None,
    debug_flag: bool,
    json_logs: bool,
) -> None:
    """Drive the goal through planning, implementation, testing and completion."""
    cfg = _load(config_path, project_dir)
    if max_iterations is not None:
        cfg.run.max_iterations = max_iterations
    setup_logging(
        level=cfg.run.log_level,
        debug=debug_flag,
        json_output=json_logs,
        log_file=cfg.state_path / cfg.run.log_file,
    )
    try:
        validate_config(cfg)
        goal_text = resolve_goal(cfg, goal)
        code = asyncio.run(Orchestrator(cfg, goal_text, max_iterations=max_iterations).run())
    except OrchestratorError as exc:
        logger.error("Fatal error: %s", exc)
        raise SystemExit(1) from exc
    raise SystemExit(code)


def _parse_attachment(value: str) -> FeedbackAttachment:
    name, sep, url = value.partition("=")
    if not sep or not name or not url:
        raise click.BadParameter(f"expected NAME=URL, got {value!r}", param_hint="--attach")
    return FeedbackAttachment(name=name, url=url)


@main.command("feedback")
@_config_option
@_project_option
@click.argument("text", nargs=-1, required=True)
@click.option("--author", default="cli", show_default=True, help="Author tag shown to the agent")
@click.option("--attach", "attach", multiple=True, help="Attachment as NAME=URL (repeatable)")
def feedback_command(
    config_path: Path | None,
    project_dir: Path | None,
    text: tuple[str, ...],
    author: str,
    attach: tuple[str, ...],
) -> None:
    """Send feedback to a running orchestrator; it preempts the current phase."""
    cfg = _load(config_path, project_dir)
    content = " ".join(text).strip()
    if not content:
        raise click.ClickException("Feedback text is required")
    attachments = [_parse_attachment(a) for a in attach]
    item = FeedbackInbox(cfg.inbox_path).submit(author, content, attachments)
    click.echo(f"Queued feedback {item.id} in {cfg.inbox_path}")


@main.command("status")
@_config_option
@_project_option
@click.option("--checkpoints", "show_checkpoints", default=5, show_default=True, help="How many checkpoints to list")
def status_command(config_path: Path | None, project_dir: Path | None, show_checkpoints: int) -> None:
    """Show the persisted session and the newest checkpoints."""
    cfg = _load(config_path, project_dir)
    console = Console()
    store = SessionStore(cfg.state_path)
    raw = read_json(store.path, default=None)
    if not isinstance(raw, dict):
        console.print(f"No session state at {store.path}")
        raise SystemExit(1)

    metrics = raw.get("metrics", {}) if isinstance(raw.get("metrics"), dict) else {}
    errors = raw.get("errors", []) if isinstance(raw.get("errors"), list) else []
    session = Table(title="Session", show_header=False)
    session.add_column("field", style="bold")
    session.add_column("value")
    session.add_row("phase", str(raw.get("phase")))
    session.add_row("iteration", f"{raw.get('iteration', 0)}/{raw.get('max_iterations', '?')}")
    session.add_row("session handle", str(raw.get("session_handle") or "-"))
    session.add_row("started", str(raw.get("start_time", "-")))
    session.add_row(
        "operations",
        f"total={metrics.get('total_operations', 0)} "
        f"ok={metrics.get('successful_operations', 0)} "
        f"fail={metrics.get('failed_operations', 0)}",
    )
    unrecovered = sum(1 for e in errors if isinstance(e, dict) and not e.get("recovered"))
    session.add_row("errors", f"{len(errors)} ({unrecovered} unrecovered)")
    session.add_row("pending feedback", str(FeedbackInbox(cfg.inbox_path).pending()))
    console.print(session)

    files = CheckpointManager(cfg.state_path).checkpoints()[: max(show_checkpoints, 0)]
    if not files:
        return
    table = Table(title="Checkpoints")
    table.add_column("file", overflow="fold")
    table.add_column("status")
    table.add_column("phase")
    table.add_column("iteration", justify="right")
    for path in files:
        data = read_json(path, default={})
        if not isinstance(data, dict):
            continue
        table.add_row(
            path.name,
            str(data.get("status", "")),
            str(data.get("phase", "")),
            str(data.get("iteration", "")),
        )
    console.print(table)


if __name__ == "__main__":
    main()
