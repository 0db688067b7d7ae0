"""CLI entry point for the autobuild orchestrator."""

import asyncio
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, TypeVar

import click
import structlog

from autobuild.config.settings import OrchestratorSettings
from autobuild.coordinator.client import ControlClient, HttpLockClient
from autobuild.coordinator.file_coordinator import FileCoordinator
from autobuild.coordinator.server import CoordinatorServer
from autobuild.engine.orchestrator import Orchestrator
from autobuild.engine.state_manager import SessionStore
from autobuild.enums import SessionStatus, WorkerPhase
from autobuild.exceptions import AutoBuildError, ConfigurationError
from autobuild.providers.beads import BeadsTracker
from autobuild.providers.external_agent import ClaudeCodeRunner
from autobuild.providers.git_commit import GitCommitter
from autobuild.utils.logging_config import configure_logging

log = structlog.get_logger(__name__)

T = TypeVar("T")

DEFAULT_CONFIG = "autobuild.yaml"


@click.group()
@click.option("--config", default=DEFAULT_CONFIG, help="Path to configuration file")
@click.option("--log-level", default="INFO", help="Logging level")
@click.option("--json-logs/--console-logs", default=True, help="Log as JSON lines or as console output")
@click.pass_context
def cli(ctx: click.Context, config: str, log_level: str, json_logs: bool) -> None:
    """autobuild: run coding agents over a beads issue queue."""
    configure_logging(log_level, json_logs=json_logs)

    config_path = Path(config)
    try:
        if config_path.exists():
            settings = OrchestratorSettings.from_yaml(str(config_path))
        elif config != DEFAULT_CONFIG:
            raise ConfigurationError(f"Configuration file not found: {config}")
        else:
            settings = OrchestratorSettings()
    except ConfigurationError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug("config_error", exc_info=True)
        sys.exit(1)

    ctx.obj = {"settings": settings}


def _invoke(operation: Callable[[], Awaitable[T]], event: str) -> T:
    """Run a coroutine the way every command does, mapping errors to exit codes."""
    try:
        return asyncio.run(operation())
    except AutoBuildError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug(f"{event}_error", exc_info=True)
        sys.exit(1)
    except KeyboardInterrupt:
        click.echo("\nInterrupted by user", err=True)
        sys.exit(130)
    except Exception as e:
        click.echo(f"Unexpected error: {e}", err=True)
        log.error(f"{event}_unexpected", exc_info=True)
        sys.exit(1)


@cli.command()
@click.argument("issue_ids", nargs=-1)
@click.option("--epic", help="Queue the open children of this epic")
@click.option("--resume", is_flag=True, help="Resume the persisted session")
@click.pass_context
def run(ctx: click.Context, issue_ids: tuple[str, ...], epic: str | None, resume: bool) -> None:
    """Process issues until the queue is drained.

    With no ISSUE_IDS and no --epic, every open issue is queued.
    """
    settings = ctx.obj["settings"]
    _invoke(lambda: _run_session(settings, list(issue_ids), epic, resume), "run")


async def _run_session(
    settings: OrchestratorSettings,
    issue_ids: list[str],
    epic: str | None,
    resume: bool,
) -> None:
    coordinator = FileCoordinator(lease_timeout=settings.coordinator.lease_timeout)
    locks = HttpLockClient(settings.coordinator.url, timeout=settings.coordinator.request_timeout)
    agent = ClaudeCodeRunner(
        command=settings.agent.command,
        allowed_tools=settings.agent.allowed_tools,
        permission_mode=settings.agent.permission_mode,
        model=settings.agent.model,
        timeout=settings.agent.timeout,
        coordinator_url=settings.coordinator.url,
        lock_retry_interval=settings.worker.lock_retry_initial,
        lock_wait=settings.worker.edit_lock_wait,
    )
    orchestrator = Orchestrator(
        settings,
        tracker=BeadsTracker(settings.project_path, settings.tracker.command, settings.tracker.timeout),
        agent=agent,
        committer=GitCommitter(settings.project_path),
        locks=locks,
    )
    server = CoordinatorServer(
        coordinator,
        host=settings.coordinator.host,
        port=settings.coordinator.port,
        cleanup_interval=settings.coordinator.cleanup_interval,
        orchestrator=orchestrator,
    )

    try:
        await server.start()
    except RuntimeError as e:
        await locks.close()
        raise ConfigurationError(str(e)) from e

    finished = False
    try:
        restored = await orchestrator.restore() if resume else False
        if resume and not restored:
            click.echo("No session to resume; starting a new one")

        if epic:
            await orchestrator.enqueue_epic(epic)
        elif issue_ids or not restored:
            await orchestrator.enqueue(issue_ids or None)

        if restored:
            await orchestrator.resume()
        else:
            await orchestrator.start()

        click.echo(f"Auto Build running; control it at {server.url}")
        await orchestrator.wait_until_idle()

        snapshot = orchestrator.snapshot()
        click.echo(
            f"Done: {len(snapshot.completed)} completed, "
            f"{len(snapshot.human_review)} need review, {len(snapshot.queue)} still queued"
        )
        finished = (
            orchestrator.status is SessionStatus.RUNNING and not snapshot.queue and not snapshot.human_review
        )
    finally:
        # Anything short of a fully drained run stays resumable with --resume.
        if finished:
            await orchestrator.stop()
        elif orchestrator.status is not SessionStatus.IDLE:
            await orchestrator.shutdown()
        await locks.close()
        await server.stop()


def _control(ctx: click.Context) -> ControlClient:
    coordinator = ctx.obj["settings"].coordinator
    return ControlClient(coordinator.url, timeout=coordinator.request_timeout, max_attempts=1)


def _control_call(ctx: click.Context, event: str, method: str, *args: Any, **kwargs: Any) -> dict[str, Any]:
    async def call() -> dict[str, Any]:
        client = _control(ctx)
        try:
            return await getattr(client, method)(*args, **kwargs)
        finally:
            await client.close()

    return _invoke(call, event)


def format_session(payload: dict[str, Any]) -> str:
    """Render a /session payload for the terminal."""
    lines = [
        f"Session {payload['sessionId']}: {payload['status']}",
        f"Queue ({len(payload['queue'])}): {', '.join(payload['queue']) or '-'}",
        f"Completed ({len(payload['completed'])}): {', '.join(payload['completed']) or '-'}",
        f"Human review ({len(payload['humanReview'])}): {', '.join(payload['humanReview']) or '-'}",
    ]
    awaiting = payload.get("awaitingCommit") or []
    if awaiting:
        lines.append(f"Awaiting commit: {', '.join(awaiting)}")
    lines.append("Workers:")
    for worker in payload["workers"]:
        phase = WorkerPhase(worker["phase"])
        issue = worker.get("issueId") or "-"
        retries = f" (retry {worker['retryCount']})" if worker.get("retryCount") else ""
        lines.append(f"  [{worker['id']}] {phase.label:<12} {issue}{retries}")
    return "\n".join(lines)


@cli.command()
@click.option("--log", "log_limit", type=int, default=0, help="Also show this many recent activity entries")
@click.pass_context
def status(ctx: click.Context, log_limit: int) -> None:
    """Show the state of the running session."""
    click.echo(format_session(_control_call(ctx, "status", "status")))
    if log_limit > 0:
        for entry in _control_call(ctx, "status", "activity", log_limit):
            issue = f" [{entry['issueId']}]" if entry.get("issueId") else ""
            click.echo(f"{entry['timestamp']} {entry['type']:<8}{issue} {entry['message']}")


@cli.command()
@click.argument("issue_id")
@click.pass_context
def approve(ctx: click.Context, issue_id: str) -> None:
    """Approve an issue waiting in review."""
    _control_call(ctx, "approve", "approve", issue_id)
    click.echo(f"Approved {issue_id}")


@cli.command()
@click.argument("issue_id")
@click.option("--abandon", is_flag=True, help="Drop the issue instead of requeueing it")
@click.pass_context
def reject(ctx: click.Context, issue_id: str, abandon: bool) -> None:
    """Reject an issue waiting in review."""
    _control_call(ctx, "reject", "reject", issue_id, requeue=not abandon)
    click.echo(f"Rejected {issue_id} ({'abandoned' if abandon else 'requeued'})")


@cli.command()
@click.argument("issue_id")
@click.pass_context
def commit(ctx: click.Context, issue_id: str) -> None:
    """Commit an issue held at the commit boundary."""
    _control_call(ctx, "commit", "commit", issue_id)
    click.echo(f"Commit triggered for {issue_id}")


@cli.command()
@click.pass_context
def pause(ctx: click.Context) -> None:
    """Pause the running session."""
    payload = _control_call(ctx, "pause", "pause")
    click.echo(f"Session {payload['status']}")


@cli.command()
@click.pass_context
def resume(ctx: click.Context) -> None:
    """Resume a paused session."""
    payload = _control_call(ctx, "resume", "resume")
    click.echo(f"Session {payload['status']}")


@cli.command()
@click.pass_context
def stop(ctx: click.Context) -> None:
    """Stop the running session and cancel in-flight work."""
    payload = _control_call(ctx, "stop", "stop")
    click.echo(f"Session {payload['status']}")


@cli.command("serve-coordinator")
@click.pass_context
def serve_coordinator(ctx: click.Context) -> None:
    """Run the file lock service on its own."""
    config = ctx.obj["settings"].coordinator
    coordinator = FileCoordinator(lease_timeout=config.lease_timeout)
    server = CoordinatorServer(
        coordinator, host=config.host, port=config.port, cleanup_interval=config.cleanup_interval
    )
    click.echo(f"Lock service listening on {server.url}")
    _invoke(server.serve_forever, "serve_coordinator")


@cli.command("clear-session")
@click.pass_context
def clear_session(ctx: click.Context) -> None:
    """Delete the persisted session snapshot."""
    store = SessionStore(ctx.obj["settings"].session_path)
    if _invoke(store.clear, "clear_session"):
        click.echo(f"Removed {store.path}")
    else:
        click.echo("No persisted session")


if __name__ == "__main__":
    cli()
