# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Command-line interface for the broadcast engine.

This module provides a CLI for managing instances and scheduled messages
and for running scheduler passes directly against the job store, without
going through the HTTP API.

Usage:
    broadcast-engine init-db
    broadcast-engine instances add main --token SECRET --name "Main number"
    broadcast-engine jobs add --instance main --group-jid 1203630@g.us \\
        --content "Good morning" --at 2025-03-03T09:00:00Z --recurring weekly --days 1,3,5
    broadcast-engine jobs list --status pending
    broadcast-engine run-once
    broadcast-engine serve --port 8000
"""

from __future__ import annotations

import asyncio
import json
import sys
from typing import Any

import click
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from .config_loader import EngineSettings, load_settings
from .core import BroadcastEngine, JobNotFoundError, StoreUnavailableError
from .logger import configure_logging
from .models import JobStatus, MessageType, PacingPolicy, RecurrenceType, ScheduledJobCreate
from .state import InvalidTransitionError

console = Console()
err_console = Console(stderr=True)


def run_async(coro):
    """Run an async coroutine synchronously."""
    return asyncio.run(coro)


def print_error(message: str) -> None:
    """Print an error message to stderr."""
    err_console.print(f"[red]Error:[/red] {message}")


def print_success(message: str) -> None:
    console.print(f"[green]✓[/green] {message}")


def print_json(data: Any) -> None:
    """Print data as formatted JSON."""
    console.print_json(json.dumps(data, indent=2, default=str))


def get_engine(ctx: click.Context) -> BroadcastEngine:
    """Build an engine from the settings stored on the click context."""
    settings: EngineSettings = ctx.obj["settings"]
    return BroadcastEngine(**settings.engine_kwargs())


def _parse_days(value: str | None) -> list[int] | None:
    if not value:
        return None
    try:
        return [int(part) for part in value.split(",") if part.strip()]
    except ValueError as exc:
        raise click.BadParameter("days must be comma separated integers (0=Sunday)") from exc


@click.group()
@click.option("--config", "config_path", type=click.Path(dir_okay=False), help="INI configuration file.")
@click.option("--db", "db_path", help="SQLite database path (overrides configuration).")
@click.option("--log-level", help="Logging level (default: WAB_LOG_LEVEL or INFO).")
@click.pass_context
def main(ctx: click.Context, config_path: str | None, db_path: str | None, log_level: str | None) -> None:
    """Scheduled WhatsApp broadcast delivery engine."""
    settings = load_settings(config_path)
    if db_path:
        settings.db_path = db_path
    configure_logging(log_level or settings.log_level)
    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings


@main.command("init-db")
@click.pass_context
def init_db(ctx: click.Context) -> None:
    """Create the database schema."""
    engine = get_engine(ctx)
    run_async(engine.init())
    print_success(f"Database initialized at {engine.persistence.db_path}")


@main.command("run-once")
@click.pass_context
def run_once(ctx: click.Context) -> None:
    """Execute every due scheduled message once."""
    engine = get_engine(ctx)

    async def _run():
        await engine.init()
        return await engine.run_once()

    try:
        result = run_async(_run())
    except StoreUnavailableError as exc:
        print_error(str(exc))
        sys.exit(1)
    print_json({"success": True, **result})


@main.command("reclaim-stale")
@click.pass_context
def reclaim_stale(ctx: click.Context) -> None:
    """Return jobs stuck in processing to pending."""
    engine = get_engine(ctx)

    async def _run():
        await engine.init()
        return await engine.reclaim_stale()

    released = run_async(_run())
    print_success(f"Released {released} stale job(s).")


@main.command("serve")
@click.option("--host", help="Bind address (default from configuration).")
@click.option("--port", type=int, help="Port (default from configuration).")
@click.pass_context
def serve(ctx: click.Context, host: str | None, port: int | None) -> None:
    """Run the HTTP API and the background poll loop."""
    import uvicorn

    from .server import build_app

    settings: EngineSettings = ctx.obj["settings"]
    app = build_app(settings)
    uvicorn.run(app, host=host or settings.http_host, port=port or settings.http_port)


# ============================================================================
# Instances
# ============================================================================

@main.group()
def instances() -> None:
    """Manage gateway instances (channel credentials)."""


@instances.command("add")
@click.argument("instance_id")
@click.option("--token", required=True, help="Gateway token bound to the WhatsApp account.")
@click.option("--name", "-n", help="Human-readable name.")
@click.pass_context
def instances_add(ctx: click.Context, instance_id: str, token: str, name: str | None) -> None:
    """Register or update an instance."""
    engine = get_engine(ctx)

    async def _add():
        await engine.init()
        return await engine.handle_command("addInstance", {"id": instance_id, "name": name, "token": token})

    result = run_async(_add())
    if not result["ok"]:
        print_error(result["error"])
        sys.exit(1)
    print_success(f"Instance '{instance_id}' saved.")


@instances.command("list")
@click.pass_context
def instances_list(ctx: click.Context) -> None:
    """List instances (tokens are never shown)."""
    engine = get_engine(ctx)

    async def _list():
        await engine.init()
        return await engine.persistence.list_instances()

    rows = run_async(_list())
    if not rows:
        console.print("[dim]No instances configured.[/dim]")
        return
    table = Table(title="Instances")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Created")
    for row in rows:
        table.add_row(row["id"], row.get("name") or "-", row.get("created_at") or "-")
    console.print(table)


@instances.command("delete")
@click.argument("instance_id")
@click.pass_context
def instances_delete(ctx: click.Context, instance_id: str) -> None:
    """Remove an instance."""
    engine = get_engine(ctx)

    async def _delete():
        await engine.init()
        return await engine.persistence.delete_instance(instance_id)

    if not run_async(_delete()):
        print_error(f"Instance '{instance_id}' not found.")
        sys.exit(1)
    print_success(f"Instance '{instance_id}' deleted.")


# ============================================================================
# Jobs
# ============================================================================

@main.group()
def jobs() -> None:
    """Manage scheduled messages."""


@jobs.command("add")
@click.option("--instance", "instance_id", required=True, help="Instance sending the message.")
@click.option("--group-jid", required=True, help="Primary destination.")
@click.option("--group-name", help="Informational name of the destination.")
@click.option("--type", "message_type", type=click.Choice([t.value for t in MessageType]),
              default=MessageType.TEXT.value, show_default=True)
@click.option("--content", help="Text body or media caption.")
@click.option("--media-url", help="Media reference for non-text messages.")
@click.option("--filename", help="Filename for documents.")
@click.option("--at", "scheduled_at", required=True, help="Due time (ISO-8601, UTC if no offset).")
@click.option("--delay", "random_delay", type=click.Choice([p.value for p in PacingPolicy]),
              default=PacingPolicy.NONE.value, show_default=True, help="Pacing between sends (seconds).")
@click.option("--recipient", "recipients", multiple=True, help="Per-recipient address (repeatable).")
@click.option("--recurring", "recurrence_type", type=click.Choice([r.value for r in RecurrenceType]),
              help="Make the message recurring.")
@click.option("--interval", type=int, default=1, show_default=True, help="Recurrence interval.")
@click.option("--days", help="Weekdays for weekly recurrence, comma separated (0=Sunday).")
@click.option("--until", "recurrence_end_at", help="Last allowed occurrence (ISO-8601).")
@click.option("--count", "recurrence_count", type=int, help="Maximum number of executions.")
@click.option("--id", "job_id", help="Explicit job id.")
@click.pass_context
def jobs_add(
    ctx: click.Context,
    instance_id: str,
    group_jid: str,
    group_name: str | None,
    message_type: str,
    content: str | None,
    media_url: str | None,
    filename: str | None,
    scheduled_at: str,
    random_delay: str,
    recipients: tuple[str, ...],
    recurrence_type: str | None,
    interval: int,
    days: str | None,
    recurrence_end_at: str | None,
    recurrence_count: int | None,
    job_id: str | None,
) -> None:
    """Schedule a message."""
    try:
        payload = ScheduledJobCreate(
            id=job_id,
            instance_id=instance_id,
            group_jid=group_jid,
            group_name=group_name,
            exclude_admins=bool(recipients),
            recipients=[{"jid": jid} for jid in recipients] or None,
            message_type=message_type,
            content=content,
            media_url=media_url,
            filename=filename,
            scheduled_at=scheduled_at,
            random_delay=random_delay,
            is_recurring=recurrence_type is not None,
            recurrence_type=recurrence_type,
            recurrence_interval=interval,
            recurrence_days=_parse_days(days),
            recurrence_end_at=recurrence_end_at,
            recurrence_count=recurrence_count,
        )
    except ValidationError as e:
        print_error(f"Validation error: {e}")
        sys.exit(1)

    engine = get_engine(ctx)

    async def _add():
        await engine.init()
        return await engine.schedule_job(payload)

    job = run_async(_add())
    print_success(f"Scheduled message '{job.id}' due at {job.next_run_at.isoformat()}.")


@jobs.command("list")
@click.option("--status", type=click.Choice([s.value for s in JobStatus]), help="Filter by status.")
@click.pass_context
def jobs_list(ctx: click.Context, status: str | None) -> None:
    """List scheduled messages."""
    engine = get_engine(ctx)

    async def _list():
        await engine.init()
        return await engine.list_jobs(status=status)

    rows = run_async(_list())
    if not rows:
        console.print("[dim]No scheduled messages.[/dim]")
        return
    table = Table(title="Scheduled messages")
    table.add_column("ID", style="cyan")
    table.add_column("Instance")
    table.add_column("Destination")
    table.add_column("Type")
    table.add_column("Next run")
    table.add_column("Recurrence")
    table.add_column("Status")
    table.add_column("Runs", justify="right")
    for job in rows:
        table.add_row(
            job.id,
            job.instance_id,
            job.group_name or job.group_jid,
            job.message_type,
            job.next_run_at.isoformat(),
            job.recurrence_type if job.is_recurring else "-",
            job.status.value,
            str(job.executions_count),
        )
    console.print(table)


def _operator_action(ctx: click.Context, job_id: str, action: str) -> None:
    engine = get_engine(ctx)

    async def _apply():
        await engine.init()
        return await engine.apply_action(job_id, action)

    try:
        status = run_async(_apply())
    except (JobNotFoundError, InvalidTransitionError) as exc:
        print_error(str(exc))
        sys.exit(1)
    print_success(f"Scheduled message '{job_id}' is now {status.value}.")


@jobs.command("pause")
@click.argument("job_id")
@click.pass_context
def jobs_pause(ctx: click.Context, job_id: str) -> None:
    """Pause a pending message."""
    _operator_action(ctx, job_id, "pause")


@jobs.command("resume")
@click.argument("job_id")
@click.pass_context
def jobs_resume(ctx: click.Context, job_id: str) -> None:
    """Resume a paused message."""
    _operator_action(ctx, job_id, "resume")


@jobs.command("cancel")
@click.argument("job_id")
@click.pass_context
def jobs_cancel(ctx: click.Context, job_id: str) -> None:
    """Cancel a pending or paused message."""
    _operator_action(ctx, job_id, "cancel")


@jobs.command("logs")
@click.argument("job_id")
@click.option("--limit", type=int, default=20, show_default=True)
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON.")
@click.pass_context
def jobs_logs(ctx: click.Context, job_id: str, limit: int, as_json: bool) -> None:
    """Show the execution history of a message."""
    engine = get_engine(ctx)

    async def _logs():
        await engine.init()
        return await engine.handle_command("listLogs", {"id": job_id, "limit": limit})

    result = run_async(_logs())
    if not result["ok"]:
        print_error(result["error"])
        sys.exit(1)
    if as_json:
        print_json(result["logs"])
        return
    if not result["logs"]:
        console.print("[dim]No executions recorded.[/dim]")
        return
    table = Table(title=f"Executions of {job_id}")
    table.add_column("Executed at")
    table.add_column("Status")
    table.add_column("Success", justify="right")
    table.add_column("Failed", justify="right")
    table.add_column("Error")
    colors = {"success": "green", "partial": "yellow", "failed": "red"}
    for entry in result["logs"]:
        color = colors.get(entry["status"], "white")
        table.add_row(
            entry["executed_at"] or "-",
            f"[{color}]{entry['status']}[/{color}]",
            f"{entry['recipients_success']}/{entry['recipients_total']}",
            str(entry["recipients_failed"]),
            entry.get("error_message") or "",
        )
    console.print(table)


if __name__ == "__main__":
    main()
