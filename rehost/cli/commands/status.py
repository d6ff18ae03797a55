"""Status and errors commands."""

from __future__ import annotations

import click

from rehost.cli.helpers import (
    ERROR_COLUMNS,
    error_rows,
    fail,
    format_duration,
    format_timestamp,
    load_command_settings,
    open_store,
)
from rehost.cli.types import AppEnv
from rehost.errors import RehostError
from rehost.lib.json import dumps
from rehost.pipeline.ratelimit import SystemClock, estimate_seconds_remaining
from rehost.pipeline.status import completion_report
from rehost.sources import create_source, fetch_all


@click.command("status")
@click.option("--live", is_flag=True, help="Also check the source for records still missing their URL")
@click.option("--json", "json_output", is_flag=True, help="Output JSON")
@click.pass_obj
def status_command(env: AppEnv, live: bool, json_output: bool) -> None:
    """Show checkpoint progress for the configured migration."""
    settings = load_command_settings(env, "status")
    store = open_store(settings)
    try:
        progress = store.load()
    except RehostError as exc:
        fail("status", str(exc))
    roles = settings.roles
    completed = len(progress.completed_ids(roles))
    window_ms = int(settings.quota_window * 1000)
    in_window = progress.model_copy(deep=True).prune_timestamps(SystemClock().now_ms(), window_ms)
    percent = round(completed / progress.total_records * 100) if progress.total_records else 0

    report = []
    if live:
        try:
            settings.require_credentials(image_host=False)
            with create_source(settings) as source:
                records = fetch_all(
                    source,
                    retries=settings.listing_retries,
                    retry_delay=settings.listing_retry_delay,
                )
        except RehostError as exc:
            fail("status", str(exc))
        report = completion_report(records, settings.field_map)

    if json_output:
        payload = {
            "migration": settings.migration_name,
            "checkpoint": str(store.path),
            "total": progress.total_records,
            "completed": completed,
            "percent": percent,
            "errors": len(progress.errors),
            "uploads_in_window": in_window,
            "quota_budget": settings.quota_budget,
            "running": progress.is_running,
            "paused": store.pause_requested(),
            "last_run_at": progress.last_run_at,
            "fields": [
                {
                    "field": item.role,
                    "output": item.output_field,
                    "with_attachment": item.with_attachment,
                    "migrated": item.migrated,
                    "missing": item.missing,
                    "percent": item.percent,
                }
                for item in report
            ],
        }
        click.echo(dumps(payload, indent=True))
        return

    lines = [
        f"Migration: {settings.migration_name}",
        f"Checkpoint: {store.path}{'' if store.exists() else ' (not created yet)'}",
        f"Completed: {completed}/{progress.total_records} ({percent}%)",
        f"Errors recorded: {len(progress.errors)}",
        f"Quota window: {in_window}/{settings.quota_budget} uploads in the last "
        f"{format_duration(settings.quota_window)}",
        f"Running: {'yes' if progress.is_running else 'no'}",
        f"Paused: {'yes' if store.pause_requested() else 'no'}",
        f"Last run: {format_timestamp(progress.last_run_at)}",
    ]
    for item in report:
        lines.append(
            f"{item.role} -> {item.output_field}: {item.migrated}/{item.with_attachment} "
            f"migrated ({item.percent}%), {item.missing} missing"
        )
        if item.missing:
            eta = estimate_seconds_remaining(item.missing, settings.quota_budget, settings.quota_window)
            lines.append(f"  Estimated time to completion: {format_duration(eta)}")
    env.ui.summary("Status", lines)


@click.command("errors")
@click.option("--limit", type=click.IntRange(min=1), help="Show the N most recent errors")
@click.option("--orphans", is_flag=True, help="Only errors that left an uploaded image unlinked")
@click.pass_obj
def errors_command(env: AppEnv, limit: int | None, orphans: bool) -> None:
    """List recorded per-record failures, newest last."""
    settings = load_command_settings(env, "errors")
    try:
        progress = open_store(settings).load()
    except RehostError as exc:
        fail("errors", str(exc))
    entries = [entry for entry in progress.errors if entry.hosted_url] if orphans else list(progress.errors)
    limit = limit or settings.error_report_limit
    entries = entries[-limit:] if limit else entries
    if not entries:
        env.ui.info("No errors recorded.")
        return
    env.ui.table(f"Errors ({len(entries)} of {len(progress.errors)})", ERROR_COLUMNS, error_rows(entries))
