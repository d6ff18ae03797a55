"""Run command: one resumable migration run."""

from __future__ import annotations

import contextlib

import click

from rehost.cli.helpers import (
    ERROR_COLUMNS,
    error_rows,
    fail,
    format_duration,
    load_command_settings,
    open_store,
    stop_on_signals,
    summary_lines,
)
from rehost.cli.progress import PlainProgress, RichProgress
from rehost.cli.types import AppEnv
from rehost.config import MigrationSettings
from rehost.errors import RehostError
from rehost.hosts import create_host
from rehost.models import RunPlan, RunSummary
from rehost.pipeline.events import EventBus
from rehost.pipeline.ratelimit import Sleeper
from rehost.pipeline.runner import MigrationRunner, RunOptions
from rehost.sources import create_source


def _preview(env: AppEnv, settings: MigrationSettings) -> None:
    try:
        settings.require_credentials(image_host=False)
        with create_source(settings) as source:
            runner = MigrationRunner(RunOptions.from_settings(settings), source, None, open_store(settings))
            plan = runner.plan()
    except RehostError as exc:
        fail("run", str(exc))
    env.ui.summary("Preview", _plan_lines(settings, plan))


def _plan_lines(settings: MigrationSettings, plan: RunPlan) -> list[str]:
    fields = ", ".join(f"{role} -> {output}" for role, output in settings.field_map.items())
    return [
        f"Migration: {settings.migration_name} ({fields})",
        f"Source records: {plan.total_records}",
        f"Eligible: {plan.eligible} (already processed {plan.already_processed})",
        f"Pending uploads: {plan.pending} record(s), {plan.pending_uploads} upload(s)",
        f"Nothing to migrate: {plan.skippable}",
        f"Selected this run: {plan.selected}",
        f"Quota: {settings.quota_budget} per {format_duration(settings.quota_window)}",
        f"Estimated time to completion: {format_duration(plan.estimated_seconds_remaining)}",
    ]


def _display_summary(env: AppEnv, summary: RunSummary) -> None:
    env.ui.summary("Migration run", summary_lines(summary))
    if summary.errors:
        env.ui.table(f"Recent errors ({len(summary.errors)})", ERROR_COLUMNS, error_rows(summary.errors))


@click.command("run")
@click.option("--max-batch", type=click.IntRange(min=1), help="Upload at most N records this run")
@click.option("--concurrency", type=click.IntRange(1, 10), help="Records processed in parallel")
@click.option("--preview", is_flag=True, help="Report pending work and ETA without uploading or writing")
@click.pass_obj
def run_command(env: AppEnv, max_batch: int | None, concurrency: int | None, preview: bool) -> None:
    """Run one resumable migration pass; re-run until nothing remains."""
    settings = load_command_settings(env, "run", max_batch_size=max_batch, concurrency=concurrency)
    if preview:
        _preview(env, settings)
        return

    try:
        settings.require_credentials()
    except RehostError as exc:
        fail("run", str(exc))

    store = open_store(settings)
    if store.pause_requested():
        env.ui.warning(f"Migration is paused ({store.pause_path}); run `rehost resume` first.")
        return

    bus = EventBus()
    sleeper = Sleeper()
    observer = PlainProgress(env.ui) if env.ui.plain else RichProgress(env.ui.console)  # type: ignore[arg-type]
    observer.attach(bus)
    try:
        with contextlib.ExitStack() as stack:
            source = stack.enter_context(create_source(settings))
            host = create_host(settings)
            stack.callback(host.close)
            runner = MigrationRunner(
                RunOptions.from_settings(settings),
                source,
                host,
                store,
                sleeper=sleeper,
                bus=bus,
            )
            stack.enter_context(stop_on_signals(sleeper))
            if isinstance(observer, RichProgress):
                stack.enter_context(observer)
            summary = runner.run()
    except RehostError as exc:
        fail("run", str(exc))
    _display_summary(env, summary)
    if summary.stop_reason == "paused":
        env.ui.info("Paused; run `rehost resume` to continue.")
    elif summary.remaining == 0:
        env.ui.success("Migration complete.")
