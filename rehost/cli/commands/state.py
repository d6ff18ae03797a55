"""Pause, resume and requeue commands."""

from __future__ import annotations

import click

from rehost.cli.helpers import fail, load_command_settings, open_store
from rehost.cli.types import AppEnv
from rehost.errors import RehostError


@click.command("pause")
@click.pass_obj
def pause_command(env: AppEnv) -> None:
    """Stop the current or next run before its next record."""
    settings = load_command_settings(env, "pause")
    store = open_store(settings)
    try:
        store.request_pause()
    except RehostError as exc:
        fail("pause", str(exc))
    env.ui.success(f"Pause requested for {settings.migration_name}.")


@click.command("resume")
@click.pass_obj
def resume_command(env: AppEnv) -> None:
    """Clear a pause request."""
    settings = load_command_settings(env, "resume")
    store = open_store(settings)
    try:
        cleared = store.clear_pause()
    except RehostError as exc:
        fail("resume", str(exc))
    if cleared:
        env.ui.success(f"Resumed {settings.migration_name}.")
    else:
        env.ui.info(f"{settings.migration_name} was not paused.")


@click.command("requeue")
@click.argument("record_ids", nargs=-1, required=True)
@click.pass_obj
def requeue_command(env: AppEnv, record_ids: tuple[str, ...]) -> None:
    """Make processed (or failed) records eligible again on the next run."""
    settings = load_command_settings(env, "requeue")
    store = open_store(settings)
    try:
        progress = store.load()
        if progress.is_running:
            fail("requeue", "a run is in progress; requeue after it finishes")
        requeued = [record_id for record_id in dict.fromkeys(record_ids) if progress.requeue(record_id)]
        if requeued:
            store.save(progress)
    except RehostError as exc:
        fail("requeue", str(exc))
    unknown = [record_id for record_id in record_ids if record_id not in requeued]
    if requeued:
        env.ui.success(f"Requeued {len(requeued)} record(s): {', '.join(requeued)}")
    if unknown:
        env.ui.warning(f"Not in checkpoint: {', '.join(unknown)}")
