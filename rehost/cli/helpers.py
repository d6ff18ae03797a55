"""CLI helper functions."""

from __future__ import annotations

import os
import signal
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, NoReturn

from rehost.checkpoint import JsonCheckpointStore
from rehost.cli.types import AppEnv
from rehost.config import MigrationSettings, load_settings
from rehost.errors import ConfigError
from rehost.lib.log import get_logger
from rehost.models import MigrationErrorEntry, RunSummary
from rehost.pipeline.ratelimit import Sleeper

logger = get_logger(__name__)

FORCE_PLAIN_ENV = "REHOST_FORCE_PLAIN"


def fail(command: str, message: str) -> NoReturn:
    raise SystemExit(f"{command}: {message}")


def should_use_plain(*, plain: bool) -> bool:
    if plain:
        return True
    env_force = os.environ.get(FORCE_PLAIN_ENV)
    if env_force and env_force.lower() not in {"0", "false", "no"}:
        return True
    return not (sys.stdout.isatty() and sys.stderr.isatty())


def load_command_settings(env: AppEnv, command: str, **overrides: Any) -> MigrationSettings:
    try:
        return load_settings(env.config_path, **overrides)
    except ConfigError as exc:
        fail(command, str(exc))


def open_store(settings: MigrationSettings) -> JsonCheckpointStore:
    assert settings.checkpoint_path is not None
    return JsonCheckpointStore(settings.checkpoint_path)


@contextmanager
def stop_on_signals(sleeper: Sleeper) -> Iterator[None]:
    """Route SIGINT/SIGTERM to the run's stop event for the duration of the block."""

    def _handle(signum: int, _frame: object) -> None:
        logger.warning("stop_requested", signal=signal.Signals(signum).name)
        sleeper.stop()

    previous: dict[int, Any] = {}
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            previous[sig] = signal.signal(sig, _handle)
        except ValueError:
            # Not the main thread; the caller keeps the default handlers
            continue
    try:
        yield
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


def format_timestamp(ms: int | None) -> str:
    if not ms:
        return "never"
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).isoformat(timespec="seconds")


def format_duration(seconds: float) -> str:
    total = int(round(seconds))
    if total <= 0:
        return "0s"
    hours, rem = divmod(total, 3600)
    minutes, secs = divmod(rem, 60)
    if hours:
        return f"{hours}h {minutes}m"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


_STOP_LABELS = {
    "complete": "all selected records attempted",
    "batch_limit": "per-run batch limit reached",
    "paused": "paused",
    "cancelled": "stopped by signal",
}


def summary_lines(summary: RunSummary) -> list[str]:
    lines = [
        f"Processed: {summary.processed} (successful {summary.successful}, "
        f"failed {summary.failed}, skipped {summary.skipped})",
        f"Uploads: {summary.uploads}",
        f"Completed: {summary.completed}/{summary.total} ({summary.percent_complete}%)",
        f"Remaining: {summary.remaining}",
        f"Stopped: {_STOP_LABELS.get(summary.stop_reason, summary.stop_reason)}",
    ]
    if summary.remaining:
        lines.append(f"Estimated time to completion: {format_duration(summary.estimated_seconds_remaining)}")
    return lines


def error_rows(entries: list[MigrationErrorEntry]) -> list[list[str]]:
    return [
        [
            entry.record_id,
            entry.title,
            entry.role or "-",
            entry.kind,
            format_timestamp(entry.timestamp) if entry.timestamp is not None else "-",
            entry.error,
            entry.hosted_url or "",
            entry.delete_url or "",
        ]
        for entry in entries
    ]


ERROR_COLUMNS = ["Record", "Title", "Field", "Kind", "When", "Error", "Orphaned URL", "Delete URL"]


__all__ = [
    "ERROR_COLUMNS",
    "error_rows",
    "fail",
    "format_duration",
    "format_timestamp",
    "load_command_settings",
    "open_store",
    "should_use_plain",
    "stop_on_signals",
    "summary_lines",
]
