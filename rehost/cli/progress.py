"""Run progress observers (event bus subscribers)."""

from __future__ import annotations

from types import TracebackType

from rich.console import Console
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskID, TextColumn, TimeElapsedColumn

from rehost.cli.helpers import format_duration
from rehost.pipeline.events import BackoffWait, EventBus, RateLimitWait, RecordFinished, RecordStarted, RunStarted
from rehost.ui import UI


class PlainProgress:
    """One line per record, for logs and non-TTY output."""

    def __init__(self, ui: UI) -> None:
        self._ui = ui

    def attach(self, bus: EventBus) -> None:
        bus.subscribe(RunStarted, self._on_started)
        bus.subscribe(RecordFinished, self._on_finished)
        bus.subscribe(RateLimitWait, self._on_quota_wait)
        bus.subscribe(BackoffWait, self._on_backoff)

    def _on_started(self, event: RunStarted) -> None:
        self._ui.console.print(
            f"Migrating {event.selected} record(s); {event.completed}/{event.total} already done"
        )

    def _on_finished(self, event: RecordFinished) -> None:
        line = f"[{event.status}] {event.record_id} {event.title}"
        if event.hosted_urls:
            line += " -> " + ", ".join(url for _, url in event.hosted_urls)
        if event.error:
            line += f" ({event.error})"
        self._ui.console.print(line)

    def _on_quota_wait(self, event: RateLimitWait) -> None:
        self._ui.console.print(
            f"Quota {event.in_window}/{event.budget} used; waiting {format_duration(event.seconds)}"
        )

    def _on_backoff(self, event: BackoffWait) -> None:
        self._ui.console.print(
            f"Throttled on {event.record_id} (retry {event.attempt}/{event.max_retries}); "
            f"backing off {format_duration(event.seconds)}"
        )


class RichProgress:
    """Progress bar over the selected records; status text shows waits."""

    def __init__(self, console: Console) -> None:
        self._progress = Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TextColumn("{task.completed}/{task.total}"),
            TimeElapsedColumn(),
            console=console,
            transient=True,
        )
        self._task: TaskID | None = None

    def attach(self, bus: EventBus) -> None:
        bus.subscribe(RunStarted, self._on_started)
        bus.subscribe(RecordStarted, self._on_record)
        bus.subscribe(RecordFinished, self._on_finished)
        bus.subscribe(RateLimitWait, self._on_quota_wait)
        bus.subscribe(BackoffWait, self._on_backoff)

    def __enter__(self) -> RichProgress:
        self._progress.start()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self._progress.stop()

    def _describe(self, text: str) -> None:
        if self._task is not None:
            self._progress.update(self._task, description=text)

    def _on_started(self, event: RunStarted) -> None:
        self._task = self._progress.add_task("Migrating", total=event.selected)

    def _on_record(self, event: RecordStarted) -> None:
        self._describe(f"{event.title[:40]}")

    def _on_finished(self, event: RecordFinished) -> None:
        if self._task is not None:
            self._progress.advance(self._task)
        if event.status == "failed":
            self._progress.console.print(f"[red]✗[/red] {event.record_id} {event.title}: {event.error}")

    def _on_quota_wait(self, event: RateLimitWait) -> None:
        self._describe(f"Quota {event.in_window}/{event.budget}, waiting {format_duration(event.seconds)}")

    def _on_backoff(self, event: BackoffWait) -> None:
        self._describe(f"Throttled, retry {event.attempt}/{event.max_retries} in {format_duration(event.seconds)}")


__all__ = ["PlainProgress", "RichProgress"]
