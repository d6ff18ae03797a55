"""Batch orchestrator: resolve -> upload -> patch -> checkpoint, per record."""

from __future__ import annotations

import concurrent.futures
import random
import threading
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Literal

from rehost.checkpoint import CheckpointStore
from rehost.errors import (
    CheckpointError,
    ConfigError,
    MigrationCancelled,
    PatchConflictError,
    RateLimitExceededError,
    SourceAPIError,
    UploadError,
)
from rehost.hosts.base import Hosted, ImageHost, upload_name
from rehost.lib.log import get_logger
from rehost.models import MigrationErrorEntry, MigrationProgress, RunPlan, RunSummary, SourceRecord, StopReason
from rehost.pipeline.events import EventBus, RecordFinished, RecordStarted, RunCompleted, RunStarted
from rehost.pipeline.patcher import RecordPatcher
from rehost.pipeline.ratelimit import Clock, Sleeper, SlidingWindowLimiter, SystemClock, estimate_seconds_remaining
from rehost.pipeline.resolver import resolve_attachment_url
from rehost.pipeline.uploader import (
    DEFAULT_BACKOFF_BASE,
    DEFAULT_BACKOFF_JITTER,
    DEFAULT_MAX_RETRIES,
    RateLimitedUploader,
)
from rehost.sources.base import DEFAULT_LISTING_RETRIES, DEFAULT_LISTING_RETRY_DELAY, TabularSource, fetch_all

if TYPE_CHECKING:
    from rehost.config import MigrationSettings

logger = get_logger(__name__)

RecordStatus = Literal["done", "skipped", "failed"]


@dataclass
class RunOptions:
    field_map: dict[str, str]
    title_field: str = "Name"
    quota_budget: int = 10
    quota_window: float = 3600.0
    max_retries: int = DEFAULT_MAX_RETRIES
    backoff_base: float = DEFAULT_BACKOFF_BASE
    backoff_jitter: float = DEFAULT_BACKOFF_JITTER
    record_retries: int = 0
    max_batch_size: int | None = None
    concurrency: int = 1
    record_delay: float = 0.0
    listing_retries: int = DEFAULT_LISTING_RETRIES
    listing_retry_delay: float = DEFAULT_LISTING_RETRY_DELAY
    error_report_limit: int = 10
    migration_name: str = ""

    @classmethod
    def from_settings(cls, settings: MigrationSettings) -> RunOptions:
        return cls(
            field_map=dict(settings.field_map),
            title_field=settings.title_field,
            quota_budget=settings.quota_budget,
            quota_window=settings.quota_window,
            max_retries=settings.max_retries,
            backoff_base=settings.backoff_base,
            backoff_jitter=settings.backoff_jitter,
            record_retries=settings.record_retries,
            max_batch_size=settings.max_batch_size,
            concurrency=settings.concurrency,
            record_delay=settings.record_delay,
            listing_retries=settings.listing_retries,
            listing_retry_delay=settings.listing_retry_delay,
            error_report_limit=settings.error_report_limit,
            migration_name=settings.migration_name or "",
        )

    @property
    def roles(self) -> list[str]:
        return list(self.field_map)


@dataclass
class WorkItem:
    record: SourceRecord
    # role -> resolved source URL; None when the role has nothing to migrate
    urls: dict[str, str | None]

    @property
    def needs_upload(self) -> bool:
        return any(url is not None for url in self.urls.values())


@dataclass
class Selection:
    total: int
    completed: int
    work: list[WorkItem] = field(default_factory=list)
    deferred: list[WorkItem] = field(default_factory=list)

    @property
    def pending(self) -> list[WorkItem]:
        return self.work + self.deferred


@dataclass
class RecordOutcome:
    record_id: str
    status: RecordStatus
    uploads: int = 0
    hosted_urls: dict[str, str] = field(default_factory=dict)
    error: str = ""


def _pending_uploads(progress: MigrationProgress, records: Sequence[SourceRecord], roles: list[str]) -> int:
    count = 0
    for record in records:
        for role in progress.pending_roles(record.record_id, roles):
            if resolve_attachment_url(record, role) is not None:
                count += 1
    return count


def _log_orphans(log, uploaded: dict[str, Hosted], exc: Exception) -> None:
    for role, result in uploaded.items():
        log.error(
            "orphaned_upload",
            role=role,
            hosted_url=result.url,
            delete_url=result.delete_url,
            error=str(exc) or type(exc).__name__,
        )


class MigrationRunner:
    """One resumable migration run over a tabular source.

    Progress and the checkpoint are owned here. Every mutation of the
    progress value, the quota ledger included, happens under one lock, and
    the checkpoint is saved after every record (and after every successful
    upload) so a crash loses at most the in-flight record.
    """

    def __init__(
        self,
        options: RunOptions,
        source: TabularSource,
        host: ImageHost | None,
        store: CheckpointStore,
        *,
        clock: Clock | None = None,
        sleeper: Sleeper | None = None,
        rng: random.Random | None = None,
        bus: EventBus | None = None,
    ) -> None:
        if not options.field_map:
            raise ValueError("field_map must contain at least one attachment field")
        self.options = options
        self._source = source
        self._host = host
        self._store = store
        self._clock = clock or SystemClock()
        self._sleeper = sleeper or Sleeper()
        self._rng = rng or random.Random()
        self._bus = bus or EventBus()
        self._patcher = RecordPatcher(source)
        self._lock = threading.RLock()
        self._halt: StopReason | None = None
        self._progress: MigrationProgress | None = None

    @property
    def bus(self) -> EventBus:
        return self._bus

    @property
    def sleeper(self) -> Sleeper:
        return self._sleeper

    # Selection ----------------------------------------------------------------

    def _fetch_records(self) -> list[SourceRecord]:
        return fetch_all(
            self._source,
            retries=self.options.listing_retries,
            retry_delay=self.options.listing_retry_delay,
            sleep=self._sleeper.sleep,
        )

    def _select(self, progress: MigrationProgress, records: list[SourceRecord]) -> Selection:
        roles = self.options.roles
        resolvable: set[str] = set()
        for record in records:
            if any(resolve_attachment_url(record, role) is not None for role in roles):
                resolvable.add(record.record_id)
        completed_ids = progress.completed_ids(roles)
        # Never shrinks across runs, even when records disappear from the source
        total = max(progress.total_records, len(resolvable | completed_ids))
        selection = Selection(total=total, completed=len(completed_ids))

        cap = self.options.max_batch_size
        selected_uploads = 0
        for record in records:
            pending = progress.pending_roles(record.record_id, roles)
            if not pending:
                continue
            item = WorkItem(record=record, urls={role: resolve_attachment_url(record, role) for role in pending})
            if item.needs_upload:
                if cap is not None and selected_uploads >= cap:
                    selection.deferred.append(item)
                    continue
                selected_uploads += 1
            selection.work.append(item)
        return selection

    def plan(self) -> RunPlan:
        """Dry run: list the source and report what a run would do. Writes nothing."""
        progress = self._store.load()
        records = self._fetch_records()
        selection = self._select(progress, records)
        pending = selection.pending
        pending_uploads = _pending_uploads(progress, records, self.options.roles)
        return RunPlan(
            total_records=len(records),
            eligible=selection.total,
            already_processed=selection.completed,
            pending=sum(1 for item in pending if item.needs_upload),
            skippable=sum(1 for item in pending if not item.needs_upload),
            selected=sum(1 for item in selection.work if item.needs_upload),
            pending_uploads=pending_uploads,
            estimated_seconds_remaining=estimate_seconds_remaining(
                pending_uploads, self.options.quota_budget, self.options.quota_window
            ),
        )

    # Checkpointing ------------------------------------------------------------

    def _persist(self) -> None:
        with self._lock:
            assert self._progress is not None
            self._store.save(self._progress)

    def _now(self) -> int:
        return self._clock.now_ms()

    # Per-record state machine -------------------------------------------------

    def _record_error(
        self,
        record: SourceRecord,
        role: str,
        exc: Exception,
        *,
        kind: str,
        hosted: Hosted | None = None,
    ) -> None:
        assert self._progress is not None
        entry = MigrationErrorEntry(
            record_id=record.record_id,
            title=record.title(self.options.title_field),
            error=str(exc),
            timestamp=self._now(),
            role=role,
            kind=kind,
            hosted_url=hosted.url if hosted else None,
            delete_url=hosted.delete_url if hosted else None,
        )
        with self._lock:
            self._progress.record_error(entry)

    def _upload_role(
        self,
        uploader: RateLimitedUploader,
        record: SourceRecord,
        role: str,
        url: str,
        log,
    ) -> tuple[Hosted | None, str]:
        name = upload_name(record.title(self.options.title_field), record.record_id)
        attempts = self.options.record_retries + 1
        for attempt in range(attempts):
            try:
                return uploader.upload(url, name=name, record_id=record.record_id), ""
            except UploadError as exc:
                if attempt + 1 < attempts:
                    log.warning("record_upload_retry", role=role, attempt=attempt + 1, error=str(exc))
                    continue
                kind = "rate_limit" if isinstance(exc, RateLimitExceededError) else "upload"
                log.error("record_upload_failed", role=role, kind=kind, error=str(exc))
                self._record_error(record, role, exc, kind=kind)
                return None, str(exc)
        return None, "record retry budget exhausted"

    def _process(self, item: WorkItem, index: int, selected: int, uploader: RateLimitedUploader) -> RecordOutcome:
        record = item.record
        title = record.title(self.options.title_field)
        log = logger.bind(record_id=record.record_id, migration=self.options.migration_name)
        self._bus.emit(
            RecordStarted(
                migration=self.options.migration_name,
                record_id=record.record_id,
                title=title,
                index=index,
                selected=selected,
            )
        )

        uploaded: dict[str, Hosted] = {}
        failed: list[str] = []
        finished: list[str] = []
        errors: list[str] = []
        try:
            for role, url in item.urls.items():
                if url is None:
                    log.debug("record_role_skipped", role=role, reason="no_attachment")
                    finished.append(role)
                    continue
                result, upload_error = self._upload_role(uploader, record, role, url, log)
                finished.append(role)
                if result is None:
                    failed.append(role)
                    errors.append(upload_error)
                else:
                    uploaded[role] = result
        except MigrationCancelled as exc:
            _log_orphans(log, uploaded, exc)
            raise

        if uploaded:
            fields = {self.options.field_map[role]: result.url for role, result in uploaded.items()}
            try:
                self._patcher.patch(record.record_id, fields)
            except PatchConflictError as exc:
                _log_orphans(log, uploaded, exc)
                for role, result in uploaded.items():
                    self._record_error(record, role, exc, kind="patch", hosted=result)
                failed.extend(uploaded)
                errors.append(str(exc))
            except SourceAPIError as exc:
                _log_orphans(log, uploaded, exc)
                raise
        hosted = {role: result.url for role, result in uploaded.items()}

        with self._lock:
            assert self._progress is not None
            for role in finished:
                self._progress.mark_done(record.record_id, role)
            self._store.save(self._progress)

        uploads = len(hosted)
        if failed:
            status: RecordStatus = "failed"
            hosted = {role: url for role, url in hosted.items() if role not in failed}
        elif hosted:
            status = "done"
        else:
            status = "skipped"
        error = "; ".join(errors)
        log.info("record_finished", status=status, uploads=uploads, hosted_urls=hosted or None)
        self._bus.emit(
            RecordFinished(
                migration=self.options.migration_name,
                record_id=record.record_id,
                title=title,
                status=status,
                hosted_urls=tuple(sorted(hosted.items())),
                error=error,
            )
        )
        return RecordOutcome(record_id=record.record_id, status=status, uploads=uploads, hosted_urls=hosted, error=error)

    def _run_one(self, item: WorkItem, index: int, selected: int, uploader: RateLimitedUploader) -> RecordOutcome | None:
        with self._lock:
            if self._halt is not None:
                return None
            if self._store.pause_requested():
                logger.info("run_paused", record_id=item.record.record_id)
                self._halt = "paused"
                return None
        self._sleeper.check()
        outcome = self._process(item, index, selected, uploader)
        if self.options.record_delay > 0 and index < selected:
            self._sleeper.sleep(self.options.record_delay)
        return outcome

    def _halt_with(self, reason: StopReason) -> None:
        with self._lock:
            if self._halt is None or reason == "cancelled":
                self._halt = reason

    # Run ----------------------------------------------------------------------

    def run(self) -> RunSummary:
        if self._host is None:
            raise ConfigError("An image host is required to run a migration")
        progress = self._store.load()
        self._progress = progress
        self._halt = None
        log = logger.bind(migration=self.options.migration_name)

        try:
            records = self._fetch_records()
        except MigrationCancelled:
            log.warning("run_cancelled", stage="listing")
            return self._finish_summary(progress, [], [], 0, "cancelled")

        selection = self._select(progress, records)
        limiter = SlidingWindowLimiter(
            progress,
            budget=self.options.quota_budget,
            window_seconds=self.options.quota_window,
            clock=self._clock,
            sleeper=self._sleeper,
            lock=self._lock,
            on_commit=self._persist,
            bus=self._bus,
            migration=self.options.migration_name,
        )
        uploader = RateLimitedUploader(
            self._host,
            limiter,
            max_retries=self.options.max_retries,
            backoff_base=self.options.backoff_base,
            backoff_jitter=self.options.backoff_jitter,
            rng=self._rng,
            sleeper=self._sleeper,
            bus=self._bus,
            migration=self.options.migration_name,
        )

        with self._lock:
            progress.total_records = selection.total
            progress.is_running = True
            progress.started_at = self._now()
            self._store.save(progress)

        selected = len(selection.work)
        log.info(
            "run_started",
            total=selection.total,
            completed=selection.completed,
            selected=selected,
            deferred=len(selection.deferred),
            in_window=limiter.in_window(),
            budget=self.options.quota_budget,
        )
        self._bus.emit(
            RunStarted(
                migration=self.options.migration_name,
                total=selection.total,
                completed=selection.completed,
                pending=len(selection.pending),
                selected=selected,
            )
        )

        outcomes: list[RecordOutcome] = []
        try:
            if self.options.concurrency <= 1:
                for index, item in enumerate(selection.work, start=1):
                    outcome = self._run_one(item, index, selected, uploader)
                    if outcome is None:
                        break
                    outcomes.append(outcome)
            else:
                outcomes = self._run_pool(selection.work, selected, uploader)
        except MigrationCancelled:
            log.warning("run_cancelled", processed=len(outcomes))
            self._halt_with("cancelled")
        except SourceAPIError:
            log.exception("run_aborted", processed=len(outcomes))
            self._mark_stopped(progress)
            raise
        except CheckpointError:
            log.exception("run_aborted", processed=len(outcomes))
            raise

        if self._halt is not None:
            stop_reason: StopReason = self._halt
        elif selection.deferred:
            stop_reason = "batch_limit"
        else:
            stop_reason = "complete"
        self._mark_stopped(progress)
        summary = self._finish_summary(progress, records, outcomes, selection.total, stop_reason)
        log.info(
            "run_completed",
            processed=summary.processed,
            successful=summary.successful,
            failed=summary.failed,
            skipped=summary.skipped,
            remaining=summary.remaining,
            stop_reason=stop_reason,
            eta_seconds=round(summary.estimated_seconds_remaining, 1),
        )
        self._bus.emit(RunCompleted(migration=self.options.migration_name, summary=summary))
        return summary

    def _run_pool(
        self,
        work: list[WorkItem],
        selected: int,
        uploader: RateLimitedUploader,
    ) -> list[RecordOutcome]:
        outcomes: list[RecordOutcome] = []
        failure: BaseException | None = None
        with concurrent.futures.ThreadPoolExecutor(max_workers=self.options.concurrency) as executor:
            futures = {
                executor.submit(self._run_one, item, index, selected, uploader): item.record.record_id
                for index, item in enumerate(work, start=1)
            }
            for fut in concurrent.futures.as_completed(futures):
                try:
                    outcome = fut.result()
                except MigrationCancelled:
                    self._halt_with("cancelled")
                    continue
                except (SourceAPIError, CheckpointError) as exc:
                    # Stop handing out records; in-flight ones finish on their own
                    self._halt_with("cancelled")
                    if failure is None:
                        failure = exc
                    continue
                if outcome is not None:
                    outcomes.append(outcome)
        if failure is not None:
            raise failure
        return outcomes

    def _mark_stopped(self, progress: MigrationProgress) -> None:
        with self._lock:
            progress.total_records = max(progress.total_records, len(progress.completed_ids(self.options.roles)))
            progress.is_running = False
            progress.last_run_at = self._now()
            self._store.save(progress)

    def _finish_summary(
        self,
        progress: MigrationProgress,
        records: list[SourceRecord],
        outcomes: list[RecordOutcome],
        total: int,
        stop_reason: StopReason,
    ) -> RunSummary:
        roles = self.options.roles
        remaining = sum(1 for record in records if not progress.is_complete(record.record_id, roles))
        pending_uploads = _pending_uploads(progress, records, roles)
        return RunSummary(
            processed=len(outcomes),
            successful=sum(1 for o in outcomes if o.status == "done"),
            failed=sum(1 for o in outcomes if o.status == "failed"),
            skipped=sum(1 for o in outcomes if o.status == "skipped"),
            uploads=sum(o.uploads for o in outcomes),
            remaining=remaining,
            total=max(total, progress.total_records),
            completed=len(progress.completed_ids(roles)),
            estimated_seconds_remaining=estimate_seconds_remaining(
                pending_uploads, self.options.quota_budget, self.options.quota_window
            ),
            stop_reason=stop_reason,
            errors=progress.recent_errors(self.options.error_report_limit),
        )


def estimate_time_remaining(remaining_uploads: int, budget: int, window_seconds: float) -> float:
    return estimate_seconds_remaining(remaining_uploads, budget, window_seconds)


__all__ = [
    "MigrationRunner",
    "RecordOutcome",
    "RunOptions",
    "estimate_time_remaining",
]
