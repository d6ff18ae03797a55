"""Batch orchestrator: idempotence, resumability, failure isolation, quota, pause/stop."""

from __future__ import annotations

import random

import pytest

from rehost.checkpoint import MemoryCheckpointStore
from rehost.errors import CheckpointError, ConfigError, RateLimitExceededError, SourceAPIError, UploadError
from rehost.hosts.base import Hosted, Throttled
from rehost.models import MigrationProgress
from rehost.pipeline.events import EventBus, RecordFinished, RunCompleted, RunStarted
from rehost.pipeline.runner import MigrationRunner, RunOptions, estimate_time_remaining
from tests.helpers import START_MS, FakeSource, ScriptedHost, hosted_url_for, make_record

FIELD_MAP = {"MainImage": "MainImageLink"}


def _url(record_id: str) -> str:
    return f"https://dl.airtable.test/{record_id}.jpg"


def _records(*ids: str, **kwargs):
    return [make_record(record_id, _url(record_id), title=f"Title {record_id}", **kwargs) for record_id in ids]


def _runner(source, host, store, clock, sleeper, *, bus=None, **options):
    options.setdefault("field_map", dict(FIELD_MAP))
    options.setdefault("backoff_jitter", 0.0)
    options.setdefault("migration_name", "test")
    return MigrationRunner(
        RunOptions(**options),
        source,
        host,
        store,
        clock=clock,
        sleeper=sleeper,
        rng=random.Random(3),
        bus=bus,
    )


class TestExampleScenario:
    def test_three_records(self, clock, sleeper):
        records = [
            make_record("A", _url("A"), title="Alpha"),
            make_record("B", title="Bravo"),
            make_record("C", _url("C"), title="Charlie"),
        ]
        source = FakeSource(records)
        host = ScriptedHost({_url("C"): [Throttled("HTTP 429"), Throttled("HTTP 429")]})
        store = MemoryCheckpointStore()

        summary = _runner(source, host, store, clock, sleeper).run()

        progress = store.snapshot
        assert set(progress.processed_records) == {"A", "B", "C"}
        assert progress.errors == []
        assert len(progress.upload_timestamps) == 2
        assert host.attempts(_url("C")) == 3
        assert host.attempts(_url("A")) == 1
        assert summary.successful == 2
        assert summary.skipped == 1
        assert summary.failed == 0
        assert summary.uploads == 2
        assert summary.remaining == 0
        assert summary.stop_reason == "complete"
        assert source.records["A"].fields["MainImageLink"] == hosted_url_for(_url("A"))
        assert source.records["C"].fields["MainImageLink"] == hosted_url_for(_url("C"))
        assert "MainImageLink" not in source.records["B"].fields

    def test_upload_name_comes_from_title(self, clock, sleeper):
        source = FakeSource([make_record("A", _url("A"), title="Hello World")])
        host = ScriptedHost()
        _runner(source, host, MemoryCheckpointStore(), clock, sleeper).run()
        assert host.calls == [(_url("A"), "Hello-World.jpg")]


class TestIdempotence:
    def test_second_run_uploads_nothing(self, clock, sleeper):
        source = FakeSource(_records("r1", "r2", "r3"))
        host = ScriptedHost()
        store = MemoryCheckpointStore()
        _runner(source, host, store, clock, sleeper).run()
        first = dict(store.snapshot.processed_records)
        calls = len(host.calls)

        summary = _runner(source, host, store, clock, sleeper).run()

        assert len(host.calls) == calls
        assert summary.processed == 0
        assert summary.uploads == 0
        assert set(store.snapshot.processed_records) >= set(first)
        assert summary.percent_complete == 100

    def test_legacy_list_checkpoint_is_honoured(self, clock, sleeper):
        source = FakeSource(_records("r1", "r2"))
        host = ScriptedHost()
        store = MemoryCheckpointStore(MigrationProgress.model_validate({"processedRecords": ["r1"]}))
        _runner(source, host, store, clock, sleeper).run()
        assert [url for url, _ in host.calls] == [_url("r2")]


class TestResumability:
    def test_crash_then_resume_skips_finished_records(self, clock, sleeper):
        source = FakeSource(_records("r1", "r2", "r3", "r4"))
        host = ScriptedHost()
        # Saves: run start, then (upload commit, record commit) per record
        crashing = MemoryCheckpointStore(fail_on_save=6)
        with pytest.raises(CheckpointError):
            _runner(source, host, crashing, clock, sleeper).run()
        assert set(crashing.snapshot.processed_records) == {"r1", "r2"}

        resumed_host = ScriptedHost()
        store = MemoryCheckpointStore(crashing.snapshot)
        summary = _runner(source, resumed_host, store, clock, sleeper).run()

        assert [url for url, _ in resumed_host.calls] == [_url("r3"), _url("r4")]
        assert set(store.snapshot.processed_records) == {"r1", "r2", "r3", "r4"}
        assert summary.remaining == 0

    def test_checkpoint_saved_after_every_record(self, clock, sleeper):
        source = FakeSource(_records("r1") + [make_record("r2")])
        store = MemoryCheckpointStore()
        _runner(source, ScriptedHost(), store, clock, sleeper).run()
        # start + r1 (commit, record) + r2 (record) + final
        assert store.save_count == 5
        assert store.snapshot.is_running is False
        assert store.snapshot.started_at == START_MS
        assert store.snapshot.last_run_at is not None


class TestFailureIsolation:
    def test_failing_record_does_not_stop_batch(self, clock, sleeper):
        source = FakeSource(_records("r1", "r2", "r3", "r4", "r5"))
        host = ScriptedHost({_url("r3"): [UploadError("imgbb API error: 400 - Invalid image", status=400)]})
        store = MemoryCheckpointStore()

        summary = _runner(source, host, store, clock, sleeper).run()

        progress = store.snapshot
        assert set(progress.processed_records) == {"r1", "r2", "r3", "r4", "r5"}
        assert [e.record_id for e in progress.errors] == ["r3"]
        assert progress.errors[0].kind == "upload"
        assert progress.errors[0].title == "Title r3"
        assert progress.errors[0].role == "MainImage"
        assert summary.successful == 4
        assert summary.failed == 1
        assert "MainImageLink" not in source.records["r3"].fields

    def test_rate_limit_exhaustion_is_terminal(self, clock, sleeper):
        source = FakeSource(_records("r1", "r2"))
        host = ScriptedHost({_url("r1"): [Throttled("HTTP 429")] * 4})
        store = MemoryCheckpointStore()
        _runner(source, host, store, clock, sleeper).run()
        assert store.snapshot.errors[0].kind == "rate_limit"
        assert "after 3 retries" in store.snapshot.errors[0].error

        again = ScriptedHost()
        _runner(source, again, store, clock, sleeper).run()
        assert again.calls == []

    def test_record_retry_budget(self, clock, sleeper):
        source = FakeSource(_records("r1"))
        host = ScriptedHost({_url("r1"): [UploadError("connection reset")]})
        store = MemoryCheckpointStore()
        summary = _runner(source, host, store, clock, sleeper, record_retries=1).run()
        assert summary.successful == 1
        assert store.snapshot.errors == []
        assert host.attempts(_url("r1")) == 2

    def test_patch_conflict_records_orphaned_url(self, clock, sleeper):
        source = FakeSource(_records("r1", "r2"), conflicts={"r1"})
        store = MemoryCheckpointStore()
        summary = _runner(source, ScriptedHost(), store, clock, sleeper).run()
        [entry] = store.snapshot.errors
        assert entry.record_id == "r1"
        assert entry.kind == "patch"
        assert entry.hosted_url == hosted_url_for(_url("r1"))
        assert store.snapshot.is_done("r1", "MainImage")
        assert summary.failed == 1
        assert summary.successful == 1

    def test_patch_conflict_keeps_delete_url(self, clock, sleeper):
        hosted = Hosted(url="https://i.ibb.test/r1.jpg", delete_url="https://ibb.co/r1/deletekey")
        source = FakeSource(_records("r1"), conflicts={"r1"})
        store = MemoryCheckpointStore()
        _runner(source, ScriptedHost({_url("r1"): [hosted]}), store, clock, sleeper).run()
        [entry] = store.snapshot.errors
        assert entry.hosted_url == hosted.url
        assert entry.delete_url == hosted.delete_url

    def test_source_failure_on_patch_is_fatal(self, clock, sleeper):
        source = FakeSource(_records("r1", "r2", "r3"), patch_failures={"r2"})
        host = ScriptedHost()
        store = MemoryCheckpointStore()
        with pytest.raises(SourceAPIError):
            _runner(source, host, store, clock, sleeper).run()
        progress = store.snapshot
        assert set(progress.processed_records) == {"r1"}
        assert progress.is_running is False
        # r2's upload happened and stays in the quota ledger
        assert len(progress.upload_timestamps) == 2
        assert _url("r3") not in [url for url, _ in host.calls]

    def test_replace_only_source_gets_merged_write(self, clock, sleeper):
        source = FakeSource(_records("r1"), supports_partial_update=False)
        _runner(source, ScriptedHost(), MemoryCheckpointStore(), clock, sleeper).run()
        [(method, record_id, fields)] = source.writes
        assert (method, record_id) == ("PUT", "r1")
        assert fields["MainImageLink"] == hosted_url_for(_url("r1"))
        assert fields["Name"] == "Title r1"
        assert "MainImage" in fields

    def test_listing_failure_is_fatal(self, clock, sleeper):
        source = FakeSource(_records("r1"), list_failures=10)
        store = MemoryCheckpointStore()
        with pytest.raises(SourceAPIError):
            _runner(source, ScriptedHost(), store, clock, sleeper, listing_retries=1).run()
        assert store.save_count == 0

    def test_run_without_host(self, clock, sleeper):
        runner = _runner(FakeSource([]), None, MemoryCheckpointStore(), clock, sleeper)
        with pytest.raises(ConfigError):
            runner.run()


class TestQuota:
    def test_waits_when_window_is_full(self, clock, sleeper):
        source = FakeSource(_records("r1", "r2", "r3"))
        store = MemoryCheckpointStore()
        _runner(source, ScriptedHost(), store, clock, sleeper, quota_budget=2, quota_window=3600).run()
        assert sleeper.sleeps == [pytest.approx(3600.0)]
        timestamps = store.snapshot.upload_timestamps
        assert len(timestamps) == 1
        assert timestamps[0] == START_MS + 3_600_000

    def test_previous_run_uploads_count_against_budget(self, clock, sleeper):
        store = MemoryCheckpointStore(MigrationProgress(upload_timestamps=[START_MS - 600_000]))
        source = FakeSource(_records("r1"))
        _runner(source, ScriptedHost(), store, clock, sleeper, quota_budget=1, quota_window=3600).run()
        assert sleeper.sleeps == [pytest.approx(3000.0)]

    def test_concurrent_run_stays_within_budget(self, clock, sleeper):
        ids = [f"r{i}" for i in range(8)]
        source = FakeSource(_records(*ids))
        host = ScriptedHost()
        store = MemoryCheckpointStore()
        summary = _runner(source, host, store, clock, sleeper, concurrency=4, quota_budget=50).run()
        assert summary.successful == 8
        assert sorted(url for url, _ in host.calls) == sorted(_url(i) for i in ids)
        assert len(store.snapshot.upload_timestamps) == 8
        assert set(store.snapshot.processed_records) == set(ids)

    def test_eta_reflects_remaining_backlog(self, clock, sleeper):
        source = FakeSource(_records("r1", "r2", "r3", "r4"))
        summary = _runner(
            source, ScriptedHost(), MemoryCheckpointStore(), clock, sleeper, max_batch_size=1, quota_budget=10
        ).run()
        assert summary.remaining == 3
        assert summary.estimated_seconds_remaining == pytest.approx(3 * 360.0)


class TestSelection:
    def test_batch_cap_counts_uploads_only(self, clock, sleeper):
        records = _records("r1", "r2") + [make_record("empty")] + _records("r3")
        source = FakeSource(records)
        host = ScriptedHost()
        store = MemoryCheckpointStore()
        summary = _runner(source, host, store, clock, sleeper, max_batch_size=2).run()
        assert [url for url, _ in host.calls] == [_url("r1"), _url("r2")]
        assert set(store.snapshot.processed_records) == {"r1", "r2", "empty"}
        assert summary.stop_reason == "batch_limit"
        assert summary.remaining == 1

    def test_total_never_shrinks(self, clock, sleeper):
        store = MemoryCheckpointStore(MigrationProgress(total_records=10))
        summary = _runner(FakeSource(_records("r1")), ScriptedHost(), store, clock, sleeper).run()
        assert summary.total == 10
        assert store.snapshot.total_records == 10

    def test_total_counts_resolvable_and_processed(self, clock, sleeper):
        source = FakeSource(_records("r1", "r2") + [make_record("empty")])
        store = MemoryCheckpointStore(MigrationProgress.model_validate({"processedRecords": ["gone"]}))
        summary = _runner(source, ScriptedHost(), store, clock, sleeper).run()
        # Raised to cover records that had nothing to migrate
        assert summary.total == 4
        assert store.snapshot.total_records == 4
        assert summary.completed == 4

    def test_record_delay_between_records(self, clock, sleeper):
        source = FakeSource(_records("r1", "r2", "r3"))
        _runner(source, ScriptedHost(), MemoryCheckpointStore(), clock, sleeper, record_delay=2.0).run()
        assert sleeper.sleeps == [2.0, 2.0]

    def test_plan_writes_nothing(self, clock, sleeper):
        source = FakeSource(_records("r1", "r2", "r3") + [make_record("empty")])
        store = MemoryCheckpointStore(MigrationProgress.model_validate({"processedRecords": ["r1"]}))
        plan = _runner(source, None, store, clock, sleeper, max_batch_size=1).plan()
        assert plan.total_records == 4
        assert plan.already_processed == 1
        assert plan.pending == 2
        assert plan.skippable == 1
        assert plan.selected == 1
        assert plan.pending_uploads == 2
        assert plan.estimated_seconds_remaining == pytest.approx(720.0)
        assert store.save_count == 0
        assert source.writes == []


class TestMultiField:
    FIELDS = {"MainImage": "MainImageLink", "Gallery": "GalleryLink"}

    def test_one_write_per_record(self, clock, sleeper):
        record = make_record("r1", _url("r1"), Gallery=[{"url": "https://dl.airtable.test/g1.jpg"}])
        source = FakeSource([record])
        store = MemoryCheckpointStore()
        _runner(source, ScriptedHost(), store, clock, sleeper, field_map=dict(self.FIELDS)).run()
        assert source.writes == [
            (
                "PATCH",
                "r1",
                {"MainImageLink": hosted_url_for(_url("r1")), "GalleryLink": hosted_url_for("https://dl.airtable.test/g1.jpg")},
            )
        ]
        assert store.snapshot.processed_records == {"r1": {"MainImage", "Gallery"}}

    def test_resumes_per_role(self, clock, sleeper):
        record = make_record("r1", _url("r1"), Gallery=[{"url": "https://dl.airtable.test/g1.jpg"}])
        store = MemoryCheckpointStore(MigrationProgress.model_validate({"processedRecords": {"r1": {"MainImage": True}}}))
        host = ScriptedHost()
        _runner(FakeSource([record]), host, store, clock, sleeper, field_map=dict(self.FIELDS)).run()
        assert [url for url, _ in host.calls] == ["https://dl.airtable.test/g1.jpg"]

    def test_missing_second_attachment_is_skipped(self, clock, sleeper):
        source = FakeSource(_records("r1"))
        store = MemoryCheckpointStore()
        summary = _runner(source, ScriptedHost(), store, clock, sleeper, field_map=dict(self.FIELDS)).run()
        assert store.snapshot.processed_records == {"r1": {"MainImage", "Gallery"}}
        assert summary.successful == 1

    def test_one_role_failing_keeps_the_other(self, clock, sleeper):
        record = make_record("r1", _url("r1"), Gallery=[{"url": "https://dl.airtable.test/g1.jpg"}])
        source = FakeSource([record])
        host = ScriptedHost({"https://dl.airtable.test/g1.jpg": [UploadError("bad image")]})
        store = MemoryCheckpointStore()
        summary = _runner(source, host, store, clock, sleeper, field_map=dict(self.FIELDS)).run()
        assert source.records["r1"].fields["MainImageLink"] == hosted_url_for(_url("r1"))
        assert [(e.record_id, e.role) for e in store.snapshot.errors] == [("r1", "Gallery")]
        assert summary.failed == 1


class _PausingHost(ScriptedHost):
    def __init__(self, store):
        super().__init__()
        self._store = store

    def upload(self, source_url, *, name=None):
        self._store.paused = True
        return super().upload(source_url, name=name)


class _StoppingHost(ScriptedHost):
    def __init__(self, sleeper, outcome=None):
        super().__init__()
        self._sleeper = sleeper
        self._outcome = outcome

    def upload(self, source_url, *, name=None):
        self._sleeper.stop()
        if self._outcome is not None:
            self.calls.append((source_url, name))
            return self._outcome
        return super().upload(source_url, name=name)


class _StoppingOnHost(ScriptedHost):
    """Uploads normally until asked for one URL, then throttles and requests a stop."""

    def __init__(self, sleeper, stop_url):
        super().__init__({stop_url: [Throttled("HTTP 429")]})
        self._sleeper = sleeper
        self._stop_url = stop_url

    def upload(self, source_url, *, name=None):
        if source_url == self._stop_url:
            self._sleeper.stop()
        return super().upload(source_url, name=name)


class TestPauseAndStop:
    def test_paused_before_start(self, clock, sleeper):
        store = MemoryCheckpointStore()
        store.paused = True
        host = ScriptedHost()
        summary = _runner(FakeSource(_records("r1")), host, store, clock, sleeper).run()
        assert host.calls == []
        assert summary.stop_reason == "paused"
        assert summary.remaining == 1

    def test_pause_takes_effect_before_next_record(self, clock, sleeper):
        store = MemoryCheckpointStore()
        summary = _runner(FakeSource(_records("r1", "r2")), _PausingHost(store), store, clock, sleeper).run()
        assert set(store.snapshot.processed_records) == {"r1"}
        assert summary.stop_reason == "paused"

    def test_stop_after_record_finishes(self, clock, sleeper):
        store = MemoryCheckpointStore()
        summary = _runner(FakeSource(_records("r1", "r2")), _StoppingHost(sleeper), store, clock, sleeper).run()
        assert set(store.snapshot.processed_records) == {"r1"}
        assert summary.stop_reason == "cancelled"
        assert store.snapshot.is_running is False

    def test_stop_during_backoff_leaves_record_pending(self, clock, sleeper):
        store = MemoryCheckpointStore()
        host = _StoppingHost(sleeper, Throttled("HTTP 429"))
        summary = _runner(FakeSource(_records("r1", "r2")), host, store, clock, sleeper).run()
        assert store.snapshot.processed_records == {}
        assert store.snapshot.errors == []
        assert summary.stop_reason == "cancelled"
        assert summary.remaining == 2

    def test_stop_between_roles_reports_finished_upload(self, clock, sleeper, monkeypatch):
        reported = []
        monkeypatch.setattr(
            "rehost.pipeline.runner._log_orphans", lambda log, uploaded, exc: reported.append(dict(uploaded))
        )
        gallery = "https://dl.airtable.test/g1.jpg"
        record = make_record("r1", _url("r1"), Gallery=[{"url": gallery}])
        host = _StoppingOnHost(sleeper, gallery)
        store = MemoryCheckpointStore()
        summary = _runner(
            FakeSource([record]), host, store, clock, sleeper, field_map=dict(TestMultiField.FIELDS)
        ).run()
        assert reported == [{"MainImage": Hosted(url=hosted_url_for(_url("r1")))}]
        assert store.snapshot.processed_records == {}
        assert summary.stop_reason == "cancelled"


class TestEvents:
    def test_lifecycle_events(self, clock, sleeper):
        bus = EventBus()
        seen = []
        bus.subscribe(RunStarted, seen.append)
        bus.subscribe(RecordFinished, seen.append)
        bus.subscribe(RunCompleted, seen.append)
        source = FakeSource(_records("r1") + [make_record("r2")] + _records("r3"))
        host = ScriptedHost({_url("r3"): [RateLimitExceededError("imgbb rate limit exceeded", attempts=4)]})
        _runner(source, host, MemoryCheckpointStore(), clock, sleeper, bus=bus).run()

        started, *finished, completed = seen
        assert isinstance(started, RunStarted)
        assert started.selected == 3
        assert [(e.record_id, e.status) for e in finished] == [("r1", "done"), ("r2", "skipped"), ("r3", "failed")]
        assert finished[0].hosted_urls == (("MainImage", hosted_url_for(_url("r1"))),)
        assert "rate limit" in finished[2].error
        assert completed.summary.failed == 1
        assert completed.migration == "test"

    def test_failing_observer_does_not_abort_run(self, clock, sleeper):
        bus = EventBus()

        def broken(event):
            raise RuntimeError("observer bug")

        bus.subscribe(RecordFinished, broken)
        store = MemoryCheckpointStore()
        summary = _runner(FakeSource(_records("r1", "r2")), ScriptedHost(), store, clock, sleeper, bus=bus).run()
        assert summary.successful == 2
        assert set(store.snapshot.processed_records) == {"r1", "r2"}
        assert store.snapshot.is_running is False


ESTIMATES = [
    (0, 10, 3600.0, 0.0),
    (1, 10, 3600.0, 360.0),
    (25, 10, 3600.0, 9000.0),
    (5, 1, 60.0, 300.0),
]


@pytest.mark.parametrize("remaining,budget,window,expected", ESTIMATES)
def test_estimate_time_remaining(remaining, budget, window, expected):
    assert estimate_time_remaining(remaining, budget, window) == pytest.approx(expected)
