"""Fakes shared by the test suite: clock, sleeper, tabular source, image host."""

from __future__ import annotations

from typing import Any

from rehost.errors import PatchConflictError, SourceAPIError
from rehost.hosts.base import Hosted, Throttled
from rehost.models import SourceRecord
from rehost.pipeline.ratelimit import Sleeper
from rehost.sources.base import Page

START_MS = 1_700_000_000_000


class FakeClock:
    def __init__(self, start_ms: int = START_MS) -> None:
        self.now = start_ms

    def now_ms(self) -> int:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += int(round(seconds * 1000))


class RecordingSleeper(Sleeper):
    """Never blocks; advances the fake clock by whatever it was asked to sleep."""

    def __init__(self, clock: FakeClock | None = None) -> None:
        super().__init__()
        self.clock = clock
        self.sleeps: list[float] = []

    def sleep(self, seconds: float) -> None:
        self.check()
        self.sleeps.append(seconds)
        if self.clock is not None and seconds > 0:
            self.clock.advance(seconds)


def make_record(
    record_id: str,
    url: str | None = None,
    *,
    field: str = "MainImage",
    title: str | None = None,
    thumbnails: dict[str, Any] | None = None,
    **extra: Any,
) -> SourceRecord:
    fields: dict[str, Any] = dict(extra)
    if title is not None:
        fields["Name"] = title
    if url is not None or thumbnails is not None:
        attachment: dict[str, Any] = {"id": f"att{record_id}", "filename": f"{record_id}.jpg"}
        if url is not None:
            attachment["url"] = url
        if thumbnails is not None:
            attachment["thumbnails"] = thumbnails
        fields[field] = [attachment]
    return SourceRecord(record_id=record_id, fields=fields)


class FakeSource:
    """In-memory tabular source with offset pagination and scripted write failures."""

    def __init__(
        self,
        records: list[SourceRecord],
        *,
        page_size: int = 2,
        supports_partial_update: bool = True,
        list_failures: int = 0,
        conflicts: set[str] | None = None,
        patch_failures: set[str] | None = None,
    ) -> None:
        self.records = {record.record_id: record for record in records}
        self.page_size = page_size
        self.supports_partial_update = supports_partial_update
        self.list_failures = list_failures
        self.conflicts = set(conflicts or ())
        self.patch_failures = set(patch_failures or ())
        self.list_calls = 0
        self.writes: list[tuple[str, str, dict[str, Any]]] = []
        self.closed = False

    def list_page(self, cursor: str | None = None) -> Page:
        self.list_calls += 1
        if self.list_failures:
            self.list_failures -= 1
            raise SourceAPIError("Airtable API error: 503 - unavailable", status=503, retryable=True)
        ids = list(self.records)
        start = int(cursor or 0)
        end = start + self.page_size
        return Page(
            records=[self.records[record_id] for record_id in ids[start:end]],
            next_cursor=str(end) if end < len(ids) else None,
        )

    def get_record(self, record_id: str) -> SourceRecord:
        return self.records[record_id]

    def _write(self, method: str, record_id: str, fields: dict[str, Any], *, merge: bool) -> SourceRecord:
        if record_id in self.conflicts:
            raise PatchConflictError(
                "Unknown field name: MainImageLink", record_id=record_id, status=422
            )
        if record_id in self.patch_failures:
            raise SourceAPIError("Airtable API error: 401 - AUTHENTICATION_REQUIRED", status=401)
        self.writes.append((method, record_id, dict(fields)))
        current = self.records[record_id]
        new_fields = {**current.fields, **fields} if merge else dict(fields)
        updated = SourceRecord(record_id=record_id, fields=new_fields, created_time=current.created_time)
        self.records[record_id] = updated
        return updated

    def patch_fields(self, record_id: str, fields: dict[str, Any]) -> SourceRecord:
        return self._write("PATCH", record_id, fields, merge=True)

    def replace_fields(self, record_id: str, fields: dict[str, Any]) -> SourceRecord:
        return self._write("PUT", record_id, fields, merge=False)

    def close(self) -> None:
        self.closed = True

    def __enter__(self) -> FakeSource:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()


def hosted_url_for(source_url: str) -> str:
    return "https://i.ibb.test/" + source_url.rsplit("/", 1)[-1]


class ScriptedHost:
    """Image host whose per-URL responses are scripted; unscripted calls succeed."""

    name = "scripted"

    def __init__(self, script: dict[str, list[Any]] | None = None) -> None:
        self.script = {url: list(outcomes) for url, outcomes in (script or {}).items()}
        self.calls: list[tuple[str, str | None]] = []
        self.closed = False

    def upload(self, source_url: str, *, name: str | None = None) -> Hosted | Throttled:
        self.calls.append((source_url, name))
        queue = self.script.get(source_url)
        outcome: Any = queue.pop(0) if queue else Hosted(url=hosted_url_for(source_url))
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def attempts(self, source_url: str) -> int:
        return sum(1 for url, _ in self.calls if url == source_url)

    def close(self) -> None:
        self.closed = True
