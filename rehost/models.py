"""Data models shared by the migration pipeline.

``MigrationProgress`` is the persisted checkpoint. Its JSON form keeps the
camelCase keys (``processedRecords``, ``uploadTimestamps`` ...) so progress
files written by earlier migration scripts load unchanged.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

# Marks a record id whose every role was completed (legacy list-of-ids checkpoints)
ALL_ROLES = "*"

StopReason = Literal["complete", "batch_limit", "paused", "cancelled"]


@dataclass(frozen=True)
class SourceRecord:
    record_id: str
    fields: dict[str, Any] = field(default_factory=dict)
    created_time: str | None = None

    @classmethod
    def from_api(cls, raw: dict[str, Any]) -> SourceRecord:
        fields = raw.get("fields")
        return cls(
            record_id=str(raw["id"]),
            fields=dict(fields) if isinstance(fields, dict) else {},
            created_time=raw.get("createdTime"),
        )

    def title(self, title_field: str) -> str:
        value = self.fields.get(title_field)
        if isinstance(value, str) and value.strip():
            return value.strip()
        return "Untitled"


class Thumbnail(BaseModel):
    model_config = ConfigDict(extra="allow")

    url: str | None = None
    width: int | None = None
    height: int | None = None


class Thumbnails(BaseModel):
    model_config = ConfigDict(extra="allow")

    full: Thumbnail | None = None
    large: Thumbnail | None = None
    small: Thumbnail | None = None


class Attachment(BaseModel):
    model_config = ConfigDict(extra="allow")

    url: str | None = None
    filename: str | None = None
    thumbnails: Thumbnails | None = None


class MigrationErrorEntry(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    record_id: str = Field(alias="recordId")
    title: str = "Untitled"
    error: str
    # Absent in entries written by the progress-bar era scripts
    timestamp: int | None = None
    role: str | None = None
    kind: str = "upload"  # "upload" | "rate_limit" | "patch" | "resolve"
    hosted_url: str | None = Field(default=None, alias="hostedUrl")
    delete_url: str | None = Field(default=None, alias="deleteUrl")


class MigrationProgress(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    total_records: int = Field(default=0, alias="totalRecords")
    processed_records: dict[str, set[str]] = Field(default_factory=dict, alias="processedRecords")
    upload_timestamps: list[int] = Field(default_factory=list, alias="uploadTimestamps")
    errors: list[MigrationErrorEntry] = Field(default_factory=list)
    is_running: bool = Field(default=False, alias="isRunning")
    started_at: int | None = Field(default=None, alias="startedAt")
    last_run_at: int | None = Field(default=None, alias="lastRunAt")

    @field_validator("processed_records", mode="before")
    @classmethod
    def coerce_processed(cls, v: Any) -> Any:
        if v is None:
            return {}
        if isinstance(v, (list, tuple, set)):
            return {str(record_id): {ALL_ROLES} for record_id in v}
        if not isinstance(v, dict):
            return v
        coerced: dict[str, set[str]] = {}
        for record_id, roles in v.items():
            if isinstance(roles, dict):
                coerced[str(record_id)] = {str(role) for role, done in roles.items() if done}
            elif isinstance(roles, (list, tuple, set)):
                coerced[str(record_id)] = {str(role) for role in roles}
            elif roles is True:
                coerced[str(record_id)] = {ALL_ROLES}
            else:
                coerced[str(record_id)] = set()
        return coerced

    @field_validator("upload_timestamps", mode="after")
    @classmethod
    def sort_timestamps(cls, v: list[int]) -> list[int]:
        return sorted(v)

    @field_serializer("processed_records")
    def serialize_processed(self, v: dict[str, set[str]]) -> dict[str, list[str]]:
        return {record_id: sorted(roles) for record_id, roles in v.items()}

    # Role bookkeeping ---------------------------------------------------------

    def is_done(self, record_id: str, role: str) -> bool:
        roles = self.processed_records.get(record_id)
        if roles is None:
            return False
        return ALL_ROLES in roles or role in roles

    def pending_roles(self, record_id: str, roles: list[str]) -> list[str]:
        return [role for role in roles if not self.is_done(record_id, role)]

    def is_complete(self, record_id: str, roles: list[str]) -> bool:
        return not self.pending_roles(record_id, roles)

    def mark_done(self, record_id: str, role: str) -> None:
        self.processed_records.setdefault(record_id, set()).add(role)

    def completed_ids(self, roles: list[str]) -> set[str]:
        return {record_id for record_id in self.processed_records if self.is_complete(record_id, roles)}

    def requeue(self, record_id: str) -> bool:
        return self.processed_records.pop(record_id, None) is not None

    def record_error(self, entry: MigrationErrorEntry) -> None:
        self.errors.append(entry)

    def recent_errors(self, limit: int) -> list[MigrationErrorEntry]:
        if limit <= 0:
            return []
        return self.errors[-limit:]

    # Quota ledger -------------------------------------------------------------

    def prune_timestamps(self, now_ms: int, window_ms: int) -> int:
        cutoff = now_ms - window_ms
        self.upload_timestamps = [ts for ts in self.upload_timestamps if ts > cutoff]
        return len(self.upload_timestamps)

    def record_upload(self, now_ms: int) -> None:
        self.upload_timestamps.append(now_ms)
        self.upload_timestamps.sort()

    # Serialization ------------------------------------------------------------

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class RunSummary(BaseModel):
    processed: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    uploads: int = 0
    remaining: int = 0
    total: int = 0
    completed: int = 0
    estimated_seconds_remaining: float = 0.0
    stop_reason: StopReason = "complete"
    errors: list[MigrationErrorEntry] = []

    @property
    def percent_complete(self) -> int:
        if self.total <= 0:
            return 100
        return round(self.completed / self.total * 100)


class RunPlan(BaseModel):
    total_records: int
    eligible: int
    already_processed: int
    pending: int
    skippable: int
    selected: int
    pending_uploads: int
    estimated_seconds_remaining: float


__all__ = [
    "ALL_ROLES",
    "Attachment",
    "MigrationErrorEntry",
    "MigrationProgress",
    "RunPlan",
    "RunSummary",
    "SourceRecord",
    "StopReason",
    "Thumbnail",
    "Thumbnails",
]
