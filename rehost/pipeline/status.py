"""Completion check: how many records already carry their hosted URL."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from rehost.models import SourceRecord
from rehost.pipeline.resolver import resolve_attachment_url


@dataclass(frozen=True)
class RoleCompletion:
    role: str
    output_field: str
    total_records: int
    with_attachment: int
    migrated: int

    @property
    def percent(self) -> float:
        if self.with_attachment <= 0:
            return 100.0
        return round(self.migrated / self.with_attachment * 100, 1)

    @property
    def missing(self) -> int:
        return max(self.with_attachment - self.migrated, 0)


def _populated(value: object) -> bool:
    return isinstance(value, str) and bool(value.strip())


def completion_report(records: Iterable[SourceRecord], field_map: Mapping[str, str]) -> list[RoleCompletion]:
    """Count, per attachment field, records with an attachment and with a filled output field."""
    materialized = list(records)
    report: list[RoleCompletion] = []
    for role, output_field in field_map.items():
        with_attachment = 0
        migrated = 0
        for record in materialized:
            if resolve_attachment_url(record, role) is None:
                continue
            with_attachment += 1
            if _populated(record.fields.get(output_field)):
                migrated += 1
        report.append(
            RoleCompletion(
                role=role,
                output_field=output_field,
                total_records=len(materialized),
                with_attachment=with_attachment,
                migrated=migrated,
            )
        )
    return report


__all__ = ["RoleCompletion", "completion_report"]
