"""Write hosted URLs back into the source record."""

from __future__ import annotations

from typing import Any

from rehost.errors import PatchConflictError
from rehost.lib.log import get_logger
from rehost.models import SourceRecord
from rehost.sources.base import TabularSource

logger = get_logger(__name__)


class RecordPatcher:
    """One update per record, never clobbering fields we did not write.

    Sources that merge partial updates get the output fields only. Sources
    that can only replace a whole record are read first and the new values
    are merged into the current field set.
    """

    def __init__(self, source: TabularSource) -> None:
        self._source = source

    def patch(self, record_id: str, fields: dict[str, Any]) -> SourceRecord:
        if not fields:
            raise ValueError("patch requires at least one field")
        try:
            if getattr(self._source, "supports_partial_update", False):
                updated = self._source.patch_fields(record_id, dict(fields))
            else:
                current = self._source.get_record(record_id)
                merged = {**current.fields, **fields}
                updated = self._source.replace_fields(record_id, merged)
        except PatchConflictError as exc:
            exc.hosted_urls.update({name: str(value) for name, value in fields.items()})
            raise
        missing = sorted(name for name in fields if name not in updated.fields)
        if missing:
            raise PatchConflictError(
                f"Record {record_id} did not keep field(s) {', '.join(missing)} after update",
                record_id=record_id,
                hosted_urls={name: str(value) for name, value in fields.items()},
            )
        logger.debug("record_patched", record_id=record_id, fields=sorted(fields))
        return updated


__all__ = ["RecordPatcher"]
