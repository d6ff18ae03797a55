"""Durable migration checkpoints.

A checkpoint is the single JSON document describing which (record, role)
pairs are finished, the upload timestamp ledger used for quota accounting,
and the append-only error list. Saves are write-through: the orchestrator
calls ``save`` after every record, and each save replaces the file
atomically so a crash mid-write leaves the previous checkpoint intact.
"""

from __future__ import annotations

import contextlib
import os
import tempfile
import threading
from pathlib import Path
from typing import Protocol, runtime_checkable

from pydantic import ValidationError

from rehost.errors import CheckpointError
from rehost.lib.json import JSONDecodeError, dumps, loads
from rehost.lib.log import get_logger
from rehost.models import MigrationProgress

logger = get_logger(__name__)

PAUSE_SUFFIX = ".pause"


@runtime_checkable
class CheckpointStore(Protocol):
    def load(self) -> MigrationProgress: ...

    def save(self, progress: MigrationProgress) -> None: ...

    def pause_requested(self) -> bool: ...


class JsonCheckpointStore:
    """Checkpoint persisted as one JSON file, plus a sibling pause sentinel."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.Lock()

    @property
    def pause_path(self) -> Path:
        return self.path.with_name(self.path.name + PAUSE_SUFFIX)

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> MigrationProgress:
        with self._lock:
            try:
                raw = self.path.read_bytes()
            except FileNotFoundError:
                logger.debug("checkpoint_missing", path=str(self.path))
                return MigrationProgress()
            except OSError as exc:
                raise CheckpointError(f"Cannot read checkpoint {self.path}: {exc}") from exc
        try:
            payload = loads(raw)
        except JSONDecodeError as exc:
            raise CheckpointError(f"Checkpoint {self.path} is not valid JSON: {exc}") from exc
        if not isinstance(payload, dict):
            raise CheckpointError(f"Checkpoint {self.path} must contain a JSON object")
        try:
            progress = MigrationProgress.model_validate(payload)
        except ValidationError as exc:
            raise CheckpointError(f"Checkpoint {self.path} has an unexpected shape: {exc}") from exc
        logger.debug(
            "checkpoint_loaded",
            path=str(self.path),
            processed=len(progress.processed_records),
            total=progress.total_records,
        )
        return progress

    def save(self, progress: MigrationProgress) -> None:
        body = dumps(progress.to_payload(), indent=True)
        with self._lock:
            tmp_path: Path | None = None
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with tempfile.NamedTemporaryFile(
                    "w",
                    encoding="utf-8",
                    dir=self.path.parent,
                    prefix=f".{self.path.name}.",
                    delete=False,
                ) as handle:
                    tmp_path = Path(handle.name)
                    handle.write(body)
                    handle.flush()
                    os.fsync(handle.fileno())
                tmp_path.replace(self.path)
            except OSError as exc:
                if tmp_path is not None:
                    with contextlib.suppress(OSError):
                        tmp_path.unlink()
                raise CheckpointError(f"Cannot write checkpoint {self.path}: {exc}") from exc

    def pause_requested(self) -> bool:
        return self.pause_path.exists()

    def request_pause(self) -> None:
        try:
            self.pause_path.parent.mkdir(parents=True, exist_ok=True)
            self.pause_path.touch()
        except OSError as exc:
            raise CheckpointError(f"Cannot create pause marker {self.pause_path}: {exc}") from exc

    def clear_pause(self) -> bool:
        try:
            self.pause_path.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise CheckpointError(f"Cannot remove pause marker {self.pause_path}: {exc}") from exc
        return True


class MemoryCheckpointStore:
    """In-process checkpoint store; keeps a deep copy of every save."""

    def __init__(self, initial: MigrationProgress | None = None, *, fail_on_save: int | None = None) -> None:
        self._snapshot = initial.model_copy(deep=True) if initial is not None else None
        self._fail_on_save = fail_on_save
        self.save_count = 0
        self.paused = False

    @property
    def snapshot(self) -> MigrationProgress | None:
        return self._snapshot

    def load(self) -> MigrationProgress:
        if self._snapshot is None:
            return MigrationProgress()
        return self._snapshot.model_copy(deep=True)

    def save(self, progress: MigrationProgress) -> None:
        self.save_count += 1
        if self._fail_on_save is not None and self.save_count >= self._fail_on_save:
            raise CheckpointError(f"Simulated checkpoint failure on save #{self.save_count}")
        self._snapshot = progress.model_copy(deep=True)

    def pause_requested(self) -> bool:
        return self.paused


__all__ = [
    "CheckpointStore",
    "JsonCheckpointStore",
    "MemoryCheckpointStore",
    "PAUSE_SUFFIX",
]
