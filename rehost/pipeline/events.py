"""Structured event bus for the migration run lifecycle.

Event hierarchy (all frozen dataclasses):

    MigrationEvent (base)
    ├── RunStarted      : emitted once the source listing and checkpoint are loaded
    ├── RecordStarted   : emitted before a record enters resolve → upload → patch
    ├── RecordFinished  : emitted after the record's checkpoint commit
    ├── RateLimitWait   : emitted before blocking for quota to free up
    ├── BackoffWait     : emitted before sleeping after a throttled upload
    └── RunCompleted    : emitted with the final RunSummary

Progress reporting (rich bars, plain lines) subscribes here instead of being
baked into the engine. Handlers run synchronously on the emitting thread;
exceptions in a handler are logged but never reach the pipeline.
"""

from __future__ import annotations

import threading
from collections import defaultdict
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, TypeVar

from rehost.lib.log import get_logger

if TYPE_CHECKING:
    from rehost.models import RunSummary

logger = get_logger(__name__)

E = TypeVar("E", bound="MigrationEvent")


@dataclass(frozen=True)
class MigrationEvent:
    timestamp: datetime = field(default_factory=lambda: datetime.now(tz=timezone.utc))
    migration: str = ""


@dataclass(frozen=True)
class RunStarted(MigrationEvent):
    total: int = 0
    completed: int = 0
    pending: int = 0
    selected: int = 0


@dataclass(frozen=True)
class RecordStarted(MigrationEvent):
    record_id: str = ""
    title: str = ""
    index: int = 0
    selected: int = 0


@dataclass(frozen=True)
class RecordFinished(MigrationEvent):
    record_id: str = ""
    title: str = ""
    status: str = "done"  # "done" | "skipped" | "failed"
    hosted_urls: tuple[tuple[str, str], ...] = ()
    error: str = ""


@dataclass(frozen=True)
class RateLimitWait(MigrationEvent):
    seconds: float = 0.0
    in_window: int = 0
    budget: int = 0


@dataclass(frozen=True)
class BackoffWait(MigrationEvent):
    record_id: str = ""
    attempt: int = 0
    max_retries: int = 0
    seconds: float = 0.0
    reason: str = ""


@dataclass(frozen=True)
class RunCompleted(MigrationEvent):
    summary: RunSummary | None = None


EventHandler = Callable[[Any], None]


class EventBus:
    """Central event dispatcher.

    Handlers receive events of the exact type they subscribed to; subscribe
    to ``MigrationEvent`` to receive every event. Emission is serialized by
    a lock because worker threads emit concurrently when the run processes
    records in parallel.
    """

    def __init__(self) -> None:
        self._handlers: dict[type, list[EventHandler]] = defaultdict(list)
        self._lock = threading.RLock()

    def subscribe(self, event_type: type[E], handler: Callable[[E], None]) -> None:
        self._handlers[event_type].append(handler)

    def unsubscribe(self, event_type: type[E], handler: Callable[[E], None]) -> None:
        handlers = self._handlers.get(event_type)
        if handlers:
            with suppress(ValueError):
                handlers.remove(handler)

    def emit(self, event: MigrationEvent) -> None:
        event_type = type(event)
        handlers = list(self._handlers.get(event_type, ()))
        if event_type is not MigrationEvent:
            handlers.extend(self._handlers.get(MigrationEvent, ()))
        with self._lock:
            for handler in handlers:
                try:
                    handler(event)
                except Exception:
                    logger.exception(
                        "event_handler_failed",
                        handler=getattr(handler, "__name__", repr(handler)),
                        event_type=event_type.__name__,
                    )

    @property
    def handler_count(self) -> int:
        return sum(len(h) for h in self._handlers.values())


__all__ = [
    "BackoffWait",
    "EventBus",
    "MigrationEvent",
    "RateLimitWait",
    "RecordFinished",
    "RecordStarted",
    "RunCompleted",
    "RunStarted",
]
