"""Migration engine: resolve, upload under quota, patch, checkpoint."""

from rehost.pipeline.events import (
    BackoffWait,
    EventBus,
    MigrationEvent,
    RateLimitWait,
    RecordFinished,
    RecordStarted,
    RunCompleted,
    RunStarted,
)
from rehost.pipeline.patcher import RecordPatcher
from rehost.pipeline.ratelimit import Sleeper, SlidingWindowLimiter, SystemClock, estimate_seconds_remaining
from rehost.pipeline.resolver import resolve_attachment_url
from rehost.pipeline.runner import MigrationRunner, RunOptions, estimate_time_remaining
from rehost.pipeline.status import RoleCompletion, completion_report
from rehost.pipeline.uploader import RateLimitedUploader

__all__ = [
    "BackoffWait",
    "EventBus",
    "MigrationEvent",
    "MigrationRunner",
    "RateLimitWait",
    "RateLimitedUploader",
    "RecordFinished",
    "RecordPatcher",
    "RecordStarted",
    "RoleCompletion",
    "RunCompleted",
    "RunOptions",
    "RunStarted",
    "Sleeper",
    "SlidingWindowLimiter",
    "SystemClock",
    "completion_report",
    "estimate_seconds_remaining",
    "estimate_time_remaining",
    "resolve_attachment_url",
]
