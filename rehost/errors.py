"""Rehost error hierarchy.

All project exceptions inherit from RehostError, enabling:
- ``except RehostError`` at top-level boundaries (CLI)
- Fine-grained catches deeper in the stack (``except PatchConflictError``)

Hierarchy:
    RehostError
    ├── ConfigError
    ├── CheckpointError                     # fatal: the run cannot persist progress
    ├── SourceAPIError                      # listing/patching the tabular source failed
    │   └── PatchConflictError              # record vanished or field shape changed
    ├── UploadError                         # non-throttling image host failure
    │   └── RateLimitExceededError          # throttled beyond the retry budget
    └── MigrationCancelled                  # stop signal hit a suspension point

Only SourceAPIError (outside of PatchConflictError) and CheckpointError abort
a run. Everything else is recorded against the record and the run moves on.
"""

from __future__ import annotations

from typing import Any


class RehostError(Exception):
    """Base class for all rehost errors."""


class ConfigError(RehostError):
    pass


class CheckpointError(RehostError):
    pass


class MigrationCancelled(RehostError):
    pass


class SourceAPIError(RehostError):
    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        payload: Any = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.payload = payload
        self.retryable = retryable


class PatchConflictError(SourceAPIError):
    def __init__(
        self,
        message: str,
        *,
        record_id: str,
        status: int | None = None,
        payload: Any = None,
        hosted_urls: dict[str, str] | None = None,
    ) -> None:
        super().__init__(message, status=status, payload=payload, retryable=False)
        self.record_id = record_id
        self.hosted_urls = dict(hosted_urls or {})


class UploadError(RehostError):
    def __init__(self, message: str, *, status: int | None = None, payload: Any = None) -> None:
        super().__init__(message)
        self.status = status
        self.payload = payload


class RateLimitExceededError(UploadError):
    def __init__(self, message: str, *, attempts: int) -> None:
        super().__init__(message, status=429)
        self.attempts = attempts


__all__ = [
    "RehostError",
    "ConfigError",
    "CheckpointError",
    "MigrationCancelled",
    "SourceAPIError",
    "PatchConflictError",
    "UploadError",
    "RateLimitExceededError",
]
