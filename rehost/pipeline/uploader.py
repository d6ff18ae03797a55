"""Quota-aware upload with exponential backoff on provider throttling."""

from __future__ import annotations

import random

from rehost.errors import RateLimitExceededError
from rehost.hosts.base import Hosted, ImageHost
from rehost.lib.log import get_logger
from rehost.pipeline.events import BackoffWait, EventBus
from rehost.pipeline.ratelimit import Sleeper, SlidingWindowLimiter

logger = get_logger(__name__)

DEFAULT_MAX_RETRIES = 3
DEFAULT_BACKOFF_BASE = 60.0
DEFAULT_BACKOFF_JITTER = 5.0


class RateLimitedUploader:
    """Upload one resolved URL without exceeding the sliding-window budget.

    Every attempt first takes a slot from the limiter. A throttled attempt
    gives its slot back and sleeps ``base * 2**attempt + U(0, jitter)``
    seconds; after ``max_retries`` throttled retries the record fails with
    RateLimitExceededError. Any other failure is raised immediately.
    """

    def __init__(
        self,
        host: ImageHost,
        limiter: SlidingWindowLimiter,
        *,
        max_retries: int = DEFAULT_MAX_RETRIES,
        backoff_base: float = DEFAULT_BACKOFF_BASE,
        backoff_jitter: float = DEFAULT_BACKOFF_JITTER,
        rng: random.Random | None = None,
        sleeper: Sleeper | None = None,
        bus: EventBus | None = None,
        migration: str = "",
    ) -> None:
        self._host = host
        self._limiter = limiter
        self.max_retries = max(0, max_retries)
        self._backoff_base = backoff_base
        self._backoff_jitter = backoff_jitter
        self._rng = rng or random.Random()
        self._sleeper = sleeper or Sleeper()
        self._bus = bus
        self._migration = migration

    def backoff_delay(self, attempt: int) -> float:
        jitter = self._rng.uniform(0, self._backoff_jitter) if self._backoff_jitter > 0 else 0.0
        return self._backoff_base * (2**attempt) + jitter

    def upload(self, source_url: str, *, name: str | None = None, record_id: str = "") -> Hosted:
        log = logger.bind(record_id=record_id, host=self._host.name)
        for attempt in range(self.max_retries + 1):
            self._limiter.acquire()
            try:
                outcome = self._host.upload(source_url, name=name)
            except Exception:
                self._limiter.release()
                raise
            if isinstance(outcome, Hosted):
                self._limiter.commit()
                log.info("upload_succeeded", hosted_url=outcome.url, attempts=attempt + 1)
                return outcome
            self._limiter.release()
            if attempt >= self.max_retries:
                break
            delay = self.backoff_delay(attempt)
            if outcome.retry_after is not None:
                delay = max(delay, outcome.retry_after)
            log.warning(
                "upload_throttled",
                reason=outcome.reason,
                retry=attempt + 1,
                max_retries=self.max_retries,
                delay=round(delay, 3),
            )
            if self._bus is not None:
                self._bus.emit(
                    BackoffWait(
                        migration=self._migration,
                        record_id=record_id,
                        attempt=attempt + 1,
                        max_retries=self.max_retries,
                        seconds=delay,
                        reason=outcome.reason,
                    )
                )
            self._sleeper.sleep(delay)
        raise RateLimitExceededError(
            f"{self._host.name} rate limit exceeded after {self.max_retries} retries",
            attempts=self.max_retries + 1,
        )


__all__ = ["RateLimitedUploader"]
