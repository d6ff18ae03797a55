"""Tabular source capability and the paginated record reader."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from typing import Any, Protocol

from tenacity import RetryCallState, Retrying, retry_if_exception, stop_after_attempt, wait_fixed

from rehost.errors import SourceAPIError
from rehost.lib.log import get_logger
from rehost.models import SourceRecord

logger = get_logger(__name__)

DEFAULT_LISTING_RETRIES = 3
DEFAULT_LISTING_RETRY_DELAY = 5.0


@dataclass
class Page:
    records: list[SourceRecord] = field(default_factory=list)
    next_cursor: str | None = None


class TabularSource(Protocol):
    supports_partial_update: bool

    def list_page(self, cursor: str | None = None) -> Page: ...

    def get_record(self, record_id: str) -> SourceRecord: ...

    def patch_fields(self, record_id: str, fields: dict[str, Any]) -> SourceRecord: ...

    def replace_fields(self, record_id: str, fields: dict[str, Any]) -> SourceRecord: ...


def _is_retryable_error(exc: BaseException) -> bool:
    return isinstance(exc, SourceAPIError) and exc.retryable


def _log_retry(state: RetryCallState) -> None:
    exc = state.outcome.exception() if state.outcome is not None else None
    logger.warning(
        "source_page_retry",
        attempt=state.attempt_number,
        delay=state.next_action.sleep if state.next_action is not None else None,
        error=str(exc),
    )


def iter_records(
    source: TabularSource,
    *,
    retries: int = DEFAULT_LISTING_RETRIES,
    retry_delay: float = DEFAULT_LISTING_RETRY_DELAY,
    sleep: Callable[[float], None] | None = None,
) -> Iterator[SourceRecord]:
    """Yield every record, following pagination cursors until exhausted.

    Each page fetch is retried on transient errors (429, 5xx, network);
    anything else propagates as SourceAPIError.
    """
    cursor: str | None = None
    page_number = 0
    while True:
        retry_kwargs: dict[str, Any] = {
            "stop": stop_after_attempt(max(retries, 0) + 1),
            "wait": wait_fixed(retry_delay),
            "retry": retry_if_exception(_is_retryable_error),
            "before_sleep": _log_retry,
            "reraise": True,
        }
        if sleep is not None:
            retry_kwargs["sleep"] = sleep
        page: Page = Retrying(**retry_kwargs)(source.list_page, cursor)
        page_number += 1
        logger.debug("source_page_fetched", page=page_number, records=len(page.records))
        yield from page.records
        if not page.next_cursor:
            return
        cursor = page.next_cursor


def fetch_all(
    source: TabularSource,
    *,
    retries: int = DEFAULT_LISTING_RETRIES,
    retry_delay: float = DEFAULT_LISTING_RETRY_DELAY,
    sleep: Callable[[float], None] | None = None,
) -> list[SourceRecord]:
    """Materialize the full listing; datasets here are hundreds to low thousands of rows."""
    records = list(iter_records(source, retries=retries, retry_delay=retry_delay, sleep=sleep))
    logger.info("source_records_fetched", count=len(records))
    return records


__all__ = [
    "Page",
    "TabularSource",
    "fetch_all",
    "iter_records",
]
