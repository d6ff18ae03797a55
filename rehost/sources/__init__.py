"""Tabular record sources."""

from __future__ import annotations

from typing import TYPE_CHECKING

import httpx

from rehost.errors import ConfigError
from rehost.sources.airtable import AirtableClient
from rehost.sources.base import Page, TabularSource, fetch_all, iter_records

if TYPE_CHECKING:
    from rehost.config import MigrationSettings


def create_source(settings: MigrationSettings, *, transport: httpx.BaseTransport | None = None) -> AirtableClient:
    if settings.source_api_key is None or not settings.source_base_id:
        raise ConfigError("The tabular source requires source_api_key and source_base_id")
    return AirtableClient(
        settings.source_api_key.get_secret_value(),
        settings.source_base_id,
        settings.source_table,
        api_url=settings.source_api_url,
        timeout=settings.request_timeout,
        transport=transport,
    )


__all__ = [
    "AirtableClient",
    "Page",
    "TabularSource",
    "create_source",
    "fetch_all",
    "iter_records",
]
