"""Airtable REST client (list with offset pagination, PATCH/PUT records)."""

from __future__ import annotations

from typing import Any
from urllib.parse import quote

import httpx

from rehost.errors import PatchConflictError, SourceAPIError
from rehost.lib.log import get_logger
from rehost.models import SourceRecord
from rehost.sources.base import Page

logger = get_logger(__name__)

AIRTABLE_API_URL = "https://api.airtable.com/v0"
DEFAULT_PAGE_SIZE = 100
# Write errors that mean the record or field no longer matches what we uploaded for
_CONFLICT_ERROR_TYPES = {
    "UNKNOWN_FIELD_NAME",
    "INVALID_VALUE_FOR_COLUMN",
    "ROW_DOES_NOT_EXIST",
    "MODEL_ID_NOT_FOUND",
}


def _error_details(resp: httpx.Response) -> tuple[str, str | None, Any]:
    message = f"HTTP {resp.status_code}"
    error_type: str | None = None
    payload: Any = None
    try:
        payload = resp.json()
    except ValueError:
        text = resp.text.strip()
        if text:
            message = text[:500]
        return message, error_type, payload
    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, dict):
        error_type = error.get("type") if isinstance(error.get("type"), str) else None
        msg = error.get("message")
        if isinstance(msg, str) and msg.strip():
            message = msg
        elif error_type:
            message = error_type
    elif isinstance(error, str):
        error_type = error
        message = error
    return message, error_type, payload


def _raise_for_status(resp: httpx.Response, *, record_id: str | None = None, write: bool = False) -> None:
    if resp.status_code < 400:
        return
    message, error_type, payload = _error_details(resp)
    if write and record_id is not None:
        if resp.status_code == 404 or (resp.status_code == 422 and error_type in _CONFLICT_ERROR_TYPES):
            raise PatchConflictError(
                f"Airtable rejected update of {record_id}: {resp.status_code} - {message}",
                record_id=record_id,
                status=resp.status_code,
                payload=payload,
            )
    retryable = resp.status_code == 429 or resp.status_code >= 500
    raise SourceAPIError(
        f"Airtable API error: {resp.status_code} - {message}",
        status=resp.status_code,
        payload=payload,
        retryable=retryable,
    )


class AirtableClient:
    """One Airtable table. Bearer auth; PATCH merges, PUT replaces."""

    supports_partial_update = True

    def __init__(
        self,
        api_key: str,
        base_id: str,
        table: str,
        *,
        api_url: str = AIRTABLE_API_URL,
        timeout: float = 30.0,
        page_size: int = DEFAULT_PAGE_SIZE,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_id = base_id
        self.table = table
        self._page_size = page_size
        self._table_path = quote(table, safe="")
        self._client = httpx.Client(
            base_url=f"{api_url.rstrip('/')}/{quote(base_id, safe='')}/",
            headers={"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    def _request(
        self,
        method: str,
        path: str,
        *,
        record_id: str | None = None,
        write: bool = False,
        **kwargs: Any,
    ) -> dict[str, Any]:
        try:
            resp = self._client.request(method, path, **kwargs)
        except httpx.TransportError as exc:
            raise SourceAPIError(f"Airtable request failed: {exc}", retryable=True) from exc
        _raise_for_status(resp, record_id=record_id, write=write)
        try:
            payload = resp.json()
        except ValueError as exc:
            raise SourceAPIError(
                f"Airtable returned a malformed response: {resp.text[:200]}",
                status=resp.status_code,
            ) from exc
        if not isinstance(payload, dict):
            raise SourceAPIError("Airtable returned a malformed response", status=resp.status_code, payload=payload)
        return payload

    def _record(self, payload: dict[str, Any]) -> SourceRecord:
        if "id" not in payload:
            raise SourceAPIError("Airtable record payload is missing 'id'", payload=payload)
        return SourceRecord.from_api(payload)

    def list_page(self, cursor: str | None = None) -> Page:
        params: dict[str, Any] = {"pageSize": self._page_size}
        if cursor:
            params["offset"] = cursor
        payload = self._request("GET", self._table_path, params=params)
        raw_records = payload.get("records")
        if not isinstance(raw_records, list):
            raise SourceAPIError("Airtable listing is missing 'records'", payload=payload)
        records = [self._record(item) for item in raw_records if isinstance(item, dict)]
        next_cursor = payload.get("offset")
        return Page(records=records, next_cursor=next_cursor if isinstance(next_cursor, str) else None)

    def get_record(self, record_id: str) -> SourceRecord:
        payload = self._request("GET", f"{self._table_path}/{quote(record_id, safe='')}", record_id=record_id)
        return self._record(payload)

    def patch_fields(self, record_id: str, fields: dict[str, Any]) -> SourceRecord:
        logger.debug("airtable_patch", record_id=record_id, fields=sorted(fields))
        payload = self._request(
            "PATCH",
            f"{self._table_path}/{quote(record_id, safe='')}",
            record_id=record_id,
            write=True,
            json={"fields": fields},
        )
        return self._record(payload)

    def replace_fields(self, record_id: str, fields: dict[str, Any]) -> SourceRecord:
        logger.debug("airtable_replace", record_id=record_id, fields=sorted(fields))
        payload = self._request(
            "PUT",
            f"{self._table_path}/{quote(record_id, safe='')}",
            record_id=record_id,
            write=True,
            json={"fields": fields},
        )
        return self._record(payload)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> AirtableClient:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()


__all__ = ["AirtableClient", "AIRTABLE_API_URL"]
