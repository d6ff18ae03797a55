"""Image host capability: upload a remote URL, get back a hosted URL."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Protocol, Union

import httpx

from rehost.errors import UploadError
from rehost.lib.log import get_logger

logger = get_logger(__name__)

THROTTLE_MARKERS = ("too many requests", "rate limit")
_NAME_UNSAFE_RE = re.compile(r"[^a-zA-Z0-9]")


@dataclass(frozen=True)
class Hosted:
    url: str
    delete_url: str | None = None


@dataclass(frozen=True)
class Throttled:
    reason: str
    retry_after: float | None = None


UploadOutcome = Union[Hosted, Throttled]


class ImageHost(Protocol):
    name: str

    def upload(self, source_url: str, *, name: str | None = None) -> UploadOutcome: ...

    def close(self) -> None: ...


def looks_throttled(text: str | None) -> bool:
    if not text:
        return False
    lowered = text.lower()
    return any(marker in lowered for marker in THROTTLE_MARKERS)


def upload_name(title: str | None, record_id: str) -> str:
    """File name sent to the host: the title with non-alphanumerics dashed, else the id."""
    if title and title.strip() and title != "Untitled":
        return f"{_NAME_UNSAFE_RE.sub('-', title.strip())}.jpg"
    return f"{record_id}.jpg"


def _retry_after(resp: httpx.Response) -> float | None:
    raw = resp.headers.get("Retry-After")
    if not raw:
        return None
    try:
        return max(0.0, float(raw))
    except ValueError:
        return None


class HttpImageHost:
    """Shared httpx plumbing; subclasses describe the provider's form and response."""

    name = "image-host"
    endpoint = ""

    def __init__(
        self,
        api_key: str,
        *,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._api_key = api_key
        self._client = httpx.Client(timeout=timeout, transport=transport)

    def _headers(self) -> dict[str, str]:
        return {}

    def _form(self, source_url: str, name: str | None) -> dict[str, str]:
        raise NotImplementedError

    def _extract(self, payload: dict[str, Any]) -> Hosted | None:
        raise NotImplementedError

    def upload(self, source_url: str, *, name: str | None = None) -> UploadOutcome:
        try:
            resp = self._client.post(self.endpoint, data=self._form(source_url, name), headers=self._headers())
        except httpx.HTTPError as exc:
            if looks_throttled(str(exc)):
                return Throttled(reason=str(exc))
            raise UploadError(f"{self.name} upload failed: {exc}") from exc

        if resp.status_code == 429:
            return Throttled(reason="HTTP 429", retry_after=_retry_after(resp))

        body = resp.text
        try:
            payload = resp.json()
        except ValueError:
            payload = None

        if resp.status_code >= 400 or not isinstance(payload, dict) or not payload.get("success", False):
            if looks_throttled(body):
                return Throttled(reason=f"HTTP {resp.status_code}: {body[:200]}", retry_after=_retry_after(resp))
            raise UploadError(
                f"{self.name} API error: {resp.status_code} - {body[:500]}",
                status=resp.status_code,
                payload=payload,
            )

        hosted = self._extract(payload)
        if hosted is None:
            raise UploadError(
                f"{self.name} returned a malformed response without a hosted URL",
                status=resp.status_code,
                payload=payload,
            )
        return hosted

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> HttpImageHost:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()


__all__ = [
    "Hosted",
    "HttpImageHost",
    "ImageHost",
    "Throttled",
    "UploadOutcome",
    "looks_throttled",
    "upload_name",
]
