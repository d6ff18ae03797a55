"""Image host clients."""

from __future__ import annotations

from typing import TYPE_CHECKING

import httpx

from rehost.errors import ConfigError
from rehost.hosts.base import Hosted, HttpImageHost, ImageHost, Throttled, UploadOutcome, looks_throttled, upload_name
from rehost.hosts.imgbb import ImgbbHost
from rehost.hosts.imgur import ImgurHost

if TYPE_CHECKING:
    from rehost.config import MigrationSettings

_HOSTS: dict[str, type[HttpImageHost]] = {
    "imgbb": ImgbbHost,
    "imgur": ImgurHost,
}


def create_host(settings: MigrationSettings, *, transport: httpx.BaseTransport | None = None) -> HttpImageHost:
    host_cls = _HOSTS.get(settings.image_host)
    if host_cls is None:
        raise ConfigError(f"Unknown image host '{settings.image_host}'")
    if settings.image_host_key is None:
        raise ConfigError(f"Image host '{settings.image_host}' requires image_host_key")
    return host_cls(
        settings.image_host_key.get_secret_value(),
        timeout=settings.request_timeout,
        transport=transport,
    )


__all__ = [
    "Hosted",
    "HttpImageHost",
    "ImageHost",
    "ImgbbHost",
    "ImgurHost",
    "Throttled",
    "UploadOutcome",
    "create_host",
    "looks_throttled",
    "upload_name",
]
