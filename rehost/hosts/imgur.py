"""Imgur anonymous upload API (https://apidocs.imgur.com/)."""

from __future__ import annotations

from typing import Any

from rehost.hosts.base import Hosted, HttpImageHost

IMGUR_UPLOAD_URL = "https://api.imgur.com/3/image"
IMGUR_DELETE_URL = "https://api.imgur.com/3/image/{deletehash}"


class ImgurHost(HttpImageHost):
    name = "imgur"
    endpoint = IMGUR_UPLOAD_URL

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Client-ID {self._api_key}"}

    def _form(self, source_url: str, name: str | None) -> dict[str, str]:
        form = {"image": source_url, "type": "url"}
        if name:
            form["title"] = name
        return form

    def _extract(self, payload: dict[str, Any]) -> Hosted | None:
        data = payload.get("data")
        if not isinstance(data, dict):
            return None
        url = data.get("link")
        if not isinstance(url, str) or not url:
            return None
        deletehash = data.get("deletehash")
        delete_url = IMGUR_DELETE_URL.format(deletehash=deletehash) if isinstance(deletehash, str) else None
        return Hosted(url=url, delete_url=delete_url)
