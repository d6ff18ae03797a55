"""ImgBB upload API (https://api.imgbb.com/)."""

from __future__ import annotations

from typing import Any

from rehost.hosts.base import Hosted, HttpImageHost

IMGBB_UPLOAD_URL = "https://api.imgbb.com/1/upload"


class ImgbbHost(HttpImageHost):
    name = "imgbb"
    endpoint = IMGBB_UPLOAD_URL

    def _form(self, source_url: str, name: str | None) -> dict[str, str]:
        form = {"key": self._api_key, "image": source_url}
        if name:
            form["name"] = name
        return form

    def _extract(self, payload: dict[str, Any]) -> Hosted | None:
        data = payload.get("data")
        if not isinstance(data, dict):
            return None
        url = data.get("url") or data.get("display_url")
        if not isinstance(url, str) or not url:
            return None
        delete_url = data.get("delete_url")
        return Hosted(url=url, delete_url=delete_url if isinstance(delete_url, str) else None)
