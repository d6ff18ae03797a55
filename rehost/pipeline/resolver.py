"""Pick the most usable URL out of a record's attachment field."""

from __future__ import annotations

from pydantic import ValidationError

from rehost.models import Attachment, SourceRecord

# Thumbnail sizes tried, in order, when the attachment has no direct url
THUMBNAIL_PRECEDENCE = ("full", "large", "small")


def primary_attachment(record: SourceRecord, field_name: str) -> Attachment | None:
    """First attachment of the field; later entries are never migrated."""
    value = record.fields.get(field_name)
    if not isinstance(value, list) or not value:
        return None
    first = value[0]
    if not isinstance(first, dict):
        return None
    try:
        return Attachment.model_validate(first)
    except ValidationError:
        return None


def _usable(url: str | None) -> str | None:
    if isinstance(url, str) and url.strip():
        return url.strip()
    return None


def resolve_attachment_url(record: SourceRecord, field_name: str) -> str | None:
    """Return ``url``, else ``thumbnails.full/large/small.url``, else None.

    None means there is nothing to migrate for this field. It is never an
    error and callers should not log it as one.
    """
    attachment = primary_attachment(record, field_name)
    if attachment is None:
        return None
    direct = _usable(attachment.url)
    if direct:
        return direct
    thumbnails = attachment.thumbnails
    if thumbnails is None:
        return None
    for size in THUMBNAIL_PRECEDENCE:
        thumb = getattr(thumbnails, size)
        if thumb is not None:
            url = _usable(thumb.url)
            if url:
                return url
    return None


__all__ = ["THUMBNAIL_PRECEDENCE", "primary_attachment", "resolve_attachment_url"]
