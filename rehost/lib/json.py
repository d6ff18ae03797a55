"""Central JSON utilities using orjson."""

from __future__ import annotations

from typing import Any

import orjson

# orjson.JSONDecodeError subclasses ValueError
JSONDecodeError = ValueError


def dumps(obj: Any, *, indent: bool = False) -> str:
    """Dump object to JSON string."""
    option = orjson.OPT_INDENT_2 if indent else None
    if option is None:
        return orjson.dumps(obj).decode("utf-8")
    return orjson.dumps(obj, option=option).decode("utf-8")


def loads(obj: str | bytes) -> Any:
    """Load object from JSON string or bytes."""
    return orjson.loads(obj)
