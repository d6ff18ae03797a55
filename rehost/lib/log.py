"""Structured logging for rehost runs.

structlog renders the pipeline's own events. Standard-library records from
the HTTP stack (``httpx``/``httpcore``) go through the same renderer via
``ProcessorFormatter`` so ``--verbose`` shows request lines and
``--json-logs`` keeps every line machine-readable. Credentials never reach
the output: values under secret-looking keys and inline tokens (bearer
tokens, Imgur ``Client-ID``, ImgBB ``key=`` parameters) are masked.
"""

from __future__ import annotations

import logging
import re
import sys
from typing import Any, TextIO

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

MASK = "***"

SECRET_KEYS = frozenset(
    {
        "api_key",
        "authorization",
        "client_id",
        "image_host_key",
        "key",
        "source_api_key",
        "token",
    }
)

_INLINE_SECRETS = (
    re.compile(r"(Bearer\s+)[^\s\"',]+", re.IGNORECASE),
    re.compile(r"(Client-ID\s+)[^\s\"',]+", re.IGNORECASE),
    re.compile(r"([?&]key=)[^&\s\"']+"),
)

HTTP_LOGGERS = ("httpx", "httpcore")


class _StderrProxy:
    """Writes to whatever ``sys.stderr`` is at write time (click's runner swaps it)."""

    def write(self, s: str) -> int:
        return sys.stderr.write(s)

    def flush(self) -> None:
        sys.stderr.flush()

    def isatty(self) -> bool:
        return sys.stderr.isatty()

    def fileno(self) -> int:
        return sys.stderr.fileno()


_stderr_proxy: TextIO = _StderrProxy()  # type: ignore[assignment]


def scrub(text: str) -> str:
    for pattern in _INLINE_SECRETS:
        text = pattern.sub(lambda m: m.group(1) + MASK, text)
    return text


def redact_secrets(_logger: WrappedLogger, _method: str, event_dict: EventDict) -> EventDict:
    for key, value in event_dict.items():
        if key.lower() in SECRET_KEYS and value is not None:
            event_dict[key] = MASK
        elif isinstance(value, str):
            event_dict[key] = scrub(value)
    return event_dict


def _renderer(json_logs: bool) -> Processor:
    if json_logs:
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())


def _route_http_logs(renderer: Processor, verbose: bool) -> None:
    handler = logging.StreamHandler(_stderr_proxy)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=[
                structlog.stdlib.add_log_level,
                structlog.stdlib.add_logger_name,
                structlog.processors.TimeStamper(fmt="iso", utc=True),
                redact_secrets,
            ],
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )
    for name in HTTP_LOGGERS:
        http_logger = logging.getLogger(name)
        # Reconfiguring replaces the handler instead of stacking another one
        for previous in [h for h in http_logger.handlers if getattr(h, "_rehost", False)]:
            http_logger.removeHandler(previous)
        handler._rehost = True  # type: ignore[attr-defined]
        http_logger.addHandler(handler)
        http_logger.propagate = False
        # httpcore is connection-level noise; httpx request lines only with --verbose
        http_logger.setLevel(logging.DEBUG if verbose and name == "httpx" else logging.WARNING)


def configure_logging(verbose: bool = False, json_logs: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    renderer = _renderer(json_logs)

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        redact_secrets,
    ]
    if json_logs:
        processors.append(structlog.processors.format_exc_info)
    processors.append(renderer)

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=_stderr_proxy),
        cache_logger_on_first_use=True,
    )
    _route_http_logs(renderer, verbose)


def get_logger(name: str | None = None) -> Any:
    return structlog.get_logger(name)
