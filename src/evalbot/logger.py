"""Structured logging for evalbot.

Configured at import time from the environment (``LOG_LEVEL``, and
``LOG_FORMAT=json`` for machine-readable output) so errors raised while
loading Settings get logged too. :func:`set_level` applies the configured
``logging.level`` once Settings exist.
"""

from __future__ import annotations

import logging
import os
import re
import sys
from typing import Any

import structlog

# Bot API URLs embed the token (``/bot123:abc/sendMessage``) and aiohttp
# errors echo the URL back.
_TOKEN_RE = re.compile(r"bot\d+:[A-Za-z0-9_-]+")


def redact_tokens(_logger: Any, _method: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """structlog processor: scrub bot tokens from string values."""
    return {
        key: _TOKEN_RE.sub("bot<redacted>", value) if isinstance(value, str) else value
        for key, value in event_dict.items()
    }


def _level(name: str) -> int:
    return getattr(logging, name.upper(), logging.INFO)


def _setup_logging() -> structlog.stdlib.BoundLogger:
    level = _level(os.environ.get("LOG_LEVEL", "INFO"))
    as_json = os.environ.get("LOG_FORMAT", "").lower() == "json"

    logging.basicConfig(level=level, format="%(message)s", stream=sys.stderr)
    # aiohttp logs every client connection at INFO
    logging.getLogger("aiohttp").setLevel(max(level, logging.WARNING))

    processors: list[Any] = [
        structlog.stdlib.filter_by_level,
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso", utc=as_json),
        redact_tokens,
    ]
    if as_json:
        processors += [structlog.processors.dict_tracebacks, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    return structlog.get_logger("evalbot")


logger = _setup_logging()


def set_level(level_name: str) -> None:
    level = _level(level_name)
    logging.getLogger().setLevel(level)
    logging.getLogger("aiohttp").setLevel(max(level, logging.WARNING))


def _log_uncaught(exc_type: type[BaseException], exc_value: BaseException, exc_tb: Any) -> None:
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_tb)
        return
    logger.critical("Uncaught exception", exc_info=(exc_type, exc_value, exc_tb))
    sys.exit(1)


sys.excepthook = _log_uncaught
