"""Structured logging for the grid and strategy loops.

Every line is a JSON object. Work done on behalf of one symbol runs inside
``symbol_context`` so that nested calls (reconciler, pipeline, exchange
client) emit lines carrying the same ``loop`` and ``symbol`` fields without
threading them through every call.
"""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
import sys
from typing import Any, ContextManager, MutableMapping

import structlog

from gridpilot.config.settings import MonitoringConfig

SECRET_KEYS = frozenset({"api_key", "api_secret", "secret", "signature", "x-mbx-apikey"})
REDACTED = "***"


def redact_secrets(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """Mask credential fields, top level only."""
    for key in event_dict:
        if key.lower() in SECRET_KEYS and event_dict[key]:
            event_dict[key] = REDACTED
    return event_dict


def symbol_context(loop: str, symbol: str) -> ContextManager[Any]:
    """Bind ``loop`` ("grid" or "strategy") and ``symbol`` to every line logged inside the block."""
    return structlog.contextvars.bound_contextvars(loop=loop, symbol=symbol.upper())


def configure_logging(
    log_level: str = "INFO",
    logs_path: str | None = None,
    monitoring: MonitoringConfig | None = None,
) -> None:
    level = getattr(logging, log_level.upper(), logging.INFO)
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
        force=True,
    )
    if logs_path:
        # Only ERROR lines (failed cancels, rejected orders, halts) land here.
        log_dir = Path(logs_path)
        log_dir.mkdir(parents=True, exist_ok=True)
        max_bytes = monitoring.error_log_max_bytes if monitoring else 5_000_000
        backup_count = monitoring.error_log_backup_count if monitoring else 3
        error_handler = RotatingFileHandler(
            log_dir / "errors.log",
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        error_handler.setLevel(logging.ERROR)
        error_handler.setFormatter(logging.Formatter("%(message)s"))
        logging.getLogger().addHandler(error_handler)
    # Signed query strings must never reach the log; the REST client emits its own safe lines.
    for noisy_logger in ("httpx", "httpcore", "uvicorn.access"):
        logging.getLogger(noisy_logger).setLevel(logging.WARNING)
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.add_log_level,
            redact_secrets,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
