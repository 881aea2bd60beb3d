"""Structured logging for the escrow core, built on structlog.

Every log line is a dotted event name with key/value context:

    escrow.*      workflow operations (created, funded, released, ...)
    scheduler.*   expiry and warning sweeps; one ``scheduler.escrow_failed``
                  per escrow that could not be processed
    webhook.*     dispatch and delivery; ``webhook.delivery_failed`` is
                  emitted once, after the last attempt
    ledger.*      settlement calls and their retries

Sweeps bind ``escrow_id`` with ``structlog.contextvars`` while they work on
an escrow, so it appears on every line logged underneath. Webhook secrets
and signatures never reach the output: ``redact_secrets`` masks them.

Usage:
    from vaultix_escrow.logging_config import setup_logging, get_logger
    setup_logging(log_level="INFO", json_logs=True)
    logger = get_logger(__name__)
    logger.info("escrow.created", escrow_id="abc-123", amount="100.00")
"""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog

REDACTED = "***"
SENSITIVE_KEYS = frozenset({"secret", "signature", "x-signature", "authorization"})


def redact_secrets(_logger: Any, _method: str, event_dict: dict) -> dict:
    """Mask subscription secrets and HMAC signatures, including in nested headers."""
    for key, value in event_dict.items():
        if key.lower() in SENSITIVE_KEYS:
            event_dict[key] = REDACTED
        elif isinstance(value, dict):
            event_dict[key] = {
                k: REDACTED if str(k).lower() in SENSITIVE_KEYS else v for k, v in value.items()
            }
    return event_dict


def setup_logging(log_level: str = "DEBUG", json_logs: bool = False) -> None:
    """Configure structlog over stdlib logging.

    Args:
        log_level: Standard Python log level string (DEBUG, INFO, WARNING, etc.)
        json_logs: JSON lines with structured tracebacks (production) or a
            colored console (development).
    """
    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
        redact_secrets,
    ]

    if json_logs:
        renderers: list[structlog.types.Processor] = [
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer(),
        ]
    else:
        renderers = [structlog.dev.ConsoleRenderer(colors=True)]

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            *renderers,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.DEBUG))

    # Per-request httpx lines would repeat every webhook attempt; the
    # dispatcher logs its own. APScheduler logs each job run at INFO.
    for noisy_logger in ("sqlalchemy.engine", "httpx", "httpcore", "apscheduler"):
        logging.getLogger(noisy_logger).setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger; context bound with contextvars is merged in."""
    return structlog.get_logger(name)
