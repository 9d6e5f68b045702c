"""Structured logging for refdata-bridge.

All modules log through structlog (``get_logger(__name__)``) with snake_case
event names and keyword context. Records end up in the stdlib root logger,
where two handlers render them:

- a Rich console handler (human readable, level chosen on the command line),
- an optional file handler writing one JSON object per line.

Both handlers share the same processor chain through
``structlog.stdlib.ProcessorFormatter``, so the file holds exactly the
context the console shows.
"""

import json
import logging
from pathlib import Path
from typing import Any

import structlog
from rich.console import Console
from rich.logging import RichHandler
from structlog.typing import EventDict, Processor, WrappedLogger

from refdata_migration import __version__

APP_NAME = "refdata-bridge"

REDACTED = "[REDACTED]"

# Matched case-insensitively as substrings of payload keys
SENSITIVE_FIELDS = frozenset(
    {"token", "password", "secret", "api_key", "authorization", "cookie"}
)


def add_app_context(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """Stamp every entry with the application name and version."""
    event_dict.setdefault("app", APP_NAME)
    event_dict.setdefault("version", __version__)
    return event_dict


def _shared_processors() -> list[Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        add_app_context,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]


def _console_handler(level: int) -> logging.Handler:
    handler = RichHandler(
        console=Console(stderr=True),
        show_time=False,
        show_path=False,
        markup=False,
        rich_tracebacks=True,
    )
    handler.setLevel(level)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.dev.ConsoleRenderer(colors=False),
            ],
            foreign_pre_chain=_shared_processors(),
        )
    )
    return handler


def _file_handler(path: Path, level: int, log_format: str) -> logging.Handler:
    path.parent.mkdir(parents=True, exist_ok=True)
    renderer: Processor
    if log_format == "json":
        renderer = structlog.processors.JSONRenderer(default=str)
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=False)

    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.processors.format_exc_info,
                renderer,
            ],
            foreign_pre_chain=_shared_processors(),
        )
    )
    return handler


def configure_logging(
    level: str = "WARNING",
    log_format: str = "json",
    log_file: str | None = None,
    file_level: str | None = None,
) -> None:
    """Install the console and file handlers and configure structlog.

    Calling it again replaces the previous handlers.

    Args:
        level: Console level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: File format, "json" or "console"
        log_file: Log file path; no file logging when omitted
        file_level: File level (DEBUG when omitted)
    """
    console_level = logging.getLevelName(level.upper())
    if not isinstance(console_level, int):
        console_level = logging.WARNING
    file_log_level = logging.getLevelName((file_level or "DEBUG").upper())
    if not isinstance(file_log_level, int):
        file_log_level = logging.DEBUG

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
        handler.close()

    root_logger.addHandler(_console_handler(console_level))
    lowest = console_level
    if log_file:
        root_logger.addHandler(_file_handler(Path(log_file), file_log_level, log_format))
        lowest = min(lowest, file_log_level)
    root_logger.setLevel(lowest)

    # Loggers are cached on first use; level filtering stays with the stdlib
    # loggers so a later call can still change it.
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *_shared_processors(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger, usually ``get_logger(__name__)``."""
    return structlog.get_logger(name)


def log_api_request(
    logger: structlog.stdlib.BoundLogger,
    method: str,
    url: str,
    status_code: int,
    duration_ms: float,
    **extra: Any,
) -> None:
    """Log one completed HTTP call; the level follows the status class."""
    context = {
        "method": method,
        "url": url,
        "status_code": status_code,
        "duration_ms": round(duration_ms, 2),
        **extra,
    }
    if status_code < 400:
        logger.debug("api_request_success", **context)
    elif status_code < 500:
        logger.warning("api_request_client_error", **context)
    else:
        logger.warning("api_request_server_error", **context)


def log_migration_progress(
    logger: structlog.stdlib.BoundLogger,
    phase: str,
    entity_type: str,
    snapshot: Any,
) -> None:
    """Log a ProgressSnapshot of a batch phase."""
    eta = snapshot.estimated_remaining
    logger.info(
        "migration_progress",
        phase=phase,
        entity_type=entity_type,
        processed=snapshot.processed,
        total=snapshot.total,
        percentage=round(snapshot.percent_complete, 1),
        rate_per_second=round(snapshot.rate_per_second, 1),
        eta_seconds=None if eta is None else round(eta, 1),
    )


def _is_sensitive(key: Any) -> bool:
    lowered = str(key).lower()
    return any(fragment in lowered for fragment in SENSITIVE_FIELDS)


def sanitize_payload(payload: Any, max_depth: int = 10) -> Any:
    """Copy a JSON-like payload with sensitive values replaced by ``[REDACTED]``."""
    if max_depth <= 0:
        return "[MAX_DEPTH_EXCEEDED]"
    if isinstance(payload, dict):
        return {
            key: REDACTED if _is_sensitive(key) else sanitize_payload(value, max_depth - 1)
            for key, value in payload.items()
        }
    if isinstance(payload, list):
        return [sanitize_payload(item, max_depth - 1) for item in payload]
    return payload


def truncate_payload(payload: Any, max_size: int = 10000) -> str:
    """Serialize a payload for the log, cut to ``max_size`` characters."""
    try:
        text = json.dumps(payload, default=str)
    except (TypeError, ValueError):
        text = repr(payload)
    if len(text) <= max_size:
        return text
    return f"{text[:max_size]}... [truncated, {len(text)} chars]"


def payload_logging_enabled(logger_name: str, requested: bool) -> bool:
    """Payloads are logged only when requested and DEBUG reaches a handler."""
    return requested and logging.getLogger(logger_name).isEnabledFor(logging.DEBUG)
