from __future__ import annotations

import logging
import re
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import TextIO

import structlog
from structlog.typing import EventDict, Processor

from trendfeed.config import AppSettings
from trendfeed.telemetry import TELEMETRY_LOGGER_NAME

ROOT_LOGGER_NAME = "trendfeed"
LOG_FILE_NAME = "trendfeed.log"
TELEMETRY_LOG_FILE_NAME = "trendfeed-telemetry.log"

# Bound context keys with one of these prefixes are nested under it in JSON output.
CONTEXT_GROUPS: tuple[str, ...] = ("http", "credential", "youtube", "discovery", "scheduler")

# googleapiclient request URIs carry the developer key as a query parameter.
_API_KEY_QUERY_PATTERN = re.compile(r"(?P<prefix>[?&]key=)[^&\s\"']+")


def configure_application_logging(settings: AppSettings) -> Path:
    """Route `trendfeed.*` to the console plus a rotated JSON file.

    Telemetry events get a rotated file of their own and never reach the console.
    Returns the path of the main log file.
    """
    settings.log_dir.mkdir(parents=True, exist_ok=True)
    log_file = settings.log_dir / LOG_FILE_NAME
    telemetry_log_file = settings.log_dir / TELEMETRY_LOG_FILE_NAME

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            redact_api_keys,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    app_logger = _install_handlers(
        ROOT_LOGGER_NAME,
        logging.DEBUG,
        _console_handler(sys.stdout, level=_level_from_name(settings.log_level)),
        _json_file_handler(log_file, settings, level=logging.DEBUG),
    )
    _install_handlers(
        TELEMETRY_LOGGER_NAME,
        logging.INFO,
        _json_file_handler(telemetry_log_file, settings, level=logging.INFO),
    )

    app_logger.info(
        "logging configured console_level=%s path=%s telemetry_path=%s max_bytes=%s backups=%s",
        settings.log_level.upper(),
        log_file,
        telemetry_log_file,
        settings.log_max_bytes,
        settings.log_backup_count,
    )
    return log_file


def _install_handlers(name: str, level: int, *handlers: logging.Handler) -> logging.Logger:
    logger = logging.getLogger(name)
    logger.setLevel(level)
    logger.propagate = False
    for stale in list(logger.handlers):
        logger.removeHandler(stale)
        stale.close()
    for handler in handlers:
        logger.addHandler(handler)
    return logger


def _console_handler(stream: TextIO, *, level: int) -> logging.Handler:
    handler = logging.StreamHandler(stream=stream)
    handler.setLevel(level)
    handler.setFormatter(_formatter(structlog.dev.ConsoleRenderer(colors=_is_terminal(stream))))
    return handler


def _json_file_handler(path: Path, settings: AppSettings, *, level: int) -> logging.Handler:
    handler = RotatingFileHandler(
        path,
        maxBytes=settings.log_max_bytes,
        backupCount=settings.log_backup_count,
        encoding="utf-8",
    )
    handler.setLevel(level)
    handler.setFormatter(
        _formatter(
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            # Tracebacks are rendered above; scrub them too.
            redact_api_keys,
            group_service_context,
            structlog.processors.JSONRenderer(sort_keys=True),
        )
    )
    return handler


def _formatter(*processors: Processor) -> structlog.stdlib.ProcessorFormatter:
    pre_chain: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True, key="timestamp"),
        redact_api_keys,
    ]
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=pre_chain,
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, *processors],
    )


def _level_from_name(raw_level: str) -> int:
    return logging.getLevelNamesMapping().get(raw_level.strip().upper(), logging.INFO)


def _is_terminal(stream: TextIO) -> bool:
    try:
        return stream.isatty()
    except (OSError, ValueError):
        return False


def redact_api_keys(
    _logger: object,
    _method_name: str,
    event_dict: EventDict,
) -> EventDict:
    for field_name, value in list(event_dict.items()):
        if isinstance(value, str) and "key=" in value:
            event_dict[field_name] = _API_KEY_QUERY_PATTERN.sub(r"\g<prefix>[redacted]", value)
    return event_dict


def group_service_context(
    _logger: object,
    _method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Nest `credential_id`, `scheduler_job`, ... as `{"credential": {"id": ...}}`."""
    for group in CONTEXT_GROUPS:
        prefix = f"{group}_"
        members = {
            field_name[len(prefix) :]: event_dict.pop(field_name)
            for field_name in [name for name in event_dict if name.startswith(prefix)]
        }
        if members:
            event_dict[group] = members
    return event_dict
