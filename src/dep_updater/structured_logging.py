"""
Structured logging configuration for dep-updater.

Provides machine-readable JSON event logs for registry traffic and
resolution decisions. Events go to stderr so they never mix with the
JSON report printed on stdout.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .cache_manager import get_cache_manager
from .error_handling import sanitize_message, sanitize_url

_RESERVED_ATTRS = {
    "name",
    "msg",
    "args",
    "levelname",
    "levelno",
    "pathname",
    "filename",
    "module",
    "lineno",
    "funcName",
    "created",
    "msecs",
    "relativeCreated",
    "thread",
    "threadName",
    "processName",
    "process",
    "taskName",
    "getMessage",
    "exc_info",
    "exc_text",
    "stack_info",
}


class JsonEventFormatter(logging.Formatter):
    """Render each record as a single JSON line with its event fields."""

    def format(self, record: logging.LogRecord) -> str:
        event = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "event": sanitize_message(record.getMessage()),
        }
        event.update(
            (key, value) for key, value in vars(record).items() if key not in _RESERVED_ATTRS
        )
        return json.dumps(event, default=str, sort_keys=False)


class EventLogger:
    """
    Emits named events with keyword fields.

    Fields from the current run context (run id, manifest path) are merged
    into every event so lines from concurrent manifests can be told apart.
    """

    def __init__(self, name: str = "dep_updater"):
        self.logger = logging.getLogger(f"dep_updater.events.{name}")
        self.logger.propagate = False
        if not self.logger.handlers:
            stream = logging.StreamHandler(sys.stderr)
            stream.setFormatter(JsonEventFormatter())
            self.logger.addHandler(stream)
            self.logger.setLevel(logging.WARNING)
        self.run_context: Dict[str, Any] = {}

    def set_run_context(
        self,
        run_id: Optional[str] = None,
        file_path: Optional[str] = None,
    ) -> None:
        context = {"run_id": run_id, "file_path": file_path}
        self.run_context = {key: value for key, value in context.items() if value}

    def clear_run_context(self) -> None:
        self.run_context.clear()

    def emit(self, level: int, event_type: str, **fields) -> None:
        if self.logger.isEnabledFor(level):
            self.logger.log(
                level, event_type, extra={"event_type": event_type, **self.run_context, **fields}
            )

    def debug(self, event_type: str, **fields) -> None:
        self.emit(logging.DEBUG, event_type, **fields)

    def info(self, event_type: str, **fields) -> None:
        self.emit(logging.INFO, event_type, **fields)

    def warning(self, event_type: str, **fields) -> None:
        self.emit(logging.WARNING, event_type, **fields)


_registry_logger = EventLogger("registry")
_updater_logger = EventLogger("updater")
_resolver_logger = EventLogger("resolver")

_ALL_LOGGERS = (_registry_logger, _updater_logger, _resolver_logger)


def get_registry_logger() -> EventLogger:
    return _registry_logger


def get_updater_logger() -> EventLogger:
    return _updater_logger


def get_resolver_logger() -> EventLogger:
    return _resolver_logger


def log_run_start(run_id: str, file_path: str, total_dependencies: int) -> None:
    """Open the run context for one manifest and log its dependency count."""
    logger = get_updater_logger()
    logger.set_run_context(run_id, file_path)
    logger.info("check_started", total_dependencies=total_dependencies)


def log_run_complete(
    run_id: str,
    duration_ms: int,
    updates_count: int,
    written: bool = False,
) -> None:
    """Log the outcome of one manifest check along with memo cache sizes."""
    logger = get_updater_logger()
    logger.info(
        "check_completed",
        run_id=run_id,
        duration_ms=duration_ms,
        updates=updates_count,
        written=written,
        cache_entries=get_cache_manager().sizes(),
    )
    logger.clear_run_context()


def log_registry_request(
    url: str,
    status: Optional[int],
    duration_ms: Optional[float] = None,
) -> None:
    """Log one HTTP request; server errors are logged as warnings."""
    logger = get_registry_logger()
    log_data: Dict[str, Any] = {"url": sanitize_url(url), "status": status}
    if duration_ms is not None:
        log_data["duration_ms"] = round(duration_ms, 1)

    if status is not None and status >= 500:
        logger.warning("registry_request_failed", **log_data)
    else:
        logger.debug("registry_request", **log_data)


def log_resolution(
    name: str,
    dep_type: str,
    old: str,
    new: Optional[str],
    reason: Optional[str] = None,
) -> None:
    """Log the outcome of resolving a single dependency."""
    logger = get_resolver_logger()
    if new:
        logger.info("update_found", package_name=name, dep_type=dep_type, old=old, new=new)
    else:
        logger.debug(
            "no_update", package_name=name, dep_type=dep_type, old=old, reason=reason
        )


def configure_logging(log_level: str = "WARNING", log_file: Optional[str] = None) -> None:
    """
    Configure the level of all event loggers.

    Args:
        log_level: Level name, e.g. ``DEBUG``
        log_file: Also append JSON events to this file
    """
    level = getattr(logging, log_level.upper(), logging.WARNING)
    file_handler = None
    if log_file:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(JsonEventFormatter())

    for event_logger in _ALL_LOGGERS:
        event_logger.logger.setLevel(level)
        if file_handler is not None:
            event_logger.logger.addHandler(file_handler)
