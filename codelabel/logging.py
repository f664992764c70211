"""Logging configuration for codelabel.

Records emitted while a refinement activity runs carry the run's
correlation id, the activity id and the heuristics version it started
from, so a run's lines can be pulled out of a shared log.
"""

import json
import logging
import sys
import threading
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any

from .config import get_config_dir

RUN_FIELDS = ("correlation_id", "activity_id", "config_version")

# Attributes every LogRecord has; anything else arrived through extra= or a filter
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {
    "message",
    "asctime",
    "taskName",
}


class JSONFormatter(logging.Formatter):
    """One JSON object per line: fixed header, run fields, then extras."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in RUN_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                entry[key] = value
        entry.update(
            (key, value)
            for key, value in vars(record).items()
            if key not in _RECORD_ATTRS and key not in RUN_FIELDS and not key.startswith("_")
        )
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class RunContextFilter(logging.Filter):
    """Stamps the current run fields onto records that lack them.

    A field passed explicitly through extra= is left alone.
    """

    def __init__(self):
        super().__init__()
        self._lock = threading.Lock()
        self.fields: dict[str, str | None] = dict.fromkeys(RUN_FIELDS)
        self.fields["correlation_id"] = uuid.uuid4().hex[:8]

    def filter(self, record: logging.LogRecord) -> bool:
        with self._lock:
            fields = dict(self.fields)
        for key, value in fields.items():
            if value is not None and getattr(record, key, None) is None:
                setattr(record, key, value)
        return True

    def swap(self, **fields: str | None) -> dict[str, str | None]:
        """Replace the given fields and return their previous values."""
        unknown = set(fields) - set(RUN_FIELDS)
        if unknown:
            raise ValueError(f"unknown log context fields: {sorted(unknown)}")
        with self._lock:
            previous = {key: self.fields[key] for key in fields}
            self.fields.update(fields)
        return previous


_run_filter = RunContextFilter()


def _attach() -> None:
    # Logger filters skip records propagated from child loggers; handler filters do not
    for handler in logging.getLogger("codelabel").handlers:
        if _run_filter not in handler.filters:
            handler.addFilter(_run_filter)


def set_correlation_id(correlation_id: str | None = None) -> str:
    """Set the correlation id for subsequent records, generating one if None."""
    correlation_id = correlation_id or uuid.uuid4().hex[:8]
    _run_filter.swap(correlation_id=correlation_id)
    _attach()
    return correlation_id


@contextmanager
def run_context(
    activity_id: str,
    config_version: str | None = None,
    correlation_id: str | None = None,
) -> Iterator[str]:
    """Tag records with one activity run; the previous context is restored on exit."""
    correlation_id = correlation_id or f"{activity_id[:12]}-{uuid.uuid4().hex[:6]}"
    previous = _run_filter.swap(
        correlation_id=correlation_id,
        activity_id=activity_id,
        config_version=config_version,
    )
    _attach()
    try:
        yield correlation_id
    finally:
        _run_filter.swap(**previous)


def setup_logging(
    level: int = logging.INFO,
    log_to_file: bool = False,
    verbose: bool = False,
    json_format: bool = False,
) -> logging.Logger:
    """
    Set up logging for codelabel.

    Args:
        level: Logging level (default: INFO)
        log_to_file: Whether to also log to a file
        verbose: If True, set level to DEBUG and show all logs on console
        json_format: If True, write one JSON object per record

    Returns:
        The configured "codelabel" logger
    """
    logger = logging.getLogger("codelabel")
    logger.handlers.clear()
    logger.setLevel(logging.DEBUG if verbose else level)

    console_handler = logging.StreamHandler(sys.stderr)
    # Keep normal CLI output clean: warnings and above unless verbose
    console_handler.setLevel(logging.DEBUG if verbose else logging.WARNING)
    if json_format:
        console_handler.setFormatter(JSONFormatter())
    elif verbose:
        console_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s [%(levelname)s] %(name)s [%(correlation_id)s]: %(message)s",
                datefmt="%H:%M:%S",
            )
        )
    else:
        console_handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
    logger.addHandler(console_handler)

    if log_to_file:
        log_dir = get_config_dir() / "logs"
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_dir / "codelabel.log")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(
            JSONFormatter()
            if json_format
            else logging.Formatter(
                "%(asctime)s %(levelname)s %(name)s [%(correlation_id)s] %(message)s"
            )
        )
        logger.addHandler(file_handler)

    _attach()
    return logger
