"""Structured logging setup for schedule-sync.

Every record carries the label of the sync run it was emitted from, so the
interleaved output of concurrent user tasks can be told apart::

    2026-03-01T07:00:02 | INFO     | manual@07:00:00 | schedule_sync.sync.executor | User 42: ...

The label lives in a :mod:`contextvars` variable.  Tasks started inside
:func:`run_label` inherit it, which covers everything ``asyncio.gather``
spawns during a run.  Records emitted outside a run show ``-``.
"""

from __future__ import annotations

import contextlib
import contextvars
import logging
import sys
from collections.abc import Iterator

_LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(run)s | %(name)s | %(message)s"
_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"

# Marks the handler installed by setup_logging so repeated calls reuse it.
_HANDLER_ATTR = "_schedule_sync_log_handler"

# The discovery cache and httplib2 transport log every request at DEBUG.
_QUIET_LOGGERS = (
    "googleapiclient.discovery_cache",
    "googleapiclient.discovery",
    "google_auth_httplib2",
)

_NO_RUN = "-"
_current_run: contextvars.ContextVar[str] = contextvars.ContextVar("schedule_sync_run", default=_NO_RUN)


class RunLabelFilter(logging.Filter):
    """Sets ``record.run`` to the label of the active sync run."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.run = _current_run.get()
        return True


@contextlib.contextmanager
def run_label(label: str) -> Iterator[None]:
    """Tag every record logged inside the block with *label*."""
    token = _current_run.set(label)
    try:
        yield
    finally:
        _current_run.reset(token)


def current_run_label() -> str:
    """Label of the active run, or ``"-"`` outside a run."""
    return _current_run.get()


def setup_logging(level: str = "INFO") -> None:
    """Configure the root logger for the sync service.

    Attaches one *stderr* handler with the run-labelled format, or adjusts
    the level of the handler a previous call attached.  Google client
    loggers are never more verbose than WARNING.

    Args:
        level: A standard logging level name (e.g. ``"DEBUG"``,
            ``"INFO"``, ``"WARNING"``).

    Raises:
        ValueError: If *level* is not a recognised logging level string.
    """
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        raise ValueError(f"Invalid log level: {level!r}")

    root = logging.getLogger()
    root.setLevel(numeric_level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))

    existing = next((h for h in root.handlers if getattr(h, _HANDLER_ATTR, False)), None)
    if existing is not None:
        existing.setLevel(numeric_level)
        return

    root.addHandler(_build_handler(numeric_level))


def _build_handler(level: int) -> logging.Handler:
    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(_LOG_FORMAT, datefmt=_DATE_FORMAT))
    handler.addFilter(RunLabelFilter())
    setattr(handler, _HANDLER_ATTR, True)
    return handler


def get_logger(name: str) -> logging.Logger:
    """Return the logger called *name* (normally the caller's ``__name__``)."""
    return logging.getLogger(name)
