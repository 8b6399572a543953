"""
Logging configuration — console and optional file output for the CLI.

``setup_logging`` runs once per process from main.py; modules log through
``logging.getLogger(__name__)`` as usual.

Level precedence:
    -v / -q / --debug  >  NAT_SOCKS_LOG_LEVEL  >  WARNING

A deployment run binds its operation id with ``operation_context`` so
every record emitted during the run carries it as ``%(op)s``; the same id
is written to the audit ledger, which ties log lines to history entries.
"""

from __future__ import annotations

import contextvars
import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager

_current_op: contextvars.ContextVar[str] = contextvars.ContextVar("nat_socks_op", default="-")

# Console at WARNING: bare messages, the operator reads them inline
_FMT_CONSOLE = "%(message)s"
_FMT_CONSOLE_INFO = "%(asctime)s [%(op)s] %(message)s"
_FMT_CONSOLE_DEBUG = "%(asctime)s %(levelname)-5s [%(op)s] %(name)s:%(lineno)d — %(message)s"
_DATEFMT_CONSOLE = "%H:%M:%S"

_FMT_FILE = "%(asctime)s %(levelname)-5s [%(op)s] %(name)s — %(message)s"
_DATEFMT_FILE = "%Y-%m-%d %H:%M:%S"


class OperationFilter(logging.Filter):
    """Stamps each record with the current operation id."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.op = _current_op.get()
        return True


@contextmanager
def operation_context(operation_id: str) -> Iterator[None]:
    """Tag log records emitted inside the block with ``operation_id``."""
    token = _current_op.set(operation_id)
    try:
        yield
    finally:
        _current_op.reset(token)


def current_operation() -> str:
    return _current_op.get()


def setup_logging(
    level: str = "WARNING",
    log_file: str | None = None,
    log_file_level: str | None = None,
) -> None:
    """Replace the root handlers with a stderr handler and, optionally, a file.

    Args:
        level: Console level name.
        log_file: Append full-detail records here as well.
        log_file_level: Level for the file; defaults to ``level``.
    """
    console_level = _parse_level(level)
    if console_level <= logging.DEBUG:
        fmt = _FMT_CONSOLE_DEBUG
    elif console_level <= logging.INFO:
        fmt = _FMT_CONSOLE_INFO
    else:
        fmt = _FMT_CONSOLE

    op_filter = OperationFilter()
    console = logging.StreamHandler(sys.stderr)
    console.setLevel(console_level)
    console.setFormatter(logging.Formatter(fmt, datefmt=_DATEFMT_CONSOLE))
    console.addFilter(op_filter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(console)
    root_level = console_level

    if log_file:
        file_level = _parse_level(log_file_level) if log_file_level else console_level
        root_level = min(root_level, file_level)
        fh = logging.FileHandler(log_file, encoding="utf-8")
        fh.setLevel(file_level)
        fh.setFormatter(logging.Formatter(_FMT_FILE, datefmt=_DATEFMT_FILE))
        fh.addFilter(op_filter)
        root.addHandler(fh)

    root.setLevel(root_level)
    logging.raiseExceptions = False


def _parse_level(level: str | None) -> int:
    """Level name → numeric level; unknown names mean WARNING."""
    numeric = getattr(logging, (level or "").upper(), None)
    return numeric if isinstance(numeric, int) else logging.WARNING
