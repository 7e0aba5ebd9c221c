"""Log file setup and pruning.

Log lines look like ``MM-DD HH:MM:SS | message``.  On startup the file is
pruned to the last seven days and at most 10 000 lines; the most recent 100
formatted lines are also kept in memory for the logs panel.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from datetime import datetime, timedelta
from pathlib import Path

logger = logging.getLogger(__name__)

LOG_TIMESTAMP_FORMAT = "%m-%d %H:%M:%S"
LOG_PARSE_FORMAT = "%Y-%m-%d %H:%M:%S"
LOG_SEPARATOR = " | "
LOG_FORMAT = "%(asctime)s" + LOG_SEPARATOR + "%(message)s"
LOG_RETENTION_DAYS = 7
LOG_MAX_ENTRIES = 10_000
LOG_MAX_IN_MEMORY = 100
LINE_BREAK = " \\n "


# ---------------------------------------------------------------------------
# In-memory tail
# ---------------------------------------------------------------------------


class RecentLogHandler(logging.Handler):
    """Keeps the last *capacity* formatted records for display."""

    def __init__(self, capacity: int = LOG_MAX_IN_MEMORY) -> None:
        super().__init__()
        self._lines: deque[str] = deque(maxlen=capacity)
        self._lines_lock = threading.Lock()

    def emit(self, record: logging.LogRecord) -> None:
        try:
            line = self.format(record)
        except Exception:
            self.handleError(record)
            return
        with self._lines_lock:
            self._lines.append(line)

    @property
    def lines(self) -> list[str]:
        """Snapshot of the retained lines, oldest first."""
        with self._lines_lock:
            return list(self._lines)

    @property
    def last_line(self) -> str | None:
        with self._lines_lock:
            return self._lines[-1] if self._lines else None


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class LineFormatter(logging.Formatter):
    """Formats every record on one line; tracebacks are folded in with ``\\n``."""

    def format(self, record: logging.LogRecord) -> str:
        text = super().format(record)
        return text.replace("\r\n", "\n").replace("\n", LINE_BREAK)


def configure_logging(log_path: Path | None, verbose: bool = False) -> RecentLogHandler:
    """Route root logging to *log_path* and an in-memory tail.

    The file only receives INFO and above unless *verbose* is set, so it stays
    a readable event log.  Returns the in-memory handler.
    """
    formatter = LineFormatter(LOG_FORMAT, datefmt=LOG_TIMESTAMP_FORMAT)
    level = logging.DEBUG if verbose else logging.INFO

    root = logging.getLogger()
    root.setLevel(level)

    recent = RecentLogHandler()
    recent.setFormatter(formatter)
    recent.setLevel(logging.INFO)
    root.addHandler(recent)

    if log_path is not None:
        try:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_path, mode="a", encoding="utf-8")
        except OSError as exc:
            logger.warning("Could not open log file %s: %s", log_path, exc)
        else:
            file_handler.setFormatter(formatter)
            file_handler.setLevel(level)
            root.addHandler(file_handler)

    # Quieten noisy third-party loggers
    logging.getLogger("paramiko").setLevel(logging.WARNING)
    return recent


# ---------------------------------------------------------------------------
# Pruning
# ---------------------------------------------------------------------------


def _parse_timestamp(line: str, year: int) -> datetime | None:
    stamp, sep, _ = line.partition(LOG_SEPARATOR)
    if not sep:
        return None
    try:
        return datetime.strptime(f"{year}-{stamp}", LOG_PARSE_FORMAT)
    except ValueError:
        return None


def prune_log_file(path: Path, now: datetime | None = None) -> None:
    """Drop stale or unparsable lines from *path*, keeping the newest 10 000.

    Timestamps carry no year, so the current year is assumed.  The file is
    deleted when nothing survives.  A missing or unreadable file is left alone.
    """
    try:
        content = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        return

    now = now or datetime.now()
    cutoff = now - timedelta(days=LOG_RETENTION_DAYS)
    kept = []
    for line in content.splitlines():
        parsed = _parse_timestamp(line, now.year)
        if parsed is not None and parsed >= cutoff:
            kept.append(line)
    if len(kept) > LOG_MAX_ENTRIES:
        kept = kept[-LOG_MAX_ENTRIES:]

    try:
        if not kept:
            path.unlink()
        else:
            path.write_text("\n".join(kept) + "\n", encoding="utf-8")
    except OSError as exc:
        logger.warning("Could not prune log file %s: %s", path, exc)
