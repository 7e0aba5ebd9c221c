"""Remote/local path helpers and size formatting."""

from __future__ import annotations

import logging
from pathlib import Path

logger = logging.getLogger(__name__)


def join_remote(base: str, name: str) -> str:
    """Join *name* onto the POSIX directory *base*.

    One trailing slash is trimmed from *base*; joining onto ``/`` yields
    ``/name``.

    Example::

        >>> join_remote("/home/bob/", "inbox")
        '/home/bob/inbox'
        >>> join_remote("/", "etc")
        '/etc'
    """
    trimmed = base[:-1] if base.endswith("/") else base
    return f"{trimmed}/{name}"


def parent_remote_dir(path: str) -> str:
    """Return the POSIX parent of *path*; the parent of a root or bare name is ``/``."""
    trimmed = path.rstrip("/")
    if "/" not in trimmed:
        return "/"
    base = trimmed.rsplit("/", 1)[0]
    return base or "/"


def remote_basename(path: str) -> str:
    """Return the last component of the POSIX *path*, ignoring trailing slashes."""
    return path.rstrip("/").rsplit("/", 1)[-1]


def expand_tilde(path: str) -> Path:
    """Expand a leading ``~/`` in *path* to the user's home directory."""
    if path.startswith("~/"):
        try:
            return Path.home() / path[2:]
        except RuntimeError:
            logger.debug("No home directory to expand %r", path)
    return Path(path)


def human_readable_size(size_bytes: int | float) -> str:
    """Convert a byte count to a human-readable string (e.g. "4.2 MB").

    Uses 1024-based units but labels them KB/MB/GB.
    """
    if size_bytes < 0:
        return "0 B"
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if size_bytes < 1024.0:
            if unit == "B":
                return f"{int(size_bytes)} B"
            return f"{size_bytes:.1f} {unit}"
        size_bytes /= 1024.0
    return f"{size_bytes:.1f} PB"
