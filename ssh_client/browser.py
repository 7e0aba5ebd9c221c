"""Local and remote directory browsers.

Both browsers keep a current directory, a sorted entry list and a selected
index.  The local one reads the filesystem directly; the remote one lists
over SFTP on a worker thread and hands the result back through a one-slot
queue that the foreground polls each tick.
"""

from __future__ import annotations

import logging
import queue
import threading
from pathlib import Path
from typing import Optional

from ssh_client.connection import Session, SshBackend
from ssh_client.errors import LocalIOError, SshClientError
from ssh_client.models import DirEntry, Notice, Profile
from ssh_client.utils.path_helpers import expand_tilde, parent_remote_dir

logger = logging.getLogger(__name__)

NOTICE_NO_SUBFOLDERS_TITLE = "No subfolders"
NOTICE_NO_SUBFOLDERS_MESSAGE = (
    "This folder has no subfolders. To select it as the target, press S."
)


def no_subfolders_notice() -> Notice:
    return Notice(NOTICE_NO_SUBFOLDERS_TITLE, NOTICE_NO_SUBFOLDERS_MESSAGE)


# ---------------------------------------------------------------------------
# Local filesystem
# ---------------------------------------------------------------------------


def read_local_entries(
    directory: Path, only_dirs: bool = False, show_hidden: bool = False
) -> list[DirEntry]:
    """List *directory* sorted by lowercased name.

    Raises:
        LocalIOError: If the directory cannot be read.
    """
    entries: list[DirEntry] = []
    try:
        children = list(directory.iterdir())
    except OSError as exc:
        raise LocalIOError(f"read dir {directory}: {exc}") from exc
    for child in children:
        if not show_hidden and child.name.startswith("."):
            continue
        try:
            is_dir = child.is_dir()
        except OSError:
            is_dir = False
        if only_dirs and not is_dir:
            continue
        entries.append(DirEntry(name=child.name, path=child, is_dir=is_dir))
    entries.sort(key=lambda e: e.name.lower())
    return entries


def resolve_local_start(previous: str = "", last_local_dir: Path | None = None) -> Path:
    """Pick where a local browser opens.

    Preference: *previous* itself if it is a directory, else its parent;
    then *last_local_dir*; then the home directory; then the working
    directory.
    """
    if previous.strip():
        path = expand_tilde(previous.strip())
        if path.is_dir():
            return path
        if path.parent != path:
            return path.parent
    if last_local_dir is not None and last_local_dir.is_dir():
        return last_local_dir
    try:
        return Path.home()
    except RuntimeError:
        return Path.cwd()


class LocalBrowser:
    """Browses the local filesystem."""

    def __init__(self, cwd: Path, only_dirs: bool = False, show_hidden: bool = False) -> None:
        self.cwd = cwd
        self.only_dirs = only_dirs
        self.show_hidden = show_hidden
        self.entries: list[DirEntry] = []
        self.selected = 0
        self.refresh()

    def refresh(self) -> None:
        """Re-read ``cwd``, resetting the selection if it fell off the end."""
        self.entries = read_local_entries(self.cwd, self.only_dirs, self.show_hidden)
        if self.selected >= len(self.entries):
            self.selected = 0

    @property
    def selected_entry(self) -> DirEntry | None:
        if 0 <= self.selected < len(self.entries):
            return self.entries[self.selected]
        return None

    def move_up(self) -> None:
        if self.selected > 0:
            self.selected -= 1

    def move_down(self) -> None:
        if self.selected + 1 < len(self.entries):
            self.selected += 1

    def descend(self) -> Notice | None:
        """Enter the selected directory.

        In only-dirs mode a directory without subdirectories is not entered;
        the "no subfolders" notice is returned instead.
        """
        entry = self.selected_entry
        if entry is None or not entry.is_dir:
            return None
        target = Path(entry.path)
        if self.only_dirs and not read_local_entries(target, True, self.show_hidden):
            return no_subfolders_notice()
        entries = read_local_entries(target, self.only_dirs, self.show_hidden)
        self.cwd = target
        self.entries = entries
        self.selected = 0
        return None

    def ascend(self) -> None:
        """Move to the parent directory (no-op at the filesystem root)."""
        parent = self.cwd.parent
        if parent == self.cwd:
            return
        entries = read_local_entries(parent, self.only_dirs, self.show_hidden)
        self.cwd = parent
        self.entries = entries
        self.selected = 0

    def toggle_hidden(self) -> None:
        self.show_hidden = not self.show_hidden
        self.selected = 0
        self.refresh()


# ---------------------------------------------------------------------------
# Remote (SFTP)
# ---------------------------------------------------------------------------


class RemoteBrowser:
    """Browses a remote host; listings run on a worker thread.

    ``loading`` is True between a request and the :meth:`poll` that picks
    up its result; ``error`` holds the last listing failure, if any.  Each
    request bumps a generation counter so late results of superseded
    requests are dropped.
    """

    def __init__(
        self,
        backend: SshBackend,
        profile: Profile,
        only_dirs: bool = False,
        show_hidden: bool = False,
        session: Optional[Session] = None,
    ) -> None:
        """Prepare a browser for *profile*; call :meth:`open` to start listing.

        Args:
            backend: Performs the SFTP queries.
            profile: The connected profile being browsed.
            only_dirs: Hide files (directory-target mode).
            show_hidden: Include dot entries.
            session: An open session to reuse; ``None`` dials per request.
        """
        self._backend = backend
        self._profile = profile
        self._session = session
        self.only_dirs = only_dirs
        self.show_hidden = show_hidden

        self.cwd = "/"
        self.entries: list[DirEntry] = []
        self.selected = 0
        self.loading = False
        self.error: str | None = None

        self._generation = 0
        self._results: queue.Queue | None = None
        self._worker: threading.Thread | None = None

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def default_start(self) -> str:
        """The remembered remote directory, else ``/home/<user>``, else ``/``."""
        if self._profile.last_remote_dir:
            return self._profile.last_remote_dir
        if self._profile.user:
            return f"/home/{self._profile.user}"
        return "/"

    def open(self, cwd: str | None = None) -> None:
        """Start listing *cwd* (default: :meth:`default_start`).

        If that listing fails the worker retries once at the remote home
        directory and then once at ``/``.
        """
        self._fetch(cwd or self.default_start(), fallback=True)

    def refresh(self) -> None:
        self._fetch(self.cwd, fallback=False)

    def _fetch(self, cwd: str, fallback: bool) -> None:
        self.cwd = cwd
        self.entries = []
        self.selected = 0
        self.loading = True
        self.error = None

        self._generation += 1
        generation = self._generation
        results: queue.Queue = queue.Queue(maxsize=1)
        self._results = results
        self._worker = threading.Thread(
            target=self._list_worker,
            args=(generation, cwd, fallback, results),
            name="remote-list",
            daemon=True,
        )
        self._worker.start()

    def _list(self, cwd: str) -> list[DirEntry]:
        return self._backend.list_directory(
            self._profile, cwd, self.only_dirs, self.show_hidden, self._session
        )

    def _fallback_dirs(self, failed: str) -> list[str]:
        candidates: list[str] = []
        try:
            home = self._backend.remote_home_dir(self._profile, self._session)
        except SshClientError as exc:
            logger.debug("Remote home lookup failed: %s", exc)
            home = None
        if home and home.strip() and home.strip() != failed:
            candidates.append(home.strip())
        if failed != "/" and "/" not in candidates:
            candidates.append("/")
        return candidates

    def _list_worker(
        self, generation: int, cwd: str, fallback: bool, results: queue.Queue
    ) -> None:
        """Worker body: list *cwd* (with fallbacks) and post exactly one result."""
        try:
            try:
                results.put((generation, cwd, self._list(cwd), None))
                return
            except SshClientError as exc:
                first_error = str(exc)
                logger.warning("Listing %s failed: %s", cwd, exc)
            if fallback:
                for candidate in self._fallback_dirs(cwd):
                    try:
                        entries = self._list(candidate)
                    except SshClientError as exc:
                        logger.warning("Listing %s failed: %s", candidate, exc)
                        continue
                    results.put((generation, candidate, entries, None))
                    return
            results.put((generation, cwd, [], first_error))
        except Exception as exc:
            logger.exception("Unexpected error in remote listing worker")
            results.put((generation, cwd, [], str(exc) or exc.__class__.__name__))

    # ------------------------------------------------------------------
    # Foreground
    # ------------------------------------------------------------------

    def poll(self) -> bool:
        """Apply a finished listing, if one is ready. Returns True if state changed."""
        results = self._results
        if results is None:
            return False
        try:
            generation, cwd, entries, error = results.get_nowait()
        except queue.Empty:
            return False
        self._results = None
        if generation != self._generation:
            return False
        self.cwd = cwd
        self.loading = False
        self.error = error
        self.entries = [e for e in entries if e.is_dir] if self.only_dirs else list(entries)
        self.selected = 0
        return True

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the current listing worker exits; False on timeout."""
        worker = self._worker
        if worker is None:
            return True
        worker.join(timeout)
        return not worker.is_alive()

    @property
    def selected_entry(self) -> DirEntry | None:
        if 0 <= self.selected < len(self.entries):
            return self.entries[self.selected]
        return None

    def move_up(self) -> None:
        if self.selected > 0:
            self.selected -= 1

    def move_down(self) -> None:
        if self.selected + 1 < len(self.entries):
            self.selected += 1

    def descend(self) -> Notice | None:
        """Start listing the selected directory.

        In only-dirs mode the directory must contain a subdirectory;
        otherwise the "no subfolders" notice is returned and nothing changes.

        Raises:
            SFTPError, DialError: If the subdirectory check fails.
        """
        entry = self.selected_entry
        if entry is None or not entry.is_dir:
            return None
        target = str(entry.path)
        if self.only_dirs and not self._backend.has_subdirectories(
            self._profile, target, self._session
        ):
            return no_subfolders_notice()
        self._fetch(target, fallback=False)
        return None

    def ascend(self) -> None:
        """Start listing the parent directory (no-op at ``/``)."""
        if self.cwd == "/":
            return
        self._fetch(parent_remote_dir(self.cwd), fallback=False)

    def toggle_hidden(self) -> None:
        self.show_hidden = not self.show_hidden
        self.refresh()
