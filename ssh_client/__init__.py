"""ssh-client application: the App aggregate and its key routing.

``App`` owns everything the foreground thread mutates: the unlocked
profile store, the open connections, the transfer engine, the active
directory browser, the status line and the pending notice.  The console
feeds it key names through :meth:`App.handle_key` and calls
:meth:`App.tick` between keys; anything that needs typed input (profile
form, master password change, terminal) comes back as ``pending_action``.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum, auto
from pathlib import Path
from typing import Callable, Optional

from ssh_client.browser import LocalBrowser, RemoteBrowser, resolve_local_start
from ssh_client.config import ProfileStore
from ssh_client.connection import (
    RealSshBackend,
    Session,
    ShellChannel,
    SshBackend,
    dial,
    open_shell,
)
from ssh_client.errors import NotConnectedError, SshClientError, StoreIOError
from ssh_client.models import (
    HistoryEntry,
    HistoryState,
    KeyCandidate,
    Notice,
    Profile,
    key_candidates,
    now_epoch,
)
from ssh_client.transfer import TransferDirection, TransferEngine, TransferStep
from ssh_client.utils.log_file import RecentLogHandler
from ssh_client.utils.path_helpers import parent_remote_dir

logger = logging.getLogger(__name__)

__version__ = "0.1.0"

TICK_SECONDS = 0.15

STATUS_READY = "Ready"
STATUS_CANCELLED = "Cancelled"
STATUS_NOT_CONNECTED = "Selected connection is not connected"
STATUS_NO_SELECTION = "No saved connection selected"
STATUS_NO_PROFILES = "No saved connections"
STATUS_NO_KEYS = "No known keys yet"

NOTICE_NOT_CONNECTED_TITLE = "Not connected"
NOTICE_NOT_CONNECTED_MESSAGE = "Please connect to the host machine first."


class HeaderMode(Enum):
    """What the header panel shows; ``v`` cycles HELP -> LOGS -> OFF."""

    HELP = auto()
    LOGS = auto()
    OFF = auto()

    def next(self) -> HeaderMode:
        order = list(HeaderMode)
        return order[(order.index(self) + 1) % len(order)]


class NoticeAction(Enum):
    """What to do after the "Not connected" notice is accepted."""

    TERMINAL = auto()
    UPLOAD = auto()
    DOWNLOAD = auto()


class PendingAction(Enum):
    """Requests that need text input from the console."""

    NEW_PROFILE = auto()
    EDIT_PROFILE = auto()
    CHANGE_MASTER = auto()
    OPEN_TERMINAL = auto()


class Mode(Enum):
    NORMAL = auto()
    CONFIRM_DELETE = auto()


@dataclass
class OpenConnection:
    """A live session for one profile, shown as a tab."""

    profile: Profile
    session: Session
    connected_at: float


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------


class App:
    """The single application aggregate driven by the console loop."""

    def __init__(
        self,
        store: ProfileStore,
        backend: SshBackend | None = None,
        dialer: Callable[[Profile], Session] = dial,
        recent_logs: Optional[RecentLogHandler] = None,
    ) -> None:
        """Create the app around an unlocked *store*.

        Args:
            store: The unlocked profile store.
            backend: SFTP queries for browsers and sizing; defaults to a real one.
            dialer: Opens sessions for connects, tests and transfer workers.
            recent_logs: In-memory log tail shown in the logs header.
        """
        self.store = store
        self._dialer = dialer
        self.backend = backend or RealSshBackend(dialer)
        self.engine = TransferEngine(self.backend, dialer)
        self.recent_logs = recent_logs

        self.selected = 0
        self.open_connections: list[OpenConnection] = []
        self.selected_tab = 0

        self.mode = Mode.NORMAL
        self.status = STATUS_READY
        self.header_mode = HeaderMode.HELP
        self.notice: Notice | None = None
        self.notice_action: NoticeAction | None = None
        self.pending_action: PendingAction | None = None
        self.last_error: dict[str, str] = {}

        self.local_browser: LocalBrowser | None = None
        self.remote_browser: RemoteBrowser | None = None
        self.key_choices: list[KeyCandidate] | None = None
        self.key_choice_index = 0
        self.picked_key: KeyCandidate | None = None
        self.key_picker = False

    # ------------------------------------------------------------------
    # Status and selection
    # ------------------------------------------------------------------

    def set_status(self, message: str) -> None:
        self.status = message
        logger.info(message)

    def show_notice(self, notice: Notice, action: NoticeAction | None = None) -> None:
        self.notice = notice
        self.notice_action = action

    def clear_notice(self) -> None:
        self.notice = None
        self.notice_action = None

    def take_pending_action(self) -> PendingAction | None:
        """Return and clear the action the console must service."""
        action, self.pending_action = self.pending_action, None
        return action

    @property
    def profiles(self) -> list[Profile]:
        return self.store.profiles

    def selected_profile(self) -> Profile | None:
        return self.store.get(self.selected)

    def move_selection(self, delta: int) -> None:
        count = len(self.store)
        if count == 0:
            self.selected = 0
            return
        self.selected = max(0, min(count - 1, self.selected + delta))

    def _select_key(self, key: str) -> None:
        index = self.store.index_of(key)
        if index is not None:
            self.selected = index

    def connection_for(self, profile: Profile) -> OpenConnection | None:
        for conn in self.open_connections:
            if conn.profile.key == profile.key:
                return conn
        return None

    def is_connected(self, profile: Profile) -> bool:
        return self.connection_for(profile) is not None

    def selected_connection(self) -> OpenConnection | None:
        """The open connection for the selected profile, if any."""
        profile = self.selected_profile()
        if profile is None:
            return None
        return self.connection_for(profile)

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    def connect(self, profile: Profile) -> OpenConnection:
        """Dial *profile*, record a successful attempt and open a tab for it.

        An already open profile is returned as is.  The successful attempt
        is merged into the stored profile (history, remembered directory)
        and saved; a store write failure leaves the session open and is
        reported on the status line.

        Raises:
            DialError: If the connection fails; the error is remembered and
                a failed attempt recorded for saved profiles.
        """
        existing = self.connection_for(profile)
        if existing is not None:
            return existing
        try:
            session = self._dialer(profile)
        except SshClientError as exc:
            self._record_failure(profile, exc)
            raise

        stored = self.store.find(profile)
        merged = profile.copy()
        if stored is not None:
            merged.history = list(stored.history)
            if merged.last_remote_dir is None:
                merged.last_remote_dir = stored.last_remote_dir
        merged.history.append(HistoryEntry(ts=now_epoch(), state=HistoryState.SUCCESS))

        conn = OpenConnection(profile=merged, session=session, connected_at=time.time())
        self.open_connections.append(conn)
        self.selected_tab = len(self.open_connections) - 1
        self.last_error.pop(merged.key, None)

        try:
            self.store.upsert(merged)
        except StoreIOError as exc:
            logger.error("Failed to save connection history: %s", exc)
            self.set_status(f"Connected to {merged.label} (not saved: {exc})")
        else:
            self.set_status(f"Connected to {merged.label}")
        self._select_key(merged.key)
        return conn

    def _record_failure(self, profile: Profile, exc: Exception) -> None:
        self.last_error[profile.key] = str(exc)
        logger.warning("Connection to %s failed: %s", profile.label, exc)
        try:
            self.store.record_attempt(profile, HistoryState.FAILURE)
        except StoreIOError as save_exc:
            logger.error("Failed to save connection history: %s", save_exc)

    def connect_selected(self) -> OpenConnection | None:
        """Connect the selected profile; failures end up on the status line."""
        profile = self.selected_profile()
        if profile is None:
            self.set_status(STATUS_NO_SELECTION)
            return None
        try:
            return self.connect(profile)
        except SshClientError as exc:
            self.set_status(f"Connection failed: {exc}")
            return None

    def _close_connection(self, conn: OpenConnection) -> None:
        conn.session.close()
        index = self.open_connections.index(conn)
        self.open_connections.pop(index)
        if self.selected_tab >= len(self.open_connections):
            self.selected_tab = max(0, len(self.open_connections) - 1)
        logger.info("Disconnected from %s", conn.profile.label)

    def disconnect_selected(self) -> None:
        conn = self.selected_connection()
        if conn is None:
            self.set_status(STATUS_NOT_CONNECTED)
            return
        self._close_connection(conn)
        self.set_status("Disconnected")

    def toggle_connection(self) -> None:
        """``c``: disconnect the selected profile if open, else connect it."""
        if self.selected_connection() is not None:
            self.disconnect_selected()
        else:
            self.connect_selected()

    def close_all(self) -> None:
        """Close every open session (used on quit)."""
        for conn in list(self.open_connections):
            self._close_connection(conn)
        self.engine.cancel()

    # ------------------------------------------------------------------
    # Tabs
    # ------------------------------------------------------------------

    def _focus_tab(self, index: int) -> None:
        self.selected_tab = index
        self._select_key(self.open_connections[index].profile.key)

    def next_tab(self) -> None:
        if self.open_connections:
            self._focus_tab((self.selected_tab + 1) % len(self.open_connections))

    def prev_tab(self) -> None:
        if self.open_connections:
            self._focus_tab((self.selected_tab - 1) % len(self.open_connections))

    def close_tab(self) -> None:
        if not self.open_connections:
            self.set_status("No open connections")
            return
        conn = self.open_connections[self.selected_tab]
        self._close_connection(conn)
        self.set_status("Disconnected")

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------

    def save_profile(self, profile: Profile, edit_index: int | None = None) -> None:
        """Persist the profile form.

        Editing replaces the profile at *edit_index* (keeping its history
        and remembered directory) without dialling.  A new profile is only
        stored once a connection to it succeeds.

        Raises:
            DialError: If connecting a new profile fails.
            StoreIOError: If an edit cannot be written.
        """
        if edit_index is not None:
            self.selected = self.store.update(edit_index, profile)
            self.set_status("Connection updated")
            return
        self.connect(profile)

    def test_profile(self, profile: Profile) -> tuple[bool, str]:
        """Dial *profile* and hang up straight away; nothing is saved."""
        try:
            with self._dialer(profile):
                pass
        except SshClientError as exc:
            message = f"Connection failed: {exc}"
            self.set_status(message)
            return False, message
        message = "Connection OK (not saved)"
        self.set_status(message)
        return True, message

    def delete_selected(self) -> Profile | None:
        """Delete the selected profile and close its connection if open."""
        if len(self.store) == 0:
            self.set_status(STATUS_NO_PROFILES)
            return None
        removed = self.store.delete(self.selected)
        conn = self.connection_for(removed)
        if conn is not None:
            self._close_connection(conn)
        self.last_error.pop(removed.key, None)
        self.move_selection(0)
        self.set_status(f"Deleted {removed.label}")
        return removed

    def change_master_password(self, current: str, new: str, confirm: str) -> None:
        """Re-encrypt the store under *new*; see :meth:`ProfileStore.change_master`."""
        self.store.change_master(current, new, confirm)
        self.set_status("Master password updated")

    def edit_index(self) -> int | None:
        """Index of the profile ``e`` would edit."""
        return self.selected if self.store.get(self.selected) is not None else None

    # ------------------------------------------------------------------
    # Terminal
    # ------------------------------------------------------------------

    def open_terminal(self, cols: int, rows: int) -> ShellChannel:
        """Open an interactive shell on the selected profile's session.

        Raises:
            NotConnectedError: If the selected profile has no open connection.
            ShellError: If the PTY or shell request fails.
        """
        conn = self.selected_connection()
        if conn is None:
            raise NotConnectedError()
        return open_shell(conn.session, cols, rows)

    def _require_connected(self, action: NoticeAction) -> OpenConnection | None:
        conn = self.selected_connection()
        if conn is None:
            self.show_notice(
                Notice(NOTICE_NOT_CONNECTED_TITLE, NOTICE_NOT_CONNECTED_MESSAGE), action
            )
        return conn

    def request_terminal(self) -> None:
        if self._require_connected(NoticeAction.TERMINAL) is not None:
            self.pending_action = PendingAction.OPEN_TERMINAL

    # ------------------------------------------------------------------
    # Transfers
    # ------------------------------------------------------------------

    def _show_local_browser(self, browser: LocalBrowser, key_picker: bool = False) -> None:
        self.remote_browser = None
        self.local_browser = browser
        self.key_picker = key_picker

    def _open_remote_browser(
        self, conn: OpenConnection, cwd: str | None, only_dirs: bool
    ) -> None:
        self.local_browser = None
        self.key_picker = False
        profile = self.store.find(conn.profile) or conn.profile
        browser = RemoteBrowser(
            self.backend, profile, only_dirs=only_dirs, session=conn.session
        )
        browser.open(cwd)
        self.remote_browser = browser

    def close_browsers(self) -> None:
        self.local_browser = None
        self.remote_browser = None
        self.key_picker = False

    def _local_start(self) -> Path:
        return resolve_local_start("", self.store.last_local_dir)

    def start_upload(self) -> None:
        """``u``: pick a local source, then a remote directory."""
        conn = self._require_connected(NoticeAction.UPLOAD)
        if conn is None:
            return
        browser = LocalBrowser(self._local_start())
        self.engine.start_upload()
        self._show_local_browser(browser)
        self.set_status(f"Upload to {conn.profile.label}: choose a source")

    def start_download(self) -> None:
        """``d``: pick a remote source, then a local directory."""
        conn = self._require_connected(NoticeAction.DOWNLOAD)
        if conn is None:
            return
        self.engine.start_download()
        self._open_remote_browser(conn, None, only_dirs=False)
        self.set_status(f"Download from {conn.profile.label}: choose a source")

    def confirm_transfer(self) -> None:
        conn = self.selected_connection()
        if conn is None:
            self.set_status(STATUS_NOT_CONNECTED)
            return
        self.close_browsers()
        self.engine.confirm(conn.profile)

    def cancel_transfer(self) -> None:
        """Cancel a running transfer, or abandon the flow being set up."""
        running = self.engine.transferring
        self.engine.cancel()
        if not running:
            self.close_browsers()
            self.set_status(STATUS_CANCELLED)

    def hide_transfer(self) -> None:
        self.engine.hide()

    def _remember_remote_dir(self, conn: OpenConnection, remote_dir: str) -> None:
        conn.profile.last_remote_dir = remote_dir
        self.store.remember_remote_dir(conn.profile, remote_dir)

    def _open_upload_target(self, conn: OpenConnection) -> None:
        state = self.engine.state
        start = state.target_remote if state and state.target_remote else None
        self._open_remote_browser(conn, start, only_dirs=True)

    def _download_target_browser(self) -> LocalBrowser:
        """Directory picker for the download target; a vanished folder opens at its parent."""
        state = self.engine.state
        if state is not None and state.target_local is not None:
            start = resolve_local_start(str(state.target_local), self.store.last_local_dir)
        else:
            start = self._local_start()
        return LocalBrowser(start, only_dirs=True)

    # ------------------------------------------------------------------
    # Key pickers
    # ------------------------------------------------------------------

    def open_key_file_picker(self, previous: str = "") -> None:
        """F2: browse the local filesystem for a private key file."""
        self._show_local_browser(LocalBrowser(resolve_local_start(previous, None)), key_picker=True)

    def open_known_keys_picker(self) -> None:
        """F3: choose among the key paths already used by saved profiles."""
        choices = key_candidates(self.store.profiles)
        if not choices:
            self.set_status(STATUS_NO_KEYS)
            return
        self.key_choices = choices
        self.key_choice_index = 0

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    def tick(self) -> None:
        """Drain worker results; called by the console every TICK_SECONDS."""
        notice = self.engine.poll()
        if notice is not None:
            self.show_notice(notice)
        size_error = self.engine.poll_size()
        if size_error is not None:
            self.set_status(size_error)
        if self.remote_browser is not None:
            self.remote_browser.poll()

    # ------------------------------------------------------------------
    # Key routing
    # ------------------------------------------------------------------

    def handle_key(self, key: str) -> bool:
        """Route one key press; returns True when the app should quit.

        Errors raised by an operation are reported on the status line.  A
        transfer flow left without its picker by such an error is discarded.
        """
        try:
            return self._dispatch(key)
        except SshClientError as exc:
            self.set_status(str(exc))
            self._discard_orphaned_flow()
            return False

    def _discard_orphaned_flow(self) -> None:
        engine = self.engine
        if not engine.active or engine.transferring or engine.step is TransferStep.CONFIRM:
            return
        if self.local_browser is None and self.remote_browser is None:
            logger.warning("Discarding transfer flow without a picker")
            engine.cancel()

    def _dispatch(self, key: str) -> bool:
        if self.notice is not None:
            self._notice_key(key)
            return False
        if self.key_choices is not None:
            self._known_keys_key(key)
            return False
        if self.local_browser is not None:
            self._local_browser_key(key)
            return False
        if self.remote_browser is not None:
            self._remote_browser_key(key)
            return False
        if self.engine.active and not (self.engine.transferring and self.engine.hidden):
            return self._transfer_key(key)
        if self.mode is Mode.CONFIRM_DELETE:
            self._delete_key(key)
            return False
        return self._normal_key(key)

    def _normal_key(self, key: str) -> bool:
        if key == "q":
            return True
        if key == "n":
            self.picked_key = None
            self.pending_action = PendingAction.NEW_PROFILE
        elif key == "e":
            if self.edit_index() is None:
                self.set_status(STATUS_NO_SELECTION)
            else:
                self.picked_key = None
                self.pending_action = PendingAction.EDIT_PROFILE
        elif key == "c":
            self.toggle_connection()
        elif key == "t":
            self.request_terminal()
        elif key == "u":
            self.start_upload()
        elif key == "d":
            self.start_download()
        elif key == "o":
            self.pending_action = PendingAction.CHANGE_MASTER
        elif key == "x":
            if len(self.store) == 0:
                self.set_status(STATUS_NO_PROFILES)
            else:
                self.mode = Mode.CONFIRM_DELETE
        elif key == "v":
            self.header_mode = self.header_mode.next()
        elif key == "up":
            self.move_selection(-1)
        elif key == "down":
            self.move_selection(1)
        elif key == "f2":
            self.open_key_file_picker()
        elif key == "f3":
            self.open_known_keys_picker()
        elif key == "f6":
            self.prev_tab()
        elif key == "f7":
            self.next_tab()
        elif key == "f8":
            self.close_tab()
        elif key == "enter" and self.engine.transferring:
            self.engine.hidden = False
        return False

    def _delete_key(self, key: str) -> None:
        self.mode = Mode.NORMAL
        if key == "y":
            self.delete_selected()
        else:
            self.set_status("Delete cancelled")

    def _notice_key(self, key: str) -> None:
        if key == "c":
            self.clear_notice()
            self.connect_selected()
            return
        if key not in ("enter", "esc"):
            return
        action = self.notice_action
        self.clear_notice()
        if key == "esc" or action is None:
            return
        if self.connect_selected() is None:
            return
        if action is NoticeAction.TERMINAL:
            self.pending_action = PendingAction.OPEN_TERMINAL
        elif action is NoticeAction.UPLOAD:
            self.start_upload()
        else:
            self.start_download()

    def _known_keys_key(self, key: str) -> None:
        choices = self.key_choices or []
        if key == "esc":
            self.key_choices = None
        elif key == "up":
            self.key_choice_index = max(0, self.key_choice_index - 1)
        elif key == "down":
            self.key_choice_index = min(len(choices) - 1, self.key_choice_index + 1)
        elif key == "enter" and choices:
            self.picked_key = choices[self.key_choice_index]
            self.key_choices = None
            self.set_status(f"Key selected: {self.picked_key.path}")

    def _abandon_picker(self) -> None:
        """``esc`` in a browser: close it, abandoning the transfer flow it belongs to."""
        key_picker = self.key_picker
        self.close_browsers()
        if key_picker:
            return
        if self.engine.active and not self.engine.transferring:
            self.engine.cancel()
            self.set_status(STATUS_CANCELLED)

    def _local_browser_key(self, key: str) -> None:
        browser = self.local_browser
        assert browser is not None
        direction, step = self.engine.direction, self.engine.step
        in_flow = not self.key_picker
        upload_source = (
            in_flow and direction is TransferDirection.UPLOAD and step is TransferStep.PICK_SOURCE
        )
        download_target = (
            in_flow and direction is TransferDirection.DOWNLOAD and step is TransferStep.PICK_TARGET
        )

        if key == "esc":
            self._abandon_picker()
        elif key == "up":
            browser.move_up()
        elif key == "down":
            browser.move_down()
        elif key == "backspace":
            browser.ascend()
        elif key == "h":
            browser.toggle_hidden()
        elif key == "b" and download_target:
            conn = self._transfer_connection()
            state = self.engine.state
            self.engine.back()
            source = state.source_remote if state else None
            self._open_remote_browser(
                conn, parent_remote_dir(source) if source else None, only_dirs=False
            )
        elif key == "enter":
            entry = browser.selected_entry
            if entry is None:
                return
            if entry.is_dir:
                notice = browser.descend()
                if notice is not None:
                    self.show_notice(notice)
            elif upload_source:
                conn = self._transfer_connection()
                self.store.remember_local_dir(browser.cwd)
                self.engine.select_source_local(Path(entry.path), False)
                self._open_upload_target(conn)
            elif self.key_picker:
                self.picked_key = KeyCandidate(str(entry.path))
                self.close_browsers()
                self.set_status(f"Key selected: {entry.path}")
        elif key == "s":
            entry = browser.selected_entry
            if entry is None or not entry.is_dir:
                return
            if upload_source:
                conn = self._transfer_connection()
                self.store.remember_local_dir(Path(entry.path))
                self.engine.select_source_local(Path(entry.path), True)
                self._open_upload_target(conn)
            elif download_target:
                conn = self._transfer_connection()
                self.store.remember_local_dir(Path(entry.path))
                self.local_browser = None
                self.engine.select_target_local(Path(entry.path), conn.profile)

    def _remote_browser_key(self, key: str) -> None:
        browser = self.remote_browser
        assert browser is not None
        direction, step = self.engine.direction, self.engine.step
        upload_target = direction is TransferDirection.UPLOAD and step is TransferStep.PICK_TARGET
        download_source = (
            direction is TransferDirection.DOWNLOAD and step is TransferStep.PICK_SOURCE
        )

        if key == "esc":
            self._abandon_picker()
        elif key == "up":
            browser.move_up()
        elif key == "down":
            browser.move_down()
        elif key == "backspace":
            browser.ascend()
        elif key == "h":
            browser.toggle_hidden()
        elif key == "b" and upload_target:
            state = self.engine.state
            if state is not None and state.source_local is not None:
                start = resolve_local_start(
                    str(state.source_local.parent), self.store.last_local_dir
                )
            else:
                start = self._local_start()
            source_browser = LocalBrowser(start)
            self.engine.back()
            self._show_local_browser(source_browser)
        elif key == "enter":
            entry = browser.selected_entry
            if entry is None:
                return
            if entry.is_dir:
                notice = browser.descend()
                if notice is not None:
                    self.show_notice(notice)
            elif download_source:
                conn = self._transfer_connection()
                target_browser = self._download_target_browser()
                self._remember_remote_dir(conn, browser.cwd)
                self.engine.select_source_remote(str(entry.path), False)
                self._show_local_browser(target_browser)
        elif key == "s":
            entry = browser.selected_entry
            if entry is None or not entry.is_dir:
                return
            if upload_target:
                conn = self._transfer_connection()
                self._remember_remote_dir(conn, str(entry.path))
                self.remote_browser = None
                self.engine.select_target_remote(str(entry.path))
            elif download_source:
                conn = self._transfer_connection()
                target_browser = self._download_target_browser()
                self._remember_remote_dir(conn, str(entry.path))
                self.engine.select_source_remote(str(entry.path), True)
                self._show_local_browser(target_browser)

    def _transfer_key(self, key: str) -> bool:
        if self.engine.transferring:
            if key == "esc":
                self.cancel_transfer()
            elif key == "enter":
                self.hide_transfer()
            return False
        if self.engine.step is not TransferStep.CONFIRM:
            # Picker gone mid-flow: only leaving is possible.
            if key in ("esc", "q"):
                self.cancel_transfer()
            return key == "q"
        if key in ("esc", "n"):
            self.cancel_transfer()
        elif key in ("enter", "y"):
            self.confirm_transfer()
        elif key == "b":
            if self.engine.direction is TransferDirection.UPLOAD:
                conn = self._transfer_connection()
                self.engine.back()
                self._open_upload_target(conn)
            else:
                target_browser = self._download_target_browser()
                self.engine.back()
                self._show_local_browser(target_browser)
        return False

    def _transfer_connection(self) -> OpenConnection:
        conn = self.selected_connection()
        if conn is None:
            raise NotConnectedError()
        return conn
