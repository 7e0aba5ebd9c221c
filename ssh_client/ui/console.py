"""Line-oriented console front end.

Each input line is one key: a command letter (``u``, ``d``, ...), an empty
line for ``enter``, or a key name (``esc``, ``up``, ``down``, ``back``,
``f2`` ... ``f8``).  A daemon thread reads stdin into a queue so the
foreground can keep ticking the app every ``TICK_SECONDS`` while it waits.
"""

from __future__ import annotations

import getpass
import logging
import os
import queue
import select
import shutil
import sys
import threading
from datetime import datetime
from typing import Callable, Optional, TextIO

from ssh_client import TICK_SECONDS, App, HeaderMode, Mode, PendingAction
from ssh_client.connection import ShellChannel
from ssh_client.errors import SshClientError
from ssh_client.models import (
    AuthKind,
    PasswordAuth,
    PrivateKeyAuth,
    Profile,
    build_profile,
    format_history_entry,
)
from ssh_client.transfer import TransferDirection, TransferState, TransferStep, format_progress
from ssh_client.utils.path_helpers import human_readable_size

try:
    import termios
    import tty
except ImportError:  # Windows: no raw terminal support
    termios = None  # type: ignore[assignment]
    tty = None  # type: ignore[assignment]

logger = logging.getLogger(__name__)

SHELL_ESCAPE = b"\x07"  # Ctrl+G leaves the shell passthrough
HISTORY_SHOWN = 3

KEY_ALIASES = {
    "": "enter",
    "enter": "enter",
    "esc": "esc",
    "escape": "esc",
    "up": "up",
    "k": "up",
    "down": "down",
    "j": "down",
    "back": "backspace",
    "backspace": "backspace",
    "..": "backspace",
}

HELP_LINES = (
    "n new  e edit  c connect/disconnect  t terminal  u upload  d download",
    "o master password  x delete  v header  f6/f7 tabs  f8 close tab  q quit",
    "pickers: up/down (k/j)  enter open  back (..) parent  h hidden  s select dir  b back  esc cancel",
)

AUTH_CHOICES = {
    "1": AuthKind.PASSWORD,
    "2": AuthKind.PRIVATE_KEY,
    "3": AuthKind.PRIVATE_KEY_WITH_PASSPHRASE,
}


def parse_key(line: str) -> str:
    """Translate one input line to the key name :meth:`App.handle_key` expects."""
    text = line.strip()
    lowered = text.lower()
    if lowered in KEY_ALIASES:
        return KEY_ALIASES[lowered]
    return lowered


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


def format_profile_row(app: App, index: int, profile: Profile) -> str:
    marker = ">" if index == app.selected else " "
    state = "*" if app.is_connected(profile) else " "
    row = f"{marker}{state} {profile.label:<20} {profile.user}@{profile.host}"
    error = app.last_error.get(profile.key)
    if error:
        row += f"  [error: {error}]"
    return row


def format_transfer(state: TransferState) -> list[str]:
    verb = "Upload" if state.direction is TransferDirection.UPLOAD else "Download"
    lines = [
        f"{verb}: {state.source_label or '-'} -> {state.target_label or '-'}",
    ]
    size = (
        human_readable_size(state.size_bytes) if state.size_bytes is not None else "calculating..."
    )
    if state.step is TransferStep.CONFIRM:
        lines.append(f"Size: {size}")
        lines.append("enter/y start  b back  esc cancel")
    elif state.step is TransferStep.TRANSFERRING:
        lines.append(format_progress(state.progress_bytes, state.size_bytes))
        lines.append("esc cancel  enter hide")
    return lines


def render(app: App) -> str:
    """Return the full screen text for the current app state."""
    lines: list[str] = []
    if app.header_mode is HeaderMode.HELP:
        lines.extend(HELP_LINES)
    elif app.header_mode is HeaderMode.LOGS and app.recent_logs is not None:
        lines.extend(app.recent_logs.lines[-5:])
    if lines:
        lines.append("")

    if app.open_connections:
        tabs = []
        for i, conn in enumerate(app.open_connections):
            label = conn.profile.label
            tabs.append(f"[{label}]" if i == app.selected_tab else f" {label} ")
        lines.append("Tabs: " + " ".join(tabs))

    profiles = app.profiles
    if not profiles:
        lines.append("No saved connections (n to add one)")
    for i, profile in enumerate(profiles):
        lines.append(format_profile_row(app, i, profile))
        if i == app.selected:
            for entry in reversed(profile.history[-HISTORY_SHOWN:]):
                lines.append(f"      {format_history_entry(entry)}")

    browser = app.local_browser or app.remote_browser
    if browser is not None:
        lines.append("")
        lines.append(f"== {browser.cwd} ==")
        if app.remote_browser is not None and app.remote_browser.loading:
            lines.append("  loading...")
        elif app.remote_browser is not None and app.remote_browser.error:
            lines.append(f"  error: {app.remote_browser.error}")
        for i, entry in enumerate(browser.entries):
            marker = ">" if i == browser.selected else " "
            suffix = "/" if entry.is_dir else ""
            lines.append(f" {marker} {entry.name}{suffix}")
    elif app.key_choices is not None:
        lines.append("")
        lines.append("== Known keys ==")
        for i, choice in enumerate(app.key_choices):
            marker = ">" if i == app.key_choice_index else " "
            lines.append(f" {marker} {choice.path}")
    elif app.engine.state is not None and not app.engine.hidden:
        lines.append("")
        lines.extend(format_transfer(app.engine.state))

    if app.mode is Mode.CONFIRM_DELETE:
        profile = app.selected_profile()
        lines.append(f"Delete {profile.label if profile else '?'}? (y/n)")
    if app.notice is not None:
        lines.append("")
        lines.append(f"!! {app.notice.title}: {app.notice.message}")
        lines.append("   enter ok  esc dismiss")

    lines.append("")
    lines.append(f"Status: {app.status}")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Input
# ---------------------------------------------------------------------------


class LineReader:
    """Reads stdin lines on a daemon thread; ``None`` marks end of input.

    On POSIX the thread polls with ``select`` so it can be paused while the
    shell passthrough owns the terminal.
    """

    def __init__(self, stream: TextIO) -> None:
        self._stream = stream
        self.lines: queue.Queue[Optional[str]] = queue.Queue()
        self._paused = threading.Event()
        self._idle = threading.Event()
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, name="stdin-reader", daemon=True)
        try:
            self._selectable = os.name == "posix" and stream.fileno() >= 0
        except (AttributeError, OSError, ValueError):
            self._selectable = False

    def start(self) -> None:
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()

    def pause(self) -> None:
        """Stop reading until :meth:`resume`; waits briefly for the thread to idle."""
        self._paused.set()
        if self._selectable:
            self._idle.wait(0.5)

    def resume(self) -> None:
        self._idle.clear()
        self._paused.clear()

    def _run(self) -> None:
        while not self._stop.is_set():
            if self._paused.is_set():
                self._idle.set()
                self._stop.wait(0.05)
                continue
            if self._selectable:
                ready, _, _ = select.select([self._stream], [], [], 0.1)
                if not ready:
                    continue
            line = self._stream.readline()
            if line == "":
                self.lines.put(None)
                return
            self.lines.put(line.rstrip("\r\n"))


# ---------------------------------------------------------------------------
# Console
# ---------------------------------------------------------------------------


class Console:
    """Drives an :class:`App` from a terminal."""

    def __init__(
        self,
        app: App,
        stdin: TextIO | None = None,
        stdout: TextIO | None = None,
    ) -> None:
        self.app = app
        self._in = stdin or sys.stdin
        self._out = stdout or sys.stdout
        self._reader = LineReader(self._in)
        self._last_screen = ""

    # ------------------------------------------------------------------
    # I/O helpers
    # ------------------------------------------------------------------

    def _write(self, text: str) -> None:
        self._out.write(text)
        self._out.flush()

    def _draw(self, force: bool = False) -> None:
        screen = render(self.app)
        if force or screen != self._last_screen:
            self._write("\n" + screen + "\n> ")
            self._last_screen = screen

    def _next_line(self) -> Optional[str]:
        """Block for the next input line, ticking the app meanwhile."""
        while True:
            try:
                return self._reader.lines.get(timeout=TICK_SECONDS)
            except queue.Empty:
                self.app.tick()
                self._draw()

    def _prompt(self, label: str, default: str = "", secret: bool = False) -> Optional[str]:
        """Ask for one value; blank input keeps *default*. ``None`` on end of input."""
        shown = f" [{'*' * 4 if secret else default}]" if default else ""
        self._write(f"{label}{shown}: ")
        fd = self._tty_fd()
        old = None
        if secret and fd is not None:
            old = termios.tcgetattr(fd)
            new = termios.tcgetattr(fd)
            new[3] &= ~termios.ECHO
            termios.tcsetattr(fd, termios.TCSADRAIN, new)
        try:
            line = self._reader.lines.get()
        finally:
            if old is not None:
                termios.tcsetattr(fd, termios.TCSADRAIN, old)
                self._write("\n")
        if line is None:
            return None
        return line if line else default

    def _tty_fd(self) -> Optional[int]:
        if termios is None:
            return None
        try:
            fd = self._in.fileno()
        except (AttributeError, OSError, ValueError):
            return None
        return fd if os.isatty(fd) else None

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    def run(self) -> None:
        """Run until ``q`` or end of input; always closes open sessions."""
        self._reader.start()
        logger.info("Console started")
        try:
            self._draw(force=True)
            while True:
                line = self._next_line()
                if line is None:
                    break
                if self.app.handle_key(parse_key(line)):
                    break
                self._service_pending()
                self._draw(force=True)
        finally:
            self._reader.stop()
            self.app.close_all()
            logger.info("Console stopped")

    def _service_pending(self) -> None:
        action = self.app.take_pending_action()
        if action is None:
            return
        try:
            if action is PendingAction.NEW_PROFILE:
                self.profile_form(None)
            elif action is PendingAction.EDIT_PROFILE:
                self.profile_form(self.app.edit_index())
            elif action is PendingAction.CHANGE_MASTER:
                self.change_master_form()
            elif action is PendingAction.OPEN_TERMINAL:
                self.terminal()
        except SshClientError as exc:
            self.app.set_status(str(exc))

    # ------------------------------------------------------------------
    # Forms
    # ------------------------------------------------------------------

    def _pick_key(self, current: str, known: bool) -> None:
        """Run the F2/F3 picker until it closes; the result lands in ``app.picked_key``."""
        self.app.picked_key = None
        if known:
            self.app.open_known_keys_picker()
        else:
            self.app.open_key_file_picker(current)
        while self.app.local_browser is not None or self.app.key_choices is not None:
            self._draw(force=True)
            line = self._next_line()
            if line is None:
                self.app.close_browsers()
                self.app.key_choices = None
                return
            self.app.handle_key(parse_key(line))

    def profile_form(self, edit_index: Optional[int]) -> None:
        """Prompt for a profile, then save, test or cancel it."""
        existing = self.app.store.get(edit_index) if edit_index is not None else None
        name = self._prompt("Name", existing.name if existing else "")
        if name is None:
            return
        user = self._prompt("User", existing.user if existing else "")
        if user is None:
            return
        host = self._prompt("Host", existing.host if existing else "")
        if host is None:
            return

        default_kind = "1"
        default_path = ""
        existing_secret = ""
        if existing is not None:
            if isinstance(existing.auth, PasswordAuth):
                existing_secret = existing.auth.password
            elif isinstance(existing.auth, PrivateKeyAuth):
                default_path = existing.auth.path
                existing_secret = existing.auth.passphrase or ""
                default_kind = "3" if existing.auth.passphrase else "2"
        choice = self._prompt("Auth (1 password, 2 key, 3 key+passphrase)", default_kind)
        if choice is None:
            return
        kind = AUTH_CHOICES.get(choice.strip(), AuthKind.PASSWORD)

        key_path = ""
        picked_secret = ""
        if kind is not AuthKind.PASSWORD:
            while True:
                entered = self._prompt("Key path (f2 browse, f3 known keys)", default_path)
                if entered is None:
                    return
                if entered.strip().lower() not in ("f2", "f3"):
                    key_path = entered
                    break
                self._pick_key(default_path, known=entered.strip().lower() == "f3")
                if self.app.picked_key is not None:
                    default_path = self.app.picked_key.path
                    picked_secret = self.app.picked_key.passphrase or ""

        password = ""
        if kind is AuthKind.PASSWORD:
            password = self._prompt("Password", existing_secret, secret=True) or ""
        elif kind is AuthKind.PRIVATE_KEY_WITH_PASSPHRASE:
            default_secret = picked_secret or existing_secret
            password = self._prompt("Key password", default_secret, secret=True) or ""

        try:
            profile = build_profile(name, user, host, kind, key_path, password)
        except SshClientError as exc:
            self.app.set_status(f"Missing fields: {exc}")
            return

        while True:
            decision = self._prompt("[s]ave, [t]est, [c]ancel", "s")
            if decision is None or decision.lower().startswith("c"):
                self.app.set_status("Edit cancelled")
                return
            if decision.lower().startswith("t"):
                self.app.test_profile(profile)
                self._write(f"{self.app.status}\n")
                continue
            break
        try:
            self.app.save_profile(profile, edit_index)
        except SshClientError as exc:
            self.app.set_status(f"Connection failed: {exc}")

    def change_master_form(self) -> None:
        answers = []
        for label in ("Current master password", "New master password", "Confirm new password"):
            answer = self._prompt(label, secret=True)
            if answer is None:
                return
            answers.append(answer)
        self.app.change_master_password(*answers)

    # ------------------------------------------------------------------
    # Terminal
    # ------------------------------------------------------------------

    def terminal(self) -> None:
        """Hand the terminal to a remote shell until Ctrl+G or the shell exits."""
        fd = self._tty_fd()
        if fd is None:
            self.app.set_status("Interactive terminal needs a POSIX TTY")
            return
        size = shutil.get_terminal_size()
        channel = self.app.open_terminal(size.columns, size.lines)
        self._write(f"Connected shell ({datetime.now():%H:%M:%S}); Ctrl+G to return\r\n")
        self._reader.pause()
        try:
            run_shell(channel, fd, self._out)
        finally:
            self._reader.resume()
            channel.close()
        self.app.set_status("Terminal closed")


def run_shell(
    channel: ShellChannel,
    fd: int,
    out: TextIO,
    terminal_size: Callable[[], os.terminal_size] = shutil.get_terminal_size,
) -> None:
    """Pump bytes between the raw TTY *fd* and *channel*."""
    old_attrs = termios.tcgetattr(fd)
    tty.setraw(fd)
    sink = getattr(out, "buffer", None)
    size = terminal_size()
    try:
        while not channel.closed:
            ready, _, _ = select.select([fd], [], [], 0.05)
            if ready:
                data = os.read(fd, 1024)
                if SHELL_ESCAPE in data:
                    head = data.split(SHELL_ESCAPE, 1)[0]
                    if head:
                        channel.write(head)
                    break
                channel.write(data)
            output = channel.read()
            if output:
                if sink is not None:
                    sink.write(output)
                else:
                    out.write(output.decode("utf-8", errors="replace"))
                out.flush()
            current = terminal_size()
            if current != size:
                size = current
                channel.resize(size.columns, size.lines)
    finally:
        termios.tcsetattr(fd, termios.TCSADRAIN, old_attrs)


def prompt_master_password(
    store_exists: bool, ask: Callable[[str], str] = getpass.getpass
) -> tuple[str, str]:
    """Ask for the master password (and its confirmation on first run)."""
    if store_exists:
        return ask("Master password: "), ""
    password = ask("Create master password: ")
    confirm = ask("Confirm master password: ")
    return password, confirm
