"""Transfer engine for ssh-client.

Drives one upload or download at a time through a small state machine:

    PICK_SOURCE -> PICK_TARGET -> CONFIRM -> TRANSFERRING -> (done)

with ``back`` stepping CONFIRM -> PICK_TARGET -> PICK_SOURCE.  On confirm a
daemon worker dials its own session and streams ``Progress`` messages over a
``queue.Queue`` followed by exactly one ``Done``; cancellation is a
``threading.Event`` checked at every chunk boundary.  The foreground drains
the queue with :meth:`TransferEngine.poll` once per tick and never blocks.
"""

from __future__ import annotations

import dataclasses
import logging
import os
import queue
import threading
from dataclasses import dataclass
from enum import Enum, auto
from pathlib import Path
from typing import Callable, Optional, Union

from ssh_client.connection import RealSshBackend, Session, SshBackend, dial, download, upload
from ssh_client.errors import InvalidStateError, LocalIOError, SshClientError
from ssh_client.models import Notice, Profile, saturating_add

logger = logging.getLogger(__name__)

TRANSFER_LOG_THRESHOLD = 1024 * 1024  # log a progress line per MiB
MB_BYTES = 1024.0 * 1024.0

NOTICE_COMPLETE_TITLE = "Transfer complete"
NOTICE_COMPLETE_MESSAGE = "Transfer finished successfully"
NOTICE_FAILED_TITLE = "Transfer failed"

# ---------------------------------------------------------------------------
# Enums and state
# ---------------------------------------------------------------------------


class TransferDirection(Enum):
    """Direction of a transfer."""

    UPLOAD = auto()
    DOWNLOAD = auto()


class TransferStep(Enum):
    """Where the transfer flow currently is."""

    PICK_SOURCE = auto()
    PICK_TARGET = auto()
    CONFIRM = auto()
    TRANSFERRING = auto()


@dataclass
class TransferState:
    """The single in-flight transfer record.

    Uploads set ``source_local``/``target_remote``; downloads set
    ``source_remote``/``target_local``.
    """

    direction: TransferDirection
    step: TransferStep = TransferStep.PICK_SOURCE
    source_local: Path | None = None
    source_remote: str | None = None
    source_is_dir: bool = False
    target_remote: str | None = None
    target_local: Path | None = None
    size_bytes: int | None = None
    progress_bytes: int = 0

    @property
    def source_label(self) -> str:
        source = self.source_local if self.direction is TransferDirection.UPLOAD else self.source_remote
        return str(source) if source is not None else ""

    @property
    def target_label(self) -> str:
        target = self.target_remote if self.direction is TransferDirection.UPLOAD else self.target_local
        return str(target) if target is not None else ""


# ---------------------------------------------------------------------------
# Worker messages
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Progress:
    """*nbytes* more bytes were written."""

    nbytes: int


@dataclass(frozen=True)
class Done:
    """Terminal message; *error* is ``None`` on success."""

    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


TransferUpdate = Union[Progress, Done]


# ---------------------------------------------------------------------------
# Local sizing
# ---------------------------------------------------------------------------


def _local_tree_size(directory: Path, ancestors: frozenset[str]) -> int:
    real = os.path.realpath(directory)
    if real in ancestors:
        logger.warning("Skipping directory cycle at %s", directory)
        return 0
    ancestors = ancestors | {real}
    total = 0
    try:
        children = list(directory.iterdir())
    except OSError as exc:
        raise LocalIOError(f"read dir {directory}: {exc}") from exc
    for child in children:
        try:
            is_dir = child.is_dir()
            size = 0 if is_dir else child.stat().st_size
        except OSError as exc:
            raise LocalIOError(f"stat entry {child}: {exc}") from exc
        if is_dir:
            total = saturating_add(total, _local_tree_size(child, ancestors))
        else:
            total = saturating_add(total, size)
    return total


def compute_local_size(path: Path, is_dir: bool) -> int:
    """Return the size of a local file or the summed file sizes of a tree.

    Raises:
        LocalIOError: If any entry cannot be read.
    """
    if not is_dir:
        try:
            return path.stat().st_size
        except OSError as exc:
            raise LocalIOError(f"stat file {path}: {exc}") from exc
    return _local_tree_size(path, frozenset())


def format_progress(progress_bytes: int, size_bytes: int | None) -> str:
    """Return the progress log line for the current byte counts."""
    total = size_bytes or 0
    if total == 0:
        return f"Transfer progress: {progress_bytes} B"
    percent = round(progress_bytes / total * 100.0)
    current_mb = round(progress_bytes / MB_BYTES)
    total_mb = round(total / MB_BYTES)
    return f"Transfer progress: {percent}% ({current_mb} MB of {total_mb} MB)"


# ---------------------------------------------------------------------------
# TransferEngine
# ---------------------------------------------------------------------------


class TransferEngine:
    """Owns the transfer state machine and its worker threads.

    Thread-safety: every public method belongs to the foreground thread.
    Workers only see a copy of the state and talk back through queues.
    """

    def __init__(
        self,
        backend: SshBackend | None = None,
        dialer: Callable[[Profile], Session] = dial,
    ) -> None:
        """Initialise an idle engine.

        Args:
            backend: Used for the remote size pre-computation.
            dialer: Opens the fresh session each transfer worker runs on.
        """
        self._dialer = dialer
        self._backend = backend or RealSshBackend(dialer)
        self.state: TransferState | None = None
        self.hidden = False

        self._progress: queue.Queue[TransferUpdate] | None = None
        self._cancel: threading.Event | None = None
        self._worker: threading.Thread | None = None
        self._last_logged = 0

        self._size_generation = 0
        self._size_results: queue.Queue | None = None

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def active(self) -> bool:
        return self.state is not None

    @property
    def transferring(self) -> bool:
        return self.state is not None and self.state.step is TransferStep.TRANSFERRING

    @property
    def step(self) -> TransferStep | None:
        return self.state.step if self.state else None

    @property
    def direction(self) -> TransferDirection | None:
        return self.state.direction if self.state else None

    def _require(
        self, step: TransferStep, direction: TransferDirection | None = None
    ) -> TransferState:
        state = self.state
        if state is None:
            raise InvalidStateError("No transfer in progress")
        if state.step is not step:
            raise InvalidStateError(
                f"Transfer is at {state.step.name}, expected {step.name}"
            )
        if direction is not None and state.direction is not direction:
            raise InvalidStateError(
                f"Not valid for a {state.direction.name.lower()} transfer"
            )
        return state

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def start(self, direction: TransferDirection) -> TransferState:
        """Begin a new flow at PICK_SOURCE, discarding any unconfirmed one.

        Raises:
            InvalidStateError: If a transfer is already running.
        """
        if self.transferring:
            raise InvalidStateError("A transfer is already running")
        self._size_generation += 1
        self._size_results = None
        self.state = TransferState(direction=direction)
        self.hidden = False
        logger.debug("Transfer flow started: %s", direction.name)
        return self.state

    def start_upload(self) -> TransferState:
        return self.start(TransferDirection.UPLOAD)

    def start_download(self) -> TransferState:
        return self.start(TransferDirection.DOWNLOAD)

    def select_source_local(self, path: Path, is_dir: bool) -> None:
        """Choose the local file or directory to upload."""
        state = self._require(TransferStep.PICK_SOURCE, TransferDirection.UPLOAD)
        state.source_local = path
        state.source_is_dir = is_dir
        state.size_bytes = None
        state.step = TransferStep.PICK_TARGET
        self._size_generation += 1

    def select_source_remote(self, path: str, is_dir: bool) -> None:
        """Choose the remote file or directory to download."""
        state = self._require(TransferStep.PICK_SOURCE, TransferDirection.DOWNLOAD)
        state.source_remote = path
        state.source_is_dir = is_dir
        state.size_bytes = None
        state.step = TransferStep.PICK_TARGET
        self._size_generation += 1

    def select_target_remote(self, remote_dir: str) -> None:
        """Choose the remote directory to upload into and size the local source.

        The size is advisory: a failure is logged and leaves it unknown.
        """
        state = self._require(TransferStep.PICK_TARGET, TransferDirection.UPLOAD)
        state.target_remote = remote_dir
        state.step = TransferStep.CONFIRM
        if state.size_bytes is None and state.source_local is not None:
            try:
                state.size_bytes = compute_local_size(state.source_local, state.source_is_dir)
            except LocalIOError as exc:
                logger.warning("Failed to compute size: %s", exc)

    def select_target_local(self, local_dir: Path, profile: Profile) -> None:
        """Choose the local directory to download into.

        The remote source is sized on a worker thread over a fresh session;
        :meth:`poll_size` picks the result up.
        """
        state = self._require(TransferStep.PICK_TARGET, TransferDirection.DOWNLOAD)
        state.target_local = local_dir
        state.step = TransferStep.CONFIRM
        if state.size_bytes is None and state.source_remote is not None:
            self._start_size_calc(profile, state.source_remote, state.source_is_dir)

    def back(self) -> TransferStep:
        """Step back one stage: CONFIRM -> PICK_TARGET, PICK_TARGET -> PICK_SOURCE.

        Raises:
            InvalidStateError: From any other step.
        """
        state = self.state
        if state is None:
            raise InvalidStateError("No transfer in progress")
        if state.step is TransferStep.CONFIRM:
            state.step = TransferStep.PICK_TARGET
        elif state.step is TransferStep.PICK_TARGET:
            state.step = TransferStep.PICK_SOURCE
        else:
            raise InvalidStateError(f"Cannot go back from {state.step.name}")
        return state.step

    def confirm(self, profile: Profile) -> None:
        """Spawn the transfer worker for the confirmed state.

        Raises:
            InvalidStateError: If not at CONFIRM or a source/target is missing.
        """
        state = self._require(TransferStep.CONFIRM)
        if state.direction is TransferDirection.UPLOAD:
            if state.source_local is None or state.target_remote is None:
                raise InvalidStateError("Confirm needs both a source and a target")
        elif state.source_remote is None or state.target_local is None:
            raise InvalidStateError("Confirm needs both a source and a target")

        progress: queue.Queue[TransferUpdate] = queue.Queue()
        cancel = threading.Event()
        snapshot = dataclasses.replace(state)

        state.step = TransferStep.TRANSFERRING
        state.progress_bytes = 0
        self.hidden = False
        self._last_logged = 0
        self._progress = progress
        self._cancel = cancel

        self._worker = threading.Thread(
            target=self._run,
            args=(snapshot, profile.copy(), progress, cancel),
            name="transfer-worker",
            daemon=True,
        )
        self._worker.start()
        logger.info(
            "Transfer started: %s %s -> %s",
            state.direction.name.lower(),
            state.source_label,
            state.target_label,
        )

    def cancel(self) -> None:
        """Signal a running worker to stop, or abandon an unconfirmed flow."""
        if self.state is None:
            return
        if self.transferring:
            if self._cancel is not None:
                self._cancel.set()
                logger.info("Transfer cancel requested")
            return
        self.state = None
        self.hidden = False
        self._size_generation += 1
        self._size_results = None

    def hide(self) -> None:
        """Hide the progress modal; the worker keeps running.

        Raises:
            InvalidStateError: If nothing is transferring.
        """
        if not self.transferring:
            raise InvalidStateError("No transfer is running")
        self.hidden = True

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    def _run(
        self,
        snapshot: TransferState,
        profile: Profile,
        progress: queue.Queue,
        cancel: threading.Event,
    ) -> None:
        """Worker body: dial, copy, then always finish with one ``Done``."""
        error: str | None = None

        def on_progress(nbytes: int) -> None:
            progress.put(Progress(nbytes))

        try:
            with self._dialer(profile) as session:
                if snapshot.direction is TransferDirection.UPLOAD:
                    upload(
                        session,
                        snapshot.source_local,
                        snapshot.target_remote,
                        snapshot.source_is_dir,
                        on_progress,
                        cancel,
                    )
                else:
                    download(
                        session,
                        snapshot.source_remote,
                        snapshot.target_local,
                        snapshot.source_is_dir,
                        on_progress,
                        cancel,
                    )
        except SshClientError as exc:
            error = str(exc)
            logger.error("Transfer failed: %s", exc)
        except Exception as exc:
            logger.exception("Unexpected error in transfer worker")
            error = str(exc) or exc.__class__.__name__
        progress.put(Done(error))

    def poll(self) -> Notice | None:
        """Drain pending worker messages; return a notice when the transfer ends."""
        if self._progress is None:
            return None
        while True:
            try:
                update = self._progress.get_nowait()
            except queue.Empty:
                return None
            if isinstance(update, Progress):
                self._apply_progress(update.nbytes)
                continue
            return self._finish(update)

    def _apply_progress(self, nbytes: int) -> None:
        state = self.state
        if state is None:
            return
        state.progress_bytes = saturating_add(state.progress_bytes, nbytes)
        if state.progress_bytes - self._last_logged >= TRANSFER_LOG_THRESHOLD:
            logger.info(format_progress(state.progress_bytes, state.size_bytes))
            self._last_logged = state.progress_bytes

    def _finish(self, done: Done) -> Notice:
        self.state = None
        self.hidden = False
        self._progress = None
        self._cancel = None
        self._worker = None
        if done.ok:
            logger.info(NOTICE_COMPLETE_MESSAGE)
            return Notice(NOTICE_COMPLETE_TITLE, NOTICE_COMPLETE_MESSAGE)
        return Notice(NOTICE_FAILED_TITLE, done.error or "")

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the worker exits; returns False on timeout."""
        worker = self._worker
        if worker is None:
            return True
        worker.join(timeout)
        return not worker.is_alive()

    # ------------------------------------------------------------------
    # Size pre-computation
    # ------------------------------------------------------------------

    def _start_size_calc(self, profile: Profile, path: str, is_dir: bool) -> None:
        self._size_generation += 1
        generation = self._size_generation
        results: queue.Queue = queue.Queue(maxsize=1)
        backend = self._backend
        worker_profile = profile.copy()

        def job() -> None:
            try:
                results.put((generation, backend.remote_size(worker_profile, path, is_dir), None))
            except SshClientError as exc:
                results.put((generation, None, str(exc)))
            except Exception as exc:
                logger.exception("Unexpected error in size worker")
                results.put((generation, None, str(exc) or exc.__class__.__name__))

        self._size_results = results
        threading.Thread(target=job, name="size-worker", daemon=True).start()

    @property
    def size_pending(self) -> bool:
        return self._size_results is not None

    def poll_size(self) -> str | None:
        """Apply a finished size result; returns an error message if sizing failed.

        Results from a superseded computation are discarded.
        """
        results = self._size_results
        if results is None:
            return None
        try:
            generation, size, error = results.get_nowait()
        except queue.Empty:
            return None
        self._size_results = None
        if generation != self._size_generation or self.state is None:
            return None
        if error is not None:
            logger.warning("Failed to compute size: %s", error)
            return f"Failed to compute size: {error}"
        self.state.size_bytes = size
        return None
