"""SSH/SFTP adapter for ssh-client.

A thin layer over paramiko: dial and authenticate a profile, list remote
directories, size files and trees, copy trees in either direction with
byte-level progress and cooperative cancellation, and open an interactive
shell.  Everything here blocks; callers run it on worker threads.
"""

from __future__ import annotations

import logging
import os
import socket
import stat
import threading
from pathlib import Path
from typing import Callable, Optional, Protocol, TypeVar

import paramiko
from paramiko import SFTPAttributes

from ssh_client.errors import (
    DialError,
    LocalIOError,
    SFTPError,
    ShellError,
    SshClientError,
    TransferCancelledError,
)
from ssh_client.models import DirEntry, PasswordAuth, Profile, saturating_add
from ssh_client.utils.path_helpers import expand_tilde, join_remote, remote_basename

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Types and tunables
# ---------------------------------------------------------------------------

ProgressCallback = Callable[[int], None]
T = TypeVar("T")

SSH_PORT = 22
CONNECT_TIMEOUT = 5.0  # seconds; TCP connect, banner, auth and channel I/O
CHUNK_SIZE = 8192
PTY_TERM = "xterm-256color"
_SFTP_ERRORS = (OSError, paramiko.SSHException)


# ---------------------------------------------------------------------------
# Host-key policy
# ---------------------------------------------------------------------------


class _RecordingPolicy(paramiko.MissingHostKeyPolicy):
    """Accepts unknown host keys for this session and logs their fingerprint.

    Keys already in ``known_hosts`` are still checked, so a changed key
    fails with :exc:`paramiko.BadHostKeyException`.
    """

    def missing_host_key(
        self,
        client: paramiko.SSHClient,
        hostname: str,
        key: paramiko.PKey,
    ) -> None:
        """Record the key in memory and log its fingerprint."""
        raw = key.get_fingerprint()
        fingerprint = ":".join(f"{b:02x}" for b in raw)
        client.get_host_keys().add(hostname, key.get_name(), key)
        logger.warning(
            "Accepting unknown host key for %s (%s, MD5 %s)",
            hostname,
            key.get_name(),
            fingerprint,
        )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _close_client_safely(client: paramiko.SSHClient) -> None:
    """Close *client*, logging instead of raising on cleanup errors."""
    try:
        client.close()
    except Exception as exc:
        logger.debug("Ignoring error while closing SSH client: %s", exc)


def _check_cancel(cancel: threading.Event) -> None:
    if cancel.is_set():
        raise TransferCancelledError()


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


class Session:
    """An authenticated SSH connection with a lazily opened SFTP channel.

    Usable as a context manager; :meth:`close` is idempotent.
    """

    def __init__(self, client: paramiko.SSHClient, label: str = "") -> None:
        self._client = client
        self._sftp: paramiko.SFTPClient | None = None
        self._lock = threading.Lock()
        self.label = label

    @property
    def client(self) -> paramiko.SSHClient:
        return self._client

    @property
    def sftp(self) -> paramiko.SFTPClient:
        """Return the SFTP client, opening it on first use.

        Raises:
            SFTPError: If the SFTP subsystem cannot be started.
        """
        with self._lock:
            if self._sftp is None:
                try:
                    self._sftp = self._client.open_sftp()
                except _SFTP_ERRORS as exc:
                    raise SFTPError(f"open sftp: {exc}") from exc
                self._sftp.get_channel().settimeout(CONNECT_TIMEOUT)
            return self._sftp

    def is_active(self) -> bool:
        """Return True while the underlying transport is alive."""
        transport = self._client.get_transport()
        return transport is not None and transport.is_active()

    def close(self) -> None:
        """Close the SFTP channel (if open) and the SSH connection."""
        with self._lock:
            if self._sftp is not None:
                try:
                    self._sftp.close()
                except Exception as exc:
                    logger.debug("Ignoring error while closing SFTP: %s", exc)
                self._sftp = None
        _close_client_safely(self._client)

    def __enter__(self) -> Session:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


# ---------------------------------------------------------------------------
# Dial
# ---------------------------------------------------------------------------


def _open_socket(host: str) -> socket.socket:
    """Resolve *host* and connect to the first address that answers in time."""
    try:
        addresses = socket.getaddrinfo(host, SSH_PORT, type=socket.SOCK_STREAM)
    except (socket.gaierror, UnicodeError) as exc:
        raise DialError(f"resolve address {host}: {exc}") from exc

    last_exc: OSError | None = None
    for family, socktype, proto, _, address in addresses:
        sock = socket.socket(family, socktype, proto)
        sock.settimeout(CONNECT_TIMEOUT)
        try:
            sock.connect(address)
        except OSError as exc:
            logger.debug("TCP connect to %s failed: %s", address, exc)
            sock.close()
            last_exc = exc
            continue
        return sock
    raise DialError(f"connect tcp failed: {last_exc or 'no addresses for ' + host}")


def dial(profile: Profile) -> Session:
    """Open and authenticate a new SSH session for *profile*.

    Raises:
        DialError: On resolution, TCP, handshake, host-key or auth failure,
            or when the private key file does not exist.
    """
    logger.info("Connecting to %s@%s", profile.user, profile.host)

    connect_kwargs: dict = {
        "hostname": profile.host,
        "port": SSH_PORT,
        "username": profile.user,
        "timeout": CONNECT_TIMEOUT,
        "banner_timeout": CONNECT_TIMEOUT,
        "auth_timeout": CONNECT_TIMEOUT,
        "allow_agent": False,
        "look_for_keys": False,
    }
    if isinstance(profile.auth, PasswordAuth):
        connect_kwargs["password"] = profile.auth.password
    else:
        key_path = expand_tilde(profile.auth.path)
        if not key_path.exists():
            raise DialError(f"Private key not found at {key_path}")
        connect_kwargs["key_filename"] = str(key_path)
        if profile.auth.passphrase is not None:
            connect_kwargs["passphrase"] = profile.auth.passphrase

    sock = _open_socket(profile.host)
    client = paramiko.SSHClient()
    known_hosts_path = Path.home() / ".ssh" / "known_hosts"
    if known_hosts_path.exists():
        try:
            client.load_host_keys(str(known_hosts_path))
        except (OSError, paramiko.SSHException) as exc:
            logger.warning("Could not load %s: %s", known_hosts_path, exc)
    client.set_missing_host_key_policy(_RecordingPolicy())

    try:
        client.connect(sock=sock, **connect_kwargs)
    except paramiko.BadHostKeyException as exc:
        _close_client_safely(client)
        sock.close()
        raise DialError(
            f"Host key mismatch for {profile.host}; check ~/.ssh/known_hosts"
        ) from exc
    except paramiko.AuthenticationException as exc:
        _close_client_safely(client)
        sock.close()
        raise DialError(f"Authentication failed: {exc}") from exc
    except (paramiko.SSHException, socket.timeout, OSError, ValueError) as exc:
        _close_client_safely(client)
        sock.close()
        raise DialError(f"ssh handshake with {profile.host} failed: {exc}") from exc

    transport = client.get_transport()
    if transport is None or not transport.is_authenticated():
        _close_client_safely(client)
        raise DialError("Authentication failed")

    logger.info("Connected to %s", profile.host)
    return Session(client, label=profile.label)


# ---------------------------------------------------------------------------
# Remote listing and sizing
# ---------------------------------------------------------------------------


def _listdir(sftp: paramiko.SFTPClient, remote_dir: str) -> list[SFTPAttributes]:
    """Return the entries of *remote_dir* without ``.``/``..``, sorted case-insensitively."""
    try:
        attrs = sftp.listdir_attr(remote_dir)
    except _SFTP_ERRORS as exc:
        logger.warning("listdir(%r) failed: %s", remote_dir, exc)
        raise SFTPError(f"read remote dir {remote_dir}: {exc}") from exc
    attrs = [a for a in attrs if a.filename not in (".", "..")]
    attrs.sort(key=lambda a: a.filename.lower())
    return attrs


def _resolve_attr(
    sftp: paramiko.SFTPClient, path: str, attr: SFTPAttributes
) -> SFTPAttributes:
    """Follow a symlink entry to its target; dangling links are returned as-is."""
    if attr.st_mode is not None and stat.S_ISLNK(attr.st_mode):
        try:
            return sftp.stat(path)
        except _SFTP_ERRORS as exc:
            logger.debug("Dangling symlink %s: %s", path, exc)
    return attr


def _is_dir(attr: SFTPAttributes) -> bool:
    return attr.st_mode is not None and stat.S_ISDIR(attr.st_mode)


def _remote_realpath(sftp: paramiko.SFTPClient, path: str) -> str:
    try:
        return sftp.normalize(path)
    except _SFTP_ERRORS:
        return path


def list_directory(
    session: Session,
    remote_dir: str,
    only_dirs: bool = False,
    show_hidden: bool = False,
) -> list[DirEntry]:
    """List *remote_dir* as :class:`DirEntry` rows sorted by lowercased name.

    Hidden (dot) entries are dropped unless *show_hidden*; files are dropped
    when *only_dirs*.  Symlinks count as directories when their target is one.

    Raises:
        SFTPError: If the directory cannot be read.
    """
    sftp = session.sftp
    entries: list[DirEntry] = []
    for attr in _listdir(sftp, remote_dir):
        name = attr.filename
        if not show_hidden and name.startswith("."):
            continue
        path = join_remote(remote_dir, name)
        is_dir = _is_dir(_resolve_attr(sftp, path, attr))
        if only_dirs and not is_dir:
            continue
        entries.append(DirEntry(name=name, path=path, is_dir=is_dir))
    logger.debug("Listed %d entries in %s", len(entries), remote_dir)
    return entries


def has_subdirectories(session: Session, remote_dir: str) -> bool:
    """Return True as soon as one directory is found inside *remote_dir*.

    Raises:
        SFTPError: If the directory cannot be read.
    """
    sftp = session.sftp
    try:
        for attr in sftp.listdir_iter(remote_dir):
            if attr.filename in (".", ".."):
                continue
            path = join_remote(remote_dir, attr.filename)
            if _is_dir(_resolve_attr(sftp, path, attr)):
                return True
    except _SFTP_ERRORS as exc:
        raise SFTPError(f"read remote dir {remote_dir}: {exc}") from exc
    return False


def _remote_tree_size(
    sftp: paramiko.SFTPClient, remote_dir: str, ancestors: frozenset[str]
) -> int:
    real = _remote_realpath(sftp, remote_dir)
    if real in ancestors:
        logger.warning("Skipping directory cycle at %s", remote_dir)
        return 0
    ancestors = ancestors | {real}
    total = 0
    for attr in _listdir(sftp, remote_dir):
        path = join_remote(remote_dir, attr.filename)
        resolved = _resolve_attr(sftp, path, attr)
        if _is_dir(resolved):
            total = saturating_add(total, _remote_tree_size(sftp, path, ancestors))
        else:
            total = saturating_add(total, resolved.st_size or 0)
    return total


def remote_size(session: Session, path: str, is_dir: bool) -> int:
    """Return the size of a remote file, or the summed file sizes of a tree.

    Raises:
        SFTPError: If any stat or listing fails.
    """
    sftp = session.sftp
    if not is_dir:
        try:
            return sftp.stat(path).st_size or 0
        except _SFTP_ERRORS as exc:
            raise SFTPError(f"stat remote file {path}: {exc}") from exc
    return _remote_tree_size(sftp, path, frozenset())


def remote_home_dir(session: Session) -> str | None:
    """Return the remote login directory (SFTP's canonical ``.``), if any.

    Raises:
        SFTPError: If the server cannot canonicalise ``.``.
    """
    try:
        home = session.sftp.normalize(".")
    except _SFTP_ERRORS as exc:
        raise SFTPError(f"resolve remote home: {exc}") from exc
    home = home.strip()
    return home or None


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------


def _stream_with_progress(
    src,
    dst,
    on_progress: ProgressCallback,
    cancel: threading.Event,
    read_error: type[SshClientError],
    write_error: type[SshClientError],
) -> None:
    """Copy *src* to *dst* in CHUNK_SIZE pieces, reporting each written chunk.

    The cancel event is checked before every read, so at most one chunk is
    written after cancellation is requested.
    """
    while True:
        _check_cancel(cancel)
        try:
            chunk = src.read(CHUNK_SIZE)
        except _SFTP_ERRORS as exc:
            raise read_error(f"read failed: {exc}") from exc
        if not chunk:
            break
        try:
            dst.write(chunk)
        except _SFTP_ERRORS as exc:
            raise write_error(f"write failed: {exc}") from exc
        on_progress(len(chunk))


def _open_remote(sftp: paramiko.SFTPClient, path: str, mode: str):
    try:
        return sftp.open(path, mode)
    except _SFTP_ERRORS as exc:
        raise SFTPError(f"open remote file {path}: {exc}") from exc


def _close_remote(handle, path: str) -> None:
    try:
        handle.close()
    except _SFTP_ERRORS as exc:
        raise SFTPError(f"close remote file {path}: {exc}") from exc


# ---------------------------------------------------------------------------
# Upload
# ---------------------------------------------------------------------------


def _upload_file(
    sftp: paramiko.SFTPClient,
    local_file: Path,
    remote_path: str,
    on_progress: ProgressCallback,
    cancel: threading.Event,
) -> None:
    _check_cancel(cancel)
    try:
        local_fh = open(local_file, "rb")
    except OSError as exc:
        raise LocalIOError(f"open local file {local_file}: {exc}") from exc
    with local_fh:
        remote_fh = _open_remote(sftp, remote_path, "wb")
        try:
            _stream_with_progress(
                local_fh, remote_fh, on_progress, cancel, LocalIOError, SFTPError
            )
        except SshClientError:
            try:
                remote_fh.close()
            except _SFTP_ERRORS as exc:
                logger.debug("Ignoring close error on %s: %s", remote_path, exc)
            raise
        _close_remote(remote_fh, remote_path)


def _ensure_remote_dir(sftp: paramiko.SFTPClient, remote_dir: str) -> None:
    """Create *remote_dir*; an existing directory is accepted."""
    try:
        sftp.mkdir(remote_dir)
    except _SFTP_ERRORS as exc:
        try:
            existing = sftp.stat(remote_dir)
        except _SFTP_ERRORS:
            existing = None
        if existing is None or not _is_dir(existing):
            raise SFTPError(f"create remote dir {remote_dir}: {exc}") from exc


def _upload_dir(
    sftp: paramiko.SFTPClient,
    local_dir: Path,
    remote_dir: str,
    on_progress: ProgressCallback,
    cancel: threading.Event,
    ancestors: frozenset[str],
) -> None:
    _check_cancel(cancel)
    real = os.path.realpath(local_dir)
    if real in ancestors:
        logger.warning("Skipping directory cycle at %s", local_dir)
        return
    ancestors = ancestors | {real}

    _ensure_remote_dir(sftp, remote_dir)
    try:
        children = sorted(local_dir.iterdir(), key=lambda p: p.name.lower())
    except OSError as exc:
        raise LocalIOError(f"read local dir {local_dir}: {exc}") from exc

    for child in children:
        remote_child = join_remote(remote_dir, child.name)
        if child.is_dir():
            _upload_dir(sftp, child, remote_child, on_progress, cancel, ancestors)
        else:
            _upload_file(sftp, child, remote_child, on_progress, cancel)


def upload(
    session: Session,
    local_path: Path,
    remote_dir: str,
    is_dir: bool,
    on_progress: ProgressCallback,
    cancel: threading.Event,
) -> None:
    """Copy *local_path* (file or tree) into the remote directory *remote_dir*.

    The copy lands at ``remote_dir/<name of local_path>``.  Remote files are
    truncated and overwritten.  The first error aborts the copy; anything
    already written is left in place.

    Raises:
        TransferCancelledError: When *cancel* is set.
        LocalIOError: On local read errors.
        SFTPError: On remote errors.
    """
    if not local_path.name:
        raise LocalIOError(f"missing source filename in {local_path}")
    sftp = session.sftp
    remote_base = join_remote(remote_dir, local_path.name)
    logger.info("Uploading %s to %s", local_path, remote_base)
    if is_dir:
        _upload_dir(sftp, local_path, remote_base, on_progress, cancel, frozenset())
    else:
        _upload_file(sftp, local_path, remote_base, on_progress, cancel)
    logger.info("Upload complete: %s", remote_base)


# ---------------------------------------------------------------------------
# Download
# ---------------------------------------------------------------------------


def _download_file(
    sftp: paramiko.SFTPClient,
    remote_path: str,
    local_file: Path,
    on_progress: ProgressCallback,
    cancel: threading.Event,
) -> None:
    _check_cancel(cancel)
    remote_fh = _open_remote(sftp, remote_path, "rb")
    try:
        try:
            local_fh = open(local_file, "wb")
        except OSError as exc:
            raise LocalIOError(f"create local file {local_file}: {exc}") from exc
        with local_fh:
            _stream_with_progress(
                remote_fh, local_fh, on_progress, cancel, SFTPError, LocalIOError
            )
    except SshClientError:
        try:
            remote_fh.close()
        except _SFTP_ERRORS as exc:
            logger.debug("Ignoring close error on %s: %s", remote_path, exc)
        raise
    _close_remote(remote_fh, remote_path)


def _download_dir(
    sftp: paramiko.SFTPClient,
    remote_dir: str,
    local_dir: Path,
    on_progress: ProgressCallback,
    cancel: threading.Event,
    ancestors: frozenset[str],
) -> None:
    _check_cancel(cancel)
    real = _remote_realpath(sftp, remote_dir)
    if real in ancestors:
        logger.warning("Skipping directory cycle at %s", remote_dir)
        return
    ancestors = ancestors | {real}

    try:
        local_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise LocalIOError(f"create local dir {local_dir}: {exc}") from exc

    for attr in _listdir(sftp, remote_dir):
        remote_child = join_remote(remote_dir, attr.filename)
        local_child = local_dir / attr.filename
        if _is_dir(_resolve_attr(sftp, remote_child, attr)):
            _download_dir(sftp, remote_child, local_child, on_progress, cancel, ancestors)
        else:
            _download_file(sftp, remote_child, local_child, on_progress, cancel)


def download(
    session: Session,
    remote_path: str,
    local_dir: Path,
    is_dir: bool,
    on_progress: ProgressCallback,
    cancel: threading.Event,
) -> None:
    """Copy *remote_path* (file or tree) into the local directory *local_dir*.

    Local directories are created with ``mkdir -p`` semantics.  Errors and
    cancellation behave as in :func:`upload`.
    """
    name = remote_basename(remote_path)
    if not name:
        raise SFTPError(f"missing source filename in {remote_path!r}")
    sftp = session.sftp
    local_base = local_dir / name
    logger.info("Downloading %s to %s", remote_path, local_base)
    if is_dir:
        _download_dir(sftp, remote_path, local_base, on_progress, cancel, frozenset())
    else:
        _download_file(sftp, remote_path, local_base, on_progress, cancel)
    logger.info("Download complete: %s", local_base)


# ---------------------------------------------------------------------------
# Interactive shell
# ---------------------------------------------------------------------------


class ShellChannel:
    """A PTY-backed interactive shell on an open session."""

    def __init__(self, channel: paramiko.Channel) -> None:
        self._channel = channel

    def read(self, size: int = 4096) -> bytes:
        """Return whatever stdout/stderr output is ready, without blocking."""
        data = b""
        try:
            if self._channel.recv_ready():
                data += self._channel.recv(size)
            if self._channel.recv_stderr_ready():
                data += self._channel.recv_stderr(size)
        except (OSError, paramiko.SSHException) as exc:
            raise ShellError(f"read channel: {exc}") from exc
        return data

    def write(self, data: bytes) -> None:
        """Send keystroke bytes to the remote shell."""
        try:
            self._channel.sendall(data)
        except (OSError, paramiko.SSHException) as exc:
            raise ShellError(f"write channel: {exc}") from exc

    def resize(self, cols: int, rows: int) -> None:
        try:
            self._channel.resize_pty(width=cols, height=rows)
        except (OSError, paramiko.SSHException) as exc:
            raise ShellError(f"resize pty: {exc}") from exc

    @property
    def closed(self) -> bool:
        """True once the remote side has closed or the shell has exited."""
        return self._channel.closed or self._channel.exit_status_ready()

    def close(self) -> None:
        self._channel.close()


def open_shell(session: Session, cols: int, rows: int) -> ShellChannel:
    """Request an ``xterm-256color`` PTY of *cols* x *rows* and start a shell.

    Raises:
        ShellError: If the channel, PTY or shell request fails.
    """
    try:
        channel = session.client.invoke_shell(term=PTY_TERM, width=cols, height=rows)
    except (OSError, paramiko.SSHException) as exc:
        raise ShellError(f"start shell: {exc}") from exc
    channel.settimeout(CONNECT_TIMEOUT)
    logger.info("Opened shell on %s (%dx%d)", session.label or "session", cols, rows)
    return ShellChannel(channel)


# ---------------------------------------------------------------------------
# Backend abstraction
# ---------------------------------------------------------------------------


class SshBackend(Protocol):
    """Remote queries used by the browsers and the size pre-computation.

    Each call reuses *session* when given, otherwise dials its own.
    """

    def list_directory(
        self,
        profile: Profile,
        remote_dir: str,
        only_dirs: bool = False,
        show_hidden: bool = False,
        session: Optional[Session] = None,
    ) -> list[DirEntry]: ...

    def remote_home_dir(
        self, profile: Profile, session: Optional[Session] = None
    ) -> Optional[str]: ...

    def has_subdirectories(
        self, profile: Profile, remote_dir: str, session: Optional[Session] = None
    ) -> bool: ...

    def remote_size(
        self,
        profile: Profile,
        path: str,
        is_dir: bool,
        session: Optional[Session] = None,
    ) -> int: ...


class RealSshBackend:
    """:class:`SshBackend` over paramiko."""

    def __init__(self, dialer: Callable[[Profile], Session] = dial) -> None:
        self._dialer = dialer

    def _with_session(
        self,
        profile: Profile,
        session: Optional[Session],
        operation: Callable[[Session], T],
    ) -> T:
        if session is not None:
            return operation(session)
        with self._dialer(profile) as fresh:
            return operation(fresh)

    def list_directory(
        self,
        profile: Profile,
        remote_dir: str,
        only_dirs: bool = False,
        show_hidden: bool = False,
        session: Optional[Session] = None,
    ) -> list[DirEntry]:
        return self._with_session(
            profile,
            session,
            lambda s: list_directory(s, remote_dir, only_dirs, show_hidden),
        )

    def remote_home_dir(
        self, profile: Profile, session: Optional[Session] = None
    ) -> Optional[str]:
        return self._with_session(profile, session, remote_home_dir)

    def has_subdirectories(
        self, profile: Profile, remote_dir: str, session: Optional[Session] = None
    ) -> bool:
        return self._with_session(
            profile, session, lambda s: has_subdirectories(s, remote_dir)
        )

    def remote_size(
        self,
        profile: Profile,
        path: str,
        is_dir: bool,
        session: Optional[Session] = None,
    ) -> int:
        return self._with_session(profile, session, lambda s: remote_size(s, path, is_dir))
