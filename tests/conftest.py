"""Shared fixtures: a directory-backed fake SFTP server and fake dialers.

``FakeSFTP`` maps POSIX remote paths onto a ``tmp_path`` subtree so upload,
download, listing and sizing run against real files without a network.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional
from unittest.mock import MagicMock

import pytest
from paramiko import SFTPAttributes

from ssh_client.config import ProfileStore
from ssh_client.connection import Session
from ssh_client.errors import DialError
from ssh_client.models import PasswordAuth, Profile


class FakeSFTP:
    """Implements the subset of ``paramiko.SFTPClient`` the adapter uses."""

    def __init__(self, root: Path, home: str = "/") -> None:
        self.root = root
        self.home = home
        self.closed = False
        self.opened: list[str] = []

    def _local(self, path: str) -> Path:
        if not path.startswith("/"):
            path = self.home.rstrip("/") + "/" + path
        return self.root / path.lstrip("/")

    def listdir_attr(self, path: str = ".") -> list[SFTPAttributes]:
        local = self._local(path)
        return [SFTPAttributes.from_stat(os.lstat(child), child.name) for child in local.iterdir()]

    def listdir_iter(self, path: str = "."):
        return iter(self.listdir_attr(path))

    def stat(self, path: str) -> SFTPAttributes:
        return SFTPAttributes.from_stat(os.stat(self._local(path)))

    def normalize(self, path: str) -> str:
        real = Path(os.path.realpath(self._local(path)))
        rel = real.relative_to(os.path.realpath(self.root)).as_posix()
        return "/" if rel == "." else "/" + rel

    def mkdir(self, path: str, mode: int = 0o777) -> None:
        os.mkdir(self._local(path))

    def open(self, path: str, mode: str = "r"):
        self.opened.append(path)
        return open(self._local(path), mode)

    def get_channel(self) -> MagicMock:
        return MagicMock()

    def close(self) -> None:
        self.closed = True


def make_session(sftp: FakeSFTP, label: str = "fake") -> Session:
    """Wrap *sftp* in a real :class:`Session` over a mocked SSH client."""
    client = MagicMock()
    client.open_sftp.return_value = sftp
    return Session(client, label=label)


class FakeDialer:
    """Callable dialer handing out sessions over one :class:`FakeSFTP`.

    Set ``error`` to make every dial fail with that message.
    """

    def __init__(self, sftp: FakeSFTP) -> None:
        self.sftp = sftp
        self.calls: list[Profile] = []
        self.sessions: list[Session] = []
        self.error: Optional[str] = None

    def __call__(self, profile: Profile) -> Session:
        self.calls.append(profile)
        if self.error is not None:
            raise DialError(self.error)
        session = make_session(self.sftp, profile.label)
        self.sessions.append(session)
        return session


@pytest.fixture()
def remote_root(tmp_path: Path) -> Path:
    """Root of the fake remote filesystem, with ``/home/alice`` present."""
    root = tmp_path / "remote"
    (root / "home" / "alice").mkdir(parents=True)
    return root


@pytest.fixture()
def local_root(tmp_path: Path) -> Path:
    root = tmp_path / "local"
    root.mkdir()
    return root


@pytest.fixture()
def fake_sftp(remote_root: Path) -> FakeSFTP:
    return FakeSFTP(remote_root, home="/home/alice")


@pytest.fixture()
def fake_session(fake_sftp: FakeSFTP) -> Session:
    return make_session(fake_sftp)


@pytest.fixture()
def fake_dialer(fake_sftp: FakeSFTP) -> FakeDialer:
    return FakeDialer(fake_sftp)


@pytest.fixture()
def alice() -> Profile:
    return Profile(user="alice", host="h1", auth=PasswordAuth("pw1"), name="box")


@pytest.fixture()
def store(tmp_path: Path) -> ProfileStore:
    """An initialised, unlocked store in a temporary directory."""
    s = ProfileStore(tmp_path / "cfg" / "config.json")
    s.initialise("master", "master")
    return s
