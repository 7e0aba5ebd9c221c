"""Tests for ssh_client/browser.py — local and remote directory browsers."""

from __future__ import annotations

import time
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from ssh_client.browser import (
    NOTICE_NO_SUBFOLDERS_TITLE,
    LocalBrowser,
    RemoteBrowser,
    read_local_entries,
    resolve_local_start,
)
from ssh_client.connection import RealSshBackend
from ssh_client.errors import LocalIOError, SFTPError
from ssh_client.models import DirEntry, PasswordAuth, Profile


def _settle(browser: RemoteBrowser, timeout: float = 5.0) -> None:
    assert browser.wait(timeout)
    deadline = time.monotonic() + timeout
    while browser.loading and time.monotonic() < deadline:
        browser.poll()
        time.sleep(0.01)
    assert not browser.loading


@pytest.fixture()
def local_tree(local_root: Path) -> Path:
    (local_root / "Docs" / "inner").mkdir(parents=True)
    (local_root / "empty").mkdir()
    (local_root / ".cache").mkdir()
    (local_root / "b.txt").write_text("b")
    return local_root


class TestLocalEntries:
    def test_sorted_and_hidden_filtered(self, local_tree: Path) -> None:
        names = [e.name for e in read_local_entries(local_tree)]
        assert names == ["b.txt", "Docs", "empty"]

    def test_only_dirs_and_show_hidden(self, local_tree: Path) -> None:
        names = [e.name for e in read_local_entries(local_tree, only_dirs=True, show_hidden=True)]
        assert names == [".cache", "Docs", "empty"]

    def test_unreadable_directory(self, local_root: Path) -> None:
        with pytest.raises(LocalIOError):
            read_local_entries(local_root / "ghost")


class TestResolveLocalStart:
    def test_previous_directory(self, local_tree: Path) -> None:
        assert resolve_local_start(str(local_tree / "Docs")) == local_tree / "Docs"

    def test_previous_file_uses_parent(self, local_tree: Path) -> None:
        assert resolve_local_start(str(local_tree / "b.txt")) == local_tree

    def test_last_local_dir(self, local_tree: Path) -> None:
        assert resolve_local_start("", local_tree / "empty") == local_tree / "empty"

    def test_falls_back_to_home(self, local_root: Path) -> None:
        assert resolve_local_start("", local_root / "gone") == Path.home()


class TestLocalBrowser:
    def test_navigation(self, local_tree: Path) -> None:
        browser = LocalBrowser(local_tree)
        browser.move_down()
        assert browser.selected_entry.name == "Docs"
        assert browser.descend() is None
        assert browser.cwd == local_tree / "Docs"
        assert [e.name for e in browser.entries] == ["inner"]
        browser.ascend()
        assert browser.cwd == local_tree

    def test_descend_on_file_is_noop(self, local_tree: Path) -> None:
        browser = LocalBrowser(local_tree)
        assert browser.selected_entry.name == "b.txt"
        assert browser.descend() is None
        assert browser.cwd == local_tree

    def test_only_dirs_refuses_leaf_directory(self, local_tree: Path) -> None:
        browser = LocalBrowser(local_tree, only_dirs=True)
        assert [e.name for e in browser.entries] == ["Docs", "empty"]
        browser.move_down()
        notice = browser.descend()
        assert notice is not None and notice.title == NOTICE_NO_SUBFOLDERS_TITLE
        assert browser.cwd == local_tree

    def test_selection_bounds(self, local_tree: Path) -> None:
        browser = LocalBrowser(local_tree)
        browser.move_up()
        assert browser.selected == 0
        for _ in range(10):
            browser.move_down()
        assert browser.selected == len(browser.entries) - 1

    def test_toggle_hidden(self, local_tree: Path) -> None:
        browser = LocalBrowser(local_tree)
        browser.toggle_hidden()
        assert browser.entries[0].name == ".cache"


class TestRemoteBrowser:
    def test_opens_at_home_by_default(
        self, remote_root: Path, fake_dialer, alice: Profile
    ) -> None:
        (remote_root / "home" / "alice" / "projects").mkdir()
        browser = RemoteBrowser(RealSshBackend(fake_dialer), alice)
        browser.open()
        assert browser.loading
        _settle(browser)
        assert browser.cwd == "/home/alice"
        assert [e.name for e in browser.entries] == ["projects"]
        assert browser.error is None

    def test_remembered_dir_wins(self, remote_root: Path, fake_dialer, alice: Profile) -> None:
        (remote_root / "srv" / "www").mkdir(parents=True)
        alice.last_remote_dir = "/srv"
        browser = RemoteBrowser(RealSshBackend(fake_dialer), alice)
        browser.open()
        _settle(browser)
        assert browser.cwd == "/srv"

    def test_falls_back_to_remote_home(self, remote_root: Path, fake_dialer) -> None:
        """A missing /home/<user> falls back to the server's login directory."""
        bob = Profile(user="bob", host="h1", auth=PasswordAuth("pw"))
        browser = RemoteBrowser(RealSshBackend(fake_dialer), bob)
        browser.open()
        _settle(browser)
        assert browser.cwd == "/home/alice"
        assert browser.error is None

    def test_falls_back_to_root(self, remote_root: Path, alice: Profile) -> None:
        backend = MagicMock()
        root_listing = [DirEntry("etc", "/etc", True)]

        def list_directory(profile, remote_dir, only_dirs=False, show_hidden=False, session=None):
            if remote_dir == "/":
                return root_listing
            raise SFTPError(f"read remote dir {remote_dir}: no such file")

        backend.list_directory.side_effect = list_directory
        backend.remote_home_dir.side_effect = SFTPError("resolve remote home: denied")
        browser = RemoteBrowser(backend, alice)
        browser.open()
        _settle(browser)
        assert browser.cwd == "/"
        assert browser.entries == root_listing

    def test_error_when_everything_fails(self, alice: Profile) -> None:
        backend = MagicMock()
        backend.list_directory.side_effect = SFTPError("read remote dir: gone")
        backend.remote_home_dir.return_value = None
        browser = RemoteBrowser(backend, alice)
        browser.open("/x")
        _settle(browser)
        assert browser.error == "read remote dir: gone"
        assert browser.entries == []
        assert browser.cwd == "/x"

    def test_descend_and_ascend(self, remote_root: Path, fake_dialer, alice: Profile) -> None:
        (remote_root / "home" / "alice" / "projects" / "one").mkdir(parents=True)
        browser = RemoteBrowser(RealSshBackend(fake_dialer), alice)
        browser.open()
        _settle(browser)
        assert browser.descend() is None
        _settle(browser)
        assert browser.cwd == "/home/alice/projects"
        browser.ascend()
        _settle(browser)
        assert browser.cwd == "/home/alice"

    def test_only_dirs_no_subfolders_notice(
        self, remote_root: Path, fake_dialer, fake_session, alice: Profile
    ) -> None:
        """Descending into a leaf directory in only-dirs mode yields the advisory."""
        (remote_root / "home" / "alice" / "leaf").mkdir()
        (remote_root / "home" / "alice" / "leaf" / "file.txt").write_text("x")
        browser = RemoteBrowser(
            RealSshBackend(fake_dialer), alice, only_dirs=True, session=fake_session
        )
        browser.open()
        _settle(browser)
        assert [e.name for e in browser.entries] == ["leaf"]
        notice = browser.descend()
        assert notice is not None and notice.title == NOTICE_NO_SUBFOLDERS_TITLE
        assert browser.cwd == "/home/alice"
        assert not browser.loading
        assert fake_dialer.calls == []

    def test_ascend_at_root_is_noop(self, alice: Profile) -> None:
        backend = MagicMock()
        backend.list_directory.return_value = []
        browser = RemoteBrowser(backend, alice)
        browser.open("/")
        _settle(browser)
        calls = backend.list_directory.call_count
        browser.ascend()
        assert backend.list_directory.call_count == calls

    def test_superseded_listing_is_dropped(self, alice: Profile) -> None:
        backend = MagicMock()
        backend.list_directory.side_effect = lambda profile, d, *a, **k: [
            DirEntry(d.strip("/") or "root", d, True)
        ]
        browser = RemoteBrowser(backend, alice)
        browser.open("/first")
        assert browser.wait(5)
        browser.open("/second")
        _settle(browser)
        assert browser.cwd == "/second"
        assert [e.name for e in browser.entries] == ["second"]
