"""Tests for ssh_client/utils/path_helpers.py."""

from __future__ import annotations

from pathlib import Path

import pytest

from ssh_client.utils.path_helpers import (
    expand_tilde,
    human_readable_size,
    join_remote,
    parent_remote_dir,
    remote_basename,
)


class TestParentRemoteDir:
    @pytest.mark.parametrize(
        "path, parent",
        [("/x/y/", "/x"), ("/x", "/"), ("/", "/"), ("x", "/"), ("/a/b/c", "/a/b")],
    )
    def test_parent(self, path: str, parent: str) -> None:
        assert parent_remote_dir(path) == parent


class TestJoinRemote:
    def test_trailing_slash_trimmed(self) -> None:
        assert join_remote("/home/bob/", "inbox") == "/home/bob/inbox"

    def test_root(self) -> None:
        assert join_remote("/", "etc") == "/etc"


class TestBasename:
    def test_trailing_slash(self) -> None:
        assert remote_basename("/srv/data/") == "data"
        assert remote_basename("/") == ""


class TestExpandTilde:
    def test_home_prefix(self) -> None:
        assert expand_tilde("~/.ssh/id_ed25519") == Path.home() / ".ssh" / "id_ed25519"

    def test_other_paths_untouched(self) -> None:
        assert expand_tilde("/etc/hosts") == Path("/etc/hosts")
        assert expand_tilde("~bob/x") == Path("~bob/x")


class TestHumanReadableSize:
    def test_bytes(self) -> None:
        assert human_readable_size(512) == "512 B"

    def test_megabytes(self) -> None:
        assert human_readable_size(3 * 1024 * 1024) == "3.0 MB"

    def test_negative(self) -> None:
        assert human_readable_size(-5) == "0 B"
