"""Tests for ssh_client/config.py — ProfileStore and config paths."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from ssh_client.config import (
    CONFIG_DIR_ENV,
    ProfileStore,
    get_config_dir,
    get_config_path,
    get_log_path,
)
from ssh_client.errors import (
    InvalidStateError,
    MasterMismatchError,
    MissingFieldError,
    StoreIOError,
    ValidationError,
)
from ssh_client.models import (
    HistoryEntry,
    HistoryState,
    PasswordAuth,
    PrivateKeyAuth,
    Profile,
    StoreFile,
)


def _reload(store: ProfileStore, password: str = "master") -> ProfileStore:
    fresh = ProfileStore(store.path)
    fresh.unlock(password)
    return fresh


def _profile(user: str, history: list[int] | None = None, **kwargs) -> Profile:
    return Profile(
        user=user,
        host="h.example",
        auth=kwargs.pop("auth", PasswordAuth(f"{user}-pw")),
        history=[HistoryEntry(ts) for ts in (history or [])],
        **kwargs,
    )


class TestPaths:
    def test_env_override(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        monkeypatch.setenv(CONFIG_DIR_ENV, str(tmp_path / "custom"))
        assert get_config_dir() == tmp_path / "custom"

    def test_store_and_log_share_directory(self, tmp_path: Path) -> None:
        assert get_config_path(tmp_path) == tmp_path / "config.json"
        assert get_log_path(tmp_path) == tmp_path / "ssh-client.log"


class TestLifecycle:
    def test_new_store_writes_verifier_and_no_profiles(self, tmp_path: Path) -> None:
        """Initialising an empty store writes the salt and verifier."""
        path = tmp_path / "nested" / "config.json"
        store = ProfileStore(path)
        assert not store.exists()
        store.initialise("pw", "pw")
        document = json.loads(path.read_text(encoding="utf-8"))
        assert document["master"]["salt_b64"]
        assert document["connections"] == []
        assert document["last_local_dir"] is None

    def test_initialise_rejects_empty_and_mismatch(self, tmp_path: Path) -> None:
        store = ProfileStore(tmp_path / "config.json")
        with pytest.raises(MissingFieldError):
            store.initialise("", "")
        with pytest.raises(ValidationError, match="do not match"):
            store.initialise("a", "b")
        assert not store.exists()

    def test_create_and_verify(self, tmp_path: Path) -> None:
        """Wrong master is rejected; the right one decrypts the saved profile."""
        store = ProfileStore(tmp_path / "config.json")
        store.initialise("s3cret", "s3cret")
        store.upsert(Profile("alice", "h.example", PasswordAuth("p")))

        restarted = ProfileStore(tmp_path / "config.json")
        with pytest.raises(MasterMismatchError):
            restarted.unlock("bad")
        assert not restarted.is_unlocked
        restarted.unlock("s3cret")
        profiles = restarted.profiles
        assert [(p.user, p.host) for p in profiles] == [("alice", "h.example")]
        assert profiles[0].auth == PasswordAuth("p")

    def test_secrets_not_stored_in_plaintext(self, store: ProfileStore) -> None:
        store.upsert(_profile("alice", auth=PasswordAuth("very-secret-pw")))
        assert "very-secret-pw" not in store.path.read_text(encoding="utf-8")

    def test_locked_store_refuses_save(self, tmp_path: Path) -> None:
        with pytest.raises(InvalidStateError, match="locked"):
            ProfileStore(tmp_path / "config.json").save()

    def test_corrupt_file_raises_store_error(self, tmp_path: Path) -> None:
        path = tmp_path / "config.json"
        path.write_text("{ not json", encoding="utf-8")
        with pytest.raises(StoreIOError, match="Corrupt"):
            ProfileStore(path).unlock("x")


class TestPersistence:
    def test_document_roundtrip(self, store: ProfileStore) -> None:
        """The written file parses and re-serialises to the same document."""
        store.upsert(_profile("a", [5], last_remote_dir="/srv"))
        store.upsert(_profile("b", auth=PrivateKeyAuth("/k", "pp")))
        store.remember_local_dir(Path("/tmp/work"))
        raw = json.loads(store.path.read_text(encoding="utf-8"))
        assert StoreFile.from_dict(raw).to_dict() == raw
        assert raw["last_local_dir"] == str(Path("/tmp/work"))

    def test_reload_preserves_identities_and_secrets(self, store: ProfileStore) -> None:
        store.upsert(_profile("a", [5]))
        store.upsert(_profile("b", auth=PrivateKeyAuth("/k", "pp")))
        store.upsert(_profile("c", auth=PrivateKeyAuth("/k2")))
        store.delete(store.index_of("c@h.example|pk:/k2"))

        reloaded = _reload(store)
        assert {p.key: p.auth for p in reloaded.profiles} == {p.key: p.auth for p in store.profiles}

    def test_atomic_write_leaves_no_temp_file(self, store: ProfileStore) -> None:
        store.upsert(_profile("a"))
        assert not store.path.with_suffix(".tmp").exists()
        assert store.path.read_text(encoding="utf-8").startswith("{\n  ")

    def test_failed_write_keeps_memory_state(self, store: ProfileStore) -> None:
        """A save failure raises StoreIOError; the next good save persists memory."""
        blocker = store.path.with_suffix(".tmp")
        blocker.mkdir()
        with pytest.raises(StoreIOError):
            store.upsert(_profile("a"))
        assert [p.user for p in store.profiles] == ["a"]

        blocker.rmdir()
        store.save()
        assert [p.user for p in _reload(store).profiles] == ["a"]

    def test_last_local_dir_persisted(self, store: ProfileStore, tmp_path: Path) -> None:
        store.remember_local_dir(tmp_path)
        assert _reload(store).last_local_dir == tmp_path


class TestOrdering:
    def test_history_ordering_on_load(self, store: ProfileStore) -> None:
        """Profiles load newest-first with history-less ones last."""
        store.upsert(_profile("p1", [10]))
        store.upsert(_profile("p2"))
        store.upsert(_profile("p3", [20]))
        document = json.loads(store.path.read_text(encoding="utf-8"))
        document["connections"].reverse()
        store.path.write_text(json.dumps(document), encoding="utf-8")

        assert [p.user for p in _reload(store).profiles] == ["p3", "p1", "p2"]

    def test_legacy_history_loads_as_successes(self, store: ProfileStore) -> None:
        store.upsert(_profile("p1", [7]))
        document = json.loads(store.path.read_text(encoding="utf-8"))
        document["connections"][0]["history"] = [1, 2]
        store.path.write_text(json.dumps(document), encoding="utf-8")

        history = _reload(store).profiles[0].history
        assert history == [HistoryEntry(1, HistoryState.SUCCESS), HistoryEntry(2, HistoryState.SUCCESS)]

    def test_sort_is_stable_for_ties(self, store: ProfileStore) -> None:
        store.upsert(_profile("x"))
        store.upsert(_profile("y"))
        assert [p.user for p in store.profiles] == ["x", "y"]

    def test_epoch_zero_history_ranks_above_none(self, store: ProfileStore) -> None:
        """A legacy ``[0]`` history still sorts ahead of a profile with no history."""
        store.upsert(_profile("fresh"))
        store.upsert(_profile("legacy", [0]))
        assert [p.user for p in store.profiles] == ["legacy", "fresh"]
        assert [p.user for p in _reload(store).profiles] == ["legacy", "fresh"]


class TestMutations:
    def test_upsert_merges_identity(self, store: ProfileStore) -> None:
        """Same user/host/auth kind replaces the stored profile but keeps its history."""
        store.upsert(_profile("a", [3], last_remote_dir="/data"))
        store.upsert(Profile("a", "h.example", PasswordAuth("new-pw"), name="renamed"))
        profiles = store.profiles
        assert len(profiles) == 1
        assert profiles[0].name == "renamed"
        assert profiles[0].auth == PasswordAuth("new-pw")
        assert profiles[0].history == [HistoryEntry(3)]
        assert profiles[0].last_remote_dir == "/data"

    def test_update_keeps_history_and_remote_dir(self, store: ProfileStore) -> None:
        store.upsert(_profile("a", [3], last_remote_dir="/data"))
        index = store.update(0, Profile("a", "other.example", PasswordAuth("x")))
        edited = store.get(index)
        assert edited is not None
        assert edited.host == "other.example"
        assert edited.history == [HistoryEntry(3)]
        assert edited.last_remote_dir == "/data"

    def test_record_attempt_appends_one_entry(self, store: ProfileStore) -> None:
        store.upsert(_profile("a", [3]))
        assert store.record_attempt(_profile("a"), HistoryState.FAILURE) is True
        history = _reload(store).profiles[0].history
        assert len(history) == 2
        assert history[-1].state is HistoryState.FAILURE

    def test_success_for_unknown_identity_adds_profile(self, store: ProfileStore) -> None:
        assert store.record_attempt(_profile("new"), HistoryState.SUCCESS) is True
        assert [p.user for p in store.profiles] == ["new"]
        assert len(store.profiles[0].history) == 1

    def test_failure_for_unknown_identity_is_dropped(self, store: ProfileStore) -> None:
        assert store.record_attempt(_profile("ghost"), HistoryState.FAILURE) is False
        assert len(store) == 0

    def test_delete_out_of_range(self, store: ProfileStore) -> None:
        with pytest.raises(IndexError):
            store.delete(0)

    def test_remember_remote_dir(self, store: ProfileStore) -> None:
        store.upsert(_profile("a"))
        store.remember_remote_dir(_profile("a"), "/var/log")
        assert _reload(store).profiles[0].last_remote_dir == "/var/log"


class TestChangeMaster:
    def test_rotation_reencrypts_everything(self, tmp_path: Path) -> None:
        store = ProfileStore(tmp_path / "config.json")
        store.initialise("old", "old")
        originals = [
            _profile("a", auth=PasswordAuth("pa")),
            _profile("b", auth=PrivateKeyAuth("/k", "pb")),
            _profile("c", auth=PrivateKeyAuth("/k3")),
        ]
        for profile in originals:
            store.upsert(profile)

        store.change_master("old", "new", "new")

        with pytest.raises(MasterMismatchError):
            _reload(store, "old")
        reloaded = _reload(store, "new")
        assert {p.key: p.auth for p in reloaded.profiles} == {p.key: p.auth for p in originals}

    @pytest.mark.parametrize(
        "current, new, confirm, error, message",
        [
            ("", "n", "n", MissingFieldError, "Current password"),
            ("master", "", "", MissingFieldError, "New password"),
            ("master", "n", "m", ValidationError, "does not match"),
            ("wrong", "n", "n", MasterMismatchError, "incorrect"),
        ],
    )
    def test_validation_order(
        self,
        store: ProfileStore,
        current: str,
        new: str,
        confirm: str,
        error: type,
        message: str,
    ) -> None:
        before = store.path.read_text(encoding="utf-8")
        with pytest.raises(error, match=message):
            store.change_master(current, new, confirm)
        assert store.path.read_text(encoding="utf-8") == before
        _reload(store, "master")
