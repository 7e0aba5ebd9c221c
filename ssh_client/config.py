"""Encrypted profile store and config-directory resolution for ssh-client.

The store is one JSON document under the per-user config directory.  It
holds the master verifier, every saved profile (secrets encrypted with the
master key) and the last local directory used by the browsers.  Each
mutation re-sorts the profiles by recency and rewrites the whole file
atomically (write-to-temp, then rename).
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path

from ssh_client.crypto import create_master, decrypt_string, encrypt_string, verify_master
from ssh_client.errors import (
    InvalidStateError,
    MissingFieldError,
    StoreIOError,
    ValidationError,
)
from ssh_client.models import (
    HistoryEntry,
    HistoryState,
    MasterConfig,
    PasswordAuth,
    PrivateKeyAuth,
    Profile,
    StoredKeyAuth,
    StoredPasswordAuth,
    StoredProfile,
    StoreFile,
    now_epoch,
    same_identity,
)

logger = logging.getLogger(__name__)

APP_DIR_NAME = "ssh-client"
STORE_FILE_NAME = "config.json"
LOG_FILE_NAME = "ssh-client.log"
CONFIG_DIR_ENV = "SSH_CLIENT_CONFIG_DIR"

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------


def get_config_dir() -> Path | None:
    """Return the per-user config directory for ssh-client.

    ``$SSH_CLIENT_CONFIG_DIR`` wins; otherwise ``%APPDATA%`` on Windows and
    ``$XDG_CONFIG_HOME`` or ``~/.config`` elsewhere.  Returns ``None`` when
    no base directory can be derived.
    """
    override = os.environ.get(CONFIG_DIR_ENV)
    if override:
        return Path(override).expanduser()
    if os.name == "nt":
        appdata = os.environ.get("APPDATA")
        if appdata:
            return Path(appdata) / APP_DIR_NAME
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / APP_DIR_NAME
    try:
        return Path.home() / ".config" / APP_DIR_NAME
    except RuntimeError:
        return None


def get_config_path(config_dir: Path | None = None) -> Path:
    """Return the store file path, falling back to the working directory."""
    base = config_dir or get_config_dir()
    if base is None:
        return Path("ssh-client-config.json")
    return base / STORE_FILE_NAME


def get_log_path(config_dir: Path | None = None) -> Path:
    """Return the log file path, kept next to the store file."""
    return get_config_path(config_dir).with_name(LOG_FILE_NAME)


# ---------------------------------------------------------------------------
# ProfileStore
# ---------------------------------------------------------------------------


class ProfileStore:
    """Owns the decrypted profile list and persists it under the master key.

    Thread-safety: the store belongs to the foreground thread.  Workers get
    :class:`Profile` copies and never call into the store.

    Failure policy: a failed save raises :exc:`StoreIOError`, but the
    in-memory state is kept; the next successful save persists it.
    """

    def __init__(self, path: Path | None = None) -> None:
        """Bind to *path* (default: the per-user store path). Does not read yet."""
        self._path = path or get_config_path()
        self._master: MasterConfig | None = None
        self._key: bytes | None = None
        self._profiles: list[Profile] = []
        self._last_local_dir: str | None = None

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _atomic_write(self, path: Path, data: dict) -> None:
        """Serialise *data* as pretty JSON and write atomically to *path*."""
        tmp = path.with_suffix(".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
            tmp.replace(path)
        except OSError as exc:
            logger.error("Failed to write %s: %s", path, exc)
            raise StoreIOError(f"Failed to write {path}: {exc}") from exc

    def _read_document(self) -> StoreFile:
        """Read and parse the store file.

        Raises:
            StoreIOError: On read errors, invalid JSON or an invalid schema.
        """
        try:
            raw = self._path.read_text(encoding="utf-8")
        except OSError as exc:
            raise StoreIOError(f"Failed to read {self._path}: {exc}") from exc
        try:
            loaded = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise StoreIOError(f"Corrupt store {self._path}: {exc}") from exc
        return StoreFile.from_dict(loaded)

    def _require_key(self) -> tuple[MasterConfig, bytes]:
        if self._master is None or self._key is None:
            raise InvalidStateError("Profile store is locked")
        return self._master, self._key

    def _encrypt_profile(self, profile: Profile, key: bytes) -> StoredProfile:
        if isinstance(profile.auth, PasswordAuth):
            auth = StoredPasswordAuth(password=encrypt_string(profile.auth.password, key))
        else:
            secret = profile.auth.passphrase
            auth = StoredKeyAuth(
                path=profile.auth.path,
                password=encrypt_string(secret, key) if secret is not None else None,
            )
        return StoredProfile(
            user=profile.user,
            host=profile.host,
            auth=auth,
            name=profile.name,
            history=list(profile.history),
            last_remote_dir=profile.last_remote_dir,
        )

    def _decrypt_profile(self, stored: StoredProfile, key: bytes) -> Profile:
        if isinstance(stored.auth, StoredPasswordAuth):
            auth = PasswordAuth(password=decrypt_string(stored.auth.password, key))
        else:
            secret = stored.auth.password
            auth = PrivateKeyAuth(
                path=stored.auth.path,
                passphrase=decrypt_string(secret, key) if secret is not None else None,
            )
        return Profile(
            user=stored.user,
            host=stored.host,
            auth=auth,
            name=stored.name,
            history=list(stored.history),
            last_remote_dir=stored.last_remote_dir,
        )

    def _build_document(self, master: MasterConfig, key: bytes) -> StoreFile:
        return StoreFile(
            master=master,
            connections=[self._encrypt_profile(p, key) for p in self._profiles],
            last_local_dir=self._last_local_dir,
        )

    def _sort(self) -> None:
        """Order profiles by most recent history entry, newest first (stable)."""
        self._profiles.sort(
            key=lambda p: (p.last_seen is not None, p.last_seen or 0), reverse=True
        )

    def _find(self, profile: Profile) -> int | None:
        for i, existing in enumerate(self._profiles):
            if same_identity(existing, profile):
                return i
        return None

    def _commit(self) -> None:
        """Re-sort and persist the current state."""
        self._sort()
        self.save()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def path(self) -> Path:
        """Location of the store file."""
        return self._path

    def exists(self) -> bool:
        """Return True if a store file is present on disk."""
        return self._path.exists()

    @property
    def is_unlocked(self) -> bool:
        return self._key is not None

    def initialise(self, password: str, confirm: str) -> None:
        """Create an empty store protected by *password*.

        Raises:
            MissingFieldError: If *password* is empty.
            ValidationError: If *confirm* differs from *password*.
            StoreIOError: If the new store cannot be written.
        """
        if not password:
            raise MissingFieldError("Master password is required")
        if password != confirm:
            raise ValidationError("Passwords do not match")
        master, key = create_master(password)
        self._master = master
        self._key = key
        self._profiles = []
        self._last_local_dir = None
        self.save()
        logger.info("Created new profile store at %s", self._path)

    def unlock(self, password: str) -> None:
        """Verify *password* against the stored verifier and decrypt all profiles.

        Raises:
            StoreIOError: If the file cannot be read or parsed.
            MasterMismatchError: If *password* is wrong.
            CryptoError: If a profile secret fails to decrypt.
        """
        document = self._read_document()
        key = verify_master(document.master, password)
        profiles = [self._decrypt_profile(stored, key) for stored in document.connections]
        self._master = document.master
        self._key = key
        self._profiles = profiles
        self._last_local_dir = document.last_local_dir
        self._sort()
        logger.info("Unlocked profile store with %d profile(s)", len(profiles))

    def snapshot(self) -> StoreFile:
        """Return the document that :meth:`save` would write."""
        master, key = self._require_key()
        return self._build_document(master, key)

    def save(self) -> None:
        """Encrypt every profile and rewrite the store file.

        Raises:
            StoreIOError: If the file cannot be written.
        """
        self._atomic_write(self._path, self.snapshot().to_dict())
        logger.debug("Saved %d profile(s) to %s", len(self._profiles), self._path)

    # ------------------------------------------------------------------
    # Profile access
    # ------------------------------------------------------------------

    @property
    def profiles(self) -> list[Profile]:
        """Return copies of all profiles in display order."""
        return [p.copy() for p in self._profiles]

    def __len__(self) -> int:
        return len(self._profiles)

    def get(self, index: int) -> Profile | None:
        """Return a copy of the profile at *index*, or ``None`` if out of range."""
        if 0 <= index < len(self._profiles):
            return self._profiles[index].copy()
        return None

    def index_of(self, key: str) -> int | None:
        """Return the position of the profile whose identity key is *key*."""
        for i, profile in enumerate(self._profiles):
            if profile.key == key:
                return i
        return None

    def find(self, profile: Profile) -> Profile | None:
        """Return a copy of the stored profile with the same identity as *profile*."""
        index = self._find(profile)
        return self._profiles[index].copy() if index is not None else None

    @property
    def last_local_dir(self) -> Path | None:
        return Path(self._last_local_dir) if self._last_local_dir else None

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def upsert(self, profile: Profile) -> int:
        """Insert *profile*, merging it into an existing one with the same identity.

        Returns the profile's index after re-sorting.
        """
        incoming = profile.copy()
        index = self._find(incoming)
        if index is None:
            self._profiles.append(incoming)
            logger.info("Profile added: %s", incoming.label)
        else:
            existing = self._profiles[index]
            if not incoming.history:
                incoming.history = list(existing.history)
            if incoming.last_remote_dir is None:
                incoming.last_remote_dir = existing.last_remote_dir
            self._profiles[index] = incoming
            logger.info("Profile updated: %s", incoming.label)
        self._commit()
        return self.index_of(incoming.key)  # type: ignore[return-value]

    def update(self, index: int, profile: Profile) -> int:
        """Replace the profile at *index* with the edited *profile*.

        History and the remembered remote directory are carried over from
        the profile being edited.  Returns the new index after re-sorting.

        Raises:
            IndexError: If *index* is out of range.
        """
        existing = self._profiles.pop(index)
        edited = profile.copy()
        edited.history = list(existing.history)
        edited.last_remote_dir = existing.last_remote_dir
        return self.upsert(edited)

    def delete(self, index: int) -> Profile:
        """Remove and return the profile at *index*.

        Raises:
            IndexError: If *index* is out of range.
        """
        removed = self._profiles.pop(index)
        self._commit()
        logger.info("Profile deleted: %s", removed.label)
        return removed

    def record_attempt(self, profile: Profile, state: HistoryState) -> bool:
        """Append a ``{now, state}`` history entry for *profile* and save.

        A successful attempt for an identity that is not stored yet adds the
        profile; a failed one for an unknown identity is not recorded.
        Returns True if an entry was written.
        """
        entry = HistoryEntry(ts=now_epoch(), state=state)
        index = self._find(profile)
        if index is None:
            if state is not HistoryState.SUCCESS:
                return False
            added = profile.copy()
            added.history.append(entry)
            self._profiles.append(added)
        else:
            self._profiles[index].history.append(entry)
        self._commit()
        return True

    def remember_remote_dir(self, profile: Profile, remote_dir: str) -> None:
        """Store *remote_dir* as the last directory browsed for *profile*."""
        index = self._find(profile)
        if index is None:
            return
        self._profiles[index].last_remote_dir = remote_dir
        self._commit()

    def remember_local_dir(self, local_dir: Path) -> None:
        """Store *local_dir* as the last local directory used."""
        self._last_local_dir = str(local_dir)
        self._commit()

    def change_master(self, current: str, new: str, confirm: str) -> None:
        """Re-encrypt every secret under a key derived from *new*.

        The new document is written before the in-memory key is swapped, so
        a failed write leaves the old master in force.

        Raises:
            MissingFieldError: If *current* or *new* is empty.
            ValidationError: If *confirm* differs from *new*.
            MasterMismatchError: If *current* is not the master password.
            StoreIOError: If the re-encrypted store cannot be written.
        """
        master, _ = self._require_key()
        if not current:
            raise MissingFieldError("Current password is required")
        if not new:
            raise MissingFieldError("New password is required")
        if new != confirm:
            raise ValidationError("New password confirmation does not match")
        verify_master(master, current)

        new_master, new_key = create_master(new)
        self._atomic_write(self._path, self._build_document(new_master, new_key).to_dict())
        self._master = new_master
        self._key = new_key
        logger.info("Master password changed")
