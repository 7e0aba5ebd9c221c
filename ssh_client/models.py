"""Data model for ssh-client.

Holds the in-memory profile types, their on-disk (encrypted) counterparts and
the small value types shared by the browsers and the transfer engine.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, auto
from pathlib import Path
from typing import Any, Union

from ssh_client.errors import MissingFieldError, StoreIOError

U64_MAX = 2**64 - 1


def saturating_add(left: int, right: int) -> int:
    """Add two byte counts, clamping at the unsigned 64-bit maximum."""
    return min(U64_MAX, left + right)


def now_epoch() -> int:
    """Return the current time as whole seconds since the epoch."""
    return int(time.time())


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------


class HistoryState(str, Enum):
    """Outcome of one connect attempt."""

    SUCCESS = "Success"
    FAILURE = "Failure"


@dataclass(frozen=True)
class HistoryEntry:
    """One connect attempt: epoch seconds plus outcome."""

    ts: int
    state: HistoryState = HistoryState.SUCCESS


def encode_history(history: list[HistoryEntry]) -> list[dict[str, Any]]:
    """Serialise *history* to the structured JSON form."""
    return [{"ts": entry.ts, "state": entry.state.value} for entry in history]


def decode_history(raw: Any) -> list[HistoryEntry]:
    """Parse a stored history list.

    Accepts the structured form (``{"ts": .., "state": ..}``) as well as the
    legacy flat list of epoch integers, each of which becomes a success.

    Raises:
        StoreIOError: If an item has neither shape.
    """
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise StoreIOError(f"history must be a list, got {type(raw).__name__}")
    entries: list[HistoryEntry] = []
    for item in raw:
        if isinstance(item, int) and not isinstance(item, bool):
            entries.append(HistoryEntry(ts=item, state=HistoryState.SUCCESS))
        elif isinstance(item, dict):
            try:
                entries.append(
                    HistoryEntry(ts=int(item["ts"]), state=HistoryState(item["state"]))
                )
            except (KeyError, TypeError, ValueError) as exc:
                raise StoreIOError(f"Invalid history entry {item!r}: {exc}") from exc
        else:
            raise StoreIOError(f"Invalid history entry {item!r}")
    return entries


def format_history_entry(entry: HistoryEntry) -> str:
    """Render *entry* as ``YYYY-MM-DD HH:MM:SS | success`` in local time."""
    stamp = datetime.fromtimestamp(entry.ts).strftime("%Y-%m-%d %H:%M:%S")
    label = "success" if entry.state is HistoryState.SUCCESS else "failed"
    return f"{stamp} | {label}"


# ---------------------------------------------------------------------------
# Profiles
# ---------------------------------------------------------------------------


class AuthKind(Enum):
    """Authentication choices offered by the profile form."""

    PASSWORD = auto()
    PRIVATE_KEY = auto()
    PRIVATE_KEY_WITH_PASSPHRASE = auto()


@dataclass(frozen=True)
class PasswordAuth:
    """Password authentication."""

    password: str


@dataclass(frozen=True)
class PrivateKeyAuth:
    """Public-key authentication with an optional key passphrase."""

    path: str
    passphrase: str | None = None


Auth = Union[PasswordAuth, PrivateKeyAuth]


@dataclass
class Profile:
    """A saved connection identity together with its credentials."""

    user: str
    host: str
    auth: Auth
    name: str = ""
    history: list[HistoryEntry] = field(default_factory=list)
    last_remote_dir: str | None = None

    @property
    def label(self) -> str:
        """Display name: the profile name, or the host when the name is blank."""
        return self.name if self.name.strip() else self.host

    @property
    def key(self) -> str:
        """Identity key used to deduplicate profiles and remember errors."""
        return connection_key(self)

    @property
    def last_seen(self) -> int | None:
        """Most recent history timestamp, or ``None`` without history."""
        if not self.history:
            return None
        return max(entry.ts for entry in self.history)

    def copy(self) -> Profile:
        """Return a copy whose history list is independent of this one."""
        return Profile(
            user=self.user,
            host=self.host,
            auth=self.auth,
            name=self.name,
            history=list(self.history),
            last_remote_dir=self.last_remote_dir,
        )


def same_identity(left: Profile, right: Profile) -> bool:
    """Return True when both profiles name the same identity.

    User, host, auth kind and key path are compared; secrets are not.
    """
    if left.user != right.user or left.host != right.host:
        return False
    if isinstance(left.auth, PasswordAuth) and isinstance(right.auth, PasswordAuth):
        return True
    if isinstance(left.auth, PrivateKeyAuth) and isinstance(right.auth, PrivateKeyAuth):
        return left.auth.path == right.auth.path
    return False


def connection_key(profile: Profile) -> str:
    """Return ``user@host|pw`` or ``user@host|pk:<path>`` for *profile*."""
    if isinstance(profile.auth, PrivateKeyAuth):
        auth_key = f"pk:{profile.auth.path}"
    else:
        auth_key = "pw"
    return f"{profile.user}@{profile.host}|{auth_key}"


def build_profile(
    name: str,
    user: str,
    host: str,
    auth_kind: AuthKind,
    key_path: str = "",
    password: str = "",
) -> Profile:
    """Build a :class:`Profile` from raw form input.

    Name, user, host and key path are trimmed; passwords are taken verbatim.

    Raises:
        MissingFieldError: If a field required by *auth_kind* is empty.
    """
    if not user.strip():
        raise MissingFieldError("User is required")
    if not host.strip():
        raise MissingFieldError("Host is required")

    auth: Auth
    if auth_kind is AuthKind.PASSWORD:
        if not password:
            raise MissingFieldError("Password is required")
        auth = PasswordAuth(password=password)
    else:
        if not key_path.strip():
            raise MissingFieldError("Private key path is required")
        if auth_kind is AuthKind.PRIVATE_KEY_WITH_PASSPHRASE:
            if not password:
                raise MissingFieldError("Key password is required")
            auth = PrivateKeyAuth(path=key_path.strip(), passphrase=password)
        else:
            auth = PrivateKeyAuth(path=key_path.strip())

    return Profile(user=user.strip(), host=host.strip(), auth=auth, name=name.strip())


@dataclass(frozen=True)
class KeyCandidate:
    """A private key path (and passphrase) already used by a saved profile."""

    path: str
    passphrase: str | None = None


def key_candidates(profiles: list[Profile]) -> list[KeyCandidate]:
    """Return distinct private-key paths used by *profiles*, first use wins."""
    seen: set[str] = set()
    candidates: list[KeyCandidate] = []
    for profile in profiles:
        if isinstance(profile.auth, PrivateKeyAuth) and profile.auth.path not in seen:
            seen.add(profile.auth.path)
            candidates.append(KeyCandidate(profile.auth.path, profile.auth.passphrase))
    return candidates


# ---------------------------------------------------------------------------
# On-disk document
# ---------------------------------------------------------------------------


def _require(raw: Any, key: str, kind: type | tuple[type, ...]) -> Any:
    """Return ``raw[key]`` if it is an instance of *kind*, else raise StoreIOError."""
    if not isinstance(raw, dict):
        raise StoreIOError(f"Expected a JSON object, got {type(raw).__name__}")
    if key not in raw:
        raise StoreIOError(f"Missing field {key!r}")
    value = raw[key]
    if not isinstance(value, kind):
        raise StoreIOError(f"Field {key!r} has unexpected type {type(value).__name__}")
    return value


@dataclass(frozen=True)
class EncryptedBlob:
    """Base64 nonce and base64 ciphertext-with-tag."""

    nonce: str
    ciphertext: str

    def to_dict(self) -> dict[str, str]:
        return {"nonce": self.nonce, "ciphertext": self.ciphertext}

    @classmethod
    def from_dict(cls, raw: Any) -> EncryptedBlob:
        return cls(
            nonce=_require(raw, "nonce", str),
            ciphertext=_require(raw, "ciphertext", str),
        )


@dataclass(frozen=True)
class MasterConfig:
    """Salt for key derivation plus the encrypted verifier string."""

    salt_b64: str
    check: EncryptedBlob

    def to_dict(self) -> dict[str, Any]:
        return {"salt_b64": self.salt_b64, "check": self.check.to_dict()}

    @classmethod
    def from_dict(cls, raw: Any) -> MasterConfig:
        return cls(
            salt_b64=_require(raw, "salt_b64", str),
            check=EncryptedBlob.from_dict(_require(raw, "check", dict)),
        )


@dataclass(frozen=True)
class StoredPasswordAuth:
    password: EncryptedBlob


@dataclass(frozen=True)
class StoredKeyAuth:
    path: str
    password: EncryptedBlob | None = None


StoredAuth = Union[StoredPasswordAuth, StoredKeyAuth]


def _auth_to_dict(auth: StoredAuth) -> dict[str, Any]:
    if isinstance(auth, StoredPasswordAuth):
        return {"Password": {"password": auth.password.to_dict()}}
    return {
        "PrivateKey": {
            "path": auth.path,
            "password": auth.password.to_dict() if auth.password else None,
        }
    }


def _auth_from_dict(raw: Any) -> StoredAuth:
    if isinstance(raw, dict) and "Password" in raw:
        body = _require(raw, "Password", dict)
        return StoredPasswordAuth(password=EncryptedBlob.from_dict(_require(body, "password", dict)))
    if isinstance(raw, dict) and "PrivateKey" in raw:
        body = _require(raw, "PrivateKey", dict)
        secret = body.get("password")
        return StoredKeyAuth(
            path=_require(body, "path", str),
            password=EncryptedBlob.from_dict(secret) if secret is not None else None,
        )
    raise StoreIOError(f"Unknown auth variant: {raw!r}")


@dataclass
class StoredProfile:
    """A profile as persisted: identical to :class:`Profile` but secrets encrypted."""

    user: str
    host: str
    auth: StoredAuth
    name: str = ""
    history: list[HistoryEntry] = field(default_factory=list)
    last_remote_dir: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "user": self.user,
            "host": self.host,
            "auth": _auth_to_dict(self.auth),
            "history": encode_history(self.history),
            "last_remote_dir": self.last_remote_dir,
        }

    @classmethod
    def from_dict(cls, raw: Any) -> StoredProfile:
        last_dir = raw.get("last_remote_dir") if isinstance(raw, dict) else None
        if last_dir is not None and not isinstance(last_dir, str):
            raise StoreIOError("Field 'last_remote_dir' must be a string or null")
        name = raw.get("name", "") if isinstance(raw, dict) else ""
        return cls(
            user=_require(raw, "user", str),
            host=_require(raw, "host", str),
            auth=_auth_from_dict(_require(raw, "auth", dict)),
            name=name if isinstance(name, str) else "",
            history=decode_history(raw.get("history")),
            last_remote_dir=last_dir,
        )


@dataclass
class StoreFile:
    """The whole store document: master verifier, profiles and last local dir."""

    master: MasterConfig
    connections: list[StoredProfile] = field(default_factory=list)
    last_local_dir: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "master": self.master.to_dict(),
            "connections": [profile.to_dict() for profile in self.connections],
            "last_local_dir": self.last_local_dir,
        }

    @classmethod
    def from_dict(cls, raw: Any) -> StoreFile:
        connections = raw.get("connections", []) if isinstance(raw, dict) else []
        if not isinstance(connections, list):
            raise StoreIOError("Field 'connections' must be a list")
        last_local_dir = raw.get("last_local_dir") if isinstance(raw, dict) else None
        if last_local_dir is not None and not isinstance(last_local_dir, str):
            raise StoreIOError("Field 'last_local_dir' must be a string or null")
        return cls(
            master=MasterConfig.from_dict(_require(raw, "master", dict)),
            connections=[StoredProfile.from_dict(item) for item in connections],
            last_local_dir=last_local_dir,
        )


# ---------------------------------------------------------------------------
# Browsing and notices
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DirEntry:
    """One directory listing row; *path* is absolute (``str`` remote, ``Path`` local)."""

    name: str
    path: Union[str, Path]
    is_dir: bool


@dataclass(frozen=True)
class Notice:
    """A modal message for the user."""

    title: str
    message: str
