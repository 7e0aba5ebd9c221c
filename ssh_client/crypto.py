"""Key derivation and authenticated encryption for stored secrets.

PBKDF2-HMAC-SHA256 turns the master password into a 32-byte key; every
secret is then sealed with AES-256-GCM under a fresh 12-byte nonce.  Both
nonce and ciphertext are base64 text so they can live in the JSON store.
"""

from __future__ import annotations

import base64
import binascii
import logging
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from ssh_client.errors import CryptoError, MasterMismatchError
from ssh_client.models import EncryptedBlob, MasterConfig

logger = logging.getLogger(__name__)

PBKDF2_ITERATIONS = 100_000
SALT_LENGTH = 16
KEY_LENGTH = 32
NONCE_LENGTH = 12
CHECK_STRING = "ssh-client-check"


def _b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _b64decode(text: str, what: str) -> bytes:
    try:
        return base64.b64decode(text.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError, ValueError) as exc:
        raise CryptoError(f"Invalid base64 in {what}") from exc


# ---------------------------------------------------------------------------
# Primitives
# ---------------------------------------------------------------------------


def generate_salt() -> bytes:
    """Return a fresh random salt for key derivation."""
    return os.urandom(SALT_LENGTH)


def derive_key(password: str, salt: bytes) -> bytes:
    """Derive the 32-byte master key from *password* and *salt*."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=PBKDF2_ITERATIONS,
    )
    return kdf.derive(password.encode("utf-8"))


def encrypt_string(plaintext: str, key: bytes) -> EncryptedBlob:
    """Seal *plaintext* under *key* with a fresh random nonce."""
    nonce = os.urandom(NONCE_LENGTH)
    ciphertext = AESGCM(key).encrypt(nonce, plaintext.encode("utf-8"), None)
    return EncryptedBlob(nonce=_b64encode(nonce), ciphertext=_b64encode(ciphertext))


def decrypt_string(blob: EncryptedBlob, key: bytes) -> str:
    """Open *blob* with *key* and return the UTF-8 plaintext.

    Raises:
        CryptoError: On bad base64, a wrong-length nonce, a tag mismatch or
            plaintext that is not valid UTF-8.
    """
    nonce = _b64decode(blob.nonce, "nonce")
    ciphertext = _b64decode(blob.ciphertext, "ciphertext")
    if len(nonce) != NONCE_LENGTH:
        raise CryptoError(f"Nonce must be {NONCE_LENGTH} bytes, got {len(nonce)}")
    try:
        plaintext = AESGCM(key).decrypt(nonce, ciphertext, None)
    except InvalidTag as exc:
        raise CryptoError("Decryption failed: authentication tag mismatch") from exc
    except ValueError as exc:
        raise CryptoError(f"Decryption failed: {exc}") from exc
    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise CryptoError("Decrypted data is not valid UTF-8") from exc


# ---------------------------------------------------------------------------
# Master password
# ---------------------------------------------------------------------------


def create_master(password: str) -> tuple[MasterConfig, bytes]:
    """Generate a salt, derive a key and encrypt the verifier for *password*."""
    salt = generate_salt()
    key = derive_key(password, salt)
    master = MasterConfig(salt_b64=_b64encode(salt), check=encrypt_string(CHECK_STRING, key))
    logger.debug("Created new master verifier")
    return master, key


def verify_master(master: MasterConfig, password: str) -> bytes:
    """Return the derived key if *password* unlocks *master*.

    Raises:
        MasterMismatchError: If the verifier does not decrypt to the check string.
    """
    try:
        salt = _b64decode(master.salt_b64, "salt")
        key = derive_key(password, salt)
        check = decrypt_string(master.check, key)
    except CryptoError as exc:
        raise MasterMismatchError("Master password incorrect") from exc
    if check != CHECK_STRING:
        raise MasterMismatchError("Master password incorrect")
    return key
