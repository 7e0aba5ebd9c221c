"""Tests for ssh_client/crypto.py — key derivation and AES-GCM sealing."""

from __future__ import annotations

import base64

import pytest

from ssh_client.crypto import (
    CHECK_STRING,
    KEY_LENGTH,
    SALT_LENGTH,
    create_master,
    decrypt_string,
    derive_key,
    encrypt_string,
    generate_salt,
    verify_master,
)
from ssh_client.errors import CryptoError, MasterMismatchError
from ssh_client.models import EncryptedBlob, MasterConfig


@pytest.fixture(scope="module")
def key() -> bytes:
    return derive_key("master", b"0" * SALT_LENGTH)


class TestDeriveKey:
    def test_key_length(self, key: bytes) -> None:
        assert len(key) == KEY_LENGTH

    def test_deterministic_for_same_salt(self, key: bytes) -> None:
        assert derive_key("master", b"0" * SALT_LENGTH) == key

    def test_salt_changes_key(self, key: bytes) -> None:
        assert derive_key("master", b"1" * SALT_LENGTH) != key

    def test_generate_salt_is_random(self) -> None:
        assert len(generate_salt()) == SALT_LENGTH
        assert generate_salt() != generate_salt()


class TestSealing:
    def test_roundtrip(self, key: bytes) -> None:
        """decrypt(encrypt(p)) returns p, including non-ASCII text."""
        blob = encrypt_string("s3cr€t", key)
        assert decrypt_string(blob, key) == "s3cr€t"

    def test_fresh_nonce_per_call(self, key: bytes) -> None:
        assert encrypt_string("x", key).nonce != encrypt_string("x", key).nonce

    def test_wrong_key_fails(self, key: bytes) -> None:
        blob = encrypt_string("secret", key)
        other = derive_key("other", b"0" * SALT_LENGTH)
        with pytest.raises(CryptoError):
            decrypt_string(blob, other)

    def test_tampered_ciphertext_fails(self, key: bytes) -> None:
        blob = encrypt_string("secret", key)
        raw = bytearray(base64.b64decode(blob.ciphertext))
        raw[0] ^= 0xFF
        tampered = EncryptedBlob(blob.nonce, base64.b64encode(bytes(raw)).decode())
        with pytest.raises(CryptoError):
            decrypt_string(tampered, key)

    def test_bad_base64_fails(self, key: bytes) -> None:
        with pytest.raises(CryptoError, match="base64"):
            decrypt_string(EncryptedBlob("!!!", "AAAA"), key)

    def test_wrong_nonce_length_fails(self, key: bytes) -> None:
        blob = encrypt_string("secret", key)
        short = EncryptedBlob(base64.b64encode(b"short").decode(), blob.ciphertext)
        with pytest.raises(CryptoError, match="Nonce"):
            decrypt_string(short, key)


class TestMaster:
    def test_create_then_verify(self) -> None:
        master, key = create_master("hunter2")
        assert verify_master(master, "hunter2") == key
        assert decrypt_string(master.check, key) == CHECK_STRING

    def test_wrong_password_raises(self) -> None:
        master, _ = create_master("hunter2")
        with pytest.raises(MasterMismatchError, match="Master password incorrect"):
            verify_master(master, "hunter3")

    def test_corrupt_salt_is_a_mismatch(self) -> None:
        master, _ = create_master("hunter2")
        broken = MasterConfig(salt_b64="***", check=master.check)
        with pytest.raises(MasterMismatchError):
            verify_master(broken, "hunter2")
