"""Tests for bitbonsai_license.keys -- Ed25519 keypair storage."""

from __future__ import annotations

import os
import stat
import sys

import pytest

from bitbonsai_license.keys import (
    PRIVATE_KEY_FILE,
    PUBLIC_KEY_FILE,
    KeyManager,
    KeyStorageError,
    PublicKeyVerifier,
    load_public_key,
)

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="POSIX permissions")


def _mode(path) -> int:
    return stat.S_IMODE(os.stat(path).st_mode)


class TestOpen:
    def test_generates_keypair_on_first_run(self, tmp_path):
        key_dir = tmp_path / "keys"
        manager = KeyManager.open(key_dir)
        assert (key_dir / PRIVATE_KEY_FILE).is_file()
        assert (key_dir / PUBLIC_KEY_FILE).is_file()
        assert manager.key_dir == key_dir

    @posix_only
    def test_file_permissions(self, tmp_path):
        KeyManager.open(tmp_path)
        assert _mode(tmp_path / PRIVATE_KEY_FILE) == 0o600
        assert _mode(tmp_path / PUBLIC_KEY_FILE) == 0o644

    def test_reopen_loads_same_key(self, tmp_path):
        first = KeyManager.open(tmp_path)
        second = KeyManager.open(tmp_path)
        assert first.fingerprint() == second.fingerprint()
        sig = first.sign(b"hello")
        assert second.verify(b"hello", sig)

    def test_missing_public_key_is_rederived(self, tmp_path):
        original = KeyManager.open(tmp_path)
        (tmp_path / PUBLIC_KEY_FILE).unlink()
        reopened = KeyManager.open(tmp_path)
        assert (tmp_path / PUBLIC_KEY_FILE).is_file()
        assert reopened.fingerprint() == original.fingerprint()

    def test_public_key_without_private_fails(self, tmp_path):
        KeyManager.open(tmp_path)
        (tmp_path / PRIVATE_KEY_FILE).unlink()
        with pytest.raises(KeyStorageError) as exc_info:
            KeyManager.open(tmp_path)
        assert exc_info.value.code == "PRIVATE_KEY_MISSING"

    def test_corrupt_private_key_fails(self, tmp_path):
        (tmp_path / PRIVATE_KEY_FILE).write_text("not a pem")
        with pytest.raises(KeyStorageError) as exc_info:
            KeyManager.open(tmp_path)
        assert exc_info.value.code == "KEY_CORRUPT"

    def test_mismatched_public_key_fails(self, tmp_path):
        KeyManager.open(tmp_path)
        other = KeyManager.generate()
        (tmp_path / PUBLIC_KEY_FILE).write_text(other.export_public_key_pem())
        with pytest.raises(KeyStorageError) as exc_info:
            KeyManager.open(tmp_path)
        assert exc_info.value.code == "KEY_MISMATCH"

    def test_unusable_directory_fails(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("x")
        with pytest.raises(KeyStorageError) as exc_info:
            KeyManager.open(blocker / "keys")
        assert exc_info.value.code == "KEY_DIR_UNAVAILABLE"

    @posix_only
    def test_permissive_private_key_is_tightened(self, tmp_path):
        KeyManager.open(tmp_path)
        os.chmod(tmp_path / PRIVATE_KEY_FILE, 0o644)
        KeyManager.open(tmp_path)
        assert _mode(tmp_path / PRIVATE_KEY_FILE) == 0o600


class TestPrimitives:
    def test_sign_and_verify(self, keys):
        sig = keys.sign(b"payload")
        assert len(sig) == 64
        assert keys.verify(b"payload", sig)

    def test_verify_rejects_other_message(self, keys):
        sig = keys.sign(b"payload")
        assert not keys.verify(b"payl0ad", sig)

    def test_verify_rejects_wrong_length_signature(self, keys):
        assert not keys.verify(b"payload", b"\x00" * 10)
        assert not keys.verify(b"payload", keys.sign(b"payload") + b"\x00")

    def test_verify_rejects_other_key(self, keys):
        other = KeyManager.generate()
        assert not other.verify(b"payload", keys.sign(b"payload"))

    def test_export_public_key_pem(self, keys):
        pem = keys.export_public_key_pem()
        assert pem.startswith("-----BEGIN PUBLIC KEY-----")
        load_public_key(pem)

    def test_fingerprint_is_short_hex(self, keys):
        fp = keys.fingerprint()
        assert len(fp) == 16
        int(fp, 16)


class TestPublicKeyVerifier:
    def test_verifies_tokens_signed_by_manager(self, keys):
        verifier = PublicKeyVerifier(keys.export_public_key_pem())
        assert verifier.verify(b"abc", keys.sign(b"abc"))
        assert verifier.fingerprint() == keys.fingerprint()

    def test_from_file(self, tmp_path):
        manager = KeyManager.open(tmp_path)
        verifier = PublicKeyVerifier.from_file(tmp_path / PUBLIC_KEY_FILE)
        assert verifier.verify(b"abc", manager.sign(b"abc"))

    def test_from_missing_file(self, tmp_path):
        with pytest.raises(KeyStorageError) as exc_info:
            PublicKeyVerifier.from_file(tmp_path / "nope.pem")
        assert exc_info.value.code == "KEY_UNREADABLE"

    def test_rejects_garbage_pem(self):
        with pytest.raises(KeyStorageError):
            PublicKeyVerifier("-----BEGIN PUBLIC KEY-----\nAAAA\n-----END PUBLIC KEY-----\n")
