"""Ed25519 signing keypair management.

The license server holds exactly one signing keypair for its lifetime.
Keys live as two PEM files in a key directory::

    <key_dir>/private.pem   PKCS#8, mode 0600
    <key_dir>/public.pem    SubjectPublicKeyInfo, mode 0644

Use :meth:`KeyManager.open` to obtain a ready manager; it loads the
existing pair or generates and persists a new one on first run.  Tokens
minted before a restart stay verifiable because the same pair is reused.

Clients that only need to verify tokens offline use
:class:`PublicKeyVerifier` with the exported public key.
"""

from __future__ import annotations

import hashlib
import logging
import os
import stat
import sys
from pathlib import Path

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

logger = logging.getLogger(__name__)

PRIVATE_KEY_FILE = "private.pem"
PUBLIC_KEY_FILE = "public.pem"
SIGNATURE_LENGTH = 64


class KeyStorageError(Exception):
    """Raised when key material cannot be created, read, or parsed.

    This is fatal: the process cannot serve license operations without
    a signing key.
    """

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code


# ---------------------------------------------------------------------------
# PEM helpers
# ---------------------------------------------------------------------------


def _public_pem(public_key: Ed25519PublicKey) -> bytes:
    return public_key.public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )


def _private_pem(private_key: Ed25519PrivateKey) -> bytes:
    return private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def load_public_key(pem: str | bytes) -> Ed25519PublicKey:
    """Parse an Ed25519 public key from PEM text.

    Raises:
        KeyStorageError: If *pem* is not an Ed25519 public key.
    """
    data = pem.encode("utf-8") if isinstance(pem, str) else pem
    try:
        key = serialization.load_pem_public_key(data)
    except ValueError as exc:
        raise KeyStorageError(f"Invalid public key PEM: {exc}", code="INVALID_KEY") from exc
    if not isinstance(key, Ed25519PublicKey):
        raise KeyStorageError("PEM key is not an Ed25519 public key", code="INVALID_KEY")
    return key


def _verify_with(public_key: Ed25519PublicKey, message: bytes, signature: bytes) -> bool:
    if len(signature) != SIGNATURE_LENGTH:
        return False
    try:
        public_key.verify(signature, message)
    except InvalidSignature:
        return False
    return True


def _fingerprint(public_key: Ed25519PublicKey) -> str:
    raw = public_key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
    return hashlib.sha256(raw).hexdigest()[:16]


def _write_file(path: Path, data: bytes, mode: int) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
    with os.fdopen(fd, "wb") as fh:
        fh.write(data)
    # umask may have masked bits on creation
    if sys.platform != "win32":
        os.chmod(path, mode)


# ---------------------------------------------------------------------------
# Key manager
# ---------------------------------------------------------------------------


class KeyManager:
    """Holds the active signing keypair.

    Construct through :meth:`open` (file-backed) or :meth:`generate`
    (ephemeral, for tests and tooling).  A ``KeyManager`` is never
    handed out without its private key loaded.
    """

    def __init__(self, private_key: Ed25519PrivateKey, *, key_dir: Path | None = None) -> None:
        self._private_key = private_key
        self._public_key = private_key.public_key()
        self._key_dir = key_dir

    @classmethod
    def generate(cls) -> KeyManager:
        """Return a manager with a fresh in-memory keypair (not persisted)."""
        return cls(Ed25519PrivateKey.generate())

    @classmethod
    def open(cls, key_dir: str | os.PathLike[str]) -> KeyManager:
        """Load the keypair from *key_dir*, generating it on first run.

        Raises:
            KeyStorageError: If the directory cannot be created, or an
                existing key file is unreadable or corrupt, or only the
                public half is present.
        """
        directory = Path(key_dir).expanduser()
        private_path = directory / PRIVATE_KEY_FILE
        public_path = directory / PUBLIC_KEY_FILE

        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise KeyStorageError(
                f"Cannot create key directory {directory}: {exc}",
                code="KEY_DIR_UNAVAILABLE",
            ) from exc

        if private_path.exists():
            private_key = cls._load_private(private_path)
            manager = cls(private_key, key_dir=directory)
            if not public_path.exists():
                logger.warning("Public key missing at %s; re-deriving from private key", public_path)
                manager._write_public(public_path)
            else:
                manager._check_public_matches(public_path)
            logger.info("Loaded Ed25519 keypair from %s (fingerprint %s)", directory, manager.fingerprint())
            return manager

        if public_path.exists():
            raise KeyStorageError(
                f"Found {public_path} without {private_path}. Restore the private key; "
                "generating a new pair would invalidate every issued license.",
                code="PRIVATE_KEY_MISSING",
            )

        logger.info("Generating new Ed25519 keypair in %s", directory)
        manager = cls(Ed25519PrivateKey.generate(), key_dir=directory)
        try:
            _write_file(private_path, _private_pem(manager._private_key), 0o600)
            manager._write_public(public_path)
        except OSError as exc:
            raise KeyStorageError(f"Cannot write keypair to {directory}: {exc}", code="KEY_WRITE_FAILED") from exc
        logger.info("Keypair generated and saved (fingerprint %s)", manager.fingerprint())
        return manager

    # -- loading ---------------------------------------------------------------

    @staticmethod
    def _load_private(path: Path) -> Ed25519PrivateKey:
        KeyManager._enforce_private_permissions(path)
        try:
            data = path.read_bytes()
        except OSError as exc:
            raise KeyStorageError(f"Cannot read {path}: {exc}", code="KEY_UNREADABLE") from exc
        try:
            key = serialization.load_pem_private_key(data, password=None)
        except (ValueError, TypeError) as exc:
            raise KeyStorageError(f"Corrupt private key {path}: {exc}", code="KEY_CORRUPT") from exc
        if not isinstance(key, Ed25519PrivateKey):
            raise KeyStorageError(f"{path} is not an Ed25519 private key", code="KEY_CORRUPT")
        return key

    @staticmethod
    def _enforce_private_permissions(path: Path) -> None:
        """Tighten a group/world-readable private key to ``0600``."""
        if sys.platform == "win32":
            return
        try:
            mode = stat.S_IMODE(path.stat().st_mode)
            if mode & 0o077:
                logger.warning(
                    "Private key %s has overly permissive permissions (mode %04o). Fixing to 0600.",
                    path,
                    mode,
                )
                os.chmod(path, 0o600)
        except OSError as exc:
            logger.warning("Unable to set permissions on %s: %s", path, exc)

    def _check_public_matches(self, path: Path) -> None:
        try:
            stored = load_public_key(path.read_bytes())
        except (OSError, KeyStorageError) as exc:
            raise KeyStorageError(f"Cannot load public key {path}: {exc}", code="KEY_CORRUPT") from exc
        if _fingerprint(stored) != self.fingerprint():
            raise KeyStorageError(
                f"{path} does not match {self._key_dir / PRIVATE_KEY_FILE if self._key_dir else 'private key'}",
                code="KEY_MISMATCH",
            )

    def _write_public(self, path: Path) -> None:
        _write_file(path, _public_pem(self._public_key), 0o644)

    # -- primitives ------------------------------------------------------------

    @property
    def key_dir(self) -> Path | None:
        return self._key_dir

    def sign(self, message: bytes) -> bytes:
        """Return the 64-byte Ed25519 signature over *message*."""
        return self._private_key.sign(message)

    def verify(self, message: bytes, signature: bytes) -> bool:
        return _verify_with(self._public_key, message, signature)

    def export_public_key_pem(self) -> str:
        """Public key as SPKI PEM text, for offline verifiers."""
        return _public_pem(self._public_key).decode("ascii")

    def fingerprint(self) -> str:
        """Short SHA-256 fingerprint of the raw public key."""
        return _fingerprint(self._public_key)


class PublicKeyVerifier:
    """Verify-only counterpart of :class:`KeyManager`.

    Built from an exported public key PEM so license consumers can check
    tokens without contacting the server.
    """

    def __init__(self, public_key_pem: str | bytes) -> None:
        self._public_key = load_public_key(public_key_pem)

    @classmethod
    def from_file(cls, path: str | os.PathLike[str]) -> PublicKeyVerifier:
        try:
            data = Path(path).expanduser().read_bytes()
        except OSError as exc:
            raise KeyStorageError(f"Cannot read {path}: {exc}", code="KEY_UNREADABLE") from exc
        return cls(data)

    def verify(self, message: bytes, signature: bytes) -> bool:
        return _verify_with(self._public_key, message, signature)

    def fingerprint(self) -> str:
        return _fingerprint(self._public_key)
