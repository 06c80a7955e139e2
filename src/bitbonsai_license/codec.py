"""License token encoding and strict decoding.

Token format::

    BITBONSAI-<PFX>-<base64url(payload_json)>.<base64url(ed25519_sig)>

``PFX`` is the first three characters of the tier name, uppercased.  Both
base64url segments are unpadded.  The signature covers the exact payload
JSON bytes, which are serialised compactly in a fixed field order so a
decoded payload re-serialises to the same bytes.

:func:`verify_license_key` never raises on bad input; every malformed,
tampered, or unparseable token yields ``None``.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Protocol

from bitbonsai_license.models import LicenseTier, parse_iso

logger = logging.getLogger(__name__)

TOKEN_PREFIX = "BITBONSAI-"

_B64URL_RE = re.compile(r"^[A-Za-z0-9_-]+$")


class Signer(Protocol):
    def sign(self, message: bytes) -> bytes: ...


class Verifier(Protocol):
    def verify(self, message: bytes, signature: bytes) -> bool: ...


# ---------------------------------------------------------------------------
# Payload
# ---------------------------------------------------------------------------


def utc_now_iso() -> str:
    """Current time as ``YYYY-MM-DDTHH:MM:SS.mmmZ``."""
    now = datetime.now(timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class LicensePayload:
    """The signed content of a license token.  Immutable once signed."""

    email: str
    tier: str
    max_nodes: int
    max_concurrent_jobs: int
    expires_at: str | None
    issued_at: str

    def to_dict(self) -> dict[str, Any]:
        # Field order is part of the signed byte layout.
        return {
            "email": self.email,
            "tier": self.tier,
            "maxNodes": self.max_nodes,
            "maxConcurrentJobs": self.max_concurrent_jobs,
            "expiresAt": self.expires_at,
            "issuedAt": self.issued_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LicensePayload:
        """Build a payload from its wire form.

        Raises:
            ValueError: If a field is missing or has the wrong type.
        """
        if not isinstance(data, dict):
            raise ValueError("payload must be a JSON object")
        email = data["email"]
        tier = data["tier"]
        max_nodes = data["maxNodes"]
        max_jobs = data["maxConcurrentJobs"]
        expires_at = data.get("expiresAt")
        issued_at = data["issuedAt"]
        if not isinstance(email, str) or not isinstance(tier, str) or not isinstance(issued_at, str):
            raise ValueError("email, tier and issuedAt must be strings")
        for value in (max_nodes, max_jobs):
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValueError("limits must be integers")
        if expires_at is not None and not isinstance(expires_at, str):
            raise ValueError("expiresAt must be a string or null")
        return cls(
            email=email,
            tier=tier,
            max_nodes=max_nodes,
            max_concurrent_jobs=max_jobs,
            expires_at=expires_at,
            issued_at=issued_at,
        )

    def serialize(self) -> bytes:
        """Canonical bytes that the signature covers."""
        return json.dumps(self.to_dict(), separators=(",", ":"), ensure_ascii=False).encode("utf-8")

    def is_expired(self, now: datetime | None = None) -> bool:
        """True when ``expires_at`` is set and lies in the past.

        An unparseable expiry counts as expired.
        """
        if self.expires_at is None:
            return False
        now = now or datetime.now(timezone.utc)
        try:
            return parse_iso(self.expires_at) < now
        except ValueError:
            return True


@dataclass(frozen=True)
class SignedLicense:
    """A successfully verified token: its payload and base64url signature."""

    payload: LicensePayload
    signature: str


# ---------------------------------------------------------------------------
# base64url
# ---------------------------------------------------------------------------


def b64url_encode(raw: bytes) -> str:
    """Encode bytes as unpadded base64url."""
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def b64url_decode(value: str) -> bytes:
    """Strictly decode unpadded base64url.

    Rejects characters outside the alphabet and encodings whose unused
    trailing bits are set, so each distinct string maps to distinct bytes.

    Raises:
        ValueError: If *value* is not canonical unpadded base64url.
    """
    if not _B64URL_RE.match(value) or len(value) % 4 == 1:
        raise ValueError("not unpadded base64url")
    padded = value + "=" * (-len(value) % 4)
    try:
        raw = base64.urlsafe_b64decode(padded)
    except binascii.Error as exc:
        raise ValueError(str(exc)) from exc
    if b64url_encode(raw) != value:
        raise ValueError("non-canonical base64url")
    return raw


# ---------------------------------------------------------------------------
# Encode / decode
# ---------------------------------------------------------------------------


def tier_prefix(tier: str | LicenseTier) -> str:
    name = tier.value if isinstance(tier, LicenseTier) else str(tier)
    return name[:3].upper()


def encode_license_key(payload: LicensePayload, signer: Signer) -> str:
    """Sign *payload* and compose the token string."""
    payload_bytes = payload.serialize()
    signature = signer.sign(payload_bytes)
    return f"{TOKEN_PREFIX}{tier_prefix(payload.tier)}-{b64url_encode(payload_bytes)}.{b64url_encode(signature)}"


def split_license_key(token: str) -> tuple[str, str] | None:
    """Return the ``(payload_b64, signature_b64)`` segments, or ``None``."""
    if not isinstance(token, str) or not token.startswith(TOKEN_PREFIX):
        return None
    first_dash = token.index("-")
    second_dash = token.find("-", first_dash + 1)
    if second_dash == -1:
        return None
    remainder = token[second_dash + 1:]
    dot = remainder.rfind(".")
    if dot == -1:
        return None
    payload_b64, signature_b64 = remainder[:dot], remainder[dot + 1:]
    if not payload_b64 or not signature_b64:
        return None
    return payload_b64, signature_b64


def verify_license_key(token: str, verifier: Verifier) -> SignedLicense | None:
    """Verify *token* and return its payload, or ``None`` on any failure.

    The payload is only parsed after the signature checks out.
    """
    parts = split_license_key(token)
    if parts is None:
        return None
    payload_b64, signature_b64 = parts
    try:
        payload_bytes = b64url_decode(payload_b64)
        signature = b64url_decode(signature_b64)
    except ValueError:
        return None

    try:
        if not verifier.verify(payload_bytes, signature):
            return None
    except Exception as exc:
        logger.debug("Signature check raised: %s", exc)
        return None

    try:
        payload = LicensePayload.from_dict(json.loads(payload_bytes.decode("utf-8")))
    except (UnicodeDecodeError, ValueError, KeyError) as exc:
        logger.warning("Signed license payload could not be parsed: %s", exc)
        return None
    return SignedLicense(payload=payload, signature=signature_b64)

