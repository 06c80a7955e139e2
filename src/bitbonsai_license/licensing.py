"""License issuance, verification, revocation, and tier changes.

State machine per license::

    ACTIVE --revoke--> REVOKED   (terminal)

Verification trusts the signed payload for tier and limits, so clients can
verify fully offline with the public key.  The online path additionally
checks the stored record so revocation is reflected.
"""

from __future__ import annotations

import logging
import re
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from bitbonsai_license.codec import (
    LicensePayload,
    encode_license_key,
    verify_license_key,
)
from bitbonsai_license.keys import KeyManager
from bitbonsai_license.models import (
    License,
    LicenseStatus,
    LicenseTier,
    PaymentProvider,
    iso_to_epoch,
    parse_iso,
    to_iso,
)
from bitbonsai_license.persistence import LicenseDB
from bitbonsai_license.pricing import PricingCatalog, TierLimits

logger = logging.getLogger(__name__)

_EMAIL_RE = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")

INVALID_SIGNATURE = "Invalid license key signature"
LICENSE_EXPIRED = "License expired"
LICENSE_REVOKED = "License revoked"


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class LicenseError(Exception):
    """Base class for licensing errors."""

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code


class LicenseNotFoundError(LicenseError):
    """Raised when a license id does not exist."""

    def __init__(self, license_id: str) -> None:
        super().__init__(f"License {license_id} not found", code="NOT_FOUND")
        self.license_id = license_id


class InvalidLicenseRequest(LicenseError):
    """Raised for rejected input to :meth:`LicenseEngine.create`."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="INVALID_REQUEST")


# ---------------------------------------------------------------------------
# Verification result
# ---------------------------------------------------------------------------


@dataclass
class VerificationResult:
    valid: bool
    license: LicensePayload | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"valid": self.valid}
        if self.license is not None:
            data["license"] = self.license.to_dict()
        if self.error is not None:
            data["error"] = self.error
        return data


# ---------------------------------------------------------------------------
# Input validation
# ---------------------------------------------------------------------------


def normalize_email(email: str) -> str:
    """Trim and lowercase *email*, rejecting malformed addresses.

    Raises:
        InvalidLicenseRequest: If *email* is not a plausible address.
    """
    if email is not None and not isinstance(email, str):
        raise InvalidLicenseRequest(f"email must be a string, got {type(email).__name__}")
    value = (email or "").strip().lower()
    if not _EMAIL_RE.match(value):
        raise InvalidLicenseRequest(f"Invalid email format: {email!r}")
    return value


def _validate_limit(name: str, value: int | None) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise InvalidLicenseRequest(f"{name} must be an integer >= 1")
    return value


def _normalize_expiry(expires_at: datetime | str | None) -> str | None:
    """Render an expiry as the payload's ISO form."""
    if expires_at is None:
        return None
    try:
        if isinstance(expires_at, datetime):
            dt = expires_at if expires_at.tzinfo else expires_at.replace(tzinfo=timezone.utc)
        else:
            dt = parse_iso(expires_at)
        return to_iso(dt.timestamp())
    except (ValueError, AttributeError) as exc:
        raise InvalidLicenseRequest(f"Invalid expiresAt: {expires_at!r}") from exc


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class LicenseEngine:
    """Business rules over the key manager, codec, and license store.

    Args:
        keys: A ready :class:`KeyManager` (private key loaded).
        db: License store.
        pricing: Tier limit lookup; defaults to a catalog over *db*.
    """

    def __init__(self, keys: KeyManager, db: LicenseDB, pricing: PricingCatalog | None = None) -> None:
        self._keys = keys
        self._db = db
        self._pricing = pricing or PricingCatalog(db)
        self._issue_lock = threading.Lock()
        self._last_issued_ms = 0

    @property
    def keys(self) -> KeyManager:
        return self._keys

    # -- minting ---------------------------------------------------------------

    def _resolve_limits(
        self,
        tier: LicenseTier,
        max_nodes: int | None = None,
        max_concurrent_jobs: int | None = None,
    ) -> TierLimits:
        defaults = self._pricing.get_tier_limits(tier)
        return TierLimits(
            max_nodes=max_nodes if max_nodes is not None else defaults.max_nodes,
            max_concurrent_jobs=(
                max_concurrent_jobs if max_concurrent_jobs is not None else defaults.max_concurrent_jobs
            ),
        )

    def _next_issued_at(self) -> str:
        # Ed25519 is deterministic: identical payloads yield identical keys.
        with self._issue_lock:
            tick = max(int(time.time() * 1000), self._last_issued_ms + 1)
            self._last_issued_ms = tick
        return to_iso(tick / 1000)

    def _mint(self, email: str, tier: LicenseTier, limits: TierLimits, expires_at: str | None) -> str:
        payload = LicensePayload(
            email=email,
            tier=tier.value,
            max_nodes=limits.max_nodes,
            max_concurrent_jobs=limits.max_concurrent_jobs,
            expires_at=expires_at,
            issued_at=self._next_issued_at(),
        )
        return encode_license_key(payload, self._keys)

    def create(
        self,
        email: str,
        tier: LicenseTier | str,
        max_nodes: int | None = None,
        max_concurrent_jobs: int | None = None,
        expires_at: datetime | str | None = None,
    ) -> License:
        """Issue a manual license.  Explicit limits override tier defaults.

        Raises:
            InvalidLicenseRequest: On a bad email, tier, limit, or expiry.
        """
        email = normalize_email(email)
        try:
            tier = LicenseTier.parse(tier)
        except ValueError as exc:
            raise InvalidLicenseRequest(str(exc)) from exc
        limits = self._resolve_limits(
            tier,
            _validate_limit("maxNodes", max_nodes),
            _validate_limit("maxConcurrentJobs", max_concurrent_jobs),
        )
        expiry = _normalize_expiry(expires_at)

        key = self._mint(email, tier, limits, expiry)
        row = self._db.insert_license(
            {
                "key": key,
                "email": email,
                "tier": tier.value,
                "max_nodes": limits.max_nodes,
                "max_concurrent_jobs": limits.max_concurrent_jobs,
                "expires_at": iso_to_epoch(expiry),
                "provider": PaymentProvider.MANUAL.value,
            }
        )
        license_ = License.from_row(row)
        logger.info("Created license %s for %s (%s)", license_.id, email, tier.value)
        return license_

    def create_from_webhook(
        self,
        email: str,
        tier: LicenseTier | str,
        provider: PaymentProvider | str,
        provider_customer_id: str,
    ) -> License:
        """Issue a provider-originated license.  Limits come from the tier only.

        If the customer already holds an ACTIVE license from this provider,
        that license is returned unchanged.
        """
        tier = LicenseTier.parse(tier)
        provider = PaymentProvider.parse(provider)
        email = email.strip().lower()

        existing = self.find_by_provider_customer_id(provider, provider_customer_id)
        if existing is not None and existing.status is LicenseStatus.ACTIVE:
            logger.warning(
                "Customer %s already holds active license %s via %s; not issuing another",
                provider_customer_id,
                existing.id,
                provider.value,
            )
            return existing

        limits = self._resolve_limits(tier)
        key = self._mint(email, tier, limits, None)
        row = self._db.insert_license(
            {
                "key": key,
                "email": email,
                "tier": tier.value,
                "max_nodes": limits.max_nodes,
                "max_concurrent_jobs": limits.max_concurrent_jobs,
                "provider": provider.value,
                "provider_customer_id": provider_customer_id,
                "provider_email": email,
            }
        )
        return License.from_row(row)

    # -- verification ----------------------------------------------------------

    def verify(self, token: str, machine_id: str | None = None) -> VerificationResult:
        """Check signature, expiry, and revocation.  Never raises on bad input."""
        signed = verify_license_key(token, self._keys) if isinstance(token, str) else None
        if signed is None:
            return VerificationResult(valid=False, error=INVALID_SIGNATURE)

        payload = signed.payload
        if payload.is_expired():
            return VerificationResult(valid=False, error=LICENSE_EXPIRED)

        row = self._db.get_license_by_key(token)
        if row is not None and row["status"] == LicenseStatus.REVOKED.value:
            return VerificationResult(valid=False, error=LICENSE_REVOKED)

        if machine_id:
            logger.debug("Verified license for %s on machine %s", payload.email, machine_id)
        return VerificationResult(valid=True, license=payload)

    # -- lifecycle -------------------------------------------------------------

    def revoke(self, license_id: str, reason: str) -> License:
        """Revoke a license.  Revoking twice keeps the first revocation.

        Raises:
            LicenseNotFoundError: If *license_id* is unknown.
        """
        current = self.find_by_id(license_id)
        if current.is_revoked:
            logger.info("License %s already revoked; ignoring", license_id)
            return current
        self._db.revoke_license(license_id, reason)
        logger.info("Revoked license %s: %s", license_id, reason)
        return self.find_by_id(license_id)

    def upgrade_from_webhook(
        self,
        provider: PaymentProvider | str,
        provider_customer_id: str,
        new_tier: LicenseTier | str,
    ) -> License | None:
        """Re-mint the customer's license at *new_tier*.

        Returns ``None`` if no license matches.  The record keeps its id; its
        key, tier, and limits are replaced and the expiry is cleared.
        """
        provider = PaymentProvider.parse(provider)
        new_tier = LicenseTier.parse(new_tier)
        existing = self.find_by_provider_customer_id(provider, provider_customer_id)
        if existing is None:
            return None

        limits = self._resolve_limits(new_tier)
        key = self._mint(existing.email, new_tier, limits, None)
        row = self._db.update_license(
            existing.id,
            {
                "key": key,
                "tier": new_tier.value,
                "max_nodes": limits.max_nodes,
                "max_concurrent_jobs": limits.max_concurrent_jobs,
                "expires_at": None,
            },
        )
        if row is None:
            # Deleted between lookup and update.
            return None
        return License.from_row(row)

    # -- reads -----------------------------------------------------------------

    def find_by_id(self, license_id: str) -> License:
        row = self._db.get_license(license_id)
        if row is None:
            raise LicenseNotFoundError(license_id)
        return License.from_row(row)

    def find_by_email(self, email: str) -> list[License]:
        return [License.from_row(r) for r in self._db.list_licenses_by_email(email)]

    def find_by_provider_customer_id(
        self, provider: PaymentProvider | str, provider_customer_id: str
    ) -> License | None:
        provider = PaymentProvider.parse(provider)
        row = self._db.get_license_by_provider_customer(provider.value, provider_customer_id)
        return License.from_row(row) if row else None

    def find_all(self, skip: int = 0, take: int = 20) -> list[License]:
        return [License.from_row(r) for r in self._db.list_licenses(skip=skip, take=take)]

    def count(self) -> int:
        return self._db.count_licenses()
