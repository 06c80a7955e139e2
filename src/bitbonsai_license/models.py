"""Shared enums and record types for the license server.

Records are plain dataclasses built from SQLite rows.  Timestamps are
stored as epoch floats and rendered as ISO-8601 UTC strings on the wire
(``2026-01-01T00:00:00.000Z``), matching the format written into signed
license payloads.
"""

from __future__ import annotations

import enum
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping


# ---------------------------------------------------------------------------
# Timestamp helpers
# ---------------------------------------------------------------------------


def to_iso(epoch: float | None) -> str | None:
    """Render an epoch timestamp as ``YYYY-MM-DDTHH:MM:SS.mmmZ``."""
    if epoch is None:
        return None
    dt = datetime.fromtimestamp(epoch, tz=timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_iso(value: str) -> datetime:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC.

    Raises:
        ValueError: If *value* is not a valid ISO-8601 string.
    """
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def iso_to_epoch(value: str | None) -> float | None:
    if value is None:
        return None
    return parse_iso(value).timestamp()


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class LicenseTier(enum.Enum):
    """Entitlement levels, cheapest first."""

    FREE = "FREE"
    PATREON_SUPPORTER = "PATREON_SUPPORTER"
    PATREON_PLUS = "PATREON_PLUS"
    PATREON_PRO = "PATREON_PRO"
    PATREON_ULTIMATE = "PATREON_ULTIMATE"
    COMMERCIAL_STARTER = "COMMERCIAL_STARTER"
    COMMERCIAL_PRO = "COMMERCIAL_PRO"
    COMMERCIAL_ENTERPRISE = "COMMERCIAL_ENTERPRISE"

    @classmethod
    def parse(cls, value: LicenseTier | str) -> LicenseTier:
        """Coerce a tier name (case-insensitive) into a :class:`LicenseTier`.

        Raises:
            ValueError: If *value* names no known tier.
        """
        if isinstance(value, cls):
            return value
        name = str(value).strip().upper()
        try:
            return cls[name]
        except KeyError:
            valid = ", ".join(t.value for t in cls)
            raise ValueError(f"Unknown license tier {value!r} (expected one of: {valid})") from None

    @property
    def prefix(self) -> str:
        """Three-letter token prefix (``PATREON_PRO`` -> ``PAT``)."""
        return self.value[:3].upper()


class LicenseStatus(enum.Enum):
    ACTIVE = "ACTIVE"
    REVOKED = "REVOKED"


class PaymentProvider(enum.Enum):
    """Where a license came from."""

    MANUAL = "MANUAL"
    STRIPE = "STRIPE"
    PATREON = "PATREON"
    KOFI = "KOFI"

    @classmethod
    def parse(cls, value: PaymentProvider | str) -> PaymentProvider:
        if isinstance(value, cls):
            return value
        name = str(value).strip().upper().replace("-", "")
        try:
            return cls[name]
        except KeyError:
            raise ValueError(f"Unknown payment provider {value!r}") from None


class WebhookEventType(enum.Enum):
    SUBSCRIPTION_CREATED = "SUBSCRIPTION_CREATED"
    SUBSCRIPTION_UPDATED = "SUBSCRIPTION_UPDATED"
    SUBSCRIPTION_CANCELLED = "SUBSCRIPTION_CANCELLED"


class WebhookEventStatus(enum.Enum):
    """Ledger lifecycle: PENDING -> PROCESSED | FAILED, never re-entered."""

    PENDING = "PENDING"
    PROCESSED = "PROCESSED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self is not WebhookEventStatus.PENDING


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass
class License:
    """A persisted license record."""

    id: str
    key: str
    email: str
    tier: LicenseTier
    max_nodes: int
    max_concurrent_jobs: int
    expires_at: float | None = None
    status: LicenseStatus = LicenseStatus.ACTIVE
    provider: PaymentProvider = PaymentProvider.MANUAL
    provider_customer_id: str | None = None
    provider_email: str | None = None
    revoked_at: float | None = None
    revoked_reason: str | None = None
    created_at: float = 0.0
    updated_at: float = 0.0

    @property
    def is_revoked(self) -> bool:
        return self.status is LicenseStatus.REVOKED

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> License:
        return cls(
            id=row["id"],
            key=row["key"],
            email=row["email"],
            tier=LicenseTier(row["tier"]),
            max_nodes=int(row["max_nodes"]),
            max_concurrent_jobs=int(row["max_concurrent_jobs"]),
            expires_at=row["expires_at"],
            status=LicenseStatus(row["status"]),
            provider=PaymentProvider(row["provider"]),
            provider_customer_id=row["provider_customer_id"],
            provider_email=row["provider_email"],
            revoked_at=row["revoked_at"],
            revoked_reason=row["revoked_reason"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "key": self.key,
            "email": self.email,
            "tier": self.tier.value,
            "maxNodes": self.max_nodes,
            "maxConcurrentJobs": self.max_concurrent_jobs,
            "expiresAt": to_iso(self.expires_at),
            "status": self.status.value,
            "provider": self.provider.value,
            "providerCustomerId": self.provider_customer_id,
            "providerEmail": self.provider_email,
            "revokedAt": to_iso(self.revoked_at),
            "revokedReason": self.revoked_reason,
            "createdAt": to_iso(self.created_at),
            "updatedAt": to_iso(self.updated_at),
        }


@dataclass
class WebhookEvent:
    """One row of the webhook idempotency ledger."""

    id: str
    provider: PaymentProvider
    provider_event_id: str
    event_type: WebhookEventType
    status: WebhookEventStatus
    raw_payload: dict[str, Any] = field(default_factory=dict)
    license_id: str | None = None
    error: str | None = None
    created_at: float = 0.0
    processed_at: float | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> WebhookEvent:
        try:
            payload = json.loads(row["raw_payload"] or "{}")
        except json.JSONDecodeError:
            payload = {"_raw": row["raw_payload"]}
        return cls(
            id=row["id"],
            provider=PaymentProvider(row["provider"]),
            provider_event_id=row["provider_event_id"],
            event_type=WebhookEventType(row["event_type"]),
            status=WebhookEventStatus(row["status"]),
            raw_payload=payload,
            license_id=row["license_id"],
            error=row["error"],
            created_at=row["created_at"],
            processed_at=row["processed_at"],
        )

    def to_dict(self, *, include_payload: bool = False) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "provider": self.provider.value,
            "providerEventId": self.provider_event_id,
            "eventType": self.event_type.value,
            "status": self.status.value,
            "licenseId": self.license_id,
            "error": self.error,
            "createdAt": to_iso(self.created_at),
            "processedAt": to_iso(self.processed_at),
        }
        if include_payload:
            data["rawPayload"] = self.raw_payload
        return data


@dataclass
class PricingTier:
    """Commercial terms for a tier.  Prices are in cents."""

    id: str
    name: LicenseTier
    display_name: str
    max_nodes: int
    max_concurrent_jobs: int
    price_monthly: int = 0
    price_yearly: int | None = None
    description: str = ""
    stripe_price_id_monthly: str | None = None
    stripe_price_id_yearly: str | None = None
    patreon_tier_id: str | None = None
    is_active: bool = False

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> PricingTier:
        return cls(
            id=row["id"],
            name=LicenseTier(row["name"]),
            display_name=row["display_name"],
            max_nodes=int(row["max_nodes"]),
            max_concurrent_jobs=int(row["max_concurrent_jobs"]),
            price_monthly=int(row["price_monthly"]),
            price_yearly=row["price_yearly"],
            description=row["description"] or "",
            stripe_price_id_monthly=row["stripe_price_id_monthly"],
            stripe_price_id_yearly=row["stripe_price_id_yearly"],
            patreon_tier_id=row["patreon_tier_id"],
            is_active=bool(row["is_active"]),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name.value,
            "displayName": self.display_name,
            "description": self.description,
            "maxNodes": self.max_nodes,
            "maxConcurrentJobs": self.max_concurrent_jobs,
            "priceMonthly": self.price_monthly,
            "priceYearly": self.price_yearly,
            "stripePriceIdMonthly": self.stripe_price_id_monthly,
            "stripePriceIdYearly": self.stripe_price_id_yearly,
            "patreonTierId": self.patreon_tier_id,
            "isActive": self.is_active,
        }


@dataclass
class Donation:
    """A one-off contribution that does not carry a license."""

    id: str
    email: str
    amount_cents: int
    currency: str
    provider: PaymentProvider
    provider_event_id: str
    from_name: str = ""
    message: str = ""
    created_at: float = 0.0

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> Donation:
        return cls(
            id=row["id"],
            email=row["email"],
            amount_cents=int(row["amount_cents"]),
            currency=row["currency"],
            provider=PaymentProvider(row["provider"]),
            provider_event_id=row["provider_event_id"],
            from_name=row["from_name"] or "",
            message=row["message"] or "",
            created_at=row["created_at"],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "amountCents": self.amount_cents,
            "currency": self.currency,
            "provider": self.provider.value,
            "providerEventId": self.provider_event_id,
            "fromName": self.from_name,
            "message": self.message,
            "createdAt": to_iso(self.created_at),
        }
