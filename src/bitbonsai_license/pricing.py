"""Tier entitlement lookup.

Active rows in ``pricing_tiers`` are the source of truth for a tier's
limits.  When no active row exists, :data:`FALLBACK_TIER_LIMITS` applies,
so licensing keeps working on a fresh database.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from bitbonsai_license.models import LicenseTier, PricingTier
from bitbonsai_license.persistence import LicenseDB

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TierLimits:
    max_nodes: int
    max_concurrent_jobs: int

    def to_dict(self) -> dict[str, int]:
        return {"maxNodes": self.max_nodes, "maxConcurrentJobs": self.max_concurrent_jobs}


FALLBACK_TIER_LIMITS: dict[LicenseTier, TierLimits] = {
    LicenseTier.FREE: TierLimits(1, 2),
    LicenseTier.PATREON_SUPPORTER: TierLimits(2, 3),
    LicenseTier.PATREON_PLUS: TierLimits(3, 5),
    LicenseTier.PATREON_PRO: TierLimits(5, 10),
    LicenseTier.PATREON_ULTIMATE: TierLimits(10, 20),
    LicenseTier.COMMERCIAL_STARTER: TierLimits(15, 30),
    LicenseTier.COMMERCIAL_PRO: TierLimits(50, 100),
    LicenseTier.COMMERCIAL_ENTERPRISE: TierLimits(999, 999),
}

TIER_DISPLAY_NAMES: dict[LicenseTier, str] = {
    LicenseTier.FREE: "Free",
    LicenseTier.PATREON_SUPPORTER: "Supporter",
    LicenseTier.PATREON_PLUS: "Plus",
    LicenseTier.PATREON_PRO: "Pro",
    LicenseTier.PATREON_ULTIMATE: "Ultimate",
    LicenseTier.COMMERCIAL_STARTER: "Commercial Starter",
    LicenseTier.COMMERCIAL_PRO: "Commercial Pro",
    LicenseTier.COMMERCIAL_ENTERPRISE: "Enterprise",
}


def display_name(tier: LicenseTier | str) -> str:
    """Human-facing tier name; unknown names are returned unchanged."""
    try:
        return TIER_DISPLAY_NAMES[LicenseTier.parse(tier)]
    except ValueError:
        return str(tier)


class PricingCatalog:
    """Read-side view of pricing tiers backed by :class:`LicenseDB`."""

    def __init__(self, db: LicenseDB) -> None:
        self._db = db

    def get_tier_limits(self, tier: LicenseTier | str) -> TierLimits:
        """Limits for *tier*: active pricing record first, then fallback table.

        Raises:
            ValueError: If *tier* is not a known tier name.
        """
        tier = LicenseTier.parse(tier)
        row = self._db.get_pricing_tier(tier.value)
        if row is not None and row["is_active"]:
            return TierLimits(int(row["max_nodes"]), int(row["max_concurrent_jobs"]))
        return FALLBACK_TIER_LIMITS[tier]

    def get_tier_by_stripe_price_id(self, price_id: str | None) -> PricingTier | None:
        """Tier whose monthly or yearly Stripe price matches *price_id*."""
        if not price_id:
            return None
        row = self._db.get_pricing_tier_by_stripe_price(price_id)
        if row is None:
            return None
        try:
            return PricingTier.from_row(row)
        except ValueError:
            logger.error("Pricing tier row %s has unknown tier name %r", row.get("id"), row.get("name"))
            return None

    def list_active_tiers(self) -> list[PricingTier]:
        return [PricingTier.from_row(r) for r in self._db.list_pricing_tiers(active_only=True)]

    def list_tiers(self) -> list[PricingTier]:
        return [PricingTier.from_row(r) for r in self._db.list_pricing_tiers()]

    def save_tier(self, tier: dict[str, Any]) -> PricingTier:
        """Insert or replace one tier row (used by operator tooling)."""
        name = LicenseTier.parse(tier["name"])
        record = dict(tier, name=name.value)
        record.setdefault("display_name", TIER_DISPLAY_NAMES[name])
        self._db.save_pricing_tier(record)
        row = self._db.get_pricing_tier(name.value)
        if row is None:
            raise RuntimeError(f"Pricing tier {name.value} missing after save")
        return PricingTier.from_row(row)

    def seed_defaults(self) -> int:
        """Insert inactive placeholder rows for every tier.

        Existing rows are never touched.  Returns how many were created.
        """
        created = 0
        for tier, limits in FALLBACK_TIER_LIMITS.items():
            wrote = self._db.save_pricing_tier(
                {
                    "name": tier.value,
                    "display_name": TIER_DISPLAY_NAMES[tier],
                    "max_nodes": limits.max_nodes,
                    "max_concurrent_jobs": limits.max_concurrent_jobs,
                    "is_active": False,
                },
                overwrite=False,
            )
            if wrote:
                created += 1
        if created:
            logger.info("Seeded %d pricing tier placeholder(s)", created)
        return created
