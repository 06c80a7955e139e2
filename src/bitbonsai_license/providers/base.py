"""Shared types for payment-provider webhook adapters.

An adapter authenticates one provider's transport (signature header or
shared token), normalises the provider's event into a reconciler event,
and reports what it did as a :class:`HandledWebhook`.  A forged event
that passes an adapter is trusted downstream, so adapters fail closed:
a missing secret rejects every delivery.
"""

from __future__ import annotations

import hmac
from dataclasses import dataclass
from typing import Any

from bitbonsai_license.models import PaymentProvider
from bitbonsai_license.reconciler import WebhookResult


class WebhookError(Exception):
    """Base exception for webhook adapter errors."""

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code


class WebhookAuthError(WebhookError):
    """Delivery failed transport authentication (HTTP 401)."""


class WebhookPayloadError(WebhookError):
    """Delivery body could not be decoded (HTTP 400)."""


class UnknownPriceError(WebhookError):
    """A Stripe price id maps to no pricing tier; license creation is blocked."""

    def __init__(self, price_id: str | None) -> None:
        super().__init__(
            f"Unknown Stripe price ID: {price_id}. Cannot determine license tier.",
            code="UNKNOWN_PRICE",
        )
        self.price_id = price_id


@dataclass
class HandledWebhook:
    """Summary of one authenticated delivery."""

    provider: PaymentProvider
    event_type: str
    action: str  # new_subscription, upgrade, cancellation, donation, ignored
    result: WebhookResult | None = None
    duplicate: bool = False

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "provider": self.provider.value,
            "eventType": self.event_type,
            "action": self.action,
            "duplicate": self.duplicate,
        }
        if self.result is not None:
            data["result"] = self.result.to_dict()
        return data


def secrets_equal(supplied: str | None, expected: str) -> bool:
    """Constant-time comparison of a supplied credential against *expected*."""
    if not supplied:
        return False
    return hmac.compare_digest(supplied.encode("utf-8"), expected.encode("utf-8"))
