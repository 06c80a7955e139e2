"""Patreon webhook adapter.

Patreon signs the raw body with HMAC-MD5 (their choice of digest) and
sends the hex digest in ``X-Patreon-Signature``; the trigger name comes
in ``X-Patreon-Event``.  Patreon supplies no delivery id, so one is
synthesised from the trigger, the member id, and the receive time.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import os
import time
from typing import Callable

from bitbonsai_license.models import LicenseTier, PaymentProvider
from bitbonsai_license.providers.base import (
    HandledWebhook,
    WebhookAuthError,
    WebhookPayloadError,
    secrets_equal,
)
from bitbonsai_license.reconciler import (
    CancellationEvent,
    NewSubscriptionEvent,
    UpgradeEvent,
    WebhookReconciler,
)

logger = logging.getLogger(__name__)

_CREATE_EVENTS = frozenset({"members:create", "members:pledge:create"})
_UPDATE_EVENTS = frozenset({"members:update", "members:pledge:update"})
_DELETE_EVENTS = frozenset({"members:delete", "members:pledge:delete"})

# (minimum entitled cents, tier), highest first.
PLEDGE_THRESHOLDS: tuple[tuple[int, LicenseTier], ...] = (
    (2500, LicenseTier.PATREON_ULTIMATE),
    (1500, LicenseTier.PATREON_PRO),
    (1000, LicenseTier.PATREON_PLUS),
    (500, LicenseTier.PATREON_SUPPORTER),
)


def tier_for_pledge(amount_cents: int | None) -> LicenseTier:
    """Map an entitled pledge amount to a license tier."""
    amount = amount_cents or 0
    for minimum, tier in PLEDGE_THRESHOLDS:
        if amount >= minimum:
            return tier
    return LicenseTier.FREE


def sign_body(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.md5).hexdigest()


class PatreonWebhookAdapter:
    """Authenticates Patreon deliveries and feeds the reconciler."""

    def __init__(
        self,
        reconciler: WebhookReconciler,
        *,
        webhook_secret: str | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._reconciler = reconciler
        self._secret = webhook_secret or os.environ.get("PATREON_WEBHOOK_SECRET", "")
        self._clock = clock

    def verify_signature(self, raw_body: bytes, signature: str | None) -> None:
        """Raise :class:`WebhookAuthError` unless *signature* matches *raw_body*."""
        if not self._secret:
            raise WebhookAuthError("PATREON_WEBHOOK_SECRET not configured", code="NOT_CONFIGURED")
        expected = sign_body(raw_body, self._secret)
        if not secrets_equal((signature or "").strip().lower(), expected):
            raise WebhookAuthError("Invalid Patreon webhook signature", code="INVALID_SIGNATURE")

    def handle(self, raw_body: bytes, event_name: str | None, signature: str | None) -> HandledWebhook:
        self.verify_signature(raw_body, signature)

        try:
            payload = json.loads(raw_body)
            member = payload["data"]
            member_id = str(member["id"])
            attributes = member.get("attributes") or {}
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            raise WebhookPayloadError(f"Malformed Patreon payload: {exc}", code="INVALID_PAYLOAD") from exc

        event = (event_name or "").strip()
        email = attributes.get("email")
        event_id = f"{event}:{member_id}:{int(self._clock() * 1000)}"
        logger.info("Patreon webhook: %s for member %s (eventId: %s)", event, member_id, event_id)

        if event in _CREATE_EVENTS:
            if not email:
                raise WebhookPayloadError("Patreon member has no email", code="MISSING_EMAIL")
            result = self._reconciler.process_new_subscription(
                NewSubscriptionEvent(
                    provider=PaymentProvider.PATREON,
                    provider_event_id=event_id,
                    email=email,
                    tier=tier_for_pledge(attributes.get("currently_entitled_amount_cents")),
                    provider_customer_id=member_id,
                    raw_payload=payload,
                )
            )
            action = "new_subscription"
        elif event in _UPDATE_EVENTS:
            result = self._reconciler.process_upgrade(
                UpgradeEvent(
                    provider=PaymentProvider.PATREON,
                    provider_event_id=event_id,
                    provider_customer_id=member_id,
                    new_tier=tier_for_pledge(attributes.get("currently_entitled_amount_cents")),
                    raw_payload=payload,
                )
            )
            action = "upgrade"
        elif event in _DELETE_EVENTS:
            result = self._reconciler.process_cancellation(
                CancellationEvent(
                    provider=PaymentProvider.PATREON,
                    provider_event_id=event_id,
                    provider_customer_id=member_id,
                    raw_payload=payload,
                )
            )
            action = "cancellation"
        else:
            logger.warning("Unhandled Patreon event: %s", event)
            return HandledWebhook(provider=PaymentProvider.PATREON, event_type=event, action="ignored")

        return HandledWebhook(
            provider=PaymentProvider.PATREON,
            event_type=event,
            action=action,
            result=result,
            duplicate=result.duplicate,
        )
