"""Stripe webhook adapter.

Event mapping:

- ``checkout.session.completed`` (``mode == "subscription"``) -> new subscription
- ``customer.subscription.updated`` -> upgrade
- ``customer.subscription.deleted`` -> cancellation
- ``charge.refunded`` -> cancellation

The tier always comes from the subscription's first price id, looked up in
the pricing catalog.  An unknown price blocks license creation rather than
issuing the wrong tier.
"""

from __future__ import annotations

import json
import logging
import os
from typing import Any

from bitbonsai_license.models import LicenseTier, PaymentProvider
from bitbonsai_license.pricing import PricingCatalog
from bitbonsai_license.providers.base import (
    HandledWebhook,
    UnknownPriceError,
    WebhookAuthError,
    WebhookError,
    WebhookPayloadError,
)
from bitbonsai_license.reconciler import (
    CancellationEvent,
    NewSubscriptionEvent,
    UpgradeEvent,
    WebhookReconciler,
    WebhookResult,
)

logger = logging.getLogger(__name__)


def _customer_id(value: Any) -> str | None:
    """Stripe sends the customer as an id or, when expanded, an object."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return value.get("id") if hasattr(value, "get") else None


def _stripe_error_type(stripe: Any) -> type:
    """Base SDK exception; newer releases export it at the top level."""
    error = getattr(stripe, "StripeError", None)
    if isinstance(error, type):
        return error
    return stripe.error.StripeError


def _first_price_id(subscription: Any) -> str | None:
    try:
        items = subscription["items"]["data"]
        return items[0]["price"]["id"] if items else None
    except (KeyError, IndexError, TypeError):
        return None


class StripeWebhookAdapter:
    """Authenticates Stripe deliveries and feeds the reconciler.

    Args:
        reconciler: Destination for normalised events.
        pricing: Maps Stripe price ids to tiers.
        webhook_secret: Signing secret (``whsec_...``).  Falls back to
            ``STRIPE_WEBHOOK_SECRET``.
        secret_key: API key used to fetch subscriptions.  Falls back to
            ``STRIPE_SECRET_KEY``.
    """

    def __init__(
        self,
        reconciler: WebhookReconciler,
        pricing: PricingCatalog,
        *,
        webhook_secret: str | None = None,
        secret_key: str | None = None,
    ) -> None:
        self._reconciler = reconciler
        self._pricing = pricing
        self._webhook_secret = webhook_secret or os.environ.get("STRIPE_WEBHOOK_SECRET", "")
        self._secret_key = secret_key or os.environ.get("STRIPE_SECRET_KEY", "")
        if not self._secret_key:
            logger.warning("STRIPE_SECRET_KEY not configured - Stripe subscription lookups will fail")

    # -- Lazy import helper ----------------------------------------------------

    def _import_stripe(self) -> Any:
        """Import and configure the ``stripe`` SDK.

        Raises:
            WebhookError: If the ``stripe`` package is not installed.
        """
        try:
            import stripe  # type: ignore[import-untyped]
        except ImportError as exc:
            raise WebhookError(
                "stripe package not installed. Install it with: pip install stripe",
                code="MISSING_DEPENDENCY",
            ) from exc

        stripe.api_key = self._secret_key
        return stripe

    # -- Authentication --------------------------------------------------------

    def construct_event(self, raw_body: bytes, signature: str | None) -> Any:
        """Verify the ``Stripe-Signature`` header and parse the event.

        Raises:
            WebhookAuthError: Missing secret, missing header, or bad signature.
            WebhookPayloadError: Body is not a valid event.
        """
        if not self._webhook_secret:
            raise WebhookAuthError("STRIPE_WEBHOOK_SECRET not configured", code="NOT_CONFIGURED")
        if not signature:
            raise WebhookAuthError("Missing Stripe signature header", code="MISSING_SIGNATURE")

        stripe = self._import_stripe()
        try:
            return stripe.Webhook.construct_event(raw_body, signature, self._webhook_secret)
        except ValueError as exc:
            raise WebhookPayloadError(f"Invalid Stripe payload: {exc}", code="INVALID_PAYLOAD") from exc
        except Exception as exc:
            # SignatureVerificationError moved between SDK versions.
            raise WebhookAuthError("Invalid Stripe webhook signature", code="INVALID_SIGNATURE") from exc

    # -- Dispatch --------------------------------------------------------------

    def handle(self, raw_body: bytes, signature: str | None) -> HandledWebhook:
        """Authenticate and process one delivery."""
        event = self.construct_event(raw_body, signature)
        try:
            event_type = event["type"]
            event_id = event["id"]
            obj = event["data"]["object"]
        except (KeyError, TypeError) as exc:
            raise WebhookPayloadError(
                f"Stripe event is missing field {exc}", code="INVALID_PAYLOAD"
            ) from exc
        if not hasattr(obj, "get"):
            raise WebhookPayloadError("Stripe event data.object is not an object", code="INVALID_PAYLOAD")
        try:
            raw_object = json.loads(raw_body)["data"]["object"]
        except (ValueError, KeyError, TypeError):
            raw_object = {}

        logger.info("Stripe webhook: %s (%s)", event_type, event_id)

        if event_type == "checkout.session.completed":
            if obj.get("mode") != "subscription":
                return self._ignored(event_type)
            return self._new_subscription(obj, event_id, raw_object)
        if event_type == "customer.subscription.updated":
            return self._upgrade(obj, event_id, raw_object)
        if event_type == "customer.subscription.deleted":
            return self._cancellation(event_type, _customer_id(obj.get("customer")), event_id, raw_object)
        if event_type == "charge.refunded":
            customer = _customer_id(obj.get("customer"))
            if not customer:
                logger.warning("Refund received with no customer ID (charge: %s)", obj.get("id"))
                return self._ignored(event_type)
            logger.info("Processing refund for customer %s (charge: %s)", customer, obj.get("id"))
            return self._cancellation(event_type, customer, event_id, raw_object)

        logger.debug("Unhandled Stripe event: %s", event_type)
        return self._ignored(event_type)

    def _new_subscription(self, session: Any, event_id: str, raw: dict[str, Any]) -> HandledWebhook:
        details = session.get("customer_details") or {}
        email = session.get("customer_email") or details.get("email")
        customer = _customer_id(session.get("customer"))
        if not email or not customer:
            logger.error("Stripe checkout session %s has no email or customer", session.get("id"))
            return self._ignored("checkout.session.completed")

        subscription_id = session.get("subscription")
        if not subscription_id:
            raise WebhookPayloadError(
                f"Stripe checkout session {session.get('id')} has no subscription", code="INVALID_PAYLOAD"
            )

        stripe = self._import_stripe()
        try:
            subscription = stripe.Subscription.retrieve(subscription_id)
        except _stripe_error_type(stripe) as exc:
            logger.error("Stripe subscription lookup failed for %s: %s", subscription_id, exc)
            raise WebhookError(
                f"Stripe subscription lookup failed: {exc}", code="STRIPE_API_ERROR"
            ) from exc
        tier = self._determine_tier(_first_price_id(subscription))

        result = self._reconciler.process_new_subscription(
            NewSubscriptionEvent(
                provider=PaymentProvider.STRIPE,
                provider_event_id=event_id,
                email=email,
                tier=tier,
                provider_customer_id=customer,
                raw_payload=raw,
            )
        )
        return self._handled("checkout.session.completed", "new_subscription", result)

    def _upgrade(self, subscription: Any, event_id: str, raw: dict[str, Any]) -> HandledWebhook:
        customer = _customer_id(subscription.get("customer"))
        if not customer:
            logger.warning("Subscription update %s has no customer", subscription.get("id"))
            return self._ignored("customer.subscription.updated")
        tier = self._determine_tier(_first_price_id(subscription))
        result = self._reconciler.process_upgrade(
            UpgradeEvent(
                provider=PaymentProvider.STRIPE,
                provider_event_id=event_id,
                provider_customer_id=customer,
                new_tier=tier,
                raw_payload=raw,
            )
        )
        return self._handled("customer.subscription.updated", "upgrade", result)

    def _cancellation(
        self, event_type: str, customer: str | None, event_id: str, raw: dict[str, Any]
    ) -> HandledWebhook:
        if not customer:
            logger.warning("Stripe %s has no customer", event_type)
            return self._ignored(event_type)
        result = self._reconciler.process_cancellation(
            CancellationEvent(
                provider=PaymentProvider.STRIPE,
                provider_event_id=event_id,
                provider_customer_id=customer,
                raw_payload=raw,
            )
        )
        return self._handled(event_type, "cancellation", result)

    def _determine_tier(self, price_id: str | None) -> LicenseTier:
        tier = self._pricing.get_tier_by_stripe_price_id(price_id)
        if tier is None:
            logger.error(
                "CRITICAL: Unknown Stripe price ID: %s - No matching tier found. License creation blocked.",
                price_id,
            )
            raise UnknownPriceError(price_id)
        return tier.name

    @staticmethod
    def _handled(event_type: str, action: str, result: WebhookResult) -> HandledWebhook:
        return HandledWebhook(
            provider=PaymentProvider.STRIPE,
            event_type=event_type,
            action=action,
            result=result,
            duplicate=result.duplicate,
        )

    @staticmethod
    def _ignored(event_type: str) -> HandledWebhook:
        return HandledWebhook(provider=PaymentProvider.STRIPE, event_type=event_type, action="ignored")
