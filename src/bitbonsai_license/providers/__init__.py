"""Payment-provider webhook adapters (Stripe, Patreon, Ko-fi)."""

from __future__ import annotations

from bitbonsai_license.providers.base import (
    HandledWebhook,
    UnknownPriceError,
    WebhookAuthError,
    WebhookError,
    WebhookPayloadError,
)
from bitbonsai_license.providers.kofi import KofiWebhookAdapter
from bitbonsai_license.providers.patreon import PatreonWebhookAdapter
from bitbonsai_license.providers.stripe import StripeWebhookAdapter

__all__ = [
    "HandledWebhook",
    "KofiWebhookAdapter",
    "PatreonWebhookAdapter",
    "StripeWebhookAdapter",
    "UnknownPriceError",
    "WebhookAuthError",
    "WebhookError",
    "WebhookPayloadError",
]
