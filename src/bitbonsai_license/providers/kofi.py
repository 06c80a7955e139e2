"""Ko-fi webhook adapter.

Ko-fi posts ``application/x-www-form-urlencoded`` with a single ``data``
field holding JSON.  Authentication is the shared ``verification_token``
inside that JSON.  Ko-fi payments are donations: they are recorded and
thanked, and never produce a license.
"""

from __future__ import annotations

import json
import logging
import os
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any
from urllib.parse import parse_qs

from bitbonsai_license.models import PaymentProvider
from bitbonsai_license.notifications import BackgroundDispatcher, EmailNotifier
from bitbonsai_license.persistence import LicenseDB
from bitbonsai_license.providers.base import (
    HandledWebhook,
    WebhookAuthError,
    WebhookPayloadError,
    secrets_equal,
)

logger = logging.getLogger(__name__)


def _extract_data(raw_body: bytes) -> dict[str, Any]:
    """Pull the JSON document out of the form field (or a JSON envelope)."""
    text = raw_body.decode("utf-8", errors="replace")
    fields = parse_qs(text, keep_blank_values=True)
    if "data" in fields:
        encoded = fields["data"][0]
    else:
        try:
            encoded = json.loads(text)["data"]
        except (ValueError, KeyError, TypeError) as exc:
            raise WebhookPayloadError("Ko-fi body has no data field", code="INVALID_PAYLOAD") from exc
    if isinstance(encoded, dict):
        return encoded
    try:
        data = json.loads(encoded)
    except (ValueError, TypeError) as exc:
        raise WebhookPayloadError(f"Ko-fi data is not JSON: {exc}", code="INVALID_PAYLOAD") from exc
    if not isinstance(data, dict):
        raise WebhookPayloadError("Ko-fi data must be a JSON object", code="INVALID_PAYLOAD")
    return data


def amount_to_cents(amount: Any) -> int:
    """Convert a decimal amount string like ``"3.50"`` to integer cents."""
    try:
        value = Decimal(str(amount).strip())
    except InvalidOperation as exc:
        raise WebhookPayloadError(f"Invalid Ko-fi amount: {amount!r}", code="INVALID_PAYLOAD") from exc
    if not value.is_finite() or value < 0:
        raise WebhookPayloadError(f"Invalid Ko-fi amount: {amount!r}", code="INVALID_PAYLOAD")
    return int((value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class KofiWebhookAdapter:
    """Authenticates Ko-fi deliveries, records donations, sends thanks."""

    def __init__(
        self,
        db: LicenseDB,
        notifier: EmailNotifier | None = None,
        dispatcher: BackgroundDispatcher | None = None,
        *,
        verification_token: str | None = None,
    ) -> None:
        self._db = db
        self._notifier = notifier
        self._dispatcher = dispatcher or BackgroundDispatcher()
        self._token = verification_token or os.environ.get("KOFI_VERIFICATION_TOKEN", "")

    def handle(self, raw_body: bytes) -> HandledWebhook:
        data = _extract_data(raw_body)
        if not self._token:
            raise WebhookAuthError("KOFI_VERIFICATION_TOKEN not configured", code="NOT_CONFIGURED")
        if not secrets_equal(data.get("verification_token"), self._token):
            raise WebhookAuthError("Invalid Ko-fi verification token", code="INVALID_TOKEN")

        event_type = str(data.get("type") or "Donation")
        email = data.get("email") or ""
        event_id = data.get("kofi_transaction_id") or data.get("message_id")
        if not event_id:
            raise WebhookPayloadError("Ko-fi payload has no transaction id", code="INVALID_PAYLOAD")
        amount = str(data.get("amount", "0"))

        logger.info("Ko-fi webhook: %s from %s - Amount: %s", event_type, email, amount)

        stored = dict(data)
        stored.pop("verification_token", None)
        inserted = self._db.save_donation(
            {
                "email": email,
                "amount_cents": amount_to_cents(amount),
                "currency": data.get("currency") or "USD",
                "provider": PaymentProvider.KOFI.value,
                "provider_event_id": str(event_id),
                "from_name": data.get("from_name"),
                "message": data.get("message"),
                "raw_payload": stored,
            }
        )
        if not inserted:
            logger.info("Ko-fi transaction %s already recorded, skipping", event_id)
            return HandledWebhook(
                provider=PaymentProvider.KOFI, event_type=event_type, action="donation", duplicate=True
            )

        if self._notifier is not None and email:
            self._dispatcher.submit(
                self._notifier.send_donation_thanks,
                email,
                data.get("from_name") or "",
                amount,
                description=f"Ko-fi thank-you to {email}",
            )
        return HandledWebhook(provider=PaymentProvider.KOFI, event_type=event_type, action="donation")
