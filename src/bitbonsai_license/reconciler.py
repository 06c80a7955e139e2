"""Idempotent processing of normalised payment-provider events.

Provider adapters authenticate a delivery and hand one of
:class:`NewSubscriptionEvent`, :class:`UpgradeEvent`, or
:class:`CancellationEvent` to :class:`WebhookReconciler`.  Each distinct
``(provider, provider_event_id)`` is applied at most once:

1. An existing ledger row short-circuits to its stored outcome.
2. Otherwise a PENDING row is claimed through the store's unique
   constraint; a delivery that loses the claim race waits for the
   winner's terminal outcome instead of executing.
3. The engine operation runs; the row becomes PROCESSED or FAILED.

The reconciler is the error boundary of the webhook path: engine
exceptions become FAILED rows and a structured :class:`WebhookResult`.
Ledger writes are not caught; if the ledger is down the call fails.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from bitbonsai_license.licensing import LicenseEngine
from bitbonsai_license.models import (
    License,
    LicenseTier,
    PaymentProvider,
    WebhookEvent,
    WebhookEventStatus,
    WebhookEventType,
)
from bitbonsai_license.notifications import BackgroundDispatcher, EmailNotifier, LicenseEmail
from bitbonsai_license.persistence import LicenseDB

logger = logging.getLogger(__name__)

LEDGER_NOT_FOUND = "License not found"
RESULT_NOT_FOUND = "License not found for customer"
STILL_PENDING = "Event is still being processed"

# A PENDING row older than this is treated as orphaned by a dead delivery.
STALE_PENDING_SECONDS = 300.0


# ---------------------------------------------------------------------------
# Normalised events
# ---------------------------------------------------------------------------


@dataclass
class NewSubscriptionEvent:
    provider: PaymentProvider
    provider_event_id: str
    email: str
    tier: LicenseTier
    provider_customer_id: str
    raw_payload: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.provider = PaymentProvider.parse(self.provider)
        self.tier = LicenseTier.parse(self.tier)


@dataclass
class UpgradeEvent:
    provider: PaymentProvider
    provider_event_id: str
    provider_customer_id: str
    new_tier: LicenseTier
    raw_payload: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.provider = PaymentProvider.parse(self.provider)
        self.new_tier = LicenseTier.parse(self.new_tier)


@dataclass
class CancellationEvent:
    provider: PaymentProvider
    provider_event_id: str
    provider_customer_id: str
    raw_payload: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.provider = PaymentProvider.parse(self.provider)


@dataclass
class WebhookResult:
    success: bool
    license_id: str | None = None
    error: str | None = None
    # True when the outcome was read back from the ledger.
    duplicate: bool = field(default=False, compare=False)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"success": self.success}
        if self.license_id is not None:
            data["licenseId"] = self.license_id
        if self.error is not None:
            data["error"] = self.error
        return data


def _result_from_record(record: WebhookEvent) -> WebhookResult:
    error = record.error
    if error == LEDGER_NOT_FOUND:
        error = RESULT_NOT_FOUND
    elif record.status is WebhookEventStatus.PENDING:
        error = STILL_PENDING
    return WebhookResult(
        success=record.status is WebhookEventStatus.PROCESSED,
        license_id=record.license_id,
        error=error,
        duplicate=True,
    )


# ---------------------------------------------------------------------------
# Reconciler
# ---------------------------------------------------------------------------


class WebhookReconciler:
    """Applies provider events to the license engine exactly once.

    Args:
        engine: License business rules.
        db: Store holding the webhook ledger.
        notifier: Email sender; ``None`` disables license emails.
        dispatcher: Runs emails off the request path.
        pending_wait: Seconds a duplicate delivery waits for an in-flight
            winner to reach a terminal status.
    """

    def __init__(
        self,
        engine: LicenseEngine,
        db: LicenseDB,
        notifier: EmailNotifier | None = None,
        dispatcher: BackgroundDispatcher | None = None,
        *,
        pending_wait: float = 2.0,
    ) -> None:
        self._engine = engine
        self._db = db
        self._notifier = notifier
        self._dispatcher = dispatcher or BackgroundDispatcher()
        self._pending_wait = pending_wait

    # -- public operations -----------------------------------------------------

    def process_new_subscription(self, event: NewSubscriptionEvent) -> WebhookResult:
        def _apply() -> License | None:
            return self._engine.create_from_webhook(
                email=event.email,
                tier=event.tier,
                provider=event.provider,
                provider_customer_id=event.provider_customer_id,
            )

        result = self._process(
            event.provider,
            event.provider_event_id,
            WebhookEventType.SUBSCRIPTION_CREATED,
            event.raw_payload,
            _apply,
            notify=True,
        )
        if result.success and not result.duplicate:
            logger.info(
                "Created license %s for %s via %s", result.license_id, event.email, event.provider.value
            )
        return result

    def process_upgrade(self, event: UpgradeEvent) -> WebhookResult:
        def _apply() -> License | None:
            return self._engine.upgrade_from_webhook(
                provider=event.provider,
                provider_customer_id=event.provider_customer_id,
                new_tier=event.new_tier,
            )

        result = self._process(
            event.provider,
            event.provider_event_id,
            WebhookEventType.SUBSCRIPTION_UPDATED,
            event.raw_payload,
            _apply,
            notify=True,
        )
        if result.success and not result.duplicate:
            logger.info(
                "Upgraded license %s to %s via %s", result.license_id, event.new_tier.value, event.provider.value
            )
        return result

    def process_cancellation(self, event: CancellationEvent) -> WebhookResult:
        def _apply() -> License | None:
            license_ = self._engine.find_by_provider_customer_id(event.provider, event.provider_customer_id)
            if license_ is None:
                return None
            return self._engine.revoke(license_.id, f"Subscription cancelled via {event.provider.value}")

        result = self._process(
            event.provider,
            event.provider_event_id,
            WebhookEventType.SUBSCRIPTION_CANCELLED,
            event.raw_payload,
            _apply,
            notify=False,
        )
        if result.success and not result.duplicate:
            logger.info("Revoked license %s due to cancellation via %s", result.license_id, event.provider.value)
        return result

    def replay(
        self,
        provider: PaymentProvider | str,
        provider_event_id: str,
        *,
        stale_after: float | None = STALE_PENDING_SECONDS,
    ) -> bool:
        """Clear a ledger row so the provider's next delivery re-executes.

        FAILED rows are always cleared.  A PENDING row is cleared once it is
        older than *stale_after* seconds, which releases an event whose
        delivery crashed before recording an outcome; ``None`` leaves
        PENDING rows alone.

        Returns False when no row qualifies.
        """
        provider = PaymentProvider.parse(provider)
        pending_before = time.time() - stale_after if stale_after is not None else None
        cleared = self._db.reset_webhook_event(
            provider.value, provider_event_id, pending_before=pending_before
        )
        if cleared:
            logger.warning("Webhook event %s/%s reset for replay", provider.value, provider_event_id)
        return cleared

    def get_event(self, provider: PaymentProvider | str, provider_event_id: str) -> WebhookEvent | None:
        provider = PaymentProvider.parse(provider)
        row = self._db.get_webhook_event(provider.value, provider_event_id)
        return WebhookEvent.from_row(row) if row else None

    def list_events(
        self,
        provider: PaymentProvider | str | None = None,
        status: WebhookEventStatus | str | None = None,
        limit: int = 50,
    ) -> list[WebhookEvent]:
        provider_value = PaymentProvider.parse(provider).value if provider else None
        if isinstance(status, WebhookEventStatus):
            status_value: str | None = status.value
        else:
            status_value = WebhookEventStatus(status.upper()).value if status else None
        rows = self._db.list_webhook_events(provider=provider_value, status=status_value, limit=limit)
        return [WebhookEvent.from_row(r) for r in rows]

    # -- internals -------------------------------------------------------------

    def _process(
        self,
        provider: PaymentProvider,
        provider_event_id: str,
        event_type: WebhookEventType,
        raw_payload: dict[str, Any],
        apply: Callable[[], License | None],
        *,
        notify: bool,
    ) -> WebhookResult:
        existing = self.get_event(provider, provider_event_id)
        if existing is not None:
            logger.info(
                "Webhook event %s already processed (status: %s), skipping",
                provider_event_id,
                existing.status.value,
            )
            return _result_from_record(self._await_terminal(existing))

        row = self._db.create_webhook_event(provider.value, provider_event_id, event_type.value, raw_payload)
        if row is None:
            # Lost the insert race to a concurrent delivery of the same event.
            winner = self.get_event(provider, provider_event_id)
            if winner is None:
                raise RuntimeError(f"Webhook ledger row {provider.value}/{provider_event_id} vanished")
            logger.info("Concurrent delivery of %s; returning winner's outcome", provider_event_id)
            return _result_from_record(self._await_terminal(winner))
        record_id = row["id"]

        try:
            license_ = apply()
        except Exception as exc:
            message = str(exc) or exc.__class__.__name__
            self._db.finish_webhook_event(record_id, WebhookEventStatus.FAILED.value, error=message)
            logger.error(
                "Failed to process %s webhook %s: %s",
                event_type.value,
                provider_event_id,
                message,
                exc_info=True,
            )
            return WebhookResult(success=False, error=message)

        if license_ is None:
            self._db.finish_webhook_event(record_id, WebhookEventStatus.FAILED.value, error=LEDGER_NOT_FOUND)
            logger.warning(
                "No license for %s customer on event %s (%s)",
                provider.value,
                provider_event_id,
                event_type.value,
            )
            return WebhookResult(success=False, error=RESULT_NOT_FOUND)

        self._db.finish_webhook_event(record_id, WebhookEventStatus.PROCESSED.value, license_id=license_.id)
        if notify:
            self._send_license_email(license_)
        return WebhookResult(success=True, license_id=license_.id)

    def _await_terminal(self, record: WebhookEvent) -> WebhookEvent:
        """Poll an in-flight PENDING row until it settles or the wait expires."""
        deadline = time.monotonic() + self._pending_wait
        while record.status is WebhookEventStatus.PENDING and time.monotonic() < deadline:
            time.sleep(0.05)
            refreshed = self.get_event(record.provider, record.provider_event_id)
            if refreshed is None:
                break
            record = refreshed
        return record

    def _send_license_email(self, license_: License) -> None:
        if self._notifier is None:
            return
        self._dispatcher.submit(
            self._notifier.send_license_email,
            LicenseEmail.for_license(license_),
            description=f"license email to {license_.email}",
        )
