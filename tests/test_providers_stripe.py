"""Tests for bitbonsai_license.providers.stripe -- Stripe webhook adapter."""

from __future__ import annotations

import json
import sys
from typing import Any, Dict
from unittest.mock import MagicMock, patch

import pytest

from bitbonsai_license.models import LicenseStatus, LicenseTier, WebhookEventStatus
from bitbonsai_license.providers.base import (
    UnknownPriceError,
    WebhookAuthError,
    WebhookError,
    WebhookPayloadError,
)
from bitbonsai_license.providers.stripe import StripeWebhookAdapter


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _build_mock_stripe(price_id: str = "price_pro_monthly") -> MagicMock:
    """Return a mock ``stripe`` module whose webhook check parses the body."""
    mock = MagicMock()
    StripeError = type("StripeError", (Exception,), {})
    SignatureVerificationError = type("SignatureVerificationError", (StripeError,), {})
    mock.StripeError = mock.error.StripeError = StripeError
    mock.error.SignatureVerificationError = SignatureVerificationError

    def _construct(payload, sig_header, secret):
        if sig_header != "t=1,v1=good":
            raise SignatureVerificationError("No signatures found matching the expected signature")
        return json.loads(payload)

    mock.Webhook.construct_event.side_effect = _construct
    mock.Subscription.retrieve.return_value = {"items": {"data": [{"price": {"id": price_id}}]}}
    return mock


def _event(event_type: str, obj: Dict[str, Any], event_id: str = "evt_1") -> bytes:
    return json.dumps({"id": event_id, "type": event_type, "data": {"object": obj}}).encode()


def _checkout(**overrides: Any) -> Dict[str, Any]:
    session = {
        "id": "cs_1",
        "mode": "subscription",
        "customer": "cus_1",
        "customer_email": "buyer@x.com",
        "subscription": "sub_1",
    }
    session.update(overrides)
    return session


def _subscription(price_id: str = "price_ultimate_monthly", customer: str = "cus_1") -> Dict[str, Any]:
    return {"id": "sub_1", "customer": customer, "items": {"data": [{"price": {"id": price_id}}]}}


@pytest.fixture
def adapter(reconciler, pricing):
    pricing.save_tier(
        {
            "name": "PATREON_PRO",
            "max_nodes": 5,
            "max_concurrent_jobs": 10,
            "stripe_price_id_monthly": "price_pro_monthly",
            "stripe_price_id_yearly": "price_pro_yearly",
            "is_active": True,
        }
    )
    pricing.save_tier(
        {
            "name": "PATREON_ULTIMATE",
            "max_nodes": 10,
            "max_concurrent_jobs": 20,
            "stripe_price_id_monthly": "price_ultimate_monthly",
            "is_active": True,
        }
    )
    return StripeWebhookAdapter(reconciler, pricing, webhook_secret="whsec_test", secret_key="sk_test_abc")


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


class TestAuthentication:
    def test_missing_secret(self, reconciler, pricing):
        adapter = StripeWebhookAdapter(reconciler, pricing, secret_key="sk_test_abc")
        with pytest.raises(WebhookAuthError) as exc_info:
            adapter.handle(_event("ping", {}), "t=1,v1=good")
        assert exc_info.value.code == "NOT_CONFIGURED"

    def test_secret_from_env(self, reconciler, pricing, monkeypatch):
        monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", "whsec_env")
        adapter = StripeWebhookAdapter(reconciler, pricing, secret_key="sk")
        mock_stripe = _build_mock_stripe()
        with patch.dict(sys.modules, {"stripe": mock_stripe}):
            adapter.handle(_event("ping", {}), "t=1,v1=good")
        assert mock_stripe.Webhook.construct_event.call_args.args[2] == "whsec_env"

    def test_missing_signature(self, adapter):
        with pytest.raises(WebhookAuthError) as exc_info:
            adapter.handle(_event("ping", {}), None)
        assert exc_info.value.code == "MISSING_SIGNATURE"

    def test_bad_signature(self, adapter, engine):
        with patch.dict(sys.modules, {"stripe": _build_mock_stripe()}):
            with pytest.raises(WebhookAuthError) as exc_info:
                adapter.handle(_event("checkout.session.completed", _checkout()), "t=1,v1=forged")
        assert exc_info.value.code == "INVALID_SIGNATURE"
        assert engine.count() == 0

    def test_invalid_payload(self, adapter):
        mock_stripe = _build_mock_stripe()
        mock_stripe.Webhook.construct_event.side_effect = ValueError("Invalid payload")
        with patch.dict(sys.modules, {"stripe": mock_stripe}):
            with pytest.raises(WebhookPayloadError):
                adapter.handle(b"not json", "t=1,v1=good")

    def test_missing_sdk(self, adapter):
        with patch.dict(sys.modules, {"stripe": None}):
            with pytest.raises(WebhookError) as exc_info:
                adapter.handle(_event("ping", {}), "t=1,v1=good")
        assert exc_info.value.code == "MISSING_DEPENDENCY"

    def test_sets_api_key(self, adapter):
        mock_stripe = _build_mock_stripe()
        with patch.dict(sys.modules, {"stripe": mock_stripe}):
            adapter.handle(_event("ping", {}), "t=1,v1=good")
        assert mock_stripe.api_key == "sk_test_abc"


# ---------------------------------------------------------------------------
# Event mapping
# ---------------------------------------------------------------------------


class TestCheckoutCompleted:
    def test_creates_license(self, adapter, engine, notifier, dispatcher):
        mock_stripe = _build_mock_stripe()
        with patch.dict(sys.modules, {"stripe": mock_stripe}):
            handled = adapter.handle(_event("checkout.session.completed", _checkout()), "t=1,v1=good")

        assert handled.action == "new_subscription"
        assert handled.result.success
        mock_stripe.Subscription.retrieve.assert_called_once_with("sub_1")
        lic = engine.find_by_id(handled.result.license_id)
        assert lic.tier is LicenseTier.PATREON_PRO
        assert lic.email == "buyer@x.com"
        assert lic.provider_customer_id == "cus_1"
        dispatcher.shutdown(wait=True)
        notifier.send_license_email.assert_called_once()

    def test_yearly_price(self, adapter, engine):
        with patch.dict(sys.modules, {"stripe": _build_mock_stripe("price_pro_yearly")}):
            handled = adapter.handle(_event("checkout.session.completed", _checkout()), "t=1,v1=good")
        assert engine.find_by_id(handled.result.license_id).tier is LicenseTier.PATREON_PRO

    def test_email_from_customer_details(self, adapter, engine):
        session = _checkout(customer_email=None, customer_details={"email": "details@x.com"})
        with patch.dict(sys.modules, {"stripe": _build_mock_stripe()}):
            handled = adapter.handle(_event("checkout.session.completed", session), "t=1,v1=good")
        assert engine.find_by_id(handled.result.license_id).email == "details@x.com"

    def test_duplicate_delivery(self, adapter, engine):
        body = _event("checkout.session.completed", _checkout())
        with patch.dict(sys.modules, {"stripe": _build_mock_stripe()}):
            first = adapter.handle(body, "t=1,v1=good")
            second = adapter.handle(body, "t=1,v1=good")
        assert second.duplicate
        assert second.result.license_id == first.result.license_id
        assert engine.count() == 1

    def test_one_time_payment_ignored(self, adapter, engine):
        with patch.dict(sys.modules, {"stripe": _build_mock_stripe()}):
            handled = adapter.handle(
                _event("checkout.session.completed", _checkout(mode="payment")), "t=1,v1=good"
            )
        assert handled.action == "ignored"
        assert engine.count() == 0

    def test_unknown_price_blocks_creation(self, adapter, engine, reconciler):
        with patch.dict(sys.modules, {"stripe": _build_mock_stripe("price_mystery")}):
            with pytest.raises(UnknownPriceError) as exc_info:
                adapter.handle(_event("checkout.session.completed", _checkout()), "t=1,v1=good")
        assert exc_info.value.price_id == "price_mystery"
        assert engine.count() == 0
        # Not recorded, so Stripe's retry gets a fresh attempt once pricing is fixed.
        assert reconciler.get_event("STRIPE", "evt_1") is None

    def test_missing_customer_ignored(self, adapter, engine):
        with patch.dict(sys.modules, {"stripe": _build_mock_stripe()}):
            handled = adapter.handle(
                _event("checkout.session.completed", _checkout(customer=None)), "t=1,v1=good"
            )
        assert handled.action == "ignored"
        assert engine.count() == 0

    def test_raw_object_recorded(self, adapter, reconciler):
        with patch.dict(sys.modules, {"stripe": _build_mock_stripe()}):
            adapter.handle(_event("checkout.session.completed", _checkout()), "t=1,v1=good")
        event = reconciler.get_event("STRIPE", "evt_1")
        assert event.raw_payload["id"] == "cs_1"


class TestMalformedEvents:
    @pytest.mark.parametrize(
        "body",
        [
            b'{"type": "checkout.session.completed", "data": {"object": {}}}',
            b'{"id": "evt_1", "data": {"object": {}}}',
            b'{"id": "evt_1", "type": "charge.refunded"}',
            b'{"id": "evt_1", "type": "charge.refunded", "data": null}',
            b'{"id": "evt_1", "type": "charge.refunded", "data": {"object": "ch_1"}}',
            b"[]",
        ],
    )
    def test_missing_fields(self, adapter, engine, body):
        with patch.dict(sys.modules, {"stripe": _build_mock_stripe()}):
            with pytest.raises(WebhookPayloadError) as exc_info:
                adapter.handle(body, "t=1,v1=good")
        assert exc_info.value.code == "INVALID_PAYLOAD"
        assert engine.count() == 0

    def test_checkout_without_subscription(self, adapter, reconciler):
        mock_stripe = _build_mock_stripe()
        with patch.dict(sys.modules, {"stripe": mock_stripe}):
            with pytest.raises(WebhookPayloadError):
                adapter.handle(
                    _event("checkout.session.completed", _checkout(subscription=None)), "t=1,v1=good"
                )
        mock_stripe.Subscription.retrieve.assert_not_called()
        assert reconciler.get_event("STRIPE", "evt_1") is None

    def test_subscription_lookup_failure(self, adapter, engine, reconciler):
        mock_stripe = _build_mock_stripe()
        mock_stripe.Subscription.retrieve.side_effect = mock_stripe.StripeError("No such subscription: sub_1")
        with patch.dict(sys.modules, {"stripe": mock_stripe}):
            with pytest.raises(WebhookError) as exc_info:
                adapter.handle(_event("checkout.session.completed", _checkout()), "t=1,v1=good")
        assert exc_info.value.code == "STRIPE_API_ERROR"
        assert "No such subscription" in str(exc_info.value)
        assert engine.count() == 0
        # Nothing recorded, so Stripe's redelivery gets a fresh attempt.
        assert reconciler.get_event("STRIPE", "evt_1") is None


class TestSubscriptionLifecycle:
    def _create(self, adapter):
        adapter.handle(_event("checkout.session.completed", _checkout(), "evt_new"), "t=1,v1=good")

    def test_update_upgrades(self, adapter, engine):
        with patch.dict(sys.modules, {"stripe": _build_mock_stripe()}):
            self._create(adapter)
            handled = adapter.handle(
                _event("customer.subscription.updated", _subscription(), "evt_upd"), "t=1,v1=good"
            )
        assert handled.action == "upgrade"
        lic = engine.find_by_id(handled.result.license_id)
        assert lic.tier is LicenseTier.PATREON_ULTIMATE
        assert lic.max_nodes == 10

    def test_update_unknown_customer(self, adapter, reconciler):
        with patch.dict(sys.modules, {"stripe": _build_mock_stripe()}):
            handled = adapter.handle(
                _event("customer.subscription.updated", _subscription(customer="cus_ghost"), "evt_upd"),
                "t=1,v1=good",
            )
        assert not handled.result.success
        assert handled.result.error == "License not found for customer"
        assert reconciler.get_event("STRIPE", "evt_upd").status is WebhookEventStatus.FAILED

    def test_deleted_revokes(self, adapter, engine):
        with patch.dict(sys.modules, {"stripe": _build_mock_stripe()}):
            self._create(adapter)
            handled = adapter.handle(
                _event("customer.subscription.deleted", _subscription(), "evt_del"), "t=1,v1=good"
            )
        assert handled.action == "cancellation"
        lic = engine.find_by_id(handled.result.license_id)
        assert lic.status is LicenseStatus.REVOKED
        assert lic.revoked_reason == "Subscription cancelled via STRIPE"

    def test_refund_revokes(self, adapter, engine):
        with patch.dict(sys.modules, {"stripe": _build_mock_stripe()}):
            self._create(adapter)
            handled = adapter.handle(
                _event("charge.refunded", {"id": "ch_1", "customer": "cus_1"}, "evt_ref"), "t=1,v1=good"
            )
        assert handled.action == "cancellation"
        assert engine.find_by_id(handled.result.license_id).status is LicenseStatus.REVOKED

    def test_refund_without_customer_ignored(self, adapter):
        with patch.dict(sys.modules, {"stripe": _build_mock_stripe()}):
            handled = adapter.handle(_event("charge.refunded", {"id": "ch_1", "customer": None}), "t=1,v1=good")
        assert handled.action == "ignored"

    def test_expanded_customer_object(self, adapter, engine):
        with patch.dict(sys.modules, {"stripe": _build_mock_stripe()}):
            self._create(adapter)
            handled = adapter.handle(
                _event(
                    "customer.subscription.deleted",
                    dict(_subscription(), customer={"id": "cus_1", "object": "customer"}),
                    "evt_del",
                ),
                "t=1,v1=good",
            )
        assert handled.result.success

    def test_unhandled_event_ignored(self, adapter, reconciler):
        with patch.dict(sys.modules, {"stripe": _build_mock_stripe()}):
            handled = adapter.handle(_event("invoice.paid", {"id": "in_1"}), "t=1,v1=good")
        assert handled.action == "ignored"
        assert handled.to_dict() == {
            "provider": "STRIPE",
            "eventType": "invoice.paid",
            "action": "ignored",
            "duplicate": False,
        }
        assert reconciler.list_events() == []
