"""Tests for bitbonsai_license.providers.kofi."""

from __future__ import annotations

import json
from urllib.parse import urlencode

import pytest

from bitbonsai_license.providers.base import WebhookAuthError, WebhookPayloadError
from bitbonsai_license.providers.kofi import KofiWebhookAdapter, amount_to_cents

TOKEN = "kofi-token"


def _form(**overrides) -> bytes:
    data = {
        "verification_token": TOKEN,
        "message_id": "msg_1",
        "kofi_transaction_id": "tx_1",
        "type": "Donation",
        "from_name": "Dana",
        "message": "Keep it up",
        "amount": "5.00",
        "currency": "USD",
        "email": "dana@x.com",
    }
    data.update(overrides)
    return urlencode({"data": json.dumps(data)}).encode()


@pytest.fixture
def adapter(db, notifier, dispatcher):
    return KofiWebhookAdapter(db, notifier, dispatcher, verification_token=TOKEN)


class TestAmounts:
    @pytest.mark.parametrize(
        "amount, cents",
        [("5.00", 500), ("3.5", 350), ("0.005", 1), ("10", 1000), (" 2.49 ", 249), (7, 700)],
    )
    def test_conversion(self, amount, cents):
        assert amount_to_cents(amount) == cents

    @pytest.mark.parametrize("amount", ["abc", "-1", "NaN", "Infinity"])
    def test_rejects(self, amount):
        with pytest.raises(WebhookPayloadError):
            amount_to_cents(amount)


class TestAuthentication:
    def test_missing_token_config(self, db):
        adapter = KofiWebhookAdapter(db)
        with pytest.raises(WebhookAuthError) as exc_info:
            adapter.handle(_form())
        assert exc_info.value.code == "NOT_CONFIGURED"

    def test_wrong_token(self, adapter, db):
        with pytest.raises(WebhookAuthError) as exc_info:
            adapter.handle(_form(verification_token="nope"))
        assert exc_info.value.code == "INVALID_TOKEN"
        assert db.list_donations() == []

    def test_token_from_env(self, db, monkeypatch):
        monkeypatch.setenv("KOFI_VERIFICATION_TOKEN", TOKEN)
        assert KofiWebhookAdapter(db).handle(_form()).action == "donation"


class TestDonations:
    def test_records_donation(self, adapter, db, engine):
        handled = adapter.handle(_form())
        assert handled.action == "donation"
        assert not handled.duplicate
        [row] = db.list_donations()
        assert row["email"] == "dana@x.com"
        assert row["amount_cents"] == 500
        assert row["provider"] == "KOFI"
        assert row["provider_event_id"] == "tx_1"
        assert TOKEN not in row["raw_payload"]
        assert engine.count() == 0

    def test_sends_thanks(self, adapter, notifier, dispatcher):
        adapter.handle(_form())
        dispatcher.shutdown(wait=True)
        notifier.send_donation_thanks.assert_called_once_with("dana@x.com", "Dana", "5.00")
        notifier.send_license_email.assert_not_called()

    def test_duplicate_is_recorded_once(self, adapter, db, notifier, dispatcher):
        adapter.handle(_form())
        second = adapter.handle(_form())
        dispatcher.shutdown(wait=True)
        assert second.duplicate
        assert len(db.list_donations()) == 1
        assert notifier.send_donation_thanks.call_count == 1

    def test_message_id_fallback(self, adapter, db):
        adapter.handle(_form(kofi_transaction_id=None))
        assert db.list_donations()[0]["provider_event_id"] == "msg_1"

    def test_no_email_skips_thanks(self, adapter, notifier, dispatcher):
        adapter.handle(_form(email=""))
        dispatcher.shutdown(wait=True)
        notifier.send_donation_thanks.assert_not_called()

    def test_subscription_type_is_still_donation(self, adapter, engine):
        handled = adapter.handle(_form(type="Subscription", is_subscription_payment=True))
        assert handled.event_type == "Subscription"
        assert handled.action == "donation"
        assert engine.count() == 0

    def test_json_envelope(self, adapter, db):
        body = json.dumps({"data": _form_data()}).encode()
        adapter.handle(body)
        assert len(db.list_donations()) == 1


class TestMalformed:
    @pytest.mark.parametrize(
        "body",
        [
            b"",
            b"other=1",
            urlencode({"data": "not json"}).encode(),
            urlencode({"data": "[1, 2]"}).encode(),
        ],
    )
    def test_rejected(self, adapter, body):
        with pytest.raises(WebhookPayloadError):
            adapter.handle(body)

    def test_missing_ids(self, adapter):
        with pytest.raises(WebhookPayloadError):
            adapter.handle(_form(kofi_transaction_id=None, message_id=None))


def _form_data() -> str:
    return json.dumps(
        {
            "verification_token": TOKEN,
            "kofi_transaction_id": "tx_env",
            "amount": "1.00",
            "email": "e@x.com",
        }
    )
