"""Tests for bitbonsai_license.models."""

from __future__ import annotations

import pytest

from bitbonsai_license.models import (
    LicenseTier,
    PaymentProvider,
    WebhookEvent,
    WebhookEventStatus,
    iso_to_epoch,
    parse_iso,
    to_iso,
)


class TestTimestamps:
    def test_to_iso_millisecond_z(self):
        assert to_iso(1767225600.5) == "2026-01-01T00:00:00.500Z"

    def test_to_iso_none(self):
        assert to_iso(None) is None

    def test_parse_z_and_offset(self):
        assert parse_iso("2026-01-01T00:00:00Z") == parse_iso("2026-01-01T01:00:00+01:00")

    def test_naive_is_utc(self):
        assert iso_to_epoch("2026-01-01T00:00:00") == 1767225600.0

    def test_parse_invalid(self):
        with pytest.raises(ValueError):
            parse_iso("yesterday")

    def test_iso_to_epoch_none(self):
        assert iso_to_epoch(None) is None


class TestEnums:
    def test_tier_parse_case_insensitive(self):
        assert LicenseTier.parse(" patreon_pro ") is LicenseTier.PATREON_PRO

    def test_tier_parse_unknown_lists_valid(self):
        with pytest.raises(ValueError, match="COMMERCIAL_ENTERPRISE"):
            LicenseTier.parse("platinum")

    def test_tier_prefix(self):
        assert LicenseTier.COMMERCIAL_STARTER.prefix == "COM"

    def test_provider_parse(self):
        assert PaymentProvider.parse("ko-fi") is PaymentProvider.KOFI
        assert PaymentProvider.parse("stripe") is PaymentProvider.STRIPE
        with pytest.raises(ValueError):
            PaymentProvider.parse("paypal")

    def test_terminal_statuses(self):
        assert not WebhookEventStatus.PENDING.is_terminal
        assert WebhookEventStatus.PROCESSED.is_terminal
        assert WebhookEventStatus.FAILED.is_terminal


class TestWebhookEventRow:
    def _row(self, payload):
        return {
            "id": "whe_1",
            "provider": "STRIPE",
            "provider_event_id": "evt_1",
            "event_type": "SUBSCRIPTION_CREATED",
            "status": "PENDING",
            "raw_payload": payload,
            "license_id": None,
            "error": None,
            "created_at": 0.0,
            "processed_at": None,
        }

    def test_from_row_parses_payload(self):
        event = WebhookEvent.from_row(self._row('{"a": 1}'))
        assert event.raw_payload == {"a": 1}

    def test_from_row_keeps_unparseable_payload(self):
        event = WebhookEvent.from_row(self._row("{not json"))
        assert event.raw_payload == {"_raw": "{not json"}

    def test_to_dict_hides_payload_by_default(self):
        data = WebhookEvent.from_row(self._row("{}")).to_dict()
        assert "rawPayload" not in data
        assert data["createdAt"] == "1970-01-01T00:00:00.000Z"
