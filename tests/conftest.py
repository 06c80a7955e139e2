"""Shared fixtures for the license server test suite.

Every test gets its own SQLite file under ``tmp_path`` and a fresh
in-memory Ed25519 keypair, so tests never touch ``~/.bitbonsai``.
"""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from bitbonsai_license.keys import KeyManager
from bitbonsai_license.licensing import LicenseEngine
from bitbonsai_license.notifications import BackgroundDispatcher, EmailNotifier
from bitbonsai_license.persistence import LicenseDB
from bitbonsai_license.pricing import PricingCatalog
from bitbonsai_license.reconciler import WebhookReconciler

_SERVER_ENV_VARS = (
    "LICENSE_KEYS_DIR",
    "LICENSE_DB_PATH",
    "ADMIN_API_KEY",
    "STRIPE_SECRET_KEY",
    "STRIPE_WEBHOOK_SECRET",
    "PATREON_WEBHOOK_SECRET",
    "KOFI_VERIFICATION_TOKEN",
    "RESEND_API_KEY",
    "EMAIL_FROM",
    "LICENSE_API_HOST",
    "LICENSE_API_PORT",
    "LICENSE_LOG_DIR",
    "LICENSE_LOG_LEVEL",
    "LICENSE_RATE_LIMIT",
)


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch, tmp_path):
    """Strip server settings from the environment and hide the user's config file."""
    for name in _SERVER_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("BITBONSAI_CONFIG", str(tmp_path / "no-such-config.yaml"))


@pytest.fixture
def db(tmp_path):
    instance = LicenseDB(str(tmp_path / "license.db"))
    yield instance
    instance.close()


@pytest.fixture
def keys():
    return KeyManager.generate()


@pytest.fixture
def pricing(db):
    return PricingCatalog(db)


@pytest.fixture
def engine(keys, db, pricing):
    return LicenseEngine(keys, db, pricing)


@pytest.fixture
def notifier():
    return MagicMock(spec=EmailNotifier)


@pytest.fixture
def dispatcher():
    instance = BackgroundDispatcher(max_workers=2)
    yield instance
    instance.shutdown(wait=True)


@pytest.fixture
def reconciler(engine, db, notifier, dispatcher):
    return WebhookReconciler(engine, db, notifier, dispatcher)
