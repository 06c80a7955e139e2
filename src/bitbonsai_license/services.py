"""Wiring of the license server's components from a :class:`ServerConfig`."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from bitbonsai_license.config import ServerConfig
from bitbonsai_license.keys import KeyManager
from bitbonsai_license.licensing import LicenseEngine
from bitbonsai_license.notifications import BackgroundDispatcher, EmailNotifier
from bitbonsai_license.persistence import LicenseDB
from bitbonsai_license.pricing import PricingCatalog
from bitbonsai_license.providers import (
    KofiWebhookAdapter,
    PatreonWebhookAdapter,
    StripeWebhookAdapter,
)
from bitbonsai_license.reconciler import WebhookReconciler

logger = logging.getLogger(__name__)


@dataclass
class LicenseServices:
    """Every long-lived component, built once per process."""

    config: ServerConfig
    db: LicenseDB
    keys: KeyManager
    pricing: PricingCatalog
    engine: LicenseEngine
    notifier: EmailNotifier
    dispatcher: BackgroundDispatcher
    reconciler: WebhookReconciler
    stripe: StripeWebhookAdapter
    patreon: PatreonWebhookAdapter
    kofi: KofiWebhookAdapter

    @classmethod
    def build(cls, config: ServerConfig) -> LicenseServices:
        """Open the key directory and database and assemble the graph.

        Raises:
            KeyStorageError: If the key directory cannot be used.
        """
        keys = KeyManager.open(config.keys_dir)
        db = LicenseDB(config.db_path)
        return cls.assemble(config, db, keys)

    @classmethod
    def assemble(
        cls,
        config: ServerConfig,
        db: LicenseDB,
        keys: KeyManager,
        *,
        notifier: EmailNotifier | None = None,
        dispatcher: BackgroundDispatcher | None = None,
    ) -> LicenseServices:
        """Assemble from an already opened store and key manager."""
        pricing = PricingCatalog(db)
        engine = LicenseEngine(keys, db, pricing)
        notifier = notifier or EmailNotifier(config.resend_api_key, config.email_from)
        dispatcher = dispatcher or BackgroundDispatcher()
        reconciler = WebhookReconciler(engine, db, notifier, dispatcher)
        services = cls(
            config=config,
            db=db,
            keys=keys,
            pricing=pricing,
            engine=engine,
            notifier=notifier,
            dispatcher=dispatcher,
            reconciler=reconciler,
            stripe=StripeWebhookAdapter(
                reconciler,
                pricing,
                webhook_secret=config.stripe_webhook_secret,
                secret_key=config.stripe_secret_key,
            ),
            patreon=PatreonWebhookAdapter(reconciler, webhook_secret=config.patreon_webhook_secret),
            kofi=KofiWebhookAdapter(
                db, notifier, dispatcher, verification_token=config.kofi_verification_token
            ),
        )
        logger.info("License services ready (key %s, db %s)", keys.fingerprint(), db.path)
        return services

    def close(self) -> None:
        self.dispatcher.shutdown(wait=True)
        self.db.close()
