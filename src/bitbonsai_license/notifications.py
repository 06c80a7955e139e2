"""Outbound email for license delivery and donation receipts.

Emails go through the Resend HTTP API.  Without ``RESEND_API_KEY`` the
notifier runs in dry-run mode and only logs what it would have sent.

Delivery from the webhook path is best effort: callers hand the send to a
:class:`BackgroundDispatcher`, which runs it on a worker thread and routes
any failure to the log.  The license is already durable by then, so a
mail outage never fails a webhook.
"""

from __future__ import annotations

import html
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable

import requests

from bitbonsai_license.models import License, to_iso
from bitbonsai_license.pricing import display_name

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"
DEFAULT_FROM = "BitBonsai <noreply@bitbonsai.io>"
PRICING_URL = "https://bitbonsai.io/pricing"


class NotificationError(Exception):
    """Raised when an email could not be delivered."""

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code


@dataclass
class LicenseEmail:
    email: str
    license_key: str
    tier: str
    max_nodes: int
    max_concurrent_jobs: int
    expires_at: str | None = None

    @classmethod
    def for_license(cls, license_: License) -> LicenseEmail:
        return cls(
            email=license_.email,
            license_key=license_.key,
            tier=license_.tier.value,
            max_nodes=license_.max_nodes,
            max_concurrent_jobs=license_.max_concurrent_jobs,
            expires_at=to_iso(license_.expires_at),
        )


def render_license_email(params: LicenseEmail) -> tuple[str, str]:
    """Return ``(subject, html_body)`` for a license delivery email."""
    tier_display = display_name(params.tier)
    validity = f"Valid until: {params.expires_at[:10]}" if params.expires_at else "Lifetime license"
    body = f"""<!DOCTYPE html>
<html>
<body style="font-family: sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;">
  <h1 style="color: #2d5016;">BitBonsai</h1>
  <h2>Thank you for your support!</h2>
  <p>Your <strong>{html.escape(tier_display)}</strong> license is ready.</p>
  <div style="background: #1a1a1a; padding: 20px; border-radius: 8px; margin: 20px 0;">
    <code style="color: #4ade80; word-break: break-all;">{html.escape(params.license_key)}</code>
  </div>
  <table style="width: 100%;">
    <tr><td><strong>Tier:</strong></td><td>{html.escape(tier_display)}</td></tr>
    <tr><td><strong>Max Nodes:</strong></td><td>{params.max_nodes}</td></tr>
    <tr><td><strong>Concurrent Jobs:</strong></td><td>{params.max_concurrent_jobs}</td></tr>
    <tr><td><strong>Validity:</strong></td><td>{html.escape(validity)}</td></tr>
  </table>
  <p>Paste this key in <strong>Settings &rarr; License</strong> in BitBonsai.</p>
</body>
</html>"""
    return f"Your BitBonsai {tier_display} License", body


def render_donation_email(from_name: str, amount: str) -> tuple[str, str]:
    body = f"""<h2>Thank you for supporting BitBonsai!</h2>
<p>Hi {html.escape(from_name or "there")},</p>
<p>We received your donation of ${html.escape(amount)}. Your support helps us continue developing BitBonsai!</p>
<p>Ko-fi donations do not include a license. If you'd like to purchase a license, please visit our
<a href="{PRICING_URL}">pricing page</a>.</p>
<p>Thank you again for your generosity!</p>
<p>- The BitBonsai Team</p>"""
    return "Thank you for your Ko-fi donation!", body


# ---------------------------------------------------------------------------
# Notifier
# ---------------------------------------------------------------------------


class EmailNotifier:
    """Sends transactional email through Resend.

    Args:
        api_key: Resend API key.  ``None`` or empty enables dry-run mode.
        from_address: Sender, e.g. ``"BitBonsai <noreply@bitbonsai.io>"``.
        timeout: Per-request timeout in seconds.
        session: Optional :class:`requests.Session` (injected in tests).
    """

    def __init__(
        self,
        api_key: str | None = None,
        from_address: str = DEFAULT_FROM,
        *,
        timeout: float = 10.0,
        session: requests.Session | None = None,
    ) -> None:
        self._api_key = (api_key or "").strip()
        self._from = from_address or DEFAULT_FROM
        self._timeout = timeout
        self._session = session or requests.Session()
        if not self._api_key:
            logger.warning("RESEND_API_KEY not configured - emails will be logged only")

    @property
    def dry_run(self) -> bool:
        return not self._api_key

    def send_email(self, to: str, subject: str, html_body: str) -> str | None:
        """Send one email.  Returns the provider message id (None in dry-run).

        Raises:
            NotificationError: On transport failure or a non-2xx response.
        """
        if self.dry_run:
            logger.info("[DRY RUN] Email to %s: %s", to, subject)
            return None

        try:
            resp = self._session.post(
                RESEND_API_URL,
                json={"from": self._from, "to": [to], "subject": subject, "html": html_body},
                headers={"Authorization": f"Bearer {self._api_key}"},
                timeout=self._timeout,
            )
        except requests.RequestException as exc:
            raise NotificationError(f"Email to {to} failed: {exc}", code="TRANSPORT_ERROR") from exc

        if resp.status_code >= 400:
            raise NotificationError(
                f"Email provider rejected message to {to} (HTTP {resp.status_code}): {resp.text[:200]}",
                code="PROVIDER_REJECTED",
            )
        try:
            message_id = resp.json().get("id")
        except ValueError:
            message_id = None
        logger.info("Email sent to %s (%s)", to, subject)
        return message_id

    def send_license_email(self, params: LicenseEmail) -> str | None:
        subject, body = render_license_email(params)
        return self.send_email(params.email, subject, body)

    def send_donation_thanks(self, to: str, from_name: str, amount: str) -> str | None:
        subject, body = render_donation_email(from_name, amount)
        return self.send_email(to, subject, body)


# ---------------------------------------------------------------------------
# Fire-and-forget dispatch
# ---------------------------------------------------------------------------


class BackgroundDispatcher:
    """Runs best-effort side effects off the request path.

    :meth:`submit` returns the :class:`~concurrent.futures.Future` already
    detached: nobody is required to wait on it, and exceptions are
    logged by a done-callback instead of propagating.
    """

    def __init__(self, max_workers: int = 4, *, name: str = "bitbonsai-notify") -> None:
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix=name)
        self._lock = threading.Lock()
        self._closed = False

    def submit(self, fn: Callable[..., Any], *args: Any, description: str = "", **kwargs: Any) -> Future | None:
        """Schedule ``fn(*args, **kwargs)``; returns None after shutdown."""
        label = description or getattr(fn, "__name__", "task")
        with self._lock:
            if self._closed:
                logger.warning("Dispatcher closed; dropping background task %s", label)
                return None
            future = self._executor.submit(fn, *args, **kwargs)

        def _log_outcome(fut: Future) -> None:
            if fut.cancelled():
                return
            exc = fut.exception()
            if exc is not None:
                logger.error("Background task %s failed: %s", label, exc, exc_info=exc)

        future.add_done_callback(_log_outcome)
        return future

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            self._closed = True
        self._executor.shutdown(wait=wait)
