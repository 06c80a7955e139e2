"""License server REST API (FastAPI).

Public endpoints::

    GET  /api/health
    POST /api/licenses/verify          {"licenseKey": "...", "machineId": "..."}
    GET  /api/licenses/public-key

Admin endpoints (``Authorization: Bearer <ADMIN_API_KEY>`` or ``X-API-Key``)::

    POST /api/licenses
    GET  /api/licenses?skip=0&take=20
    GET  /api/licenses/{id}
    GET  /api/licenses/email/{email}
    POST /api/licenses/{id}/revoke     {"reason": "..."}
    GET  /api/webhooks/events
    POST /api/webhooks/events/{provider}/{event_id}/replay?stale_after=300

Provider webhooks (authenticated by signature or token)::

    POST /api/webhooks/stripe
    POST /api/webhooks/patreon
    POST /api/webhooks/kofi

Webhook routes answer ``{"received": true}`` once the delivery is
authenticated, whatever the reconciler decided; the outcome lives in
the webhook ledger.
"""

from __future__ import annotations

import asyncio
import functools
import hmac
import logging
import math
import os
import threading
import time as _time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable

from starlette.requests import Request  # module-level so PEP 563 deferred annotations resolve

from bitbonsai_license import __version__, parse_int_env
from bitbonsai_license.config import DEFAULT_HOST, DEFAULT_PORT, ServerConfig, load_config
from bitbonsai_license.licensing import InvalidLicenseRequest, LicenseNotFoundError
from bitbonsai_license.providers import UnknownPriceError, WebhookAuthError, WebhookError, WebhookPayloadError
from bitbonsai_license.reconciler import STALE_PENDING_SECONDS
from bitbonsai_license.services import LicenseServices

if TYPE_CHECKING:
    from fastapi import FastAPI

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100
DEFAULT_PAGE_SIZE = 20
_LOCALHOST_ADDRESSES = {"127.0.0.1", "localhost", "::1"}


# ---------------------------------------------------------------------------
# Rate limiter
# ---------------------------------------------------------------------------


class RateLimiter:
    """Thread-safe in-memory sliding-window rate limiter.

    Tracks request timestamps per client key within a rolling window.
    ``max_requests=0`` disables limiting.
    """

    def __init__(self, max_requests: int = 60, window_seconds: float = 60.0):
        self._max = max_requests
        self._window = window_seconds
        self._hits: dict[str, list[float]] = defaultdict(list)
        self._lock = threading.Lock()

    @property
    def limit(self) -> int:
        return self._max

    @property
    def enabled(self) -> bool:
        return self._max > 0

    def check(self, key: str) -> tuple[bool, int, float]:
        """Return ``(allowed, remaining, reset_epoch)`` for a request from *key*."""
        if not self.enabled:
            return True, self._max, _time.time() + self._window

        now_mono = _time.monotonic()
        now_wall = _time.time()
        cutoff = now_mono - self._window

        with self._lock:
            self._hits[key] = hits = [t for t in self._hits[key] if t > cutoff]
            if len(hits) >= self._max:
                retry_after = hits[0] + self._window - now_mono
                return False, 0, now_wall + retry_after
            hits.append(now_mono)
            return True, max(0, self._max - len(hits)), now_wall + self._window


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass
class RestApiConfig:
    """Configuration for the REST API server."""

    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    admin_api_key: str | None = None
    cors_origins: list[str] = field(default_factory=list)
    rate_limit: int = field(default_factory=lambda: max(0, parse_int_env("LICENSE_RATE_LIMIT", 60)))

    @classmethod
    def from_server_config(cls, config: ServerConfig) -> RestApiConfig:
        return cls(host=config.host, port=config.port, admin_api_key=config.admin_api_key or None)


async def _run_sync(fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    """Run blocking store/crypto work off the event loop."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, functools.partial(fn, *args, **kwargs))


def _error(message: str, status_code: int, **extra: Any):
    from fastapi.responses import JSONResponse

    return JSONResponse({"success": False, "error": message, **extra}, status_code=status_code)


async def _json_body(request: Request) -> dict[str, Any] | None:
    try:
        body = await request.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


def _extract_admin_key(request: Request) -> str:
    auth = request.headers.get("Authorization", "")
    if auth.startswith("Bearer "):
        return auth[7:].strip()
    return request.headers.get("X-API-Key", "").strip()


# ---------------------------------------------------------------------------
# FastAPI application factory
# ---------------------------------------------------------------------------


def create_app(config: RestApiConfig | None = None, *, services: LicenseServices | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    When *services* is omitted the server configuration is loaded from the
    environment (``.env`` included) and the key directory and database
    are opened immediately, so a bad key directory fails at startup.
    """
    from fastapi import Depends, FastAPI, HTTPException
    from fastapi.middleware.cors import CORSMiddleware
    from fastapi.responses import JSONResponse
    from starlette.exceptions import HTTPException as StarletteHTTPException
    from starlette.middleware.base import BaseHTTPMiddleware

    if services is None:
        services = LicenseServices.build(load_config())
    if config is None:
        config = RestApiConfig.from_server_config(services.config)

    engine = services.engine
    limiter = RateLimiter(max_requests=config.rate_limit)

    app = FastAPI(
        title="BitBonsai License API",
        description="Signed license issuance, verification, and payment webhooks",
        version=__version__,
    )
    app.state.services = services

    if config.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.cors_origins,
            allow_credentials=False,
            allow_methods=["GET", "POST"],
            allow_headers=["*"],
        )

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            {"success": False, "error": str(exc.detail)},
            status_code=exc.status_code,
            headers=getattr(exc, "headers", None),
        )

    # ----- Rate-limit middleware ------------------------------------------

    class _RateLimitMiddleware(BaseHTTPMiddleware):
        async def dispatch(self, request: Request, call_next):
            if request.url.path == "/api/health" or not limiter.enabled:
                return await call_next(request)

            client_key = f"ip:{request.client.host}" if request.client else "ip:unknown"
            allowed, remaining, reset_epoch = limiter.check(client_key)
            if not allowed:
                retry_after = max(1, int(math.ceil(reset_epoch - _time.time())))
                return JSONResponse(
                    {
                        "success": False,
                        "error": f"Rate limit exceeded ({limiter.limit} requests/min). Retry after {retry_after}s.",
                    },
                    status_code=429,
                    headers={
                        "Retry-After": str(retry_after),
                        "X-RateLimit-Limit": str(limiter.limit),
                        "X-RateLimit-Remaining": "0",
                    },
                )

            response = await call_next(request)
            response.headers["X-RateLimit-Limit"] = str(limiter.limit)
            response.headers["X-RateLimit-Remaining"] = str(remaining)
            return response

    app.add_middleware(_RateLimitMiddleware)

    # ----- Auth dependency ------------------------------------------------

    async def verify_admin(request: Request):
        """Require the admin API key on operator routes."""
        if not config.admin_api_key:
            raise HTTPException(status_code=503, detail="Admin API is disabled (ADMIN_API_KEY not set)")
        supplied = _extract_admin_key(request)
        if not supplied or not hmac.compare_digest(supplied.encode(), config.admin_api_key.encode()):
            logger.warning(
                "Rejected admin request to %s from %s",
                request.url.path,
                request.client.host if request.client else "unknown",
            )
            raise HTTPException(status_code=401, detail="Invalid or missing API key")

    _admin = Depends(verify_admin)

    # ----- Public ---------------------------------------------------------

    @app.get("/api/health")
    async def health():
        db_ok = await _run_sync(services.db.ping)
        body = {
            "status": "ok" if db_ok else "degraded",
            "version": __version__,
            "database": "ok" if db_ok else "unavailable",
            "publicKeyFingerprint": services.keys.fingerprint(),
        }
        return JSONResponse(body, status_code=200 if db_ok else 503)

    @app.post("/api/licenses/verify")
    async def verify_license(request: Request):
        body = await _json_body(request)
        if body is None or not isinstance(body.get("licenseKey"), str):
            return _error("licenseKey is required", 400)
        machine_id = body.get("machineId")
        result = await _run_sync(
            engine.verify, body["licenseKey"], machine_id if isinstance(machine_id, str) else None
        )
        return result.to_dict()

    @app.get("/api/licenses/public-key")
    async def public_key():
        return {"publicKey": services.keys.export_public_key_pem()}

    # ----- Admin: licenses --------------------------------------------------

    @app.post("/api/licenses")
    async def create_license(request: Request, _=_admin):
        body = await _json_body(request)
        if body is None:
            return _error("Request body must be a JSON object", 400)
        try:
            license_ = await _run_sync(
                engine.create,
                body.get("email", ""),
                body.get("tier", ""),
                max_nodes=body.get("maxNodes"),
                max_concurrent_jobs=body.get("maxConcurrentJobs"),
                expires_at=body.get("expiresAt"),
            )
        except InvalidLicenseRequest as exc:
            return _error(str(exc), 400, code=exc.code)
        return JSONResponse(license_.to_dict(), status_code=201)

    @app.get("/api/licenses")
    async def list_licenses(skip: int = 0, take: int = DEFAULT_PAGE_SIZE, _=_admin):
        skip = max(0, skip)
        take = min(max(1, take), MAX_PAGE_SIZE)
        licenses = await _run_sync(engine.find_all, skip, take)
        total = await _run_sync(engine.count)
        return {"data": [lic.to_dict() for lic in licenses], "total": total}

    @app.get("/api/licenses/email/{email}")
    async def licenses_by_email(email: str, _=_admin):
        licenses = await _run_sync(engine.find_by_email, email)
        return [lic.to_dict() for lic in licenses]

    @app.get("/api/licenses/{license_id}")
    async def get_license(license_id: str, _=_admin):
        try:
            license_ = await _run_sync(engine.find_by_id, license_id)
        except LicenseNotFoundError as exc:
            return _error(str(exc), 404, code=exc.code)
        return license_.to_dict()

    @app.post("/api/licenses/{license_id}/revoke")
    async def revoke_license(license_id: str, request: Request, _=_admin):
        body = await _json_body(request)
        reason = body.get("reason") if body else None
        if not isinstance(reason, str) or not reason.strip():
            return _error("reason is required", 400)
        try:
            license_ = await _run_sync(engine.revoke, license_id, reason.strip())
        except LicenseNotFoundError as exc:
            return _error(str(exc), 404, code=exc.code)
        return license_.to_dict()

    # ----- Admin: webhook ledger ------------------------------------------

    @app.get("/api/webhooks/events")
    async def list_webhook_events(
        provider: str | None = None, status: str | None = None, limit: int = 50, _=_admin
    ):
        try:
            events = await _run_sync(
                services.reconciler.list_events, provider, status, min(max(1, limit), MAX_PAGE_SIZE)
            )
        except ValueError as exc:
            return _error(str(exc), 400)
        return {"data": [e.to_dict() for e in events], "count": len(events)}

    @app.post("/api/webhooks/events/{provider}/{event_id}/replay")
    async def replay_webhook_event(
        provider: str, event_id: str, stale_after: float = STALE_PENDING_SECONDS, _=_admin
    ):
        try:
            cleared = await _run_sync(
                services.reconciler.replay, provider, event_id, stale_after=max(0.0, stale_after)
            )
        except ValueError as exc:
            return _error(str(exc), 400)
        if not cleared:
            return _error(f"No FAILED or stale PENDING webhook event {event_id} for {provider.upper()}", 404)
        return {"success": True, "provider": provider.upper(), "providerEventId": event_id}

    # ----- Provider webhooks ----------------------------------------------

    async def _handle_webhook(name: str, handler: Callable[[], Any]):
        try:
            handled = await _run_sync(handler)
        except WebhookAuthError as exc:
            logger.warning("%s webhook rejected: %s", name, exc)
            return _error(str(exc), 401, code=exc.code)
        except WebhookPayloadError as exc:
            logger.warning("%s webhook payload rejected: %s", name, exc)
            return _error(str(exc), 400, code=exc.code)
        except UnknownPriceError as exc:
            # 5xx so the provider redelivers once pricing is configured.
            return _error(str(exc), 500, code=exc.code)
        except WebhookError as exc:
            logger.error("%s webhook failed: %s", name, exc)
            return _error(str(exc), 500, code=exc.code)
        except Exception as exc:
            logger.exception("%s webhook processing failed", name)
            return _error(f"{name} webhook processing failed: {type(exc).__name__}", 500, code="INTERNAL_ERROR")
        logger.debug("%s webhook handled: %s", name, handled.to_dict())
        return {"received": True}

    @app.post("/api/webhooks/stripe")
    async def stripe_webhook(request: Request):
        payload = await request.body()
        signature = request.headers.get("Stripe-Signature")
        return await _handle_webhook("Stripe", lambda: services.stripe.handle(payload, signature))

    @app.post("/api/webhooks/patreon")
    async def patreon_webhook(request: Request):
        payload = await request.body()
        event = request.headers.get("X-Patreon-Event")
        signature = request.headers.get("X-Patreon-Signature")
        return await _handle_webhook("Patreon", lambda: services.patreon.handle(payload, event, signature))

    @app.post("/api/webhooks/kofi")
    async def kofi_webhook(request: Request):
        payload = await request.body()
        return await _handle_webhook("Ko-fi", lambda: services.kofi.handle(payload))

    return app


# ---------------------------------------------------------------------------
# Server runner
# ---------------------------------------------------------------------------


def run_rest_server(server_config: ServerConfig | None = None) -> None:
    """Start the REST API server (blocking)."""
    import uvicorn

    server_config = server_config or load_config()
    config = RestApiConfig.from_server_config(server_config)

    # Refuse to bind to non-localhost without an admin key
    if config.host not in _LOCALHOST_ADDRESSES and not config.admin_api_key:
        raise RuntimeError(
            f"License API cannot bind to {config.host} without authentication. "
            "Set ADMIN_API_KEY=<key>, or bind to localhost with LICENSE_API_HOST=127.0.0.1"
        )

    services = LicenseServices.build(server_config)
    app = create_app(config, services=services)
    logger.info("Starting BitBonsai license API on %s:%d (pid %d)", config.host, config.port, os.getpid())
    try:
        uvicorn.run(app, host=config.host, port=config.port)
    finally:
        services.close()
