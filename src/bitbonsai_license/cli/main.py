"""``bitbonsai-license`` - operator CLI for the BitBonsai license server.

Every subcommand supports ``--json`` for machine-parseable output.
``bitbonsai-license serve`` starts the REST API.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Any, NoReturn

import click

from bitbonsai_license import __version__
from bitbonsai_license.cli.output import (
    format_error,
    format_events,
    format_license,
    format_licenses,
    format_pricing,
    format_response,
    format_verification,
)
from bitbonsai_license.codec import verify_license_key
from bitbonsai_license.config import ServerConfig, load_config
from bitbonsai_license.keys import PUBLIC_KEY_FILE, KeyManager, KeyStorageError, PublicKeyVerifier
from bitbonsai_license.licensing import (
    INVALID_SIGNATURE,
    LICENSE_EXPIRED,
    LicenseEngine,
    LicenseError,
    VerificationResult,
)
from bitbonsai_license.persistence import LicenseDB
from bitbonsai_license.pricing import PricingCatalog
from bitbonsai_license.reconciler import STALE_PENDING_SECONDS, WebhookReconciler

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _config(ctx: click.Context) -> ServerConfig:
    obj = ctx.find_root().obj
    if "config" not in obj:
        obj["config"] = load_config(obj["overrides"], config_path=obj["config_path"])
    return obj["config"]


def _fail(message: str, code: str, json_mode: bool) -> NoReturn:
    click.echo(format_error(message, code=code, json_mode=json_mode))
    sys.exit(1)


def _open_db(ctx: click.Context) -> LicenseDB:
    db = LicenseDB(_config(ctx).db_path)
    ctx.call_on_close(db.close)
    return db


def _open_engine(ctx: click.Context, json_mode: bool) -> tuple[LicenseDB, LicenseEngine]:
    try:
        keys = KeyManager.open(_config(ctx).keys_dir)
    except KeyStorageError as exc:
        _fail(str(exc), exc.code or "KEY_ERROR", json_mode)
    db = _open_db(ctx)
    return db, LicenseEngine(keys, db, PricingCatalog(db))


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------


@click.group()
@click.option(
    "--config",
    "config_path",
    default=None,
    type=click.Path(dir_okay=False, path_type=Path),
    help="YAML config file (default ~/.bitbonsai/license-server.yaml).",
)
@click.option("--keys-dir", default=None, help="Signing key directory (overrides LICENSE_KEYS_DIR).")
@click.option("--db", "db_path", default=None, help="SQLite database path (overrides LICENSE_DB_PATH).")
@click.version_option(__version__, prog_name="bitbonsai-license")
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None, keys_dir: str | None, db_path: str | None) -> None:
    """BitBonsai license server administration."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["overrides"] = {"keys_dir": keys_dir, "db_path": db_path}


# ---------------------------------------------------------------------------
# keys
# ---------------------------------------------------------------------------


@cli.group()
def keys() -> None:
    """Manage the Ed25519 signing keypair."""


@keys.command("init")
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def keys_init(ctx: click.Context, json_mode: bool) -> None:
    """Load the keypair, generating it on first use."""
    key_dir = Path(_config(ctx).keys_dir)
    existed = (key_dir / PUBLIC_KEY_FILE).exists()
    try:
        manager = KeyManager.open(key_dir)
    except KeyStorageError as exc:
        _fail(str(exc), exc.code or "KEY_ERROR", json_mode)
    data = {
        "keyDir": str(key_dir.resolve()),
        "fingerprint": manager.fingerprint(),
        "created": not existed,
    }
    click.echo(format_response("success", data=data, json_mode=json_mode))


@keys.command("show")
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def keys_show(ctx: click.Context, json_mode: bool) -> None:
    """Print the public key PEM for distribution to clients."""
    path = Path(_config(ctx).keys_dir) / PUBLIC_KEY_FILE
    try:
        verifier = PublicKeyVerifier.from_file(path)
    except KeyStorageError as exc:
        _fail(str(exc), exc.code or "KEY_NOT_FOUND", json_mode)
    if json_mode:
        click.echo(
            format_response(
                "success",
                data={"publicKey": path.read_text(encoding="utf-8"), "fingerprint": verifier.fingerprint()},
                json_mode=True,
            )
        )
        return
    click.echo(f"# fingerprint {verifier.fingerprint()}")
    click.echo(path.read_text(encoding="utf-8").rstrip("\n"))


# ---------------------------------------------------------------------------
# license
# ---------------------------------------------------------------------------


@cli.group("license")
def license_group() -> None:
    """Issue, verify, and revoke licenses."""


@license_group.command("create")
@click.argument("email")
@click.argument("tier")
@click.option("--max-nodes", type=int, default=None, help="Override the tier's node limit.")
@click.option("--max-jobs", "max_jobs", type=int, default=None, help="Override the concurrent job limit.")
@click.option("--expires-at", default=None, help="ISO-8601 expiry (default: never).")
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def license_create(
    ctx: click.Context,
    email: str,
    tier: str,
    max_nodes: int | None,
    max_jobs: int | None,
    expires_at: str | None,
    json_mode: bool,
) -> None:
    """Issue a manual license for EMAIL at TIER."""
    _, engine = _open_engine(ctx, json_mode)
    try:
        license_ = engine.create(email, tier, max_nodes, max_jobs, expires_at)
    except LicenseError as exc:
        _fail(str(exc), exc.code or "LICENSE_ERROR", json_mode)
    click.echo(format_license(license_.to_dict(), json_mode=json_mode))


@license_group.command("verify")
@click.argument("token")
@click.option(
    "--public-key",
    "public_key_path",
    default=None,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Verify offline with this PEM (revocation is not checked).",
)
@click.option("--machine-id", default=None, help="Client machine identifier.")
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def license_verify(
    ctx: click.Context, token: str, public_key_path: Path | None, machine_id: str | None, json_mode: bool
) -> None:
    """Check a license token's signature, expiry, and revocation."""
    if public_key_path is not None:
        try:
            verifier = PublicKeyVerifier.from_file(public_key_path)
        except KeyStorageError as exc:
            _fail(str(exc), exc.code or "KEY_NOT_FOUND", json_mode)
        signed = verify_license_key(token.strip(), verifier)
        if signed is None:
            result = VerificationResult(valid=False, error=INVALID_SIGNATURE)
        elif signed.payload.is_expired():
            result = VerificationResult(valid=False, error=LICENSE_EXPIRED)
        else:
            result = VerificationResult(valid=True, license=signed.payload)
        data: dict[str, Any] = dict(result.to_dict(), offline=True)
    else:
        _, engine = _open_engine(ctx, json_mode)
        data = engine.verify(token.strip(), machine_id).to_dict()

    click.echo(format_verification(data, json_mode=json_mode))
    if not data["valid"]:
        sys.exit(1)


@license_group.command("revoke")
@click.argument("license_id")
@click.option("--reason", required=True, help="Why the license is revoked.")
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def license_revoke(ctx: click.Context, license_id: str, reason: str, json_mode: bool) -> None:
    """Revoke LICENSE_ID.  Revoking twice keeps the first reason."""
    _, engine = _open_engine(ctx, json_mode)
    try:
        license_ = engine.revoke(license_id, reason)
    except LicenseError as exc:
        _fail(str(exc), exc.code or "LICENSE_ERROR", json_mode)
    click.echo(format_license(license_.to_dict(), json_mode=json_mode))


@license_group.command("list")
@click.option("--email", default=None, help="Only licenses for this email.")
@click.option("--skip", default=0, type=click.IntRange(min=0), help="Records to skip.")
@click.option("--take", default=20, type=click.IntRange(1, 100), help="Records to return (max 100).")
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def license_list(ctx: click.Context, email: str | None, skip: int, take: int, json_mode: bool) -> None:
    """List licenses, newest first."""
    _, engine = _open_engine(ctx, json_mode)
    if email:
        licenses = engine.find_by_email(email)
        total = len(licenses)
    else:
        licenses = engine.find_all(skip=skip, take=take)
        total = engine.count()
    click.echo(format_licenses([lic.to_dict() for lic in licenses], total, json_mode=json_mode))


@license_group.command("show")
@click.argument("license_id")
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def license_show(ctx: click.Context, license_id: str, json_mode: bool) -> None:
    """Show one license including its key."""
    _, engine = _open_engine(ctx, json_mode)
    try:
        license_ = engine.find_by_id(license_id)
    except LicenseError as exc:
        _fail(str(exc), exc.code or "LICENSE_ERROR", json_mode)
    click.echo(format_license(license_.to_dict(), json_mode=json_mode))


# ---------------------------------------------------------------------------
# webhooks
# ---------------------------------------------------------------------------


@cli.group()
def webhooks() -> None:
    """Inspect and replay the webhook idempotency ledger."""


@webhooks.command("list")
@click.option("--provider", default=None, help="STRIPE, PATREON, or KOFI.")
@click.option("--status", default=None, type=click.Choice(["PENDING", "PROCESSED", "FAILED"], case_sensitive=False))
@click.option("--limit", default=50, type=click.IntRange(1, 500))
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def webhooks_list(
    ctx: click.Context, provider: str | None, status: str | None, limit: int, json_mode: bool
) -> None:
    """List recorded webhook events, newest first."""
    db, engine = _open_engine(ctx, json_mode)
    try:
        events = WebhookReconciler(engine, db).list_events(provider, status, limit)
    except ValueError as exc:
        _fail(str(exc), "INVALID_ARGUMENT", json_mode)
    click.echo(format_events([e.to_dict() for e in events], json_mode=json_mode))


@webhooks.command("replay")
@click.argument("provider")
@click.argument("event_id")
@click.option(
    "--stale-after",
    default=STALE_PENDING_SECONDS,
    show_default=True,
    type=click.FloatRange(min=0),
    help="Also clear a PENDING event older than this many seconds.",
)
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def webhooks_replay(
    ctx: click.Context, provider: str, event_id: str, stale_after: float, json_mode: bool
) -> None:
    """Clear a FAILED or stale PENDING event so the next delivery re-executes."""
    db, engine = _open_engine(ctx, json_mode)
    try:
        cleared = WebhookReconciler(engine, db).replay(provider, event_id, stale_after=stale_after)
    except ValueError as exc:
        _fail(str(exc), "INVALID_ARGUMENT", json_mode)
    if not cleared:
        _fail(
            f"No FAILED or stale PENDING webhook event {event_id} for {provider.upper()}", "NOT_FOUND", json_mode
        )
    click.echo(
        format_response(
            "success",
            data={"provider": provider.upper(), "providerEventId": event_id, "reset": True},
            json_mode=json_mode,
        )
    )


# ---------------------------------------------------------------------------
# pricing
# ---------------------------------------------------------------------------


@cli.group()
def pricing() -> None:
    """Tier limits and Stripe price mapping."""


@pricing.command("seed")
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def pricing_seed(ctx: click.Context, json_mode: bool) -> None:
    """Insert inactive placeholder rows for every tier."""
    created = PricingCatalog(_open_db(ctx)).seed_defaults()
    click.echo(format_response("success", data={"created": created}, json_mode=json_mode))


@pricing.command("list")
@click.option("--all", "show_all", is_flag=True, help="Include inactive tiers.")
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def pricing_list(ctx: click.Context, show_all: bool, json_mode: bool) -> None:
    """List pricing tiers (active only unless --all)."""
    catalog = PricingCatalog(_open_db(ctx))
    tiers = catalog.list_tiers() if show_all else catalog.list_active_tiers()
    click.echo(format_pricing([t.to_dict() for t in tiers], json_mode=json_mode))


# ---------------------------------------------------------------------------
# serve
# ---------------------------------------------------------------------------


@cli.command()
@click.option("--host", default=None, help="Bind address (default LICENSE_API_HOST or 127.0.0.1).")
@click.option("--port", default=None, type=int, help="Port (default LICENSE_API_PORT or 3200).")
@click.option("--log-dir", default=None, help="Log directory (default ~/.bitbonsai/logs).")
@click.pass_context
def serve(ctx: click.Context, host: str | None, port: int | None, log_dir: str | None) -> None:
    """Start the license REST API."""
    from bitbonsai_license.log_config import configure_logging
    from bitbonsai_license.rest_api import run_rest_server

    root = ctx.find_root().obj
    root["overrides"].update({"host": host, "port": port, "log_dir": log_dir})
    config = _config(ctx)
    log_path = configure_logging(config.log_dir, level=config.log_level)
    logging.getLogger().addHandler(logging.StreamHandler())
    click.echo(f"Logging to {log_path}", err=True)

    try:
        run_rest_server(config)
    except (RuntimeError, KeyStorageError) as exc:
        click.echo(format_error(str(exc), code="SERVER_ERROR"))
        sys.exit(1)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main() -> None:
    """CLI entry point."""
    cli()


if __name__ == "__main__":
    main()
