"""SQLite persistence layer for the license server.

Provides durable storage for licenses, the webhook idempotency ledger,
pricing tiers, and donations.  The database is created automatically at
``~/.bitbonsai/license.db`` (override with the ``LICENSE_DB_PATH``
environment variable).

Uniqueness that the reconciler depends on is enforced by the schema, not
by application code: ``licenses.key`` and ``webhook_events(provider,
provider_event_id)`` are UNIQUE, so concurrent duplicate deliveries race
safely on the constraint.

Example::

    db = get_db()
    db.insert_license({...})
    row = db.get_license("lic_abc123")
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import stat
import sys
import threading
import time
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Default DB location
# ---------------------------------------------------------------------------

_DEFAULT_DB_DIR = os.path.join(str(Path.home()), ".bitbonsai")
_DEFAULT_DB_PATH = os.path.join(_DEFAULT_DB_DIR, "license.db")

_LICENSE_UPDATABLE = frozenset(
    {"key", "tier", "max_nodes", "max_concurrent_jobs", "expires_at", "provider_email"}
)


def new_id(prefix: str) -> str:
    """Opaque record id such as ``lic_3f2a...``."""
    return f"{prefix}_{uuid.uuid4().hex}"


class LicenseDB:
    """Thread-safe SQLite wrapper for license server persistence.

    Parameters:
        db_path: Filesystem path for the SQLite database file.  Defaults to
            the value of ``LICENSE_DB_PATH`` or ``~/.bitbonsai/license.db``.
            ``":memory:"`` gives a private in-memory database.
    """

    def __init__(self, db_path: Optional[str] = None) -> None:
        self._db_path = db_path or os.environ.get("LICENSE_DB_PATH", _DEFAULT_DB_PATH)
        self._in_memory = self._db_path == ":memory:"

        if not self._in_memory:
            os.makedirs(os.path.dirname(os.path.abspath(self._db_path)), exist_ok=True)

        self._conn = sqlite3.connect(self._db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        if not self._in_memory:
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA busy_timeout=5000")
        self._write_lock = threading.Lock()

        self._ensure_schema()
        if not self._in_memory:
            self._enforce_permissions()

    # ------------------------------------------------------------------
    # File permissions
    # ------------------------------------------------------------------

    def _enforce_permissions(self) -> None:
        """Restrict the data directory to ``0700`` and the DB file to ``0600``.

        License tokens and customer emails live here.  Skipped on Windows
        where POSIX chmod semantics do not apply.
        """
        if sys.platform == "win32":
            return

        db_dir = os.path.dirname(os.path.abspath(self._db_path))

        try:
            dir_mode = stat.S_IMODE(os.stat(db_dir).st_mode)
            if dir_mode & 0o077:
                logger.warning(
                    "Database directory %s has overly permissive permissions (mode %04o). Fixing to 0700.",
                    db_dir,
                    dir_mode,
                )
            os.chmod(db_dir, 0o700)
        except OSError as exc:
            logger.warning("Unable to set permissions on %s: %s", db_dir, exc)

        try:
            file_mode = stat.S_IMODE(os.stat(self._db_path).st_mode)
            if file_mode & 0o077:
                logger.warning(
                    "Database file %s has overly permissive permissions (mode %04o). Fixing to 0600.",
                    self._db_path,
                    file_mode,
                )
            os.chmod(self._db_path, 0o600)
        except OSError as exc:
            logger.warning("Unable to set permissions on %s: %s", self._db_path, exc)

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def _ensure_schema(self) -> None:
        """Create tables if they do not already exist."""
        with self._write_lock:
            cur = self._conn.cursor()
            cur.executescript(
                """
                CREATE TABLE IF NOT EXISTS licenses (
                    id                   TEXT PRIMARY KEY,
                    key                  TEXT NOT NULL UNIQUE,
                    email                TEXT NOT NULL,
                    tier                 TEXT NOT NULL,
                    max_nodes            INTEGER NOT NULL,
                    max_concurrent_jobs  INTEGER NOT NULL,
                    expires_at           REAL,
                    status               TEXT NOT NULL DEFAULT 'ACTIVE',
                    provider             TEXT NOT NULL DEFAULT 'MANUAL',
                    provider_customer_id TEXT,
                    provider_email       TEXT,
                    revoked_at           REAL,
                    revoked_reason       TEXT,
                    created_at           REAL NOT NULL,
                    updated_at           REAL NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_licenses_email
                    ON licenses(email);
                CREATE INDEX IF NOT EXISTS idx_licenses_provider_customer
                    ON licenses(provider, provider_customer_id);

                CREATE TABLE IF NOT EXISTS webhook_events (
                    id                TEXT PRIMARY KEY,
                    provider          TEXT NOT NULL,
                    provider_event_id TEXT NOT NULL,
                    event_type        TEXT NOT NULL,
                    status            TEXT NOT NULL DEFAULT 'PENDING',
                    raw_payload       TEXT NOT NULL DEFAULT '{}',
                    license_id        TEXT,
                    error             TEXT,
                    created_at        REAL NOT NULL,
                    processed_at      REAL,
                    UNIQUE (provider, provider_event_id)
                );

                CREATE INDEX IF NOT EXISTS idx_webhook_events_status
                    ON webhook_events(status, created_at);

                CREATE TABLE IF NOT EXISTS pricing_tiers (
                    id                      TEXT PRIMARY KEY,
                    name                    TEXT NOT NULL UNIQUE,
                    display_name            TEXT NOT NULL,
                    description             TEXT NOT NULL DEFAULT '',
                    max_nodes               INTEGER NOT NULL,
                    max_concurrent_jobs     INTEGER NOT NULL,
                    price_monthly           INTEGER NOT NULL DEFAULT 0,
                    price_yearly            INTEGER,
                    stripe_price_id_monthly TEXT,
                    stripe_price_id_yearly  TEXT,
                    patreon_tier_id         TEXT,
                    is_active               INTEGER NOT NULL DEFAULT 0,
                    created_at              REAL NOT NULL,
                    updated_at              REAL NOT NULL
                );

                CREATE TABLE IF NOT EXISTS donations (
                    id                TEXT PRIMARY KEY,
                    email             TEXT NOT NULL,
                    amount_cents      INTEGER NOT NULL,
                    currency          TEXT NOT NULL DEFAULT 'USD',
                    provider          TEXT NOT NULL,
                    provider_event_id TEXT NOT NULL,
                    from_name         TEXT,
                    message           TEXT,
                    raw_payload       TEXT NOT NULL DEFAULT '{}',
                    created_at        REAL NOT NULL,
                    UNIQUE (provider, provider_event_id)
                );
                """
            )
            self._conn.commit()

    # ------------------------------------------------------------------
    # Licenses
    # ------------------------------------------------------------------

    def insert_license(self, record: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a new license row and return it.

        Raises:
            sqlite3.IntegrityError: If the id or key already exists.
        """
        now = time.time()
        row = {
            "id": record.get("id") or new_id("lic"),
            "key": record["key"],
            "email": record["email"],
            "tier": record["tier"],
            "max_nodes": record["max_nodes"],
            "max_concurrent_jobs": record["max_concurrent_jobs"],
            "expires_at": record.get("expires_at"),
            "status": record.get("status", "ACTIVE"),
            "provider": record.get("provider", "MANUAL"),
            "provider_customer_id": record.get("provider_customer_id"),
            "provider_email": record.get("provider_email"),
            "created_at": record.get("created_at", now),
            "updated_at": record.get("updated_at", now),
        }
        with self._write_lock:
            self._conn.execute(
                """
                INSERT INTO licenses
                    (id, key, email, tier, max_nodes, max_concurrent_jobs,
                     expires_at, status, provider, provider_customer_id,
                     provider_email, created_at, updated_at)
                VALUES (:id, :key, :email, :tier, :max_nodes,
                        :max_concurrent_jobs, :expires_at, :status, :provider,
                        :provider_customer_id, :provider_email, :created_at,
                        :updated_at)
                """,
                row,
            )
            self._conn.commit()
        result = self.get_license(row["id"])
        if result is None:
            raise RuntimeError(f"License row {row['id']} missing after insert")
        return result

    def get_license(self, license_id: str) -> Optional[Dict[str, Any]]:
        row = self._conn.execute(
            "SELECT * FROM licenses WHERE id = ?", (license_id,)
        ).fetchone()
        return dict(row) if row else None

    def get_license_by_key(self, key: str) -> Optional[Dict[str, Any]]:
        row = self._conn.execute(
            "SELECT * FROM licenses WHERE key = ?", (key,)
        ).fetchone()
        return dict(row) if row else None

    def list_licenses_by_email(self, email: str) -> List[Dict[str, Any]]:
        """Return every license for *email* (case-insensitive), newest first."""
        rows = self._conn.execute(
            "SELECT * FROM licenses WHERE lower(email) = lower(?) "
            "ORDER BY created_at DESC",
            (email.strip(),),
        ).fetchall()
        return [dict(r) for r in rows]

    def get_license_by_provider_customer(
        self, provider: str, provider_customer_id: str
    ) -> Optional[Dict[str, Any]]:
        """Resolve "the" license for a provider customer.

        Prefers the newest ACTIVE license and falls back to the newest
        revoked one.
        """
        row = self._conn.execute(
            "SELECT * FROM licenses "
            "WHERE provider = ? AND provider_customer_id = ? "
            "ORDER BY CASE status WHEN 'ACTIVE' THEN 0 ELSE 1 END, "
            "created_at DESC LIMIT 1",
            (provider, provider_customer_id),
        ).fetchone()
        return dict(row) if row else None

    def list_licenses(self, skip: int = 0, take: int = 20) -> List[Dict[str, Any]]:
        """Return a page of licenses, newest first."""
        rows = self._conn.execute(
            "SELECT * FROM licenses ORDER BY created_at DESC, id LIMIT ? OFFSET ?",
            (max(0, take), max(0, skip)),
        ).fetchall()
        return [dict(r) for r in rows]

    def count_licenses(self) -> int:
        row = self._conn.execute("SELECT COUNT(*) FROM licenses").fetchone()
        return int(row[0])

    def update_license(self, license_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Overwrite selected columns in place; returns the updated row.

        Raises:
            ValueError: If *fields* names a column that may not be updated.
        """
        unknown = set(fields) - _LICENSE_UPDATABLE
        if unknown:
            raise ValueError(f"Cannot update license columns: {', '.join(sorted(unknown))}")
        if not fields:
            return self.get_license(license_id)
        assignments = ", ".join(f"{col} = :{col}" for col in sorted(fields))
        params = dict(fields, id=license_id, updated_at=time.time())
        with self._write_lock:
            self._conn.execute(
                f"UPDATE licenses SET {assignments}, updated_at = :updated_at WHERE id = :id",
                params,
            )
            self._conn.commit()
        return self.get_license(license_id)

    def revoke_license(self, license_id: str, reason: str) -> bool:
        """Mark an ACTIVE license revoked.  Returns False if it was not ACTIVE."""
        now = time.time()
        with self._write_lock:
            cur = self._conn.execute(
                "UPDATE licenses SET status = 'REVOKED', revoked_at = ?, "
                "revoked_reason = ?, updated_at = ? "
                "WHERE id = ? AND status = 'ACTIVE'",
                (now, reason, now, license_id),
            )
            self._conn.commit()
            return cur.rowcount > 0

    # ------------------------------------------------------------------
    # Webhook event ledger
    # ------------------------------------------------------------------

    def get_webhook_event(self, provider: str, provider_event_id: str) -> Optional[Dict[str, Any]]:
        row = self._conn.execute(
            "SELECT * FROM webhook_events WHERE provider = ? AND provider_event_id = ?",
            (provider, provider_event_id),
        ).fetchone()
        return dict(row) if row else None

    def create_webhook_event(
        self,
        provider: str,
        provider_event_id: str,
        event_type: str,
        raw_payload: Any,
    ) -> Optional[Dict[str, Any]]:
        """Insert a PENDING ledger row.

        Returns the new row, or ``None`` if ``(provider, provider_event_id)``
        already exists, meaning another delivery claimed the event first.
        """
        event_id = new_id("whe")
        with self._write_lock:
            cur = self._conn.execute(
                """
                INSERT OR IGNORE INTO webhook_events
                    (id, provider, provider_event_id, event_type, status,
                     raw_payload, created_at)
                VALUES (?, ?, ?, ?, 'PENDING', ?, ?)
                """,
                (
                    event_id,
                    provider,
                    provider_event_id,
                    event_type,
                    json.dumps(raw_payload, default=str),
                    time.time(),
                ),
            )
            self._conn.commit()
            inserted = cur.rowcount > 0
        if not inserted:
            return None
        row = self._conn.execute(
            "SELECT * FROM webhook_events WHERE id = ?", (event_id,)
        ).fetchone()
        return dict(row) if row else None

    def finish_webhook_event(
        self,
        event_id: str,
        status: str,
        *,
        license_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> bool:
        """Move a PENDING event to a terminal status.

        Returns False if the row was not PENDING (terminal rows never change).
        """
        if status not in ("PROCESSED", "FAILED"):
            raise ValueError(f"Not a terminal webhook status: {status}")
        processed_at = time.time() if status == "PROCESSED" else None
        with self._write_lock:
            cur = self._conn.execute(
                "UPDATE webhook_events SET status = ?, license_id = ?, error = ?, "
                "processed_at = ? WHERE id = ? AND status = 'PENDING'",
                (status, license_id, error, processed_at, event_id),
            )
            self._conn.commit()
            return cur.rowcount > 0

    def list_webhook_events(
        self,
        provider: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 50,
    ) -> List[Dict[str, Any]]:
        """Return ledger rows, newest first, optionally filtered."""
        clauses: list[str] = []
        params: list[Any] = []
        if provider:
            clauses.append("provider = ?")
            params.append(provider)
        if status:
            clauses.append("status = ?")
            params.append(status)
        where = f"WHERE {' AND '.join(clauses)} " if clauses else ""
        params.append(limit)
        rows = self._conn.execute(
            f"SELECT * FROM webhook_events {where}ORDER BY created_at DESC LIMIT ?",
            params,
        ).fetchall()
        return [dict(r) for r in rows]

    def reset_webhook_event(
        self, provider: str, provider_event_id: str, *, pending_before: float | None = None
    ) -> bool:
        """Delete a FAILED ledger row so the next delivery is re-executed.

        With *pending_before* (epoch seconds), a PENDING row created before
        that instant is deleted too; it belongs to a delivery that died
        mid-flight.  PROCESSED rows are always left alone.
        """
        with self._write_lock:
            cur = self._conn.execute(
                "DELETE FROM webhook_events "
                "WHERE provider = ? AND provider_event_id = ? "
                "AND (status = 'FAILED' OR (status = 'PENDING' AND created_at < ?))",
                (provider, provider_event_id, pending_before),
            )
            self._conn.commit()
            return cur.rowcount > 0

    # ------------------------------------------------------------------
    # Pricing tiers
    # ------------------------------------------------------------------

    def save_pricing_tier(self, tier: Dict[str, Any], *, overwrite: bool = True) -> bool:
        """Insert or (when *overwrite*) replace a pricing tier keyed by name.

        Returns True if a row was written.
        """
        now = time.time()
        existing = self.get_pricing_tier(tier["name"])
        row = {
            "id": existing["id"] if existing else tier.get("id") or new_id("tier"),
            "name": tier["name"],
            "display_name": tier.get("display_name", tier["name"]),
            "description": tier.get("description", ""),
            "max_nodes": tier["max_nodes"],
            "max_concurrent_jobs": tier["max_concurrent_jobs"],
            "price_monthly": tier.get("price_monthly", 0),
            "price_yearly": tier.get("price_yearly"),
            "stripe_price_id_monthly": tier.get("stripe_price_id_monthly"),
            "stripe_price_id_yearly": tier.get("stripe_price_id_yearly"),
            "patreon_tier_id": tier.get("patreon_tier_id"),
            "is_active": 1 if tier.get("is_active") else 0,
            "created_at": existing["created_at"] if existing else now,
            "updated_at": now,
        }
        verb = "INSERT OR REPLACE" if overwrite else "INSERT OR IGNORE"
        with self._write_lock:
            cur = self._conn.execute(
                f"""
                {verb} INTO pricing_tiers
                    (id, name, display_name, description, max_nodes,
                     max_concurrent_jobs, price_monthly, price_yearly,
                     stripe_price_id_monthly, stripe_price_id_yearly,
                     patreon_tier_id, is_active, created_at, updated_at)
                VALUES (:id, :name, :display_name, :description, :max_nodes,
                        :max_concurrent_jobs, :price_monthly, :price_yearly,
                        :stripe_price_id_monthly, :stripe_price_id_yearly,
                        :patreon_tier_id, :is_active, :created_at, :updated_at)
                """,
                row,
            )
            self._conn.commit()
            return cur.rowcount > 0

    def get_pricing_tier(self, name: str) -> Optional[Dict[str, Any]]:
        row = self._conn.execute(
            "SELECT * FROM pricing_tiers WHERE name = ?", (name,)
        ).fetchone()
        return dict(row) if row else None

    def get_pricing_tier_by_stripe_price(self, price_id: str) -> Optional[Dict[str, Any]]:
        row = self._conn.execute(
            "SELECT * FROM pricing_tiers "
            "WHERE stripe_price_id_monthly = ? OR stripe_price_id_yearly = ? "
            "ORDER BY is_active DESC LIMIT 1",
            (price_id, price_id),
        ).fetchone()
        return dict(row) if row else None

    def list_pricing_tiers(self, active_only: bool = False) -> List[Dict[str, Any]]:
        sql = "SELECT * FROM pricing_tiers "
        if active_only:
            sql += "WHERE is_active = 1 "
        sql += "ORDER BY price_monthly ASC, name ASC"
        return [dict(r) for r in self._conn.execute(sql).fetchall()]

    # ------------------------------------------------------------------
    # Donations
    # ------------------------------------------------------------------

    def save_donation(self, donation: Dict[str, Any]) -> bool:
        """Record a donation, ignoring duplicates on the provider event id.

        Returns True if a new row was inserted.
        """
        with self._write_lock:
            cur = self._conn.execute(
                """
                INSERT OR IGNORE INTO donations
                    (id, email, amount_cents, currency, provider,
                     provider_event_id, from_name, message, raw_payload,
                     created_at)
                VALUES (:id, :email, :amount_cents, :currency, :provider,
                        :provider_event_id, :from_name, :message,
                        :raw_payload, :created_at)
                """,
                {
                    "id": donation.get("id") or new_id("don"),
                    "email": donation["email"],
                    "amount_cents": donation["amount_cents"],
                    "currency": donation.get("currency", "USD"),
                    "provider": donation["provider"],
                    "provider_event_id": donation["provider_event_id"],
                    "from_name": donation.get("from_name"),
                    "message": donation.get("message"),
                    "raw_payload": json.dumps(donation.get("raw_payload", {}), default=str),
                    "created_at": donation.get("created_at", time.time()),
                },
            )
            self._conn.commit()
            return cur.rowcount > 0

    def list_donations(self, limit: int = 50) -> List[Dict[str, Any]]:
        rows = self._conn.execute(
            "SELECT * FROM donations ORDER BY created_at DESC LIMIT ?", (limit,)
        ).fetchall()
        return [dict(r) for r in rows]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            self._conn.execute("SELECT 1").fetchone()
        except sqlite3.Error as exc:
            logger.warning("Database ping failed: %s", exc)
            return False
        return True

    def close(self) -> None:
        """Close the underlying database connection."""
        self._conn.close()

    @property
    def path(self) -> str:
        """Return the filesystem path of the database."""
        return self._db_path


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

_db: Optional[LicenseDB] = None
_db_lock = threading.Lock()


def get_db() -> LicenseDB:
    """Return the module-level :class:`LicenseDB` singleton.

    The instance is lazily created on first call.
    """
    global _db
    with _db_lock:
        if _db is None:
            _db = LicenseDB()
        return _db
