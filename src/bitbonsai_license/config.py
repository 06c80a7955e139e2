"""Configuration for the license server.

Settings are resolved per key with this precedence (highest first):

    1. Explicit arguments to :func:`load_config` (CLI flags)
    2. Environment variables (``LICENSE_KEYS_DIR``, ``ADMIN_API_KEY``, ...)
    3. Config file (``~/.bitbonsai/license-server.yaml`` or ``BITBONSAI_CONFIG``)
    4. Built-in defaults

``.env`` files in the working directory and ``~/.bitbonsai/`` are loaded
into the environment first; variables already set win over ``.env``.
"""

from __future__ import annotations

import logging
import os
import stat
import sys
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

DEFAULT_PORT = 3200
DEFAULT_HOST = "127.0.0.1"
DEFAULT_KEYS_DIR = "./keys"
DEFAULT_EMAIL_FROM = "BitBonsai <noreply@bitbonsai.io>"

# field name -> environment variable
_ENV_VARS: dict[str, str] = {
    "keys_dir": "LICENSE_KEYS_DIR",
    "db_path": "LICENSE_DB_PATH",
    "admin_api_key": "ADMIN_API_KEY",
    "stripe_secret_key": "STRIPE_SECRET_KEY",
    "stripe_webhook_secret": "STRIPE_WEBHOOK_SECRET",
    "patreon_webhook_secret": "PATREON_WEBHOOK_SECRET",
    "kofi_verification_token": "KOFI_VERIFICATION_TOKEN",
    "resend_api_key": "RESEND_API_KEY",
    "email_from": "EMAIL_FROM",
    "host": "LICENSE_API_HOST",
    "port": "LICENSE_API_PORT",
    "log_dir": "LICENSE_LOG_DIR",
    "log_level": "LICENSE_LOG_LEVEL",
}

_SECRET_FIELDS = frozenset(
    {
        "admin_api_key",
        "stripe_secret_key",
        "stripe_webhook_secret",
        "patreon_webhook_secret",
        "kofi_verification_token",
        "resend_api_key",
    }
)


@dataclass
class ServerConfig:
    """Resolved server settings.  Empty strings mean "not configured"."""

    keys_dir: str = DEFAULT_KEYS_DIR
    db_path: str | None = None
    admin_api_key: str = ""
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    patreon_webhook_secret: str = ""
    kofi_verification_token: str = ""
    resend_api_key: str = ""
    email_from: str = DEFAULT_EMAIL_FROM
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    log_dir: str | None = None
    log_level: str | None = None

    def to_dict(self, *, reveal_secrets: bool = False) -> dict[str, Any]:
        data = asdict(self)
        if not reveal_secrets:
            for name in _SECRET_FIELDS:
                data[name] = "***" if data[name] else ""
        return data


def get_config_path() -> Path:
    """Return the config file path (``BITBONSAI_CONFIG`` or the default)."""
    override = os.environ.get("BITBONSAI_CONFIG", "").strip()
    if override:
        return Path(override).expanduser()
    return Path.home() / ".bitbonsai" / "license-server.yaml"


def load_env_files() -> None:
    """Load ``.env`` from the working directory and ``~/.bitbonsai/``."""
    from dotenv import load_dotenv

    load_dotenv(Path.cwd() / ".env")
    load_dotenv(Path.home() / ".bitbonsai" / ".env")


# ---------------------------------------------------------------------------
# Config file
# ---------------------------------------------------------------------------


def _check_file_permissions(path: Path) -> None:
    """Warn if a config file that may hold secrets is group/world readable."""
    if sys.platform == "win32":
        return
    try:
        mode = path.stat().st_mode
    except OSError:
        return
    if mode & (stat.S_IRGRP | stat.S_IWGRP | stat.S_IROTH | stat.S_IWOTH):
        logger.warning(
            "Config file %s has overly permissive permissions (mode %04o). Recommended: chmod 600 %s",
            path,
            stat.S_IMODE(mode),
            path,
        )


def _read_config_file(path: Path) -> dict[str, Any]:
    """Read and parse the YAML config file; return ``{}`` on any failure."""
    if not path.is_file():
        return {}
    _check_file_permissions(path)
    try:
        with path.open("r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
    except yaml.YAMLError as exc:
        logger.warning("Config file %s has invalid YAML: %s - ignoring it.", path, exc)
        return {}
    except OSError as exc:
        logger.warning("Could not read config file %s: %s", path, exc)
        return {}
    if not isinstance(data, dict):
        return {}

    known = {f.name for f in fields(ServerConfig)}
    for key in sorted(set(data) - known):
        logger.warning(
            "Config file %s contains unknown key %r (expected one of: %s)",
            path,
            key,
            ", ".join(sorted(known)),
        )
    return {k: v for k, v in data.items() if k in known}


def _coerce_port(value: Any, source: str) -> int:
    try:
        port = int(value)
    except (TypeError, ValueError):
        logger.warning("Invalid port %r from %s, using default %d", value, source, DEFAULT_PORT)
        return DEFAULT_PORT
    if not 0 < port < 65536:
        logger.warning("Port %d from %s out of range, using default %d", port, source, DEFAULT_PORT)
        return DEFAULT_PORT
    return port


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------


def load_config(
    overrides: dict[str, Any] | None = None,
    *,
    config_path: Path | None = None,
    load_env: bool = True,
) -> ServerConfig:
    """Build a :class:`ServerConfig` from arguments, environment, and file.

    Args:
        overrides: Explicit values (``None`` entries are ignored).
        config_path: YAML file to read instead of :func:`get_config_path`.
        load_env: Load ``.env`` files before reading the environment.
    """
    if load_env:
        load_env_files()

    path = config_path or get_config_path()
    values: dict[str, Any] = _read_config_file(path)
    for name, env_var in _ENV_VARS.items():
        raw = os.environ.get(env_var, "").strip()
        if raw:
            values[name] = raw
    for name, value in (overrides or {}).items():
        if value is None:
            continue
        if name not in _ENV_VARS:
            raise ValueError(f"Unknown configuration key: {name!r}")
        values[name] = value

    if "port" in values:
        values["port"] = _coerce_port(values["port"], "configuration")
    for name in ("keys_dir", "db_path", "log_dir"):
        if values.get(name):
            values[name] = str(Path(str(values[name])).expanduser())

    config = ServerConfig(**values)
    logger.debug("Loaded configuration: %s", config.to_dict())
    return config
