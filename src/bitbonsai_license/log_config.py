"""Log rotation and sensitive data scrubbing for the license server.

The scrub filter redacts API keys, webhook secrets, bearer tokens, and
full license tokens from log output.  A license token keeps only its
``BITBONSAI-XXX-`` prefix so support can still see which tier was
involved.
"""

from __future__ import annotations

import logging
import os
import re
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

_DEFAULT_LOG_DIR = os.path.join(str(Path.home()), ".bitbonsai", "logs")
_REDACTED = "***REDACTED***"

_VALUE = r'["\x27]?\s*[:=]\s*["\x27]?)([^"\x27\s,}{\]]+)'

_SCRUB_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"(BITBONSAI-[A-Z]{3}-)[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+"), r"\1" + _REDACTED),
    (re.compile(r"(Authorization:\s*Bearer\s+)(\S+)", re.IGNORECASE), r"\1" + _REDACTED),
    (re.compile(r"(X-API-Key:\s*)(\S+)", re.IGNORECASE), r"\1" + _REDACTED),
    (re.compile(r"(api_key" + _VALUE, re.IGNORECASE), r"\1" + _REDACTED),
    (re.compile(r"(token" + _VALUE, re.IGNORECASE), r"\1" + _REDACTED),
    (re.compile(r"(secret" + _VALUE, re.IGNORECASE), r"\1" + _REDACTED),
    (re.compile(r"(password" + _VALUE, re.IGNORECASE), r"\1" + _REDACTED),
    (re.compile(r"\b(whsec_|sk_live_|sk_test_|rk_live_|re_)[A-Za-z0-9]{8,}"), r"\1" + _REDACTED),
]


class ScrubFilter(logging.Filter):
    """Logging filter that redacts secrets and license tokens."""

    def filter(self, record: logging.LogRecord) -> bool:
        if record.msg and isinstance(record.msg, str):
            record.msg = scrub(record.msg)
        if record.args:
            if isinstance(record.args, dict):
                record.args = {k: scrub(v) if isinstance(v, str) else v for k, v in record.args.items()}
            elif isinstance(record.args, tuple):
                record.args = tuple(scrub(a) if isinstance(a, str) else a for a in record.args)
        return True


def scrub(text: str) -> str:
    """Apply all scrub patterns to *text*."""
    for pattern, replacement in _SCRUB_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def configure_logging(
    log_dir: Optional[str] = None,
    *,
    max_bytes: int = 10_000_000,
    backup_count: int = 5,
    level: Optional[str] = None,
) -> str:
    """Install a rotating file handler and the scrub filter on the root logger.

    :param log_dir: Directory for log files.  Reads ``LICENSE_LOG_DIR``,
        then falls back to ``~/.bitbonsai/logs/``.
    :param max_bytes: Maximum log file size before rotation (default 10 MB).
    :param backup_count: Number of rotated log files to keep (default 5).
    :param level: Log level name.  Reads ``LICENSE_LOG_LEVEL``, then
        falls back to ``"INFO"``.
    :returns: Path of the active log file.
    """
    log_dir = log_dir or os.environ.get("LICENSE_LOG_DIR") or _DEFAULT_LOG_DIR
    level = level or os.environ.get("LICENSE_LOG_LEVEL") or "INFO"

    os.makedirs(log_dir, exist_ok=True)
    log_path = os.path.join(log_dir, "license-server.log")
    log_level = getattr(logging, level.upper(), logging.INFO)

    scrub_filter = ScrubFilter()
    root = logging.getLogger()
    root.setLevel(log_level)

    if not any(isinstance(h, RotatingFileHandler) for h in root.handlers):
        file_handler = RotatingFileHandler(log_path, maxBytes=max_bytes, backupCount=backup_count)
        file_handler.setLevel(log_level)
        file_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s %(name)s %(levelname)s %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
        root.addHandler(file_handler)

    for handler in root.handlers:
        if not any(isinstance(f, ScrubFilter) for f in handler.filters):
            handler.addFilter(scrub_filter)
    return log_path
