"""
Logging setup and secret redaction.

stdout carries the control protocol, so all log output goes to stderr.
"""

import logging
import sys
from typing import Any

REDACTED = "[redacted]"

_SECRET_KEY_MARKERS = ("password", "passphrase")


def setup_logging(level: str = "INFO") -> None:
    """Configure the root logger on stderr."""
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    logging.basicConfig(
        level=numeric_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stderr,
    )


def _is_secret_key(key: Any) -> bool:
    lowered = str(key).lower()
    return any(marker in lowered for marker in _SECRET_KEY_MARKERS)


def redact_secrets(value: Any) -> Any:
    """Return a copy of a JSON-like value with password/passphrase values masked.

    Nested mappings and lists are walked. The input is never modified.
    """
    if isinstance(value, dict):
        return {
            k: REDACTED if _is_secret_key(k) else redact_secrets(v)
            for k, v in value.items()
        }
    if isinstance(value, list):
        return [redact_secrets(item) for item in value]
    return value
