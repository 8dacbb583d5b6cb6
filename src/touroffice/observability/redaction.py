"""Redaction helpers for safe logging.

Customer contact snapshots (names, emails, phones) travel with proposals and
tickets; none of it may reach the logs. Gateway references are logged by
prefix only.
"""

import re
from decimal import Decimal
from typing import Any

_PHONE_PATTERN = re.compile(r"\+?\d[\d\s\-().]{8,}\d")
_EMAIL_PATTERN = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")

_REDACTED = "[REDACTED]"
_REFERENCE_PREFIX_LEN = 8


def redact_string(value: str) -> str:
    """Replace emails and phone numbers inside a string."""
    result = _EMAIL_PATTERN.sub(_REDACTED, value)
    return _PHONE_PATTERN.sub(_REDACTED, result)


def mask_reference(ref: str | None) -> str | None:
    """Keep only the leading characters of a gateway/secret reference."""
    if ref is None:
        return None
    if len(ref) <= _REFERENCE_PREFIX_LEN:
        return ref
    return ref[:_REFERENCE_PREFIX_LEN] + "..."


def redact_value(value: Any) -> str:
    """Render any value as a log-safe string."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, (int, float, Decimal)):
        return str(value)
    if isinstance(value, str):
        return redact_string(value)
    if isinstance(value, dict):
        # structure only
        return f"dict(keys={sorted(value.keys())})"
    if isinstance(value, (list, tuple, set)):
        return f"list(len={len(value)})"
    return f"<{type(value).__name__}>"


def safe_log_context(**kwargs: Any) -> dict[str, str]:
    """Build a context dict safe for logging. All values are redacted."""
    return {k: redact_value(v) for k, v in kwargs.items()}
