"""
Small helpers shared across modules.
"""

from datetime import datetime, timezone
from typing import Any
from authbridge.constants import REDACTED_KEYS


def utcnow() -> datetime:
    """
    Naive UTC timestamp, matching how DateTime columns are stored.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def mask(value: Any, keep: int = 6) -> str:
    if value is None:
        return ""
    value = str(value)
    if len(value) <= keep:
        return "***"
    return f"{value[:keep]}..."


def redact(data: Any) -> Any:
    """
    Copy of a (nested) payload with secret-looking keys masked.
    """
    if isinstance(data, dict):
        return {
            key: mask(value) if key in REDACTED_KEYS and value else redact(value)
            for key, value in data.items()
        }
    if isinstance(data, (list, tuple)):
        return [redact(item) for item in data]
    return data
