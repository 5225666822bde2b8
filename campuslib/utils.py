"""Shared ID, timestamp and number parsing helpers."""

from __future__ import annotations

import random
import re
import string
import time
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Optional

_INT_PREFIX = re.compile(r"^\s*([+-]?\d+)")
_DECIMAL_PREFIX = re.compile(r"^\s*([+-]?(?:\d+\.?\d*|\.\d+))")
_ID_ALPHABET = string.ascii_lowercase + string.digits


def new_id() -> str:
    """Millisecond timestamp plus a random suffix, e.g. ``1718031234567-k3j9x0a2q``."""
    suffix = "".join(random.choices(_ID_ALPHABET, k=9))
    return f"{int(time.time() * 1000)}-{suffix}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """Serialize to a fixed-width UTC ISO string so text order is time order."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_iso(value) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_int_prefix(raw: Optional[str]) -> Optional[int]:
    """Lenient integer parsing: ``"7 days"`` and ``"7.9"`` both give 7."""
    if raw is None:
        return None
    match = _INT_PREFIX.match(str(raw))
    return int(match.group(1)) if match else None


def parse_decimal_prefix(raw: Optional[str]) -> Optional[Decimal]:
    """Lenient decimal parsing using the leading numeric part of ``raw``."""
    if raw is None:
        return None
    match = _DECIMAL_PREFIX.match(str(raw))
    if not match:
        return None
    try:
        return Decimal(match.group(1))
    except InvalidOperation:
        return None
