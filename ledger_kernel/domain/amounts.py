"""
Exact-decimal amount helpers.

Responsibility:
    Normalizes locale-formatted money text ("$1,234.56", "(12.00)",
    "1.234,56 EUR", "12.50-") into exact ``Decimal`` values, and provides
    the tolerance comparison and canonical hashing used throughout the
    ledger.  No floats anywhere.

Architecture position:
    Kernel > Domain -- pure functions, zero I/O.
"""

from __future__ import annotations

import hashlib
import json
import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any
from uuid import UUID

# Maximum absolute mismatch treated as "equal" for balances and
# double-entry totals.
DEFAULT_TOLERANCE = Decimal("0.01")

_CURRENCY_SYMBOLS = "$€£¥₹₩₽¢"
_ISO_CODE_RE = re.compile(r"[A-Z]{3}")
_STRIP_RE = re.compile(rf"[\s\u00a0\u202f'\u2019{re.escape(_CURRENCY_SYMBOLS)}]")
_NUMERIC_RE = re.compile(r"\d[\d.,]*|[.,]\d+")


def parse_locale_decimal(raw: Any) -> Decimal | None:
    """
    Parse locale-formatted money text into an exact Decimal.

    Returns None when the text is empty or not a number; callers decide
    whether that is an error.

    Rules:
        - Currency symbols, ISO codes, whitespace and apostrophe
          thousands separators are dropped.
        - Parentheses or a leading/trailing minus mean negative.
        - When both ``.`` and ``,`` appear, the last one is the decimal
          separator.  A lone ``,`` followed by exactly three digits is a
          thousands separator, otherwise it is a decimal comma.  A ``.``
          repeated more than once is a thousands separator.
    """
    if raw is None:
        return None
    if isinstance(raw, Decimal):
        return raw
    if isinstance(raw, int) and not isinstance(raw, bool):
        return Decimal(raw)

    text = str(raw).strip()
    if not text:
        return None

    negative = False
    if text.startswith("(") and text.endswith(")"):
        negative = True
        text = text[1:-1]

    text = _ISO_CODE_RE.sub("", text)
    text = _STRIP_RE.sub("", text)

    if text.endswith("-"):
        negative = True
        text = text[:-1]
    if text.startswith("-"):
        negative = True
        text = text[1:]
    elif text.startswith("+"):
        text = text[1:]

    if not text or not _NUMERIC_RE.fullmatch(text):
        return None

    text = _normalize_separators(text)
    try:
        value = Decimal(text)
    except InvalidOperation:
        return None
    return -value if negative else value


def _normalize_separators(text: str) -> str:
    last_dot = text.rfind(".")
    last_comma = text.rfind(",")

    if last_dot >= 0 and last_comma >= 0:
        if last_comma > last_dot:
            return text.replace(".", "").replace(",", ".")
        return text.replace(",", "")

    if last_comma >= 0:
        if text.count(",") == 1 and len(text) - last_comma - 1 != 3:
            return text.replace(",", ".")
        return text.replace(",", "")

    if text.count(".") > 1:
        return text.replace(".", "")
    return text


def within_tolerance(
    left: Decimal, right: Decimal, tolerance: Decimal = DEFAULT_TOLERANCE
) -> bool:
    """True when ``|left - right| <= tolerance``."""
    return abs(left - right) <= tolerance


def to_json_safe(value: Any) -> Any:
    """Convert a value to a JSON-serializable form (Decimal/date/UUID as str)."""
    if isinstance(value, dict):
        return {str(k): to_json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_json_safe(v) for v in value]
    if isinstance(value, (set, frozenset)):
        return sorted(to_json_safe(v) for v in value)
    if isinstance(value, Decimal):
        return format(value, "f")
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    return value


def canonical_json(data: Any) -> str:
    """Deterministic JSON text: sorted keys, no whitespace, exact decimals."""
    return json.dumps(to_json_safe(data), sort_keys=True, separators=(",", ":"))


def content_hash(data: Any) -> str:
    """SHA-256 hex digest of the canonical JSON form of ``data``."""
    return hashlib.sha256(canonical_json(data).encode("utf-8")).hexdigest()
