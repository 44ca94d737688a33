"""Normalization functions for personnel import rows.

All functions accept raw cell values (str, numbers, dates or None) as
produced by the CSV and workbook decoders.
"""

from __future__ import annotations

import re
import unicodedata
from datetime import date, datetime, time
from decimal import Decimal, InvalidOperation
from typing import Any

_TRUE_FLAGS = {"1", "true", "yes", "y", "t"}


def _text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: Any) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    v = _text(value)
    if v is None:
        return None
    v = v.strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: normalize_space
# ---------------------------------------------------------------------------

def normalize_space(value: Any) -> str | None:
    """Collapse internal runs of whitespace to single spaces, then trim."""
    v = trim(value)
    if v is None:
        return None
    return re.sub(r"\s+", " ", v)


# ---------------------------------------------------------------------------
# Rule 3: normalize_email
# ---------------------------------------------------------------------------

def normalize_email(value: Any) -> str | None:
    """Lowercase and trim an email address."""
    v = trim(value)
    if v is None:
        return None
    return v.lower()


# ---------------------------------------------------------------------------
# Rule 4: normalize_name  (lock / collision key only, never stored)
# ---------------------------------------------------------------------------

def normalize_name(value: Any) -> str | None:
    """Lowercase, strip accents, collapse spaces."""
    v = normalize_space(value)
    if v is None:
        return None
    v = unicodedata.normalize("NFKD", v)
    v = "".join(c for c in v if not unicodedata.combining(c))
    return v.lower()


# ---------------------------------------------------------------------------
# Rule 5: split_list  (cards, groups)
# ---------------------------------------------------------------------------

def split_list(value: Any) -> list[str]:
    """Split a comma-joined cell into trimmed, unique, non-empty tokens.

    Order of first appearance is kept.  A single numeric cell (a spreadsheet
    card number) is treated as a one-element list.
    """
    v = trim(value)
    if v is None:
        return []
    seen: set[str] = set()
    tokens: list[str] = []
    for part in v.split(","):
        token = part.strip()
        if token and token not in seen:
            seen.add(token)
            tokens.append(token)
    return tokens


# ---------------------------------------------------------------------------
# Rule 6: parse_count  (bluetooth / mobile target counts)
# ---------------------------------------------------------------------------

def parse_count(value: Any) -> int:
    """Parse a non-negative integer count.  Blank means 0.

    Raises ValueError for anything that is not a whole, non-negative number.
    """
    if isinstance(value, bool):
        raise ValueError(f"not a count: {value!r}")
    v = trim(value)
    if v is None:
        return 0
    if not re.fullmatch(r"\d+", v):
        raise ValueError(f"not a count: {value!r}")
    return int(v)


# ---------------------------------------------------------------------------
# Rule 7: parse_flag  (enabled)
# ---------------------------------------------------------------------------

def parse_flag(value: Any) -> bool:
    """Interpret a boolean-like cell.  Blank and unknown text are False."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    v = trim(value)
    if v is None:
        return False
    return v.lower() in _TRUE_FLAGS


# ---------------------------------------------------------------------------
# Rule 8: parse_pin  (exact integers, no float round-trip)
# ---------------------------------------------------------------------------

def parse_pin(value: Any) -> int | None:
    """Parse a pin as an exact integer.  Blank → None.

    Text is parsed digit-for-digit so long identifiers keep full precision.
    Integral floats (workbook numeric cells) are accepted.
    Raises ValueError for non-numeric or fractional input.
    """
    if isinstance(value, bool):
        raise ValueError(f"not a pin: {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not value.is_integer():
            raise ValueError(f"not a pin: {value!r}")
        return int(value)
    v = trim(value)
    if v is None:
        return None
    if re.fullmatch(r"[+-]?\d+", v):
        return int(v)
    try:
        d = Decimal(v)
    except InvalidOperation:
        raise ValueError(f"not a pin: {value!r}") from None
    if d != d.to_integral_value():
        raise ValueError(f"not a pin: {value!r}")
    return int(d)


# ---------------------------------------------------------------------------
# Rule 9: parse_datetime  (activeDate / expireDate)
# ---------------------------------------------------------------------------

def parse_datetime(value: Any) -> datetime | None:
    """Parse an ISO date or datetime.  Blank → None.

    Native workbook values (date, datetime) pass through; a bare date
    becomes midnight.  Raises ValueError when the text cannot be parsed.
    """
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime.combine(value, time.min)
    v = trim(value)
    if v is None:
        return None
    if v.endswith("Z"):
        v = v[:-1] + "+00:00"
    return datetime.fromisoformat(v)
