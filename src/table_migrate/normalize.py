"""Normalization functions for migrated field values.

All functions accept raw field text (or None) and return the value that is
handed to the target database.
"""

from __future__ import annotations

import re
from datetime import date, datetime

DATE_FORMAT = "%Y-%m-%d"
_DATE_RE = re.compile(r"[0-9]{4}-[0-9]{2}-[0-9]{2}")
MAX_LENGTH = 20


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = value.strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: coerce_scientific
# ---------------------------------------------------------------------------

def coerce_scientific(value: str) -> str | float:
    """Return a float for text in scientific notation, else the text unchanged.

    Only values containing an upper-case 'E' are candidates; PostgreSQL
    numeric columns reject exponent text such as '1E10'.
    """
    if "E" not in value:
        return value
    try:
        return float(value)
    except ValueError:
        return value


def finish_value(value: str | None) -> str | float | None:
    """Trim, map blank to None, then coerce scientific notation."""
    v = trim(value)
    if v is None:
        return None
    return coerce_scientific(v)


# ---------------------------------------------------------------------------
# Rule 3: keep_trailing
# ---------------------------------------------------------------------------

def keep_trailing(value: str, limit: int = MAX_LENGTH) -> str:
    """Keep only the last *limit* characters of value."""
    if len(value) > limit:
        return value[-limit:]
    return value


# ---------------------------------------------------------------------------
# Rule 4: parse_iso_date
# ---------------------------------------------------------------------------

def parse_iso_date(value: str) -> date:
    """Parse zero-padded YYYY-MM-DD. Raises ValueError on anything else."""
    if not _DATE_RE.fullmatch(value):
        raise ValueError(f"{value!r} is not YYYY-MM-DD")
    return datetime.strptime(value, DATE_FORMAT).date()


# ---------------------------------------------------------------------------
# Helper: split_names
# ---------------------------------------------------------------------------

def split_names(value: str | None) -> list[str]:
    """Split a comma-separated list, trimming items and dropping blanks."""
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]
