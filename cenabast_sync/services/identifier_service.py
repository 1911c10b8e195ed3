from __future__ import annotations

import math
import re

# Internal placeholder ids such as "11-101" are far below any real tax id.
MIN_TAX_ID = 1_000_000

_NON_DIGITS = re.compile(r'\D')
_TAX_ID_GROUPING = re.compile(r'[.,\s]')


def _digits_only(raw: object) -> str:
    if isinstance(raw, bool) or (isinstance(raw, float) and not math.isfinite(raw)):
        return ''
    if isinstance(raw, (int, float)):
        return str(abs(int(raw)))
    return _NON_DIGITS.sub('', str(raw))


def normalize_tax_id(raw: object) -> int | None:
    """Convert a tax id like "96.519.830-K" into 96519830.

    Grouping punctuation is removed and the check digit segment after the last
    dash is discarded. Returns None for anything that does not parse or falls
    below MIN_TAX_ID.
    """
    if raw is None or isinstance(raw, bool) or (isinstance(raw, float) and not math.isfinite(raw)):
        return None
    if isinstance(raw, (int, float)):
        value = int(raw)
        return value if value >= MIN_TAX_ID else None

    cleaned = _TAX_ID_GROUPING.sub('', str(raw))
    if not cleaned:
        return None
    if '-' in cleaned:
        cleaned = cleaned.rsplit('-', 1)[0]
    if not cleaned.isdigit():
        return None
    value = int(cleaned)
    return value if value >= MIN_TAX_ID else None


def normalize_digits(raw: object) -> int | None:
    """Digits-only integer where 0 means "not provided"."""
    if raw is None:
        return None
    digits = _digits_only(raw)
    if not digits:
        return None
    value = int(digits)
    return value or None


def normalize_generic_code(raw: object) -> int:
    """Digits-only national product code where 0 means "unknown"."""
    if raw is None:
        return 0
    digits = _digits_only(raw)
    return int(digits) if digits else 0
