"""CUIT / CUIL helpers.

``None`` means "unknown or unformattable"; it is a normal outcome, not an error.
"""

from __future__ import annotations

import re
from typing import Optional, Union

CUIT_LENGTH = 11

_SEPARATORS_RE = re.compile(r"[\s\-./_]")


def normalize_tax_id(value: Optional[Union[str, int]]) -> Optional[str]:
    """Strip separators and return the digit string, or ``None`` if nothing usable remains."""
    if value is None or isinstance(value, bool):
        return None
    text = _SEPARATORS_RE.sub("", str(value))
    if not text or not text.isdigit():
        return None
    return text


def format_tax_id(value: Optional[Union[str, int]]) -> Optional[str]:
    """``20123456789`` → ``20-12345678-9``; ``None`` unless exactly 11 digits."""
    digits = normalize_tax_id(value)
    if digits is None or len(digits) != CUIT_LENGTH:
        return None
    return f"{digits[:2]}-{digits[2:10]}-{digits[10:]}"


def tax_ids_equal(a: Optional[Union[str, int]], b: Optional[Union[str, int]]) -> bool:
    """Compare normalized forms; two unknown identifiers never compare equal."""
    left = normalize_tax_id(a)
    right = normalize_tax_id(b)
    if left is None or right is None:
        return False
    return left == right


def normalize_person_name(value: Optional[str]) -> Optional[str]:
    """Upper-case, collapse inner whitespace.  Used as the fallback match key."""
    if value is None:
        return None
    collapsed = " ".join(value.split()).upper()
    return collapsed or None
