"""Locale-tolerant money parsing and fixed-point arithmetic.

Money is ``decimal.Decimal`` end to end.  Parsed values keep the scale they were
written with; rounding to the currency's minor unit happens only in
:func:`round_money`, which is meant for presentation and report boundaries.

Separator rules for ``parse_amount``:

* both ``.`` and ``,`` present: the right-most one is the decimal marker;
* a single separator type appearing more than once: grouping;
* a single separator appearing once: decimal, unless exactly three digits follow
  it and the integer part could be a leading thousands group (``1.234``).  That
  case is genuinely ambiguous and is resolved by the caller's locale hint; with no
  hint it is rejected rather than guessed.
"""

from __future__ import annotations

import math
import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation, localcontext
from enum import StrEnum
from typing import Iterable, Optional, Union

from app.services.errors import ParseError, ParseErrorKind

MINOR_UNIT = Decimal("0.01")
ZERO = Decimal("0")

AmountInput = Union[str, int, float, Decimal]

_NOISE_RE = re.compile(r"[\s$]|ARS", re.IGNORECASE)
_DIGITS_RE = re.compile(r"^\d*$")


class LocaleHint(StrEnum):
    AR = "es-AR"  # 2.285.254,37
    EN = "en-US"  # 2,285,254.37


_DECIMAL_MARK = {LocaleHint.AR: ",", LocaleHint.EN: "."}
_GROUPING_MARK = {LocaleHint.AR: ".", LocaleHint.EN: ","}


def coerce_locale(hint: Optional[Union[str, LocaleHint]]) -> Optional[LocaleHint]:
    """Accept ``es-AR`` / ``es_AR`` / ``ar`` / ``en-US`` / ``en`` style hints."""
    if hint is None or hint == "":
        return None
    if isinstance(hint, LocaleHint):
        return hint
    token = str(hint).strip().lower().replace("_", "-")
    if token in {"es-ar", "ar", "es"}:
        return LocaleHint.AR
    if token in {"en-us", "en", "us"}:
        return LocaleHint.EN
    raise ValueError(f"Unknown locale hint: {hint!r}")


def _invalid(raw: object, reason: str) -> ParseError:
    return ParseError(ParseErrorKind.INVALID_AMOUNT, f"Monto inválido {raw!r}: {reason}")


def _valid_groups(integer_text: str, mark: str) -> bool:
    parts = integer_text.split(mark)
    if not 1 <= len(parts[0]) <= 3:
        return False
    return all(len(part) == 3 for part in parts[1:])


def parse_amount(raw: AmountInput, locale_hint: Optional[Union[str, LocaleHint]] = None) -> Decimal:
    """Parse *raw* into a ``Decimal`` without any rounding.

    Numbers coming from JSON (``int`` / ``float``) are accepted too; floats go
    through their shortest ``repr`` so ``22852.54`` stays ``22852.54``.
    """
    if isinstance(raw, bool):
        raise _invalid(raw, "booleano")
    if isinstance(raw, Decimal):
        if not raw.is_finite():
            raise _invalid(raw, "no finito")
        return raw
    if isinstance(raw, int):
        return Decimal(raw)
    if isinstance(raw, float):
        if not math.isfinite(raw):
            raise _invalid(raw, "no finito")
        return Decimal(repr(raw))
    if not isinstance(raw, str):
        raise _invalid(raw, "tipo no soportado")

    text = _NOISE_RE.sub("", raw)
    negative = False
    if text.startswith("(") and text.endswith(")"):
        negative, text = True, text[1:-1]
    if text.startswith("-"):
        negative, text = not negative, text[1:]
    elif text.startswith("+"):
        text = text[1:]
    if not text:
        raise _invalid(raw, "vacío")

    integer, fraction = text, ""
    has_dot, has_comma = "." in text, "," in text

    if has_dot and has_comma:
        decimal_mark = "." if text.rfind(".") > text.rfind(",") else ","
        grouping_mark = "," if decimal_mark == "." else "."
        if text.count(decimal_mark) != 1:
            raise _invalid(raw, "separador decimal repetido")
        integer, fraction = text.split(decimal_mark)
        if not _valid_groups(integer, grouping_mark):
            raise _invalid(raw, "agrupación de miles inválida")
        integer = integer.replace(grouping_mark, "")
    elif has_dot or has_comma:
        mark = "." if has_dot else ","
        if text.count(mark) > 1:
            if not _valid_groups(text, mark):
                raise _invalid(raw, "agrupación de miles inválida")
            integer = text.replace(mark, "")
        else:
            head, tail = text.split(mark)
            could_be_grouping = len(tail) == 3 and 1 <= len(head) <= 3 and head != "0"
            if could_be_grouping:
                locale = coerce_locale(locale_hint)
                if locale is None:
                    raise _invalid(raw, "separador ambiguo sin configuración regional")
                if _GROUPING_MARK[locale] == mark:
                    integer = head + tail
                else:
                    integer, fraction = head, tail
            else:
                integer, fraction = head, tail

    if not _DIGITS_RE.match(integer) or not _DIGITS_RE.match(fraction):
        raise _invalid(raw, "caracteres no numéricos")
    if not integer and not fraction:
        raise _invalid(raw, "sin dígitos")

    literal = f"{integer or '0'}.{fraction}" if fraction else (integer or "0")
    try:
        value = Decimal(literal)
    except InvalidOperation as exc:  # pragma: no cover
        raise _invalid(raw, "no convertible") from exc
    return -value if negative else value


def parse_optional_amount(
    raw: Optional[AmountInput], locale_hint: Optional[Union[str, LocaleHint]] = None
) -> Optional[Decimal]:
    if raw is None or (isinstance(raw, str) and raw.strip() == ""):
        return None
    return parse_amount(raw, locale_hint)


def format_amount(value: Decimal, locale: Union[str, LocaleHint] = LocaleHint.AR) -> str:
    """Render *value* with grouping and at least two decimals, keeping every digit."""
    resolved = coerce_locale(locale) or LocaleHint.AR
    negative = value < 0
    integer, _, fraction = format(abs(value), "f").partition(".")
    fraction = fraction.ljust(2, "0")
    grouped = f"{int(integer):,}".replace(",", _GROUPING_MARK[resolved])
    return f"{'-' if negative else ''}{grouped}{_DECIMAL_MARK[resolved]}{fraction}"


def sum_amounts(values: Iterable[Decimal]) -> Decimal:
    # Exact addition: a wide context keeps the result independent of input order.
    with localcontext() as ctx:
        ctx.prec = 60
        total = ZERO
        for value in values:
            total += value
    return total


def difference(a: Decimal, b: Decimal) -> Decimal:
    """Signed ``a - b``."""
    return a - b


def percent_of(part: Decimal, whole: Decimal) -> Decimal:
    if whole == 0:
        return ZERO
    return part / whole * 100


def within_tolerance(
    a: Decimal,
    b: Decimal,
    tolerance_abs: Decimal = ZERO,
    tolerance_pct: Decimal = ZERO,
) -> bool:
    """True when ``|a - b| <= tolerance_abs + tolerance_pct * max(|a|, |b|)``.

    ``tolerance_pct`` is a fraction (``Decimal("0.001")`` is 0.1%).
    """
    allowed = tolerance_abs + tolerance_pct * max(abs(a), abs(b))
    return abs(a - b) <= allowed


def scaled_tolerance(amount: Decimal, pct: Decimal = Decimal("0.001"), minimum: Decimal = Decimal("1")) -> Decimal:
    """Tolerance that grows with *amount* but never drops below *minimum*."""
    return max(minimum, abs(amount) * pct)


def round_money(value: Decimal, unit: Decimal = MINOR_UNIT) -> Decimal:
    return value.quantize(unit, rounding=ROUND_HALF_UP)
