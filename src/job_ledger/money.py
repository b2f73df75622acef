"""Safe numeric parsing and presentation helpers.

Form input arrives as free text. Rather than rejecting a half-typed cost or an
empty quantity box, the ledger coerces anything it cannot read to a neutral
default and keeps going. The coercion is deliberately concentrated in
:func:`parse_or_default` so that callers (and tests) can reason about exactly
one fallback policy.

Rounding happens only when a figure is shown to a person. Stored amounts keep
full floating point precision.
"""

from __future__ import annotations

import math
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional

from . import log


CENT = Decimal("0.01")


def parse_or_default(value: Any, default: float = 0.0) -> float:
    """Parse ``value`` as a float, falling back to ``default`` when unreadable.

    Numbers pass through unchanged. Text is stripped of surrounding
    whitespace, a leading currency sign and thousands separators before
    parsing. ``None``, empty text, booleans, garbage and non-finite values all
    yield ``default``. The function never raises.

    Args:
        value (Any): Raw input, typically a form field or a stored cell.
        default (float): Value returned when ``value`` cannot be read.

    Returns:
        float: The parsed number or ``default``.
    """

    if value is None or isinstance(value, bool):
        return default

    if isinstance(value, (int, float, Decimal)):
        try:
            number = float(value)
        except (OverflowError, ValueError):
            log.debug("Parse fallback: %r does not fit a float, using %s", value, default)
            return default
    else:
        text = str(value).strip().replace(",", "").replace("$", "")
        if not text:
            return default
        try:
            number = float(text)
        except ValueError:
            log.debug("Parse fallback: %r is not numeric, using %s", value, default)
            return default

    if not math.isfinite(number):
        log.debug("Parse fallback: %r is not finite, using %s", value, default)
        return default
    return number


def parse_quantity(value: Any) -> int:
    """Parse a line quantity as an integer of at least one.

    Fractional input is truncated toward zero, unreadable input counts as a
    single unit, and anything below one is raised to one.
    """

    if isinstance(value, int) and not isinstance(value, bool):
        quantity = value
    else:
        quantity = int(parse_or_default(value, 1.0))
    return max(quantity, 1)


def round_money(amount: Any) -> float:
    """Round an amount half-up to whole cents for display."""

    quantized = Decimal(str(parse_or_default(amount))).quantize(CENT, rounding=ROUND_HALF_UP)
    return float(quantized)


def format_currency(amount: Any) -> str:
    """Format an amount as US currency, e.g. ``$1,234.50`` or ``-$5.00``."""

    quantized = Decimal(str(parse_or_default(amount))).quantize(CENT, rounding=ROUND_HALF_UP)
    sign = "-" if quantized < 0 else ""
    return f"{sign}${abs(quantized):,.2f}"


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Convert dates, datetimes and ISO text into a naive ``datetime``.

    Returns ``None`` for missing or unreadable values. Timezone-aware input is
    kept as-is; the workbook store handles the conversion it needs.
    """

    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    try:
        return datetime.fromisoformat(str(value).strip())
    except ValueError:
        log.debug("Parse fallback: %r is not an ISO date", value)
        return None


def format_short_date(value: Any) -> str:
    """Format a date the way a US locale short date reads, e.g. ``3/7/2025``."""

    moment = parse_timestamp(value)
    if moment is None:
        return ""
    return f"{moment.month}/{moment.day}/{moment.year}"


__all__ = [
    "parse_or_default",
    "parse_quantity",
    "round_money",
    "format_currency",
    "parse_timestamp",
    "format_short_date",
]
