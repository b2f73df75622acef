"""Pricing engine for job lines.

The engine turns the raw inputs of a job (unit cost, quantity, discount
policy, tax flag) into a service amount, a tax amount and a grand total. Every
function here is pure: no store access, no logging of business events and no
rounding. Presentation layers round at display time via
:func:`job_ledger.money.format_currency`.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

from . import money
from .constants import DiscountType


@dataclass(frozen=True)
class PriceBreakdown:
    """Unrounded result of pricing a single job line."""

    service_amount: float
    tax_amount: float
    total: float


def coerce_discount_type(value: Any) -> DiscountType:
    """Map stored or typed discount text onto :class:`DiscountType`.

    Unknown values, ``None`` and empty text all mean "no discount".
    """

    if isinstance(value, DiscountType):
        return value
    try:
        return DiscountType(str(value).strip())
    except ValueError:
        return DiscountType.NONE


def compute_service_amount(cost: Any, quantity: Any, discount_type: Any, discount_value: Any) -> float:
    """Compute the discounted line amount, never below zero.

    Args:
        cost (Any): Unit cost; unreadable input counts as ``0``.
        quantity (Any): Unit count; unreadable input counts as ``1``.
        discount_type (Any): A :class:`DiscountType` or its stored text.
        discount_value (Any): Percentage points for ``Percentage`` or a
            currency amount for ``FlatRate``; unreadable input counts as ``0``.

    Returns:
        float: ``cost * quantity`` less the discount, clamped at ``0``.
    """

    subtotal = money.parse_or_default(cost) * money.parse_quantity(quantity)
    discount = money.parse_or_default(discount_value)

    kind = coerce_discount_type(discount_type)
    if kind is DiscountType.PERCENTAGE:
        subtotal -= subtotal * (discount / 100)
    elif kind is DiscountType.FLAT_RATE:
        subtotal -= discount

    return max(subtotal, 0.0)


def compute_tax(service_amount: Any, tax_rate_percent: Any, apply_tax: bool) -> float:
    """Return sales tax on ``service_amount``, or ``0`` when tax is off."""

    if not apply_tax:
        return 0.0
    return money.parse_or_default(service_amount) * money.parse_or_default(tax_rate_percent) / 100


def compute_total(service_amount: float, tax_amount: float) -> float:
    """Add service and tax without rounding."""

    return service_amount + tax_amount


def balance_due(total: Any, paid: Any) -> float:
    """Outstanding balance; negative values mean the customer overpaid."""

    return money.parse_or_default(total) - money.parse_or_default(paid)


def price_line(
    cost: Any,
    quantity: Any,
    discount_type: Any,
    discount_value: Any,
    *,
    tax_rate_percent: Any,
    apply_tax: bool,
) -> PriceBreakdown:
    """Run the full service -> tax -> total pipeline for one line."""

    service = compute_service_amount(cost, quantity, discount_type, discount_value)
    tax = compute_tax(service, tax_rate_percent, apply_tax)
    return PriceBreakdown(service_amount=service, tax_amount=tax, total=compute_total(service, tax))


def price_fields(fields: Mapping[str, Any], tax_rate_percent: Any) -> PriceBreakdown:
    """Price a job document expressed with its stored (camelCase) field names.

    Missing fields take the same defaults a freshly created job has, notably
    ``applySalesTax`` which defaults to ``True``.
    """

    apply_tax = fields.get("applySalesTax")
    return price_line(
        fields.get("cost"),
        fields.get("quantity"),
        fields.get("discountType"),
        fields.get("discountValue"),
        tax_rate_percent=tax_rate_percent,
        apply_tax=True if apply_tax is None else bool(apply_tax),
    )


def price_job(job: Any, tax_rate_percent: Any) -> PriceBreakdown:
    """Price an object exposing the :class:`~job_ledger.core_logic.Job` attributes."""

    return price_line(
        job.cost,
        job.quantity,
        job.discount_type,
        job.discount_value,
        tax_rate_percent=tax_rate_percent,
        apply_tax=job.apply_sales_tax,
    )


def line_item_from_option(option: Any) -> float:
    """Untaxed amount of a workflow option's default line."""

    return compute_service_amount(option.cost, option.quantity, option.discount_type, option.discount_value)


__all__ = [
    "PriceBreakdown",
    "coerce_discount_type",
    "compute_service_amount",
    "compute_tax",
    "compute_total",
    "balance_due",
    "price_line",
    "price_fields",
    "price_job",
    "line_item_from_option",
]
