"""Reconciliation between computed and manually edited job totals.

While a work order is drafted, ``totalAmount`` and ``paidAmount`` follow the
pricing engine. A person may also type a different total or paid figure
straight into the financial summary. Whenever any pricing input changes the
ledger decides, through :func:`reconcile_totals`, whether the stored figures
are replaced by a fresh computation or kept.

The rule: overwrite when the stored total is exactly zero or has drifted more
than :data:`~job_ledger.constants.OVERRIDE_TOLERANCE` from the candidate.
Otherwise leave both figures alone. On overwrite the paid amount follows the
new total only if it was still zero.

Note that a manual total which differs from the computed one by more than a
cent is therefore reclaimed by the next pricing edit. That is the established
behaviour of the ledger and is reproduced as such.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Mapping

from . import money, pricing
from .constants import OVERRIDE_TOLERANCE


# Job fields whose change triggers a reconciliation pass.
PRICING_FIELDS = frozenset({"cost", "quantity", "discountType", "discountValue", "applySalesTax"})


@dataclass(frozen=True)
class Reconciliation:
    """Outcome of one reconciliation pass."""

    total_amount: float
    paid_amount: float
    overwritten: bool


def should_overwrite(stored_total: float, candidate_total: float) -> bool:
    """Return ``True`` when the stored total must give way to the candidate."""

    return stored_total == 0 or abs(stored_total - candidate_total) > OVERRIDE_TOLERANCE


def reconcile_totals(stored_total: Any, stored_paid: Any, candidate_total: float) -> Reconciliation:
    """Decide the total and paid amounts after a pricing input changed.

    Args:
        stored_total (Any): Currently stored ``totalAmount``.
        stored_paid (Any): Currently stored ``paidAmount``.
        candidate_total (float): Freshly computed grand total.

    Returns:
        Reconciliation: The figures to store and whether an overwrite
            happened. Without an overwrite the stored values come back
            unchanged.
    """

    total = money.parse_or_default(stored_total)
    paid = money.parse_or_default(stored_paid)

    if not should_overwrite(total, candidate_total):
        return Reconciliation(total_amount=total, paid_amount=paid, overwritten=False)

    new_paid = candidate_total if paid == 0 else paid
    return Reconciliation(total_amount=candidate_total, paid_amount=new_paid, overwritten=True)


def recalculate(fields: Mapping[str, Any], tax_rate_percent: Any) -> Reconciliation:
    """Price a job document and reconcile it against its stored totals."""

    breakdown = pricing.price_fields(fields, tax_rate_percent)
    return reconcile_totals(fields.get("totalAmount"), fields.get("paidAmount"), breakdown.total)


def touches_pricing(changes: Iterable[str]) -> bool:
    """Return ``True`` when the changed field names include a pricing input."""

    return any(name in PRICING_FIELDS for name in changes)


__all__ = [
    "PRICING_FIELDS",
    "Reconciliation",
    "should_overwrite",
    "reconcile_totals",
    "recalculate",
    "touches_pricing",
]
