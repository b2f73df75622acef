"""Unit tests for the total/paid override reconciliation policy."""

from __future__ import annotations

import pytest

from job_ledger import overrides
from job_ledger.overrides import Reconciliation


def test_never_set_totals_take_the_candidate():
    """Stored zeros are reclaimed: total and paid both follow the candidate."""

    outcome = overrides.reconcile_totals(0, 0, 194.4)
    assert outcome == Reconciliation(total_amount=194.4, paid_amount=194.4, overwritten=True)


def test_nonzero_paid_survives_an_overwrite():
    """Only a zero paid amount follows the new total."""

    outcome = overrides.reconcile_totals(0, 50, 194.4)
    assert outcome.total_amount == 194.4
    assert outcome.paid_amount == 50
    assert outcome.overwritten is True


@pytest.mark.parametrize("stored", [194.4, 194.405, 194.395, 194.409])
def test_totals_within_a_cent_are_left_alone(stored):
    """A stored total within the tolerance is kept together with paid."""

    outcome = overrides.reconcile_totals(stored, 12, 194.4)
    assert outcome == Reconciliation(total_amount=stored, paid_amount=12, overwritten=False)


def test_diverged_manual_total_is_reclaimed():
    """A manual total further than a cent away is overwritten on the next pricing edit."""

    outcome = overrides.reconcile_totals(150, 150, 194.4)
    assert outcome.overwritten is True
    assert outcome.total_amount == 194.4
    assert outcome.paid_amount == 150


def test_repeated_recalculation_is_idempotent():
    """Once within tolerance, recomputing with unchanged inputs changes nothing."""

    fields = {"cost": 100, "quantity": 2, "discountType": "Percentage", "discountValue": 10}
    first = overrides.recalculate({**fields, "totalAmount": 0, "paidAmount": 0}, 8)
    assert first.overwritten is True

    settled = {**fields, "totalAmount": first.total_amount, "paidAmount": first.paid_amount}
    for _ in range(3):
        again = overrides.recalculate(settled, 8)
        assert again.overwritten is False
        assert (again.total_amount, again.paid_amount) == (first.total_amount, first.paid_amount)


def test_recalculate_reads_unparsable_stored_totals_as_zero():
    outcome = overrides.recalculate({"cost": "20", "totalAmount": "n/a", "paidAmount": None}, 0)
    assert outcome == Reconciliation(total_amount=20, paid_amount=20, overwritten=True)


def test_should_overwrite_boundaries():
    assert overrides.should_overwrite(0, 0) is True
    assert overrides.should_overwrite(10.0, 10.0) is False
    assert overrides.should_overwrite(10.0, 10.02) is True


def test_touches_pricing_detects_pricing_fields():
    assert overrides.touches_pricing(["notes", "cost"]) is True
    assert overrides.touches_pricing({"applySalesTax"}) is True
    assert overrides.touches_pricing(["notes", "totalAmount", "paidAmount", "status"]) is False
