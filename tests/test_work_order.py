"""Unit tests for work order assembly, rendering and export."""

from __future__ import annotations

from datetime import datetime

import openpyxl
import pytest

from job_ledger import core_logic, work_order
from job_ledger.constants import DiscountType, JobStatus


@pytest.fixture
def profile():
    return core_logic.TenantProfile(
        company_name="Clear View Glass",
        address="12 Harbour Rd",
        phone="555-0199",
        email="hi@clearview.test",
        sales_tax_rate=8,
    )


@pytest.fixture
def job():
    return core_logic.Job(
        id="j1",
        customer_id="c1",
        customer_name="Ada Lovelace",
        date=datetime(2025, 3, 7),
        glass_type="Windshield",
        damage_type="Chip",
        repair_replacement="Repair",
        cost=100,
        quantity=2,
        discount_type=DiscountType.PERCENTAGE,
        discount_value=10,
        notes="Park in bay 2",
        total_amount=194.4,
        paid_amount=50,
    )


def test_assemble_work_order_figures(job, profile):
    order = work_order.assemble_work_order(job, profile)

    assert order.service_amount == pytest.approx(180.0)
    assert order.tax_amount == pytest.approx(14.4)
    assert order.total == 194.4
    assert order.paid == 50
    assert order.balance_due == pytest.approx(144.4)
    assert order.customer_label == "Ada Lovelace"
    assert order.job_line == "Windshield - Chip - Repair"
    assert order.discount_label == "10% off"


def test_assemble_uses_stored_total_not_recomputed(job, profile):
    """A manual total shows as stored while service and tax follow the inputs."""

    order = work_order.assemble_work_order(core_logic.Job(**{**job.__dict__, "total_amount": 150.0}), profile)
    assert order.total == 150.0
    assert order.service_amount == pytest.approx(180.0)


def test_assemble_prefers_current_customer_record(job, profile):
    customer = core_logic.Customer(id="c1", name="Ada King", phone="555-0100", email="ada@example.com")
    order = work_order.assemble_work_order(job, profile, customer)
    assert order.customer_label == "Ada King"
    assert order.customer_contact == "555-0100 | ada@example.com"


def test_assemble_without_tax(job, profile):
    untaxed = core_logic.Job(**{**job.__dict__, "apply_sales_tax": False})
    order = work_order.assemble_work_order(untaxed, profile)
    assert order.tax_amount == 0
    assert order.tax_rate == 0


def test_service_label_falls_back():
    assert work_order.service_label(core_logic.Job(id="j1")) == "Service"
    assert work_order.service_label(core_logic.Job(id="j1", glass_type="Side Window", damage_type=" ")) == "Side Window"


def test_discount_label_variants():
    assert work_order.discount_label(core_logic.Job(id="j1", discount_type=DiscountType.FLAT_RATE, discount_value=25)) == "$25.00 off"
    assert work_order.discount_label(core_logic.Job(id="j1", discount_type=DiscountType.PERCENTAGE, discount_value=0)) == ""
    assert work_order.discount_label(core_logic.Job(id="j1")) == ""


def test_render_print_document(job, profile):
    text = work_order.render_print_document(work_order.assemble_work_order(job, profile))

    assert text.splitlines()[0] == "Clear View Glass"
    assert "Date: 3/7/2025" in text
    assert "Sales Tax (8%): $14.40" in text
    assert "Total: $194.40" in text
    assert "Balance Due: $144.40" in text
    assert "Park in bay 2" in text


def test_render_email(job, profile):
    text = work_order.render_email(work_order.assemble_work_order(job, profile))

    assert text.startswith("Subject: Work Order from Clear View Glass")
    assert "Hello Ada Lovelace," in text
    assert "Service Amount: $180.00" in text
    assert text.rstrip().endswith("Clear View Glass")


def test_render_sms_is_single_line(job, profile):
    text = work_order.render_sms(work_order.assemble_work_order(job, profile))

    assert "\n" not in text
    assert text.startswith("Clear View Glass: Hi Ada Lovelace")
    assert "Balance Due $144.40." in text
    assert text.endswith("Notes: Park in bay 2")


def test_renderers_cover_all_formats():
    assert set(work_order.RENDERERS) == {"print", "email", "sms"}


def test_preview_reflects_unsaved_draft_edits(profile):
    draft = core_logic.JobDraft(customer_name="Ada", tax_rate=profile.sales_tax_rate)
    draft.edit(cost=50)
    first = work_order.assemble_work_order(draft.preview(), profile)

    draft.edit(quantity=3)
    second = work_order.assemble_work_order(draft.preview(), profile)

    assert first.total == pytest.approx(54.0)
    assert second.total == pytest.approx(162.0)
    assert second.status is JobStatus.ACTIVE


def test_export_work_order_writes_formatted_sheet(job, profile, tmp_path):
    destination = work_order.export_work_order(
        work_order.assemble_work_order(job, profile),
        tmp_path / "exports" / "j1.xlsx",
    )

    sheet = openpyxl.load_workbook(destination)["Work Order"]
    rows = {row[0]: row[1] for row in sheet.iter_rows(values_only=True) if row and row[0]}
    assert sheet["A1"].value == "Clear View Glass"
    assert rows["Customer"] == "Ada Lovelace"
    assert rows["Total"] == pytest.approx(194.4)
    total_cell = next(row[1] for row in sheet.iter_rows() if row[0].value == "Total")
    assert total_cell.number_format == work_order.CURRENCY_FORMAT
