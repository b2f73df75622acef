"""Integration tests describing the end-to-end job ledger workflows.

These scenarios walk a shop's day through the repositories, the record store
and the CLI together, persisting to disk between steps the way the
command-line front end does.
"""

from __future__ import annotations

import pytest

from job_ledger import cli, core_logic, work_order
from job_ledger.constants import DiscountType, JobStatus, WorkflowList


def test_quote_to_completion_flow(session):
    """Register a customer, draft a job from workflow options, then settle it."""

    customers = core_logic.CustomerRepository(session)
    profiles = core_logic.ProfileRepository(session)
    jobs = core_logic.JobRepository(session, profiles)

    profiles.update_company(company_name="Clear View Glass", phone="555-0199")
    windshield = profiles.list_options(WorkflowList.GLASS_TYPES)[0]
    profiles.update_option(
        WorkflowList.GLASS_TYPES,
        windshield.id,
        cost=100,
        quantity=2,
        discount_type=DiscountType.PERCENTAGE,
        discount_value=10,
    )
    ada = customers.create("Ada Lovelace", phone="555-0100")

    # Persist and reload so later steps read what the workbook really holds.
    core_logic.persist_session(session)
    session = core_logic.refresh_session(session)
    customers = core_logic.CustomerRepository(session)
    profiles = core_logic.ProfileRepository(session)
    jobs = core_logic.JobRepository(session, profiles)

    profile = profiles.get()
    draft = core_logic.JobDraft.for_customer(customers.get(ada.id), tax_rate=profile.sales_tax_rate)
    draft.apply_option(WorkflowList.GLASS_TYPES, profile.options(WorkflowList.GLASS_TYPES)[0])
    draft.edit(damage_type="Chip", repair_replacement="Repair")

    preview = work_order.assemble_work_order(draft.preview(), profile, customers.get(ada.id))
    assert preview.service_amount == pytest.approx(180.0)
    assert preview.tax_amount == pytest.approx(14.4)
    assert preview.total == pytest.approx(194.4)

    job = jobs.create(draft)
    assert job.glass_type == "Windshield"
    assert job.total_amount == pytest.approx(194.4)

    # The customer pays a deposit; the stored total is left alone.
    jobs.update(job.id, {"paid_amount": 100})
    job = jobs.set_status(job.id, JobStatus.COMPLETED)
    assert job.status is JobStatus.COMPLETED
    assert job.paid_amount == 100

    order = work_order.assemble_work_order(job, profiles.get(), customers.get(ada.id))
    assert order.balance_due == pytest.approx(94.4)
    assert "Balance Due: $94.40" in work_order.render_print_document(order)

    core_logic.persist_session(session)
    core_logic.close_session(session)


def test_flat_discount_overshoot_prices_to_zero(session):
    jobs = core_logic.JobRepository(session)
    draft = core_logic.JobDraft(customer_id="c1", customer_name="Walk-in", tax_rate=jobs.tax_rate())
    draft.edit(cost=50, quantity=1, discount_type="FlatRate", discount_value=60, apply_sales_tax=False)

    job = jobs.create(draft)

    assert (job.total_amount, job.paid_amount) == (0, 0)
    order = work_order.assemble_work_order(job, core_logic.ProfileRepository(session).get())
    assert (order.service_amount, order.tax_amount, order.total) == (0, 0, 0)


def test_two_sessions_share_the_workbook_last_write_wins(config_file):
    """Separate sessions over the same file see each other only after a reload."""

    first = core_logic.open_session(config_file)
    second = core_logic.open_session(config_file)

    core_logic.ProfileRepository(first).add_option(WorkflowList.DAMAGE_TYPES, "Star break")
    core_logic.persist_session(first)
    core_logic.ProfileRepository(second).add_option(WorkflowList.DAMAGE_TYPES, "Bullseye")
    core_logic.persist_session(second)

    reloaded = core_logic.open_session(config_file)
    names = [option.name for option in core_logic.ProfileRepository(reloaded).list_options(WorkflowList.DAMAGE_TYPES)]
    assert names == ["Chip", "Crack", "Bullseye"]


def test_tenants_do_not_see_each_other(config_file):
    own = core_logic.open_session(config_file)
    other = core_logic.open_session(config_file, tenant_id="tenant-b")

    core_logic.CustomerRepository(own).create("Ada")

    assert core_logic.CustomerRepository(other).list() == []
    assert core_logic.ProfileRepository(other).get().options(WorkflowList.GLASS_TYPES) == ()


def test_live_views_follow_writes_within_a_session(session):
    customers = core_logic.CustomerRepository(session)
    jobs = core_logic.JobRepository(session)

    with core_logic.LiveCollection.watch(customers) as customer_view, core_logic.LiveCollection.watch(jobs) as job_view:
        ada = customers.create("Ada")
        job = jobs.create(core_logic.JobDraft.for_customer(ada, tax_rate=jobs.tax_rate()))
        customers.delete(ada.id)

        assert customer_view.items == []
        assert [item.id for item in job_view.items] == [job.id]
        assert job_view.items[0].customer_name == "Ada"

    assert session.open_subscriptions == []


def test_cli_session_round_trip(config_file, capsys):
    """Drive a full job through the command line and read it back."""

    base = ["--config", str(config_file)]
    assert cli.main([*base, "set-company", "--company-name", "Clear View Glass"]) == 0
    assert cli.main([*base, "add-customer", "--name", "Ada"]) == 0
    customer_id = capsys.readouterr().out.strip()

    assert cli.main(
        [*base, "add-job", "--customer-id", customer_id, "--cost", "100", "--quantity", "2", "--discount-type", "Percentage", "--discount-value", "10"]
    ) == 0
    job_id = capsys.readouterr().out.strip()

    assert cli.main([*base, "edit-job", "--job-id", job_id, "--paid", "94.40"]) == 0
    assert cli.main([*base, "job-status", "--job-id", job_id, "--status", "completed"]) == 0
    assert cli.main([*base, "work-order", "--job-id", job_id, "--format", "sms"]) == 0

    sms = capsys.readouterr().out
    assert sms.startswith("Clear View Glass: Hi Ada")
    assert "Total $194.40" in sms
    assert "Balance Due $100.00" in sms

    assert cli.main([*base, "delete-job", "--job-id", job_id, "--yes"]) == 0
    assert cli.main([*base, "work-order", "--job-id", job_id]) == 3
