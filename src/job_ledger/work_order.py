"""Work order assembly and its textual renderings.

A :class:`WorkOrder` is an immutable snapshot composed from a job, the
tenant profile and optionally the customer record. Assembly has no side
effects, so a preview can be rebuilt after every keystroke from an unsaved
:class:`~job_ledger.core_logic.JobDraft`.

Service and tax amounts are recomputed from the job's inputs. Total and paid
amounts are taken as stored because a person may have overridden them.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

import openpyxl
from openpyxl.styles import Font

from . import log, pricing
from .constants import DiscountType, JobStatus
from .core_logic import Customer, Job, TenantProfile
from .money import format_currency, format_short_date


CURRENCY_FORMAT = '"$"#,##0.00'


@dataclass(frozen=True)
class CompanyHeader:
    name: str
    address: str = ""
    phone: str = ""
    email: str = ""


@dataclass(frozen=True)
class WorkOrder:
    """Everything a printed or messaged work order shows."""

    job_id: str
    company: CompanyHeader
    customer_label: str
    customer_contact: str
    job_line: str
    date: Optional[datetime]
    status: JobStatus
    quantity: int
    unit_cost: float
    discount_label: str
    notes: str
    service_amount: float
    tax_amount: float
    tax_rate: float
    total: float
    paid: float
    balance_due: float


def service_label(job: Job) -> str:
    """Join glass type, damage type and repair choice, e.g. ``Windshield - Chip - Repair``."""

    parts = [part.strip() for part in (job.glass_type, job.damage_type, job.repair_replacement) if part.strip()]
    return " - ".join(parts) or "Service"


def discount_label(job: Job) -> str:
    if job.discount_type is DiscountType.PERCENTAGE and job.discount_value:
        return f"{job.discount_value:g}% off"
    if job.discount_type is DiscountType.FLAT_RATE and job.discount_value:
        return f"{format_currency(job.discount_value)} off"
    return ""


def assemble_work_order(job: Job, profile: TenantProfile, customer: Optional[Customer] = None) -> WorkOrder:
    """Compose a work order snapshot.

    Args:
        job (Job): Stored job or a draft preview.
        profile (TenantProfile): Supplies the company header and tax rate.
        customer (Customer | None): When given, its current name and contact
            details are shown; otherwise the name captured on the job is used.

    Returns:
        WorkOrder: Immutable snapshot ready for rendering.
    """

    breakdown = pricing.price_job(job, profile.sales_tax_rate)

    contact = ""
    if customer is not None:
        contact = " | ".join(part for part in (customer.phone, customer.email, customer.address) if part)

    return WorkOrder(
        job_id=job.id,
        company=CompanyHeader(
            name=profile.company_name,
            address=profile.address,
            phone=profile.phone,
            email=profile.email,
        ),
        customer_label=(customer.name if customer is not None else job.customer_name) or "Customer",
        customer_contact=contact,
        job_line=service_label(job),
        date=job.date,
        status=job.status,
        quantity=job.quantity,
        unit_cost=job.cost,
        discount_label=discount_label(job),
        notes=job.notes.strip(),
        service_amount=breakdown.service_amount,
        tax_amount=breakdown.tax_amount,
        tax_rate=profile.sales_tax_rate if job.apply_sales_tax else 0.0,
        total=job.total_amount,
        paid=job.paid_amount,
        balance_due=pricing.balance_due(job.total_amount, job.paid_amount),
    )


def render_print_document(order: WorkOrder) -> str:
    """Render the printable body of a work order."""

    company = order.company
    lines = [company.name or "Work Order"]
    if company.address:
        lines.append(company.address)
    contact = " | ".join(part for part in (company.phone, company.email) if part)
    if contact:
        lines.append(contact)

    lines += [
        "",
        "WORK ORDER",
        f"Date: {format_short_date(order.date)}",
        f"Customer: {order.customer_label}",
    ]
    if order.customer_contact:
        lines.append(f"Contact: {order.customer_contact}")
    lines += [
        f"Status: {order.status.value.title()}",
        "",
        f"Service: {order.job_line}",
        f"Quantity: {order.quantity} @ {format_currency(order.unit_cost)}",
    ]
    if order.discount_label:
        lines.append(f"Discount: {order.discount_label}")
    lines += [
        "",
        f"Service Amount: {format_currency(order.service_amount)}",
        f"Sales Tax ({order.tax_rate:g}%): {format_currency(order.tax_amount)}",
        f"Total: {format_currency(order.total)}",
        f"Paid: {format_currency(order.paid)}",
        f"Balance Due: {format_currency(order.balance_due)}",
    ]
    if order.notes:
        lines += ["", "Notes:", order.notes]
    return "\n".join(lines) + "\n"


def render_email(order: WorkOrder) -> str:
    """Render the copy-to-clipboard email summary."""

    company = order.company.name or "our shop"
    body = [
        f"Subject: Work Order from {company}",
        "",
        f"Hello {order.customer_label},",
        "",
        f"Thank you for choosing {company}. Here is a summary of your work order "
        f"dated {format_short_date(order.date)}.",
        "",
        f"Service: {order.job_line}",
        f"Service Amount: {format_currency(order.service_amount)}",
        f"Sales Tax: {format_currency(order.tax_amount)}",
        f"Total: {format_currency(order.total)}",
        f"Balance Due: {format_currency(order.balance_due)}",
    ]
    if order.notes:
        body += ["", f"Notes: {order.notes}"]
    body += ["", "Best regards,", company]
    return "\n".join(body) + "\n"


def render_sms(order: WorkOrder) -> str:
    """Render the copy-to-clipboard text message summary."""

    company = order.company.name or "Work order"
    message = (
        f"{company}: Hi {order.customer_label}, your work order for {order.job_line} "
        f"on {format_short_date(order.date)}. "
        f"Service {format_currency(order.service_amount)}, "
        f"Tax {format_currency(order.tax_amount)}, "
        f"Total {format_currency(order.total)}, "
        f"Balance Due {format_currency(order.balance_due)}."
    )
    if order.notes:
        message += f" Notes: {order.notes}"
    return message


RENDERERS = {
    "print": render_print_document,
    "email": render_email,
    "sms": render_sms,
}


def export_work_order(order: WorkOrder, destination: Path) -> Path:
    """Write a one-sheet printable workbook for ``order`` and return its path."""

    destination = Path(destination).expanduser().resolve()
    destination.parent.mkdir(parents=True, exist_ok=True)

    workbook = openpyxl.Workbook()
    sheet = workbook.active
    sheet.title = "Work Order"
    bold_font = Font(bold=True)

    sheet.append([order.company.name or "Work Order"])
    sheet["A1"].font = Font(bold=True, size=14)
    for line in (order.company.address, order.company.phone, order.company.email):
        if line:
            sheet.append([line])
    sheet.append([])

    details = [
        ("Date", format_short_date(order.date)),
        ("Customer", order.customer_label),
        ("Service", order.job_line),
        ("Quantity", order.quantity),
        ("Discount", order.discount_label or "None"),
        ("Notes", order.notes),
    ]
    for label, value in details:
        sheet.append([label, value])
        sheet.cell(row=sheet.max_row, column=1).font = bold_font
    sheet.append([])

    figures = [
        ("Service Amount", order.service_amount),
        ("Sales Tax", order.tax_amount),
        ("Total", order.total),
        ("Paid", order.paid),
        ("Balance Due", order.balance_due),
    ]
    for label, amount in figures:
        sheet.append([label, amount])
        row = sheet.max_row
        sheet.cell(row=row, column=1).font = bold_font
        sheet.cell(row=row, column=2).number_format = CURRENCY_FORMAT

    sheet.column_dimensions["A"].width = 18
    sheet.column_dimensions["B"].width = 40
    workbook.save(destination)
    log.info("Exported work order '%s' to '%s'", order.job_id, destination)
    return destination


__all__ = [
    "CompanyHeader",
    "WorkOrder",
    "service_label",
    "discount_label",
    "assemble_work_order",
    "render_print_document",
    "render_email",
    "render_sms",
    "RENDERERS",
    "export_work_order",
]
