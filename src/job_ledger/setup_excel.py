"""Create the ledger workbook: one sheet per collection, headers in row 1.

Run as ``job-ledger-setup`` against a ``config.ini``, or call
:func:`create_ledger_workbook` directly. When the config names a tenant its
profile row is seeded with the default tax rate and starter workflow options.
"""

from __future__ import annotations

import argparse
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Sequence

import openpyxl
from openpyxl.styles import Font

from . import log
from .constants import PROFILE_DOCUMENT_ID, SheetName, WorkflowList
from .data_manager import ID_COLUMNS, encode_cell, generate_document_id, read_config

# Field columns are laid out up front so a fresh workbook reads well in Excel.
# The record store appends further columns on demand.
SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    SheetName.CUSTOMERS.value: [*ID_COLUMNS, "name", "phone", "email", "address"],
    SheetName.JOBS.value: [
        *ID_COLUMNS,
        "customerId",
        "customerName",
        "date",
        "status",
        "glassType",
        "damageType",
        "repairReplacement",
        "cost",
        "quantity",
        "discountType",
        "discountValue",
        "applySalesTax",
        "notes",
        "totalAmount",
        "paidAmount",
        "createdAt",
        "updatedAt",
    ],
    SheetName.PROFILE.value: [
        *ID_COLUMNS,
        "companyName",
        "address",
        "phone",
        "email",
        "salesTaxRate",
        "jobWorkflowOptions",
    ],
}

# Starter workflow options seeded for the configured tenant.
DEFAULT_WORKFLOW_OPTIONS: Mapping[WorkflowList, Sequence[str]] = {
    WorkflowList.GLASS_TYPES: ["Windshield", "Side Window", "Rear Window"],
    WorkflowList.DAMAGE_TYPES: ["Chip", "Crack"],
    WorkflowList.REPAIR_REPLACEMENT: ["Repair", "Replacement"],
}

CONFIG_FILE = "config.ini"


@dataclass(frozen=True)
class SetupSettings:
    """Configuration values used during setup."""

    data_file: Path
    tenant_id: Optional[str]
    sales_tax_rate: float


def load_settings(config_path: Path) -> SetupSettings:
    """Read ``config.ini`` and produce :class:`SetupSettings`.

    Relative paths inside the config file are resolved against the config
    file's directory.
    """

    parser = read_config(config_path)
    if not parser.has_option("System", "DataFile"):
        raise KeyError(f"[System] DataFile is missing from {config_path}")

    data_file = Path(parser.get("System", "DataFile")).expanduser()
    return SetupSettings(
        data_file=data_file if data_file.is_absolute() else (config_path.parent / data_file).resolve(),
        tenant_id=parser.get("Session", "TenantID", fallback="").strip() or None,
        sales_tax_rate=parser.getfloat("Defaults", "SalesTaxRate", fallback=0.0),
    )


def default_profile_row(tenant_id: str, sales_tax_rate: float = 0.0) -> list[object]:
    """Build the ``Profile`` row seeded for a new tenant."""

    options = {
        kind.value: [
            {
                "id": generate_document_id(),
                "name": name,
                "cost": 0,
                "quantity": 1,
                "discountType": "None",
                "discountValue": 0,
            }
            for name in names
        ]
        for kind, names in DEFAULT_WORKFLOW_OPTIONS.items()
    }
    return [tenant_id, PROFILE_DOCUMENT_ID, None, None, None, None, sales_tax_rate, encode_cell(options)]


def _write_headers(worksheet, columns: Sequence[str], font: Font) -> None:
    worksheet.append(list(columns))
    for cell in worksheet[1]:
        cell.font = font
    worksheet.freeze_panes = "A2"


def create_ledger_workbook(
    destination: Path,
    *,
    tenant_id: Optional[str] = None,
    sales_tax_rate: float = 0.0,
    sheet_columns: Mapping[str, Sequence[str]] = SHEET_COLUMNS,
    overwrite: bool = False,
) -> Path:
    """Create the ledger workbook at ``destination``.

    When ``tenant_id`` is given the tenant's profile is seeded with the
    starter workflow options. An existing file raises ``FileExistsError``
    unless ``overwrite`` is set.
    """

    destination = destination.expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(f"Ledger workbook already exists: {destination}")

    workbook = openpyxl.Workbook()
    header_font = Font(bold=True)
    first, *rest = sheet_columns.items()

    # Reuse the sheet openpyxl starts with for the first collection.
    workbook.active.title = first[0]
    _write_headers(workbook.active, first[1], header_font)
    for sheet_name, columns in rest:
        _write_headers(workbook.create_sheet(title=sheet_name), columns, header_font)

    if tenant_id:
        workbook[SheetName.PROFILE.value].append(default_profile_row(tenant_id, sales_tax_rate))

    destination.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(destination)
    log.info("Created ledger workbook %s (tenant=%s)", destination, tenant_id or "-")
    return destination


def run_from_config(config_path: Path, *, overwrite: bool = False) -> Path:
    settings = load_settings(config_path)
    return create_ledger_workbook(
        settings.data_file,
        tenant_id=settings.tenant_id,
        sales_tax_rate=settings.sales_tax_rate,
        overwrite=overwrite,
    )


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="job-ledger-setup",
        description="Create the job ledger workbook named by config.ini",
    )
    parser.add_argument("--config", default=CONFIG_FILE, help="Path to config.ini (default: %(default)s)")
    parser.add_argument("--force", action="store_true", help="Replace an existing workbook.")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for ``job-ledger-setup``; returns a process exit code."""

    args = parse_args(argv)
    config_path = Path(args.config).expanduser().resolve()
    print(f"Job Ledger setup using {config_path}")

    try:
        output_path = run_from_config(config_path, overwrite=args.force)
    except FileExistsError as exc:
        print(f"[ERROR] {exc}. Pass --force to replace it.")
        return 1
    except (FileNotFoundError, KeyError, ValueError) as exc:
        print(f"[ERROR] {exc}")
        return 1
    except OSError as exc:
        log.error("Unable to write ledger workbook: %s", exc)
        print(f"[ERROR] Unable to write workbook: {exc}")
        return 1

    print(f"[OK] Ledger workbook ready at {output_path}")
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
