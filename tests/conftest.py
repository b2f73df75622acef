"""Shared pytest fixtures for Job Ledger tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Callable, Iterator, Optional

import pytest

# Tests import straight from the src tree.
SRC_DIR = Path(__file__).resolve().parents[1] / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from job_ledger import cli, constants, core_logic, data_manager  # noqa: E402
from job_ledger.setup_excel import create_ledger_workbook  # noqa: E402

TENANT = "tenant-a"
TAX_RATE = 8.0

CONFIG_TEXT = """\
[System]
DataFile = {data_file}
SchemaVersion = {schema_version}

[Session]
TenantID = {tenant_id}

[Defaults]
SalesTaxRate = {sales_tax_rate}
"""


@dataclass(frozen=True)
class LedgerFiles:
    """Paths of one throwaway ledger: its config and the workbook it names."""

    config_path: Path
    workbook_path: Path


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Create ledger workbooks under ``tmp_path``, each in its own folder."""

    def _build(
        *,
        folder: Optional[Path] = None,
        tenant_id: Optional[str] = TENANT,
        sales_tax_rate: float = TAX_RATE,
    ) -> Path:
        target = (folder or tmp_path / f"ledger_{uuid.uuid4().hex[:8]}") / "ledger.xlsx"
        return create_ledger_workbook(target, tenant_id=tenant_id, sales_tax_rate=sales_tax_rate)

    return _build


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., LedgerFiles]:
    """Write a ``config.ini`` beside a fresh workbook and return both paths."""

    def _build(
        *,
        make_relative: bool = False,
        schema_version: str = constants.EXPECTED_SCHEMA_VERSION,
        tenant_id: str = TENANT,
        sales_tax_rate: float = TAX_RATE,
    ) -> LedgerFiles:
        folder = tmp_path / f"config_{uuid.uuid4().hex[:8]}"
        workbook_path = workbook_factory(folder=folder, tenant_id=tenant_id or None, sales_tax_rate=sales_tax_rate)
        config_path = folder / "config.ini"
        config_path.write_text(
            CONFIG_TEXT.format(
                data_file=workbook_path.name if make_relative else workbook_path,
                schema_version=schema_version,
                tenant_id=tenant_id,
                sales_tax_rate=sales_tax_rate,
            )
        )
        return LedgerFiles(config_path=config_path, workbook_path=workbook_path)

    return _build


@pytest.fixture
def config_file(config_factory: Callable[..., LedgerFiles]) -> Path:
    return config_factory().config_path


@pytest.fixture
def session(config_file: Path) -> Iterator[core_logic.Session]:
    """Signed-in session for ``tenant-a`` over a freshly seeded workbook."""

    opened = core_logic.open_session(config_file)
    core_logic.ensure_schema_version(opened)
    yield opened
    core_logic.close_session(opened)


@pytest.fixture
def customers(session: core_logic.Session) -> core_logic.CustomerRepository:
    return core_logic.CustomerRepository(session)


@pytest.fixture
def profiles(session: core_logic.Session) -> core_logic.ProfileRepository:
    return core_logic.ProfileRepository(session)


@pytest.fixture
def jobs(session: core_logic.Session, profiles: core_logic.ProfileRepository) -> core_logic.JobRepository:
    return core_logic.JobRepository(session, profiles)


@pytest.fixture
def store(workbook_factory: Callable[..., Path]) -> data_manager.RecordStore:
    """Record store over a workbook that holds headers only."""

    path = workbook_factory(tenant_id=None)
    return data_manager.RecordStore(data_manager.open_workbook(path), data_file=path)


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    return argparse.ArgumentParser(prog="job-ledger")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Three no-op read commands for table-building tests."""

    return [
        cli.CommandSpec(name, f"{name} help", lambda sub, name=name: sub.add_parser(name), lambda *_: 0, mutates=False)
        for name in ("alpha", "beta", "gamma")
    ]


@pytest.fixture
def set_fixed_datetime(monkeypatch: pytest.MonkeyPatch) -> Callable[[datetime], datetime]:
    """Freeze the clock ``core_logic`` stamps records with."""

    def _freeze(moment: datetime) -> datetime:
        monkeypatch.setattr(core_logic, "_now", lambda: moment.astimezone(UTC))
        return moment

    return _freeze
