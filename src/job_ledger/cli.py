"""Command-line entry points for the job ledger.

All orchestration in this module is limited to argparse wiring and
translating command-line arguments into repository calls. Keeping the CLI
thin means the same business layer serves tests, scripts and any other front
end.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, log, pricing, work_order
from .constants import DiscountType, JobStatus, WorkflowList
from .money import format_currency, format_short_date


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.Session, argparse.Namespace], int]
    mutates: bool = True


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="job-ledger",
        description="Customers, jobs and work orders for the Job Ledger workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to ./config.ini).",
    )
    parser.add_argument(
        "--tenant",
        default=None,
        help="Tenant to act as (defaults to [Session] TenantID in config.ini).",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands."""
    specs = {
        "add-customer": register_add_customer_command(subparsers),
        "edit-customer": register_edit_customer_command(subparsers),
        "delete-customer": register_delete_customer_command(subparsers),
        "add-job": register_add_job_command(subparsers),
        "edit-job": register_edit_job_command(subparsers),
        "job-status": register_job_status_command(subparsers),
        "delete-job": register_delete_job_command(subparsers),
        "set-company": register_set_company_command(subparsers),
        "add-option": register_add_option_command(subparsers),
        "edit-option": register_edit_option_command(subparsers),
        "delete-option": register_delete_option_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as listings and work orders."""
    specs = {
        "customers": register_customers_command(subparsers),
        "jobs": register_jobs_command(subparsers),
        "options": register_options_command(subparsers),
        "work-order": register_work_order_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _add_customer_fields(parser: argparse.ArgumentParser, *, name_required: bool) -> None:
    parser.add_argument("--name", required=name_required, default=None)
    parser.add_argument("--phone", default=None)
    parser.add_argument("--email", default=None)
    parser.add_argument("--address", default=None)


def _add_job_fields(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--customer-name", default=None)
    parser.add_argument("--date", default=None, help="ISO date, e.g. 2025-03-07.")
    parser.add_argument("--glass-type", default=None)
    parser.add_argument("--damage-type", default=None)
    parser.add_argument("--repair-replacement", default=None)
    parser.add_argument("--cost", default=None)
    parser.add_argument("--quantity", default=None)
    parser.add_argument(
        "--discount-type",
        choices=[member.value for member in DiscountType],
        default=None,
    )
    parser.add_argument("--discount-value", default=None)
    parser.add_argument(
        "--sales-tax",
        dest="apply_sales_tax",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Apply the company sales tax rate (default: yes).",
    )
    parser.add_argument("--notes", default=None)
    parser.add_argument("--total", default=None, help="Manual total amount.")
    parser.add_argument("--paid", default=None, help="Amount paid so far.")


def _add_option_fields(parser: argparse.ArgumentParser, *, name_required: bool) -> None:
    parser.add_argument("--name", required=name_required, default=None)
    parser.add_argument("--cost", default=None)
    parser.add_argument("--quantity", default=None)
    parser.add_argument(
        "--discount-type",
        choices=[member.value for member in DiscountType],
        default=None,
    )
    parser.add_argument("--discount-value", default=None)


def _list_argument(parser: argparse.ArgumentParser, *, required: bool = True) -> None:
    parser.add_argument(
        "--list",
        dest="workflow_list",
        choices=[member.value for member in WorkflowList],
        required=required,
    )


def _simple_spec(
    name: str,
    help_text: str,
    configure: Callable[[argparse.ArgumentParser], None],
    execute: Callable[[core_logic.Session, argparse.Namespace], int],
    *,
    mutates: bool = True,
) -> CommandSpec:
    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        configure(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=execute, mutates=mutates)


def register_add_customer_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-customer``."""
    return _simple_spec(
        "add-customer",
        "Register a new customer.",
        lambda parser: _add_customer_fields(parser, name_required=True),
        run_add_customer,
    )


def register_edit_customer_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``edit-customer``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--customer-id", required=True)
        _add_customer_fields(parser, name_required=False)

    return _simple_spec("edit-customer", "Edit an existing customer.", configure, run_edit_customer)


def register_delete_customer_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-customer``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--customer-id", required=True)
        parser.add_argument("--yes", action="store_true", help="Confirm the permanent deletion.")

    return _simple_spec("delete-customer", "Delete a customer permanently.", configure, run_delete_customer)


def register_add_job_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-job``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--customer-id", required=True)
        _add_job_fields(parser)

    return _simple_spec("add-job", "Create a job (work order) for a customer.", configure, run_add_job)


def register_edit_job_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``edit-job``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--job-id", required=True)
        _add_job_fields(parser)

    return _simple_spec("edit-job", "Edit a job; pricing edits recompute totals.", configure, run_edit_job)


def register_job_status_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``job-status``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--job-id", required=True)
        parser.add_argument("--status", choices=[member.value for member in JobStatus], required=True)

    return _simple_spec("job-status", "Move a job to another status.", configure, run_job_status)


def register_delete_job_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-job``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--job-id", required=True)
        parser.add_argument("--yes", action="store_true", help="Confirm the permanent deletion.")

    return _simple_spec("delete-job", "Delete a job permanently.", configure, run_delete_job)


def register_set_company_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``set-company``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--company-name", default=None)
        parser.add_argument("--address", default=None)
        parser.add_argument("--phone", default=None)
        parser.add_argument("--email", default=None)
        parser.add_argument("--sales-tax-rate", default=None, help="Percentage, e.g. 8.25.")

    return _simple_spec("set-company", "Update company details and the sales tax rate.", configure, run_set_company)


def register_add_option_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-option``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        _list_argument(parser)
        _add_option_fields(parser, name_required=True)

    return _simple_spec("add-option", "Append a workflow option to a list.", configure, run_add_option)


def register_edit_option_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``edit-option``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        _list_argument(parser)
        parser.add_argument("--option-id", required=True)
        _add_option_fields(parser, name_required=False)

    return _simple_spec("edit-option", "Edit a workflow option.", configure, run_edit_option)


def register_delete_option_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-option``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        _list_argument(parser)
        parser.add_argument("--option-id", required=True)

    return _simple_spec("delete-option", "Remove a workflow option.", configure, run_delete_option)


def register_customers_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``customers``."""
    return _simple_spec("customers", "List customers.", lambda parser: None, run_customers_report, mutates=False)


def register_jobs_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``jobs``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--status", choices=[member.value for member in JobStatus], default=None)
        parser.add_argument("--customer-id", default=None)

    return _simple_spec("jobs", "List jobs with their totals.", configure, run_jobs_report, mutates=False)


def register_options_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``options``."""
    return _simple_spec(
        "options",
        "List workflow options.",
        lambda parser: _list_argument(parser, required=False),
        run_options_report,
        mutates=False,
    )


def register_work_order_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``work-order``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--job-id", required=True)
        parser.add_argument("--format", choices=sorted(work_order.RENDERERS), default="print")
        parser.add_argument("--export", type=Path, default=None, help="Also write the work order to an .xlsx file.")

    return _simple_spec("work-order", "Render a job's work order.", configure, run_work_order, mutates=False)


def load_session(config_path: Optional[Path] = None, tenant_id: Optional[str] = None) -> core_logic.Session:
    """Resolve the session for CLI operations."""
    target = Path(config_path) if config_path is not None else Path.cwd() / "config.ini"
    session = core_logic.open_session(target, tenant_id=tenant_id)
    core_logic.ensure_schema_version(session)
    return session


def dispatch_command(
    session: core_logic.Session,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(session, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of registered commands keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def _provided(args: argparse.Namespace, mapping: Mapping[str, str]) -> Dict[str, Any]:
    """Collect the arguments the user actually passed, renamed per ``mapping``."""
    return {target: getattr(args, source) for source, target in mapping.items() if getattr(args, source, None) is not None}


JOB_ARGUMENTS = {
    "customer_name": "customer_name",
    "date": "date",
    "glass_type": "glass_type",
    "damage_type": "damage_type",
    "repair_replacement": "repair_replacement",
    "cost": "cost",
    "quantity": "quantity",
    "discount_type": "discount_type",
    "discount_value": "discount_value",
    "apply_sales_tax": "apply_sales_tax",
    "notes": "notes",
    "total": "total_amount",
    "paid": "paid_amount",
}

OPTION_ARGUMENTS = {
    "name": "name",
    "cost": "cost",
    "quantity": "quantity",
    "discount_type": "discount_type",
    "discount_value": "discount_value",
}


def translate_job_changes(args: argparse.Namespace) -> Dict[str, Any]:
    """Translate CLI args into job field changes."""
    return _provided(args, JOB_ARGUMENTS)


def translate_job_draft(session: core_logic.Session, args: argparse.Namespace) -> core_logic.JobDraft:
    """Build a draft the way the job form would: pricing first, manual figures last."""
    changes = translate_job_changes(args)
    if "customer_name" not in changes:
        changes["customer_name"] = core_logic.CustomerRepository(session).get(args.customer_id).name
    manual = {name: changes.pop(name) for name in ("total_amount", "paid_amount") if name in changes}

    draft = core_logic.JobDraft(customer_id=args.customer_id)
    draft.tax_rate = core_logic.ProfileRepository(session).get().sales_tax_rate
    draft.edit(**changes)
    draft.edit(**manual)
    return draft


def run_add_customer(session: core_logic.Session, args: argparse.Namespace) -> int:
    """Execute the add-customer workflow."""
    payload = _provided(args, {"name": "name", "phone": "phone", "email": "email", "address": "address"})
    customer = core_logic.CustomerRepository(session).create(**payload)
    print(customer.id)
    return 0


def run_edit_customer(session: core_logic.Session, args: argparse.Namespace) -> int:
    """Execute the edit-customer workflow."""
    changes = _provided(args, {"name": "name", "phone": "phone", "email": "email", "address": "address"})
    core_logic.CustomerRepository(session).update(args.customer_id, **changes)
    return 0


def run_delete_customer(session: core_logic.Session, args: argparse.Namespace) -> int:
    """Execute the delete-customer workflow once confirmed."""
    if not args.yes:
        log.warning("Refusing to delete customer '%s' without --yes", args.customer_id)
        return 2
    core_logic.CustomerRepository(session).delete(args.customer_id)
    return 0


def run_add_job(session: core_logic.Session, args: argparse.Namespace) -> int:
    """Execute the add-job workflow."""
    draft = translate_job_draft(session, args)
    job = core_logic.JobRepository(session).create(draft)
    print(job.id)
    return 0


def run_edit_job(session: core_logic.Session, args: argparse.Namespace) -> int:
    """Execute the edit-job workflow."""
    core_logic.JobRepository(session).update(args.job_id, translate_job_changes(args))
    return 0


def run_job_status(session: core_logic.Session, args: argparse.Namespace) -> int:
    """Execute the job-status workflow."""
    core_logic.JobRepository(session).set_status(args.job_id, args.status)
    return 0


def run_delete_job(session: core_logic.Session, args: argparse.Namespace) -> int:
    """Execute the delete-job workflow once confirmed."""
    if not args.yes:
        log.warning("Refusing to delete job '%s' without --yes", args.job_id)
        return 2
    core_logic.JobRepository(session).delete(args.job_id)
    return 0


def run_set_company(session: core_logic.Session, args: argparse.Namespace) -> int:
    """Execute the set-company workflow."""
    changes = _provided(
        args,
        {
            "company_name": "company_name",
            "address": "address",
            "phone": "phone",
            "email": "email",
            "sales_tax_rate": "sales_tax_rate",
        },
    )
    core_logic.ProfileRepository(session).update_company(**changes)
    return 0


def run_add_option(session: core_logic.Session, args: argparse.Namespace) -> int:
    """Execute the add-option workflow."""
    payload = _provided(args, OPTION_ARGUMENTS)
    name = payload.pop("name")
    option = core_logic.ProfileRepository(session).add_option(args.workflow_list, name, **payload)
    print(option.id)
    return 0


def run_edit_option(session: core_logic.Session, args: argparse.Namespace) -> int:
    """Execute the edit-option workflow."""
    changes = _provided(args, OPTION_ARGUMENTS)
    core_logic.ProfileRepository(session).update_option(args.workflow_list, args.option_id, **changes)
    return 0


def run_delete_option(session: core_logic.Session, args: argparse.Namespace) -> int:
    """Execute the delete-option workflow."""
    core_logic.ProfileRepository(session).delete_option(args.workflow_list, args.option_id)
    return 0


def run_customers_report(session: core_logic.Session, args: argparse.Namespace) -> int:
    """Print every customer of the tenant."""
    for customer in core_logic.CustomerRepository(session).list():
        print(" | ".join([customer.id, customer.name, customer.phone, customer.email, customer.address]))
    return 0


def run_jobs_report(session: core_logic.Session, args: argparse.Namespace) -> int:
    """Print jobs with their totals and balance due."""
    repository = core_logic.JobRepository(session)
    jobs = repository.list(status=args.status)
    if args.customer_id:
        jobs = [job for job in jobs if job.customer_id == args.customer_id]
    for job in jobs:
        print(
            " | ".join(
                [
                    job.id,
                    format_short_date(job.date),
                    job.status.value,
                    job.customer_name,
                    work_order.service_label(job),
                    f"total {format_currency(job.total_amount)}",
                    f"due {format_currency(job.total_amount - job.paid_amount)}",
                ]
            )
        )
    return 0


def run_options_report(session: core_logic.Session, args: argparse.Namespace) -> int:
    """Print workflow options, one list or all of them."""
    profile = core_logic.ProfileRepository(session).get()
    kinds = [WorkflowList(args.workflow_list)] if args.workflow_list else list(WorkflowList)
    for kind in kinds:
        print(f"[{kind.value}]")
        for option in profile.options(kind):
            discount = "" if option.discount_type is DiscountType.NONE else f" ({option.discount_type.value} {option.discount_value:g})"
            line = format_currency(pricing.line_item_from_option(option))
            print(f"  {option.id} | {option.name} | {option.quantity} x {format_currency(option.cost)}{discount} = {line}")
    return 0


def run_work_order(session: core_logic.Session, args: argparse.Namespace) -> int:
    """Render a work order to stdout and optionally export it."""
    job = core_logic.JobRepository(session).get(args.job_id)
    profile = core_logic.ProfileRepository(session).get()
    try:
        customer: Optional[core_logic.Customer] = core_logic.CustomerRepository(session).get(job.customer_id)
    except core_logic.NotFound:
        customer = None
    order = work_order.assemble_work_order(job, profile, customer)
    print(work_order.RENDERERS[args.format](order))
    if args.export is not None:
        work_order.export_work_order(order, args.export)
    return 0


def persist_ledger(session: core_logic.Session) -> None:
    """Save the workbook after a successful write command."""
    core_logic.persist_session(session)


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into one readable log line and an exit code."""
    log.error("%s", core_logic.describe_error(error))
    if isinstance(error, core_logic.ValidationError):
        return 2
    if isinstance(error, (core_logic.NotFound, FileNotFoundError)):
        return 3
    if isinstance(error, (core_logic.PermissionDenied, core_logic.StoreUnavailable)):
        return 4
    return 1


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    session: Optional[core_logic.Session] = None
    try:
        session = load_session(getattr(args, "config", None), getattr(args, "tenant", None))
        exit_code = dispatch_command(session, args, command_table)
        if exit_code == 0 and command_table[args.command].mutates:
            persist_ledger(session)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
    finally:
        if session is not None:
            core_logic.close_session(session)
