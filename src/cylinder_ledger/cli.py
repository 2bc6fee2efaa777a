"""Command-line entry points for the cylinder ledger.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into calls on the component modules, and printing
results. The workbook is saved only when a command finishes with exit code 0,
so a failed command never persists a half-applied change.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence

from . import (
    catalog,
    core_logic,
    data_manager,
    ledger,
    lifecycle,
    log,
    membership,
    pricing,
    rentals,
    reports,
)
from .constants import CylinderSize, CylinderStatus, GasType, TransactionType


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="cylinder-ledger",
        description="Command-line tools for the cylinder rental ledger.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to searching upward from the working directory).",
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
    """Declare mutating CLI commands such as rentals and refunds."""
    specs = {
        "add-cylinder": register_add_cylinder_command(subparsers),
        "import-cylinders": register_import_cylinders_command(subparsers),
        "mark-damaged": register_mark_damaged_command(subparsers),
        "add-member": register_add_member_command(subparsers),
        "set-price": register_set_price_command(subparsers),
        "set-base-price": register_set_base_price_command(subparsers),
        "add-station": register_add_station_command(subparsers),
        "rent": register_rent_command(subparsers),
        "send-refill": register_send_refill_command(subparsers),
        "receive-refill": register_receive_refill_command(subparsers),
        "deliver": register_deliver_command(subparsers),
        "pay-debt": register_pay_debt_command(subparsers),
        "request-exit": register_request_exit_command(subparsers),
        "refund": register_refund_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as reports."""
    specs = {
        "quote": register_quote_command(subparsers),
        "stock": register_stock_command(subparsers),
        "holdings": register_holdings_command(subparsers),
        "bills": register_bills_command(subparsers),
        "refund-status": register_refund_status_command(subparsers),
        "log": register_log_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _gas_choices() -> List[str]:
    return [gas.value for gas in GasType]


def _size_choices() -> List[str]:
    return [size.value for size in CylinderSize]


# ---------------------------------------------------------------------------
# Write command registration
# ---------------------------------------------------------------------------


def register_add_cylinder_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-cylinder``."""
    name = "add-cylinder"
    help_text = "Register a new cylinder in the catalog."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--serial", required=True)
        parser.add_argument("--gas-type", choices=_gas_choices(), required=True)
        parser.add_argument("--size", choices=_size_choices(), required=True)
        parser.add_argument(
            "--status",
            choices=sorted(catalog.HOLDERLESS_STATUSES),
            default=CylinderStatus.AVAILABLE.value,
        )
        parser.add_argument("--location", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_cylinder)


def register_import_cylinders_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``import-cylinders``."""
    name = "import-cylinders"
    help_text = "Bulk import cylinders from a CSV file."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--file", type=Path, required=True, help="CSV with serialCode,gasType,size,status,lastLocation")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_import_cylinders)


def register_mark_damaged_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``mark-damaged``."""
    name = "mark-damaged"
    help_text = "Flag a cylinder as damaged."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--cylinder", required=True, help="Cylinder id or serial code.")
        parser.add_argument("--clear-holder", action="store_true", help="Also return the cylinder to the warehouse.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_mark_damaged)


def register_add_member_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-member``."""
    name = "add-member"
    help_text = "Onboard a new member with an opening deposit."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True, help="Contact person.")
        parser.add_argument("--company", required=True)
        parser.add_argument("--address", default="")
        parser.add_argument("--phone", default="")
        for size in CylinderSize:
            parser.add_argument(
                f"--deposit-{size.value}",
                dest=f"deposit_{size.name.lower()}",
                type=int,
                default=0,
                help=f"Number of {size.value} cylinders covered by the deposit.",
            )
        parser.add_argument(
            "--carried-deposit",
            default=None,
            help="Deposit carried over by a returning member; replaces the schedule.",
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_member)


def register_set_price_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``set-price``."""
    name = "set-price"
    help_text = "Set a member's custom price for a gas type and size."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--member-id", required=True)
        parser.add_argument("--gas-type", choices=_gas_choices(), required=True)
        parser.add_argument("--size", choices=_size_choices(), required=True)
        parser.add_argument("--price", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_set_price)


def register_set_base_price_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``set-base-price``."""
    name = "set-base-price"
    help_text = "Set the shared base price for a gas type and size."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--gas-type", choices=_gas_choices(), required=True)
        parser.add_argument("--size", choices=_size_choices(), required=True)
        parser.add_argument("--price", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_set_base_price)


def register_add_station_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-station``."""
    name = "add-station"
    help_text = "Register an external refill station."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--address", default="")
        parser.add_argument("--contact", default="")
        parser.add_argument("--phone", default="")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_station)


def register_rent_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``rent``."""
    name = "rent"
    help_text = "Rent out and/or take back cylinders for one member."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--member-id", required=True)
        parser.add_argument("--rent", nargs="*", default=[], help="Cylinder ids or serials to rent out.")
        parser.add_argument("--return", dest="returns", nargs="*", default=[], help="Cylinder ids or serials coming back.")
        parser.add_argument("--total-cost", default="0")
        parser.add_argument("--unpaid", action="store_true", help="Charge the rental to the member's debt.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_rent)


def register_send_refill_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``send-refill``."""
    name = "send-refill"
    help_text = "Send empty cylinders to a refill station."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--station-id", required=True)
        parser.add_argument("--cylinders", nargs="+", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_send_refill)


def register_receive_refill_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``receive-refill``."""
    name = "receive-refill"
    help_text = "Receive refilled cylinders back into the warehouse."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--cylinders", nargs="+", required=True)
        parser.add_argument("--total-cost", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_receive_refill)


def register_deliver_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``deliver``."""
    name = "deliver"
    help_text = "Dispatch available cylinders for delivery."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--cylinders", nargs="+", required=True)
        parser.add_argument("--date", default=None, help="Delivery date (ISO 8601); defaults to now.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_deliver)


def register_pay_debt_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``pay-debt``."""
    name = "pay-debt"
    help_text = "Record a debt payment settling selected unpaid bills."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--member-id", required=True)
        parser.add_argument("--bills", nargs="*", default=[], help="Unpaid rental-out transaction ids.")
        parser.add_argument("--amount", default=None, help="Defaults to the sum of the selected bills.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_pay_debt)


def register_request_exit_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``request-exit``."""
    name = "request-exit"
    help_text = "Start the exit cooling period for a member."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--member-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_request_exit)


def register_refund_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``refund``."""
    name = "refund"
    help_text = "Refund half the deposit to an eligible exiting member."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--member-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_refund)


# ---------------------------------------------------------------------------
# Read command registration
# ---------------------------------------------------------------------------


def register_quote_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``quote``."""
    name = "quote"
    help_text = "Price cylinders for a member before renting."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--member-id", required=True)
        parser.add_argument("--cylinders", nargs="+", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_quote)


def register_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock``."""
    name = "stock"
    help_text = "Display inventory by status and gas, with low-stock alerts."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_report)


def register_holdings_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``holdings``."""
    name = "holdings"
    help_text = "List rented cylinders and how long they have been out."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--member-id", default=None)
        parser.add_argument("--overdue-days", type=int, default=None, help="Only holdings longer than this many days.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_holdings_report)


def register_bills_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``bills``."""
    name = "bills"
    help_text = "Display a member's unpaid rental bills."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--member-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_bills_report)


def register_refund_status_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``refund-status``."""
    name = "refund-status"
    help_text = "Show refund eligibility for an exiting member."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--member-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_refund_status)


def register_log_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``log``."""
    name = "log"
    help_text = "Display the transaction ledger, newest first."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--type", dest="transaction_type", choices=[kind.value for kind in TransactionType], default=None)
        parser.add_argument("--search", default=None)
        parser.add_argument("--limit", type=int, default=ledger.HISTORY_PAGE_SIZE)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_log_report)


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations and validate its schema."""
    context = core_logic.load_runtime_context(Path(config_path) if config_path is not None else None)
    core_logic.ensure_schema_version(context)
    return context


def dispatch_command(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


# ---------------------------------------------------------------------------
# Translation
# ---------------------------------------------------------------------------


def resolve_cylinder_ids(context: core_logic.RuntimeContext, references: Sequence[str]) -> List[str]:
    """Map each reference (cylinder id or serial code) to a cylinder id.

    Unknown references are passed through unchanged so the operation reports
    them with its own validation error.
    """
    resolved = []
    for reference in references:
        by_serial = core_logic.find_cylinder_by_serial(context, reference)
        resolved.append(by_serial.cylinder_id if by_serial is not None else reference)
    return resolved


def translate_add_member(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into an onboarding request."""
    payload: Dict[str, Any] = {
        "name": args.name,
        "company_name": args.company,
        "address": args.address,
        "phone": args.phone,
    }
    if args.carried_deposit is not None:
        payload["carried_deposit"] = Decimal(args.carried_deposit)
    else:
        payload["deposit_items"] = {
            size: getattr(args, f"deposit_{size.name.lower()}", 0) for size in CylinderSize
        }
    return payload


def translate_rent(context: core_logic.RuntimeContext, args: argparse.Namespace) -> rentals.RentalCommand:
    """Translate CLI args into a rental command object."""
    return rentals.RentalCommand(
        member_id=args.member_id,
        rent_cylinder_ids=tuple(resolve_cylinder_ids(context, args.rent)),
        return_cylinder_ids=tuple(resolve_cylinder_ids(context, args.returns)),
        total_rent_cost=Decimal(args.total_cost),
        is_unpaid=args.unpaid,
    )


def translate_pay_debt(context: core_logic.RuntimeContext, args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into a debt payment request.

    Without ``--amount`` the payment equals the sum of the selected bills.
    """
    bill_ids = list(args.bills)
    if args.amount is not None:
        amount = Decimal(args.amount)
    else:
        amount = membership.settlement_amount(
            core_logic.get_transaction(context, bill_id) for bill_id in bill_ids
        )
    return {"member_id": args.member_id, "amount": amount, "bill_ids": bill_ids}


def translate_deliver_date(value: Optional[str]) -> Optional[datetime]:
    return core_logic.parse_timestamp(value) if value else None


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


def run_add_cylinder(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    cylinder = catalog.add_cylinder(
        context,
        args.serial,
        args.gas_type,
        args.size,
        status=args.status,
        last_location=args.location,
    )
    print(f"Added {cylinder.serial_code} as {cylinder.cylinder_id}")
    return 0


def run_import_cylinders(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Import a CSV file; rejected rows are listed but do not fail the command."""
    text = Path(args.file).expanduser().read_text(encoding="utf-8-sig")
    report = catalog.import_cylinders_csv(context, text)
    print(f"Imported {len(report.created)} cylinders")
    for line, message in report.errors:
        print(f"  line {line}: {message}")
    return 0


def run_mark_damaged(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    (cylinder_id,) = resolve_cylinder_ids(context, [args.cylinder])
    cylinder = lifecycle.mark_damaged(context, cylinder_id, clear_holder=args.clear_holder)
    print(f"{cylinder.serial_code} marked {cylinder.status}")
    return 0


def run_add_member(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    member = membership.onboard_member(context, **translate_add_member(args))
    print(f"Onboarded {member.company_name} as {member.member_id} (deposit {member.total_deposit})")
    return 0


def run_set_price(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    row = pricing.set_member_price(context, args.member_id, args.gas_type, args.size, Decimal(args.price))
    print(f"Custom price {row.gas_type} {row.size} = {row.price}")
    return 0


def run_set_base_price(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    row = pricing.set_base_price(context, args.gas_type, args.size, Decimal(args.price))
    print(f"Base price {row.gas_type} {row.size} = {row.price}")
    return 0


def run_add_station(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    station = catalog.add_refill_station(
        context,
        args.name,
        address=args.address,
        contact_person=args.contact,
        phone=args.phone,
    )
    print(f"Added station {station.name} as {station.station_id}")
    return 0


def run_rent(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    entries = rentals.compile_and_apply(context, translate_rent(context, args))
    for entry in entries:
        print(f"{entry.transaction_id} {entry.transaction_type} {entry.cylinder_id}")
    return 0


def run_send_refill(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    entries = lifecycle.send_to_refill(context, args.station_id, resolve_cylinder_ids(context, args.cylinders))
    print(f"Sent {len(entries)} cylinders to refill")
    return 0


def run_receive_refill(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    entries = lifecycle.receive_from_refill(
        context, resolve_cylinder_ids(context, args.cylinders), Decimal(args.total_cost)
    )
    print(f"Received {len(entries)} cylinders from refill")
    return 0


def run_deliver(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    entries = lifecycle.dispatch_for_delivery(
        context, resolve_cylinder_ids(context, args.cylinders), translate_deliver_date(args.date)
    )
    print(f"Dispatched {len(entries)} cylinders")
    return 0


def run_pay_debt(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    entry = membership.pay_debt(context, **translate_pay_debt(context, args))
    print(f"Recorded payment {entry.transaction_id} for {entry.cost}")
    return 0


def run_request_exit(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    member = membership.request_exit(context, args.member_id)
    print(f"{member.company_name} is {member.status} since {member.exit_request_date_iso}")
    return 0


def run_refund(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    entry = membership.process_refund(context, args.member_id)
    print(f"Refunded {entry.cost} ({entry.transaction_id})")
    return 0


def run_quote(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    quote = rentals.quote_rental(context, args.member_id, resolve_cylinder_ids(context, args.cylinders))
    for line in quote.lines:
        marker = " (custom)" if line.is_custom else ""
        print(f"{line.serial_code:<16} {line.gas_type:<18} {line.size:<4} {line.unit_price}{marker}")
    print(f"Total: {quote.total}")
    if quote.has_unpriced_items:
        print("Warning: some items have no configured price and were quoted at zero.")
    return 0


def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    summary = reports.inventory_summary(context)
    print(f"Total cylinders: {summary.total} (utilization {summary.utilization_pct}%)")
    for status, count in summary.by_status.items():
        print(f"  {status:<22} {count}")
    for gas, (total, available) in summary.by_gas.items():
        print(f"  {gas:<22} {available}/{total} available")
    low = reports.low_stock_gases(context)
    if low:
        print("Low stock: " + ", ".join(gas.value for gas in low))
    return 0


def run_holdings_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    if args.overdue_days is not None:
        holdings = reports.overdue_holdings(context, min_days=args.overdue_days)
        if args.member_id is not None:
            holdings = [holding for holding in holdings if holding.member_id == args.member_id]
    else:
        holdings = reports.current_holdings(context, member_id=args.member_id)
    for holding in holdings:
        flag = " long-term" if holding.is_long_term else ""
        print(f"{holding.cylinder.serial_code:<16} {holding.company_name:<24} {holding.days} days{flag}")
    return 0


def run_bills_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    core_logic.get_member(context, args.member_id)
    bills = ledger.outstanding_bills(context, args.member_id)
    for bill in bills:
        print(f"{bill.transaction_id} {bill.timestamp_iso} {bill.cost}")
    print(f"Outstanding: {membership.settlement_amount(bills)}")
    return 0


def run_refund_status(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    member = core_logic.get_member(context, args.member_id)
    status = membership.refund_status(member, core_logic.resolve_timestamp(None))
    if status.eligible:
        print(f"{member.company_name} is eligible for a refund of {membership.refund_amount(member)}")
    else:
        print(f"{member.company_name}: {status.days_left} day(s) left (eligible on {status.eligible_on.date()})")
    return 0


def run_log_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    kind = TransactionType(args.transaction_type) if args.transaction_type else None
    entries = ledger.audit_trail(context, transaction_type=kind, search=args.search)
    for item in entries[: args.limit]:
        print(f"{item.transaction.timestamp_iso} {item.transaction.transaction_id:<32} {item.description}")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    if isinstance(error, data_manager.StoreError):
        log.error("Store failure: %s", error)
        return 4
    log.error("%s", error)
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
