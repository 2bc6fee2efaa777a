"""Unit tests describing the CLI presentation layer contract."""

from __future__ import annotations

import argparse
from decimal import Decimal
from pathlib import Path
from unittest.mock import Mock

import pytest

from cylinder_ledger import cli, constants, core_logic, data_manager, rentals

from builders import T0, cylinder_id, only_member


WRITE_COMMANDS = {
    "add-cylinder",
    "import-cylinders",
    "mark-damaged",
    "add-member",
    "set-price",
    "set-base-price",
    "add-station",
    "rent",
    "send-refill",
    "receive-refill",
    "deliver",
    "pay-debt",
    "request-exit",
    "refund",
}

READ_COMMANDS = {
    "quote",
    "stock",
    "holdings",
    "bills",
    "refund-status",
    "log",
}


def _registered_choices(parser: argparse.ArgumentParser) -> set[str]:
    for action in parser._actions:
        if isinstance(action, argparse._SubParsersAction):
            return set(action.choices)
    return set()


def _parse(register, argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="cli")
    subparsers = parser.add_subparsers(dest="command")
    spec = register(subparsers)
    spec.register(subparsers)
    return parser.parse_args(argv)


# ---------------------------------------------------------------------------
# Parser construction
# ---------------------------------------------------------------------------


def test_build_parser_sets_program_metadata():
    """build_parser should set user-facing program metadata."""

    parser = cli.build_parser()
    assert isinstance(parser, argparse.ArgumentParser)
    assert parser.prog == "cylinder-ledger"
    assert "cylinder" in (parser.description or "")


def test_build_parser_accepts_config_path():
    namespace = cli.build_parser().parse_args(["--config", "site/config.ini"])
    assert namespace.config == Path("site/config.ini")


def test_configure_subcommands_registers_every_command(cli_parser):
    """configure_subcommands should wire both mutating and reporting commands."""

    command_table = cli.configure_subcommands(cli_parser)

    assert set(command_table) == WRITE_COMMANDS | READ_COMMANDS
    assert _registered_choices(cli_parser) == WRITE_COMMANDS | READ_COMMANDS


def test_register_write_commands_returns_command_specs(subparsers_action):
    specs = cli.register_write_commands(subparsers_action)
    assert set(specs) == WRITE_COMMANDS
    assert all(isinstance(spec, cli.CommandSpec) and spec.help_text for spec in specs.values())
    assert WRITE_COMMANDS <= set(subparsers_action.choices)


def test_register_read_commands_returns_command_specs(subparsers_action):
    specs = cli.register_read_commands(subparsers_action)
    assert set(specs) == READ_COMMANDS
    assert all(callable(spec.execute) for spec in specs.values())
    assert READ_COMMANDS <= set(subparsers_action.choices)


# ---------------------------------------------------------------------------
# Command arguments
# ---------------------------------------------------------------------------


def test_add_cylinder_arguments():
    namespace = _parse(
        cli.register_add_cylinder_command,
        ["add-cylinder", "--serial", "OX-1", "--gas-type", "Oxygen", "--size", "6m3"],
    )
    assert (namespace.serial, namespace.gas_type, namespace.size) == ("OX-1", "Oxygen", "6m3")
    assert namespace.status == constants.CylinderStatus.AVAILABLE.value
    assert namespace.location is None


def test_add_cylinder_rejects_holder_bound_status():
    with pytest.raises(SystemExit):
        _parse(
            cli.register_add_cylinder_command,
            ["add-cylinder", "--serial", "OX-1", "--gas-type", "Oxygen", "--size", "6m3", "--status", "Rented"],
        )


def test_add_member_arguments():
    namespace = _parse(
        cli.register_add_member_command,
        ["add-member", "--name", "Budi", "--company", "PT Maju", "--deposit-6m3", "2"],
    )
    assert namespace.deposit_large == 2
    assert namespace.deposit_small == 0
    assert namespace.carried_deposit is None


def test_rent_arguments():
    namespace = _parse(
        cli.register_rent_command,
        ["rent", "--member-id", "M1", "--rent", "OX-1", "OX-2", "--return", "AR-1", "--total-cost", "450000", "--unpaid"],
    )
    assert namespace.rent == ["OX-1", "OX-2"]
    assert namespace.returns == ["AR-1"]
    assert namespace.total_cost == "450000"
    assert namespace.unpaid is True


def test_pay_debt_arguments():
    namespace = _parse(cli.register_pay_debt_command, ["pay-debt", "--member-id", "M1", "--bills", "RO1-C1"])
    assert namespace.bills == ["RO1-C1"]
    assert namespace.amount is None


def test_log_arguments():
    namespace = _parse(cli.register_log_command, ["log", "--type", "RETURN", "--limit", "5"])
    assert (namespace.transaction_type, namespace.limit, namespace.search) == ("RETURN", 5, None)


def test_holdings_arguments():
    namespace = _parse(cli.register_holdings_command, ["holdings", "--overdue-days", "90"])
    assert namespace.command == "holdings"
    assert namespace.overdue_days == 90


# ---------------------------------------------------------------------------
# Runtime context helpers
# ---------------------------------------------------------------------------


def test_load_runtime_context_uses_provided_path(config_file, monkeypatch):
    """load_runtime_context should load settings from the specified config path."""

    sentinel_context = object()
    checked = []

    def fake_loader(path: Path | None) -> object:
        assert path == config_file
        return sentinel_context

    monkeypatch.setattr(core_logic, "load_runtime_context", fake_loader)
    monkeypatch.setattr(core_logic, "ensure_schema_version", checked.append)
    assert cli.load_runtime_context(config_file) is sentinel_context
    assert checked == [sentinel_context]


def test_load_runtime_context_defers_discovery(monkeypatch):
    """Without a path the core loader searches for config.ini itself."""

    monkeypatch.setattr(core_logic, "load_runtime_context", lambda path: path)
    monkeypatch.setattr(core_logic, "ensure_schema_version", lambda context: None)
    assert cli.load_runtime_context() is None


def test_load_runtime_context_rejects_schema_mismatch(config_factory):
    bundle = config_factory(schema_version="1.0.0")
    with pytest.raises(RuntimeError):
        cli.load_runtime_context(bundle.config_path)


# ---------------------------------------------------------------------------
# Dispatch helpers
# ---------------------------------------------------------------------------


def test_dispatch_command_invokes_executor(runtime_context):
    executor = Mock(return_value=0)
    spec = cli.CommandSpec("alpha", "A", lambda s: s.add_parser("alpha"), executor)
    args = argparse.Namespace(command="alpha")

    assert cli.dispatch_command(runtime_context, args, {"alpha": spec}) == 0
    executor.assert_called_once_with(runtime_context, args)


@pytest.mark.parametrize("args", [argparse.Namespace(command="unknown"), argparse.Namespace()])
def test_dispatch_command_handles_unknown_commands(runtime_context, args):
    with pytest.raises(KeyError):
        cli.dispatch_command(runtime_context, args, {})


def test_build_command_table_indexes_specs(command_spec_iterable):
    table = cli.build_command_table(command_spec_iterable)
    assert set(table) == {spec.name for spec in command_spec_iterable}


def test_build_command_table_detects_duplicate_commands():
    specs = [
        cli.CommandSpec("alpha", "A", lambda s: s.add_parser("alpha"), lambda c, a: 0),
        cli.CommandSpec("alpha", "Duplicate", lambda s: s.add_parser("alpha"), lambda c, a: 0),
    ]
    with pytest.raises(ValueError):
        cli.build_command_table(specs)


# ---------------------------------------------------------------------------
# Translation helpers
# ---------------------------------------------------------------------------


def test_resolve_cylinder_ids_accepts_serials_and_ids(stocked_context):
    known = cylinder_id(stocked_context, "OX-002")

    resolved = cli.resolve_cylinder_ids(stocked_context, ["ox-001", known, "CYL-404"])

    assert resolved == [cylinder_id(stocked_context, "OX-001"), known, "CYL-404"]


def test_translate_add_member_uses_deposit_schedule():
    args = argparse.Namespace(
        name="Budi",
        company="PT Maju",
        address="",
        phone="0812",
        deposit_small=1,
        deposit_medium=0,
        deposit_large=2,
        carried_deposit=None,
    )
    payload = cli.translate_add_member(args)
    assert payload["company_name"] == "PT Maju"
    assert payload["deposit_items"] == {
        constants.CylinderSize.SMALL: 1,
        constants.CylinderSize.MEDIUM: 0,
        constants.CylinderSize.LARGE: 2,
    }
    assert "carried_deposit" not in payload


def test_translate_add_member_prefers_carried_deposit():
    args = argparse.Namespace(
        name="Budi", company="PT Maju", address="", phone="", deposit_small=3, carried_deposit="250000"
    )
    payload = cli.translate_add_member(args)
    assert payload["carried_deposit"] == Decimal("250000")
    assert "deposit_items" not in payload


def test_translate_rent_returns_rental_command(stocked_context):
    args = argparse.Namespace(member_id="M1", rent=["OX-001"], returns=[], total_cost="225000", unpaid=True)

    command = cli.translate_rent(stocked_context, args)

    assert isinstance(command, rentals.RentalCommand)
    assert command.rent_cylinder_ids == (cylinder_id(stocked_context, "OX-001"),)
    assert command.return_cylinder_ids == ()
    assert command.total_rent_cost == Decimal("225000")
    assert command.is_unpaid is True
    assert command.timestamp is None


def test_translate_pay_debt_defaults_to_bill_total(stocked_context):
    member = only_member(stocked_context)
    bills = rentals.compile_and_apply(
        stocked_context,
        rentals.RentalCommand(
            member.member_id,
            rent_cylinder_ids=(cylinder_id(stocked_context, "OX-001"), cylinder_id(stocked_context, "OX-002")),
            total_rent_cost=Decimal("450000"),
            is_unpaid=True,
            timestamp=T0,
        ),
    )
    selected = [bill.transaction_id for bill in bills]

    defaulted = cli.translate_pay_debt(
        stocked_context, argparse.Namespace(member_id=member.member_id, bills=selected, amount=None)
    )
    explicit = cli.translate_pay_debt(
        stocked_context, argparse.Namespace(member_id=member.member_id, bills=[], amount="1000")
    )

    assert defaulted == {"member_id": member.member_id, "amount": Decimal("450000"), "bill_ids": selected}
    assert explicit["amount"] == Decimal("1000")


def test_translate_deliver_date():
    assert cli.translate_deliver_date(None) is None
    assert cli.translate_deliver_date("2026-01-05T08:00:00+00:00") == T0


# ---------------------------------------------------------------------------
# Command execution helpers
# ---------------------------------------------------------------------------


def test_run_rent_delegates_to_compiler(runtime_context, monkeypatch, capsys):
    command = rentals.RentalCommand(member_id="M1", rent_cylinder_ids=("C1",))
    monkeypatch.setattr(cli, "translate_rent", lambda context, args: command)
    entry = data_manager.TransactionRow(
        "RO1-C1", T0.isoformat(), "RENTAL_OUT", "C1", "M1", None, Decimal("1"), "PAID", None
    )
    called = {}

    def fake_apply(context: core_logic.RuntimeContext, cmd: rentals.RentalCommand) -> list:
        called["context"] = context
        called["cmd"] = cmd
        return [entry]

    monkeypatch.setattr(cli.rentals, "compile_and_apply", fake_apply)

    assert cli.run_rent(runtime_context, argparse.Namespace()) == 0
    assert called == {"context": runtime_context, "cmd": command}
    assert "RO1-C1 RENTAL_OUT C1" in capsys.readouterr().out


def test_run_stock_report_prints_low_stock(stocked_context, capsys):
    assert cli.run_stock_report(stocked_context, argparse.Namespace()) == 0

    output = capsys.readouterr().out
    assert "Total cylinders: 4 (utilization 0%)" in output
    assert "Low stock: Acetylene (C2H2), Argon, CO2, Nitrogen" in output


def test_run_log_report_honours_limit(stocked_context, monkeypatch, capsys):
    called = {}

    def fake_trail(context, *, transaction_type=None, search=None):
        called["args"] = (transaction_type, search)
        return []

    monkeypatch.setattr(cli.ledger, "audit_trail", fake_trail)
    args = argparse.Namespace(transaction_type="RETURN", search="maju", limit=10)

    assert cli.run_log_report(stocked_context, args) == 0
    assert called["args"] == (constants.TransactionType.RETURN, "maju")


def test_run_refund_status_requires_exit_request(stocked_context):
    member = only_member(stocked_context)
    with pytest.raises(core_logic.BusinessRuleViolation):
        cli.run_refund_status(stocked_context, argparse.Namespace(member_id=member.member_id))


# ---------------------------------------------------------------------------
# Error handling and persistence
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "error, expected",
    [
        (core_logic.BusinessRuleViolation("invalid"), 2),
        (core_logic.MissingReferenceError("unknown member"), 2),
        (core_logic.InvalidTransitionError("not available"), 2),
        (FileNotFoundError("missing"), 3),
        (data_manager.StoreError("sheet gone"), 4),
        (ValueError("bad value"), 1),
    ],
)
def test_handle_cli_error_returns_exit_code(error: Exception, expected: int, caplog: pytest.LogCaptureFixture):
    """handle_cli_error should convert exceptions into exit codes."""

    caplog.set_level("ERROR")
    assert cli.handle_cli_error(error) == expected
    assert any(str(error) in record.getMessage() for record in caplog.records)


def test_persist_workbook_saves_changes(runtime_context, monkeypatch):
    persist = Mock()
    monkeypatch.setattr(cli.core_logic, "persist_context", persist)

    cli.persist_workbook(runtime_context)

    persist.assert_called_once_with(runtime_context)


def test_persist_workbook_reports_locked_file(runtime_context, monkeypatch):
    monkeypatch.setattr(cli.core_logic, "persist_context", Mock(side_effect=PermissionError("locked")))
    with pytest.raises(RuntimeError, match="locked"):
        cli.persist_workbook(runtime_context)


# ---------------------------------------------------------------------------
# main()
# ---------------------------------------------------------------------------


def test_main_saves_workbook_after_successful_command(config_factory, capsys):
    bundle = config_factory()

    exit_code = cli.main(
        ["--config", str(bundle.config_path), "add-cylinder", "--serial", "ox-9", "--gas-type", "Oxygen", "--size", "6m3"]
    )

    assert exit_code == 0
    assert "Added OX-9" in capsys.readouterr().out
    reloaded = core_logic.load_runtime_context(bundle.config_path)
    stored = core_logic.find_cylinder_by_serial(reloaded, "OX-9")
    assert stored is not None
    assert stored.last_location == bundle.warehouse_name


def test_main_does_not_save_after_failure(config_factory, monkeypatch):
    bundle = config_factory()
    persist = Mock()
    monkeypatch.setattr(cli, "persist_workbook", persist)

    exit_code = cli.main(["--config", str(bundle.config_path), "rent", "--member-id", "MEM-404", "--rent", "OX-1"])

    assert exit_code == 2
    persist.assert_not_called()


def test_main_reports_missing_config(tmp_path):
    assert cli.main(["--config", str(tmp_path / "nowhere.ini"), "stock"]) == 3


def test_main_imports_csv_and_lists_rejected_rows(config_factory, tmp_path, capsys):
    bundle = config_factory()
    csv_path = tmp_path / "cylinders.csv"
    csv_path.write_text("serialCode,gasType,size\nOX-1,Oxygen,6m3\nOX-2,Helium,6m3\n", encoding="utf-8")

    assert cli.main(["--config", str(bundle.config_path), "import-cylinders", "--file", str(csv_path)]) == 0

    output = capsys.readouterr().out
    assert "Imported 1 cylinders" in output
    assert "line 3: Invalid Gas Type" in output
