"""Tests describing the command-line interface wiring and commands."""

from __future__ import annotations

import argparse
from decimal import Decimal
from pathlib import Path
from unittest.mock import Mock

import pytest

from stock_ledger import cli, core_logic

WRITE_COMMANDS = {
    "add-product",
    "edit-product",
    "delete-product",
    "intake",
    "add-stock",
    "remove-stock",
    "adjust-stock",
    "sale",
    "reverse",
}
READ_COMMANDS = {
    "stock",
    "log",
    "movements",
    "search",
    "low-stock",
    "out-of-stock",
    "value",
    "summary",
}


def _registered_choices(parser: argparse.ArgumentParser) -> set[str]:
    for action in parser._actions:
        if isinstance(action, argparse._SubParsersAction):
            return set(action.choices)
    return set()


def _product_id_for(config_path: Path, name: str) -> str:
    context = core_logic.load_runtime_context(config_path)
    [product] = [p for p in core_logic.list_products(context, "owner-1") if p.name == name]
    return product.product_id


# ---------------------------------------------------------------------------
# Parser construction
# ---------------------------------------------------------------------------


def test_build_parser_sets_program_metadata():
    """build_parser should set user-facing program metadata."""

    parser = cli.build_parser()
    assert isinstance(parser, argparse.ArgumentParser)
    assert parser.prog == "stock-ledger"
    args = parser.parse_args(["--owner", "alice"])
    assert args.owner == "alice"
    assert args.config is None


def test_configure_subcommands_registers_every_command(cli_parser):
    """configure_subcommands should wire all read and write sub-commands."""

    command_table = cli.configure_subcommands(cli_parser)

    assert set(command_table) == WRITE_COMMANDS | READ_COMMANDS
    assert _registered_choices(cli_parser) == WRITE_COMMANDS | READ_COMMANDS


def test_register_write_commands_returns_command_specs(subparsers_action):
    specs = cli.register_write_commands(subparsers_action)

    assert set(specs) == WRITE_COMMANDS
    assert all(isinstance(spec, cli.CommandSpec) for spec in specs.values())


def test_register_read_commands_returns_command_specs(subparsers_action):
    specs = cli.register_read_commands(subparsers_action)

    assert set(specs) == READ_COMMANDS
    assert all(spec.name == name for name, spec in specs.items())


def test_add_product_arguments_default_quantity(cli_parser):
    cli.configure_subcommands(cli_parser)

    args = cli_parser.parse_args(["add-product", "--name", "Widget", "--buy-price", "5", "--sell-price", "8"])

    assert args.command == "add-product"
    assert args.quantity == "0"


def test_sale_arguments_collect_items(cli_parser):
    cli.configure_subcommands(cli_parser)

    args = cli_parser.parse_args(["sale", "--buyer", "Ayşe", "--item", "P1=2", "--item", "P2=1"])

    assert args.items == [("P1", "2"), ("P2", "1")]


def test_intake_arguments_collect_rows(cli_parser):
    cli.configure_subcommands(cli_parser)

    args = cli_parser.parse_args(["intake", "--row", "Tea,2,1,2", "--row", "Coffee, beans,1,3,4"])

    assert [row.name for row in args.rows] == ["Tea", "Coffee, beans"]


def test_sale_requires_an_item(cli_parser):
    cli.configure_subcommands(cli_parser)

    with pytest.raises(SystemExit):
        cli_parser.parse_args(["sale", "--buyer", "Ayşe"])


# ---------------------------------------------------------------------------
# Argument parsing helpers
# ---------------------------------------------------------------------------


def test_parse_intake_row_splits_from_the_right():
    row = cli.parse_intake_row(" Big, red box , 3, 1.50 ,2")

    assert row == core_logic.IntakeRow(name="Big, red box", quantity="3", buy_price="1.50", sell_price="2")


def test_parse_intake_row_rejects_missing_fields():
    with pytest.raises(argparse.ArgumentTypeError):
        cli.parse_intake_row("Tea,2,1")


@pytest.mark.parametrize("text", ["P1", "=2", "P1=", " = "])
def test_parse_sale_item_rejects_malformed(text):
    with pytest.raises(argparse.ArgumentTypeError):
        cli.parse_sale_item(text)


def test_parse_sale_item_strips_whitespace():
    assert cli.parse_sale_item(" P1 = 3 ") == ("P1", "3")


def test_format_money_rounds_to_cents():
    assert cli.format_money(Decimal("32")) == "32.00"
    assert cli.format_money(Decimal("1.005")) == "1.00"


# ---------------------------------------------------------------------------
# Runtime context helpers
# ---------------------------------------------------------------------------


def test_load_runtime_context_uses_provided_path(config_file, monkeypatch):
    """load_runtime_context should load settings from the specified config path."""

    sentinel_context = Mock(name="context")

    def fake_loader(path: Path | None) -> object:
        assert path == config_file
        return sentinel_context

    monkeypatch.setattr(core_logic, "load_runtime_context", fake_loader)
    monkeypatch.setattr(core_logic, "ensure_schema_version", Mock())
    assert cli.load_runtime_context(config_file) is sentinel_context


def test_load_runtime_context_supports_defaults(monkeypatch, tmp_path):
    """load_runtime_context should resolve config.ini from the working directory."""

    config_path = tmp_path / "config.ini"
    sentinel_context = Mock(name="context")

    def fake_loader(path: Path | None) -> object:
        assert path == config_path
        return sentinel_context

    monkeypatch.setattr(core_logic, "load_runtime_context", fake_loader)
    monkeypatch.setattr(core_logic, "ensure_schema_version", Mock())
    monkeypatch.chdir(tmp_path)
    assert cli.load_runtime_context() is sentinel_context


def test_load_runtime_context_checks_schema(config_factory):
    bundle = config_factory(schema_version="0.1.0")

    with pytest.raises(RuntimeError):
        cli.load_runtime_context(bundle.config_path)


def test_resolve_owner_prefers_argument(runtime_context):
    assert cli.resolve_owner(runtime_context, argparse.Namespace(owner="alice")) == "alice"
    assert cli.resolve_owner(runtime_context, argparse.Namespace(owner=None)) == "owner-1"


# ---------------------------------------------------------------------------
# Dispatch helpers
# ---------------------------------------------------------------------------


def test_dispatch_command_invokes_executor(runtime_context):
    """dispatch_command should call the executor associated with the command."""

    execute = Mock(return_value=0)
    spec = cli.CommandSpec("alpha", "help", lambda s: s.add_parser("alpha"), execute)
    args = argparse.Namespace(command="alpha")

    assert cli.dispatch_command(runtime_context, args, {"alpha": spec}) == 0
    execute.assert_called_once_with(runtime_context, args)


def test_dispatch_command_handles_unknown_commands(runtime_context):
    """dispatch_command should raise a clear error for unknown commands."""

    with pytest.raises(KeyError):
        cli.dispatch_command(runtime_context, argparse.Namespace(command="unknown"), {})
    with pytest.raises(KeyError):
        cli.dispatch_command(runtime_context, argparse.Namespace(), {})


def test_build_command_table_indexes_specs(command_spec_iterable):
    """build_command_table should index specs by their command names."""

    table = cli.build_command_table(command_spec_iterable)
    assert set(table) == {spec.name for spec in command_spec_iterable}


def test_build_command_table_detects_duplicate_commands():
    """build_command_table should guard against duplicate command names."""

    specs = [
        cli.CommandSpec("alpha", "A", lambda s: s.add_parser("alpha"), lambda c, a: 0),
        cli.CommandSpec("alpha", "Duplicate", lambda s: s.add_parser("alpha"), lambda c, a: 0),
    ]
    with pytest.raises(ValueError):
        cli.build_command_table(specs)


# ---------------------------------------------------------------------------
# Command executors
# ---------------------------------------------------------------------------


def test_run_add_product_invokes_bll(runtime_context, monkeypatch, capsys, product_factory):
    add_product = Mock(return_value=product_factory("P9", name="Widget", quantity=3))
    monkeypatch.setattr(cli.core_logic, "add_product", add_product)
    args = argparse.Namespace(owner=None, name="Widget", buy_price="5", sell_price="8", quantity="3")

    assert cli.run_add_product(runtime_context, args) == 0

    add_product.assert_called_once_with(
        runtime_context, "owner-1", name="Widget", buy_price="5", sell_price="8", quantity="3"
    )
    assert "Created P9 'Widget'" in capsys.readouterr().out


def test_run_reverse_invokes_bll(runtime_context, monkeypatch, capsys, product_factory):
    reverse_sale = Mock(return_value=[product_factory("P1")])
    monkeypatch.setattr(cli.core_logic, "reverse_sale", reverse_sale)

    assert cli.run_reverse(runtime_context, argparse.Namespace(owner="alice", transaction_id="T1")) == 0

    reverse_sale.assert_called_once_with(runtime_context, "alice", "T1")
    assert "Reversed T1" in capsys.readouterr().out


def test_run_summary_report_prints_totals(runtime_context, monkeypatch, capsys):
    monkeypatch.setattr(
        cli.core_logic,
        "calculate_sales_summary",
        Mock(return_value={"transaction_count": 2, "total_amount": Decimal("50"), "total_profit": Decimal("18.5")}),
    )

    assert cli.run_summary_report(runtime_context, argparse.Namespace(owner=None)) == 0

    out = capsys.readouterr().out
    assert "Sales: 2" in out
    assert "Total amount: 50.00" in out
    assert "Total profit: 18.50" in out


# ---------------------------------------------------------------------------
# Error handling
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "error, expected",
    [
        (core_logic.ValidationError("invalid"), 2),
        (core_logic.InsufficientStock("P1", requested=3, available=1), 2),
        (core_logic.NotFound("missing"), 2),
        (core_logic.ConflictError("moved"), 4),
        (core_logic.StorageError("disk"), 3),
        (FileNotFoundError("missing"), 3),
        (ValueError("bad value"), 1),
    ],
)
def test_handle_cli_error_returns_exit_code(error: Exception, expected: int, caplog: pytest.LogCaptureFixture):
    """handle_cli_error should convert exceptions into exit codes."""

    caplog.set_level("ERROR")
    exit_code = cli.handle_cli_error(error)
    assert exit_code == expected
    assert caplog.records


def test_handle_cli_error_prints_field_and_row_errors(capsys):
    error = core_logic.ValidationError(
        "bad rows",
        field_errors={"buyer_name": "Buyer name is required"},
        row_errors=[{}, {"quantity": "Quantity must be greater than zero"}],
    )

    cli.handle_cli_error(error)

    out = capsys.readouterr().out
    assert "buyer_name: Buyer name is required" in out
    assert "row 2 quantity: Quantity must be greater than zero" in out


# ---------------------------------------------------------------------------
# Program entry point
# ---------------------------------------------------------------------------


def test_main_dispatches_with_loaded_context(monkeypatch, runtime_context):
    monkeypatch.setattr(cli, "load_runtime_context", lambda path=None: runtime_context)
    dispatch = Mock(return_value=0)
    monkeypatch.setattr(cli, "dispatch_command", dispatch)

    assert cli.main(["value"]) == 0

    context, args, table = dispatch.call_args.args
    assert context is runtime_context
    assert args.command == "value"
    assert "value" in table


def test_main_routes_errors_through_handler(monkeypatch, runtime_context):
    monkeypatch.setattr(cli, "load_runtime_context", lambda path=None: runtime_context)
    monkeypatch.setattr(cli, "dispatch_command", Mock(side_effect=core_logic.NotFound("gone")))
    handled = {}

    def fake_handle(error: Exception) -> int:
        handled["error"] = error
        return 99

    monkeypatch.setattr(cli, "handle_cli_error", fake_handle)

    assert cli.main(["stock"]) == 99
    assert isinstance(handled["error"], core_logic.NotFound)


def test_main_runs_commands_against_workbook(config_file, capsys):
    """Drive a full add, sell, and report cycle through argv."""

    base = ["--config", str(config_file)]
    assert cli.main(base + ["add-product", "--name", "Widget", "--buy-price", "5", "--sell-price", "8", "--quantity", "10"]) == 0
    product_id = _product_id_for(config_file, "Widget")

    assert cli.main(base + ["sale", "--buyer", "Ayşe", "--item", f"{product_id}=4"]) == 0
    assert "amount 32.00, profit 12.00" in capsys.readouterr().out

    assert cli.main(base + ["stock"]) == 0
    assert "quantity=6" in capsys.readouterr().out

    assert cli.main(base + ["sale", "--buyer", "Ayşe", "--item", f"{product_id}=7"]) == 2
    assert cli.main(base + ["reverse", "--transaction-id", "T-missing"]) == 2


def test_main_reports_missing_config(tmp_path):
    assert cli.main(["--config", str(tmp_path / "absent.ini"), "stock"]) == 3


def test_add_product_accepts_descriptive_fields(cli_parser):
    cli.configure_subcommands(cli_parser)
    args = cli_parser.parse_args(
        ["add-product", "--name", "Phone", "--buy-price", "100", "--sell-price", "150",
         "--category", "Electronics", "--sku", "PH-1", "--min-stock", "3"]
    )

    assert cli.metadata_kwargs(args) == {"category": "Electronics", "sku": "PH-1", "min_stock": "3"}


def test_search_rejects_unknown_sort_key(cli_parser):
    cli.configure_subcommands(cli_parser)
    with pytest.raises(SystemExit):
        cli_parser.parse_args(["search", "phone", "--sort", "colour"])


def test_main_searches_and_reports_catalog(config_file, capsys):
    base = ["--config", str(config_file)]
    assert cli.main(base + ["add-product", "--name", "Phone", "--buy-price", "100", "--sell-price", "150",
                            "--quantity", "2", "--category", "Electronics", "--brand", "Acme", "--min-stock", "3"]) == 0
    assert cli.main(base + ["add-product", "--name", "Cable", "--buy-price", "1", "--sell-price", "2",
                            "--quantity", "50", "--category", "Accessories", "--sku", "CB-ACME"]) == 0
    capsys.readouterr()

    assert cli.main(base + ["search", "acme", "--sort", "name"]) == 0
    lines = capsys.readouterr().out.splitlines()
    assert [line.split()[1] for line in lines] == ["Cable", "Phone"]

    assert cli.main(base + ["search", "--category", "Electronics"]) == 0
    assert "Phone" in capsys.readouterr().out

    assert cli.main(base + ["low-stock"]) == 0
    assert "Phone  quantity=2  min=3" in capsys.readouterr().out

    assert cli.main(base + ["value"]) == 0
    out = capsys.readouterr().out
    assert "Inventory value at cost: 250.00" in out
    assert "Inventory value at sell price: 400.00" in out
    assert "Categories: Electronics, Accessories" in out
