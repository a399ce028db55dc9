"""Command-line entry points for the stock ledger.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into business layer calls, and printing results. The
business layer commits its own changes, so a command either fully succeeds or
leaves the workbook untouched.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, data_manager, log
from .cart import Cart


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
        prog="stock-ledger",
        description="Manage the stock ledger: catalog, sales, and reversals.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to ./config.ini).",
    )
    parser.add_argument(
        "--owner",
        default=None,
        help="Owner whose catalog and ledger are used (defaults to Defaults.OwnerID).",
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
    """Declare mutating CLI commands such as sales and intakes."""
    specs = {
        "add-product": register_add_product_command(subparsers),
        "edit-product": register_edit_product_command(subparsers),
        "delete-product": register_delete_product_command(subparsers),
        "intake": register_intake_command(subparsers),
        "add-stock": register_add_stock_command(subparsers),
        "remove-stock": register_remove_stock_command(subparsers),
        "adjust-stock": register_adjust_stock_command(subparsers),
        "sale": register_sale_command(subparsers),
        "reverse": register_reverse_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as reports."""
    specs = {
        "stock": register_stock_command(subparsers),
        "log": register_log_command(subparsers),
        "movements": register_movements_command(subparsers),
        "search": register_search_command(subparsers),
        "low-stock": register_low_stock_command(subparsers),
        "out-of-stock": register_out_of_stock_command(subparsers),
        "value": register_value_command(subparsers),
        "summary": register_summary_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def parse_intake_row(text: str) -> core_logic.IntakeRow:
    """Parse ``NAME,QUANTITY,BUY_PRICE,SELL_PRICE`` into an intake row.

    The name may itself contain commas; the last three fields are numeric.
    Values are validated later by the business layer.
    """
    parts = text.rsplit(",", 3)
    if len(parts) != 4:
        raise argparse.ArgumentTypeError(
            f"Expected NAME,QUANTITY,BUY_PRICE,SELL_PRICE but got '{text}'"
        )
    name, quantity, buy_price, sell_price = (part.strip() for part in parts)
    return core_logic.IntakeRow(name=name, quantity=quantity, buy_price=buy_price, sell_price=sell_price)


def parse_sale_item(text: str) -> tuple[str, str]:
    """Parse ``PRODUCT_ID=QUANTITY`` into a pair."""
    product_id, sep, quantity = text.partition("=")
    if not sep or not product_id.strip() or not quantity.strip():
        raise argparse.ArgumentTypeError(f"Expected PRODUCT_ID=QUANTITY but got '{text}'")
    return product_id.strip(), quantity.strip()


def add_metadata_arguments(parser: argparse.ArgumentParser) -> None:
    """Attach the descriptive product fields shared by add and edit."""
    parser.add_argument("--category", default=None)
    parser.add_argument("--brand", default=None)
    parser.add_argument("--sku", default=None)
    parser.add_argument("--barcode", default=None)
    parser.add_argument("--min-stock", default=None, help="Per-product low-stock limit.")


def metadata_kwargs(args: argparse.Namespace) -> Dict[str, Any]:
    """Collect the descriptive product fields the user actually supplied."""
    fields = ("category", "brand", "sku", "barcode", "min_stock")
    return {field: getattr(args, field) for field in fields if getattr(args, field, None) is not None}


def register_add_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-product``."""
    name = "add-product"
    help_text = "Create a product in the catalog."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--buy-price", required=True)
        parser.add_argument("--sell-price", required=True)
        parser.add_argument("--quantity", default="0")
        add_metadata_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_product)


def register_edit_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``edit-product``."""
    name = "edit-product"
    help_text = "Change a product's name, prices or descriptive fields."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--name", default=None)
        parser.add_argument("--buy-price", default=None)
        parser.add_argument("--sell-price", default=None)
        add_metadata_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_edit_product)


def register_delete_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-product``."""
    name = "delete-product"
    help_text = "Remove a product from the catalog."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_product)


def register_intake_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``intake``."""
    name = "intake"
    help_text = "Merge several products into the catalog in one step."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument(
            "--row",
            dest="rows",
            action="append",
            type=parse_intake_row,
            required=True,
            metavar="NAME,QUANTITY,BUY_PRICE,SELL_PRICE",
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_intake)


def register_add_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-stock``."""
    name = "add-stock"
    help_text = "Receive units of an existing product."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--quantity", required=True)
        parser.add_argument("--reason", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_stock)


def register_remove_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``remove-stock``."""
    name = "remove-stock"
    help_text = "Take units out of stock outside of a sale."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--quantity", required=True)
        parser.add_argument("--reason", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_remove_stock)


def register_adjust_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``adjust-stock``."""
    name = "adjust-stock"
    help_text = "Correct a product's quantity by a signed delta."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--delta", required=True)
        parser.add_argument("--reason", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_adjust_stock)


def register_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sale``."""
    name = "sale"
    help_text = "Sell one or more products to a buyer."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--buyer", required=True)
        parser.add_argument(
            "--item",
            dest="items",
            action="append",
            type=parse_sale_item,
            required=True,
            metavar="PRODUCT_ID=QUANTITY",
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sale)


def register_reverse_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``reverse``."""
    name = "reverse"
    help_text = "Undo a sale and restore its stock."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--transaction-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_reverse)


def register_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock``."""
    name = "stock"
    help_text = "Display the catalog with current quantities."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_report)


def register_log_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``log``."""
    name = "log"
    help_text = "Display recorded sales."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_log_report)


def register_movements_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``movements``."""
    name = "movements"
    help_text = "Display the stock movement audit trail."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_movements_report)


def register_search_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``search``."""
    name = "search"
    help_text = "Find products by name, brand or SKU."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("term", nargs="?", default="")
        parser.add_argument("--category", default=None)
        parser.add_argument("--sort", dest="sort_by", choices=sorted(core_logic.SORT_KEYS), default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_search_report)


def register_low_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``low-stock``."""
    name = "low-stock"
    help_text = "Display products that are running out."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--threshold", type=int, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_low_stock_report)


def register_out_of_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``out-of-stock``."""
    name = "out-of-stock"
    help_text = "Display products kept in the catalog at zero quantity."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_out_of_stock_report)


def register_value_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``value``."""
    name = "value"
    help_text = "Display stock on hand valued at cost and at selling price."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_value_report)


def register_summary_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``summary``."""
    name = "summary"
    help_text = "Display sales count, revenue, and profit."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_summary_report)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    target = Path(config_path) if config_path is not None else Path.cwd() / data_manager.CONFIG_FILE_NAME
    context = core_logic.load_runtime_context(target)
    core_logic.ensure_schema_version(context)
    return context


def resolve_owner(context: core_logic.RuntimeContext, args: argparse.Namespace) -> str:
    """Return the ``--owner`` argument or the configured default owner."""
    return getattr(args, "owner", None) or context.settings.default_owner_id


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


def format_money(value: Decimal) -> str:
    return f"{value.quantize(Decimal('0.01'))}"


def run_add_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-product workflow in the BLL."""
    product = core_logic.add_product(
        context,
        resolve_owner(context, args),
        name=args.name,
        buy_price=args.buy_price,
        sell_price=args.sell_price,
        quantity=args.quantity,
        **metadata_kwargs(args),
    )
    print(f"Created {product.product_id} '{product.name}' (quantity {product.quantity})")
    return 0


def run_edit_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the edit-product workflow in the BLL."""
    product = core_logic.update_product(
        context,
        resolve_owner(context, args),
        args.product_id,
        name=args.name,
        buy_price=args.buy_price,
        sell_price=args.sell_price,
        **metadata_kwargs(args),
    )
    print(
        f"Updated {product.product_id} '{product.name}' "
        f"(buy {format_money(product.buy_price)}, sell {format_money(product.sell_price)})"
    )
    return 0


def run_delete_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the delete-product workflow in the BLL."""
    core_logic.delete_product(context, resolve_owner(context, args), args.product_id)
    print(f"Deleted {args.product_id}")
    return 0


def run_intake(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the bulk intake workflow in the BLL."""
    products = core_logic.bulk_intake(context, resolve_owner(context, args), args.rows)
    for product in products:
        print(f"{product.product_id}  {product.name}  quantity={product.quantity}")
    return 0


def run_add_stock(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-stock workflow in the BLL."""
    product = core_logic.add_stock(
        context, resolve_owner(context, args), args.product_id, args.quantity, reason=args.reason
    )
    print(f"{product.product_id} quantity={product.quantity}")
    return 0


def run_remove_stock(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the remove-stock workflow in the BLL."""
    product = core_logic.remove_stock(
        context, resolve_owner(context, args), args.product_id, args.quantity, reason=args.reason
    )
    print(f"{product.product_id} quantity={product.quantity}")
    return 0


def run_adjust_stock(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the adjust-stock workflow in the BLL."""
    product = core_logic.adjust_quantity(
        context, resolve_owner(context, args), args.product_id, args.delta, reason=args.reason
    )
    print(f"{product.product_id} quantity={product.quantity}")
    return 0


def run_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Fill a cart from ``--item`` arguments and check it out."""
    cart = Cart(resolve_owner(context, args))
    for product_id, quantity in args.items:
        cart.add_or_merge(context, product_id, quantity)
    entry = cart.checkout(context, args.buyer)
    print(
        f"Recorded {entry.transaction_id} for '{entry.buyer_name}': "
        f"amount {format_money(entry.total_amount)}, profit {format_money(entry.total_profit)}"
    )
    return 0


def run_reverse(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sale reversal workflow in the BLL."""
    restored = core_logic.reverse_sale(context, resolve_owner(context, args), args.transaction_id)
    print(f"Reversed {args.transaction_id}")
    for product in restored:
        print(f"  {product.product_id}  {product.name}  quantity={product.quantity}")
    return 0


def print_product_line(product: data_manager.ProductRow) -> None:
    details = "  ".join(
        f"{label}={value}"
        for label, value in (("category", product.category), ("brand", product.brand), ("sku", product.sku))
        if value
    )
    print(
        f"{product.product_id}  {product.name}  quantity={product.quantity}  "
        f"buy={format_money(product.buy_price)}  sell={format_money(product.sell_price)}"
        + (f"  {details}" if details else "")
    )


def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the owner's catalog."""
    for product in core_logic.list_products(context, resolve_owner(context, args)):
        print_product_line(product)
    return 0


def run_search_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the products matching a search term and category."""
    matches = core_logic.search_products(
        context,
        resolve_owner(context, args),
        args.term,
        category=args.category,
        sort_by=args.sort_by,
    )
    for product in matches:
        print_product_line(product)
    return 0


def run_log_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the owner's ledger entries with their items."""
    for entry in core_logic.list_transactions(context, resolve_owner(context, args)):
        print(
            f"{entry.transaction_id}  {entry.created_at}  {entry.buyer_name}  "
            f"amount={format_money(entry.total_amount)}  profit={format_money(entry.total_profit)}"
        )
        for item in entry.items:
            print(f"    {item.quantity} x {item.name} @ {format_money(item.sell_price)}")
    return 0


def run_movements_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the stock movement audit trail."""
    movements = core_logic.list_movements(context, resolve_owner(context, args), args.product_id)
    for movement in movements:
        print(
            f"{movement.created_at}  {movement.product_id}  {movement.movement_type}  "
            f"{movement.quantity:+d}  {movement.reason or ''}".rstrip()
        )
    return 0


def run_low_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print products at or below the low-stock threshold."""
    for product in core_logic.list_low_stock(context, resolve_owner(context, args), args.threshold):
        limit = "" if product.min_stock is None else f"  min={product.min_stock}"
        print(f"{product.product_id}  {product.name}  quantity={product.quantity}{limit}")
    return 0


def run_out_of_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print products that have run out."""
    for product in core_logic.list_out_of_stock(context, resolve_owner(context, args)):
        print(f"{product.product_id}  {product.name}")
    return 0


def run_value_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print catalog counts and the value of stock on hand."""
    summary = core_logic.calculate_inventory_summary(context, resolve_owner(context, args))
    print(f"Products: {summary['product_count']}")
    print(f"Inventory value at cost: {format_money(summary['cost_value'])}")
    print(f"Inventory value at sell price: {format_money(summary['retail_value'])}")
    print(f"Low stock: {summary['low_stock_count']}  Out of stock: {summary['out_of_stock_count']}")
    if summary["categories"]:
        print(f"Categories: {', '.join(summary['categories'])}")
    return 0


def run_summary_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the sales summary."""
    summary = core_logic.calculate_sales_summary(context, resolve_owner(context, args))
    print(f"Sales: {summary['transaction_count']}")
    print(f"Total amount: {format_money(summary['total_amount'])}")
    print(f"Total profit: {format_money(summary['total_profit'])}")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.ValidationError):
        log.error("%s", error)
        for field_name, message in error.field_errors.items():
            print(f"  {field_name}: {message}")
        for index, row_errors in enumerate(error.row_errors, start=1):
            for field_name, message in row_errors.items():
                print(f"  row {index} {field_name}: {message}")
        return 2
    if isinstance(error, core_logic.NotFound):
        log.error("%s", error)
        return 2
    if isinstance(error, core_logic.ConflictError):
        log.error("%s (retry the command)", error)
        return 4
    if isinstance(error, (core_logic.StorageError, FileNotFoundError)):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        return dispatch_command(context, args, command_table)
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
