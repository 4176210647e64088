"""Command-line entry points for the inventory ledger.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into the objects consumed by the business layer, and
printing the results. Keeping the CLI thin ensures the same parser
configuration can be reused by tests, scripts, or any alternative front-end.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, log, valuation
from .constants import TransactionType, ValuationMethod


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
        prog="ledger-cli",
        description="Command-line tools for the inventory ledger workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to ./config.ini).",
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
    """Declare mutating CLI commands such as catalog edits and stock movements."""
    specs = {
        "add-category": register_add_category_command(subparsers),
        "add-product": register_add_product_command(subparsers),
        "update-category": register_update_category_command(subparsers),
        "update-product": register_update_product_command(subparsers),
        "delete-category": register_delete_category_command(subparsers),
        "delete-product": register_delete_product_command(subparsers),
        "entry": register_movement_command(subparsers, TransactionType.ENTRY),
        "exit": register_movement_command(subparsers, TransactionType.EXIT),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as stock and valuation reports."""
    specs = {
        "stock": register_stock_command(subparsers),
        "category-stock": register_category_stock_command(subparsers),
        "low-stock": register_low_stock_command(subparsers),
        "transactions": register_transactions_command(subparsers),
        "cost": register_cost_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_add_category_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-category``."""
    name = "add-category"
    help_text = "Register a new product category."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--description", default="")
        parser.add_argument("--category-id", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_category)


def register_add_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-product``."""
    name = "add-product"
    help_text = "Register a new product in the catalog."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--category-id", default=None, help="Defaults to the configured category.")
        parser.add_argument("--sku", default="")
        parser.add_argument("--min-stock", default="0")
        parser.add_argument("--price", default="0.00")
        parser.add_argument("--description", default="")
        parser.add_argument("--barcode", default=None)
        parser.add_argument("--product-id", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_product)


def register_update_category_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``update-category``."""
    name = "update-category"
    help_text = "Rename or re-describe an existing category."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--category-id", required=True)
        parser.add_argument("--name", default=None)
        parser.add_argument("--description", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_update_category)


def register_update_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``update-product``."""
    name = "update-product"
    help_text = "Change selected fields of an existing product."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--name", default=None)
        parser.add_argument("--category-id", default=None)
        parser.add_argument("--sku", default=None)
        parser.add_argument("--min-stock", default=None)
        parser.add_argument("--price", default=None)
        parser.add_argument("--description", default=None)
        parser.add_argument("--barcode", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_update_product)


def register_delete_category_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-category``."""
    name = "delete-category"
    help_text = "Delete a category that no product uses."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--category-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_category)


def register_delete_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-product``."""
    name = "delete-product"
    help_text = "Delete a product without recorded transactions."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_product)


def register_movement_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
    transaction_type: TransactionType,
) -> CommandSpec:
    """Register the parser and executor for ``entry`` or ``exit``."""
    name = transaction_type.value
    if transaction_type is TransactionType.ENTRY:
        help_text = "Record stock received at a unit cost."
    else:
        help_text = "Record stock leaving the inventory."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--quantity", required=True)
        if transaction_type is TransactionType.ENTRY:
            parser.add_argument("--unit-cost", required=True)
        parser.add_argument("--date", default=None, help="ISO-8601 date or timestamp (defaults to now).")
        parser.add_argument("--notes", dest="notes", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_movement)


def register_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock``."""
    name = "stock"
    help_text = "Display current stock levels."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", default=None, help="Limit the report to one product.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_report)


def register_category_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``category-stock``."""
    name = "category-stock"
    help_text = "Display stock for every product of a category."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--category-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_category_stock_report)


def register_low_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``low-stock``."""
    name = "low-stock"
    help_text = "Display products at or below their minimum stock."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_low_stock_report)


def _add_range_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--product-id", required=True)
    parser.add_argument("--start", required=True, help="Inclusive ISO-8601 start date.")
    parser.add_argument("--end", required=True, help="Inclusive ISO-8601 end date.")


def register_transactions_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``transactions``."""
    name = "transactions"
    help_text = "Display the movements of a product within a date range."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_range_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_transactions_report)


def register_cost_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``cost``."""
    name = "cost"
    help_text = "Value a product's stock with FIFO, LIFO, or weighted average."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_range_arguments(parser)
        parser.add_argument(
            "--method",
            default=None,
            help="FIFO/PEPS, LIFO/UEPS, or WEIGHTED (defaults to the configured method).",
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_cost_report)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    target = Path(config_path) if config_path is not None else Path.cwd() / "config.ini"
    return core_logic.load_runtime_context(target)


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


def translate_add_category(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into an add-category request."""
    return {
        "name": args.name,
        "description": args.description,
        "category_id": args.category_id,
    }


def translate_add_product(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into an add-product request."""
    return {
        "name": args.name,
        "category_id": args.category_id,
        "sku": args.sku,
        "min_stock": Decimal(args.min_stock),
        "price": Decimal(args.price),
        "description": args.description,
        "barcode": args.barcode,
        "product_id": args.product_id,
    }


def translate_update_category(args: argparse.Namespace) -> Mapping[str, Any]:
    """Collect only the category fields supplied on the command line."""
    fields = {"name": args.name, "description": args.description}
    return {key: value for key, value in fields.items() if value is not None}


def translate_update_product(args: argparse.Namespace) -> Mapping[str, Any]:
    """Collect only the product fields supplied on the command line."""
    fields = {
        "name": args.name,
        "category_id": args.category_id,
        "sku": args.sku,
        "min_stock": Decimal(args.min_stock) if args.min_stock is not None else None,
        "price": Decimal(args.price) if args.price is not None else None,
        "description": args.description,
        "barcode": args.barcode,
    }
    return {key: value for key, value in fields.items() if value is not None}


def translate_movement(args: argparse.Namespace) -> core_logic.TransactionDraft:
    """Translate CLI args into a transaction draft."""
    transaction_type = TransactionType(args.command)
    unit_cost = getattr(args, "unit_cost", None)
    return core_logic.TransactionDraft(
        product_id=args.product_id,
        transaction_type=transaction_type,
        quantity=Decimal(args.quantity),
        unit_cost=Decimal(unit_cost) if unit_cost is not None else Decimal("0"),
        date=args.date,
        notes=args.notes,
    )


def translate_method(args: argparse.Namespace) -> Optional[ValuationMethod]:
    """Translate the optional ``--method`` flag into a valuation method."""
    if args.method is None:
        return None
    return ValuationMethod.parse(args.method)


def run_add_category(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-category workflow in the BLL."""
    category = core_logic.add_category(context, **translate_add_category(args))
    print(f"Added category {category.category_id} ({category.name})")
    return 0


def run_add_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-product workflow in the BLL."""
    product = core_logic.add_product(context, **translate_add_product(args))
    print(f"Added product {product.product_id} ({product.name})")
    return 0


def run_update_category(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the update-category workflow in the BLL."""
    changes = translate_update_category(args)
    if not changes:
        raise ValueError("Nothing to update: pass at least one field")
    category = core_logic.update_category(context, args.category_id, **changes)
    print(f"Updated category {category.category_id} ({category.name})")
    return 0


def run_update_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the update-product workflow in the BLL."""
    changes = translate_update_product(args)
    if not changes:
        raise ValueError("Nothing to update: pass at least one field")
    product = core_logic.update_product(context, args.product_id, **changes)
    print(f"Updated product {product.product_id} ({product.name})")
    return 0


def run_delete_category(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the delete-category workflow in the BLL."""
    core_logic.delete_category(context, args.category_id)
    print(f"Deleted category {args.category_id}")
    return 0


def run_delete_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the delete-product workflow in the BLL."""
    core_logic.delete_product(context, args.product_id)
    print(f"Deleted product {args.product_id}")
    return 0


def run_movement(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the entry/exit workflow and report rejected appends."""
    draft = translate_movement(args)
    result = core_logic.append_transaction(context, draft)
    if not result.ok:
        log.error("%s", result.error)
        print(f"Rejected: {result.error}")
        return 2
    transaction = result.unwrap()
    print(f"Recorded {transaction.transaction_type} {transaction.transaction_id}")
    return 0


def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the stock reporting workflow."""
    product_id = getattr(args, "product_id", None)
    if product_id is not None:
        print(f"{product_id}\t{core_logic.get_product_stock(context, product_id)}")
        return 0
    for product in core_logic.list_products(context):
        stock = core_logic.get_product_stock(context, product.product_id)
        print(f"{product.product_id}\t{product.name}\t{stock}")
    return 0


def run_category_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the category stock reporting workflow."""
    for level in core_logic.get_category_stock(context, args.category_id):
        print(f"{level.product_id}\t{level.stock}")
    return 0


def run_low_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the low stock reporting workflow."""
    for product in core_logic.get_low_stock_products(context):
        stock = core_logic.get_product_stock(context, product.product_id)
        print(f"{product.product_id}\t{product.name}\tstock={stock}\tmin={product.min_stock}")
    return 0


def run_transactions_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the per-product transaction reporting workflow."""
    for transaction in core_logic.get_product_transactions(context, args.product_id, args.start, args.end):
        print(
            f"{transaction.date_iso}\t{transaction.transaction_type}\t"
            f"{transaction.quantity}\t{transaction.unit_cost}\t{transaction.notes or ''}"
        )
    return 0


def run_cost_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the inventory valuation workflow."""
    breakdown = core_logic.calculate_inventory_cost(
        context,
        args.product_id,
        translate_method(args),
        args.start,
        args.end,
    )
    for line in format_breakdown(breakdown):
        print(line)
    return 0


def format_breakdown(breakdown: valuation.CostBreakdown) -> list[str]:
    """Render a cost breakdown as printable lines."""
    lines = [
        f"Method:          {breakdown.method.value}",
        f"Entries:         {len(breakdown.entries)}",
        f"Exits:           {len(breakdown.exits)}",
        f"Remaining stock: {breakdown.remaining_stock}",
        f"Total cost:      {breakdown.total_cost}",
        f"Average cost:    {breakdown.average_cost}",
    ]
    for lot in breakdown.open_lots:
        lines.append(f"  lot {lot.transaction_id} ({lot.date_iso}): {lot.quantity} @ {lot.unit_cost} = {lot.value}")
    return lines


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


WRITE_COMMANDS = frozenset(
    {
        "add-category",
        "add-product",
        "update-category",
        "update-product",
        "delete-category",
        "delete-product",
        "entry",
        "exit",
    }
)


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        core_logic.ensure_schema_version(context)
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0 and args.command in WRITE_COMMANDS:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
