"""Command-line entry points for the shop ledger.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into the request objects consumed by the service
modules, and printing their results. Keeping the CLI thin ensures the same
parser configuration can be reused by tests, scripts, or any alternative
front-end.
"""

from __future__ import annotations

import argparse
import json
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence

from . import billing, consolidation, core_logic, ledger, lifecycle, log, reports
from .constants import LocationType, ServiceType
from .errors import BusinessRuleViolation, ConfigurationError


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]
    mutates: bool = False


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="shop-ledger",
        description="Stock ledger tools for the shop master workbook.",
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
    """Declare mutating CLI commands such as bills and deletions."""
    specs = {
        "add-product": register_add_product_command(subparsers),
        "bill": register_bill_command(subparsers),
        "cancel-bill": register_cancel_bill_command(subparsers),
        "adjust-stock": register_adjust_stock_command(subparsers),
        "soft-delete": register_soft_delete_command(subparsers),
        "restore": register_restore_command(subparsers),
        "hard-delete": register_hard_delete_command(subparsers),
        "force-delete-destroying-history": register_force_delete_command(subparsers),
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
        "consolidated": register_consolidated_command(subparsers),
        "low-stock": register_low_stock_command(subparsers),
        "history": register_history_command(subparsers),
        "value": register_value_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _simple_command(
    name: str,
    help_text: str,
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int],
    *,
    mutates: bool = False,
    arguments: Callable[[argparse.ArgumentParser], None] = lambda parser: None,
) -> CommandSpec:
    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=execute, mutates=mutates)


def register_add_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-product``."""

    def arguments(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--name", required=True)
        parser.add_argument("--brand", default="")
        parser.add_argument("--category", default="")
        parser.add_argument("--selling-price", required=True)
        parser.add_argument("--purchase-price", default="0.00")
        parser.add_argument("--stock", type=int, default=0)
        parser.add_argument("--minimum-stock", type=int, default=0)
        parser.add_argument("--reorder-level", type=int, default=0)
        parser.add_argument("--unit", default="piece")
        parser.add_argument("--spec", action="append", default=[], metavar="KEY=VALUE",
                            help="Specification entry; may be repeated.")
        parser.add_argument("--inactive", action="store_true", help="Mark the product as inactive on creation.")

    return _simple_command(
        "add-product", "Register a new product in the Products sheet.", run_add_product,
        mutates=True, arguments=arguments)


def register_bill_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``bill``."""

    def arguments(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--customer-id", required=True)
        parser.add_argument("--item", action="append", default=[], metavar="PRODUCT_ID:QTY[:PRICE]")
        parser.add_argument("--custom-item", action="append", default=[], metavar="NAME:QTY:PRICE")
        parser.add_argument("--service-type", choices=[member.value for member in ServiceType],
                            default=ServiceType.SALE.value)
        parser.add_argument("--location-type", choices=[member.value for member in LocationType],
                            default=LocationType.SHOP.value)
        parser.add_argument("--home-visit-fee", default="0")
        parser.add_argument("--repair-charges", default="0")
        parser.add_argument("--labor-charges", default="0")
        parser.add_argument("--transportation-fee", default="0")
        parser.add_argument("--tax-rate", default="0")
        parser.add_argument("--discount", default="0")
        parser.add_argument("--notes", default=None)

    return _simple_command(
        "bill", "Create a bill and reduce stock for its items.", run_bill, mutates=True, arguments=arguments)


def register_cancel_bill_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``cancel-bill``."""
    return _simple_command(
        "cancel-bill", "Cancel a bill and restore its stock.", run_cancel_bill, mutates=True,
        arguments=lambda parser: parser.add_argument("--bill-id", required=True))


def register_adjust_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``adjust-stock``."""

    def arguments(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--set", action="append", default=[], required=True, metavar="PRODUCT_ID=STOCK")
        parser.add_argument("--reason", default=None)

    return _simple_command(
        "adjust-stock", "Set absolute stock levels, recording adjustments.", run_adjust_stock,
        mutates=True, arguments=arguments)


def _delete_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--product-id", required=True)
    parser.add_argument("--consolidated-id", action="append", default=None,
                        help="Process every member of a consolidated view; may be repeated.")


def register_soft_delete_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``soft-delete``."""
    return _simple_command(
        "soft-delete", "Hide products and write off their stock.", run_soft_delete,
        mutates=True, arguments=_delete_arguments)


def register_restore_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``restore``."""
    return _simple_command(
        "restore", "Restore a soft-deleted product.", run_restore, mutates=True,
        arguments=lambda parser: parser.add_argument("--product-id", required=True))


def register_hard_delete_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``hard-delete``."""
    return _simple_command(
        "hard-delete", "Permanently remove unreferenced products.", run_hard_delete,
        mutates=True, arguments=_delete_arguments)


def register_force_delete_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``force-delete-destroying-history``."""

    def arguments(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--yes", action="store_true", required=True,
                            help="Confirm that the product's audit history will be destroyed.")

    return _simple_command(
        "force-delete-destroying-history",
        "Delete a product and all of its stock transactions.",
        run_force_delete,
        mutates=True,
        arguments=arguments,
    )


def register_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock``."""
    return _simple_command(
        "stock", "Show current stock per product.", run_stock_report,
        arguments=lambda parser: parser.add_argument(
            "--include-deleted", action="store_true", help="Also list soft-deleted products."))


def register_consolidated_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``consolidated``."""
    return _simple_command("consolidated", "Show the consolidated product view.", run_consolidated_report)


def register_low_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``low-stock``."""
    return _simple_command("low-stock", "List products at or below minimum stock.", run_low_stock_report)


def register_history_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``history``."""

    def arguments(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--limit", type=int, default=50)

    return _simple_command("history", "Show stock transactions for a product.", run_history_report,
                           arguments=arguments)


def register_value_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``value``."""
    return _simple_command("value", "Value stock on hand at purchase price.", run_value_report)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    target = Path(config_path) if config_path is not None else Path.cwd() / "config.ini"
    context = core_logic.load_runtime_context(target)
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


def _money(raw: str) -> Decimal:
    try:
        return Decimal(raw)
    except InvalidOperation as exc:
        raise ConfigurationError(f"Invalid amount: {raw!r}") from exc


def _int(raw: str, label: str) -> int:
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"Invalid {label}: {raw!r}") from exc


def _quantity(raw: str) -> int:
    quantity = _int(raw, "quantity")
    try:
        core_logic.require_positive_quantity(quantity)
    except ValueError as exc:
        raise ConfigurationError(f"Invalid quantity: {raw!r}") from exc
    return quantity


def translate_bill_items(context: core_logic.RuntimeContext, args: argparse.Namespace) -> List[billing.BillItem]:
    """Translate ``--item`` and ``--custom-item`` values into bill items."""
    items: List[billing.BillItem] = []
    for raw in args.item:
        parts = raw.split(":")
        if len(parts) not in (2, 3):
            raise ConfigurationError(f"Expected PRODUCT_ID:QTY[:PRICE], got {raw!r}")
        product = core_logic.get_product(context, parts[0])
        items.append(billing.BillItem(
            product_id=product.product_id,
            product_name=product.name,
            quantity=_quantity(parts[1]),
            unit_price=_money(parts[2]) if len(parts) == 3 else None,
            unit=product.unit,
        ))
    for raw in args.custom_item:
        name, _, rest = raw.partition(":")
        quantity, _, price = rest.partition(":")
        if not name or not quantity or not price:
            raise ConfigurationError(f"Expected NAME:QTY:PRICE, got {raw!r}")
        items.append(billing.BillItem(
            product_name=name,
            quantity=_quantity(quantity),
            unit_price=_money(price),
            is_custom=True,
        ))
    return items


def translate_bill(context: core_logic.RuntimeContext, args: argparse.Namespace) -> billing.CreateBillRequest:
    """Translate CLI args into a create-bill request."""
    return billing.CreateBillRequest(
        customer_id=args.customer_id,
        items=translate_bill_items(context, args),
        service_type=ServiceType(args.service_type),
        location_type=LocationType(args.location_type),
        home_visit_fee=_money(args.home_visit_fee),
        repair_charges=_money(args.repair_charges),
        labor_charges=_money(args.labor_charges),
        transportation_fee=_money(args.transportation_fee),
        tax_rate=_money(args.tax_rate),
        discount_amount=_money(args.discount),
        notes=args.notes,
    )


def translate_adjustments(args: argparse.Namespace) -> List[ledger.StockAdjustment]:
    """Translate ``--set PRODUCT_ID=STOCK`` values into adjustments."""
    adjustments = []
    for raw in args.set:
        product_id, separator, stock = raw.partition("=")
        if not separator:
            raise ConfigurationError(f"Expected PRODUCT_ID=STOCK, got {raw!r}")
        adjustments.append(ledger.StockAdjustment(
            product_id=product_id, new_stock=_int(stock, "stock"), reason=args.reason))
    return adjustments


def _parse_specs(entries: Sequence[str]) -> Dict[str, Any]:
    specs: Dict[str, Any] = {}
    for entry in entries:
        key, separator, value = entry.partition("=")
        if not separator or not key:
            raise ConfigurationError(f"Expected KEY=VALUE, got {entry!r}")
        specs[key] = value
    return specs


def _print_failures(errors: Iterable[Optional[str]]) -> None:
    for error in errors:
        if error:
            print(f"  ! {error}")


def run_add_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-product workflow."""
    product = core_logic.add_product(
        context,
        product_id=args.product_id,
        name=args.name,
        brand=args.brand,
        category=args.category,
        selling_price=_money(args.selling_price),
        purchase_price=_money(args.purchase_price),
        specifications=_parse_specs(args.spec),
        current_stock=args.stock,
        minimum_stock=args.minimum_stock,
        reorder_level=args.reorder_level,
        unit=args.unit,
        is_active=not args.inactive,
    )
    print(f"Added product {product.product_id} ({product.name})")
    return 0


def run_bill(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the create-bill workflow."""
    result = billing.create_bill(context, translate_bill(context, args))
    if result.bill is None:
        print(f"Bill rejected at {result.stage}:")
        _print_failures(result.errors)
        return 2
    print(f"Bill {result.bill.bill_number} ({result.bill.bill_id}) total {result.bill.total_amount}")
    if result.stock_update is not None:
        for item in result.stock_update.results:
            if item.transaction_id:
                sale = core_logic.get_stock_transaction(context, item.transaction_id)
                print(f"  {sale.product_id}: -{sale.quantity} ({sale.transaction_id}), stock now {item.new_stock}")
    if not result.success:
        print("Stock update incomplete:")
        _print_failures(result.errors)
        return 2
    return 0


def run_cancel_bill(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the cancel-bill workflow."""
    report = billing.cancel_bill(context, args.bill_id)
    print(f"Cancelled bill {args.bill_id}; restored {report.summary.successful} item(s)")
    _print_failures(report.errors)
    return 0 if report.success else 2


def run_adjust_stock(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the bulk stock adjustment workflow."""
    report = ledger.bulk_adjust_stock(context, translate_adjustments(args))
    for result in report.results:
        if result.success:
            print(f"{result.product_id}: {result.old_stock} -> {result.new_stock} ({result.difference:+d})")
    _print_failures(result.error for result in report.results)
    return 0 if report.success else 2


def _print_lifecycle(report: lifecycle.LifecycleReport, verb: str) -> int:
    summary = report.summary
    print(f"{verb} {summary.successful} of {summary.attempted} product(s)")
    _print_failures(report.errors)
    return 0 if report.success else 2


def run_soft_delete(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the soft delete workflow."""
    report = lifecycle.soft_delete_products(context, args.product_id, args.consolidated_id)
    return _print_lifecycle(report, "Soft deleted")


def run_restore(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the restore workflow."""
    result = lifecycle.restore_product(context, args.product_id)
    if not result.success:
        raise BusinessRuleViolation(result.error or f"Cannot restore {args.product_id}")
    print(f"Restored {result.product_name}")
    return 0


def run_hard_delete(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the hard delete workflow."""
    report = lifecycle.hard_delete_products(context, args.product_id, args.consolidated_id)
    return _print_lifecycle(report, "Deleted")


def run_force_delete(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the forced delete workflow."""
    result = lifecycle.force_delete_product_destroying_audit_history(context, args.product_id)
    print(f'Force deleted product "{result.product_name}" and {result.deleted_transactions} related transactions')
    return 0


def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print current stock per product."""
    for product in core_logic.list_products(context, include_deleted=args.include_deleted):
        marker = " (deleted)" if product.deleted else ""
        print(f"{product.product_id}\t{product.name}\t{product.current_stock} {product.unit}{marker}")
    return 0


def run_consolidated_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the consolidated product view."""
    products = core_logic.list_products(context, include_deleted=True)
    for view in consolidation.build_consolidated_view(products):
        members = f" [{', '.join(view.original_ids)}]" if view.is_consolidated else ""
        print(f"{view.product.name}\t{view.product.brand}\t{view.current_stock}"
              f"\t{view.product.selling_price}{members}")
    return 0


def run_low_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print low stock alerts."""
    for alert in reports.low_stock_alerts(context):
        print(f"{alert.alert_level}\t{alert.product_id}\t{alert.product_name}"
              f"\t{alert.current_stock}/{alert.minimum_stock}")
    return 0


def run_history_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print a product's stock transactions, newest first."""
    for row in reports.stock_history(context, args.product_id, args.limit):
        print(f"{row.transaction_date}\t{row.transaction_type}\t{row.quantity}\t{row.notes or ''}")
    return 0


def run_value_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the inventory valuation."""
    value = reports.inventory_value(context)
    print(json.dumps(
        {"total_value": str(value.total_value), "total_items": value.total_items,
         "products": len(value.breakdown)},
        indent=2,
    ))
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after execution."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution.

    Mutating commands persist the workbook when they succeed and also when a
    batch finished with some failed items (exit code 2), because the items
    that did succeed have already written their audit records.
    """
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        exit_code = dispatch_command(context, args, command_table)
        if command_table[args.command].mutates and exit_code in (0, 2):
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
