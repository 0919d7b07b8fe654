"""Command-line entry points for the stock ledger.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into business-layer calls and printing their results.
The identity collaborator is represented by the global ``--user`` and
``--role`` options; admin-only commands are refused here before the
business layer is reached.
"""

from __future__ import annotations

import argparse
import getpass
import json
from dataclasses import dataclass
from datetime import UTC, date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence, Tuple

from . import core_logic, log
from .constants import UserRole
from .errors import (
    AuthError,
    BusinessRuleViolation,
    PermissionDeniedError,
    RetryExhaustedError,
    ValidationError,
    user_message,
)
from .ordering import Advisory, HolidayInfo, format_quantity
from .validation import split_item_key


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]
    admin_only: bool = False


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="stock-ledger",
        description="Daily stock counts, reconciliation and replenishment orders.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (searched upwards from the working directory by default).",
    )
    parser.add_argument("--user", default=None, help="User id recorded on writes (defaults to the login name).")
    parser.add_argument(
        "--role",
        choices=[member.value for member in UserRole],
        default=UserRole.STAFF.value,
        help="Capability of the acting user.",
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
        "save-stock": register_save_stock_command(subparsers),
        "order": register_order_command(subparsers),
        "add-item": register_add_item_command(subparsers),
        "remove-item": register_remove_item_command(subparsers),
        "add-store": register_add_store_command(subparsers),
        "remove-store": register_remove_store_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands."""
    specs = {
        "show-stock": register_show_stock_command(subparsers),
        "sold": register_sold_command(subparsers),
        "orders": register_orders_command(subparsers),
        "order-stats": register_order_stats_command(subparsers),
        "export": register_export_command(subparsers),
        "catalog": register_catalog_command(subparsers),
        "stores": register_stores_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def parse_item_argument(text: str) -> Tuple[str, str]:
    """Parse ``CATEGORY-Item=QTY`` into its key and raw quantity."""
    key, separator, quantity = text.rpartition("=")
    if not separator or not key.strip():
        raise argparse.ArgumentTypeError(f"Expected CATEGORY-Item=QTY, got '{text}'")
    return key.strip(), quantity.strip()


def parse_holiday_argument(text: str) -> HolidayInfo:
    """Parse ``YYYY-MM-DD=Name`` into a :class:`HolidayInfo`."""
    day, separator, name = text.partition("=")
    if not separator or not name.strip():
        raise argparse.ArgumentTypeError(f"Expected YYYY-MM-DD=Name, got '{text}'")
    try:
        date.fromisoformat(day.strip())
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Invalid holiday date '{day}'") from exc
    return HolidayInfo(date=day.strip(), name=name.strip())


def _add_quantity_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--item",
        dest="items",
        action="append",
        type=parse_item_argument,
        default=[],
        metavar="CATEGORY-Item=QTY",
        help="Quantity for one item; repeat for several items.",
    )
    parser.add_argument("--file", type=Path, default=None, help="JSON object of quantities keyed by item.")


def register_save_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``save-stock``."""
    name = "save-stock"
    help_text = "Record the closing stock count for a store and day."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--store", required=True)
        parser.add_argument("--date", type=date.fromisoformat, default=None, help="ISO day (defaults to today, UTC).")
        _add_quantity_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_save_stock)


def register_order_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``order``."""
    name = "order"
    help_text = "Create, render and store a replenishment order."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--store", required=True)
        _add_quantity_arguments(parser)
        parser.add_argument(
            "--suggested",
            action="store_true",
            help="Start from today's sold figures; --item and --file override individual items.",
        )
        parser.add_argument(
            "--holiday",
            dest="holidays",
            action="append",
            type=parse_holiday_argument,
            default=[],
            metavar="YYYY-MM-DD=Name",
        )
        parser.add_argument("--weather", default=None, help="Weather condition for the delivery day.")
        parser.add_argument("--temp", type=float, default=None, help="Forecast temperature for the delivery day.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_order, admin_only=True)


def register_add_item_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-item``."""
    name = "add-item"
    help_text = "Add an item to the master catalog."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--category", required=True)
        parser.add_argument("--item", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_item, admin_only=True)


def register_remove_item_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``remove-item``."""
    name = "remove-item"
    help_text = "Remove an item from the master catalog."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--category", required=True)
        parser.add_argument("--item", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_remove_item, admin_only=True)


def register_add_store_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-store``."""
    name = "add-store"
    help_text = "Add a store to the store table."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--firm-name", default=None)
        parser.add_argument("--area-code", default="")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_store, admin_only=True)


def register_remove_store_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``remove-store``."""
    name = "remove-store"
    help_text = "Remove a store; its stock entries and orders are kept."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--store", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_remove_store, admin_only=True)


def register_show_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``show-stock``."""
    name = "show-stock"
    help_text = "Display the stock count recorded for a store and day."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--store", required=True)
        parser.add_argument("--date", type=date.fromisoformat, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_show_stock)


def register_sold_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sold``."""
    name = "sold"
    help_text = "Reconcile a day's stock against the previous day's orders."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--store", required=True)
        parser.add_argument("--date", type=date.fromisoformat, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sold_report)


def register_orders_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``orders``."""
    name = "orders"
    help_text = "List stored orders, newest first."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--store", default=None)
        parser.add_argument("--limit", type=int, default=20)
        parser.add_argument("--show-text", action="store_true", help="Print each order's rendered text.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_orders_report)


def register_order_stats_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``order-stats``."""
    name = "order-stats"
    help_text = "Summarize the orders placed on one day."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--date", type=date.fromisoformat, default=None)
        parser.add_argument("--store", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_order_stats)


def register_export_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``export``."""
    name = "export"
    help_text = "Export a store-day as JSON or as an .xlsx workbook."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--store", required=True)
        parser.add_argument("--date", type=date.fromisoformat, default=None)
        parser.add_argument("--output", type=Path, default=None, help="Target .json or .xlsx file (stdout when omitted).")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_export)


def register_catalog_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``catalog``."""
    name = "catalog"
    help_text = "Display the master catalog."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_catalog_report)


def register_stores_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stores``."""
    name = "stores"
    help_text = "Display the store table."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stores_report)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    return core_logic.load_runtime_context(config_path)


def resolve_actor(args: argparse.Namespace) -> core_logic.Actor:
    """Build the acting identity from the global options."""
    user_id = getattr(args, "user", None) or getpass.getuser()
    role = UserRole(getattr(args, "role", None) or UserRole.STAFF.value)
    return core_logic.Actor(user_id=user_id, role=role)


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
    if spec.admin_only and not resolve_actor(args).is_admin:
        log.warning("Command '%s' refused for non-admin user", spec.name)
        raise PermissionDeniedError(f"'{spec.name}' requires the admin role", context="Access Control")
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


def translate_quantities(args: argparse.Namespace) -> Dict[str, Any]:
    """Merge ``--file`` and ``--item`` quantities; ``--item`` wins on conflicts."""
    quantities: Dict[str, Any] = {}
    source: Optional[Path] = getattr(args, "file", None)
    if source is not None:
        resolved = source.expanduser().resolve()
        if not resolved.exists():
            raise FileNotFoundError(f"Quantities file not found: {resolved}")
        loaded = json.loads(resolved.read_text(encoding="utf-8"))
        if not isinstance(loaded, dict):
            raise ValidationError("Quantities file must contain a JSON object", context="CLI")
        quantities.update(loaded)
    for key, value in getattr(args, "items", []) or []:
        quantities[key] = value
    return quantities


def translate_advisory(args: argparse.Namespace) -> Advisory:
    """Translate CLI args into the advisory stored with an order."""
    weather: Optional[Dict[str, Any]] = None
    if args.weather is not None or args.temp is not None:
        weather = {"condition": args.weather, "temp": args.temp}
    return Advisory(holidays=tuple(args.holidays), weather=weather)


def _today() -> date:
    return datetime.now(UTC).date()


def _print_warnings(warnings: List[str]) -> None:
    for warning in warnings:
        print(f"warning: {warning}")


def run_save_stock(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the stock saving workflow."""
    quantities = translate_quantities(args)
    result = core_logic.save_stock(context, args.store, args.date or _today(), quantities, resolve_actor(args))
    _print_warnings(result.warnings)
    snapshot = result.outcome.raise_for_failure()
    print(f"Saved stock for {snapshot.store_id} on {snapshot.day.isoformat()} ({len(snapshot.quantities)} items)")
    return 0


def run_order(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the order creation workflow."""
    quantities: Dict[str, Any] = {}
    if args.suggested:
        quantities.update(core_logic.suggest_order(context, args.store, _today()))
    quantities.update(translate_quantities(args))
    result = core_logic.create_order(
        context,
        args.store,
        quantities,
        resolve_actor(args),
        advisory=translate_advisory(args),
    )
    _print_warnings(result.warnings)
    result.outcome.raise_for_failure()
    print(result.record.rendered_text)
    print(f"\nOrder {result.record.order_id} saved (delivery {result.record.delivery_date.date().isoformat()})")
    return 0


def run_add_item(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-item workflow."""
    core_logic.add_catalog_item(context, args.category, args.item)
    print(f"Added '{args.item}' to {args.category.strip()}")
    return 0


def run_remove_item(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the remove-item workflow."""
    core_logic.remove_catalog_item(context, args.category, args.item)
    print(f"Removed '{args.item}' from {args.category}")
    return 0


def run_add_store(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-store workflow."""
    record = core_logic.add_store(context, args.name, firm_name=args.firm_name, area_code=args.area_code)
    print(f"Added store {record.display_name} ({record.store_id})")
    return 0


def run_remove_store(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the remove-store workflow."""
    core_logic.remove_store(context, args.store)
    print(f"Removed store {args.store}")
    return 0


def run_show_stock(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the stock display workflow."""
    day = args.date or _today()
    snapshot = core_logic.load_stock(context, args.store, day)
    if snapshot is None:
        print(f"No stock recorded for {args.store} on {day.isoformat()}")
        return 0
    catalog = core_logic.get_catalog(context)
    print(f"{args.store} {day.isoformat()} (recorded by {snapshot.recorded_by})")
    for key in catalog.item_keys():
        if key in snapshot.quantities:
            print(f"  {key}: {format_quantity(snapshot.quantities[key])}")
    for key in sorted(key for key in snapshot.quantities if not catalog.contains(key)):
        print(f"  {key}: {format_quantity(snapshot.quantities[key])} (not in catalog)")
    return 0


def run_sold_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the reconciliation workflow."""
    day = args.date or _today()
    report = core_logic.sold_report(context, args.store, day)
    for line in report.active_lines():
        print(
            f"{line.key}: ordered {format_quantity(line.ordered)}, current {format_quantity(line.current)}, "
            f"{line.status.value} {format_quantity(line.sold)}"
        )
    print(f"Total sold: {format_quantity(report.total_sold)}")
    return 0


def run_orders_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the order history workflow."""
    orders = core_logic.list_orders(context, args.store)[: max(args.limit, 0)]
    for order in orders:
        total = sum(order.quantities.values(), Decimal("0"))
        print(f"{order.order_id}  {order.order_date.isoformat()}  {order.store_name}  items={format_quantity(total)}")
        if args.show_text:
            print(order.rendered_text)
            print()
    return 0


def run_order_stats(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the order statistics workflow."""
    summary = core_logic.order_stats(context, args.date or _today(), store_id=args.store)
    print(f"{summary.day.isoformat()}: {summary.order_count} orders, {format_quantity(summary.total_items)} items")
    for key, quantity in summary.item_totals.items():
        category, item = split_item_key(key)
        print(f"  {category} / {item}: {format_quantity(quantity)}")
    return 0


def run_export(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the export workflow."""
    export = core_logic.export_snapshot(context, args.store, args.date or _today())
    output: Optional[Path] = args.output
    if output is None:
        print(json.dumps(export, indent=2))
    elif output.suffix.lower() == ".xlsx":
        core_logic.write_export_workbook(export, output)
        print(f"Export written to {output}")
    else:
        output.expanduser().resolve().write_text(json.dumps(export, indent=2), encoding="utf-8")
        print(f"Export written to {output}")
    return 0


def run_catalog_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the catalog display workflow."""
    catalog = core_logic.get_catalog(context)
    for category in catalog.categories():
        print(f"*{category}*")
        for item in catalog.items(category):
            print(f"  {item}")
    return 0


def run_stores_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the store table display workflow."""
    for record in core_logic.list_stores(context):
        print(f"{record.store_id}  {record.display_name}  {record.firm_name}  {record.area_code}".rstrip())
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, RetryExhaustedError):
        log.error("%s", user_message(error))
        return 4
    if isinstance(error, (PermissionDeniedError, AuthError)):
        log.error("%s (%s)", user_message(error), error)
        return 5
    if isinstance(error, (BusinessRuleViolation, ValidationError)):
        log.error("%s: %s", error.context, user_message(error))
        return 2
    if isinstance(error, FileNotFoundError):
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
        core_logic.ensure_schema_version(context)
        try:
            return dispatch_command(context, args, command_table)
        finally:
            context.close()
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)


if __name__ == "__main__":
    raise SystemExit(main())
