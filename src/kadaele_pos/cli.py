"""Command-line entry points for the Kadaele POS ledger.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into the drafts and patches consumed by the business
layer, and printing the records it returns. Keeping the CLI thin ensures the
same parser configuration can be reused by tests, scripts, or any alternative
front-end that wants to expose the package capabilities.
"""

from __future__ import annotations

import argparse
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence, Tuple

from . import core_logic, log
from .constants import CollectionKey, PaymentType
from .errors import RULE_VIOLATIONS, StorageError


EXPORTABLE = [key.value for key in (CollectionKey.GOODS, CollectionKey.PURCHASES, CollectionKey.DEBTORS, CollectionKey.INVENTORY)]


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
        prog="kadaele-pos",
        description="Command-line tools for the Kadaele POS ledger.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (searched upwards from the working directory by default).",
    )
    parser.add_argument(
        "--online",
        action="store_true",
        help="Treat the network as reachable for this run, which flushes pending sync entries.",
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
    """Declare mutating CLI commands such as sales, voids and payments."""
    specs = {
        "add-good": register_add_good_command(subparsers),
        "update-good": register_update_good_command(subparsers),
        "set-stock": register_set_stock_command(subparsers),
        "sale": register_sale_command(subparsers),
        "edit-sale": register_edit_sale_command(subparsers),
        "void": register_void_command(subparsers),
        "refund": register_refund_command(subparsers),
        "pay-debt": register_pay_debt_command(subparsers),
        "recompute-debts": register_recompute_debts_command(subparsers),
        "import": register_import_command(subparsers),
        "sync": register_sync_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as listings and reports."""
    specs = {
        "goods": register_goods_command(subparsers),
        "sales": register_sales_command(subparsers),
        "debts": register_debts_command(subparsers),
        "stock": register_stock_command(subparsers),
        "sync-status": register_sync_status_command(subparsers),
        "export": register_export_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def parse_item_selection(text: str) -> Tuple[str, int]:
    """Parse ``GOOD_ID:QTY`` into a ``(good_id, quantity)`` pair."""
    good_id, separator, quantity = text.rpartition(":")
    if not separator or not good_id:
        raise argparse.ArgumentTypeError(f"Expected GOOD_ID:QTY, got '{text}'")
    try:
        return good_id, int(quantity)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Quantity must be a whole number in '{text}'") from exc


def _simple_command(name: str, help_text: str, execute) -> CommandSpec:
    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=execute)


def register_add_good_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-good``."""
    name = "add-good"
    help_text = "Register a new good in the catalogue."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--price", required=True)
        parser.add_argument("--category", default="General")
        parser.add_argument("--barcode", default=None)
        parser.add_argument("--good-id", default=None, help="Identifier to use instead of a generated one.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_good)


def register_update_good_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``update-good``."""
    name = "update-good"
    help_text = "Change the name, price, category or barcode of a good."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--good-id", required=True)
        parser.add_argument("--name", default=None)
        parser.add_argument("--price", default=None)
        parser.add_argument("--category", default=None)
        parser.add_argument("--barcode", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_update_good)


def register_set_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``set-stock``."""
    name = "set-stock"
    help_text = "Overwrite the stock level of a good."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--item-id", required=True)
        parser.add_argument("--stock-level", required=True, type=int)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_set_stock)


def register_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sale``."""
    name = "sale"
    help_text = "Record a sale transaction."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument(
            "--item",
            dest="items",
            action="append",
            required=True,
            type=parse_item_selection,
            metavar="GOOD_ID:QTY",
        )
        parser.add_argument(
            "--payment-type",
            choices=[member.value for member in PaymentType],
            required=True,
        )
        parser.add_argument("--total", default=None, help="Expected total, checked against the items.")
        parser.add_argument("--customer-name", default="")
        parser.add_argument("--customer-phone", default="")
        parser.add_argument("--photo", type=Path, default=None, help="File attached to the purchase as its photo.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sale)


def register_edit_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``edit-sale``."""
    name = "edit-sale"
    help_text = "Edit customer details or items of a sale within 24 hours."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--purchase-id", required=True)
        parser.add_argument("--customer-name", default=None)
        parser.add_argument("--customer-phone", default=None)
        parser.add_argument(
            "--item",
            dest="items",
            action="append",
            default=None,
            type=parse_item_selection,
            metavar="GOOD_ID:QTY",
            help="Replacement items; repeat for every line of the sale.",
        )
        parser.add_argument("--total", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_edit_sale)


def register_void_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``void``."""
    name = "void"
    help_text = "Void an active sale."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--purchase-id", required=True)
        parser.add_argument("--reason", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_void)


def register_refund_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``refund``."""
    name = "refund"
    help_text = "Refund an active sale."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--purchase-id", required=True)
        parser.add_argument("--amount", required=True)
        parser.add_argument("--reason", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_refund)


def register_pay_debt_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``pay-debt``."""
    name = "pay-debt"
    help_text = "Record a payment made by a debtor."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--debtor-id", required=True)
        parser.add_argument("--amount", required=True)
        parser.add_argument(
            "--purchase-id",
            dest="purchase_ids",
            action="append",
            default=[],
            help="Purchase settled by this payment; repeatable.",
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_pay_debt)


def register_recompute_debts_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``recompute-debts``."""
    return _simple_command("recompute-debts", "Rebuild debtor balances from the purchases.", run_recompute_debts)


def register_import_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``import``."""
    name = "import"
    help_text = "Restore collections from a JSON backup document."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--input", type=Path, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_import)


def register_sync_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sync``."""
    return _simple_command("sync", "Deliver pending changes to the remote service.", run_sync)


def register_goods_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``goods``."""
    return _simple_command("goods", "Display the goods catalogue.", run_goods_report)


def register_sales_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sales``."""
    return _simple_command("sales", "Display every recorded sale.", run_sales_report)


def register_debts_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``debts``."""
    return _simple_command("debts", "Display debtor accounts and balances.", run_debts_report)


def register_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock``."""
    return _simple_command("stock", "Display current stock levels.", run_stock_report)


def register_sync_status_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sync-status``."""
    return _simple_command("sync-status", "Display connectivity and pending sync entries.", run_sync_status)


def register_export_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``export``."""
    name = "export"
    help_text = "Write a JSON backup document."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument(
            "--collection",
            dest="collections",
            action="append",
            choices=EXPORTABLE,
            default=None,
            help="Collection to include; repeatable. Defaults to goods and inventory.",
        )
        parser.add_argument("--output", type=Path, default=None, help="Destination file (stdout by default).")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_export)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    return core_logic.load_runtime_context(Path(config_path) if config_path is not None else None)


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


def translate_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> core_logic.PurchaseDraft:
    """Translate CLI args into a purchase draft."""
    photo = getattr(args, "photo", None)
    return core_logic.PurchaseDraft(
        items=core_logic.build_purchase_items(context, args.items),
        payment_type=PaymentType(args.payment_type),
        total=args.total,
        customer_name=args.customer_name,
        customer_phone=args.customer_phone,
        photo_data=read_photo(photo) if photo is not None else None,
    )


def read_photo(path: Path) -> Optional[bytes]:
    """Read a photo file; an unreadable file is logged and skipped."""
    try:
        return Path(path).read_bytes()
    except OSError as exc:
        log.warning("Photo '%s' not attached: %s", path, exc)
        return None


def translate_edit_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> core_logic.PurchasePatch:
    """Translate CLI args into a purchase patch."""
    items = core_logic.build_purchase_items(context, args.items) if args.items else None
    return core_logic.PurchasePatch(
        customer_name=args.customer_name,
        customer_phone=args.customer_phone,
        items=items,
        total=args.total,
    )


def translate_update_good(args: argparse.Namespace) -> core_logic.GoodPatch:
    """Translate CLI args into a good patch."""
    return core_logic.GoodPatch(name=args.name, price=args.price, category=args.category, barcode=args.barcode)


def format_purchase(purchase) -> str:
    customer = purchase.customer_name or purchase.customer_phone or "-"
    return "\t".join(
        [
            purchase.purchase_id,
            purchase.date,
            purchase.payment_type.value,
            purchase.status.value,
            str(purchase.total),
            customer,
        ]
    )


def format_debtor(debtor) -> str:
    return "\t".join(
        [
            debtor.debtor_id,
            debtor.customer_name or "-",
            debtor.customer_phone or "-",
            f"due={debtor.total_due}",
            f"paid={debtor.total_paid}",
            f"balance={debtor.balance}",
        ]
    )


def emit(lines: Iterable[str]) -> None:
    for line in lines:
        print(line)


def run_add_good(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-good workflow in the BLL."""
    good = core_logic.add_good(
        context,
        name=args.name,
        price=args.price,
        category=args.category,
        barcode=args.barcode,
        good_id=args.good_id,
    )
    emit([good.good_id])
    return 0


def run_update_good(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the update-good workflow in the BLL."""
    good = core_logic.update_good(context, args.good_id, translate_update_good(args))
    emit([f"{good.good_id}\t{good.name}\t{good.price}\t{good.category}"])
    return 0


def run_set_stock(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the stock update workflow in the BLL."""
    row = core_logic.update_inventory_item(context, args.item_id, args.stock_level)
    emit([f"{row.item_id}\t{row.stock_level}"])
    return 0


def run_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sale workflow via the BLL."""
    purchase = core_logic.add_purchase(context, translate_sale(context, args))
    emit([format_purchase(purchase)])
    return 0


def run_edit_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sale edit workflow via the BLL."""
    purchase = core_logic.update_purchase(context, args.purchase_id, translate_edit_sale(context, args))
    emit([format_purchase(purchase)])
    return 0


def run_void(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the void workflow via the BLL."""
    purchase = core_logic.void_purchase(context, args.purchase_id, args.reason)
    emit([format_purchase(purchase)])
    return 0


def run_refund(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the refund workflow via the BLL."""
    purchase = core_logic.refund_purchase(context, args.purchase_id, args.amount, args.reason)
    emit([format_purchase(purchase)])
    return 0


def run_pay_debt(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the debtor payment workflow via the BLL."""
    debtor = core_logic.record_payment(context, args.debtor_id, args.amount, args.purchase_ids)
    emit([format_debtor(debtor)])
    return 0


def run_recompute_debts(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the debtor recomputation workflow via the BLL."""
    emit(format_debtor(debtor) for debtor in core_logic.recompute_debtors(context))
    return 0


def run_import(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the backup restore workflow via the BLL."""
    document = json.loads(Path(args.input).read_text(encoding="utf-8"))
    imported = core_logic.import_document(context, document)
    emit([f"Imported {', '.join(key.value for key in imported)}"])
    return 0


def run_sync(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Flush the sync queue and report the outcome."""
    result = core_logic.sync_now(context)
    if result.success:
        emit([f"Synced {result.synced} entries"])
        return 0
    emit([f"Sync failed: {result.error}"])
    return 1


def run_goods_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the catalogue listing."""
    emit(f"{good.good_id}\t{good.name}\t{good.price}\t{good.category}" for good in core_logic.list_goods(context))
    return 0


def run_sales_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sales listing."""
    emit(format_purchase(purchase) for purchase in core_logic.list_purchases(context))
    return 0


def run_debts_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the debtor listing."""
    emit(format_debtor(debtor) for debtor in core_logic.list_debtors(context))
    return 0


def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the stock reporting workflow."""
    emit(
        f"{line.good.good_id}\t{line.good.name}\t{line.stock_level}\t{line.status.value}"
        for line in core_logic.stock_report(context)
    )
    return 0


def run_sync_status(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Report connectivity, pending entries and the last successful sync."""
    emit(
        [
            f"online={'yes' if context.sync.online else 'no'}",
            f"pending={core_logic.pending_sync_count(context)}",
            f"last_sync={core_logic.last_sync(context) or 'never'}",
        ]
    )
    return 0


def run_export(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the backup export workflow."""
    keys = args.collections or core_logic.DEFAULT_EXPORT_KEYS
    text = json.dumps(core_logic.export_document(context, keys), indent=2)
    if args.output is None:
        emit([text])
    else:
        Path(args.output).write_text(text + "\n", encoding="utf-8")
        log.info("Wrote backup document to '%s'", args.output)
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    log.error("%s", error)
    if isinstance(error, RULE_VIOLATIONS):
        return 2
    if isinstance(error, FileNotFoundError):
        return 3
    if isinstance(error, StorageError):
        return 4
    return 1


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    context: Optional[core_logic.RuntimeContext] = None
    try:
        context = load_runtime_context(getattr(args, "config", None))
        core_logic.ensure_schema_version(context)
        if getattr(args, "online", False):
            context.sync.set_online(True)
        return dispatch_command(context, args, command_table)
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
    finally:
        if context is not None:
            core_logic.close_context(context)
