"""Business logic layer for Kadaele POS.

This module contains the purchase ledger, the debtor account ledger, and the
goods/inventory registries. Every operation reads and writes through the
:class:`~kadaele_pos.record_store.RecordStore`, whose write listener mirrors
each committed change into the sync engine's outbox.

Debtors are a projection over purchases. A brand-new credit sale patches its
debtor incrementally; anything that can retroactively change a purchase's
total, status, or customer identity rebuilds every debtor from scratch with
:func:`recompute_debtors`.
"""

from __future__ import annotations

import re
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from . import data_manager, log
from .constants import (
    DEFAULT_CATEGORY,
    EDIT_WINDOW,
    EXPECTED_SCHEMA_VERSION,
    LOW_STOCK_THRESHOLD,
    ZERO,
    CollectionKey,
    PaymentType,
    PurchaseStatus,
    StockStatus,
)
from .data_manager import DebtorRow, GoodRow, InventoryRow, PurchaseItem, PurchaseRow, RefundRecord
from .errors import EditWindowExpiredError, InvalidStateError, NotFoundError, StorageError, ValidationError
from .network import NetworkStatus
from .photos import PhotoStore
from .record_store import RecordStore
from .sync_engine import Clock, HttpSyncTransport, SyncEngine, SyncResult, SyncTransport
from .time_oracle import TimeOracle


MoneyLike = Union[Decimal, int, str]

DEFAULT_EXPORT_KEYS: Tuple[CollectionKey, ...] = (CollectionKey.GOODS, CollectionKey.INVENTORY)

_PHONE_SEPARATORS = re.compile(r"[\s\-.()]")
_WHITESPACE = re.compile(r"\s+")


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and the collaborators used by the ledgers."""

    settings: data_manager.ConfigSettings
    store: RecordStore
    clock: Clock
    sync: SyncEngine
    photos: Optional[PhotoStore] = None


@dataclass(frozen=True)
class LineDraft:
    """A purchase line as entered by the caller.

    ``subtotal`` is optional; when supplied it must equal ``price * quantity``.
    """

    good_id: str
    name: str
    price: MoneyLike
    quantity: int
    subtotal: Optional[MoneyLike] = None


LineLike = Union[LineDraft, PurchaseItem]


@dataclass(frozen=True)
class PurchaseDraft:
    """User intent for recording a new sale."""

    items: Sequence[LineLike]
    payment_type: PaymentType
    total: Optional[MoneyLike] = None
    customer_name: str = ""
    customer_phone: str = ""
    purchase_id: Optional[str] = None
    photo_data: Optional[bytes] = None


@dataclass(frozen=True)
class PurchasePatch:
    """Fields a caller may change on an active purchase inside its edit window.

    ``None`` leaves a field untouched. ``total``, when given, is checked
    against the (possibly new) line items rather than trusted.
    """

    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    items: Optional[Sequence[LineLike]] = None
    total: Optional[MoneyLike] = None

    def is_empty(self) -> bool:
        return all(value is None for value in (self.customer_name, self.customer_phone, self.items, self.total))


@dataclass(frozen=True)
class GoodPatch:
    """Catalogue fields a caller may change on an existing good."""

    name: Optional[str] = None
    price: Optional[MoneyLike] = None
    category: Optional[str] = None
    barcode: Optional[str] = None


@dataclass(frozen=True)
class StockLine:
    """One row of the stock report: a good joined with its stock snapshot."""

    good: GoodRow
    stock_level: int
    last_updated: Optional[str]
    status: StockStatus


# ---------------------------------------------------------------------------
# Runtime/context management
# ---------------------------------------------------------------------------


def load_runtime_context(
    config_path: Optional[Path] = None,
    *,
    transport: Optional[SyncTransport] = None,
    network: Optional[NetworkStatus] = None,
    clock: Optional[Clock] = None,
) -> RuntimeContext:
    """Load configuration settings and wire every collaborator together.

    The helper resolves ``config.ini``, opens the store workbook, and builds
    the network status, time oracle, sync engine, and photo store exactly once
    so that they can be handed to every operation through the returned
    context.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.
        transport (SyncTransport | None): Remote delivery capability. Defaults
            to :class:`HttpSyncTransport` when ``[Sync] Endpoint`` is set.
        network (NetworkStatus | None): Connectivity capability. Defaults to a
            status seeded from ``[Sync] StartOnline``.
        clock (Clock | None): Time source. Defaults to a :class:`TimeOracle`.

    Returns:
        RuntimeContext: Fully populated context ready for ledger operations.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    store = RecordStore.open(settings.data_file)

    if network is None:
        network = NetworkStatus(online=settings.start_online)
    if clock is None:
        clock = TimeOracle(network, endpoint=settings.time_endpoint, timeout=settings.timeout_seconds)
    if transport is None and settings.sync_endpoint:
        transport = HttpSyncTransport(settings.sync_endpoint, timeout=settings.timeout_seconds)
    executor = None
    if settings.background_sync:
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="kadaele-sync")
    sync = SyncEngine(store, network, clock, transport, executor=executor)
    photos = PhotoStore(settings.photo_dir) if settings.photo_dir is not None else None

    log.info("Loaded runtime context for store '%s'", settings.data_file)
    return RuntimeContext(settings=settings, store=store, clock=clock, sync=sync, photos=photos)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate store compatibility before mutating state.

    Both the version declared in ``config.ini`` and the version recorded in the
    workbook's ``Meta`` sheet (when present) must match
    ``EXPECTED_SCHEMA_VERSION``.

    Raises:
        RuntimeError: On any mismatch.
    """
    declared = {
        "config": context.settings.schema_version,
        "workbook": context.store.schema_version() or context.settings.schema_version,
    }
    for source, version in declared.items():
        if version != EXPECTED_SCHEMA_VERSION:
            log.error(
                "Store schema mismatch in %s: expected %s, found %s",
                source,
                EXPECTED_SCHEMA_VERSION,
                version,
            )
            raise RuntimeError(
                "Store schema mismatch in %s: expected %s, found %s"
                % (source, EXPECTED_SCHEMA_VERSION, version)
            )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def close_context(context: RuntimeContext) -> None:
    """Wait for background sync work owned by ``context`` to finish."""

    context.sync.close()


def generate_id(prefix: str, *, when: Optional[datetime] = None) -> str:
    """Generate a sortable identifier.

    Args:
        prefix (str): Designator for the record type (``"P"`` purchases,
            ``"D"`` debtors, ``"G"`` goods).
        when (datetime | None): Timestamp embedded in the identifier. Defaults
            to the local UTC clock.

    Returns:
        str: ``{prefix}{YYYYMMDDHHMMSSffffff}-{8 hex chars}``. The timestamp
            keeps identifiers chronologically sortable and the random suffix
            keeps two records created in the same microsecond apart.
    """
    when = when or data_manager.utc_now()
    return f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}-{uuid.uuid4().hex[:8]}"


def identity_key(customer_name: Optional[str], customer_phone: Optional[str]) -> Optional[str]:
    """Return the key that groups purchases into one debtor account.

    The phone number wins when present. It is compared exactly after removing
    whitespace and the separators ``- . ( )``. Without a phone the name is
    used, trimmed, with inner whitespace collapsed and case folded. Both
    missing yields ``None``.

    Examples:
        ``identity_key("Amina", "555-1")`` and ``identity_key("AMINA", "555 1")``
        both return ``"phone:5551"``; ``identity_key(" Amina  Y ", "")``
        returns ``"name:amina y"``.
    """
    phone = _PHONE_SEPARATORS.sub("", customer_phone or "")
    if phone:
        return f"phone:{phone}"
    name = _WHITESPACE.sub(" ", (customer_name or "").strip()).casefold()
    if name:
        return f"name:{name}"
    return None


# ---------------------------------------------------------------------------
# Read projections
# ---------------------------------------------------------------------------


def list_goods(context: RuntimeContext) -> List[GoodRow]:
    """Return the goods catalogue in insertion order."""
    return context.store.get(CollectionKey.GOODS)


def list_purchases(context: RuntimeContext) -> List[PurchaseRow]:
    """Return every purchase, closed ones included, in insertion order."""
    return context.store.get(CollectionKey.PURCHASES)


def list_debtors(context: RuntimeContext) -> List[DebtorRow]:
    """Return every debtor account, including settled and overpaid ones."""
    return context.store.get(CollectionKey.DEBTORS)


def list_inventory(context: RuntimeContext) -> List[InventoryRow]:
    """Return the stock snapshot rows."""
    return context.store.get(CollectionKey.INVENTORY)


def get_good(context: RuntimeContext, good_id: str) -> GoodRow:
    """Resolve a good by identifier.

    Raises:
        NotFoundError: If ``good_id`` is not in the catalogue.
    """
    for good in list_goods(context):
        if good.good_id == good_id:
            return good
    log.warning("Good lookup failed for id '%s'", good_id)
    raise NotFoundError(f"Unknown good id: {good_id}")


def get_purchase(context: RuntimeContext, purchase_id: str) -> PurchaseRow:
    """Resolve a purchase by identifier.

    Raises:
        NotFoundError: If ``purchase_id`` is unknown.
    """
    purchases = list_purchases(context)
    return purchases[_index_of_purchase(purchases, purchase_id)]


def get_debtor(context: RuntimeContext, debtor_id: str) -> DebtorRow:
    """Resolve a debtor by identifier.

    Raises:
        NotFoundError: If ``debtor_id`` is unknown.
    """
    debtors = list_debtors(context)
    return debtors[_index_of_debtor(debtors, debtor_id)]


def last_sync(context: RuntimeContext) -> Optional[str]:
    """Return the ISO timestamp of the last successful sync, ``None`` if never."""
    return context.sync.last_sync


def pending_sync_count(context: RuntimeContext) -> int:
    """Return the number of writes still waiting for remote delivery."""
    return len(context.sync.queue)


def sync_now(context: RuntimeContext) -> SyncResult:
    """Flush the outbox immediately; a no-op while offline or already syncing."""
    return context.sync.flush()


def stock_report(context: RuntimeContext) -> List[StockLine]:
    """Join the catalogue with the stock snapshot.

    Goods without an inventory row count as zero stock. Levels of zero are
    out of stock, levels below ``LOW_STOCK_THRESHOLD`` are low stock.
    """
    inventory = {row.item_id: row for row in list_inventory(context)}
    report: List[StockLine] = []
    for good in list_goods(context):
        row = inventory.get(good.good_id)
        level = row.stock_level if row is not None else 0
        if level <= 0:
            status = StockStatus.OUT_OF_STOCK
        elif level < LOW_STOCK_THRESHOLD:
            status = StockStatus.LOW_STOCK
        else:
            status = StockStatus.IN_STOCK
        report.append(
            StockLine(
                good=good,
                stock_level=level,
                last_updated=row.last_updated if row is not None else None,
                status=status,
            )
        )
    return report


# ---------------------------------------------------------------------------
# Goods & inventory registries
# ---------------------------------------------------------------------------


def add_good(
    context: RuntimeContext,
    *,
    name: str,
    price: MoneyLike,
    category: str = DEFAULT_CATEGORY,
    barcode: Optional[str] = None,
    good_id: Optional[str] = None,
) -> GoodRow:
    """Register a new good in the catalogue.

    Args:
        context (RuntimeContext): Runtime context.
        name (str): Display name; must not be blank.
        price (Decimal | int | str): Unit price; must be greater than zero.
        category (str): Catalogue category, ``"General"`` when omitted.
        barcode (str | None): Optional barcode.
        good_id (str | None): Identifier to use; generated when omitted.

    Returns:
        GoodRow: The persisted catalogue entry.

    Raises:
        ValidationError: For a blank name, a non-positive price, or a
            duplicate identifier.
        StorageError: If the catalogue could not be saved.
    """
    name = require_text(name, "name")
    price = require_positive_money(price, "price")
    now = context.clock.now()
    good = GoodRow(
        good_id=good_id or generate_id("G", when=now),
        name=name,
        price=price,
        category=(category or "").strip() or DEFAULT_CATEGORY,
        barcode=(barcode or "").strip() or None,
        created_at=data_manager.to_iso(now),
    )
    with context.store.lock:
        goods = context.store.get(CollectionKey.GOODS)
        if any(existing.good_id == good.good_id for existing in goods):
            log.warning("Rejected duplicate good id '%s'", good.good_id)
            raise ValidationError(f"Good id already exists: {good.good_id}")
        goods.append(good)
        _commit(context, {CollectionKey.GOODS: goods}, f"good '{good.good_id}'")
    log.info("Added good '%s' (%s at %s)", good.good_id, good.name, good.price)
    return good


def update_good(context: RuntimeContext, good_id: str, patch: GoodPatch) -> GoodRow:
    """Change catalogue fields of a good.

    Purchases keep their own name/price snapshots and are unaffected.

    Raises:
        NotFoundError: If ``good_id`` is unknown.
        ValidationError: For a blank name or a non-positive price.
        StorageError: If the catalogue could not be saved.
    """
    changes: Dict[str, Any] = {}
    if patch.name is not None:
        changes["name"] = require_text(patch.name, "name")
    if patch.price is not None:
        changes["price"] = require_positive_money(patch.price, "price")
    if patch.category is not None:
        changes["category"] = patch.category.strip() or DEFAULT_CATEGORY
    if patch.barcode is not None:
        changes["barcode"] = patch.barcode.strip() or None

    with context.store.lock:
        goods = context.store.get(CollectionKey.GOODS)
        for index, good in enumerate(goods):
            if good.good_id == good_id:
                break
        else:
            log.warning("Good lookup failed for id '%s'", good_id)
            raise NotFoundError(f"Unknown good id: {good_id}")
        updated = replace(goods[index], **changes)
        goods[index] = updated
        _commit(context, {CollectionKey.GOODS: goods}, f"good '{good_id}'")
    log.info("Updated good '%s' (%s)", good_id, ", ".join(sorted(changes)) or "no changes")
    return updated


def update_inventory_item(context: RuntimeContext, item_id: str, stock_level: int) -> InventoryRow:
    """Insert or overwrite the stock snapshot of ``item_id``.

    Raises:
        ValidationError: If ``stock_level`` is negative or not an integer.
        StorageError: If the snapshot could not be saved.
    """
    level = require_quantity(stock_level, "stock level", minimum=0)
    now = data_manager.to_iso(context.clock.now())
    row = InventoryRow(item_id=item_id, stock_level=level, last_updated=now)
    with context.store.lock:
        inventory = context.store.get(CollectionKey.INVENTORY)
        for index, existing in enumerate(inventory):
            if existing.item_id == item_id:
                inventory[index] = row
                break
        else:
            inventory.append(row)
        _commit(context, {CollectionKey.INVENTORY: inventory}, f"stock of '{item_id}'")
    log.info("Set stock level of '%s' to %d", item_id, level)
    return row


def build_purchase_items(context: RuntimeContext, selections: Iterable[Tuple[str, int]]) -> List[PurchaseItem]:
    """Snapshot catalogue names and prices for ``(good_id, quantity)`` pairs.

    Raises:
        NotFoundError: If a good is not in the catalogue.
        ValidationError: If a quantity is below one.
    """
    catalogue = {good.good_id: good for good in list_goods(context)}
    items: List[PurchaseItem] = []
    for good_id, quantity in selections:
        good = catalogue.get(good_id)
        if good is None:
            log.warning("Good lookup failed for id '%s'", good_id)
            raise NotFoundError(f"Unknown good id: {good_id}")
        quantity = require_quantity(quantity, "quantity", minimum=1)
        items.append(
            PurchaseItem(
                good_id=good.good_id,
                name=good.name,
                price=good.price,
                quantity=quantity,
                subtotal=good.price * quantity,
            )
        )
    return items


# ---------------------------------------------------------------------------
# Purchase ledger
# ---------------------------------------------------------------------------


def add_purchase(context: RuntimeContext, draft: PurchaseDraft) -> PurchaseRow:
    """Validate and record a new active sale.

    Line subtotals and the total are recomputed from prices and quantities and
    any caller-supplied value that disagrees is rejected. ``date`` and
    ``createdAt`` are both stamped with the time oracle's ``now()``. Photo
    bytes on the draft are saved best-effort: a failure is logged and the sale
    is still recorded, without a photo reference. A credit sale with a
    customer identity updates its debtor in the same atomic save.

    Args:
        context (RuntimeContext): Runtime context.
        draft (PurchaseDraft): Structured sale intent.

    Returns:
        PurchaseRow: The persisted purchase.

    Raises:
        ValidationError: For an empty basket, invalid lines, a total mismatch,
            an unsupported payment type, or a duplicate identifier.
        StorageError: If nothing could be saved.
    """
    if not isinstance(draft.payment_type, PaymentType):
        log.error("Unsupported payment type provided: %s", draft.payment_type)
        raise ValidationError(f"Unsupported payment type: {draft.payment_type}")
    items = _build_items(draft.items)
    total = _verified_total(items, draft.total)

    now = context.clock.now()
    stamp = data_manager.to_iso(now)
    purchase_id = draft.purchase_id or generate_id("P", when=now)

    with context.store.lock:
        purchases = context.store.get(CollectionKey.PURCHASES)
        if any(existing.purchase_id == purchase_id for existing in purchases):
            log.warning("Rejected duplicate purchase id '%s'", purchase_id)
            raise ValidationError(f"Purchase id already exists: {purchase_id}")
        # Only a purchase id known to be new may claim its photo file.
        photo_ref = None
        if draft.photo_data is not None:
            photo_ref = _save_photo(context, draft.photo_data, purchase_id)
        purchase = PurchaseRow(
            purchase_id=purchase_id,
            date=stamp,
            items=tuple(items),
            total=total,
            payment_type=draft.payment_type,
            customer_name=(draft.customer_name or "").strip(),
            customer_phone=(draft.customer_phone or "").strip(),
            status=PurchaseStatus.ACTIVE,
            created_at=stamp,
            photo_ref=photo_ref,
        )
        purchases.append(purchase)
        values: Dict[CollectionKey, Any] = {CollectionKey.PURCHASES: purchases}
        if purchase.payment_type is PaymentType.CREDIT:
            if identity_key(purchase.customer_name, purchase.customer_phone) is None:
                log.warning("Credit purchase '%s' has no customer identity; no debtor updated", purchase_id)
            else:
                debtors, _ = _apply_credit_sale(context.store.get(CollectionKey.DEBTORS), purchase)
                values[CollectionKey.DEBTORS] = debtors
        try:
            _commit(context, values, f"purchase '{purchase_id}'")
        except StorageError:
            if photo_ref is not None:
                context.photos.delete_photo(photo_ref)
            raise

    log.info(
        "Recorded %s purchase '%s' (%d lines, total=%s)",
        purchase.payment_type.value,
        purchase_id,
        len(items),
        total,
    )
    return purchase


def update_purchase(context: RuntimeContext, purchase_id: str, patch: PurchasePatch) -> PurchaseRow:
    """Edit customer fields or line items of an active purchase.

    Direct edits are only accepted while the purchase is active and no more
    than ``EDIT_WINDOW`` after ``createdAt``; they never bypass the window.
    Edits to credit purchases rebuild every debtor because the total or the
    customer identity may have changed.

    Args:
        context (RuntimeContext): Runtime context.
        purchase_id (str): Identifier of the purchase to edit.
        patch (PurchasePatch): Fields to change.

    Returns:
        PurchaseRow: The persisted, edited purchase.

    Raises:
        NotFoundError: If ``purchase_id`` is unknown.
        InvalidStateError: If the purchase is voided or refunded.
        EditWindowExpiredError: If the edit window has closed.
        ValidationError: For an empty patch, invalid lines, or a total
            mismatch.
        StorageError: If nothing could be saved.
    """
    if patch.is_empty():
        raise ValidationError("Nothing to update")
    now = context.clock.now()

    with context.store.lock:
        purchases = context.store.get(CollectionKey.PURCHASES)
        index = _index_of_purchase(purchases, purchase_id)
        current = purchases[index]
        require_active(current, "edit")
        require_within_edit_window(current, now)
        updated = _apply_patch(current, patch)
        purchases[index] = updated
        values: Dict[CollectionKey, Any] = {CollectionKey.PURCHASES: purchases}
        if updated.payment_type is PaymentType.CREDIT:
            values[CollectionKey.DEBTORS] = _rebuild_debtors(purchases, context.store.get(CollectionKey.DEBTORS))
        _commit(context, values, f"purchase '{purchase_id}'")

    log.info("Edited purchase '%s' (total=%s)", purchase_id, updated.total)
    return updated


def void_purchase(context: RuntimeContext, purchase_id: str, reason: Optional[str] = None) -> PurchaseRow:
    """Void an active purchase regardless of its age.

    Raises:
        NotFoundError: If ``purchase_id`` is unknown.
        InvalidStateError: If the purchase is already voided or refunded.
        StorageError: If nothing could be saved.
    """
    now = data_manager.to_iso(context.clock.now())

    def close(purchase: PurchaseRow) -> PurchaseRow:
        return replace(purchase, status=PurchaseStatus.VOIDED, void_reason=reason, voided_at=now)

    voided = _close_purchase(context, purchase_id, "void", close)
    log.info("Voided purchase '%s' (reason=%s)", purchase_id, reason)
    return voided


def refund_purchase(
    context: RuntimeContext,
    purchase_id: str,
    amount: MoneyLike,
    reason: Optional[str] = None,
) -> PurchaseRow:
    """Refund an active purchase regardless of its age.

    Args:
        context (RuntimeContext): Runtime context.
        purchase_id (str): Identifier of the purchase to refund.
        amount (Decimal | int | str): Refunded amount, ``0 < amount <= total``.
        reason (str | None): Free-text reason kept on the refund record.

    Returns:
        PurchaseRow: The persisted, refunded purchase.

    Raises:
        NotFoundError: If ``purchase_id`` is unknown.
        InvalidStateError: If the purchase is already voided or refunded.
        ValidationError: If ``amount`` is not positive or exceeds the total.
        StorageError: If nothing could be saved.
    """
    now = data_manager.to_iso(context.clock.now())

    def close(purchase: PurchaseRow) -> PurchaseRow:
        refund_amount = require_positive_money(amount, "refund amount")
        if refund_amount > purchase.total:
            log.error(
                "Refund of %s exceeds total %s of purchase '%s'",
                refund_amount,
                purchase.total,
                purchase.purchase_id,
            )
            raise ValidationError(f"Refund amount {refund_amount} exceeds purchase total {purchase.total}")
        return replace(
            purchase,
            status=PurchaseStatus.REFUNDED,
            refund=RefundRecord(amount=refund_amount, reason=reason, date=now),
        )

    refunded = _close_purchase(context, purchase_id, "refund", close)
    log.info("Refunded purchase '%s' (amount=%s, reason=%s)", purchase_id, amount, reason)
    return refunded


# ---------------------------------------------------------------------------
# Debtor account ledger
# ---------------------------------------------------------------------------


def apply_new_credit_sale(context: RuntimeContext, purchase: PurchaseRow) -> DebtorRow:
    """Incrementally add a brand-new active credit sale to its debtor.

    The debtor is located by identity key, or created when this is the
    customer's first credit sale. Only safe for sales that have never
    contributed before; use :func:`recompute_debtors` otherwise.

    Returns:
        DebtorRow: The created or updated debtor.

    Raises:
        ValidationError: If ``purchase`` is not an active credit sale with a
            customer identity.
        StorageError: If the debtors could not be saved.
    """
    if purchase.payment_type is not PaymentType.CREDIT or purchase.status is not PurchaseStatus.ACTIVE:
        raise ValidationError(f"Purchase '{purchase.purchase_id}' is not an active credit sale")
    if identity_key(purchase.customer_name, purchase.customer_phone) is None:
        raise ValidationError(f"Purchase '{purchase.purchase_id}' has no customer identity")

    with context.store.lock:
        debtors, debtor = _apply_credit_sale(context.store.get(CollectionKey.DEBTORS), purchase)
        _commit(context, {CollectionKey.DEBTORS: debtors}, f"debtor '{debtor.debtor_id}'")
    log.info("Applied credit sale '%s' to debtor '%s'", purchase.purchase_id, debtor.debtor_id)
    return debtor


def recompute_debtors(context: RuntimeContext) -> List[DebtorRow]:
    """Rebuild every debtor's ``totalDue`` and ``purchaseIds`` from purchases.

    Active credit purchases are grouped by identity key. Existing debtors are
    kept, in order, together with their ``id``, ``createdAt``, ``totalPaid``,
    and ``lastPayment`` because payments cannot be derived from purchases.
    Identities seen for the first time become new debtors. Running the
    function twice without purchase changes yields identical collections; an
    unchanged collection is not rewritten.

    A debtor whose payments exceed the rebuilt ``totalDue`` keeps a negative
    balance (store credit) and is logged for manual reconciliation.

    Returns:
        list[DebtorRow]: The rebuilt debtor collection.

    Raises:
        StorageError: If the rebuilt debtors could not be saved.
    """
    with context.store.lock:
        prior = context.store.get(CollectionKey.DEBTORS)
        rebuilt = _rebuild_debtors(context.store.get(CollectionKey.PURCHASES), prior)
        if rebuilt == prior:
            log.debug("Debtors already consistent with purchases (%d accounts)", len(rebuilt))
            return rebuilt
        _commit(context, {CollectionKey.DEBTORS: rebuilt}, "debtors")
    log.info("Recomputed %d debtor accounts", len(rebuilt))
    return rebuilt


def record_payment(
    context: RuntimeContext,
    debtor_id: str,
    amount: MoneyLike,
    purchase_ids: Sequence[str] = (),
) -> DebtorRow:
    """Record a payment made by a debtor.

    Listed purchases are marked ``paid`` with the payment time as an
    allocation hint. Marking an already-paid purchase keeps its original
    ``paidDate``; unknown purchase ids are logged and skipped. Debtor and
    purchases are saved together.

    Args:
        context (RuntimeContext): Runtime context.
        debtor_id (str): Identifier of the paying debtor.
        amount (Decimal | int | str): Paid amount, ``0 < amount <= balance``.
        purchase_ids (Sequence[str]): Purchases to mark as paid.

    Returns:
        DebtorRow: The updated debtor.

    Raises:
        NotFoundError: If ``debtor_id`` is unknown.
        ValidationError: If ``amount`` is not positive or exceeds the balance.
        StorageError: If nothing could be saved.
    """
    payment = require_positive_money(amount, "payment amount")
    paid_at = data_manager.to_iso(context.clock.now())

    with context.store.lock:
        debtors = context.store.get(CollectionKey.DEBTORS)
        index = _index_of_debtor(debtors, debtor_id)
        debtor = debtors[index]
        if payment > debtor.balance:
            log.error("Payment of %s exceeds balance %s of debtor '%s'", payment, debtor.balance, debtor_id)
            raise ValidationError(f"Payment amount {payment} exceeds outstanding balance {debtor.balance}")
        updated = replace(debtor, total_paid=debtor.total_paid + payment, last_payment=paid_at)
        debtors[index] = updated
        values: Dict[CollectionKey, Any] = {CollectionKey.DEBTORS: debtors}

        if purchase_ids:
            purchases = context.store.get(CollectionKey.PURCHASES)
            positions = {purchase.purchase_id: position for position, purchase in enumerate(purchases)}
            for purchase_id in purchase_ids:
                position = positions.get(purchase_id)
                if position is None:
                    log.warning("Cannot mark unknown purchase '%s' as paid", purchase_id)
                    continue
                purchase = purchases[position]
                if not purchase.paid:
                    purchases[position] = replace(purchase, paid=True, paid_date=paid_at)
            values = {CollectionKey.PURCHASES: purchases, CollectionKey.DEBTORS: debtors}

        _commit(context, values, f"payment by debtor '{debtor_id}'")

    log.info("Recorded payment of %s by debtor '%s' (balance=%s)", payment, debtor_id, updated.balance)
    return updated


# ---------------------------------------------------------------------------
# Backup / restore
# ---------------------------------------------------------------------------


def export_document(
    context: RuntimeContext,
    keys: Sequence[Union[str, CollectionKey]] = DEFAULT_EXPORT_KEYS,
) -> Dict[str, Any]:
    """Serialize collections into one JSON-compatible backup document.

    Args:
        context (RuntimeContext): Runtime context.
        keys (Sequence): Collections to include; goods and inventory by
            default. Any of goods, purchases, debtors, inventory is allowed.

    Returns:
        dict: ``{"schemaVersion", "exportedAt", <key>: [...]}``.

    Raises:
        ValidationError: If ``keys`` names something that is not a
            collection.
    """
    document: Dict[str, Any] = {
        "schemaVersion": EXPECTED_SCHEMA_VERSION,
        "exportedAt": data_manager.to_iso(context.clock.now()),
    }
    for key in _collection_keys(keys):
        document[key.value] = data_manager.collection_payload(key, context.store.get(key))
    log.info("Exported collections: %s", ", ".join(name for name in document if name not in ("schemaVersion", "exportedAt")))
    return document


def import_document(context: RuntimeContext, document: Mapping[str, Any]) -> List[CollectionKey]:
    """Restore every collection present in a backup document.

    Collections absent from the document are left untouched. Imported
    purchases must satisfy the line and total invariants. When purchases are
    imported without debtors, debtors are rebuilt from them in the same save.

    Returns:
        list[CollectionKey]: The collections that were replaced.

    Raises:
        ValidationError: If the document has the wrong schema version,
            contains no collection, or holds malformed records.
        StorageError: If nothing could be saved.
    """
    version = document.get("schemaVersion", EXPECTED_SCHEMA_VERSION)
    if version != EXPECTED_SCHEMA_VERSION:
        raise ValidationError(f"Unsupported document schema version: {version}")

    values: Dict[CollectionKey, Any] = {}
    for key in data_manager.COLLECTIONS:
        if key.value not in document:
            continue
        payload = document[key.value]
        if not isinstance(payload, list):
            raise ValidationError(f"Collection '{key.value}' must be a list")
        try:
            values[key] = data_manager.collection_from_payload(key, payload)
        except (KeyError, ValueError, TypeError, AttributeError) as exc:
            log.error("Malformed '%s' collection in import document: %s", key.value, exc)
            raise ValidationError(f"Malformed '{key.value}' collection: {exc}") from exc
    if not values:
        raise ValidationError("Document does not contain any collection")

    for purchase in values.get(CollectionKey.PURCHASES, []):
        _verify_persisted_purchase(purchase)

    with context.store.lock:
        if CollectionKey.PURCHASES in values and CollectionKey.DEBTORS not in values:
            values[CollectionKey.DEBTORS] = _rebuild_debtors(
                values[CollectionKey.PURCHASES], context.store.get(CollectionKey.DEBTORS)
            )
        _commit(context, values, "imported collections")
    log.info("Imported collections: %s", ", ".join(key.value for key in values))
    return list(values)


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def require_text(value: Optional[str], field_name: str) -> str:
    """Return ``value`` stripped, rejecting blank text with ``ValidationError``."""
    text = (value or "").strip()
    if not text:
        log.error("Text validation failed: %s is blank", field_name)
        raise ValidationError(f"{field_name.capitalize()} must not be blank")
    return text


def require_positive_money(amount: MoneyLike, field_name: str = "amount") -> Decimal:
    """Coerce ``amount`` to ``Decimal`` and require it to be greater than zero.

    Raises:
        ValidationError: If ``amount`` is not a finite number above zero.
    """
    try:
        value = data_manager.to_decimal(amount, default=Decimal("NaN"))
    except ValueError as exc:
        raise ValidationError(f"{field_name.capitalize()} is not a number: {amount!r}") from exc
    if not value.is_finite() or value <= ZERO:
        log.error("Monetary value validation failed for %s: %s", field_name, amount)
        raise ValidationError(f"{field_name.capitalize()} must be greater than zero")
    return value


def require_quantity(quantity: Any, field_name: str = "quantity", *, minimum: int = 1) -> int:
    """Require an integral ``quantity`` of at least ``minimum``.

    Raises:
        ValidationError: If ``quantity`` is not a whole number or is too small.
    """
    if isinstance(quantity, bool):
        raise ValidationError(f"{field_name.capitalize()} must be a whole number")
    try:
        value = Decimal(str(quantity))
    except ArithmeticError as exc:
        raise ValidationError(f"{field_name.capitalize()} must be a whole number") from exc
    if not value.is_finite() or value != value.to_integral_value():
        raise ValidationError(f"{field_name.capitalize()} must be a whole number")
    if value < minimum:
        log.error("Quantity validation failed for %s: %s", field_name, quantity)
        raise ValidationError(f"{field_name.capitalize()} must be at least {minimum}")
    return int(value)


def require_active(purchase: PurchaseRow, action: str) -> None:
    """Reject ``action`` on a voided or refunded purchase with ``InvalidStateError``."""
    if purchase.status is not PurchaseStatus.ACTIVE:
        log.warning(
            "Cannot %s purchase '%s' because it is %s",
            action,
            purchase.purchase_id,
            purchase.status.value,
        )
        raise InvalidStateError(f"Cannot {action} a {purchase.status.value} purchase")


def require_within_edit_window(purchase: PurchaseRow, now: datetime) -> None:
    """Reject edits made more than ``EDIT_WINDOW`` after ``createdAt``."""
    age = now - data_manager.parse_iso(purchase.created_at)
    if age > EDIT_WINDOW:
        log.warning("Edit window expired for purchase '%s' (age %s)", purchase.purchase_id, age)
        raise EditWindowExpiredError(
            f"Cannot edit purchase '{purchase.purchase_id}' more than "
            f"{int(EDIT_WINDOW.total_seconds() // 3600)} hours after it was created"
        )


# ---------------------------------------------------------------------------
# Internals
# ---------------------------------------------------------------------------


def _commit(context: RuntimeContext, values: Mapping[CollectionKey, Any], description: str) -> None:
    if not context.store.set_many(values):
        raise StorageError(f"Could not save {description}")


def _save_photo(context: RuntimeContext, data: bytes, purchase_id: str) -> Optional[str]:
    if context.photos is None:
        log.warning("No photo store configured; photo for purchase '%s' dropped", purchase_id)
        return None
    try:
        return context.photos.save_photo(data, purchase_id)
    except StorageError as exc:
        log.warning("Photo for purchase '%s' not saved: %s", purchase_id, exc)
        return None


def _build_items(lines: Optional[Sequence[LineLike]]) -> List[PurchaseItem]:
    if not lines:
        log.error("Purchase validation failed: no items")
        raise ValidationError("A purchase needs at least one item")
    items: List[PurchaseItem] = []
    for line in lines:
        price = require_positive_money(line.price, "price")
        quantity = require_quantity(line.quantity, "quantity", minimum=1)
        subtotal = price * quantity
        claimed = getattr(line, "subtotal", None)
        if claimed is not None and require_money(claimed, "subtotal") != subtotal:
            log.error("Subtotal mismatch for good '%s': %s != %s", line.good_id, claimed, subtotal)
            raise ValidationError(f"Subtotal of '{line.name}' must be {subtotal}, got {claimed}")
        items.append(
            PurchaseItem(
                good_id=str(line.good_id),
                name=require_text(line.name, "item name"),
                price=price,
                quantity=quantity,
                subtotal=subtotal,
            )
        )
    return items


def require_money(amount: MoneyLike, field_name: str) -> Decimal:
    """Coerce ``amount`` to a finite ``Decimal`` without a sign requirement."""
    try:
        value = data_manager.to_decimal(amount, default=Decimal("NaN"))
    except ValueError as exc:
        raise ValidationError(f"{field_name.capitalize()} is not a number: {amount!r}") from exc
    if not value.is_finite():
        raise ValidationError(f"{field_name.capitalize()} is not a number: {amount!r}")
    return value


def _verified_total(items: Sequence[PurchaseItem], claimed: Optional[MoneyLike]) -> Decimal:
    total = sum((item.subtotal for item in items), ZERO)
    if claimed is not None and require_money(claimed, "total") != total:
        log.error("Purchase total mismatch: claimed %s, computed %s", claimed, total)
        raise ValidationError(f"Total must equal the sum of line subtotals ({total}), got {claimed}")
    return total


def _verify_persisted_purchase(purchase: PurchaseRow) -> None:
    for item in purchase.items:
        if item.quantity < 1 or item.subtotal != item.price * item.quantity:
            raise ValidationError(f"Purchase '{purchase.purchase_id}' has an inconsistent line '{item.name}'")
    if purchase.total != sum((item.subtotal for item in purchase.items), ZERO):
        raise ValidationError(f"Purchase '{purchase.purchase_id}' total does not match its lines")


def _apply_patch(purchase: PurchaseRow, patch: PurchasePatch) -> PurchaseRow:
    changes: Dict[str, Any] = {}
    if patch.customer_name is not None:
        changes["customer_name"] = patch.customer_name.strip()
    if patch.customer_phone is not None:
        changes["customer_phone"] = patch.customer_phone.strip()
    items = purchase.items
    if patch.items is not None:
        items = tuple(_build_items(patch.items))
        changes["items"] = items
    changes["total"] = _verified_total(items, patch.total)
    return replace(purchase, **changes)


def _close_purchase(context: RuntimeContext, purchase_id: str, action: str, close) -> PurchaseRow:
    with context.store.lock:
        purchases = context.store.get(CollectionKey.PURCHASES)
        index = _index_of_purchase(purchases, purchase_id)
        current = purchases[index]
        require_active(current, action)
        closed = close(current)
        purchases[index] = closed
        values: Dict[CollectionKey, Any] = {CollectionKey.PURCHASES: purchases}
        if closed.payment_type is PaymentType.CREDIT:
            values[CollectionKey.DEBTORS] = _rebuild_debtors(purchases, context.store.get(CollectionKey.DEBTORS))
        _commit(context, values, f"purchase '{purchase_id}'")
    return closed


def _index_of_purchase(purchases: Sequence[PurchaseRow], purchase_id: str) -> int:
    for index, purchase in enumerate(purchases):
        if purchase.purchase_id == purchase_id:
            return index
    log.warning("Purchase lookup failed for id '%s'", purchase_id)
    raise NotFoundError(f"Unknown purchase id: {purchase_id}")


def _index_of_debtor(debtors: Sequence[DebtorRow], debtor_id: str) -> int:
    for index, debtor in enumerate(debtors):
        if debtor.debtor_id == debtor_id:
            return index
    log.warning("Debtor lookup failed for id '%s'", debtor_id)
    raise NotFoundError(f"Unknown debtor id: {debtor_id}")


def _debtor_key(debtor: DebtorRow) -> Optional[str]:
    return identity_key(debtor.customer_name, debtor.customer_phone)


def _later(first: Optional[str], second: Optional[str]) -> Optional[str]:
    if first is None:
        return second
    if second is None:
        return first
    return second if data_manager.parse_iso(second) > data_manager.parse_iso(first) else first


def _new_debtor(purchase: PurchaseRow, total_due: Decimal, purchase_ids: Tuple[str, ...]) -> DebtorRow:
    return DebtorRow(
        debtor_id=generate_id("D", when=data_manager.parse_iso(purchase.date)),
        customer_name=purchase.customer_name,
        customer_phone=purchase.customer_phone,
        total_due=total_due,
        total_paid=ZERO,
        purchase_ids=purchase_ids,
        created_at=purchase.date,
        last_purchase=purchase.date,
    )


def _apply_credit_sale(debtors: List[DebtorRow], purchase: PurchaseRow) -> Tuple[List[DebtorRow], DebtorRow]:
    key = identity_key(purchase.customer_name, purchase.customer_phone)
    for index, debtor in enumerate(debtors):
        if _debtor_key(debtor) == key:
            updated = replace(
                debtor,
                total_due=debtor.total_due + purchase.total,
                purchase_ids=debtor.purchase_ids + (purchase.purchase_id,),
                last_purchase=_later(debtor.last_purchase, purchase.date),
            )
            debtors[index] = updated
            return debtors, updated
    created = _new_debtor(purchase, purchase.total, (purchase.purchase_id,))
    debtors.append(created)
    return debtors, created


def _rebuild_debtors(purchases: Sequence[PurchaseRow], prior: Sequence[DebtorRow]) -> List[DebtorRow]:
    groups: Dict[str, List[PurchaseRow]] = {}
    for purchase in purchases:
        if purchase.payment_type is not PaymentType.CREDIT or purchase.status is not PurchaseStatus.ACTIVE:
            continue
        key = identity_key(purchase.customer_name, purchase.customer_phone)
        if key is not None:
            groups.setdefault(key, []).append(purchase)

    rebuilt: List[DebtorRow] = []
    claimed: set = set()
    for debtor in prior:
        key = _debtor_key(debtor)
        if key in claimed:
            log.warning("Debtor '%s' duplicates identity '%s'; keeping its payments only", debtor.debtor_id, key)
            rebuilt.append(replace(debtor, total_due=ZERO, purchase_ids=()))
            continue
        claimed.add(key)
        members = groups.get(key, [])
        last_purchase = debtor.last_purchase
        for purchase in members:
            last_purchase = _later(last_purchase, purchase.date)
        rebuilt.append(
            replace(
                debtor,
                total_due=sum((purchase.total for purchase in members), ZERO),
                purchase_ids=tuple(purchase.purchase_id for purchase in members),
                last_purchase=last_purchase,
            )
        )

    for key, members in groups.items():
        if key in claimed:
            continue
        last_purchase = members[0].date
        for purchase in members[1:]:
            last_purchase = _later(last_purchase, purchase.date)
        debtor = _new_debtor(
            members[0],
            sum((purchase.total for purchase in members), ZERO),
            tuple(purchase.purchase_id for purchase in members),
        )
        rebuilt.append(replace(debtor, last_purchase=last_purchase))

    for debtor in rebuilt:
        if debtor.balance < ZERO:
            log.warning(
                "Debtor '%s' has paid %s more than is due; carried as credit pending manual reconciliation",
                debtor.debtor_id,
                -debtor.balance,
            )
    return rebuilt


def _collection_keys(keys: Sequence[Union[str, CollectionKey]]) -> List[CollectionKey]:
    resolved: List[CollectionKey] = []
    for key in keys:
        try:
            collection = data_manager.as_key(key)
        except KeyError as exc:
            raise ValidationError(str(exc)) from exc
        if collection not in data_manager.COLLECTIONS:
            raise ValidationError(f"Not an exportable collection: {collection.value}")
        resolved.append(collection)
    return resolved
