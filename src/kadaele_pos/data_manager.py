"""Data access layer for Kadaele POS.

This module provides low-level helpers that read from and write to the store
workbook. Business logic belongs elsewhere.

The public API is designed around four responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, creating, and atomically persisting the Excel
   file.
3. Record codecs: converting typed rows to and from worksheet rows and
   JSON-compatible payloads.
4. Sheet operations: reading and replacing whole collections, the sync queue,
   and the ``Meta`` key/value sheet.
"""


from __future__ import annotations

import configparser
import json
import os
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import DEFAULT_CATEGORY, ZERO, CollectionKey, PaymentType, PurchaseStatus, SheetName


CONFIG_FILE_NAME = "config.ini"
DEFAULT_TIMEOUT_SECONDS = 10.0

# Spreadsheet cells hold at most this many characters; openpyxl truncates
# longer strings, so longer values are rejected or split across cells.
MAX_CELL_CHARS = 32_767

GOODS_COLUMNS: Tuple[str, ...] = ("GoodID", "Name", "Price", "Category", "Barcode", "CreatedAt")
PURCHASES_COLUMNS: Tuple[str, ...] = (
    "PurchaseID",
    "Date",
    "Items",
    "Total",
    "PaymentType",
    "CustomerName",
    "CustomerPhone",
    "Status",
    "PhotoRef",
    "Refund",
    "VoidReason",
    "VoidedAt",
    "Paid",
    "PaidDate",
    "CreatedAt",
)
DEBTORS_COLUMNS: Tuple[str, ...] = (
    "DebtorID",
    "CustomerName",
    "CustomerPhone",
    "TotalDue",
    "TotalPaid",
    "PurchaseIDs",
    "CreatedAt",
    "LastPurchase",
    "LastPayment",
)
INVENTORY_COLUMNS: Tuple[str, ...] = ("ItemID", "StockLevel", "LastUpdated")
# Payload text continues into the columns after "Payload" when it is too long
# for one cell.
SYNC_QUEUE_COLUMNS: Tuple[str, ...] = ("Key", "Timestamp", "Payload")
META_COLUMNS: Tuple[str, ...] = ("Key", "Value")

META_LAST_SYNC = "lastSync"
META_SCHEMA_VERSION = "schemaVersion"


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    store_name: str
    schema_version: str
    sync_endpoint: Optional[str] = None
    time_endpoint: Optional[str] = None
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    start_online: bool = False
    background_sync: bool = False
    photo_dir: Optional[Path] = None


@dataclass(frozen=True)
class GoodRow:
    """In-memory view of a row from the ``Goods`` sheet."""

    good_id: str
    name: str
    price: Decimal
    category: str = DEFAULT_CATEGORY
    barcode: Optional[str] = None
    created_at: Optional[str] = None


@dataclass(frozen=True)
class PurchaseItem:
    """A purchase line holding a name/price snapshot of the sold good."""

    good_id: str
    name: str
    price: Decimal
    quantity: int
    subtotal: Decimal


@dataclass(frozen=True)
class RefundRecord:
    """Refund metadata stored on a refunded purchase."""

    amount: Decimal
    reason: Optional[str]
    date: str


@dataclass(frozen=True)
class PurchaseRow:
    """In-memory view of a row from the ``Purchases`` sheet."""

    purchase_id: str
    date: str
    items: Tuple[PurchaseItem, ...]
    total: Decimal
    payment_type: PaymentType
    customer_name: str
    customer_phone: str
    status: PurchaseStatus
    created_at: str
    photo_ref: Optional[str] = None
    refund: Optional[RefundRecord] = None
    void_reason: Optional[str] = None
    voided_at: Optional[str] = None
    paid: bool = False
    paid_date: Optional[str] = None


@dataclass(frozen=True)
class DebtorRow:
    """In-memory view of a row from the ``Debtors`` sheet.

    ``balance`` is derived on every access and is never written to the sheet.
    """

    debtor_id: str
    customer_name: str
    customer_phone: str
    total_due: Decimal
    total_paid: Decimal
    purchase_ids: Tuple[str, ...]
    created_at: str
    last_purchase: Optional[str] = None
    last_payment: Optional[str] = None

    @property
    def balance(self) -> Decimal:
        return self.total_due - self.total_paid


@dataclass(frozen=True)
class InventoryRow:
    """In-memory view of a row from the ``Inventory`` sheet."""

    item_id: str
    stock_level: int
    last_updated: Optional[str] = None


@dataclass(frozen=True)
class SyncQueueEntry:
    """One pending mutation awaiting remote delivery.

    ``value`` holds the JSON-compatible payload of the collection that was
    written, exactly as it will be sent to the remote service.
    """

    key: str
    value: Any
    timestamp: str

    def to_payload(self) -> Dict[str, Any]:
        return {"key": self.key, "value": self.value, "timestamp": self.timestamp}


@dataclass(frozen=True)
class CollectionSpec:
    """Registry entry describing how one collection is stored and exchanged."""

    key: CollectionKey
    sheet_name: str
    columns: Tuple[str, ...]
    serialize: Callable[[Any], List[object]]
    deserialize: Callable[[Sequence[object]], Any]
    to_payload: Callable[[Any], Dict[str, Any]]
    from_payload: Callable[[Mapping[str, Any]], Any]


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. When no explicit path is given the function
    walks up from the current working directory toward the filesystem root
    looking for a file named ``CONFIG_FILE_NAME``. The first match that exists
    on disk is considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If the search exhausts all parent directories without
            finding ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute. ``~`` is expanded.

    Returns:
        configparser.ConfigParser: Parser containing the raw configuration.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def _resolve_path(raw: str, base_path: Optional[Path]) -> Path:
    path = Path(raw).expanduser()
    if not path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        path = (base_path / path).resolve()
    return path


def _optional_text(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    The ``[System]`` section is mandatory. ``[Sync]`` and ``[Photos]`` are
    optional and fall back to an offline, local-clock configuration with a
    ``photos`` directory next to the configuration file. Relative paths are
    expanded against ``base_path`` (or the current working directory).

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used to anchor relative paths.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If one of the required ``[System]`` options is missing.
        ValueError: If a numeric or boolean option cannot be parsed.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        store_name = parser.get("System", "StoreName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    timeout_seconds = parser.getfloat("Sync", "TimeoutSeconds", fallback=DEFAULT_TIMEOUT_SECONDS)
    if timeout_seconds <= 0:
        raise ValueError("Sync.TimeoutSeconds must be greater than zero")

    return ConfigSettings(
        data_file=_resolve_path(data_file_raw, base_path),
        store_name=store_name,
        schema_version=schema_version,
        sync_endpoint=_optional_text(parser.get("Sync", "Endpoint", fallback=None)),
        time_endpoint=_optional_text(parser.get("Sync", "TimeEndpoint", fallback=None)),
        timeout_seconds=timeout_seconds,
        start_online=parser.getboolean("Sync", "StartOnline", fallback=False),
        background_sync=parser.getboolean("Sync", "Background", fallback=False),
        photo_dir=_resolve_path(parser.get("Photos", "Directory", fallback="photos"), base_path),
    )


# ---------------------------------------------------------------------------
# Workbook lifecycle
# ---------------------------------------------------------------------------


def open_workbook(data_file: Path) -> Workbook:
    """Open the store workbook and return a live ``openpyxl`` workbook.

    Args:
        data_file (Path): Filesystem path to the store workbook.

    Returns:
        Workbook: ``openpyxl`` workbook instance backed by the provided file.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def create_workbook(schema_version: str) -> Workbook:
    """Build an empty store workbook with every managed sheet and header row.

    The ``Meta`` sheet records ``schema_version`` so that the file can be
    validated independently of ``config.ini``.
    """

    workbook = openpyxl.Workbook()
    if workbook.active is not None and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)
    for sheet_name, columns in SHEET_COLUMNS.items():
        create_sheet(workbook, sheet_name, columns)
    write_meta(workbook, META_SCHEMA_VERSION, schema_version)
    return workbook


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk, replacing ``destination`` atomically.

    The workbook is first written to a temporary sibling file which then
    replaces the destination with :func:`os.replace`. A failed save therefore
    leaves the previous file untouched. Parent directories are created on
    demand.

    Args:
        workbook (Workbook): Workbook instance to persist.
        destination (Path): Filesystem path that should receive the serialized
            workbook.

    Raises:
        OSError: If the temporary file cannot be written or moved into place.
    """

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    temporary = dest.with_name(f".{dest.name}.tmp")
    try:
        workbook.save(temporary)
        os.replace(temporary, dest)
    except OSError:
        temporary.unlink(missing_ok=True)
        raise


def create_sheet(workbook: Workbook, sheet_name: str, columns: Sequence[str]):
    """Create ``sheet_name`` with a header row, returning the worksheet."""

    sheet = workbook.create_sheet(title=sheet_name)
    write_cells(sheet, 1, columns)
    return sheet


def ensure_sheet(workbook: Workbook, sheet_name: str):
    """Return ``sheet_name``, creating it with its managed header when absent."""

    if sheet_name in workbook.sheetnames:
        return workbook[sheet_name]
    log.debug("Creating missing sheet '%s'", sheet_name)
    return create_sheet(workbook, sheet_name, SHEET_COLUMNS[sheet_name])


def write_cells(sheet, row_index: int, values: Sequence[object]) -> None:
    """Write ``values`` into ``row_index`` starting at the first column.

    Strings starting with ``=`` are kept as text; openpyxl would otherwise
    store them as formulas that a spreadsheet application evaluates.
    """

    for column_index, value in enumerate(values, start=1):
        cell = sheet.cell(row=row_index, column=column_index)
        cell.value = value
        if isinstance(value, str) and value.startswith("="):
            cell.data_type = "s"


def iter_raw_rows(workbook: Workbook, sheet_name: str) -> Iterable[Tuple[object, ...]]:
    """Yield the non-empty data rows of ``sheet_name``, skipping the header."""

    if sheet_name not in workbook.sheetnames:
        return
    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        if any(cell is not None for cell in raw):
            yield raw


def replace_rows(workbook: Workbook, sheet_name: str, rows: Iterable[Sequence[object]]) -> None:
    """Drop every data row of ``sheet_name`` and write ``rows`` in order."""

    sheet = ensure_sheet(workbook, sheet_name)
    if sheet.max_row > 1:
        sheet.delete_rows(2, sheet.max_row - 1)
    for row_index, values in enumerate(rows, start=2):
        write_cells(sheet, row_index, values)


def snapshot_sheet(workbook: Workbook, sheet_name: str) -> Optional[List[Tuple[object, ...]]]:
    """Capture every row of ``sheet_name`` (header included) for rollback.

    Returns ``None`` when the sheet does not exist.
    """

    if sheet_name not in workbook.sheetnames:
        return None
    return [tuple(raw) for raw in workbook[sheet_name].iter_rows(values_only=True)]


def restore_sheet(workbook: Workbook, sheet_name: str, snapshot: Optional[List[Tuple[object, ...]]]) -> None:
    """Restore a sheet captured by :func:`snapshot_sheet`.

    A ``None`` snapshot means the sheet did not exist, so it is removed again.
    """

    index = None
    if sheet_name in workbook.sheetnames:
        index = workbook.sheetnames.index(sheet_name)
        workbook.remove(workbook[sheet_name])
    if snapshot is None:
        return
    sheet = workbook.create_sheet(title=sheet_name, index=index)
    for row_index, values in enumerate(snapshot, start=1):
        write_cells(sheet, row_index, values)


# ---------------------------------------------------------------------------
# Value helpers
# ---------------------------------------------------------------------------


def utc_now() -> datetime:
    """Return the current local clock reading as an aware UTC datetime."""

    return datetime.now(UTC)


def to_iso(moment: datetime) -> str:
    """Serialize ``moment`` as ISO-8601 in UTC."""

    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC).isoformat()


def parse_iso(text: str) -> datetime:
    """Parse an ISO-8601 timestamp, assuming UTC when no offset is present."""

    moment = datetime.fromisoformat(text)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment


def to_decimal(raw: object, default: Decimal = ZERO) -> Decimal:
    """Coerce a cell or payload value into :class:`~decimal.Decimal`.

    Raises:
        ValueError: If ``raw`` is not a number or numeric string.
    """

    if raw is None or raw == "":
        return default
    if isinstance(raw, Decimal):
        return raw
    try:
        return Decimal(str(raw))
    except InvalidOperation as exc:
        raise ValueError(f"Not a decimal value: {raw!r}") from exc


def money_cell(value: Decimal) -> str:
    """Render money as exact decimal text; numeric cells reload as float."""

    return str(value)


def _optional_str(raw: object) -> Optional[str]:
    if raw is None or raw == "":
        return None
    return str(raw)


def _text(raw: object) -> str:
    return "" if raw is None else str(raw)


def _json_cell(value: Any, column: str) -> str:
    text = json.dumps(value, separators=(",", ":"))
    if len(text) > MAX_CELL_CHARS:
        raise ValueError(f"Value for column '{column}' exceeds {MAX_CELL_CHARS} characters")
    return text


def _load_json(raw: object, default: Any) -> Any:
    if raw is None or raw == "":
        return default
    return json.loads(str(raw))


def _pad(raw_row: Sequence[object], width: int) -> Tuple[object, ...]:
    values = tuple(raw_row[:width])
    return values + (None,) * (width - len(values))


def split_text(text: str, size: int = MAX_CELL_CHARS) -> List[str]:
    """Split ``text`` into chunks that each fit into one cell."""

    if not text:
        return [""]
    return [text[start:start + size] for start in range(0, len(text), size)]


# ---------------------------------------------------------------------------
# Goods
# ---------------------------------------------------------------------------


def serialize_good(record: GoodRow) -> List[object]:
    """Convert a good dataclass into the ``Goods`` column ordering."""

    return [record.good_id, record.name, money_cell(record.price), record.category, record.barcode, record.created_at]


def deserialize_good(raw_row: Sequence[object]) -> GoodRow:
    """Convert a raw ``Goods`` row into a :class:`GoodRow`.

    Identifiers and barcodes are coerced to ``str`` because Excel likes to turn
    numeric-looking text into numbers.
    """

    good_id, name, price, category, barcode, created_at = _pad(raw_row, len(GOODS_COLUMNS))
    return GoodRow(
        good_id=str(good_id),
        name=_text(name),
        price=to_decimal(price),
        category=_text(category) or DEFAULT_CATEGORY,
        barcode=_optional_str(barcode),
        created_at=_optional_str(created_at),
    )


def good_to_payload(record: GoodRow) -> Dict[str, Any]:
    return {
        "id": record.good_id,
        "name": record.name,
        "price": str(record.price),
        "category": record.category,
        "barcode": record.barcode,
        "createdAt": record.created_at,
    }


def good_from_payload(payload: Mapping[str, Any]) -> GoodRow:
    return GoodRow(
        good_id=str(payload["id"]),
        name=_text(payload.get("name")),
        price=to_decimal(payload.get("price")),
        category=_text(payload.get("category")) or DEFAULT_CATEGORY,
        barcode=_optional_str(payload.get("barcode")),
        created_at=_optional_str(payload.get("createdAt")),
    )


# ---------------------------------------------------------------------------
# Purchases
# ---------------------------------------------------------------------------


def item_to_payload(item: PurchaseItem) -> Dict[str, Any]:
    return {
        "goodId": item.good_id,
        "name": item.name,
        "price": str(item.price),
        "quantity": item.quantity,
        "subtotal": str(item.subtotal),
    }


def item_from_payload(payload: Mapping[str, Any]) -> PurchaseItem:
    return PurchaseItem(
        good_id=str(payload["goodId"]),
        name=_text(payload.get("name")),
        price=to_decimal(payload.get("price")),
        quantity=int(payload["quantity"]),
        subtotal=to_decimal(payload.get("subtotal")),
    )


def refund_to_payload(refund: Optional[RefundRecord]) -> Optional[Dict[str, Any]]:
    if refund is None:
        return None
    return {"amount": str(refund.amount), "reason": refund.reason, "date": refund.date}


def refund_from_payload(payload: Optional[Mapping[str, Any]]) -> Optional[RefundRecord]:
    if not payload:
        return None
    return RefundRecord(
        amount=to_decimal(payload.get("amount")),
        reason=_optional_str(payload.get("reason")),
        date=_text(payload.get("date")),
    )


def serialize_purchase(record: PurchaseRow) -> List[object]:
    """Convert a purchase dataclass into the ``Purchases`` column ordering.

    Line items and the refund record are stored as compact JSON documents in
    their own cells; monetary values are written as decimal text.

    Raises:
        ValueError: If the encoded line items do not fit into one cell.
    """

    return [
        record.purchase_id,
        record.date,
        _json_cell([item_to_payload(item) for item in record.items], "Items"),
        money_cell(record.total),
        record.payment_type.value,
        record.customer_name,
        record.customer_phone,
        record.status.value,
        record.photo_ref,
        _json_cell(refund_to_payload(record.refund), "Refund") if record.refund else None,
        record.void_reason,
        record.voided_at,
        record.paid,
        record.paid_date,
        record.created_at,
    ]


def deserialize_purchase(raw_row: Sequence[object]) -> PurchaseRow:
    """Convert a raw ``Purchases`` row into a :class:`PurchaseRow`.

    Raises:
        ValueError: If the payment type, status, or embedded JSON is invalid.
    """

    (
        purchase_id,
        date,
        items_raw,
        total,
        payment_type,
        customer_name,
        customer_phone,
        status,
        photo_ref,
        refund_raw,
        void_reason,
        voided_at,
        paid,
        paid_date,
        created_at,
    ) = _pad(raw_row, len(PURCHASES_COLUMNS))

    return PurchaseRow(
        purchase_id=str(purchase_id),
        date=_text(date),
        items=tuple(item_from_payload(item) for item in _load_json(items_raw, [])),
        total=to_decimal(total),
        payment_type=PaymentType(_text(payment_type)),
        customer_name=_text(customer_name),
        customer_phone=_text(customer_phone),
        status=PurchaseStatus(_text(status)),
        created_at=_text(created_at),
        photo_ref=_optional_str(photo_ref),
        refund=refund_from_payload(_load_json(refund_raw, None)),
        void_reason=_optional_str(void_reason),
        voided_at=_optional_str(voided_at),
        paid=bool(paid),
        paid_date=_optional_str(paid_date),
    )


def purchase_to_payload(record: PurchaseRow) -> Dict[str, Any]:
    return {
        "id": record.purchase_id,
        "date": record.date,
        "items": [item_to_payload(item) for item in record.items],
        "total": str(record.total),
        "paymentType": record.payment_type.value,
        "customerName": record.customer_name,
        "customerPhone": record.customer_phone,
        "status": record.status.value,
        "photoRef": record.photo_ref,
        "refund": refund_to_payload(record.refund),
        "voidReason": record.void_reason,
        "voidedAt": record.voided_at,
        "paid": record.paid,
        "paidDate": record.paid_date,
        "createdAt": record.created_at,
    }


def purchase_from_payload(payload: Mapping[str, Any]) -> PurchaseRow:
    return PurchaseRow(
        purchase_id=str(payload["id"]),
        date=_text(payload.get("date")),
        items=tuple(item_from_payload(item) for item in payload.get("items") or []),
        total=to_decimal(payload.get("total")),
        payment_type=PaymentType(payload["paymentType"]),
        customer_name=_text(payload.get("customerName")),
        customer_phone=_text(payload.get("customerPhone")),
        status=PurchaseStatus(payload.get("status") or PurchaseStatus.ACTIVE.value),
        created_at=_text(payload.get("createdAt") or payload.get("date")),
        photo_ref=_optional_str(payload.get("photoRef")),
        refund=refund_from_payload(payload.get("refund")),
        void_reason=_optional_str(payload.get("voidReason")),
        voided_at=_optional_str(payload.get("voidedAt")),
        paid=bool(payload.get("paid", False)),
        paid_date=_optional_str(payload.get("paidDate")),
    )


# ---------------------------------------------------------------------------
# Debtors
# ---------------------------------------------------------------------------


def serialize_debtor(record: DebtorRow) -> List[object]:
    """Convert a debtor dataclass into the ``Debtors`` column ordering.

    ``balance`` is intentionally absent; it is always derived on read.
    """

    return [
        record.debtor_id,
        record.customer_name,
        record.customer_phone,
        money_cell(record.total_due),
        money_cell(record.total_paid),
        _json_cell(list(record.purchase_ids), "PurchaseIDs"),
        record.created_at,
        record.last_purchase,
        record.last_payment,
    ]


def deserialize_debtor(raw_row: Sequence[object]) -> DebtorRow:
    """Convert a raw ``Debtors`` row into a :class:`DebtorRow`."""

    (
        debtor_id,
        customer_name,
        customer_phone,
        total_due,
        total_paid,
        purchase_ids,
        created_at,
        last_purchase,
        last_payment,
    ) = _pad(raw_row, len(DEBTORS_COLUMNS))

    return DebtorRow(
        debtor_id=str(debtor_id),
        customer_name=_text(customer_name),
        customer_phone=_text(customer_phone),
        total_due=to_decimal(total_due),
        total_paid=to_decimal(total_paid),
        purchase_ids=tuple(str(value) for value in _load_json(purchase_ids, [])),
        created_at=_text(created_at),
        last_purchase=_optional_str(last_purchase),
        last_payment=_optional_str(last_payment),
    )


def debtor_to_payload(record: DebtorRow) -> Dict[str, Any]:
    return {
        "id": record.debtor_id,
        "customerName": record.customer_name,
        "customerPhone": record.customer_phone,
        "totalDue": str(record.total_due),
        "totalPaid": str(record.total_paid),
        "purchaseIds": list(record.purchase_ids),
        "createdAt": record.created_at,
        "lastPurchase": record.last_purchase,
        "lastPayment": record.last_payment,
    }


def debtor_from_payload(payload: Mapping[str, Any]) -> DebtorRow:
    return DebtorRow(
        debtor_id=str(payload["id"]),
        customer_name=_text(payload.get("customerName")),
        customer_phone=_text(payload.get("customerPhone")),
        total_due=to_decimal(payload.get("totalDue")),
        total_paid=to_decimal(payload.get("totalPaid")),
        purchase_ids=tuple(str(value) for value in payload.get("purchaseIds") or []),
        created_at=_text(payload.get("createdAt")),
        last_purchase=_optional_str(payload.get("lastPurchase")),
        last_payment=_optional_str(payload.get("lastPayment")),
    )


# ---------------------------------------------------------------------------
# Inventory
# ---------------------------------------------------------------------------


def serialize_inventory(record: InventoryRow) -> List[object]:
    return [record.item_id, record.stock_level, record.last_updated]


def deserialize_inventory(raw_row: Sequence[object]) -> InventoryRow:
    item_id, stock_level, last_updated = _pad(raw_row, len(INVENTORY_COLUMNS))
    return InventoryRow(
        item_id=str(item_id),
        stock_level=int(stock_level or 0),
        last_updated=_optional_str(last_updated),
    )


def inventory_to_payload(record: InventoryRow) -> Dict[str, Any]:
    return {"itemId": record.item_id, "stockLevel": record.stock_level, "lastUpdated": record.last_updated}


def inventory_from_payload(payload: Mapping[str, Any]) -> InventoryRow:
    return InventoryRow(
        item_id=str(payload["itemId"]),
        stock_level=int(payload.get("stockLevel") or 0),
        last_updated=_optional_str(payload.get("lastUpdated")),
    )


# ---------------------------------------------------------------------------
# Collection registry
# ---------------------------------------------------------------------------


COLLECTIONS: Mapping[CollectionKey, CollectionSpec] = {
    CollectionKey.GOODS: CollectionSpec(
        key=CollectionKey.GOODS,
        sheet_name=SheetName.GOODS.value,
        columns=GOODS_COLUMNS,
        serialize=serialize_good,
        deserialize=deserialize_good,
        to_payload=good_to_payload,
        from_payload=good_from_payload,
    ),
    CollectionKey.PURCHASES: CollectionSpec(
        key=CollectionKey.PURCHASES,
        sheet_name=SheetName.PURCHASES.value,
        columns=PURCHASES_COLUMNS,
        serialize=serialize_purchase,
        deserialize=deserialize_purchase,
        to_payload=purchase_to_payload,
        from_payload=purchase_from_payload,
    ),
    CollectionKey.DEBTORS: CollectionSpec(
        key=CollectionKey.DEBTORS,
        sheet_name=SheetName.DEBTORS.value,
        columns=DEBTORS_COLUMNS,
        serialize=serialize_debtor,
        deserialize=deserialize_debtor,
        to_payload=debtor_to_payload,
        from_payload=debtor_from_payload,
    ),
    CollectionKey.INVENTORY: CollectionSpec(
        key=CollectionKey.INVENTORY,
        sheet_name=SheetName.INVENTORY.value,
        columns=INVENTORY_COLUMNS,
        serialize=serialize_inventory,
        deserialize=deserialize_inventory,
        to_payload=inventory_to_payload,
        from_payload=inventory_from_payload,
    ),
}

SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    **{spec.sheet_name: spec.columns for spec in COLLECTIONS.values()},
    SheetName.SYNC_QUEUE.value: SYNC_QUEUE_COLUMNS,
    SheetName.META.value: META_COLUMNS,
}

# Value returned for a key that has never been written.
DEFAULTS: Mapping[CollectionKey, Callable[[], Any]] = {
    CollectionKey.GOODS: list,
    CollectionKey.PURCHASES: list,
    CollectionKey.DEBTORS: list,
    CollectionKey.INVENTORY: list,
    CollectionKey.SYNC_QUEUE: list,
    CollectionKey.LAST_SYNC: lambda: None,
}


def as_key(key: Union[str, CollectionKey]) -> CollectionKey:
    """Normalize a key to :class:`CollectionKey`.

    Raises:
        KeyError: If ``key`` is not a managed collection.
    """

    try:
        return CollectionKey(key)
    except ValueError as exc:
        raise KeyError(f"Unknown collection key: {key}") from exc


def default_for(key: Union[str, CollectionKey]) -> Any:
    """Return a fresh default value for ``key`` from the registry."""

    return DEFAULTS[as_key(key)]()


def read_collection(workbook: Workbook, key: Union[str, CollectionKey]) -> List[Any]:
    """Load every record of a registered collection in sheet order.

    A missing sheet yields the registry default.
    """

    spec = COLLECTIONS[as_key(key)]
    if spec.sheet_name not in workbook.sheetnames:
        return default_for(key)
    return [spec.deserialize(raw) for raw in iter_raw_rows(workbook, spec.sheet_name)]


def write_collection(workbook: Workbook, key: Union[str, CollectionKey], records: Iterable[Any]) -> None:
    """Replace a registered collection with ``records``.

    Every record is serialized before the sheet is touched so that a codec
    failure leaves the sheet unchanged.
    """

    spec = COLLECTIONS[as_key(key)]
    rows = [spec.serialize(record) for record in records]
    replace_rows(workbook, spec.sheet_name, rows)


def collection_payload(key: Union[str, CollectionKey], records: Iterable[Any]) -> List[Dict[str, Any]]:
    """Render ``records`` as the JSON-compatible payload used for sync and export."""

    spec = COLLECTIONS[as_key(key)]
    return [spec.to_payload(record) for record in records]


def collection_from_payload(key: Union[str, CollectionKey], payload: Iterable[Mapping[str, Any]]) -> List[Any]:
    """Parse a JSON-compatible payload back into typed records.

    Raises:
        KeyError: If a record misses a required field.
        ValueError: If a field holds an invalid value.
    """

    spec = COLLECTIONS[as_key(key)]
    return [spec.from_payload(item) for item in payload]


# ---------------------------------------------------------------------------
# Sync queue and meta sheets
# ---------------------------------------------------------------------------


def serialize_queue_entry(entry: SyncQueueEntry) -> List[object]:
    """Convert a queue entry into ``[Key, Timestamp, Payload...]``.

    The JSON payload is split across as many cells as it needs.
    """

    return [entry.key, entry.timestamp, *split_text(json.dumps(entry.value, separators=(",", ":")))]


def deserialize_queue_entry(raw_row: Sequence[object]) -> SyncQueueEntry:
    key, timestamp = raw_row[0], raw_row[1]
    text = "".join(str(cell) for cell in raw_row[2:] if cell is not None)
    return SyncQueueEntry(key=str(key), value=json.loads(text) if text else None, timestamp=_text(timestamp))


def read_queue(workbook: Workbook) -> List[SyncQueueEntry]:
    """Return the pending queue entries in insertion order."""

    return [deserialize_queue_entry(raw) for raw in iter_raw_rows(workbook, SheetName.SYNC_QUEUE.value)]


def append_queue(workbook: Workbook, entries: Iterable[SyncQueueEntry]) -> None:
    """Append ``entries`` after the last queue row."""

    rows = [serialize_queue_entry(entry) for entry in entries]
    sheet = ensure_sheet(workbook, SheetName.SYNC_QUEUE.value)
    next_row = len(list(iter_raw_rows(workbook, SheetName.SYNC_QUEUE.value))) + 2
    for offset, values in enumerate(rows):
        write_cells(sheet, next_row + offset, values)


def drop_queue_head(workbook: Workbook, count: int) -> None:
    """Remove the first ``count`` queue entries, keeping anything after them."""

    if count <= 0:
        return
    remaining = [tuple(raw) for raw in iter_raw_rows(workbook, SheetName.SYNC_QUEUE.value)][count:]
    replace_rows(workbook, SheetName.SYNC_QUEUE.value, remaining)


def read_meta(workbook: Workbook, name: str) -> Optional[str]:
    """Return the ``Meta`` value stored under ``name`` or ``None``."""

    for raw in iter_raw_rows(workbook, SheetName.META.value):
        if raw[0] == name:
            return _optional_str(raw[1])
    return None


def write_meta(workbook: Workbook, name: str, value: Optional[str]) -> None:
    """Insert or overwrite the ``Meta`` value stored under ``name``."""

    entries = {str(raw[0]): raw[1] for raw in iter_raw_rows(workbook, SheetName.META.value)}
    entries[name] = value
    replace_rows(workbook, SheetName.META.value, [[key, entry] for key, entry in entries.items()])
