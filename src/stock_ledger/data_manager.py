"""Data access layer for the stock ledger.

This module provides low-level helpers that read from and write to the
stock ledger workbook. Business rules belong in :mod:`stock_ledger.core_logic`.

The public API is designed around four responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and atomically persisting the
   Excel file.
3. Sheet operations: loading structured records and appending, updating, or
   deleting individual rows.
4. Atomic commits: collecting several row mutations in a :class:`WriteBatch`
   and applying them to the on-disk workbook as one unit through
   :func:`commit_batch`.
"""


from __future__ import annotations

import configparser
import os
import tempfile
import threading
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence

from filelock import FileLock
from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import DEFAULT_LOW_STOCK_THRESHOLD, ExhaustionPolicy, SheetName


CONFIG_FILE_NAME = "config.ini"
COMMIT_LOCK_TIMEOUT = 30.0
PRODUCTS_SHEET = SheetName.PRODUCTS.value
TRANSACTIONS_SHEET = SheetName.TRANSACTIONS.value
TRANSACTION_ITEMS_SHEET = SheetName.TRANSACTION_ITEMS.value
STOCK_MOVEMENTS_SHEET = SheetName.STOCK_MOVEMENTS.value

SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    PRODUCTS_SHEET: [
        "ProductID",
        "OwnerID",
        "Name",
        "BuyPrice",
        "SellPrice",
        "Quantity",
        "Revision",
        "CreatedAt",
        "UpdatedAt",
        "Category",
        "Brand",
        "SKU",
        "Barcode",
        "MinStock",
    ],
    TRANSACTIONS_SHEET: [
        "TransactionID",
        "OwnerID",
        "BuyerName",
        "TotalAmount",
        "TotalProfit",
        "CreatedAt",
    ],
    TRANSACTION_ITEMS_SHEET: [
        "TransactionID",
        "OwnerID",
        "LineNo",
        "ProductID",
        "Name",
        "Quantity",
        "BuyPrice",
        "SellPrice",
    ],
    STOCK_MOVEMENTS_SHEET: [
        "MovementID",
        "OwnerID",
        "ProductID",
        "MovementType",
        "Quantity",
        "Reason",
        "CreatedAt",
    ],
}


class StaleRevisionError(Exception):
    """Raised when a batch precondition no longer holds on disk."""


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    shop_name: str
    schema_version: str
    default_owner_id: str
    low_stock_threshold: int = DEFAULT_LOW_STOCK_THRESHOLD
    exhaustion_policy: ExhaustionPolicy = ExhaustionPolicy.DELETE


@dataclass(frozen=True)
class ProductRow:
    """In-memory view of a row from the ``Products`` sheet.

    ``min_stock`` is the product's own low-stock limit; ``None`` defers to
    the configured ``LowStockThreshold``.
    """

    product_id: str
    owner_id: str
    name: str
    buy_price: Decimal
    sell_price: Decimal
    quantity: int
    revision: int
    created_at: str
    updated_at: str
    category: str = ""
    brand: str = ""
    sku: str = ""
    barcode: Optional[str] = None
    min_stock: Optional[int] = None


@dataclass(frozen=True)
class LedgerItemRow:
    """In-memory view of a row from the ``TransactionItems`` sheet."""

    transaction_id: str
    owner_id: str
    line_no: int
    product_id: str
    name: str
    quantity: int
    buy_price: Decimal
    sell_price: Decimal


@dataclass(frozen=True)
class LedgerEntryRow:
    """A completed sale joined with its ordered line items."""

    transaction_id: str
    owner_id: str
    buyer_name: str
    total_amount: Decimal
    total_profit: Decimal
    created_at: str
    items: tuple[LedgerItemRow, ...] = ()


@dataclass(frozen=True)
class StockMovementRow:
    """In-memory view of a row from the ``StockMovements`` sheet."""

    movement_id: str
    owner_id: str
    product_id: str
    movement_type: str
    quantity: int
    reason: Optional[str]
    created_at: str


@dataclass(frozen=True)
class BatchOperation:
    """One pending mutation recorded on a :class:`WriteBatch`."""

    kind: str
    key: str
    expected_revision: Optional[int] = None
    payload: Any = None


@dataclass
class WriteBatch:
    """Ordered set of mutations that must become visible together.

    Nothing touches the workbook until the batch is handed to
    :func:`commit_batch`. Product updates and deletes carry the revision the
    caller read; the commit refuses to apply the batch if any of them moved.
    """

    owner_id: str
    operations: List[BatchOperation] = field(default_factory=list)

    def create_product(self, record: ProductRow) -> None:
        self.operations.append(BatchOperation("create_product", record.product_id, payload=record))

    def update_product(self, product_id: str, *, expected_revision: int, field_values: Mapping[str, Any]) -> None:
        self.operations.append(
            BatchOperation("update_product", product_id, expected_revision, dict(field_values))
        )

    def delete_product(self, product_id: str, *, expected_revision: int) -> None:
        self.operations.append(BatchOperation("delete_product", product_id, expected_revision))

    def append_transaction(self, record: LedgerEntryRow) -> None:
        self.operations.append(BatchOperation("append_transaction", record.transaction_id, payload=record))

    def delete_transaction(self, transaction_id: str) -> None:
        self.operations.append(BatchOperation("delete_transaction", transaction_id))

    def append_movement(self, record: StockMovementRow) -> None:
        self.operations.append(BatchOperation("append_movement", record.movement_id, payload=record))

    def __len__(self) -> int:
        return len(self.operations)


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match is considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If no ``CONFIG_FILE_NAME`` exists in the current
            directory or any of its parents.
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
        FileNotFoundError: If ``config_path`` does not exist.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser(inline_comment_prefixes=(";", "#"))
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``System.DataFile``, ``System.ShopName``, ``System.SchemaVersion`` and
    ``Defaults.OwnerID`` are mandatory. ``Defaults.LowStockThreshold`` and
    ``Defaults.ExhaustionPolicy`` fall back to package defaults. Relative data
    file paths are anchored at ``base_path`` (or the working directory) and
    resolved.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used to anchor a relative
            ``DataFile`` entry.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If a required section or option is missing.
        ValueError: If an optional option holds an unusable value.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        shop_name = parser.get("System", "ShopName")
        schema_version = parser.get("System", "SchemaVersion")
        default_owner = parser.get("Defaults", "OwnerID")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    threshold = parser.getint(
        "Defaults", "LowStockThreshold", fallback=DEFAULT_LOW_STOCK_THRESHOLD)
    if threshold < 0:
        raise ValueError(f"LowStockThreshold must not be negative: {threshold}")
    policy_raw = parser.get(
        "Defaults", "ExhaustionPolicy", fallback=ExhaustionPolicy.DELETE.value)
    exhaustion_policy = ExhaustionPolicy(policy_raw.strip().lower())

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        shop_name=shop_name,
        schema_version=schema_version,
        default_owner_id=default_owner,
        low_stock_threshold=threshold,
        exhaustion_policy=exhaustion_policy,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the stock ledger workbook and return a live ``openpyxl`` workbook.

    Args:
        data_file (Path): Filesystem path to the workbook.

    Returns:
        Workbook: ``openpyxl`` workbook instance backed by the provided file.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    wb = openpyxl.load_workbook(data_file)
    return wb


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook so readers see either the old or the new file.

    The workbook is serialized next to ``destination`` under a temporary name
    and then moved over it with :func:`os.replace`, which is atomic on the
    same filesystem. A failed save leaves ``destination`` untouched.

    Args:
        workbook (Workbook): Workbook instance to persist.
        destination (Path): Filesystem path that should receive the workbook.
    """

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{dest.stem}-", suffix=dest.suffix, dir=dest.parent)
    os.close(fd)
    tmp_path = Path(tmp_name)
    try:
        workbook.save(tmp_path)
        os.replace(tmp_path, dest)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def iter_products(workbook: Workbook, owner_id: Optional[str] = None) -> Iterable[ProductRow]:
    """Iterate over product records stored on the ``Products`` worksheet.

    Header and fully empty rows are skipped. When ``owner_id`` is given only
    that owner's rows are produced.

    Args:
        workbook (Workbook): Workbook containing the ``Products`` sheet.
        owner_id (str | None): Optional owner filter.

    Yields:
        ProductRow: One structured row for each meaningful record in the sheet.
    """

    for raw in _iter_raw_rows(workbook, PRODUCTS_SHEET):
        product = deserialize_product(raw)
        if owner_id is None or product.owner_id == owner_id:
            yield product


def iter_transaction_items(workbook: Workbook, owner_id: Optional[str] = None) -> Iterable[LedgerItemRow]:
    """Iterate over line items stored on the ``TransactionItems`` worksheet."""

    for raw in _iter_raw_rows(workbook, TRANSACTION_ITEMS_SHEET):
        item = deserialize_transaction_item(raw)
        if owner_id is None or item.owner_id == owner_id:
            yield item


def iter_transactions(workbook: Workbook, owner_id: Optional[str] = None) -> Iterable[LedgerEntryRow]:
    """Stream ledger entries joined with their line items.

    Items are grouped by ``TransactionID`` and ordered by ``LineNo`` so each
    :class:`LedgerEntryRow` carries the exact sequence written at commit time.

    Args:
        workbook (Workbook): Workbook containing the ledger sheets.
        owner_id (str | None): Optional owner filter.

    Yields:
        LedgerEntryRow: Entries in sheet order.
    """

    items_by_transaction: Dict[str, List[LedgerItemRow]] = defaultdict(list)
    for item in iter_transaction_items(workbook, owner_id):
        items_by_transaction[item.transaction_id].append(item)

    for raw in _iter_raw_rows(workbook, TRANSACTIONS_SHEET):
        entry = deserialize_transaction(raw)
        if owner_id is not None and entry.owner_id != owner_id:
            continue
        items = sorted(items_by_transaction.get(entry.transaction_id, []), key=lambda item: item.line_no)
        yield LedgerEntryRow(
            transaction_id=entry.transaction_id,
            owner_id=entry.owner_id,
            buyer_name=entry.buyer_name,
            total_amount=entry.total_amount,
            total_profit=entry.total_profit,
            created_at=entry.created_at,
            items=tuple(items),
        )


def iter_movements(workbook: Workbook, owner_id: Optional[str] = None) -> Iterable[StockMovementRow]:
    """Iterate over the ``StockMovements`` audit sheet."""

    for raw in _iter_raw_rows(workbook, STOCK_MOVEMENTS_SHEET):
        movement = deserialize_movement(raw)
        if owner_id is None or movement.owner_id == owner_id:
            yield movement


def append_product(workbook: Workbook, record: ProductRow) -> None:
    """Append a product record to the ``Products`` worksheet."""

    workbook[PRODUCTS_SHEET].append(serialize_product(record))


def append_transaction(workbook: Workbook, record: LedgerEntryRow) -> None:
    """Append a ledger entry and one ``TransactionItems`` row per line.

    Args:
        workbook (Workbook): Workbook containing the ledger sheets.
        record (LedgerEntryRow): Entry whose ``items`` are written in order.
    """

    workbook[TRANSACTIONS_SHEET].append(serialize_transaction(record))
    items_sheet = workbook[TRANSACTION_ITEMS_SHEET]
    for item in record.items:
        items_sheet.append(serialize_transaction_item(item))


def append_movement(workbook: Workbook, record: StockMovementRow) -> None:
    """Append a stock movement to the audit sheet."""

    workbook[STOCK_MOVEMENTS_SHEET].append(serialize_movement(record))


def update_product(workbook: Workbook, product_id: str, *, field_values: Mapping[str, Any]) -> None:
    """Update selected columns for an existing product.

    Only the named columns are written; the rest of the row is untouched.

    Args:
        workbook (Workbook): Workbook containing the products sheet.
        product_id (str): Identifier used to locate the target row.
        field_values (Mapping[str, Any]): Column names mapped to new values.

    Raises:
        KeyError: If the product or any referenced column cannot be found.
    """

    row_index = locate_row(workbook, PRODUCTS_SHEET, "ProductID", product_id)
    if row_index is None:
        raise KeyError(f"Product not found: {product_id}")

    sheet = workbook[PRODUCTS_SHEET]
    header_map = _header_map(sheet)

    for column, value in field_values.items():
        if column not in header_map:
            raise KeyError(f"Unknown product field: {column}")
        sheet.cell(row=row_index, column=header_map[column], value=value)


def delete_product(workbook: Workbook, product_id: str) -> None:
    """Remove a product row entirely.

    Raises:
        KeyError: If no row holds ``product_id``.
    """

    row_index = locate_row(workbook, PRODUCTS_SHEET, "ProductID", product_id)
    if row_index is None:
        raise KeyError(f"Product not found: {product_id}")
    workbook[PRODUCTS_SHEET].delete_rows(row_index, 1)


def delete_transaction(workbook: Workbook, transaction_id: str) -> None:
    """Remove a ledger entry together with all of its line items.

    Raises:
        KeyError: If no entry holds ``transaction_id``.
    """

    row_index = locate_row(workbook, TRANSACTIONS_SHEET, "TransactionID", transaction_id)
    if row_index is None:
        raise KeyError(f"Transaction not found: {transaction_id}")
    workbook[TRANSACTIONS_SHEET].delete_rows(row_index, 1)

    items_sheet = workbook[TRANSACTION_ITEMS_SHEET]
    key_col = _header_map(items_sheet)["TransactionID"]
    matches = [
        row_idx
        for row_idx, row in enumerate(items_sheet.iter_rows(min_row=2, values_only=True), start=2)
        if row[key_col - 1] == transaction_id
    ]
    # delete bottom-up so earlier indices stay valid
    for row_idx in reversed(matches):
        items_sheet.delete_rows(row_idx, 1)


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title of the lookup column.
        key_value (str): Value to match within the key column.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = workbook[sheet_name]
    header_map = _header_map(sheet)
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]

    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if row[key_col_index - 1] == key_value:
            return row_idx

    return None


_COMMIT_LOCKS: Dict[Path, threading.Lock] = {}
_COMMIT_LOCKS_GUARD = threading.Lock()


def commit_lock_path(data_file: Path) -> Path:
    """Return the sidecar lock file guarding commits to ``data_file``."""

    return data_file.with_name(f".{data_file.name}.lock")


@contextmanager
def _commit_lock(data_file: Path) -> Iterator[None]:
    """Serialize commits against the same workbook across threads and processes.

    The thread lock orders writers inside this process; the file lock orders
    them against every other process sharing the workbook.

    Raises:
        filelock.Timeout: If another process holds the lock longer than
            ``COMMIT_LOCK_TIMEOUT`` seconds.
    """

    with _COMMIT_LOCKS_GUARD:
        lock = _COMMIT_LOCKS.setdefault(data_file, threading.Lock())
    with lock, FileLock(str(commit_lock_path(data_file)), timeout=COMMIT_LOCK_TIMEOUT):
        yield


def commit_batch(data_file: Path, batch: WriteBatch) -> Workbook:
    """Apply every operation of ``batch`` to the on-disk workbook atomically.

    While the commit lock is held, the workbook is re-read from disk, every
    precondition of the batch is checked against that fresh state, the
    operations are applied in order, and the result is saved through
    :func:`save_workbook`. Any exception before the final replace leaves the
    file exactly as it was.

    Args:
        data_file (Path): Workbook the batch targets.
        batch (WriteBatch): Mutations to apply.

    Returns:
        Workbook: The freshly written workbook, suitable as the caller's new
            read snapshot.

    Raises:
        StaleRevisionError: If a product revision moved, a product or entry
            vanished, or a created name is already taken.
        FileNotFoundError: If the workbook does not exist.
        filelock.Timeout: If another process kept the workbook locked.
        OSError: If the workbook cannot be written.
    """

    data_file = Path(data_file).expanduser().resolve()
    with _commit_lock(data_file):
        workbook = open_workbook(data_file)
        check_batch_preconditions(workbook, batch)
        apply_batch(workbook, batch)
        save_workbook(workbook, data_file)
    log.debug("Committed batch of %d operation(s) to '%s'", len(batch), data_file)
    return workbook


def check_batch_preconditions(workbook: Workbook, batch: WriteBatch) -> None:
    """Verify optimistic-lock expectations of ``batch`` against ``workbook``.

    Raises:
        StaleRevisionError: On the first precondition that no longer holds.
    """

    products = {product.product_id: product for product in iter_products(workbook)}
    owner_names = {
        product.name for product in products.values() if product.owner_id == batch.owner_id
    }
    transaction_ids = {
        entry.transaction_id
        for entry in (deserialize_transaction(raw) for raw in _iter_raw_rows(workbook, TRANSACTIONS_SHEET))
        if entry.owner_id == batch.owner_id
    }

    for operation in batch.operations:
        if operation.kind == "create_product":
            record: ProductRow = operation.payload
            if record.product_id in products:
                raise StaleRevisionError(f"Product id already exists: {record.product_id}")
            if record.name in owner_names:
                raise StaleRevisionError(f"Product name already in use: {record.name}")
            owner_names.add(record.name)
        elif operation.kind in ("update_product", "delete_product"):
            current = products.get(operation.key)
            if current is None or current.owner_id != batch.owner_id:
                raise StaleRevisionError(f"Product no longer exists: {operation.key}")
            if current.revision != operation.expected_revision:
                raise StaleRevisionError(
                    f"Product '{operation.key}' changed: expected revision "
                    f"{operation.expected_revision}, found {current.revision}"
                )
        elif operation.kind == "delete_transaction":
            if operation.key not in transaction_ids:
                raise StaleRevisionError(f"Transaction no longer exists: {operation.key}")


def apply_batch(workbook: Workbook, batch: WriteBatch) -> None:
    """Apply ``batch`` to ``workbook`` in memory without any checks."""

    for operation in batch.operations:
        if operation.kind == "create_product":
            append_product(workbook, operation.payload)
        elif operation.kind == "update_product":
            field_values = dict(operation.payload)
            field_values["Revision"] = operation.expected_revision + 1
            update_product(workbook, operation.key, field_values=field_values)
        elif operation.kind == "delete_product":
            delete_product(workbook, operation.key)
        elif operation.kind == "append_transaction":
            append_transaction(workbook, operation.payload)
        elif operation.kind == "delete_transaction":
            delete_transaction(workbook, operation.key)
        elif operation.kind == "append_movement":
            append_movement(workbook, operation.payload)
        else:
            raise ValueError(f"Unknown batch operation: {operation.kind}")


def serialize_product(record: ProductRow) -> list[object]:
    """Convert a product dataclass into the worksheet column ordering."""

    return [
        record.product_id,
        record.owner_id,
        record.name,
        record.buy_price,
        record.sell_price,
        record.quantity,
        record.revision,
        record.created_at,
        record.updated_at,
        record.category,
        record.brand,
        record.sku,
        record.barcode,
        record.min_stock,
    ]


def serialize_transaction(record: LedgerEntryRow) -> list[object]:
    """Convert a ledger entry header into the ``Transactions`` column order.

    Line items are serialized separately by :func:`serialize_transaction_item`.
    """

    return [
        record.transaction_id,
        record.owner_id,
        record.buyer_name,
        record.total_amount,
        record.total_profit,
        record.created_at,
    ]


def serialize_transaction_item(record: LedgerItemRow) -> list[object]:
    """Convert a ledger line item into the ``TransactionItems`` column order."""

    return [
        record.transaction_id,
        record.owner_id,
        record.line_no,
        record.product_id,
        record.name,
        record.quantity,
        record.buy_price,
        record.sell_price,
    ]


def serialize_movement(record: StockMovementRow) -> list[object]:
    """Convert a stock movement into the ``StockMovements`` column order."""

    return [
        record.movement_id,
        record.owner_id,
        record.product_id,
        record.movement_type,
        record.quantity,
        record.reason,
        record.created_at,
    ]


def deserialize_product(raw_row: Sequence[object]) -> ProductRow:
    """Convert a raw worksheet row into a strongly typed product record.

    Prices become :class:`~decimal.Decimal`, quantity and revision become
    ``int``, and identifiers are coerced to ``str`` so values Excel reinterpreted
    as numbers still compare equal to the ids the application generated.
    Rows written before the catalog metadata columns existed are padded with
    empty values.

    Args:
        raw_row (Sequence[object]): Raw cell values from the worksheet row.

    Returns:
        ProductRow: Normalized product record.
    """

    width = len(SHEET_COLUMNS[PRODUCTS_SHEET])
    padded = tuple(raw_row[:width]) + (None,) * (width - len(raw_row[:width]))
    (
        product_id,
        owner_id,
        name,
        buy_raw,
        sell_raw,
        quantity_raw,
        revision_raw,
        created_at,
        updated_at,
        category,
        brand,
        sku,
        barcode,
        min_stock_raw,
    ) = padded

    return ProductRow(
        product_id=str(product_id),
        owner_id=str(owner_id),
        name=str(name) if name is not None else "",
        buy_price=_to_decimal(buy_raw),
        sell_price=_to_decimal(sell_raw),
        quantity=int(quantity_raw) if quantity_raw is not None else 0,
        revision=int(revision_raw) if revision_raw is not None else 1,
        created_at=str(created_at) if created_at is not None else "",
        updated_at=str(updated_at) if updated_at is not None else "",
        category=str(category) if category is not None else "",
        brand=str(brand) if brand is not None else "",
        sku=str(sku) if sku is not None else "",
        barcode=str(barcode) if barcode is not None else None,
        min_stock=int(min_stock_raw) if min_stock_raw is not None else None,
    )


def deserialize_transaction(raw_row: Sequence[object]) -> LedgerEntryRow:
    """Convert a ``Transactions`` row into an entry without items.

    :func:`iter_transactions` attaches the items afterwards.
    """

    transaction_id, owner_id, buyer_name, amount_raw, profit_raw, created_at = raw_row[:6]
    return LedgerEntryRow(
        transaction_id=str(transaction_id),
        owner_id=str(owner_id),
        buyer_name=str(buyer_name) if buyer_name is not None else "",
        total_amount=_to_decimal(amount_raw),
        total_profit=_to_decimal(profit_raw),
        created_at=str(created_at) if created_at is not None else "",
    )


def deserialize_transaction_item(raw_row: Sequence[object]) -> LedgerItemRow:
    """Convert a ``TransactionItems`` row into a typed line item."""

    (
        transaction_id,
        owner_id,
        line_no,
        product_id,
        name,
        quantity_raw,
        buy_raw,
        sell_raw,
    ) = raw_row[:8]
    return LedgerItemRow(
        transaction_id=str(transaction_id),
        owner_id=str(owner_id),
        line_no=int(line_no) if line_no is not None else 0,
        product_id=str(product_id) if product_id is not None else "",
        name=str(name) if name is not None else "",
        quantity=int(quantity_raw) if quantity_raw is not None else 0,
        buy_price=_to_decimal(buy_raw),
        sell_price=_to_decimal(sell_raw),
    )


def deserialize_movement(raw_row: Sequence[object]) -> StockMovementRow:
    """Convert a ``StockMovements`` row into a typed movement record."""

    movement_id, owner_id, product_id, movement_type, quantity_raw, reason, created_at = raw_row[:7]
    return StockMovementRow(
        movement_id=str(movement_id),
        owner_id=str(owner_id),
        product_id=str(product_id) if product_id is not None else "",
        movement_type=str(movement_type) if movement_type is not None else "",
        quantity=int(quantity_raw) if quantity_raw is not None else 0,
        reason=str(reason) if reason is not None else None,
        created_at=str(created_at) if created_at is not None else "",
    )


def _to_decimal(raw: object) -> Decimal:
    return Decimal(str(raw)) if raw is not None else Decimal("0.00")


def _header_map(sheet) -> Dict[Any, int]:
    return {cell.value: idx + 1 for idx, cell in enumerate(sheet[1])}


def _iter_raw_rows(workbook: Workbook, sheet_name: str) -> Iterator[Sequence[object]]:
    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield raw
