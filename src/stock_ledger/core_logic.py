"""Business logic layer for the stock ledger.

This module owns the rules that keep the product catalog and the sales ledger
consistent with each other. It consumes the Data Access Layer (DAL) for all
I/O; every mutating operation stages its row changes on a
:class:`~stock_ledger.data_manager.WriteBatch` and commits them as one unit,
so stock counts and ledger entries are never observed out of step.

All catalog and ledger operations take an explicit ``owner_id``; records of
one owner are invisible to another.
"""

from __future__ import annotations

import uuid
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from openpyxl.utils.exceptions import InvalidFileException
from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import EXPECTED_SCHEMA_VERSION, ExhaustionPolicy, MovementType


class LedgerError(Exception):
    """Base class for every failure raised by the business logic layer."""


class ValidationError(LedgerError):
    """Raised when input is malformed; nothing has been written.

    ``field_errors`` maps a field name to a message for single-record input.
    ``row_errors`` holds one such mapping per submitted row for batch input
    (an empty mapping marks a valid row).
    """

    def __init__(
        self,
        message: str,
        *,
        field_errors: Optional[Dict[str, str]] = None,
        row_errors: Optional[List[Dict[str, str]]] = None,
    ) -> None:
        super().__init__(message)
        self.field_errors = dict(field_errors or {})
        self.row_errors = list(row_errors or [])


class InvalidQuantity(ValidationError):
    """Raised when a quantity is zero, negative, or not a whole number."""


class InsufficientStock(ValidationError):
    """Raised when more units are requested than the catalog holds."""

    def __init__(self, product_id: str, *, requested: int, available: int) -> None:
        super().__init__(
            f"Insufficient stock for product '{product_id}': requested {requested}, available {available}",
            field_errors={"quantity": f"Only {available} unit(s) in stock"},
        )
        self.product_id = product_id
        self.requested = requested
        self.available = available


class NotFound(LedgerError):
    """Raised when a referenced product or ledger entry does not exist."""


class StorageError(LedgerError):
    """Raised when the workbook cannot be read or written."""


class ConflictError(StorageError):
    """Raised when a commit lost an optimistic-lock race and must be retried."""


@dataclass
class RuntimeContext:
    """Configuration plus the current read snapshot of the workbook.

    ``workbook`` is replaced after every successful commit with the workbook
    that was written to disk, and the caches are dropped at the same time.
    """

    settings: data_manager.ConfigSettings
    workbook: Workbook
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)


@dataclass(frozen=True)
class SaleLine:
    """Snapshot of a product taken when it was put in the cart."""

    product_id: str
    name: str
    buy_price: Decimal
    sell_price: Decimal
    quantity: int

    @property
    def line_amount(self) -> Decimal:
        return self.sell_price * self.quantity

    @property
    def line_profit(self) -> Decimal:
        return (self.sell_price - self.buy_price) * self.quantity


@dataclass(frozen=True)
class IntakeRow:
    """One externally supplied row for :func:`bulk_intake`.

    Values may arrive as text (CLI, spreadsheets); they are coerced and
    validated by :func:`validate_intake_rows`.
    """

    name: Any
    quantity: Any
    buy_price: Any
    sell_price: Any


# A natural-key lookup: given the owner's products and a name, return the
# product that name refers to, or ``None``.
ProductMatcher = Callable[[Sequence[data_manager.ProductRow], str], Optional[data_manager.ProductRow]]


def match_by_name(products: Sequence[data_manager.ProductRow], name: str) -> Optional[data_manager.ProductRow]:
    """Return the first product whose name equals ``name`` after trimming.

    Matching is case-sensitive. Bulk intake and sale reversal resolve products
    through this function (or a replacement with the same signature), so a
    different natural key can be introduced without touching either caller.
    """

    key = (name or "").strip()
    for product in products:
        if product.name.strip() == key:
            return product
    return None


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` or the current UTC time when it is ``None``."""

    return candidate if candidate is not None else datetime.now(UTC)


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict cache buckets after the workbook snapshot changed.

    Calling without names drops every bucket.
    """

    targets = names or tuple(context._cache)
    log.debug("Invalidating cache buckets: %s", ", ".join(targets))
    for name in targets:
        context._cache.pop(name, None)


def _ensure_products_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the product cache bucket on demand.

    Returns:
        dict[str, Any]: Bucket containing ``all`` products in sheet order and a
            ``by_id`` lookup dictionary.
    """

    bucket = _get_cache_bucket(context, "products")
    if "all" not in bucket:
        all_products = list(data_manager.iter_products(context.workbook))
        bucket["all"] = all_products
        bucket["by_id"] = {product.product_id: product for product in all_products}
        log.debug("Populated products cache with %d entries", len(all_products))
    return bucket


def _ensure_transactions_cache(context: RuntimeContext) -> Dict[str, Any]:
    bucket = _get_cache_bucket(context, "transactions")
    if "all" not in bucket:
        all_transactions = list(data_manager.iter_transactions(context.workbook))
        bucket["all"] = all_transactions
        bucket["by_id"] = {entry.transaction_id: entry for entry in all_transactions}
        log.debug("Populated transactions cache with %d entries", len(all_transactions))
    return bucket


def _ensure_movements_cache(context: RuntimeContext) -> Dict[str, Any]:
    bucket = _get_cache_bucket(context, "movements")
    if "all" not in bucket:
        bucket["all"] = list(data_manager.iter_movements(context.workbook))
    return bucket


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook for the BLL.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer searches upward from the current
            working directory.

    Returns:
        RuntimeContext: Context holding the settings and a workbook snapshot.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the configured schema version does not match
            ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Return a new context over a freshly loaded copy of the workbook.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, workbook=workbook)


def _commit(context: RuntimeContext, batch: data_manager.WriteBatch) -> None:
    """Commit ``batch`` and adopt the written workbook as the new snapshot.

    On a lost optimistic-lock race the snapshot is reloaded from disk so a
    retry of the whole operation reads current state.

    Raises:
        ConflictError: If a precondition of the batch no longer holds.
        StorageError: If the workbook could not be read or written.
    """
    try:
        workbook = data_manager.commit_batch(context.settings.data_file, batch)
    except data_manager.StaleRevisionError as exc:
        log.warning("Commit rejected for owner '%s': %s", batch.owner_id, exc)
        context.workbook = data_manager.refresh_workbook(context.settings.data_file)
        _invalidate_cache(context)
        raise ConflictError(str(exc)) from exc
    except (OSError, InvalidFileException) as exc:
        log.error("Commit failed for workbook '%s': %s", context.settings.data_file, exc)
        raise StorageError(f"Unable to persist changes: {exc}") from exc

    context.workbook = workbook
    _invalidate_cache(context)


def generate_transaction_id(*, prefix: str = "T", when: Optional[datetime] = None) -> str:
    """Generate a sortable ledger identifier ``{prefix}{YYYYMMDDHHMMSSffffff}``.

    Microseconds are included so entries recorded within the same second stay
    distinct; caller supplied timestamps make identifiers deterministic in
    tests.
    """
    when = when or _resolve_timestamp(None)
    return f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}"


def generate_identifier(prefix: str) -> str:
    """Generate a random identifier for products and stock movements."""
    return f"{prefix}{uuid.uuid4().hex[:12].upper()}"


def require_positive_quantity(quantity: Any) -> int:
    """Coerce ``quantity`` to ``int`` and require it to be greater than zero.

    Raises:
        InvalidQuantity: If the value is not a whole number above zero.
    """
    value = _coerce_quantity(quantity)
    if value is None or value <= 0:
        log.error("Quantity validation failed: %s", quantity)
        raise InvalidQuantity(
            "Quantity must be a whole number greater than zero",
            field_errors={"quantity": "Quantity must be a whole number greater than zero"},
        )
    return value


def require_nonnegative_money(amount: Any, *, field_name: str = "amount") -> Decimal:
    """Coerce ``amount`` to :class:`Decimal` and require it to be zero or more.

    Raises:
        ValidationError: If the value is not a finite, non-negative number.
    """
    value = _coerce_money(amount)
    if value is None or value < Decimal("0"):
        log.error("Monetary value validation failed for %s: %s", field_name, amount)
        raise ValidationError(
            f"{field_name} must be zero or positive",
            field_errors={field_name: "Must be zero or positive"},
        )
    return value


def _coerce_quantity(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    try:
        number = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    if not number.is_finite() or number != number.to_integral_value():
        return None
    return int(number)


def _coerce_money(value: Any) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    if not number.is_finite():
        return None
    return number


def _require_name(name: Any) -> str:
    cleaned = str(name).strip() if name is not None else ""
    if not cleaned:
        log.error("Product name validation failed: %r", name)
        raise ValidationError("Product name is required", field_errors={"name": "Product name is required"})
    return cleaned


def _require_min_stock(min_stock: Any) -> int:
    value = _coerce_quantity(min_stock)
    if value is None or value < 0:
        log.error("Minimum stock validation failed: %s", min_stock)
        raise ValidationError(
            "Minimum stock must be a whole number of zero or more",
            field_errors={"min_stock": "Must be a whole number of zero or more"},
        )
    return value


def _clean_text(value: Any) -> str:
    return str(value).strip() if value is not None else ""


def _movement(
    owner_id: str,
    product_id: str,
    movement_type: MovementType,
    quantity: int,
    *,
    timestamp: datetime,
    reason: Optional[str] = None,
) -> data_manager.StockMovementRow:
    return data_manager.StockMovementRow(
        movement_id=generate_identifier("M"),
        owner_id=owner_id,
        product_id=product_id,
        movement_type=movement_type.value,
        quantity=quantity,
        reason=reason,
        created_at=timestamp.isoformat(),
    )


# ---------------------------------------------------------------------------
# Catalog store
# ---------------------------------------------------------------------------


def list_products(context: RuntimeContext, owner_id: str) -> List[data_manager.ProductRow]:
    """Return the owner's products in sheet order."""
    cache = _ensure_products_cache(context)
    return [product for product in cache["all"] if product.owner_id == owner_id]


def get_product(context: RuntimeContext, owner_id: str, product_id: str) -> data_manager.ProductRow:
    """Resolve one of the owner's products by identifier.

    Raises:
        NotFound: If the product does not exist or belongs to another owner.
    """
    cache = _ensure_products_cache(context)
    product = cache["by_id"].get(product_id)
    if product is None or product.owner_id != owner_id:
        log.warning("Product lookup failed for id '%s' (owner '%s')", product_id, owner_id)
        raise NotFound(f"Unknown product id: {product_id}")
    return product


def find_product_by_name(
    context: RuntimeContext,
    owner_id: str,
    name: str,
    *,
    matcher: ProductMatcher = match_by_name,
) -> Optional[data_manager.ProductRow]:
    """Resolve a product by its natural key, or return ``None``."""
    return matcher(list_products(context, owner_id), name)


def add_product(
    context: RuntimeContext,
    owner_id: str,
    *,
    name: str,
    buy_price: Any,
    sell_price: Any,
    quantity: Any = 0,
    category: str = "",
    brand: str = "",
    sku: str = "",
    barcode: Optional[str] = None,
    min_stock: Any = None,
    timestamp: Optional[datetime] = None,
) -> data_manager.ProductRow:
    """Create a product by hand.

    ``min_stock`` sets the product's own low-stock limit; leaving it out
    defers to the configured threshold. A blank ``barcode`` is stored as
    empty.

    Raises:
        ValidationError: If the name is blank or already used by this owner,
            a price, the quantity or the minimum stock is negative.
        ConflictError: If another writer created the same name first.
    """
    cleaned_name = _require_name(name)
    buy = require_nonnegative_money(buy_price, field_name="buy_price")
    sell = require_nonnegative_money(sell_price, field_name="sell_price")
    initial_quantity = _coerce_quantity(quantity)
    if initial_quantity is None or initial_quantity < 0:
        log.error("Initial quantity validation failed: %s", quantity)
        raise InvalidQuantity(
            "Quantity must be a whole number of zero or more",
            field_errors={"quantity": "Quantity must be a whole number of zero or more"},
        )
    limit = None if min_stock is None else _require_min_stock(min_stock)
    if find_product_by_name(context, owner_id, cleaned_name) is not None:
        log.warning("Rejected duplicate product name '%s' for owner '%s'", cleaned_name, owner_id)
        raise ValidationError(
            f"Product '{cleaned_name}' already exists",
            field_errors={"name": "A product with this name already exists"},
        )

    moment = _resolve_timestamp(timestamp)
    product = data_manager.ProductRow(
        product_id=generate_identifier("P"),
        owner_id=owner_id,
        name=cleaned_name,
        buy_price=buy,
        sell_price=sell,
        quantity=initial_quantity,
        revision=1,
        created_at=moment.isoformat(),
        updated_at=moment.isoformat(),
        category=_clean_text(category),
        brand=_clean_text(brand),
        sku=_clean_text(sku),
        barcode=_clean_text(barcode) or None,
        min_stock=limit,
    )
    batch = data_manager.WriteBatch(owner_id)
    batch.create_product(product)
    if initial_quantity > 0:
        batch.append_movement(
            _movement(owner_id, product.product_id, MovementType.IN, initial_quantity, timestamp=moment, reason="Initial stock")
        )
    _commit(context, batch)
    log.info("Added product '%s' (%s) for owner '%s'", product.name, product.product_id, owner_id)
    return product


def update_product(
    context: RuntimeContext,
    owner_id: str,
    product_id: str,
    *,
    name: Optional[str] = None,
    buy_price: Any = None,
    sell_price: Any = None,
    category: Optional[str] = None,
    brand: Optional[str] = None,
    sku: Optional[str] = None,
    barcode: Optional[str] = None,
    min_stock: Any = None,
    timestamp: Optional[datetime] = None,
) -> data_manager.ProductRow:
    """Edit a product's name, prices or descriptive fields.

    Quantity is changed through movements. Arguments left as ``None`` keep
    their current value; an empty string clears a text field. Carts already
    holding the product keep the prices they captured.

    Raises:
        NotFound: If the product does not exist.
        ValidationError: If a value is invalid or the new name is taken.
    """
    product = get_product(context, owner_id, product_id)
    changes: Dict[str, Any] = {}
    if name is not None:
        cleaned_name = _require_name(name)
        clash = find_product_by_name(context, owner_id, cleaned_name)
        if clash is not None and clash.product_id != product_id:
            raise ValidationError(
                f"Product '{cleaned_name}' already exists",
                field_errors={"name": "A product with this name already exists"},
            )
        changes["name"] = cleaned_name
    if buy_price is not None:
        changes["buy_price"] = require_nonnegative_money(buy_price, field_name="buy_price")
    if sell_price is not None:
        changes["sell_price"] = require_nonnegative_money(sell_price, field_name="sell_price")
    for field_name, value in (("category", category), ("brand", brand), ("sku", sku)):
        if value is not None:
            changes[field_name] = _clean_text(value)
    if barcode is not None:
        changes["barcode"] = _clean_text(barcode) or None
    if min_stock is not None:
        changes["min_stock"] = _require_min_stock(min_stock)
    if not changes:
        return product

    moment = _resolve_timestamp(timestamp)
    updated = replace(product, revision=product.revision + 1, updated_at=moment.isoformat(), **changes)
    batch = data_manager.WriteBatch(owner_id)
    batch.update_product(
        product_id,
        expected_revision=product.revision,
        field_values={
            "Name": updated.name,
            "BuyPrice": updated.buy_price,
            "SellPrice": updated.sell_price,
            "Category": updated.category,
            "Brand": updated.brand,
            "SKU": updated.sku,
            "Barcode": updated.barcode,
            "MinStock": updated.min_stock,
            "UpdatedAt": updated.updated_at,
        },
    )
    _commit(context, batch)
    log.info("Updated product '%s' fields: %s", product_id, ", ".join(sorted(changes)))
    return updated


def adjust_quantity(
    context: RuntimeContext,
    owner_id: str,
    product_id: str,
    delta: Any,
    *,
    movement_type: MovementType = MovementType.ADJUST,
    reason: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> data_manager.ProductRow:
    """Apply a non-sale stock change; the result is ``max(0, quantity + delta)``.

    The movement recorded alongside holds the change actually applied, which
    is smaller than ``delta`` when the clamp engaged.

    Raises:
        NotFound: If the product does not exist.
        InvalidQuantity: If ``delta`` is not a whole number.
    """
    change = _coerce_quantity(delta)
    if change is None:
        log.error("Quantity delta validation failed: %s", delta)
        raise InvalidQuantity("Delta must be a whole number", field_errors={"delta": "Must be a whole number"})
    product = get_product(context, owner_id, product_id)
    new_quantity = max(0, product.quantity + change)
    applied = new_quantity - product.quantity
    if applied == 0:
        log.info("Quantity of product '%s' unchanged (delta=%s)", product_id, change)
        return product

    moment = _resolve_timestamp(timestamp)
    batch = data_manager.WriteBatch(owner_id)
    batch.update_product(
        product_id,
        expected_revision=product.revision,
        field_values={"Quantity": new_quantity, "UpdatedAt": moment.isoformat()},
    )
    batch.append_movement(_movement(owner_id, product_id, movement_type, applied, timestamp=moment, reason=reason))
    _commit(context, batch)
    log.info(
        "Adjusted product '%s' quantity %d -> %d (%s)",
        product_id,
        product.quantity,
        new_quantity,
        movement_type.value,
    )
    return replace(product, quantity=new_quantity, revision=product.revision + 1, updated_at=moment.isoformat())


def add_stock(
    context: RuntimeContext, owner_id: str, product_id: str, amount: Any, *, reason: Optional[str] = None
) -> data_manager.ProductRow:
    """Receive ``amount`` more units of an existing product."""
    quantity = require_positive_quantity(amount)
    return adjust_quantity(context, owner_id, product_id, quantity, movement_type=MovementType.IN, reason=reason)


def remove_stock(
    context: RuntimeContext, owner_id: str, product_id: str, amount: Any, *, reason: Optional[str] = None
) -> data_manager.ProductRow:
    """Take ``amount`` units out of stock outside of a sale, never below zero."""
    quantity = require_positive_quantity(amount)
    return adjust_quantity(context, owner_id, product_id, -quantity, movement_type=MovementType.OUT, reason=reason)


def delete_product(context: RuntimeContext, owner_id: str, product_id: str) -> None:
    """Remove a product from the catalog.

    Raises:
        NotFound: If the product does not exist.
    """
    product = get_product(context, owner_id, product_id)
    batch = data_manager.WriteBatch(owner_id)
    batch.delete_product(product_id, expected_revision=product.revision)
    _commit(context, batch)
    log.info("Deleted product '%s' (%s)", product.name, product_id)


class _CatalogStage:
    """Accumulates quantity changes keyed by natural key before a commit.

    Several rows resolving to the same product fold into one update, so each
    product appears at most once in the resulting batch.
    """

    def __init__(
        self,
        owner_id: str,
        products: Sequence[data_manager.ProductRow],
        matcher: ProductMatcher,
        timestamp: datetime,
    ) -> None:
        self._owner_id = owner_id
        self._view: List[data_manager.ProductRow] = list(products)
        self._matcher = matcher
        self._timestamp = timestamp
        self._touched: "OrderedDict[str, Optional[data_manager.ProductRow]]" = OrderedDict()
        self._movements: List[data_manager.StockMovementRow] = []

    def accumulate(
        self,
        name: str,
        quantity: int,
        *,
        buy_price: Decimal,
        sell_price: Decimal,
        overwrite_prices: bool,
        movement_type: MovementType,
        reason: Optional[str] = None,
    ) -> data_manager.ProductRow:
        stamp = self._timestamp.isoformat()
        existing = self._matcher(self._view, name)
        if existing is None:
            staged = data_manager.ProductRow(
                product_id=generate_identifier("P"),
                owner_id=self._owner_id,
                name=name.strip(),
                buy_price=buy_price,
                sell_price=sell_price,
                quantity=quantity,
                revision=1,
                created_at=stamp,
                updated_at=stamp,
            )
            self._view.append(staged)
            self._touched[staged.product_id] = None
        else:
            changes: Dict[str, Any] = {"quantity": existing.quantity + quantity, "updated_at": stamp}
            if overwrite_prices:
                changes.update(buy_price=buy_price, sell_price=sell_price)
            staged = replace(existing, **changes)
            self._view[self._view.index(existing)] = staged
            self._touched.setdefault(existing.product_id, existing)
        self._movements.append(
            _movement(self._owner_id, staged.product_id, movement_type, quantity, timestamp=self._timestamp, reason=reason)
        )
        return staged

    def stage_into(self, batch: data_manager.WriteBatch) -> List[data_manager.ProductRow]:
        """Record the staged changes on ``batch`` and return the final rows."""
        by_id = {product.product_id: product for product in self._view}
        results: List[data_manager.ProductRow] = []
        for product_id, original in self._touched.items():
            staged = by_id[product_id]
            if original is None:
                batch.create_product(staged)
                results.append(staged)
                continue
            batch.update_product(
                product_id,
                expected_revision=original.revision,
                field_values={
                    "Quantity": staged.quantity,
                    "BuyPrice": staged.buy_price,
                    "SellPrice": staged.sell_price,
                    "UpdatedAt": staged.updated_at,
                },
            )
            results.append(replace(staged, revision=original.revision + 1))
        for movement in self._movements:
            batch.append_movement(movement)
        return results


# ---------------------------------------------------------------------------
# Bulk intake
# ---------------------------------------------------------------------------


def _check_intake_row(row: IntakeRow) -> tuple[Optional[IntakeRow], Dict[str, str]]:
    errors: Dict[str, str] = {}
    name = str(row.name).strip() if row.name is not None else ""
    if not name:
        errors["name"] = "Product name is required"
    quantity = _coerce_quantity(row.quantity)
    if quantity is None:
        errors["quantity"] = "Quantity must be a whole number"
    elif quantity <= 0:
        errors["quantity"] = "Quantity must be greater than zero"
    prices: Dict[str, Decimal] = {}
    for field_name, label in (("buy_price", "Buy price"), ("sell_price", "Sell price")):
        value = _coerce_money(getattr(row, field_name))
        if value is None:
            errors[field_name] = f"{label} is required"
        elif value <= Decimal("0"):
            errors[field_name] = f"{label} must be greater than zero"
        else:
            prices[field_name] = value
    if errors:
        return None, errors
    return IntakeRow(name=name, quantity=quantity, buy_price=prices["buy_price"], sell_price=prices["sell_price"]), errors


def validate_intake_rows(rows: Sequence[IntakeRow]) -> List[Dict[str, str]]:
    """Return one ``{field: message}`` mapping per row; empty means valid."""
    return [_check_intake_row(row)[1] for row in rows]


def _prepare_intake_rows(rows: Sequence[IntakeRow]) -> List[IntakeRow]:
    if not rows:
        log.error("Bulk intake rejected: no rows supplied")
        raise ValidationError("At least one intake row is required", field_errors={"rows": "No rows supplied"})
    normalized: List[IntakeRow] = []
    row_errors: List[Dict[str, str]] = []
    for row in rows:
        clean, errors = _check_intake_row(row)
        row_errors.append(errors)
        if clean is not None:
            normalized.append(clean)
    if any(row_errors):
        failing = [index for index, errors in enumerate(row_errors) if errors]
        log.error("Bulk intake rejected: invalid rows %s", failing)
        raise ValidationError(f"{len(failing)} intake row(s) are invalid", row_errors=row_errors)
    return normalized


def bulk_intake(
    context: RuntimeContext,
    owner_id: str,
    rows: Sequence[IntakeRow],
    *,
    matcher: ProductMatcher = match_by_name,
    timestamp: Optional[datetime] = None,
) -> List[data_manager.ProductRow]:
    """Merge externally supplied rows into the catalog in one atomic batch.

    The whole batch is validated first; a single bad row rejects every row.
    Each row resolves its product by trimmed name: a match accumulates the
    quantity and takes the row's prices, no match creates a new product.

    Returns:
        list[ProductRow]: The created or updated products, one per distinct
            product touched, in first-touched order.

    Raises:
        ValidationError: With ``row_errors`` listing every row's problems.
        ConflictError: If a matched product changed before the commit.
    """
    prepared = _prepare_intake_rows(rows)
    moment = _resolve_timestamp(timestamp)
    stage = _CatalogStage(owner_id, list_products(context, owner_id), matcher, moment)
    for row in prepared:
        stage.accumulate(
            row.name,
            row.quantity,
            buy_price=row.buy_price,
            sell_price=row.sell_price,
            overwrite_prices=True,
            movement_type=MovementType.INTAKE,
            reason="Bulk intake",
        )
    batch = data_manager.WriteBatch(owner_id)
    results = stage.stage_into(batch)
    _commit(context, batch)
    log.info("Bulk intake applied %d row(s) to %d product(s) for owner '%s'", len(prepared), len(results), owner_id)
    return results


def upsert_by_name(
    context: RuntimeContext,
    owner_id: str,
    *,
    name: Any,
    quantity: Any,
    buy_price: Any,
    sell_price: Any,
    matcher: ProductMatcher = match_by_name,
) -> data_manager.ProductRow:
    """Single-row form of :func:`bulk_intake`."""
    return bulk_intake(context, owner_id, [IntakeRow(name, quantity, buy_price, sell_price)], matcher=matcher)[0]


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------


def list_transactions(context: RuntimeContext, owner_id: str) -> List[data_manager.LedgerEntryRow]:
    """Return the owner's ledger entries in the order they were recorded."""
    cache = _ensure_transactions_cache(context)
    return [entry for entry in cache["all"] if entry.owner_id == owner_id]


def get_transaction(context: RuntimeContext, owner_id: str, transaction_id: str) -> data_manager.LedgerEntryRow:
    """Retrieve one ledger entry with its items.

    Raises:
        NotFound: If the entry does not exist or belongs to another owner.
    """
    cache = _ensure_transactions_cache(context)
    entry = cache["by_id"].get(transaction_id)
    if entry is None or entry.owner_id != owner_id:
        log.warning("Transaction lookup failed for id '%s' (owner '%s')", transaction_id, owner_id)
        raise NotFound(f"Unknown transaction id: {transaction_id}")
    return entry


def build_ledger_entry(
    *,
    transaction_id: str,
    owner_id: str,
    buyer_name: str,
    lines: Sequence[SaleLine],
    timestamp: datetime,
) -> data_manager.LedgerEntryRow:
    """Materialize sale lines into an immutable ledger entry.

    Totals use the prices captured on each line, never live catalog prices:
    ``total_amount`` is the sum of ``sell_price * quantity`` and
    ``total_profit`` the sum of ``(sell_price - buy_price) * quantity``.
    """
    items = tuple(
        data_manager.LedgerItemRow(
            transaction_id=transaction_id,
            owner_id=owner_id,
            line_no=index,
            product_id=line.product_id,
            name=line.name,
            quantity=line.quantity,
            buy_price=line.buy_price,
            sell_price=line.sell_price,
        )
        for index, line in enumerate(lines, start=1)
    )
    return data_manager.LedgerEntryRow(
        transaction_id=transaction_id,
        owner_id=owner_id,
        buyer_name=buyer_name,
        total_amount=sum((line.line_amount for line in lines), Decimal("0")),
        total_profit=sum((line.line_profit for line in lines), Decimal("0")),
        created_at=timestamp.isoformat(),
        items=items,
    )


def commit_sale(
    context: RuntimeContext,
    owner_id: str,
    buyer_name: str,
    lines: Sequence[SaleLine],
    *,
    timestamp: Optional[datetime] = None,
) -> data_manager.LedgerEntryRow:
    """Record a sale: decrement stock and append a ledger entry atomically.

    For every product in ``lines`` the current quantity is read and reduced by
    the requested amount. A product driven to zero is deleted (or kept at
    zero under ``ExhaustionPolicy.RETAIN``). The ledger entry, its items, the
    stock changes and their movements are committed as one batch.

    The caller clears its cart after this returns.

    Raises:
        ValidationError: If the buyer name is blank, there are no lines, a
            line quantity is not positive, or a line price is negative.
        NotFound: If a line's product is no longer in the catalog.
        InsufficientStock: If a product holds fewer units than requested.
        ConflictError: If a product changed between the read and the commit.
        StorageError: If the workbook could not be written.
    """
    buyer = (buyer_name or "").strip()
    field_errors: Dict[str, str] = {}
    if not buyer:
        field_errors["buyer_name"] = "Buyer name is required"
    if not lines:
        field_errors["items"] = "The cart is empty"
    normalized: List[SaleLine] = []
    for index, line in enumerate(lines):
        line_quantity = _coerce_quantity(line.quantity)
        if line_quantity is None or line_quantity <= 0:
            field_errors[f"items[{index}].quantity"] = "Quantity must be greater than zero"
        buy = _coerce_money(line.buy_price)
        sell = _coerce_money(line.sell_price)
        if buy is None or buy < 0 or sell is None or sell < 0:
            field_errors[f"items[{index}].price"] = "Prices must be zero or positive"
        normalized.append(replace(line, quantity=line_quantity, buy_price=buy, sell_price=sell))
    if field_errors:
        log.error("Sale rejected for owner '%s': %s", owner_id, field_errors)
        raise ValidationError("Sale is not valid", field_errors=field_errors)

    requested: "OrderedDict[str, int]" = OrderedDict()
    for line in normalized:
        requested[line.product_id] = requested.get(line.product_id, 0) + line.quantity

    moment = _resolve_timestamp(timestamp)
    transaction_id = generate_transaction_id(when=moment)
    policy = context.settings.exhaustion_policy
    batch = data_manager.WriteBatch(owner_id)
    for product_id, quantity in requested.items():
        product = get_product(context, owner_id, product_id)
        if quantity > product.quantity:
            log.warning(
                "Sale rejected: product '%s' has %d unit(s), %d requested",
                product_id,
                product.quantity,
                quantity,
            )
            raise InsufficientStock(product_id, requested=quantity, available=product.quantity)
        new_quantity = product.quantity - quantity
        if new_quantity <= 0 and policy is ExhaustionPolicy.DELETE:
            batch.delete_product(product_id, expected_revision=product.revision)
        else:
            batch.update_product(
                product_id,
                expected_revision=product.revision,
                field_values={"Quantity": max(0, new_quantity), "UpdatedAt": moment.isoformat()},
            )
        batch.append_movement(
            _movement(owner_id, product_id, MovementType.SALE, -quantity, timestamp=moment, reason=transaction_id)
        )

    entry = build_ledger_entry(
        transaction_id=transaction_id,
        owner_id=owner_id,
        buyer_name=buyer,
        lines=normalized,
        timestamp=moment,
    )
    batch.append_transaction(entry)
    _commit(context, batch)
    log.info(
        "Recorded sale '%s' to '%s' (%d line(s), amount=%s, profit=%s)",
        entry.transaction_id,
        buyer,
        len(entry.items),
        entry.total_amount,
        entry.total_profit,
    )
    return entry


def reverse_sale(
    context: RuntimeContext,
    owner_id: str,
    transaction_id: str,
    *,
    matcher: ProductMatcher = match_by_name,
    timestamp: Optional[datetime] = None,
) -> List[data_manager.ProductRow]:
    """Undo a sale: restore its stock and delete its ledger entry atomically.

    Each item is resolved by name. A matching product gets the quantity back;
    otherwise the product is recreated with the item's prices. Because the
    lookup is by name, a different product that now carries the same name
    receives the stock.

    Returns:
        list[ProductRow]: The restored or recreated products.

    Raises:
        NotFound: If the ledger entry does not exist.
        ConflictError: If the entry or a product changed before the commit.
    """
    entry = get_transaction(context, owner_id, transaction_id)
    moment = _resolve_timestamp(timestamp)
    stage = _CatalogStage(owner_id, list_products(context, owner_id), matcher, moment)
    for item in entry.items:
        stage.accumulate(
            item.name,
            item.quantity,
            buy_price=item.buy_price,
            sell_price=item.sell_price,
            overwrite_prices=False,
            movement_type=MovementType.REVERSAL,
            reason=transaction_id,
        )
    batch = data_manager.WriteBatch(owner_id)
    restored = stage.stage_into(batch)
    batch.delete_transaction(transaction_id)
    _commit(context, batch)
    log.info("Reversed sale '%s' restoring %d product(s)", transaction_id, len(restored))
    return restored


# ---------------------------------------------------------------------------
# Movements and reports
# ---------------------------------------------------------------------------


def list_movements(
    context: RuntimeContext, owner_id: str, product_id: Optional[str] = None
) -> List[data_manager.StockMovementRow]:
    """Return the owner's stock movements, optionally for a single product."""
    movements = _ensure_movements_cache(context)["all"]
    return [
        movement
        for movement in movements
        if movement.owner_id == owner_id and (product_id is None or movement.product_id == product_id)
    ]


def calculate_inventory_value(context: RuntimeContext, owner_id: str) -> Decimal:
    """Value on-hand stock at cost: the sum of ``buy_price * quantity``."""
    return sum(
        (product.buy_price * product.quantity for product in list_products(context, owner_id)),
        Decimal("0"),
    )


def calculate_retail_value(context: RuntimeContext, owner_id: str) -> Decimal:
    """Value on-hand stock at selling price: the sum of ``sell_price * quantity``."""
    return sum(
        (product.sell_price * product.quantity for product in list_products(context, owner_id)),
        Decimal("0"),
    )


def stock_status(product: data_manager.ProductRow, default_limit: int) -> str:
    """Classify a product as ``"out"``, ``"low"`` or ``"normal"``.

    The product's own ``min_stock`` wins over ``default_limit``.
    """
    limit = default_limit if product.min_stock is None else product.min_stock
    if product.quantity <= 0:
        return "out"
    if product.quantity <= limit:
        return "low"
    return "normal"


def list_low_stock(
    context: RuntimeContext, owner_id: str, threshold: Optional[int] = None
) -> List[data_manager.ProductRow]:
    """Return products that are running out but not yet at zero.

    Each product is measured against its own ``min_stock``, falling back to
    the configured ``LowStockThreshold``. An explicit ``threshold`` replaces
    both for every product. Sold-out products are reported by
    :func:`list_out_of_stock` instead.
    """
    products = list_products(context, owner_id)
    if threshold is not None:
        return [product for product in products if 0 < product.quantity <= threshold]
    default_limit = context.settings.low_stock_threshold
    return [product for product in products if stock_status(product, default_limit) == "low"]


def list_out_of_stock(context: RuntimeContext, owner_id: str) -> List[data_manager.ProductRow]:
    """Return products kept in the catalog at zero quantity."""
    return [product for product in list_products(context, owner_id) if product.quantity <= 0]


def list_categories(context: RuntimeContext, owner_id: str) -> List[str]:
    """Return the owner's distinct non-empty categories in first-seen order."""
    seen: Dict[str, None] = {}
    for product in list_products(context, owner_id):
        if product.category:
            seen.setdefault(product.category, None)
    return list(seen)


SORT_KEYS: Dict[str, Callable[[data_manager.ProductRow], Any]] = {
    "name": lambda product: product.name.casefold(),
    "stock": lambda product: -product.quantity,
    "price": lambda product: -product.sell_price,
}


def search_products(
    context: RuntimeContext,
    owner_id: str,
    term: str = "",
    *,
    category: Optional[str] = None,
    sort_by: Optional[str] = None,
) -> List[data_manager.ProductRow]:
    """Filter the owner's catalog by free text and category.

    ``term`` matches case-insensitively anywhere in the name, brand or SKU;
    an empty term matches everything. ``category`` must match exactly.
    ``sort_by`` is one of :data:`SORT_KEYS`: names ascending, stock and
    price descending. Without it sheet order is kept.

    Raises:
        ValidationError: If ``sort_by`` is not a known key.
    """
    if sort_by is not None and sort_by not in SORT_KEYS:
        raise ValidationError(
            f"Unknown sort key: {sort_by}",
            field_errors={"sort_by": f"Choose one of: {', '.join(SORT_KEYS)}"},
        )
    needle = (term or "").strip().casefold()
    matches = [
        product
        for product in list_products(context, owner_id)
        if (category is None or product.category == category)
        and (
            not needle
            or any(needle in value.casefold() for value in (product.name, product.brand, product.sku))
        )
    ]
    if sort_by is not None:
        matches.sort(key=SORT_KEYS[sort_by])
    log.debug("Search '%s' (category=%s) for '%s' matched %d product(s)", term, category, owner_id, len(matches))
    return matches


def calculate_inventory_summary(context: RuntimeContext, owner_id: str) -> Dict[str, Any]:
    """Aggregate the owner's catalog into counts and stock values.

    Stock is valued both at cost and at selling price.
    """
    default_limit = context.settings.low_stock_threshold
    products = list_products(context, owner_id)
    statuses = [stock_status(product, default_limit) for product in products]
    return {
        "product_count": len(products),
        "cost_value": calculate_inventory_value(context, owner_id),
        "retail_value": calculate_retail_value(context, owner_id),
        "low_stock_count": statuses.count("low"),
        "out_of_stock_count": statuses.count("out"),
        "categories": list_categories(context, owner_id),
    }


def calculate_sales_summary(context: RuntimeContext, owner_id: str) -> Dict[str, Any]:
    """Aggregate the owner's ledger into count, revenue and profit totals."""
    entries = list_transactions(context, owner_id)
    total_amount = sum((entry.total_amount for entry in entries), Decimal("0"))
    total_profit = sum((entry.total_profit for entry in entries), Decimal("0"))
    log.debug(
        "Calculated sales summary for '%s': count=%d amount=%s profit=%s",
        owner_id,
        len(entries),
        total_amount,
        total_profit,
    )
    return {
        "transaction_count": len(entries),
        "total_amount": total_amount,
        "total_profit": total_profit,
    }
