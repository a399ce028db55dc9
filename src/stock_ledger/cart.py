"""Session-scoped shopping cart for the stock ledger.

The cart lives in memory only. It reads the catalog to validate availability
but never writes to it; stock changes happen in
:func:`stock_ledger.core_logic.commit_sale`.
"""

from __future__ import annotations

from dataclasses import replace
from decimal import Decimal
from typing import Any, List, Optional

from . import core_logic, data_manager, log


CartLine = core_logic.SaleLine


class Cart:
    """Ordered collection of pending sale lines for one owner.

    Each line snapshots the product's name and prices at the moment it was
    first added. Later catalog price edits do not reach a line until it is
    removed and added again.
    """

    def __init__(self, owner_id: str) -> None:
        self.owner_id = owner_id
        self._lines: List[CartLine] = []

    def __len__(self) -> int:
        return len(self._lines)

    @property
    def is_empty(self) -> bool:
        return not self._lines

    def lines(self) -> tuple[CartLine, ...]:
        return tuple(self._lines)

    def get(self, product_id: str) -> Optional[CartLine]:
        for line in self._lines:
            if line.product_id == product_id:
                return line
        return None

    def add_or_merge(self, context: core_logic.RuntimeContext, product_id: str, quantity: Any) -> CartLine:
        """Add ``quantity`` units of a product, merging with an existing line.

        The catalog quantity is read at call time. The request fails when the
        units already in the cart plus ``quantity`` exceed it; the cart is left
        unchanged on any failure.

        Raises:
            InvalidQuantity: If ``quantity`` is not a whole number above zero.
            NotFound: If the product is not in the catalog.
            InsufficientStock: If the catalog holds too few units.
        """
        amount = core_logic.require_positive_quantity(quantity)
        product = core_logic.get_product(context, self.owner_id, product_id)
        existing = self.get(product_id)
        held = existing.quantity if existing is not None else 0
        if held + amount > product.quantity:
            log.warning(
                "Cart add rejected for product '%s': %d held + %d requested > %d in stock",
                product_id,
                held,
                amount,
                product.quantity,
            )
            raise core_logic.InsufficientStock(product_id, requested=held + amount, available=product.quantity)

        if existing is not None:
            merged = replace(existing, quantity=held + amount)
            self._lines[self._lines.index(existing)] = merged
            return merged

        line = _snapshot(product, amount)
        self._lines.append(line)
        return line

    def remove(self, product_id: str) -> None:
        self._lines = [line for line in self._lines if line.product_id != product_id]

    def clear(self) -> None:
        self._lines.clear()

    def total_amount(self) -> Decimal:
        return sum((line.line_amount for line in self._lines), Decimal("0"))

    def total_profit(self) -> Decimal:
        return sum((line.line_profit for line in self._lines), Decimal("0"))

    def checkout(self, context: core_logic.RuntimeContext, buyer_name: str) -> data_manager.LedgerEntryRow:
        """Commit the cart as a sale and empty it once the commit succeeded."""
        entry = core_logic.commit_sale(context, self.owner_id, buyer_name, self.lines())
        self.clear()
        return entry


def _snapshot(product: data_manager.ProductRow, quantity: int) -> CartLine:
    return CartLine(
        product_id=product.product_id,
        name=product.name,
        buy_price=product.buy_price,
        sell_price=product.sell_price,
        quantity=quantity,
    )
