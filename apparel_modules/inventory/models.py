"""
Inventory Domain Models.

Frozen results of the inventory workflows: where a purchase receipt
stands against its order, and what a stock count changed.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from apparel_kernel.domain.dtos import PostingResult
from apparel_kernel.domain.values import Direction, LedgerKind

# Source types written on the journal and ledger entries of each workflow
PURCHASE_RECEIPT = "purchase_receipt"
SALE_DELIVERY = "sale_delivery"
COGS_RECOGNITION = "cogs_recognition"
STOCK_ADJUSTMENT = "stock_adjustment"
INTERNAL_TRANSFER = "internal_transfer"


@dataclass(frozen=True)
class ReceiptStatus:
    """Received quantity of one item of a purchase, net of reversals."""

    purchase_ref: str
    item_key: str
    ordered_qty: Decimal
    received_qty: Decimal
    limit_qty: Decimal  # ordered plus tolerance

    @property
    def remaining(self) -> Decimal:
        return max(self.limit_qty - self.received_qty, Decimal("0"))


@dataclass(frozen=True)
class StockAdjustment:
    ledger: LedgerKind
    item_key: str
    location_key: str
    book_qty: Decimal
    counted_qty: Decimal
    posting: PostingResult | None  # None when the count matched the books

    @property
    def difference(self) -> Decimal:
        return self.counted_qty - self.book_qty

    @property
    def direction(self) -> Direction | None:
        if self.difference > 0:
            return Direction.IN
        if self.difference < 0:
            return Direction.OUT
        return None
