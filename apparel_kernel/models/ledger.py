"""
Module: apparel_kernel.models.ledger
Responsibility: ORM persistence for the three inventory ledgers (raw
    material, work-in-progress, finished goods) and their balance projection.
Architecture position: Kernel > Models.  May import from db/ and domain/values.py only.

Invariants enforced:
    - One table, three logical ledgers discriminated by ``ledger``.
    - Ledger entries are append-only: ORM listeners in db/immutability.py
      reject every UPDATE and DELETE.
    - qty > 0 and unit_cost >= 0 are validated by the LedgerStore before
      INSERT.
    - seq is globally unique and monotonic (SequenceService), giving a
      deterministic replay order.
    - StockBalance is a projection, updated incrementally in the same
      transaction as the entry it reflects.  It is the only mutable row here.

Audit relevance:
    Balance = sum(qty in) - sum(qty out) over the entries of a key is always
    recomputable from the entries alone (LedgerStore.balance_from_history),
    so the projection can be verified against the immutable history.
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from apparel_kernel.db.base import Base, UUIDString
from apparel_kernel.domain.values import Direction, LedgerKind


class InventoryLedgerEntry(Base):
    """
    One immutable stock movement.

    Guarantees:
        - Never updated or deleted after INSERT.
        - cost_material / cost_labor / cost_overhead are set only on the WIP
          ledger and sum to qty * unit_cost (rounded) when present.
        - A correction is a new row with the opposite direction,
          source_type = "reversal" and reversal_of_id pointing here.
    """

    __tablename__ = "inventory_ledger_entries"

    __table_args__ = (
        UniqueConstraint("seq", name="uq_ledger_entry_seq"),
        UniqueConstraint("reversal_of_id", name="uq_ledger_entry_reversal_of"),
        Index(
            "idx_ledger_key",
            "scope_id", "ledger", "item_key", "location_key",
        ),
        Index("idx_ledger_period", "scope_id", "period_id"),
        Index("idx_ledger_journal", "journal_entry_id"),
        CheckConstraint("direction IN ('in', 'out')", name="ck_ledger_direction"),
    )

    scope_id: Mapped[str] = mapped_column(String(64), nullable=False)

    ledger: Mapped[LedgerKind] = mapped_column(String(20), nullable=False)

    seq: Mapped[int] = mapped_column(BigInteger, nullable=False)

    item_key: Mapped[str] = mapped_column(String(100), nullable=False)

    location_key: Mapped[str] = mapped_column(String(100), nullable=False)

    period_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("accounting_periods.id"),
        nullable=False,
    )

    direction: Mapped[Direction] = mapped_column(String(3), nullable=False)

    qty: Mapped[Decimal] = mapped_column(nullable=False)

    unit_cost: Mapped[Decimal] = mapped_column(nullable=False)

    # WIP only
    cost_material: Mapped[Decimal | None] = mapped_column(nullable=True)
    cost_labor: Mapped[Decimal | None] = mapped_column(nullable=True)
    cost_overhead: Mapped[Decimal | None] = mapped_column(nullable=True)

    source_type: Mapped[str] = mapped_column(String(50), nullable=False)

    source_id: Mapped[str] = mapped_column(String(100), nullable=False)

    source_ref: Mapped[str | None] = mapped_column(String(200), nullable=True)

    reversal_of_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("inventory_ledger_entries.id"),
        nullable=True,
    )

    # The journal entry posted in the same unit of work
    journal_entry_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("journal_entries.id"),
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )

    created_by_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    def __repr__(self) -> str:
        return (
            f"<InventoryLedgerEntry #{self.seq} {self.ledger}:{self.item_key}"
            f"@{self.location_key} {self.direction} {self.qty}>"
        )

    @property
    def signed_qty(self) -> Decimal:
        return self.qty if self.direction == Direction.IN else -self.qty

    @property
    def value(self) -> Decimal:
        return self.qty * self.unit_cost


class StockBalance(Base):
    """
    Incremental balance projection for one (scope, ledger, item, location).

    in_qty_basis / in_value_basis hold the weighted-average basis:
    sum of qty and qty * unit_cost over in-entries, net of reversed ins.
    """

    __tablename__ = "stock_balances"

    __table_args__ = (
        UniqueConstraint(
            "scope_id", "ledger", "item_key", "location_key",
            name="uq_stock_balance_key",
        ),
    )

    scope_id: Mapped[str] = mapped_column(String(64), nullable=False)

    ledger: Mapped[LedgerKind] = mapped_column(String(20), nullable=False)

    item_key: Mapped[str] = mapped_column(String(100), nullable=False)

    location_key: Mapped[str] = mapped_column(String(100), nullable=False)

    qty: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))

    in_qty_basis: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))

    in_value_basis: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))

    last_entry_seq: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    def __repr__(self) -> str:
        return (
            f"<StockBalance {self.ledger}:{self.item_key}@{self.location_key} "
            f"qty={self.qty}>"
        )
