"""
DTOs -- immutable data structures crossing the kernel service boundary.

Responsibility:
    Inputs to the Ledger Store / Journal Engine / Transactional Poster
    (LedgerOp, JournalLineSpec, PostingContext) and the frozen snapshots
    they return (LedgerEntryInfo, StockBalanceInfo, JournalEntryInfo,
    PeriodInfo, PostingResult).

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.  ``from_model``
    converters exist for the service layer; domain logic never sees ORM
    objects.

Invariants enforced:
    - LedgerOp: qty > 0, unit_cost >= 0 when given, breakdown only on WIP.
    - JournalLineSpec: debit >= 0, credit >= 0, exactly one positive.
    - PostingContext: a trusted context always names a reason.

Failure modes:
    - InvalidLedgerOpError / InvalidJournalLineError / TrustedContextError
      from __post_init__.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import UUID

from apparel_kernel.db.types import to_decimal
from apparel_kernel.domain.values import (
    CostBreakdown,
    Direction,
    LedgerKind,
    PeriodStatus,
    PostingSource,
)
from apparel_kernel.exceptions import (
    InvalidJournalLineError,
    InvalidLedgerOpError,
    TrustedContextError,
)

if TYPE_CHECKING:
    from apparel_kernel.models.journal import JournalEntry as JournalEntryModel
    from apparel_kernel.models.ledger import InventoryLedgerEntry
    from apparel_kernel.models.period import AccountingPeriod


# =============================================================================
# Ledger
# =============================================================================


@dataclass(frozen=True)
class StockKey:
    """Identity of one stock balance.  Orders guards deterministically."""

    scope_id: str
    ledger: LedgerKind
    item_key: str
    location_key: str

    def sort_key(self) -> tuple[str, str, str, str]:
        return (self.scope_id, str(self.ledger.value), self.item_key, self.location_key)

    def __str__(self) -> str:
        return f"{self.scope_id}:{self.ledger.value}:{self.item_key}@{self.location_key}"


@dataclass(frozen=True)
class LedgerOp:
    """
    One requested inventory movement.

    unit_cost may be None on an ``out`` movement: the Ledger Store then
    snapshots the current weighted-average cost at write time.
    """

    ledger: LedgerKind
    item_key: str
    location_key: str
    direction: Direction
    qty: Decimal
    unit_cost: Decimal | None = None
    cost_breakdown: CostBreakdown | None = None
    reversal_of_id: UUID | None = None
    source: PostingSource | None = None

    def __post_init__(self) -> None:
        qty = to_decimal(self.qty)
        object.__setattr__(self, "qty", qty)
        object.__setattr__(self, "ledger", LedgerKind(self.ledger))
        object.__setattr__(self, "direction", Direction(self.direction))
        if qty <= 0:
            raise InvalidLedgerOpError(f"qty must be > 0, got {qty}")
        if self.unit_cost is not None:
            cost = to_decimal(self.unit_cost)
            if cost < 0:
                raise InvalidLedgerOpError(f"unit_cost must be >= 0, got {cost}")
            object.__setattr__(self, "unit_cost", cost)
        elif self.direction == Direction.IN:
            raise InvalidLedgerOpError("unit_cost is required on an in movement")
        if self.cost_breakdown is not None and self.ledger != LedgerKind.WIP:
            raise InvalidLedgerOpError("cost_breakdown is only allowed on the WIP ledger")
        if not self.item_key or not self.location_key:
            raise InvalidLedgerOpError("item_key and location_key are required")

    def stock_key(self, scope_id: str) -> StockKey:
        return StockKey(scope_id, self.ledger, self.item_key, self.location_key)


@dataclass(frozen=True)
class PlannedLedgerEntry:
    """A validated ledger op with its unit cost resolved, not yet written."""

    op: LedgerOp
    unit_cost: Decimal
    balance_before: Decimal
    balance_after: Decimal

    @property
    def value(self) -> Decimal:
        return self.op.qty * self.unit_cost


@dataclass(frozen=True)
class LedgerEntryInfo:
    id: UUID
    scope_id: str
    ledger: LedgerKind
    seq: int
    item_key: str
    location_key: str
    period_id: UUID
    direction: Direction
    qty: Decimal
    unit_cost: Decimal
    cost_breakdown: CostBreakdown | None
    source: PostingSource
    reversal_of_id: UUID | None
    journal_entry_id: UUID | None
    created_at: datetime

    @property
    def value(self) -> Decimal:
        return self.qty * self.unit_cost

    @classmethod
    def from_model(cls, model: InventoryLedgerEntry) -> LedgerEntryInfo:
        breakdown = None
        if model.cost_material is not None:
            breakdown = CostBreakdown(
                material=model.cost_material,
                labor=model.cost_labor or Decimal("0"),
                overhead=model.cost_overhead or Decimal("0"),
            )
        return cls(
            id=model.id,
            scope_id=model.scope_id,
            ledger=LedgerKind(model.ledger),
            seq=model.seq,
            item_key=model.item_key,
            location_key=model.location_key,
            period_id=model.period_id,
            direction=Direction(model.direction),
            qty=model.qty,
            unit_cost=model.unit_cost,
            cost_breakdown=breakdown,
            source=PostingSource(model.source_type, model.source_id, model.source_ref),
            reversal_of_id=model.reversal_of_id,
            journal_entry_id=model.journal_entry_id,
            created_at=model.created_at,
        )


@dataclass(frozen=True)
class StockBalanceInfo:
    """Balance of one stock key: qty, weighted-average unit cost, value."""

    qty: Decimal
    weighted_avg_unit_cost: Decimal
    value: Decimal

    @classmethod
    def empty(cls) -> StockBalanceInfo:
        return cls(qty=Decimal("0"), weighted_avg_unit_cost=Decimal("0"), value=Decimal("0"))


# =============================================================================
# Journal
# =============================================================================


@dataclass(frozen=True)
class JournalLineSpec:
    """
    Requested journal line.

    Use ``JournalLineSpec.dr(...)`` / ``JournalLineSpec.cr(...)`` for readability.
    """

    account_code: str
    debit: Decimal = Decimal("0")
    credit: Decimal = Decimal("0")
    memo: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "debit", to_decimal(self.debit))
        object.__setattr__(self, "credit", to_decimal(self.credit))

    def validate(self, line_no: int) -> None:
        """
        Raises:
            InvalidJournalLineError: on a negative side, both sides set,
                or neither side set.
        """
        if not self.account_code:
            raise InvalidJournalLineError(line_no, "account_code is required")
        if self.debit < 0 or self.credit < 0:
            raise InvalidJournalLineError(line_no, "amounts must be non-negative")
        if (self.debit > 0) == (self.credit > 0):
            raise InvalidJournalLineError(
                line_no, "exactly one of debit or credit must be positive"
            )

    @classmethod
    def dr(cls, account_code: str, amount: Decimal, memo: str | None = None) -> JournalLineSpec:
        return cls(account_code=account_code, debit=amount, memo=memo)

    @classmethod
    def cr(cls, account_code: str, amount: Decimal, memo: str | None = None) -> JournalLineSpec:
        return cls(account_code=account_code, credit=amount, memo=memo)

    def swapped(self) -> JournalLineSpec:
        return JournalLineSpec(
            account_code=self.account_code,
            debit=self.credit,
            credit=self.debit,
            memo=self.memo,
        )


@dataclass(frozen=True)
class JournalLineInfo:
    line_no: int
    account_code: str
    debit: Decimal
    credit: Decimal
    memo: str | None = None


@dataclass(frozen=True)
class JournalEntryInfo:
    id: UUID
    scope_id: str
    seq: int
    journal_number: str
    period_id: UUID
    entry_date: date
    source: PostingSource
    reversal_of_id: UUID | None
    posted_at: datetime
    lines: tuple[JournalLineInfo, ...]

    @property
    def total_debits(self) -> Decimal:
        return sum((line.debit for line in self.lines), Decimal("0"))

    @property
    def total_credits(self) -> Decimal:
        return sum((line.credit for line in self.lines), Decimal("0"))

    @property
    def is_balanced(self) -> bool:
        return self.total_debits == self.total_credits

    @classmethod
    def from_model(cls, model: JournalEntryModel) -> JournalEntryInfo:
        return cls(
            id=model.id,
            scope_id=model.scope_id,
            seq=model.seq,
            journal_number=model.journal_number,
            period_id=model.period_id,
            entry_date=model.entry_date,
            source=PostingSource(model.source_type, model.source_id, model.source_ref),
            reversal_of_id=model.reversal_of_id,
            posted_at=model.posted_at,
            lines=tuple(
                JournalLineInfo(
                    line_no=line.line_no,
                    account_code=line.account_code,
                    debit=line.debit,
                    credit=line.credit,
                    memo=line.memo,
                )
                for line in sorted(model.lines, key=lambda l: l.line_no)
            ),
        )


# =============================================================================
# Periods
# =============================================================================


@dataclass(frozen=True)
class PeriodInfo:
    id: UUID
    scope_id: str
    code: str
    start_date: date
    end_date: date
    status: PeriodStatus
    closed_at: datetime | None = None
    closed_by_id: UUID | None = None
    reopen_count: int = 0

    @property
    def is_open(self) -> bool:
        return self.status == PeriodStatus.OPEN

    def contains_date(self, check_date: date) -> bool:
        return self.start_date <= check_date <= self.end_date

    @classmethod
    def from_model(cls, model: AccountingPeriod) -> PeriodInfo:
        return cls(
            id=model.id,
            scope_id=model.scope_id,
            code=model.code,
            start_date=model.start_date,
            end_date=model.end_date,
            status=PeriodStatus(model.status),
            closed_at=model.closed_at,
            closed_by_id=model.closed_by_id,
            reopen_count=model.reopen_count or 0,
        )


# =============================================================================
# Posting
# =============================================================================


@dataclass(frozen=True)
class PostingContext:
    """
    Who is posting, and whether the administrative path is requested.

    A trusted context may post into a closed period (migrations, audited
    back-dated corrections).  It never skips balance or stock checks.
    """

    actor_id: UUID
    trusted: bool = False
    reason: str | None = None

    def __post_init__(self) -> None:
        if self.trusted and not (self.reason and self.reason.strip()):
            raise TrustedContextError("a trusted context requires a reason")

    @classmethod
    def standard(cls, actor_id: UUID) -> PostingContext:
        return cls(actor_id=actor_id)

    @classmethod
    def trusted_for(cls, actor_id: UUID, reason: str) -> PostingContext:
        return cls(actor_id=actor_id, trusted=True, reason=reason)


@dataclass(frozen=True)
class PostingResult:
    """Outcome of one Transactional Poster unit of work."""

    journal_entry: JournalEntryInfo
    ledger_entries: tuple[LedgerEntryInfo, ...] = field(default_factory=tuple)

    @property
    def journal_entry_id(self) -> UUID:
        return self.journal_entry.id
