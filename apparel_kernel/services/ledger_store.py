"""
LedgerStore -- append-only inventory ledgers and their balance projection.

Responsibility:
    Validates and appends stock movements to the raw material, WIP and
    finished goods ledgers, keeps the ``stock_balances`` projection in step,
    and answers balance queries (qty, weighted-average unit cost, value).

Architecture position:
    Kernel > Services -- flush-only.  The TransactionalPoster drives it in
    two phases (plan, then apply) so that every check happens before the
    first write of the unit of work.

Invariants enforced:
    - qty > 0 and unit_cost >= 0 on every entry (LedgerOp validation).
    - Non-negative stock: an out movement that would take the balance of
      its key below zero is rejected with nothing written.
    - Weighted-average cost: sum(qty * unit_cost) / sum(qty) over the
      in-entries of the key.  A reversal of an in-entry withdraws it from
      the basis; a reversal of an out-entry is not a new in.
    - Entries are never updated or deleted; a correction is a reversal
      entry with the opposite direction and the original unit cost.

Failure modes:
    - InsufficientStockError: projected balance would go negative.
    - InvalidLedgerOpError: a reversal op that does not mirror its original.
    - EntryAlreadyReversedError: second reversal of the same entry.
    - LedgerEntryNotFoundError: unknown entry id.
    - PeriodClosedError / PeriodNotFoundError: standalone append() into a
      period that is not open.
    - ConcurrencyConflictError: append() could not take its stock guard.

Audit relevance:
    balance_from_history() recomputes any key from the immutable entries,
    so the projection can always be verified.
"""

from collections.abc import Sequence
from dataclasses import dataclass
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from apparel_kernel.db.types import round_unit_cost
from apparel_kernel.domain.clock import Clock
from apparel_kernel.domain.dtos import (
    LedgerEntryInfo,
    LedgerOp,
    PlannedLedgerEntry,
    PostingContext,
    StockBalanceInfo,
    StockKey,
)
from apparel_kernel.domain.values import Direction, LedgerKind, PostingSource
from apparel_kernel.exceptions import (
    EntryAlreadyReversedError,
    InsufficientStockError,
    InvalidLedgerOpError,
    LedgerEntryNotFoundError,
    PeriodClosedError,
    PeriodNotFoundError,
)
from apparel_kernel.logging_config import get_logger
from apparel_kernel.models.ledger import InventoryLedgerEntry, StockBalance
from apparel_kernel.models.period import AccountingPeriod
from apparel_kernel.services.base import BaseService
from apparel_kernel.services.sequence_service import SequenceService
from apparel_kernel.services.stock_guard import StockGuard, get_stock_guard, stock_resource

logger = get_logger("services.ledger")

ZERO = Decimal("0")


@dataclass
class _RunningBalance:
    """Balance of one key while a unit of work is being planned."""

    qty: Decimal = ZERO
    in_qty: Decimal = ZERO
    in_value: Decimal = ZERO

    @property
    def weighted_avg_unit_cost(self) -> Decimal:
        if self.in_qty <= 0:
            return ZERO
        return round_unit_cost(self.in_value / self.in_qty)

    def apply(self, direction: Direction, qty: Decimal, unit_cost: Decimal, is_reversal: bool) -> None:
        if direction == Direction.IN:
            self.qty += qty
            if not is_reversal:
                self.in_qty += qty
                self.in_value += round_unit_cost(qty * unit_cost)
        else:
            self.qty -= qty
            if is_reversal:
                # Withdraws a reversed in-entry from the basis
                self.in_qty -= qty
                self.in_value -= round_unit_cost(qty * unit_cost)

    def to_info(self) -> StockBalanceInfo:
        wac = self.weighted_avg_unit_cost
        return StockBalanceInfo(
            qty=self.qty,
            weighted_avg_unit_cost=wac,
            value=self.qty * wac,
        )


class LedgerStore(BaseService):
    """
    The three inventory ledgers.

    Contract:
        ``plan`` validates a batch of ops against the projection plus the
        earlier ops of the same batch and resolves every unit cost.
        ``apply`` writes a planned batch.  ``append`` is both for a single
        op.

    Non-goals:
        - Does NOT commit.
        - Does NOT post journal lines (TransactionalPoster / JournalEngine).
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        guard: StockGuard | None = None,
    ):
        super().__init__(session, clock)
        self._sequence = SequenceService(session)
        self._guard = guard

    # -------------------------------------------------------------------------
    # Projection
    # -------------------------------------------------------------------------

    def _projection(self, key: StockKey, for_update: bool = False) -> StockBalance | None:
        stmt = select(StockBalance).where(
            StockBalance.scope_id == key.scope_id,
            StockBalance.ledger == key.ledger.value,
            StockBalance.item_key == key.item_key,
            StockBalance.location_key == key.location_key,
        )
        if for_update:
            stmt = stmt.with_for_update()
        return self.session.execute(
            stmt.execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def lock_projections(self, keys: Sequence[StockKey]) -> None:
        """Row-lock the projection rows of ``keys`` in sorted order."""
        for key in sorted(set(keys), key=StockKey.sort_key):
            self._projection(key, for_update=True)

    def _running_from_projection(self, key: StockKey) -> _RunningBalance:
        row = self._projection(key)
        if row is None:
            return _RunningBalance()
        return _RunningBalance(
            qty=row.qty, in_qty=row.in_qty_basis, in_value=row.in_value_basis,
        )

    def balance(
        self,
        scope_id: str,
        ledger: LedgerKind,
        item_key: str,
        location_key: str,
    ) -> StockBalanceInfo:
        """Current balance of one key from the projection."""
        key = StockKey(scope_id, LedgerKind(ledger), item_key, location_key)
        return self._running_from_projection(key).to_info()

    def balances_for_item(
        self, scope_id: str, ledger: LedgerKind, item_key: str,
    ) -> dict[str, StockBalanceInfo]:
        """Balance per location for one item."""
        rows = self.session.execute(
            select(StockBalance).where(
                StockBalance.scope_id == scope_id,
                StockBalance.ledger == LedgerKind(ledger).value,
                StockBalance.item_key == item_key,
            )
        ).scalars().all()
        return {
            row.location_key: _RunningBalance(
                row.qty, row.in_qty_basis, row.in_value_basis,
            ).to_info()
            for row in sorted(rows, key=lambda r: r.location_key)
        }

    def total_on_hand(self, scope_id: str, ledger: LedgerKind, item_key: str) -> Decimal:
        return sum(
            (info.qty for info in self.balances_for_item(scope_id, ledger, item_key).values()),
            ZERO,
        )

    def balance_from_history(
        self,
        scope_id: str,
        ledger: LedgerKind,
        item_key: str,
        location_key: str,
    ) -> StockBalanceInfo:
        """Recompute a balance from the raw entries, ignoring the projection."""
        entries = self.session.execute(
            select(InventoryLedgerEntry)
            .where(
                InventoryLedgerEntry.scope_id == scope_id,
                InventoryLedgerEntry.ledger == LedgerKind(ledger).value,
                InventoryLedgerEntry.item_key == item_key,
                InventoryLedgerEntry.location_key == location_key,
            )
            .order_by(InventoryLedgerEntry.seq)
        ).scalars().all()

        running = _RunningBalance()
        for entry in entries:
            running.apply(
                Direction(entry.direction),
                entry.qty,
                entry.unit_cost,
                is_reversal=entry.reversal_of_id is not None,
            )
        return running.to_info()

    # -------------------------------------------------------------------------
    # Two-phase write
    # -------------------------------------------------------------------------

    def plan(self, scope_id: str, ops: Sequence[LedgerOp]) -> list[PlannedLedgerEntry]:
        """
        Validate ``ops`` in order and resolve their unit costs.

        An out op without unit_cost takes the weighted-average cost of its
        key at that point of the batch.  Nothing is written.

        Raises:
            InsufficientStockError: an out op exceeds the running balance.
            InvalidLedgerOpError: a reversal op does not mirror its original.
            EntryAlreadyReversedError: the original is already reversed.
        """
        running: dict[StockKey, _RunningBalance] = {}
        reversed_in_batch: set[UUID] = set()
        planned: list[PlannedLedgerEntry] = []

        for op in ops:
            key = op.stock_key(scope_id)
            if key not in running:
                running[key] = self._running_from_projection(key)
            bal = running[key]

            is_reversal = op.reversal_of_id is not None
            if is_reversal:
                if op.reversal_of_id in reversed_in_batch:
                    raise EntryAlreadyReversedError(str(op.reversal_of_id), "this transaction")
                self._check_reversal_op(scope_id, op)
                reversed_in_batch.add(op.reversal_of_id)

            if op.unit_cost is not None:
                unit_cost = round_unit_cost(op.unit_cost)
            else:
                unit_cost = bal.weighted_avg_unit_cost

            before = bal.qty
            if op.direction == Direction.OUT and before - op.qty < 0:
                logger.warning(
                    "stock_insufficient",
                    extra={
                        "scope_id": scope_id,
                        "ledger": key.ledger.value,
                        "item_key": key.item_key,
                        "location_key": key.location_key,
                        "available": str(before),
                        "requested": str(op.qty),
                    },
                )
                raise InsufficientStockError(
                    key.ledger.value, key.item_key, key.location_key, before, op.qty,
                )

            bal.apply(op.direction, op.qty, unit_cost, is_reversal)
            planned.append(
                PlannedLedgerEntry(
                    op=op, unit_cost=unit_cost,
                    balance_before=before, balance_after=bal.qty,
                )
            )

        return planned

    def _check_reversal_op(self, scope_id: str, op: LedgerOp) -> None:
        original = self._get_entry_orm(scope_id, op.reversal_of_id)
        if original is None:
            raise LedgerEntryNotFoundError(str(op.reversal_of_id))
        existing = self._reversal_of(scope_id, original.id)
        if existing is not None:
            raise EntryAlreadyReversedError(str(original.id), str(existing.id))
        mirrors = (
            original.ledger == op.ledger.value
            and original.item_key == op.item_key
            and original.location_key == op.location_key
            and Direction(original.direction).flipped() == op.direction
            and original.qty == op.qty
        )
        if not mirrors:
            raise InvalidLedgerOpError(
                f"reversal must mirror entry {original.id} with the opposite direction"
            )

    def apply(
        self,
        scope_id: str,
        period_id: UUID,
        planned: Sequence[PlannedLedgerEntry],
        source: PostingSource,
        actor_id: UUID,
        journal_entry_id: UUID | None = None,
    ) -> list[LedgerEntryInfo]:
        """
        Write a planned batch and advance the projection.  Flushes.

        ``source`` applies to every op that does not carry its own.
        """
        written: list[InventoryLedgerEntry] = []
        now = self.clock.now()

        for item in planned:
            op = item.op
            op_source = op.source or source
            breakdown = op.cost_breakdown

            entry = InventoryLedgerEntry(
                scope_id=scope_id,
                ledger=op.ledger.value,
                seq=self._sequence.next_value(SequenceService.LEDGER_ENTRY),
                item_key=op.item_key,
                location_key=op.location_key,
                period_id=period_id,
                direction=op.direction.value,
                qty=op.qty,
                unit_cost=item.unit_cost,
                cost_material=breakdown.material if breakdown else None,
                cost_labor=breakdown.labor if breakdown else None,
                cost_overhead=breakdown.overhead if breakdown else None,
                source_type=op_source.source_type,
                source_id=op_source.source_id,
                source_ref=op_source.source_ref,
                reversal_of_id=op.reversal_of_id,
                journal_entry_id=journal_entry_id,
                created_at=now,
                created_by_id=actor_id,
            )
            self._advance_projection(entry)
            self.session.add(entry)
            self.session.flush()
            written.append(entry)

        self.session.flush()

        for entry in written:
            logger.info(
                "ledger_entry_appended",
                extra={
                    "scope_id": scope_id,
                    "ledger": entry.ledger,
                    "item_key": entry.item_key,
                    "location_key": entry.location_key,
                    "direction": entry.direction,
                    "qty": str(entry.qty),
                    "unit_cost": str(entry.unit_cost),
                    "seq": entry.seq,
                },
            )

        return [LedgerEntryInfo.from_model(entry) for entry in written]

    def _advance_projection(self, entry: InventoryLedgerEntry) -> None:
        key = StockKey(entry.scope_id, LedgerKind(entry.ledger), entry.item_key, entry.location_key)
        row = self._projection(key, for_update=True)
        if row is None:
            row = StockBalance(
                scope_id=key.scope_id,
                ledger=key.ledger.value,
                item_key=key.item_key,
                location_key=key.location_key,
                qty=ZERO,
                in_qty_basis=ZERO,
                in_value_basis=ZERO,
                last_entry_seq=0,
            )
            self.session.add(row)

        running = _RunningBalance(row.qty, row.in_qty_basis, row.in_value_basis)
        running.apply(
            Direction(entry.direction),
            entry.qty,
            entry.unit_cost,
            is_reversal=entry.reversal_of_id is not None,
        )
        # The plan may predate a write another session committed since
        if running.qty < 0:
            logger.warning(
                "stock_insufficient_at_write",
                extra={
                    "scope_id": key.scope_id,
                    "ledger": key.ledger.value,
                    "item_key": key.item_key,
                    "location_key": key.location_key,
                    "available": str(row.qty),
                    "requested": str(entry.qty),
                },
            )
            raise InsufficientStockError(
                key.ledger.value, key.item_key, key.location_key, row.qty, entry.qty,
            )
        row.qty = running.qty
        row.in_qty_basis = running.in_qty
        row.in_value_basis = running.in_value
        row.last_entry_seq = entry.seq

    def append(
        self,
        scope_id: str,
        period_id: UUID,
        op: LedgerOp,
        source: PostingSource,
        actor_id: UUID,
        context: PostingContext | None = None,
    ) -> LedgerEntryInfo:
        """
        Validate and write one movement without a journal entry.

        The key's stock guard and the period gate are held across the check
        and the write; the caller commits.  A writer that slipped in between
        this check and its own commit is caught by the re-check at write time.

        Raises:
            PeriodNotFoundError / PeriodClosedError: period not open.
            InsufficientStockError: balance would go negative.
            ConcurrencyConflictError: guard timeout.
        """
        key = op.stock_key(scope_id)
        guard = self._guard or get_stock_guard()
        with guard.hold([stock_resource(key)]), \
                guard.posting_gate(scope_id, str(period_id)):
            self._require_period_open(scope_id, period_id, context)
            self.lock_projections([key])
            planned = self.plan(scope_id, [op])
            return self.apply(scope_id, period_id, planned, source, actor_id)[0]

    def _require_period_open(
        self, scope_id: str, period_id: UUID, context: PostingContext | None,
    ) -> None:
        period = self.session.execute(
            select(AccountingPeriod).where(
                AccountingPeriod.scope_id == scope_id,
                AccountingPeriod.id == period_id,
            )
        ).scalar_one_or_none()
        if period is None:
            raise PeriodNotFoundError(str(period_id))
        if not period.is_open and not (context and context.trusted):
            raise PeriodClosedError(period.code)

    # -------------------------------------------------------------------------
    # Reversal and reads
    # -------------------------------------------------------------------------

    def _get_entry_orm(self, scope_id: str, entry_id: UUID) -> InventoryLedgerEntry | None:
        return self.session.execute(
            select(InventoryLedgerEntry).where(
                InventoryLedgerEntry.scope_id == scope_id,
                InventoryLedgerEntry.id == entry_id,
            )
        ).scalar_one_or_none()

    def _reversal_of(self, scope_id: str, entry_id: UUID) -> InventoryLedgerEntry | None:
        return self.session.execute(
            select(InventoryLedgerEntry).where(
                InventoryLedgerEntry.scope_id == scope_id,
                InventoryLedgerEntry.reversal_of_id == entry_id,
            )
        ).scalar_one_or_none()

    def get_entry(self, scope_id: str, entry_id: UUID) -> LedgerEntryInfo:
        entry = self._get_entry_orm(scope_id, entry_id)
        if entry is None:
            raise LedgerEntryNotFoundError(str(entry_id))
        return LedgerEntryInfo.from_model(entry)

    def build_reversal(self, scope_id: str, entry_id: UUID) -> LedgerOp:
        """
        The op that reverses ``entry_id``: same key and qty, opposite
        direction, original unit cost and breakdown.

        Raises:
            LedgerEntryNotFoundError: unknown entry.
            EntryAlreadyReversedError: a reversal already exists.
        """
        entry = self._get_entry_orm(scope_id, entry_id)
        if entry is None:
            raise LedgerEntryNotFoundError(str(entry_id))
        existing = self._reversal_of(scope_id, entry.id)
        if existing is not None:
            raise EntryAlreadyReversedError(str(entry.id), str(existing.id))

        info = LedgerEntryInfo.from_model(entry)
        return LedgerOp(
            ledger=info.ledger,
            item_key=info.item_key,
            location_key=info.location_key,
            direction=info.direction.flipped(),
            qty=info.qty,
            unit_cost=info.unit_cost,
            cost_breakdown=info.cost_breakdown,
            reversal_of_id=info.id,
            source=PostingSource(PostingSource.REVERSAL, str(info.id), info.source.source_ref),
        )

    def entries_for_journal(self, scope_id: str, journal_entry_id: UUID) -> list[LedgerEntryInfo]:
        entries = self.session.execute(
            select(InventoryLedgerEntry)
            .where(
                InventoryLedgerEntry.scope_id == scope_id,
                InventoryLedgerEntry.journal_entry_id == journal_entry_id,
            )
            .order_by(InventoryLedgerEntry.seq)
        ).scalars().all()
        return [LedgerEntryInfo.from_model(e) for e in entries]

    def entries_for_key(
        self, scope_id: str, ledger: LedgerKind, item_key: str, location_key: str,
    ) -> list[LedgerEntryInfo]:
        entries = self.session.execute(
            select(InventoryLedgerEntry)
            .where(
                InventoryLedgerEntry.scope_id == scope_id,
                InventoryLedgerEntry.ledger == LedgerKind(ledger).value,
                InventoryLedgerEntry.item_key == item_key,
                InventoryLedgerEntry.location_key == location_key,
            )
            .order_by(InventoryLedgerEntry.seq)
        ).scalars().all()
        return [LedgerEntryInfo.from_model(e) for e in entries]
