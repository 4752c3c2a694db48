"""
Inventory Module Service (``apparel_modules.inventory.service``).

Responsibility
--------------
Purchase receipts, sale deliveries, internal transfers and stock count
adjustments, each posted as ledger entries plus one journal entry through
the ``TransactionalPoster``.

Architecture
------------
Layer: **Modules** -- thin glue.  Picks accounts from the configured
``AccountMapping``, builds ledger ops and journal lines, and lets the
poster do every check and write.

Invariants
----------
- Receipts of one purchase are serialized; the received quantity used by
  the over-receipt check is read under that guard.
- Issue values come from the weighted-average cost the ledger snapshots
  (the journal lines are built from the planned entries).
- Deferred COGS of a sale is recognized at most once.
- A transfer moves stock between locations at the source's average cost;
  both legs post together or not at all.

Failure Modes
-------------
- OverReceiptError, CogsAlreadyRecognizedError, plus everything the
  poster raises, with the session rolled back.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session, aliased

from apparel_config.schema import AccountRole, LedgerConfig
from apparel_kernel.db.types import round_money, to_decimal
from apparel_kernel.domain.clock import Clock, SystemClock
from apparel_kernel.domain.dtos import (
    JournalEntryInfo,
    JournalLineSpec,
    LedgerOp,
    PlannedLedgerEntry,
    PostingResult,
    StockKey,
)
from apparel_kernel.domain.values import CogsRecognition, Direction, LedgerKind, PostingSource
from apparel_kernel.exceptions import CogsAlreadyRecognizedError, OverReceiptError
from apparel_kernel.logging_config import get_logger
from apparel_kernel.models.ledger import InventoryLedgerEntry
from apparel_kernel.services.stock_guard import StockGuard
from apparel_kernel.services.transactional_poster import TransactionalPoster
from apparel_modules.inventory.models import (
    COGS_RECOGNITION,
    INTERNAL_TRANSFER,
    PURCHASE_RECEIPT,
    SALE_DELIVERY,
    STOCK_ADJUSTMENT,
    ReceiptStatus,
    StockAdjustment,
)

logger = get_logger("modules.inventory.service")

ZERO = Decimal("0")
HUNDRED = Decimal("100")

_STOCKED_LEDGERS = (LedgerKind.RAW, LedgerKind.FINISHED)


def _stocked(ledger: LedgerKind) -> LedgerKind:
    ledger = LedgerKind(ledger)
    if ledger not in _STOCKED_LEDGERS:
        raise ValueError(f"ledger must be raw or finished, got {ledger.value}")
    return ledger


class InventoryService:
    """
    Receipts, sales and counts.

    Every posting method commits through the poster or raises with the
    session rolled back.
    """

    def __init__(
        self,
        session: Session,
        config: LedgerConfig,
        clock: Clock | None = None,
        guard: StockGuard | None = None,
    ):
        self.session = session
        self._clock = clock or SystemClock()
        self._accounts = config.accounts
        self._tolerance = config.policy.receipt_tolerance_percent
        self._poster = TransactionalPoster(session, self._clock, guard)
        self._ledger = self._poster.ledger
        self._journal = self._poster.journal

    # -------------------------------------------------------------------------
    # Purchase receipts
    # -------------------------------------------------------------------------

    def _received_qty(self, scope_id: str, purchase_ref: str, item_key: str) -> Decimal:
        reversal = aliased(InventoryLedgerEntry)
        reversed_ids = select(reversal.reversal_of_id).where(reversal.reversal_of_id.is_not(None))
        rows = self.session.execute(
            select(InventoryLedgerEntry.qty).where(
                InventoryLedgerEntry.scope_id == scope_id,
                InventoryLedgerEntry.source_type == PURCHASE_RECEIPT,
                InventoryLedgerEntry.source_id == purchase_ref,
                InventoryLedgerEntry.item_key == item_key,
                InventoryLedgerEntry.direction == Direction.IN.value,
                InventoryLedgerEntry.id.not_in(reversed_ids),
            )
        ).scalars().all()
        # Summed in Python: PortableDecimal is a string column on SQLite
        return sum(rows, ZERO)

    def receipt_status(
        self, scope_id: str, purchase_ref: str, item_key: str, ordered_qty: Decimal,
    ) -> ReceiptStatus:
        ordered_qty = to_decimal(ordered_qty)
        return ReceiptStatus(
            purchase_ref=purchase_ref,
            item_key=item_key,
            ordered_qty=ordered_qty,
            received_qty=self._received_qty(scope_id, purchase_ref, item_key),
            limit_qty=ordered_qty * (1 + self._tolerance / HUNDRED),
        )

    def receive_purchase(
        self,
        scope_id: str,
        purchase_ref: str,
        item_key: str,
        location_key: str,
        qty: Decimal,
        unit_cost: Decimal,
        ordered_qty: Decimal,
        period_id: UUID,
        entry_date: date,
        actor_id: UUID,
        ledger: LedgerKind = LedgerKind.RAW,
    ) -> PostingResult:
        """
        Receive purchased stock at its purchase cost.

        Dr inventory (raw or finished) / Cr goods received not invoiced.

        Raises:
            OverReceiptError: received so far + ``qty`` exceeds the ordered
                quantity plus the configured tolerance.
        """
        ledger = _stocked(ledger)
        qty = to_decimal(qty)
        unit_cost = to_decimal(unit_cost)

        with self._poster.hold(scope_id, resources=[f"purchase:{purchase_ref}"]):
            status = self.receipt_status(scope_id, purchase_ref, item_key, ordered_qty)
            if status.received_qty + qty > status.limit_qty:
                logger.warning(
                    "over_receipt_rejected",
                    extra={
                        "purchase_ref": purchase_ref,
                        "item_key": item_key,
                        "ordered_qty": str(status.ordered_qty),
                        "received_qty": str(status.received_qty),
                        "requested": str(qty),
                    },
                )
                raise OverReceiptError(item_key, status.ordered_qty, status.received_qty, qty)

            value = round_money(qty * unit_cost)
            result = self._poster.post_transaction(
                scope_id=scope_id,
                period_id=period_id,
                entry_date=entry_date,
                ledger_ops=[LedgerOp(ledger, item_key, location_key, Direction.IN, qty, unit_cost=unit_cost)],
                journal_lines=[
                    JournalLineSpec.dr(self._accounts.inventory(ledger), value, f"{item_key} x {qty}"),
                    JournalLineSpec.cr(
                        self._accounts.code(AccountRole.ACCOUNTS_PAYABLE_ACCRUED), value, purchase_ref,
                    ),
                ],
                source=PostingSource(PURCHASE_RECEIPT, purchase_ref, purchase_ref),
                actor_id=actor_id,
                memo=f"Purchase receipt {purchase_ref}",
            )

        logger.info(
            "purchase_received",
            extra={
                "purchase_ref": purchase_ref,
                "item_key": item_key,
                "qty": str(qty),
                "value": str(value),
            },
        )
        return result

    # -------------------------------------------------------------------------
    # Sales
    # -------------------------------------------------------------------------

    def issue_sale(
        self,
        scope_id: str,
        sale_ref: str,
        item_key: str,
        location_key: str,
        qty: Decimal,
        period_id: UUID,
        entry_date: date,
        actor_id: UUID,
        recognition: CogsRecognition = CogsRecognition.AT_DELIVERY,
    ) -> PostingResult:
        """
        Deliver finished goods at their weighted-average cost.

        AT_DELIVERY: Dr COGS / Cr finished goods.
        AT_INVOICE: Dr deferred COGS / Cr finished goods; see
        ``recognize_deferred_cogs``.

        Raises:
            InsufficientStockError: not enough finished goods.
        """
        recognition = CogsRecognition(recognition)
        debit_role = (
            AccountRole.COST_OF_GOODS_SOLD
            if recognition == CogsRecognition.AT_DELIVERY
            else AccountRole.DEFERRED_COGS
        )
        fg_account = self._accounts.inventory(LedgerKind.FINISHED)
        debit_account = self._accounts.code(debit_role)

        def lines(planned: Sequence[PlannedLedgerEntry]) -> list[JournalLineSpec]:
            value = round_money(sum((p.value for p in planned), ZERO))
            return [
                JournalLineSpec.dr(debit_account, value, sale_ref),
                JournalLineSpec.cr(fg_account, value, f"{item_key} x {qty}"),
            ]

        with self._poster.hold(scope_id, resources=[f"sale:{sale_ref}"]):
            result = self._poster.post_transaction(
                scope_id=scope_id,
                period_id=period_id,
                entry_date=entry_date,
                ledger_ops=[LedgerOp(LedgerKind.FINISHED, item_key, location_key, Direction.OUT, qty)],
                journal_lines=lines,
                source=PostingSource(SALE_DELIVERY, sale_ref, sale_ref),
                actor_id=actor_id,
                memo=f"Sale delivery {sale_ref}",
            )

        logger.info(
            "sale_issued",
            extra={
                "sale_ref": sale_ref,
                "item_key": item_key,
                "qty": str(qty),
                "recognition": recognition.value,
                "cogs_value": str(result.journal_entry.total_debits),
            },
        )
        return result

    def _live_entries(self, scope_id: str, source_type: str, source_id: str) -> list[JournalEntryInfo]:
        """Entries of a source that have not been reversed."""
        return [
            e for e in self._journal.entries_for_source(scope_id, source_type, source_id)
            if not self._journal.entries_for_source(scope_id, PostingSource.REVERSAL, str(e.id))
        ]

    def recognize_deferred_cogs(
        self,
        scope_id: str,
        sale_ref: str,
        period_id: UUID,
        entry_date: date,
        actor_id: UUID,
    ) -> PostingResult:
        """
        Move the deferred cost of a sale to COGS at invoice.

        Dr COGS / Cr deferred COGS for what the deliveries deferred.

        Raises:
            CogsAlreadyRecognizedError: already recognized for ``sale_ref``.
            ValueError: the sale deferred nothing.
        """
        deferred_account = self._accounts.code(AccountRole.DEFERRED_COGS)

        with self._poster.hold(scope_id, resources=[f"sale:{sale_ref}"]):
            if self._live_entries(scope_id, COGS_RECOGNITION, sale_ref):
                raise CogsAlreadyRecognizedError(sale_ref)
            deferred = sum(
                (
                    line.debit
                    for entry in self._live_entries(scope_id, SALE_DELIVERY, sale_ref)
                    for line in entry.lines
                    if line.account_code == deferred_account
                ),
                ZERO,
            )
            if deferred <= 0:
                raise ValueError(f"Sale {sale_ref} has no deferred COGS")

            result = self._poster.post_transaction(
                scope_id=scope_id,
                period_id=period_id,
                entry_date=entry_date,
                ledger_ops=[],
                journal_lines=[
                    JournalLineSpec.dr(self._accounts.code(AccountRole.COST_OF_GOODS_SOLD), deferred, sale_ref),
                    JournalLineSpec.cr(deferred_account, deferred, sale_ref),
                ],
                source=PostingSource(COGS_RECOGNITION, sale_ref, sale_ref),
                actor_id=actor_id,
                memo=f"COGS recognition {sale_ref}",
            )

        logger.info(
            "deferred_cogs_recognized",
            extra={"sale_ref": sale_ref, "value": str(deferred)},
        )
        return result

    # -------------------------------------------------------------------------
    # Internal transfers
    # -------------------------------------------------------------------------

    def transfer(
        self,
        scope_id: str,
        transfer_ref: str,
        item_key: str,
        from_location_key: str,
        to_location_key: str,
        qty: Decimal,
        period_id: UUID,
        entry_date: date,
        actor_id: UUID,
        ledger: LedgerKind = LedgerKind.RAW,
    ) -> PostingResult:
        """
        Move stock between two locations in one posting.

        OUT at the source's weighted-average cost, IN at the target at the
        same unit cost.  Both legs hit the same inventory account, so the
        journal entry moves no value; it records the transfer.

        Raises:
            ValueError: same location, qty <= 0, a WIP ledger, or stock
                carried at zero cost.
            InsufficientStockError: not enough at the source.
        """
        ledger = _stocked(ledger)
        qty = to_decimal(qty)
        if qty <= 0:
            raise ValueError(f"qty must be > 0, got {qty}")
        if from_location_key == to_location_key:
            raise ValueError(f"transfer {transfer_ref} has the same source and target")

        source_key = StockKey(scope_id, ledger, item_key, from_location_key)
        target_key = StockKey(scope_id, ledger, item_key, to_location_key)
        account = self._accounts.inventory(ledger)

        # The cost read here is the cost the ledger will see
        with self._poster.hold(scope_id, keys=[source_key, target_key]):
            wac = self._ledger.balance(
                scope_id, ledger, item_key, from_location_key,
            ).weighted_avg_unit_cost

            def lines(planned: Sequence[PlannedLedgerEntry]) -> list[JournalLineSpec]:
                value = round_money(planned[0].value)
                if value == 0:
                    raise ValueError(f"{item_key}@{from_location_key} carries no cost to transfer")
                return [
                    JournalLineSpec.dr(account, value, f"{item_key} -> {to_location_key}"),
                    JournalLineSpec.cr(account, value, f"{item_key} <- {from_location_key}"),
                ]

            result = self._poster.post_transaction(
                scope_id=scope_id,
                period_id=period_id,
                entry_date=entry_date,
                ledger_ops=[
                    LedgerOp(ledger, item_key, from_location_key, Direction.OUT, qty, unit_cost=wac),
                    LedgerOp(ledger, item_key, to_location_key, Direction.IN, qty, unit_cost=wac),
                ],
                journal_lines=lines,
                source=PostingSource(INTERNAL_TRANSFER, transfer_ref, transfer_ref),
                actor_id=actor_id,
                memo=f"Transfer {transfer_ref} {from_location_key} -> {to_location_key}",
            )

        logger.info(
            "stock_transferred",
            extra={
                "transfer_ref": transfer_ref,
                "item_key": item_key,
                "from_location_key": from_location_key,
                "to_location_key": to_location_key,
                "qty": str(qty),
                "unit_cost": str(wac),
            },
        )
        return result

    # -------------------------------------------------------------------------
    # Stock counts
    # -------------------------------------------------------------------------

    def adjust_stock(
        self,
        scope_id: str,
        item_key: str,
        location_key: str,
        counted_qty: Decimal,
        period_id: UUID,
        entry_date: date,
        actor_id: UUID,
        ledger: LedgerKind = LedgerKind.RAW,
        count_ref: str | None = None,
        unit_cost: Decimal | None = None,
    ) -> StockAdjustment:
        """
        Bring the books to a physical count.

        A surplus comes in at ``unit_cost`` (default: the current average
        cost) against inventory variance; a shortage goes out at the average
        cost.  A count equal to the books posts nothing.

        Raises:
            ValueError: negative count, or a WIP ledger.
        """
        ledger = _stocked(ledger)
        counted_qty = to_decimal(counted_qty)
        if counted_qty < 0:
            raise ValueError(f"counted_qty cannot be negative, got {counted_qty}")

        key = StockKey(scope_id, ledger, item_key, location_key)
        inventory_account = self._accounts.inventory(ledger)
        variance_account = self._accounts.code(AccountRole.INVENTORY_VARIANCE)
        source_id = count_ref or f"{ledger.value}:{item_key}@{location_key}"

        with self._poster.hold(scope_id, keys=[key]):
            book = self._ledger.balance(scope_id, ledger, item_key, location_key)
            difference = counted_qty - book.qty
            if difference == 0:
                logger.info(
                    "stock_count_matched",
                    extra={"item_key": item_key, "location_key": location_key, "qty": str(book.qty)},
                )
                return StockAdjustment(ledger, item_key, location_key, book.qty, counted_qty, None)

            if difference > 0:
                cost = to_decimal(unit_cost) if unit_cost is not None else book.weighted_avg_unit_cost
                op = LedgerOp(ledger, item_key, location_key, Direction.IN, difference, unit_cost=cost)
                debit, credit = inventory_account, variance_account
            else:
                op = LedgerOp(ledger, item_key, location_key, Direction.OUT, -difference)
                debit, credit = variance_account, inventory_account

            def lines(planned: Sequence[PlannedLedgerEntry]) -> list[JournalLineSpec]:
                value = round_money(planned[0].value)
                memo = f"count {counted_qty} vs book {book.qty}"
                return [JournalLineSpec.dr(debit, value, memo), JournalLineSpec.cr(credit, value, memo)]

            result = self._poster.post_transaction(
                scope_id=scope_id,
                period_id=period_id,
                entry_date=entry_date,
                ledger_ops=[op],
                journal_lines=lines,
                source=PostingSource(STOCK_ADJUSTMENT, source_id, count_ref),
                actor_id=actor_id,
                memo=f"Stock count {item_key}@{location_key}",
            )

        logger.info(
            "stock_adjusted",
            extra={
                "item_key": item_key,
                "location_key": location_key,
                "book_qty": str(book.qty),
                "counted_qty": str(counted_qty),
                "value": str(result.journal_entry.total_debits),
            },
        )
        return StockAdjustment(ledger, item_key, location_key, book.qty, counted_qty, result)
