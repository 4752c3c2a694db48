"""
Inventory ledger tests.

Verifies:
- Weighted-average cost over in-entries
- Out movements snapshot the average cost when no cost is given
- Non-negative stock, with nothing written on rejection
- Reversal entries and their effect on the cost basis
- The balance projection agrees with a recomputation from history
"""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from apparel_kernel.domain.dtos import JournalLineSpec, LedgerOp, PostingContext
from apparel_kernel.domain.values import Direction, LedgerKind, PostingSource
from apparel_kernel.exceptions import (
    EntryAlreadyReversedError,
    InsufficientStockError,
    InvalidLedgerOpError,
    LedgerEntryNotFoundError,
    PeriodClosedError,
)

RAW_ACCOUNT = "1210"
AP_ACCRUED = "2015"
VARIANCE_ACCOUNT = "5030"
ON = date(2026, 1, 15)


def receive(poster, scope_id, period, actor_id, item, qty, unit_cost, location="MAIN", ref="PO-1"):
    qty, unit_cost = Decimal(qty), Decimal(unit_cost)
    return poster.post_transaction(
        scope_id, period.id, ON,
        [LedgerOp(LedgerKind.RAW, item, location, Direction.IN, qty, unit_cost)],
        [JournalLineSpec.dr(RAW_ACCOUNT, qty * unit_cost), JournalLineSpec.cr(AP_ACCRUED, qty * unit_cost)],
        PostingSource("purchase_receipt", ref),
        actor_id,
    )


def write_off(poster, scope_id, period, actor_id, item, qty, location="MAIN"):
    def lines(planned):
        value = sum((p.value for p in planned), Decimal("0"))
        return [JournalLineSpec.dr(VARIANCE_ACCOUNT, value), JournalLineSpec.cr(RAW_ACCOUNT, value)]

    return poster.post_transaction(
        scope_id, period.id, ON,
        [LedgerOp(LedgerKind.RAW, item, location, Direction.OUT, Decimal(qty))],
        lines,
        PostingSource("stock_adjustment", f"count-{item}"),
        actor_id,
    )


class TestWeightedAverageCost:

    def test_average_over_receipts(self, poster, scope_id, period, actor_id):
        receive(poster, scope_id, period, actor_id, "FABRIC-JERSEY", "10", "100")
        receive(poster, scope_id, period, actor_id, "FABRIC-JERSEY", "10", "200", ref="PO-2")

        balance = poster.ledger.balance(scope_id, LedgerKind.RAW, "FABRIC-JERSEY", "MAIN")

        assert balance.qty == Decimal("20")
        assert balance.weighted_avg_unit_cost == Decimal("150")
        assert balance.value == Decimal("3000")

    def test_out_snapshots_average_cost(self, poster, scope_id, period, actor_id):
        receive(poster, scope_id, period, actor_id, "FABRIC-JERSEY", "10", "100")
        receive(poster, scope_id, period, actor_id, "FABRIC-JERSEY", "10", "200", ref="PO-2")

        result = write_off(poster, scope_id, period, actor_id, "FABRIC-JERSEY", "5")

        (entry,) = result.ledger_entries
        assert entry.unit_cost == Decimal("150")
        assert result.journal_entry.total_debits == Decimal("750.00")
        balance = poster.ledger.balance(scope_id, LedgerKind.RAW, "FABRIC-JERSEY", "MAIN")
        assert balance.qty == Decimal("15")
        assert balance.weighted_avg_unit_cost == Decimal("150")

    def test_empty_key_has_zero_balance(self, poster, scope_id, db_engine):
        balance = poster.ledger.balance(scope_id, LedgerKind.FINISHED, "NOTHING", "MAIN")
        assert balance.qty == 0
        assert balance.weighted_avg_unit_cost == 0

    def test_balances_per_location(self, poster, scope_id, period, actor_id):
        receive(poster, scope_id, period, actor_id, "THREAD-BLACK", "500", "10", location="MAIN")
        receive(poster, scope_id, period, actor_id, "THREAD-BLACK", "200", "12", location="ANNEX", ref="PO-2")

        by_location = poster.ledger.balances_for_item(scope_id, LedgerKind.RAW, "THREAD-BLACK")

        assert list(by_location) == ["ANNEX", "MAIN"]
        assert poster.ledger.total_on_hand(scope_id, LedgerKind.RAW, "THREAD-BLACK") == Decimal("700")


class TestNonNegativeStock:

    def test_oversell_rejected_and_nothing_written(self, poster, scope_id, period, actor_id):
        receive(poster, scope_id, period, actor_id, "FABRIC-JERSEY", "10", "100")

        with pytest.raises(InsufficientStockError) as exc_info:
            write_off(poster, scope_id, period, actor_id, "FABRIC-JERSEY", "11")

        assert exc_info.value.available == Decimal("10")
        assert exc_info.value.requested == Decimal("11")
        entries = poster.ledger.entries_for_key(scope_id, LedgerKind.RAW, "FABRIC-JERSEY", "MAIN")
        assert len(entries) == 1
        assert poster.journal.period_totals(scope_id, period.id).entry_count == 1

    def test_batch_checks_running_balance(self, poster, scope_id, period, actor_id):
        receive(poster, scope_id, period, actor_id, "FABRIC-JERSEY", "10", "100")
        ops = [
            LedgerOp(LedgerKind.RAW, "FABRIC-JERSEY", "MAIN", Direction.OUT, Decimal("6")),
            LedgerOp(LedgerKind.RAW, "FABRIC-JERSEY", "MAIN", Direction.OUT, Decimal("6")),
        ]

        with pytest.raises(InsufficientStockError):
            poster.ledger.plan(scope_id, ops)

    def test_out_of_empty_key(self, poster, scope_id, period, actor_id):
        with pytest.raises(InsufficientStockError):
            write_off(poster, scope_id, period, actor_id, "LABEL-CARE", "1")


class TestLedgerOpValidation:

    def test_zero_qty(self):
        with pytest.raises(InvalidLedgerOpError):
            LedgerOp(LedgerKind.RAW, "X", "MAIN", Direction.IN, Decimal("0"), Decimal("1"))

    def test_negative_cost(self):
        with pytest.raises(InvalidLedgerOpError):
            LedgerOp(LedgerKind.RAW, "X", "MAIN", Direction.IN, Decimal("1"), Decimal("-1"))

    def test_in_needs_cost(self):
        with pytest.raises(InvalidLedgerOpError):
            LedgerOp(LedgerKind.RAW, "X", "MAIN", Direction.IN, Decimal("1"))


class TestReversal:

    def test_reversing_a_receipt_withdraws_it_from_the_basis(self, poster, scope_id, period, actor_id):
        receive(poster, scope_id, period, actor_id, "FABRIC-JERSEY", "10", "100")
        second = receive(poster, scope_id, period, actor_id, "FABRIC-JERSEY", "10", "200", ref="PO-2")

        reversal = poster.reverse_transaction(
            scope_id, second.journal_entry_id, period.id, actor_id, reason="wrong price",
        )

        (entry,) = reversal.ledger_entries
        assert entry.direction == Direction.OUT
        assert entry.unit_cost == Decimal("200")
        assert entry.reversal_of_id == second.ledger_entries[0].id
        balance = poster.ledger.balance(scope_id, LedgerKind.RAW, "FABRIC-JERSEY", "MAIN")
        assert balance.qty == Decimal("10")
        assert balance.weighted_avg_unit_cost == Decimal("100")

    def test_second_reversal_rejected(self, poster, scope_id, period, actor_id):
        receipt = receive(poster, scope_id, period, actor_id, "FABRIC-JERSEY", "10", "100")
        entry_id = receipt.ledger_entries[0].id
        poster.reverse_transaction(scope_id, receipt.journal_entry_id, period.id, actor_id, reason="dup")

        with pytest.raises(EntryAlreadyReversedError):
            poster.ledger.build_reversal(scope_id, entry_id)

    def test_consumed_receipt_cannot_be_reversed(self, poster, scope_id, period, actor_id):
        receipt = receive(poster, scope_id, period, actor_id, "FABRIC-JERSEY", "10", "100")
        write_off(poster, scope_id, period, actor_id, "FABRIC-JERSEY", "4")

        with pytest.raises(InsufficientStockError):
            poster.reverse_transaction(scope_id, receipt.journal_entry_id, period.id, actor_id, reason="x")

    def test_unknown_entry(self, poster, scope_id, db_engine):
        with pytest.raises(LedgerEntryNotFoundError):
            poster.ledger.get_entry(scope_id, uuid4())

    def test_entries_of_another_scope_are_invisible(self, poster, scope_id, period, actor_id):
        receipt = receive(poster, scope_id, period, actor_id, "FABRIC-JERSEY", "10", "100")
        entry_id = receipt.ledger_entries[0].id

        with pytest.raises(LedgerEntryNotFoundError):
            poster.ledger.get_entry("other-brand", entry_id)
        with pytest.raises(LedgerEntryNotFoundError):
            poster.ledger.build_reversal("other-brand", entry_id)
        assert poster.ledger.entries_for_journal("other-brand", receipt.journal_entry_id) == []
        assert poster.ledger.get_entry(scope_id, entry_id).id == entry_id


class TestProjection:

    def test_projection_matches_history(self, poster, scope_id, period, actor_id):
        receive(poster, scope_id, period, actor_id, "FABRIC-JERSEY", "10", "100")
        receive(poster, scope_id, period, actor_id, "FABRIC-JERSEY", "7", "130", ref="PO-2")
        write_off(poster, scope_id, period, actor_id, "FABRIC-JERSEY", "3")
        third = receive(poster, scope_id, period, actor_id, "FABRIC-JERSEY", "5", "90", ref="PO-3")
        poster.reverse_transaction(scope_id, third.journal_entry_id, period.id, actor_id, reason="x")

        projected = poster.ledger.balance(scope_id, LedgerKind.RAW, "FABRIC-JERSEY", "MAIN")
        replayed = poster.ledger.balance_from_history(scope_id, LedgerKind.RAW, "FABRIC-JERSEY", "MAIN")

        assert projected == replayed
        assert projected.qty == Decimal("14")

    def test_entries_numbered_in_order(self, poster, scope_id, period, actor_id):
        receive(poster, scope_id, period, actor_id, "FABRIC-JERSEY", "1", "1")
        receive(poster, scope_id, period, actor_id, "FABRIC-JERSEY", "1", "1", ref="PO-2")

        entries = poster.ledger.entries_for_key(scope_id, LedgerKind.RAW, "FABRIC-JERSEY", "MAIN")

        assert entries[0].seq < entries[1].seq


class TestStandaloneAppend:

    def test_append_without_journal(self, poster, session, scope_id, period, actor_id):
        entry = poster.ledger.append(
            scope_id, period.id,
            LedgerOp(LedgerKind.FINISHED, "TSHIRT-BLK-M", "DC-1", Direction.IN, Decimal("4"), Decimal("10")),
            PostingSource("opening_balance", "2026"),
            actor_id,
        )
        session.commit()

        assert entry.journal_entry_id is None
        assert poster.ledger.balance(scope_id, LedgerKind.FINISHED, "TSHIRT-BLK-M", "DC-1").qty == 4

    def test_append_into_closed_period(self, poster, periods, scope_id, period, actor_id):
        periods.close(scope_id, period.id, actor_id)
        op = LedgerOp(LedgerKind.RAW, "X", "MAIN", Direction.IN, Decimal("1"), Decimal("1"))

        with pytest.raises(PeriodClosedError):
            poster.ledger.append(scope_id, period.id, op, PostingSource("opening_balance", "x"), actor_id)

        trusted = PostingContext.trusted_for(actor_id, "migration")
        entry = poster.ledger.append(
            scope_id, period.id, op, PostingSource("opening_balance", "x"), actor_id, context=trusted,
        )
        assert entry.period_id == period.id

    def test_stale_plan_rejected_at_write(self, poster, session, scope_id, period, actor_id):
        receive(poster, scope_id, period, actor_id, "FABRIC-JERSEY", "10", "100")
        op = LedgerOp(LedgerKind.RAW, "FABRIC-JERSEY", "MAIN", Direction.OUT, Decimal("6"))
        stale = poster.ledger.plan(scope_id, [op])
        poster.ledger.append(scope_id, period.id, op, PostingSource("write_off", "WO-1"), actor_id)
        session.commit()

        with pytest.raises(InsufficientStockError) as exc_info:
            poster.ledger.apply(scope_id, period.id, stale, PostingSource("write_off", "WO-2"), actor_id)
        session.rollback()

        assert exc_info.value.available == Decimal("4")
        assert poster.ledger.balance(scope_id, LedgerKind.RAW, "FABRIC-JERSEY", "MAIN").qty == Decimal("4")
        assert len(poster.ledger.entries_for_key(scope_id, LedgerKind.RAW, "FABRIC-JERSEY", "MAIN")) == 2
