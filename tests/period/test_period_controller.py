"""
Period lifecycle tests.

Verifies:
- Periods of a scope never overlap
- Close checks: WIP cleared, journal balanced, no unposted documents
- Close and reopen are audited; reopen requires a reason
- A closed period refuses postings until it is reopened
- Lookups by code and by date
"""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from apparel_kernel.domain.dtos import JournalLineSpec, LedgerOp
from apparel_kernel.domain.values import Direction, LedgerKind, PeriodStatus, PostingSource
from apparel_kernel.exceptions import (
    PeriodClosedError,
    PeriodCloseBlockedError,
    PeriodNotFoundError,
    PeriodOverlapError,
)
from apparel_kernel.services.auditor_service import AuditorService
from apparel_kernel.services.period_controller import PeriodController


def put_into_wip(poster, scope_id, period, actor_id, qty="1"):
    return poster.post_transaction(
        scope_id, period.id, date(2026, 1, 5),
        [LedgerOp(LedgerKind.WIP, "WO-1/FABRIC-JERSEY", "cut", Direction.IN, Decimal(qty), Decimal("2500"))],
        [JournalLineSpec.dr("1221", Decimal("2500") * Decimal(qty)),
         JournalLineSpec.cr("1210", Decimal("2500") * Decimal(qty))],
        PostingSource("wip_adjustment", "WO-1"),
        actor_id,
    )


class TestCreate:

    def test_create_open_period(self, periods, scope_id, period):
        assert period.status == PeriodStatus.OPEN
        assert periods.is_open(scope_id, period.id)
        assert periods.get_period_by_code(scope_id, "2026-01") == period

    def test_overlap_rejected(self, periods, scope_id, period, actor_id):
        with pytest.raises(PeriodOverlapError) as exc_info:
            periods.create_period(scope_id, "2026-01B", date(2026, 1, 31), date(2026, 2, 27), actor_id)

        assert exc_info.value.existing_period_code == "2026-01"

    def test_other_scope_may_overlap(self, periods, period, actor_id):
        other = periods.create_period("other-brand", "2026-01", date(2026, 1, 1), date(2026, 1, 31), actor_id)
        assert other.scope_id == "other-brand"

    def test_start_after_end(self, periods, scope_id, actor_id, db_engine):
        with pytest.raises(ValueError):
            periods.create_period(scope_id, "bad", date(2026, 3, 2), date(2026, 3, 1), actor_id)

    def test_lookups(self, periods, scope_id, period, actor_id):
        february = periods.create_period(scope_id, "2026-02", date(2026, 2, 1), date(2026, 2, 28), actor_id)

        assert periods.period_for_date(scope_id, date(2026, 2, 14)) == february
        assert periods.period_for_date(scope_id, date(2026, 3, 1)) is None
        assert [p.code for p in periods.list_periods(scope_id)] == ["2026-01", "2026-02"]

    def test_unknown_period(self, periods, scope_id, db_engine):
        with pytest.raises(PeriodNotFoundError):
            periods.get_period(scope_id, uuid4())


class TestClose:

    def test_close_empty_period(self, periods, session, clock, scope_id, period, actor_id):
        closed = periods.close(scope_id, period.id, actor_id)

        assert closed.status == PeriodStatus.CLOSED
        assert closed.closed_by_id == actor_id
        with pytest.raises(PeriodClosedError):
            periods.require_open(scope_id, period.id)
        trace = AuditorService(session, clock).get_trace("AccountingPeriod", period.id)
        assert trace.actions == ("period_created", "period_closed")

    def test_close_twice(self, periods, scope_id, period, actor_id):
        periods.close(scope_id, period.id, actor_id)

        with pytest.raises(PeriodCloseBlockedError) as exc_info:
            periods.close(scope_id, period.id, actor_id)

        assert exc_info.value.reason == PeriodCloseBlockedError.ALREADY_CLOSED

    def test_open_wip_blocks_close(self, periods, poster, scope_id, period, actor_id):
        put_into_wip(poster, scope_id, period, actor_id)

        with pytest.raises(PeriodCloseBlockedError) as exc_info:
            periods.close(scope_id, period.id, actor_id)

        assert exc_info.value.reason == PeriodCloseBlockedError.WIP_NOT_ZERO
        (key, qty), = exc_info.value.details["wip_balances"].items()
        assert key == "WO-1/FABRIC-JERSEY@cut"
        assert Decimal(qty) == 1
        assert periods.is_open(scope_id, period.id)

    def test_wip_from_earlier_period_blocks_later_close(self, periods, poster, scope_id, period, actor_id):
        put_into_wip(poster, scope_id, period, actor_id)
        february = periods.create_period(scope_id, "2026-02", date(2026, 2, 1), date(2026, 2, 28), actor_id)

        with pytest.raises(PeriodCloseBlockedError):
            periods.close(scope_id, february.id, actor_id)

    def test_cleared_wip_allows_close(self, periods, poster, scope_id, period, actor_id):
        posted = put_into_wip(poster, scope_id, period, actor_id)
        poster.reverse_transaction(scope_id, posted.journal_entry_id, period.id, actor_id, reason="wrong order")

        assert periods.close(scope_id, period.id, actor_id).status == PeriodStatus.CLOSED

    def test_unposted_documents_block_close(self, session, clock, scope_id, period, actor_id):
        def draft_receipts(session, scope_id, info):
            return 2

        controller = PeriodController(session, clock, unposted_checks=[draft_receipts])

        with pytest.raises(PeriodCloseBlockedError) as exc_info:
            controller.close(scope_id, period.id, actor_id)

        assert exc_info.value.reason == PeriodCloseBlockedError.UNPOSTED_DOCUMENTS
        assert exc_info.value.details == {"unposted": {"draft_receipts": 2}}

    def test_blocked_close_is_logged(self, periods, poster, captured_logs, scope_id, period, actor_id):
        put_into_wip(poster, scope_id, period, actor_id)

        with pytest.raises(PeriodCloseBlockedError):
            periods.close(scope_id, period.id, actor_id)

        blocked = [r for r in captured_logs() if r["message"] == "period_close_blocked"]
        assert blocked and blocked[0]["reason"] == "wip_not_zero"


class TestReopen:

    def test_reopen_requires_reason(self, periods, scope_id, period, actor_id):
        periods.close(scope_id, period.id, actor_id)
        with pytest.raises(ValueError):
            periods.reopen(scope_id, period.id, actor_id, reason=" ")

    def test_reopen_is_audited(self, periods, session, clock, scope_id, period, actor_id):
        periods.close(scope_id, period.id, actor_id)

        reopened = periods.reopen(scope_id, period.id, actor_id, reason="late vendor invoice")

        assert reopened.is_open
        assert reopened.reopen_count == 1
        trace = AuditorService(session, clock).get_trace("AccountingPeriod", period.id)
        assert trace.last_action == "period_reopened"
        assert trace.entries[-1].payload["reason"] == "late vendor invoice"

    def test_reopen_open_period_is_noop(self, periods, session, clock, scope_id, period, actor_id):
        result = periods.reopen(scope_id, period.id, actor_id, reason="nothing to do")

        assert result.reopen_count == 0
        trace = AuditorService(session, clock).get_trace("AccountingPeriod", period.id)
        assert trace.actions == ("period_created",)

    def test_posting_succeeds_again_after_reopen(self, periods, inventory, scope_id, period, actor_id):
        def receive():
            return inventory.receive_purchase(
                scope_id, "PO-LATE", "FABRIC-JERSEY", "MAIN", Decimal("5"), Decimal("2500"),
                Decimal("5"), period.id, date(2026, 1, 20), actor_id,
            )

        periods.close(scope_id, period.id, actor_id)

        with pytest.raises(PeriodClosedError):
            receive()

        periods.reopen(scope_id, period.id, actor_id, reason="late vendor invoice")
        posted = receive()

        assert posted.journal_entry.journal_number == "JV-2026-00001"
        assert posted.journal_entry.period_id == period.id
