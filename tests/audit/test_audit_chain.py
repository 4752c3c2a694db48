"""
Audit trail and immutability tests.

Verifies:
- Every posting, period and order transition lands in one hash chain
- The chain validates, and a tampered payload is detected
- Posted facts cannot be updated or deleted through the ORM
"""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import select

from apparel_kernel.domain.dtos import JournalLineSpec, LedgerOp
from apparel_kernel.domain.values import Direction, LedgerKind, PostingSource
from apparel_kernel.exceptions import AuditChainBrokenError, ImmutabilityViolationError
from apparel_kernel.models.audit_event import AuditEvent
from apparel_kernel.models.journal import JournalEntry, JournalLine
from apparel_kernel.models.ledger import InventoryLedgerEntry
from apparel_kernel.models.period import AccountingPeriod
from apparel_kernel.services.auditor_service import AuditorService


@pytest.fixture
def auditor(session, clock):
    return AuditorService(session, clock)


@pytest.fixture
def receipt(poster, scope_id, period, actor_id):
    return poster.post_transaction(
        scope_id, period.id, date(2026, 1, 3),
        [LedgerOp(LedgerKind.RAW, "FABRIC-JERSEY", "MAIN", Direction.IN, Decimal("10"), Decimal("2500"))],
        [JournalLineSpec.dr("1210", Decimal("25000")), JournalLineSpec.cr("2015", Decimal("25000"))],
        PostingSource("purchase_receipt", "PO-1"),
        actor_id,
    )


class TestHashChain:

    def test_chain_links_every_event(self, auditor, session, scope_id, receipt):
        events = session.execute(
            select(AuditEvent).where(AuditEvent.scope_id == scope_id).order_by(AuditEvent.seq)
        ).scalars().all()

        assert [e.action for e in events] == ["period_created", "journal_posted"]
        assert events[0].prev_hash is None
        assert events[1].prev_hash == events[0].hash
        assert auditor.validate_chain(scope_id) is True

    def test_posting_trace(self, auditor, receipt):
        trace = auditor.get_trace("JournalEntry", receipt.journal_entry_id)

        assert trace.actions == ("journal_posted",)
        assert trace.entries[0].payload["source_id"] == "PO-1"

    def test_unknown_entity_has_empty_trace(self, auditor, db_engine):
        assert auditor.get_trace("JournalEntry", uuid4()).is_empty

    def test_tampered_payload_detected(self, auditor, session, scope_id, receipt, immutability_disabled):
        event = session.execute(
            select(AuditEvent).where(AuditEvent.action == "journal_posted")
        ).scalar_one()
        event.payload = {**event.payload, "source_id": "PO-999"}
        session.commit()

        with pytest.raises(AuditChainBrokenError):
            auditor.validate_chain(scope_id)


class TestImmutability:

    def test_journal_entry_cannot_change(self, session, receipt):
        entry = session.get(JournalEntry, receipt.journal_entry_id)
        entry.memo = "edited"

        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_journal_line_cannot_change(self, session, receipt):
        line = session.execute(
            select(JournalLine).where(JournalLine.journal_entry_id == receipt.journal_entry_id)
        ).scalars().first()
        line.debit = Decimal("1")

        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_ledger_entry_cannot_be_deleted(self, session, receipt):
        entry = session.get(InventoryLedgerEntry, receipt.ledger_entries[0].id)
        session.delete(entry)

        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_audit_event_cannot_change(self, session, receipt):
        event = session.execute(select(AuditEvent)).scalars().first()
        event.actor_id = receipt.journal_entry.id

        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_period_dates_are_fixed(self, session, period):
        row = session.get(AccountingPeriod, period.id)
        row.end_date = date(2026, 2, 28)

        with pytest.raises(ImmutabilityViolationError):
            session.flush()
