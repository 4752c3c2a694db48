"""
JournalEngine -- balanced double-entry journal posting and reversal.

Responsibility:
    Validates journal lines, assigns the entry sequence and the per-scope,
    per-year journal number ("JV-2026-00042"), writes the entry with its
    lines, and produces reversals that swap every debit and credit.

Architecture position:
    Kernel > Services -- flush-only.  Called by the TransactionalPoster in
    the same unit of work as the ledger appends.

Invariants enforced:
    - Every line has exactly one positive side; no negative amounts.
    - sum(debit) == sum(credit) after rounding each line to money precision
      (ROUND_HALF_UP).  Checked before the first INSERT.
    - Entries are only written into an open period, unless the posting
      context is trusted; a trusted post into a closed period writes a
      TRUSTED_POSTING audit event.
    - The entry date lies inside the target period.
    - An entry is reversed at most once, and never while its own period
      is closed.

Failure modes:
    - InvalidJournalLineError, UnbalancedJournalError.
    - PeriodNotFoundError, PeriodClosedError, EntryDateOutsidePeriodError.
    - JournalEntryNotFoundError, EntryAlreadyReversedError.

Audit relevance:
    JOURNAL_POSTED for every entry, JOURNAL_REVERSED for every reversal.
"""

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from apparel_kernel.db.types import round_money
from apparel_kernel.domain.clock import Clock
from apparel_kernel.domain.dtos import (
    JournalEntryInfo,
    JournalLineSpec,
    PeriodInfo,
    PostingContext,
)
from apparel_kernel.domain.values import PostingSource
from apparel_kernel.exceptions import (
    EntryAlreadyReversedError,
    EntryDateOutsidePeriodError,
    InvalidJournalLineError,
    JournalEntryNotFoundError,
    PeriodClosedError,
    PeriodNotFoundError,
    UnbalancedJournalError,
)
from apparel_kernel.logging_config import get_logger
from apparel_kernel.models.journal import JournalEntry, JournalEntryStatus, JournalLine
from apparel_kernel.models.period import AccountingPeriod
from apparel_kernel.services.auditor_service import AuditorService
from apparel_kernel.services.base import BaseService
from apparel_kernel.services.sequence_service import SequenceService

logger = get_logger("services.journal")

ZERO = Decimal("0")


@dataclass(frozen=True)
class PeriodTotals:
    debit_total: Decimal
    credit_total: Decimal
    entry_count: int

    @property
    def is_balanced(self) -> bool:
        return self.debit_total == self.credit_total


def validate_lines(lines: Sequence[JournalLineSpec]) -> list[JournalLineSpec]:
    """
    Check every line and the entry balance; return the lines rounded to
    money precision.

    Raises:
        InvalidJournalLineError: empty entry or a malformed line.
        UnbalancedJournalError: rounded debits != rounded credits.
    """
    if not lines:
        raise InvalidJournalLineError(0, "a journal entry needs at least one line")

    rounded: list[JournalLineSpec] = []
    for line_no, line in enumerate(lines, start=1):
        line.validate(line_no)
        rounded_line = JournalLineSpec(
            account_code=line.account_code,
            debit=round_money(line.debit),
            credit=round_money(line.credit),
            memo=line.memo,
        )
        # A sub-cent amount rounds to zero and leaves an empty line
        rounded_line.validate(line_no)
        rounded.append(rounded_line)

    debit_total = sum((line.debit for line in rounded), ZERO)
    credit_total = sum((line.credit for line in rounded), ZERO)
    if debit_total != credit_total:
        logger.warning(
            "journal_unbalanced",
            extra={"debit_total": str(debit_total), "credit_total": str(credit_total)},
        )
        raise UnbalancedJournalError(debit_total, credit_total)
    return rounded


class JournalEngine(BaseService):
    """
    Double-entry journal.

    Contract:
        ``post`` writes one balanced entry and returns its frozen snapshot.
        ``reverse`` writes the mirror image of an existing entry.

    Non-goals:
        - Does NOT commit.
        - Does NOT touch the inventory ledgers.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        super().__init__(session, clock)
        self._sequence = SequenceService(session)
        self._auditor = AuditorService(session, self.clock)

    def _load_period(self, scope_id: str, period_id: UUID) -> AccountingPeriod:
        period = self.session.execute(
            select(AccountingPeriod).where(
                AccountingPeriod.scope_id == scope_id,
                AccountingPeriod.id == period_id,
            )
        ).scalar_one_or_none()
        if period is None:
            raise PeriodNotFoundError(str(period_id))
        return period

    def _next_journal_number(self, scope_id: str, entry_date: date) -> str:
        number = self._sequence.next_value(
            SequenceService.journal_number_sequence(scope_id, entry_date.year)
        )
        return f"JV-{entry_date.year}-{number:05d}"

    def post(
        self,
        scope_id: str,
        period_id: UUID,
        entry_date: date,
        source: PostingSource,
        lines: Sequence[JournalLineSpec],
        actor_id: UUID,
        memo: str | None = None,
        context: PostingContext | None = None,
        reversal_of_id: UUID | None = None,
    ) -> JournalEntryInfo:
        """
        Validate and write one journal entry.  Flushes.

        Raises:
            InvalidJournalLineError / UnbalancedJournalError: bad lines.
            PeriodNotFoundError / PeriodClosedError: period not open.
            EntryDateOutsidePeriodError: date outside the period.
        """
        rounded = validate_lines(lines)

        period = self._load_period(scope_id, period_id)
        trusted = context is not None and context.trusted
        if not period.is_open and not trusted:
            logger.warning(
                "journal_period_closed",
                extra={"scope_id": scope_id, "period_code": period.code},
            )
            raise PeriodClosedError(period.code)
        if not period.contains_date(entry_date):
            raise EntryDateOutsidePeriodError(period.code, str(entry_date))

        entry = JournalEntry(
            scope_id=scope_id,
            seq=self._sequence.next_value(SequenceService.JOURNAL_ENTRY),
            journal_number=self._next_journal_number(scope_id, entry_date),
            period_id=period_id,
            entry_date=entry_date,
            source_type=source.source_type,
            source_id=source.source_id,
            source_ref=source.source_ref,
            status=JournalEntryStatus.POSTED.value,
            reversal_of_id=reversal_of_id,
            memo=memo,
            posted_at=self.clock.now(),
            created_by_id=actor_id,
        )
        self.session.add(entry)
        self.session.flush()

        for line_no, line in enumerate(rounded, start=1):
            self.session.add(
                JournalLine(
                    journal_entry_id=entry.id,
                    line_no=line_no,
                    account_code=line.account_code,
                    debit=line.debit,
                    credit=line.credit,
                    memo=line.memo,
                )
            )
        self.session.flush()
        self.session.refresh(entry, attribute_names=["lines"])

        self._auditor.record_posting(
            scope_id, entry.id, entry.journal_number, source.source_type,
            source.source_id, entry_date, len(rounded), actor_id,
        )
        if not period.is_open:
            self._auditor.record_trusted_posting(
                scope_id, entry.id, period.code, context.reason, actor_id,
            )
            logger.warning(
                "trusted_posting_into_closed_period",
                extra={
                    "scope_id": scope_id,
                    "period_code": period.code,
                    "journal_number": entry.journal_number,
                    "reason": context.reason,
                },
            )

        info = JournalEntryInfo.from_model(entry)
        logger.info(
            "journal_entry_posted",
            extra={
                "scope_id": scope_id,
                "journal_number": info.journal_number,
                "seq": info.seq,
                "line_count": len(info.lines),
                "debit_total": str(info.total_debits),
            },
        )
        return info

    def reverse(
        self,
        scope_id: str,
        original_entry_id: UUID,
        period_id: UUID,
        actor_id: UUID,
        entry_date: date | None = None,
        reason: str | None = None,
        context: PostingContext | None = None,
    ) -> JournalEntryInfo:
        """
        Post the mirror image of ``original_entry_id`` into ``period_id``.

        The entry date defaults to the original's date when reversing into
        the same period, and to the start of the target period otherwise.

        Raises:
            JournalEntryNotFoundError: unknown entry.
            EntryAlreadyReversedError: already reversed.
            PeriodClosedError: the original's period or the target period
                is closed (and the context is not trusted).
        """
        original = self._get_entry_orm(scope_id, original_entry_id)
        existing = self._reversal_of(original.id)
        if existing is not None:
            raise EntryAlreadyReversedError(str(original.id), str(existing.id))

        original_period = self._load_period(scope_id, original.period_id)
        trusted = context is not None and context.trusted
        if not original_period.is_open and not trusted:
            raise PeriodClosedError(original_period.code)

        if entry_date is None:
            if period_id == original.period_id:
                entry_date = original.entry_date
            else:
                entry_date = self._load_period(scope_id, period_id).start_date

        lines = [
            JournalLineSpec(
                account_code=line.account_code,
                debit=line.credit,
                credit=line.debit,
                memo=line.memo,
            )
            for line in sorted(original.lines, key=lambda l: l.line_no)
        ]

        reversal = self.post(
            scope_id=scope_id,
            period_id=period_id,
            entry_date=entry_date,
            source=PostingSource(
                PostingSource.REVERSAL, str(original.id), original.journal_number,
            ),
            lines=lines,
            actor_id=actor_id,
            memo=reason or f"Reversal of {original.journal_number}",
            context=context,
            reversal_of_id=original.id,
        )
        self._auditor.record_reversal(
            scope_id, reversal.id, original.id, reason or "", actor_id,
        )
        logger.info(
            "journal_entry_reversed",
            extra={
                "scope_id": scope_id,
                "original_journal_number": original.journal_number,
                "reversal_journal_number": reversal.journal_number,
            },
        )
        return reversal

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def _get_entry_orm(self, scope_id: str, entry_id: UUID) -> JournalEntry:
        entry = self.session.execute(
            select(JournalEntry).where(
                JournalEntry.scope_id == scope_id,
                JournalEntry.id == entry_id,
            )
        ).scalar_one_or_none()
        if entry is None:
            raise JournalEntryNotFoundError(str(entry_id))
        return entry

    def _reversal_of(self, entry_id: UUID) -> JournalEntry | None:
        return self.session.execute(
            select(JournalEntry).where(JournalEntry.reversal_of_id == entry_id)
        ).scalar_one_or_none()

    def get_entry(self, scope_id: str, entry_id: UUID) -> JournalEntryInfo:
        return JournalEntryInfo.from_model(self._get_entry_orm(scope_id, entry_id))

    def entries_for_period(self, scope_id: str, period_id: UUID) -> list[JournalEntryInfo]:
        entries = self.session.execute(
            select(JournalEntry)
            .where(
                JournalEntry.scope_id == scope_id,
                JournalEntry.period_id == period_id,
            )
            .order_by(JournalEntry.seq)
        ).scalars().all()
        return [JournalEntryInfo.from_model(e) for e in entries]

    def entries_for_source(
        self, scope_id: str, source_type: str, source_id: str,
    ) -> list[JournalEntryInfo]:
        entries = self.session.execute(
            select(JournalEntry)
            .where(
                JournalEntry.scope_id == scope_id,
                JournalEntry.source_type == source_type,
                JournalEntry.source_id == source_id,
            )
            .order_by(JournalEntry.seq)
        ).scalars().all()
        return [JournalEntryInfo.from_model(e) for e in entries]

    def period_totals(self, scope_id: str, period_id: UUID) -> PeriodTotals:
        entries = self.entries_for_period(scope_id, period_id)
        return PeriodTotals(
            debit_total=sum((e.total_debits for e in entries), ZERO),
            credit_total=sum((e.total_credits for e in entries), ZERO),
            entry_count=len(entries),
        )

    def account_balance(
        self, scope_id: str, account_code: str, period: PeriodInfo | None = None,
    ) -> Decimal:
        """Debits minus credits on one account, optionally for one period."""
        stmt = (
            select(JournalLine.debit, JournalLine.credit)
            .join(JournalEntry, JournalEntry.id == JournalLine.journal_entry_id)
            .where(
                JournalEntry.scope_id == scope_id,
                JournalLine.account_code == account_code,
            )
        )
        if period is not None:
            stmt = stmt.where(JournalEntry.period_id == period.id)
        rows = self.session.execute(stmt).all()
        return sum((debit - credit for debit, credit in rows), ZERO)
