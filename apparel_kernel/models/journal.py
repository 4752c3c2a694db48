"""
Journal entries and their debit/credit lines.

The journal runs beside the inventory ledgers: every stock movement that
carries value posts exactly one entry here, in the same transaction.
Balance (Σdebit == Σcredit) and the one-sided-line rule are checked by the
JournalEngine before anything is inserted; ``is_balanced`` below is only a
read-side convenience.  Rows never change after insert, an entry is
reversed at most once (unique ``reversal_of_id``), and journal numbers
(``JV-2026-00001``) are unique per scope.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from apparel_kernel.db.base import Base

ZERO = Decimal("0")


class JournalEntryStatus(str, Enum):
    # Drafts live with the calling workflow; the kernel only stores posted entries.
    POSTED = "posted"


class JournalEntry(Base):
    __tablename__ = "journal_entries"
    __table_args__ = (
        UniqueConstraint("seq", name="uq_journal_seq"),
        UniqueConstraint("scope_id", "journal_number", name="uq_journal_number"),
        UniqueConstraint("reversal_of_id", name="uq_journal_reversal_of"),
        Index("idx_journal_period", "scope_id", "period_id"),
        Index("idx_journal_source", "scope_id", "source_type", "source_id"),
    )

    scope_id: Mapped[str] = mapped_column(String(64))
    seq: Mapped[int]
    journal_number: Mapped[str] = mapped_column(String(30))
    period_id: Mapped[UUID] = mapped_column(ForeignKey("accounting_periods.id"))
    entry_date: Mapped[date]
    source_type: Mapped[str] = mapped_column(String(50))
    source_id: Mapped[str] = mapped_column(String(100))
    source_ref: Mapped[str | None] = mapped_column(String(200))
    status: Mapped[str] = mapped_column(String(10), default=JournalEntryStatus.POSTED.value)
    # Set on the offsetting entry, pointing at the one it reverses
    reversal_of_id: Mapped[UUID | None] = mapped_column(ForeignKey("journal_entries.id"))
    memo: Mapped[str | None] = mapped_column(String(500))
    posted_at: Mapped[datetime]
    created_by_id: Mapped[UUID]

    lines: Mapped[list["JournalLine"]] = relationship(
        back_populates="entry", lazy="selectin", order_by="JournalLine.line_no",
    )

    def __repr__(self) -> str:
        return f"<JournalEntry {self.journal_number} seq={self.seq}>"

    @property
    def total_debits(self) -> Decimal:
        return sum((line.debit for line in self.lines), ZERO)

    @property
    def total_credits(self) -> Decimal:
        return sum((line.credit for line in self.lines), ZERO)

    @property
    def is_balanced(self) -> bool:
        return self.total_debits == self.total_credits


class JournalLine(Base):
    """Exactly one of ``debit`` / ``credit`` is positive; the other is zero."""

    __tablename__ = "journal_lines"
    __table_args__ = (
        UniqueConstraint("journal_entry_id", "line_no", name="uq_journal_line_no"),
        Index("idx_line_account", "account_code"),
    )

    journal_entry_id: Mapped[UUID] = mapped_column(ForeignKey("journal_entries.id"))
    line_no: Mapped[int]
    account_code: Mapped[str] = mapped_column(String(50))
    debit: Mapped[Decimal] = mapped_column(default=ZERO)
    credit: Mapped[Decimal] = mapped_column(default=ZERO)
    memo: Mapped[str | None] = mapped_column(String(200))

    entry: Mapped[JournalEntry] = relationship(back_populates="lines")

    def __repr__(self) -> str:
        side = f"Dr {self.debit}" if self.debit else f"Cr {self.credit}"
        return f"<JournalLine {self.line_no} {self.account_code} {side}>"
