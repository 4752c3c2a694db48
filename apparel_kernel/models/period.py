"""
Accounting periods: the gate every ledger and journal write goes through.

``(scope_id, code)`` is unique.  Date ranges of one scope never overlap;
the PeriodController checks that when a period is created.  The stored
status is only ever ``open`` or ``closed``: close validation runs inside
``PeriodController.close`` and leaves no intermediate state behind.
"""

from datetime import date, datetime
from uuid import UUID

from sqlalchemy import Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from apparel_kernel.db.base import TrackedBase
from apparel_kernel.domain.values import PeriodStatus


class AccountingPeriod(TrackedBase):
    __tablename__ = "accounting_periods"
    __table_args__ = (
        UniqueConstraint("scope_id", "code", name="uq_period_scope_code"),
        Index("idx_period_scope_dates", "scope_id", "start_date", "end_date"),
    )

    scope_id: Mapped[str] = mapped_column(String(64))
    code: Mapped[str] = mapped_column(String(20))  # "2026-01"
    start_date: Mapped[date]
    end_date: Mapped[date]
    status: Mapped[str] = mapped_column(String(20), default=PeriodStatus.OPEN.value)
    # Latest close only; earlier closes are in the audit trail
    closed_at: Mapped[datetime | None]
    closed_by_id: Mapped[UUID | None]
    reopen_count: Mapped[int] = mapped_column(default=0)

    def __repr__(self) -> str:
        return f"<AccountingPeriod {self.scope_id}/{self.code} {self.status}>"

    @property
    def is_open(self) -> bool:
        return self.status == PeriodStatus.OPEN

    @property
    def is_closed(self) -> bool:
        return self.status == PeriodStatus.CLOSED

    def contains_date(self, day: date) -> bool:
        return self.start_date <= day <= self.end_date
