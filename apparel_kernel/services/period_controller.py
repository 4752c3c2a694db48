"""
PeriodController -- accounting period lifecycle and the posting gate.

Responsibility:
    Creates per-scope accounting periods, answers "is this period open?"
    for every write path, and drives the close / reopen lifecycle:

        open --close()--> [closing validation] --> closed --reopen()--> open

    The closing-validation phase is transient: it runs under the period's
    exclusive gate and either flips the status or raises
    PeriodCloseBlockedError having changed nothing.

Architecture position:
    Kernel > Services -- imperative shell.  Called by the
    TransactionalPoster (is_open / require_open) and by operators (close,
    reopen).  Unlike the flush-only services, create / close / reopen own
    their transaction: they commit on success and roll back on failure.

Invariants enforced:
    - Periods of one scope never overlap.
    - A close is exclusive with in-flight postings into the same period
      (StockGuard.closing_gate + SELECT ... FOR UPDATE on the period row).
    - Close requires: every WIP balance as of the period is zero, the
      period's journal lines balance, and no collaborator reports an
      unposted document referencing the period.
    - Every close and every reopen is audited.

Failure modes:
    - PeriodNotFoundError: unknown period id for the scope.
    - PeriodOverlapError: new period overlaps an existing one.
    - PeriodClosedError: require_open() on a closed period.
    - PeriodCloseBlockedError: a pre-close check failed.
    - ConcurrencyConflictError: the period gate could not be taken in time.

Audit relevance:
    PERIOD_CREATED, PERIOD_CLOSED and PERIOD_REOPENED (with reason) events.
    A blocked close is logged at WARNING with the failing details.
"""

from collections import defaultdict
from collections.abc import Callable, Iterable
from datetime import date
from decimal import Decimal
from typing import Protocol
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from apparel_kernel.domain.clock import Clock, SystemClock
from apparel_kernel.domain.dtos import PeriodInfo
from apparel_kernel.domain.values import Direction, LedgerKind, PeriodStatus
from apparel_kernel.exceptions import (
    EntryDateOutsidePeriodError,
    PeriodClosedError,
    PeriodCloseBlockedError,
    PeriodNotFoundError,
    PeriodOverlapError,
)
from apparel_kernel.logging_config import LogContext, get_logger
from apparel_kernel.models.journal import JournalEntry, JournalLine
from apparel_kernel.models.ledger import InventoryLedgerEntry
from apparel_kernel.models.period import AccountingPeriod
from apparel_kernel.services.auditor_service import AuditorService
from apparel_kernel.services.stock_guard import StockGuard, get_stock_guard

logger = get_logger("services.period")


class UnpostedDocumentCheck(Protocol):
    """
    Collaborator hook consulted by close().

    Returns the number of documents (draft invoices, unposted receipts ...)
    that still reference the period.  Zero means nothing blocks the close.
    """

    def __call__(self, session: Session, scope_id: str, period: PeriodInfo) -> int: ...


def _check_name(check: Callable) -> str:
    return getattr(check, "name", None) or getattr(check, "__name__", type(check).__name__)


class PeriodController:
    """
    Per-scope accounting period gate.

    Contract:
        Read methods return frozen PeriodInfo DTOs.  Lifecycle methods
        commit their own transaction.

    Non-goals:
        - Does NOT auto-close periods or roll balances forward.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        guard: StockGuard | None = None,
        unposted_checks: Iterable[UnpostedDocumentCheck] = (),
    ):
        self.session = session
        self._clock = clock or SystemClock()
        self._guard = guard or get_stock_guard()
        self._auditor = AuditorService(session, self._clock)
        self._unposted_checks = list(unposted_checks)

    def register_unposted_check(self, check: UnpostedDocumentCheck) -> None:
        self._unposted_checks.append(check)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def _get_period_orm(self, scope_id: str, period_id: UUID) -> AccountingPeriod | None:
        return self.session.execute(
            select(AccountingPeriod)
            .where(
                AccountingPeriod.scope_id == scope_id,
                AccountingPeriod.id == period_id,
            )
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def _get_period_for_update(self, scope_id: str, period_id: UUID) -> AccountingPeriod | None:
        """Row lock for close / reopen."""
        return self.session.execute(
            select(AccountingPeriod)
            .where(
                AccountingPeriod.scope_id == scope_id,
                AccountingPeriod.id == period_id,
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def get_period(self, scope_id: str, period_id: UUID) -> PeriodInfo:
        """
        Raises:
            PeriodNotFoundError: if the scope has no such period.
        """
        period = self._get_period_orm(scope_id, period_id)
        if period is None:
            raise PeriodNotFoundError(str(period_id))
        return PeriodInfo.from_model(period)

    def get_period_by_code(self, scope_id: str, code: str) -> PeriodInfo | None:
        period = self.session.execute(
            select(AccountingPeriod).where(
                AccountingPeriod.scope_id == scope_id,
                AccountingPeriod.code == code,
            )
        ).scalar_one_or_none()
        return PeriodInfo.from_model(period) if period else None

    def period_for_date(self, scope_id: str, entry_date: date) -> PeriodInfo | None:
        period = self.session.execute(
            select(AccountingPeriod).where(
                AccountingPeriod.scope_id == scope_id,
                AccountingPeriod.start_date <= entry_date,
                AccountingPeriod.end_date >= entry_date,
            )
        ).scalar_one_or_none()
        return PeriodInfo.from_model(period) if period else None

    def list_periods(self, scope_id: str) -> list[PeriodInfo]:
        periods = self.session.execute(
            select(AccountingPeriod)
            .where(AccountingPeriod.scope_id == scope_id)
            .order_by(AccountingPeriod.start_date)
        ).scalars().all()
        return [PeriodInfo.from_model(p) for p in periods]

    def is_open(self, scope_id: str, period_id: UUID) -> bool:
        """True when the period exists and is open.  No side effects."""
        period = self._get_period_orm(scope_id, period_id)
        return period is not None and period.is_open

    def require_open(self, scope_id: str, period_id: UUID) -> PeriodInfo:
        """
        Raises:
            PeriodNotFoundError: unknown period.
            PeriodClosedError: the period is closed.
        """
        info = self.get_period(scope_id, period_id)
        if not info.is_open:
            raise PeriodClosedError(info.code)
        return info

    @staticmethod
    def validate_entry_date(period: PeriodInfo, entry_date: date) -> None:
        """
        Raises:
            EntryDateOutsidePeriodError: the date is not inside the period.
        """
        if not period.contains_date(entry_date):
            raise EntryDateOutsidePeriodError(period.code, str(entry_date))

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def create_period(
        self,
        scope_id: str,
        code: str,
        start_date: date,
        end_date: date,
        actor_id: UUID,
    ) -> PeriodInfo:
        """
        Create an open period and commit.

        Raises:
            ValueError: start_date after end_date.
            PeriodOverlapError: the range overlaps another period of the scope.
        """
        if start_date > end_date:
            raise ValueError(
                f"start_date ({start_date}) cannot be after end_date ({end_date})"
            )

        try:
            self._validate_no_overlap(scope_id, code, start_date, end_date)

            period = AccountingPeriod(
                scope_id=scope_id,
                code=code,
                start_date=start_date,
                end_date=end_date,
                status=PeriodStatus.OPEN.value,
                reopen_count=0,
                created_by_id=actor_id,
            )
            self.session.add(period)
            self.session.flush()

            self._auditor.record_period_created(
                scope_id, period.id, code, start_date, end_date, actor_id,
            )
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

        logger.info(
            "period_created",
            extra={
                "scope_id": scope_id,
                "period_code": code,
                "start_date": str(start_date),
                "end_date": str(end_date),
            },
        )
        return PeriodInfo.from_model(period)

    def _validate_no_overlap(
        self, scope_id: str, code: str, start_date: date, end_date: date,
    ) -> None:
        # Two ranges overlap if start1 <= end2 and start2 <= end1
        overlapping = self.session.execute(
            select(AccountingPeriod).where(
                AccountingPeriod.scope_id == scope_id,
                AccountingPeriod.start_date <= end_date,
                AccountingPeriod.end_date >= start_date,
            ).limit(1)
        ).scalar_one_or_none()

        if overlapping:
            raise PeriodOverlapError(
                new_period_code=code,
                existing_period_code=overlapping.code,
                overlap_start=str(max(start_date, overlapping.start_date)),
                overlap_end=str(min(end_date, overlapping.end_date)),
            )

    def close(self, scope_id: str, period_id: UUID, actor_id: UUID) -> PeriodInfo:
        """
        Validate and close a period, then commit.

        Waits for in-flight postings into the period to finish and blocks
        new ones while validating.  Postings that arrive after the close
        see the closed status and fail.

        Raises:
            PeriodNotFoundError: unknown period.
            PeriodCloseBlockedError: already closed, WIP not zero, journal
                unbalanced or unposted documents.
            ConcurrencyConflictError: gate timeout.
        """
        with LogContext.bind(scope_id=scope_id, period_id=period_id, actor_id=actor_id):
            with self._guard.closing_gate(scope_id, str(period_id)):
                try:
                    period = self._get_period_for_update(scope_id, period_id)
                    if period is None:
                        raise PeriodNotFoundError(str(period_id))

                    if period.is_closed:
                        raise PeriodCloseBlockedError(
                            period.code, PeriodCloseBlockedError.ALREADY_CLOSED,
                        )

                    info = PeriodInfo.from_model(period)
                    self._check_wip_cleared(period)
                    self._check_journal_balanced(period)
                    self._check_unposted_documents(scope_id, info)

                    period.status = PeriodStatus.CLOSED.value
                    period.closed_at = self._clock.now()
                    period.closed_by_id = actor_id
                    period.updated_by_id = actor_id
                    self.session.flush()

                    self._auditor.record_period_closed(
                        scope_id, period.id, period.code, actor_id,
                    )
                    self.session.commit()
                except PeriodCloseBlockedError as exc:
                    self.session.rollback()
                    logger.warning(
                        "period_close_blocked",
                        extra={
                            "period_code": exc.period_code,
                            "reason": exc.reason,
                            "details": exc.details,
                        },
                    )
                    raise
                except Exception:
                    self.session.rollback()
                    raise

            logger.info("period_closed", extra={"period_code": period.code})
            return PeriodInfo.from_model(period)

    def reopen(
        self, scope_id: str, period_id: UUID, actor_id: UUID, reason: str,
    ) -> PeriodInfo:
        """
        Reopen a closed period and commit.  Privileged; always audited.

        Reopening a period that is already open changes nothing and writes
        no audit event.

        Raises:
            ValueError: empty reason.
            PeriodNotFoundError: unknown period.
        """
        if not reason or not reason.strip():
            raise ValueError("A reopen requires a reason")

        with LogContext.bind(scope_id=scope_id, period_id=period_id, actor_id=actor_id):
            with self._guard.closing_gate(scope_id, str(period_id)):
                try:
                    period = self._get_period_for_update(scope_id, period_id)
                    if period is None:
                        raise PeriodNotFoundError(str(period_id))

                    if period.is_open:
                        self.session.rollback()
                        logger.info(
                            "period_already_open", extra={"period_code": period.code},
                        )
                        return PeriodInfo.from_model(period)

                    period.status = PeriodStatus.OPEN.value
                    period.reopen_count = (period.reopen_count or 0) + 1
                    period.updated_by_id = actor_id
                    self.session.flush()

                    self._auditor.record_period_reopened(
                        scope_id, period.id, period.code, reason,
                        period.reopen_count, actor_id,
                    )
                    self.session.commit()
                except Exception:
                    self.session.rollback()
                    raise

            logger.warning(
                "period_reopened",
                extra={
                    "period_code": period.code,
                    "reason": reason,
                    "reopen_count": period.reopen_count,
                },
            )
            return PeriodInfo.from_model(period)

    # -------------------------------------------------------------------------
    # Close checks
    # -------------------------------------------------------------------------

    def _check_wip_cleared(self, period: AccountingPeriod) -> None:
        """Every WIP key with activity up to this period nets to zero."""
        rows = self.session.execute(
            select(
                InventoryLedgerEntry.item_key,
                InventoryLedgerEntry.location_key,
                InventoryLedgerEntry.direction,
                InventoryLedgerEntry.qty,
            )
            .join(AccountingPeriod, AccountingPeriod.id == InventoryLedgerEntry.period_id)
            .where(
                InventoryLedgerEntry.scope_id == period.scope_id,
                InventoryLedgerEntry.ledger == LedgerKind.WIP.value,
                AccountingPeriod.start_date <= period.start_date,
            )
        ).all()

        balances: dict[str, Decimal] = defaultdict(Decimal)
        for item_key, location_key, direction, qty in rows:
            signed = qty if direction == Direction.IN.value else -qty
            balances[f"{item_key}@{location_key}"] += signed

        open_keys = {key: str(qty) for key, qty in sorted(balances.items()) if qty != 0}
        if open_keys:
            raise PeriodCloseBlockedError(
                period.code,
                PeriodCloseBlockedError.WIP_NOT_ZERO,
                {"wip_balances": open_keys},
            )

    def _check_journal_balanced(self, period: AccountingPeriod) -> None:
        rows = self.session.execute(
            select(JournalLine.debit, JournalLine.credit)
            .join(JournalEntry, JournalEntry.id == JournalLine.journal_entry_id)
            .where(
                JournalEntry.scope_id == period.scope_id,
                JournalEntry.period_id == period.id,
            )
        ).all()

        total_debit = sum((debit for debit, _ in rows), Decimal("0"))
        total_credit = sum((credit for _, credit in rows), Decimal("0"))
        if total_debit != total_credit:
            raise PeriodCloseBlockedError(
                period.code,
                PeriodCloseBlockedError.JOURNAL_UNBALANCED,
                {"debit_total": str(total_debit), "credit_total": str(total_credit)},
            )

    def _check_unposted_documents(self, scope_id: str, info: PeriodInfo) -> None:
        blocking: dict[str, int] = {}
        for check in self._unposted_checks:
            count = check(self.session, scope_id, info)
            if count:
                blocking[_check_name(check)] = count
        if blocking:
            raise PeriodCloseBlockedError(
                info.code,
                PeriodCloseBlockedError.UNPOSTED_DOCUMENTS,
                {"unposted": blocking},
            )
