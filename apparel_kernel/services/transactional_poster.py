"""
TransactionalPoster -- one atomic unit of work across ledgers and journal.

Responsibility:
    Posts a business transaction (purchase receipt, material issue, stage
    move, sale) as inventory ledger entries plus one journal entry, all
    committed together or not at all.

Architecture position:
    Kernel > Services -- the write entry point for the workflow modules.
    Owns its transaction: commits on success, rolls back on any failure.

Posting flow:
    1. Early period check (fail fast, no locks taken).
    2. Acquire the stock-key guards (sorted) and the period gate (shared).
    3. Re-read the period inside the gate; lock the projection rows.
    4. Plan every ledger op against the projection (balances, unit costs).
    5. Build the journal lines (a callable receives the planned entries,
       so issue values use the snapshotted cost) and validate balance.
    6. Write the journal entry, then the ledger entries pointing at it.
    7. Run the caller's in-transaction hook, then commit.

Invariants enforced:
    - Either every ledger entry and the journal entry exist, or none do.
    - No write happens before every check of steps 1-5 has passed.
    - Two postings touching the same stock key are serialized; a
      concurrent oversell leaves exactly one winner.
    - A trusted context may post into a closed period; it never skips the
      balance or stock checks.

Failure modes:
    - Any ApparelLedgerError raised by the checks, re-raised after rollback.
    - ConcurrencyConflictError: guard timeout, or a database lock timeout /
      busy database (SQLAlchemy OperationalError).
    - IntegrityViolationError: a database constraint fired (IntegrityError).
"""

from collections.abc import Callable, Iterable, Iterator, Sequence
from contextlib import contextmanager
from datetime import date
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from apparel_kernel.domain.clock import Clock, SystemClock
from apparel_kernel.domain.dtos import (
    JournalLineSpec,
    LedgerOp,
    PeriodInfo,
    PlannedLedgerEntry,
    PostingContext,
    PostingResult,
    StockKey,
)
from apparel_kernel.domain.values import PostingSource
from apparel_kernel.exceptions import (
    ApparelLedgerError,
    ConcurrencyConflictError,
    EntryDateOutsidePeriodError,
    IntegrityViolationError,
    PeriodClosedError,
    PeriodNotFoundError,
    ReversalNotAllowedError,
)
from apparel_kernel.logging_config import LogContext, get_logger
from apparel_kernel.models.period import AccountingPeriod
from apparel_kernel.services.journal_engine import JournalEngine, validate_lines
from apparel_kernel.services.ledger_store import LedgerStore
from apparel_kernel.services.stock_guard import StockGuard, get_stock_guard, stock_resource

logger = get_logger("services.poster")

JournalLinesBuilder = Callable[[Sequence[PlannedLedgerEntry]], Sequence[JournalLineSpec]]
PostedHook = Callable[[PostingResult], None]

# source_type -> module that must drive the reversal of such entries
_REVERSAL_OWNERS: dict[str, str] = {}


def register_reversal_owner(owner: str, source_types: Iterable[str]) -> None:
    """
    Route reversals of ``source_types`` through ``owner``.

    A module whose postings carry operational state next to the ledger
    (reservations, cost pools) registers here; ``reverse_transaction``
    then refuses those entries unless the owning module asks.
    """
    for source_type in source_types:
        _REVERSAL_OWNERS[source_type] = owner


class TransactionalPoster:
    """
    Atomic ledger + journal posting.

    Contract:
        ``post_transaction`` returns a PostingResult after COMMIT, or raises
        with the session rolled back and nothing persisted.

    Non-goals:
        - Does NOT retry; retry is the caller's policy.
        - Does NOT decide accounts; callers build the journal lines.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        guard: StockGuard | None = None,
    ):
        self.session = session
        self._clock = clock or SystemClock()
        self._guard = guard or get_stock_guard()
        self.ledger = LedgerStore(session, self._clock, self._guard)
        self.journal = JournalEngine(session, self._clock)

    # -------------------------------------------------------------------------
    # Guards
    # -------------------------------------------------------------------------

    @contextmanager
    def hold(
        self,
        scope_id: str,
        keys: Iterable[StockKey] = (),
        resources: Iterable[str] = (),
    ) -> Iterator[None]:
        """
        Keep guards across a workflow's read-compute-post sequence.

        Guards are reentrant, so postings made inside the block re-acquire
        them without waiting.
        """
        names = [stock_resource(k) for k in keys] + [f"{scope_id}:{r}" for r in resources]
        with self._guard.hold(names):
            yield

    def _load_period(self, scope_id: str, period_id: UUID, for_share: bool) -> PeriodInfo:
        stmt = select(AccountingPeriod).where(
            AccountingPeriod.scope_id == scope_id,
            AccountingPeriod.id == period_id,
        )
        if for_share:
            # Blocks a concurrent close in another process until commit
            stmt = stmt.with_for_update(read=True)
        period = self.session.execute(
            stmt.execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if period is None:
            raise PeriodNotFoundError(str(period_id))
        return PeriodInfo.from_model(period)

    def _check_period(
        self, period: PeriodInfo, entry_date: date, context: PostingContext,
    ) -> None:
        if not period.is_open and not context.trusted:
            logger.warning(
                "posting_period_closed",
                extra={"period_code": period.code, "entry_date": str(entry_date)},
            )
            raise PeriodClosedError(period.code)
        if not period.contains_date(entry_date):
            raise EntryDateOutsidePeriodError(period.code, str(entry_date))

    # -------------------------------------------------------------------------
    # Posting
    # -------------------------------------------------------------------------

    def post_transaction(
        self,
        scope_id: str,
        period_id: UUID,
        entry_date: date,
        ledger_ops: Sequence[LedgerOp],
        journal_lines: Sequence[JournalLineSpec] | JournalLinesBuilder,
        source: PostingSource,
        actor_id: UUID,
        context: PostingContext | None = None,
        memo: str | None = None,
        on_posted: PostedHook | None = None,
    ) -> PostingResult:
        """
        Post ledger ops and journal lines atomically and commit.

        ``on_posted`` runs inside the transaction after every write and
        before COMMIT; workflow modules use it to update their own rows.

        Raises:
            PeriodNotFoundError / PeriodClosedError /
            EntryDateOutsidePeriodError: period gate.
            InsufficientStockError / InvalidLedgerOpError: ledger checks.
            InvalidJournalLineError / UnbalancedJournalError: journal checks.
            ConcurrencyConflictError, IntegrityViolationError.
        """
        context = context or PostingContext.standard(actor_id)
        keys = sorted({op.stock_key(scope_id) for op in ledger_ops}, key=StockKey.sort_key)

        def unit_of_work() -> PostingResult:
            planned = self.ledger.plan(scope_id, ledger_ops)
            lines = journal_lines(planned) if callable(journal_lines) else journal_lines
            validate_lines(lines)

            entry = self.journal.post(
                scope_id=scope_id,
                period_id=period_id,
                entry_date=entry_date,
                source=source,
                lines=lines,
                actor_id=actor_id,
                memo=memo,
                context=context,
            )
            ledger_entries = self.ledger.apply(
                scope_id, period_id, planned, source, actor_id,
                journal_entry_id=entry.id,
            )
            return PostingResult(journal_entry=entry, ledger_entries=tuple(ledger_entries))

        return self._run(
            scope_id, period_id, entry_date, keys, context, unit_of_work,
            on_posted, action="transaction_posted",
        )

    def reverse_transaction(
        self,
        scope_id: str,
        journal_entry_id: UUID,
        period_id: UUID,
        actor_id: UUID,
        reason: str,
        entry_date: date | None = None,
        context: PostingContext | None = None,
        on_posted: PostedHook | None = None,
        owner: str | None = None,
    ) -> PostingResult:
        """
        Reverse a journal entry and every ledger entry it carried, atomically.

        Entries whose source type has a registered owner are only reversed
        when that ``owner`` asks; it passes ``on_posted`` to unwind its own
        rows in the same transaction.

        Raises:
            JournalEntryNotFoundError, EntryAlreadyReversedError,
            ReversalNotAllowedError (owned source type, other caller),
            PeriodClosedError (original or target period closed),
            InsufficientStockError (reversed receipt already consumed).
        """
        context = context or PostingContext.standard(actor_id)
        with self.session.no_autoflush:
            original = self.journal.get_entry(scope_id, journal_entry_id)
            originals = self.ledger.entries_for_journal(scope_id, journal_entry_id)
            target = self._load_period(scope_id, period_id, for_share=False)
        required = _REVERSAL_OWNERS.get(original.source.source_type)
        if required is not None and owner != required:
            raise ReversalNotAllowedError(
                original.journal_number,
                f"{original.source.source_type} postings are reversed through {required}",
            )
        if entry_date is None:
            entry_date = original.entry_date if original.period_id == period_id else target.start_date
        keys = sorted(
            {StockKey(scope_id, e.ledger, e.item_key, e.location_key) for e in originals},
            key=StockKey.sort_key,
        )

        def unit_of_work() -> PostingResult:
            # Newest first, so an out that consumed an in is undone before it
            ops = [self.ledger.build_reversal(scope_id, e.id) for e in reversed(originals)]
            planned = self.ledger.plan(scope_id, ops)
            entry = self.journal.reverse(
                scope_id, journal_entry_id, period_id, actor_id,
                entry_date=entry_date, reason=reason, context=context,
            )
            ledger_entries = self.ledger.apply(
                scope_id, period_id, planned, entry.source, actor_id,
                journal_entry_id=entry.id,
            )
            return PostingResult(journal_entry=entry, ledger_entries=tuple(ledger_entries))

        return self._run(
            scope_id, period_id, entry_date, keys, context, unit_of_work,
            on_posted, action="transaction_reversed",
        )

    def _run(
        self,
        scope_id: str,
        period_id: UUID,
        entry_date: date,
        keys: Sequence[StockKey],
        context: PostingContext,
        unit_of_work: Callable[[], PostingResult],
        on_posted: PostedHook | None,
        action: str,
    ) -> PostingResult:
        with LogContext.bind(scope_id=scope_id, period_id=period_id, actor_id=context.actor_id):
            try:
                # Early check without taking any lock
                with self.session.no_autoflush:
                    period = self._load_period(scope_id, period_id, for_share=False)
                self._check_period(period, entry_date, context)

                resources = [stock_resource(k) for k in keys]
                with self._guard.hold(resources), \
                        self._guard.posting_gate(scope_id, str(period_id)):
                    period = self._load_period(scope_id, period_id, for_share=True)
                    self._check_period(period, entry_date, context)
                    self.ledger.lock_projections(keys)

                    result = unit_of_work()
                    if on_posted is not None:
                        on_posted(result)
                    self.session.commit()
            except ApparelLedgerError:
                self.session.rollback()
                raise
            except OperationalError as exc:
                self.session.rollback()
                logger.warning(
                    "posting_lock_conflict",
                    extra={"error": str(exc.orig)},
                )
                raise ConcurrencyConflictError(f"scope:{scope_id}") from exc
            except IntegrityError as exc:
                self.session.rollback()
                logger.error(
                    "posting_integrity_error",
                    extra={"error": str(exc.orig)},
                )
                raise IntegrityViolationError(str(exc.orig)) from exc
            except Exception:
                self.session.rollback()
                raise

            logger.info(
                action,
                extra={
                    "journal_number": result.journal_entry.journal_number,
                    "ledger_entry_count": len(result.ledger_entries),
                    "trusted": context.trusted,
                },
            )
            return result
