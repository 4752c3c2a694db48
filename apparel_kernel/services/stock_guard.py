"""
StockGuard -- in-process mutual exclusion for stock keys and periods.

Responsibility:
    Serializes the check-then-write sequence of postings that touch the
    same stock key, and lets a period close exclude every posting into the
    period it is closing.

Architecture position:
    Kernel > Services -- concurrency infrastructure used by the
    TransactionalPoster, the PeriodController and module workflows.

Invariants enforced:
    - Keyed locks are always acquired in sorted order, so two postings
      touching overlapping keys cannot deadlock.
    - The period gate is a writer-preferring read/write lock: postings
      hold it shared, close holds it exclusive.  A pending close blocks
      new postings into that period.
    - Both are reentrant per thread, so a workflow can hold keys across
      several postings.
    - An entry lives only while some thread holds or awaits it; keys of
      finished production orders do not accumulate.

Failure modes:
    - ConcurrencyConflictError when a lock cannot be acquired within the
      timeout.  Nothing was written; the caller may retry.

Database row locks (SELECT ... FOR UPDATE on PostgreSQL) back these up
across processes.  SQLite has no row locks, so in-process guards are the
whole story there.
"""

import threading
from collections.abc import Callable, Hashable, Iterable, Iterator
from contextlib import ExitStack, contextmanager
from time import monotonic

from apparel_kernel.exceptions import ConcurrencyConflictError
from apparel_kernel.logging_config import get_logger

logger = get_logger("services.stock_guard")

DEFAULT_LOCK_TIMEOUT_SECONDS = 10.0


class _ReadWriteGate:
    """Reentrant, writer-preferring read/write lock."""

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._readers: dict[int, int] = {}
        self._writer: int | None = None
        self._writer_depth = 0
        self._writers_waiting = 0

    def acquire_shared(self, timeout: float) -> bool:
        me = threading.get_ident()
        deadline = monotonic() + timeout
        with self._cond:
            if self._writer == me or me in self._readers:
                self._readers[me] = self._readers.get(me, 0) + 1
                return True
            while self._writer is not None or self._writers_waiting:
                remaining = deadline - monotonic()
                if remaining <= 0 or not self._cond.wait(remaining):
                    if self._writer is not None or self._writers_waiting:
                        return False
            self._readers[me] = 1
            return True

    def release_shared(self) -> None:
        me = threading.get_ident()
        with self._cond:
            count = self._readers[me] - 1
            if count:
                self._readers[me] = count
            else:
                del self._readers[me]
            self._cond.notify_all()

    def acquire_exclusive(self, timeout: float) -> bool:
        me = threading.get_ident()
        deadline = monotonic() + timeout
        with self._cond:
            if self._writer == me:
                self._writer_depth += 1
                return True
            self._writers_waiting += 1
            try:
                while self._writer is not None or any(
                    ident != me for ident in self._readers
                ):
                    remaining = deadline - monotonic()
                    if remaining <= 0:
                        return False
                    self._cond.wait(remaining)
            finally:
                self._writers_waiting -= 1
                self._cond.notify_all()
            self._writer = me
            self._writer_depth = 1
            return True

    def release_exclusive(self) -> None:
        with self._cond:
            self._writer_depth -= 1
            if self._writer_depth == 0:
                self._writer = None
            self._cond.notify_all()


class _Slot:
    """A lock plus the number of threads holding or waiting for it."""

    __slots__ = ("lock", "users")

    def __init__(self, lock) -> None:
        self.lock = lock
        self.users = 0


class StockGuard:
    """
    Process-wide registry of keyed locks and period gates.

    Contract:
        ``hold(resources)`` acquires one reentrant lock per resource name in
        sorted order.  ``posting_gate(scope, period)`` and
        ``closing_gate(scope, period)`` take the period gate shared and
        exclusive respectively.
    """

    def __init__(self, timeout_seconds: float = DEFAULT_LOCK_TIMEOUT_SECONDS):
        self.timeout_seconds = timeout_seconds
        self._registry_lock = threading.Lock()
        self._locks: dict[Hashable, _Slot] = {}
        self._gates: dict[Hashable, _Slot] = {}

    def _checkout(self, table: dict[Hashable, _Slot], key: Hashable, factory: Callable):
        with self._registry_lock:
            slot = table.get(key)
            if slot is None:
                slot = table[key] = _Slot(factory())
            slot.users += 1
            return slot.lock

    def _checkin(self, table: dict[Hashable, _Slot], key: Hashable) -> None:
        with self._registry_lock:
            slot = table[key]
            slot.users -= 1
            if slot.users == 0:
                del table[key]

    def tracked(self) -> int:
        """Locks and gates currently held or awaited."""
        with self._registry_lock:
            return len(self._locks) + len(self._gates)

    @contextmanager
    def hold(self, resources: Iterable[str]) -> Iterator[None]:
        """Hold every named resource; released in reverse order on exit."""
        with ExitStack() as stack:
            for resource in sorted(set(resources)):
                lock = self._checkout(self._locks, resource, threading.RLock)
                stack.callback(self._checkin, self._locks, resource)
                if not lock.acquire(timeout=self.timeout_seconds):
                    logger.warning(
                        "stock_guard_timeout",
                        extra={"resource": resource, "timeout_seconds": self.timeout_seconds},
                    )
                    raise ConcurrencyConflictError(resource, self.timeout_seconds)
                stack.callback(lock.release)
            yield

    @contextmanager
    def _gate(self, scope_id: str, period_key: str, exclusive: bool) -> Iterator[None]:
        key = (scope_id, period_key)
        gate = self._checkout(self._gates, key, _ReadWriteGate)
        try:
            acquired = (
                gate.acquire_exclusive(self.timeout_seconds) if exclusive
                else gate.acquire_shared(self.timeout_seconds)
            )
            if not acquired:
                logger.warning(
                    "period_gate_timeout",
                    extra={
                        "scope_id": scope_id,
                        "period": period_key,
                        "mode": "exclusive" if exclusive else "shared",
                    },
                )
                raise ConcurrencyConflictError(f"period:{scope_id}:{period_key}", self.timeout_seconds)
            try:
                yield
            finally:
                if exclusive:
                    gate.release_exclusive()
                else:
                    gate.release_shared()
        finally:
            self._checkin(self._gates, key)

    def posting_gate(self, scope_id: str, period_key: str):
        return self._gate(scope_id, period_key, exclusive=False)

    def closing_gate(self, scope_id: str, period_key: str):
        return self._gate(scope_id, period_key, exclusive=True)


def stock_resource(key) -> str:
    """Resource name of a StockKey."""
    return f"stock:{key}"


_default_guard: StockGuard | None = None
_default_guard_lock = threading.Lock()


def get_stock_guard() -> StockGuard:
    """The process-wide guard shared by every poster and controller."""
    global _default_guard
    with _default_guard_lock:
        if _default_guard is None:
            _default_guard = StockGuard()
        return _default_guard


def configure_stock_guard(timeout_seconds: float) -> StockGuard:
    """Replace the process-wide guard (startup and tests only)."""
    global _default_guard
    with _default_guard_lock:
        _default_guard = StockGuard(timeout_seconds)
        return _default_guard
