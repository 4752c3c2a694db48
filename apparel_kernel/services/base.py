"""
BaseService -- abstract base for the flush-only kernel services.

Responsibility:
    Common constructor for services that write inside a transaction owned
    by their caller.  They call ``session.flush()``, never
    ``session.commit()``.

Architecture position:
    Kernel > Services.  LedgerStore, JournalEngine, AuditorService and
    BomService extend this class.  The TransactionalPoster and the
    PeriodController own their transactions and do not.

Failure modes:
    - A subclass calling ``session.commit()`` would split the atomic
      ledger + journal unit of work in two.
"""

from abc import ABC

from sqlalchemy.orm import Session

from apparel_kernel.domain.clock import Clock, SystemClock


class BaseService(ABC):
    """
    Abstract base class for flush-only kernel services.

    Guarantees:
        - Never commits or rolls back; the caller controls the boundary.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self.session = session
        self.clock = clock or SystemClock()
