"""
SequenceService -- gap-tolerant, strictly increasing counters.

Each counter is a row in ``sequence_counters`` bumped in place with
``UPDATE ... SET current_value = current_value + 1``.  The update takes the
row lock on PostgreSQL and the write lock on SQLite before the new value is
read back, so concurrent writers are serialized on the counter and never
see the same number.  Nothing here commits: a rolled back transaction gives
its number back.

The audit_event counter is also what orders the audit hash chain, since
its lock is held until the writing transaction ends.
"""

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from apparel_kernel.logging_config import get_logger
from apparel_kernel.models.sequence import SequenceCounter

logger = get_logger("services.sequence")


class SequenceService:
    LEDGER_ENTRY = "ledger_entry"
    JOURNAL_ENTRY = "journal_entry"
    AUDIT_EVENT = "audit_event"

    def __init__(self, session: Session):
        self._session = session

    @staticmethod
    def journal_number_sequence(scope_id: str, year: int) -> str:
        """Counter name behind ``JV-<year>-NNNNN`` numbers of one scope."""
        return f"journal:{scope_id}:{year}"

    def _bump(self, name: str) -> int | None:
        bumped = self._session.execute(
            update(SequenceCounter)
            .where(SequenceCounter.name == name)
            .values(current_value=SequenceCounter.current_value + 1)
            .execution_options(synchronize_session=False)
        )
        if not bumped.rowcount:
            return None
        return self.current_value(name)

    def _create(self, name: str) -> bool:
        """Insert the counter at 1.  False when another writer got there first."""
        try:
            with self._session.begin_nested():
                self._session.add(SequenceCounter(name=name, current_value=1))
                self._session.flush()
        except IntegrityError:
            logger.debug("sequence_counter_race_retry", extra={"sequence_name": name})
            return False
        return True

    def next_value(self, name: str) -> int:
        value = self._bump(name)
        if value is None:
            value = 1 if self._create(name) else self._bump(name)
        if value is None:
            raise RuntimeError(f"Sequence counter {name!r} could not be created")
        logger.debug("sequence_allocated", extra={"sequence_name": name, "value": value})
        return value

    def current_value(self, name: str) -> int | None:
        return self._session.execute(
            select(SequenceCounter.current_value).where(SequenceCounter.name == name)
        ).scalar_one_or_none()
