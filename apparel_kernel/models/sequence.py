"""Named counters behind every ``seq`` column and journal number."""

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from apparel_kernel.db.base import Base


class SequenceCounter(Base):
    __tablename__ = "sequence_counters"

    # "ledger_entry", "audit_event", "journal:<scope>:<year>", ...
    name: Mapped[str] = mapped_column(String(100), unique=True)
    current_value: Mapped[int] = mapped_column(default=0)
