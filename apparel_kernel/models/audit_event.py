"""
Module: apparel_kernel.models.audit_event
Responsibility: ORM persistence for the hash-chained audit trail.
Architecture position: Kernel > Models.  May import from db/ and domain/values.py only.

Invariants enforced:
    - Append-only: ORM listeners reject UPDATE and DELETE.
    - seq is globally unique and monotonic.
    - hash = H(entity_type | entity_id | action | payload_hash | prev_hash);
      prev_hash links to the previous event of the same scope and is NULL
      only for the first event of a scope.

Audit relevance:
    This is the audit record.  Period transitions, journal postings and
    reversals, trusted postings, BOM status changes and production order
    transitions all land here.
"""

from datetime import datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import JSON, BigInteger, DateTime, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from apparel_kernel.db.base import Base, UUIDString


class AuditAction(str, Enum):
    """Types of auditable actions."""

    # Period lifecycle
    PERIOD_CREATED = "period_created"
    PERIOD_CLOSED = "period_closed"
    PERIOD_REOPENED = "period_reopened"

    # Journal lifecycle
    JOURNAL_POSTED = "journal_posted"
    JOURNAL_REVERSED = "journal_reversed"

    # Administrative bypass
    TRUSTED_POSTING = "trusted_posting"

    # BOM lifecycle
    BOM_ACTIVATED = "bom_activated"
    BOM_RETIRED = "bom_retired"

    # Production orders
    ORDER_STATUS_CHANGED = "order_status_changed"


class AuditEvent(Base):
    """
    Audit event with hash chain for tamper evidence.

    Non-goals:
        - The model does NOT check hash correctness at INSERT time; that is
          AuditorService's job.
    """

    __tablename__ = "audit_events"

    __table_args__ = (
        Index("idx_audit_scope_seq", "scope_id", "seq"),
        Index("idx_audit_entity", "entity_type", "entity_id"),
        Index("idx_audit_action", "action"),
    )

    scope_id: Mapped[str] = mapped_column(String(64), nullable=False)

    seq: Mapped[int] = mapped_column(BigInteger, nullable=False, unique=True)

    # e.g. "AccountingPeriod", "JournalEntry", "ProductionOrder"
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)

    entity_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    action: Mapped[AuditAction] = mapped_column(String(50), nullable=False)

    actor_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    occurred_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )

    payload: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    payload_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    prev_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)

    hash: Mapped[str] = mapped_column(String(64), nullable=False)

    def __repr__(self) -> str:
        return f"<AuditEvent {self.action} on {self.entity_type}:{self.entity_id}>"

    @property
    def is_genesis(self) -> bool:
        return self.prev_hash is None
