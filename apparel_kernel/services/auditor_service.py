"""
AuditorService -- tamper-evident audit trail and hash chain maintenance.

Responsibility:
    Creates immutable, hash-chained audit events for every significant
    state change: period lifecycle, journal postings and reversals,
    trusted postings, BOM status changes and production order transitions.
    Validates the chain and answers trace queries.

Architecture position:
    Kernel > Services -- imperative shell, called by the PeriodController,
    the TransactionalPoster, BomService and the production module.

Invariants enforced:
    - One chain per scope: prev_hash is the hash of the previous event of
      the same scope, None for the first.
    - hash = H(entity_type | entity_id | action | payload_hash | prev_hash).
    - seq comes from SequenceService; allocating it first serializes chain
      writers until commit.
    - Append-only (db/immutability.py).

Failure modes:
    - AuditChainBrokenError from validate_chain() when a stored hash does
      not match its recomputation or a link is broken.
"""

from dataclasses import dataclass
from datetime import date, datetime
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from apparel_kernel.domain.clock import Clock
from apparel_kernel.exceptions import AuditChainBrokenError
from apparel_kernel.logging_config import get_logger
from apparel_kernel.models.audit_event import AuditAction, AuditEvent
from apparel_kernel.services.base import BaseService
from apparel_kernel.services.sequence_service import SequenceService
from apparel_kernel.utils.hashing import hash_audit_event, hash_payload, to_json_safe

logger = get_logger("services.auditor")


@dataclass(frozen=True)
class AuditTraceEntry:
    """A single entry in an audit trace."""

    seq: int
    action: str
    occurred_at: datetime
    actor_id: UUID
    payload: dict[str, Any]
    hash: str


@dataclass(frozen=True)
class AuditTrace:
    """All audit events of one entity, oldest first."""

    entity_type: str
    entity_id: UUID
    entries: tuple[AuditTraceEntry, ...]

    @property
    def is_empty(self) -> bool:
        return len(self.entries) == 0

    @property
    def actions(self) -> tuple[str, ...]:
        return tuple(entry.action for entry in self.entries)

    @property
    def last_action(self) -> str | None:
        return self.entries[-1].action if self.entries else None


def _action_value(action: AuditAction | str) -> str:
    return action.value if isinstance(action, AuditAction) else action


class AuditorService(BaseService):
    """
    Creates and validates tamper-evident audit events.

    Guarantees:
        - Tampering with any hashed field of any event is detected by
          ``validate_chain()``.

    Non-goals:
        - Does NOT call ``session.commit()``.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        super().__init__(session, clock)
        self._sequences = SequenceService(session)

    def _chain_head(self, scope_id: str) -> str | None:
        return self.session.execute(
            select(AuditEvent.hash)
            .where(AuditEvent.scope_id == scope_id)
            .order_by(AuditEvent.seq.desc())
            .limit(1)
        ).scalar_one_or_none()

    def _append(
        self,
        scope_id: str,
        entity_type: str,
        entity_id: UUID,
        action: AuditAction,
        actor_id: UUID,
        payload: dict[str, Any] | None = None,
    ) -> AuditEvent:
        # The seq allocation locks the audit counter, so the head read
        # below cannot race another writer of the same chain.
        seq = self._sequences.next_value(SequenceService.AUDIT_EVENT)
        prev_hash = self._chain_head(scope_id)
        body = to_json_safe(payload or {})
        body_hash = hash_payload(body)

        event = AuditEvent(
            scope_id=scope_id,
            seq=seq,
            entity_type=entity_type,
            entity_id=entity_id,
            action=action.value,
            actor_id=actor_id,
            occurred_at=self.clock.now(),
            payload=body,
            payload_hash=body_hash,
            prev_hash=prev_hash,
            hash=hash_audit_event(entity_type, str(entity_id), action.value, body_hash, prev_hash),
        )
        self.session.add(event)
        self.session.flush()

        logger.info(
            "audit_event_created",
            extra={
                "scope_id": scope_id,
                "entity_type": entity_type,
                "entity_id": str(entity_id),
                "action": action.value,
                "seq": seq,
            },
        )
        return event

    # -------------------------------------------------------------------------
    # Periods
    # -------------------------------------------------------------------------

    def record_period_created(
        self, scope_id: str, period_id: UUID, period_code: str,
        start_date: date, end_date: date, actor_id: UUID,
    ) -> AuditEvent:
        return self._append(
            scope_id, "AccountingPeriod", period_id, AuditAction.PERIOD_CREATED,
            actor_id,
            {"period_code": period_code, "start_date": start_date, "end_date": end_date},
        )

    def record_period_closed(
        self, scope_id: str, period_id: UUID, period_code: str, actor_id: UUID,
    ) -> AuditEvent:
        return self._append(
            scope_id, "AccountingPeriod", period_id, AuditAction.PERIOD_CLOSED,
            actor_id, {"period_code": period_code},
        )

    def record_period_reopened(
        self, scope_id: str, period_id: UUID, period_code: str,
        reason: str, reopen_count: int, actor_id: UUID,
    ) -> AuditEvent:
        """A reopen always names its reason."""
        return self._append(
            scope_id, "AccountingPeriod", period_id, AuditAction.PERIOD_REOPENED,
            actor_id,
            {"period_code": period_code, "reason": reason, "reopen_count": reopen_count},
        )

    # -------------------------------------------------------------------------
    # Journal
    # -------------------------------------------------------------------------

    def record_posting(
        self, scope_id: str, entry_id: UUID, journal_number: str,
        source_type: str, source_id: str, entry_date: date,
        line_count: int, actor_id: UUID,
    ) -> AuditEvent:
        return self._append(
            scope_id, "JournalEntry", entry_id, AuditAction.JOURNAL_POSTED,
            actor_id,
            {
                "journal_number": journal_number,
                "source_type": source_type,
                "source_id": source_id,
                "entry_date": entry_date,
                "line_count": line_count,
            },
        )

    def record_reversal(
        self, scope_id: str, entry_id: UUID, original_entry_id: UUID,
        reason: str, actor_id: UUID,
    ) -> AuditEvent:
        return self._append(
            scope_id, "JournalEntry", entry_id, AuditAction.JOURNAL_REVERSED,
            actor_id,
            {"original_entry_id": original_entry_id, "reason": reason},
        )

    def record_trusted_posting(
        self, scope_id: str, entry_id: UUID, period_code: str,
        reason: str, actor_id: UUID,
    ) -> AuditEvent:
        """Posting into a closed period through the administrative path."""
        return self._append(
            scope_id, "JournalEntry", entry_id, AuditAction.TRUSTED_POSTING,
            actor_id, {"period_code": period_code, "reason": reason},
        )

    # -------------------------------------------------------------------------
    # BOM and production
    # -------------------------------------------------------------------------

    def record_bom_status(
        self, scope_id: str, bom_id: UUID, product_key: str, version: int,
        action: AuditAction, actor_id: UUID,
    ) -> AuditEvent:
        return self._append(
            scope_id, "BillOfMaterials", bom_id, action, actor_id,
            {"product_key": product_key, "version": version},
        )

    def record_order_status(
        self, scope_id: str, order_id: UUID, order_number: str,
        from_status: str | None, to_status: str, actor_id: UUID,
        details: dict[str, Any] | None = None,
    ) -> AuditEvent:
        payload = {
            "order_number": order_number,
            "from_status": from_status,
            "to_status": to_status,
        }
        if details:
            payload["details"] = details
        return self._append(
            scope_id, "ProductionOrder", order_id,
            AuditAction.ORDER_STATUS_CHANGED, actor_id, payload,
        )

    # -------------------------------------------------------------------------
    # Validation and queries
    # -------------------------------------------------------------------------

    def validate_chain(self, scope_id: str) -> bool:
        """
        Recompute every hash of the scope's chain and check every link.

        Raises:
            AuditChainBrokenError: at the first mismatch.
        """
        events = self.session.execute(
            select(AuditEvent)
            .where(AuditEvent.scope_id == scope_id)
            .order_by(AuditEvent.seq)
        ).scalars().all()

        head: str | None = None
        for event in events:
            body_hash = hash_payload(event.payload or {})
            recomputed = hash_audit_event(
                event.entity_type, str(event.entity_id), _action_value(event.action),
                body_hash, event.prev_hash,
            )
            if event.prev_hash != head:
                broken = AuditChainBrokenError(str(event.id), head or "None", event.prev_hash or "None")
            elif event.payload_hash != body_hash or event.hash != recomputed:
                broken = AuditChainBrokenError(str(event.id), recomputed, event.hash)
            else:
                head = event.hash
                continue

            logger.critical(
                "audit_chain_broken",
                extra={"scope_id": scope_id, "event_id": str(event.id), "seq": event.seq},
            )
            raise broken

        logger.info(
            "audit_chain_valid",
            extra={"scope_id": scope_id, "event_count": len(events)},
        )
        return True

    def get_trace(self, entity_type: str, entity_id: UUID) -> AuditTrace:
        events = self.session.execute(
            select(AuditEvent)
            .where(
                AuditEvent.entity_type == entity_type,
                AuditEvent.entity_id == entity_id,
            )
            .order_by(AuditEvent.seq)
        ).scalars().all()

        entries = tuple(
            AuditTraceEntry(
                seq=event.seq,
                action=_action_value(event.action),
                occurred_at=event.occurred_at,
                actor_id=event.actor_id,
                payload=event.payload or {},
                hash=event.hash,
            )
            for event in events
        )

        return AuditTrace(entity_type=entity_type, entity_id=entity_id, entries=entries)
