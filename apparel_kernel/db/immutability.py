"""
ORM-level immutability enforcement.

Stock movements, journal entries and audit events are facts: once written
they are only ever offset by new rows, never changed.  SQLAlchemy fires
mapper events before an UPDATE or DELETE reaches the database; the
listeners registered here inspect the target and raise
ImmutabilityViolationError, which aborts the flush.

    session.flush()
         |
         v
    [before_update / before_delete] --> _check_*() --> ImmutabilityViolationError
         |
         v
    SQL sent to database (only if checks pass)

Protected entities:

    Entity                | When immutable                 | Mutable fields
    ----------------------|--------------------------------|------------------------
    InventoryLedgerEntry  | always                         | none
    JournalEntry          | always (only POSTED exists)    | none
    JournalLine           | always                         | none
    AuditEvent            | always                         | none
    AccountingPeriod      | structure always; delete when  | status, closed_at,
                          | CLOSED                         | closed_by_id, reopen_count
    BillOfMaterials       | lines and quantities once not  | status
                          | DRAFT                          |
    BomLine               | once the parent BOM is not     | none
                          | DRAFT                          |

updated_at / updated_by_id are audit metadata and always allowed to change.

StockBalance is NOT protected: it is a projection, rewritten on every
movement and recomputable from the ledger.

Usage:

    from apparel_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()  # once at startup

    # tests only
    unregister_immutability_listeners()
"""

from sqlalchemy import event, select
from sqlalchemy.orm.attributes import get_history

from apparel_kernel.exceptions import ImmutabilityViolationError
from apparel_kernel.logging_config import get_logger

logger = get_logger("db.immutability")

AUDIT_METADATA_FIELDS = frozenset({"updated_at", "updated_by_id"})

PERIOD_MUTABLE_FIELDS = AUDIT_METADATA_FIELDS | {
    "status",
    "closed_at",
    "closed_by_id",
    "reopen_count",
}

BOM_MUTABLE_FIELDS = AUDIT_METADATA_FIELDS | {"status"}


def _changed_fields(target, candidates) -> set[str]:
    changed = set()
    for name in candidates:
        history = get_history(target, name)
        if history.has_changes():
            changed.add(name)
    return changed


def _column_names(mapper) -> list[str]:
    return [attr.key for attr in mapper.column_attrs]


def _block(entity_type: str, entity_id, operation: str, reason: str):
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(entity_id),
            "operation": operation,
        },
    )
    raise ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=str(entity_id),
        reason=reason,
    )


# =============================================================================
# Append-only records
# =============================================================================


def _check_append_only_update(mapper, connection, target):
    """Any UPDATE of a ledger entry, journal entry/line or audit event."""
    _block(
        type(target).__name__,
        target.id,
        "UPDATE",
        "append-only record cannot be modified; post a reversal instead",
    )


def _check_append_only_delete(mapper, connection, target):
    _block(
        type(target).__name__,
        target.id,
        "DELETE",
        "append-only record cannot be deleted",
    )


# =============================================================================
# Periods
# =============================================================================


def _check_period_update(mapper, connection, target):
    """Only the lifecycle fields of a period may change."""
    frozen = set(_column_names(mapper)) - PERIOD_MUTABLE_FIELDS
    changed = _changed_fields(target, frozen)
    if changed:
        _block(
            "AccountingPeriod",
            target.id,
            "UPDATE",
            f"period structure is immutable (attempted: {sorted(changed)})",
        )


def _check_period_delete(mapper, connection, target):
    from apparel_kernel.domain.values import PeriodStatus

    if target.status == PeriodStatus.CLOSED:
        _block("AccountingPeriod", target.id, "DELETE", "closed periods cannot be deleted")


# =============================================================================
# Bills of materials
# =============================================================================


def _bom_was_draft(target) -> bool:
    from apparel_kernel.models.bom import BomStatus

    history = get_history(target, "status")
    previous = history.deleted[0] if history.deleted else target.status
    return previous == BomStatus.DRAFT


def _check_bom_update(mapper, connection, target):
    if _bom_was_draft(target):
        return
    frozen = set(_column_names(mapper)) - BOM_MUTABLE_FIELDS
    changed = _changed_fields(target, frozen)
    if changed:
        _block(
            "BillOfMaterials",
            target.id,
            "UPDATE",
            f"only a draft BOM can be edited (attempted: {sorted(changed)})",
        )


def _parent_bom_status(connection, bom_id):
    from apparel_kernel.models.bom import BillOfMaterials

    return connection.execute(
        select(BillOfMaterials.__table__.c.status).where(
            BillOfMaterials.__table__.c.id == str(bom_id)
        )
    ).scalar()


def _check_bom_line_change(operation: str):
    def _check(mapper, connection, target):
        from apparel_kernel.models.bom import BomStatus

        status = _parent_bom_status(connection, target.bom_id)
        if status is not None and status != BomStatus.DRAFT.value:
            _block(
                "BomLine",
                target.id,
                operation,
                f"lines of a {status} BOM are frozen",
            )

    return _check


_check_bom_line_insert = _check_bom_line_change("INSERT")
_check_bom_line_update = _check_bom_line_change("UPDATE")
_check_bom_line_delete = _check_bom_line_change("DELETE")


def _listener_table():
    from apparel_kernel.models.audit_event import AuditEvent
    from apparel_kernel.models.bom import BillOfMaterials, BomLine
    from apparel_kernel.models.journal import JournalEntry, JournalLine
    from apparel_kernel.models.ledger import InventoryLedgerEntry
    from apparel_kernel.models.period import AccountingPeriod

    table = []
    for model in (InventoryLedgerEntry, JournalEntry, JournalLine, AuditEvent):
        table.append((model, "before_update", _check_append_only_update))
        table.append((model, "before_delete", _check_append_only_delete))
    table.extend([
        (AccountingPeriod, "before_update", _check_period_update),
        (AccountingPeriod, "before_delete", _check_period_delete),
        (BillOfMaterials, "before_update", _check_bom_update),
        (BomLine, "before_insert", _check_bom_line_insert),
        (BomLine, "before_update", _check_bom_line_update),
        (BomLine, "before_delete", _check_bom_line_delete),
    ])
    return table


def register_immutability_listeners():
    """
    Register all immutability event listeners.  Idempotent.

    Call after the models are importable and before any write.
    """
    for target, event_name, listener_fn in _listener_table():
        if not event.contains(target, event_name, listener_fn):
            event.listen(target, event_name, listener_fn)


def _safe_remove_listener(target, event_name, listener_fn):
    """Remove an event listener, ignoring it if not registered."""
    if event.contains(target, event_name, listener_fn):
        event.remove(target, event_name, listener_fn)


def unregister_immutability_listeners():
    """
    Remove the immutability listeners.

    WARNING: tests only, to plant tampered rows and check detection.
    """
    for target, event_name, listener_fn in _listener_table():
        _safe_remove_listener(target, event_name, listener_fn)
