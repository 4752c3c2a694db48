"""
Typed exception hierarchy for the apparel ledger kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Workflows built on top of the kernel (purchase receipt, production stage
move, sale) must explain *why* a transaction was rejected.  A rejected issue
has to surface "available 4, requested 6", not a string to be parsed.

Every error therefore:
  1. has its own class (catch by type, never by message),
  2. carries a class-level ``code`` (machine-readable, API-safe),
  3. stores its structured detail as instance attributes.

    try:
        poster.post_transaction(...)
    except InsufficientStockError as e:
        return {"error": e.code, "available": e.available, "requested": e.requested}

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    ApparelLedgerError (base)
    |
    +-- ValidationError                  caller-fixable, not retryable as-is
    |   +-- UnbalancedJournalError
    |   +-- InvalidJournalLineError
    |   +-- InsufficientStockError
    |   +-- InvalidLedgerOpError
    |   +-- PeriodClosedError
    |   +-- PeriodOverlapError
    |   +-- PeriodCloseBlockedError
    |   +-- EntryDateOutsidePeriodError
    |   +-- EntryAlreadyReversedError
    |   +-- ReversalNotAllowedError
    |   +-- CircularBomError
    |   +-- BomDepthExceededError
    |   +-- BomStateError
    |   +-- OverReceiptError
    |   +-- ReservationExceededError
    |   +-- MaterialShortageError
    |   +-- InvalidOrderTransitionError
    |   +-- StageMismatchError
    |   +-- CogsAlreadyRecognizedError
    |   +-- TrustedContextError
    |
    +-- ConcurrencyConflictError         retryable by the caller
    |
    +-- IntegrityViolationError          bug or tamper attempt, never recoverable
    |   +-- ImmutabilityViolationError
    |   +-- AuditChainBrokenError
    |
    +-- NotFoundError
        +-- PeriodNotFoundError
        +-- BomNotFoundError
        +-- ProductionOrderNotFoundError
        +-- JournalEntryNotFoundError
        +-- LedgerEntryNotFoundError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category     | Code                       | When Raised
-------------|----------------------------|-------------------------------------
Journal      | UNBALANCED_JOURNAL         | Sum of debits != sum of credits
             | INVALID_JOURNAL_LINE       | Line has both/neither side, negative
             | ENTRY_ALREADY_REVERSED     | Second reversal of the same entry
             | REVERSAL_NOT_ALLOWED       | Reversal must go through its owner
-------------|----------------------------|-------------------------------------
Ledger       | INSUFFICIENT_STOCK         | Out movement would go below zero
             | INVALID_LEDGER_OP          | qty <= 0, negative cost, bad breakdown
-------------|----------------------------|-------------------------------------
Period       | PERIOD_CLOSED              | Write against a closed period
             | PERIOD_OVERLAP             | Date range conflicts in the scope
             | PERIOD_CLOSE_BLOCKED       | Pre-close check failed
             | ENTRY_DATE_OUTSIDE_PERIOD  | Entry date not inside the period
-------------|----------------------------|-------------------------------------
BOM          | CIRCULAR_BOM               | Product is its own ancestor
             | BOM_DEPTH_EXCEEDED         | Explosion deeper than max_depth
             | BOM_STATE                  | Edit of a non-draft BOM, bad status
-------------|----------------------------|-------------------------------------
Production   | OVER_RECEIPT               | Receipt beyond ordered + tolerance
             | RESERVATION_EXCEEDED       | Issue beyond outstanding reservation
             | MATERIAL_SHORTAGE          | Release with unmet requirements
             | INVALID_ORDER_TRANSITION   | Status machine violation
             | STAGE_MISMATCH             | Operation targets the wrong stage
-------------|----------------------------|-------------------------------------
Sales        | COGS_ALREADY_RECOGNIZED    | Deferred COGS recognized twice
-------------|----------------------------|-------------------------------------
Concurrency  | CONCURRENCY_CONFLICT       | Guard timeout / lock conflict
-------------|----------------------------|-------------------------------------
Integrity    | IMMUTABILITY_VIOLATION     | Update/delete of an immutable row
             | AUDIT_CHAIN_BROKEN         | Hash chain validation failed
-------------|----------------------------|-------------------------------------
Lookup       | *_NOT_FOUND                | Unknown period, BOM, order, entry

===============================================================================
"""

from decimal import Decimal


class ApparelLedgerError(Exception):
    """
    Base exception for all ledger kernel errors.

    All subclasses carry a ``code`` class attribute.
    """

    code: str = "APPAREL_LEDGER_ERROR"


# =============================================================================
# Validation errors (caller-fixable)
# =============================================================================


class ValidationError(ApparelLedgerError):
    """Base for caller-fixable errors.  Retrying the same input fails again."""

    code: str = "VALIDATION_ERROR"


class UnbalancedJournalError(ValidationError):
    """Journal lines do not balance."""

    code: str = "UNBALANCED_JOURNAL"

    def __init__(self, debit_total: Decimal, credit_total: Decimal):
        self.debit_total = debit_total
        self.credit_total = credit_total
        super().__init__(
            f"Journal entry is unbalanced: debits={debit_total}, "
            f"credits={credit_total}"
        )


class InvalidJournalLineError(ValidationError):
    """A journal line violates the one-side-positive rule."""

    code: str = "INVALID_JOURNAL_LINE"

    def __init__(self, line_no: int, reason: str):
        self.line_no = line_no
        self.reason = reason
        super().__init__(f"Invalid journal line {line_no}: {reason}")


class EntryAlreadyReversedError(ValidationError):
    """The journal or ledger entry already has a reversal."""

    code: str = "ENTRY_ALREADY_REVERSED"

    def __init__(self, entry_id: str, reversal_id: str):
        self.entry_id = entry_id
        self.reversal_id = reversal_id
        super().__init__(
            f"Entry {entry_id} is already reversed by {reversal_id}"
        )


class ReversalNotAllowedError(ValidationError):
    """
    The entry cannot be reversed here: its owning workflow must reverse it,
    or later postings already build on it.
    """

    code: str = "REVERSAL_NOT_ALLOWED"

    def __init__(self, entry_ref: str, reason: str):
        self.entry_ref = entry_ref
        self.reason = reason
        super().__init__(f"Entry {entry_ref} cannot be reversed: {reason}")


class InsufficientStockError(ValidationError):
    """An out movement would drive the projected balance below zero."""

    code: str = "INSUFFICIENT_STOCK"

    def __init__(
        self,
        ledger: str,
        item_key: str,
        location_key: str,
        available: Decimal,
        requested: Decimal,
    ):
        self.ledger = ledger
        self.item_key = item_key
        self.location_key = location_key
        self.available = available
        self.requested = requested
        super().__init__(
            f"Insufficient stock for {ledger}:{item_key}@{location_key}. "
            f"Available: {available}, Requested: {requested}"
        )


class InvalidLedgerOpError(ValidationError):
    """A ledger operation fails its own preconditions."""

    code: str = "INVALID_LEDGER_OP"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Invalid ledger operation: {reason}")


class PeriodClosedError(ValidationError):
    """A write targets a closed period."""

    code: str = "PERIOD_CLOSED"

    def __init__(self, period_code: str):
        self.period_code = period_code
        super().__init__(f"Accounting period {period_code} is closed")


class PeriodOverlapError(ValidationError):
    """The new period's date range overlaps an existing period of the scope."""

    code: str = "PERIOD_OVERLAP"

    def __init__(
        self,
        new_period_code: str,
        existing_period_code: str,
        overlap_start: str,
        overlap_end: str,
    ):
        self.new_period_code = new_period_code
        self.existing_period_code = existing_period_code
        self.overlap_start = overlap_start
        self.overlap_end = overlap_end
        super().__init__(
            f"Period {new_period_code} overlaps {existing_period_code} "
            f"({overlap_start} to {overlap_end})"
        )


class PeriodCloseBlockedError(ValidationError):
    """A pre-close check failed; the period was not touched."""

    code: str = "PERIOD_CLOSE_BLOCKED"

    # Reasons
    WIP_NOT_ZERO = "wip_not_zero"
    JOURNAL_UNBALANCED = "journal_unbalanced"
    UNPOSTED_DOCUMENTS = "unposted_documents"
    ALREADY_CLOSED = "already_closed"

    def __init__(self, period_code: str, reason: str, details: dict | None = None):
        self.period_code = period_code
        self.reason = reason
        self.details = details or {}
        super().__init__(f"Cannot close period {period_code}: {reason}")


class EntryDateOutsidePeriodError(ValidationError):
    """The entry date is not inside the target period's date range."""

    code: str = "ENTRY_DATE_OUTSIDE_PERIOD"

    def __init__(self, period_code: str, entry_date: str):
        self.period_code = period_code
        self.entry_date = entry_date
        super().__init__(
            f"Entry date {entry_date} is outside period {period_code}"
        )


class CircularBomError(ValidationError):
    """A product appears as its own ancestor in a BOM tree."""

    code: str = "CIRCULAR_BOM"

    def __init__(self, path: list[str]):
        self.path = list(path)
        super().__init__(f"Circular BOM reference: {' -> '.join(self.path)}")


class BomDepthExceededError(ValidationError):
    """BOM explosion went deeper than the configured limit."""

    code: str = "BOM_DEPTH_EXCEEDED"

    def __init__(self, product_key: str, max_depth: int):
        self.product_key = product_key
        self.max_depth = max_depth
        super().__init__(
            f"BOM explosion of {product_key} exceeded max depth {max_depth}"
        )


class BomStateError(ValidationError):
    """The BOM is not in a state that allows the requested change."""

    code: str = "BOM_STATE"

    def __init__(self, bom_id: str, status: str, action: str):
        self.bom_id = bom_id
        self.status = status
        self.action = action
        super().__init__(f"Cannot {action} BOM {bom_id} in status {status}")


class OverReceiptError(ValidationError):
    """Received quantity exceeds the ordered quantity plus tolerance."""

    code: str = "OVER_RECEIPT"

    def __init__(
        self,
        item_key: str,
        ordered_qty: Decimal,
        received_qty: Decimal,
        requested: Decimal,
    ):
        self.item_key = item_key
        self.ordered_qty = ordered_qty
        self.received_qty = received_qty
        self.requested = requested
        super().__init__(
            f"Over-receipt of {item_key}: ordered {ordered_qty}, "
            f"already received {received_qty}, receiving {requested}"
        )


class ReservationExceededError(ValidationError):
    """Issue quantity exceeds the outstanding reservation."""

    code: str = "RESERVATION_EXCEEDED"

    def __init__(self, order_number: str, material_key: str, outstanding: Decimal, requested: Decimal):
        self.order_number = order_number
        self.material_key = material_key
        self.outstanding = outstanding
        self.requested = requested
        super().__init__(
            f"Order {order_number}: cannot issue {requested} of {material_key}, "
            f"outstanding reservation is {outstanding}"
        )


class MaterialShortageError(ValidationError):
    """Release refused because material must be purchased first."""

    code: str = "MATERIAL_SHORTAGE"

    def __init__(self, order_number: str, shortages: dict[str, Decimal]):
        self.order_number = order_number
        self.shortages = dict(shortages)
        super().__init__(
            f"Order {order_number} has material shortages: "
            + ", ".join(f"{k}={v}" for k, v in sorted(self.shortages.items()))
        )


class InvalidOrderTransitionError(ValidationError):
    """Production order status machine violation."""

    code: str = "INVALID_ORDER_TRANSITION"

    def __init__(self, order_number: str, from_status: str, to_status: str):
        self.order_number = order_number
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Order {order_number} cannot go from {from_status} to {to_status}"
        )


class StageMismatchError(ValidationError):
    """The operation names a stage the order is not currently in."""

    code: str = "STAGE_MISMATCH"

    def __init__(self, order_number: str, current_stage: str | None, requested_stage: str):
        self.order_number = order_number
        self.current_stage = current_stage
        self.requested_stage = requested_stage
        super().__init__(
            f"Order {order_number} is at stage {current_stage}, "
            f"not {requested_stage}"
        )


class CogsAlreadyRecognizedError(ValidationError):
    """Deferred COGS of a sale has already been recognized."""

    code: str = "COGS_ALREADY_RECOGNIZED"

    def __init__(self, sale_ref: str):
        self.sale_ref = sale_ref
        super().__init__(f"COGS of sale {sale_ref} is already recognized")


class TrustedContextError(ValidationError):
    """A trusted posting context was requested without a reason."""

    code: str = "TRUSTED_CONTEXT_INVALID"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Invalid trusted context: {reason}")


# =============================================================================
# Concurrency
# =============================================================================


class ConcurrencyConflictError(ApparelLedgerError):
    """A guard or row lock could not be acquired in time.  Safe to retry."""

    code: str = "CONCURRENCY_CONFLICT"

    def __init__(self, resource: str, timeout_seconds: float | None = None):
        self.resource = resource
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Concurrency conflict on {resource}"
            + (f" after {timeout_seconds}s" if timeout_seconds is not None else "")
        )


# =============================================================================
# Integrity (fatal)
# =============================================================================


class IntegrityViolationError(ApparelLedgerError):
    """A bug or tamper attempt.  Never caught and retried."""

    code: str = "INTEGRITY_VIOLATION"

    def __init__(self, message: str):
        super().__init__(message)


class ImmutabilityViolationError(IntegrityViolationError):
    """Attempt to update or delete an immutable record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Cannot modify {entity_type} {entity_id}: {reason}"
        )


class AuditChainBrokenError(IntegrityViolationError):
    """Audit hash chain validation failed."""

    code: str = "AUDIT_CHAIN_BROKEN"

    def __init__(self, event_id: str, expected_hash: str, actual_hash: str):
        self.event_id = event_id
        self.expected_hash = expected_hash
        self.actual_hash = actual_hash
        super().__init__(
            f"Audit chain broken at event {event_id}: "
            f"expected {expected_hash}, got {actual_hash}"
        )


# =============================================================================
# Lookups
# =============================================================================


class NotFoundError(ApparelLedgerError):
    """Unknown reference."""

    code: str = "NOT_FOUND"


class PeriodNotFoundError(NotFoundError):
    code: str = "PERIOD_NOT_FOUND"

    def __init__(self, period_ref: str):
        self.period_ref = period_ref
        super().__init__(f"Accounting period not found: {period_ref}")


class BomNotFoundError(NotFoundError):
    code: str = "BOM_NOT_FOUND"

    def __init__(self, bom_ref: str):
        self.bom_ref = bom_ref
        super().__init__(f"Bill of materials not found: {bom_ref}")


class ProductionOrderNotFoundError(NotFoundError):
    code: str = "PRODUCTION_ORDER_NOT_FOUND"

    def __init__(self, order_ref: str):
        self.order_ref = order_ref
        super().__init__(f"Production order not found: {order_ref}")


class JournalEntryNotFoundError(NotFoundError):
    code: str = "JOURNAL_ENTRY_NOT_FOUND"

    def __init__(self, entry_id: str):
        self.entry_id = entry_id
        super().__init__(f"Journal entry not found: {entry_id}")


class LedgerEntryNotFoundError(NotFoundError):
    code: str = "LEDGER_ENTRY_NOT_FOUND"

    def __init__(self, entry_id: str):
        self.entry_id = entry_id
        super().__init__(f"Ledger entry not found: {entry_id}")
