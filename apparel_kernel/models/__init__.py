"""ORM models for the apparel kernel."""

from apparel_kernel.models.audit_event import AuditAction, AuditEvent
from apparel_kernel.models.bom import BillOfMaterials, BomLine, BomStatus
from apparel_kernel.models.journal import JournalEntry, JournalEntryStatus, JournalLine
from apparel_kernel.models.ledger import InventoryLedgerEntry, StockBalance
from apparel_kernel.models.period import AccountingPeriod
from apparel_kernel.models.sequence import SequenceCounter

__all__ = [
    "AccountingPeriod",
    "AuditAction",
    "AuditEvent",
    "BillOfMaterials",
    "BomLine",
    "BomStatus",
    "InventoryLedgerEntry",
    "JournalEntry",
    "JournalEntryStatus",
    "JournalLine",
    "SequenceCounter",
    "StockBalance",
]
