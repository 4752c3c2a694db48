"""Services for the apparel ledger kernel (write side)."""

from apparel_kernel.services.auditor_service import AuditorService
from apparel_kernel.services.bom_service import BomService, MasterDataGateway
from apparel_kernel.services.journal_engine import JournalEngine
from apparel_kernel.services.ledger_store import LedgerStore
from apparel_kernel.services.period_controller import PeriodController, UnpostedDocumentCheck
from apparel_kernel.services.sequence_service import SequenceService
from apparel_kernel.services.stock_guard import (
    StockGuard,
    configure_stock_guard,
    get_stock_guard,
)
from apparel_kernel.services.transactional_poster import TransactionalPoster

__all__ = [
    "AuditorService",
    "BomService",
    "JournalEngine",
    "LedgerStore",
    "MasterDataGateway",
    "PeriodController",
    "SequenceService",
    "StockGuard",
    "TransactionalPoster",
    "UnpostedDocumentCheck",
    "configure_stock_guard",
    "get_stock_guard",
]
