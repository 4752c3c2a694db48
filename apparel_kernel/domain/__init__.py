"""
Pure domain layer.

Value objects and DTOs with no dependency on the ORM, the database or the
clock.  All domain objects are immutable.
"""

from apparel_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from apparel_kernel.domain.dtos import (
    JournalEntryInfo,
    JournalLineInfo,
    JournalLineSpec,
    LedgerEntryInfo,
    LedgerOp,
    PeriodInfo,
    PlannedLedgerEntry,
    PostingContext,
    PostingResult,
    StockBalanceInfo,
    StockKey,
)
from apparel_kernel.domain.values import (
    CogsRecognition,
    CostBreakdown,
    Direction,
    LedgerKind,
    PeriodStatus,
    PostingSource,
    ProductionStage,
)

__all__ = [
    "Clock",
    "DeterministicClock",
    "SystemClock",
    "CogsRecognition",
    "CostBreakdown",
    "Direction",
    "LedgerKind",
    "PeriodStatus",
    "PostingSource",
    "ProductionStage",
    "JournalEntryInfo",
    "JournalLineInfo",
    "JournalLineSpec",
    "LedgerEntryInfo",
    "LedgerOp",
    "PeriodInfo",
    "PlannedLedgerEntry",
    "PostingContext",
    "PostingResult",
    "StockBalanceInfo",
    "StockKey",
]
