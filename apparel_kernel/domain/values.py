"""
Values -- immutable domain value objects shared by the kernel and engines.

Responsibility:
    The production stage pipeline, the WIP cost breakdown, the posting
    source reference and the COGS recognition policy.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.  Imported by models,
    services, engines and modules.

Invariants enforced:
    - ProductionStage is the fixed CUT -> SEW -> FINISH pipeline.
    - CostBreakdown components are never negative and never floats.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum

from apparel_kernel.db.types import round_money, to_decimal


class LedgerKind(str, Enum):
    """The three logical inventory ledgers."""

    RAW = "raw"
    WIP = "wip"
    FINISHED = "finished"


class Direction(str, Enum):
    IN = "in"
    OUT = "out"

    def flipped(self) -> Direction:
        return Direction.OUT if self == Direction.IN else Direction.IN


class PeriodStatus(str, Enum):
    """Lifecycle status of an accounting period.

    Contract: OPEN -> CLOSED via close(), CLOSED -> OPEN via reopen().
    """

    OPEN = "open"
    CLOSED = "closed"


class ProductionStage(str, Enum):
    """The three-stage production pipeline."""

    CUT = "cut"
    SEW = "sew"
    FINISH = "finish"

    @property
    def next_stage(self) -> ProductionStage | None:
        """The stage after this one, None after FINISH."""
        order = list(ProductionStage)
        idx = order.index(self)
        return order[idx + 1] if idx + 1 < len(order) else None

    @property
    def previous_stage(self) -> ProductionStage | None:
        """The stage before this one, None before CUT."""
        order = list(ProductionStage)
        idx = order.index(self)
        return order[idx - 1] if idx > 0 else None

    @classmethod
    def first(cls) -> ProductionStage:
        return cls.CUT


class CogsRecognition(str, Enum):
    """
    Moment at which cost of goods sold is recognized for a sale.

    The calling workflow chooses; the kernel never assumes either.
    """

    AT_DELIVERY = "at_delivery"
    AT_INVOICE = "at_invoice"


@dataclass(frozen=True)
class CostBreakdown:
    """
    Material / labor / overhead split of a WIP value.

    Guarantees:
        - All components are Decimal and >= 0.
    """

    material: Decimal = Decimal("0")
    labor: Decimal = Decimal("0")
    overhead: Decimal = Decimal("0")

    def __post_init__(self) -> None:
        for name in ("material", "labor", "overhead"):
            value = to_decimal(getattr(self, name))
            if value < 0:
                raise ValueError(f"Cost component {name} cannot be negative: {value}")
            object.__setattr__(self, name, value)

    @property
    def total(self) -> Decimal:
        return self.material + self.labor + self.overhead

    def __add__(self, other: CostBreakdown) -> CostBreakdown:
        return CostBreakdown(
            material=self.material + other.material,
            labor=self.labor + other.labor,
            overhead=self.overhead + other.overhead,
        )

    def prorate(self, target_total: Decimal) -> CostBreakdown:
        """
        Scale to ``target_total`` keeping the category proportions.

        Material and labor are rounded to money precision; overhead absorbs
        the remainder so the result sums exactly to ``target_total``.
        """
        if self.total == 0:
            return CostBreakdown()
        ratio = target_total / self.total
        material = round_money(self.material * ratio)
        labor = round_money(self.labor * ratio)
        overhead = target_total - material - labor
        if overhead < 0:
            # Rounding pushed the first two past the target
            labor += overhead
            overhead = Decimal("0")
        return CostBreakdown(material=material, labor=labor, overhead=overhead)

    def as_dict(self) -> dict[str, str]:
        return {
            "material": str(self.material),
            "labor": str(self.labor),
            "overhead": str(self.overhead),
        }


@dataclass(frozen=True)
class PostingSource:
    """
    What caused a posting: a purchase receipt, a production order, a sale.

    source_type "reversal" is reserved for corrections.
    """

    source_type: str
    source_id: str
    source_ref: str | None = None

    REVERSAL = "reversal"

    def __post_init__(self) -> None:
        if not self.source_type:
            raise ValueError("source_type is required")
        if not self.source_id:
            raise ValueError("source_id is required")

    @property
    def is_reversal(self) -> bool:
        return self.source_type == self.REVERSAL
