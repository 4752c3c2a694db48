"""
Production Domain Models (``apparel_modules.production.models``).

Responsibility
--------------
Frozen value objects for production orders: the order itself, its
material reservations, its per-stage cost pools, the MRP check result and
the outcome of a stage move or completion.

Architecture
------------
Layer: **Modules** -- pure domain data structures, no database identity and
no I/O.  Built from ORM rows by ``orm.py`` ``to_dto`` methods.

Invariants
----------
- ``ReservationInfo.outstanding`` is never negative.
- All quantities and amounts are ``Decimal``.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from uuid import UUID

from apparel_engines.costing import StageCompletion
from apparel_kernel.domain.dtos import PostingResult
from apparel_kernel.domain.values import ProductionStage


class ProductionOrderStatus(str, Enum):
    PLANNED = "planned"
    RELEASED = "released"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CLOSED = "closed"
    CANCELLED = "cancelled"


class StageCostStatus(str, Enum):
    OPEN = "open"
    COMPLETED = "completed"


class MrpAction(str, Enum):
    """What the planner must do about one material."""

    OK = "OK"
    PARTIAL = "PARTIAL"  # some stock, not enough
    PURCHASE = "PURCHASE"  # nothing available


@dataclass(frozen=True)
class ReservationInfo:
    material_key: str
    stage: ProductionStage
    qty_required: Decimal
    qty_issued: Decimal

    @property
    def outstanding(self) -> Decimal:
        return max(self.qty_required - self.qty_issued, Decimal("0"))


@dataclass(frozen=True)
class StageCostInfo:
    stage: ProductionStage
    units: Decimal
    cost_material: Decimal
    cost_labor: Decimal
    cost_overhead: Decimal
    status: StageCostStatus
    unit_cost: Decimal | None = None
    qty_good: Decimal | None = None
    qty_rejected: Decimal | None = None

    @property
    def total(self) -> Decimal:
        return self.cost_material + self.cost_labor + self.cost_overhead


@dataclass(frozen=True)
class ProductionOrderInfo:
    id: UUID
    scope_id: str
    order_number: str
    product_key: str
    bom_id: UUID
    qty_planned: Decimal
    qty_completed: Decimal
    qty_rejected: Decimal
    status: ProductionOrderStatus
    current_stage: ProductionStage | None
    finished_location_key: str
    standard_unit_cost: Decimal | None
    actual_unit_cost: Decimal | None
    unit_cost_variance: Decimal | None
    reservations: tuple[ReservationInfo, ...] = ()
    stage_costs: tuple[StageCostInfo, ...] = ()

    def reservation(self, material_key: str, stage: ProductionStage) -> ReservationInfo | None:
        for r in self.reservations:
            if r.material_key == material_key and r.stage == ProductionStage(stage):
                return r
        return None


@dataclass(frozen=True)
class MrpLine:
    material_key: str
    gross_requirement: Decimal
    on_hand: Decimal
    reserved_by_others: Decimal
    net_requirement: Decimal
    action: MrpAction


@dataclass(frozen=True)
class MrpResult:
    order_number: str
    lines: tuple[MrpLine, ...]

    @property
    def shortages(self) -> dict[str, Decimal]:
        return {
            line.material_key: line.net_requirement
            for line in self.lines
            if line.net_requirement > 0
        }

    @property
    def can_release(self) -> bool:
        return all(line.action != MrpAction.PURCHASE for line in self.lines)


@dataclass(frozen=True)
class StageMoveResult:
    """Outcome of a stage move or of order completion."""

    order_number: str
    from_stage: ProductionStage
    to_stage: ProductionStage | None  # None when completed into finished goods
    completion: StageCompletion
    labor: Decimal
    overhead: Decimal
    posting: PostingResult
