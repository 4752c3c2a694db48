"""
apparel_engines.costing -- stage cost pools and stage completion.

Responsibility:
    Accumulates material, labor and overhead per production stage and
    splits a completed stage's pool between good output (carried forward)
    and rejected output (written off as a production loss).

Architecture position:
    Engines -- pure calculation layer, zero I/O.  The production module
    persists pools as ProductionStageCost rows and posts the amounts this
    engine returns.

Invariants enforced:
    - unit_cost = pool total / units processed, where units processed is
      good + rejected output of the stage.
    - good_value + loss_value == pool total exactly.  The good value is
      rounded to money precision and the loss takes the remainder.
    - The good output keeps the pool's material / labor / overhead
      proportions (CostBreakdown.prorate).

Failure modes:
    - ValueError when good + rejected does not equal the units in the
      stage, or when no unit is processed.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from apparel_engines.tracer import traced_engine
from apparel_kernel.db.types import round_money, round_unit_cost, to_decimal
from apparel_kernel.domain.values import CostBreakdown, ProductionStage
from apparel_kernel.logging_config import get_logger

logger = get_logger("engines.costing")

ZERO = Decimal("0")


_CATEGORIES = ("material", "labor", "overhead")


def split_pool(pool: CostBreakdown, target: Decimal) -> CostBreakdown:
    """
    The share of ``pool`` worth ``target``, keeping category proportions.

    Every category of the share stays within the pool's category, so the
    remainder (pool minus share) is never negative.
    """
    if target >= pool.total:
        return pool
    prorated = pool.prorate(target)
    share = {name: min(getattr(prorated, name), getattr(pool, name)) for name in _CATEGORIES}
    gap = target - sum(share.values())
    for name in _CATEGORIES:
        if gap == 0:
            break
        if gap > 0:
            step = min(gap, getattr(pool, name) - share[name])
        else:
            step = -min(-gap, share[name])
        share[name] += step
        gap -= step
    return CostBreakdown(**share)


@dataclass(frozen=True)
class StageCompletion:
    """Result of closing one stage pool."""

    stage: ProductionStage
    units: Decimal
    qty_good: Decimal
    qty_rejected: Decimal
    pool: CostBreakdown
    unit_cost: Decimal
    good: CostBreakdown
    loss: CostBreakdown

    @property
    def good_value(self) -> Decimal:
        return self.good.total

    @property
    def loss_value(self) -> Decimal:
        return self.loss.total


@dataclass
class StageCostPool:
    """
    Cost accumulated in one production stage of one order.

    ``units`` is the number of product units that entered the stage.
    """

    stage: ProductionStage
    units: Decimal
    material: Decimal = ZERO
    labor: Decimal = ZERO
    overhead: Decimal = ZERO

    def __post_init__(self) -> None:
        self.stage = ProductionStage(self.stage)
        self.units = to_decimal(self.units)
        if self.units <= 0:
            raise ValueError(f"units must be > 0, got {self.units}")

    @property
    def breakdown(self) -> CostBreakdown:
        return CostBreakdown(material=self.material, labor=self.labor, overhead=self.overhead)

    @property
    def total(self) -> Decimal:
        return self.material + self.labor + self.overhead

    def _add(self, category: str, amount: Decimal) -> None:
        amount = round_money(to_decimal(amount))
        if amount < 0:
            raise ValueError(f"{category} amount cannot be negative: {amount}")
        setattr(self, category, getattr(self, category) + amount)

    def add_material(self, amount: Decimal) -> None:
        self._add("material", amount)

    def add_labor(self, amount: Decimal) -> None:
        self._add("labor", amount)

    def add_overhead(self, amount: Decimal) -> None:
        self._add("overhead", amount)

    def absorb(self, carried: CostBreakdown) -> None:
        """Take in the value carried forward from the previous stage."""
        self._add("material", carried.material)
        self._add("labor", carried.labor)
        self._add("overhead", carried.overhead)

    @traced_engine("stage_completion", "1.0", fingerprint_fields=("qty_good", "qty_rejected"))
    def complete(self, *, qty_good: Decimal, qty_rejected: Decimal = ZERO) -> StageCompletion:
        """
        Close the pool for ``qty_good`` good and ``qty_rejected`` rejected units.

        Raises:
            ValueError: negative quantities, nothing processed, or
                good + rejected different from the units in the stage.
        """
        qty_good = to_decimal(qty_good)
        qty_rejected = to_decimal(qty_rejected)
        if qty_good < 0 or qty_rejected < 0:
            raise ValueError("good and rejected quantities cannot be negative")
        processed = qty_good + qty_rejected
        if processed <= 0:
            raise ValueError("a stage completion must process at least one unit")
        if processed != self.units:
            raise ValueError(
                f"stage {self.stage.value} holds {self.units} units, "
                f"completion reports {processed}"
            )

        pool = self.breakdown
        unit_cost = round_unit_cost(pool.total / processed)
        good_value = round_money(unit_cost * qty_good)
        if good_value > pool.total:
            good_value = pool.total
        good = split_pool(pool, good_value)
        loss = CostBreakdown(
            material=pool.material - good.material,
            labor=pool.labor - good.labor,
            overhead=pool.overhead - good.overhead,
        )

        logger.info(
            "stage_pool_completed",
            extra={
                "stage": self.stage.value,
                "pool_total": str(pool.total),
                "unit_cost": str(unit_cost),
                "qty_good": str(qty_good),
                "qty_rejected": str(qty_rejected),
                "loss_value": str(loss.total),
            },
        )

        return StageCompletion(
            stage=self.stage,
            units=processed,
            qty_good=qty_good,
            qty_rejected=qty_rejected,
            pool=pool,
            unit_cost=unit_cost,
            good=good,
            loss=loss,
        )
