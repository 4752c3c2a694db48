"""
apparel_engines.bom_explosion -- multi-level bill of materials explosion.

Responsibility:
    Turns "make N units of product P" into the raw material requirement
    per (material, stage) by walking the BOM tree depth-first.

Architecture position:
    Engines -- pure calculation layer, zero I/O.  BOM versions arrive as
    immutable snapshots through a lookup callable; the kernel BomService
    supplies one backed by the database.

Invariants enforced:
    - Component requirement = qty_per * (parent_qty / base_qty)
      * (1 + scrap_pct / 100).  Scrap compounds level by level.
    - A product appearing twice on one root-to-leaf path is a cycle;
      the same sub-product on two separate branches is not.
    - The walk never descends deeper than max_depth levels.
    - Output is aggregated by (material_key, stage) and ordered by stage
      pipeline position, then material key.  Identical inputs give
      identical output.

Failure modes:
    - CircularBomError(path) on a cycle.
    - BomDepthExceededError when the tree is deeper than max_depth.
    - BomNotFoundError when a product or sub-product has no usable BOM.
    No partial output is ever returned.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from decimal import Decimal

from apparel_engines.tracer import traced_engine
from apparel_kernel.db.types import round_quantity, to_decimal
from apparel_kernel.domain.values import ProductionStage
from apparel_kernel.exceptions import (
    BomDepthExceededError,
    BomNotFoundError,
    CircularBomError,
)
from apparel_kernel.logging_config import get_logger

logger = get_logger("engines.bom_explosion")

DEFAULT_MAX_DEPTH = 10

HUNDRED = Decimal("100")


@dataclass(frozen=True)
class BomLineSnapshot:
    line_no: int
    qty_per: Decimal
    stage: str
    material_key: str | None = None
    sub_product_key: str | None = None
    scrap_pct: Decimal = Decimal("0")

    def __post_init__(self) -> None:
        if (self.material_key is None) == (self.sub_product_key is None):
            raise ValueError("A BOM line names exactly one of material_key / sub_product_key")
        object.__setattr__(self, "qty_per", to_decimal(self.qty_per))
        object.__setattr__(self, "scrap_pct", to_decimal(self.scrap_pct))
        if self.qty_per <= 0:
            raise ValueError(f"qty_per must be > 0, got {self.qty_per}")
        if not (Decimal("0") <= self.scrap_pct < HUNDRED):
            raise ValueError(f"scrap_pct must be in [0, 100), got {self.scrap_pct}")

    @property
    def component_key(self) -> str:
        return self.material_key or self.sub_product_key

    def requirement(self, parent_qty: Decimal, base_qty: Decimal) -> Decimal:
        """Quantity of this component needed for ``parent_qty`` units of the parent."""
        return self.qty_per * (parent_qty / base_qty) * (1 + self.scrap_pct / HUNDRED)


@dataclass(frozen=True)
class BomSnapshot:
    """One BOM version, frozen for explosion."""

    product_key: str
    version: int
    lines: tuple[BomLineSnapshot, ...]
    base_qty: Decimal = Decimal("1")
    yield_pct: Decimal = HUNDRED
    standard_labor_cost: Decimal = Decimal("0")
    standard_overhead_cost: Decimal = Decimal("0")
    bom_id: str | None = None

    def __post_init__(self) -> None:
        if self.base_qty <= 0:
            raise ValueError(f"base_qty must be > 0, got {self.base_qty}")
        if not (Decimal("0") < self.yield_pct <= HUNDRED):
            raise ValueError(f"yield_pct must be in (0, 100], got {self.yield_pct}")


@dataclass(frozen=True)
class ExplodedRequirement:
    material_key: str
    stage: str
    total_qty: Decimal


BomLookup = Callable[[str], "BomSnapshot | None"]


def _stage_rank(stage: str) -> int:
    stages = [s.value for s in ProductionStage]
    return stages.index(stage) if stage in stages else len(stages)


class BomExploder:
    """
    Depth-first BOM explosion over snapshot lookups.

    Contract:
        ``lookup(product_key)`` returns the BOM snapshot to use for a
        product, or None when the product has no usable BOM.
    """

    def __init__(self, lookup: BomLookup, max_depth: int = DEFAULT_MAX_DEPTH):
        if max_depth < 1:
            raise ValueError(f"max_depth must be >= 1, got {max_depth}")
        self._lookup = lookup
        self._max_depth = max_depth

    def _snapshot(self, product_key: str) -> BomSnapshot:
        snapshot = self._lookup(product_key)
        if snapshot is None:
            raise BomNotFoundError(product_key)
        return snapshot

    @traced_engine("bom_explosion", "1.0", fingerprint_fields=("product_key", "qty"))
    def explode(self, *, product_key: str, qty: Decimal) -> list[ExplodedRequirement]:
        """
        Raw material requirement for ``qty`` units of ``product_key``.

        Raises:
            ValueError: qty <= 0.
            CircularBomError, BomDepthExceededError, BomNotFoundError.
        """
        qty = to_decimal(qty)
        if qty <= 0:
            raise ValueError(f"qty must be > 0, got {qty}")

        totals: dict[tuple[str, str], Decimal] = defaultdict(Decimal)
        self._walk(product_key, qty, [product_key], totals)

        result = [
            ExplodedRequirement(material_key=material, stage=stage, total_qty=round_quantity(total))
            for (material, stage), total in totals.items()
        ]
        result.sort(key=lambda r: (_stage_rank(r.stage), r.stage, r.material_key))

        logger.info(
            "bom_exploded",
            extra={
                "product_key": product_key,
                "qty": str(qty),
                "requirement_count": len(result),
            },
        )
        return result

    def _walk(
        self,
        product_key: str,
        qty: Decimal,
        path: list[str],
        totals: dict[tuple[str, str], Decimal],
    ) -> None:
        if len(path) > self._max_depth:
            logger.warning(
                "bom_depth_exceeded",
                extra={"product_key": path[0], "max_depth": self._max_depth},
            )
            raise BomDepthExceededError(path[0], self._max_depth)

        snapshot = self._snapshot(product_key)
        for line in sorted(snapshot.lines, key=lambda l: l.line_no):
            required = line.requirement(qty, snapshot.base_qty)
            if line.material_key is not None:
                totals[(line.material_key, line.stage)] += required
                continue

            child = line.sub_product_key
            if child in path:
                cycle = path + [child]
                logger.warning("bom_cycle_detected", extra={"path": cycle})
                raise CircularBomError(cycle)
            self._walk(child, required, path + [child], totals)

    def find_cycle(self, parent_key: str, child_key: str) -> list[str] | None:
        """
        The cycle that adding ``child_key`` under ``parent_key`` would
        create, or None.  Used when authoring a BOM line.
        """
        if child_key == parent_key:
            return [parent_key, child_key]

        stack: list[tuple[str, list[str]]] = [(child_key, [parent_key, child_key])]
        while stack:
            product_key, path = stack.pop()
            if len(path) > self._max_depth + 1:
                continue
            snapshot = self._lookup(product_key)
            if snapshot is None:
                continue
            for line in snapshot.lines:
                sub = line.sub_product_key
                if sub is None:
                    continue
                if sub == parent_key:
                    return path + [sub]
                if sub not in path:
                    stack.append((sub, path + [sub]))
        return None

    @traced_engine("bom_standard_cost", "1.0", fingerprint_fields=("product_key",))
    def standard_unit_cost(
        self,
        *,
        product_key: str,
        material_cost: Callable[[str], Decimal],
    ) -> Decimal:
        """
        Standard cost of one unit of ``product_key``.

        Material for one unit, grossed up by the BOM yield, plus the BOM's
        standard labor and overhead per unit.
        """
        snapshot = self._snapshot(product_key)
        requirements = self.explode(product_key=product_key, qty=Decimal("1"))
        material = sum(
            (req.total_qty * to_decimal(material_cost(req.material_key)) for req in requirements),
            Decimal("0"),
        )
        material = material / (snapshot.yield_pct / HUNDRED)
        return (
            material
            + to_decimal(snapshot.standard_labor_cost)
            + to_decimal(snapshot.standard_overhead_cost)
        )
