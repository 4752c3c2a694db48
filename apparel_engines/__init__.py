"""
Module: apparel_engines
Responsibility:
    Package entrypoint re-exporting the pure calculation engines used by
    the kernel BOM service and the workflow modules.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May import apparel_kernel.domain, apparel_kernel.db.types,
    apparel_kernel.exceptions and apparel_kernel.logging_config only.
    MUST NOT import apparel_kernel.services or apparel_modules.

Invariants enforced:
    - Engines never read the clock; dates arrive as parameters.
    - Decimal-only arithmetic; floats are rejected.
    - Identical inputs always produce identical outputs.

Audit relevance:
    Every engine invocation is traced via ``@traced_engine``
    (see ``apparel_engines.tracer``).
"""

from apparel_engines.bom_explosion import (
    DEFAULT_MAX_DEPTH,
    BomExploder,
    BomLineSnapshot,
    BomSnapshot,
    ExplodedRequirement,
)
from apparel_engines.costing import StageCompletion, StageCostPool, split_pool
from apparel_engines.variance import (
    OrderVarianceLine,
    VarianceCalculator,
    VarianceReport,
    VarianceResult,
    VarianceType,
)

__all__ = [
    "DEFAULT_MAX_DEPTH",
    "BomExploder",
    "BomLineSnapshot",
    "BomSnapshot",
    "ExplodedRequirement",
    "OrderVarianceLine",
    "StageCompletion",
    "StageCostPool",
    "VarianceCalculator",
    "VarianceReport",
    "VarianceResult",
    "VarianceType",
    "split_pool",
]
