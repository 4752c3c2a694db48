"""
apparel_engines.variance -- standard vs actual production cost variances.

Responsibility:
    Compares the actual unit cost of a completed production order with the
    standard unit cost sourced from its BOM, and rolls order variances up
    into a review report.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    Consumed by the production module at order completion and by the
    variance report.

Invariants enforced:
    - variance = actual - standard (positive is unfavorable).
    - Identical inputs produce identical outputs; no clock access.
    - Variances are informational: nothing here raises on a large variance.

Failure modes:
    - ValueError if a quantity is negative.
    - variance_percent is 0 when the standard cost is zero.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum

from apparel_engines.tracer import traced_engine
from apparel_kernel.db.types import round_money, round_unit_cost, to_decimal
from apparel_kernel.logging_config import get_logger

logger = get_logger("engines.variance")

HUNDRED = Decimal("100")


class VarianceType(str, Enum):
    """Type of variance being calculated."""

    UNIT_COST = "unit_cost"  # Actual vs standard per finished unit
    QUANTITY = "quantity"  # Material usage vs reservation


@dataclass(frozen=True)
class VarianceResult:
    """
    Result of a variance calculation.

    All fields are immutable. Use properties for derived values.
    """

    variance_type: VarianceType
    expected: Decimal
    actual: Decimal
    variance: Decimal
    is_favorable: bool
    description: str | None = None

    @property
    def variance_percent(self) -> Decimal:
        """Variance as a percentage of expected."""
        if self.expected == 0:
            return Decimal("0")
        return (self.variance / self.expected) * HUNDRED

    @property
    def absolute_variance(self) -> Decimal:
        return abs(self.variance)


@dataclass(frozen=True)
class OrderVarianceLine:
    """One production order in a variance report."""

    order_number: str
    product_key: str
    qty_completed: Decimal
    standard_unit_cost: Decimal
    actual_unit_cost: Decimal
    unit_variance: Decimal
    total_variance: Decimal
    is_favorable: bool


@dataclass(frozen=True)
class VarianceReport:
    lines: tuple[OrderVarianceLine, ...]

    @property
    def total_variance(self) -> Decimal:
        return sum((line.total_variance for line in self.lines), Decimal("0"))

    @property
    def unfavorable(self) -> tuple[OrderVarianceLine, ...]:
        return tuple(line for line in self.lines if line.total_variance > 0)


class VarianceCalculator:
    """
    Pure function calculator for production variances.

    Contract:
        No I/O, no database access, fully deterministic.
    Guarantees:
        - ``unit_cost_variance`` formula: Actual - Standard.
        - ``quantity_variance`` formula: (Actual Qty - Standard Qty) x Standard Price.
        - ``is_favorable`` is True when actual < standard.
    Non-goals:
        - Does not post variances; the journal never depends on them.
    """

    @traced_engine("variance", "1.0", fingerprint_fields=("standard_unit_cost", "actual_unit_cost"))
    def unit_cost_variance(
        self,
        *,
        standard_unit_cost: Decimal,
        actual_unit_cost: Decimal,
    ) -> VarianceResult:
        standard = round_unit_cost(to_decimal(standard_unit_cost))
        actual = round_unit_cost(to_decimal(actual_unit_cost))
        variance = actual - standard
        is_favorable = variance < 0

        logger.info("unit_cost_variance_calculated", extra={
            "standard_unit_cost": str(standard),
            "actual_unit_cost": str(actual),
            "variance": str(variance),
            "is_favorable": is_favorable,
        })

        return VarianceResult(
            variance_type=VarianceType.UNIT_COST,
            expected=standard,
            actual=actual,
            variance=variance,
            is_favorable=is_favorable,
            description=f"Unit cost variance: {standard} -> {actual}",
        )

    @traced_engine("variance", "1.0", fingerprint_fields=("standard_qty", "actual_qty", "standard_price"))
    def quantity_variance(
        self,
        *,
        standard_qty: Decimal,
        actual_qty: Decimal,
        standard_price: Decimal,
    ) -> VarianceResult:
        """Material usage variance valued at the standard price."""
        standard_qty = to_decimal(standard_qty)
        actual_qty = to_decimal(actual_qty)
        if standard_qty < 0 or actual_qty < 0:
            raise ValueError("quantities cannot be negative")
        price = to_decimal(standard_price)

        expected = round_money(standard_qty * price)
        actual = round_money(actual_qty * price)
        variance = actual - expected

        return VarianceResult(
            variance_type=VarianceType.QUANTITY,
            expected=expected,
            actual=actual,
            variance=variance,
            is_favorable=variance < 0,
            description=f"Usage variance: {standard_qty} -> {actual_qty} @ {price}",
        )

    def order_line(
        self,
        order_number: str,
        product_key: str,
        qty_completed: Decimal,
        standard_unit_cost: Decimal,
        actual_unit_cost: Decimal,
    ) -> OrderVarianceLine:
        qty_completed = to_decimal(qty_completed)
        if qty_completed < 0:
            raise ValueError(f"qty_completed cannot be negative: {qty_completed}")
        result = self.unit_cost_variance(
            standard_unit_cost=standard_unit_cost,
            actual_unit_cost=actual_unit_cost,
        )
        return OrderVarianceLine(
            order_number=order_number,
            product_key=product_key,
            qty_completed=qty_completed,
            standard_unit_cost=result.expected,
            actual_unit_cost=result.actual,
            unit_variance=result.variance,
            total_variance=round_money(result.variance * qty_completed),
            is_favorable=result.is_favorable,
        )

    def report(self, lines: list[OrderVarianceLine]) -> VarianceReport:
        """Lines ordered by absolute total variance, largest first."""
        ordered = sorted(
            lines, key=lambda line: (-abs(line.total_variance), line.order_number),
        )
        return VarianceReport(lines=tuple(ordered))
