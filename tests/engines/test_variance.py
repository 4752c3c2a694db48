"""Standard vs actual variance engine tests."""

from decimal import Decimal

import pytest

from apparel_engines.variance import VarianceCalculator, VarianceType


@pytest.fixture
def calculator():
    return VarianceCalculator()


class TestUnitCostVariance:

    def test_unfavorable_when_actual_above_standard(self, calculator):
        result = calculator.unit_cost_variance(
            standard_unit_cost=Decimal("41050"), actual_unit_cost=Decimal("42000"),
        )

        assert result.variance_type == VarianceType.UNIT_COST
        assert result.variance == Decimal("950")
        assert result.is_favorable is False

    def test_favorable_when_actual_below_standard(self, calculator):
        result = calculator.unit_cost_variance(
            standard_unit_cost=Decimal("100"), actual_unit_cost=Decimal("80"),
        )

        assert result.variance == Decimal("-20")
        assert result.is_favorable is True
        assert result.variance_percent == Decimal("-20")

    def test_zero_standard_has_zero_percent(self, calculator):
        result = calculator.unit_cost_variance(
            standard_unit_cost=Decimal("0"), actual_unit_cost=Decimal("5"),
        )
        assert result.variance_percent == Decimal("0")


class TestQuantityVariance:

    def test_usage_valued_at_standard_price(self, calculator):
        result = calculator.quantity_variance(
            standard_qty=Decimal("200"), actual_qty=Decimal("210"), standard_price=Decimal("2500"),
        )

        assert result.variance == Decimal("25000")
        assert not result.is_favorable

    def test_negative_quantity_rejected(self, calculator):
        with pytest.raises(ValueError):
            calculator.quantity_variance(
                standard_qty=Decimal("-1"), actual_qty=Decimal("1"), standard_price=Decimal("1"),
            )


class TestReport:

    def test_lines_sorted_by_absolute_total(self, calculator):
        small = calculator.order_line("WO-1", "TEE", Decimal("10"), Decimal("100"), Decimal("101"))
        large = calculator.order_line("WO-2", "TEE", Decimal("10"), Decimal("100"), Decimal("80"))

        report = calculator.report([small, large])

        assert [line.order_number for line in report.lines] == ["WO-2", "WO-1"]
        assert large.total_variance == Decimal("-200")
        assert report.total_variance == Decimal("-190")
        assert report.unfavorable == (small,)
