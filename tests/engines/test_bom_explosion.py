"""
BOM explosion engine tests.

Verifies:
- Requirement arithmetic (base qty, scrap, multi-level compounding)
- Aggregation and deterministic ordering by stage then material
- Cycle detection per path, not per tree
- Depth limit
"""

from decimal import Decimal

import pytest
from hypothesis import given
from hypothesis import strategies as st

from apparel_engines.bom_explosion import BomExploder, BomLineSnapshot, BomSnapshot
from apparel_kernel.exceptions import BomDepthExceededError, BomNotFoundError, CircularBomError


def _lookup(*snapshots):
    by_key = {s.product_key: s for s in snapshots}
    return by_key.get


def _material(line_no, key, qty, stage, scrap="0"):
    return BomLineSnapshot(
        line_no=line_no, qty_per=Decimal(qty), stage=stage,
        material_key=key, scrap_pct=Decimal(scrap),
    )


def _sub(line_no, key, qty, stage):
    return BomLineSnapshot(line_no=line_no, qty_per=Decimal(qty), stage=stage, sub_product_key=key)


class TestSingleLevel:

    def test_requirement_scales_with_quantity(self):
        shirt = BomSnapshot("SHIRT", 1, (_material(1, "FABRIC", "1.5", "cut"),))
        result = BomExploder(_lookup(shirt)).explode(product_key="SHIRT", qty=Decimal("10"))

        assert len(result) == 1
        assert result[0].material_key == "FABRIC"
        assert result[0].stage == "cut"
        assert result[0].total_qty == Decimal("15")

    def test_scrap_is_added(self):
        shirt = BomSnapshot("SHIRT", 1, (_material(1, "FABRIC", "2", "cut", scrap="10"),))
        result = BomExploder(_lookup(shirt)).explode(product_key="SHIRT", qty=Decimal("100"))

        assert result[0].total_qty == Decimal("220")

    def test_base_quantity_divides(self):
        # 12 m for a dozen
        shirt = BomSnapshot(
            "SHIRT", 1, (_material(1, "FABRIC", "12", "cut"),), base_qty=Decimal("12"),
        )
        result = BomExploder(_lookup(shirt)).explode(product_key="SHIRT", qty=Decimal("6"))

        assert result[0].total_qty == Decimal("6")

    def test_zero_quantity_rejected(self):
        shirt = BomSnapshot("SHIRT", 1, (_material(1, "FABRIC", "1", "cut"),))
        with pytest.raises(ValueError):
            BomExploder(_lookup(shirt)).explode(product_key="SHIRT", qty=Decimal("0"))

    def test_unknown_product(self):
        with pytest.raises(BomNotFoundError):
            BomExploder(_lookup()).explode(product_key="GHOST", qty=Decimal("1"))


class TestMultiLevel:

    def test_sub_product_requirements_compound(self):
        collar = BomSnapshot("COLLAR", 1, (_material(1, "RIB", "0.5", "sew", scrap="10"),))
        shirt = BomSnapshot("SHIRT", 1, (
            _material(1, "FABRIC", "2", "cut"),
            _sub(2, "COLLAR", "1", "sew"),
        ))
        result = BomExploder(_lookup(shirt, collar)).explode(product_key="SHIRT", qty=Decimal("10"))

        by_material = {r.material_key: r.total_qty for r in result}
        assert by_material == {"FABRIC": Decimal("20"), "RIB": Decimal("5.5")}

    def test_same_material_same_stage_aggregated(self):
        pocket = BomSnapshot("POCKET", 1, (_material(1, "FABRIC", "0.25", "cut"),))
        shirt = BomSnapshot("SHIRT", 1, (
            _material(1, "FABRIC", "2", "cut"),
            _sub(2, "POCKET", "2", "cut"),
        ))
        result = BomExploder(_lookup(shirt, pocket)).explode(product_key="SHIRT", qty=Decimal("4"))

        assert [(r.material_key, r.stage, r.total_qty) for r in result] == [
            ("FABRIC", "cut", Decimal("10")),
        ]

    def test_output_ordered_by_stage_then_material(self):
        shirt = BomSnapshot("SHIRT", 1, (
            _material(1, "LABEL", "1", "finish"),
            _material(2, "THREAD", "100", "sew"),
            _material(3, "ZIPPER", "1", "cut"),
            _material(4, "FABRIC", "2", "cut"),
        ))
        result = BomExploder(_lookup(shirt)).explode(product_key="SHIRT", qty=Decimal("1"))

        assert [(r.stage, r.material_key) for r in result] == [
            ("cut", "FABRIC"), ("cut", "ZIPPER"), ("sew", "THREAD"), ("finish", "LABEL"),
        ]

    def test_diamond_is_not_a_cycle(self):
        trim = BomSnapshot("TRIM", 1, (_material(1, "TAPE", "1", "sew"),))
        sleeve = BomSnapshot("SLEEVE", 1, (_sub(1, "TRIM", "1", "sew"),))
        cuff = BomSnapshot("CUFF", 1, (_sub(1, "TRIM", "1", "sew"),))
        shirt = BomSnapshot("SHIRT", 1, (_sub(1, "SLEEVE", "2", "sew"), _sub(2, "CUFF", "2", "sew")))

        result = BomExploder(_lookup(shirt, sleeve, cuff, trim)).explode(
            product_key="SHIRT", qty=Decimal("1"),
        )

        assert result[0].total_qty == Decimal("4")


class TestCyclesAndDepth:

    def test_cycle_reports_path(self):
        a = BomSnapshot("A", 1, (_sub(1, "B", "1", "cut"),))
        b = BomSnapshot("B", 1, (_sub(1, "C", "1", "cut"),))
        c = BomSnapshot("C", 1, (_sub(1, "A", "1", "cut"),))

        with pytest.raises(CircularBomError) as exc_info:
            BomExploder(_lookup(a, b, c)).explode(product_key="A", qty=Decimal("1"))

        assert exc_info.value.path == ["A", "B", "C", "A"]

    def test_find_cycle_for_new_line(self):
        a = BomSnapshot("A", 1, (_sub(1, "B", "1", "cut"),))
        b = BomSnapshot("B", 1, (_material(1, "X", "1", "cut"),))
        exploder = BomExploder(_lookup(a, b))

        assert exploder.find_cycle("B", "A") == ["B", "A", "B"]
        assert exploder.find_cycle("A", "A") == ["A", "A"]
        assert exploder.find_cycle("C", "A") is None

    def _chain(self, levels):
        snapshots = [
            BomSnapshot(f"P{i}", 1, (_sub(1, f"P{i + 1}", "1", "cut"),))
            for i in range(levels - 1)
        ]
        snapshots.append(BomSnapshot(f"P{levels - 1}", 1, (_material(1, "YARN", "1", "cut"),)))
        return _lookup(*snapshots)

    def test_depth_at_limit_is_allowed(self):
        result = BomExploder(self._chain(10), max_depth=10).explode(product_key="P0", qty=Decimal("3"))
        assert result[0].total_qty == Decimal("3")

    def test_depth_beyond_limit_rejected(self):
        with pytest.raises(BomDepthExceededError):
            BomExploder(self._chain(11), max_depth=10).explode(product_key="P0", qty=Decimal("1"))


class TestStandardCost:

    def test_material_grossed_up_by_yield_plus_conversion(self):
        shirt = BomSnapshot(
            "SHIRT", 1, (_material(1, "FABRIC", "2", "cut"),),
            yield_pct=Decimal("80"),
            standard_labor_cost=Decimal("100"),
            standard_overhead_cost=Decimal("50"),
        )
        cost = BomExploder(_lookup(shirt)).standard_unit_cost(
            product_key="SHIRT", material_cost=lambda key: Decimal("40"),
        )

        # 2 x 40 / 0.8 + 100 + 50
        assert cost == Decimal("250")


class TestLineValidation:

    def test_line_names_exactly_one_component(self):
        with pytest.raises(ValueError):
            BomLineSnapshot(line_no=1, qty_per=Decimal("1"), stage="cut")
        with pytest.raises(ValueError):
            BomLineSnapshot(
                line_no=1, qty_per=Decimal("1"), stage="cut",
                material_key="X", sub_product_key="Y",
            )

    def test_scrap_must_be_below_hundred(self):
        with pytest.raises(ValueError):
            _material(1, "FABRIC", "1", "cut", scrap="100")


class TestExplosionProperties:

    @given(
        qty=st.integers(min_value=1, max_value=10_000),
        qty_per=st.decimals(min_value="0.1", max_value="50", places=2),
        scrap=st.decimals(min_value="0", max_value="25", places=1),
    )
    def test_two_level_requirement_matches_formula(self, qty, qty_per, scrap):
        panel = BomSnapshot("PANEL", 1, (_material(1, "FABRIC", str(qty_per), "cut", scrap=str(scrap)),))
        hoodie = BomSnapshot("HOODIE", 1, (_sub(1, "PANEL", "2", "cut"),))

        (req,) = BomExploder(_lookup(hoodie, panel)).explode(product_key="HOODIE", qty=Decimal(qty))

        expected = Decimal(qty) * 2 * qty_per * (1 + scrap / 100)
        assert abs(req.total_qty - expected) < Decimal("0.0001")
