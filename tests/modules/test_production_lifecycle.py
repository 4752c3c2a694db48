"""
Production order lifecycle tests.

The reference order: 100 polo shirts, 2 m of jersey each at 2,500 per
meter, 2,000,000 of sewing labor, 1,500,000 of finishing overhead, 97 good
and 3 rejected at completion.  Expected: unit cost 40,000, finished goods
3,880,000, production loss 120,000, every WIP account back to zero.
"""

from datetime import date
from decimal import Decimal

import pytest

from apparel_kernel.domain.values import LedgerKind, PeriodStatus, ProductionStage
from apparel_kernel.exceptions import (
    BomNotFoundError,
    InsufficientStockError,
    InvalidOrderTransitionError,
    PeriodCloseBlockedError,
    ReservationExceededError,
    ReversalNotAllowedError,
    StageMismatchError,
)
from apparel_kernel.services.auditor_service import AuditorService
from apparel_modules.production import ProductionOrderStatus, StageCostStatus

ON = date(2026, 1, 14)

WIP_CUT, WIP_SEW, WIP_FINISH = "1221", "1222", "1223"
FG = "1250"
RAW = "1210"
ACCRUED_PAYROLL = "2040"
PRODUCTION_LOSS = "5050"
APPLIED_OVERHEAD = "5060"


@pytest.fixture
def polo_bom(session, boms, scope_id, actor_id):
    bom = boms.create_bom(
        scope_id, "POLO-NVY-L", actor_id,
        standard_labor_cost=Decimal("20000"), standard_overhead_cost=Decimal("15000"),
    )
    boms.add_line(scope_id, bom.id, Decimal("2"), ProductionStage.CUT, actor_id,
                  material_key="FABRIC-JERSEY")
    boms.activate(scope_id, bom.id, actor_id)
    session.commit()
    return bom


@pytest.fixture
def fabric_on_hand(inventory, scope_id, period, actor_id):
    inventory.receive_purchase(
        scope_id, "PO-FAB-1", "FABRIC-JERSEY", "MAIN", Decimal("200"), Decimal("2500"),
        Decimal("200"), period.id, date(2026, 1, 2), actor_id,
    )


@pytest.fixture
def started_order(production, scope_id, actor_id, polo_bom, fabric_on_hand):
    order = production.create_order(scope_id, "WO-1001", "POLO-NVY-L", Decimal("100"), "DC-1", actor_id)
    production.release(scope_id, order.id, actor_id)
    return production.start(scope_id, order.id, actor_id)


def run_reference_order(production, scope_id, period, actor_id, order):
    production.issue_material(
        scope_id, order.id, "FABRIC-JERSEY", Decimal("200"), "MAIN", period.id, ON, actor_id,
    )
    return run_reference_order_from_cut(production, scope_id, period, actor_id, order)


def run_reference_order_from_cut(production, scope_id, period, actor_id, order):
    production.move_stage(
        scope_id, order.id, ProductionStage.SEW, Decimal("100"), period.id, ON, actor_id,
        labor_cost=Decimal("2000000"),
    )
    production.move_stage(
        scope_id, order.id, ProductionStage.FINISH, Decimal("100"), period.id, ON, actor_id,
        overhead_cost=Decimal("1500000"),
    )
    return production.complete_order(
        scope_id, order.id, Decimal("97"), period.id, ON, actor_id, qty_rejected=Decimal("3"),
    )


class TestOrderCreation:

    def test_order_pins_bom_and_reserves_material(self, production, scope_id, actor_id, polo_bom):
        order = production.create_order(scope_id, "WO-1001", "POLO-NVY-L", Decimal("100"), "DC-1", actor_id)

        assert order.status == ProductionOrderStatus.PLANNED
        assert order.bom_id == polo_bom.id
        assert order.standard_unit_cost == Decimal("40000")
        (reservation,) = order.reservations
        assert reservation.material_key == "FABRIC-JERSEY"
        assert reservation.stage == ProductionStage.CUT
        assert reservation.qty_required == Decimal("200")
        assert reservation.outstanding == Decimal("200")

    def test_multi_stage_reservations(self, production, scope_id, actor_id, tshirt_bom):
        order = production.create_order(scope_id, "WO-2001", "TSHIRT-BLK-M", Decimal("10"), "DC-1", actor_id)

        assert {(r.material_key, r.stage, r.qty_required) for r in order.reservations} == {
            ("FABRIC-JERSEY", ProductionStage.CUT, Decimal("20")),
            ("THREAD-BLACK", ProductionStage.SEW, Decimal("1000")),
            ("LABEL-CARE", ProductionStage.FINISH, Decimal("10")),
        }
        assert order.standard_unit_cost == Decimal("41050")

    def test_no_active_bom(self, production, scope_id, actor_id, db_engine):
        with pytest.raises(BomNotFoundError):
            production.create_order(scope_id, "WO-1", "NO-SUCH-STYLE", Decimal("1"), "DC-1", actor_id)

    def test_zero_quantity(self, production, scope_id, actor_id, polo_bom):
        with pytest.raises(ValueError):
            production.create_order(scope_id, "WO-1", "POLO-NVY-L", Decimal("0"), "DC-1", actor_id)


class TestReferenceOrder:

    def test_costs_flow_through_stages(self, production, poster, scope_id, period, actor_id, started_order):
        result = run_reference_order(production, scope_id, period, actor_id, started_order)

        assert result.completion.unit_cost == Decimal("40000")
        assert result.completion.good_value == Decimal("3880000")
        assert result.completion.loss_value == Decimal("120000")
        assert result.to_stage is None

        journal = poster.journal
        assert journal.account_balance(scope_id, FG) == Decimal("3880000")
        assert journal.account_balance(scope_id, PRODUCTION_LOSS) == Decimal("120000")
        assert journal.account_balance(scope_id, ACCRUED_PAYROLL) == Decimal("-2000000")
        assert journal.account_balance(scope_id, APPLIED_OVERHEAD) == Decimal("-1500000")
        assert journal.account_balance(scope_id, RAW) == 0
        for account in (WIP_CUT, WIP_SEW, WIP_FINISH):
            assert journal.account_balance(scope_id, account) == 0
        assert journal.period_totals(scope_id, period.id).is_balanced

    def test_finished_goods_at_actual_cost(self, production, poster, scope_id, period, actor_id, started_order):
        run_reference_order(production, scope_id, period, actor_id, started_order)

        balance = poster.ledger.balance(scope_id, LedgerKind.FINISHED, "POLO-NVY-L", "DC-1")
        assert balance.qty == Decimal("97")
        assert balance.weighted_avg_unit_cost == Decimal("40000")
        assert balance.value == Decimal("3880000")

    def test_order_state_after_completion(self, production, scope_id, period, actor_id, started_order):
        run_reference_order(production, scope_id, period, actor_id, started_order)

        order = production.get_order(scope_id, started_order.id)
        assert order.status == ProductionOrderStatus.COMPLETED
        assert order.qty_completed == Decimal("97")
        assert order.qty_rejected == Decimal("3")
        assert order.actual_unit_cost == Decimal("40000")
        assert order.unit_cost_variance == 0
        assert [p.stage for p in order.stage_costs] == [
            ProductionStage.CUT, ProductionStage.SEW, ProductionStage.FINISH,
        ]
        assert all(p.status == StageCostStatus.COMPLETED for p in order.stage_costs)
        assert order.stage_costs[2].total == Decimal("4000000")

    def test_wip_cleared_so_order_and_period_close(self, production, periods, scope_id, period, actor_id, started_order):
        run_reference_order(production, scope_id, period, actor_id, started_order)

        closed = production.close_order(scope_id, started_order.id, actor_id)
        assert closed.status == ProductionOrderStatus.CLOSED
        assert periods.close(scope_id, period.id, actor_id).status == PeriodStatus.CLOSED

    def test_status_history_is_audited(self, production, session, clock, scope_id, period, actor_id, started_order):
        run_reference_order(production, scope_id, period, actor_id, started_order)

        trace = AuditorService(session, clock).get_trace("ProductionOrder", started_order.id)

        assert [e.payload["to_status"] for e in trace.entries] == [
            "planned", "released", "in_progress", "completed",
        ]


class TestStageRules:

    def test_open_wip_blocks_period_close(self, production, periods, scope_id, period, actor_id, started_order):
        production.issue_material(
            scope_id, started_order.id, "FABRIC-JERSEY", Decimal("50"), "MAIN", period.id, ON, actor_id,
        )

        with pytest.raises(PeriodCloseBlockedError):
            periods.close(scope_id, period.id, actor_id)

    def test_cannot_skip_a_stage(self, production, scope_id, period, actor_id, started_order):
        production.issue_material(
            scope_id, started_order.id, "FABRIC-JERSEY", Decimal("200"), "MAIN", period.id, ON, actor_id,
        )

        with pytest.raises(StageMismatchError):
            production.move_stage(
                scope_id, started_order.id, ProductionStage.FINISH, Decimal("100"), period.id, ON, actor_id,
            )

    def test_units_must_add_up(self, production, scope_id, period, actor_id, started_order):
        production.issue_material(
            scope_id, started_order.id, "FABRIC-JERSEY", Decimal("200"), "MAIN", period.id, ON, actor_id,
        )

        with pytest.raises(ValueError):
            production.move_stage(
                scope_id, started_order.id, ProductionStage.SEW, Decimal("90"), period.id, ON, actor_id,
                qty_rejected=Decimal("5"),
            )

    def test_complete_only_from_finish(self, production, scope_id, period, actor_id, started_order):
        with pytest.raises(StageMismatchError):
            production.complete_order(scope_id, started_order.id, Decimal("100"), period.id, ON, actor_id)

    def test_issue_beyond_reservation(self, production, scope_id, period, actor_id, started_order):
        with pytest.raises(ReservationExceededError) as exc_info:
            production.issue_material(
                scope_id, started_order.id, "FABRIC-JERSEY", Decimal("201"), "MAIN", period.id, ON, actor_id,
            )

        assert exc_info.value.outstanding == Decimal("200")

    def test_issue_of_unreserved_material(self, production, scope_id, period, actor_id, started_order):
        with pytest.raises(ReservationExceededError):
            production.issue_material(
                scope_id, started_order.id, "THREAD-BLACK", Decimal("1"), "MAIN", period.id, ON, actor_id,
            )

    def test_issue_into_named_wrong_stage(self, production, scope_id, period, actor_id, started_order):
        with pytest.raises(StageMismatchError):
            production.issue_material(
                scope_id, started_order.id, "FABRIC-JERSEY", Decimal("1"), "MAIN", period.id, ON, actor_id,
                stage=ProductionStage.SEW,
            )

    def test_issue_requires_started_order(self, production, scope_id, period, actor_id, polo_bom, fabric_on_hand):
        order = production.create_order(scope_id, "WO-1002", "POLO-NVY-L", Decimal("10"), "DC-1", actor_id)

        with pytest.raises(InvalidOrderTransitionError):
            production.issue_material(
                scope_id, order.id, "FABRIC-JERSEY", Decimal("1"), "MAIN", period.id, ON, actor_id,
            )

    def test_in_progress_order_cannot_close(
        self, production, scope_id, period, actor_id, started_order,
    ):
        production.issue_material(
            scope_id, started_order.id, "FABRIC-JERSEY", Decimal("200"), "MAIN", period.id, ON, actor_id,
        )
        with pytest.raises(InvalidOrderTransitionError):
            production.close_order(scope_id, started_order.id, actor_id)

    def test_cancel_planned_order(self, production, scope_id, actor_id, polo_bom):
        order = production.create_order(scope_id, "WO-1003", "POLO-NVY-L", Decimal("10"), "DC-1", actor_id)

        cancelled = production.cancel(scope_id, order.id, actor_id, reason="style dropped")

        assert cancelled.status == ProductionOrderStatus.CANCELLED
        with pytest.raises(InvalidOrderTransitionError):
            production.release(scope_id, order.id, actor_id)

    def test_rejects_at_intermediate_stage(self, production, poster, scope_id, period, actor_id, started_order):
        production.issue_material(
            scope_id, started_order.id, "FABRIC-JERSEY", Decimal("200"), "MAIN", period.id, ON, actor_id,
        )

        moved = production.move_stage(
            scope_id, started_order.id, ProductionStage.SEW, Decimal("96"), period.id, ON, actor_id,
            qty_rejected=Decimal("4"),
        )

        assert moved.completion.unit_cost == Decimal("5000")
        assert moved.completion.loss_value == Decimal("20000")
        assert poster.journal.account_balance(scope_id, WIP_SEW) == Decimal("480000")
        sew = poster.ledger.balance(scope_id, LedgerKind.WIP, "WO-1001/POLO-NVY-L", "sew")
        assert sew.qty == Decimal("96")
        order = production.get_order(scope_id, started_order.id)
        assert order.current_stage == ProductionStage.SEW
        assert order.qty_rejected == Decimal("4")


def issue_all_fabric(production, scope_id, period, actor_id, order):
    return production.issue_material(
        scope_id, order.id, "FABRIC-JERSEY", Decimal("200"), "MAIN", period.id, ON, actor_id,
    )


class TestReversePosting:

    def test_reversed_issue_can_be_reissued(self, production, poster, scope_id, period, actor_id, started_order):
        issued = issue_all_fabric(production, scope_id, period, actor_id, started_order)

        production.reverse_posting(
            scope_id, started_order.id, issued.journal_entry_id, period.id, actor_id, reason="wrong lot",
        )

        order = production.get_order(scope_id, started_order.id)
        assert order.reservations[0].qty_issued == 0
        assert order.stage_costs[0].cost_material == 0
        assert poster.ledger.balance(scope_id, LedgerKind.RAW, "FABRIC-JERSEY", "MAIN").qty == Decimal("200")
        assert poster.journal.account_balance(scope_id, WIP_CUT) == 0

        issue_all_fabric(production, scope_id, period, actor_id, started_order)
        moved = production.move_stage(
            scope_id, started_order.id, ProductionStage.SEW, Decimal("100"), period.id, ON, actor_id,
        )
        assert moved.completion.pool.total == Decimal("500000")
        assert poster.journal.account_balance(scope_id, WIP_CUT) == 0

    def test_issue_of_completed_stage_cannot_be_reversed(
        self, production, scope_id, period, actor_id, started_order,
    ):
        issued = issue_all_fabric(production, scope_id, period, actor_id, started_order)
        production.move_stage(
            scope_id, started_order.id, ProductionStage.SEW, Decimal("100"), period.id, ON, actor_id,
        )

        with pytest.raises(ReversalNotAllowedError):
            production.reverse_posting(
                scope_id, started_order.id, issued.journal_entry_id, period.id, actor_id, reason="late",
            )

    def test_generic_reversal_of_production_posting_refused(
        self, production, poster, scope_id, period, actor_id, started_order,
    ):
        issued = issue_all_fabric(production, scope_id, period, actor_id, started_order)

        with pytest.raises(ReversalNotAllowedError):
            poster.reverse_transaction(scope_id, issued.journal_entry_id, period.id, actor_id, reason="x")

        order = production.get_order(scope_id, started_order.id)
        assert order.reservations[0].qty_issued == Decimal("200")
        assert poster.journal.account_balance(scope_id, WIP_CUT) == Decimal("500000")

    def test_posting_of_another_order_refused(self, production, scope_id, period, actor_id, started_order):
        issued = issue_all_fabric(production, scope_id, period, actor_id, started_order)
        other = production.create_order(scope_id, "WO-1002", "POLO-NVY-L", Decimal("1"), "DC-1", actor_id)

        with pytest.raises(ReversalNotAllowedError):
            production.reverse_posting(
                scope_id, other.id, issued.journal_entry_id, period.id, actor_id, reason="x",
            )

    def test_reversed_stage_move_reopens_source_stage(
        self, production, poster, scope_id, period, actor_id, started_order,
    ):
        issue_all_fabric(production, scope_id, period, actor_id, started_order)
        moved = production.move_stage(
            scope_id, started_order.id, ProductionStage.SEW, Decimal("96"), period.id, ON, actor_id,
            qty_rejected=Decimal("4"), labor_cost=Decimal("2000000"),
        )

        production.reverse_posting(
            scope_id, started_order.id, moved.posting.journal_entry_id, period.id, actor_id,
            reason="miscounted rejects",
        )

        order = production.get_order(scope_id, started_order.id)
        assert order.current_stage == ProductionStage.CUT
        assert order.qty_rejected == 0
        (cut,) = order.stage_costs
        assert cut.status == StageCostStatus.OPEN
        assert cut.cost_material == Decimal("500000")
        journal = poster.journal
        assert journal.account_balance(scope_id, WIP_CUT) == Decimal("500000")
        assert journal.account_balance(scope_id, WIP_SEW) == 0
        assert journal.account_balance(scope_id, PRODUCTION_LOSS) == 0
        assert journal.account_balance(scope_id, ACCRUED_PAYROLL) == 0

        result = run_reference_order_from_cut(production, scope_id, period, actor_id, started_order)
        assert result.completion.unit_cost == Decimal("40000")

    def test_reversed_completion_returns_order_to_finish(
        self, production, poster, scope_id, period, actor_id, started_order,
    ):
        completed = run_reference_order(production, scope_id, period, actor_id, started_order)

        production.reverse_posting(
            scope_id, started_order.id, completed.posting.journal_entry_id, period.id, actor_id,
            reason="count error",
        )

        order = production.get_order(scope_id, started_order.id)
        assert order.status == ProductionOrderStatus.IN_PROGRESS
        assert order.current_stage == ProductionStage.FINISH
        assert order.qty_completed == 0
        assert order.actual_unit_cost is None
        assert order.stage_costs[2].status == StageCostStatus.OPEN
        assert poster.ledger.balance(scope_id, LedgerKind.FINISHED, "POLO-NVY-L", "DC-1").qty == 0
        assert poster.journal.account_balance(scope_id, WIP_FINISH) == Decimal("4000000")

        again = production.complete_order(
            scope_id, started_order.id, Decimal("100"), period.id, ON, actor_id,
        )
        assert again.completion.unit_cost == Decimal("40000")
        assert production.get_order(scope_id, started_order.id).qty_rejected == 0

    def test_sold_goods_block_completion_reversal(
        self, production, inventory, scope_id, period, actor_id, started_order,
    ):
        completed = run_reference_order(production, scope_id, period, actor_id, started_order)
        inventory.issue_sale(scope_id, "SO-1", "POLO-NVY-L", "DC-1", Decimal("10"), period.id, ON, actor_id)

        with pytest.raises(InsufficientStockError):
            production.reverse_posting(
                scope_id, started_order.id, completed.posting.journal_entry_id, period.id, actor_id,
                reason="count error",
            )

        assert production.get_order(scope_id, started_order.id).status == ProductionOrderStatus.COMPLETED

    def test_closed_order_cannot_be_reopened(self, production, scope_id, period, actor_id, started_order):
        completed = run_reference_order(production, scope_id, period, actor_id, started_order)
        production.close_order(scope_id, started_order.id, actor_id)

        with pytest.raises(ReversalNotAllowedError):
            production.reverse_posting(
                scope_id, started_order.id, completed.posting.journal_entry_id, period.id, actor_id,
                reason="too late",
            )
