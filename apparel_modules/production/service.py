"""
Production Module Service (``apparel_modules.production.service``).

Responsibility
--------------
Runs production orders through CUT -> SEW -> FINISH: order creation from
the active BOM, MRP check and release, material issue and backflush into
WIP, stage moves with labor and overhead, completion into finished goods,
close, cancel and the standard-vs-actual variance report.

Architecture
------------
Layer: **Modules** -- orchestration over kernel services and pure engines.

1. ``BomService`` explodes the pinned BOM into stage reservations.
2. ``StageCostPool`` (apparel_engines.costing) splits each completed
   stage's pool between good output and production loss.
3. ``TransactionalPoster`` posts every value movement: ledger entries and
   one balanced journal entry per call.
4. ``VarianceCalculator`` compares actual and standard unit cost.

WIP layout
----------
WIP ledger items are per order: ``<order>/<product>`` carries the product
units between stages, ``<order>/<material>`` holds material issued to a
stage.  The location of a WIP entry is the stage.  A stage move drains
every WIP item of the order at the source stage and puts the good units
into the target stage at the carried unit cost.

Invariants
----------
- Operations on one order are serialized (``production_order:<number>``
  guard held for the whole read-compute-post sequence).
- Order rows are only changed inside the poster's ``on_posted`` hook or
  in transactions this service owns; a failed posting leaves them as
  they were.
- Issued quantity never exceeds the reservation.
- Stage pool value in = good value carried + production loss, exactly.

Failure Modes
-------------
- InvalidOrderTransitionError, StageMismatchError,
  ReservationExceededError, MaterialShortageError.
- Everything the poster raises (InsufficientStockError, PeriodClosedError,
  ConcurrencyConflictError ...), with the session rolled back.

Audit Relevance
---------------
Every status change writes an ORDER_STATUS_CHANGED audit event; every
value movement is a journal entry sourced from the order.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from apparel_config.schema import AccountRole, LedgerConfig
from apparel_engines.costing import StageCompletion, StageCostPool
from apparel_engines.variance import VarianceCalculator, VarianceReport
from apparel_kernel.db.types import round_money, round_quantity, round_unit_cost, to_decimal
from apparel_kernel.domain.clock import Clock, SystemClock
from apparel_kernel.domain.dtos import (
    JournalEntryInfo,
    JournalLineSpec,
    LedgerEntryInfo,
    LedgerOp,
    PostingResult,
    StockKey,
)
from apparel_kernel.domain.values import (
    CostBreakdown,
    Direction,
    LedgerKind,
    PostingSource,
    ProductionStage,
)
from apparel_kernel.exceptions import (
    InvalidOrderTransitionError,
    MaterialShortageError,
    ProductionOrderNotFoundError,
    ReservationExceededError,
    ReversalNotAllowedError,
    StageMismatchError,
)
from apparel_kernel.logging_config import LogContext, get_logger
from apparel_kernel.services.auditor_service import AuditorService
from apparel_kernel.services.bom_service import BomService, MasterDataGateway
from apparel_kernel.services.stock_guard import StockGuard
from apparel_kernel.services.transactional_poster import (
    PostedHook,
    TransactionalPoster,
    register_reversal_owner,
)
from apparel_modules.production.models import (
    MrpAction,
    MrpLine,
    MrpResult,
    ProductionOrderInfo,
    ProductionOrderStatus,
    StageCostStatus,
    StageMoveResult,
)
from apparel_modules.production.orm import ProductionOrder, ProductionStageCost, Reservation
from apparel_modules.production.workflows import PRODUCTION_ORDER_WORKFLOW

logger = get_logger("modules.production.service")

ZERO = Decimal("0")

# Orders whose outstanding reservations compete for stock
_RESERVING_STATUSES = (
    ProductionOrderStatus.RELEASED.value,
    ProductionOrderStatus.IN_PROGRESS.value,
)

ISSUE_SOURCES = ("material_issue", "backflush")
SOURCE_TYPES = ISSUE_SOURCES + ("stage_move", "production_completion")

register_reversal_owner("production", SOURCE_TYPES)


class ProductionService:
    """
    Production order lifecycle and WIP costing.

    Contract
    --------
    Posting operations commit through the TransactionalPoster; status-only
    operations commit themselves.  Every public method rolls back on failure.
    """

    def __init__(
        self,
        session: Session,
        config: LedgerConfig,
        clock: Clock | None = None,
        guard: StockGuard | None = None,
        master_data: MasterDataGateway | None = None,
    ):
        self.session = session
        self._clock = clock or SystemClock()
        self._accounts = config.accounts
        self._poster = TransactionalPoster(session, self._clock, guard)
        self._ledger = self._poster.ledger
        self._boms = BomService(session, self._clock, max_depth=config.policy.max_bom_depth)
        self._auditor = AuditorService(session, self._clock)
        self._variance = VarianceCalculator()
        self._master_data = master_data

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _get_order(self, scope_id: str, order_id: UUID, refresh: bool = False) -> ProductionOrder:
        order = self.session.get(ProductionOrder, order_id, populate_existing=refresh)
        if order is None or order.scope_id != scope_id:
            raise ProductionOrderNotFoundError(str(order_id))
        return order

    def _order_guard(self, scope_id: str, order_number: str):
        return self._poster.hold(scope_id, resources=[f"production_order:{order_number}"])

    def _apply_transition(
        self, order: ProductionOrder, action: str, actor_id: UUID, details: dict | None = None,
    ) -> None:
        transition = PRODUCTION_ORDER_WORKFLOW.transition(order.order_number, order.status, action)
        from_status = order.status
        order.status = transition.to_state
        order.updated_by_id = actor_id
        if from_status != transition.to_state:
            self._auditor.record_order_status(
                order.scope_id, order.id, order.order_number,
                from_status, transition.to_state, actor_id, details,
            )
            logger.info(
                "production_order_transitioned",
                extra={
                    "order_number": order.order_number,
                    "from_status": from_status,
                    "to_status": transition.to_state,
                    "action": action,
                },
            )

    def _commit(self) -> None:
        try:
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

    def _require_stage(self, order: ProductionOrder, stage: ProductionStage | None) -> ProductionStage:
        current = ProductionStage(order.current_stage) if order.current_stage else None
        if current is None:
            raise StageMismatchError(
                order.order_number, None, stage.value if stage else "any",
            )
        if stage is not None and ProductionStage(stage) != current:
            raise StageMismatchError(order.order_number, current.value, ProductionStage(stage).value)
        return current

    def _stage_wip_keys(self, order: ProductionOrder, stage: ProductionStage) -> list[StockKey]:
        items = [order.wip_item_key] + sorted(
            {
                order.material_wip_item_key(r.material_key)
                for r in order.reservations
                if r.stage == stage.value
            }
        )
        return [StockKey(order.scope_id, LedgerKind.WIP, item, stage.value) for item in items]

    # -------------------------------------------------------------------------
    # Order lifecycle
    # -------------------------------------------------------------------------

    def create_order(
        self,
        scope_id: str,
        order_number: str,
        product_key: str,
        qty_planned: Decimal,
        finished_location_key: str,
        actor_id: UUID,
        as_of: date | None = None,
    ) -> ProductionOrderInfo:
        """
        Create a PLANNED order pinned to the product's active BOM, with one
        reservation per (material, stage) from the BOM explosion.

        The standard unit cost is computed when a master-data gateway was
        given; otherwise it stays empty and the order has no variance.

        Raises:
            ValueError: qty_planned <= 0.
            BomNotFoundError: no active BOM for the product.
            CircularBomError / BomDepthExceededError: from the explosion.
        """
        qty_planned = to_decimal(qty_planned)
        if qty_planned <= 0:
            raise ValueError(f"qty_planned must be > 0, got {qty_planned}")

        with LogContext.bind(scope_id=scope_id, actor_id=actor_id, order_id=order_number):
            try:
                bom = self._boms.active_bom(scope_id, product_key, as_of)
                requirements = self._boms.explode_bom(scope_id, bom, qty_planned, as_of)
                standard = None
                if self._master_data is not None:
                    standard = self._boms.standard_unit_cost(
                        scope_id, bom, self._master_data, as_of,
                    )

                order = ProductionOrder(
                    scope_id=scope_id,
                    order_number=order_number,
                    product_key=product_key,
                    bom_id=bom.id,
                    qty_planned=qty_planned,
                    qty_completed=ZERO,
                    qty_rejected=ZERO,
                    status=PRODUCTION_ORDER_WORKFLOW.initial_state,
                    finished_location_key=finished_location_key,
                    standard_unit_cost=standard,
                    created_by_id=actor_id,
                )
                self.session.add(order)
                self.session.flush()

                for req in requirements:
                    order.reservations.append(
                        Reservation(
                            scope_id=scope_id,
                            order_id=order.id,
                            material_key=req.material_key,
                            stage=req.stage,
                            qty_required=req.total_qty,
                            qty_issued=ZERO,
                            created_by_id=actor_id,
                        )
                    )
                self.session.flush()

                self._auditor.record_order_status(
                    scope_id, order.id, order_number, None, order.status, actor_id,
                    {"bom_id": str(bom.id), "bom_version": bom.version},
                )
                self.session.commit()
            except Exception:
                self.session.rollback()
                raise

            logger.info(
                "production_order_created",
                extra={
                    "order_number": order_number,
                    "product_key": product_key,
                    "qty_planned": str(qty_planned),
                    "bom_version": bom.version,
                    "reservation_count": len(requirements),
                },
            )
            return order.to_dto()

    def get_order(self, scope_id: str, order_id: UUID) -> ProductionOrderInfo:
        return self._get_order(scope_id, order_id, refresh=True).to_dto()

    def mrp_check(
        self, scope_id: str, order_id: UUID, location_key: str | None = None,
    ) -> MrpResult:
        """
        Net material requirement of an order.

        Per material: gross = outstanding reservations of this order; on hand
        = RAW stock (at ``location_key``, or across all locations); reserved
        by others = outstanding reservations of other released or in-progress
        orders.  Read-only.
        """
        order = self._get_order(scope_id, order_id, refresh=True)

        gross: dict[str, Decimal] = {}
        for r in order.reservations:
            gross[r.material_key] = gross.get(r.material_key, ZERO) + r.outstanding

        lines = []
        for material_key in sorted(gross):
            if location_key is None:
                on_hand = self._ledger.total_on_hand(scope_id, LedgerKind.RAW, material_key)
            else:
                on_hand = self._ledger.balance(
                    scope_id, LedgerKind.RAW, material_key, location_key,
                ).qty
            reserved = self._reserved_by_others(scope_id, order.id, material_key)
            available = max(on_hand - reserved, ZERO)
            net = max(gross[material_key] - available, ZERO)
            if net == 0:
                action = MrpAction.OK
            elif available > 0:
                action = MrpAction.PARTIAL
            else:
                action = MrpAction.PURCHASE
            lines.append(
                MrpLine(
                    material_key=material_key,
                    gross_requirement=gross[material_key],
                    on_hand=on_hand,
                    reserved_by_others=reserved,
                    net_requirement=net,
                    action=action,
                )
            )

        result = MrpResult(order_number=order.order_number, lines=tuple(lines))
        logger.info(
            "mrp_checked",
            extra={
                "order_number": order.order_number,
                "material_count": len(lines),
                "shortage_count": len(result.shortages),
                "can_release": result.can_release,
            },
        )
        return result

    def _reserved_by_others(self, scope_id: str, order_id: UUID, material_key: str) -> Decimal:
        rows = self.session.execute(
            select(Reservation.qty_required, Reservation.qty_issued)
            .join(ProductionOrder, Reservation.order_id == ProductionOrder.id)
            .where(
                Reservation.scope_id == scope_id,
                Reservation.material_key == material_key,
                Reservation.order_id != order_id,
                ProductionOrder.status.in_(_RESERVING_STATUSES),
            )
        ).all()
        return sum((max(required - issued, ZERO) for required, issued in rows), ZERO)

    def release(
        self,
        scope_id: str,
        order_id: UUID,
        actor_id: UUID,
        location_key: str | None = None,
        force: bool = False,
    ) -> ProductionOrderInfo:
        """
        PLANNED -> RELEASED after an MRP check.

        Raises:
            MaterialShortageError: a material has nothing available and
                ``force`` is not set.
        """
        order = self._get_order(scope_id, order_id, refresh=True)
        with self._order_guard(scope_id, order.order_number):
            order = self._get_order(scope_id, order_id, refresh=True)
            PRODUCTION_ORDER_WORKFLOW.transition(order.order_number, order.status, "release")
            mrp = self.mrp_check(scope_id, order_id, location_key)
            if not mrp.can_release and not force:
                logger.warning(
                    "production_release_blocked",
                    extra={
                        "order_number": order.order_number,
                        "shortages": {k: str(v) for k, v in mrp.shortages.items()},
                    },
                )
                raise MaterialShortageError(order.order_number, mrp.shortages)

            try:
                self._apply_transition(
                    order, "release", actor_id,
                    {
                        "forced": force,
                        "shortages": {k: str(v) for k, v in mrp.shortages.items()},
                    },
                )
            except Exception:
                self.session.rollback()
                raise
            self._commit()
            return order.to_dto()

    def start(self, scope_id: str, order_id: UUID, actor_id: UUID) -> ProductionOrderInfo:
        """RELEASED -> IN_PROGRESS; the order enters CUT with all planned units."""
        order = self._get_order(scope_id, order_id, refresh=True)
        with self._order_guard(scope_id, order.order_number):
            order = self._get_order(scope_id, order_id, refresh=True)
            try:
                self._apply_transition(order, "start", actor_id)
                first = ProductionStage.first()
                order.current_stage = first.value
                order.stage_costs.append(
                    ProductionStageCost(
                        order_id=order.id,
                        stage=first.value,
                        units=order.qty_planned,
                        cost_material=ZERO,
                        cost_labor=ZERO,
                        cost_overhead=ZERO,
                        status=StageCostStatus.OPEN.value,
                        created_by_id=actor_id,
                    )
                )
                self.session.flush()
            except Exception:
                self.session.rollback()
                raise
            self._commit()
            return order.to_dto()

    def cancel(self, scope_id: str, order_id: UUID, actor_id: UUID, reason: str | None = None) -> ProductionOrderInfo:
        """PLANNED or RELEASED -> CANCELLED.  Its reservations stop counting."""
        order = self._get_order(scope_id, order_id, refresh=True)
        with self._order_guard(scope_id, order.order_number):
            order = self._get_order(scope_id, order_id, refresh=True)
            try:
                self._apply_transition(order, "cancel", actor_id, {"reason": reason} if reason else None)
            except Exception:
                self.session.rollback()
                raise
            self._commit()
            return order.to_dto()

    def close_order(self, scope_id: str, order_id: UUID, actor_id: UUID) -> ProductionOrderInfo:
        """
        COMPLETED -> CLOSED.

        Raises:
            InvalidOrderTransitionError: not completed, or WIP of the order
                still holds units.
        """
        order = self._get_order(scope_id, order_id, refresh=True)
        with self._order_guard(scope_id, order.order_number):
            order = self._get_order(scope_id, order_id, refresh=True)
            PRODUCTION_ORDER_WORKFLOW.transition(order.order_number, order.status, "close")
            leftover = [
                key for stage in ProductionStage for key in self._stage_wip_keys(order, stage)
                if self._ledger.balance(
                    scope_id, key.ledger, key.item_key, key.location_key,
                ).qty != 0
            ]
            if leftover:
                logger.warning(
                    "production_close_blocked",
                    extra={
                        "order_number": order.order_number,
                        "wip_items": [f"{k.item_key}@{k.location_key}" for k in leftover],
                    },
                )
                raise InvalidOrderTransitionError(
                    order.order_number, order.status, ProductionOrderStatus.CLOSED.value,
                )
            try:
                self._apply_transition(order, "close", actor_id)
            except Exception:
                self.session.rollback()
                raise
            self._commit()
            return order.to_dto()

    # -------------------------------------------------------------------------
    # Material issue
    # -------------------------------------------------------------------------

    def issue_material(
        self,
        scope_id: str,
        order_id: UUID,
        material_key: str,
        qty: Decimal,
        raw_location_key: str,
        period_id: UUID,
        entry_date: date,
        actor_id: UUID,
        stage: ProductionStage | None = None,
    ) -> PostingResult:
        """
        Issue raw material into the order's current stage.

        RAW out and WIP in at the RAW weighted-average cost;
        Dr WIP(stage) / Cr raw materials inventory.

        Raises:
            StageMismatchError: ``stage`` given and not the current stage.
            ReservationExceededError: more than the outstanding reservation
                of (material, current stage), or no such reservation.
            InsufficientStockError: RAW stock too low.
        """
        qty = to_decimal(qty)
        if qty <= 0:
            raise ValueError(f"qty must be > 0, got {qty}")

        order = self._get_order(scope_id, order_id, refresh=True)
        with self._order_guard(scope_id, order.order_number):
            order = self._get_order(scope_id, order_id, refresh=True)
            PRODUCTION_ORDER_WORKFLOW.transition(order.order_number, order.status, "issue")
            current = self._require_stage(order, stage)
            reservation = order.reservation(material_key, current)
            outstanding = reservation.outstanding if reservation is not None else ZERO
            if reservation is None or qty > outstanding:
                logger.warning(
                    "material_issue_rejected",
                    extra={
                        "order_number": order.order_number,
                        "material_key": material_key,
                        "stage": current.value,
                        "outstanding": str(outstanding),
                        "requested": str(qty),
                    },
                )
                raise ReservationExceededError(order.order_number, material_key, outstanding, qty)

            return self._post_issues(
                order, current, [(reservation, qty)], raw_location_key,
                period_id, entry_date, actor_id, source_type="material_issue",
            )

    def backflush(
        self,
        scope_id: str,
        order_id: UUID,
        qty_completed: Decimal,
        raw_location_key: str,
        period_id: UUID,
        entry_date: date,
        actor_id: UUID,
        stage: ProductionStage | None = None,
    ) -> PostingResult:
        """
        Issue every reservation of the current stage in proportion to
        ``qty_completed`` units, capped at what is outstanding, in one posting.

        Raises:
            ValueError: qty_completed <= 0, or nothing left to issue.
        """
        qty_completed = to_decimal(qty_completed)
        if qty_completed <= 0:
            raise ValueError(f"qty_completed must be > 0, got {qty_completed}")

        order = self._get_order(scope_id, order_id, refresh=True)
        with self._order_guard(scope_id, order.order_number):
            order = self._get_order(scope_id, order_id, refresh=True)
            PRODUCTION_ORDER_WORKFLOW.transition(order.order_number, order.status, "issue")
            current = self._require_stage(order, stage)

            items = []
            for r in order.reservations:
                if r.stage != current.value:
                    continue
                qty = round_quantity(r.qty_required / order.qty_planned * qty_completed)
                qty = min(qty, r.outstanding)
                if qty > 0:
                    items.append((r, qty))
            if not items:
                raise ValueError(
                    f"Order {order.order_number}: nothing to backflush at {current.value}"
                )

            return self._post_issues(
                order, current, items, raw_location_key,
                period_id, entry_date, actor_id, source_type="backflush",
            )

    def _post_issues(
        self,
        order: ProductionOrder,
        stage: ProductionStage,
        items: Sequence[tuple[Reservation, Decimal]],
        raw_location_key: str,
        period_id: UUID,
        entry_date: date,
        actor_id: UUID,
        source_type: str,
    ) -> PostingResult:
        scope_id = order.scope_id
        raw_keys = [
            StockKey(scope_id, LedgerKind.RAW, r.material_key, raw_location_key) for r, _ in items
        ]
        raw_account = self._accounts.inventory(LedgerKind.RAW)
        wip_account = self._accounts.wip(stage)

        # The RAW cost read here is the cost the ledger will see
        with self._poster.hold(scope_id, keys=raw_keys):
            ops: list[LedgerOp] = []
            lines: list[JournalLineSpec] = []
            values: dict[str, Decimal] = {}
            for reservation, qty in items:
                wac = self._ledger.balance(
                    scope_id, LedgerKind.RAW, reservation.material_key, raw_location_key,
                ).weighted_avg_unit_cost
                value = round_money(qty * wac)
                values[reservation.material_key] = value
                ops.append(LedgerOp(
                    LedgerKind.RAW, reservation.material_key, raw_location_key,
                    Direction.OUT, qty, unit_cost=wac,
                ))
                ops.append(LedgerOp(
                    LedgerKind.WIP, order.material_wip_item_key(reservation.material_key),
                    stage.value, Direction.IN, qty, unit_cost=wac,
                    cost_breakdown=CostBreakdown(material=value),
                ))
                if value > 0:
                    memo = f"{reservation.material_key} x {qty}"
                    lines.append(JournalLineSpec.dr(wip_account, value, memo))
                    lines.append(JournalLineSpec.cr(raw_account, value, memo))

            total = sum(values.values(), ZERO)

            def on_posted(result: PostingResult) -> None:
                for reservation, qty in items:
                    reservation.qty_issued = reservation.qty_issued + qty
                    reservation.updated_by_id = actor_id
                pool = order.stage_cost(stage)
                pool.cost_material = pool.cost_material + total
                pool.updated_by_id = actor_id
                self.session.flush()

            with LogContext.bind(order_id=order.order_number):
                result = self._poster.post_transaction(
                    scope_id=scope_id,
                    period_id=period_id,
                    entry_date=entry_date,
                    ledger_ops=ops,
                    journal_lines=lines,
                    source=PostingSource(source_type, str(order.id), order.order_number),
                    actor_id=actor_id,
                    memo=f"Material {source_type.replace('_', ' ')} {order.order_number} {stage.value}",
                    on_posted=on_posted,
                )

        logger.info(
            "production_material_issued",
            extra={
                "order_number": order.order_number,
                "stage": stage.value,
                "source_type": source_type,
                "materials": {r.material_key: str(q) for r, q in items},
                "value": str(total),
            },
        )
        return result

    # -------------------------------------------------------------------------
    # Stage moves and completion
    # -------------------------------------------------------------------------

    def move_stage(
        self,
        scope_id: str,
        order_id: UUID,
        to_stage: ProductionStage,
        qty_good: Decimal,
        period_id: UUID,
        entry_date: date,
        actor_id: UUID,
        qty_rejected: Decimal = ZERO,
        labor_cost: Decimal = ZERO,
        overhead_cost: Decimal = ZERO,
    ) -> StageMoveResult:
        """
        Complete the current stage and move the good units to the next one.

        The source pool is split into good value (carried) and production
        loss (rejected units).  Labor and overhead are the conversion cost of
        the target stage: debited to its WIP account, credited to accrued
        payroll and applied overhead.

        Raises:
            StageMismatchError: ``to_stage`` is not the stage after the
                current one.
            ValueError: good + rejected differs from the units in the stage,
                no good units, or negative conversion cost.
        """
        to_stage = ProductionStage(to_stage)
        qty_good = to_decimal(qty_good)
        if qty_good <= 0:
            raise ValueError("a stage move needs at least one good unit")

        order = self._get_order(scope_id, order_id, refresh=True)
        with self._order_guard(scope_id, order.order_number):
            order = self._get_order(scope_id, order_id, refresh=True)
            PRODUCTION_ORDER_WORKFLOW.transition(order.order_number, order.status, "move_stage")
            current = self._require_stage(order, None)
            if current.next_stage != to_stage:
                raise StageMismatchError(order.order_number, current.value, to_stage.value)
            return self._close_stage(
                order, current, to_stage, qty_good, to_decimal(qty_rejected),
                to_decimal(labor_cost), to_decimal(overhead_cost),
                period_id, entry_date, actor_id,
            )

    def complete_order(
        self,
        scope_id: str,
        order_id: UUID,
        qty_good: Decimal,
        period_id: UUID,
        entry_date: date,
        actor_id: UUID,
        qty_rejected: Decimal = ZERO,
    ) -> StageMoveResult:
        """
        Complete FINISH: good units into finished goods, rejects to loss.

        Dr finished goods / Dr production loss / Cr WIP FINISH.  Records the
        actual unit cost and its variance against standard.

        Raises:
            StageMismatchError: the order is not in FINISH.
        """
        order = self._get_order(scope_id, order_id, refresh=True)
        with self._order_guard(scope_id, order.order_number):
            order = self._get_order(scope_id, order_id, refresh=True)
            PRODUCTION_ORDER_WORKFLOW.transition(order.order_number, order.status, "complete")
            self._require_stage(order, ProductionStage.FINISH)
            return self._close_stage(
                order, ProductionStage.FINISH, None, to_decimal(qty_good),
                to_decimal(qty_rejected), ZERO, ZERO, period_id, entry_date, actor_id,
            )

    def _close_stage(
        self,
        order: ProductionOrder,
        from_stage: ProductionStage,
        to_stage: ProductionStage | None,
        qty_good: Decimal,
        qty_rejected: Decimal,
        labor: Decimal,
        overhead: Decimal,
        period_id: UUID,
        entry_date: date,
        actor_id: UUID,
    ) -> StageMoveResult:
        scope_id = order.scope_id
        labor = round_money(labor)
        overhead = round_money(overhead)
        if labor < 0 or overhead < 0:
            raise ValueError("labor and overhead cannot be negative")

        row = order.stage_cost(from_stage)
        pool = StageCostPool(
            stage=from_stage,
            units=row.units,
            material=row.cost_material,
            labor=row.cost_labor,
            overhead=row.cost_overhead,
        )
        completion = pool.complete(qty_good=qty_good, qty_rejected=qty_rejected)

        ops, lines = self._stage_drain(order, from_stage, completion)
        if to_stage is not None:
            carried = completion.good + CostBreakdown(labor=labor, overhead=overhead)
            self._stage_receive(order, to_stage, completion, carried, labor, overhead, ops, lines)
            source_type = "stage_move"
            memo = f"Stage move {order.order_number} {from_stage.value} -> {to_stage.value}"
        else:
            carried = completion.good
            self._finished_receive(order, completion, ops, lines)
            source_type = "production_completion"
            memo = f"Production completion {order.order_number}"

        def on_posted(result: PostingResult) -> None:
            row.status = StageCostStatus.COMPLETED.value
            row.unit_cost = completion.unit_cost
            row.qty_good = completion.qty_good
            row.qty_rejected = completion.qty_rejected
            row.updated_by_id = actor_id
            order.qty_rejected = order.qty_rejected + completion.qty_rejected
            order.updated_by_id = actor_id
            if to_stage is not None:
                order.current_stage = to_stage.value
                order.stage_costs.append(
                    ProductionStageCost(
                        order_id=order.id,
                        stage=to_stage.value,
                        units=completion.qty_good,
                        cost_material=carried.material,
                        cost_labor=carried.labor,
                        cost_overhead=carried.overhead,
                        status=StageCostStatus.OPEN.value,
                        created_by_id=actor_id,
                    )
                )
            else:
                order.qty_completed = completion.qty_good
                order.actual_unit_cost = completion.unit_cost
                if order.standard_unit_cost is not None:
                    order.unit_cost_variance = self._variance.unit_cost_variance(
                        standard_unit_cost=order.standard_unit_cost,
                        actual_unit_cost=completion.unit_cost,
                    ).variance
                self._apply_transition(
                    order, "complete", actor_id,
                    {
                        "qty_good": str(completion.qty_good),
                        "qty_rejected": str(completion.qty_rejected),
                        "actual_unit_cost": str(completion.unit_cost),
                    },
                )
            self.session.flush()

        keys = [StockKey(scope_id, op.ledger, op.item_key, op.location_key) for op in ops]
        with self._poster.hold(scope_id, keys=keys), \
                LogContext.bind(order_id=order.order_number):
            result = self._poster.post_transaction(
                scope_id=scope_id,
                period_id=period_id,
                entry_date=entry_date,
                ledger_ops=ops,
                journal_lines=lines,
                source=PostingSource(source_type, str(order.id), order.order_number),
                actor_id=actor_id,
                memo=memo,
                on_posted=on_posted,
            )

        logger.info(
            "production_stage_completed",
            extra={
                "order_number": order.order_number,
                "from_stage": from_stage.value,
                "to_stage": to_stage.value if to_stage else None,
                "unit_cost": str(completion.unit_cost),
                "good_value": str(completion.good_value),
                "loss_value": str(completion.loss_value),
                "labor": str(labor),
                "overhead": str(overhead),
            },
        )
        return StageMoveResult(
            order_number=order.order_number,
            from_stage=from_stage,
            to_stage=to_stage,
            completion=completion,
            labor=labor,
            overhead=overhead,
            posting=result,
        )

    def _stage_drain(
        self, order: ProductionOrder, stage: ProductionStage, completion: StageCompletion,
    ) -> tuple[list[LedgerOp], list[JournalLineSpec]]:
        """Empty every WIP item of the order at ``stage``; credit the pool."""
        ops = []
        for key in self._stage_wip_keys(order, stage):
            balance = self._ledger.balance(key.scope_id, key.ledger, key.item_key, key.location_key)
            if balance.qty > 0:
                ops.append(LedgerOp(
                    LedgerKind.WIP, key.item_key, key.location_key, Direction.OUT,
                    balance.qty, unit_cost=balance.weighted_avg_unit_cost,
                ))

        lines = []
        if completion.pool.total > 0:
            lines.append(JournalLineSpec.cr(
                self._accounts.wip(stage), completion.pool.total, f"{stage.value} pool",
            ))
        if completion.loss_value > 0:
            lines.append(JournalLineSpec.dr(
                self._accounts.code(AccountRole.PRODUCTION_LOSS), completion.loss_value,
                f"{completion.qty_rejected} rejected at {stage.value}",
            ))
        return ops, lines

    def _stage_receive(
        self,
        order: ProductionOrder,
        to_stage: ProductionStage,
        completion: StageCompletion,
        carried: CostBreakdown,
        labor: Decimal,
        overhead: Decimal,
        ops: list[LedgerOp],
        lines: list[JournalLineSpec],
    ) -> None:
        wip_account = self._accounts.wip(to_stage)
        ops.append(LedgerOp(
            LedgerKind.WIP, order.wip_item_key, to_stage.value, Direction.IN,
            completion.qty_good,
            unit_cost=round_unit_cost(carried.total / completion.qty_good),
            cost_breakdown=carried,
        ))
        if completion.good_value > 0:
            lines.append(JournalLineSpec.dr(
                wip_account, completion.good_value, f"carried from {completion.stage.value}",
            ))
        if labor > 0:
            lines.append(JournalLineSpec.dr(wip_account, labor, f"{to_stage.value} labor"))
            lines.append(JournalLineSpec.cr(
                self._accounts.code(AccountRole.ACCRUED_PAYROLL), labor, f"{to_stage.value} labor",
            ))
        if overhead > 0:
            lines.append(JournalLineSpec.dr(wip_account, overhead, f"{to_stage.value} overhead"))
            lines.append(JournalLineSpec.cr(
                self._accounts.code(AccountRole.APPLIED_OVERHEAD), overhead,
                f"{to_stage.value} overhead",
            ))

    def _finished_receive(
        self,
        order: ProductionOrder,
        completion: StageCompletion,
        ops: list[LedgerOp],
        lines: list[JournalLineSpec],
    ) -> None:
        if completion.qty_good > 0:
            ops.append(LedgerOp(
                LedgerKind.FINISHED, order.product_key, order.finished_location_key,
                Direction.IN, completion.qty_good, unit_cost=completion.unit_cost,
            ))
        if completion.good_value > 0:
            lines.append(JournalLineSpec.dr(
                self._accounts.inventory(LedgerKind.FINISHED), completion.good_value,
                f"{completion.qty_good} x {order.product_key}",
            ))

    # -------------------------------------------------------------------------
    # Corrections
    # -------------------------------------------------------------------------

    def reverse_posting(
        self,
        scope_id: str,
        order_id: UUID,
        journal_entry_id: UUID,
        period_id: UUID,
        actor_id: UUID,
        reason: str,
        entry_date: date | None = None,
    ) -> PostingResult:
        """
        Reverse one posting of the order and unwind the order state it built.

        Only the latest step of the order can be undone:

        - an issue or backflush while its stage is still open: issued
          quantities and the stage pool go back down;
        - a stage move while the order sits in the target stage with nothing
          issued there: the order returns to the source stage, reopened;
        - a completion while the order is not closed: the order returns to
          IN_PROGRESS at FINISH.

        Raises:
            ReversalNotAllowedError: not a production posting of this order,
                or later steps build on it.
            EntryAlreadyReversedError, PeriodClosedError,
            InsufficientStockError (finished goods already sold): from the
                poster, with nothing changed.
        """
        order = self._get_order(scope_id, order_id, refresh=True)
        with self._order_guard(scope_id, order.order_number):
            order = self._get_order(scope_id, order_id, refresh=True)
            original = self._poster.journal.get_entry(scope_id, journal_entry_id)
            source_type = original.source.source_type
            if source_type not in SOURCE_TYPES or original.source.source_id != str(order.id):
                raise ReversalNotAllowedError(
                    original.journal_number,
                    f"not a production posting of order {order.order_number}",
                )
            entries = self._ledger.entries_for_journal(scope_id, journal_entry_id)

            if source_type in ISSUE_SOURCES:
                unwind = self._unwind_issue(order, original, entries, actor_id)
            elif source_type == "stage_move":
                unwind = self._unwind_stage_move(order, original, entries, actor_id)
            else:
                unwind = self._unwind_completion(order, original, actor_id)

            with LogContext.bind(order_id=order.order_number):
                result = self._poster.reverse_transaction(
                    scope_id, journal_entry_id, period_id, actor_id, reason,
                    entry_date=entry_date, on_posted=unwind, owner="production",
                )

        logger.info(
            "production_posting_reversed",
            extra={
                "order_number": order.order_number,
                "source_type": source_type,
                "journal_number": original.journal_number,
                "reversal_number": result.journal_entry.journal_number,
            },
        )
        return result

    def _refuse(self, original: JournalEntryInfo, reason: str) -> ReversalNotAllowedError:
        logger.warning(
            "production_reversal_refused",
            extra={"journal_number": original.journal_number, "reason": reason},
        )
        return ReversalNotAllowedError(original.journal_number, reason)

    def _unwind_issue(
        self,
        order: ProductionOrder,
        original: JournalEntryInfo,
        entries: Sequence[LedgerEntryInfo],
        actor_id: UUID,
    ) -> PostedHook:
        wip_entries = [e for e in entries if e.ledger == LedgerKind.WIP]
        stage = ProductionStage(wip_entries[0].location_key)
        pool = order.stage_cost(stage)
        if (
            order.status != ProductionOrderStatus.IN_PROGRESS.value
            or order.current_stage != stage.value
            or pool is None
            or pool.status != StageCostStatus.OPEN.value
        ):
            raise self._refuse(original, f"stage {stage.value} of {order.order_number} is already completed")

        by_item = {
            order.material_wip_item_key(r.material_key): r
            for r in order.reservations
            if r.stage == stage.value
        }
        value = sum((e.cost_breakdown.material for e in wip_entries if e.cost_breakdown), ZERO)

        def unwind(result: PostingResult) -> None:
            for entry in wip_entries:
                reservation = by_item[entry.item_key]
                reservation.qty_issued = reservation.qty_issued - entry.qty
                reservation.updated_by_id = actor_id
            pool.cost_material = pool.cost_material - value
            pool.updated_by_id = actor_id
            self.session.flush()

        return unwind

    def _unwind_stage_move(
        self,
        order: ProductionOrder,
        original: JournalEntryInfo,
        entries: Sequence[LedgerEntryInfo],
        actor_id: UUID,
    ) -> PostedHook:
        received = next(
            e for e in entries
            if e.item_key == order.wip_item_key and e.direction == Direction.IN
        )
        to_stage = ProductionStage(received.location_key)
        from_stage = to_stage.previous_stage
        issued_since = any(
            r.qty_issued > 0 for r in order.reservations if r.stage == to_stage.value
        )
        if (
            order.status != ProductionOrderStatus.IN_PROGRESS.value
            or order.current_stage != to_stage.value
            or issued_since
        ):
            raise self._refuse(original, f"{order.order_number} has moved on from {to_stage.value}")

        target_pool = order.stage_cost(to_stage)
        source_pool = order.stage_cost(from_stage)

        def unwind(result: PostingResult) -> None:
            order.qty_rejected = order.qty_rejected - (source_pool.qty_rejected or ZERO)
            order.current_stage = from_stage.value
            order.updated_by_id = actor_id
            source_pool.status = StageCostStatus.OPEN.value
            source_pool.unit_cost = None
            source_pool.qty_good = None
            source_pool.qty_rejected = None
            source_pool.updated_by_id = actor_id
            self.session.delete(target_pool)
            self.session.flush()
            self.session.expire(order, ["stage_costs"])

        return unwind

    def _unwind_completion(
        self, order: ProductionOrder, original: JournalEntryInfo, actor_id: UUID,
    ) -> PostedHook:
        if order.status != ProductionOrderStatus.COMPLETED.value:
            raise self._refuse(original, f"{order.order_number} is {order.status}")
        pool = order.stage_cost(ProductionStage.FINISH)

        def unwind(result: PostingResult) -> None:
            order.qty_rejected = order.qty_rejected - (pool.qty_rejected or ZERO)
            order.qty_completed = ZERO
            order.actual_unit_cost = None
            order.unit_cost_variance = None
            pool.status = StageCostStatus.OPEN.value
            pool.unit_cost = None
            pool.qty_good = None
            pool.qty_rejected = None
            pool.updated_by_id = actor_id
            self._apply_transition(
                order, "reopen", actor_id,
                {"reversal_number": result.journal_entry.journal_number},
            )
            self.session.flush()

        return unwind

    # -------------------------------------------------------------------------
    # Reporting
    # -------------------------------------------------------------------------

    def variance_report(
        self, scope_id: str, order_numbers: Iterable[str] | None = None,
    ) -> VarianceReport:
        """Standard vs actual unit cost of completed and closed orders."""
        stmt = select(ProductionOrder).where(
            ProductionOrder.scope_id == scope_id,
            ProductionOrder.status.in_((
                ProductionOrderStatus.COMPLETED.value,
                ProductionOrderStatus.CLOSED.value,
            )),
            ProductionOrder.standard_unit_cost.is_not(None),
            ProductionOrder.actual_unit_cost.is_not(None),
        )
        if order_numbers is not None:
            stmt = stmt.where(ProductionOrder.order_number.in_(list(order_numbers)))
        orders = self.session.execute(stmt.order_by(ProductionOrder.order_number)).scalars().all()

        report = self._variance.report([
            self._variance.order_line(
                order.order_number,
                order.product_key,
                order.qty_completed,
                order.standard_unit_cost,
                order.actual_unit_cost,
            )
            for order in orders
        ])
        logger.info(
            "variance_report_built",
            extra={
                "scope_id": scope_id,
                "order_count": len(report.lines),
                "total_variance": str(report.total_variance),
            },
        )
        return report
