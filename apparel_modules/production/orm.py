"""
Module: apparel_modules.production.orm
Responsibility: SQLAlchemy ORM persistence for production orders, their
    material reservations and their per-stage cost pools.

Architecture position: Modules > Production > ORM.  Inherits from TrackedBase
    (apparel_kernel.db.base).  Products, materials and locations are master
    data owned elsewhere and referenced by String key with no foreign key.

Invariants enforced:
    - (scope_id, order_number) is unique.
    - bom_id is pinned at creation and never changes.
    - One reservation per (order, material, stage); qty_issued <= qty_required.
    - One cost pool per (order, stage).
    - Money and quantities are Decimal (PortableDecimal), never float.

Audit relevance:
    These rows are operational state.  The financial truth is the journal
    and the inventory ledgers; every amount accumulated here was posted
    through the TransactionalPoster in the same transaction.
"""

from decimal import Decimal
from uuid import UUID

from sqlalchemy import ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from apparel_kernel.db.base import TrackedBase, UUIDString
from apparel_kernel.domain.values import ProductionStage
from apparel_modules.production.models import (
    ProductionOrderInfo,
    ProductionOrderStatus,
    ReservationInfo,
    StageCostInfo,
    StageCostStatus,
)

ZERO = Decimal("0")


class ProductionOrder(TrackedBase):
    """Header of a production order."""

    __tablename__ = "production_orders"

    __table_args__ = (
        UniqueConstraint("scope_id", "order_number", name="uq_production_order_number"),
        Index("idx_production_order_status", "scope_id", "status"),
    )

    scope_id: Mapped[str] = mapped_column(String(64), nullable=False)

    order_number: Mapped[str] = mapped_column(String(50), nullable=False)

    product_key: Mapped[str] = mapped_column(String(100), nullable=False)

    bom_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("bills_of_materials.id"), nullable=False,
    )

    qty_planned: Mapped[Decimal] = mapped_column(nullable=False)
    qty_completed: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    qty_rejected: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ProductionOrderStatus.PLANNED.value,
    )

    current_stage: Mapped[str | None] = mapped_column(String(20), nullable=True)

    # Where finished goods are received
    finished_location_key: Mapped[str] = mapped_column(String(100), nullable=False)

    standard_unit_cost: Mapped[Decimal | None] = mapped_column(nullable=True)
    actual_unit_cost: Mapped[Decimal | None] = mapped_column(nullable=True)
    unit_cost_variance: Mapped[Decimal | None] = mapped_column(nullable=True)

    reservations: Mapped[list["Reservation"]] = relationship(
        back_populates="order",
        order_by="Reservation.material_key",
        lazy="selectin",
    )

    stage_costs: Mapped[list["ProductionStageCost"]] = relationship(
        back_populates="order",
        lazy="selectin",
    )

    @property
    def wip_item_key(self) -> str:
        """WIP ledger item carrying this order's product units between stages."""
        return f"{self.order_number}/{self.product_key}"

    def material_wip_item_key(self, material_key: str) -> str:
        """WIP ledger item holding material issued to this order."""
        return f"{self.order_number}/{material_key}"

    def stage_cost(self, stage: ProductionStage) -> "ProductionStageCost | None":
        stage = ProductionStage(stage)
        for pool in self.stage_costs:
            if pool.stage == stage.value:
                return pool
        return None

    def reservation(self, material_key: str, stage: ProductionStage) -> "Reservation | None":
        stage = ProductionStage(stage)
        for r in self.reservations:
            if r.material_key == material_key and r.stage == stage.value:
                return r
        return None

    def to_dto(self) -> ProductionOrderInfo:
        stage_order = [s.value for s in ProductionStage]
        return ProductionOrderInfo(
            id=self.id,
            scope_id=self.scope_id,
            order_number=self.order_number,
            product_key=self.product_key,
            bom_id=self.bom_id,
            qty_planned=self.qty_planned,
            qty_completed=self.qty_completed,
            qty_rejected=self.qty_rejected,
            status=ProductionOrderStatus(self.status),
            current_stage=ProductionStage(self.current_stage) if self.current_stage else None,
            finished_location_key=self.finished_location_key,
            standard_unit_cost=self.standard_unit_cost,
            actual_unit_cost=self.actual_unit_cost,
            unit_cost_variance=self.unit_cost_variance,
            reservations=tuple(r.to_dto() for r in self.reservations),
            stage_costs=tuple(
                p.to_dto()
                for p in sorted(self.stage_costs, key=lambda p: stage_order.index(p.stage))
            ),
        )

    def __repr__(self) -> str:
        return f"<ProductionOrder {self.order_number} {self.product_key} ({self.status})>"


class Reservation(TrackedBase):
    """Material reserved for one stage of an order, from BOM explosion."""

    __tablename__ = "production_reservations"

    __table_args__ = (
        UniqueConstraint("order_id", "material_key", "stage", name="uq_reservation_material_stage"),
        Index("idx_reservation_material", "scope_id", "material_key"),
    )

    scope_id: Mapped[str] = mapped_column(String(64), nullable=False)

    order_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("production_orders.id"), nullable=False,
    )

    material_key: Mapped[str] = mapped_column(String(100), nullable=False)

    stage: Mapped[str] = mapped_column(String(20), nullable=False)

    qty_required: Mapped[Decimal] = mapped_column(nullable=False)

    qty_issued: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)

    order: Mapped[ProductionOrder] = relationship(back_populates="reservations")

    @property
    def outstanding(self) -> Decimal:
        return max(self.qty_required - self.qty_issued, ZERO)

    def to_dto(self) -> ReservationInfo:
        return ReservationInfo(
            material_key=self.material_key,
            stage=ProductionStage(self.stage),
            qty_required=self.qty_required,
            qty_issued=self.qty_issued,
        )


class ProductionStageCost(TrackedBase):
    """Cost pool of one stage of an order."""

    __tablename__ = "production_stage_costs"

    __table_args__ = (
        UniqueConstraint("order_id", "stage", name="uq_stage_cost_order_stage"),
    )

    order_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("production_orders.id"), nullable=False,
    )

    stage: Mapped[str] = mapped_column(String(20), nullable=False)

    # Product units that entered the stage
    units: Mapped[Decimal] = mapped_column(nullable=False)

    cost_material: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    cost_labor: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    cost_overhead: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=StageCostStatus.OPEN.value,
    )

    unit_cost: Mapped[Decimal | None] = mapped_column(nullable=True)
    qty_good: Mapped[Decimal | None] = mapped_column(nullable=True)
    qty_rejected: Mapped[Decimal | None] = mapped_column(nullable=True)

    order: Mapped[ProductionOrder] = relationship(back_populates="stage_costs")

    def to_dto(self) -> StageCostInfo:
        return StageCostInfo(
            stage=ProductionStage(self.stage),
            units=self.units,
            cost_material=self.cost_material,
            cost_labor=self.cost_labor,
            cost_overhead=self.cost_overhead,
            status=StageCostStatus(self.status),
            unit_cost=self.unit_cost,
            qty_good=self.qty_good,
            qty_rejected=self.qty_rejected,
        )
