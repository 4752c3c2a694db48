"""
Module: apparel_kernel.models.bom
Responsibility: ORM persistence for bills of materials: a versioned header
    per product and its component lines.
Architecture position: Kernel > Models.  May import from db/ and domain/values.py only.

Invariants enforced:
    - (scope_id, product_key, version) is unique.
    - Explosion picks the highest ACTIVE version whose effective range
      contains the as-of date; versions are retired explicitly.
    - A line names exactly one of material_key / sub_product_key.
    - Lines of a non-draft BOM are frozen (db/immutability.py).

Audit relevance:
    Activation and retirement are audited; explosion results are derived
    and never stored.
"""

from datetime import date
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import (
    CheckConstraint,
    Date,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from apparel_kernel.db.base import TrackedBase, UUIDString


class BomStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    RETIRED = "retired"


class BillOfMaterials(TrackedBase):
    """
    BOM header for one product version.

    base_qty is the output quantity the lines are written for; a line's
    qty_per is consumed per base_qty units of the product.  yield_pct is the
    expected good output share, used only by the standard cost rollup.
    """

    __tablename__ = "bills_of_materials"

    __table_args__ = (
        UniqueConstraint(
            "scope_id", "product_key", "version", name="uq_bom_product_version",
        ),
        Index("idx_bom_product_status", "scope_id", "product_key", "status"),
    )

    scope_id: Mapped[str] = mapped_column(String(64), nullable=False)

    product_key: Mapped[str] = mapped_column(String(100), nullable=False)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    status: Mapped[BomStatus] = mapped_column(
        String(20), nullable=False, default=BomStatus.DRAFT,
    )

    base_qty: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("1"))

    yield_pct: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("100"))

    # Standard conversion cost per unit of product
    standard_labor_cost: Mapped[Decimal] = mapped_column(
        nullable=False, default=Decimal("0"),
    )
    standard_overhead_cost: Mapped[Decimal] = mapped_column(
        nullable=False, default=Decimal("0"),
    )

    effective_from: Mapped[date | None] = mapped_column(Date, nullable=True)

    effective_to: Mapped[date | None] = mapped_column(Date, nullable=True)

    description: Mapped[str | None] = mapped_column(String(200), nullable=True)

    lines: Mapped[list["BomLine"]] = relationship(
        back_populates="bom",
        order_by="BomLine.line_no",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<BillOfMaterials {self.product_key} v{self.version} ({self.status})>"

    @property
    def is_active(self) -> bool:
        return self.status == BomStatus.ACTIVE

    def is_effective_on(self, as_of: date) -> bool:
        if self.effective_from is not None and as_of < self.effective_from:
            return False
        return self.effective_to is None or as_of <= self.effective_to


class BomLine(TrackedBase):
    """
    One component line.

    material_key names a purchased material (RAW ledger item);
    sub_product_key names a semi-finished product that has its own BOM and
    is exploded recursively.
    """

    __tablename__ = "bom_lines"

    __table_args__ = (
        UniqueConstraint("bom_id", "line_no", name="uq_bom_line_no"),
        CheckConstraint(
            "(material_key IS NULL) <> (sub_product_key IS NULL)",
            name="ck_bom_line_component",
        ),
    )

    bom_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("bills_of_materials.id"),
        nullable=False,
    )

    line_no: Mapped[int] = mapped_column(Integer, nullable=False)

    material_key: Mapped[str | None] = mapped_column(String(100), nullable=True)

    sub_product_key: Mapped[str | None] = mapped_column(String(100), nullable=True)

    qty_per: Mapped[Decimal] = mapped_column(nullable=False)

    scrap_pct: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))

    # Stage that consumes the component; "cut" | "sew" | "finish"
    stage: Mapped[str] = mapped_column(String(20), nullable=False)

    bom: Mapped[BillOfMaterials] = relationship(back_populates="lines")

    def __repr__(self) -> str:
        component = self.material_key or f"sub:{self.sub_product_key}"
        return f"<BomLine #{self.line_no} {component} x{self.qty_per} @{self.stage}>"
