"""
BomService -- bill of materials authoring and resolution.

Responsibility:
    Creates versioned BOMs, adds component lines while the BOM is a draft,
    activates and retires versions, and resolves products to their active
    version for explosion and standard costing.

Architecture position:
    Kernel > Services -- flush-only.  Explosion itself is the pure
    BomExploder engine (apparel_engines.bom_explosion); this service feeds
    it frozen snapshots loaded from the database.

Invariants enforced:
    - Lines are only added to a DRAFT BOM (also enforced by ORM listeners).
    - Adding a sub-product line that would make a product its own
      ancestor is rejected when the line is authored.
    - The BOM used for a product is the highest ACTIVE version whose
      effective range contains the as-of date.
    - Status moves DRAFT -> ACTIVE -> RETIRED only.

Failure modes:
    - BomNotFoundError: unknown BOM id or no active version for a product.
    - BomStateError: action not allowed in the BOM's current status.
    - CircularBomError / BomDepthExceededError: from explosion.

Audit relevance:
    BOM_ACTIVATED and BOM_RETIRED audit events.
"""

from datetime import date
from decimal import Decimal
from typing import Protocol
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from apparel_engines.bom_explosion import (
    DEFAULT_MAX_DEPTH,
    BomExploder,
    BomLineSnapshot,
    BomSnapshot,
    ExplodedRequirement,
)
from apparel_kernel.db.types import to_decimal
from apparel_kernel.domain.clock import Clock
from apparel_kernel.domain.values import ProductionStage
from apparel_kernel.exceptions import BomNotFoundError, BomStateError, CircularBomError
from apparel_kernel.logging_config import get_logger
from apparel_kernel.models.audit_event import AuditAction
from apparel_kernel.models.bom import BillOfMaterials, BomLine, BomStatus
from apparel_kernel.services.auditor_service import AuditorService
from apparel_kernel.services.base import BaseService

logger = get_logger("services.bom")


class MasterDataGateway(Protocol):
    """Standard cost lookup owned by the master data collaborator."""

    def standard_cost(self, scope_id: str, item_key: str) -> Decimal: ...


def to_snapshot(bom: BillOfMaterials) -> BomSnapshot:
    return BomSnapshot(
        product_key=bom.product_key,
        version=bom.version,
        lines=tuple(
            BomLineSnapshot(
                line_no=line.line_no,
                qty_per=line.qty_per,
                stage=line.stage,
                material_key=line.material_key,
                sub_product_key=line.sub_product_key,
                scrap_pct=line.scrap_pct,
            )
            for line in bom.lines
        ),
        base_qty=bom.base_qty,
        yield_pct=bom.yield_pct,
        standard_labor_cost=bom.standard_labor_cost,
        standard_overhead_cost=bom.standard_overhead_cost,
        bom_id=str(bom.id),
    )


class BomService(BaseService):
    """
    BOM versions and their resolution.

    Contract:
        Writes flush only; the caller commits.  Reads never write.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        max_depth: int = DEFAULT_MAX_DEPTH,
    ):
        super().__init__(session, clock)
        self._auditor = AuditorService(session, self.clock)
        self._max_depth = max_depth

    # -------------------------------------------------------------------------
    # Authoring
    # -------------------------------------------------------------------------

    def create_bom(
        self,
        scope_id: str,
        product_key: str,
        actor_id: UUID,
        base_qty: Decimal = Decimal("1"),
        yield_pct: Decimal = Decimal("100"),
        standard_labor_cost: Decimal = Decimal("0"),
        standard_overhead_cost: Decimal = Decimal("0"),
        effective_from: date | None = None,
        effective_to: date | None = None,
        description: str | None = None,
    ) -> BillOfMaterials:
        """
        Create the next DRAFT version for ``product_key``.

        Raises:
            ValueError: base_qty <= 0, yield_pct outside (0, 100], negative
                standard costs or an inverted effective range.
        """
        base_qty = to_decimal(base_qty)
        yield_pct = to_decimal(yield_pct)
        if base_qty <= 0:
            raise ValueError(f"base_qty must be > 0, got {base_qty}")
        if not (Decimal("0") < yield_pct <= Decimal("100")):
            raise ValueError(f"yield_pct must be in (0, 100], got {yield_pct}")
        if to_decimal(standard_labor_cost) < 0 or to_decimal(standard_overhead_cost) < 0:
            raise ValueError("standard conversion costs cannot be negative")
        if effective_from and effective_to and effective_from > effective_to:
            raise ValueError(
                f"effective_from ({effective_from}) cannot be after effective_to ({effective_to})"
            )

        latest = self.session.execute(
            select(BillOfMaterials.version)
            .where(
                BillOfMaterials.scope_id == scope_id,
                BillOfMaterials.product_key == product_key,
            )
            .order_by(BillOfMaterials.version.desc())
            .limit(1)
        ).scalar_one_or_none()

        bom = BillOfMaterials(
            scope_id=scope_id,
            product_key=product_key,
            version=(latest or 0) + 1,
            status=BomStatus.DRAFT.value,
            base_qty=base_qty,
            yield_pct=yield_pct,
            standard_labor_cost=to_decimal(standard_labor_cost),
            standard_overhead_cost=to_decimal(standard_overhead_cost),
            effective_from=effective_from,
            effective_to=effective_to,
            description=description,
            created_by_id=actor_id,
        )
        self.session.add(bom)
        self.session.flush()

        logger.info(
            "bom_created",
            extra={"scope_id": scope_id, "product_key": product_key, "version": bom.version},
        )
        return bom

    def get_bom(self, scope_id: str, bom_id: UUID) -> BillOfMaterials:
        bom = self.session.get(BillOfMaterials, bom_id)
        if bom is None or bom.scope_id != scope_id:
            raise BomNotFoundError(str(bom_id))
        return bom

    def add_line(
        self,
        scope_id: str,
        bom_id: UUID,
        qty_per: Decimal,
        stage: ProductionStage,
        actor_id: UUID,
        material_key: str | None = None,
        sub_product_key: str | None = None,
        scrap_pct: Decimal = Decimal("0"),
    ) -> BomLine:
        """
        Append a component line to a DRAFT BOM.

        Raises:
            BomStateError: the BOM is not a draft.
            CircularBomError: the sub-product already uses this product.
            ValueError: invalid quantities or component keys.
        """
        bom = self.get_bom(scope_id, bom_id)
        if bom.status != BomStatus.DRAFT.value:
            raise BomStateError(str(bom.id), bom.status, "add a line to")

        stage = ProductionStage(stage)
        line_no = max((line.line_no for line in bom.lines), default=0) + 1
        # Validates component keys, qty_per and scrap_pct
        BomLineSnapshot(
            line_no=line_no,
            qty_per=qty_per,
            stage=stage.value,
            material_key=material_key,
            sub_product_key=sub_product_key,
            scrap_pct=scrap_pct,
        )

        if sub_product_key is not None:
            exploder = BomExploder(
                self._lookup(scope_id, self.clock.today(), pinned=bom), self._max_depth,
            )
            cycle = exploder.find_cycle(bom.product_key, sub_product_key)
            if cycle is not None:
                logger.warning("bom_cycle_rejected", extra={"path": cycle})
                raise CircularBomError(cycle)

        line = BomLine(
            bom_id=bom.id,
            line_no=line_no,
            material_key=material_key,
            sub_product_key=sub_product_key,
            qty_per=to_decimal(qty_per),
            scrap_pct=to_decimal(scrap_pct),
            stage=stage.value,
            created_by_id=actor_id,
        )
        bom.lines.append(line)
        self.session.flush()
        return line

    def activate(self, scope_id: str, bom_id: UUID, actor_id: UUID) -> BillOfMaterials:
        """
        DRAFT -> ACTIVE.  Other versions keep their status.

        Raises:
            BomStateError: the BOM is not a draft or has no lines.
        """
        bom = self.get_bom(scope_id, bom_id)
        if bom.status != BomStatus.DRAFT.value:
            raise BomStateError(str(bom.id), bom.status, "activate")
        if not bom.lines:
            raise BomStateError(str(bom.id), bom.status, "activate an empty")
        # Sub-product BOMs activated since the lines were authored
        exploder = BomExploder(
            self._lookup(scope_id, self.clock.today(), pinned=bom), self._max_depth,
        )
        for line in bom.lines:
            if line.sub_product_key is None:
                continue
            cycle = exploder.find_cycle(bom.product_key, line.sub_product_key)
            if cycle is not None:
                logger.warning("bom_cycle_rejected", extra={"path": cycle})
                raise CircularBomError(cycle)

        bom.status = BomStatus.ACTIVE.value
        bom.updated_by_id = actor_id
        self.session.flush()
        self._auditor.record_bom_status(
            scope_id, bom.id, bom.product_key, bom.version, AuditAction.BOM_ACTIVATED, actor_id,
        )
        logger.info(
            "bom_activated",
            extra={"scope_id": scope_id, "product_key": bom.product_key, "version": bom.version},
        )
        return bom

    def retire(self, scope_id: str, bom_id: UUID, actor_id: UUID) -> BillOfMaterials:
        """ACTIVE -> RETIRED.  Orders already pinned to it are unaffected."""
        bom = self.get_bom(scope_id, bom_id)
        if bom.status != BomStatus.ACTIVE.value:
            raise BomStateError(str(bom.id), bom.status, "retire")

        bom.status = BomStatus.RETIRED.value
        bom.updated_by_id = actor_id
        self.session.flush()
        self._auditor.record_bom_status(
            scope_id, bom.id, bom.product_key, bom.version, AuditAction.BOM_RETIRED, actor_id,
        )
        logger.info(
            "bom_retired",
            extra={"scope_id": scope_id, "product_key": bom.product_key, "version": bom.version},
        )
        return bom

    # -------------------------------------------------------------------------
    # Resolution
    # -------------------------------------------------------------------------

    def _find_active(self, scope_id: str, product_key: str, as_of: date) -> BillOfMaterials | None:
        candidates = self.session.execute(
            select(BillOfMaterials)
            .where(
                BillOfMaterials.scope_id == scope_id,
                BillOfMaterials.product_key == product_key,
                BillOfMaterials.status == BomStatus.ACTIVE.value,
            )
            .order_by(BillOfMaterials.version.desc())
        ).scalars().all()
        for bom in candidates:
            if bom.is_effective_on(as_of):
                return bom
        return None

    def active_bom(self, scope_id: str, product_key: str, as_of: date | None = None) -> BillOfMaterials:
        """
        Raises:
            BomNotFoundError: no ACTIVE version effective on ``as_of``.
        """
        as_of = as_of or self.clock.today()
        bom = self._find_active(scope_id, product_key, as_of)
        if bom is None:
            raise BomNotFoundError(f"{product_key} (active on {as_of})")
        return bom

    def _lookup(self, scope_id: str, as_of: date, pinned: BillOfMaterials | None = None):
        """
        Snapshot lookup over the versions active on ``as_of``.

        ``pinned`` (a draft being authored, or the version an order is
        pinned to) stands in for its own product.
        """
        pinned_snapshot = to_snapshot(pinned) if pinned is not None else None

        def lookup(product_key: str) -> BomSnapshot | None:
            if pinned_snapshot is not None and product_key == pinned_snapshot.product_key:
                return pinned_snapshot
            bom = self._find_active(scope_id, product_key, as_of)
            return to_snapshot(bom) if bom is not None else None

        return lookup

    def explode(
        self,
        scope_id: str,
        product_key: str,
        qty: Decimal,
        as_of: date | None = None,
        max_depth: int | None = None,
    ) -> list[ExplodedRequirement]:
        """
        Raw material requirement for ``qty`` units, using the BOM versions
        active on ``as_of`` (default: today).  Read-only.
        """
        as_of = as_of or self.clock.today()
        exploder = BomExploder(self._lookup(scope_id, as_of), max_depth or self._max_depth)
        return exploder.explode(product_key=product_key, qty=to_decimal(qty))

    def explode_bom(
        self,
        scope_id: str,
        bom: BillOfMaterials,
        qty: Decimal,
        as_of: date | None = None,
    ) -> list[ExplodedRequirement]:
        """Explode a pinned BOM version; sub-products resolve to their active BOMs."""
        as_of = as_of or self.clock.today()
        exploder = BomExploder(self._lookup(scope_id, as_of, pinned=bom), self._max_depth)
        return exploder.explode(product_key=bom.product_key, qty=to_decimal(qty))

    def standard_unit_cost(
        self,
        scope_id: str,
        bom: BillOfMaterials,
        master_data: MasterDataGateway,
        as_of: date | None = None,
    ) -> Decimal:
        """
        Standard cost per unit of the BOM's product.

        Material for one unit (scrap included) priced at master-data
        standard cost and grossed up by yield, plus the BOM's standard
        labor and overhead.
        """
        as_of = as_of or self.clock.today()
        exploder = BomExploder(self._lookup(scope_id, as_of, pinned=bom), self._max_depth)
        return exploder.standard_unit_cost(
            product_key=bom.product_key,
            material_cost=lambda material_key: master_data.standard_cost(scope_id, material_key),
        )
