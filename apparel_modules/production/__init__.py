"""
Production Module.

Handles production orders for the CUT -> SEW -> FINISH pipeline:
- Order creation from the active BOM and material reservation
- MRP check and release
- Material issue and backflush into WIP
- Stage moves with labor and overhead, production loss on rejects
- Completion into finished goods and the cost variance report
"""

from apparel_modules.production.models import (
    MrpAction,
    MrpLine,
    MrpResult,
    ProductionOrderInfo,
    ProductionOrderStatus,
    ReservationInfo,
    StageCostInfo,
    StageCostStatus,
    StageMoveResult,
)
from apparel_modules.production.service import ProductionService
from apparel_modules.production.workflows import PRODUCTION_ORDER_WORKFLOW

__all__ = [
    "MrpAction",
    "MrpLine",
    "MrpResult",
    "PRODUCTION_ORDER_WORKFLOW",
    "ProductionOrderInfo",
    "ProductionOrderStatus",
    "ProductionService",
    "ReservationInfo",
    "StageCostInfo",
    "StageCostStatus",
    "StageMoveResult",
]
