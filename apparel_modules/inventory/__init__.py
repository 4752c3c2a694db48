"""
Inventory Module.

Stock movements that are not production:
- Purchase receipts into raw materials (or finished goods for resale)
- Sale deliveries with COGS at delivery or deferred to invoice
- Internal transfers between locations at average cost
- Stock count adjustments against inventory variance
"""

from apparel_modules.inventory.models import ReceiptStatus, StockAdjustment
from apparel_modules.inventory.service import InventoryService

__all__ = ["InventoryService", "ReceiptStatus", "StockAdjustment"]
