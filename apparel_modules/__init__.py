"""
Apparel Modules.

Business workflows over the ledger kernel and the costing engines.
Each module contains:
- Domain models (frozen DTOs)
- ORM rows for its operational state, where it has any
- Workflows (state machines)
- A service that builds ledger ops and journal lines and posts them
  through the TransactionalPoster

Modules:
- Production: orders, reservations, MRP, material issue, stage moves,
  completion, variance report
- Inventory: purchase receipts, sales with COGS, stock count adjustments
"""

from apparel_modules import inventory, production

__all__ = ["inventory", "production"]
