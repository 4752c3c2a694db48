"""
Apparel Kernel - inventory ledger and journal posting core.

A transactional ledger engine for garment manufacturing with:
- Three append-only inventory ledgers (raw material, WIP, finished goods)
- Double-entry journal posted atomically with the stock movements
- Per-scope accounting periods with validated close
- Hash-chained audit trail
"""

__version__ = "0.1.0"
