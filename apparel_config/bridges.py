"""
Config -> Kernel Bridges.

Applies a LedgerConfig to kernel runtime settings.  Lives in
apparel_config because the kernel never imports apparel_config.

Usage:
    from apparel_config.bridges import configure_kernel

    config = get_active_config()
    configure_kernel(config)
"""

from __future__ import annotations

from apparel_config.schema import LedgerConfig
from apparel_kernel.services.stock_guard import StockGuard, configure_stock_guard


def configure_kernel(config: LedgerConfig) -> StockGuard:
    """Install the process-wide stock guard with the configured lock timeout."""
    return configure_stock_guard(config.policy.lock_timeout_seconds)
