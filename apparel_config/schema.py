"""
LedgerConfig schema.

The human-authored, reviewable configuration of the apparel ledger: which
account code plays each account role, and the posting policy knobs.  YAML
documents are parsed into these types by the loader.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum

from apparel_kernel.domain.values import LedgerKind, ProductionStage


class AccountRole(str, Enum):
    """Semantic account roles the workflows post to."""

    INVENTORY_RAW_MATERIALS = "INVENTORY_RAW_MATERIALS"
    INVENTORY_WIP_CUT = "INVENTORY_WIP_CUT"
    INVENTORY_WIP_SEW = "INVENTORY_WIP_SEW"
    INVENTORY_WIP_FINISH = "INVENTORY_WIP_FINISH"
    INVENTORY_FINISHED_GOODS = "INVENTORY_FINISHED_GOODS"
    ACCOUNTS_PAYABLE_ACCRUED = "ACCOUNTS_PAYABLE_ACCRUED"
    ACCOUNTS_PAYABLE = "ACCOUNTS_PAYABLE"
    ACCOUNTS_RECEIVABLE = "ACCOUNTS_RECEIVABLE"
    SALES_REVENUE = "SALES_REVENUE"
    COST_OF_GOODS_SOLD = "COST_OF_GOODS_SOLD"
    DEFERRED_COGS = "DEFERRED_COGS"
    INVENTORY_VARIANCE = "INVENTORY_VARIANCE"
    PURCHASE_PRICE_VARIANCE = "PURCHASE_PRICE_VARIANCE"
    PRODUCTION_LOSS = "PRODUCTION_LOSS"
    ACCRUED_PAYROLL = "ACCRUED_PAYROLL"
    APPLIED_OVERHEAD = "APPLIED_OVERHEAD"
    CASH_IN_HAND = "CASH_IN_HAND"
    BANK_ACCOUNT = "BANK_ACCOUNT"


_WIP_ROLES = {
    ProductionStage.CUT: AccountRole.INVENTORY_WIP_CUT,
    ProductionStage.SEW: AccountRole.INVENTORY_WIP_SEW,
    ProductionStage.FINISH: AccountRole.INVENTORY_WIP_FINISH,
}

_INVENTORY_ROLES = {
    LedgerKind.RAW: AccountRole.INVENTORY_RAW_MATERIALS,
    LedgerKind.FINISHED: AccountRole.INVENTORY_FINISHED_GOODS,
}


@dataclass(frozen=True)
class AccountMapping:
    """Account role -> account code.  Every role must be bound."""

    bindings: dict[AccountRole, str]

    def __post_init__(self) -> None:
        missing = sorted(r.value for r in AccountRole if not self.bindings.get(r))
        if missing:
            raise ValueError(f"Account roles without a code: {', '.join(missing)}")

    def code(self, role: AccountRole) -> str:
        return self.bindings[AccountRole(role)]

    def wip(self, stage: ProductionStage) -> str:
        return self.code(_WIP_ROLES[ProductionStage(stage)])

    def inventory(self, ledger: LedgerKind) -> str:
        """Account of the RAW or FINISHED ledger."""
        ledger = LedgerKind(ledger)
        if ledger not in _INVENTORY_ROLES:
            raise ValueError(f"No single inventory account for ledger {ledger.value}")
        return self.code(_INVENTORY_ROLES[ledger])


@dataclass(frozen=True)
class PostingPolicy:
    max_bom_depth: int = 10
    lock_timeout_seconds: float = 10.0
    receipt_tolerance_percent: Decimal = Decimal("0")

    def __post_init__(self) -> None:
        if self.max_bom_depth < 1:
            raise ValueError(f"max_bom_depth must be >= 1, got {self.max_bom_depth}")
        if self.lock_timeout_seconds <= 0:
            raise ValueError(
                f"lock_timeout_seconds must be > 0, got {self.lock_timeout_seconds}"
            )
        if self.receipt_tolerance_percent < 0:
            raise ValueError(
                f"receipt_tolerance_percent cannot be negative, got {self.receipt_tolerance_percent}"
            )


@dataclass(frozen=True)
class LedgerConfig:
    """A complete, validated configuration."""

    config_id: str
    version: int
    accounts: AccountMapping
    policy: PostingPolicy = field(default_factory=PostingPolicy)
    checksum: str = ""
