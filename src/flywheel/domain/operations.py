"""
Operation result models.

Every task operation returns one of these results instead of raising.
``success`` plus an optional ``error`` string is the uniform contract the
scheduler and the retry queue rely on; the remaining fields are
operation-specific.
"""
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from flywheel.core.clock import utcnow
from flywheel.domain.pool import Pool


class OperationType(str, Enum):
    """Operations the retry queue knows how to re-run."""
    FEE_CLAIM = "fee_claim"
    BUYBACK = "buyback"
    BURN = "burn"
    REGISTER = "register"


class FeeType(str, Enum):
    """Where claimed fees come from.

    PARTNER fees accrue on bonding-curve pools; LP fees accrue on the
    position the protocol holds in a migrated pool.
    """
    PARTNER = "partner"
    LP = "lp"


class LogOperationType(str, Enum):
    """Kinds of entries written to the operation log."""
    FEE_CLAIM = "fee_claim"
    BUYBACK = "buyback"
    BURN = "burn"
    REGISTER = "register"
    DISCOVERY = "discovery"
    MARKETCAP = "marketcap"
    ERROR = "error"


class LogStatus(str, Enum):
    """Operation log entry status."""
    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class OperationLog:
    """One audit entry for an operation attempt."""
    operation_type: LogOperationType
    status: LogStatus
    pool_address: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)
    error_message: Optional[str] = None
    tx_signature: Optional[str] = None
    id: Optional[int] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class FeeClaimResult:
    success: bool
    pool_address: str
    amount_sol: Decimal = Decimal("0")
    tx_signature: Optional[str] = None
    error: Optional[str] = None
    fee_type: FeeType = FeeType.PARTNER
    token_amount: Decimal = Decimal("0")


@dataclass
class BuybackResult:
    success: bool
    pool_address: str
    sol_amount: Decimal = Decimal("0")
    tokens_received: Decimal = Decimal("0")
    tx_signature: Optional[str] = None
    buyback_id: Optional[int] = None
    error: Optional[str] = None


@dataclass
class BurnResult:
    success: bool
    pool_address: str
    amount: Decimal = Decimal("0")
    tx_signature: Optional[str] = None
    error: Optional[str] = None


@dataclass
class RegisterResult:
    success: bool
    pool_address: str
    pool: Optional[Pool] = None
    created: bool = False
    error: Optional[str] = None


@dataclass
class CollectionResult:
    """Outcome of a fee collection sweep."""
    results: list[FeeClaimResult] = field(default_factory=list)

    @property
    def total_claimed_sol(self) -> Decimal:
        return sum((r.amount_sol for r in self.results if r.success), Decimal("0"))

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.success)


@dataclass
class MultiBuybackResult:
    """Outcome of a buyback spread across several pools."""
    results: list[BuybackResult] = field(default_factory=list)
    budget_sol: Decimal = Decimal("0")
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error is None and any(r.success for r in self.results)

    @property
    def total_spent_sol(self) -> Decimal:
        return sum((r.sol_amount for r in self.results if r.success), Decimal("0"))

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.success)


@dataclass
class BurnAllResult:
    """Outcome of a burn sweep."""
    results: list[BurnResult] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    @property
    def total_burned(self) -> Decimal:
        return sum((r.amount for r in self.results if r.success), Decimal("0"))

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.success)


@dataclass
class DiscoveryResult:
    discovered: int = 0
    registered: int = 0
    failed: int = 0
    migrated: int = 0


@dataclass
class MarketcapUpdateResult:
    updated: int = 0
    failed: int = 0
