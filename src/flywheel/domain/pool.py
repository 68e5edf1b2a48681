"""
Pool domain models.

A pool is an on-chain liquidity venue for one platform token. Pools start on
a bonding curve (``active``) and become eligible for buyback and burn once
they migrate to a standard liquidity pool.
"""
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from flywheel.core.clock import utcnow


class PoolStatus(str, Enum):
    """Pool tracking status."""
    ACTIVE = "active"
    INACTIVE = "inactive"
    MIGRATED = "migrated"


@dataclass
class Pool:
    """A tracked pool and its accumulated flywheel statistics."""
    pool_address: str
    base_mint: str
    quote_mint: str
    config_key: Optional[str] = None
    creator: Optional[str] = None
    name: Optional[str] = None
    symbol: Optional[str] = None
    is_migrated: bool = False
    status: PoolStatus = PoolStatus.ACTIVE
    price_usd: Optional[Decimal] = None
    marketcap_usd: Optional[Decimal] = None
    marketcap_updated_at: Optional[datetime] = None
    total_fees_collected_sol: Decimal = Decimal("0")
    total_tokens_bought: Decimal = Decimal("0")
    total_tokens_burned: Decimal = Decimal("0")
    last_fee_claim_at: Optional[datetime] = None
    last_buyback_at: Optional[datetime] = None
    last_burn_at: Optional[datetime] = None
    discovery_source: str = "manual"
    id: Optional[int] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_collectable(self) -> bool:
        """Fees accrue on both bonding-curve and migrated pools."""
        return self.status in (PoolStatus.ACTIVE, PoolStatus.MIGRATED)

    @property
    def label(self) -> str:
        return self.symbol or self.name or self.pool_address[:8]


@dataclass
class RegisterPoolParams:
    """Everything needed to start tracking a pool."""
    pool_address: str
    base_mint: str
    quote_mint: str
    config_key: Optional[str] = None
    creator: Optional[str] = None
    name: Optional[str] = None
    symbol: Optional[str] = None
    is_migrated: bool = False
    discovery_source: str = "manual"

    def __post_init__(self) -> None:
        if not self.pool_address:
            raise ValueError("pool_address is required")
        if not self.base_mint:
            raise ValueError("base_mint is required")
        if not self.quote_mint:
            raise ValueError("quote_mint is required")


@dataclass(frozen=True)
class TokenMarketData:
    """Price snapshot for one token mint."""
    mint: str
    price_usd: Decimal
    marketcap_usd: Optional[Decimal] = None
    liquidity_usd: Optional[Decimal] = None
    volume_24h_usd: Optional[Decimal] = None


@dataclass(frozen=True)
class BuybackAllocation:
    """Share of a buyback budget assigned to one pool."""
    pool: Pool
    percentage: Decimal
    marketcap_usd: Optional[Decimal] = None

    def amount_of(self, total_sol: Decimal) -> Decimal:
        return total_sol * self.percentage / Decimal("100")
