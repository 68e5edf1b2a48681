"""Marketcap Service - price refresh and buyback weighting.

Marketcaps come from DexScreener. When a pair is priced but carries no
marketcap, the price is multiplied by the on-chain token supply.
"""

import asyncio
from decimal import Decimal
from typing import Optional

import structlog

from flywheel.core.clock import utcnow
from flywheel.core.retry import error_message
from flywheel.domain.operations import LogOperationType, LogStatus, MarketcapUpdateResult
from flywheel.domain.pool import BuybackAllocation, Pool, TokenMarketData
from flywheel.integrations.chain import ChainClient
from flywheel.integrations.dexscreener import DexScreenerClient
from flywheel.services.registry import PoolRegistry
from flywheel.services.state_store import StateStore

log = structlog.get_logger()

HUNDRED = Decimal("100")
DEFAULT_REQUEST_DELAY_SECONDS = 0.25


class MarketcapService:
    """Keeps pool price data fresh and derives buyback allocations."""

    def __init__(
        self,
        store: StateStore,
        registry: PoolRegistry,
        market_data: DexScreenerClient,
        chain: Optional[ChainClient] = None,
        request_delay_seconds: float = DEFAULT_REQUEST_DELAY_SECONDS,
    ) -> None:
        self._store = store
        self._registry = registry
        self._market_data = market_data
        self._chain = chain
        self._request_delay = request_delay_seconds
        self._log = log.bind(component="marketcap")

    async def fetch_market_data(self, pool: Pool) -> Optional[TokenMarketData]:
        data = await self._market_data.get_token_market_data(pool.base_mint)
        if data is None or data.marketcap_usd is not None or self._chain is None:
            return data

        supply = await self._chain.get_token_supply(pool.base_mint)
        if supply <= 0:
            return data
        return TokenMarketData(
            mint=data.mint,
            price_usd=data.price_usd,
            marketcap_usd=data.price_usd * supply,
            liquidity_usd=data.liquidity_usd,
            volume_24h_usd=data.volume_24h_usd,
        )

    async def update_pool_marketcap(self, pool: Pool) -> bool:
        try:
            data = await self.fetch_market_data(pool)
            if data is None:
                self._log.debug("no_market_data", pool_address=pool.pool_address, mint=pool.base_mint)
                return False

            await self._store.update_pool(
                pool.pool_address,
                price_usd=data.price_usd,
                marketcap_usd=data.marketcap_usd,
                marketcap_updated_at=utcnow(),
            )
        except Exception as e:
            self._log.warning(
                "marketcap_update_failed",
                pool_address=pool.pool_address,
                error=error_message(e),
            )
            return False

        self._log.debug(
            "marketcap_updated",
            pool_address=pool.pool_address,
            price_usd=str(data.price_usd),
            marketcap_usd=str(data.marketcap_usd),
        )
        return True

    async def update_all_marketcaps(self) -> MarketcapUpdateResult:
        result = MarketcapUpdateResult()
        try:
            pools = await self._registry.get_collectable_pools()
        except Exception as e:
            error = error_message(e)
            self._log.error("marketcap_pool_load_failed", error=error)
            await self._store.log_operation(LogOperationType.MARKETCAP, LogStatus.FAILED, error_message=error)
            return result

        for index, pool in enumerate(pools):
            if index > 0 and self._request_delay > 0:
                await asyncio.sleep(self._request_delay)
            if await self.update_pool_marketcap(pool):
                result.updated += 1
            else:
                result.failed += 1

        await self._store.log_operation(
            LogOperationType.MARKETCAP,
            LogStatus.COMPLETED,
            details={"updated": result.updated, "failed": result.failed},
        )
        self._log.info("marketcaps_updated", updated=result.updated, failed=result.failed)
        return result

    async def get_buyback_allocations(self) -> list[BuybackAllocation]:
        """Split a buyback budget across migrated pools by marketcap.

        Pools without marketcap data get no share unless no pool has any,
        in which case every migrated pool gets an equal share.
        """
        pools = await self._registry.get_migrated_pools()
        if not pools:
            return []

        weighted = [p for p in pools if p.marketcap_usd is not None and p.marketcap_usd > 0]
        total = sum((p.marketcap_usd for p in weighted), Decimal("0"))

        if not weighted or total <= 0:
            share = HUNDRED / len(pools)
            self._log.info("allocations_equal_split", pool_count=len(pools))
            return [BuybackAllocation(pool=p, percentage=share) for p in pools]

        allocations = [
            BuybackAllocation(
                pool=p,
                percentage=p.marketcap_usd / total * HUNDRED,
                marketcap_usd=p.marketcap_usd,
            )
            for p in weighted
        ]
        allocations.sort(key=lambda a: a.percentage, reverse=True)
        return allocations
