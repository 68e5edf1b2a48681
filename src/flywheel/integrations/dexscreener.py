"""DexScreener client for token price and marketcap data."""

from decimal import Decimal, InvalidOperation
from typing import Any, Optional

import httpx
import structlog

from flywheel.core.retry import NetworkError, RateLimitError, ServiceUnavailableError, retry_transient
from flywheel.domain.pool import TokenMarketData

log = structlog.get_logger()

DEFAULT_API_URL = "https://api.dexscreener.com"


def _to_decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


class DexScreenerClient:
    """Async HTTP client for the DexScreener public API."""

    def __init__(self, api_url: str = DEFAULT_API_URL, timeout: float = 15.0):
        self._base_url = api_url.rstrip("/")
        self._timeout = timeout
        self._client: Optional[httpx.AsyncClient] = None
        self._log = log.bind(component="dexscreener_client")

    async def connect(self) -> None:
        if self._client is not None:
            return
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            headers={"Accept": "application/json"},
        )
        self._log.info("dexscreener_client_connected", base_url=self._base_url)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "DexScreenerClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    @retry_transient(max_attempts=3, min_wait=1.0, max_wait=10.0, log_context={"client": "dexscreener"})
    async def get_token_market_data(self, mint: str) -> Optional[TokenMarketData]:
        """Price and marketcap for ``mint`` from its most liquid pair.

        Returns:
            TokenMarketData, or None when DexScreener lists no priced pair.
        """
        if self._client is None:
            raise NetworkError("DexScreener client not connected. Call connect() first.")

        try:
            response = await self._client.get(f"/latest/dex/tokens/{mint}")
        except httpx.TransportError as e:
            raise NetworkError(f"DexScreener request failed for {mint}", cause=e)

        if response.status_code == 429:
            raise RateLimitError("DexScreener rate limited")
        if response.status_code >= 500:
            raise ServiceUnavailableError(f"DexScreener HTTP {response.status_code}")
        if response.status_code == 404:
            return None
        response.raise_for_status()

        pairs = response.json().get("pairs") or []
        priced = [p for p in pairs if _to_decimal(p.get("priceUsd")) is not None]
        if not priced:
            return None

        best = max(priced, key=lambda p: _to_decimal((p.get("liquidity") or {}).get("usd")) or Decimal("0"))
        return TokenMarketData(
            mint=mint,
            price_usd=_to_decimal(best.get("priceUsd")),
            marketcap_usd=_to_decimal(best.get("marketCap")) or _to_decimal(best.get("fdv")),
            liquidity_usd=_to_decimal((best.get("liquidity") or {}).get("usd")),
            volume_24h_usd=_to_decimal((best.get("volume") or {}).get("h24")),
        )
