"""Jupiter Ultra API client for buyback swaps.

A swap is two calls: ``GET /order`` returns an unsigned transaction and a
request id, the wallet signs it, and ``POST /execute`` submits it. Only the
order request is retried in-process; an execute may already have landed
on chain, so failures there go to the durable retry queue instead.
"""

from dataclasses import dataclass, field
from typing import Any, Optional

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from flywheel.core.retry import (
    NetworkError,
    PermanentError,
    RateLimitError,
    ServiceUnavailableError,
    ValidationError,
)

log = structlog.get_logger()

DEFAULT_API_URL = "https://api.jup.ag/ultra/v1"

RETRY_ATTEMPTS = 3
RETRY_WAIT_MIN = 1
RETRY_WAIT_MAX = 10


@dataclass(frozen=True)
class JupiterOrder:
    """A quoted swap with its unsigned transaction."""

    request_id: str
    transaction: Optional[str]
    in_amount: int
    out_amount: int
    slippage_bps: Optional[int] = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class JupiterExecution:
    """Result of submitting a signed order."""

    status: str
    signature: Optional[str] = None
    output_amount: int = 0
    error: Optional[str] = None
    code: Optional[int] = None

    @property
    def success(self) -> bool:
        return self.status == "Success"


def _raise_for_status(response: httpx.Response, context: str) -> None:
    """Map HTTP failures onto the flywheel error hierarchy."""
    if response.is_success:
        return
    detail = response.text[:200]
    if response.status_code == 429:
        retry_after = response.headers.get("Retry-After")
        raise RateLimitError(
            f"{context}: rate limited",
            retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
        )
    if response.status_code >= 500:
        raise ServiceUnavailableError(f"{context}: HTTP {response.status_code} {detail}")
    raise PermanentError(f"{context}: HTTP {response.status_code} {detail}")


class JupiterClient:
    """Async HTTP client for the Jupiter Ultra swap API."""

    def __init__(
        self,
        api_url: str = DEFAULT_API_URL,
        api_key: Optional[str] = None,
        timeout: float = 30.0,
    ):
        """Initialize the Jupiter client.

        Args:
            api_url: Ultra API base URL.
            api_key: Value for the ``x-api-key`` header, if any.
            timeout: HTTP request timeout in seconds.
        """
        self._base_url = api_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout
        self._client: Optional[httpx.AsyncClient] = None
        self._log = log.bind(component="jupiter_client")

    async def connect(self) -> None:
        if self._client is not None:
            return

        headers = {"Accept": "application/json"}
        if self._api_key:
            headers["x-api-key"] = self._api_key

        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            headers=headers,
        )
        self._log.info("jupiter_client_connected", base_url=self._base_url)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            self._log.info("jupiter_client_closed")

    async def __aenter__(self) -> "JupiterClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def _ensure_connected(self) -> httpx.AsyncClient:
        if self._client is None:
            raise NetworkError("Jupiter client not connected. Call connect() first.")
        return self._client

    @retry(
        stop=stop_after_attempt(RETRY_ATTEMPTS),
        wait=wait_exponential(multiplier=1, min=RETRY_WAIT_MIN, max=RETRY_WAIT_MAX),
        retry=retry_if_exception_type((httpx.TransportError, RateLimitError, ServiceUnavailableError)),
        reraise=True,
    )
    async def _fetch_order(self, params: dict[str, Any]) -> dict[str, Any]:
        client = self._ensure_connected()
        response = await client.get("/order", params=params)
        _raise_for_status(response, "Jupiter order")
        return response.json()

    async def get_order(
        self,
        input_mint: str,
        output_mint: str,
        amount: int,
        taker: str,
        slippage_bps: Optional[int] = None,
    ) -> JupiterOrder:
        """Request a swap order.

        Args:
            input_mint: Mint being sold (WSOL for buybacks).
            output_mint: Mint being bought.
            amount: Input amount in base units (lamports for SOL).
            taker: Wallet that will sign the transaction.
            slippage_bps: Optional slippage cap.

        Raises:
            ValidationError: If the order carries no transaction.
            NetworkError: If the API cannot be reached.
        """
        if amount <= 0:
            raise ValidationError(f"Order amount must be positive, got {amount}")

        params: dict[str, Any] = {
            "inputMint": input_mint,
            "outputMint": output_mint,
            "amount": str(amount),
            "taker": taker,
        }
        if slippage_bps is not None:
            params["slippageBps"] = slippage_bps

        try:
            data = await self._fetch_order(params)
        except httpx.TransportError as e:
            raise NetworkError("Jupiter order request failed", cause=e)

        if data.get("errorMessage") or data.get("error"):
            raise ValidationError(f"Jupiter order rejected: {data.get('errorMessage') or data.get('error')}")
        if not data.get("requestId"):
            raise ValidationError("Jupiter order response has no requestId")

        order = JupiterOrder(
            request_id=data["requestId"],
            transaction=data.get("transaction") or None,
            in_amount=int(data.get("inAmount") or amount),
            out_amount=int(data.get("outAmount") or 0),
            slippage_bps=data.get("slippageBps"),
            raw=data,
        )
        self._log.debug(
            "jupiter_order_received",
            output_mint=output_mint,
            in_amount=order.in_amount,
            out_amount=order.out_amount,
        )
        return order

    async def execute_order(self, signed_transaction: str, request_id: str) -> JupiterExecution:
        """Submit a signed order. Never retried here."""
        client = self._ensure_connected()
        try:
            response = await client.post(
                "/execute",
                json={"signedTransaction": signed_transaction, "requestId": request_id},
            )
        except httpx.TransportError as e:
            raise NetworkError("Jupiter execute request failed", cause=e)

        _raise_for_status(response, "Jupiter execute")
        data = response.json()
        execution = JupiterExecution(
            status=data.get("status", "Failed"),
            signature=data.get("signature"),
            output_amount=int(data.get("outputAmountResult") or data.get("totalOutputAmount") or 0),
            error=data.get("error"),
            code=data.get("code"),
        )
        self._log.info(
            "jupiter_order_executed",
            request_id=request_id,
            status=execution.status,
            signature=execution.signature,
        )
        return execution
