"""Chain client port.

Everything the flywheel needs from the Solana network goes through the
ChainClient protocol: balances, partner and LP fee claims, burns, signing
and pool discovery. Production deployments inject an RPC-backed client;
dry-run mode uses the in-memory DryRunChainClient below.
"""

import itertools
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Protocol, runtime_checkable

import structlog

from flywheel.core.retry import InsufficientFundsError, ResourceNotFoundError
from flywheel.domain.pool import Pool

log = structlog.get_logger()

LAMPORTS_PER_SOL = Decimal("1000000000")
WSOL_MINT = "So11111111111111111111111111111111111111112"
DRY_RUN_WALLET = "DryRunWa11et1111111111111111111111111111111"


@dataclass(frozen=True)
class DiscoveredPool:
    """A pool as reported by the launch platform program."""

    pool_address: str
    base_mint: str
    quote_mint: str
    config_key: Optional[str] = None
    creator: Optional[str] = None
    name: Optional[str] = None
    symbol: Optional[str] = None
    is_migrated: bool = False


@dataclass(frozen=True)
class ClaimableLpFees:
    """Unclaimed fees on the wallet's LP position in a migrated pool.

    ``sol`` is the quote side, ``tokens`` the pool's base token.
    """

    sol: Decimal = Decimal("0")
    tokens: Decimal = Decimal("0")

    @property
    def is_empty(self) -> bool:
        return self.sol <= 0 and self.tokens <= 0


@runtime_checkable
class ChainClient(Protocol):
    """Narrow view of the chain used by the task operations.

    SOL amounts are in SOL (not lamports); token amounts are UI amounts.
    Methods that submit transactions return the transaction signature.
    """

    @property
    def wallet_address(self) -> str:
        ...

    async def get_sol_balance(self) -> Decimal:
        ...

    async def get_token_balance(self, mint: str) -> Decimal:
        ...

    async def get_token_supply(self, mint: str) -> Decimal:
        ...

    async def get_claimable_fees(self, pool: Pool) -> Decimal:
        ...

    async def claim_partner_fees(self, pool: Pool, amount_sol: Decimal) -> str:
        ...

    async def get_claimable_lp_fees(self, pool: Pool) -> Optional[ClaimableLpFees]:
        """None when the wallet holds no position in the pool."""
        ...

    async def claim_lp_fees(self, pool: Pool) -> str:
        ...

    async def burn_tokens(self, mint: str, amount: Decimal) -> str:
        ...

    async def sign_transaction(self, transaction: str) -> str:
        ...

    async def discover_pools(self, config_key: str) -> list[DiscoveredPool]:
        ...

    async def is_pool_migrated(self, pool: Pool) -> bool:
        ...


class DryRunChainClient:
    """In-memory chain simulation for dry-run mode and tests.

    State is seeded through the ``set_*``/``add_*`` helpers; claims and
    burns move balances the way the real chain would so repeated sweeps
    converge to "nothing left to do".
    """

    def __init__(
        self,
        wallet_address: str = DRY_RUN_WALLET,
        sol_balance: Decimal = Decimal("0"),
    ) -> None:
        self._wallet = wallet_address
        self._sol_balance = sol_balance
        self._token_balances: dict[str, Decimal] = {}
        self._token_supply: dict[str, Decimal] = {}
        self._claimable: dict[str, Decimal] = {}
        self._lp_fees: dict[str, ClaimableLpFees] = {}
        self._migrated: set[str] = set()
        self._pools_by_config: dict[str, list[DiscoveredPool]] = {}
        self._counter = itertools.count(1)
        self._log = log.bind(component="dry_run_chain")

    # ============ Seeding ============

    def set_sol_balance(self, amount: Decimal) -> None:
        self._sol_balance = amount

    def set_token_balance(self, mint: str, amount: Decimal) -> None:
        self._token_balances[mint] = amount

    def set_token_supply(self, mint: str, amount: Decimal) -> None:
        self._token_supply[mint] = amount

    def set_claimable_fees(self, pool_address: str, amount_sol: Decimal) -> None:
        self._claimable[pool_address] = amount_sol

    def set_claimable_lp_fees(self, pool_address: str, sol: Decimal, tokens: Decimal = Decimal("0")) -> None:
        """Give the wallet an LP position in ``pool_address`` with these unclaimed fees."""
        self._lp_fees[pool_address] = ClaimableLpFees(sol=sol, tokens=tokens)

    def set_migrated(self, pool_address: str, migrated: bool = True) -> None:
        if migrated:
            self._migrated.add(pool_address)
        else:
            self._migrated.discard(pool_address)

    def add_discovered_pool(self, pool: DiscoveredPool) -> None:
        key = pool.config_key or ""
        self._pools_by_config.setdefault(key, []).append(pool)

    def _signature(self, kind: str) -> str:
        return f"dry_run_{kind}_{next(self._counter)}"

    # ============ ChainClient ============

    @property
    def wallet_address(self) -> str:
        return self._wallet

    async def get_sol_balance(self) -> Decimal:
        return self._sol_balance

    async def get_token_balance(self, mint: str) -> Decimal:
        return self._token_balances.get(mint, Decimal("0"))

    async def get_token_supply(self, mint: str) -> Decimal:
        return self._token_supply.get(mint, Decimal("0"))

    async def get_claimable_fees(self, pool: Pool) -> Decimal:
        return self._claimable.get(pool.pool_address, Decimal("0"))

    async def claim_partner_fees(self, pool: Pool, amount_sol: Decimal) -> str:
        available = self._claimable.get(pool.pool_address, Decimal("0"))
        claimed = min(available, amount_sol)
        self._claimable[pool.pool_address] = available - claimed
        self._sol_balance += claimed
        self._log.info("dry_run_fee_claim", pool_address=pool.pool_address, amount_sol=str(claimed))
        return self._signature("claim")

    async def get_claimable_lp_fees(self, pool: Pool) -> Optional[ClaimableLpFees]:
        return self._lp_fees.get(pool.pool_address)

    async def claim_lp_fees(self, pool: Pool) -> str:
        fees = self._lp_fees.get(pool.pool_address)
        if fees is None:
            raise ResourceNotFoundError(f"No LP position in {pool.pool_address}")
        self._lp_fees[pool.pool_address] = ClaimableLpFees()
        self._sol_balance += fees.sol
        if fees.tokens > 0:
            self._token_balances[pool.base_mint] = self._token_balances.get(pool.base_mint, Decimal("0")) + fees.tokens
        self._log.info(
            "dry_run_lp_fee_claim",
            pool_address=pool.pool_address,
            amount_sol=str(fees.sol),
            tokens=str(fees.tokens),
        )
        return self._signature("lp_claim")

    async def burn_tokens(self, mint: str, amount: Decimal) -> str:
        balance = self._token_balances.get(mint, Decimal("0"))
        if amount > balance:
            raise InsufficientFundsError(f"Cannot burn {amount} of {mint}, balance {balance}")
        self._token_balances[mint] = balance - amount
        if mint in self._token_supply:
            self._token_supply[mint] -= amount
        self._log.info("dry_run_burn", mint=mint, amount=str(amount))
        return self._signature("burn")

    async def sign_transaction(self, transaction: str) -> str:
        return transaction

    async def discover_pools(self, config_key: str) -> list[DiscoveredPool]:
        return list(self._pools_by_config.get(config_key, []))

    async def is_pool_migrated(self, pool: Pool) -> bool:
        return pool.pool_address in self._migrated
