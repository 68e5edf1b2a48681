"""
Shared pytest fixtures for flywheel tests.

Stores are real aiosqlite databases under tmp_path; the chain is the
in-memory DryRunChainClient; HTTP clients are mocked per test.
"""
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from flywheel.core.settings import RetrySettings
from flywheel.domain.pool import RegisterPoolParams
from flywheel.integrations.chain import DryRunChainClient
from flywheel.services.fallback import LocalFallbackStore
from flywheel.services.metrics import MetricsEmitter
from flywheel.services.registry import PoolRegistry
from flywheel.services.retry_queue import RetryQueue
from flywheel.services.state_store import StateStore

POOL_A = "PoolAaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaa"
POOL_B = "PoolBbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbb"
MINT_A = "MintAaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaa"
MINT_B = "MintBbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbb"
WSOL = "So11111111111111111111111111111111111111112"


@pytest.fixture
async def store(tmp_path):
    """Connected StateStore on a fresh database."""
    state_store = StateStore(db_path=str(tmp_path / "flywheel.db"))
    await state_store.connect()
    yield state_store
    await state_store.close()


@pytest.fixture
def metrics():
    return MetricsEmitter()


@pytest.fixture
def retry_settings(tmp_path):
    """Default retry settings without the pause between items."""
    return RetrySettings(item_delay_seconds=0, fallback_dir=str(tmp_path / "retry-fallback"))


@pytest.fixture
def fallback(retry_settings):
    return LocalFallbackStore(retry_settings.fallback_dir)


@pytest.fixture
def retry_queue(store, retry_settings, fallback, metrics):
    return RetryQueue(store, settings=retry_settings, fallback=fallback, metrics=metrics)


@pytest.fixture
def registry(store):
    return PoolRegistry(store)


@pytest.fixture
def chain():
    return DryRunChainClient(sol_balance=Decimal("0"))


@pytest.fixture
def mock_jupiter():
    """JupiterClient double returning a 1000-token quote."""
    client = MagicMock()
    client.connect = AsyncMock()
    client.close = AsyncMock()
    order = MagicMock()
    order.request_id = "req-1"
    order.transaction = "unsigned-tx"
    order.out_amount = 1_000_000_000_000
    client.get_order = AsyncMock(return_value=order)
    execution = MagicMock()
    execution.success = True
    execution.status = "Success"
    execution.signature = "swap-sig-1"
    execution.output_amount = 1_000_000_000_000
    execution.error = None
    execution.code = None
    client.execute_order = AsyncMock(return_value=execution)
    return client


@pytest.fixture
def mock_market_data():
    client = MagicMock()
    client.connect = AsyncMock()
    client.close = AsyncMock()
    client.get_token_market_data = AsyncMock(return_value=None)
    return client


def pool_params(
    pool_address: str = POOL_A,
    base_mint: str = MINT_A,
    is_migrated: bool = False,
    symbol: str = "AAA",
) -> RegisterPoolParams:
    return RegisterPoolParams(
        pool_address=pool_address,
        base_mint=base_mint,
        quote_mint=WSOL,
        config_key="cfg-1",
        symbol=symbol,
        is_migrated=is_migrated,
    )
