"""Domain models - pure data structures with no I/O dependencies."""

from flywheel.domain.operations import (
    BuybackResult,
    BurnAllResult,
    BurnResult,
    CollectionResult,
    DiscoveryResult,
    FeeClaimResult,
    FeeType,
    LogOperationType,
    LogStatus,
    MarketcapUpdateResult,
    MultiBuybackResult,
    OperationLog,
    OperationType,
    RegisterResult,
)
from flywheel.domain.pool import (
    BuybackAllocation,
    Pool,
    PoolStatus,
    RegisterPoolParams,
    TokenMarketData,
)
from flywheel.domain.retry_queue import (
    BurnPayload,
    BuybackPayload,
    DrainResult,
    FallbackRecord,
    FeeClaimPayload,
    RegisterPayload,
    RetryPayload,
    RetryQueueItem,
    RetryQueueStats,
    RetryStatus,
    compute_backoff,
    decode_payload,
    encode_payload,
)

__all__ = [
    # Pools
    "Pool",
    "PoolStatus",
    "RegisterPoolParams",
    "TokenMarketData",
    "BuybackAllocation",
    # Operations
    "OperationType",
    "LogOperationType",
    "LogStatus",
    "OperationLog",
    "FeeClaimResult",
    "FeeType",
    "BuybackResult",
    "BurnResult",
    "RegisterResult",
    "CollectionResult",
    "MultiBuybackResult",
    "BurnAllResult",
    "DiscoveryResult",
    "MarketcapUpdateResult",
    # Retry queue
    "RetryStatus",
    "RetryQueueItem",
    "RetryQueueStats",
    "RetryPayload",
    "FeeClaimPayload",
    "BuybackPayload",
    "BurnPayload",
    "RegisterPayload",
    "FallbackRecord",
    "DrainResult",
    "compute_backoff",
    "decode_payload",
    "encode_payload",
]
