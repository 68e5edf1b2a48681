"""
Retry queue domain models.

Payloads are stored as plain JSON mappings (camelCase keys) and decoded
into one typed variant per operation type when an item is dispatched.
"""
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, ClassVar, Optional, Union

from flywheel.core.clock import format_timestamp, parse_timestamp, utcnow
from flywheel.core.retry import InvalidPayloadError
from flywheel.domain.operations import FeeType, OperationType

DEFAULT_MAX_RETRIES = 5
DEFAULT_BACKOFF_BASE_SECONDS = 60
DEFAULT_BACKOFF_MULTIPLIER = 2
DEFAULT_BACKOFF_MAX_SECONDS = 3600
MIN_MAX_RETRIES = 1


class RetryStatus(str, Enum):
    """Retry item status. COMPLETED and FAILED are terminal."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RetryStatus.COMPLETED, RetryStatus.FAILED)


def compute_backoff(
    retry_count: int,
    base_seconds: int = DEFAULT_BACKOFF_BASE_SECONDS,
    multiplier: int = DEFAULT_BACKOFF_MULTIPLIER,
    max_seconds: int = DEFAULT_BACKOFF_MAX_SECONDS,
) -> int:
    """Seconds to wait before the next attempt.

    ``retry_count`` is the count after the failed attempt was recorded, so
    the first failure waits ``base * multiplier``.

    >>> compute_backoff(0), compute_backoff(3), compute_backoff(6)
    (60, 480, 3600)
    """
    if retry_count < 0:
        raise ValueError(f"retry_count must be >= 0, got {retry_count}")
    return min(base_seconds * multiplier ** retry_count, max_seconds)


def clamp_max_retries(value: int) -> int:
    """Every item gets at least one attempt, so retryCount never exceeds maxRetries."""
    return max(int(value), MIN_MAX_RETRIES)


# =============================================================================
# Typed payload variants
# =============================================================================


def _decimal(value: Any, key: str) -> Decimal:
    if isinstance(value, bool):
        raise InvalidPayloadError(f"{key} must be a number, got {value!r}")
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise InvalidPayloadError(f"{key} must be a number, got {value!r}", cause=e)


@dataclass(frozen=True)
class FeeClaimPayload:
    """Fee claims re-read the claimable amount; only the fee source is carried.

    Partner claims serialize to an empty mapping, so items written before LP
    claims existed still decode.
    """
    operation_type: ClassVar[OperationType] = OperationType.FEE_CLAIM
    fee_type: FeeType = FeeType.PARTNER

    def to_dict(self) -> dict[str, Any]:
        if self.fee_type == FeeType.PARTNER:
            return {}
        return {"feeType": self.fee_type.value}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FeeClaimPayload":
        raw = data.get("feeType", FeeType.PARTNER.value)
        try:
            return cls(fee_type=FeeType(raw))
        except ValueError as e:
            raise InvalidPayloadError(f"unknown feeType {raw!r}", cause=e)


@dataclass(frozen=True)
class BuybackPayload:
    operation_type: ClassVar[OperationType] = OperationType.BUYBACK
    sol_amount: Decimal

    def __post_init__(self) -> None:
        if self.sol_amount <= 0:
            raise InvalidPayloadError(f"solAmount must be positive, got {self.sol_amount}")

    def to_dict(self) -> dict[str, Any]:
        return {"solAmount": float(self.sol_amount)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BuybackPayload":
        if "solAmount" not in data:
            raise InvalidPayloadError("buyback payload requires solAmount")
        return cls(sol_amount=_decimal(data["solAmount"], "solAmount"))


@dataclass(frozen=True)
class BurnPayload:
    """``amount`` is advisory; a burn always re-reads the wallet balance."""
    operation_type: ClassVar[OperationType] = OperationType.BURN
    amount: Optional[Decimal] = None

    def to_dict(self) -> dict[str, Any]:
        if self.amount is None:
            return {}
        return {"amount": float(self.amount)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BurnPayload":
        amount = data.get("amount")
        return cls(amount=_decimal(amount, "amount") if amount is not None else None)


@dataclass(frozen=True)
class RegisterPayload:
    operation_type: ClassVar[OperationType] = OperationType.REGISTER
    pool_address: str
    base_mint: str
    quote_mint: str
    config_key: Optional[str] = None
    creator: Optional[str] = None
    name: Optional[str] = None
    symbol: Optional[str] = None
    discovery_source: str = "discovery"

    _KEYS: ClassVar[dict[str, str]] = {
        "pool_address": "poolAddress",
        "base_mint": "baseMint",
        "quote_mint": "quoteMint",
        "config_key": "configKey",
        "creator": "creator",
        "name": "name",
        "symbol": "symbol",
        "discovery_source": "discoverySource",
    }

    def to_dict(self) -> dict[str, Any]:
        data = {}
        for attr, key in self._KEYS.items():
            value = getattr(self, attr)
            if value is not None:
                data[key] = value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RegisterPayload":
        missing = [k for k in ("poolAddress", "baseMint", "quoteMint") if not data.get(k)]
        if missing:
            raise InvalidPayloadError(f"register payload missing {', '.join(missing)}")
        kwargs = {attr: data[key] for attr, key in cls._KEYS.items() if data.get(key) is not None}
        return cls(**kwargs)


RetryPayload = Union[FeeClaimPayload, BuybackPayload, BurnPayload, RegisterPayload]

PAYLOAD_TYPES: dict[OperationType, type] = {
    OperationType.FEE_CLAIM: FeeClaimPayload,
    OperationType.BUYBACK: BuybackPayload,
    OperationType.BURN: BurnPayload,
    OperationType.REGISTER: RegisterPayload,
}


def decode_payload(operation_type: OperationType, data: Optional[dict[str, Any]]) -> RetryPayload:
    """Decode a stored payload mapping into its typed variant.

    Raises:
        InvalidPayloadError: If the mapping does not fit the operation type.
    """
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise InvalidPayloadError(f"payload must be an object, got {type(data).__name__}")
    try:
        payload_type = PAYLOAD_TYPES[OperationType(operation_type)]
    except (KeyError, ValueError) as e:
        raise InvalidPayloadError(f"no payload type for {operation_type!r}", cause=e)
    return payload_type.from_dict(data)


def encode_payload(payload: Union[RetryPayload, dict[str, Any], None]) -> dict[str, Any]:
    """Render a typed payload (or pass a mapping through) for storage."""
    if payload is None:
        return {}
    if isinstance(payload, dict):
        return dict(payload)
    return payload.to_dict()


# =============================================================================
# Queue records
# =============================================================================


@dataclass
class RetryQueueItem:
    """A durable retry record."""
    id: int
    operation_type: OperationType
    pool_address: Optional[str]
    payload: dict[str, Any] = field(default_factory=dict)
    retry_count: int = 0
    max_retries: int = DEFAULT_MAX_RETRIES
    last_error: Optional[str] = None
    last_attempt_at: Optional[datetime] = None
    next_retry_at: datetime = field(default_factory=utcnow)
    status: RetryStatus = RetryStatus.PENDING
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def typed_payload(self) -> RetryPayload:
        return decode_payload(self.operation_type, self.payload)


@dataclass
class FallbackRecord:
    """A retry request parked on local disk while the store is unreachable."""
    operation_type: OperationType
    pool_address: Optional[str]
    payload: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    max_retries: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "operationType": self.operation_type.value,
            "poolAddress": self.pool_address,
            "payload": self.payload,
            "createdAt": format_timestamp(self.created_at),
        }
        if self.max_retries is not None:
            data["maxRetries"] = self.max_retries
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FallbackRecord":
        try:
            operation_type = OperationType(data["operationType"])
        except (KeyError, ValueError) as e:
            raise InvalidPayloadError(f"fallback record has bad operationType: {data.get('operationType')!r}", cause=e)
        payload = data.get("payload") or {}
        if not isinstance(payload, dict):
            raise InvalidPayloadError("fallback record payload must be an object")
        pool_address = data.get("poolAddress")
        if pool_address is not None and not isinstance(pool_address, str):
            raise InvalidPayloadError(f"fallback record poolAddress must be a string, got {pool_address!r}")
        created_at_raw = data.get("createdAt")
        if created_at_raw is not None and not isinstance(created_at_raw, str):
            raise InvalidPayloadError(f"fallback record createdAt must be a string, got {created_at_raw!r}")
        try:
            created_at = parse_timestamp(created_at_raw)
        except ValueError as e:
            raise InvalidPayloadError(f"fallback record has bad createdAt: {created_at_raw!r}", cause=e)
        max_retries = data.get("maxRetries")
        if max_retries is not None and (isinstance(max_retries, bool) or not isinstance(max_retries, int)):
            raise InvalidPayloadError(f"fallback record maxRetries must be an integer, got {max_retries!r}")
        return cls(
            operation_type=operation_type,
            pool_address=pool_address,
            payload=payload,
            created_at=created_at or utcnow(),
            max_retries=max_retries,
        )


@dataclass
class DrainResult:
    """Counts from one drain cycle."""
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    fallbacks_recovered: int = 0
    stale_released: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "fallbacks_recovered": self.fallbacks_recovered,
            "stale_released": self.stale_released,
        }


@dataclass
class RetryQueueStats:
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.pending + self.processing + self.completed + self.failed

    def to_dict(self) -> dict[str, int]:
        return {
            "pending": self.pending,
            "processing": self.processing,
            "completed": self.completed,
            "failed": self.failed,
            "total": self.total,
        }
