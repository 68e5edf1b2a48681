"""Typed settings groups loaded from ConfigManager.

Every group is a frozen dataclass with defaults that match a production
deployment, so components can be built without any config file.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

from flywheel.core.config import ConfigManager
from flywheel.core.retry import ValidationError

# Staggered every 15 minutes: discovery -> marketcap -> collection -> buyback
DEFAULT_DISCOVERY_CRON = "0,15,30,45 * * * *"
DEFAULT_MARKETCAP_CRON = "3,18,33,48 * * * *"
DEFAULT_FEE_COLLECTION_CRON = "6,21,36,51 * * * *"
DEFAULT_BUYBACK_CRON = "10,25,40,55 * * * *"
DEFAULT_RETRY_CRON = "*/5 * * * *"


@dataclass(frozen=True)
class SchedulerSettings:
    """Cron lines for each recurring job.

    Attributes:
        fee_collection_cron: Fee collection sweep schedule.
        buyback_cron: Multi-token buyback schedule.
        marketcap_cron: Marketcap refresh schedule.
        discovery_cron: Pool discovery schedule.
        retry_cron: Retry queue drain schedule.
        burn_after_buyback: Run the burn sweep after a successful buyback.
        stop_timeout_seconds: How long stop() waits for in-flight handlers.
    """

    fee_collection_cron: str = DEFAULT_FEE_COLLECTION_CRON
    buyback_cron: str = DEFAULT_BUYBACK_CRON
    marketcap_cron: str = DEFAULT_MARKETCAP_CRON
    discovery_cron: str = DEFAULT_DISCOVERY_CRON
    retry_cron: str = DEFAULT_RETRY_CRON
    burn_after_buyback: bool = True
    stop_timeout_seconds: float = 30.0

    @classmethod
    def from_config(cls, config: ConfigManager, prefix: str = "scheduler") -> "SchedulerSettings":
        return cls(
            fee_collection_cron=config.get_str(f"{prefix}.fee_collection_cron", DEFAULT_FEE_COLLECTION_CRON),
            buyback_cron=config.get_str(f"{prefix}.buyback_cron", DEFAULT_BUYBACK_CRON),
            marketcap_cron=config.get_str(f"{prefix}.marketcap_cron", DEFAULT_MARKETCAP_CRON),
            discovery_cron=config.get_str(f"{prefix}.discovery_cron", DEFAULT_DISCOVERY_CRON),
            retry_cron=config.get_str(f"{prefix}.retry_cron", DEFAULT_RETRY_CRON),
            burn_after_buyback=config.get_bool(f"{prefix}.burn_after_buyback", True),
            stop_timeout_seconds=config.get_float(f"{prefix}.stop_timeout_seconds", 30.0),
        )


@dataclass(frozen=True)
class RetrySettings:
    """Durable retry queue parameters.

    Attributes:
        max_retries: Default attempt ceiling for new queue items.
        backoff_base_seconds: Delay after the first failed attempt is base * multiplier.
        backoff_max_seconds: Upper bound for any single backoff step.
        backoff_multiplier: Exponential growth factor between attempts.
        batch_size: Maximum due items processed per drain cycle.
        item_delay_seconds: Pause between items within one drain cycle.
        cleanup_after_days: Age after which finished items are deleted.
        fallback_dir: Directory for local fallback records during store outages.
        processing_timeout_seconds: Items stuck in processing longer than this
            are handed back to pending by the next drain.
    """

    max_retries: int = 5
    backoff_base_seconds: int = 60
    backoff_max_seconds: int = 3600
    backoff_multiplier: int = 2
    batch_size: int = 10
    item_delay_seconds: float = 1.0
    cleanup_after_days: int = 7
    fallback_dir: str = "data/retry-fallback"
    processing_timeout_seconds: int = 600

    def __post_init__(self) -> None:
        if self.max_retries < 1:
            raise ValidationError(f"retry.max_retries must be >= 1, got {self.max_retries}")
        if self.processing_timeout_seconds <= 0:
            raise ValidationError(
                f"retry.processing_timeout_seconds must be positive, got {self.processing_timeout_seconds}"
            )

    @classmethod
    def from_config(cls, config: ConfigManager, prefix: str = "retry") -> "RetrySettings":
        return cls(
            max_retries=config.get_int(f"{prefix}.max_retries", 5),
            backoff_base_seconds=config.get_int(f"{prefix}.backoff_base_seconds", 60),
            backoff_max_seconds=config.get_int(f"{prefix}.backoff_max_seconds", 3600),
            backoff_multiplier=config.get_int(f"{prefix}.backoff_multiplier", 2),
            batch_size=config.get_int(f"{prefix}.batch_size", 10),
            item_delay_seconds=config.get_float(f"{prefix}.item_delay_seconds", 1.0),
            cleanup_after_days=config.get_int(f"{prefix}.cleanup_after_days", 7),
            fallback_dir=config.get_str(f"{prefix}.fallback_dir", "data/retry-fallback"),
            processing_timeout_seconds=config.get_int(f"{prefix}.processing_timeout_seconds", 600),
        )


@dataclass(frozen=True)
class ThresholdSettings:
    """Wallet and swap thresholds. All amounts are in SOL."""

    min_buyback_sol: Decimal = Decimal("0.1")
    reserve_sol: Decimal = Decimal("0.1")
    buyback_percentage: Decimal = Decimal("80")
    min_allocation_sol: Decimal = Decimal("0.001")
    slippage_bps: int = 100

    @classmethod
    def from_config(cls, config: ConfigManager, prefix: str = "thresholds") -> "ThresholdSettings":
        return cls(
            min_buyback_sol=config.get_decimal(f"{prefix}.min_buyback_sol", Decimal("0.1")),
            reserve_sol=config.get_decimal(f"{prefix}.reserve_sol", Decimal("0.1")),
            buyback_percentage=config.get_decimal(f"{prefix}.buyback_percentage", Decimal("80")),
            min_allocation_sol=config.get_decimal(f"{prefix}.min_allocation_sol", Decimal("0.001")),
            slippage_bps=config.get_int(f"{prefix}.slippage_bps", 100),
        )


@dataclass(frozen=True)
class BurnSettings:
    """Which token mints the burn sweep must leave alone."""

    exclude_mints: tuple[str, ...] = field(default_factory=tuple)
    exclude_native_token: bool = False
    native_mint: Optional[str] = None

    @property
    def excluded(self) -> frozenset[str]:
        mints = set(self.exclude_mints)
        if self.exclude_native_token and self.native_mint:
            mints.add(self.native_mint)
        return frozenset(mints)

    @classmethod
    def from_config(cls, config: ConfigManager, prefix: str = "burn") -> "BurnSettings":
        return cls(
            exclude_mints=tuple(config.get_list(f"{prefix}.exclude_mints")),
            exclude_native_token=config.get_bool(f"{prefix}.exclude_native_token", False),
            native_mint=config.get("token.native_mint") or None,
        )


@dataclass(frozen=True)
class DiscoverySettings:
    """On-chain pool discovery parameters."""

    enabled: bool = True
    config_keys: tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def from_config(cls, config: ConfigManager, prefix: str = "discovery") -> "DiscoverySettings":
        return cls(
            enabled=config.get_bool(f"{prefix}.enabled", True),
            config_keys=tuple(config.get_list(f"{prefix}.config_keys")),
        )
