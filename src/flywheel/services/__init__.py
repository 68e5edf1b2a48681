"""Services - business logic with single responsibility."""

from flywheel.services.metrics import MetricsEmitter
from flywheel.services.state_store import StateStore
from flywheel.services.fallback import LocalFallbackStore, RetrySink, StoreRetrySink
from flywheel.services.retry_queue import RetryQueue
from flywheel.services.registry import PoolRegistry
from flywheel.services.collector import FeeCollector
from flywheel.services.marketcap import MarketcapService
from flywheel.services.buyback import BuybackService
from flywheel.services.burner import Burner
from flywheel.services.discovery import DiscoveryService
from flywheel.services.operations import register_flywheel_operations
from flywheel.services.scheduler import Scheduler, ScheduledTask
from flywheel.services.jobs import FlywheelJobs, TASK_NAMES
from flywheel.services.health import HealthServer, HealthStatusCollector

__all__ = [
    "MetricsEmitter",
    "StateStore",
    "LocalFallbackStore",
    "RetrySink",
    "StoreRetrySink",
    "RetryQueue",
    "PoolRegistry",
    "FeeCollector",
    "MarketcapService",
    "BuybackService",
    "Burner",
    "DiscoveryService",
    "register_flywheel_operations",
    "Scheduler",
    "ScheduledTask",
    "FlywheelJobs",
    "TASK_NAMES",
    "HealthServer",
    "HealthStatusCollector",
]
