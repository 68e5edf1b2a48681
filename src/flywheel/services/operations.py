"""Bind the task operations to the retry queue's handler registry."""

from flywheel.domain.operations import OperationType
from flywheel.services.buyback import BuybackService
from flywheel.services.burner import Burner
from flywheel.services.collector import FeeCollector
from flywheel.services.registry import PoolRegistry
from flywheel.services.retry_queue import RetryQueue


def register_flywheel_operations(
    queue: RetryQueue,
    registry: PoolRegistry,
    collector: FeeCollector,
    buyback: BuybackService,
    burner: Burner,
) -> None:
    queue.register_handler(OperationType.FEE_CLAIM, collector.retry_claim)
    queue.register_handler(OperationType.BUYBACK, buyback.retry_buyback)
    queue.register_handler(OperationType.BURN, burner.retry_burn)
    # Registration retries carry the full pool description; there is no row to resolve yet.
    queue.register_handler(OperationType.REGISTER, registry.retry_register, requires_pool=False)
