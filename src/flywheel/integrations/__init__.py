"""External integrations - chain client port, Jupiter swaps, DexScreener prices."""

from flywheel.integrations.chain import ChainClient, ClaimableLpFees, DiscoveredPool, DryRunChainClient
from flywheel.integrations.dexscreener import DexScreenerClient
from flywheel.integrations.jupiter import JupiterClient, JupiterExecution, JupiterOrder

__all__ = [
    "ChainClient",
    "ClaimableLpFees",
    "DiscoveredPool",
    "DryRunChainClient",
    "JupiterClient",
    "JupiterOrder",
    "JupiterExecution",
    "DexScreenerClient",
]
