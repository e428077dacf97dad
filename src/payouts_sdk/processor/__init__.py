"""Payment processor clients."""

from typing import Optional

from .base import BalanceEntry, ProcessorClientBase, ProcessorPayout
from .stripe_client import StripeProcessorClient
from .simulator import SimulatedAccount, SimulatorConfig, SimulatorProcessorClient


def get_processor_client(
    provider: str = "stripe",
    api_key: Optional[str] = None,
) -> ProcessorClientBase:
    """Factory returning the client for a processor name.

    Raises:
        ValueError: If the provider is not supported.
    """
    provider = provider.lower()
    if provider == "stripe":
        return StripeProcessorClient(api_key=api_key)
    if provider == "simulator":
        return SimulatorProcessorClient()
    raise ValueError(f"Unsupported payment processor: {provider}")


__all__ = [
    "BalanceEntry",
    "ProcessorClientBase",
    "ProcessorPayout",
    "StripeProcessorClient",
    "SimulatedAccount",
    "SimulatorConfig",
    "SimulatorProcessorClient",
    "get_processor_client",
]
