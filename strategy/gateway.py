from abc import ABC, abstractmethod

from strategy.execution_types import Direction, SwapResult


class ExecutionGateway(ABC):
    """Venue-agnostic quote and swap surface.

    ``amount_in`` is quote currency for BUY and token quantity for SELL;
    ``amount_out`` is the opposite side. Implementations raise
    ``SourceUnavailable`` from ``quote`` and ``ExecutionFailure`` from ``swap``.
    Signing, routing and broadcast live behind this interface.
    """

    @abstractmethod
    async def quote(self, asset_id: str, direction: Direction, amount_in: float) -> float:
        ...

    @abstractmethod
    async def swap(self, asset_id: str, direction: Direction, amount_in: float,
                   min_amount_out: float, deadline: float) -> SwapResult:
        ...

    async def close(self) -> None:
        return None
