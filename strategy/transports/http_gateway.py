import asyncio
import logging
from typing import Any, Optional

import aiohttp

from ingest.service_rest import ServiceAPIError, ServiceRESTClient
from strategy.execution_types import (
    Direction,
    ExecutionFailure,
    ExecutionFailureReason,
    SourceUnavailable,
    SwapResult,
)
from strategy.gateway import ExecutionGateway


__all__ = ["HttpExecutionGateway"]

logger = logging.getLogger(__name__)


class HttpExecutionGateway(ExecutionGateway):
    """Adapter for an integrator-run signing/router service.

    ``POST /quote``  ``{assetId, direction, amountIn}`` -> ``{amountOut}``
    ``POST /swap``   ``{assetId, direction, amountIn, minAmountOut, deadline}``
                     -> ``{amountOut, feePaid, executionTimeMs, txId}``

    Rejections carry ``{"reason": <ExecutionFailureReason>}`` in the error body.
    """

    def __init__(self, base_url: str, api_key: Optional[str] = None, timeout_s: float = 10.0):
        self.timeout_s = timeout_s
        self._rest = ServiceRESTClient(base_url, api_key=api_key, timeout_s=timeout_s)

    async def quote(self, asset_id: str, direction: Direction, amount_in: float) -> float:
        body = {"assetId": asset_id, "direction": direction.value, "amountIn": amount_in}
        try:
            data = await self._rest.post("/quote", body)
        except asyncio.CancelledError:
            raise
        except (ServiceAPIError, aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise SourceUnavailable(asset_id, str(exc)) from exc
        amount_out = self._as_float(data.get("amountOut") if isinstance(data, dict) else None)
        if amount_out is None:
            raise SourceUnavailable(asset_id, "malformed quote payload")
        return amount_out

    async def swap(self, asset_id: str, direction: Direction, amount_in: float,
                   min_amount_out: float, deadline: float) -> SwapResult:
        body = {
            "assetId": asset_id,
            "direction": direction.value,
            "amountIn": amount_in,
            "minAmountOut": min_amount_out,
            "deadline": deadline,
        }
        try:
            data = await self._rest.post("/swap", body)
        except asyncio.CancelledError:
            raise
        except asyncio.TimeoutError as exc:
            raise ExecutionFailure(ExecutionFailureReason.TIMEOUT, f"{direction.value} {asset_id}") from exc
        except ServiceAPIError as exc:
            self._log_transport_error(f"{direction.value} swap {asset_id}", exc)
            raise ExecutionFailure(ExecutionFailureReason.parse(exc.reason), exc.msg or '') from exc
        except aiohttp.ClientError as exc:
            self._log_transport_error(f"{direction.value} swap {asset_id}", exc)
            raise ExecutionFailure(ExecutionFailureReason.REJECTED, str(exc)) from exc
        return self._parse_swap_ack(data)

    async def close(self) -> None:
        await self._rest.close()

    def _parse_swap_ack(self, payload: Any) -> SwapResult:
        if not isinstance(payload, dict):
            raise ExecutionFailure(ExecutionFailureReason.REJECTED, "malformed swap payload")
        amount_out = self._as_float(payload.get("amountOut"))
        if amount_out is None:
            raise ExecutionFailure(ExecutionFailureReason.REJECTED, "swap acknowledgement without amountOut")
        return SwapResult(
            amount_out=amount_out,
            fee_paid=self._as_float(payload.get("feePaid")) or 0.0,
            execution_time_ms=self._as_float(payload.get("executionTimeMs")) or 0.0,
            tx_id=payload.get("txId"),
        )

    def _log_transport_error(self, action: str, error: Exception) -> None:
        if isinstance(error, ServiceAPIError):
            logger.error(
                "Gateway %s failed (status=%s, reason=%s, msg=%s)",
                action,
                error.status,
                error.reason,
                error.msg,
            )
        else:
            logger.error("Gateway %s failed: %s", action, error)

    @staticmethod
    def _as_float(value: Any) -> Optional[float]:
        if value is None:
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            return None
