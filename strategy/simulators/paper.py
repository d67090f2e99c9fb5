import asyncio
import logging
import time
import uuid
from collections import deque
from dataclasses import dataclass
from types import MappingProxyType
from typing import Deque, Dict, Mapping, Set, Tuple

from api.metrics import metrics

from strategy.execution_types import (
    Direction,
    ExecutionFailure,
    ExecutionFailureReason,
    SourceUnavailable,
    SwapResult,
)
from strategy.gateway import ExecutionGateway


logger = logging.getLogger(__name__)


@dataclass
class PaperPool:
    quote_reserve: float
    token_reserve: float

    @property
    def price(self) -> float:
        return self.quote_reserve / self.token_reserve

    def amount_out(self, direction: Direction, amount_in: float) -> float:
        if direction is Direction.BUY:
            return self.token_reserve * amount_in / (self.quote_reserve + amount_in)
        return self.quote_reserve * amount_in / (self.token_reserve + amount_in)


class PaperExecutionGateway(ExecutionGateway):
    """In-memory constant-product venue used for paper trading and tests.

    Pools are seeded on first use. ``mark_price`` moves a pool's spot price
    without touching its token side, which is how paper mode follows the
    sampled market. Failures can be queued per asset with ``fail_next``.
    """

    def __init__(self, fee_rate: float = 0.01, initial_equity: float = 10.0,
                 default_quote_reserve: float = 30.0, default_token_reserve: float = 1_000_000_000.0,
                 latency_s: float = 0.0) -> None:
        if not 0 <= fee_rate < 1:
            raise ValueError("fee_rate must be within [0, 1)")
        self.fee_rate = fee_rate
        self.latency_s = latency_s
        self.default_quote_reserve = default_quote_reserve
        self.default_token_reserve = default_token_reserve
        self._cash = initial_equity
        self._pools: Dict[str, PaperPool] = {}
        self._holdings: Dict[str, float] = {}
        self._failures: Dict[str, Deque[ExecutionFailureReason]] = {}
        self._unavailable: Set[str] = set()

    @property
    def cash(self) -> float:
        return self._cash

    @property
    def equity(self) -> float:
        value = self._cash
        for asset_id, qty in self._holdings.items():
            pool = self._pools.get(asset_id)
            if pool and qty > 0:
                value += qty * pool.price
        return value

    @property
    def holdings(self) -> Mapping[str, float]:
        return MappingProxyType(self._holdings)

    def seed_pool(self, asset_id: str, quote_reserve: float, token_reserve: float) -> PaperPool:
        if quote_reserve <= 0 or token_reserve <= 0:
            raise ValueError("Pool reserves must be positive")
        pool = PaperPool(quote_reserve=quote_reserve, token_reserve=token_reserve)
        self._pools[asset_id] = pool
        return pool

    def pool(self, asset_id: str) -> PaperPool:
        pool = self._pools.get(asset_id)
        if pool is None:
            pool = self.seed_pool(asset_id, self.default_quote_reserve, self.default_token_reserve)
        return pool

    def mark_price(self, asset_id: str, price: float) -> None:
        if price <= 0:
            return
        pool = self.pool(asset_id)
        pool.quote_reserve = price * pool.token_reserve

    def fail_next(self, asset_id: str, reason: ExecutionFailureReason, count: int = 1) -> None:
        queue = self._failures.setdefault(asset_id, deque())
        queue.extend([reason] * count)

    def set_unavailable(self, asset_id: str, unavailable: bool = True) -> None:
        if unavailable:
            self._unavailable.add(asset_id)
        else:
            self._unavailable.discard(asset_id)

    async def quote(self, asset_id: str, direction: Direction, amount_in: float) -> float:
        if asset_id in self._unavailable:
            raise SourceUnavailable(asset_id, "paper quote disabled")
        out, _ = self._price(asset_id, direction, amount_in)
        return out

    async def swap(self, asset_id: str, direction: Direction, amount_in: float,
                   min_amount_out: float, deadline: float) -> SwapResult:
        started = time.perf_counter()
        if self.latency_s:
            await asyncio.sleep(self.latency_s)
        pending = self._failures.get(asset_id)
        if pending:
            reason = pending.popleft()
            raise ExecutionFailure(reason, "injected paper failure")
        if deadline and time.time() > deadline:
            raise ExecutionFailure(ExecutionFailureReason.TIMEOUT, "deadline passed")
        if amount_in <= 0:
            raise ExecutionFailure(ExecutionFailureReason.REJECTED, "amount_in must be positive")
        if direction is Direction.BUY and amount_in > self._cash:
            raise ExecutionFailure(ExecutionFailureReason.REJECTED, "insufficient paper balance")
        if direction is Direction.SELL and amount_in > self._holdings.get(asset_id, 0.0) * (1 + 1e-9):
            raise ExecutionFailure(ExecutionFailureReason.REJECTED, "insufficient paper holdings")

        amount_out, fee = self._price(asset_id, direction, amount_in)
        if amount_out <= 0:
            raise ExecutionFailure(ExecutionFailureReason.INSUFFICIENT_LIQUIDITY)
        if amount_out < min_amount_out:
            raise ExecutionFailure(
                ExecutionFailureReason.SLIPPAGE_EXCEEDED,
                f"out {amount_out:.10g} below minimum {min_amount_out:.10g}",
            )

        pool = self.pool(asset_id)
        if direction is Direction.BUY:
            pool.quote_reserve += amount_in - fee
            pool.token_reserve -= amount_out
            self._cash -= amount_in
            self._holdings[asset_id] = self._holdings.get(asset_id, 0.0) + amount_out
        else:
            pool.token_reserve += amount_in
            pool.quote_reserve -= amount_out + fee
            self._cash += amount_out
            remaining = self._holdings.get(asset_id, 0.0) - amount_in
            if remaining <= 1e-12:
                self._holdings.pop(asset_id, None)
            else:
                self._holdings[asset_id] = remaining

        elapsed_ms = (time.perf_counter() - started) * 1000.0
        metrics.update_equity(self.equity)
        logger.info(
            "Paper %s %s: in=%.10g out=%.10g fee=%.10g",
            direction.value,
            asset_id,
            amount_in,
            amount_out,
            fee,
        )
        return SwapResult(
            amount_out=amount_out,
            fee_paid=fee,
            execution_time_ms=elapsed_ms,
            tx_id=f"paper-{uuid.uuid4().hex[:8]}",
        )

    def _price(self, asset_id: str, direction: Direction, amount_in: float) -> Tuple[float, float]:
        pool = self.pool(asset_id)
        if direction is Direction.BUY:
            fee = amount_in * self.fee_rate
            return pool.amount_out(direction, amount_in - fee), fee
        gross = pool.amount_out(direction, amount_in)
        fee = gross * self.fee_rate
        return gross - fee, fee
