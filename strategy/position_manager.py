"""Position lifecycle: entry on a confirmed crossing, rule-based exit afterwards.

Positions move PENDING -> ACTIVE -> CLOSING -> CLOSED, or end in FAILED when a
full exit keeps failing. PENDING only exists inside ``open_position`` and is
never visible to readers. All collections are owned here; every query returns
deep copies.
"""
import asyncio
import dataclasses
import functools
import itertools
import logging
import re
import time
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from api.metrics import metrics
from config.settings import Strategy, TradingSettings
from monitoring.async_utils import drain_or_cancel
from orchestration.events import (
    BUY_FAILED,
    PARTIAL_EXIT,
    POSITION_CLOSED,
    POSITION_FAILED,
    POSITION_OPENED,
    POSITION_SKIPPED,
)
from risk.risk_governor import RiskGovernor
from strategy.execution_types import (
    Direction,
    ExecutionFailure,
    ExecutionFailureReason,
    SourceUnavailable,
    SwapResult,
)
from strategy.gateway import ExecutionGateway
from strategy.positions import (
    ExitDecision,
    PositionStatus,
    TradePosition,
    evaluate_exit,
)


logger = logging.getLogger(__name__)

Publisher = Callable[..., Awaitable[Any]]

_POSITION_ID = re.compile(r'^pos_(\d+)$')


def _metric_reason(reason: str) -> str:
    return reason.split(' at ')[0].lower().replace(' ', '_')


class PositionLifecycleManager:
    def __init__(self, gateway: ExecutionGateway, governor: RiskGovernor, settings: TradingSettings,
                 publish: Optional[Publisher] = None, clock: Callable[[], float] = time.time):
        self.gateway = gateway
        self.governor = governor
        self.settings = settings
        self._publish = publish
        self._clock = clock
        self._open: Dict[str, TradePosition] = {}
        self._completed: List[TradePosition] = []
        self._failed: List[TradePosition] = []
        self._locks: Dict[str, asyncio.Lock] = {}
        self._in_flight: Dict[str, asyncio.Task] = {}
        self._open_lock = asyncio.Lock()
        self._ids = itertools.count(1)

    # ------------------------------------------------------------------ entry

    def resolve_strategy(self, name: Optional[str] = None) -> Optional[Strategy]:
        return self.settings.strategies.get(name or self.settings.default_strategy)

    async def on_threshold_crossed(self, event) -> Optional[TradePosition]:
        """Dispatcher handler for ``thresholdCrossed``."""
        payload = event.payload
        return await self.open_position(payload['id'], symbol=payload.get('symbol') or '')

    async def open_position(self, asset_id: str, symbol: str = '',
                            strategy_name: Optional[str] = None) -> Optional[TradePosition]:
        strategy = self.resolve_strategy(strategy_name)
        if strategy is None:
            await self._skip(asset_id, f"Strategy {strategy_name!r} not configured", 'strategy_missing')
            return None

        # Serialized so two crossings cannot both pass the exposure check.
        async with self._open_lock:
            if any(p.asset_id == asset_id for p in self._open.values()):
                await self._skip(asset_id, "Position already open for asset", 'duplicate')
                return None

            decision = self.governor.can_open(self._open.values(), strategy.buy_amount)
            if not decision.allowed:
                await self._skip(asset_id, decision.reason or "Refused by risk governor", decision.code or 'risk')
                return None

            try:
                quoted = await self._quote(asset_id, Direction.BUY, strategy.buy_amount)
                min_out = quoted * (1.0 - strategy.slippage_tolerance)
                result = await self._swap(asset_id, Direction.BUY, strategy.buy_amount, min_out)
            except SourceUnavailable as exc:
                await self._buy_failed(asset_id, 'SOURCE_UNAVAILABLE', str(exc))
                return None
            except ExecutionFailure as exc:
                await self._buy_failed(asset_id, exc.reason.value, str(exc))
                return None

            if result.amount_out <= 0:
                await self._buy_failed(asset_id, ExecutionFailureReason.REJECTED.value, "empty fill")
                return None

            position = TradePosition(
                id=f"pos_{next(self._ids)}",
                asset_id=asset_id,
                symbol=symbol,
                strategy=strategy.name,
                entry_amount=strategy.buy_amount,
                entry_token_quantity=result.amount_out,
                token_quantity=result.amount_out,
                entry_price=strategy.buy_amount / result.amount_out,
                entry_time=self._clock(),
                fees_paid=result.fee_paid,
            )
            position.status = PositionStatus.ACTIVE
            self._register(position)

        metrics.record_position_opened(strategy.name)
        self._update_gauges()
        logger.info(
            "Opened %s on %s: %.6g in for %.6g tokens (strategy %s, %.0fms)",
            position.id,
            asset_id,
            position.entry_amount,
            position.entry_token_quantity,
            strategy.name,
            result.execution_time_ms,
        )
        await self._emit(POSITION_OPENED, {'position': position.to_dict()}, asset_id)
        return position.snapshot()

    # ------------------------------------------------------------- monitoring

    def start_tick(self) -> Dict[str, asyncio.Task]:
        """Start one monitoring task per open position and return without waiting.

        A position whose previous task is still running (a slow quote, an
        exit in flight) is skipped, so it never holds back the others.
        """
        started: Dict[str, asyncio.Task] = {}
        for position_id in list(self._open):
            running = self._in_flight.get(position_id)
            if running is not None and not running.done():
                metrics.record_busy_skip('positions')
                logger.debug("Previous tick for %s still running; skipping", position_id)
                continue
            task = asyncio.create_task(self.monitor_position(position_id), name=f"monitor:{position_id}")
            task.add_done_callback(functools.partial(self._monitor_done, position_id))
            self._in_flight[position_id] = task
            started[position_id] = task
        self._update_gauges()
        return started

    def _monitor_done(self, position_id: str, task: asyncio.Task) -> None:
        if self._in_flight.get(position_id) is task:
            del self._in_flight[position_id]
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Monitoring %s failed: %s", position_id, exc, exc_info=exc)

    async def tick(self) -> None:
        self.start_tick()

    async def monitor_positions(self) -> None:
        """Run one monitoring tick and wait for the tasks it started."""
        started = self.start_tick()
        if started:
            await asyncio.gather(*started.values(), return_exceptions=True)
        self._update_gauges()

    def in_flight(self) -> List[asyncio.Task]:
        return [task for task in self._in_flight.values() if not task.done()]

    async def drain(self, grace_s: float) -> int:
        """Let in-flight monitoring finish within ``grace_s``, then cancel it."""
        return await drain_or_cancel(self.in_flight(), grace_s)

    async def monitor_position(self, position_id: str) -> None:
        lock = self._locks.get(position_id)
        if lock is None:
            return
        if lock.locked():
            logger.debug("Exit already in flight for %s; skipping this tick", position_id)
            return
        async with lock:
            position = self._open.get(position_id)
            if position is None:
                return
            strategy = self.resolve_strategy(position.strategy)

            if position.status is PositionStatus.CLOSING:
                await self._full_exit(position, position.pending_exit_reason or "Exit retry", strategy)
                return

            now = self._clock()
            fresh = await self._refresh(position)
            view = position if fresh else dataclasses.replace(position, pnl_percent=None)
            decision = evaluate_exit(
                view,
                strategy,
                now,
                enable_stop_losses=self.settings.enable_stop_losses,
                enable_profit_taking=self.settings.enable_profit_taking,
            )
            if decision is None:
                return
            if decision.partial:
                await self._partial_exit(position, decision, strategy)
            else:
                await self._full_exit(position, decision.reason, strategy)

    async def _refresh(self, position: TradePosition) -> bool:
        try:
            quote_out = await self._quote(position.asset_id, Direction.SELL, position.token_quantity)
        except SourceUnavailable as exc:
            logger.warning("Price refresh failed for %s: %s", position.id, exc)
            return False
        position.mark(quote_out)
        return True

    async def _partial_exit(self, position: TradePosition, decision: ExitDecision, strategy: Strategy) -> None:
        quantity = position.token_quantity * strategy.partial_sell_fraction
        position.status = PositionStatus.CLOSING
        try:
            result = await self._sell(position, quantity, strategy)
        except (ExecutionFailure, SourceUnavailable) as exc:
            # Rung stays armed; the failure counts toward max_exit_attempts.
            position.status = PositionStatus.ACTIVE
            logger.warning("%s for %s failed: %s", decision.reason, position.id, exc)
            await self._exit_failed(position, exc, reason=decision.reason)
            return

        position.token_quantity -= quantity
        position.realized_amount += result.amount_out
        position.fees_paid += result.fee_paid
        position.fired_ladder_rungs.add(decision.rung)
        position.status = PositionStatus.ACTIVE
        if position.current_price is not None:
            position.mark(position.current_price * position.token_quantity)

        metrics.record_partial_exit()
        logger.info(
            "%s: %s sold %.6g tokens for %.6g (remaining %.6g)",
            decision.reason,
            position.id,
            quantity,
            result.amount_out,
            position.token_quantity,
        )
        await self._emit(PARTIAL_EXIT, {'position': position.to_dict(), 'rung': decision.rung}, position.asset_id)

    async def _full_exit(self, position: TradePosition, reason: str, strategy: Optional[Strategy]) -> None:
        if position.status is PositionStatus.ACTIVE:
            position.status = PositionStatus.CLOSING
            position.pending_exit_reason = reason
            logger.info("Closing %s: %s", position.id, reason)

        quantity = position.token_quantity
        try:
            result = await self._sell(position, quantity, strategy)
        except (ExecutionFailure, SourceUnavailable) as exc:
            await self._exit_failed(position, exc)
            return

        now = self._clock()
        position.realized_amount += result.amount_out
        position.fees_paid += result.fee_paid
        position.token_quantity = 0.0
        position.exit_price = result.amount_out / quantity if quantity > 0 else position.current_price
        position.current_value = position.realized_amount
        position.pnl_percent = (position.realized_amount - position.entry_amount) / position.entry_amount * 100.0
        position.exit_time = now
        position.exit_reason = reason
        position.pending_exit_reason = None
        position.last_error = None
        position.status = PositionStatus.CLOSED
        self._retire(position, self._completed)

        pnl = position.realized_pnl
        metrics.record_position_closed(_metric_reason(reason))
        metrics.record_pnl(pnl)
        logger.info(
            "Closed %s (%s): %.2f%% P&L, held %.0fs",
            position.id,
            reason,
            position.pnl_percent,
            now - position.entry_time,
        )
        await self._emit(POSITION_CLOSED, {'position': position.to_dict()}, position.asset_id)
        await self.governor.record_realized(pnl, at=now)

    async def _exit_failed(self, position: TradePosition, exc: Exception, reason: Optional[str] = None) -> None:
        position.exit_attempts += 1
        position.last_error = str(exc)
        metrics.record_sell_failure(self._failure_label(exc))
        if position.exit_attempts < self.settings.max_exit_attempts:
            logger.warning(
                "Exit attempt %s/%s for %s failed: %s",
                position.exit_attempts,
                self.settings.max_exit_attempts,
                position.id,
                exc,
            )
            return

        now = self._clock()
        position.status = PositionStatus.FAILED
        position.exit_time = now
        position.exit_reason = reason or position.pending_exit_reason
        self._retire(position, self._failed)
        metrics.record_position_failed()
        logger.error(
            "Position %s FAILED after %s exit attempts; manual intervention required (last error: %s)",
            position.id,
            position.exit_attempts,
            exc,
        )
        await self._emit(POSITION_FAILED, {'position': position.to_dict()}, position.asset_id)
        await self.governor.record_failed_exit(at=now)

    # ---------------------------------------------------------------- gateway

    async def _sell(self, position: TradePosition, quantity: float, strategy: Optional[Strategy]) -> SwapResult:
        slippage = (strategy or self.settings.strategy).slippage_tolerance
        quoted = await self._quote(position.asset_id, Direction.SELL, quantity)
        return await self._swap(position.asset_id, Direction.SELL, quantity, quoted * (1.0 - slippage))

    async def _quote(self, asset_id: str, direction: Direction, amount_in: float) -> float:
        try:
            return await asyncio.wait_for(
                self.gateway.quote(asset_id, direction, amount_in),
                timeout=self.settings.request_timeout_s,
            )
        except asyncio.TimeoutError as exc:
            raise SourceUnavailable(asset_id, "quote timed out") from exc

    async def _swap(self, asset_id: str, direction: Direction, amount_in: float, min_out: float) -> SwapResult:
        deadline = self._clock() + self.settings.deadline_s
        started = time.perf_counter()
        try:
            result = await asyncio.wait_for(
                self.gateway.swap(asset_id, direction, amount_in, min_out, deadline),
                timeout=self.settings.request_timeout_s,
            )
        except asyncio.TimeoutError as exc:
            raise ExecutionFailure(ExecutionFailureReason.TIMEOUT, f"{direction.value} {asset_id}") from exc
        metrics.record_swap_latency(direction.value, time.perf_counter() - started)
        return result

    @staticmethod
    def _failure_label(exc: Exception) -> str:
        if isinstance(exc, ExecutionFailure):
            return exc.reason.value
        return 'SOURCE_UNAVAILABLE'

    # ------------------------------------------------------------ bookkeeping

    def _register(self, position: TradePosition) -> None:
        self._open[position.id] = position
        self._locks[position.id] = asyncio.Lock()

    def _retire(self, position: TradePosition, bucket: List[TradePosition]) -> None:
        self._open.pop(position.id, None)
        self._locks.pop(position.id, None)
        bucket.append(position)
        self._update_gauges()

    async def _skip(self, asset_id: str, reason: str, code: str) -> None:
        metrics.record_skipped(code)
        logger.info("Skipping entry on %s: %s", asset_id, reason)
        await self._emit(POSITION_SKIPPED, {'id': asset_id, 'reason': reason}, asset_id)

    async def _buy_failed(self, asset_id: str, reason: str, detail: str) -> None:
        metrics.record_buy_failure(reason)
        logger.warning("Buy for %s failed (%s): %s", asset_id, reason, detail)
        await self._emit(BUY_FAILED, {'id': asset_id, 'reason': reason, 'detail': detail}, asset_id)

    async def _emit(self, topic: str, payload: Dict[str, Any], asset_id: Optional[str] = None) -> None:
        if self._publish is not None:
            await self._publish(topic, payload, asset_id)

    def _update_gauges(self) -> None:
        metrics.update_positions(len(self._open), self.exposure())

    def restore_positions(self, positions: Iterable[TradePosition]) -> int:
        """Adopt open positions persisted by a previous run."""
        restored = 0
        for position in positions:
            if not position.status.is_open or position.id in self._open:
                continue
            if position.status is PositionStatus.CLOSING:
                position.status = PositionStatus.ACTIVE
                position.pending_exit_reason = None
            self._register(position)
            match = _POSITION_ID.match(position.id)
            if match:
                seen = int(match.group(1))
                current = next(self._ids)
                self._ids = itertools.count(max(current, seen + 1))
            restored += 1
        if restored:
            logger.info("Restored %s open positions", restored)
            self._update_gauges()
        return restored

    # ---------------------------------------------------------------- queries

    def exposure(self) -> float:
        return sum(p.entry_amount for p in self._open.values())

    def get_position(self, position_id: str) -> Optional[TradePosition]:
        for bucket in (self._open.values(), self._completed, self._failed):
            for position in bucket:
                if position.id == position_id:
                    return position.snapshot()
        return None

    def list_active_positions(self) -> List[TradePosition]:
        return [p.snapshot() for p in self._open.values()]

    def list_completed_positions(self) -> List[TradePosition]:
        return [p.snapshot() for p in self._completed]

    def list_failed_positions(self) -> List[TradePosition]:
        return [p.snapshot() for p in self._failed]

    def get_position_stats(self) -> Dict[str, Any]:
        completed = self._completed
        count = len(completed)
        pnl_percents = [p.pnl_percent for p in completed if p.pnl_percent is not None]
        wins = sum(1 for p in completed if (p.realized_pnl or 0.0) > 0)
        return {
            'active_count': len(self._open),
            'completed_count': count,
            'failed_count': len(self._failed),
            'total_realized_pnl': sum(p.realized_pnl or 0.0 for p in completed),
            'average_pnl': sum(pnl_percents) / len(pnl_percents) if pnl_percents else 0.0,
            'success_rate': wins / count if count else 0.0,
        }
