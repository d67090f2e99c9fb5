import asyncio
import functools
import logging
import time
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

from analytics.threshold import InvariantViolation, ThresholdPredictionEngine, ThresholdStatus
from api.metrics import metrics
from config.settings import DetectorSettings
from monitoring.async_utils import drain_or_cancel
from orchestration.events import ASSET_ADDED, ASSET_REMOVED, STATUS_UPDATE, THRESHOLD_CROSSED

from .market_data_source import DataUnavailable, MarketDataSource, MarketSnapshot, MonitoredAsset


logger = logging.getLogger(__name__)

Publisher = Callable[..., Awaitable[Any]]


class CapacityExceeded(Exception):
    def __init__(self, asset_id: str, limit: int):
        self.asset_id = asset_id
        self.limit = limit
        super().__init__(f"Cannot monitor {asset_id}: limit of {limit} assets reached")


class MarketStateSampler:
    """Samples every registered asset once per tick and feeds the prediction engine."""

    def __init__(self, source: MarketDataSource, settings: DetectorSettings,
                 engine: Optional[ThresholdPredictionEngine] = None,
                 publish: Optional[Publisher] = None,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        self.source = source
        self.settings = settings
        self.engine = engine or ThresholdPredictionEngine(settings)
        self._publish = publish
        self._sleep = sleep
        self._assets: Dict[str, MonitoredAsset] = {}
        self._history: Dict[str, Deque[MarketSnapshot]] = {}
        self._statuses: Dict[str, ThresholdStatus] = {}
        self._failures: Dict[str, int] = {}
        self._in_flight: Dict[str, asyncio.Task] = {}
        self._registration = asyncio.Lock()

    @property
    def asset_count(self) -> int:
        return len(self._assets)

    def _check_capacity(self, asset_id: str) -> Optional[MonitoredAsset]:
        existing = self._assets.get(asset_id)
        if existing is None and len(self._assets) >= self.settings.max_tokens_to_monitor:
            raise CapacityExceeded(asset_id, self.settings.max_tokens_to_monitor)
        return existing

    async def add_asset(self, asset_id: str) -> MonitoredAsset:
        async with self._registration:
            existing = self._check_capacity(asset_id)
        if existing is not None:
            return existing

        # Metadata is fetched unlocked; registration is re-checked afterwards.
        asset = await self._load_asset(asset_id)

        async with self._registration:
            existing = self._check_capacity(asset_id)
            if existing is not None:
                return existing
            if self.engine.detector.is_migrated(asset_id):
                asset.migrated = True
            self._assets[asset_id] = asset
            self._history[asset_id] = deque(maxlen=self.settings.history_size)
            self._failures[asset_id] = 0
        metrics.update_monitored(len(self._assets))
        logger.info("Monitoring %s (%s); %s assets tracked", asset_id, asset.symbol or 'unknown', len(self._assets))
        await self._emit(ASSET_ADDED, {'id': asset_id, 'asset': asset.to_dict()}, asset_id)
        return asset

    async def remove_asset(self, asset_id: str) -> bool:
        async with self._registration:
            asset = self._assets.pop(asset_id, None)
            if asset is None:
                return False
            self._history.pop(asset_id, None)
            self._statuses.pop(asset_id, None)
            self._failures.pop(asset_id, None)
            self.engine.detector.forget(asset_id)
            pending = self._in_flight.pop(asset_id, None)
        if pending is not None and not pending.done():
            pending.cancel()
        metrics.update_monitored(len(self._assets))
        metrics.forget_asset(asset_id)
        logger.info("Stopped monitoring %s", asset_id)
        await self._emit(ASSET_REMOVED, {'id': asset_id}, asset_id)
        return True

    async def _load_asset(self, asset_id: str) -> MonitoredAsset:
        try:
            return await asyncio.wait_for(self.source.fetch_asset(asset_id), timeout=self.settings.request_timeout_s)
        except (DataUnavailable, asyncio.TimeoutError) as exc:
            logger.warning("Metadata for %s unavailable, monitoring without it: %s", asset_id, exc)
            return MonitoredAsset(address=asset_id)

    async def sample(self, asset_id: str) -> MarketSnapshot:
        """Read one snapshot, retrying transient failures with exponential backoff."""
        cfg = self.settings
        last_error: Optional[DataUnavailable] = None
        for attempt in range(cfg.max_sample_attempts):
            if attempt:
                delay = min(cfg.retry_backoff_max_s, cfg.retry_backoff_base_s * (2 ** (attempt - 1)))
                await self._sleep(delay)
            started = time.perf_counter()
            try:
                snapshot = await asyncio.wait_for(
                    self.source.fetch_snapshot(asset_id),
                    timeout=cfg.request_timeout_s,
                )
            except DataUnavailable as exc:
                metrics.record_sample_failure('unavailable')
                last_error = exc
            except asyncio.TimeoutError:
                metrics.record_sample_failure('timeout')
                last_error = DataUnavailable(asset_id, f"timed out after {cfg.request_timeout_s}s")
            else:
                metrics.record_sample_latency(time.perf_counter() - started)
                return snapshot
            logger.debug("Sample attempt %s/%s for %s failed: %s", attempt + 1, cfg.max_sample_attempts,
                         asset_id, last_error)
        raise last_error

    async def sample_asset(self, asset_id: str) -> Optional[ThresholdStatus]:
        asset = self._assets.get(asset_id)
        if asset is None:
            return None
        try:
            snapshot = await self.sample(asset_id)
        except DataUnavailable as exc:
            self._failures[asset_id] = self._failures.get(asset_id, 0) + 1
            logger.warning(
                "Skipping %s this tick after %s attempts (%s consecutive failed ticks): %s",
                asset_id,
                self.settings.max_sample_attempts,
                self._failures[asset_id],
                exc.reason or exc,
            )
            return None

        if asset_id not in self._assets:
            # Removed while the read was in flight.
            return None
        history = self._history[asset_id]
        if history and snapshot.timestamp <= history[-1].timestamp:
            metrics.record_sample_failure('stale')
            logger.warning(
                "Dropping out-of-order snapshot for %s (%.6f <= %.6f)",
                asset_id,
                snapshot.timestamp,
                history[-1].timestamp,
            )
            return None
        history.append(snapshot)
        self._failures[asset_id] = 0

        try:
            status, crossing = self.engine.evaluate(asset, snapshot, list(history))
        except InvariantViolation as exc:
            metrics.record_invariant_violation('duplicate_crossing')
            logger.exception("Invariant violation while evaluating %s: %s", asset_id, exc)
            return None

        self._statuses[asset_id] = status
        metrics.record_sample(asset_id, snapshot.market_cap, status.crossing_probability)
        await self._emit(
            STATUS_UPDATE,
            {'id': asset_id, 'snapshot': snapshot.to_dict(), 'status': status.to_dict()},
            asset_id,
        )
        if crossing is not None:
            metrics.record_crossing()
            payload = crossing.to_dict()
            payload['symbol'] = asset.symbol
            await self._emit(THRESHOLD_CROSSED, payload, asset_id)
        return status

    def start_tick(self) -> Dict[str, asyncio.Task]:
        """Start one sampling task per asset without waiting for any of them.

        An asset whose previous sample is still running is skipped for this
        tick, so a hanging read never delays the other assets.
        """
        started: Dict[str, asyncio.Task] = {}
        for asset_id in list(self._assets):
            running = self._in_flight.get(asset_id)
            if running is not None and not running.done():
                metrics.record_busy_skip('sampling')
                logger.debug("Previous sample for %s still running; skipping this tick", asset_id)
                continue
            task = asyncio.create_task(self.sample_asset(asset_id), name=f"sample:{asset_id}")
            task.add_done_callback(functools.partial(self._sample_done, asset_id))
            self._in_flight[asset_id] = task
            started[asset_id] = task
        return started

    def _sample_done(self, asset_id: str, task: asyncio.Task) -> None:
        if self._in_flight.get(asset_id) is task:
            del self._in_flight[asset_id]
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Sampling %s failed: %s", asset_id, exc, exc_info=exc)

    async def tick(self) -> None:
        self.start_tick()

    async def sample_all(self) -> List[Optional[ThresholdStatus]]:
        """Run one tick and wait for the samples it started."""
        started = self.start_tick()
        if not started:
            return []
        results = await asyncio.gather(*started.values(), return_exceptions=True)
        return [None if isinstance(result, BaseException) else result for result in results]

    def in_flight(self) -> List[asyncio.Task]:
        return [task for task in self._in_flight.values() if not task.done()]

    async def drain(self, grace_s: float) -> int:
        """Let in-flight samples finish within ``grace_s``, then cancel them."""
        return await drain_or_cancel(self.in_flight(), grace_s)

    async def _emit(self, topic: str, payload: Dict[str, Any], asset_id: Optional[str] = None) -> None:
        if self._publish is not None:
            await self._publish(topic, payload, asset_id)

    def get_status(self, asset_id: str) -> Optional[ThresholdStatus]:
        return self._statuses.get(asset_id)

    def get_statuses(self) -> Dict[str, ThresholdStatus]:
        return dict(self._statuses)

    def get_assets(self) -> List[Dict[str, Any]]:
        return [asset.to_dict() for asset in self._assets.values()]

    def get_asset(self, asset_id: str) -> Optional[MonitoredAsset]:
        asset = self._assets.get(asset_id)
        if asset is None:
            return None
        copy = MonitoredAsset(
            address=asset.address,
            name=asset.name,
            symbol=asset.symbol,
            decimals=asset.decimals,
            total_supply=asset.total_supply,
        )
        copy.migrated = asset.migrated
        return copy

    def failure_counts(self) -> Dict[str, int]:
        return dict(self._failures)

    def history(self, asset_id: str) -> List[MarketSnapshot]:
        return list(self._history.get(asset_id, ()))
