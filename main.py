import asyncio
import logging
import time
from typing import Any, Dict, List, Optional

from analytics.threshold import ThresholdStatus
from api.alerts import AlertWebhook, alert_webhook
from api.metrics import start_metrics_server
from config import ConfigurationError, config, load_settings
from config.settings import is_placeholder
from ingest.market_data_source import MarketDataSource, MonitoredAsset
from ingest.sampler import CapacityExceeded, MarketStateSampler
from ingest.valuation_rest import RESTMarketDataSource
from monitoring.async_utils import drain_or_cancel, run_every, run_tasks_with_cleanup
from monitoring.logging_utils import setup_logging
from orchestration.dispatcher import EventDispatcher, OverflowPolicy
from orchestration.events import (
    Event,
    POSITION_FAILED,
    RISK_ALERT,
    STATUS_UPDATE,
    THRESHOLD_CROSSED,
)
from orchestration.persistence import PositionStateStore
from risk.risk_governor import RiskGovernor
from strategy.gateway import ExecutionGateway
from strategy.position_manager import PositionLifecycleManager
from strategy.positions import TradePosition
from strategy.simulators.paper import PaperExecutionGateway
from strategy.transports.http_gateway import HttpExecutionGateway


logger = logging.getLogger(__name__)

PAPER_REFERENCE_SUPPLY = 1_000_000_000.0


class MigrationSniper:
    """Wire sampling, crossing detection, positions and risk; run the two loops."""

    def __init__(self, config_obj: Optional[Any] = None,
                 source: Optional[MarketDataSource] = None,
                 gateway: Optional[ExecutionGateway] = None,
                 state_store: Optional[PositionStateStore] = None,
                 alerts: Optional[AlertWebhook] = None):
        self.config = config_obj or config
        self.settings = load_settings(self.config)
        self.monitoring_cfg = self.settings.monitoring

        self.dispatcher = EventDispatcher.from_settings(self.settings.events)
        self.source = source or self._build_source()
        self.gateway = gateway or self._build_gateway()
        self.governor = RiskGovernor(self.settings.risk, publish=self.dispatcher.publish)
        self.sampler = MarketStateSampler(self.source, self.settings.detector, publish=self.dispatcher.publish)
        self.positions = PositionLifecycleManager(
            self.gateway,
            self.governor,
            self.settings.trading,
            publish=self.dispatcher.publish,
        )
        self.state_store = state_store or self._build_state_store()
        self.alerts = alerts or alert_webhook

        self.running = False
        self.started_at: Optional[float] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._loops: List[asyncio.Task] = []
        self._subscribe()

    def _build_source(self) -> MarketDataSource:
        cfg = self.settings.market_data
        base_url = cfg.get('base_url')
        if is_placeholder(base_url):
            raise ConfigurationError("market_data.base_url is required (set VALUATION_API_URL)")
        return RESTMarketDataSource(
            base_url,
            api_key=None if is_placeholder(cfg.get('api_key')) else cfg.get('api_key'),
            timeout_s=self.settings.detector.request_timeout_s,
        )

    def _build_gateway(self) -> ExecutionGateway:
        trading = self.settings.trading
        if trading.paper_mode:
            logger.info("Paper mode: swaps are simulated in memory")
            return PaperExecutionGateway(
                fee_rate=trading.paper_fee_rate,
                initial_equity=trading.paper_initial_equity,
            )
        cfg = self.settings.gateway
        base_url = cfg.get('base_url')
        if is_placeholder(base_url):
            raise ConfigurationError("gateway.base_url is required when trading.paper_mode is off")
        return HttpExecutionGateway(
            base_url,
            api_key=None if is_placeholder(cfg.get('api_key')) else cfg.get('api_key'),
            timeout_s=trading.request_timeout_s,
        )

    def _build_state_store(self) -> Optional[PositionStateStore]:
        path = self.monitoring_cfg.get('position_state_file')
        if is_placeholder(path):
            return None
        interval = float(self.monitoring_cfg.get('position_state_interval_s', 30))
        return PositionStateStore(path, min_interval_s=interval)

    def _subscribe(self) -> None:
        # Crossings must never be dropped: the position subscriber applies back-pressure instead.
        self.dispatcher.subscribe(
            THRESHOLD_CROSSED,
            self.positions.on_threshold_crossed,
            name='positions',
            policy=OverflowPolicy.BLOCK,
        )
        self.dispatcher.subscribe(THRESHOLD_CROSSED, self._on_crossing_alert, name='crossing-alerts')
        self.dispatcher.subscribe(POSITION_FAILED, self._on_position_failed, name='failure-alerts')
        self.dispatcher.subscribe(RISK_ALERT, self._on_risk_alert, name='risk-alerts')
        if isinstance(self.gateway, PaperExecutionGateway):
            self.dispatcher.subscribe(STATUS_UPDATE, self._mark_paper_price, name='paper-pricing')

    async def _on_crossing_alert(self, event: Event) -> None:
        payload = event.payload
        await self.alerts.crossing_alert(
            payload['id'],
            payload['snapshot']['market_cap'],
            payload.get('symbol') or '',
        )

    async def _on_position_failed(self, event: Event) -> None:
        await self.alerts.position_failed_alert(event.payload['position'])

    async def _on_risk_alert(self, event: Event) -> None:
        payload = event.payload
        await self.alerts.risk_alert(
            payload['level'],
            payload['previous'],
            payload['drawdown_pct'],
            payload['failed_exits'],
        )

    def _mark_paper_price(self, event: Event) -> None:
        asset = self.sampler.get_asset(event.payload['id'])
        supply = (asset.total_supply if asset else None) or PAPER_REFERENCE_SUPPLY
        self.gateway.mark_price(event.payload['id'], event.payload['snapshot']['market_cap'] / supply)

    async def _monitor_tick(self) -> None:
        self.positions.start_tick()
        await self.governor.refresh()
        if self.state_store is not None:
            self.state_store.save(self.positions.list_active_positions())

    async def start(self) -> None:
        if self.running:
            return
        self.running = True
        self.started_at = time.time()

        port = self.monitoring_cfg.get('prometheus_port')
        if port:
            start_metrics_server(int(port))

        await self.dispatcher.start()
        if self.state_store is not None:
            self.positions.restore_positions(self.state_store.load())

        for asset_id in self.settings.market_data.get('assets') or []:
            try:
                await self.sampler.add_asset(str(asset_id))
            except CapacityExceeded as exc:
                logger.error("%s", exc)
                break

        self._stop_event = asyncio.Event()
        self._loops = [
            asyncio.create_task(
                run_every(self.settings.detector.sample_interval_s, self.sampler.tick,
                          'sampling', self._stop_event),
                name='sampling-loop',
            ),
            asyncio.create_task(
                run_every(self.settings.trading.monitor_interval_s, self._monitor_tick,
                          'position-monitor', self._stop_event),
                name='position-monitor-loop',
            ),
        ]
        logger.info(
            "Migration sniper started: threshold %.4f, %s assets, strategy %s, %s mode",
            self.settings.detector.threshold,
            self.sampler.asset_count,
            self.settings.trading.default_strategy,
            'paper' if self.settings.trading.paper_mode else 'live',
        )

    async def run(self) -> None:
        await self.start()

        async def _cleanup():
            await self.stop()

        await run_tasks_with_cleanup(list(self._loops), cleanup=_cleanup)

    async def stop(self) -> None:
        if not self.running:
            return
        self.running = False
        grace = self.settings.shutdown_grace_s
        if self._stop_event is not None:
            self._stop_event.set()
        await drain_or_cancel(self._loops, grace)
        self._loops = []
        await asyncio.gather(self.sampler.drain(grace), self.positions.drain(grace))
        await self.dispatcher.close(grace_s=grace)

        active = self.positions.list_active_positions()
        if self.state_store is not None:
            self.state_store.save(active, force=True)
        if active:
            logger.info("%s positions left open for the next start", len(active))

        await self.source.close()
        await self.gateway.close()
        logger.info("Migration sniper stopped")

    # Registration and queries

    async def add_asset(self, asset_id: str) -> MonitoredAsset:
        return await self.sampler.add_asset(asset_id)

    async def remove_asset(self, asset_id: str) -> bool:
        return await self.sampler.remove_asset(asset_id)

    def get_monitored_assets(self) -> List[Dict[str, Any]]:
        return self.sampler.get_assets()

    def get_threshold_statuses(self) -> Dict[str, ThresholdStatus]:
        return self.sampler.get_statuses()

    def list_active_positions(self) -> List[TradePosition]:
        return self.positions.list_active_positions()

    def list_completed_positions(self) -> List[TradePosition]:
        return self.positions.list_completed_positions()

    def list_failed_positions(self) -> List[TradePosition]:
        return self.positions.list_failed_positions()

    def get_position_stats(self) -> Dict[str, Any]:
        return self.positions.get_position_stats()

    def get_status(self) -> Dict[str, Any]:
        return {
            'running': self.running,
            'uptime_s': time.time() - self.started_at if self.running and self.started_at else 0.0,
            'paper_mode': self.settings.trading.paper_mode,
            'detector': {
                'threshold': self.settings.detector.threshold,
                'buffer': self.settings.detector.buffer,
                'monitored_assets': self.sampler.asset_count,
                'max_tokens_to_monitor': self.settings.detector.max_tokens_to_monitor,
                'migrated_assets': sorted(self.sampler.engine.detector.migrated_assets),
            },
            'positions': self.positions.get_position_stats(),
            'exposure': self.positions.exposure(),
            'risk': self.governor.status(),
            'events': self.dispatcher.stats(),
        }


async def main():
    system = MigrationSniper(config)
    try:
        await system.run()
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("System shutting down on interrupt")
        await system.stop()

if __name__ == "__main__":
    setup_logging(config.monitoring.get('log_level', 'INFO') if config.get('monitoring') else 'INFO')
    asyncio.run(main())
