import errno
import logging
from pathlib import Path
from prometheus_client import Counter, Gauge, Histogram, start_http_server
from typing import Optional

from config import config


logger = logging.getLogger(__name__)

_METRICS_SERVER_STARTED = False
_METRICS_PORT: Optional[int] = None

RISK_LEVEL_VALUES = {'LOW': 0, 'MEDIUM': 1, 'HIGH': 2, 'CRITICAL': 3}


def _get_port_scan_limit() -> int:
    try:
        return int(config.monitoring.get('prometheus_port_scan', 0))
    except Exception:
        return 0


def _get_port_file() -> Optional[Path]:
    path_value = config.monitoring.get('metrics_port_file') if config.get('monitoring') else None
    if not path_value:
        return None
    return Path(path_value)


def _write_port_file(port: int) -> None:
    port_file = _get_port_file()
    if not port_file:
        return
    try:
        port_file.parent.mkdir(parents=True, exist_ok=True)
        port_file.write_text(str(port))
    except Exception as exc:
        logger.warning("Failed to persist metrics port file %s: %s", port_file, exc)


class MetricsCollector:
    def __init__(self):
        self.samples = Counter('market_samples_total', 'Total market snapshots sampled')
        self.sample_failures = Counter('market_sample_failures_total', 'Failed sample attempts', ['reason'])
        self.sample_latency = Histogram('market_sample_latency_seconds', 'Latency of a market data read')
        self.monitored_assets = Gauge('monitored_assets', 'Assets currently monitored')
        self.market_cap = Gauge('asset_market_cap', 'Latest sampled market cap', ['asset'])
        self.crossing_probability = Gauge('asset_crossing_probability', 'Latest crossing probability', ['asset'])

        self.crossings = Counter('threshold_crossings_total', 'Confirmed threshold crossings')
        self.invariant_violations = Counter('invariant_violations_total', 'Engine invariant violations', ['kind'])

        self.positions_opened = Counter('positions_opened_total', 'Positions opened', ['strategy'])
        self.positions_closed = Counter('positions_closed_total', 'Positions closed', ['reason'])
        self.positions_failed = Counter('positions_failed_total', 'Positions moved to FAILED')
        self.positions_skipped = Counter('positions_skipped_total', 'Crossings not traded', ['reason'])
        self.buy_failures = Counter('buy_failures_total', 'Buy swaps that failed', ['reason'])
        self.sell_failures = Counter('sell_failures_total', 'Sell swaps that failed', ['reason'])
        self.partial_exits = Counter('partial_exits_total', 'Partial-sell ladder rungs executed')
        self.active_positions = Gauge('active_positions', 'Positions currently open')
        self.exposure = Gauge('total_exposure', 'Entry capital committed across open positions')
        self.swap_latency = Histogram('swap_latency_seconds', 'Swap execution latency', ['direction'])

        self.pnl_realized = Gauge('pnl_realized_total', 'Total realized PnL')
        self.equity = Gauge('account_equity', 'Current account equity')
        self.risk_level = Gauge('risk_level', 'Aggregate risk level (0=LOW .. 3=CRITICAL)')

        self.dropped_events = Counter('dropped_events_total', 'Events dropped by a full subscriber queue', ['subscriber'])
        self.queue_depth = Gauge('queue_depth', 'Subscriber queue depth', ['subscriber'])
        self.busy_skips = Counter('busy_unit_skips_total', 'Units skipped because their previous tick is still running', ['loop'])

    def record_sample(self, asset: str, market_cap: float, probability: float):
        self.samples.inc()
        self.market_cap.labels(asset=asset).set(market_cap)
        self.crossing_probability.labels(asset=asset).set(probability)

    def record_sample_latency(self, latency_seconds: float):
        self.sample_latency.observe(latency_seconds)

    def record_sample_failure(self, reason: str):
        self.sample_failures.labels(reason=reason).inc()

    def forget_asset(self, asset: str):
        for gauge in (self.market_cap, self.crossing_probability):
            try:
                gauge.remove(asset)
            except KeyError:
                pass

    def update_monitored(self, count: int):
        self.monitored_assets.set(count)

    def record_crossing(self):
        self.crossings.inc()

    def record_invariant_violation(self, kind: str):
        self.invariant_violations.labels(kind=kind).inc()

    def record_position_opened(self, strategy: str):
        self.positions_opened.labels(strategy=strategy).inc()

    def record_position_closed(self, reason: str):
        self.positions_closed.labels(reason=reason).inc()

    def record_position_failed(self):
        self.positions_failed.inc()

    def record_skipped(self, reason: str):
        self.positions_skipped.labels(reason=reason).inc()

    def record_buy_failure(self, reason: str):
        self.buy_failures.labels(reason=reason).inc()

    def record_sell_failure(self, reason: str):
        self.sell_failures.labels(reason=reason).inc()

    def record_partial_exit(self):
        self.partial_exits.inc()

    def update_positions(self, open_count: int, exposure: float):
        self.active_positions.set(open_count)
        self.exposure.set(exposure)

    def record_swap_latency(self, direction: str, latency_seconds: float):
        if latency_seconds is not None:
            self.swap_latency.labels(direction=direction).observe(latency_seconds)

    def record_pnl(self, pnl: float):
        if pnl is None:
            return
        if pnl >= 0:
            self.pnl_realized.inc(pnl)
        else:
            self.pnl_realized.dec(abs(float(pnl)))

    def update_equity(self, equity: float):
        self.equity.set(equity)

    def update_risk_level(self, level: str):
        self.risk_level.set(RISK_LEVEL_VALUES.get(level, 0))

    def record_drop(self, subscriber: str):
        self.dropped_events.labels(subscriber=subscriber).inc()

    def update_queue_depth(self, subscriber: str, depth: int):
        self.queue_depth.labels(subscriber=subscriber).set(depth)

    def record_busy_skip(self, loop: str):
        self.busy_skips.labels(loop=loop).inc()


def start_metrics_server(port: int = 9090):
    global _METRICS_SERVER_STARTED, _METRICS_PORT
    if _METRICS_SERVER_STARTED:
        return
    port_scan_limit = max(0, _get_port_scan_limit())
    last_error: Optional[OSError] = None
    for offset in range(port_scan_limit + 1):
        candidate = port + offset
        try:
            start_http_server(candidate)
        except OSError as exc:
            last_error = exc
            if exc.errno == errno.EADDRINUSE:
                logger.warning(
                    "Prometheus metrics server port %s already in use; trying next candidate",
                    candidate,
                )
                continue
            raise
        _METRICS_SERVER_STARTED = True
        _METRICS_PORT = candidate
        _write_port_file(candidate)
        logger.info("Prometheus metrics server started on port %s", candidate)
        return
    if last_error and last_error.errno == errno.EADDRINUSE:
        raise RuntimeError(
            f"Unable to bind Prometheus metrics server on ports {port}-{port + port_scan_limit}"
        ) from last_error
    if last_error:
        raise last_error

metrics = MetricsCollector()
