"""Threshold prediction and crossing detection.

The pure functions here turn a market snapshot (plus recent history) into a
crossing probability, a distance and an ETA. ``CrossingDetector`` is the only
stateful piece: it counts consecutive qualifying ticks per asset and fires a
crossing exactly once.
"""
import logging
import time
from dataclasses import dataclass, asdict
from typing import Dict, Mapping, Optional, Sequence, Set, Tuple

import numpy as np

from config.settings import DetectorSettings
from ingest.market_data_source import MarketSnapshot, MonitoredAsset


logger = logging.getLogger(__name__)

BUFFER_PROBABILITY_FLOOR = 0.7


class InvariantViolation(Exception):
    """A state transition the engine guarantees can never happen did happen."""


@dataclass(frozen=True)
class ThresholdCrossingEvent:
    asset_id: str
    snapshot: MarketSnapshot
    confirmations: int
    crossing_time: float

    def to_dict(self) -> Dict:
        return {
            'id': self.asset_id,
            'snapshot': self.snapshot.to_dict(),
            'confirmations': self.confirmations,
            'crossingTime': self.crossing_time,
        }


@dataclass(frozen=True)
class ThresholdStatus:
    asset_id: str
    market_cap: float
    threshold: float
    distance_to_threshold: float
    crossing_probability: float
    estimated_time_to_threshold: float
    bonding_curve_progress: float
    liquidity: float
    progress_rate: float
    confidence: float
    consecutive_confirmations: int
    migrated: bool
    last_updated: float

    def to_dict(self) -> Dict:
        return asdict(self)


def distance_to_threshold(market_cap: float, threshold: float) -> float:
    return max(0.0, threshold - market_cap)


def crossing_probability(market_cap: float, bonding_curve_progress: float,
                         threshold: float, buffer: float) -> float:
    if market_cap >= threshold:
        return 1.0
    zone_start = threshold - buffer
    if buffer > 0 and market_cap >= zone_start:
        progress_in_buffer = (market_cap - zone_start) / buffer
        return BUFFER_PROBABILITY_FLOOR + progress_in_buffer * (1.0 - BUFFER_PROBABILITY_FLOOR)
    market_cap_factor = max(0.0, market_cap) / threshold
    return min(BUFFER_PROBABILITY_FLOOR, max(0.0, bonding_curve_progress * market_cap_factor))


def progress_rate(history: Sequence[MarketSnapshot]) -> float:
    """Least-squares market-cap slope per second over the history, floored at zero."""
    if len(history) < 2:
        return 0.0
    times = np.array([snap.timestamp for snap in history], dtype=float)
    caps = np.array([snap.market_cap for snap in history], dtype=float)
    times -= times[0]
    if np.ptp(times) <= 0:
        return 0.0
    slope, _ = np.polyfit(times, caps, 1)
    if not np.isfinite(slope):
        return 0.0
    return max(0.0, float(slope))


def estimate_time_to_threshold(distance: float, rate: float,
                               minimum_estimate: float, rate_floor: float) -> float:
    if distance <= 0:
        return 0.0
    return max(minimum_estimate, distance / max(rate, rate_floor))


def _relative_change(first: float, last: float) -> float:
    if first <= 0:
        return 0.0
    return float(np.clip((last - first) / first, 0.0, 1.0))


def momentum_factors(snapshot: MarketSnapshot, history: Sequence[MarketSnapshot]) -> Dict[str, float]:
    if len(history) >= 2:
        momentum = _relative_change(history[0].market_cap, history[-1].market_cap)
        liquidity_growth = _relative_change(history[0].liquidity, history[-1].liquidity)
    else:
        momentum = 0.0
        liquidity_growth = 0.0
    return {
        'bonding_curve_progress': snapshot.bonding_curve_progress,
        'price_momentum': momentum,
        'liquidity_growth': liquidity_growth,
    }


def confidence(factors: Mapping[str, float]) -> float:
    # Agreement between factors: a low spread means the signals point the same way.
    if not factors:
        return 0.0
    values = np.clip(np.array(list(factors.values()), dtype=float), 0.0, 1.0)
    return float(max(0.0, 1.0 - np.std(values)))


class CrossingDetector:
    """Edge-triggered, confirmed crossing detection with a per-process migrated set."""

    def __init__(self, threshold: float, confirmation_window: int):
        self.threshold = threshold
        self.confirmation_window = confirmation_window
        self._counts: Dict[str, int] = {}
        self._migrated: Set[str] = set()

    def is_migrated(self, asset_id: str) -> bool:
        return asset_id in self._migrated

    def mark_migrated(self, asset_id: str) -> None:
        self._migrated.add(asset_id)
        self._counts.pop(asset_id, None)

    def confirmations(self, asset_id: str) -> int:
        return self._counts.get(asset_id, 0)

    def forget(self, asset_id: str) -> None:
        # The migrated set survives removal; re-adding never re-fires.
        self._counts.pop(asset_id, None)

    def observe(self, asset_id: str, market_cap: float) -> Optional[int]:
        """Record one tick; return the confirmation count when the crossing fires."""
        if asset_id in self._migrated:
            raise InvariantViolation(f"Crossing evaluation requested for migrated asset {asset_id}")
        if market_cap < self.threshold:
            if self._counts.get(asset_id):
                logger.info(
                    "Crossing for %s regressed below threshold after %s confirmations",
                    asset_id,
                    self._counts[asset_id],
                )
            self._counts[asset_id] = 0
            return None
        count = self._counts.get(asset_id, 0) + 1
        self._counts[asset_id] = count
        if count < self.confirmation_window:
            return None
        self.mark_migrated(asset_id)
        return count

    @property
    def migrated_assets(self) -> Set[str]:
        return set(self._migrated)


class ThresholdPredictionEngine:
    def __init__(self, settings: DetectorSettings):
        self.settings = settings
        self.detector = CrossingDetector(settings.threshold, settings.confirmation_window)

    def status_for(self, asset: MonitoredAsset, snapshot: MarketSnapshot,
                   history: Sequence[MarketSnapshot]) -> ThresholdStatus:
        cfg = self.settings
        distance = distance_to_threshold(snapshot.market_cap, cfg.threshold)
        rate = progress_rate(history)
        return ThresholdStatus(
            asset_id=asset.address,
            market_cap=snapshot.market_cap,
            threshold=cfg.threshold,
            distance_to_threshold=distance,
            crossing_probability=crossing_probability(
                snapshot.market_cap, snapshot.bonding_curve_progress, cfg.threshold, cfg.buffer
            ),
            estimated_time_to_threshold=estimate_time_to_threshold(
                distance, rate, cfg.minimum_estimate_s, cfg.progress_rate_floor
            ),
            bonding_curve_progress=snapshot.bonding_curve_progress,
            liquidity=snapshot.liquidity,
            progress_rate=rate,
            confidence=confidence(momentum_factors(snapshot, history)),
            consecutive_confirmations=self.detector.confirmations(asset.address),
            migrated=asset.migrated,
            last_updated=time.time(),
        )

    def evaluate(self, asset: MonitoredAsset, snapshot: MarketSnapshot,
                 history: Sequence[MarketSnapshot]) -> Tuple[ThresholdStatus, Optional[ThresholdCrossingEvent]]:
        event = None
        if asset.migrated and not self.detector.is_migrated(asset.address):
            self.detector.mark_migrated(asset.address)

        if not self.detector.is_migrated(asset.address):
            confirmations = self.detector.observe(asset.address, snapshot.market_cap)
            if confirmations is not None:
                if asset.migrated:
                    raise InvariantViolation(f"Duplicate crossing for already migrated asset {asset.address}")
                asset.migrated = True
                event = ThresholdCrossingEvent(
                    asset_id=asset.address,
                    snapshot=snapshot,
                    confirmations=confirmations,
                    crossing_time=time.time(),
                )
                logger.info(
                    "Threshold crossing confirmed for %s (market cap %.4f after %s ticks)",
                    asset.address,
                    snapshot.market_cap,
                    confirmations,
                )

        return self.status_for(asset, snapshot, history), event
