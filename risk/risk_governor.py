import logging
import time
from collections import deque
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Awaitable, Callable, Deque, Dict, Iterable, Optional, Tuple

from api.metrics import metrics
from config.settings import RiskSettings
from orchestration.events import RISK_ALERT


logger = logging.getLogger(__name__)

Publisher = Callable[[str, Dict[str, Any]], Awaitable[Any]]


class RiskLevel(IntEnum):
    LOW = 0
    MEDIUM = 1
    HIGH = 2
    CRITICAL = 3


@dataclass(frozen=True)
class RiskDecision:
    allowed: bool
    reason: Optional[str] = None
    code: Optional[str] = None

    def __bool__(self) -> bool:
        return self.allowed


def _level_for(value: float, levels: Dict[str, float]) -> RiskLevel:
    if value >= levels['critical']:
        return RiskLevel.CRITICAL
    if value >= levels['high']:
        return RiskLevel.HIGH
    if value >= levels['medium']:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def max_drawdown(pnls: Iterable[float]) -> float:
    """Largest peak-to-trough fall of the cumulative PnL path starting at zero."""
    cumulative = 0.0
    peak = 0.0
    worst = 0.0
    for pnl in pnls:
        cumulative += pnl
        peak = max(peak, cumulative)
        worst = max(worst, peak - cumulative)
    return worst


class RiskGovernor:
    """Gates every new position and tracks an aggregate risk level.

    The level is the worse of the realized-drawdown level and the failed-exit
    level, both measured over a rolling window. CRITICAL refuses new positions
    but never touches open ones.
    """

    def __init__(self, settings: RiskSettings, publish: Optional[Publisher] = None,
                 clock: Callable[[], float] = time.time):
        self.settings = settings
        self._publish = publish
        self._clock = clock
        self._realized: Deque[Tuple[float, float]] = deque()
        self._failed_exits: Deque[float] = deque()
        self._level = RiskLevel.LOW

    @property
    def level(self) -> RiskLevel:
        return self._level

    def can_open(self, open_positions: Iterable[Any], candidate_amount: float) -> RiskDecision:
        positions = list(open_positions)
        if self._level is RiskLevel.CRITICAL:
            return RiskDecision(False, "Risk level CRITICAL", code="risk_critical")
        if len(positions) >= self.settings.max_concurrent_trades:
            return RiskDecision(
                False,
                f"Max concurrent trades reached ({len(positions)}/{self.settings.max_concurrent_trades})",
                code="max_concurrent",
            )
        exposure = sum(float(p.entry_amount) for p in positions)
        if exposure + candidate_amount > self.settings.max_total_exposure + 1e-12:
            return RiskDecision(
                False,
                f"Exposure limit exceeded ({exposure + candidate_amount:.4f} > {self.settings.max_total_exposure:.4f})",
                code="max_exposure",
            )
        return RiskDecision(True)

    async def record_realized(self, pnl_amount: float, at: Optional[float] = None) -> RiskLevel:
        self._realized.append((at if at is not None else self._clock(), float(pnl_amount)))
        return await self.refresh()

    async def record_failed_exit(self, at: Optional[float] = None) -> RiskLevel:
        self._failed_exits.append(at if at is not None else self._clock())
        return await self.refresh()

    def drawdown_pct(self) -> float:
        self._prune()
        drawdown = max_drawdown(pnl for _, pnl in self._realized)
        return drawdown / self.settings.max_total_exposure * 100.0

    def failed_exit_count(self) -> int:
        self._prune()
        return len(self._failed_exits)

    def assess(self) -> RiskLevel:
        drawdown_level = _level_for(self.drawdown_pct(), self.settings.drawdown_levels_pct)
        failed_level = _level_for(self.failed_exit_count(), self.settings.failed_exit_levels)
        return max(drawdown_level, failed_level)

    async def refresh(self) -> RiskLevel:
        """Re-evaluate the level and publish ``riskAlert`` when it changes."""
        previous = self._level
        current = self.assess()
        if current is previous:
            return current
        self._level = current
        metrics.update_risk_level(current.name)
        payload = {
            'level': current.name,
            'previous': previous.name,
            'drawdown_pct': round(self.drawdown_pct(), 4),
            'failed_exits': self.failed_exit_count(),
        }
        if current is RiskLevel.CRITICAL:
            logger.error("Critical risk detected; new positions blocked: %s", payload)
        elif current >= RiskLevel.HIGH:
            logger.warning("High risk detected: %s", payload)
        else:
            logger.info("Risk level changed %s -> %s", previous.name, current.name)
        if self._publish is not None:
            await self._publish(RISK_ALERT, payload)
        return current

    def status(self) -> Dict[str, Any]:
        return {
            'level': self._level.name,
            'drawdown_pct': self.drawdown_pct(),
            'failed_exits': self.failed_exit_count(),
            'max_concurrent_trades': self.settings.max_concurrent_trades,
            'max_total_exposure': self.settings.max_total_exposure,
        }

    def _prune(self) -> None:
        cutoff = self._clock() - self.settings.window_s
        while self._realized and self._realized[0][0] < cutoff:
            self._realized.popleft()
        while self._failed_exits and self._failed_exits[0] < cutoff:
            self._failed_exits.popleft()
