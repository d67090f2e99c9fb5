import json
import logging
import time
from pathlib import Path
from typing import Callable, Iterable, List, Union

from strategy.positions import TradePosition


logger = logging.getLogger(__name__)


class PositionStateStore:
    """JSON snapshot of open positions so a restart can resume monitoring them."""

    def __init__(self, path: Union[str, Path], min_interval_s: float = 30.0,
                 clock: Callable[[], float] = time.time):
        self.path = Path(path)
        self.min_interval_s = min_interval_s
        self._clock = clock
        self.last_saved = 0.0

    def load(self) -> List[TradePosition]:
        if not self.path.exists():
            return []
        try:
            data = json.loads(self.path.read_text())
            positions = [TradePosition.from_dict(item) for item in data.get('positions', [])]
        except Exception as exc:
            logger.warning("Position state restore from %s failed: %s", self.path, exc)
            return []
        logger.info("Loaded %s persisted positions from %s", len(positions), self.path)
        return positions

    def save(self, positions: Iterable[TradePosition], force: bool = False) -> bool:
        now = self._clock()
        if not force and now - self.last_saved < self.min_interval_s:
            return False
        payload = {
            'saved_at': now,
            'positions': [p.to_dict() for p in positions if p.status.is_open],
        }
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_suffix(self.path.suffix + '.tmp')
            tmp.write_text(json.dumps(payload, indent=2))
            tmp.replace(self.path)
        except Exception as exc:
            logger.error("Position state persist to %s failed: %s", self.path, exc)
            return False
        self.last_saved = now
        return True
