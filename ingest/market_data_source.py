from abc import ABC, abstractmethod
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, Optional


class DataUnavailable(Exception):
    """Transient failure reading market state for one asset."""

    def __init__(self, asset_id: str, reason: str = ''):
        self.asset_id = asset_id
        self.reason = reason
        super().__init__(f"Market data unavailable for {asset_id}: {reason}" if reason else
                         f"Market data unavailable for {asset_id}")


@dataclass
class MonitoredAsset:
    address: str
    name: str = ''
    symbol: str = ''
    decimals: int = 18
    total_supply: Optional[float] = None
    _migrated: bool = field(default=False, repr=False)

    @property
    def migrated(self) -> bool:
        return self._migrated

    @migrated.setter
    def migrated(self, value: bool) -> None:
        if self._migrated and not value:
            raise ValueError(f"Asset {self.address} is already migrated and cannot be reverted")
        self._migrated = bool(value)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'address': self.address,
            'name': self.name,
            'symbol': self.symbol,
            'decimals': self.decimals,
            'total_supply': self.total_supply,
            'migrated': self._migrated,
        }


@dataclass(frozen=True)
class MarketSnapshot:
    asset_id: str
    timestamp: float
    market_cap: float
    liquidity: float
    bonding_curve_progress: float

    def __post_init__(self):
        if not 0.0 <= self.bonding_curve_progress <= 1.0:
            raise ValueError(
                f"bonding_curve_progress must be within [0, 1], got {self.bonding_curve_progress}"
            )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class MarketDataSource(ABC):
    """Point-in-time valuation for monitored assets.

    The valuation model (bonding curve maths, pair discovery, reserves) is
    integrator supplied. Implementations raise ``DataUnavailable`` for any
    read failure; the sampler handles retries.
    """

    @abstractmethod
    async def fetch_snapshot(self, asset_id: str) -> MarketSnapshot:
        ...

    async def fetch_asset(self, asset_id: str) -> MonitoredAsset:
        return MonitoredAsset(address=asset_id)

    async def close(self) -> None:
        return None
