import asyncio
import logging
import time
from typing import Optional

import aiohttp

from .market_data_source import DataUnavailable, MarketDataSource, MarketSnapshot, MonitoredAsset
from .service_rest import ServiceAPIError, ServiceRESTClient


logger = logging.getLogger(__name__)


class RESTMarketDataSource(MarketDataSource):
    """Reads snapshots from ``GET /assets/{id}/snapshot`` and metadata from ``GET /assets/{id}``.

    Expected snapshot body: ``{"marketCap": float, "liquidity": float, "progress": float}``.
    Snapshot timestamps are local monotonic arrival times.
    """

    def __init__(self, base_url: str, api_key: Optional[str] = None, timeout_s: float = 5.0):
        self._rest = ServiceRESTClient(base_url, api_key=api_key, timeout_s=timeout_s)

    async def _get(self, asset_id: str, path: str) -> dict:
        try:
            raw = await self._rest.get(path)
        except asyncio.CancelledError:
            raise
        except (ServiceAPIError, aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise DataUnavailable(asset_id, str(exc)) from exc
        if not isinstance(raw, dict):
            raise DataUnavailable(asset_id, "malformed payload")
        return raw

    async def fetch_snapshot(self, asset_id: str) -> MarketSnapshot:
        raw = await self._get(asset_id, f"/assets/{asset_id}/snapshot")
        try:
            return MarketSnapshot(
                asset_id=asset_id,
                timestamp=time.monotonic(),
                market_cap=float(raw["marketCap"]),
                liquidity=float(raw.get("liquidity", 0.0)),
                bonding_curve_progress=min(1.0, max(0.0, float(raw.get("progress", 0.0)))),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise DataUnavailable(asset_id, f"malformed snapshot payload: {exc}") from exc

    async def fetch_asset(self, asset_id: str) -> MonitoredAsset:
        raw = await self._get(asset_id, f"/assets/{asset_id}")
        supply = raw.get("totalSupply")
        try:
            asset = MonitoredAsset(
                address=asset_id,
                name=str(raw.get("name") or ''),
                symbol=str(raw.get("symbol") or ''),
                decimals=int(raw.get("decimals", 18)),
                total_supply=float(supply) if supply is not None else None,
            )
        except (TypeError, ValueError) as exc:
            raise DataUnavailable(asset_id, f"malformed asset payload: {exc}") from exc
        if raw.get("migrated"):
            asset.migrated = True
        logger.debug("Loaded metadata for %s (%s)", asset_id, asset.symbol or 'unknown')
        return asset

    async def close(self) -> None:
        await self._rest.close()
