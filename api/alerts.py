import logging
import time
from typing import Dict, Optional

import aiohttp

from config import config
from config.settings import is_placeholder


logger = logging.getLogger(__name__)

class AlertWebhook:
    def __init__(self, url: Optional[str] = None):
        if url is None:
            url = config.monitoring.get('alert_webhook') if config.get('monitoring') else None
        # Empty or unresolved ${ENV} URLs disable delivery
        if not is_placeholder(url):
            self.webhook_url = str(url)
            self.enabled = True
        else:
            self.webhook_url = None
            self.enabled = False

    async def send_alert(self, alert_type: str, message: str, severity: str = 'warning',
                         metadata: Dict = None):
        if not self.enabled:
            logger.warning(
                "[Alert] %s: %s - %s",
                severity.upper(),
                alert_type,
                message,
            )
            return

        payload = {
            'type': alert_type,
            'message': message,
            'severity': severity,
            'timestamp': time.time(),
            'metadata': metadata or {}
        }

        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    self.webhook_url,
                    json=payload,
                    headers={'Content-Type': 'application/json'},
                    timeout=aiohttp.ClientTimeout(total=5)
                ) as response:
                    if response.status >= 300:
                        logger.error(
                            "[Alert] Webhook failed with status %s",
                            response.status,
                        )
        except aiohttp.ClientError as e:
            logger.error("[Alert] Webhook error: %s", e)

    async def crossing_alert(self, asset_id: str, market_cap: float, symbol: str = ''):
        label = symbol or asset_id
        await self.send_alert(
            'threshold_crossed',
            f'Threshold crossed: {label} at market cap {market_cap:.4f}',
            'info',
            {'asset_id': asset_id, 'symbol': symbol, 'market_cap': market_cap}
        )

    async def position_failed_alert(self, position: Dict):
        await self.send_alert(
            'position_failed',
            f"Position {position.get('id')} on {position.get('asset_id')} failed to exit; "
            f"manual intervention required",
            'critical',
            {
                'position_id': position.get('id'),
                'asset_id': position.get('asset_id'),
                'exit_reason': position.get('exit_reason'),
                'exit_attempts': position.get('exit_attempts'),
                'last_error': position.get('last_error'),
                'token_quantity': position.get('token_quantity'),
            }
        )

    async def risk_alert(self, level: str, previous: str, drawdown_pct: float, failed_exits: int):
        severity = 'critical' if level == 'CRITICAL' else 'warning' if level == 'HIGH' else 'info'
        await self.send_alert(
            'risk_level',
            f'Risk level {previous} -> {level} (drawdown {drawdown_pct:.2f}%, failed exits {failed_exits})',
            severity,
            {'level': level, 'previous': previous, 'drawdown_pct': drawdown_pct, 'failed_exits': failed_exits}
        )

alert_webhook = AlertWebhook()
