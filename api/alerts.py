import logging
import time
from typing import Dict, Optional

import aiohttp

from config import config


logger = logging.getLogger(__name__)


class AlertWebhook:
    def __init__(self, webhook_url: Optional[str] = None):
        url = webhook_url if webhook_url is not None else config.monitoring.get('alert_webhook')
        # Empty or placeholder URLs mean alerts only go to the log
        if url and 'your-webhook-url' not in str(url):
            self.webhook_url = url
            self.enabled = True
        else:
            self.webhook_url = None
            self.enabled = False

    async def send_alert(self, alert_type: str, message: str, severity: str = 'warning',
                         metadata: Optional[Dict] = None):
        if not self.enabled:
            logger.warning("[Alert] %s: %s - %s", severity.upper(), alert_type, message)
            return

        payload = {
            'type': alert_type,
            'message': message,
            'severity': severity,
            'timestamp': time.time(),
            'metadata': metadata or {},
        }

        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    self.webhook_url,
                    json=payload,
                    headers={'Content-Type': 'application/json'},
                    timeout=aiohttp.ClientTimeout(total=5),
                ) as response:
                    if response.status >= 300:
                        logger.error("[Alert] Webhook failed with status %s", response.status)
        except Exception as e:
            logger.error("[Alert] Webhook error: %s", e)

    async def fetch_failure_alert(self, consecutive: int, error: str):
        await self.send_alert(
            'market_data',
            f'Market listing fetch failed {consecutive} times in a row: {error}',
            'critical',
            {'consecutive_failures': consecutive, 'error': error},
        )

    async def trade_closed_alert(self, trade: Dict):
        pnl = float(trade.get('pnl', 0.0))
        await self.send_alert(
            'trade_closed',
            f"{trade.get('side', '').upper()} {trade.get('instrument')} closed "
            f"({trade.get('exit_reason')}): {pnl * 100:+.2f}%",
            'info',
            trade,
        )


alert_webhook = AlertWebhook()
