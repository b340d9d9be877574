"""
Quota alert dispatch

The quota manager only emits QuotaAlert events. Delivery to the log, an
optional webhook and any subscribed observers happens in background tasks so
the reservation path never waits on a notification channel.
"""
import asyncio
import inspect
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Set, Union

import httpx

from core.config import get_settings
from core.logging import get_logger

from .types import QuotaAlert

logger = get_logger("gateway.alerts", domain="gateway")

AlertObserver = Callable[[QuotaAlert], Union[None, Awaitable[None]]]


class AlertChannel(str, Enum):
    """Available alert channels"""

    LOG = "log"  # Default, always enabled
    WEBHOOK = "webhook"


class AlertLevel(str, Enum):
    """Alert severity levels"""

    WARNING = "warning"
    CRITICAL = "critical"
    HALT = "halt"  # Calls are now refused for the rest of the period


def alert_level(alert: QuotaAlert) -> AlertLevel:
    """Map a crossed threshold to an alert level"""
    if alert.threshold >= 1.0:
        return AlertLevel.HALT
    if alert.threshold >= 0.95:
        return AlertLevel.CRITICAL
    return AlertLevel.WARNING


class AlertManager:
    """Fans quota alerts out to channels and observers without blocking callers"""

    def __init__(self, webhook_url: Optional[str] = None, http_client: Optional[httpx.AsyncClient] = None):
        self.logger = logger
        self.settings = get_settings()
        self.webhook_url = webhook_url or self.settings.quota_alert_webhook
        self._http_client = http_client
        self._observers: List[AlertObserver] = []
        self._pending: Set[asyncio.Task] = set()

    def subscribe(self, observer: AlertObserver) -> None:
        """Register a callable (sync or async) that receives every alert"""
        self._observers.append(observer)

    def unsubscribe(self, observer: AlertObserver) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    def emit(self, alert: QuotaAlert) -> asyncio.Task:
        """
        Schedule delivery of an alert and return immediately

        Args:
            alert: The threshold crossing to announce

        Returns:
            The background delivery task
        """
        task = asyncio.get_running_loop().create_task(self.dispatch(alert))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def dispatch(self, alert: QuotaAlert) -> dict:
        """Deliver an alert to every configured channel and observer"""
        level = alert_level(alert)
        results = {AlertChannel.LOG.value: self._send_log_alert(alert, level)}

        if self.webhook_url:
            results[AlertChannel.WEBHOOK.value] = await self._send_webhook_alert(alert, level)

        for observer in list(self._observers):
            try:
                outcome = observer(alert)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                self.logger.error(f"Quota alert observer {observer!r} failed: {e}")

        return results

    async def drain(self) -> None:
        """Wait for in-flight deliveries, used on shutdown and in tests"""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _send_log_alert(self, alert: QuotaAlert, level: AlertLevel) -> bool:
        """Send alert to logs"""
        log_method = {
            AlertLevel.WARNING: self.logger.warning,
            AlertLevel.CRITICAL: self.logger.error,
            AlertLevel.HALT: self.logger.error,
        }.get(level, self.logger.warning)

        log_method(
            f"QUOTA ALERT [{level.value.upper()}]: account {alert.account_id} reached "
            f"{alert.percent}% of its {alert.tier.value} allowance "
            f"({alert.used}/{alert.limit} units, period {alert.period})"
        )
        return True

    async def _send_webhook_alert(self, alert: QuotaAlert, level: AlertLevel) -> bool:
        """POST the alert as JSON to the configured webhook"""
        payload = {
            "type": "quota_alert",
            "level": level.value,
            "account_id": alert.account_id,
            "tier": alert.tier.value,
            "threshold_percent": alert.percent,
            "used": alert.used,
            "limit": alert.limit,
            "period": alert.period,
            "ts": int(alert.raised_at.timestamp()),
        }

        try:
            if self._http_client is not None:
                response = await self._http_client.post(self.webhook_url, json=payload, timeout=10.0)
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.post(self.webhook_url, json=payload, timeout=10.0)
            return response.status_code < 300
        except httpx.HTTPError as e:
            self.logger.error(f"Failed to send webhook alert: {e}")
            return False
