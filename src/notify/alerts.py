"""Alert dispatch for issues that pass the alert gate."""

import logging
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src import metrics
from src.db.models import Alert, Issue, ProductPage, Shop
from src.notify.alert_gate import issue_is_alertable
from src.notify.channels import WebhookChannel, build_channels

logger = logging.getLogger(__name__)


class AlertService:
    """
    Sends at most one alert per (shop, issue, channel).

    The Alert row is written before delivery so a crash mid-send cannot lead
    to a duplicate on the next scan.
    """

    def __init__(self, channels: Optional[Dict[str, WebhookChannel]] = None):
        self._channels = channels

    @property
    def channels(self) -> Dict[str, WebhookChannel]:
        if self._channels is None:
            self._channels = build_channels()
        return self._channels

    async def already_alerted(
        self, db: AsyncSession, shop: Shop, issue: Issue, channel: str
    ) -> bool:
        result = await db.execute(
            select(Alert.id).where(
                Alert.shop_id == shop.id,
                Alert.issue_id == issue.id,
                Alert.alert_type == channel,
            )
        )
        return result.first() is not None

    async def notify(
        self,
        db: AsyncSession,
        shop: Shop,
        issue: Issue,
        channel: str,
        page: Optional[ProductPage] = None,
    ) -> Optional[Alert]:
        """
        Deliver one alert on one channel.

        Args:
            db: Session owning the current transaction
            shop: Shop the issue belongs to
            issue: Issue to alert on
            channel: Channel name ("email" or "admin")
            page: Product page, loaded if not supplied

        Returns:
            The Alert record, or None if skipped (already sent or channel not configured)
        """
        sender = self.channels.get(channel)
        if sender is None or not sender.configured:
            logger.debug(f"Alert channel {channel} not configured; skipping issue {issue.id}")
            return None

        if await self.already_alerted(db, shop, issue, channel):
            logger.debug(f"Issue {issue.id} already alerted on {channel}")
            return None

        if page is None:
            page = await db.get(ProductPage, issue.product_page_id)

        alert = Alert(
            shop_id=shop.id,
            issue_id=issue.id,
            alert_type=channel,
            delivery_status="pending",
        )
        db.add(alert)
        await db.flush()

        try:
            await sender.send(shop, page, issue)
            alert.delivery_status = "sent"
            alert.sent_at = datetime.utcnow()
        except Exception as e:
            logger.error(f"Failed to deliver {channel} alert for issue {issue.id}: {e}")
            alert.delivery_status = "failed"
            alert.error_message = str(e)[:1000]

        await db.flush()
        metrics.alerts_sent_total.labels(channel=channel, status=alert.delivery_status).inc()
        return alert

    async def dispatch(
        self,
        db: AsyncSession,
        shop: Shop,
        issue: Issue,
        page: Optional[ProductPage] = None,
    ) -> List[Alert]:
        """Alert on every enabled channel if the issue passes the gate."""
        if not issue_is_alertable(issue):
            return []

        sent = []
        for channel in self.channels:
            alert = await self.notify(db, shop, issue, channel, page=page)
            if alert is not None:
                sent.append(alert)
        return sent

    async def close(self):
        if self._channels:
            for sender in self._channels.values():
                await sender.close()


alert_service = AlertService()
