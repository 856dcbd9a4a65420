"""Alert delivery channels (HTTP webhooks)."""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

import httpx

from src.config import settings
from src.db.models import Issue, ProductPage, Shop

logger = logging.getLogger(__name__)

SEVERITY_COLORS = {"high": 0xE53E3E, "medium": 0xDD6B20, "low": 0x3182CE}


def issue_payload(shop: Shop, page: ProductPage, issue: Issue) -> Dict[str, Any]:
    """Data an alert template needs; rendering is up to the receiver."""
    return {
        "shop_domain": shop.domain,
        "product_title": page.title,
        "product_url": page.full_url(shop.domain),
        "issue_id": issue.id,
        "issue_type": issue.issue_type,
        "severity": issue.severity,
        "title": issue.title,
        "description": issue.description,
        "occurrence_count": issue.occurrence_count,
        "ai_confirmed": issue.ai_confirmed,
        "ai_explanation": issue.ai_explanation,
        "ai_suggested_fix": issue.ai_suggested_fix,
        "first_detected_at": issue.first_detected_at.isoformat() if issue.first_detected_at else None,
        "dashboard_url": f"{settings.app_base_url.rstrip('/')}/issues/{issue.id}",
    }


class WebhookChannel:
    """Base class for a JSON webhook delivery channel."""

    name = ""

    def __init__(self, webhook_url: str, timeout: float = 15.0):
        self.webhook_url = webhook_url
        self.timeout = timeout
        self._http_client: Optional[httpx.AsyncClient] = None

    @property
    def configured(self) -> bool:
        return bool(self.webhook_url)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
        return self._http_client

    async def close(self):
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    def build_payload(self, shop: Shop, page: ProductPage, issue: Issue) -> Dict[str, Any]:
        raise NotImplementedError

    async def send(self, shop: Shop, page: ProductPage, issue: Issue) -> None:
        """Deliver the alert. Raises on any HTTP or transport failure."""
        client = await self._get_client()
        response = await client.post(self.webhook_url, json=self.build_payload(shop, page, issue))
        response.raise_for_status()
        logger.info(f"Sent {self.name} alert for issue {issue.id} ({issue.issue_type})")


class EmailRelayChannel(WebhookChannel):
    """Hands the merchant email to a transactional mail relay."""

    name = "email"

    def build_payload(self, shop: Shop, page: ProductPage, issue: Issue) -> Dict[str, Any]:
        return {
            "to": shop.alert_email,
            "template": "issue_alert",
            "subject": f"[{issue.severity.upper()}] {issue.title}: {page.title or page.handle}",
            "data": issue_payload(shop, page, issue),
        }


class AdminWebhookChannel(WebhookChannel):
    """Posts a Discord-style embed to the operator channel."""

    name = "admin"

    def build_payload(self, shop: Shop, page: ProductPage, issue: Issue) -> Dict[str, Any]:
        data = issue_payload(shop, page, issue)
        fields = [
            {"name": "Shop", "value": shop.domain, "inline": True},
            {"name": "Severity", "value": issue.severity, "inline": True},
            {"name": "Seen", "value": f"{issue.occurrence_count}x", "inline": True},
        ]
        if issue.ai_confirmed:
            fields.append({"name": "AI", "value": "Confirmed", "inline": True})
        if issue.description:
            fields.append({"name": "Details", "value": issue.description[:1000], "inline": False})

        embed = {
            "title": f"{issue.title}: {page.title or page.handle}",
            "url": data["product_url"],
            "color": SEVERITY_COLORS.get(issue.severity, 0x718096),
            "fields": fields,
            "footer": {"text": f"Issue #{issue.id} | {issue.issue_type}"},
            "timestamp": datetime.utcnow().isoformat(),
        }
        return {"embeds": [embed], "username": "PDP Monitor"}


def build_channels() -> Dict[str, WebhookChannel]:
    """Channels enabled in settings, keyed by alert type."""
    available = {
        "email": EmailRelayChannel(settings.email_webhook_url),
        "admin": AdminWebhookChannel(settings.admin_webhook_url),
    }
    return {name: available[name] for name in settings.alert_channels if name in available}
