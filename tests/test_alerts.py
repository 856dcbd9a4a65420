"""Tests for alert channels and the alert service."""

import json

import httpx
import pytest
from sqlalchemy import select

from src.db.models import Alert, Issue
from src.notify.alerts import AlertService
from src.notify.channels import AdminWebhookChannel, EmailRelayChannel
from tests.factories import make_page, make_shop


def _channel(cls, url, requests, status=200):
    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(json.loads(request.content))
        return httpx.Response(status)

    channel = cls(url)
    channel._http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return channel


async def _alertable_issue(db, **kwargs):
    shop = await make_shop(db, alert_email="owner@acme.test")
    page = await make_page(db, shop)
    issue = Issue(
        product_page_id=page.id,
        issue_type="missing_add_to_cart",
        severity=kwargs.pop("severity", "high"),
        status="open",
        title="Add to Cart button may not be working",
        description="Add-to-cart button could not be found on the page",
        evidence={"confidence": 0.9},
        occurrence_count=kwargs.pop("occurrence_count", 2),
        **kwargs,
    )
    db.add(issue)
    await db.flush()
    return shop, page, issue


async def _alerts(db):
    rows = await db.execute(select(Alert).order_by(Alert.id))
    return list(rows.scalars().all())


@pytest.mark.asyncio
async def test_dispatch_sends_once_per_channel(db_session):
    shop, page, issue = await _alertable_issue(db_session)
    email_requests, admin_requests = [], []
    service = AlertService(channels={
        "email": _channel(EmailRelayChannel, "https://mail.example.com/send", email_requests),
        "admin": _channel(AdminWebhookChannel, "https://discord.example.com/hook", admin_requests),
    })

    sent = await service.dispatch(db_session, shop, issue, page=page)

    assert [a.alert_type for a in sent] == ["email", "admin"]
    assert all(a.delivery_status == "sent" and a.sent_at is not None for a in sent)

    email = email_requests[0]
    assert email["to"] == "owner@acme.test"
    assert email["template"] == "issue_alert"
    assert email["data"]["product_url"] == "https://acme.myshopify.com/products/jacket"
    assert admin_requests[0]["embeds"][0]["footer"]["text"] == f"Issue #{issue.id} | missing_add_to_cart"

    again = await service.dispatch(db_session, shop, issue, page=page)

    assert again == []
    assert len(email_requests) == 1
    assert len(await _alerts(db_session)) == 2
    await service.close()


@pytest.mark.asyncio
async def test_failed_delivery_is_recorded_and_not_retried(db_session):
    shop, page, issue = await _alertable_issue(db_session)
    requests = []
    service = AlertService(channels={
        "admin": _channel(AdminWebhookChannel, "https://discord.example.com/hook", requests, status=500),
    })

    sent = await service.dispatch(db_session, shop, issue, page=page)

    assert sent[0].delivery_status == "failed"
    assert "500" in sent[0].error_message
    assert await service.dispatch(db_session, shop, issue, page=page) == []
    assert len(requests) == 1
    await service.close()


@pytest.mark.asyncio
async def test_unconfigured_channel_is_skipped(db_session):
    shop, page, issue = await _alertable_issue(db_session)
    service = AlertService(channels={"email": EmailRelayChannel("")})

    assert await service.dispatch(db_session, shop, issue, page=page) == []
    assert await _alerts(db_session) == []


@pytest.mark.asyncio
async def test_issue_below_gate_is_not_alerted(db_session):
    shop, page, issue = await _alertable_issue(db_session, occurrence_count=1)
    requests = []
    service = AlertService(channels={
        "admin": _channel(AdminWebhookChannel, "https://discord.example.com/hook", requests),
    })

    assert await service.dispatch(db_session, shop, issue, page=page) == []
    assert requests == []
    await service.close()


@pytest.mark.asyncio
async def test_notify_loads_page_when_not_given(db_session):
    shop, page, issue = await _alertable_issue(db_session)
    requests = []
    service = AlertService(channels={
        "email": _channel(EmailRelayChannel, "https://mail.example.com/send", requests),
    })

    alert = await service.notify(db_session, shop, issue, "email")

    assert alert.delivery_status == "sent"
    assert requests[0]["subject"] == "[HIGH] Add to Cart button may not be working: Winter Jacket"
    await service.close()
