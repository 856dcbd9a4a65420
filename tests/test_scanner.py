"""Tests for the product page scanner."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from src.browser.session import NavigationResult
from src.config import settings
from src.db.models import ProductPage, Scan, Shop
from src.detect.detectors.price_visibility import PRICE_SCRIPT
from src.worker.scanner import PASSWORD_PROTECTED_MESSAGE, TIER1_DETECTORS, ProductPageScanner
from tests.factories import FakeBrowserSession


class SlowBrowserSession(FakeBrowserSession):
    async def navigate_to(self, url):
        await asyncio.sleep(5)
        return await super().navigate_to(url)


def _models():
    shop = Shop(id=1, domain="acme.myshopify.com")
    page = ProductPage(id=2, shop_id=1, handle="jacket", url="/products/jacket")
    scan = Scan(id=3, product_page_id=2, status="running", scan_depth="quick")
    return shop, page, scan


def _storage(key="local/acme/jacket/scan_3.png"):
    storage = AsyncMock()
    storage.upload.return_value = key
    return storage


@pytest.mark.asyncio
async def test_successful_scan_fills_in_scan_record():
    shop, page, scan = _models()
    session = FakeBrowserSession(
        evaluations={PRICE_SCRIPT: {"price_found": True, "price_visible": True, "price_text": "$10.00"}},
        network_errors=[{"url": "https://acme.myshopify.com/theme.js", "resource_type": "script"}],
    )
    storage = _storage()

    outcome = await ProductPageScanner(page, shop, session=session, storage=storage).perform(scan)

    assert outcome.success is True
    assert session.navigated_to == ["https://acme.myshopify.com/products/jacket"]
    assert [r.check for r in outcome.detection_results] == [d.check_name for d in TIER1_DETECTORS]
    assert scan.status == "completed"
    assert scan.completed_at is not None
    assert scan.screenshot_key == "local/acme/jacket/scan_3.png"
    assert scan.page_load_time_ms == 1200
    assert scan.network_errors == [{"url": "https://acme.myshopify.com/theme.js", "resource_type": "script"}]
    assert len(scan.detection_results) == len(TIER1_DETECTORS)
    assert scan.detection_results[0]["check"] == "add_to_cart"
    storage.upload.assert_awaited_once()


@pytest.mark.asyncio
async def test_caller_owned_session_is_left_open():
    shop, page, scan = _models()
    session = FakeBrowserSession()

    await ProductPageScanner(page, shop, session=session, storage=_storage()).perform(scan)

    assert session.close_calls == 0
    assert session.started is True


@pytest.mark.asyncio
async def test_navigation_failure_marks_scan_failed():
    shop, page, scan = _models()
    session = FakeBrowserSession(navigation=NavigationResult(success=False, error="HTTP 404"))
    storage = _storage()

    outcome = await ProductPageScanner(page, shop, session=session, storage=storage).perform(scan)

    assert outcome.success is False
    assert outcome.detection_results == []
    assert scan.status == "failed"
    assert scan.error_message == "Navigation failed: HTTP 404"
    storage.upload.assert_not_called()


@pytest.mark.asyncio
async def test_password_protected_store_gets_actionable_message():
    shop, page, scan = _models()
    session = FakeBrowserSession(
        navigation=NavigationResult(success=False, error="password page", password_protected=True)
    )

    outcome = await ProductPageScanner(page, shop, session=session, storage=_storage()).perform(scan)

    assert outcome.error == PASSWORD_PROTECTED_MESSAGE
    assert scan.error_message == PASSWORD_PROTECTED_MESSAGE


@pytest.mark.asyncio
async def test_scan_times_out(monkeypatch):
    monkeypatch.setattr(settings, "quick_scan_timeout_seconds", 0.05)
    shop, page, scan = _models()

    outcome = await ProductPageScanner(page, shop, session=SlowBrowserSession(), storage=_storage()).perform(scan)

    assert outcome.success is False
    assert scan.status == "failed"
    assert "timed out" in scan.error_message


@pytest.mark.asyncio
async def test_screenshot_storage_failure_does_not_fail_scan():
    shop, page, scan = _models()
    storage = AsyncMock()
    storage.upload.side_effect = RuntimeError("disk full")

    outcome = await ProductPageScanner(page, shop, session=FakeBrowserSession(), storage=storage).perform(scan)

    assert outcome.success is True
    assert scan.screenshot_key is None


def test_deep_scans_get_longer_deadline():
    shop, page, _ = _models()

    quick = ProductPageScanner(page, shop, scan_depth="quick")
    deep = ProductPageScanner(page, shop, scan_depth="deep")

    assert quick.owns_browser is True
    assert deep.timeout_seconds == settings.deep_scan_timeout_seconds
    assert quick.timeout_seconds == settings.quick_scan_timeout_seconds
