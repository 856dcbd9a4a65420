"""Tests for browser session lifecycle and capture filtering."""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from src.browser.session import (
    BODY_LENGTH_SCRIPT,
    PASSWORD_PAGE_SCRIPT,
    READY_STATE_SCRIPT,
    SELECT_RADIO_SCRIPT,
    SELECT_SWATCH_SCRIPT,
    SELECT_VARIANT_SCRIPT,
    BrowserConfig,
    BrowserSession,
    CartState,
)
from src.config import Settings
from src.errors import BrowserConfigurationError


@pytest.mark.asyncio
async def test_close_without_start_is_safe():
    session = BrowserSession(BrowserConfig())

    await session.close()
    await session.close()

    assert session.started is False


@pytest.mark.asyncio
async def test_production_refuses_local_launch():
    session = BrowserSession(BrowserConfig(mode="local", production=True))

    with pytest.raises(BrowserConfigurationError):
        await session.start()
    assert session.started is False


@pytest.mark.asyncio
async def test_remote_mode_requires_endpoint():
    session = BrowserSession(BrowserConfig(mode="remote", ws_endpoint=""))

    with pytest.raises(BrowserConfigurationError):
        await session.start()


def test_settings_reject_remote_mode_without_endpoint():
    with pytest.raises(ValueError):
        Settings(browser_mode="remote", browser_ws_endpoint="")


def test_config_from_settings():
    cfg = Settings(browser_mode="remote", browser_ws_endpoint="ws://browser:3000", environment="production")

    config = BrowserConfig.from_settings(cfg)

    assert config.mode == "remote"
    assert config.ws_endpoint == "ws://browser:3000"
    assert config.production is True


def test_critical_js_errors_drop_tracking_noise():
    session = BrowserSession(BrowserConfig())
    session._on_page_error(SimpleNamespace(message="Uncaught TypeError: cart is undefined", stack="at theme.js"))
    session._on_page_error(SimpleNamespace(message="analytics beacon failed", stack=""))
    session._on_page_error(SimpleNamespace(message="tracking pixel blocked", stack=""))

    assert len(session.js_errors) == 3
    critical = session.critical_js_errors()
    assert [e["message"] for e in critical] == ["Uncaught TypeError: cart is undefined"]


def test_critical_network_errors_keep_first_party_render_resources():
    session = BrowserSession(BrowserConfig())
    session._on_request_failed(SimpleNamespace(
        url="https://acme.myshopify.com/cdn/theme.js", resource_type="script", failure="net::ERR_FAILED",
    ))
    session._on_request_failed(SimpleNamespace(
        url="https://www.google-analytics.com/collect", resource_type="xhr", failure="net::ERR_ABORTED",
    ))
    session._on_request_failed(SimpleNamespace(
        url="https://acme.myshopify.com/fonts/a.woff2", resource_type="font", failure="net::ERR_FAILED",
    ))
    session._on_response(SimpleNamespace(
        url="https://acme.myshopify.com/products/jacket.js", status=500,
        request=SimpleNamespace(resource_type="fetch"),
    ))
    session._on_response(SimpleNamespace(
        url="https://acme.myshopify.com/ok.css", status=200,
        request=SimpleNamespace(resource_type="stylesheet"),
    ))

    critical = session.critical_network_errors()

    assert [e["url"] for e in critical] == [
        "https://acme.myshopify.com/cdn/theme.js",
        "https://acme.myshopify.com/products/jacket.js",
    ]
    assert critical[1]["status_code"] == 500


def test_console_capture_records_type_and_text():
    session = BrowserSession(BrowserConfig())
    session._on_console(SimpleNamespace(type="error", text="Failed to fetch variant"))

    assert session.console_logs[0]["type"] == "error"
    assert session.console_logs[0]["text"] == "Failed to fetch variant"


def test_cart_state_last_item_key():
    assert CartState(item_count=0).last_item_key is None
    state = CartState(item_count=2, items=({"key": "a"}, {"key": "b"}))
    assert state.last_item_key == "b"
    assert state.to_dict()["item_count"] == 2


class RedirectingPage:
    def __init__(self, url, redirect_to):
        self.url = url
        self.redirect_to = redirect_to
        self.visited = []

    async def goto(self, url, **kwargs):
        self.visited.append(url)
        self.url = self.redirect_to


@pytest.mark.asyncio
async def test_checkout_probe_follows_redirect(monkeypatch):
    session = BrowserSession(BrowserConfig())
    page = RedirectingPage(
        "https://acme.myshopify.com/products/jacket",
        "https://acme.myshopify.com/checkouts/cn/abc123",
    )
    session._page = page
    monkeypatch.setattr(session, "wait_for_settle", AsyncMock(return_value=True))

    probe = await session.navigate_to_checkout()

    assert page.visited == ["https://acme.myshopify.com/checkout"]
    assert probe.reachable is True
    assert probe.final_url.endswith("/checkouts/cn/abc123")


@pytest.mark.asyncio
async def test_checkout_probe_bounced_to_cart_is_unreachable(monkeypatch):
    session = BrowserSession(BrowserConfig())
    session._page = RedirectingPage(
        "https://acme.myshopify.com/products/jacket",
        "https://acme.myshopify.com/cart",
    )
    monkeypatch.setattr(session, "wait_for_settle", AsyncMock(return_value=True))

    probe = await session.navigate_to_checkout()

    assert probe.reachable is False


@pytest.mark.asyncio
async def test_checkout_probe_needs_loaded_origin():
    session = BrowserSession(BrowserConfig())
    session._page = RedirectingPage("about:blank", "about:blank")

    probe = await session.navigate_to_checkout()

    assert probe.reachable is False
    assert probe.error == "No storefront origin loaded"


class ScriptedPage:
    """Playwright page stand-in driven by queued goto outcomes and script replies."""

    def __init__(self, goto_outcomes=(), scripts=None):
        self.url = "about:blank"
        self.goto_outcomes = list(goto_outcomes)
        self.scripts = dict(scripts or {})
        self.goto_calls = 0
        self.evaluated = []
        self.load_state_waits = []

    async def goto(self, url, **kwargs):
        self.goto_calls += 1
        outcome = self.goto_outcomes.pop(0) if len(self.goto_outcomes) > 1 else self.goto_outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        self.url = url
        return outcome

    async def evaluate(self, script, arg=None):
        self.evaluated.append(script)
        value = self.scripts.get(script)
        if isinstance(value, list):
            return value.pop(0) if len(value) > 1 else value[0]
        return value

    async def wait_for_load_state(self, state, timeout=None):
        self.load_state_waits.append(state)


def _session_on(page, **overrides):
    config = BrowserConfig(retry_backoff_seconds=0, settle_timeout_ms=300, settle_poll_interval_ms=10, **overrides)
    session = BrowserSession(config)
    session._page = page
    return session


PRODUCT_URL = "https://acme.myshopify.com/products/jacket"


@pytest.mark.asyncio
async def test_navigation_success_reports_status_and_load_time():
    page = ScriptedPage([SimpleNamespace(status=200)], {PASSWORD_PAGE_SCRIPT: False})

    result = await _session_on(page).navigate_to(PRODUCT_URL)

    assert result.success is True
    assert result.status_code == 200
    assert result.partial_load is False
    assert result.load_time_ms is not None
    assert page.goto_calls == 1


@pytest.mark.asyncio
async def test_navigation_timeout_with_content_is_partial_success():
    page = ScriptedPage(
        [PlaywrightTimeoutError("Timeout 15000ms exceeded")],
        {BODY_LENGTH_SCRIPT: 12000, PASSWORD_PAGE_SCRIPT: False},
    )

    result = await _session_on(page).navigate_to(PRODUCT_URL)

    assert result.success is True
    assert result.partial_load is True
    assert page.goto_calls == 1


@pytest.mark.asyncio
async def test_navigation_timeout_without_content_retries_then_fails():
    page = ScriptedPage(
        [PlaywrightTimeoutError("Timeout 15000ms exceeded")],
        {BODY_LENGTH_SCRIPT: 40},
    )

    result = await _session_on(page, max_navigation_retries=2).navigate_to(PRODUCT_URL)

    assert result.success is False
    assert result.partial_load is False
    assert result.error.startswith("Navigation timeout")
    assert page.goto_calls == 3


@pytest.mark.asyncio
async def test_navigation_recovers_on_retry():
    page = ScriptedPage(
        [PlaywrightError("net::ERR_CONNECTION_RESET"), SimpleNamespace(status=200)],
        {PASSWORD_PAGE_SCRIPT: False},
    )

    result = await _session_on(page).navigate_to(PRODUCT_URL)

    assert result.success is True
    assert page.goto_calls == 2


@pytest.mark.asyncio
async def test_password_page_is_its_own_failure():
    page = ScriptedPage([SimpleNamespace(status=200)], {PASSWORD_PAGE_SCRIPT: True})

    result = await _session_on(page).navigate_to(PRODUCT_URL)

    assert result.success is False
    assert result.password_protected is True
    assert result.error == "Store is password-protected"
    assert page.goto_calls == 1


@pytest.mark.asyncio
async def test_password_page_detected_after_timeout():
    page = ScriptedPage(
        [PlaywrightTimeoutError("Timeout 15000ms exceeded")],
        {BODY_LENGTH_SCRIPT: 9000, PASSWORD_PAGE_SCRIPT: True},
    )

    result = await _session_on(page).navigate_to(PRODUCT_URL)

    assert result.success is False
    assert result.password_protected is True
    assert result.partial_load is False


@pytest.mark.asyncio
async def test_http_error_status_fails_without_retry():
    page = ScriptedPage([SimpleNamespace(status=404)], {PASSWORD_PAGE_SCRIPT: False})

    result = await _session_on(page).navigate_to(PRODUCT_URL)

    assert result.success is False
    assert result.status_code == 404
    assert result.error == "HTTP 404"
    assert page.goto_calls == 1


@pytest.mark.asyncio
async def test_settle_polls_until_document_complete():
    page = ScriptedPage(scripts={READY_STATE_SCRIPT: ["loading", "interactive", "complete"]})

    settled = await _session_on(page).wait_for_settle()

    assert settled is True
    assert page.evaluated.count(READY_STATE_SCRIPT) == 3
    assert page.load_state_waits == ["networkidle"]


@pytest.mark.asyncio
async def test_settle_gives_up_at_deadline():
    page = ScriptedPage(scripts={READY_STATE_SCRIPT: ["loading"]})
    session = _session_on(page)
    loop = asyncio.get_running_loop()
    started = loop.time()

    settled = await session.wait_for_settle(timeout_ms=100)

    assert settled is False
    assert loop.time() - started < 1.0
    assert page.evaluated.count(READY_STATE_SCRIPT) > 1
    assert page.load_state_waits == []


@pytest.mark.asyncio
@pytest.mark.parametrize("available, expected", [
    ({SELECT_VARIANT_SCRIPT: True, SELECT_RADIO_SCRIPT: True, SELECT_SWATCH_SCRIPT: True}, "select"),
    ({SELECT_VARIANT_SCRIPT: False, SELECT_RADIO_SCRIPT: True, SELECT_SWATCH_SCRIPT: True}, "radio"),
    ({SELECT_VARIANT_SCRIPT: False, SELECT_RADIO_SCRIPT: False, SELECT_SWATCH_SCRIPT: True}, "swatch"),
    ({SELECT_VARIANT_SCRIPT: False, SELECT_RADIO_SCRIPT: False, SELECT_SWATCH_SCRIPT: False}, "none"),
])
async def test_variant_selection_priority(available, expected):
    page = ScriptedPage(scripts={**available, READY_STATE_SCRIPT: "complete"})

    method = await _session_on(page).select_first_variant()

    assert method == expected
    tried = [s for s in page.evaluated if s != READY_STATE_SCRIPT]
    order = [SELECT_VARIANT_SCRIPT, SELECT_RADIO_SCRIPT, SELECT_SWATCH_SCRIPT]
    assert tried == order[: len(tried)]
    if expected != "none":
        assert tried[-1] == order[["select", "radio", "swatch"].index(expected)]
