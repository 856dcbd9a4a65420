"""Headless browser session used by a single product page scan."""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlparse

from playwright.async_api import (
    Browser,
    BrowserContext,
    Error as PlaywrightError,
    Page,
    Playwright,
    TimeoutError as PlaywrightTimeoutError,
    async_playwright,
)

from src import metrics
from src.browser.selectors import (
    ATC_BUTTON_SELECTORS,
    BLOCKABLE_RESOURCE_TYPES,
    CRITICAL_RESOURCE_TYPES,
    JS_ERROR_NOISE_MARKERS,
    VARIANT_SELECT_SELECTORS,
    VARIANT_SWATCH_SELECTORS,
    is_blocked_url,
)
from src.config import Settings, settings
from src.errors import BrowserConfigurationError

logger = logging.getLogger(__name__)

JS_ERROR_MESSAGE_LIMIT = 1000
JS_ERROR_STACK_LIMIT = 2000
CONSOLE_TEXT_LIMIT = 500
NETWORK_URL_LIMIT = 500

LAUNCH_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--disable-extensions",
    "--disable-background-networking",
    "--mute-audio",
]

PASSWORD_PAGE_SCRIPT = """
() => {
    if (document.querySelector('form[action*="password"]')) return true;
    return (document.title || '').toLowerCase().includes('password');
}
"""

BODY_LENGTH_SCRIPT = "() => (document.body ? document.body.innerHTML.length : 0)"

READY_STATE_SCRIPT = "() => document.readyState"

SELECT_VARIANT_SCRIPT = """
(selectors) => {
    for (const selector of selectors) {
        for (const select of document.querySelectorAll(selector)) {
            if (select.disabled) continue;
            const options = Array.from(select.options).filter(
                (o) => !o.disabled && o.value && !/^(select|choose|pick)/i.test(o.textContent.trim())
            );
            if (options.length === 0) continue;
            select.value = options[0].value;
            select.dispatchEvent(new Event('input', { bubbles: true }));
            select.dispatchEvent(new Event('change', { bubbles: true }));
            return true;
        }
    }
    return false;
}
"""

SELECT_RADIO_SCRIPT = """
() => {
    const scope = document.querySelector('form[action*="/cart/add"]')
        || document.querySelector('variant-radios, variant-selects, .product-form')
        || document;
    const seen = new Set();
    let changed = false;
    for (const radio of scope.querySelectorAll('input[type="radio"]')) {
        if (radio.disabled || seen.has(radio.name)) continue;
        seen.add(radio.name);
        if (!radio.checked) {
            radio.click();
            changed = true;
        }
    }
    return changed;
}
"""

SELECT_SWATCH_SCRIPT = """
(selectors) => {
    for (const selector of selectors) {
        const swatch = document.querySelector(selector);
        if (swatch) {
            swatch.click();
            return true;
        }
    }
    return false;
}
"""

FIND_CLICKABLE_SCRIPT = """
(selectors) => {
    for (const selector of selectors) {
        for (const el of document.querySelectorAll(selector)) {
            const rect = el.getBoundingClientRect();
            const style = window.getComputedStyle(el);
            if (rect.width === 0 || rect.height === 0) continue;
            if (style.display === 'none' || style.visibility === 'hidden') continue;
            if (el.disabled || el.hasAttribute('aria-disabled')) continue;
            return selector;
        }
    }
    return null;
}
"""

READ_CART_SCRIPT = """
async () => {
    try {
        const response = await fetch('/cart.js', {
            credentials: 'same-origin',
            headers: { Accept: 'application/json' },
        });
        if (!response.ok) return null;
        const cart = await response.json();
        return {
            item_count: cart.item_count || 0,
            items: (cart.items || []).map((item) => ({
                key: item.key,
                quantity: item.quantity,
                variant_id: item.variant_id,
            })),
        };
    } catch (e) {
        return null;
    }
}
"""

CLEAR_CART_ITEM_SCRIPT = """
async (key) => {
    try {
        const response = await fetch('/cart/change.js', {
            method: 'POST',
            credentials: 'same-origin',
            headers: { 'Content-Type': 'application/json', Accept: 'application/json' },
            body: JSON.stringify({ id: key, quantity: 0 }),
        });
        return response.ok;
    } catch (e) {
        return false;
    }
}
"""


@dataclass(frozen=True)
class BrowserConfig:
    """Runtime switches for a browser session, resolved once from settings."""

    mode: str = "local"
    ws_endpoint: str = ""
    production: bool = False
    headless: bool = True
    viewport_width: int = 1280
    viewport_height: int = 800
    user_agent: str = ""
    page_timeout_ms: int = 15000
    element_timeout_ms: int = 5000
    script_timeout_ms: int = 5000
    max_navigation_retries: int = 2
    retry_backoff_seconds: float = 1.0
    partial_load_min_body_chars: int = 500
    settle_timeout_ms: int = 3000
    settle_poll_interval_ms: int = 100
    html_snapshot_max_chars: int = 500_000

    @classmethod
    def from_settings(cls, cfg: Settings = settings) -> "BrowserConfig":
        return cls(
            mode=cfg.browser_mode,
            ws_endpoint=cfg.browser_ws_endpoint,
            production=cfg.is_production,
            headless=cfg.browser_headless,
            viewport_width=cfg.viewport_width,
            viewport_height=cfg.viewport_height,
            user_agent=cfg.browser_user_agent,
            page_timeout_ms=cfg.page_timeout_ms,
            element_timeout_ms=cfg.element_timeout_ms,
            script_timeout_ms=cfg.script_timeout_ms,
            max_navigation_retries=cfg.max_navigation_retries,
            retry_backoff_seconds=cfg.navigation_retry_backoff_seconds,
            partial_load_min_body_chars=cfg.partial_load_min_body_chars,
            settle_timeout_ms=cfg.settle_timeout_ms,
            settle_poll_interval_ms=cfg.settle_poll_interval_ms,
            html_snapshot_max_chars=cfg.html_snapshot_max_chars,
        )


@dataclass(frozen=True)
class NavigationResult:
    """Outcome of navigate_to()."""

    success: bool
    status_code: Optional[int] = None
    error: Optional[str] = None
    password_protected: bool = False
    partial_load: bool = False
    load_time_ms: Optional[int] = None


@dataclass(frozen=True)
class CartState:
    """Cart contents as reported by the storefront cart endpoint."""

    item_count: int
    items: Tuple[Dict[str, Any], ...] = ()

    @property
    def last_item_key(self) -> Optional[str]:
        if not self.items:
            return None
        return self.items[-1].get("key")

    def to_dict(self) -> Dict[str, Any]:
        return {"item_count": self.item_count, "items": [dict(i) for i in self.items]}


@dataclass(frozen=True)
class CheckoutProbe:
    """Result of following the checkout redirect."""

    reachable: bool
    final_url: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class ScanCapture:
    """Everything captured from one navigation, bounded in size."""

    screenshot: Optional[bytes]
    html: str
    js_errors: Tuple[Dict[str, Any], ...] = ()
    console_logs: Tuple[Dict[str, Any], ...] = ()
    network_errors: Tuple[Dict[str, Any], ...] = ()
    page_load_time_ms: Optional[int] = None


def _now() -> str:
    return datetime.utcnow().isoformat()


class BrowserSession:
    """
    Owns one Playwright page for the duration of a scan.

    Features:
    - Local launch or remote CDP connection (production requires remote)
    - Network-idle navigation with partial-load detection and bounded retries
    - Console, page error and failed request capture
    - Bounded script evaluation
    - Purchase-funnel helpers that poll for a settled page instead of sleeping
    """

    def __init__(self, config: Optional[BrowserConfig] = None):
        self.config = config or BrowserConfig.from_settings()
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None
        self._page: Optional[Page] = None
        self._js_errors: List[Dict[str, Any]] = []
        self._console_logs: List[Dict[str, Any]] = []
        self._network_errors: List[Dict[str, Any]] = []
        self._load_time_ms: Optional[int] = None

    async def __aenter__(self) -> "BrowserSession":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    @property
    def started(self) -> bool:
        return self._page is not None

    @property
    def page(self) -> Optional[Page]:
        return self._page

    @property
    def js_errors(self) -> List[Dict[str, Any]]:
        return list(self._js_errors)

    @property
    def console_logs(self) -> List[Dict[str, Any]]:
        return list(self._console_logs)

    @property
    def network_errors(self) -> List[Dict[str, Any]]:
        return list(self._network_errors)

    @property
    def load_time_ms(self) -> Optional[int]:
        return self._load_time_ms

    def _check_connection_mode(self) -> None:
        if self.config.mode == "remote":
            if not self.config.ws_endpoint:
                raise BrowserConfigurationError("Remote browser mode requires a websocket endpoint")
            return
        if self.config.production:
            # Never spawn local Chromium processes in production
            raise BrowserConfigurationError(
                "Production requires a remote browser endpoint; local launch refused"
            )

    async def start(self) -> None:
        """Launch or connect to a browser and open a fresh page."""
        if self.started:
            return

        self._check_connection_mode()

        try:
            self._playwright = await async_playwright().start()
            if self.config.mode == "remote":
                logger.info("Connecting to remote browser")
                self._browser = await self._playwright.chromium.connect_over_cdp(
                    self.config.ws_endpoint,
                    timeout=self.config.page_timeout_ms,
                )
            else:
                logger.info("Launching local browser")
                self._browser = await self._playwright.chromium.launch(
                    headless=self.config.headless,
                    args=LAUNCH_ARGS,
                )

            self._context = await self._browser.new_context(
                viewport={
                    "width": self.config.viewport_width,
                    "height": self.config.viewport_height,
                },
                user_agent=self.config.user_agent or None,
            )
            page = await self._context.new_page()
            page.set_default_timeout(self.config.element_timeout_ms)
            page.set_default_navigation_timeout(self.config.page_timeout_ms)
            await page.route("**/*", self._route_request)
            self._attach_listeners(page)
            self._page = page
        except Exception:
            await self.close()
            raise

        metrics.active_browser_sessions.inc()

    async def close(self) -> None:
        """Release page, context, browser and driver. Safe to call repeatedly."""
        was_started = self._page is not None

        page, self._page = self._page, None
        context, self._context = self._context, None
        browser, self._browser = self._browser, None
        playwright, self._playwright = self._playwright, None

        for name, resource, closer in (
            ("page", page, lambda r: r.close()),
            ("context", context, lambda r: r.close()),
            ("browser", browser, lambda r: r.close()),
            ("playwright", playwright, lambda r: r.stop()),
        ):
            if resource is None:
                continue
            try:
                await closer(resource)
            except Exception as e:
                logger.warning(f"Error closing browser {name}: {e}")

        if was_started:
            metrics.active_browser_sessions.dec()

    # ------------------------------------------------------------------
    # Event capture
    # ------------------------------------------------------------------

    async def _route_request(self, route) -> None:
        request = route.request
        if request.resource_type in BLOCKABLE_RESOURCE_TYPES or is_blocked_url(request.url):
            await route.abort()
        else:
            await route.continue_()

    def _attach_listeners(self, page: Page) -> None:
        page.on("pageerror", self._on_page_error)
        page.on("console", self._on_console)
        page.on("requestfailed", self._on_request_failed)
        page.on("response", self._on_response)

    def _on_page_error(self, error) -> None:
        self._js_errors.append({
            "message": str(getattr(error, "message", error) or "")[:JS_ERROR_MESSAGE_LIMIT],
            "stack": str(getattr(error, "stack", "") or "")[:JS_ERROR_STACK_LIMIT],
            "timestamp": _now(),
        })

    def _on_console(self, message) -> None:
        self._console_logs.append({
            "type": message.type,
            "text": (message.text or "")[:CONSOLE_TEXT_LIMIT],
            "timestamp": _now(),
        })

    def _on_request_failed(self, request) -> None:
        self._network_errors.append({
            "url": request.url[:NETWORK_URL_LIMIT],
            "resource_type": request.resource_type,
            "failure": request.failure,
            "timestamp": _now(),
        })

    def _on_response(self, response) -> None:
        if response.status < 400:
            return
        self._network_errors.append({
            "url": response.url[:NETWORK_URL_LIMIT],
            "resource_type": response.request.resource_type,
            "status_code": response.status,
            "timestamp": _now(),
        })

    def _reset_capture(self) -> None:
        self._js_errors = []
        self._console_logs = []
        self._network_errors = []
        self._load_time_ms = None

    def critical_js_errors(self) -> List[Dict[str, Any]]:
        """JS errors minus third-party and tracking-pixel noise."""
        critical = []
        for error in self._js_errors:
            message = (error.get("message") or "").lower()
            if is_blocked_url(message):
                continue
            if any(marker in message for marker in JS_ERROR_NOISE_MARKERS):
                continue
            critical.append(dict(error))
        return critical

    def critical_network_errors(self) -> List[Dict[str, Any]]:
        """Failed first-party requests for resources that affect rendering."""
        return [
            dict(error)
            for error in self._network_errors
            if error.get("resource_type") in CRITICAL_RESOURCE_TYPES
            and not is_blocked_url(error.get("url", ""))
        ]

    # ------------------------------------------------------------------
    # Navigation
    # ------------------------------------------------------------------

    def _require_page(self) -> Page:
        if self._page is None:
            raise RuntimeError("BrowserSession is not started")
        return self._page

    async def navigate_to(self, url: str) -> NavigationResult:
        """
        Navigate to a page, waiting for network idle.

        A timed-out navigation whose DOM already holds substantial markup is
        reported as a partial success. Other failures are retried up to the
        configured budget.

        Args:
            url: Absolute page URL

        Returns:
            NavigationResult
        """
        page = self._require_page()
        self._reset_capture()
        loop = asyncio.get_running_loop()
        max_attempts = self.config.max_navigation_retries + 1
        last_error: Optional[str] = None

        for attempt in range(1, max_attempts + 1):
            started = loop.time()
            try:
                response = await page.goto(
                    url,
                    wait_until="networkidle",
                    timeout=self.config.page_timeout_ms,
                )
                self._load_time_ms = int((loop.time() - started) * 1000)
                status_code = response.status if response is not None else None

                if await self._is_password_protected():
                    logger.info(f"Password-protected storefront at {url}")
                    return NavigationResult(
                        success=False,
                        status_code=status_code,
                        error="Store is password-protected",
                        password_protected=True,
                        load_time_ms=self._load_time_ms,
                    )

                if status_code is not None and status_code >= 400:
                    return NavigationResult(
                        success=False,
                        status_code=status_code,
                        error=f"HTTP {status_code}",
                        load_time_ms=self._load_time_ms,
                    )

                return NavigationResult(
                    success=True,
                    status_code=status_code,
                    load_time_ms=self._load_time_ms,
                )

            except PlaywrightTimeoutError:
                self._load_time_ms = int((loop.time() - started) * 1000)
                last_error = f"Navigation timeout after {self.config.page_timeout_ms}ms"

                if await self._page_has_content():
                    if await self._is_password_protected():
                        return NavigationResult(
                            success=False,
                            error="Store is password-protected",
                            password_protected=True,
                            load_time_ms=self._load_time_ms,
                        )
                    logger.warning(
                        f"Navigation to {url} timed out but page has content; "
                        f"continuing with partial load"
                    )
                    return NavigationResult(
                        success=True,
                        partial_load=True,
                        load_time_ms=self._load_time_ms,
                    )

            except PlaywrightError as e:
                last_error = str(e).splitlines()[0] if str(e) else e.__class__.__name__

            if attempt < max_attempts:
                logger.info(
                    f"Navigation attempt {attempt}/{max_attempts} failed for {url}: "
                    f"{last_error}; retrying"
                )
                metrics.navigation_retries_total.inc()
                await asyncio.sleep(self.config.retry_backoff_seconds)

        logger.warning(f"Navigation failed for {url} after {max_attempts} attempts: {last_error}")
        return NavigationResult(success=False, error=last_error, load_time_ms=self._load_time_ms)

    async def _is_password_protected(self) -> bool:
        return bool(await self.evaluate(PASSWORD_PAGE_SCRIPT))

    async def _page_has_content(self) -> bool:
        length = await self.evaluate(BODY_LENGTH_SCRIPT)
        return isinstance(length, (int, float)) and length > self.config.partial_load_min_body_chars

    # ------------------------------------------------------------------
    # Page access
    # ------------------------------------------------------------------

    async def evaluate(
        self,
        script: str,
        arg: Any = None,
        timeout_ms: Optional[int] = None,
    ) -> Any:
        """
        Evaluate a script in the page.

        Returns None when the session is not started, the script throws, or
        the per-call timeout expires (the pending evaluation is cancelled).
        """
        if self._page is None:
            return None

        timeout = (timeout_ms or self.config.script_timeout_ms) / 1000
        try:
            if arg is None:
                coro = self._page.evaluate(script)
            else:
                coro = self._page.evaluate(script, arg)
            return await asyncio.wait_for(coro, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Script evaluation timed out after {timeout:g}s")
            return None
        except PlaywrightError as e:
            logger.debug(f"Script evaluation failed: {e}")
            return None

    async def click(self, selector: str) -> bool:
        """Click the first element matching selector."""
        if self._page is None:
            return False
        try:
            element = await self._page.query_selector(selector)
            if element is None:
                return False
            await element.click(timeout=self.config.element_timeout_ms)
            return True
        except (PlaywrightTimeoutError, PlaywrightError) as e:
            logger.debug(f"Click failed for {selector}: {e}")
            return False

    async def screenshot(self, full_page: bool = False) -> Optional[bytes]:
        if self._page is None:
            return None
        try:
            return await self._page.screenshot(
                type="png",
                full_page=full_page,
                timeout=self.config.element_timeout_ms,
            )
        except (PlaywrightTimeoutError, PlaywrightError) as e:
            logger.warning(f"Screenshot failed: {e}")
            return None

    async def content(self) -> str:
        if self._page is None:
            return ""
        try:
            return await self._page.content()
        except PlaywrightError as e:
            logger.warning(f"Failed to read page content: {e}")
            return ""

    async def capture(self) -> ScanCapture:
        """Snapshot the current page and everything captured since navigation."""
        screenshot = await self.screenshot()
        html = await self.content()
        return ScanCapture(
            screenshot=screenshot,
            html=html[: self.config.html_snapshot_max_chars],
            js_errors=tuple(self.js_errors),
            console_logs=tuple(self.console_logs),
            network_errors=tuple(self.network_errors),
            page_load_time_ms=self._load_time_ms,
        )

    # ------------------------------------------------------------------
    # Purchase funnel (deep scans)
    # ------------------------------------------------------------------

    async def wait_for_settle(self, timeout_ms: Optional[int] = None) -> bool:
        """
        Poll until the document reports complete, then wait for network idle.

        Returns:
            True if the page settled before the deadline
        """
        if self._page is None:
            return False

        loop = asyncio.get_running_loop()
        budget = (timeout_ms or self.config.settle_timeout_ms) / 1000
        deadline = loop.time() + budget
        interval = self.config.settle_poll_interval_ms / 1000

        while True:
            remaining = deadline - loop.time()
            state = await self.evaluate(
                READY_STATE_SCRIPT,
                timeout_ms=max(1, int(min(remaining, interval * 5) * 1000)),
            )
            if state == "complete":
                break
            if loop.time() + interval >= deadline:
                logger.debug("Page did not settle before deadline")
                return False
            await asyncio.sleep(interval)

        remaining = deadline - loop.time()
        if remaining > 0:
            try:
                await self._page.wait_for_load_state("networkidle", timeout=remaining * 1000)
            except PlaywrightTimeoutError:
                logger.debug("Network did not go idle before settle deadline")
            except PlaywrightError as e:
                logger.debug(f"Settle wait failed: {e}")
        return True

    async def select_first_variant(self) -> str:
        """
        Pick the first available variant so a disabled buy button can enable.

        Returns:
            The strategy that succeeded: "select", "radio", "swatch" or "none"
        """
        strategies = (
            ("select", SELECT_VARIANT_SCRIPT, list(VARIANT_SELECT_SELECTORS)),
            ("radio", SELECT_RADIO_SCRIPT, None),
            ("swatch", SELECT_SWATCH_SCRIPT, list(VARIANT_SWATCH_SELECTORS)),
        )
        for method, script, arg in strategies:
            if await self.evaluate(script, arg):
                await self.wait_for_settle()
                logger.debug(f"Selected first variant via {method}")
                return method
        return "none"

    async def click_add_to_cart(self) -> bool:
        """Click the first visible, enabled add-to-cart button."""
        selector = await self.evaluate(FIND_CLICKABLE_SCRIPT, list(ATC_BUTTON_SELECTORS))
        if not selector:
            return False
        if not await self.click(selector):
            return False
        await self.wait_for_settle()
        return True

    async def read_cart_state(self) -> Optional[CartState]:
        data = await self.evaluate(READ_CART_SCRIPT)
        if not isinstance(data, dict):
            return None
        return CartState(
            item_count=int(data.get("item_count") or 0),
            items=tuple(data.get("items") or ()),
        )

    async def clear_cart_item(self, key: str) -> bool:
        """Remove one cart line by key so scans leave no trace in the cart."""
        cleared = bool(await self.evaluate(CLEAR_CART_ITEM_SCRIPT, key))
        if cleared:
            await self.wait_for_settle()
        return cleared

    async def navigate_to_checkout(self) -> CheckoutProbe:
        """Follow the storefront checkout redirect and inspect where it lands."""
        page = self._require_page()
        parsed = urlparse(page.url)
        if not parsed.scheme or not parsed.netloc:
            return CheckoutProbe(reachable=False, error="No storefront origin loaded")

        checkout_url = f"{parsed.scheme}://{parsed.netloc}/checkout"
        try:
            await page.goto(
                checkout_url,
                wait_until="domcontentloaded",
                timeout=self.config.page_timeout_ms,
            )
        except (PlaywrightTimeoutError, PlaywrightError) as e:
            return CheckoutProbe(reachable=False, error=str(e).splitlines()[0] if str(e) else "error")

        await self.wait_for_settle()
        final_url = page.url
        path = urlparse(final_url).path
        reachable = ("/checkouts/" in path or path.rstrip("/").endswith("/checkout")) and not path.startswith("/cart")
        return CheckoutProbe(reachable=reachable, final_url=final_url)
