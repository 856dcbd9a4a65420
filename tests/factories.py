"""Model factories and a fake browser session for tests."""

from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from src.browser.session import CartState, NavigationResult, ScanCapture
from src.db.models import ProductPage, Scan, Shop


def session_factory_for(db: AsyncSession):
    """Session factory that always hands out the test session."""

    @asynccontextmanager
    async def factory():
        yield db

    return factory


async def make_shop(db: AsyncSession, domain: str = "acme.myshopify.com", **kwargs) -> Shop:
    shop = Shop(domain=domain, name=kwargs.pop("name", "Acme"), **kwargs)
    db.add(shop)
    await db.flush()
    return shop


async def make_page(db: AsyncSession, shop: Shop, handle: str = "jacket", **kwargs) -> ProductPage:
    page = ProductPage(
        shop_id=shop.id,
        handle=handle,
        title=kwargs.pop("title", "Winter Jacket"),
        url=kwargs.pop("url", f"/products/{handle}"),
        **kwargs,
    )
    db.add(page)
    await db.flush()
    return page


async def make_scan(db: AsyncSession, page: ProductPage, **kwargs) -> Scan:
    scan = Scan(product_page_id=page.id, status=kwargs.pop("status", "running"), **kwargs)
    db.add(scan)
    await db.flush()
    return scan


class FakeBrowserSession:
    """
    Stand-in for BrowserSession.

    ``evaluations`` maps a detector script to the value ``evaluate`` returns
    for it; a list of values is consumed one call at a time.
    """

    def __init__(
        self,
        evaluations: Optional[Dict[str, Any]] = None,
        html: str = "<html><body>ok</body></html>",
        js_errors: Optional[List[Dict[str, Any]]] = None,
        console_logs: Optional[List[Dict[str, Any]]] = None,
        network_errors: Optional[List[Dict[str, Any]]] = None,
        navigation: Optional[NavigationResult] = None,
        cart_states: Optional[List[Optional[CartState]]] = None,
        click_succeeds: bool = True,
        variant_method: str = "none",
        screenshot: Optional[bytes] = b"\x89PNG fake",
    ):
        self.evaluations = dict(evaluations or {})
        self.html = html
        self.js_errors = list(js_errors or [])
        self.console_logs = list(console_logs or [])
        self.network_errors = list(network_errors or [])
        self.navigation = navigation or NavigationResult(success=True, status_code=200, load_time_ms=1200)
        self.cart_states = list(cart_states or [])
        self.click_succeeds = click_succeeds
        self.variant_method = variant_method
        self.screenshot_bytes = screenshot
        self.started = False
        self.close_calls = 0
        self.navigated_to: List[str] = []
        self.cleared_items: List[str] = []
        self.variant_selections = 0

    async def start(self) -> None:
        self.started = True

    async def close(self) -> None:
        self.close_calls += 1
        self.started = False

    async def navigate_to(self, url: str) -> NavigationResult:
        self.navigated_to.append(url)
        return self.navigation

    async def capture(self) -> ScanCapture:
        return ScanCapture(
            screenshot=self.screenshot_bytes,
            html=self.html,
            js_errors=tuple(self.js_errors),
            console_logs=tuple(self.console_logs),
            network_errors=tuple(self.network_errors),
            page_load_time_ms=self.navigation.load_time_ms,
        )

    async def evaluate(self, script: str, arg: Any = None, timeout_ms: Optional[int] = None) -> Any:
        value = self.evaluations.get(script)
        if isinstance(value, list):
            return value.pop(0) if value else None
        if isinstance(value, Exception):
            raise value
        return value

    async def content(self) -> str:
        return self.html

    async def screenshot(self, full_page: bool = False) -> Optional[bytes]:
        return self.screenshot_bytes

    def critical_network_errors(self) -> List[Dict[str, Any]]:
        return [dict(e) for e in self.network_errors]

    async def select_first_variant(self) -> str:
        self.variant_selections += 1
        return self.variant_method

    async def click_add_to_cart(self) -> bool:
        return self.click_succeeds

    async def read_cart_state(self) -> Optional[CartState]:
        return self.cart_states.pop(0) if self.cart_states else None

    async def clear_cart_item(self, key: str) -> bool:
        self.cleared_items.append(key)
        return True
