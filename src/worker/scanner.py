"""Product page scanner: browser lifecycle, capture and detector run."""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from src import metrics
from src.browser.session import BrowserSession, ScanCapture
from src.config import settings
from src.db.models import ProductPage, Scan, Shop
from src.detect.detectors.add_to_cart import AddToCartDetector
from src.detect.detectors.javascript_errors import JavaScriptErrorDetector
from src.detect.detectors.liquid_errors import LiquidErrorDetector
from src.detect.detectors.price_visibility import PriceVisibilityDetector
from src.detect.detectors.product_images import ProductImageDetector
from src.detect.result import DetectionResult
from src.errors import NavigationError, ScanTimeoutError
from src.storage.screenshots import ScreenshotStorage, screenshot_storage

logger = logging.getLogger(__name__)

# Run on every scan, in this order
TIER1_DETECTORS = (
    AddToCartDetector,
    JavaScriptErrorDetector,
    LiquidErrorDetector,
    PriceVisibilityDetector,
    ProductImageDetector,
)

PASSWORD_PROTECTED_MESSAGE = (
    "Store is password-protected. Disable password protection or allowlist the scanner."
)


@dataclass
class ScanOutcome:
    """What one scan produced."""

    scan: Scan
    success: bool
    detection_results: List[DetectionResult] = field(default_factory=list)
    screenshot: Optional[bytes] = None
    error: Optional[str] = None


class ProductPageScanner:
    """
    Runs one scan of one product page.

    The scanner fills in the Scan record it is handed but never touches the
    database session; the caller owns persistence. A browser session passed
    in by the caller is left open, one created here is always closed.
    """

    def __init__(
        self,
        page: ProductPage,
        shop: Shop,
        scan_depth: str = "quick",
        session: Optional[BrowserSession] = None,
        storage: Optional[ScreenshotStorage] = None,
    ):
        self.page = page
        self.shop = shop
        self.scan_depth = scan_depth
        self.session = session
        self.owns_browser = session is None
        self.storage = storage or screenshot_storage

    @property
    def timeout_seconds(self) -> float:
        if self.scan_depth == "deep":
            return settings.deep_scan_timeout_seconds
        return settings.quick_scan_timeout_seconds

    async def perform(self, scan: Scan) -> ScanOutcome:
        """
        Scan the page within the whole-scan deadline.

        Args:
            scan: Scan record to fill in (already persisted, status running)

        Returns:
            ScanOutcome; on failure the scan is marked failed with a message
        """
        started = time.monotonic()
        try:
            outcome = await asyncio.wait_for(self._execute(scan), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            error = ScanTimeoutError(self.timeout_seconds)
            logger.warning(f"Scan {scan.id} of page {self.page.id}: {error}")
            outcome = self._fail(scan, str(error))
        except NavigationError as e:
            message = PASSWORD_PROTECTED_MESSAGE if e.password_protected else f"Navigation failed: {e.reason}"
            logger.warning(f"Scan {scan.id} of page {self.page.id} failed: {message}")
            outcome = self._fail(scan, message)
        finally:
            await self._close_browser_if_owned()

        metrics.scans_total.labels(depth=self.scan_depth, status=scan.status).inc()
        metrics.scan_duration_seconds.labels(depth=self.scan_depth).observe(time.monotonic() - started)
        return outcome

    async def _execute(self, scan: Scan) -> ScanOutcome:
        if self.session is None:
            self.session = BrowserSession()
        if not self.session.started:
            await self.session.start()

        url = self.page.full_url(self.shop.domain)
        logger.info(f"Scanning {url} ({self.scan_depth})")
        nav = await self.session.navigate_to(url)
        if not nav.success:
            raise NavigationError(url, nav.error or "unknown error", password_protected=nav.password_protected)
        if nav.load_time_ms is not None:
            metrics.page_load_seconds.observe(nav.load_time_ms / 1000)

        capture = await self.session.capture()
        screenshot_key = await self._store_screenshot(scan, capture.screenshot)

        results = await self.run_detectors()

        self._complete(scan, capture, screenshot_key, results)
        return ScanOutcome(
            scan=scan,
            success=True,
            detection_results=results,
            screenshot=capture.screenshot,
        )

    async def run_detectors(self) -> List[DetectionResult]:
        """Run every tier-1 detector sequentially on the shared session."""
        results = []
        for detector_class in TIER1_DETECTORS:
            detector = detector_class(self.session, scan_depth=self.scan_depth)
            logger.debug(f"Running {detector_class.__name__} ({self.scan_depth})")
            results.append(await detector.perform())
        return results

    async def _store_screenshot(self, scan: Scan, screenshot: Optional[bytes]) -> Optional[str]:
        if not screenshot:
            return None
        try:
            return await self.storage.upload(screenshot, scan.id, shop=self.shop, page=self.page)
        except Exception as e:
            logger.error(f"Failed to store screenshot for scan {scan.id}: {e}")
            return None

    def _complete(
        self,
        scan: Scan,
        capture: ScanCapture,
        screenshot_key: Optional[str],
        results: List[DetectionResult],
    ) -> None:
        scan.status = "completed"
        scan.completed_at = datetime.utcnow()
        scan.screenshot_key = screenshot_key
        scan.html_snapshot = capture.html[: settings.html_snapshot_max_chars]
        scan.js_errors = [dict(e) for e in capture.js_errors]
        scan.console_logs = [dict(e) for e in capture.console_logs[: settings.console_log_max_entries]]
        scan.network_errors = self.session.critical_network_errors()
        scan.page_load_time_ms = capture.page_load_time_ms
        scan.detection_results = [r.to_dict() for r in results]

    def _fail(self, scan: Scan, message: str) -> ScanOutcome:
        scan.status = "failed"
        scan.completed_at = datetime.utcnow()
        scan.error_message = message
        return ScanOutcome(scan=scan, success=False, error=message)

    async def _close_browser_if_owned(self) -> None:
        if not self.owns_browser or self.session is None:
            return
        try:
            await self.session.close()
        except Exception as e:
            logger.warning(f"Error closing browser: {e}")
