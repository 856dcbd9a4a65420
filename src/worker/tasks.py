"""Background tasks: scheduled and on-demand product page scans."""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from src import metrics
from src.ai.llm_service import llm_service
from src.config import settings
from src.db.models import Issue, ProductPage, Scan, Shop
from src.db.session import AsyncSessionLocal
from src.notify.alerts import alert_service
from src.storage.screenshots import screenshot_storage
from src.worker.page_lock import page_lock_manager
from src.worker.pipeline import PipelineResult, ScanPipeline, scan_pipeline

logger = logging.getLogger(__name__)

PAGE_STATUSES = ("pending", "healthy", "warning", "critical", "error")


def retry_delay_seconds(attempt: int, base: Optional[float] = None) -> float:
    """Polynomial backoff: base * attempt**2 (5s, 20s, 45s...)."""
    base = settings.scan_retry_base_seconds if base is None else base
    return base * attempt ** 2


class TaskRunner:
    """
    Runner for background scan tasks.

    At most ``max_concurrent_scans`` browser sessions are open at once in
    this worker. Unexpected failures are retried with backoff; a scan that
    fails normally (navigation, timeout) is recorded and not retried.
    """

    def __init__(
        self,
        pipeline: Optional[ScanPipeline] = None,
        session_factory: Callable = AsyncSessionLocal,
    ):
        self.pipeline = pipeline or scan_pipeline
        self.session_factory = session_factory
        self._semaphore: Optional[asyncio.Semaphore] = None

    @property
    def semaphore(self) -> asyncio.Semaphore:
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(max(1, settings.max_concurrent_scans))
        return self._semaphore

    async def initialize(self):
        logger.info(
            f"Task runner initialized (max {settings.max_concurrent_scans} concurrent scans)"
        )

    async def close(self):
        """Clean up shared clients."""
        await page_lock_manager.close()
        await alert_service.close()
        await screenshot_storage.close()
        await llm_service.close()

    async def determine_scan_depth(
        self, db: AsyncSession, page: ProductPage, now: Optional[datetime] = None
    ) -> str:
        """
        Deep on first scan, while a high severity issue is open, and once a
        week; quick otherwise.
        """
        now = now or datetime.utcnow()

        scan_count = await db.scalar(
            select(func.count(Scan.id)).where(Scan.product_page_id == page.id)
        )
        if not scan_count:
            return "deep"

        open_high = await db.scalar(
            select(func.count(Issue.id)).where(
                Issue.product_page_id == page.id,
                Issue.status == "open",
                Issue.severity == "high",
            )
        )
        if open_high:
            return "deep"

        if now.weekday() == settings.weekly_deep_scan_weekday:
            return "deep"
        return "quick"

    async def scan_page(
        self,
        page_id: int,
        scan_depth: Optional[str] = None,
        attempt: int = 1,
    ) -> Optional[PipelineResult]:
        """
        Scan one product page.

        Args:
            page_id: ProductPage id
            scan_depth: Force "quick" or "deep"; chosen automatically if None
            attempt: Attempt number, for retries

        Returns:
            PipelineResult, or None if the scan was skipped or gave up
        """
        async with self.session_factory() as db:
            page = await db.get(ProductPage, page_id)
            if page is None:
                logger.warning(f"Product page {page_id} not found; discarding scan")
                return None
            shop = await db.get(Shop, page.shop_id)

            if shop is None or not shop.monitoring_enabled:
                logger.info(f"Skipping scan for page {page_id} - shop monitoring disabled")
                return None
            if not page.monitoring_enabled:
                logger.info(f"Skipping scan for page {page_id} - monitoring disabled")
                return None

            depth = scan_depth or await self.determine_scan_depth(db, page)

        logger.info(f"Starting {depth} scan for product page {page_id} (attempt {attempt})")

        try:
            async with self.semaphore:
                result = await self.pipeline.run(page_id, scan_depth=depth)
        except Exception as e:
            if attempt >= settings.scan_max_attempts:
                logger.error(
                    f"Scan for page {page_id} failed after {attempt} attempts: {e}",
                    exc_info=True,
                )
                return None
            delay = retry_delay_seconds(attempt)
            logger.warning(
                f"Scan for page {page_id} failed (attempt {attempt}): {e}; retrying in {delay:g}s"
            )
            await asyncio.sleep(delay)
            return await self.scan_page(page_id, scan_depth=scan_depth, attempt=attempt + 1)

        if result.success:
            logger.info(
                f"Scan {result.scan_id} completed for page {page_id}: "
                f"{len(result.issue_ids)} issue(s), page {result.page_status}"
            )
        else:
            logger.warning(f"Scan {result.scan_id} failed for page {page_id}: {result.error}")
        return result

    async def due_page_ids(self, now: Optional[datetime] = None) -> List[int]:
        """Monitored pages never scanned or last scanned before the interval."""
        now = now or datetime.utcnow()
        cutoff = now - timedelta(minutes=settings.scan_interval_minutes)

        async with self.session_factory() as db:
            result = await db.execute(
                select(ProductPage.id)
                .join(Shop, Shop.id == ProductPage.shop_id)
                .where(
                    Shop.monitoring_enabled.is_(True),
                    ProductPage.monitoring_enabled.is_(True),
                    or_(
                        ProductPage.last_scanned_at.is_(None),
                        ProductPage.last_scanned_at < cutoff,
                    ),
                )
                .order_by(ProductPage.last_scanned_at.is_(None).desc(), ProductPage.last_scanned_at)
            )
            return [row[0] for row in result.all()]

    async def scan_due_pages(self):
        """Scan every due page (scheduled trigger)."""
        page_ids = await self.due_page_ids()
        if not page_ids:
            logger.info("No product pages due for scanning")
            await self.update_status_metrics()
            return

        logger.info(f"Scanning {len(page_ids)} due product page(s)")
        results = await asyncio.gather(
            *(self.scan_page(page_id) for page_id in page_ids),
            return_exceptions=True,
        )
        failures = [r for r in results if isinstance(r, Exception)]
        for failure in failures:
            logger.error(f"Scheduled scan raised: {failure}")

        logger.info(
            f"Scheduled scan run finished: {len(page_ids)} page(s), {len(failures)} error(s)"
        )
        await self.update_status_metrics()

    async def update_status_metrics(self):
        try:
            async with self.session_factory() as db:
                result = await db.execute(
                    select(ProductPage.status, func.count(ProductPage.id))
                    .where(ProductPage.monitoring_enabled.is_(True))
                    .group_by(ProductPage.status)
                )
                counts = dict(result.all())
        except Exception as e:
            logger.error(f"Failed to refresh page status metrics: {e}")
            return

        for status in PAGE_STATUSES:
            metrics.pages_by_status.labels(status=status).set(counts.get(status, 0))


# Global task runner instance
task_runner = TaskRunner()
