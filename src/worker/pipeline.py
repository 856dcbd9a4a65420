"""Scan pipeline: scan, detection, AI review, alerting and rescans for one page."""

import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from src.ai.issue_analyzer import IssueAnalyzer, issue_analyzer
from src.browser.session import BrowserSession
from src.config import settings
from src.db.models import Issue, ProductPage, Scan, Shop
from src.db.session import AsyncSessionLocal
from src.detect.engine import Created, DetectionEngine
from src.detect.issue_types import issue_title
from src.logging_config import get_logger
from src.notify.alerts import AlertService, alert_service
from src.storage.screenshots import ScreenshotStorage
from src.worker.page_lock import PageLockManager, page_lock_manager
from src.worker.scanner import ProductPageScanner, ScanOutcome

logger = logging.getLogger(__name__)

RescanScheduler = Callable[[int, int], Any]


@dataclass
class PipelineResult:
    """Summary of one pipeline run."""

    page_id: int
    scan_id: Optional[int] = None
    success: bool = False
    error: Optional[str] = None
    page_status: Optional[str] = None
    issue_ids: List[int] = field(default_factory=list)
    alerts_sent: int = 0
    ai_findings: int = 0
    rescan_scheduled: bool = False


def needs_rescan(issue: Issue) -> bool:
    """High severity seen once and not corroborated by AI."""
    return (
        issue.is_active
        and issue.high_severity
        and issue.occurrence_count == 1
        and issue.ai_confirmed is not True
    )


class ScanPipeline:
    """
    Runs one page scan end to end.

    Order is fixed: scan and detect, merge into issues, AI page review,
    per-issue AI review, alerts, then rescan scheduling. Everything after
    the merge is fail-open: an error logs and only that step is lost.
    Issue mutations happen under the per-page lock and are committed step
    by step.
    """

    def __init__(
        self,
        session_factory: Callable[[], Any] = AsyncSessionLocal,
        analyzer: Optional[IssueAnalyzer] = None,
        alerts: Optional[AlertService] = None,
        lock_manager: Optional[PageLockManager] = None,
        storage: Optional[ScreenshotStorage] = None,
        rescan_scheduler: Optional[RescanScheduler] = None,
    ):
        self.session_factory = session_factory
        self.analyzer = analyzer or issue_analyzer
        self.alerts = alerts or alert_service
        self.lock_manager = lock_manager or page_lock_manager
        self.storage = storage
        self.rescan_scheduler = rescan_scheduler

    async def run(
        self,
        page_id: int,
        scan_depth: str = "quick",
        session: Optional[BrowserSession] = None,
    ) -> PipelineResult:
        """
        Scan a page and process the findings.

        Args:
            page_id: ProductPage id
            scan_depth: "quick" or "deep"
            session: Browser session to reuse; left open for the caller

        Returns:
            PipelineResult
        """
        result = PipelineResult(page_id=page_id)

        async with self.session_factory() as db:
            page = await db.get(ProductPage, page_id)
            if page is None:
                result.error = "Product page not found"
                logger.warning(f"Product page {page_id} not found; skipping scan")
                return result
            shop = await db.get(Shop, page.shop_id)

            scan = Scan(
                product_page_id=page.id,
                status="running",
                scan_depth=scan_depth,
                started_at=datetime.utcnow(),
            )
            db.add(scan)
            await db.commit()
            result.scan_id = scan.id
            log = get_logger(__name__, page_id=page.id, scan_id=scan.id, scan_depth=scan_depth)

            scanner = ProductPageScanner(
                page, shop, scan_depth=scan_depth, session=session, storage=self.storage
            )
            try:
                outcome = await scanner.perform(scan)
            except Exception as e:
                log.error(f"Scan crashed: {e}", exc_info=True)
                scan.status = "failed"
                scan.completed_at = datetime.utcnow()
                scan.error_message = f"Unexpected error: {e}"
                page.status = "error"
                await db.commit()
                raise

            page.last_scanned_at = datetime.utcnow()
            if not outcome.success:
                page.status = "error"
                await db.commit()
                result.error = outcome.error
                result.page_status = page.status
                return result

            result.success = True
            async with self.lock_manager.hold(page.id):
                issues = await self._process(db, log, shop, page, scan, outcome, result)

            result.issue_ids = [i.id for i in issues]
            result.page_status = page.status

        result.rescan_scheduled = await self._schedule_rescan_if_needed(log, page_id, issues)
        return result

    async def _process(
        self,
        db: AsyncSession,
        log: logging.LoggerAdapter,
        shop: Shop,
        page: ProductPage,
        scan: Scan,
        outcome: ScanOutcome,
        result: PipelineResult,
    ) -> List[Issue]:
        engine = DetectionEngine(db, page, scan)
        report = await engine.process(
            outcome.detection_results,
            page_load_time_ms=scan.page_load_time_ms,
            js_errors=scan.js_errors,
        )
        await db.commit()
        issues = report.issues
        log.info(f"Programmatic detection touched {len(issues)} issue(s); page {report.page_status}")

        committed = list(issues)
        try:
            result.ai_findings = await self.run_ai_page_analysis(
                db, log, engine, shop, page, scan, outcome, issues
            )
            await engine.refresh_page_status()
            await db.commit()
        except Exception as e:
            log.error(f"AI page analysis step failed: {e}", exc_info=True)
            # Issues created during the step were rolled back with it
            issues[:] = committed
            result.ai_findings = 0
            await self._recover(db, page, scan, *issues)

        for issue in list(issues):
            if not issue.is_active or issue.ai_verified:
                continue
            try:
                await self.analyze_single_issue(log, shop, page, scan, issue, outcome.screenshot)
                await db.commit()
            except Exception as e:
                log.error(f"AI analysis failed for issue {issue.id}: {e}", exc_info=True)
                await self._recover(db, page, scan, *issues)

        for issue in issues:
            if not issue.should_alert():
                continue
            try:
                sent = await self.alerts.dispatch(db, shop, issue, page=page)
                await db.commit()
                result.alerts_sent += len(sent)
            except Exception as e:
                log.error(f"Alert dispatch failed for issue {issue.id}: {e}", exc_info=True)
                await self._recover(db, page, scan, *issues)

        return issues

    async def run_ai_page_analysis(
        self,
        db: AsyncSession,
        log: logging.LoggerAdapter,
        engine: DetectionEngine,
        shop: Shop,
        page: ProductPage,
        scan: Scan,
        outcome: ScanOutcome,
        issues: List[Issue],
    ) -> int:
        """
        Merge the model's page-level findings into issue state.

        A finding on a type we already track confirms that issue. A finding
        the programmatic checks missed opens a new AI-sourced issue.

        Returns:
            Number of findings applied
        """
        analysis = await self.analyzer.analyze_page(
            shop, page, outcome.detection_results, outcome.screenshot
        )
        if analysis.get("summary") is not None or analysis.get("page_healthy") is not None:
            scan.ai_page_summary = analysis.get("summary")
            scan.ai_page_healthy = analysis.get("page_healthy")

        findings = analysis.get("findings") or []
        new_count = sum(1 for f in findings if f.get("new_finding"))
        log.info(f"AI page analysis found {len(findings)} issue(s) ({new_count} new)")

        applied = 0
        for finding in findings:
            existing = await engine.find_active_issue(finding["issue_type"])
            if existing is not None:
                self._apply_ai_confirmation(existing, finding)
                if existing not in issues:
                    issues.append(existing)
                applied += 1
                log.info(f"AI confirmed programmatic finding {finding['issue_type']}")
            elif finding.get("new_finding"):
                created = await engine.upsert_issue(
                    issue_type=finding["issue_type"],
                    severity=finding["severity"],
                    description=finding.get("description") or "",
                    evidence={
                        "ai_detected": True,
                        "ai_type": finding.get("ai_type"),
                        "confidence": finding["confidence"],
                        "scan_id": scan.id,
                    },
                    title=issue_title(finding["issue_type"]),
                    detection_source="ai",
                )
                if isinstance(created, Created):
                    self._apply_ai_confirmation(created.issue, finding)
                    issues.append(created.issue)
                    applied += 1
                    log.info(f"AI detected new issue {finding['issue_type']}")

        await db.flush()
        return applied

    def _apply_ai_confirmation(self, issue: Issue, finding: Dict[str, Any]) -> None:
        issue.ai_confirmed = True
        issue.ai_confidence = finding["confidence"]
        issue.ai_reasoning = finding.get("description")
        if finding.get("merchant_explanation"):
            issue.ai_explanation = finding["merchant_explanation"]
        if finding.get("suggested_fix"):
            issue.ai_suggested_fix = finding["suggested_fix"]
        issue.ai_verified_at = datetime.utcnow()

    async def analyze_single_issue(
        self,
        log: logging.LoggerAdapter,
        shop: Shop,
        page: ProductPage,
        scan: Scan,
        issue: Issue,
        screenshot: Optional[bytes],
    ) -> bool:
        """
        Apply the per-issue AI verdict.

        Returns:
            True if anything on the issue changed
        """
        verdict = await self.analyzer.analyze_issue(issue, scan, page, shop, screenshot=screenshot)
        changed = False

        if verdict.get("merchant_explanation"):
            issue.ai_explanation = verdict["merchant_explanation"]
            changed = True
        if verdict.get("suggested_fix"):
            issue.ai_suggested_fix = verdict["suggested_fix"]
            changed = True

        evidence_confidence = float((issue.evidence or {}).get("confidence") or 0.0)
        if issue.high_severity and verdict.get("confirmed") is not None:
            issue.ai_confirmed = verdict["confirmed"]
            issue.ai_confidence = verdict.get("confidence")
            issue.ai_reasoning = verdict.get("reasoning")
            changed = True
        elif issue.high_severity and evidence_confidence >= settings.ai_auto_confirm_confidence:
            issue.ai_confirmed = True
            issue.ai_confidence = evidence_confidence
            issue.ai_reasoning = (
                f"Programmatic detection found this issue with {evidence_confidence:.2f} "
                f"confidence. AI visual confirmation was unavailable or skipped."
            )
            changed = True

        if changed:
            issue.ai_verified_at = datetime.utcnow()
            log.info(f"Applied AI review to issue {issue.id} (confirmed={issue.ai_confirmed})")
        return changed

    async def _schedule_rescan_if_needed(
        self, log: logging.LoggerAdapter, page_id: int, issues: List[Issue]
    ) -> bool:
        unconfirmed = [i for i in issues if needs_rescan(i)]
        if not unconfirmed:
            return False

        scheduler = self.rescan_scheduler
        if scheduler is None:
            from src.worker.scheduler import schedule_rescan

            scheduler = schedule_rescan

        try:
            scheduled = scheduler(page_id, settings.rescan_delay_minutes)
            if inspect.isawaitable(scheduled):
                await scheduled
        except Exception as e:
            log.error(f"Failed to schedule rescan: {e}")
            return False

        log.info(
            f"{len(unconfirmed)} unconfirmed high severity issue(s); "
            f"rescan in {settings.rescan_delay_minutes} minutes"
        )
        return True

    async def _recover(self, db: AsyncSession, *objects) -> None:
        """Roll back a failed step and reload the objects later steps use."""
        await db.rollback()
        for obj in objects:
            try:
                await db.refresh(obj)
            except Exception as e:
                logger.warning(f"Could not reload {obj!r} after rollback: {e}")


scan_pipeline = ScanPipeline()
