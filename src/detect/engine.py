"""Detection engine: turns detector results into issue state changes."""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src import metrics
from src.config import settings
from src.db.models import ACTIVE_ISSUE_STATUSES, Issue, ProductPage, Scan
from src.detect.detectors.javascript_errors import is_noise
from src.detect.issue_types import (
    SEVERITY_RANK,
    issue_description,
    issue_title,
    issue_type_for_check,
    severity_for,
)
from src.detect.result import DetectionResult, DetectionStatus

logger = logging.getLogger(__name__)

VARIANT_ERROR_KEYWORDS = ("variant", "option", "swatch")


# ----------------------------------------------------------------------
# Merge outcomes
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class Created:
    issue: Issue


@dataclass(frozen=True)
class Escalated:
    issue: Issue
    previous_severity: str


@dataclass(frozen=True)
class DeEscalated:
    resolved: Issue
    issue: Issue


@dataclass(frozen=True)
class Unchanged:
    issue: Issue


@dataclass(frozen=True)
class Resolved:
    issues: tuple


@dataclass(frozen=True)
class Skipped:
    reason: str


MergeOutcome = Union[Created, Escalated, DeEscalated, Unchanged, Resolved, Skipped]


@dataclass
class EngineReport:
    """Everything the engine did for one scan."""

    outcomes: List[MergeOutcome] = field(default_factory=list)
    page_status: Optional[str] = None

    @property
    def issues(self) -> List[Issue]:
        """Active issues created or updated by this scan, in processing order."""
        touched = []
        for outcome in self.outcomes:
            if isinstance(outcome, (Created, Escalated, DeEscalated, Unchanged)):
                touched.append(outcome.issue)
        return touched


def page_status_for(issues: Iterable[Issue]) -> str:
    """Roll open and acknowledged issues up into a page health status."""
    active = [i for i in issues if i.status in ACTIVE_ISSUE_STATUSES]
    if not active:
        return "healthy"
    if any(i.severity == "high" for i in active):
        return "critical"
    return "warning"


def build_evidence(result: DetectionResult, scan_id: Optional[int]) -> Dict[str, Any]:
    return {
        "confidence": result.confidence,
        "technical_details": dict(result.technical_details),
        "suggestions": list(result.suggestions),
        "evidence": dict(result.evidence),
        "scan_id": scan_id,
    }


class DetectionEngine:
    """
    Applies the issue lifecycle to a batch of detection results.

    The caller is expected to hold the per-page lock and own the transaction;
    the engine only flushes.
    """

    def __init__(self, db: AsyncSession, page: ProductPage, scan: Optional[Scan] = None):
        self.db = db
        self.page = page
        self.scan = scan
        self.confidence_threshold = settings.confidence_threshold
        self.slow_page_threshold_ms = settings.slow_page_threshold_ms

    @property
    def scan_id(self) -> Optional[int]:
        return self.scan.id if self.scan is not None else None

    async def process(
        self,
        results: Sequence[DetectionResult],
        page_load_time_ms: Optional[int] = None,
        js_errors: Optional[Sequence[Dict[str, Any]]] = None,
    ) -> EngineReport:
        """
        Process results in declared order, then the page-level checks.

        Args:
            results: Detector outputs for this scan
            page_load_time_ms: Measured load time (slow page check)
            js_errors: Captured page errors (variant selector check)

        Returns:
            EngineReport with one outcome per result plus extra checks
        """
        report = EngineReport()

        for result in results:
            report.outcomes.append(await self.apply_result(result))

        slow = await self._check_slow_page(page_load_time_ms)
        if slow is not None:
            report.outcomes.append(slow)

        if js_errors is not None:
            report.outcomes.append(await self._check_variant_selector_errors(js_errors))

        report.page_status = await self.refresh_page_status()
        return report

    async def apply_result(self, result: DetectionResult) -> MergeOutcome:
        issue_type = issue_type_for_check(result.check)
        if issue_type is None:
            logger.warning(f"No issue type mapped for check {result.check}")
            return Skipped(reason=f"unmapped check {result.check}")

        if result.status is DetectionStatus.INCONCLUSIVE:
            logger.info(f"Check {result.check} inconclusive: {result.message}")
            return Skipped(reason="inconclusive")

        if result.status is DetectionStatus.PASS:
            return await self.resolve_type(issue_type)

        if result.confidence < self.confidence_threshold:
            logger.info(
                f"Check {result.check} {result.status.value} below confidence threshold "
                f"({result.confidence:.2f} < {self.confidence_threshold}); not recording"
            )
            return Skipped(reason="low_confidence")

        return await self.upsert_issue(
            issue_type=issue_type,
            severity=severity_for(result.check, result.status.value),
            description=result.message,
            evidence=build_evidence(result, self.scan_id),
        )

    async def find_active_issue(self, issue_type: str) -> Optional[Issue]:
        result = await self.db.execute(
            select(Issue)
            .where(
                Issue.product_page_id == self.page.id,
                Issue.issue_type == issue_type,
                Issue.status.in_(ACTIVE_ISSUE_STATUSES),
            )
            .order_by(Issue.id.desc())
        )
        return result.scalars().first()

    async def upsert_issue(
        self,
        issue_type: str,
        severity: str,
        description: str,
        evidence: Dict[str, Any],
        title: Optional[str] = None,
        detection_source: str = "programmatic",
    ) -> MergeOutcome:
        """
        Create or merge the single active issue for (page, issue_type).

        Escalation mutates the existing issue in place. De-escalation resolves
        it and opens a fresh issue at the lower severity so history is kept.
        """
        title = title or issue_title(issue_type)
        existing = await self.find_active_issue(issue_type)

        if existing is None:
            issue = await self._create_issue(
                issue_type, severity, title, description, evidence, detection_source
            )
            self._count(issue_type, "created")
            return Created(issue=issue)

        new_rank = SEVERITY_RANK[severity]
        old_rank = SEVERITY_RANK.get(existing.severity, 0)

        if new_rank > old_rank:
            previous = existing.severity
            existing.severity = severity
            existing.title = title
            existing.description = description
            existing.evidence = evidence
            existing.clear_ai_confirmation()
            existing.record_occurrence(self.scan_id)
            await self.db.flush()
            logger.info(
                f"Escalated issue {existing.id} ({issue_type}) {previous} -> {severity} "
                f"on page {self.page.id}"
            )
            self._count(issue_type, "escalated")
            return Escalated(issue=existing, previous_severity=previous)

        if new_rank < old_rank:
            existing.resolve()
            await self.db.flush()
            issue = await self._create_issue(
                issue_type, severity, title, description, evidence, detection_source
            )
            logger.info(
                f"De-escalated {issue_type} on page {self.page.id}: resolved issue "
                f"{existing.id} ({existing.severity}), opened {issue.id} ({severity})"
            )
            self._count(issue_type, "de_escalated")
            return DeEscalated(resolved=existing, issue=issue)

        existing.description = description
        existing.evidence = evidence
        existing.record_occurrence(self.scan_id)
        await self.db.flush()
        self._count(issue_type, "unchanged")
        return Unchanged(issue=existing)

    async def resolve_type(self, issue_type: str) -> MergeOutcome:
        """Resolve every open or acknowledged issue of this type."""
        result = await self.db.execute(
            select(Issue).where(
                Issue.product_page_id == self.page.id,
                Issue.issue_type == issue_type,
                Issue.status.in_(ACTIVE_ISSUE_STATUSES),
            )
        )
        issues = list(result.scalars().all())
        if not issues:
            return Skipped(reason="nothing_to_resolve")

        for issue in issues:
            issue.resolve()
            logger.info(f"Resolved issue {issue.id} ({issue_type}) on page {self.page.id}")
        await self.db.flush()
        self._count(issue_type, "resolved")
        return Resolved(issues=tuple(issues))

    async def _create_issue(
        self,
        issue_type: str,
        severity: str,
        title: str,
        description: str,
        evidence: Dict[str, Any],
        detection_source: str,
    ) -> Issue:
        now = datetime.utcnow()
        issue = Issue(
            product_page_id=self.page.id,
            scan_id=self.scan_id,
            issue_type=issue_type,
            severity=severity,
            status="open",
            title=title,
            description=description or issue_description(issue_type),
            evidence=evidence,
            occurrence_count=1,
            first_detected_at=now,
            last_detected_at=now,
            detection_source=detection_source,
        )
        self.db.add(issue)
        await self.db.flush()
        logger.info(
            f"Created issue {issue.id} ({issue_type}, {severity}) on page {self.page.id}"
        )
        return issue

    async def _check_slow_page(self, load_time_ms: Optional[int]) -> Optional[MergeOutcome]:
        if load_time_ms is None:
            return None
        if load_time_ms <= self.slow_page_threshold_ms:
            return await self.resolve_type("slow_page_load")

        seconds = load_time_ms / 1000
        return await self.upsert_issue(
            issue_type="slow_page_load",
            severity="low",
            description=f"Page took {seconds:.1f}s to load (threshold {self.slow_page_threshold_ms / 1000:.1f}s)",
            evidence={
                "confidence": 1.0,
                "technical_details": {
                    "load_time_ms": load_time_ms,
                    "threshold_ms": self.slow_page_threshold_ms,
                },
                "suggestions": [
                    "Compress large images and enable lazy loading",
                    "Remove unused apps that inject scripts on product pages",
                ],
                "evidence": {"load_time_ms": load_time_ms},
                "scan_id": self.scan_id,
            },
        )

    async def _check_variant_selector_errors(
        self, js_errors: Sequence[Dict[str, Any]]
    ) -> MergeOutcome:
        messages = [str(e.get("message") or "") for e in js_errors]
        variant_errors = [
            m for m in messages
            if not is_noise(m) and any(k in m.lower() for k in VARIANT_ERROR_KEYWORDS)
        ]
        if not variant_errors:
            return await self.resolve_type("variant_selector_error")

        return await self.upsert_issue(
            issue_type="variant_selector_error",
            severity="high",
            description=f"{len(variant_errors)} JavaScript error(s) mention the variant picker",
            evidence={
                "confidence": 0.8,
                "technical_details": {"errors": variant_errors[:5]},
                "suggestions": [
                    "Test selecting each option on the product page",
                    "Check theme or app scripts that control the variant picker",
                ],
                "evidence": {"error_count": len(variant_errors)},
                "scan_id": self.scan_id,
            },
        )

    async def refresh_page_status(self) -> str:
        result = await self.db.execute(
            select(Issue).where(
                Issue.product_page_id == self.page.id,
                Issue.status.in_(ACTIVE_ISSUE_STATUSES),
            )
        )
        status = page_status_for(result.scalars().all())
        self.page.status = status
        await self.db.flush()
        return status

    def _count(self, issue_type: str, outcome: str) -> None:
        metrics.issue_transitions_total.labels(issue_type=issue_type, outcome=outcome).inc()
