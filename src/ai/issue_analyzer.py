"""AI second opinion on scanned pages and detected issues.

Every public method is fail-open: when the model is unavailable, slow, or
returns something unparseable, the caller gets a skip result carrying a
``reason`` and programmatic detection carries on unaffected.
"""

import logging
import math
from typing import Any, Dict, List, Optional, Sequence

from src import metrics
from src.ai.llm_service import LLMService, llm_service
from src.ai.prompts import IssueConfirmationPrompt, IssueExplanationPrompt, PageAnalysisPrompt
from src.config import settings
from src.db.models import Issue, ProductPage, Scan, Shop
from src.detect.issue_types import issue_type_for_check
from src.detect.result import DetectionResult, DetectionStatus
from src.storage.screenshots import ScreenshotStorage, screenshot_storage

logger = logging.getLogger(__name__)

# Model vocabulary -> our issue types
AI_ISSUE_TYPE_MAP = {
    "missing_atc": "missing_add_to_cart",
    "atc_not_functional": "atc_not_functional",
    "missing_price": "missing_price",
    "wrong_price": "missing_price",
    "broken_images": "missing_images",
    "missing_images": "missing_images",
    "checkout_broken": "checkout_broken",
    "variant_broken": "variant_selection_broken",
    "layout_broken": "js_error",
    "error_message": "js_error",
}

VALID_SEVERITIES = ("high", "medium", "low")


def skip_page_result(reason: str) -> Dict[str, Any]:
    logger.info(f"AI page analysis skipped: {reason}")
    return {"findings": [], "page_healthy": None, "summary": None, "reason": reason}


def skip_issue_result(reason: str) -> Dict[str, Any]:
    logger.info(f"AI issue analysis skipped: {reason}")
    return {
        "confirmed": None,
        "confidence": None,
        "reasoning": None,
        "merchant_explanation": None,
        "suggested_fix": None,
        "reason": reason,
    }


def _as_float(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _as_text(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


def _as_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.lower() in ("true", "false"):
        return value.lower() == "true"
    return None


class IssueAnalyzer:
    """
    Vision-model review in two modes.

    Page mode sends the screenshot and a summary of the programmatic checks,
    and returns every issue the model can see. Issue mode explains one issue
    to the merchant, and for high severity with a screenshot also asks the
    model to confirm it.
    """

    def __init__(
        self,
        llm: Optional[LLMService] = None,
        storage: Optional[ScreenshotStorage] = None,
    ):
        self.llm = llm or llm_service
        self.storage = storage or screenshot_storage
        self.min_finding_confidence = settings.ai_min_finding_confidence

    async def analyze_page(
        self,
        shop: Shop,
        page: ProductPage,
        results: Sequence[DetectionResult],
        screenshot: Optional[bytes],
    ) -> Dict[str, Any]:
        """
        Ask the model for every purchase-blocking issue visible on the page.

        Args:
            shop: Shop being scanned
            page: Product page being scanned
            results: Programmatic detection results for this scan
            screenshot: PNG bytes of the page

        Returns:
            Dict with findings, page_healthy, summary and (on skip) reason
        """
        if not self.llm.available:
            return self._skip_page("AI not configured", "unavailable")
        if not screenshot:
            return self._skip_page("No screenshot", "skipped")

        prompt = PageAnalysisPrompt(
            shop_domain=shop.domain,
            product_title=page.title,
            check_summaries=[f"{r.check}: {r.status.value} - {r.message}" for r in results],
        ).to_prompt()

        try:
            parsed = await self.llm.call_json(prompt, image_png=screenshot)
        except ValueError as e:
            return self._skip_page(f"Failed to parse AI response: {e}", "malformed")
        except Exception as e:
            logger.error(f"AI page analysis failed for page {page.id}: {e}")
            return self._skip_page(f"AI page analysis failed: {e}", "error")

        raw_issues = parsed.get("issues") or []
        try:
            findings = self.parse_findings(raw_issues, results)
        except Exception as e:
            logger.warning(f"Unusable AI findings for page {page.id}: {e}")
            return self._skip_page(f"Failed to parse AI findings: {e}", "malformed")

        metrics.ai_requests_total.labels(kind="page", outcome="ok").inc()
        return {
            "findings": findings,
            "page_healthy": _as_bool(parsed.get("page_healthy")),
            "summary": _as_text(parsed.get("summary")),
            "raw_issues_count": len(raw_issues) if isinstance(raw_issues, list) else 0,
        }

    def parse_findings(
        self, raw_issues: Any, results: Sequence[DetectionResult]
    ) -> List[Dict[str, Any]]:
        """Map model issues onto our types and drop unknown or low-confidence ones."""
        if not isinstance(raw_issues, list):
            return []

        programmatic_types = {
            issue_type_for_check(r.check)
            for r in results
            if r.status is DetectionStatus.FAIL
        }

        findings = []
        for raw in raw_issues:
            if not isinstance(raw, dict):
                continue
            ai_type = raw.get("type")
            if not isinstance(ai_type, str):
                continue
            issue_type = AI_ISSUE_TYPE_MAP.get(ai_type)
            if issue_type is None:
                continue
            confidence = _as_float(raw.get("confidence"))
            if confidence is None or confidence < self.min_finding_confidence:
                continue

            severity = raw.get("severity")
            findings.append({
                "issue_type": issue_type,
                "ai_type": ai_type,
                "severity": severity if isinstance(severity, str) and severity in VALID_SEVERITIES else "medium",
                "confidence": min(confidence, 1.0),
                "description": _as_text(raw.get("description")),
                "merchant_explanation": _as_text(raw.get("merchant_explanation")),
                "suggested_fix": _as_text(raw.get("suggested_fix")),
                "new_finding": issue_type not in programmatic_types,
            })
        return findings

    async def analyze_issue(
        self,
        issue: Issue,
        scan: Scan,
        page: ProductPage,
        shop: Shop,
        screenshot: Optional[bytes] = None,
    ) -> Dict[str, Any]:
        """
        Explain one issue and, for high severity, confirm it against the screenshot.

        Returns:
            Dict with confirmed, confidence, reasoning, merchant_explanation,
            suggested_fix and (on skip) reason
        """
        if not self.llm.available:
            return self._skip_issue("AI not configured", "unavailable")

        if issue.high_severity:
            if screenshot is None and scan.screenshot_key:
                screenshot = await self._load_screenshot(scan.screenshot_key)
            if screenshot:
                return await self._confirm_with_screenshot(issue, page, shop, screenshot)

        return await self._explain(issue, page, shop)

    async def _confirm_with_screenshot(
        self, issue: Issue, page: ProductPage, shop: Shop, screenshot: bytes
    ) -> Dict[str, Any]:
        prompt = IssueConfirmationPrompt(
            shop_domain=shop.domain,
            product_title=page.title,
            issue_type=issue.issue_type,
            title=issue.title,
            evidence=issue.evidence or {},
        ).to_prompt()

        try:
            parsed = await self.llm.call_json(prompt, image_png=screenshot)
        except ValueError as e:
            return self._skip_issue(f"Failed to parse AI response: {e}", "malformed")
        except Exception as e:
            logger.error(f"AI confirmation failed for issue {issue.id}: {e}")
            return self._skip_issue(f"AI analysis failed: {e}", "error")

        metrics.ai_requests_total.labels(kind="confirm", outcome="ok").inc()
        confidence = _as_float(parsed.get("confidence"))
        confirmed = _as_bool(parsed.get("confirmed"))
        if confirmed and confidence is None:
            logger.warning(f"AI confirmed issue {issue.id} without a usable confidence; ignoring verdict")
            confirmed = None
        return {
            "confirmed": confirmed,
            "confidence": min(max(confidence, 0.0), 1.0) if confidence is not None else None,
            "reasoning": _as_text(parsed.get("reasoning")),
            "merchant_explanation": _as_text(parsed.get("merchant_explanation")),
            "suggested_fix": _as_text(parsed.get("suggested_fix")),
        }

    async def _explain(self, issue: Issue, page: ProductPage, shop: Shop) -> Dict[str, Any]:
        prompt = IssueExplanationPrompt(
            shop_domain=shop.domain,
            product_title=page.title,
            issue_type=issue.issue_type,
            severity=issue.severity,
            title=issue.title,
            evidence=issue.evidence or {},
        ).to_prompt()

        try:
            parsed = await self.llm.call_json(prompt)
        except ValueError as e:
            return self._skip_issue(f"Failed to parse AI response: {e}", "malformed")
        except Exception as e:
            logger.error(f"AI explanation failed for issue {issue.id}: {e}")
            return self._skip_issue(f"AI analysis failed: {e}", "error")

        metrics.ai_requests_total.labels(kind="explain", outcome="ok").inc()
        return {
            "confirmed": None,
            "confidence": None,
            "reasoning": None,
            "merchant_explanation": _as_text(parsed.get("merchant_explanation")),
            "suggested_fix": _as_text(parsed.get("suggested_fix")),
        }

    async def _load_screenshot(self, key: str) -> Optional[bytes]:
        try:
            return await self.storage.download(key)
        except Exception as e:
            logger.warning(f"Screenshot download failed for {key}, falling back to text-only: {e}")
            return None

    def _skip_page(self, reason: str, outcome: str) -> Dict[str, Any]:
        metrics.ai_requests_total.labels(kind="page", outcome=outcome).inc()
        return skip_page_result(reason)

    def _skip_issue(self, reason: str, outcome: str) -> Dict[str, Any]:
        metrics.ai_requests_total.labels(kind="issue", outcome=outcome).inc()
        return skip_issue_result(reason)


issue_analyzer = IssueAnalyzer()
