"""Base class shared by all page detectors."""

import logging
from typing import Any, Dict, Iterable, Optional

from src import metrics
from src.browser.session import BrowserSession
from src.detect.result import DetectionResult, DetectionStatus

logger = logging.getLogger(__name__)

CONFIDENCE_THRESHOLD = 0.7


class BaseDetector:
    """
    Contract for a single confidence-scored page check.

    Subclasses set ``check_name`` and implement ``run_detection``. Callers use
    ``perform``, which never raises: any exception inside a detector becomes an
    inconclusive result so sibling checks keep running.

    Confidence defaults to the share of recorded validations that passed.
    """

    check_name: str = ""

    def __init__(self, session: BrowserSession, scan_depth: str = "quick"):
        self.session = session
        self.scan_depth = scan_depth
        self._validations_total = 0
        self._validations_passed = 0

    @property
    def deep(self) -> bool:
        return self.scan_depth == "deep"

    async def run_detection(self) -> DetectionResult:
        raise NotImplementedError

    async def perform(self) -> DetectionResult:
        """Run the check, converting any failure into an inconclusive result."""
        self._validations_total = 0
        self._validations_passed = 0
        try:
            result = await self.run_detection()
        except Exception as e:
            logger.error(f"Detector {self.check_name} failed: {e}", exc_info=True)
            result = self.inconclusive_result(
                f"Detection check failed: {e}",
                technical_details={
                    "error_class": e.__class__.__name__,
                    "error_message": str(e),
                },
            )

        metrics.detector_results_total.labels(
            check=self.check_name, status=result.status.value
        ).inc()
        return result

    # ------------------------------------------------------------------
    # Confidence
    # ------------------------------------------------------------------

    def record_validation(self, passed: bool) -> bool:
        self._validations_total += 1
        if passed:
            self._validations_passed += 1
        return passed

    def calculated_confidence(self) -> float:
        if self._validations_total == 0:
            return 0.0
        return round(self._validations_passed / self._validations_total, 2)

    # ------------------------------------------------------------------
    # Result builders
    # ------------------------------------------------------------------

    def _build(
        self,
        status: DetectionStatus,
        message: str,
        confidence: Optional[float],
        technical_details: Optional[Dict[str, Any]],
        suggestions: Optional[Iterable[str]],
        evidence: Optional[Dict[str, Any]],
    ) -> DetectionResult:
        if confidence is None:
            confidence = self.calculated_confidence()
        return DetectionResult(
            check=self.check_name,
            status=status,
            confidence=min(1.0, max(0.0, float(confidence))),
            message=message,
            technical_details=technical_details or {},
            suggestions=tuple(suggestions or ()),
            evidence=evidence or {},
        )

    def pass_result(self, message, confidence=None, technical_details=None, suggestions=None, evidence=None):
        return self._build(
            DetectionStatus.PASS, message, confidence, technical_details, suggestions, evidence
        )

    def fail_result(self, message, confidence=None, technical_details=None, suggestions=None, evidence=None):
        return self._build(
            DetectionStatus.FAIL, message, confidence, technical_details, suggestions, evidence
        )

    def warning_result(self, message, confidence=None, technical_details=None, suggestions=None, evidence=None):
        return self._build(
            DetectionStatus.WARNING, message, confidence, technical_details, suggestions, evidence
        )

    def inconclusive_result(self, message, confidence=0.0, technical_details=None, suggestions=None, evidence=None):
        return self._build(
            DetectionStatus.INCONCLUSIVE, message, confidence, technical_details, suggestions, evidence
        )
