"""Detection result types shared by detectors and the detection engine."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Tuple


class DetectionStatus(str, Enum):
    """Outcome of a single detector run."""

    PASS = "pass"
    FAIL = "fail"
    WARNING = "warning"
    INCONCLUSIVE = "inconclusive"

    @property
    def is_problem(self) -> bool:
        return self in (DetectionStatus.FAIL, DetectionStatus.WARNING)


@dataclass(frozen=True)
class DetectionResult:
    """Scored outcome of one check against one page."""

    check: str
    status: DetectionStatus
    confidence: float
    message: str
    technical_details: Dict[str, Any] = field(default_factory=dict)
    suggestions: Tuple[str, ...] = ()
    evidence: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence out of range: {self.confidence}")
        if not isinstance(self.status, DetectionStatus):
            object.__setattr__(self, "status", DetectionStatus(self.status))
        if not isinstance(self.suggestions, tuple):
            object.__setattr__(self, "suggestions", tuple(self.suggestions))

    @property
    def passed(self) -> bool:
        return self.status is DetectionStatus.PASS

    @property
    def inconclusive(self) -> bool:
        return self.status is DetectionStatus.INCONCLUSIVE

    def to_dict(self) -> Dict[str, Any]:
        """Wire shape stored on scans and in issue evidence."""
        return {
            "check": self.check,
            "status": self.status.value,
            "confidence": self.confidence,
            "details": {
                "message": self.message,
                "technical_details": dict(self.technical_details),
                "suggestions": list(self.suggestions),
                "evidence": dict(self.evidence),
            },
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DetectionResult":
        details = data.get("details") or {}
        return cls(
            check=data["check"],
            status=DetectionStatus(data["status"]),
            confidence=float(data.get("confidence", 0.0)),
            message=details.get("message", ""),
            technical_details=details.get("technical_details") or {},
            suggestions=tuple(details.get("suggestions") or ()),
            evidence=details.get("evidence") or {},
        )
