"""Template (Liquid) error scan over rendered HTML."""

import re
from typing import Any, Dict, List

from src.detect.base import BaseDetector
from src.detect.result import DetectionResult

# (type, label, severity, pattern)
ERROR_PATTERNS = (
    ("liquid_error", "Liquid error", "high",
     re.compile(r"Liquid error(?:\s*:\s*|\s+)([^<\n]{0,200})", re.IGNORECASE)),
    ("liquid_syntax_error", "Liquid syntax error", "high",
     re.compile(r"Liquid syntax error(?:\s*:\s*|\s+)([^<\n]{0,200})", re.IGNORECASE)),
    ("undefined_method", "Undefined method", "medium",
     re.compile(r"undefined method\s+['`]([^'`]+)[`']", re.IGNORECASE)),
    ("missing_asset", "Missing asset", "medium",
     re.compile(r"could not find asset\s+['\"]?([^'\"<\n]{0,200})", re.IGNORECASE)),
    ("liquid_warning", "Liquid warning", "low",
     re.compile(r"Liquid warning(?:\s*:\s*|\s+)([^<\n]{0,200})", re.IGNORECASE)),
    ("translation_missing", "Translation missing", "low",
     re.compile(r"translation missing:\s*([^<\n]{0,200})", re.IGNORECASE)),
    ("no_template", "No template found", "medium",
     re.compile(r"No template found\s*(?:for\s+)?([^<\n]{0,200})", re.IGNORECASE)),
)

SEVERITY_ORDER = {"low": 1, "medium": 2, "high": 3}

VISIBLE_ERROR_SCRIPT = """
() => {
    const body = document.body;
    if (!body) return { visible_errors: [] };

    const walker = document.createTreeWalker(body, NodeFilter.SHOW_TEXT, null);
    const visibleErrors = [];
    let node;
    while ((node = walker.nextNode())) {
        const text = node.textContent || '';
        if (!/Liquid error|Liquid syntax error|Translation missing/i.test(text)) continue;
        const parent = node.parentElement;
        if (!parent) continue;
        const style = window.getComputedStyle(parent);
        const rect = parent.getBoundingClientRect();
        if (style.display !== 'none' && style.visibility !== 'hidden' && rect.height > 0) {
            visibleErrors.push(text.trim().substring(0, 200));
        }
    }
    return { visible_errors: visibleErrors.slice(0, 10) };
}
"""


def scan_html_for_errors(html: str) -> List[Dict[str, Any]]:
    """Match every known template error signature in raw HTML."""
    found = []
    for error_type, label, severity, pattern in ERROR_PATTERNS:
        for match in pattern.finditer(html):
            found.append({
                "type": error_type,
                "label": label,
                "severity": severity,
                "match": match.group(1).strip(),
                "visible": False,
            })
    return found


class LiquidErrorDetector(BaseDetector):
    """Flags template engine errors leaking into the storefront markup."""

    check_name = "liquid_errors"

    async def run_detection(self) -> DetectionResult:
        html = await self.session.content()
        if not html:
            return self.inconclusive_result("Could not retrieve page HTML for template error detection")

        found_errors = scan_html_for_errors(html)

        dom_result = await self.session.evaluate(VISIBLE_ERROR_SCRIPT)
        visible_errors = []
        if isinstance(dom_result, dict):
            visible_errors = [str(v) for v in dom_result.get("visible_errors") or []]

        for text in visible_errors:
            found_errors.append({
                "type": "visible_liquid_error",
                "label": "Visible Liquid error",
                "severity": "high",
                "match": text,
                "visible": True,
            })

        # Dedupe by matched text, keeping first occurrence
        unique: Dict[str, Dict[str, Any]] = {}
        for error in found_errors:
            unique.setdefault(error["match"], error)
        found_errors = list(unique.values())

        self.record_validation(not found_errors)
        self.record_validation(not any(e["severity"] == "high" for e in found_errors))
        self.record_validation(not visible_errors)

        if not found_errors:
            return self.pass_result(
                "No Liquid template errors detected",
                confidence=0.9,
                evidence={"errors_found": 0},
            )

        high = [e for e in found_errors if e["severity"] == "high"]
        medium = [e for e in found_errors if e["severity"] == "medium"]
        low = [e for e in found_errors if e["severity"] == "low"]
        max_severity = max(found_errors, key=lambda e: SEVERITY_ORDER[e["severity"]])["severity"]

        if visible_errors:
            confidence = 0.95
        elif high:
            confidence = 0.85
        else:
            confidence = 0.75

        errors_detail = [
            {"type": e["label"], "detail": e["match"][:200], "visible": e["visible"]}
            for e in found_errors[:10]
        ]

        if high:
            return self.fail_result(
                f"{len(found_errors)} Liquid template error(s) detected, {len(high)} critical",
                confidence=confidence,
                technical_details={"errors": errors_detail, "max_severity": max_severity},
                evidence={
                    "total_errors": len(found_errors),
                    "high_severity_count": len(high),
                    "medium_severity_count": len(medium),
                    "low_severity_count": len(low),
                    "visible_error_count": len(visible_errors),
                },
                suggestions=[
                    "Check your theme's Liquid templates for syntax errors",
                    "Verify all referenced objects and variables exist",
                    "Review recent theme changes that may have introduced errors",
                ],
            )

        if medium:
            return self.warning_result(
                f"{len(found_errors)} Liquid template issue(s) detected",
                confidence=confidence,
                technical_details={"errors": errors_detail, "max_severity": max_severity},
                evidence={
                    "total_errors": len(found_errors),
                    "medium_severity_count": len(medium),
                    "low_severity_count": len(low),
                },
                suggestions=["Review missing assets and templates referenced in your theme"],
            )

        return self.warning_result(
            f"{len(low)} minor Liquid template warning(s) detected",
            confidence=0.7,
            technical_details={"warnings": errors_detail[:5], "max_severity": max_severity},
            evidence={"total_warnings": len(low)},
            suggestions=["Add the missing translation keys to your theme locale files"],
        )
