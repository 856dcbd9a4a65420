"""JavaScript error triage."""

import re
from typing import List

from src.detect.base import BaseDetector
from src.detect.result import DetectionResult


def _compile(patterns):
    return tuple(re.compile(p, re.IGNORECASE) for p in patterns)


# Third-party widgets, trackers and chat tools whose errors never block a purchase
IGNORE_PATTERNS = _compile((
    r"google[-_]?analytics", r"googletagmanager", r"gtag", r"gtm\.js",
    r"facebook", r"fbevents", r"fb\.js", r"hotjar", r"clarity\.ms",
    r"doubleclick", r"tiktok", r"snapchat", r"pinterest", r"twitter",
    r"linkedin", r"hubspot", r"intercom", r"zendesk", r"drift", r"crisp",
    r"tidio", r"livechat", r"favicon", r"recaptcha", r"cookie", r"consent",
    r"klaviyo", r"mailchimp", r"omnisend", r"privy", r"vitals\.co",
))

CRITICAL_PATTERNS = _compile((
    r"cart", r"add.?to.?cart", r"checkout", r"product", r"variant", r"price",
    r"form", r"submit", r"payment", r"shopify", r"buy", r"purchase", r"quantity",
))

SYNTAX_ERROR_PATTERNS = _compile((
    r"SyntaxError", r"ReferenceError", r"TypeError", r"Unexpected token",
    r"is not defined", r"is not a function", r"Cannot read propert",
    r"null is not an object", r"undefined is not",
))


def _matches(message: str, patterns) -> bool:
    return any(p.search(message) for p in patterns)


def is_noise(message: str) -> bool:
    return _matches(message, IGNORE_PATTERNS)


def is_purchase_critical(message: str) -> bool:
    return _matches(message, CRITICAL_PATTERNS)


def is_syntax_class(message: str) -> bool:
    return _matches(message, SYNTAX_ERROR_PATTERNS)


def error_confidence(critical: List[str], syntax: List[str]) -> float:
    if critical and syntax:
        return 0.95
    if critical:
        return 0.85
    if syntax:
        return 0.8
    return 0.7


class JavaScriptErrorDetector(BaseDetector):
    """Classifies uncaught and console errors by how likely they break buying."""

    check_name = "javascript_errors"

    async def run_detection(self) -> DetectionResult:
        page_errors = self.session.js_errors
        console_errors = [log for log in self.session.console_logs if log.get("type") == "error"]

        combined = [str(e.get("message") or "") for e in page_errors]
        combined += [str(log.get("text") or "") for log in console_errors]
        filtered = [message for message in combined if not is_noise(message)]

        self.record_validation(not filtered)

        if not filtered:
            return self.pass_result(
                "No critical JavaScript errors detected",
                confidence=0.9,
                evidence={
                    "total_errors_captured": len(page_errors),
                    "console_errors_captured": len(console_errors),
                    "filtered_count": 0,
                },
            )

        critical = [m for m in filtered if is_purchase_critical(m)]
        syntax = [m for m in filtered if is_syntax_class(m)]
        other = [m for m in filtered if m not in critical and m not in syntax]

        self.record_validation(not critical)
        self.record_validation(not syntax)

        if critical or syntax:
            severe = list(dict.fromkeys(critical + syntax))
            return self.fail_result(
                f"{len(severe)} critical JavaScript error(s) detected that may affect purchasing",
                confidence=error_confidence(critical, syntax),
                technical_details={
                    "critical_errors": critical[:5],
                    "syntax_errors": syntax[:5],
                    "other_errors": other[:3],
                },
                evidence={
                    "total_errors": len(filtered),
                    "critical_count": len(critical),
                    "syntax_count": len(syntax),
                    "other_count": len(other),
                },
                suggestions=[
                    "Review the browser console in DevTools for error details",
                    "Check whether recently installed apps are causing conflicts",
                    "Verify theme JavaScript files are loading correctly",
                ],
            )

        return self.warning_result(
            f"{len(other)} JavaScript error(s) detected (not directly purchase-related)",
            confidence=0.7,
            technical_details={"errors": other[:5]},
            evidence={
                "total_errors": len(filtered),
                "critical_count": 0,
                "other_count": len(other),
            },
            suggestions=["Review these errors to make sure they don't affect shoppers"],
        )
