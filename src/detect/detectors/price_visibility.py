"""Price visibility check."""

import re
from typing import Optional

from src.detect.base import BaseDetector
from src.detect.result import DetectionResult

PRICE_SELECTORS = (
    ".price",
    ".price__regular",
    ".price__sale",
    ".product__price",
    ".product-price",
    ".price-item",
    ".price-item--regular",
    ".price-item--sale",
    "[data-price]",
    "[data-product-price]",
    ".money",
    "span.money",
    ".product-single__price",
    ".product__meta .price",
    "#ProductPrice",
    "#productPrice",
    ".price-container",
    ".product-info__price",
)

PRICE_FORMAT = re.compile(
    r"(?:\$|€|£|¥|₹|C\$|A\$|USD|EUR|GBP|CAD|AUD)\s*[\d,]+\.?\d*"
    r"|[\d,]+\.?\d*\s*(?:\$|€|£|¥|₹|USD|EUR|GBP|CAD|AUD)"
)
DECIMAL_AMOUNT = re.compile(r"\d+[.,]\d{2}")

PLACEHOLDER_EXACT = frozenset({"$0.00", "0.00", "price"})
PLACEHOLDER_FRAGMENTS = ("loading", "calculating")

PRICE_SCRIPT = r"""
(selectors) => {
    let priceEl = null;
    let selectorUsed = null;

    for (const sel of selectors) {
        const el = document.querySelector(sel);
        if (el) {
            const text = el.textContent.trim();
            if (text.length > 0 && /[\d$€£¥₹]/.test(text)) {
                priceEl = el;
                selectorUsed = sel;
                break;
            }
        }
    }

    if (!priceEl) {
        for (const el of document.querySelectorAll('span, div, p, bdi')) {
            const text = el.textContent.trim();
            if (/^\s*(?:[$€£¥₹]|C\$|A\$)?\s*[\d,]+\.\d{2}\s*$/.test(text) && el.children.length <= 2) {
                const style = window.getComputedStyle(el);
                if (style.display !== 'none' && style.visibility !== 'hidden') {
                    priceEl = el;
                    selectorUsed = 'text-search';
                    break;
                }
            }
        }
    }

    if (!priceEl) {
        return {
            price_found: false,
            price_visible: false,
            price_text: null,
            selector_used: null,
            price_element_count: 0,
            has_compare_at_price: false,
            has_sale_price: false,
            visibility_details: null,
        };
    }

    const style = window.getComputedStyle(priceEl);
    const rect = priceEl.getBoundingClientRect();
    const visible = (
        style.display !== 'none' &&
        style.visibility !== 'hidden' &&
        style.opacity !== '0' &&
        rect.width > 0 &&
        rect.height > 0
    );

    let priceCount = 0;
    for (const sel of selectors) {
        priceCount += document.querySelectorAll(sel).length;
    }

    return {
        price_found: true,
        price_visible: visible,
        price_text: priceEl.textContent.trim().substring(0, 100),
        selector_used: selectorUsed,
        price_element_count: priceCount,
        has_compare_at_price: !!document.querySelector(
            '.price__sale, .price-item--sale, [data-compare-price], .compare-at-price, s.price-item'
        ),
        has_sale_price: !!document.querySelector('.price--on-sale, .price--sale, .price-item--sale'),
        visibility_details: {
            display: style.display,
            visibility: style.visibility,
            opacity: style.opacity,
            width: rect.width,
            height: rect.height,
        },
    };
}
"""


def is_valid_price_format(text: Optional[str]) -> bool:
    if not text or not text.strip():
        return False
    stripped = text.strip()
    return bool(PRICE_FORMAT.search(stripped) or DECIMAL_AMOUNT.search(stripped))


def is_placeholder_price(text: Optional[str]) -> bool:
    if not text or not text.strip():
        return True
    normalized = text.strip().lower()
    if normalized in PLACEHOLDER_EXACT:
        return True
    return any(fragment in normalized for fragment in PLACEHOLDER_FRAGMENTS)


class PriceVisibilityDetector(BaseDetector):
    """Checks that shoppers can see a real, formatted price."""

    check_name = "price_visibility"

    async def run_detection(self) -> DetectionResult:
        result = await self.session.evaluate(PRICE_SCRIPT, list(PRICE_SELECTORS))
        if not isinstance(result, dict):
            return self.inconclusive_result("Could not evaluate price detection script")

        price_text = result.get("price_text")
        found = self.record_validation(bool(result.get("price_found")))
        visible = self.record_validation(bool(result.get("price_visible")))
        self.record_validation(bool(price_text and price_text.strip()))
        formatted = self.record_validation(is_valid_price_format(price_text))
        not_placeholder = self.record_validation(not is_placeholder_price(price_text))

        if not found:
            return self.fail_result(
                "Product price could not be found on the page",
                confidence=max(self.calculated_confidence(), 0.8),
                technical_details={"selectors_tried": list(PRICE_SELECTORS)},
                evidence={
                    "price_found": False,
                    "selectors_tried_count": len(PRICE_SELECTORS),
                },
                suggestions=[
                    "Verify the price element exists in your product template",
                    "Check that no app or theme customization is removing the price",
                    "Ensure the product has a price set",
                ],
            )

        if not visible:
            details = result.get("visibility_details") or {}
            return self.fail_result(
                "Product price exists but is not visible to customers",
                technical_details={
                    "selector_used": result.get("selector_used"),
                    "visibility_details": details,
                },
                evidence={
                    "price_found": True,
                    "price_visible": False,
                    "display": details.get("display"),
                    "visibility": details.get("visibility"),
                },
                suggestions=[
                    "Check CSS rules that may be hiding the price",
                    "Verify no theme customization is hiding the price element",
                ],
            )

        if not formatted:
            return self.warning_result(
                "Product price found but its format may be incorrect",
                technical_details={
                    "selector_used": result.get("selector_used"),
                    "price_text": price_text,
                },
                evidence={
                    "price_found": True,
                    "price_visible": True,
                    "price_text": price_text,
                    "format_valid": False,
                },
                suggestions=[
                    "Verify the price displays with proper currency formatting",
                    "Check whether a currency conversion app is causing display issues",
                ],
            )

        if not not_placeholder:
            return self.warning_result(
                "Product price shows a placeholder value instead of a real price",
                technical_details={
                    "selector_used": result.get("selector_used"),
                    "price_text": price_text,
                },
                evidence={
                    "price_found": True,
                    "price_visible": True,
                    "price_text": price_text,
                    "placeholder": True,
                },
                suggestions=[
                    "Make sure the variant has a non-zero price",
                    "Check that price scripts finish loading",
                ],
            )

        return self.pass_result(
            "Product price is visible and correctly formatted",
            technical_details={
                "selector_used": result.get("selector_used"),
                "price_text": price_text,
                "has_compare_at_price": result.get("has_compare_at_price"),
                "has_sale_price": result.get("has_sale_price"),
            },
            evidence={
                "price_found": True,
                "price_visible": True,
                "price_text": price_text,
                "price_count": result.get("price_element_count"),
            },
        )
