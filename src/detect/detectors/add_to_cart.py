"""Add-to-cart structural and purchase-funnel check."""

import logging
from typing import Any, Dict, Optional

from src.browser.selectors import ATC_BUTTON_SELECTORS, PRODUCT_FORM_SELECTORS
from src.detect.base import BaseDetector
from src.detect.result import DetectionResult

logger = logging.getLogger(__name__)

SOLD_OUT_PHRASES = ("sold out", "unavailable", "out of stock", "notify me")

ATC_STRUCTURE_SCRIPT = """
({ buttonSelectors, formSelectors }) => {
    let button = null;
    let selectorUsed = null;
    for (const sel of buttonSelectors) {
        const el = document.querySelector(sel);
        if (el) {
            button = el;
            selectorUsed = sel;
            break;
        }
    }

    let form = null;
    for (const sel of formSelectors) {
        const el = document.querySelector(sel);
        if (el) {
            form = el;
            break;
        }
    }

    if (!button) {
        return {
            button_found: false,
            button_visible: false,
            button_enabled: false,
            button_text: null,
            selector_used: null,
            form_found: !!form,
            form_valid: false,
            form_action: form ? form.getAttribute('action') : null,
            visibility_details: null,
        };
    }

    const style = window.getComputedStyle(button);
    const rect = button.getBoundingClientRect();
    const visible = (
        style.display !== 'none' &&
        style.visibility !== 'hidden' &&
        style.opacity !== '0' &&
        rect.width > 0 &&
        rect.height > 0
    );

    const parentForm = button.closest('form');
    const formAction = parentForm ? parentForm.getAttribute('action') : null;

    return {
        button_found: true,
        button_visible: visible,
        button_enabled: !button.disabled && !button.hasAttribute('aria-disabled'),
        button_text: (button.textContent || button.value || '').trim().substring(0, 100),
        selector_used: selectorUsed,
        form_found: !!(form || parentForm),
        form_valid: !!(parentForm && formAction && formAction.includes('/cart/add')),
        form_action: formAction,
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


def is_sold_out_text(text: Optional[str]) -> bool:
    if not text:
        return False
    normalized = text.strip().lower()
    return any(phrase in normalized for phrase in SOLD_OUT_PHRASES)


class AddToCartDetector(BaseDetector):
    """
    Verifies customers can add the product to their cart.

    Layer 1 (structural): button and cart form exist, are visible and enabled.
    Layer 2 (interaction, deep scans only): select a variant if needed, click
    the button, confirm the cart item count rose, then remove the added line.
    Visual confirmation is left to the AI layer.
    """

    check_name = "add_to_cart"

    async def _inspect(self) -> Optional[Dict[str, Any]]:
        result = await self.session.evaluate(
            ATC_STRUCTURE_SCRIPT,
            {
                "buttonSelectors": list(ATC_BUTTON_SELECTORS),
                "formSelectors": list(PRODUCT_FORM_SELECTORS),
            },
        )
        return result if isinstance(result, dict) else None

    async def run_detection(self) -> DetectionResult:
        structural = await self._inspect()
        if structural is None:
            return self.inconclusive_result("Could not evaluate add-to-cart button")

        found = self.record_validation(bool(structural.get("button_found")))
        visible = self.record_validation(bool(structural.get("button_visible")))
        form_valid = self.record_validation(bool(structural.get("form_valid")))
        enabled = bool(structural.get("button_enabled"))

        if found and not enabled and is_sold_out_text(structural.get("button_text")):
            self.record_validation(True)
            return self.pass_result(
                "Add-to-cart button is disabled because the product appears sold out",
                confidence=0.9,
                technical_details={
                    "selector_used": structural.get("selector_used"),
                    "button_text": structural.get("button_text"),
                    "sold_out": True,
                },
                evidence={
                    "button_found": True,
                    "button_visible": visible,
                    "button_disabled_reason": "sold_out",
                },
            )

        variant_method = None
        if found and not enabled:
            variant_method = await self.session.select_first_variant()
            if variant_method != "none":
                structural = await self._inspect() or structural
                enabled = bool(structural.get("button_enabled"))

        self.record_validation(enabled)

        if found and visible and enabled and form_valid:
            if self.deep:
                return await self._run_funnel_test(structural)
            return self.pass_result(
                "Add-to-cart button is present, visible and enabled",
                technical_details={
                    "selector_used": structural.get("selector_used"),
                    "button_text": structural.get("button_text"),
                    "form_action": structural.get("form_action"),
                    "variant_selection": variant_method,
                },
                evidence={
                    "button_found": True,
                    "button_visible": True,
                    "button_enabled": True,
                    "form_valid": True,
                    "scan_depth": self.scan_depth,
                },
            )

        if not found:
            return self.fail_result(
                "Add-to-cart button could not be found on the page",
                confidence=max(self.calculated_confidence(), 0.85),
                technical_details={
                    "selectors_tried": list(ATC_BUTTON_SELECTORS),
                    "form_found": structural.get("form_found"),
                },
                evidence={
                    "button_found": False,
                    "selectors_tried_count": len(ATC_BUTTON_SELECTORS),
                },
                suggestions=[
                    "Verify the product form exists in your theme's product template",
                    "Check that the add-to-cart button uses standard theme markup",
                    "Ensure no JavaScript errors are preventing the button from rendering",
                ],
            )

        if not visible:
            details = structural.get("visibility_details") or {}
            return self.fail_result(
                "Add-to-cart button exists but is not visible to customers",
                technical_details={
                    "selector_used": structural.get("selector_used"),
                    "visibility_details": details,
                },
                evidence={
                    "button_found": True,
                    "button_visible": False,
                    "display": details.get("display"),
                    "visibility": details.get("visibility"),
                },
                suggestions=[
                    "Check CSS rules that may be hiding the button",
                    "Verify no theme customization is hiding the product form",
                ],
            )

        if not enabled:
            return self.fail_result(
                "Add-to-cart button is present but not clickable, so customers cannot buy this product",
                confidence=max(self.calculated_confidence(), 0.85),
                technical_details={
                    "selector_used": structural.get("selector_used"),
                    "button_text": structural.get("button_text"),
                    "button_enabled": False,
                    "form_valid": form_valid,
                    "variant_selection": variant_method,
                },
                evidence={
                    "button_found": True,
                    "button_visible": True,
                    "button_enabled": False,
                    "form_valid": form_valid,
                },
                suggestions=[
                    "Check that the button is not permanently disabled in your theme code",
                    "Verify product variants are set up correctly",
                    "Check for JavaScript errors that may prevent the button from activating",
                ],
            )

        # Visible and enabled, but not inside a cart-add form
        return self.fail_result(
            "Add-to-cart button is not inside a form that submits to the cart",
            technical_details={
                "selector_used": structural.get("selector_used"),
                "form_action": structural.get("form_action"),
            },
            evidence={
                "button_found": True,
                "button_visible": True,
                "button_enabled": True,
                "form_valid": False,
            },
            suggestions=[
                "Make sure the button sits inside a form whose action is /cart/add",
            ],
        )

    async def _run_funnel_test(self, structural: Dict[str, Any]) -> DetectionResult:
        """Click add-to-cart and confirm the cart actually changed."""
        cart_before = await self.session.read_cart_state()

        clicked = await self.session.click_add_to_cart()
        if not clicked:
            return self.fail_result(
                "Add-to-cart button could not be clicked",
                technical_details={
                    "funnel_layer": "interaction",
                    "selector_used": structural.get("selector_used"),
                },
                evidence={
                    "button_found": True,
                    "button_visible": True,
                    "button_enabled": True,
                    "click_succeeded": False,
                },
                suggestions=[
                    "Check for JavaScript errors blocking form submission",
                    "Verify the product form's action URL is correct",
                ],
            )

        cart_after = await self.session.read_cart_state()
        if cart_before is None or cart_after is None:
            return self.warning_result(
                "Add-to-cart was clicked but the cart could not be read to confirm it",
                confidence=0.5,
                technical_details={
                    "funnel_layer": "interaction",
                    "cart_before": cart_before.to_dict() if cart_before else None,
                    "cart_after": cart_after.to_dict() if cart_after else None,
                },
                evidence={"click_succeeded": True, "cart_readable": False},
            )

        item_added = cart_after.item_count > cart_before.item_count
        if item_added and cart_after.last_item_key:
            await self.session.clear_cart_item(cart_after.last_item_key)

        self.record_validation(item_added)

        if item_added:
            return self.pass_result(
                "Add-to-cart works: the item was added to the cart",
                technical_details={
                    "selector_used": structural.get("selector_used"),
                    "button_text": structural.get("button_text"),
                    "cart_before_count": cart_before.item_count,
                    "cart_after_count": cart_after.item_count,
                },
                evidence={
                    "button_found": True,
                    "button_visible": True,
                    "button_enabled": True,
                    "form_valid": True,
                    "item_added_to_cart": True,
                    "scan_depth": "deep",
                },
            )

        return self.fail_result(
            "Add-to-cart button clicks but the item is not added to the cart",
            confidence=0.95,
            technical_details={
                "funnel_layer": "interaction",
                "selector_used": structural.get("selector_used"),
                "button_text": structural.get("button_text"),
                "cart_before": cart_before.to_dict(),
                "cart_after": cart_after.to_dict(),
            },
            evidence={
                "button_found": True,
                "button_visible": True,
                "button_enabled": True,
                "click_succeeded": True,
                "item_added_to_cart": False,
                "scan_depth": "deep",
            },
            suggestions=[
                "Check that the product has available inventory",
                "Verify the product form submits the correct variant ID",
                "Look for JavaScript errors in the console after clicking add to cart",
            ],
        )
