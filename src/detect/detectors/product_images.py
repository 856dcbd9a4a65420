"""Primary product image integrity check."""

import re
from typing import Any, Dict, List, Optional

from src.detect.base import BaseDetector
from src.detect.result import DetectionResult

IMAGE_SELECTORS = (
    "product-media img",
    ".product__media img",
    ".product__media-item img",
    ".product-media img",
    ".product-single__photo img",
    "[data-product-media] img",
    "[data-product-image]",
    ".product-image img",
    ".product__photo img",
    ".product-featured-media img",
    "#ProductPhoto img",
    ".product-gallery img",
    ".product__main-image img",
    ".featured-image img",
)

MIN_IMAGE_WIDTH = 200
MIN_IMAGE_HEIGHT = 200

PLACEHOLDER_PATTERNS = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (r"no-image", r"placeholder", r"no_image", r"default\.png",
              r"blank\.gif", r"pixel\.gif", r"spacer", r"1x1")
)

IMAGE_URL_PATTERN = re.compile(r"\.(jpg|jpeg|png|gif|webp|avif|svg)(\?|$)", re.IGNORECASE)

IMAGE_SCRIPT = """
(selectors) => {
    let mainImage = null;
    let selectorUsed = null;

    for (const sel of selectors) {
        for (const img of document.querySelectorAll(sel)) {
            const rect = img.getBoundingClientRect();
            if (rect.width > 100 || rect.height > 100 || img.naturalWidth > 100) {
                mainImage = img;
                selectorUsed = sel;
                break;
            }
        }
        if (mainImage) break;
    }

    if (!mainImage) {
        const productArea = document.querySelector('.product, [data-product], #product, main, .main-content');
        if (productArea) {
            let largest = null;
            let largestArea = 0;
            for (const img of productArea.querySelectorAll('img')) {
                const area = (img.naturalWidth || img.width) * (img.naturalHeight || img.height);
                if (area > largestArea) {
                    largestArea = area;
                    largest = img;
                }
            }
            if (largest && largestArea > 10000) {
                mainImage = largest;
                selectorUsed = 'largest-in-product-area';
            }
        }
    }

    if (!mainImage) {
        return {
            image_found: false,
            image_loaded: false,
            image_visible: false,
            src: null,
            natural_width: 0,
            natural_height: 0,
            complete: false,
            is_broken: false,
            selector_used: null,
            total_images: 0,
            visible_images: 0,
            visibility_details: null,
        };
    }

    const complete = mainImage.complete;
    const naturalWidth = mainImage.naturalWidth || 0;
    const naturalHeight = mainImage.naturalHeight || 0;
    const style = window.getComputedStyle(mainImage);
    const rect = mainImage.getBoundingClientRect();
    const visible = (
        style.display !== 'none' &&
        style.visibility !== 'hidden' &&
        style.opacity !== '0' &&
        rect.width > 0 &&
        rect.height > 0
    );

    let totalImages = 0;
    let visibleImages = 0;
    for (const sel of selectors) {
        const imgs = document.querySelectorAll(sel);
        totalImages += imgs.length;
        for (const img of imgs) {
            const imgRect = img.getBoundingClientRect();
            if (img.complete && img.naturalWidth > 0 && imgRect.width > 0 && imgRect.height > 0) {
                visibleImages++;
            }
        }
    }

    return {
        image_found: true,
        image_loaded: complete && naturalWidth > 0,
        image_visible: visible,
        src: mainImage.currentSrc || mainImage.src || mainImage.getAttribute('data-src') || '',
        natural_width: naturalWidth,
        natural_height: naturalHeight,
        complete: complete,
        is_broken: complete && naturalWidth === 0,
        selector_used: selectorUsed,
        total_images: totalImages,
        visible_images: visibleImages,
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


def is_placeholder_image(src: Optional[str]) -> bool:
    if not src:
        return True
    return any(p.search(src) for p in PLACEHOLDER_PATTERNS)


def image_network_errors(network_errors: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Failed requests that were for images."""
    return [
        error
        for error in network_errors
        if str(error.get("resource_type") or "").lower() == "image"
        or IMAGE_URL_PATTERN.search(str(error.get("url") or ""))
    ]


class ProductImageDetector(BaseDetector):
    """Checks the main product image loaded, renders and is a real photo."""

    check_name = "product_images"

    async def run_detection(self) -> DetectionResult:
        result = await self.session.evaluate(IMAGE_SCRIPT, list(IMAGE_SELECTORS))
        if not isinstance(result, dict):
            return self.inconclusive_result("Could not evaluate product image detection script")

        width = int(result.get("natural_width") or 0)
        height = int(result.get("natural_height") or 0)
        src = str(result.get("src") or "")
        is_broken = bool(result.get("is_broken"))

        found = self.record_validation(bool(result.get("image_found")))
        loaded = self.record_validation(bool(result.get("image_loaded")))
        visible = self.record_validation(bool(result.get("image_visible")))
        sized = self.record_validation(width >= MIN_IMAGE_WIDTH and height >= MIN_IMAGE_HEIGHT)
        not_placeholder = self.record_validation(not is_placeholder_image(src))
        self.record_validation(not is_broken)

        failed_images = image_network_errors(self.session.network_errors)
        self.record_validation(not failed_images)

        if not found:
            return self.fail_result(
                "Product image could not be found on the page",
                confidence=max(self.calculated_confidence(), 0.8),
                technical_details={"selectors_tried": list(IMAGE_SELECTORS)},
                evidence={
                    "image_found": False,
                    "selectors_tried_count": len(IMAGE_SELECTORS),
                    "network_image_errors": len(failed_images),
                },
                suggestions=[
                    "Verify that the product has images uploaded",
                    "Check that the product template includes image markup",
                    "Ensure no JavaScript errors are preventing image rendering",
                ],
            )

        if not loaded or is_broken:
            return self.fail_result(
                "Product image found but failed to load",
                technical_details={
                    "selector_used": result.get("selector_used"),
                    "src": src[:200],
                    "complete": result.get("complete"),
                    "natural_width": width,
                    "is_broken": is_broken,
                },
                evidence={
                    "image_found": True,
                    "image_loaded": False,
                    "src": src[:200],
                    "network_image_errors": len(failed_images),
                    "failed_urls": [e.get("url") for e in failed_images[:3]],
                },
                suggestions=[
                    "Check that the image URL is valid and accessible",
                    "Verify the image CDN is functioning correctly",
                    "Try re-uploading the product image",
                ],
            )

        if not visible:
            return self.fail_result(
                "Product image loaded but is not visible to customers",
                technical_details={
                    "selector_used": result.get("selector_used"),
                    "visibility_details": result.get("visibility_details"),
                },
                evidence={"image_found": True, "image_loaded": True, "image_visible": False},
                suggestions=[
                    "Check CSS rules that may be hiding the image",
                    "Verify the image container has proper dimensions",
                ],
            )

        if not sized:
            return self.warning_result(
                f"Product image is very small ({width}x{height}px)",
                technical_details={
                    "selector_used": result.get("selector_used"),
                    "natural_width": width,
                    "natural_height": height,
                    "minimum_expected": f"{MIN_IMAGE_WIDTH}x{MIN_IMAGE_HEIGHT}",
                },
                evidence={
                    "image_found": True,
                    "image_loaded": True,
                    "natural_width": width,
                    "natural_height": height,
                },
                suggestions=[
                    "Upload higher resolution product images (at least 800x800px recommended)",
                    "Check whether image resizing or compression is too aggressive",
                ],
            )

        if not not_placeholder:
            return self.warning_result(
                "Product image looks like a placeholder",
                technical_details={"selector_used": result.get("selector_used"), "src": src[:200]},
                evidence={"image_found": True, "image_loaded": True, "placeholder": True},
                suggestions=["Replace the placeholder with a real product photo"],
            )

        return self.pass_result(
            "Product image is present, loaded and visible",
            technical_details={
                "selector_used": result.get("selector_used"),
                "dimensions": f"{width}x{height}",
                "total_images": result.get("total_images"),
                "visible_images": result.get("visible_images"),
            },
            evidence={
                "image_found": True,
                "image_loaded": True,
                "image_visible": True,
                "natural_width": width,
                "natural_height": height,
                "total_images": result.get("total_images"),
                "network_image_errors": len(failed_images),
            },
        )
