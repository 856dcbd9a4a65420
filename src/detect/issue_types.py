"""Issue type catalogue and check-to-issue mappings."""

from typing import Dict, Optional

CHECK_TO_ISSUE_TYPE: Dict[str, str] = {
    "add_to_cart": "missing_add_to_cart",
    "atc_funnel": "atc_not_functional",
    "checkout": "checkout_broken",
    "variant_interaction": "variant_selection_broken",
    "javascript_errors": "js_error",
    "liquid_errors": "liquid_error",
    "price_visibility": "missing_price",
    "product_images": "missing_images",
}

CHECK_SEVERITY: Dict[str, str] = {
    "add_to_cart": "high",
    "atc_funnel": "high",
    "checkout": "high",
    "variant_interaction": "high",
    "javascript_errors": "high",
    "liquid_errors": "medium",
    "price_visibility": "high",
    "product_images": "medium",
}

ISSUE_TYPES: Dict[str, Dict[str, str]] = {
    "missing_add_to_cart": {
        "title": "Add to Cart button may not be working",
        "description": "Customers may not be able to add this product to their cart.",
    },
    "atc_not_functional": {
        "title": "Add to Cart is not adding items to the cart",
        "description": "Clicking Add to Cart did not change the cart contents.",
    },
    "checkout_broken": {
        "title": "Checkout may not be reachable",
        "description": "Customers may not be able to reach checkout from this product.",
    },
    "variant_selection_broken": {
        "title": "Variant selection may be broken",
        "description": "Customers may not be able to choose a size, color or other option.",
    },
    "variant_selector_error": {
        "title": "Variant selector may have issues",
        "description": "JavaScript errors mention the variant picker.",
    },
    "js_error": {
        "title": "JavaScript errors detected",
        "description": "Scripts on this page are throwing errors that may affect shoppers.",
    },
    "liquid_error": {
        "title": "Liquid template errors detected",
        "description": "Theme template errors are showing up in the page markup.",
    },
    "missing_images": {
        "title": "Product images may not be loading",
        "description": "The main product image is missing, broken or hidden.",
    },
    "missing_price": {
        "title": "Price may not be visible",
        "description": "Shoppers may not be able to see the product price.",
    },
    "slow_page_load": {
        "title": "Page is loading slowly",
        "description": "The product page took a long time to finish loading.",
    },
}

SEVERITY_RANK = {"low": 1, "medium": 2, "high": 3}


def issue_type_for_check(check: str) -> Optional[str]:
    return CHECK_TO_ISSUE_TYPE.get(check)


def severity_for(check: str, status: str) -> str:
    """
    Severity of a problem reported by a check.

    Failures carry the check's own severity. Warnings are capped at medium so
    a soft signal never raises a high-severity issue.
    """
    severity = CHECK_SEVERITY.get(check, "medium")
    if status == "warning" and SEVERITY_RANK[severity] > SEVERITY_RANK["medium"]:
        return "medium"
    return severity


def issue_title(issue_type: str) -> str:
    info = ISSUE_TYPES.get(issue_type)
    if info:
        return info["title"]
    return issue_type.replace("_", " ").capitalize()


def issue_description(issue_type: str) -> str:
    return ISSUE_TYPES.get(issue_type, {}).get("description", "")
