"""Storefront selectors and third-party noise denylists."""

# Ordered by specificity; first visible match wins
ATC_BUTTON_SELECTORS = (
    'product-form button[type="submit"]',
    'form[action*="/cart/add"] button[type="submit"]',
    'button[name="add"]',
    ".product-form__submit",
    ".product-form__cart-submit",
    "#AddToCart",
    "#add-to-cart",
    "[data-add-to-cart]",
    "button.add-to-cart",
    ".add-to-cart-button",
    'input[type="submit"][name="add"]',
)

PRODUCT_FORM_SELECTORS = (
    'product-form form[action*="/cart/add"]',
    'form[action*="/cart/add"]',
    "form.product-form",
    "form[data-product-form]",
    "form.shopify-product-form",
    "#product-form",
    "#AddToCartForm",
)

VARIANT_SELECT_SELECTORS = (
    "variant-selects select",
    "variant-radios select",
    'select[name^="options"]',
    "select.single-option-selector",
    "select[data-option]",
    "select.product-form__input",
    'form[action*="/cart/add"] select[name="id"]',
)

VARIANT_SWATCH_SELECTORS = (
    ".swatch-element:not(.soldout):not(.disabled) label",
    ".swatch:not(.soldout) [data-value]",
    "[data-swatch]:not(.disabled)",
    ".variant-swatch:not(.disabled)",
    ".color-swatch:not(.disabled)",
)

# Third-party hosts and paths blocked during navigation and ignored in
# "critical" error subsets
BLOCKED_URL_PATTERNS = (
    "google-analytics.com",
    "googletagmanager.com",
    "facebook.net",
    "hotjar.com",
    "doubleclick.net",
    "connect.facebook.net",
    "analytics",
    "monorail-edge.shopifysvc.com",
    "shopifysvc.com",
    "/api/collect",
    "favicon.ico",
)

BLOCKABLE_RESOURCE_TYPES = frozenset({"font", "media"})

CRITICAL_RESOURCE_TYPES = frozenset(
    {"document", "stylesheet", "script", "xhr", "fetch", "image"}
)

JS_ERROR_NOISE_MARKERS = ("favicon", "pixel")


def is_blocked_url(url: str) -> bool:
    lowered = (url or "").lower()
    return any(pattern in lowered for pattern in BLOCKED_URL_PATTERNS)
