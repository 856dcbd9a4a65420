"""Prompt templates for AI page analysis and issue confirmation."""

import json
from typing import Any, Dict, Optional

from pydantic import BaseModel

AI_ISSUE_TYPES = (
    "missing_atc",
    "atc_not_functional",
    "missing_price",
    "wrong_price",
    "broken_images",
    "missing_images",
    "checkout_broken",
    "variant_broken",
    "layout_broken",
    "error_message",
)

MERCHANT_TONE = (
    "Explain this in simple, non-technical language a store owner would understand. "
    "Be specific about what it means for their customers and sales, in 2-3 sentences. "
    "Stay calm and helpful, never alarming."
)

FIX_GUIDANCE = (
    "Give numbered steps the merchant can follow to fix it. Assume they are not a "
    "developer and only suggest safe, reversible actions."
)


class PageAnalysisPrompt(BaseModel):
    """Screenshot review of a whole product page."""

    shop_domain: str
    product_title: Optional[str] = None
    check_summaries: list[str] = []

    def to_prompt(self) -> str:
        checks = "\n".join(f"  - {line}" for line in self.check_summaries) or "  (none)"
        return f"""You are a Shopify store quality analyst. Analyze this product page screenshot and identify every issue that could stop a customer from buying.

Store: {self.shop_domain}
Product: {self.product_title or "Unknown"}

Our automated checks found:
{checks}

Look at the screenshot and check:
1. Is the Add to Cart button visible and usable?
2. Is the price visible and plausible (not $0.00, not missing)?
3. Are the product images loading?
4. Are any error messages visible on the page?
5. Is the layout broken or are elements overlapping?
6. Is anything else preventing a purchase?

Only report issues you can actually see. If the page looks fine, return an empty issues array.

Respond with JSON only:
{{
  "issues": [
    {{
      "type": "{'|'.join(AI_ISSUE_TYPES)}",
      "severity": "high|medium|low",
      "confidence": 0.0-1.0,
      "description": "what you see in the screenshot",
      "merchant_explanation": "plain language for the store owner",
      "suggested_fix": "actionable steps to fix"
    }}
  ],
  "page_healthy": true/false,
  "summary": "1-2 sentence summary for the merchant"
}}"""


class IssueConfirmationPrompt(BaseModel):
    """Screenshot confirmation of a single high-severity issue."""

    shop_domain: str
    product_title: Optional[str] = None
    issue_type: str
    title: str
    evidence: Dict[str, Any] = {}

    def to_prompt(self) -> str:
        return f"""You are a Shopify store advisor who helps non-technical merchants understand problems with their product pages. Analyze this screenshot of a product page.

Product: {self.product_title or "Unknown"}
Store: {self.shop_domain}

A scan detected this issue:
- Issue type: {self.issue_type}
- Title: {self.title}
- Evidence: {json.dumps(self.evidence, default=str)}

Provide:
1. CONFIRMATION: is this issue visible in the screenshot? (true/false)
2. CONFIDENCE: how confident are you? (0.0 to 1.0)
3. REASONING: brief technical reasoning, 1-2 sentences.
4. MERCHANT EXPLANATION: {MERCHANT_TONE}
5. SUGGESTED FIX: {FIX_GUIDANCE}

Respond with JSON only:
{{"confirmed": true/false, "confidence": 0.0-1.0, "reasoning": "...", "merchant_explanation": "...", "suggested_fix": "..."}}"""


class IssueExplanationPrompt(BaseModel):
    """Text-only explanation for issues that do not need visual confirmation."""

    shop_domain: str
    product_title: Optional[str] = None
    issue_type: str
    severity: str
    title: str
    evidence: Dict[str, Any] = {}

    def to_prompt(self) -> str:
        return f"""You are a Shopify store advisor who helps non-technical merchants understand problems with their product pages.

Product: {self.product_title or "Unknown"}
Store: {self.shop_domain}

A scan detected this issue:
- Issue type: {self.issue_type}
- Severity: {self.severity}
- Title: {self.title}
- Evidence: {json.dumps(self.evidence, default=str)}

Provide:
1. MERCHANT EXPLANATION: {MERCHANT_TONE}
2. SUGGESTED FIX: {FIX_GUIDANCE}

Respond with JSON only:
{{"merchant_explanation": "...", "suggested_fix": "..."}}"""
