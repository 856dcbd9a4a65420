#!/usr/bin/env python3
"""
Run every page check against a single URL without touching the database.

Usage:
    python scripts/scan_url.py https://example.myshopify.com/products/jacket
    python scripts/scan_url.py https://example.myshopify.com/products/jacket --deep --json
"""

import asyncio
import json
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.browser.session import BrowserSession
from src.errors import BrowserConfigurationError
from src.worker.scanner import TIER1_DETECTORS

STATUS_MARKERS = {
    "pass": "PASS",
    "fail": "FAIL",
    "warning": "WARN",
    "inconclusive": "????",
}


async def scan_url(url: str, deep: bool = False, as_json: bool = False) -> int:
    """
    Scan one URL and print one line per check.

    Returns:
        Process exit code: 0 all passed, 1 a check failed or warned, 2 page could not be loaded
    """
    scan_depth = "deep" if deep else "quick"

    try:
        async with BrowserSession() as session:
            nav = await session.navigate_to(url)
            if not nav.success:
                reason = "store is password-protected" if nav.password_protected else nav.error
                print(f"Could not load {url}: {reason}", file=sys.stderr)
                return 2

            results = []
            for detector_class in TIER1_DETECTORS:
                detector = detector_class(session, scan_depth=scan_depth)
                results.append(await detector.perform())
            load_time_ms = nav.load_time_ms
    except BrowserConfigurationError as e:
        print(f"Browser configuration error: {e}", file=sys.stderr)
        return 2

    if as_json:
        print(json.dumps([r.to_dict() for r in results], indent=2, default=str))
    else:
        print(f"{url} ({scan_depth} scan, loaded in {load_time_ms or 0}ms)")
        for result in results:
            marker = STATUS_MARKERS.get(result.status.value, result.status.value)
            print(f"  [{marker}] {result.check:<18} {result.confidence:.2f}  {result.message}")

    return 1 if any(r.status.is_problem for r in results) else 0


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Run product page checks against one URL")
    parser.add_argument("url", help="Absolute product page URL")
    parser.add_argument(
        "--deep",
        action="store_true",
        help="Also exercise the add-to-cart funnel (adds and removes a cart item)",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print results in the stored wire format",
    )

    args = parser.parse_args()
    sys.exit(asyncio.run(scan_url(args.url, deep=args.deep, as_json=args.json)))
