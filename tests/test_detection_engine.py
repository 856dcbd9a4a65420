"""Tests for the detection engine issue lifecycle."""

import pytest
from sqlalchemy import select

from src.db.models import Issue
from src.detect.engine import (
    Created,
    DeEscalated,
    DetectionEngine,
    Escalated,
    Resolved,
    Skipped,
    Unchanged,
)
from src.detect.detectors.add_to_cart import ATC_STRUCTURE_SCRIPT, AddToCartDetector
from src.detect.detectors.liquid_errors import LiquidErrorDetector
from src.detect.result import DetectionResult, DetectionStatus
from tests.factories import FakeBrowserSession, make_page, make_scan, make_shop


def result(check="add_to_cart", status=DetectionStatus.FAIL, confidence=0.9, message="Broken"):
    return DetectionResult(check=check, status=status, confidence=confidence, message=message)


async def _setup(db):
    shop = await make_shop(db)
    page = await make_page(db, shop)
    scan = await make_scan(db, page)
    return page, scan


async def _issues(db, page):
    rows = await db.execute(select(Issue).where(Issue.product_page_id == page.id).order_by(Issue.id))
    return list(rows.scalars().all())


@pytest.mark.asyncio
async def test_first_failure_creates_open_issue(db_session):
    page, scan = await _setup(db_session)
    engine = DetectionEngine(db_session, page, scan)

    report = await engine.process([result()])

    assert isinstance(report.outcomes[0], Created)
    issue = report.issues[0]
    assert issue.issue_type == "missing_add_to_cart"
    assert issue.severity == "high"
    assert issue.status == "open"
    assert issue.occurrence_count == 1
    assert issue.scan_id == scan.id
    assert issue.evidence["confidence"] == 0.9
    assert issue.should_alert() is False
    assert page.status == "critical"
    assert report.page_status == "critical"


@pytest.mark.asyncio
async def test_warning_on_high_check_opens_medium_issue(db_session):
    page, scan = await _setup(db_session)
    engine = DetectionEngine(db_session, page, scan)

    report = await engine.process([result(check="price_visibility", status=DetectionStatus.WARNING, confidence=0.8)])

    issue = report.issues[0]
    assert issue.issue_type == "missing_price"
    assert issue.severity == "medium"
    assert page.status == "warning"


@pytest.mark.asyncio
async def test_repeat_failure_merges_and_becomes_alertable(db_session):
    page, scan = await _setup(db_session)
    await DetectionEngine(db_session, page, scan).process([result()])

    second_scan = await make_scan(db_session, page)
    report = await DetectionEngine(db_session, page, second_scan).process([result(message="Still broken")])

    assert isinstance(report.outcomes[0], Unchanged)
    issues = await _issues(db_session, page)
    assert len(issues) == 1
    issue = issues[0]
    assert issue.occurrence_count == 2
    assert issue.description == "Still broken"
    assert issue.scan_id == second_scan.id
    assert issue.should_alert() is True


@pytest.mark.asyncio
async def test_pass_resolves_open_and_acknowledged_issues(db_session):
    page, scan = await _setup(db_session)
    engine = DetectionEngine(db_session, page, scan)
    report = await engine.process([result()])
    report.issues[0].acknowledge(by="merchant@example.com")
    await db_session.flush()

    report = await engine.process([result(status=DetectionStatus.PASS)])

    assert isinstance(report.outcomes[0], Resolved)
    issue = (await _issues(db_session, page))[0]
    assert issue.status == "resolved"
    assert issue.resolved_at is not None
    assert page.status == "healthy"


@pytest.mark.asyncio
async def test_pass_with_nothing_open_is_skipped(db_session):
    page, scan = await _setup(db_session)

    report = await DetectionEngine(db_session, page, scan).process([result(status=DetectionStatus.PASS)])

    assert report.outcomes == [Skipped(reason="nothing_to_resolve")]
    assert page.status == "healthy"


@pytest.mark.asyncio
async def test_low_confidence_failure_is_not_recorded(db_session):
    page, scan = await _setup(db_session)

    report = await DetectionEngine(db_session, page, scan).process([result(confidence=0.5)])

    assert report.outcomes == [Skipped(reason="low_confidence")]
    assert await _issues(db_session, page) == []


@pytest.mark.asyncio
async def test_inconclusive_leaves_existing_issue_untouched(db_session):
    page, scan = await _setup(db_session)
    engine = DetectionEngine(db_session, page, scan)
    await engine.process([result()])

    report = await engine.process([result(status=DetectionStatus.INCONCLUSIVE, confidence=0.0)])

    assert report.outcomes == [Skipped(reason="inconclusive")]
    issue = (await _issues(db_session, page))[0]
    assert issue.status == "open"
    assert issue.occurrence_count == 1


@pytest.mark.asyncio
async def test_escalation_updates_issue_in_place(db_session):
    page, scan = await _setup(db_session)
    engine = DetectionEngine(db_session, page, scan)
    first = await engine.process([result(check="price_visibility", status=DetectionStatus.WARNING)])
    issue = first.issues[0]
    issue.ai_confirmed = True
    issue.ai_confidence = 0.9

    report = await engine.process([result(check="price_visibility", status=DetectionStatus.FAIL)])

    outcome = report.outcomes[0]
    assert isinstance(outcome, Escalated)
    assert outcome.previous_severity == "medium"
    assert outcome.issue.id == issue.id
    assert issue.severity == "high"
    assert issue.occurrence_count == 2
    assert issue.ai_confirmed is None
    assert issue.ai_confidence is None


@pytest.mark.asyncio
async def test_de_escalation_resolves_and_opens_lower_issue(db_session):
    page, scan = await _setup(db_session)
    engine = DetectionEngine(db_session, page, scan)
    await engine.process([result(check="price_visibility", status=DetectionStatus.FAIL)])

    report = await engine.process([result(check="price_visibility", status=DetectionStatus.WARNING)])

    outcome = report.outcomes[0]
    assert isinstance(outcome, DeEscalated)
    assert outcome.resolved.status == "resolved"
    assert outcome.issue.severity == "medium"
    assert outcome.issue.occurrence_count == 1

    issues = await _issues(db_session, page)
    assert [i.status for i in issues] == ["resolved", "open"]
    assert page.status == "warning"


@pytest.mark.asyncio
async def test_unmapped_check_is_skipped(db_session):
    page, scan = await _setup(db_session)

    report = await DetectionEngine(db_session, page, scan).process([result(check="mystery")])

    assert isinstance(report.outcomes[0], Skipped)
    assert await _issues(db_session, page) == []


@pytest.mark.asyncio
async def test_slow_page_opens_low_issue_and_fast_page_resolves_it(db_session):
    page, scan = await _setup(db_session)
    engine = DetectionEngine(db_session, page, scan)

    report = await engine.process([], page_load_time_ms=engine.slow_page_threshold_ms + 2500)

    issue = report.issues[0]
    assert issue.issue_type == "slow_page_load"
    assert issue.severity == "low"
    assert page.status == "warning"

    report = await engine.process([], page_load_time_ms=800)

    assert isinstance(report.outcomes[0], Resolved)
    assert page.status == "healthy"


@pytest.mark.asyncio
async def test_variant_keyword_errors_open_high_issue(db_session):
    page, scan = await _setup(db_session)
    engine = DetectionEngine(db_session, page, scan)

    report = await engine.process(
        [],
        js_errors=[
            {"message": "TypeError: variant is undefined"},
            {"message": "google-analytics option failed"},
            {"message": "ReferenceError: foo is not defined"},
        ],
    )

    issue = report.issues[0]
    assert issue.issue_type == "variant_selector_error"
    assert issue.severity == "high"
    assert issue.evidence["technical_details"]["errors"] == ["TypeError: variant is undefined"]


@pytest.mark.asyncio
async def test_no_variant_errors_resolves_open_issue(db_session):
    page, scan = await _setup(db_session)
    engine = DetectionEngine(db_session, page, scan)
    await engine.process([], js_errors=[{"message": "swatch click handler failed"}])

    report = await engine.process([], js_errors=[])

    assert isinstance(report.outcomes[0], Resolved)


@pytest.mark.asyncio
async def test_page_status_rolls_up_worst_active_issue(db_session):
    page, scan = await _setup(db_session)
    engine = DetectionEngine(db_session, page, scan)

    await engine.process([
        result(check="product_images", status=DetectionStatus.FAIL),
        result(check="liquid_errors", status=DetectionStatus.WARNING),
    ])
    assert page.status == "warning"

    await engine.process([result(check="javascript_errors")])
    assert page.status == "critical"

    await engine.process([
        result(check="javascript_errors", status=DetectionStatus.PASS),
        result(check="product_images", status=DetectionStatus.PASS),
        result(check="liquid_errors", status=DetectionStatus.PASS),
    ])
    assert page.status == "healthy"


@pytest.mark.asyncio
async def test_one_active_issue_per_type(db_session):
    page, scan = await _setup(db_session)
    engine = DetectionEngine(db_session, page, scan)

    for _ in range(3):
        await engine.process([result(check="liquid_errors", status=DetectionStatus.FAIL)])

    issues = await _issues(db_session, page)
    assert len(issues) == 1
    assert issues[0].occurrence_count == 3


@pytest.mark.asyncio
async def test_page_without_add_to_cart_alerts_on_second_scan(db_session):
    page, scan = await _setup(db_session)
    session = FakeBrowserSession(evaluations={ATC_STRUCTURE_SCRIPT: {"button_found": False, "form_found": False}})

    first = await AddToCartDetector(session).perform()
    report = await DetectionEngine(db_session, page, scan).process([first])
    issue = report.issues[0]
    assert (issue.issue_type, issue.severity, issue.occurrence_count) == ("missing_add_to_cart", "high", 1)
    assert issue.should_alert() is False

    second = await AddToCartDetector(session).perform()
    await DetectionEngine(db_session, page, await make_scan(db_session, page)).process([second])
    assert issue.occurrence_count == 2
    assert issue.should_alert() is True


@pytest.mark.asyncio
async def test_missing_translation_opens_single_medium_liquid_issue(db_session):
    page, scan = await _setup(db_session)
    session = FakeBrowserSession(html="<html><body><p>Translation missing: x.y</p></body></html>")

    liquid = await LiquidErrorDetector(session).perform()
    report = await DetectionEngine(db_session, page, scan).process([
        result(check="add_to_cart", status=DetectionStatus.PASS, confidence=1.0),
        result(check="price_visibility", status=DetectionStatus.PASS, confidence=1.0),
        liquid,
    ])

    issues = await _issues(db_session, page)
    assert [(i.issue_type, i.severity) for i in issues] == [("liquid_error", "medium")]
    assert report.page_status == "warning"


@pytest.mark.asyncio
async def test_low_confidence_warning_creates_nothing(db_session):
    page, scan = await _setup(db_session)

    await DetectionEngine(db_session, page, scan).process(
        [result(status=DetectionStatus.WARNING, confidence=0.5)]
    )

    assert await _issues(db_session, page) == []


@pytest.mark.asyncio
async def test_slow_load_then_fast_load(db_session):
    page, scan = await _setup(db_session)
    engine = DetectionEngine(db_session, page, scan)

    await engine.process([], page_load_time_ms=7500)
    issue = (await _issues(db_session, page))[0]
    assert (issue.issue_type, issue.severity) == ("slow_page_load", "low")

    await engine.process([], page_load_time_ms=1500)
    assert issue.status == "resolved"
