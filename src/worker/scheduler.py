"""APScheduler job definitions."""

import logging
from datetime import datetime, timedelta
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from src.config import settings
from src.worker.tasks import task_runner

logger = logging.getLogger(__name__)

# Checks for due pages this often; each page is scanned once per scan_interval_minutes
DUE_PAGE_CHECK_MINUTES = 15

scheduler: Optional[AsyncIOScheduler] = None


def get_scheduler() -> AsyncIOScheduler:
    global scheduler
    if scheduler is None:
        scheduler = AsyncIOScheduler()
    return scheduler


def setup_scheduler() -> AsyncIOScheduler:
    """
    Setup and configure APScheduler.

    Scheduling overview:
    - Due-page sweep every DUE_PAGE_CHECK_MINUTES (or the scan interval, if shorter)
    - One-shot rescans are added on demand by schedule_rescan()

    Returns:
        Configured scheduler instance
    """
    sched = get_scheduler()
    check_minutes = max(1, min(DUE_PAGE_CHECK_MINUTES, settings.scan_interval_minutes))

    sched.add_job(
        task_runner.scan_due_pages,
        IntervalTrigger(minutes=check_minutes),
        id="scan_due_pages",
        name="Scan product pages that are due",
        max_instances=1,  # Prevent overlapping sweeps
        coalesce=True,
        misfire_grace_time=settings.scheduler_misfire_grace_seconds,
        replace_existing=True,
    )

    logger.info(
        f"Scheduler configured: due-page sweep every {check_minutes} minutes, "
        f"pages rescanned every {settings.scan_interval_minutes} minutes"
    )
    return sched


def schedule_rescan(
    page_id: int,
    delay_minutes: Optional[int] = None,
    scan_depth: Optional[str] = None,
) -> str:
    """
    Queue a one-shot scan of a page.

    A pending rescan for the same page is replaced rather than duplicated.

    Returns:
        Job id
    """
    delay = settings.rescan_delay_minutes if delay_minutes is None else delay_minutes
    run_at = datetime.now() + timedelta(minutes=delay)
    job_id = f"rescan_page_{page_id}"

    get_scheduler().add_job(
        task_runner.scan_page,
        DateTrigger(run_date=run_at),
        args=[page_id],
        kwargs={"scan_depth": scan_depth},
        id=job_id,
        name=f"Rescan product page {page_id}",
        misfire_grace_time=settings.scheduler_misfire_grace_seconds,
        replace_existing=True,
    )
    logger.info(f"Scheduled rescan of page {page_id} at {run_at.isoformat(timespec='seconds')}")
    return job_id
