"""Product page API endpoints."""

import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.deps import get_database, get_page_or_404, require_admin_api_key
from src.api.routes.issues import IssueResponse
from src.db.models import ACTIVE_ISSUE_STATUSES, Issue, ProductPage, Scan, Shop
from src.worker.tasks import task_runner

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/pages", tags=["pages"])


class ProductPageResponse(BaseModel):
    """Response model for a monitored product page."""
    id: int
    shop_id: int
    shop_domain: Optional[str] = None
    handle: str
    title: Optional[str]
    url: str
    monitoring_enabled: bool
    status: str
    last_scanned_at: Optional[datetime]
    open_issue_count: int = 0
    latest_scan_id: Optional[int] = None

    class Config:
        from_attributes = True


class TriggerScanRequest(BaseModel):
    """Request model for an on-demand scan."""
    scan_depth: Optional[str] = None  # quick, deep, or None for automatic


@router.get("/{page_id}", response_model=ProductPageResponse)
async def get_page(
    page: ProductPage = Depends(get_page_or_404),
    db: AsyncSession = Depends(get_database),
):
    """Get a product page with its health status."""
    shop = await db.get(Shop, page.shop_id)

    result = await db.execute(
        select(Issue.id).where(
            Issue.product_page_id == page.id,
            Issue.status.in_(ACTIVE_ISSUE_STATUSES),
        )
    )
    open_issue_count = len(result.all())

    latest_scan_id = await db.scalar(
        select(Scan.id)
        .where(Scan.product_page_id == page.id)
        .order_by(Scan.id.desc())
        .limit(1)
    )

    return ProductPageResponse(
        id=page.id,
        shop_id=page.shop_id,
        shop_domain=shop.domain if shop else None,
        handle=page.handle,
        title=page.title,
        url=page.url,
        monitoring_enabled=page.monitoring_enabled,
        status=page.status,
        last_scanned_at=page.last_scanned_at,
        open_issue_count=open_issue_count,
        latest_scan_id=latest_scan_id,
    )


@router.get("/{page_id}/issues", response_model=List[IssueResponse])
async def list_page_issues(
    status: Optional[str] = None,
    include_resolved: bool = False,
    page: ProductPage = Depends(get_page_or_404),
    db: AsyncSession = Depends(get_database),
):
    """List issues for a product page, open and acknowledged by default."""
    query = select(Issue).where(Issue.product_page_id == page.id)
    if status:
        query = query.where(Issue.status == status)
    elif not include_resolved:
        query = query.where(Issue.status.in_(ACTIVE_ISSUE_STATUSES))
    query = query.order_by(Issue.last_detected_at.desc())

    result = await db.execute(query)
    return [IssueResponse.model_validate(issue) for issue in result.scalars().all()]


@router.post("/{page_id}/scan", status_code=202)
async def trigger_page_scan(
    background_tasks: BackgroundTasks,
    request: Optional[TriggerScanRequest] = None,
    page: ProductPage = Depends(get_page_or_404),
    _admin: None = Depends(require_admin_api_key),
):
    """Queue a scan of this page to run in the background."""
    scan_depth = request.scan_depth if request else None
    if scan_depth not in (None, "quick", "deep"):
        raise HTTPException(status_code=422, detail="scan_depth must be 'quick' or 'deep'")
    if not page.monitoring_enabled:
        raise HTTPException(status_code=409, detail="Monitoring is disabled for this page")

    background_tasks.add_task(task_runner.scan_page, page.id, scan_depth=scan_depth)
    logger.info(f"Manual scan queued for page {page.id} (depth={scan_depth or 'auto'})")

    return {
        "message": "Scan queued",
        "page_id": page.id,
        "scan_depth": scan_depth or "auto",
    }
