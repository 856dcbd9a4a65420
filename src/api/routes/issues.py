"""Issue API endpoints."""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.deps import get_database, get_issue_or_404, require_admin_api_key
from src.db.models import Issue

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/issues", tags=["issues"])


class IssueResponse(BaseModel):
    """Response model for an issue."""
    id: int
    product_page_id: int
    scan_id: Optional[int]
    issue_type: str
    severity: str
    status: str
    title: str
    description: Optional[str]
    evidence: Dict[str, Any]
    occurrence_count: int
    first_detected_at: datetime
    last_detected_at: datetime
    acknowledged_at: Optional[datetime]
    acknowledged_by: Optional[str]
    resolved_at: Optional[datetime]
    detection_source: str
    ai_confirmed: Optional[bool]
    ai_confidence: Optional[float]
    ai_explanation: Optional[str]
    ai_suggested_fix: Optional[str]

    class Config:
        from_attributes = True


class AcknowledgeRequest(BaseModel):
    """Request model for acknowledging an issue."""
    acknowledged_by: Optional[str] = None


@router.get("/{issue_id}", response_model=IssueResponse)
async def get_issue(issue: Issue = Depends(get_issue_or_404)):
    """Get a single issue."""
    return IssueResponse.model_validate(issue)


@router.post("/{issue_id}/acknowledge", response_model=IssueResponse)
async def acknowledge_issue(
    request: Optional[AcknowledgeRequest] = None,
    issue: Issue = Depends(get_issue_or_404),
    db: AsyncSession = Depends(get_database),
    _admin: None = Depends(require_admin_api_key),
):
    """
    Acknowledge an open issue.

    Acknowledged issues stop alerting but stay active until a passing scan
    resolves them.
    """
    if issue.status == "resolved":
        raise HTTPException(status_code=409, detail="Issue is already resolved")

    if issue.status == "open":
        issue.acknowledge(by=request.acknowledged_by if request else None)
        await db.commit()
        logger.info(f"Issue {issue.id} acknowledged by {issue.acknowledged_by or 'unknown'}")

    return IssueResponse.model_validate(issue)
