"""Scan record API endpoints."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from src.api.deps import get_scan_or_404
from src.db.models import Scan

router = APIRouter(prefix="/api/scans", tags=["scans"])


class ScanResponse(BaseModel):
    """Response model for a scan with its detection results."""
    id: int
    product_page_id: int
    status: str
    scan_depth: str
    started_at: Optional[datetime]
    completed_at: Optional[datetime]
    error_message: Optional[str]
    screenshot_key: Optional[str]
    page_load_time_ms: Optional[int]
    js_errors: List[Dict[str, Any]]
    network_errors: List[Dict[str, Any]]
    detection_results: List[Dict[str, Any]]
    ai_page_summary: Optional[str]
    ai_page_healthy: Optional[bool]
    created_at: datetime

    class Config:
        from_attributes = True


@router.get("/{scan_id}", response_model=ScanResponse)
async def get_scan(scan: Scan = Depends(get_scan_or_404)):
    """Get a scan record. The HTML snapshot and console log are omitted."""
    return ScanResponse.model_validate(scan)
