"""FastAPI dependencies."""

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from src.config import settings
from src.db.models import Issue, ProductPage, Scan
from src.db.session import get_db


async def get_database() -> AsyncSession:
    """Dependency for database session."""
    async for session in get_db():
        yield session
        break  # FastAPI owns the session lifecycle


async def require_admin_api_key(
    x_admin_api_key: str = Header(..., alias="X-Admin-API-Key")
) -> None:
    """
    Require the admin API key on endpoints that change state.

    Raises:
        HTTPException: 503 if no key is configured, 403 if the key is wrong
    """
    if not settings.admin_api_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin API key not configured",
        )
    if x_admin_api_key != settings.admin_api_key:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid admin API key")


async def get_page_or_404(page_id: int, db: AsyncSession = Depends(get_database)) -> ProductPage:
    page = await db.get(ProductPage, page_id)
    if page is None:
        raise HTTPException(status_code=404, detail="Product page not found")
    return page


async def get_issue_or_404(issue_id: int, db: AsyncSession = Depends(get_database)) -> Issue:
    issue = await db.get(Issue, issue_id)
    if issue is None:
        raise HTTPException(status_code=404, detail="Issue not found")
    return issue


async def get_scan_or_404(scan_id: int, db: AsyncSession = Depends(get_database)) -> Scan:
    scan = await db.get(Scan, scan_id)
    if scan is None:
        raise HTTPException(status_code=404, detail="Scan not found")
    return scan
