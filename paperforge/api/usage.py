"""Cost ledger API endpoints."""

from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from paperforge.db.database import get_db
from paperforge.models.usage_models import (
    UsageRecordListResponse,
    UsageRecordResponse,
    UsageSummaryResponse,
)
from paperforge.services.usage_service import UsageService

router = APIRouter(prefix="/api/usage", tags=["usage"])


@router.get("/daily/{day}", response_model=UsageSummaryResponse, status_code=status.HTTP_200_OK)
async def get_daily_usage(day: str, db: Session = Depends(get_db)):
    """Token and cost totals for one day (YYYY-MM-DD)."""
    return UsageService(db).get_daily_summary(day)


@router.get(
    "/monthly/{month}", response_model=UsageSummaryResponse, status_code=status.HTTP_200_OK
)
async def get_monthly_usage(month: str, db: Session = Depends(get_db)):
    """Token and cost totals for one month (YYYY-MM)."""
    return UsageService(db).get_monthly_summary(month)


@router.get("/records", response_model=UsageRecordListResponse, status_code=status.HTTP_200_OK)
async def list_usage_records(
    paper_id: Optional[str] = Query(None, description="Filter by paper"),
    institute_id: Optional[str] = Query(None, description="Filter by institute"),
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db),
):
    """List ledger records, newest first."""
    records = UsageService(db).list_records(
        paper_id=paper_id, institute_id=institute_id, limit=limit
    )
    return UsageRecordListResponse(
        records=[UsageRecordResponse.model_validate(r) for r in records],
        total=len(records),
    )
