from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.database import get_db
from app.schemas.analytics import AnalyticsResponse
from app.services import analytics_service

router = APIRouter(tags=["analytics"])


@router.get("/analytics", response_model=AnalyticsResponse)
def get_analytics(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    department: Optional[str] = None,
    keyword_limit: int = Query(default=analytics_service.DEFAULT_KEYWORD_LIMIT, ge=1, le=analytics_service.MAX_KEYWORD_LIMIT),
    db: Session = Depends(get_db),
):
    return analytics_service.get_analytics(db, start=start, end=end, department=department, keyword_limit=keyword_limit)
