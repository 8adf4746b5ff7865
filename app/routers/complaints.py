from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from app.database import get_db
from app.schemas.complaint import (
    ComplaintDetailResponse,
    ComplaintListResponse,
    ComplaintSessionResponse,
    ComplaintStatsResponse,
    Pagination,
    TranscriptEntryResponse,
)
from app.services import analytics_service, session_store

router = APIRouter(prefix="/complaints", tags=["complaints"])

STATUS_PATTERN = "^(open|submitted|cancelled)$"


def _page(rows, total: int, limit: int, skip: int) -> ComplaintListResponse:
    return ComplaintListResponse(
        complaints=[ComplaintSessionResponse.model_validate(row) for row in rows],
        pagination=Pagination(total=total, limit=limit, skip=skip, has_more=skip + len(rows) < total),
    )


@router.get("", response_model=ComplaintListResponse)
def list_complaints(
    status: Optional[str] = Query(default=None, pattern=STATUS_PATTERN),
    department: Optional[str] = None,
    limit: int = Query(default=50, ge=1, le=100),
    skip: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    rows, total = session_store.list_sessions(db, status=status, department=department, limit=limit, skip=skip)
    return _page(rows, total, limit, skip)


@router.get("/stats", response_model=ComplaintStatsResponse)
def complaint_stats(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    db: Session = Depends(get_db),
):
    return analytics_service.get_complaint_stats(db, start=start, end=end)


@router.get("/unanalyzed", response_model=ComplaintListResponse)
def list_unanalyzed(
    limit: int = Query(default=50, ge=1, le=100),
    skip: int = Query(default=0, ge=0),
    department: Optional[str] = None,
    db: Session = Depends(get_db),
):
    rows, total = session_store.list_unanalyzed(db, limit=limit, skip=skip, department=department)
    return _page(rows, total, limit, skip)


@router.get("/{identifier}", response_model=ComplaintDetailResponse)
def get_complaint(identifier: str, db: Session = Depends(get_db)):
    """Look up by session id or complaint id."""
    session = session_store.find_session(db, identifier)
    if session is None:
        raise HTTPException(status_code=404, detail=f"Complaint not found: {identifier}")

    base = ComplaintSessionResponse.model_validate(session).model_dump()
    return ComplaintDetailResponse(
        **base,
        transcript=[
            TranscriptEntryResponse.model_validate(entry) for entry in session_store.list_entries(db, session.id)
        ],
        analysis=session.analysis.to_summary() if session.analysis is not None else None,
    )
