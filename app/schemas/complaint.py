from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict

from app.schemas.analysis import AnalysisSummaryResponse


class TranscriptEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    seq: int
    timestamp: datetime
    direction: str
    kind: str
    body: str


class ComplaintSessionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    complaint_id: str
    user_id: str
    status: str
    department: Optional[str] = None
    start_time: datetime
    end_time: Optional[datetime] = None
    last_activity_at: datetime
    entry_count: int
    analysis_status: Optional[str] = None
    analysis_attempts: int = 0
    analysis_last_error: Optional[str] = None


class ComplaintDetailResponse(ComplaintSessionResponse):
    transcript: list[TranscriptEntryResponse] = []
    analysis: Optional[AnalysisSummaryResponse] = None


class Pagination(BaseModel):
    total: int
    limit: int
    skip: int
    has_more: bool


class ComplaintListResponse(BaseModel):
    complaints: list[ComplaintSessionResponse]
    pagination: Pagination


class DepartmentCount(BaseModel):
    department: str
    count: int


class MonthCount(BaseModel):
    year: int
    month: int
    count: int


class ComplaintStatsResponse(BaseModel):
    total: int
    open: int
    submitted: int
    cancelled: int
    department_breakdown: list[DepartmentCount]
    monthly_breakdown: list[MonthCount]
