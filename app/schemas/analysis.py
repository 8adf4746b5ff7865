from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field

SentimentLabel = Literal["positive", "neutral", "negative"]
Severity = Literal["low", "medium", "high", "critical"]
Category = Literal[
    "workplace_harassment",
    "discrimination",
    "unfair_treatment",
    "work_conditions",
    "management_issues",
    "compensation_benefits",
    "workload_stress",
    "safety_concerns",
    "policy_violations",
    "communication_issues",
    "other",
]


class SentimentAnalysis(BaseModel):
    label: SentimentLabel = "neutral"
    score: float = Field(default=0.0, ge=-1.0, le=1.0)
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)


class IssueClassification(BaseModel):
    primary_category: Category = "other"
    secondary_categories: list[Category] = Field(default_factory=list, max_length=3)
    severity: Severity = "medium"
    urgency: int = Field(default=5, ge=1, le=10)


class Keyword(BaseModel):
    word: str = Field(max_length=100)
    frequency: int = Field(default=1, ge=1)
    relevance: float = Field(default=0.5, ge=0.0, le=1.0)


class AnalysisPayload(BaseModel):
    """Sanitized model output; every field is within its documented bound."""

    sentiment: SentimentAnalysis = Field(default_factory=SentimentAnalysis)
    classification: IssueClassification = Field(default_factory=IssueClassification)
    keywords: list[Keyword] = Field(default_factory=list, max_length=50)
    key_phrases: list[str] = Field(default_factory=list, max_length=20)
    emotional_indicators: list[str] = Field(default_factory=list, max_length=20)
    summary: str = Field(default="No summary provided", max_length=1000)
    recommended_actions: list[str] = Field(default_factory=list, max_length=5)


class AnalysisSummaryResponse(BaseModel):
    complaint_id: str
    session_id: str
    employee_name: Optional[str] = None
    department: Optional[str] = None
    sentiment: SentimentLabel
    sentiment_score: float
    primary_issue: Category
    severity: Severity
    urgency_score: int
    complaint_date: datetime
    ai_summary: str
    message_count: int


class AnalysisDetailResponse(BaseModel):
    summary: AnalysisSummaryResponse
    word_cloud: dict
    full_analysis: dict


class ProcessAnalysisResponse(BaseModel):
    success: bool
    message: str
    error_code: Optional[str] = None
    analysis: Optional[AnalysisSummaryResponse] = None


class BatchRequest(BaseModel):
    session_ids: list[str] = Field(min_length=1)
    concurrency: int = Field(default=3, ge=1, le=5)


class CatchUpRequest(BaseModel):
    limit: int = Field(default=20, ge=1, le=50)
    department: Optional[str] = None


class BatchItem(BaseModel):
    session_id: str
    complaint_id: Optional[str] = None
    reason: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    retryable: Optional[bool] = None


class BatchResponse(BaseModel):
    total: int
    processed: list[BatchItem]
    errors: list[BatchItem]
    skipped: list[BatchItem]
