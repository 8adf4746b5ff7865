from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class SentimentGroup(BaseModel):
    sentiment: str
    count: int
    avg_score: Optional[float] = None
    avg_urgency: Optional[float] = None


class CategoryGroup(BaseModel):
    category: str
    count: int
    avg_severity_score: Optional[float] = None
    avg_urgency: Optional[float] = None


class KeywordGroup(BaseModel):
    word: str
    total_frequency: int
    avg_relevance: float
    complaint_count: int


class AnalyticsFilters(BaseModel):
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    department: Optional[str] = None


class AnalyticsResponse(BaseModel):
    total_analyzed: int
    sentiment_distribution: list[SentimentGroup]
    category_stats: list[CategoryGroup]
    keywords: list[KeywordGroup]
    filters: AnalyticsFilters
