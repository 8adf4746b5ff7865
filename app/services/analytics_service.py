"""Read-side rollups over analysis records and complaint sessions."""

from collections import defaultdict
from datetime import datetime
from typing import Optional

from sqlalchemy import case, func
from sqlalchemy.orm import Session

from app.models import AnalysisRecord, ComplaintSession
from app.services.session_store import ensure_timezone
from app.services.state_machine import SessionState

DEFAULT_KEYWORD_LIMIT = 100
MAX_KEYWORD_LIMIT = 200

SEVERITY_SCORES = {"low": 1, "medium": 2, "high": 3, "critical": 4}


def _filter_analysis(query, start: Optional[datetime], end: Optional[datetime], department: Optional[str]):
    if start is not None:
        query = query.filter(AnalysisRecord.complaint_start_time >= start)
    if end is not None:
        query = query.filter(AnalysisRecord.complaint_start_time <= end)
    if department:
        query = query.filter(AnalysisRecord.department == department)
    return query


def _avg(value) -> Optional[float]:
    return float(value) if value is not None else None


def get_sentiment_distribution(
    db: Session,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    department: Optional[str] = None,
) -> list[dict]:
    count = func.count(AnalysisRecord.id)
    query = db.query(
        AnalysisRecord.sentiment_label,
        count,
        func.avg(AnalysisRecord.sentiment_score),
        func.avg(AnalysisRecord.urgency),
    )
    rows = (
        _filter_analysis(query, start, end, department)
        .group_by(AnalysisRecord.sentiment_label)
        .order_by(count.desc(), AnalysisRecord.sentiment_label)
        .all()
    )
    return [
        {
            "sentiment": label,
            "count": total,
            "avg_score": _avg(avg_score),
            "avg_urgency": _avg(avg_urgency),
        }
        for label, total, avg_score, avg_urgency in rows
    ]


def get_category_stats(
    db: Session,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    department: Optional[str] = None,
) -> list[dict]:
    severity_score = case(
        *[(AnalysisRecord.severity == name, score) for name, score in SEVERITY_SCORES.items()],
        else_=None,
    )
    count = func.count(AnalysisRecord.id)
    query = db.query(
        AnalysisRecord.primary_category,
        count,
        func.avg(severity_score),
        func.avg(AnalysisRecord.urgency),
    )
    rows = (
        _filter_analysis(query, start, end, department)
        .group_by(AnalysisRecord.primary_category)
        .order_by(count.desc(), AnalysisRecord.primary_category)
        .all()
    )
    return [
        {
            "category": category,
            "count": total,
            "avg_severity_score": _avg(avg_severity),
            "avg_urgency": _avg(avg_urgency),
        }
        for category, total, avg_severity, avg_urgency in rows
    ]


def get_keyword_ranking(
    db: Session,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    department: Optional[str] = None,
    limit: int = DEFAULT_KEYWORD_LIMIT,
) -> list[dict]:
    """Keywords grouped case-insensitively, by total frequency then mean relevance."""
    limit = max(1, min(int(limit), MAX_KEYWORD_LIMIT))
    query = _filter_analysis(db.query(AnalysisRecord.keywords), start, end, department)

    groups: dict[str, dict] = {}
    for (keywords,) in query.all():
        for keyword in keywords or []:
            word = str(keyword.get("word") or "").strip()
            if not word:
                continue
            key = word.casefold()
            group = groups.setdefault(
                key, {"word": key, "total_frequency": 0, "relevance_sum": 0.0, "complaint_count": 0}
            )
            group["total_frequency"] += int(keyword.get("frequency") or 1)
            group["relevance_sum"] += float(keyword.get("relevance") or 0.0)
            group["complaint_count"] += 1

    ranking = [
        {
            "word": group["word"],
            "total_frequency": group["total_frequency"],
            "avg_relevance": group["relevance_sum"] / group["complaint_count"],
            "complaint_count": group["complaint_count"],
        }
        for group in groups.values()
    ]
    ranking.sort(key=lambda item: (-item["total_frequency"], -item["avg_relevance"], item["word"]))
    return ranking[:limit]


def get_analytics(
    db: Session,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    department: Optional[str] = None,
    keyword_limit: int = DEFAULT_KEYWORD_LIMIT,
) -> dict:
    sentiment = get_sentiment_distribution(db, start, end, department)
    return {
        "total_analyzed": sum(item["count"] for item in sentiment),
        "sentiment_distribution": sentiment,
        "category_stats": get_category_stats(db, start, end, department),
        "keywords": get_keyword_ranking(db, start, end, department, keyword_limit),
        "filters": {"start": start, "end": end, "department": department},
    }


def get_complaint_stats(db: Session, start: Optional[datetime] = None, end: Optional[datetime] = None) -> dict:
    """Session counts in a start-time range with department and monthly breakdowns."""
    query = db.query(ComplaintSession.status, ComplaintSession.department, ComplaintSession.start_time)
    if start is not None:
        query = query.filter(ComplaintSession.start_time >= start)
    if end is not None:
        query = query.filter(ComplaintSession.start_time <= end)

    by_status: dict[str, int] = defaultdict(int)
    by_department: dict[str, int] = defaultdict(int)
    by_month: dict[tuple[int, int], int] = defaultdict(int)
    total = 0
    for status, department, start_time in query.all():
        total += 1
        by_status[status] += 1
        by_department[department or "Unknown"] += 1
        start_time = ensure_timezone(start_time)
        by_month[(start_time.year, start_time.month)] += 1

    return {
        "total": total,
        "open": by_status[SessionState.OPEN.value],
        "submitted": by_status[SessionState.SUBMITTED.value],
        "cancelled": by_status[SessionState.CANCELLED.value],
        "department_breakdown": [
            {"department": name, "count": count}
            for name, count in sorted(by_department.items(), key=lambda item: (-item[1], item[0]))
        ],
        "monthly_breakdown": [
            {"year": year, "month": month, "count": count} for (year, month), count in sorted(by_month.items())
        ],
    }
