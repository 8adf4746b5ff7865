from sqlalchemy import Column, DateTime, Float, ForeignKey, Index, Integer, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from app.database import Base, JSONType


class AnalysisRecord(Base):
    __tablename__ = "analysis_records"

    id = Column(Text, primary_key=True)  # aitag_<session_id>
    session_id = Column(Text, ForeignKey("complaint_sessions.id"), nullable=False, unique=True)
    complaint_id = Column(Text, nullable=False, index=True)
    user_id = Column(Text, nullable=False)
    employee_display_name = Column(Text)
    department = Column(Text)

    sentiment_label = Column(Text, nullable=False)  # positive, neutral, negative
    sentiment_score = Column(Float, nullable=False)
    sentiment_confidence = Column(Float, nullable=False)

    primary_category = Column(Text, nullable=False)
    secondary_categories = Column(JSONType, nullable=False, default=list)
    severity = Column(Text, nullable=False)  # low, medium, high, critical
    urgency = Column(Integer, nullable=False)

    keywords = Column(JSONType, nullable=False, default=list)  # [{word, frequency, relevance}]
    key_phrases = Column(JSONType, nullable=False, default=list)
    emotional_indicators = Column(JSONType, nullable=False, default=list)
    summary = Column(Text, nullable=False)
    recommended_actions = Column(JSONType, nullable=False, default=list)

    message_count = Column(Integer, nullable=False)
    complaint_text_length = Column(Integer, nullable=False)
    complaint_start_time = Column(DateTime(timezone=True), nullable=False)
    complaint_end_time = Column(DateTime(timezone=True))

    processing_meta = Column(JSONType, nullable=False, default=dict)  # model, latency_ms, usage, attempts, errors
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    session = relationship("ComplaintSession", back_populates="analysis")

    __table_args__ = (
        Index("ix_analysis_records_start", "complaint_start_time"),
        Index("ix_analysis_records_department_start", "department", "complaint_start_time"),
    )

    def to_summary(self) -> dict:
        """Compact view used by dashboard lists."""
        return {
            "complaint_id": self.complaint_id,
            "session_id": self.session_id,
            "employee_name": self.employee_display_name,
            "department": self.department,
            "sentiment": self.sentiment_label,
            "sentiment_score": self.sentiment_score,
            "primary_issue": self.primary_category,
            "severity": self.severity,
            "urgency_score": self.urgency,
            "complaint_date": self.complaint_start_time,
            "ai_summary": self.summary,
            "message_count": self.message_count,
        }

    def to_word_cloud(self) -> dict:
        return {
            "keywords": [
                {"text": k.get("word"), "value": k.get("frequency"), "weight": k.get("relevance")}
                for k in (self.keywords or [])
            ],
            "key_phrases": list(self.key_phrases or []),
            "emotional_indicators": list(self.emotional_indicators or []),
        }

    def to_full_analysis(self) -> dict:
        return {
            "id": self.id,
            "sentiment_analysis": {
                "label": self.sentiment_label,
                "score": self.sentiment_score,
                "confidence": self.sentiment_confidence,
            },
            "issue_classification": {
                "primary_category": self.primary_category,
                "secondary_categories": list(self.secondary_categories or []),
                "severity": self.severity,
                "urgency": self.urgency,
            },
            "keywords": list(self.keywords or []),
            "key_phrases": list(self.key_phrases or []),
            "emotional_indicators": list(self.emotional_indicators or []),
            "summary": self.summary,
            "recommended_actions": list(self.recommended_actions or []),
            "message_count": self.message_count,
            "complaint_text_length": self.complaint_text_length,
            "complaint_start_time": self.complaint_start_time,
            "complaint_end_time": self.complaint_end_time,
            "processing_meta": dict(self.processing_meta or {}),
            "created_at": self.created_at,
        }
