from sqlalchemy import Column, DateTime, Index, Integer, Text, text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from app.database import Base


class ComplaintSession(Base):
    __tablename__ = "complaint_sessions"

    id = Column(Text, primary_key=True)  # sess_<timestamp>_<hex>
    complaint_id = Column(Text, nullable=False, unique=True)  # CMP-YYYY-MM-DD-####
    user_id = Column(Text, nullable=False, index=True)
    status = Column(Text, nullable=False, default="open")  # open, submitted, cancelled
    start_time = Column(DateTime(timezone=True), nullable=False)
    end_time = Column(DateTime(timezone=True))
    last_activity_at = Column(DateTime(timezone=True), nullable=False)
    department = Column(Text)
    entry_count = Column(Integer, nullable=False, default=0)
    analysis_status = Column(Text)  # pending, completed, failed
    analysis_attempts = Column(Integer, nullable=False, default=0)
    analysis_last_error = Column(Text)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    entries = relationship(
        "TranscriptEntry",
        back_populates="session",
        order_by="TranscriptEntry.seq",
    )
    analysis = relationship("AnalysisRecord", back_populates="session", uselist=False)

    __table_args__ = (
        # One open session per user
        Index(
            "uq_complaint_sessions_open_user",
            "user_id",
            unique=True,
            postgresql_where=text("status = 'open'"),
            sqlite_where=text("status = 'open'"),
        ),
        Index("ix_complaint_sessions_status_start", "status", "start_time"),
        Index("ix_complaint_sessions_department_start", "department", "start_time"),
    )
