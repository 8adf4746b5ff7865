from sqlalchemy import BigInteger, Column, DateTime, ForeignKey, Integer, Text, UniqueConstraint
from sqlalchemy.orm import relationship

from app.database import Base


class TranscriptEntry(Base):
    __tablename__ = "transcript_entries"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    session_id = Column(Text, ForeignKey("complaint_sessions.id"), nullable=False, index=True)
    seq = Column(Integer, nullable=False)  # 1-based arrival order within the session
    timestamp = Column(DateTime(timezone=True), nullable=False)
    direction = Column(Text, nullable=False)  # user, bot, system
    kind = Column(Text, nullable=False)  # text, command, media, timeout
    body = Column(Text, nullable=False)

    session = relationship("ComplaintSession", back_populates="entries")

    __table_args__ = (UniqueConstraint("session_id", "seq", name="uq_transcript_entries_session_seq"),)
