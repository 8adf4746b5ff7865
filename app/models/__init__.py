from app.models.analysis_record import AnalysisRecord
from app.models.complaint_session import ComplaintSession
from app.models.employee import Employee
from app.models.transcript_entry import TranscriptEntry

__all__ = [
    "AnalysisRecord",
    "ComplaintSession",
    "Employee",
    "TranscriptEntry",
]
