from app.schemas.analysis import AnalysisPayload, BatchRequest, BatchResponse, CatchUpRequest
from app.schemas.analytics import AnalyticsResponse
from app.schemas.complaint import ComplaintDetailResponse, ComplaintListResponse, ComplaintStatsResponse
from app.schemas.line import LineEvent, LineWebhookBody

__all__ = [
    "AnalysisPayload",
    "AnalyticsResponse",
    "BatchRequest",
    "BatchResponse",
    "CatchUpRequest",
    "ComplaintDetailResponse",
    "ComplaintListResponse",
    "ComplaintStatsResponse",
    "LineEvent",
    "LineWebhookBody",
]
