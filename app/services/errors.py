"""Error taxonomy shared by the session lifecycle and the enrichment pipeline."""

from typing import Optional


class ComplaintError(Exception):
    code = "complaint_error"


class ValidationError(ComplaintError):
    code = "validation_error"


class InsufficientDetailError(ValidationError):
    """Submit attempted before the user wrote anything beyond the start command."""

    code = "insufficient_detail"


class TranscriptFullError(ValidationError):
    code = "transcript_full"


class ConflictError(ComplaintError):
    """Another open session already exists for the user; `existing` carries it."""

    code = "conflict"

    def __init__(self, message: str, existing=None):
        self.existing = existing
        super().__init__(message)


class NotFoundError(ComplaintError):
    code = "not_found"


class InvalidStateError(ComplaintError):
    code = "invalid_state"


class StorageError(ComplaintError):
    code = "storage_error"


class MalformedResponse(ComplaintError):
    code = "malformed_response"

    def __init__(self, message: str, raw_text: Optional[str] = None):
        self.raw_text = raw_text
        super().__init__(message)


class ProviderError(ComplaintError):
    """Analysis provider failure: timeout, rate_limited, quota_exhausted, http_error, malformed, empty_response."""

    code = "provider_error"
    RETRYABLE_CODES = {"timeout", "rate_limited", "http_error"}

    def __init__(self, message: str, reason: str = "http_error", status_code: Optional[int] = None):
        self.reason = reason
        self.status_code = status_code
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        if self.reason == "http_error":
            return self.status_code is None or self.status_code >= 500
        return self.reason in self.RETRYABLE_CODES
