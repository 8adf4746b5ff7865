from app.services.errors import (
    ComplaintError,
    ConflictError,
    InsufficientDetailError,
    InvalidStateError,
    MalformedResponse,
    NotFoundError,
    ProviderError,
    StorageError,
    TranscriptFullError,
    ValidationError,
)
from app.services.result import Result
from app.services.state_machine import (
    InvalidTransitionError,
    SessionState,
    can_transition,
    transition,
)
