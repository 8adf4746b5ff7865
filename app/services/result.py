from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

from app.services.errors import ComplaintError, ProviderError

T = TypeVar("T")


@dataclass
class Result(Generic[T]):
    """Outcome of an enrichment step. Failures carry the taxonomy code and whether a retry may help."""

    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    retryable: bool = False

    @classmethod
    def success(cls, value: T) -> "Result[T]":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: str, code: str = "unknown", retryable: bool = False) -> "Result[T]":
        return cls(ok=False, error=error, error_code=code, retryable=retryable)

    @classmethod
    def from_error(cls, exc: Exception) -> "Result[T]":
        if not isinstance(exc, ComplaintError):
            return cls.failure(str(exc))
        retryable = exc.retryable if isinstance(exc, ProviderError) else False
        return cls.failure(str(exc), code=exc.code, retryable=retryable)
