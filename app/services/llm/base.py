from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional


@dataclass
class LLMResponse:
    content: str
    model: str
    usage: Optional[dict] = None


class LLMProvider(ABC):
    """Abstract base class for analysis providers.

    Implementations raise ProviderError for transport, HTTP and empty-output
    failures; they never return partial content.
    """

    name = "base"

    @abstractmethod
    def generate(
        self,
        prompt: str,
        model: Optional[str] = None,
        temperature: float = 0.3,
        max_tokens: int = 2000,
        timeout_seconds: Optional[float] = None,
    ) -> LLMResponse:
        """Generate a response for a single prompt."""
        pass
