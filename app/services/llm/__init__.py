from app.services.errors import ProviderError
from app.services.llm.base import LLMProvider, LLMResponse
from app.services.llm.gemini_provider import GeminiProvider
from app.services.llm.openai_provider import OpenAIProvider


def get_analysis_provider(settings) -> LLMProvider:
    """Build the configured provider; raises ProviderError when it cannot be used."""
    name = (settings.analysis_provider or "openai").lower()
    if name == "openai":
        if not settings.openai_api_key:
            raise ProviderError("OPENAI_API_KEY is not configured", reason="not_configured")
        return OpenAIProvider(api_key=settings.openai_api_key, default_model=settings.openai_model)
    if name == "gemini":
        if not settings.gemini_api_key:
            raise ProviderError("GEMINI_API_KEY is not configured", reason="not_configured")
        return GeminiProvider(api_key=settings.gemini_api_key, default_model=settings.gemini_model)
    raise ProviderError(f"Unknown analysis provider: {name}", reason="not_configured")


__all__ = ["GeminiProvider", "LLMProvider", "LLMResponse", "OpenAIProvider", "get_analysis_provider"]
