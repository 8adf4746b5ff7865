from typing import Optional

import httpx

from app.logging_config import get_logger
from app.services.errors import ProviderError
from app.services.llm.base import LLMProvider, LLMResponse

logger = get_logger("llm.gemini")


class GeminiProvider(LLMProvider):
    """Google Gemini generateContent API."""

    name = "gemini"

    def __init__(self, api_key: str, default_model: str = "gemini-1.5-flash"):
        self.api_key = api_key
        self.default_model = default_model
        self.base_url = "https://generativelanguage.googleapis.com/v1beta/models"

    def generate(
        self,
        prompt: str,
        model: Optional[str] = None,
        temperature: float = 0.3,
        max_tokens: int = 2000,
        timeout_seconds: Optional[float] = None,
    ) -> LLMResponse:
        model = model or self.default_model
        timeout = timeout_seconds if timeout_seconds is not None else 60.0
        payload = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {
                "temperature": temperature,
                "maxOutputTokens": max_tokens,
                "responseMimeType": "application/json",
            },
        }

        try:
            with httpx.Client(timeout=timeout) as client:
                response = client.post(
                    f"{self.base_url}/{model}:generateContent",
                    params={"key": self.api_key},
                    json=payload,
                )
        except httpx.TimeoutException as e:
            raise ProviderError(f"Gemini request timed out after {timeout}s", reason="timeout") from e
        except httpx.HTTPError as e:
            raise ProviderError(f"Gemini transport error: {e}", reason="http_error") from e

        if response.status_code == 429:
            reason = "quota_exhausted" if "quota" in response.text.lower() else "rate_limited"
            logger.warning(f"Gemini {reason}: {response.text[:200]}")
            raise ProviderError(f"Gemini API {reason}", reason=reason, status_code=429)
        if response.status_code != 200:
            logger.error(f"Gemini error: {response.status_code} - {response.text[:500]}")
            raise ProviderError(
                f"Gemini API error: {response.status_code} - {response.text[:200]}",
                reason="http_error",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise ProviderError(f"Gemini returned a non-JSON body: {e}", reason="malformed") from e
        if not isinstance(data, dict):
            raise ProviderError("Gemini returned an unexpected body", reason="malformed")
        content = ""
        candidates = data.get("candidates") or []
        if candidates:
            parts = (candidates[0].get("content") or {}).get("parts") or []
            content = "".join(part.get("text", "") for part in parts)
        if not content.strip():
            raise ProviderError("Gemini returned empty content", reason="empty_response")

        usage = None
        meta = data.get("usageMetadata")
        if meta:
            usage = {
                "prompt_tokens": meta.get("promptTokenCount"),
                "completion_tokens": meta.get("candidatesTokenCount"),
                "total_tokens": meta.get("totalTokenCount"),
            }
        return LLMResponse(content=content, model=model, usage=usage)
