from typing import Optional

import httpx

from app.logging_config import get_logger
from app.services.errors import ProviderError
from app.services.llm.base import LLMProvider, LLMResponse

logger = get_logger("llm.openai")


class OpenAIProvider(LLMProvider):
    """OpenAI chat completions in JSON mode."""

    name = "openai"

    def __init__(self, api_key: str, default_model: str = "gpt-4o-mini"):
        self.api_key = api_key
        self.default_model = default_model
        self.base_url = "https://api.openai.com/v1/chat/completions"

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
            "model": model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": temperature,
            "max_tokens": max_tokens,
            "response_format": {"type": "json_object"},
        }
        logger.debug(f"OpenAI request: model={model}, prompt_chars={len(prompt)}")

        try:
            with httpx.Client(timeout=timeout) as client:
                response = client.post(
                    self.base_url,
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                    },
                    json=payload,
                )
        except httpx.TimeoutException as e:
            raise ProviderError(f"OpenAI request timed out after {timeout}s", reason="timeout") from e
        except httpx.HTTPError as e:
            raise ProviderError(f"OpenAI transport error: {e}", reason="http_error") from e

        logger.debug(f"OpenAI response status: {response.status_code}")

        if response.status_code == 429:
            reason = "quota_exhausted" if "insufficient_quota" in response.text else "rate_limited"
            logger.warning(f"OpenAI {reason}: {response.text[:200]}")
            raise ProviderError(f"OpenAI API {reason}", reason=reason, status_code=429)
        if response.status_code != 200:
            logger.error(f"OpenAI error: {response.status_code} - {response.text[:500]}")
            raise ProviderError(
                f"OpenAI API error: {response.status_code} - {response.text[:200]}",
                reason="http_error",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise ProviderError(f"OpenAI returned a non-JSON body: {e}", reason="malformed") from e
        if not isinstance(data, dict):
            raise ProviderError("OpenAI returned an unexpected body", reason="malformed")
        content = ""
        if data.get("choices"):
            message = data["choices"][0].get("message", {})
            content = message.get("content") or ""
        if not content.strip():
            raise ProviderError("OpenAI returned empty content", reason="empty_response")

        return LLMResponse(
            content=content,
            model=data.get("model", model),
            usage=data.get("usage"),
        )
