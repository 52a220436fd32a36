from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol
from urllib.parse import urlparse

import requests
from openai import APIError, APIStatusError, APITimeoutError, OpenAI

from chapterflow.config.runtime import GenerationConfig
from chapterflow.core.logging.logger import get_logger

from .errors import ConfigurationError


# Top-level fields tried, in order, when the payload has no chat-completion choice.
FALLBACK_REPLY_FIELDS = ("response", "output", "text", "content")

_DETAIL_LIMIT = 2000


@dataclass(frozen=True)
class GenerationResult:
    ok: bool
    text: Optional[str] = None
    reason: Optional[str] = None
    status_code: Optional[int] = None
    detail: Optional[str] = None

    @classmethod
    def success(cls, text: str) -> "GenerationResult":
        return cls(ok=True, text=text)

    @classmethod
    def failure(
        cls,
        reason: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[str] = None,
    ) -> "GenerationResult":
        if detail and len(detail) > _DETAIL_LIMIT:
            detail = detail[:_DETAIL_LIMIT] + "..."
        return cls(ok=False, reason=reason, status_code=status_code, detail=detail)


class GenerationClient(Protocol):
    model: str

    def generate(self, messages: List[Dict[str, str]]) -> GenerationResult:
        ...


def _clean(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def extract_reply_text(payload: Any) -> Optional[str]:
    """Pull the generated text out of a response payload.

    Order: ``choices[0].message.content``, then ``response``, ``output``,
    ``text``, ``content``, then the payload itself when it is a bare string.
    """

    if isinstance(payload, str):
        return _clean(payload)
    if not isinstance(payload, dict):
        return None
    choices = payload.get("choices")
    if isinstance(choices, list) and choices:
        first = choices[0]
        message = first.get("message") if isinstance(first, dict) else None
        if isinstance(message, dict):
            text = _clean(message.get("content"))
            if text:
                return text
    for field_name in FALLBACK_REPLY_FIELDS:
        text = _clean(payload.get(field_name))
        if text:
            return text
    return None


def chat_completions_url(base_url: str) -> str:
    standardized = base_url.rstrip("/")
    if standardized.endswith("/v1"):
        url = f"{standardized}/chat/completions"
    else:
        url = f"{standardized}/v1/chat/completions"
    parsed = urlparse(url)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ConfigurationError(f"Invalid API endpoint URL: {base_url}")
    return url


def _require_api_key(config: GenerationConfig) -> str:
    if not config.api_key:
        raise ConfigurationError("OPENAI_API_KEY is required to call the generation service.")
    return config.api_key


class HttpGenerationClient:
    """Generation client speaking the chat-completions wire format over requests."""

    def __init__(self, config: GenerationConfig, session: requests.Session | None = None) -> None:
        self.config = config
        self.model = config.model
        self.http = session or requests.Session()
        self._logger = get_logger()

    def generate(self, messages: List[Dict[str, str]]) -> GenerationResult:
        api_key = _require_api_key(self.config)
        url = chat_completions_url(self.config.api_endpoint)
        payload = {"model": self.model, "messages": messages}
        try:
            response = self.http.post(
                url,
                json=payload,
                headers={"Authorization": f"Bearer {api_key}"},
                timeout=self.config.timeout_seconds,
            )
        except requests.Timeout as exc:
            self._logger.error("generation request timed out: %s", exc)
            return GenerationResult.failure("Generation request timed out.", detail=str(exc))
        except requests.RequestException as exc:
            self._logger.error("generation request failed: %s", exc)
            return GenerationResult.failure("Generation request failed.", detail=str(exc))

        if not response.ok:
            body = response.text or f"LLM API returned status {response.status_code}"
            self._logger.error("generation service returned %s: %s", response.status_code, body)
            return GenerationResult.failure(
                "Failed to get response from AI service.",
                status_code=response.status_code,
                detail=body,
            )

        try:
            data = response.json()
        except ValueError as exc:
            self._logger.error("generation response is not JSON: %s", response.text)
            return GenerationResult.failure(
                "Failed to parse AI response.",
                status_code=response.status_code,
                detail=response.text or str(exc),
            )

        text = extract_reply_text(data)
        if text is None:
            self._logger.error("generation response has no content: %s", data)
            return GenerationResult.failure(
                "Failed to parse AI response (content missing).",
                status_code=response.status_code,
                detail=str(data),
            )
        return GenerationResult.success(text)


class OpenAIGenerationClient:
    """Generation client backed by the official openai SDK."""

    def __init__(self, config: GenerationConfig, client: OpenAI | None = None) -> None:
        self.config = config
        self.model = config.model
        self._client = client
        self._logger = get_logger()

    def _get_client(self) -> OpenAI:
        if self._client is None:
            base_url = chat_completions_url(self.config.api_endpoint).rsplit("/chat/completions", 1)[0]
            self._client = OpenAI(
                api_key=_require_api_key(self.config),
                base_url=base_url,
                timeout=self.config.timeout_seconds,
                max_retries=0,
            )
        return self._client

    def generate(self, messages: List[Dict[str, str]]) -> GenerationResult:
        client = self._get_client()
        try:
            response = client.chat.completions.create(model=self.model, messages=messages)
        except APITimeoutError as exc:
            self._logger.error("generation request timed out: %s", exc)
            return GenerationResult.failure("Generation request timed out.", detail=str(exc))
        except APIStatusError as exc:
            self._logger.error("generation service returned %s: %s", exc.status_code, exc.message)
            return GenerationResult.failure(
                "Failed to get response from AI service.",
                status_code=exc.status_code,
                detail=exc.message,
            )
        except APIError as exc:
            self._logger.error("generation request failed: %s", exc)
            return GenerationResult.failure("Generation request failed.", detail=str(exc))

        text = extract_reply_text(response.model_dump())
        if text is None:
            return GenerationResult.failure("Failed to parse AI response (content missing).")
        return GenerationResult.success(text)


def build_generation_client(config: GenerationConfig) -> GenerationClient:
    if config.backend == "openai":
        return OpenAIGenerationClient(config)
    return HttpGenerationClient(config)
