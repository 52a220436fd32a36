from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv


# Load environment variables from a local .env file if present.
load_dotenv()


DEFAULT_API_ENDPOINT = "https://api.openai.com/v1"
DEFAULT_MODEL = "gpt-3.5-turbo"
DEFAULT_GENERATION_TIMEOUT = 60.0


@dataclass(frozen=True)
class GenerationConfig:
    api_key: Optional[str]
    api_endpoint: str
    model: str
    backend: str
    timeout_seconds: float
    target_chapters: Optional[int]


def _parse_float(value: str | None, default: float) -> float:
    if value is None:
        return default
    try:
        parsed = float(value)
    except ValueError:
        return default
    return parsed if parsed > 0 else default


def _parse_optional_int(value: str | None) -> Optional[int]:
    if value is None or not value.strip():
        return None
    try:
        parsed = int(value)
    except ValueError:
        return None
    return parsed if parsed > 0 else None


def get_openai_api_key() -> str | None:
    """Return the configured API key for the generation service, if any."""

    key = os.getenv("OPENAI_API_KEY")
    return key.strip() if key else None


def get_api_endpoint() -> str:
    """Return the generation service base URL (default: the OpenAI v1 API)."""

    return os.getenv("API_ENDPOINT", DEFAULT_API_ENDPOINT).strip() or DEFAULT_API_ENDPOINT


def get_llm_model() -> str:
    return os.getenv("LLM_MODEL", DEFAULT_MODEL).strip() or DEFAULT_MODEL


def get_generation_backend() -> str:
    """Return the generation backend name: ``http`` (default) or ``openai``."""

    backend = os.getenv("CHAPTERFLOW_GENERATION_BACKEND", "http").strip().lower()
    if backend not in {"http", "openai"}:
        return "http"
    return backend


def get_log_level() -> str:
    level = os.getenv("CHAPTERFLOW_LOG_LEVEL", "INFO").strip().upper()
    return level if level in {"DEBUG", "INFO", "WARNING", "ERROR"} else "INFO"


def get_generation_timeout() -> float:
    return _parse_float(os.getenv("CHAPTERFLOW_GENERATION_TIMEOUT"), DEFAULT_GENERATION_TIMEOUT)


def get_target_chapters() -> Optional[int]:
    """Explicit chapter count; when unset the count is estimated from the outline."""

    return _parse_optional_int(os.getenv("CHAPTERFLOW_TARGET_CHAPTERS"))


def get_generation_config() -> GenerationConfig:
    return GenerationConfig(
        api_key=get_openai_api_key(),
        api_endpoint=get_api_endpoint(),
        model=get_llm_model(),
        backend=get_generation_backend(),
        timeout_seconds=get_generation_timeout(),
        target_chapters=get_target_chapters(),
    )
