from __future__ import annotations

from dataclasses import dataclass
import os


@dataclass(frozen=True)
class ServerSettings:
    database_url: str
    cors_allow_origins: list[str]
    rate_limit_per_minute: int
    rate_limit_window_seconds: int
    version: str


def get_settings() -> ServerSettings:
    database_url = os.getenv("DATABASE_URL", "sqlite:///chapterflow_data/sessions.db").strip()
    cors_raw = os.getenv("CORS_ALLOW_ORIGINS", "*").strip()
    cors_allow_origins = [origin.strip() for origin in cors_raw.split(",") if origin.strip()]
    rate_limit_per_minute = int(os.getenv("RATE_LIMIT_PER_MINUTE", "30"))
    rate_limit_window_seconds = int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "60"))
    version = os.getenv("CHAPTERFLOW_VERSION", "0.1.0")
    return ServerSettings(
        database_url=database_url,
        cors_allow_origins=cors_allow_origins,
        rate_limit_per_minute=rate_limit_per_minute,
        rate_limit_window_seconds=rate_limit_window_seconds,
        version=version,
    )
