from __future__ import annotations

from typing import Callable

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from chapterflow.config.runtime import get_generation_config
from chapterflow.core.engine import WorkflowEngine
from chapterflow.core.errors import ChapterflowError
from chapterflow.core.generation import build_generation_client
from chapterflow.core.logging.logger import get_logger
from chapterflow.core.service import SessionService
from chapterflow.core.store import build_session_store

from .config import ServerSettings, get_settings
from .rate_limit import RateLimiter
from .routes import auth, chat, health


def build_service(settings: ServerSettings) -> SessionService:
    generation_config = get_generation_config()
    return SessionService(
        store=build_session_store(settings.database_url),
        generation_client=build_generation_client(generation_config),
        engine=WorkflowEngine(target_chapters=generation_config.target_chapters),
    )


def create_app(settings: ServerSettings | None = None, service: SessionService | None = None) -> FastAPI:
    settings = settings or get_settings()
    logger = get_logger()
    app = FastAPI(title="Chapterflow", version=settings.version)
    app.state.settings = settings
    app.state.service = service or build_service(settings)
    app.state.rate_limiter = RateLimiter(settings.rate_limit_per_minute, settings.rate_limit_window_seconds)

    if settings.cors_allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_allow_origins,
            allow_credentials="*" not in settings.cors_allow_origins,
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["Authorization", "Content-Type"],
            max_age=86400,
        )

    @app.middleware("http")
    async def security_headers(request: Request, call_next: Callable):
        response = await call_next(request)
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "no-referrer")
        return response

    @app.exception_handler(ChapterflowError)
    async def chapterflow_error_handler(request: Request, exc: ChapterflowError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_payload())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": "validation_error", "message": "Invalid JSON request body."},
        )

    app.include_router(health.router)
    app.include_router(auth.router)
    app.include_router(chat.router)

    return app
