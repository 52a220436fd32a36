from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Request

from ..schemas import HealthResponse


router = APIRouter()


@router.get("/health", response_model=HealthResponse)
def health_check(request: Request) -> HealthResponse:
    checks = request.app.state.service.health()
    return HealthResponse(
        status="ok" if checks["store"] == "ok" else "degraded",
        version=request.app.state.settings.version,
        time=datetime.now(timezone.utc).isoformat(),
        store=checks["store"],
        generation_model=checks["generation_model"],
    )
