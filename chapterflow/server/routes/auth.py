from __future__ import annotations

from fastapi import APIRouter, HTTPException, Request, status

from ..rate_limit import RateLimitResult
from ..schemas import CodeRequest, SuccessResponse


router = APIRouter(prefix="/api", tags=["auth"])


def rate_limit_or_raise(request: Request, label: str) -> RateLimitResult:
    limiter = request.app.state.rate_limiter
    key = f"{label}:{_client_ip(request)}"
    result = limiter.check(key)
    if not result.allowed:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Rate limit exceeded",
            headers={"Retry-After": str(result.reset_after)},
        )
    return result


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client:
        return request.client.host
    return "unknown"


@router.post("/login", response_model=SuccessResponse)
def login(request: Request, payload: CodeRequest) -> SuccessResponse:
    rate_limit_or_raise(request, "login")
    request.app.state.service.login(payload.code)
    return SuccessResponse(success=True, message="Login successful.")


@router.post("/reset", response_model=SuccessResponse)
def reset(request: Request, payload: CodeRequest) -> SuccessResponse:
    rate_limit_or_raise(request, "reset")
    request.app.state.service.reset(payload.code)
    return SuccessResponse(success=True, message="State reset successfully.")
