from __future__ import annotations

from fastapi import APIRouter, Request

from ..schemas import TurnRequest, TurnResponse


router = APIRouter(prefix="/api", tags=["chat"])


@router.post("/chat", response_model=TurnResponse, response_model_exclude_none=True)
def chat(request: Request, payload: TurnRequest) -> TurnResponse:
    result = request.app.state.service.process_turn(payload.message, payload.code)
    return TurnResponse.model_validate(result.to_payload())
