from __future__ import annotations

from typing import Optional

from pydantic import BaseModel


class HealthResponse(BaseModel):
    status: str
    version: str
    time: str
    store: str
    generation_model: str


class CodeRequest(BaseModel):
    code: Optional[str] = None


class TurnRequest(BaseModel):
    message: Optional[str] = None
    code: Optional[str] = None


class SuccessResponse(BaseModel):
    success: bool
    message: str


class ChapterPayload(BaseModel):
    index: int
    content: str


class StatePayload(BaseModel):
    status: str
    current_chapter_index: Optional[int] = None


class TurnResponse(BaseModel):
    reply: str
    state: StatePayload
    chapters: Optional[list[ChapterPayload]] = None
