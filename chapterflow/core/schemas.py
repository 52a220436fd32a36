from __future__ import annotations

import json
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator


class SessionStatus(str, Enum):
    AWAITING_INITIAL_INPUT = "AWAITING_INITIAL_INPUT"
    GENERATING_OUTLINE = "GENERATING_OUTLINE"
    AWAITING_OUTLINE_APPROVAL = "AWAITING_OUTLINE_APPROVAL"
    GENERATING_CHAPTER = "GENERATING_CHAPTER"
    AWAITING_CHAPTER_FEEDBACK = "AWAITING_CHAPTER_FEEDBACK"
    COMPLETED = "COMPLETED"
    # Decode-only marker for stored statuses this version does not know.
    UNKNOWN = "UNKNOWN"


class HistoryEntry(BaseModel):
    role: str
    content: str
    tag: Optional[str] = None


class ConfirmedChapter(BaseModel):
    index: int
    content: str


class Session(BaseModel):
    status: SessionStatus = SessionStatus.AWAITING_INITIAL_INPUT
    initial_requirements: Optional[str] = None
    outline: Optional[str] = None
    approved_outline: Optional[str] = None
    current_chapter_index: int = -1
    # Bumped each time a project starts over with its history kept.
    cycle: int = 0
    confirmed_chapters: List[ConfirmedChapter] = Field(default_factory=list)
    last_chapter_content: Optional[str] = None
    conversation_history: List[HistoryEntry] = Field(default_factory=list)

    @field_validator("status", mode="before")
    @classmethod
    def _coerce_status(cls, value: Any) -> Any:
        if isinstance(value, SessionStatus):
            return value
        try:
            return SessionStatus(value)
        except (TypeError, ValueError):
            return SessionStatus.UNKNOWN

    @field_validator("confirmed_chapters", "conversation_history", mode="before")
    @classmethod
    def _none_as_empty(cls, value: Any) -> Any:
        return [] if value is None else value

    @classmethod
    def default(cls) -> "Session":
        return cls()

    def reset(self, *, keep_history: bool) -> "Session":
        history = [entry.model_copy() for entry in self.conversation_history] if keep_history else []
        return Session(conversation_history=history, cycle=self.cycle + 1)

    def to_json(self) -> str:
        return json.dumps(self.model_dump(mode="json"), ensure_ascii=False)

    def state_summary(self) -> dict:
        return {"status": self.status.value, "current_chapter_index": self.current_chapter_index}


def decode_session(raw: str | None) -> Optional[Session]:
    """Decode a stored record, or return None when it is not a usable session object.

    A JSON object without a ``status`` key decodes with status UNKNOWN so the
    engine can self-heal it while keeping whatever history it carried.
    """

    if raw is None:
        return None
    try:
        payload = json.loads(raw)
    except (TypeError, ValueError):
        return None
    if not isinstance(payload, dict):
        return None
    if "status" not in payload:
        payload = {**payload, "status": SessionStatus.UNKNOWN.value}
    try:
        return Session.model_validate(payload)
    except ValidationError:
        return None


def has_valid_status(raw: str | None) -> bool:
    """True when the stored value is a JSON object with a non-null status."""

    if raw is None:
        return False
    try:
        payload = json.loads(raw)
    except (TypeError, ValueError):
        return False
    return isinstance(payload, dict) and payload.get("status") is not None
