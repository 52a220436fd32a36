from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from .schemas import SessionStatus


CONFIRM_TOKEN = "C"

FEEDBACK_STATUSES = frozenset(
    {SessionStatus.AWAITING_OUTLINE_APPROVAL, SessionStatus.AWAITING_CHAPTER_FEEDBACK}
)


class CommandKind(str, Enum):
    CONFIRM = "confirm"
    REVISE = "revise"
    CONTENT = "content"


@dataclass(frozen=True)
class Command:
    kind: CommandKind
    text: str = ""

    @property
    def is_confirm(self) -> bool:
        return self.kind is CommandKind.CONFIRM


def parse_command(status: SessionStatus, text: str) -> Command:
    """Interpret a raw user turn in the context of the current status.

    Only the review states understand the confirmation token; anywhere else the
    text is primary content (for example the initial requirements).
    """

    if status not in FEEDBACK_STATUSES:
        return Command(CommandKind.CONTENT, text)
    if text.strip().upper() == CONFIRM_TOKEN:
        return Command(CommandKind.CONFIRM)
    return Command(CommandKind.REVISE, text)
