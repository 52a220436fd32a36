from __future__ import annotations

from typing import Iterable, List, Optional

from .schemas import HistoryEntry, Session


MAX_HISTORY_ENTRIES = 20


# Tags carry the session cycle so turns from an earlier project never match.
def outline_tag(cycle: int = 0) -> str:
    return f"outline:{cycle}"


def chapter_tag(index: int, cycle: int = 0) -> str:
    return f"chapter:{cycle}:{index}"


def append(session: Session, role: str, content: str, tag: Optional[str] = None) -> None:
    session.conversation_history.append(HistoryEntry(role=role, content=content, tag=tag))
    overflow = len(session.conversation_history) - MAX_HISTORY_ENTRIES
    if overflow > 0:
        del session.conversation_history[:overflow]


def select_relevant(
    session: Session,
    anchors: Iterable[str],
    limit: Optional[int] = None,
) -> List[HistoryEntry]:
    """Return history entries tagged with any anchor, oldest first.

    ``limit`` keeps only the most recent matches.
    """

    wanted = {anchor for anchor in anchors if anchor}
    selected = [entry for entry in session.conversation_history if entry.tag in wanted]
    if limit is not None:
        selected = selected[-limit:] if limit > 0 else []
    return selected
