from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List

from .commands import Command, CommandKind
from .errors import PromptError
from .history import chapter_tag, outline_tag, select_relevant
from .schemas import HistoryEntry, Session, SessionStatus


OUTLINE_INSTRUCTION = "你是一个AI助手，负责根据用户需求生成详细的内容大纲。请以Markdown格式输出大纲，使用多级列表结构。"
OUTLINE_REVISION_INSTRUCTION = "你是一个AI助手，负责根据用户的初始需求和修改建议生成改进的内容大纲。请以Markdown格式输出大纲。"
CHAPTER_INSTRUCTION = "你是一个AI写作助手，负责根据已批准的大纲生成特定章节的内容。"
CHAPTER_REVISION_INSTRUCTION = "你是一个AI写作助手，负责根据用户的修改建议调整章节内容。"

# Chapter turns only carry the most recent related exchanges.
CHAPTER_CONTEXT_LIMIT = 4

Message = Dict[str, str]


@dataclass
class PromptBundle:
    system_instruction: str
    messages: List[Message] = field(default_factory=list)

    def to_messages(self) -> List[Message]:
        return [{"role": "system", "content": self.system_instruction}, *self.messages]


def _as_messages(entries: List[HistoryEntry]) -> List[Message]:
    return [{"role": entry.role, "content": entry.content} for entry in entries]


def _chapter_request(session: Session) -> Message:
    return {
        "role": "user",
        "content": (
            f"已批准的大纲如下：\n```\n{session.approved_outline}\n```\n\n"
            f"请生成第 {session.current_chapter_index + 1} 章的完整内容。"
        ),
    }


def _outline_prompt(session: Session, command: Command) -> PromptBundle:
    return PromptBundle(
        OUTLINE_INSTRUCTION,
        [{"role": "user", "content": f"根据以下需求生成一个详细的内容大纲：\n\n{command.text}"}],
    )


def _outline_review_prompt(session: Session, command: Command) -> PromptBundle:
    context = _as_messages(select_relevant(session, {outline_tag(session.cycle)}))
    if command.kind is CommandKind.CONFIRM:
        return PromptBundle(CHAPTER_INSTRUCTION, [*context, _chapter_request(session)])
    revision = {
        "role": "user",
        "content": (
            f"初始需求：\n{session.initial_requirements}\n\n"
            f"原始大纲：\n{session.outline}\n\n"
            f"修改建议：\n{command.text}\n\n"
            "请生成修改后的大纲。"
        ),
    }
    return PromptBundle(OUTLINE_REVISION_INSTRUCTION, [*context, revision])


def _chapter_review_prompt(session: Session, command: Command) -> PromptBundle:
    number = session.current_chapter_index + 1
    if command.kind is CommandKind.CONFIRM:
        anchors = {outline_tag(session.cycle)}
        if session.confirmed_chapters:
            anchors.add(chapter_tag(session.confirmed_chapters[-1].index, session.cycle))
        context = _as_messages(select_relevant(session, anchors, limit=CHAPTER_CONTEXT_LIMIT))
        return PromptBundle(CHAPTER_INSTRUCTION, [*context, _chapter_request(session)])

    anchors = {
        outline_tag(session.cycle),
        chapter_tag(session.current_chapter_index, session.cycle),
    }
    context = _as_messages(select_relevant(session, anchors, limit=CHAPTER_CONTEXT_LIMIT))
    revision = {
        "role": "user",
        "content": (
            f"大纲：\n{session.approved_outline}\n\n"
            f"原始第{number}章内容：\n{session.last_chapter_content or '无原始内容'}\n\n"
            f"修改建议：\n{command.text}\n\n"
            f"请生成修改后的第{number}章内容。"
        ),
    }
    return PromptBundle(CHAPTER_REVISION_INSTRUCTION, [*context, revision])


_BUILDERS = {
    SessionStatus.AWAITING_INITIAL_INPUT: _outline_prompt,
    SessionStatus.AWAITING_OUTLINE_APPROVAL: _outline_review_prompt,
    SessionStatus.AWAITING_CHAPTER_FEEDBACK: _chapter_review_prompt,
}


def build_prompt(session: Session, status: SessionStatus, command: Command) -> PromptBundle:
    """Assemble the instruction and messages for one generation call.

    ``status`` is the status the turn started in; ``session`` already carries
    the transition made for this turn (for example the new chapter index).
    """

    builder = _BUILDERS.get(status)
    if builder is None:
        raise PromptError(f"No generation call is issued in status {status.value}")
    return builder(session, command)
