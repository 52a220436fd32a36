from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from chapterflow.core.logging.logger import get_logger

from . import history
from .commands import CONFIRM_TOKEN, Command, parse_command
from .prompts import PromptBundle, build_prompt
from .schemas import ConfirmedChapter, Session, SessionStatus


MIN_ESTIMATED_CHAPTERS = 3

OUTLINE_IN_PROGRESS_REPLY = "正在生成大纲，请稍候..."
COMPLETED_REPLY = "所有章节已完成！您可以开始新的项目。"
RESTART_REPLY = "所有章节已完成，状态已重置。请提供新的需求。"
RESET_REPLY = "状态已重置。请提供您的需求。"


def chapter_in_progress_reply(index: int) -> str:
    return f"正在生成第 {index + 1} 章内容，请稍候..."


def outline_review_suffix() -> str:
    return f"\n\n请检查以上大纲并回复：\n- 输入 '{CONFIRM_TOKEN}' 确认大纲\n- 或直接输入您的修改意见"


def chapter_review_suffix(index: int) -> str:
    return (
        f"\n\n请检查以上第 {index + 1} 章内容并回复：\n"
        f"- 输入 '{CONFIRM_TOKEN}' 确认并继续下一章\n"
        "- 或直接输入您对本章的修改意见"
    )


def estimate_chapter_count(outline: Optional[str], target: Optional[int] = None) -> float:
    """Number of chapters to draft.

    An explicit target wins; otherwise half the non-blank outline lines, never
    fewer than three. The estimate can be fractional, chapters continue while
    the index stays below it.
    """

    if target is not None:
        return float(target)
    lines = [line for line in (outline or "").split("\n") if line.strip()]
    return max(len(lines) / 2, MIN_ESTIMATED_CHAPTERS)


@dataclass
class TurnPlan:
    message: str
    origin: SessionStatus
    session: Session
    command: Command
    prompt: Optional[PromptBundle] = None
    reply: Optional[str] = None
    tag: Optional[str] = None
    changed: bool = False
    chapters: Optional[List[ConfirmedChapter]] = None

    @property
    def needs_generation(self) -> bool:
        return self.prompt is not None


@dataclass
class TurnOutcome:
    session: Session
    reply: str
    changed: bool
    chapters: Optional[List[ConfirmedChapter]] = None


class WorkflowEngine:
    """Transition function from (session, user turn) to (session', action).

    ``plan`` never mutates the session it is given. Statuses entered while a
    generation call is in flight only live inside one turn: the caller either
    folds the result in with ``complete`` or drops the plan.
    """

    def __init__(self, target_chapters: Optional[int] = None) -> None:
        self.target_chapters = target_chapters
        self._logger = get_logger()

    def plan(self, session: Session, message: str) -> TurnPlan:
        draft = session.model_copy(deep=True)
        origin = draft.status
        command = parse_command(origin, message)
        plan = TurnPlan(message=message, origin=origin, session=draft, command=command)
        handler = TRANSITIONS[origin]
        handler(self, plan)
        return plan

    def complete(self, plan: TurnPlan, generated_text: str) -> TurnOutcome:
        draft = plan.session
        reply = generated_text
        if draft.status is SessionStatus.GENERATING_OUTLINE:
            draft.outline = generated_text
            draft.status = SessionStatus.AWAITING_OUTLINE_APPROVAL
            reply = f"{generated_text}{outline_review_suffix()}"
        elif draft.status is SessionStatus.GENERATING_CHAPTER:
            draft.last_chapter_content = generated_text
            draft.status = SessionStatus.AWAITING_CHAPTER_FEEDBACK
            reply = f"{generated_text}{chapter_review_suffix(draft.current_chapter_index)}"
        self._record(plan, reply)
        return TurnOutcome(session=draft, reply=reply, changed=True)

    def finish(self, plan: TurnPlan) -> TurnOutcome:
        reply = plan.reply or ""
        self._record(plan, reply)
        return TurnOutcome(session=plan.session, reply=reply, changed=plan.changed, chapters=plan.chapters)

    def chapter_estimate(self, session: Session) -> float:
        return estimate_chapter_count(session.approved_outline, self.target_chapters)

    @staticmethod
    def _record(plan: TurnPlan, reply: str) -> None:
        history.append(plan.session, "user", plan.message, plan.tag)
        history.append(plan.session, "assistant", reply, plan.tag)

    def _request_generation(self, plan: TurnPlan, status: SessionStatus, tag: str) -> None:
        plan.session.status = status
        plan.prompt = build_prompt(plan.session, plan.origin, plan.command)
        plan.tag = tag
        plan.changed = True

    def _on_initial_input(self, plan: TurnPlan) -> None:
        draft = plan.session
        draft.initial_requirements = plan.message
        self._request_generation(plan, SessionStatus.GENERATING_OUTLINE, history.outline_tag(draft.cycle))

    def _on_generating_outline(self, plan: TurnPlan) -> None:
        plan.reply = OUTLINE_IN_PROGRESS_REPLY

    def _on_outline_review(self, plan: TurnPlan) -> None:
        draft = plan.session
        if not plan.command.is_confirm:
            self._request_generation(plan, SessionStatus.GENERATING_OUTLINE, history.outline_tag(draft.cycle))
            return
        if draft.approved_outline is None:
            draft.approved_outline = draft.outline
        draft.current_chapter_index = 0
        self._request_generation(plan, SessionStatus.GENERATING_CHAPTER, history.chapter_tag(0, draft.cycle))

    def _on_chapter_review(self, plan: TurnPlan) -> None:
        draft = plan.session
        if not plan.command.is_confirm:
            self._request_generation(
                plan,
                SessionStatus.GENERATING_CHAPTER,
                history.chapter_tag(draft.current_chapter_index, draft.cycle),
            )
            return

        already_confirmed = bool(draft.confirmed_chapters) and (
            draft.confirmed_chapters[-1].index >= draft.current_chapter_index
        )
        if draft.last_chapter_content and not already_confirmed:
            draft.confirmed_chapters.append(
                ConfirmedChapter(index=draft.current_chapter_index, content=draft.last_chapter_content)
            )
        draft.current_chapter_index += 1

        if draft.current_chapter_index >= self.chapter_estimate(draft):
            draft.status = SessionStatus.COMPLETED
            plan.reply = COMPLETED_REPLY
            plan.chapters = [chapter.model_copy() for chapter in draft.confirmed_chapters]
            plan.changed = True
            return
        self._request_generation(
            plan,
            SessionStatus.GENERATING_CHAPTER,
            history.chapter_tag(draft.current_chapter_index, draft.cycle),
        )

    def _on_generating_chapter(self, plan: TurnPlan) -> None:
        plan.reply = chapter_in_progress_reply(plan.session.current_chapter_index)

    def _on_completed(self, plan: TurnPlan) -> None:
        plan.session = plan.session.reset(keep_history=True)
        plan.reply = RESTART_REPLY
        plan.changed = True

    def _on_unknown(self, plan: TurnPlan) -> None:
        self._logger.warning("unknown session status, resetting to %s", SessionStatus.AWAITING_INITIAL_INPUT.value)
        plan.session = plan.session.reset(keep_history=True)
        plan.reply = RESET_REPLY
        plan.changed = True


TRANSITIONS: Dict[SessionStatus, Callable[[WorkflowEngine, TurnPlan], None]] = {
    SessionStatus.AWAITING_INITIAL_INPUT: WorkflowEngine._on_initial_input,
    SessionStatus.GENERATING_OUTLINE: WorkflowEngine._on_generating_outline,
    SessionStatus.AWAITING_OUTLINE_APPROVAL: WorkflowEngine._on_outline_review,
    SessionStatus.AWAITING_CHAPTER_FEEDBACK: WorkflowEngine._on_chapter_review,
    SessionStatus.GENERATING_CHAPTER: WorkflowEngine._on_generating_chapter,
    SessionStatus.COMPLETED: WorkflowEngine._on_completed,
    SessionStatus.UNKNOWN: WorkflowEngine._on_unknown,
}

_uncovered = set(SessionStatus) - set(TRANSITIONS)
if _uncovered:
    raise RuntimeError(f"Workflow transitions missing for: {sorted(status.value for status in _uncovered)}")
