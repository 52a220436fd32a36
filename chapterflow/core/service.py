from __future__ import annotations

import secrets
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional

from chapterflow.core.logging.audit import audit_event, code_ref, safe_excerpt
from chapterflow.core.logging.logger import get_logger

from .engine import TurnOutcome, WorkflowEngine
from .errors import AuthError, PersistenceError, TurnValidationError, UpstreamError
from .generation import GenerationClient
from .schemas import ConfirmedChapter, Session, SessionStatus, decode_session, has_valid_status
from .store import SessionStore, StoredSession


@dataclass
class TurnResult:
    reply: str
    status: SessionStatus
    current_chapter_index: int
    chapters: Optional[List[ConfirmedChapter]] = None

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "reply": self.reply,
            "state": {"status": self.status.value, "current_chapter_index": self.current_chapter_index},
        }
        if self.chapters is not None:
            payload["chapters"] = [chapter.model_dump() for chapter in self.chapters]
        return payload


@dataclass
class _CodeLock:
    lock: threading.Lock = field(default_factory=threading.Lock)
    holders: int = 0


class SessionService:
    """Runs turns, logins and resets against the session store.

    Turns for one code are serialized with a per-code lock; across processes
    the store's compare-and-set catches lost updates.
    """

    def __init__(
        self,
        store: SessionStore,
        generation_client: GenerationClient,
        engine: WorkflowEngine | None = None,
    ) -> None:
        self.store = store
        self.generation_client = generation_client
        self.engine = engine or WorkflowEngine()
        self._locks: Dict[str, _CodeLock] = {}
        self._locks_guard = threading.Lock()
        self._logger = get_logger()

    @contextmanager
    def _lock_for(self, code: str) -> Iterator[None]:
        # Entries live only while a call holds or waits on them.
        with self._locks_guard:
            entry = self._locks.setdefault(code, _CodeLock())
            entry.holders += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._locks_guard:
                entry.holders -= 1
                if entry.holders == 0:
                    del self._locks[code]

    def _load(self, code: str) -> StoredSession:
        stored = self.store.get(code)
        if stored is None:
            self._logger.warning("unknown session code %s", code_ref(code))
            raise AuthError()
        return stored

    def login(self, code: Optional[str]) -> bool:
        """Validate a code; returns True when a fresh default state was written."""

        if not code:
            raise TurnValidationError("Login code is required.")
        with self._lock_for(code):
            stored = self._load(code)
            if has_valid_status(stored.raw):
                audit_event("login", code=code_ref(code), initialized=False)
                return False
            self.store.put(code, Session.default().to_json())
        audit_event("login", code=code_ref(code), initialized=True)
        return True

    def process_turn(self, message: Optional[str], code: Optional[str]) -> TurnResult:
        if not message or not code:
            raise TurnValidationError("Message and login code are required.")

        with self._lock_for(code):
            stored = self._load(code)
            session = decode_session(stored.raw)
            if session is None:
                self._logger.info("stored state for %s is unusable, starting from a default session", code_ref(code))
                session = Session.default()

            plan = self.engine.plan(session, message)
            if plan.origin is SessionStatus.UNKNOWN:
                audit_event("state_self_heal", code=code_ref(code))

            if plan.needs_generation:
                result = self.generation_client.generate(plan.prompt.to_messages())
                if not result.ok:
                    audit_event(
                        "generation_failed",
                        code=code_ref(code),
                        status=plan.origin.value,
                        upstream_status=result.status_code,
                    )
                    raise UpstreamError(
                        result.reason or "Failed to get response from AI service.",
                        upstream_status=result.status_code,
                        detail=result.detail,
                    )
                outcome = self.engine.complete(plan, result.text or "")
            else:
                outcome = self.engine.finish(plan)

            if outcome.changed:
                self._persist(code, stored.version, outcome)

        audit_event(
            "turn",
            code=code_ref(code),
            origin=plan.origin.value,
            status=outcome.session.status.value,
            message=safe_excerpt(message, max_len=40),
            generated=plan.needs_generation,
        )
        return TurnResult(
            reply=outcome.reply,
            status=outcome.session.status,
            current_chapter_index=outcome.session.current_chapter_index,
            chapters=outcome.chapters,
        )

    def _persist(self, code: str, version: int, outcome: TurnOutcome) -> None:
        # The reply is returned even when the write is lost; the next turn
        # then observes the pre-turn state.
        try:
            written = self.store.compare_and_set(code, version, outcome.session.to_json())
        except PersistenceError as exc:
            self._logger.error("failed to update state for %s: %s", code_ref(code), exc)
            audit_event("persist_failed", code=code_ref(code), reason="store_error")
            return
        if not written:
            self._logger.error("state for %s changed concurrently, turn not saved", code_ref(code))
            audit_event("persist_failed", code=code_ref(code), reason="version_conflict")

    def reset(self, code: Optional[str]) -> None:
        if not code:
            raise TurnValidationError("Login code is required to reset state.")
        with self._lock_for(code):
            if not self.store.exists(code):
                self._logger.warning("reset requested for unknown code %s", code_ref(code))
                raise AuthError("Cannot reset state for invalid or expired login code.", status_code=404)
            self.store.put(code, Session.default().to_json())
        audit_event("session_reset", code=code_ref(code))

    def get_session(self, code: str) -> Session:
        stored = self._load(code)
        return decode_session(stored.raw) or Session.default()

    def issue_code(self, code: Optional[str] = None) -> str:
        code = code or secrets.token_urlsafe(9)
        with self._lock_for(code):
            if self.store.exists(code):
                raise TurnValidationError("Login code already exists.")
            self.store.put(code, Session.default().to_json())
        audit_event("code_issued", code=code_ref(code))
        return code

    def health(self) -> Dict[str, str]:
        try:
            self.store.ping()
            store_state = "ok"
        except PersistenceError as exc:
            self._logger.error("session store unavailable: %s", exc)
            store_state = "unavailable"
        return {"store": store_state, "generation_model": self.generation_client.model}
