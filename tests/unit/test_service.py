import json
import logging
import threading

import pytest

from chapterflow.core.engine import COMPLETED_REPLY
from chapterflow.core.errors import AuthError, PersistenceError, TurnValidationError, UpstreamError
from chapterflow.core.generation import GenerationResult
from chapterflow.core.history import MAX_HISTORY_ENTRIES
from chapterflow.core.prompts import OUTLINE_INSTRUCTION
from chapterflow.core.schemas import Session, SessionStatus, decode_session
from chapterflow.core.service import SessionService
from chapterflow.core.store import InMemorySessionStore


def stored_session(store, code="X") -> Session:
    return decode_session(store.get(code).raw)


def test_requirements_turn_generates_outline(service, store, generation_client):
    generation_client.replies = ["# Bees\n- hives\n- honey"]

    result = service.process_turn("write about bees", "X")

    messages = generation_client.calls[0]
    assert messages[0] == {"role": "system", "content": OUTLINE_INSTRUCTION}
    assert len(messages) == 2
    assert "bees" in messages[1]["content"]
    assert result.status is SessionStatus.AWAITING_OUTLINE_APPROVAL
    session = stored_session(store)
    assert session.status is SessionStatus.AWAITING_OUTLINE_APPROVAL
    assert session.outline == "# Bees\n- hives\n- honey"
    assert session.initial_requirements == "write about bees"
    assert result.chapters is None


def test_confirming_outline_drafts_first_chapter(service, store, generation_client):
    generation_client.replies = ["# Bees", "Chapter one"]
    service.process_turn("write about bees", "X")

    result = service.process_turn("C", "X")

    assert "第 1 章" in generation_client.calls[1][-1]["content"]
    session = stored_session(store)
    assert session.approved_outline == "# Bees"
    assert session.current_chapter_index == 0
    assert session.status is SessionStatus.AWAITING_CHAPTER_FEEDBACK
    assert session.last_chapter_content == "Chapter one"
    assert result.current_chapter_index == 0


def test_full_flow_completes_with_all_chapters(service, store, generation_client):
    generation_client.replies = ["- one\n- two", "ch 1", "ch 2", "ch 3"]
    indices = []
    for message in ["write about bees", "C", "C", "C"]:
        indices.append(service.process_turn(message, "X").current_chapter_index)

    result = service.process_turn("c", "X")

    assert len(generation_client.calls) == 4
    assert result.status is SessionStatus.COMPLETED
    assert result.reply == COMPLETED_REPLY
    assert [(chapter.index, chapter.content) for chapter in result.chapters] == [
        (0, "ch 1"),
        (1, "ch 2"),
        (2, "ch 3"),
    ]
    assert indices == sorted(indices)
    assert stored_session(store).status is SessionStatus.COMPLETED
    assert result.to_payload()["chapters"][0] == {"index": 0, "content": "ch 1"}


def test_turn_after_completion_starts_over(service, store, generation_client):
    generation_client.replies = ["- one", "ch 1", "ch 2", "ch 3"]
    for message in ["bees", "C", "C", "C", "C"]:
        service.process_turn(message, "X")

    result = service.process_turn("wasps now", "X")

    assert result.status is SessionStatus.AWAITING_INITIAL_INPUT
    session = stored_session(store)
    assert session.confirmed_chapters == []
    assert session.conversation_history


def test_upstream_failure_leaves_session_untouched_and_is_retryable(service, store, generation_client):
    generation_client.replies = ["# Bees"]
    service.process_turn("write about bees", "X")
    before = store.get("X")
    generation_client.replies = [GenerationResult.failure("Failed to get response from AI service.", status_code=500, detail="boom")]

    with pytest.raises(UpstreamError) as excinfo:
        service.process_turn("C", "X")

    assert excinfo.value.upstream_status == 500
    assert excinfo.value.detail == "boom"
    assert store.get("X") == before
    assert stored_session(store).status is SessionStatus.AWAITING_OUTLINE_APPROVAL

    generation_client.replies = ["Chapter one"]
    service.process_turn("C", "X")

    assert generation_client.calls[-1] == generation_client.calls[-2]
    assert stored_session(store).status is SessionStatus.AWAITING_CHAPTER_FEEDBACK


class FailingWriteStore(InMemorySessionStore):
    def compare_and_set(self, code, expected_version, raw):
        raise PersistenceError("disk full")


class ConflictingStore(InMemorySessionStore):
    def compare_and_set(self, code, expected_version, raw):
        return False


@pytest.mark.parametrize("store_cls", [FailingWriteStore, ConflictingStore])
def test_lost_write_still_returns_reply(store_cls, make_client):
    store = store_cls()
    client = make_client(["# Bees"])
    service = SessionService(store=store, generation_client=client)
    service.issue_code("X")

    result = service.process_turn("write about bees", "X")

    assert result.reply.startswith("# Bees")
    assert result.status is SessionStatus.AWAITING_OUTLINE_APPROVAL
    assert stored_session(store).status is SessionStatus.AWAITING_INITIAL_INPUT


def test_guard_turn_is_not_persisted(service, store, generation_client):
    store.put("X", Session(status=SessionStatus.GENERATING_OUTLINE).to_json())
    before = store.get("X")

    result = service.process_turn("are you done?", "X")

    assert result.status is SessionStatus.GENERATING_OUTLINE
    assert generation_client.calls == []
    assert store.get("X") == before


def test_unknown_status_self_heals(service, store, generation_client):
    store.put("X", json.dumps({"status": "DRAFTING", "conversation_history": [{"role": "user", "content": "old"}]}))

    result = service.process_turn("hello", "X")

    assert result.status is SessionStatus.AWAITING_INITIAL_INPUT
    assert generation_client.calls == []
    session = stored_session(store)
    assert session.status is SessionStatus.AWAITING_INITIAL_INPUT
    assert session.conversation_history[0].content == "old"


def test_undecodable_state_starts_from_default(service, store, generation_client):
    store.put("X", "1")

    result = service.process_turn("write about bees", "X")

    assert len(generation_client.calls) == 1
    assert result.status is SessionStatus.AWAITING_OUTLINE_APPROVAL


def test_history_is_bounded_across_turns(service, store):
    service.process_turn("bees", "X")
    for index in range(15):
        service.process_turn(f"change {index}", "X")
        assert len(stored_session(store).conversation_history) <= MAX_HISTORY_ENTRIES


@pytest.mark.parametrize("message, code", [("", "X"), ("hi", ""), (None, "X"), ("hi", None)])
def test_missing_fields_are_rejected(service, store, message, code):
    before = store.get("X")

    with pytest.raises(TurnValidationError):
        service.process_turn(message, code)

    assert store.get("X") == before


def test_unknown_code_is_rejected_without_creating_state(service, store):
    with pytest.raises(AuthError) as excinfo:
        service.process_turn("hi", "nope")

    assert excinfo.value.status_code == 401
    assert store.get("nope") is None


def test_login_initializes_invalid_state(service, store):
    store.put("Y", "1")

    assert service.login("Y") is True
    assert stored_session(store, "Y") == Session.default()
    assert service.login("Y") is False


def test_login_keeps_existing_state(service, store):
    service.process_turn("bees", "X")

    assert service.login("X") is False
    assert stored_session(store).status is SessionStatus.AWAITING_OUTLINE_APPROVAL


def test_login_rejects_unknown_and_missing_codes(service):
    with pytest.raises(AuthError):
        service.login("nope")
    with pytest.raises(TurnValidationError):
        service.login("")


def test_reset_restores_default_and_clears_history(service, store, generation_client):
    for message in ["bees", "C"]:
        service.process_turn(message, "X")

    service.reset("X")

    session = stored_session(store)
    assert session.status is SessionStatus.AWAITING_INITIAL_INPUT
    assert session.current_chapter_index == -1
    assert session.confirmed_chapters == []
    assert session.outline is None
    assert session.approved_outline is None
    assert session.conversation_history == []


def test_reset_unknown_code_is_not_found(service, store):
    with pytest.raises(AuthError) as excinfo:
        service.reset("nope")

    assert excinfo.value.status_code == 404
    assert store.get("nope") is None


def test_issue_code_refuses_duplicates(service):
    generated = service.issue_code()

    assert generated
    assert service.get_session(generated) == Session.default()
    with pytest.raises(TurnValidationError):
        service.issue_code("X")


def test_new_project_prompts_leave_out_the_previous_project(service, store, generation_client):
    generation_client.replies = [
        "OLD-OUTLINE about bees",
        "BEE-CHAPTER 1",
        "BEE-CHAPTER 2",
        "BEE-CHAPTER 3",
        "NEW-OUTLINE wasps",
        "shorter wasps",
        "WASP-CHAPTER 1",
        "WASP-CHAPTER 1 revised",
    ]
    for message in ["bees project", "C", "C", "C", "C", "restart"]:
        service.process_turn(message, "X")
    assert stored_session(store).cycle == 1

    def sent_text(call):
        return "\n".join(message["content"] for message in call)

    service.process_turn("wasps project", "X")
    service.process_turn("make it shorter", "X")
    outline_revision = sent_text(generation_client.calls[-1])
    assert "OLD-OUTLINE" not in outline_revision
    assert "bees project" not in outline_revision
    assert "NEW-OUTLINE wasps" in outline_revision

    service.process_turn("C", "X")
    service.process_turn("more stings", "X")
    for call in generation_client.calls[-2:]:
        assert "BEE-CHAPTER" not in sent_text(call)
        assert "OLD-OUTLINE" not in sent_text(call)
    assert "WASP-CHAPTER 1" in sent_text(generation_client.calls[-1])


def test_unknown_codes_leave_no_lock_entries(service):
    for index in range(50):
        with pytest.raises(AuthError):
            service.process_turn("hi", f"guess-{index}")
    service.process_turn("bees", "X")
    service.login("X")

    assert service._locks == {}


class GatedGenerationClient:
    """Holds the first call until ``release`` is set."""

    model = "test-model"

    def __init__(self):
        self.calls = []
        self.entered = threading.Event()
        self.release = threading.Event()

    def generate(self, messages):
        self.calls.append(messages)
        if len(self.calls) == 1:
            self.entered.set()
            self.release.wait(5)
        return GenerationResult.success(f"outline {len(self.calls)}")


def test_turns_for_one_code_run_one_after_another(store):
    client = GatedGenerationClient()
    service = SessionService(store=store, generation_client=client)
    service.issue_code("X")
    results = {}

    def run(name, message):
        results[name] = service.process_turn(message, "X")

    first = threading.Thread(target=run, args=("first", "write about bees"))
    second = threading.Thread(target=run, args=("second", "make it shorter"))
    first.start()
    assert client.entered.wait(5)
    second.start()
    second.join(timeout=0.2)

    assert second.is_alive()
    assert len(client.calls) == 1
    assert stored_session(store).status is SessionStatus.AWAITING_INITIAL_INPUT

    client.release.set()
    first.join(5)
    second.join(5)

    assert results["first"].status is SessionStatus.AWAITING_OUTLINE_APPROVAL
    assert results["second"].status is SessionStatus.AWAITING_OUTLINE_APPROVAL
    assert "原始大纲：\noutline 1" in client.calls[1][-1]["content"]
    session = stored_session(store)
    assert session.outline == "outline 2"
    assert [entry.content for entry in session.conversation_history if entry.role == "user"] == [
        "write about bees",
        "make it shorter",
    ]
    assert store.get("X").version == 3


class RacingStore(InMemorySessionStore):
    """Another writer updates the record between a turn's load and its write."""

    def __init__(self, competing_raw):
        super().__init__()
        self.competing_raw = competing_raw

    def compare_and_set(self, code, expected_version, raw):
        if self.competing_raw is not None:
            self.put(code, self.competing_raw)
            self.competing_raw = None
        return super().compare_and_set(code, expected_version, raw)


def test_version_conflict_keeps_the_other_writer(make_client, caplog):
    competing = Session(status=SessionStatus.AWAITING_OUTLINE_APPROVAL, outline="their outline").to_json()
    store = RacingStore(competing)
    service = SessionService(store=store, generation_client=make_client(["my outline"]))
    service.issue_code("X")
    caplog.set_level(logging.INFO, logger="chapterflow")

    result = service.process_turn("write about bees", "X")

    assert result.reply.startswith("my outline")
    assert store.get("X").raw == competing
    assert store.get("X").version == 2
    assert "persist_failed" in caplog.text
    assert "version_conflict" in caplog.text

    service.process_turn("C", "X")

    assert stored_session(store).approved_outline == "their outline"


def test_login_rewrites_null_status(service, store):
    store.put("Y", json.dumps({"status": None, "outline": "x"}))

    assert service.login("Y") is True
    assert stored_session(store, "Y") == Session.default()


def test_unusable_state_is_kept_when_generation_fails(service, store, generation_client, caplog):
    store.put("X", "1")
    generation_client.replies = [GenerationResult.failure("Failed to get response from AI service.", status_code=503)]
    caplog.set_level(logging.INFO, logger="chapterflow")

    with pytest.raises(UpstreamError):
        service.process_turn("write about bees", "X")

    assert store.get("X").raw == "1"
    assert "starting from a default session" in caplog.text
    assert "initializing" not in caplog.text
