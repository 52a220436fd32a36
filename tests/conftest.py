from __future__ import annotations

import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from chapterflow.core.generation import GenerationResult  # noqa: E402
from chapterflow.core.service import SessionService  # noqa: E402
from chapterflow.core.store import InMemorySessionStore  # noqa: E402


class ScriptedGenerationClient:
    """Returns queued replies in order, then numbered defaults."""

    model = "test-model"

    def __init__(self, replies=None):
        self.replies = list(replies or [])
        self.calls = []

    def generate(self, messages):
        self.calls.append(messages)
        if not self.replies:
            return GenerationResult.success(f"generated {len(self.calls)}")
        reply = self.replies.pop(0)
        if isinstance(reply, GenerationResult):
            return reply
        return GenerationResult.success(reply)


@pytest.fixture
def generation_client():
    return ScriptedGenerationClient()


@pytest.fixture
def store():
    return InMemorySessionStore()


@pytest.fixture
def service(store, generation_client):
    service = SessionService(store=store, generation_client=generation_client)
    service.issue_code("X")
    return service


@pytest.fixture
def make_client():
    return ScriptedGenerationClient
