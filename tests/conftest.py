from __future__ import annotations

import threading
from typing import Any, Callable, Dict, List, Optional

import pytest
from langchain_core.messages import AIMessage

from chat.core.memory import SqliteConversationStore


class ScriptedModel:
    """Stand-in for a Gemini chat model.

    ``reply`` is either the text to answer with, an exception to raise, or a
    callable receiving the message list. Probe calls (plain string input) are
    counted separately from conversation calls.
    """

    def __init__(self, name: str, reply: Any = "Hi there!", probe_error: Optional[Exception] = None):
        self.name = name
        self.reply = reply
        self.probe_error = probe_error
        self.probes = 0
        self.conversations: List[list] = []
        self._lock = threading.Lock()

    def invoke(self, input, *args, **kwargs):
        if isinstance(input, str):
            with self._lock:
                self.probes += 1
            if self.probe_error is not None:
                raise self.probe_error
            return AIMessage(content=f"{self.name} says hello")

        with self._lock:
            self.conversations.append(list(input))
        reply = self.reply
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            reply = reply(input)
        return AIMessage(content=reply)


class FakeFactory:
    def __init__(self, models: Dict[str, ScriptedModel]):
        self.models = models
        self.built: List[str] = []

    def __call__(self, name: str):
        self.built.append(name)
        if name not in self.models:
            raise RuntimeError(f"404 model {name} not found")
        return self.models[name]


@pytest.fixture
def store():
    s = SqliteConversationStore(":memory:")
    yield s
    s.close()


@pytest.fixture
def seeded_store(store) -> Callable[[str, int], SqliteConversationStore]:
    """Create a user with ``count`` alternating user/assistant turns."""
    from chat.core.memory import ChatTurn

    def seed(user_id: str, count: int = 0) -> SqliteConversationStore:
        store.create_user(user_id)
        for i in range(count):
            role = "user" if i % 2 == 0 else "assistant"
            store.append_turn(user_id, ChatTurn(role=role, content=f"turn {i}"))
        return store

    return seed
