from __future__ import annotations

import enum
import logging
import threading
from collections import defaultdict
from typing import Any, Dict, List, Sequence, Tuple

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage

from chat.core.errors import (
    CompletionFailed,
    EmptyModelResponse,
    InvalidInput,
    ModelUnavailable,
)
from chat.core.memory import ChatTurn, ConversationStore
from chat.model_selector import ModelSelector


logger = logging.getLogger("chatapp.completion")

TEST_PROMPT = "Test response: Hello!"
_MODEL_FAILURE_MARKERS = ("model", "quota")


class CompletionState(enum.Enum):
    IDLE = "idle"
    USER_TURN_STAGED = "user_turn_staged"
    MODEL_INVOKED = "model_invoked"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


_TRANSITIONS = {
    CompletionState.IDLE: {CompletionState.USER_TURN_STAGED},
    CompletionState.USER_TURN_STAGED: {
        CompletionState.MODEL_INVOKED,
        CompletionState.ROLLED_BACK,
    },
    CompletionState.MODEL_INVOKED: {
        CompletionState.COMMITTED,
        CompletionState.ROLLED_BACK,
    },
    CompletionState.COMMITTED: set(),
    CompletionState.ROLLED_BACK: set(),
}


class CompletionRun:
    """Tracks one request through stage, invoke and commit/rollback."""

    def __init__(self, user_id: str):
        self.user_id = user_id
        self.state = CompletionState.IDLE

    def advance(self, target: CompletionState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise RuntimeError(
                f"Illegal completion transition {self.state.value} -> {target.value}"
            )
        self.state = target


def to_lc_messages(history: Sequence[ChatTurn]) -> List[BaseMessage]:
    messages: List[BaseMessage] = []
    for turn in history:
        if turn.role == "user":
            messages.append(HumanMessage(content=turn.content))
        else:
            messages.append(AIMessage(content=turn.content))
    return messages


def build_context_window(history: Sequence[ChatTurn], max_turns: int) -> List[ChatTurn]:
    """Trailing ``max_turns`` turns of ``history``, in store order.

    ``history`` must not contain the message currently being answered.
    """
    if max_turns <= 0:
        return []
    return list(history[-max_turns:])


def extract_text(content: Any) -> str:
    # Gemini may answer with a list of parts instead of a plain string.
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and part.get("type", "text") == "text":
                parts.append(str(part.get("text") or ""))
        return "".join(parts)
    return ""


def is_model_failure(exc: BaseException) -> bool:
    if isinstance(exc, ModelUnavailable):
        return True
    text = f"{getattr(exc, 'message', '')} {exc}".lower()
    return any(marker in text for marker in _MODEL_FAILURE_MARKERS)


class ChatCompletionService:
    """Turns one user message into a persisted, answered conversation turn.

    The user turn is committed before the model is called and removed again
    if anything between model resolution and the assistant append fails, so
    the stored log never ends with an unanswered message from this call.
    Calls for the same user are serialized; different users run in parallel.
    """

    def __init__(
        self,
        store: ConversationStore,
        selector: ModelSelector,
        context_turns: int = 9,
    ):
        self._store = store
        self._selector = selector
        self._context_turns = context_turns
        self._user_locks: Dict[str, threading.Lock] = defaultdict(threading.Lock)
        self._user_locks_guard = threading.Lock()

    @property
    def selector(self) -> ModelSelector:
        return self._selector

    def complete(self, user_id: str, message: str) -> List[ChatTurn]:
        if not message or not message.strip():
            raise InvalidInput()

        with self._lock_for(user_id):
            history = self._store.get_turns(user_id)
            run = CompletionRun(user_id)

            self._store.append_turn(user_id, ChatTurn(role="user", content=message))
            run.advance(CompletionState.USER_TURN_STAGED)

            window = build_context_window(history, self._context_turns)
            try:
                reply = self._generate(run, window, message)
                self._store.append_turn(user_id, ChatTurn(role="assistant", content=reply))
            except Exception as exc:
                self._rollback(run, exc)
                raise CompletionFailed(exc) from exc
            run.advance(CompletionState.COMMITTED)
            return history + [
                ChatTurn(role="user", content=message),
                ChatTurn(role="assistant", content=reply),
            ]

    def history(self, user_id: str) -> List[ChatTurn]:
        return self._store.get_turns(user_id)

    def clear_history(self, user_id: str) -> None:
        with self._lock_for(user_id):
            self._store.clear_turns(user_id)
        logger.info("Cleared chats for user=%s", user_id)

    def check_connection(self) -> Tuple[str, str]:
        """Re-probe the candidate list from scratch and run a test prompt."""
        self._selector.invalidate()
        try:
            handle = self._selector.resolve()
            text = extract_text(handle.model.invoke(TEST_PROMPT).content)
        except Exception as exc:
            logger.error("Gemini test failed: %s", exc)
            raise CompletionFailed(exc, message="Gemini API test failed") from exc
        return handle.name, text

    def _generate(self, run: CompletionRun, window: List[ChatTurn], message: str) -> str:
        handle = self._selector.resolve()
        messages = to_lc_messages(window)
        messages.append(HumanMessage(content=message))

        run.advance(CompletionState.MODEL_INVOKED)
        logger.info(
            "Generating response: user=%s model=%s history_turns=%s",
            run.user_id,
            handle.name,
            len(window),
        )
        result = handle.model.invoke(messages)
        if result is None:
            raise EmptyModelResponse("No response received from AI")

        text = extract_text(getattr(result, "content", None))
        if not text.strip():
            raise EmptyModelResponse()
        return text

    def _rollback(self, run: CompletionRun, exc: Exception) -> None:
        logger.error("AI error for user=%s: %s", run.user_id, exc)
        if is_model_failure(exc):
            self._selector.invalidate()
        self._store.remove_last_turn(run.user_id)
        run.advance(CompletionState.ROLLED_BACK)

    def _lock_for(self, user_id: str) -> threading.Lock:
        with self._user_locks_guard:
            return self._user_locks[user_id]
