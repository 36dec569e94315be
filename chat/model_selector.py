from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Sequence, Tuple

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_google_genai import ChatGoogleGenerativeAI

from chat.core.errors import ModelUnavailable
from config.settings import Settings, get_settings


logger = logging.getLogger("chatapp.models")

PROBE_PROMPT = "Hello"

ModelFactory = Callable[[str], BaseChatModel]


@dataclass(frozen=True)
class ModelHandle:
    name: str
    model: Any


def build_gemini_factory(settings: Optional[Settings] = None) -> ModelFactory:
    """Return a factory producing Gemini chat models with the fixed
    generation configuration shared by every request.

    The API key is checked when a model is built, so a misconfigured key
    shows up as a failed probe rather than an import error.
    """
    settings = settings or get_settings()

    def factory(model_name: str) -> BaseChatModel:
        return ChatGoogleGenerativeAI(
            model=model_name,
            google_api_key=settings.validate_api_key(),
            temperature=settings.temperature,
            top_k=settings.top_k,
            top_p=settings.top_p,
            max_output_tokens=settings.max_output_tokens,
            timeout=settings.model_timeout,
            max_retries=settings.model_max_retries,
        )

    return factory


class ModelSelector:
    """Resolve a usable model from an ordered preference list.

    The first candidate that answers a probe is cached until ``invalidate``
    is called. Probing runs under the lock, so concurrent callers wait for a
    single probe pass instead of each hitting the API.
    """

    def __init__(self, candidates: Sequence[str], factory: ModelFactory):
        if not candidates:
            raise ValueError("At least one candidate model is required")
        self._candidates: Tuple[str, ...] = tuple(candidates)
        self._factory = factory
        self._lock = threading.Lock()
        self._cached: Optional[ModelHandle] = None

    @property
    def current_name(self) -> Optional[str]:
        handle = self._cached
        return handle.name if handle else None

    def resolve(self) -> ModelHandle:
        handle = self._cached
        if handle is not None:
            return handle

        with self._lock:
            # Another thread may have finished probing while we waited.
            if self._cached is not None:
                return self._cached

            failures: List[str] = []
            for name in self._candidates:
                model = self._probe(name, failures)
                if model is not None:
                    self._cached = ModelHandle(name=name, model=model)
                    logger.info("Using model: %s", name)
                    return self._cached

        raise ModelUnavailable(error="; ".join(failures))

    def invalidate(self) -> None:
        with self._lock:
            if self._cached is not None:
                logger.info("Resetting cached model %s", self._cached.name)
            self._cached = None

    def _probe(self, name: str, failures: List[str]) -> Optional[BaseChatModel]:
        try:
            model = self._factory(name)
            model.invoke(PROBE_PROMPT)
        except Exception as exc:
            logger.warning("Model %s is not available: %s", name, exc)
            failures.append(f"{name}: {exc}")
            return None
        logger.info("Model %s is available", name)
        return model
