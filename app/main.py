from __future__ import annotations

import logging
import threading
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from app.auth import get_current_user_id
from chat.completion import ChatCompletionService
from chat.core.errors import ChatError, InvalidInput
from chat.core.memory import ChatTurn, SqliteConversationStore
from chat.model_selector import ModelSelector, build_gemini_factory
from config.settings import Settings, get_settings


logging.basicConfig(level=logging.INFO, format="[%(asctime)s] %(levelname)s - %(message)s")
logger = logging.getLogger("chatapp")


class NewChatRequest(BaseModel):
    message: str = Field("", description="User's latest message")


def build_service(settings: Settings) -> ChatCompletionService:
    store = SqliteConversationStore(settings.database_path)
    selector = ModelSelector(settings.gemini_models, build_gemini_factory(settings))
    return ChatCompletionService(store, selector, context_turns=settings.context_turns)


_service_lock = threading.Lock()


def get_service(request: Request) -> ChatCompletionService:
    state = request.app.state
    if state.service is None:
        with _service_lock:
            if state.service is None:
                state.service = build_service(state.settings)
    return state.service


def _dump(turns: List[ChatTurn]) -> List[Dict[str, Any]]:
    return [t.model_dump() for t in turns]


def _failure(message: str, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=500, content={"message": message, "error": str(exc)})


router = APIRouter(prefix="/chat")


@router.post("/new")
def generate_chat_completion(
    req: NewChatRequest,
    user_id: str = Depends(get_current_user_id),
    service: ChatCompletionService = Depends(get_service),
):
    logger.info("Incoming chat: user=%s message_len=%s", user_id, len(req.message or ""))
    try:
        chats = service.complete(user_id, req.message)
    except ChatError:
        raise
    except Exception as e:
        logger.exception("Chat processing failed: %s", e)
        return _failure("Failed to process chat", e)
    logger.info("Model responded: user=%s total_turns=%s", user_id, len(chats))
    return {"chats": _dump(chats)}


@router.get("/all-chats")
def send_chats_to_user(
    user_id: str = Depends(get_current_user_id),
    service: ChatCompletionService = Depends(get_service),
):
    try:
        chats = service.history(user_id)
    except ChatError:
        raise
    except Exception as e:
        logger.exception("Get chats failed: %s", e)
        return _failure("Failed to get chats", e)
    return {"message": "OK", "chats": _dump(chats)}


@router.delete("/delete")
def delete_chats(
    user_id: str = Depends(get_current_user_id),
    service: ChatCompletionService = Depends(get_service),
):
    try:
        service.clear_history(user_id)
    except ChatError:
        raise
    except Exception as e:
        logger.exception("Delete chats failed: %s", e)
        return _failure("Failed to delete chats", e)
    return {"message": "Chats deleted successfully"}


@router.get("/test")
def test_gemini_connection(
    user_id: str = Depends(get_current_user_id),
    service: ChatCompletionService = Depends(get_service),
):
    logger.info("Connection test requested by user=%s", user_id)
    model_name, text = service.check_connection()
    return {
        "message": "Gemini API is working",
        "modelName": model_name,
        "testResponse": text,
    }


async def _chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
    if exc.http_status >= 500:
        logger.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.message, exc.error)
    return JSONResponse(status_code=exc.http_status, content=exc.to_payload())


async def _validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Only /chat/new takes a body.
    detail = "; ".join(
        f"{'.'.join(str(part) for part in err.get('loc', ()))}: {err.get('msg', '')}"
        for err in exc.errors()
    )
    logger.info("Rejected request body on %s: %s", request.url.path, detail)
    return JSONResponse(
        status_code=400,
        content=InvalidInput(error=detail or None).to_payload(),
    )


def create_app(
    settings: Optional[Settings] = None,
    service: Optional[ChatCompletionService] = None,
) -> FastAPI:
    settings = settings or get_settings()
    app = FastAPI(title="Gemini Chat", version="1.0.0")
    app.state.settings = settings
    app.state.service = service

    logger.info(
        "Config: models=%s context_turns=%s key_set=%s",
        ",".join(settings.gemini_models),
        settings.context_turns,
        bool(settings.gemini_api_key),
    )
    try:
        settings.validate_api_key()
    except RuntimeError as e:
        logger.warning("%s; completions will fail until it is fixed", e)

    if settings.is_development:
        origins = ["*"]
    else:
        origins = settings.allowed_origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["*"],
        max_age=86400,
    )

    app.add_exception_handler(ChatError, _chat_error_handler)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)
    app.include_router(router, prefix="/api/v1")

    @app.get("/health")
    def health():
        return {"status": "ok"}

    return app


app = create_app()
