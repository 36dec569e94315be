from __future__ import annotations

from typing import Optional


class ChatError(Exception):
    """Base class for failures surfaced to HTTP callers.

    ``message`` is the human readable text returned to clients and
    ``http_status`` the status code the API layer answers with.
    """

    http_status: int = 500
    default_message: str = "Failed to process chat"

    def __init__(self, message: Optional[str] = None, *, error: Optional[str] = None):
        self.message = message or self.default_message
        self.error = error
        super().__init__(self.message)

    def to_payload(self) -> dict:
        payload = {"message": self.message}
        if self.error:
            payload["error"] = self.error
        return payload


class InvalidInput(ChatError):
    http_status = 400
    default_message = "Message is required"


class Unauthorized(ChatError):
    http_status = 401
    default_message = "Permission denied"


class UserNotFound(Unauthorized):
    default_message = "User not found or token invalid"


class StoreError(ChatError):
    default_message = "Failed to access chat history"


class ModelUnavailable(ChatError):
    default_message = "No available Gemini models found"


class EmptyModelResponse(ChatError):
    default_message = "Empty response from AI"


class CompletionFailed(ChatError):
    default_message = "Failed to get AI response"

    def __init__(self, cause: BaseException, message: Optional[str] = None):
        self.cause = cause
        detail = getattr(cause, "message", None) or str(cause) or type(cause).__name__
        super().__init__(message, error=detail)
