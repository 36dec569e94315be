from __future__ import annotations

import os
from functools import lru_cache
from typing import List, Optional

from dotenv import load_dotenv


load_dotenv()


DEFAULT_MODELS = "gemini-1.5-flash,gemini-1.5-pro,gemini-pro,gemini-1.0-pro"


def _split_csv(raw: str) -> List[str]:
    return [item.strip() for item in raw.split(",") if item.strip()]


class Settings:
    """Application settings loaded from environment variables.

    Keep all credentials and config centralized here.
    """

    app_env: str = os.getenv("APP_ENV", "development")
    gemini_api_key: Optional[str] = (os.getenv("GEMINI_API_KEY") or "").strip() or None
    # Preference order: fastest first, most capable later.
    gemini_models: List[str] = _split_csv(os.getenv("GEMINI_MODELS", DEFAULT_MODELS))
    context_turns: int = int(os.getenv("CHAT_CONTEXT_TURNS", "9"))
    temperature: float = float(os.getenv("MODEL_TEMPERATURE", "0.9"))
    top_k: int = int(os.getenv("MODEL_TOP_K", "40"))
    top_p: float = float(os.getenv("MODEL_TOP_P", "0.95"))
    max_output_tokens: int = int(os.getenv("MODEL_MAX_OUTPUT_TOKENS", "2048"))
    model_timeout: float = float(os.getenv("MODEL_TIMEOUT_SECONDS", "60"))
    model_max_retries: int = int(os.getenv("MODEL_MAX_RETRIES", "2"))
    database_path: str = os.getenv("DATABASE_PATH", "chat.db")
    jwt_secret: Optional[str] = os.getenv("JWT_SECRET")
    auth_cookie_name: str = os.getenv("AUTH_COOKIE_NAME", "auth_token")
    allowed_origins: List[str] = _split_csv(
        os.getenv("ALLOWED_ORIGINS", "http://localhost:5173")
    )

    @property
    def is_development(self) -> bool:
        return self.app_env.lower() in {"dev", "development", "local"}

    def validate_api_key(self) -> str:
        key = (self.gemini_api_key or "").strip()
        if not key:
            raise RuntimeError(
                "GEMINI_API_KEY is not configured in environment variables"
            )
        if not key.startswith("AIza"):
            raise RuntimeError(
                "Invalid GEMINI_API_KEY format. It should start with 'AIza'"
            )
        return key


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
