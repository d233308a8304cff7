from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration for the notes chat service."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Gemini AI
    gemini_api_key: str | None = Field(default=None, alias="GEMINI_API_KEY")
    # Comma-separated list of Gemini API keys; re-read on every generation call.
    gemini_api_keys: str | None = Field(default=None, alias="GEMINI_API_KEYS")
    gemini_model_id: str = Field(default="gemini-1.5-flash", alias="GEMINI_MODEL_ID")
    gemini_base_url: str = Field(
        default="https://generativelanguage.googleapis.com/v1beta", alias="GEMINI_BASE_URL"
    )
    gemini_max_retries: int = Field(default=3, alias="GEMINI_MAX_RETRIES", ge=1, le=10)
    gemini_key_rotation: Literal["random", "round_robin"] = Field(
        default="random", alias="GEMINI_KEY_ROTATION"
    )
    gemini_timeout_seconds: float = Field(default=120.0, alias="GEMINI_TIMEOUT_SECONDS")
    # Inline request payloads above this size are rejected by the API
    gemini_max_inline_bytes: int = Field(default=20 * 1024 * 1024, alias="GEMINI_MAX_INLINE_BYTES")
    history_context_messages: int = Field(default=6, alias="HISTORY_CONTEXT_MESSAGES", ge=0)

    # Google Drive
    drive_api_base_url: str = Field(default="https://www.googleapis.com/drive/v3", alias="DRIVE_API_BASE_URL")
    drive_public_base_url: str = Field(default="https://drive.google.com", alias="DRIVE_PUBLIC_BASE_URL")
    oauth_revoke_url: str = Field(default="https://oauth2.googleapis.com/revoke", alias="OAUTH_REVOKE_URL")
    drive_token_default_ttl_seconds: int = Field(default=3600, alias="DRIVE_TOKEN_DEFAULT_TTL_SECONDS")
    drive_timeout_seconds: float = Field(default=60.0, alias="DRIVE_TIMEOUT_SECONDS")
    max_upload_bytes: int = Field(default=50 * 1024 * 1024, alias="MAX_UPLOAD_BYTES")

    # Firebase
    firebase_service_account_key: str | None = Field(default=None, alias="FIREBASE_SERVICE_ACCOUNT_KEY")
    chats_collection: str = Field(default="chats", alias="CHATS_COLLECTION")
    notes_collection: str = Field(default="notes", alias="NOTES_COLLECTION")

    # Redis (browsing-session storage for Drive tokens)
    redis_url: str = Field(default="redis://localhost:6379/0", alias="REDIS_URL")
    token_storage_backend: Literal["redis", "memory"] = Field(default="redis", alias="TOKEN_STORAGE_BACKEND")
    session_ttl_seconds: int = Field(default=24 * 60 * 60, alias="SESSION_TTL_SECONDS")

    # Chat
    autosave_debounce_seconds: float = Field(default=2.0, alias="AUTOSAVE_DEBOUNCE_SECONDS")
    # Downloaded PDFs kept per session; the least recently opened goes first
    document_cache_size: int = Field(default=2, alias="DOCUMENT_CACHE_SIZE", ge=1)
    # Sessions with no request for this long are flushed and dropped
    session_idle_seconds: float = Field(default=30 * 60, alias="SESSION_IDLE_SECONDS", gt=0)
    session_sweep_interval_seconds: float = Field(default=60.0, alias="SESSION_SWEEP_INTERVAL_SECONDS", gt=0)

    # Caller identity: Firebase ID tokens in the Authorization header.
    # Disable only for local development, then X-User-Id is trusted as is.
    auth_required: bool = Field(default=True, alias="AUTH_REQUIRED")

    # FastAPI
    app_host: str = Field(default="0.0.0.0", alias="APP_HOST")
    app_port: int = Field(default=8082, alias="APP_PORT")
    debug: bool = Field(default=False, alias="DEBUG")
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(default="INFO", alias="LOG_LEVEL")

    @property
    def gemini_api_keys_list(self) -> list[str]:
        """Resolve the key pool. Prefer GEMINI_API_KEYS; fallback to GEMINI_API_KEY."""
        if self.gemini_api_keys:
            keys = [k.strip() for k in self.gemini_api_keys.split(",") if k.strip()]
            if keys:
                return keys
        if self.gemini_api_key and self.gemini_api_key.strip():
            return [self.gemini_api_key.strip()]
        return []


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]
