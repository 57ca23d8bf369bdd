"""
Configuration and settings for the memo service.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed settings for the FastAPI service."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    api_prefix: str = Field(default="/api")
    app_env: str = Field(default="development")
    log_level: str = Field(default="INFO")

    # Hosted platform (Supabase)
    supabase_url: Optional[str] = Field(default=None)
    supabase_anon_key: Optional[str] = Field(default=None)

    # Development toggles
    use_in_memory_backends: bool = Field(default=False)

    # Page paths the browser is sent to
    landing_path: str = Field(default="/home")
    signup_path: str = Field(default="/signup")
    session_cookie_name: str = Field(default="memopad-access-token")

    # Collections
    memos_table: str = Field(default="memos")
    users_table: str = Field(default="users")

    # Profile rows. The hash is write-only; nothing reads it back.
    password_hash_rounds: int = Field(default=10, ge=4, le=31)
    store_profile_password_hash: bool = Field(default=True)
    # Merge profile rows on email. Needs a unique constraint on users.email.
    profile_upsert: bool = Field(default=False)

    @property
    def is_development(self) -> bool:
        return self.app_env.lower() in {"dev", "development", "local"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
