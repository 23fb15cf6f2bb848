from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # SQLite export produced from the WhatsApp backup (opened read-only)
    DATABASE_PATH: str = "whatsapp_chats.db"

    # Folder holding the exported media files, optional
    ATTACHMENTS_ROOT: Optional[str] = None

    LOG_LEVEL: str = "INFO"

    # Pagination
    PAGE_BATCH_SIZE: int = Field(default=400, ge=1)
    MAX_PAGE_SIZE: int = Field(default=1000, ge=1)
    NEAR_TOP_THRESHOLD_PX: int = Field(default=200, ge=0)

    # Search runs either over the whole conversation or the loaded window.
    # One scope per deployment.
    SEARCH_SCOPE: Literal["conversation", "window"] = "conversation"

    # Prefix of the display URLs issued for resolved attachments
    MEDIA_URL_PREFIX: str = "/api/media"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()
