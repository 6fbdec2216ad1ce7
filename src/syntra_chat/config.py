"""Runtime settings read from the environment."""

import os
from typing import Optional

from pydantic import BaseModel

DEFAULT_CHAT_API_URL = "http://localhost:8000/"
DEFAULT_MAIN_API_URL = "http://localhost:8001/"

ACCESS_TOKEN_COOKIE = "syntra_chat_accessToken"
USER_COOKIE = "syntra_chat_user"

# Tokens this close to expiry are treated as expired.
TOKEN_EXPIRY_LEEWAY_SECONDS = 5 * 60


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    """Client configuration."""

    chat_api_url: str = DEFAULT_CHAT_API_URL
    chat_api_key: Optional[str] = None
    main_api_url: str = DEFAULT_MAIN_API_URL
    request_timeout: float = 30.0

    # History changes while streaming, so it goes stale quickly.
    history_stale_seconds: float = 5.0
    details_stale_seconds: float = 300.0
    cache_retries: int = 3
    cache_retry_delay: float = 0.5

    refetch_delay: float = 1.0
    settle_attempts: int = 3
    history_limit: int = 50

    cookie_secure: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from SYNTRA_* environment variables."""
        return cls(
            chat_api_url=os.getenv("SYNTRA_CHAT_API_URL", DEFAULT_CHAT_API_URL),
            chat_api_key=os.getenv("SYNTRA_CHAT_API_KEY"),
            main_api_url=os.getenv("SYNTRA_MAIN_API_URL", DEFAULT_MAIN_API_URL),
            request_timeout=float(os.getenv("SYNTRA_REQUEST_TIMEOUT", "30")),
            history_stale_seconds=float(os.getenv("SYNTRA_HISTORY_STALE_SECONDS", "5")),
            details_stale_seconds=float(os.getenv("SYNTRA_DETAILS_STALE_SECONDS", "300")),
            cache_retries=int(os.getenv("SYNTRA_CACHE_RETRIES", "3")),
            cache_retry_delay=float(os.getenv("SYNTRA_CACHE_RETRY_DELAY", "0.5")),
            refetch_delay=float(os.getenv("SYNTRA_REFETCH_DELAY", "1.0")),
            settle_attempts=int(os.getenv("SYNTRA_SETTLE_ATTEMPTS", "3")),
            history_limit=int(os.getenv("SYNTRA_HISTORY_LIMIT", "50")),
            cookie_secure=_env_bool("SYNTRA_COOKIE_SECURE", False),
        )
