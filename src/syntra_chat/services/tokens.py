"""Access token storage abstraction."""

import time
from abc import ABC, abstractmethod
from typing import Optional

import jwt
import structlog

from ..config import TOKEN_EXPIRY_LEEWAY_SECONDS

logger = structlog.get_logger()


class TokenProvider(ABC):
    """Where the current access token lives.

    Transport and clients only ever talk to this interface, so the storage
    mechanism (memory, cookies bridged by the BFF, a keyring) can change
    without touching them.
    """

    @abstractmethod
    def get_token(self) -> Optional[str]:
        """Return the current token, if any."""
        pass

    @abstractmethod
    def set_token(self, token: str) -> None:
        """Store a freshly issued token."""
        pass

    @abstractmethod
    def clear_token(self) -> None:
        """Forget the token."""
        pass


class InMemoryTokenProvider(TokenProvider):
    """Token held in process memory."""

    def __init__(self, token: Optional[str] = None) -> None:
        self._token = token

    def get_token(self) -> Optional[str]:
        return self._token

    def set_token(self, token: str) -> None:
        self._token = token

    def clear_token(self) -> None:
        self._token = None


def is_token_expired(
    token: str,
    leeway: float = TOKEN_EXPIRY_LEEWAY_SECONDS,
    now: Optional[float] = None,
) -> bool:
    """Check the JWT ``exp`` claim without verifying the signature.

    Tokens without ``exp`` never expire locally; undecodable tokens count as
    expired.
    """
    try:
        claims = jwt.decode(token, options={"verify_signature": False})
    except jwt.PyJWTError as e:
        logger.warning("token_decode_failed", error=str(e))
        return True
    exp = claims.get("exp")
    if exp is None:
        return False
    current = time.time() if now is None else now
    return float(exp) < current + leeway
