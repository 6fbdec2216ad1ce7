"""Client for the remote authentication service."""

from typing import List, Optional

import httpx
import structlog

from ..domain.errors import AuthenticationError, BackendError, ChatClientError
from ..domain.models import Collection, LoginRequest, LoginResponse, User
from .http import ApiClient, parse_model
from .tokens import TokenProvider, is_token_expired

logger = structlog.get_logger()


class AuthClient(ApiClient):
    """Login, logout and profile lookups against the main API."""

    def __init__(
        self,
        base_url: str,
        token_provider: TokenProvider,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__(base_url, token_provider, timeout=timeout, transport=transport)

    async def login(self, credentials: LoginRequest) -> LoginResponse:
        """Authenticate and store the issued token in the token provider."""
        message = "Failed to login"
        response = await self.request("POST", "/auth/login", message, json=credentials.model_dump())
        result = parse_model(LoginResponse, response, message)
        self._token_provider.set_token(result.access_token)
        logger.info("user_logged_in", user_id=result.user.id, expires_in=result.expires_in)
        return result

    async def logout(self, token: Optional[str] = None) -> None:
        """Tell the backend to end the session; the local token is always cleared."""
        token = token or self._token_provider.get_token()
        try:
            if token:
                await self.request("POST", "/auth/logout", "Failed to logout", token=token)
        except ChatClientError as e:
            logger.warning("backend_logout_failed", error=str(e))
        finally:
            self._token_provider.clear_token()
            logger.info("user_logged_out")

    def check_token(self) -> str:
        """Return the current token or raise when it is missing or expired."""
        token = self._token_provider.get_token()
        if not token:
            raise AuthenticationError("No access token found")
        if is_token_expired(token):
            self._token_provider.clear_token()
            raise AuthenticationError("Token expired")
        return token

    async def get_profile(self) -> User:
        message = "Failed to get user profile"
        response = await self.request("GET", "/users/me", message)
        return parse_model(User, response, message)

    async def get_collections(self) -> List[Collection]:
        message = "Failed to get collections"
        response = await self.request("GET", "/collections/chat-accessible", message)
        try:
            return [Collection.model_validate(item) for item in response.json()]
        except (ValueError, TypeError) as e:
            logger.error("api_response_invalid", model="Collection", error=str(e))
            raise BackendError(f"{message}: malformed response", status_code=response.status_code) from e
