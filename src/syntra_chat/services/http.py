"""Shared httpx plumbing for the remote service clients."""

from typing import Any, Dict, Optional, Type, TypeVar

import httpx
import structlog
from pydantic import BaseModel, ValidationError

from ..domain.errors import AuthenticationError, BackendError, TransportError
from .tokens import TokenProvider

logger = structlog.get_logger()

ModelT = TypeVar("ModelT", bound=BaseModel)


def parse_model(model: Type[ModelT], response: httpx.Response, default_message: str) -> ModelT:
    """Validate a response body against a model at the service boundary."""
    try:
        return model.model_validate(response.json())
    except (ValueError, ValidationError) as e:
        logger.error("api_response_invalid", model=model.__name__, error=str(e))
        raise BackendError(f"{default_message}: malformed response", status_code=response.status_code) from e


def extract_error_detail(response: httpx.Response, default_message: str) -> str:
    """Pull a readable message out of an error response body."""
    try:
        data = response.json()
    except ValueError:
        return default_message
    if isinstance(data, dict):
        for key in ("detail", "message", "error"):
            value = data.get(key)
            if isinstance(value, str) and value:
                return value
    return default_message


class ApiClient:
    """Base class for clients of a JSON HTTP API.

    Supports async context manager protocol for proper resource cleanup:
        async with ChatBackendClient(...) as client:
            await client.list_conversations(user_id)
    """

    def __init__(
        self,
        base_url: str,
        token_provider: TokenProvider,
        timeout: float = 30.0,
        api_key: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._token_provider = token_provider
        self._api_key = api_key
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            transport=transport,
            headers={"Content-Type": "application/json"},
        )

    @property
    def http(self) -> httpx.AsyncClient:
        return self._client

    def auth_headers(self, token: Optional[str] = None) -> Dict[str, str]:
        """Headers identifying the caller to the remote service."""
        headers: Dict[str, str] = {}
        if self._api_key:
            headers["x-api-key"] = self._api_key
        token = token or self._token_provider.get_token()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def request(
        self,
        method: str,
        path: str,
        default_message: str,
        token: Optional[str] = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send one request and translate failures into client errors."""
        headers = {**self.auth_headers(token), **kwargs.pop("headers", {})}
        try:
            response = await self._client.request(method, path, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            logger.error("api_request_failed", method=method, path=path, error=str(e))
            raise TransportError(
                "Network Error: No response from server. Please check your internet connection."
            ) from e

        if response.status_code == 401:
            logger.warning("api_unauthorized", method=method, path=path)
            raise AuthenticationError(extract_error_detail(response, "Authentication required"))
        if response.is_error:
            detail = extract_error_detail(response, default_message)
            logger.error(
                "api_error_response",
                method=method,
                path=path,
                status_code=response.status_code,
                detail=detail,
            )
            raise BackendError(detail, status_code=response.status_code)
        return response

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "ApiClient":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()
