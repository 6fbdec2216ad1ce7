"""Application state container.

One ``AppState`` is created per signed-in client when it starts. It owns the
token provider, the service clients, the session cache and the session
controller, and is reset on logout so nothing of the previous user survives.
"""

from typing import List, Optional

import httpx
import structlog

from .config import Settings
from .domain.errors import AuthenticationError
from .domain.models import (
    ConversationList,
    ConversationListItem,
    ConversationStatus,
    CreateConversationRequest,
    CreateConversationResponse,
    LoginRequest,
    LoginResponse,
    User,
)
from .repositories.cache import SessionCache
from .services.auth import AuthClient
from .services.backend import ChatBackendClient
from .services.stream import StreamTransport
from .services.tokens import InMemoryTokenProvider, TokenProvider
from .session.controller import SessionController

logger = structlog.get_logger()


def filter_conversations(conversations: List[ConversationListItem], search: str) -> List[ConversationListItem]:
    """Case-insensitive match on title or topic summary."""
    query = search.strip().lower()
    if not query:
        return list(conversations)
    return [
        conversation
        for conversation in conversations
        if query in conversation.title.lower()
        or (conversation.topic_summary and query in conversation.topic_summary.lower())
    ]


class ConversationManager:
    """Conversation list and metadata operations for the signed-in user."""

    def __init__(
        self,
        backend: ChatBackendClient,
        cache: SessionCache,
        controller: SessionController,
        state: "AppState",
    ) -> None:
        self._backend = backend
        self._cache = cache
        self._controller = controller
        self._state = state

    async def list_conversations(
        self,
        status: Optional[ConversationStatus] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
        search: str = "",
    ) -> ConversationList:
        listing = await self._backend.list_conversations(
            self._state.require_user().id, status=status, limit=limit, offset=offset
        )
        if search:
            listing = listing.model_copy(
                update={"conversations": filter_conversations(listing.conversations, search)}
            )
        return listing

    async def create_and_select(self, request: CreateConversationRequest) -> CreateConversationResponse:
        if request.user_id is None:
            request = request.model_copy(update={"user_id": self._state.require_user().id})
        created = await self._backend.create_conversation(request)
        await self._controller.select_conversation(created.conversation_id)
        return created

    async def delete(self, conversation_id: str) -> None:
        await self._backend.delete_conversation(conversation_id)
        self._cache.remove(conversation_id)
        if self._controller.current_conversation_id == conversation_id:
            await self._controller.select_conversation(None)

    async def rename(self, conversation_id: str, title: str) -> None:
        await self._backend.update_conversation_title(conversation_id, title)
        self._cache.invalidate(conversation_id)

    async def set_status(self, conversation_id: str, status: ConversationStatus) -> None:
        await self._backend.update_conversation_status(conversation_id, status)
        self._cache.invalidate(conversation_id)


class AppState:
    """Everything a signed-in client session holds."""

    def __init__(
        self,
        settings: Settings,
        tokens: Optional[TokenProvider] = None,
        chat_transport: Optional[httpx.AsyncBaseTransport] = None,
        auth_transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings
        self.tokens = tokens or InMemoryTokenProvider()
        self.user: Optional[User] = None
        self.auth = AuthClient(
            settings.main_api_url, self.tokens, timeout=settings.request_timeout, transport=auth_transport
        )
        self.backend = ChatBackendClient(
            settings.chat_api_url,
            self.tokens,
            api_key=settings.chat_api_key,
            timeout=settings.request_timeout,
            transport=chat_transport,
        )
        self.transport = StreamTransport(self.backend)
        self._build_session()

    def _build_session(self) -> None:
        settings = self.settings
        self.cache = SessionCache(
            self.backend,
            lambda: self.user.id if self.user is not None else None,
            history_stale_seconds=settings.history_stale_seconds,
            details_stale_seconds=settings.details_stale_seconds,
            retries=settings.cache_retries,
            retry_delay=settings.cache_retry_delay,
            history_limit=settings.history_limit,
        )
        self.controller = SessionController(
            self.cache,
            self.transport,
            self.backend,
            refetch_delay=settings.refetch_delay,
            settle_attempts=settings.settle_attempts,
        )
        self.conversations = ConversationManager(self.backend, self.cache, self.controller, self)

    @property
    def authenticated(self) -> bool:
        return self.user is not None and self.tokens.get_token() is not None

    def require_user(self) -> User:
        if self.user is None:
            raise AuthenticationError("Not logged in")
        return self.user

    async def login(self, credentials: LoginRequest) -> LoginResponse:
        result = await self.auth.login(credentials)
        self.user = result.user
        return result

    async def logout(self) -> None:
        await self.auth.logout()
        await self.reset()

    async def reset(self) -> None:
        """Forget the user and rebuild an empty session."""
        await self.controller.close()
        self.cache.clear()
        self.tokens.clear_token()
        self.user = None
        self._build_session()
        logger.info("app_state_reset")

    async def close(self) -> None:
        await self.controller.close()
        await self.backend.close()
        await self.auth.close()
