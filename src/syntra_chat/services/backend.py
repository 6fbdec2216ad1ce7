"""Client for the remote chat backend."""

from typing import Any, Dict, List, Optional

import httpx
import structlog

from ..domain.errors import ChatClientError
from ..domain.models import (
    ChatRequest,
    ChatResponse,
    ConversationDetails,
    ConversationHistory,
    ConversationList,
    ConversationStatus,
    CreateConversationRequest,
    CreateConversationResponse,
    Message,
    OptionItem,
)
from ..repositories.base import ConversationRepository
from .http import ApiClient, parse_model
from .tokens import TokenProvider

logger = structlog.get_logger()

# Offered when the backend has no /personalities endpoint
DEFAULT_PERSONALITIES = [
    OptionItem(id="professional", name="Professional Assistant", description="formal, clear, and structured"),
    OptionItem(id="friendly", name="Friendly Assistant", description="warm, conversational, and encouraging"),
    OptionItem(id="analytical", name="Analytical Expert", description="logical, methodical, and evidence-based"),
    OptionItem(id="creative", name="Creative Thinker", description="imaginative, innovative, and inspiring"),
    OptionItem(id="concise", name="Concise Communicator", description="brief, direct, and efficient"),
    OptionItem(id="detailed", name="Detailed Expert", description="comprehensive, thorough, and explanatory"),
    OptionItem(id="mentor", name="Wise Mentor", description="patient, guiding, and thoughtful"),
]

# Offered when the backend has no /roles endpoint
DEFAULT_ROLES = [
    OptionItem(
        id="general_assistant",
        expertise=["general knowledge", "problem solving", "information retrieval", "task assistance"],
        domain="Generalist with broad knowledge across multiple domains",
    ),
    OptionItem(
        id="financial_analyst",
        expertise=["financial analysis", "market trends", "investment strategies", "risk assessment"],
        domain="Expert in finance, accounting, economics, market analysis, and investment strategies",
    ),
    OptionItem(
        id="technical_consultant",
        expertise=["software development", "system architecture", "troubleshooting", "best practices"],
        domain="Expert in technology, software engineering, system design, and technical problem-solving",
    ),
    OptionItem(
        id="research_assistant",
        expertise=["research methodology", "information synthesis", "literature review"],
        domain="Expert in research methods, information analysis, and knowledge synthesis",
    ),
    OptionItem(
        id="project_manager",
        expertise=["project planning", "resource management", "stakeholder communication"],
        domain="Expert in project management methodologies and organizational coordination",
    ),
]


def _drop_none(params: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in params.items() if value is not None}


class ChatBackendClient(ApiClient, ConversationRepository):
    """Conversation management, history and chat calls against the chat API."""

    def __init__(
        self,
        base_url: str,
        token_provider: TokenProvider,
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__(
            base_url,
            token_provider,
            timeout=timeout,
            api_key=api_key,
            transport=transport,
        )

    async def create_conversation(self, payload: CreateConversationRequest) -> CreateConversationResponse:
        message = "Failed to create conversation"
        response = await self.request(
            "POST", "/conversations", message, json=payload.model_dump(mode="json", exclude_none=True)
        )
        conversation = parse_model(CreateConversationResponse, response, message)
        logger.info("conversation_created", conversation_id=conversation.conversation_id)
        return conversation

    async def list_conversations(
        self,
        user_id: str,
        status: Optional[ConversationStatus] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
        search: Optional[str] = None,
    ) -> ConversationList:
        message = "Failed to list conversations"
        params = _drop_none({
            "user_id": user_id,
            "status": status.value if status else None,
            "limit": limit,
            "offset": offset,
            "search": search,
        })
        response = await self.request("GET", "/conversations", message, params=params)
        return parse_model(ConversationList, response, message)

    async def get_conversation_details(self, conversation_id: str, user_id: str) -> ConversationDetails:
        message = "Failed to get conversation details"
        response = await self.request(
            "GET", f"/conversations/{conversation_id}", message, params={"user_id": user_id}
        )
        return parse_model(ConversationDetails, response, message)

    async def get_conversation_history(
        self, conversation_id: str, user_id: str, limit: int = 20, offset: int = 0
    ) -> ConversationHistory:
        message = "Failed to get conversation history"
        response = await self.request(
            "GET",
            f"/conversations/{conversation_id}/history",
            message,
            params={"user_id": user_id, "limit": limit, "offset": offset},
        )
        return parse_model(ConversationHistory, response, message)

    async def get_history_messages(
        self, conversation_id: str, user_id: str, limit: int = 50, offset: int = 0
    ) -> List[Message]:
        """Fetch history and expand every turn into its two messages."""
        history = await self.get_conversation_history(conversation_id, user_id, limit=limit, offset=offset)
        return history.to_messages()

    async def update_conversation_title(self, conversation_id: str, title: str) -> None:
        await self.request(
            "PUT", f"/conversations/{conversation_id}", "Failed to update conversation title", json={"title": title}
        )
        logger.info("conversation_title_updated", conversation_id=conversation_id)

    async def update_conversation_status(self, conversation_id: str, status: ConversationStatus) -> None:
        await self.request(
            "PUT",
            f"/conversations/{conversation_id}/status",
            "Failed to update conversation status",
            json={"status": status.value},
        )
        logger.info("conversation_status_updated", conversation_id=conversation_id, status=status.value)

    async def delete_conversation(self, conversation_id: str) -> None:
        await self.request("DELETE", f"/conversations/{conversation_id}", "Failed to delete conversation")
        logger.info("conversation_deleted", conversation_id=conversation_id)

    async def edit_message(self, conversation_id: str, message_id: str, content: str) -> ChatResponse:
        message = "Failed to edit message"
        response = await self.request(
            "PUT",
            f"/conversations/{conversation_id}/messages/{message_id}",
            message,
            json={"content": content},
        )
        return parse_model(ChatResponse, response, message)

    async def regenerate_message(self, conversation_id: str, message_id: str) -> ChatResponse:
        message = "Failed to regenerate message"
        response = await self.request(
            "POST", f"/conversations/{conversation_id}/messages/{message_id}/regenerate", message
        )
        return parse_model(ChatResponse, response, message)

    async def chat(self, request: ChatRequest) -> ChatResponse:
        """Send a message and wait for the complete, non-streamed reply."""
        message = "Failed to send message"
        payload = request.model_dump(mode="json", exclude_none=True)
        payload["stream"] = False
        response = await self.request("POST", "/chat", message, json=payload)
        return parse_model(ChatResponse, response, message)

    async def get_personalities(self) -> List[OptionItem]:
        try:
            response = await self.request("GET", "/personalities", "Failed to get personalities")
            return [OptionItem.model_validate(item) for item in response.json()["personalities"]]
        except (ChatClientError, ValueError, KeyError, TypeError) as e:
            logger.warning("personalities_unavailable", error=str(e))
            return list(DEFAULT_PERSONALITIES)

    async def get_roles(self) -> List[OptionItem]:
        try:
            response = await self.request("GET", "/roles", "Failed to get roles")
            return [OptionItem.model_validate(item) for item in response.json()["roles"]]
        except (ChatClientError, ValueError, KeyError, TypeError) as e:
            logger.warning("roles_unavailable", error=str(e))
            return list(DEFAULT_ROLES)
