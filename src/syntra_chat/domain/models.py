"""Domain models for the chat client."""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import AfterValidator, BaseModel, Field, field_validator

TEMP_ID_PREFIX = "temp-"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _ensure_utc(value: datetime) -> datetime:
    # Backend timestamps may arrive without an offset; they are UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


UtcDatetime = Annotated[datetime, AfterValidator(_ensure_utc)]


class Role(str, Enum):
    """Author of a message."""

    USER = "user"
    ASSISTANT = "assistant"


ROLE_RANK = {Role.USER: 0, Role.ASSISTANT: 1}


class ConversationStatus(str, Enum):
    """Backend lifecycle status of a conversation."""

    ACTIVE = "active"
    ARCHIVED = "archived"
    DELETED = "deleted"


class MessageMetadata(BaseModel):
    """Optional per-message details reported by the backend."""

    model: Optional[str] = None
    tokens_used: Optional[int] = None
    processing_time: Optional[float] = None
    edited: Optional[bool] = None
    regenerated: Optional[bool] = None
    tools_used: List[str] = []
    sources: List[str] = []
    sources_count: Optional[int] = None


class Message(BaseModel):
    """Message model."""

    id: str
    conversation_id: str
    role: Role
    content: str
    timestamp: UtcDatetime = Field(default_factory=utcnow)
    metadata: Optional[MessageMetadata] = None

    @property
    def is_optimistic(self) -> bool:
        """True for locally generated messages not yet confirmed."""
        return self.id.startswith(TEMP_ID_PREFIX)


class ConversationConfiguration(BaseModel):
    """Assistant configuration a conversation was created with."""

    collection_names: List[str] = []
    personality_type: Optional[str] = None
    role_type: Optional[str] = None
    custom_role: Optional[str] = None
    communication_style: Optional[str] = None
    expertise_areas: List[str] = []
    response_tone: Optional[str] = None
    custom_instructions: Optional[str] = None
    use_tools: bool = False
    max_context_turns: Optional[int] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None


class ConversationDetails(BaseModel):
    """Conversation model."""

    id: str
    title: str
    status: ConversationStatus = ConversationStatus.ACTIVE
    configuration: ConversationConfiguration = Field(default_factory=ConversationConfiguration)
    created_at: datetime
    updated_at: datetime
    message_count: int = 0
    last_message_at: Optional[datetime] = None


class ConversationListItem(BaseModel):
    """Summary row of the conversation list."""

    conversation_id: str
    title: str
    status: ConversationStatus = ConversationStatus.ACTIVE
    last_activity: Optional[datetime] = None
    total_turns: int = 0
    created_at: Optional[datetime] = None
    collection_names: List[str] = []
    personality_type: Optional[str] = None
    role_type: Optional[str] = None
    topic_summary: Optional[str] = None


class ConversationList(BaseModel):
    """Paginated conversation list."""

    conversations: List[ConversationListItem] = []
    total_count: int = 0
    limit: int = 0
    offset: int = 0
    has_more: bool = False


class HistoryTurn(BaseModel):
    """One persisted user message and the assistant response to it."""

    turn_id: str
    user_message: str
    assistant_response: str
    timestamp: UtcDatetime
    response_time_ms: Optional[float] = None
    sources_count: int = 0
    tools_used: List[str] = []

    def to_messages(self, conversation_id: str) -> List[Message]:
        """Expand the turn into its user and assistant messages."""
        user = Message(
            id=f"{self.turn_id}:user",
            conversation_id=conversation_id,
            role=Role.USER,
            content=self.user_message,
            timestamp=self.timestamp,
        )
        assistant = Message(
            id=f"{self.turn_id}:assistant",
            conversation_id=conversation_id,
            role=Role.ASSISTANT,
            content=self.assistant_response,
            timestamp=self.timestamp,
            metadata=MessageMetadata(
                processing_time=self.response_time_ms,
                sources_count=self.sources_count,
                tools_used=self.tools_used,
            ),
        )
        return [user, assistant]


class ConversationHistory(BaseModel):
    """A page of conversation history as returned by the backend."""

    conversation_id: str
    history: List[HistoryTurn] = []
    total_shown: int = 0
    page: int = 0
    limit: int = 0
    has_more: bool = False

    def to_messages(self) -> List[Message]:
        messages: List[Message] = []
        for turn in self.history:
            messages.extend(turn.to_messages(self.conversation_id))
        return messages


class CreateConversationRequest(BaseModel):
    """Payload for creating a conversation."""

    title: str
    collection_names: List[str]
    user_id: Optional[str] = None
    personality_type: Optional[str] = None
    role_type: Optional[str] = None
    custom_role: Optional[str] = None
    communication_style: Optional[str] = None
    expertise_areas: Optional[List[str]] = None
    response_tone: Optional[str] = None
    custom_instructions: Optional[str] = None
    use_tools: Optional[bool] = None
    max_context_turns: Optional[int] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None


class CreateConversationResponse(BaseModel):
    conversation_id: str
    title: str
    status: ConversationStatus = ConversationStatus.ACTIVE
    created_at: datetime
    configuration: ConversationConfiguration = Field(default_factory=ConversationConfiguration)


class ChatRequest(BaseModel):
    """A message sent to the chat endpoint."""

    conversation_id: str
    message: str
    stream: bool = True
    context: Optional[Dict[str, Any]] = None

    @field_validator("conversation_id")
    @classmethod
    def _conversation_id_required(cls, value: str) -> str:
        if not value:
            raise ValueError("conversation_id must not be empty")
        return value

    @field_validator("message")
    @classmethod
    def _message_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("message must not be blank")
        return value


class ChatResponse(BaseModel):
    """Confirmed assistant reply to a chat, edit or regenerate call."""

    message_id: str
    content: str
    role: Role = Role.ASSISTANT
    timestamp: datetime
    metadata: Optional[MessageMetadata] = None


class ChunkEvent(BaseModel):
    """Incremental piece of assistant text."""

    type: Literal["chunk"] = "chunk"
    content: str
    index: int = 0


class DoneEvent(BaseModel):
    """Terminal event of a successful stream."""

    type: Literal["done"] = "done"
    metadata: Optional[Dict[str, Any]] = None


class ErrorEvent(BaseModel):
    """Terminal event of a failed stream."""

    type: Literal["error"] = "error"
    error: str


StreamChunk = Annotated[Union[ChunkEvent, DoneEvent, ErrorEvent], Field(discriminator="type")]


class OptionItem(BaseModel):
    """Personality or role offered for new conversations."""

    id: str
    name: Optional[str] = None
    description: Optional[str] = None
    expertise: List[str] = []
    domain: Optional[str] = None


class Collection(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    document_count: int = 0


class User(BaseModel):
    """Authenticated user as reported by the authentication service."""

    id: str
    email: str
    full_name: Optional[str] = None
    organization_id: Optional[str] = None
    role: Optional[str] = None
    avatar_url: Optional[str] = None
    initials: Optional[str] = None
    is_admin: bool = False


class LoginRequest(BaseModel):
    email: str
    password: str


class LoginResponse(BaseModel):
    user: User
    access_token: str
    expires_in: int
