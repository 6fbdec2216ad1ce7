"""Base repository interface."""

from abc import ABC, abstractmethod
from typing import List

from ..domain.models import ConversationDetails, Message


class ConversationRepository(ABC):
    """Read side of the chat backend that the session cache fetches through."""

    @abstractmethod
    async def get_conversation_details(self, conversation_id: str, user_id: str) -> ConversationDetails:
        """Retrieve a conversation by ID."""
        pass

    @abstractmethod
    async def get_history_messages(
        self, conversation_id: str, user_id: str, limit: int = 50, offset: int = 0
    ) -> List[Message]:
        """Get confirmed messages for a conversation with pagination."""
        pass
