"""Optimistic message pair shown while a send is in flight."""

from dataclasses import dataclass
from typing import FrozenSet, Iterable, List, Optional, Set
from uuid import uuid4

import structlog

from ..domain.models import TEMP_ID_PREFIX, Message, Role, utcnow

logger = structlog.get_logger()


@dataclass
class OptimisticPair:
    """Locally synthesized user message and in-progress assistant reply."""

    temp_user: Message
    temp_assistant: Message
    baseline_ids: FrozenSet[str] = frozenset()

    @property
    def messages(self) -> List[Message]:
        return [self.temp_user, self.temp_assistant]


class OptimisticOverlay:
    """Holds zero or one optimistic pair for a single conversation."""

    def __init__(self, conversation_id: str) -> None:
        self.conversation_id = conversation_id
        self._pair: Optional[OptimisticPair] = None
        self._applied: Set[int] = set()
        self._detached = False

    @property
    def active(self) -> bool:
        return self._pair is not None

    @property
    def detached(self) -> bool:
        return self._detached

    @property
    def pair(self) -> Optional[OptimisticPair]:
        return self._pair

    @property
    def messages(self) -> List[Message]:
        return self._pair.messages if self._pair is not None else []

    @property
    def baseline_ids(self) -> FrozenSet[str]:
        return self._pair.baseline_ids if self._pair is not None else frozenset()

    @property
    def applied_count(self) -> int:
        return len(self._applied)

    def begin_send(self, content: str, baseline_ids: Iterable[str] = ()) -> OptimisticPair:
        """Create the pair for a new send.

        ``baseline_ids`` are the confirmed message ids already known when the
        send began; they can never be the confirmation of this send.
        """
        if self._detached:
            raise RuntimeError("overlay has been detached from its session")
        if self._pair is not None:
            raise RuntimeError("an optimistic send is already active for this conversation")

        timestamp = utcnow()
        token = uuid4().hex
        self._pair = OptimisticPair(
            temp_user=Message(
                id=f"{TEMP_ID_PREFIX}{token}-user",
                conversation_id=self.conversation_id,
                role=Role.USER,
                content=content,
                timestamp=timestamp,
            ),
            temp_assistant=Message(
                id=f"{TEMP_ID_PREFIX}{token}-assistant",
                conversation_id=self.conversation_id,
                role=Role.ASSISTANT,
                content="",
                timestamp=timestamp,
            ),
            baseline_ids=frozenset(baseline_ids),
        )
        self._applied = set()
        logger.debug("optimistic_pair_created", conversation_id=self.conversation_id)
        return self._pair

    def apply_chunk(self, text: str, index: Optional[int] = None) -> bool:
        """Append streamed text to the assistant message.

        Chunks carrying an index that was already applied are ignored, so
        replaying the same chunk does not duplicate text. Returns whether the
        text was appended.
        """
        if self._pair is None or self._detached:
            return False
        if index is None:
            index = len(self._applied)
        if index in self._applied:
            return False
        self._applied.add(index)
        assistant = self._pair.temp_assistant
        self._pair.temp_assistant = assistant.model_copy(update={"content": assistant.content + text})
        return True

    def clear(self) -> None:
        """Drop the pending pair."""
        if self._pair is not None:
            logger.debug("optimistic_pair_cleared", conversation_id=self.conversation_id)
        self._pair = None
        self._applied = set()

    def detach(self) -> None:
        """Clear and ignore every later chunk; used when the session moves on."""
        self.clear()
        self._detached = True
