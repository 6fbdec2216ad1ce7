"""Read-through session cache over the conversation repository."""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import structlog

from .. import metrics
from ..domain.errors import AuthenticationError, BackendError, CacheFetchError, ChatClientError
from ..domain.models import ConversationDetails, Message
from .base import ConversationRepository

logger = structlog.get_logger()

DETAILS = "details"
HISTORY = "history"

CacheKey = Tuple[str, str, str]


@dataclass
class CacheEntry:
    """A fetched value and when it was fetched."""

    value: Any
    fetched_at: float
    stale: bool = False


@dataclass
class _PendingFetch:
    task: "asyncio.Task[Any]"
    generation: int
    discarded: bool = False


def _is_retryable(error: ChatClientError) -> bool:
    if isinstance(error, AuthenticationError):
        return False
    if isinstance(error, BackendError) and error.status_code is not None:
        return error.status_code >= 500 or error.status_code in (408, 429)
    return True


class SessionCache:
    """Per-user cache of conversation details and history.

    Entries are keyed by ``(kind, conversation_id, user_id)``. Concurrent reads
    of a key whose fetch is in flight await that same fetch, so the backend
    sees at most one request per key at a time. Optimistic messages never
    enter this cache.
    """

    def __init__(
        self,
        repository: ConversationRepository,
        user_id: Callable[[], Optional[str]],
        history_stale_seconds: float = 5.0,
        details_stale_seconds: float = 300.0,
        retries: int = 3,
        retry_delay: float = 0.5,
        history_limit: int = 50,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._repository = repository
        self._user_id = user_id
        self._stale_after = {HISTORY: history_stale_seconds, DETAILS: details_stale_seconds}
        self._retries = max(0, retries)
        self._retry_delay = retry_delay
        self._history_limit = history_limit
        self._clock = clock
        self._entries: Dict[CacheKey, CacheEntry] = {}
        self._pending: Dict[CacheKey, _PendingFetch] = {}
        self._generations: Dict[CacheKey, int] = {}

    def _current_user(self) -> str:
        user_id = self._user_id()
        if not user_id:
            raise AuthenticationError("No authenticated user")
        return user_id

    def _key(self, kind: str, conversation_id: str) -> CacheKey:
        return (kind, conversation_id, self._current_user())

    def _keys_for(self, conversation_id: str) -> List[CacheKey]:
        return [
            key
            for key in set(self._entries) | set(self._pending) | set(self._generations)
            if key[1] == conversation_id
        ]

    def _is_fresh(self, kind: str, entry: CacheEntry) -> bool:
        if entry.stale:
            return False
        return self._clock() - entry.fetched_at < self._stale_after[kind]

    async def get_history(self, conversation_id: str) -> List[Message]:
        """Confirmed messages of a conversation, fetched when missing or stale."""
        key = self._key(HISTORY, conversation_id)
        user_id = key[2]
        value = await self._read(
            key,
            lambda: self._repository.get_history_messages(
                conversation_id, user_id, limit=self._history_limit
            ),
        )
        return list(value)

    async def get_details(self, conversation_id: str) -> ConversationDetails:
        """Conversation details, fetched when missing or stale."""
        key = self._key(DETAILS, conversation_id)
        user_id = key[2]
        return await self._read(
            key, lambda: self._repository.get_conversation_details(conversation_id, user_id)
        )

    def peek_history(self, conversation_id: str) -> Optional[List[Message]]:
        """Cached history without any I/O, whether fresh or stale."""
        entry = self._entries.get(self._key(HISTORY, conversation_id))
        if entry is None:
            return None
        return list(entry.value)

    def peek_details(self, conversation_id: str) -> Optional[ConversationDetails]:
        entry = self._entries.get(self._key(DETAILS, conversation_id))
        return entry.value if entry is not None else None

    def is_fetching(self, conversation_id: str, kind: str = HISTORY) -> bool:
        return self._key(kind, conversation_id) in self._pending

    def invalidate(self, conversation_id: str) -> None:
        """Mark a conversation's entries stale so the next read refetches."""
        for key in self._keys_for(conversation_id):
            self._generations[key] = self._generations.get(key, 0) + 1
            entry = self._entries.get(key)
            if entry is not None:
                entry.stale = True
        logger.debug("cache_invalidated", conversation_id=conversation_id)

    def remove(self, conversation_id: str) -> None:
        """Evict a conversation entirely; an in-flight fetch result is dropped."""
        for key in self._keys_for(conversation_id):
            self._generations[key] = self._generations.get(key, 0) + 1
            self._entries.pop(key, None)
            pending = self._pending.get(key)
            if pending is not None:
                pending.discarded = True
        logger.info("cache_entry_removed", conversation_id=conversation_id)

    def clear(self) -> None:
        """Drop every entry and cancel in-flight fetches."""
        for pending in self._pending.values():
            pending.discarded = True
            pending.task.cancel()
        self._pending.clear()
        self._entries.clear()
        self._generations.clear()
        logger.info("cache_cleared")

    async def _read(self, key: CacheKey, loader: Callable[[], Awaitable[Any]]) -> Any:
        entry = self._entries.get(key)
        if entry is not None and self._is_fresh(key[0], entry):
            metrics.CACHE_HITS.inc()
            return entry.value

        pending = self._pending.get(key)
        if pending is None:
            pending = _PendingFetch(
                task=asyncio.ensure_future(self._fetch(key, loader)),
                generation=self._generations.get(key, 0),
            )
            pending.task.add_done_callback(self._consume_result)
            self._pending[key] = pending
        else:
            logger.debug("cache_fetch_shared", kind=key[0], conversation_id=key[1])

        # Shielded so one cancelled reader does not abort the fetch for the others.
        return await asyncio.shield(pending.task)

    @staticmethod
    def _consume_result(task: "asyncio.Task[Any]") -> None:
        # Retrieve the outcome so an unawaited failure is not reported as lost.
        if not task.cancelled():
            task.exception()

    async def _fetch(self, key: CacheKey, loader: Callable[[], Awaitable[Any]]) -> Any:
        kind, conversation_id, _ = key
        attempts = self._retries + 1
        try:
            for attempt in range(1, attempts + 1):
                metrics.CACHE_FETCHES.inc()
                try:
                    value = await loader()
                except ChatClientError as e:
                    if not _is_retryable(e) or attempt == attempts:
                        metrics.CACHE_FETCH_ERRORS.inc()
                        logger.error(
                            "cache_fetch_failed",
                            kind=kind,
                            conversation_id=conversation_id,
                            attempts=attempt,
                            error=str(e),
                        )
                        if isinstance(e, AuthenticationError):
                            raise
                        raise CacheFetchError(
                            f"Failed to load {kind} for conversation {conversation_id}"
                        ) from e
                    logger.warning(
                        "cache_fetch_retry",
                        kind=kind,
                        conversation_id=conversation_id,
                        attempt=attempt,
                        error=str(e),
                    )
                    await asyncio.sleep(self._retry_delay)
                    continue

                self._store(key, value)
                return value
        finally:
            if self._own_pending(key) is not None:
                del self._pending[key]

    def _own_pending(self, key: CacheKey) -> Optional[_PendingFetch]:
        # clear() may have replaced the running fetch with a newer one.
        pending = self._pending.get(key)
        if pending is not None and pending.task is asyncio.current_task():
            return pending
        return None

    def _store(self, key: CacheKey, value: Any) -> None:
        pending = self._own_pending(key)
        if pending is None or pending.discarded:
            logger.debug("cache_fetch_discarded", kind=key[0], conversation_id=key[1])
            return
        invalidated = pending.generation != self._generations.get(key, 0)
        self._entries[key] = CacheEntry(value=value, fetched_at=self._clock(), stale=invalidated)
        logger.debug("cache_stored", kind=key[0], conversation_id=key[1], stale=invalidated)
