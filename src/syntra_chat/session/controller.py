"""Session controller.

Drives one conversation session at a time: which conversation is selected,
the optimistic pair of the message being sent, the stream feeding it, and
the delayed refetches that let the backend catch up after a stream ends.
It is the only component that turns errors into UI-visible state.

Per-conversation lifecycle:

    IDLE -> SENDING (pair shown, stream running)
         -> SETTLING (stream done, waiting for history to confirm the pair)
         -> IDLE

``stop_stream`` goes from SENDING straight back to IDLE and drops the
partial reply. Selecting a conversation always starts a fresh IDLE session;
a stream still running for the previous one keeps going in the background
so the backend can finish the turn, but its chunks are no longer shown.
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Set

import structlog
from pydantic import BaseModel

from ..domain.errors import AuthenticationError, ChatClientError
from ..domain.models import (
    ChatRequest,
    ChatResponse,
    ChunkEvent,
    ConversationDetails,
    DoneEvent,
    ErrorEvent,
    Message,
    TEMP_ID_PREFIX,
)
from ..repositories.cache import DETAILS, HISTORY, SessionCache
from ..services.backend import ChatBackendClient
from ..services.stream import ChatStream, StreamTransport
from .overlay import OptimisticOverlay
from .reconciliation import reconcile
from .scheduler import ScheduledTask

logger = structlog.get_logger()


class SessionPhase(str, Enum):
    IDLE = "idle"
    SENDING = "sending"
    SETTLING = "settling"


class SessionView(BaseModel):
    """Everything the UI needs to render the active conversation."""

    conversation_id: Optional[str] = None
    conversation: Optional[ConversationDetails] = None
    messages: List[Message] = []
    phase: SessionPhase = SessionPhase.IDLE
    is_streaming: bool = False
    is_loading_history: bool = False
    error: Optional[str] = None
    auth_required: bool = False


Listener = Callable[[SessionView], None]


@dataclass
class ConversationSession:
    """State of one selected conversation."""

    conversation_id: str
    overlay: OptimisticOverlay
    phase: SessionPhase = SessionPhase.IDLE
    stream: Optional[ChatStream] = None
    stream_task: Optional["asyncio.Task[None]"] = None
    refetch: Optional[ScheduledTask] = None
    settle_attempts: int = 0
    # Held while a send replaces the running stream; sends never interleave.
    send_lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    @property
    def streaming(self) -> bool:
        return self.phase is SessionPhase.SENDING


class SessionController:
    """Select, send, edit, regenerate and stop for the active conversation."""

    def __init__(
        self,
        cache: SessionCache,
        transport: StreamTransport,
        backend: ChatBackendClient,
        refetch_delay: float = 1.0,
        settle_attempts: int = 3,
    ) -> None:
        self._cache = cache
        self._transport = transport
        self._backend = backend
        self._refetch_delay = refetch_delay
        self._settle_attempts = max(1, settle_attempts)
        self._current: Optional[ConversationSession] = None
        self._background: Set["asyncio.Task[None]"] = set()
        self._listeners: List[Listener] = []
        self._error: Optional[str] = None
        self._auth_required = False

    @property
    def current_conversation_id(self) -> Optional[str]:
        return self._current.conversation_id if self._current is not None else None

    @property
    def session(self) -> Optional[ConversationSession]:
        return self._current

    @property
    def error(self) -> Optional[str]:
        return self._error

    @property
    def auth_required(self) -> bool:
        return self._auth_required

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a callback run with the new view after every change."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def view(self) -> SessionView:
        """Reconcile confirmed history with the overlay.

        Retires the optimistic pair as a side effect once history confirms it.
        """
        session = self._current
        if session is None:
            return SessionView(error=self._error, auth_required=self._auth_required)

        cid = session.conversation_id
        try:
            server_messages = self._cache.peek_history(cid) or []
            details = self._cache.peek_details(cid)
            loading = self._cache.is_fetching(cid, HISTORY) or self._cache.is_fetching(cid, DETAILS)
        except AuthenticationError:
            self._auth_required = True
            return SessionView(conversation_id=cid, error=self._error, auth_required=True)

        result = reconcile(
            server_messages,
            session.overlay.messages,
            is_streaming=session.streaming,
            baseline_ids=session.overlay.baseline_ids,
        )
        if result.subsumed:
            self._retire(session)

        return SessionView(
            conversation_id=cid,
            conversation=details,
            messages=result.messages,
            phase=session.phase,
            is_streaming=session.streaming,
            is_loading_history=loading,
            error=self._error,
            auth_required=self._auth_required,
        )

    def clear_error(self) -> None:
        self._error = None
        self._notify()

    async def select_conversation(self, conversation_id: Optional[str]) -> SessionView:
        """Make a conversation active and load its latest history.

        Re-selecting the active conversation is an explicit refresh: the
        session is reset and history is refetched.
        """
        previous = self._current
        if previous is not None:
            self._abandon(previous)
        self._error = None

        if not conversation_id:
            self._current = None
            self._notify()
            return self.view()

        if previous is not None and previous.conversation_id == conversation_id:
            logger.info("conversation_refresh_requested", conversation_id=conversation_id)
        else:
            logger.info("conversation_selected", conversation_id=conversation_id)

        session = ConversationSession(conversation_id, OptimisticOverlay(conversation_id))
        self._current = session
        self._cache.invalidate(conversation_id)
        self._notify()
        await self._load(session)
        return self.view()

    async def send_message(self, text: str) -> bool:
        """Show the message optimistically and stream the reply into it.

        Returns False without doing anything for blank text or when no
        conversation is selected. Otherwise returns once the stream has ended
        or been stopped.
        """
        task = await self.start_send(text)
        if task is None:
            return False
        await asyncio.wait({task})
        return True

    async def start_send(self, text: str) -> Optional["asyncio.Task[None]"]:
        """Add the optimistic pair and start streaming; returns the stream task."""
        session = self._current
        if session is None or not text or not text.strip():
            return None

        content = text.strip()
        async with session.send_lock:
            await self._cancel_stream(session)
            # The conversation may have been switched away while the old stream wound down.
            if session is not self._current or session.overlay.detached:
                return None
            self._cancel_refetch(session)
            session.overlay.clear()

            try:
                baseline = [message.id for message in self._cache.peek_history(session.conversation_id) or []]
            except AuthenticationError:
                self._auth_required = True
                self._notify()
                return None

            session.overlay.begin_send(content, baseline_ids=baseline)
            session.phase = SessionPhase.SENDING
            session.settle_attempts = 0
            self._error = None
            self._notify()

            task = asyncio.ensure_future(self._run_stream(session, content))
            session.stream_task = task
            return task

    async def edit_message(self, message_id: str, new_text: str) -> Optional[ChatResponse]:
        """Edit a confirmed message and refetch history."""
        session = self._current
        if session is None or not new_text or not new_text.strip():
            return None
        if message_id.startswith(TEMP_ID_PREFIX):
            return None
        return await self._mutate(
            session,
            "message_edited",
            lambda: self._backend.edit_message(session.conversation_id, message_id, new_text.strip()),
        )

    async def regenerate_message(self, message_id: str) -> Optional[ChatResponse]:
        """Ask the backend for a new reply and refetch history."""
        session = self._current
        if session is None or message_id.startswith(TEMP_ID_PREFIX):
            return None
        return await self._mutate(
            session,
            "message_regenerated",
            lambda: self._backend.regenerate_message(session.conversation_id, message_id),
        )

    async def stop_stream(self) -> bool:
        """Cancel the running stream and discard the partial reply."""
        session = self._current
        if session is None or session.phase is not SessionPhase.SENDING:
            return False
        await self._cancel_stream(session)
        session.overlay.clear()
        session.phase = SessionPhase.IDLE
        logger.info("stream_stopped", conversation_id=session.conversation_id)
        self._notify()
        return True

    async def wait_until_settled(self) -> None:
        """Wait for the running stream and any pending refetches to finish."""
        while True:
            session = self._current
            if session is None:
                return
            if session.stream_task is not None and not session.stream_task.done():
                await asyncio.wait({session.stream_task})
                continue
            if session.refetch is not None and not session.refetch.done:
                await session.refetch.wait()
                continue
            return

    async def close(self) -> None:
        """Cancel every task the controller owns."""
        tasks = set(self._background)
        if self._current is not None:
            session = self._current
            self._cancel_refetch(session)
            if session.stream is not None:
                session.stream.cancel()
            if session.stream_task is not None:
                tasks.add(session.stream_task)
            self._current = None
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._background.clear()
        self._listeners.clear()
        logger.info("session_controller_closed")

    def _notify(self) -> None:
        if not self._listeners:
            return
        view = self.view()
        for listener in list(self._listeners):
            try:
                listener(view)
            except Exception as e:
                logger.error("session_listener_failed", error=str(e))

    def _retire(self, session: ConversationSession) -> None:
        session.overlay.clear()
        session.phase = SessionPhase.IDLE
        self._cancel_refetch(session)
        logger.info("optimistic_pair_retired", conversation_id=session.conversation_id)

    def _abandon(self, session: ConversationSession) -> None:
        session.overlay.detach()
        self._cancel_refetch(session)
        task = session.stream_task
        if task is not None and not task.done():
            self._background.add(task)
            task.add_done_callback(self._background.discard)
        session.phase = SessionPhase.IDLE

    def _cancel_refetch(self, session: ConversationSession) -> None:
        if session.refetch is not None:
            session.refetch.cancel()
            session.refetch = None

    async def _cancel_stream(self, session: ConversationSession) -> None:
        if session.stream is not None:
            session.stream.cancel()
        task = session.stream_task
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait({task})
        session.stream_task = None

    async def _load(self, session: ConversationSession) -> None:
        cid = session.conversation_id
        try:
            await self._cache.get_history(cid)
        except AuthenticationError:
            self._set_auth_required(session)
        except ChatClientError as e:
            if session is self._current:
                self._error = str(e)
        else:
            try:
                await self._cache.get_details(cid)
            except ChatClientError as e:
                logger.warning("conversation_details_unavailable", conversation_id=cid, error=str(e))
        if session is self._current:
            self._notify()

    async def _mutate(
        self,
        session: ConversationSession,
        event: str,
        call: Callable[[], Awaitable[ChatResponse]],
    ) -> Optional[ChatResponse]:
        cid = session.conversation_id
        try:
            response = await call()
        except AuthenticationError:
            self._set_auth_required(session)
            return None
        except ChatClientError as e:
            logger.error(f"{event}_failed", conversation_id=cid, error=str(e))
            if session is self._current:
                self._error = str(e)
                self._notify()
            return None

        logger.info(event, conversation_id=cid, message_id=response.message_id)
        self._cache.invalidate(cid)
        if session is self._current:
            await self._load(session)
        return response

    def _set_auth_required(self, session: ConversationSession) -> None:
        if session is self._current:
            self._auth_required = True
            self._notify()

    async def _run_stream(self, session: ConversationSession, content: str) -> None:
        cid = session.conversation_id
        stream: Optional[ChatStream] = None
        try:
            stream = await self._transport.open_stream(ChatRequest(conversation_id=cid, message=content))
            session.stream = stream
            async for event in stream:
                if isinstance(event, ChunkEvent):
                    if session.overlay.apply_chunk(event.content, event.index) and session is self._current:
                        self._notify()
                elif isinstance(event, DoneEvent):
                    self._on_stream_done(session)
                elif isinstance(event, ErrorEvent):
                    self._on_stream_error(session, event.error)
        except AuthenticationError:
            session.overlay.clear()
            session.phase = SessionPhase.IDLE
            self._set_auth_required(session)
        finally:
            if stream is not None:
                await stream.aclose()
            session.stream = None

    def _on_stream_done(self, session: ConversationSession) -> None:
        cid = session.conversation_id
        self._cache.invalidate(cid)
        if session is not self._current:
            current = self._current
            if current is not None and current.conversation_id == cid and current.refetch is None:
                current.refetch = ScheduledTask(
                    self._refetch_delay, lambda: self._refresh(current), name="background_stream_refetch"
                )
            return
        session.phase = SessionPhase.SETTLING
        session.settle_attempts = 0
        self._schedule_settle(session)
        self._notify()

    def _on_stream_error(self, session: ConversationSession, message: str) -> None:
        session.overlay.clear()
        session.phase = SessionPhase.IDLE
        if session is self._current:
            self._error = message
            self._notify()

    def _schedule_settle(self, session: ConversationSession) -> None:
        session.refetch = ScheduledTask(
            self._refetch_delay, lambda: self._settle(session), name="settle_refetch"
        )

    async def _refresh(self, session: ConversationSession) -> None:
        if session is not self._current:
            return
        session.refetch = None
        await self._load(session)

    async def _settle(self, session: ConversationSession) -> None:
        if session is not self._current or session.phase is not SessionPhase.SETTLING:
            return
        session.refetch = None
        session.settle_attempts += 1
        self._cache.invalidate(session.conversation_id)
        await self._load(session)
        if session is not self._current or session.phase is not SessionPhase.SETTLING:
            return
        # _load notified listeners, which reconciles; run it once more for the
        # case with no listeners attached.
        self.view()
        if session.phase is not SessionPhase.SETTLING:
            return
        if session.settle_attempts < self._settle_attempts:
            self._schedule_settle(session)
        else:
            logger.warning(
                "optimistic_pair_unconfirmed",
                conversation_id=session.conversation_id,
                attempts=session.settle_attempts,
            )
