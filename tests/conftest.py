"""Shared fakes for the chat backend and authentication service."""

import asyncio
import json
import time
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import httpx
import jwt
import pytest

from syntra_chat.config import Settings
from syntra_chat.domain.errors import BackendError
from syntra_chat.domain.models import ConversationDetails, Message, Role
from syntra_chat.repositories.base import ConversationRepository
from syntra_chat.repositories.cache import SessionCache
from syntra_chat.services.backend import ChatBackendClient
from syntra_chat.services.stream import StreamTransport
from syntra_chat.services.tokens import InMemoryTokenProvider
from syntra_chat.session.controller import SessionController

SIGNING_KEY = "test-signing-key-0123456789abcdef"
BASE_TIME = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def make_token(user_id: str = "user-1", expires_in: int = 3600) -> str:
    return jwt.encode(
        {"sub": user_id, "exp": int(time.time()) + expires_in},
        SIGNING_KEY,
        algorithm="HS256",
    )


def sse(*events) -> bytes:
    """Encode events as server-sent ``data:`` lines."""
    lines = []
    for event in events:
        payload = event if isinstance(event, str) else json.dumps(event)
        lines.append(f"data: {payload}\n\n")
    return "".join(lines).encode()


def make_message(message_id: str, role: Role, content: str, minute: int = 0, cid: str = "conv-1") -> Message:
    return Message(
        id=message_id,
        conversation_id=cid,
        role=role,
        content=content,
        timestamp=BASE_TIME + timedelta(minutes=minute),
    )


class FakeChatBackend:
    """In-memory chat API served through httpx.MockTransport.

    A streamed chat turn is only visible in history after ``persist_after``
    further history fetches, to imitate a backend that persists late.
    """

    def __init__(self) -> None:
        self.conversations: Dict[str, dict] = {}
        self.turns: Dict[str, List[dict]] = {}
        self.requests: List[httpx.Request] = []
        self.reply = "Hello there, how can I help?"
        self.persist_after = 1
        self.stream_status = 200
        self.stream_error: Optional[str] = None
        self.stream_body: Optional[bytes] = None
        self.stream_gate: Optional[asyncio.Event] = None
        self.history_failures = 0
        self._pending: List[dict] = []
        self._turn_counter = 0

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def add_conversation(self, cid: str, title: str = "Test conversation", turns: int = 0) -> None:
        self.conversations[cid] = {
            "id": cid,
            "title": title,
            "status": "active",
            "created_at": BASE_TIME.isoformat(),
            "updated_at": BASE_TIME.isoformat(),
        }
        self.turns[cid] = []
        for i in range(turns):
            self._add_turn(cid, f"Question {i}", f"Answer {i}", BASE_TIME + timedelta(minutes=i))

    def _add_turn(self, cid: str, user_message: str, reply: str, timestamp: datetime) -> dict:
        self._turn_counter += 1
        turn = {
            "turn_id": f"turn-{self._turn_counter}",
            "user_message": user_message,
            "assistant_response": reply,
            "timestamp": timestamp.isoformat(),
            "response_time_ms": 120.0,
            "sources_count": 0,
            "tools_used": [],
        }
        self.turns[cid].append(turn)
        return turn

    def count(self, method: str, path: str) -> int:
        return sum(1 for r in self.requests if r.method == method and r.url.path == path)

    def history_fetches(self, cid: str) -> int:
        return self.count("GET", f"/conversations/{cid}/history")

    def _history(self, cid: str) -> httpx.Response:
        if self.history_failures:
            self.history_failures -= 1
            return httpx.Response(503, json={"detail": "History temporarily unavailable"})
        still_pending = []
        for pending in self._pending:
            if pending["cid"] != cid:
                still_pending.append(pending)
                continue
            pending["wait"] -= 1
            if pending["wait"] <= 0:
                self._add_turn(cid, pending["message"], pending["reply"], pending["timestamp"])
            else:
                still_pending.append(pending)
        self._pending = still_pending
        history = self.turns[cid]
        return httpx.Response(200, json={
            "conversation_id": cid,
            "history": history,
            "total_shown": len(history),
            "page": 1,
            "limit": 50,
            "has_more": False,
        })

    def _chat(self, body: dict) -> httpx.Response:
        cid = body["conversation_id"]
        if self.stream_status != 200:
            return httpx.Response(self.stream_status, json={"detail": self.stream_error or "Chat failed"})
        if cid not in self.conversations:
            return httpx.Response(404, json={"detail": "Conversation not found"})

        self._pending.append({
            "cid": cid,
            "message": body["message"].strip(),
            "reply": self.reply,
            "timestamp": datetime.now(timezone.utc),
            "wait": self.persist_after,
        })
        if self.stream_body is not None:
            return httpx.Response(200, content=self.stream_body)

        words = self.reply.split(" ")
        pieces = [word if i == 0 else f" {word}" for i, word in enumerate(words)]
        gate = self.stream_gate

        async def body_stream():
            for i, piece in enumerate(pieces):
                yield sse({"type": "chunk", "content": piece})
                if i == 0 and gate is not None:
                    await gate.wait()
            yield sse("[DONE]")

        return httpx.Response(200, content=body_stream(), headers={"content-type": "text/event-stream"})

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        parts = [part for part in path.split("/") if part]
        body = json.loads(request.content) if request.content else {}

        if path == "/chat" and request.method == "POST":
            return self._chat(body)

        if parts[:1] == ["conversations"]:
            if len(parts) == 1 and request.method == "POST":
                cid = f"conv-{len(self.conversations) + 1}"
                self.add_conversation(cid, title=body["title"])
                return httpx.Response(200, json={
                    "conversation_id": cid,
                    "title": body["title"],
                    "status": "active",
                    "created_at": BASE_TIME.isoformat(),
                    "configuration": {"collection_names": body.get("collection_names", [])},
                })
            if len(parts) == 1:
                items = [
                    {"conversation_id": c["id"], "title": c["title"], "status": c["status"]}
                    for c in self.conversations.values()
                ]
                return httpx.Response(200, json={
                    "conversations": items,
                    "total_count": len(items),
                    "limit": 20,
                    "offset": 0,
                    "has_more": False,
                })

            cid = parts[1]
            if cid not in self.conversations:
                return httpx.Response(404, json={"detail": "Conversation not found"})
            if len(parts) == 2 and request.method == "GET":
                return httpx.Response(200, json=self.conversations[cid])
            if len(parts) == 2 and request.method == "PUT":
                self.conversations[cid]["title"] = body["title"]
                return httpx.Response(200, json={"success": True})
            if len(parts) == 2 and request.method == "DELETE":
                del self.conversations[cid]
                return httpx.Response(200, json={"success": True})
            if parts[2:] == ["status"]:
                self.conversations[cid]["status"] = body["status"]
                return httpx.Response(200, json={"success": True})
            if parts[2:] == ["history"]:
                return self._history(cid)
            if len(parts) >= 4 and parts[2] == "messages":
                turn_id = parts[3].split(":")[0]
                turn = next((t for t in self.turns[cid] if t["turn_id"] == turn_id), None)
                if turn is None:
                    return httpx.Response(404, json={"detail": "Message not found"})
                if request.method == "PUT":
                    turn["user_message"] = body["content"]
                    content = turn["assistant_response"]
                else:
                    turn["assistant_response"] = content = "Regenerated answer"
                return httpx.Response(200, json={
                    "message_id": parts[3],
                    "content": content,
                    "role": "assistant",
                    "timestamp": turn["timestamp"],
                })

        if path == "/personalities":
            return httpx.Response(404, json={"detail": "Not found"})
        if path == "/roles":
            return httpx.Response(200, json={"roles": [{"id": "analyst", "domain": "Data"}]})

        return httpx.Response(404, json={"detail": "Not found"})


class FakeAuthService:
    """Authentication service served through httpx.MockTransport."""

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.password = "secret"
        self.logout_status = 200

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/auth/login":
            body = json.loads(request.content)
            if body["password"] != self.password:
                return httpx.Response(401, json={"detail": "Invalid credentials"})
            return httpx.Response(200, json={
                "user": {"id": "user-1", "email": body["email"], "full_name": "Test User", "initials": "TU"},
                "access_token": make_token("user-1"),
                "expires_in": 3600,
            })
        if path == "/auth/logout":
            return httpx.Response(self.logout_status, json={"detail": "Logout failed"})
        if path == "/users/me":
            return httpx.Response(200, json={"id": "user-1", "email": "test@example.com"})
        if path == "/collections/chat-accessible":
            return httpx.Response(200, json=[{"id": "c1", "name": "Handbook", "document_count": 3}])
        return httpx.Response(404, json={"detail": "Not found"})


class FakeRepository(ConversationRepository):
    """Scriptable repository for exercising the session cache directly."""

    def __init__(self) -> None:
        self.history: Dict[str, List[Message]] = {}
        self.history_calls = 0
        self.details_calls = 0
        self.failures: List[Exception] = []
        self.gate: Optional[asyncio.Event] = None

    async def get_history_messages(self, conversation_id, user_id, limit=50, offset=0):
        self.history_calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.failures:
            raise self.failures.pop(0)
        return list(self.history.get(conversation_id, []))

    async def get_conversation_details(self, conversation_id, user_id):
        self.details_calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return ConversationDetails(
            id=conversation_id,
            title="Details",
            created_at=BASE_TIME,
            updated_at=BASE_TIME,
        )


def unavailable() -> BackendError:
    return BackendError("Service unavailable", status_code=503)


@pytest.fixture
def chat_backend() -> FakeChatBackend:
    backend = FakeChatBackend()
    backend.add_conversation("conv-1", turns=2)
    backend.add_conversation("conv-2", title="Second conversation", turns=1)
    return backend


@pytest.fixture
def auth_service() -> FakeAuthService:
    return FakeAuthService()


@pytest.fixture
def repository() -> FakeRepository:
    return FakeRepository()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        chat_api_url="http://chat.test",
        main_api_url="http://main.test",
        cache_retry_delay=0,
        refetch_delay=0,
        settle_attempts=3,
    )


@pytest.fixture
def client(chat_backend) -> ChatBackendClient:
    return ChatBackendClient(
        "http://chat.test",
        InMemoryTokenProvider(make_token()),
        api_key="test-key",
        transport=chat_backend.transport,
    )


@pytest.fixture
def controller(client) -> SessionController:
    cache = SessionCache(client, lambda: "user-1", retry_delay=0)
    return SessionController(cache, StreamTransport(client), client, refetch_delay=0, settle_attempts=3)
