"""
Backend-for-frontend API

Serves a browser UI on top of the chat session engine. The access token
lives in an HTTP-only cookie; every request is routed to the signed-in
user's AppState, whose session controller holds the reconciled message
view.

Key Features:
- Cookie login/logout and token checks against the authentication service
- Conversation list and management calls
- Session view plus select, send, edit, regenerate and stop
- Structured logging, Prometheus metrics, CORS and OpenTelemetry support
"""

import json
from contextlib import asynccontextmanager
from typing import Dict, List, Optional

import httpx
from fastapi import Depends, FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from prometheus_client import generate_latest
from pydantic import BaseModel
from structlog import get_logger

from .. import metrics
from ..config import ACCESS_TOKEN_COOKIE, USER_COOKIE, Settings
from ..domain.errors import AuthenticationError, BackendError, ChatClientError, TransportError
from ..domain.models import (
    ConversationList,
    ConversationStatus,
    CreateConversationRequest,
    CreateConversationResponse,
    LoginRequest,
    OptionItem,
)
from ..services.tokens import is_token_expired
from ..session.controller import SessionView
from ..state import AppState

logger = get_logger()


class MessageCreate(BaseModel):
    """Defines the structure for message send and edit requests"""
    content: str


class ConversationSelect(BaseModel):
    conversation_id: Optional[str] = None


class TitleUpdate(BaseModel):
    title: str


class StatusUpdate(BaseModel):
    status: ConversationStatus


class ConfigOptions(BaseModel):
    personalities: List[OptionItem]
    roles: List[OptionItem]


class SessionRegistry:
    """Signed-in AppStates keyed by access token"""

    def __init__(
        self,
        settings: Settings,
        chat_transport: Optional[httpx.AsyncBaseTransport] = None,
        auth_transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings
        self._chat_transport = chat_transport
        self._auth_transport = auth_transport
        self._states: Dict[str, AppState] = {}

    def new_state(self) -> AppState:
        return AppState(
            self.settings,
            chat_transport=self._chat_transport,
            auth_transport=self._auth_transport,
        )

    def add(self, token: str, state: AppState) -> None:
        self._states[token] = state

    def get(self, token: str) -> Optional[AppState]:
        return self._states.get(token)

    async def drop(self, token: str) -> None:
        state = self._states.pop(token, None)
        if state is not None:
            await state.close()

    async def close_all(self) -> None:
        for token in list(self._states):
            await self.drop(token)


def http_error(error: ChatClientError) -> HTTPException:
    """Maps client errors onto response statuses"""
    if isinstance(error, AuthenticationError):
        return HTTPException(status_code=401, detail=str(error) or "Authentication required")
    if isinstance(error, BackendError) and error.status_code == 404:
        return HTTPException(status_code=404, detail=error.detail)
    if isinstance(error, BackendError):
        return HTTPException(status_code=502, detail=error.detail)
    if isinstance(error, TransportError):
        return HTTPException(status_code=503, detail=str(error))
    return HTTPException(status_code=500, detail=str(error))


def clear_auth_cookies(response: Response) -> None:
    response.delete_cookie(ACCESS_TOKEN_COOKIE, path="/")
    response.delete_cookie(USER_COOKIE, path="/")


def create_app(
    settings: Optional[Settings] = None,
    chat_transport: Optional[httpx.AsyncBaseTransport] = None,
    auth_transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """Builds the API with its own session registry"""
    settings = settings or Settings.from_env()
    registry = SessionRegistry(settings, chat_transport=chat_transport, auth_transport=auth_transport)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Handles app startup/shutdown and resource management"""
        logger.info("application_startup_complete")

        yield

        await registry.close_all()
        logger.info("application_shutdown_complete")

    app = FastAPI(
        title="Syntra Chat BFF",
        description="Session synchronization API for the enterprise chat UI",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.registry = registry

    # Enable cross-origin requests
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Set up request tracing
    FastAPIInstrumentor.instrument_app(app)

    @app.middleware("http")
    async def logging_middleware(request: Request, call_next):
        """Counts and logs requests"""
        metrics.REQUESTS.inc()
        logger.info("request_started", path=request.url.path, method=request.method)
        try:
            return await call_next(request)
        except Exception as e:
            metrics.ERRORS.inc()
            logger.error("request_failed", path=request.url.path, error=str(e))
            raise

    def get_registry() -> SessionRegistry:
        """Returns the signed-in session registry"""
        return registry

    async def get_state(request: Request, registry: SessionRegistry = Depends(get_registry)) -> AppState:
        """Resolves the caller's AppState from the access token cookie"""
        token = request.cookies.get(ACCESS_TOKEN_COOKIE)
        if not token:
            raise HTTPException(status_code=401, detail="No access token found")
        if is_token_expired(token):
            await registry.drop(token)
            raise HTTPException(status_code=401, detail="Token expired")
        state = registry.get(token)
        if state is None or not state.authenticated:
            raise HTTPException(status_code=401, detail="Session not found")
        return state

    def session_view(state: AppState) -> SessionView:
        view = state.controller.view()
        if view.auth_required:
            raise HTTPException(status_code=401, detail="Authentication required")
        return view

    @app.post("/api/auth/login")
    async def login(
        credentials: LoginRequest,
        response: Response,
        registry: SessionRegistry = Depends(get_registry),
    ) -> dict:
        """Signs in and stores the token in HTTP-only cookies"""
        state = registry.new_state()
        try:
            result = await state.login(credentials)
        except ChatClientError as e:
            await state.close()
            logger.warning("login_failed", error=str(e))
            raise http_error(e)

        registry.add(result.access_token, state)
        secure = registry.settings.cookie_secure
        response.set_cookie(
            ACCESS_TOKEN_COOKIE,
            result.access_token,
            max_age=result.expires_in,
            httponly=True,
            secure=secure,
            samesite="strict",
            path="/",
        )
        user = result.user
        response.set_cookie(
            USER_COOKIE,
            json.dumps({
                "id": user.id,
                "orgId": user.organization_id,
                "full_name": user.full_name,
                "email": user.email,
                "role": user.role,
                "avatar": user.avatar_url,
                "initials": user.initials,
                "isAdmin": user.is_admin,
            }),
            max_age=result.expires_in,
            httponly=False,
            secure=secure,
            samesite="strict",
            path="/",
        )
        return {
            "user": user.model_dump(mode="json"),
            "tokens": {"accessToken": result.access_token, "expires_in": result.expires_in},
        }

    @app.post("/api/auth/logout")
    async def logout(
        request: Request,
        response: Response,
        registry: SessionRegistry = Depends(get_registry),
    ) -> dict:
        """Ends the session; cookies are cleared even if the backend call fails"""
        token = request.cookies.get(ACCESS_TOKEN_COOKIE)
        if token:
            state = registry.get(token)
            if state is not None:
                await state.logout()
            await registry.drop(token)
        clear_auth_cookies(response)
        return {"message": "Logged out successfully"}

    @app.get("/api/auth/token")
    async def check_token(request: Request, registry: SessionRegistry = Depends(get_registry)):
        """Reports whether the cookie token is still usable"""
        token = request.cookies.get(ACCESS_TOKEN_COOKIE)
        if not token:
            raise HTTPException(status_code=401, detail="No access token found")
        if is_token_expired(token):
            await registry.drop(token)
            response = Response(
                content=json.dumps({"detail": "Token expired"}),
                status_code=401,
                media_type="application/json",
            )
            clear_auth_cookies(response)
            return response
        return {"access_token": token, "valid": True}

    @app.get("/api/conversations", response_model=ConversationList)
    async def list_conversations(
        status: Optional[ConversationStatus] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
        search: str = "",
        state: AppState = Depends(get_state),
    ) -> ConversationList:
        """Gets the user's conversations, optionally filtered by search text"""
        try:
            return await state.conversations.list_conversations(
                status=status, limit=limit, offset=offset, search=search
            )
        except ChatClientError as e:
            logger.error("list_conversations_error", error=str(e))
            raise http_error(e)

    @app.post("/api/conversations", response_model=CreateConversationResponse)
    async def create_conversation(
        request: CreateConversationRequest,
        state: AppState = Depends(get_state),
    ) -> CreateConversationResponse:
        """Starts a new conversation and makes it the active one"""
        try:
            return await state.conversations.create_and_select(request)
        except ChatClientError as e:
            logger.error("create_conversation_error", error=str(e))
            raise http_error(e)

    @app.get("/api/conversations/options", response_model=ConfigOptions)
    async def conversation_options(state: AppState = Depends(get_state)) -> ConfigOptions:
        """Personalities and roles for the new conversation form"""
        return ConfigOptions(
            personalities=await state.backend.get_personalities(),
            roles=await state.backend.get_roles(),
        )

    @app.put("/api/conversations/{conversation_id}")
    async def rename_conversation(
        conversation_id: str,
        update: TitleUpdate,
        state: AppState = Depends(get_state),
    ) -> dict:
        try:
            await state.conversations.rename(conversation_id, update.title)
        except ChatClientError as e:
            logger.error("rename_conversation_error", conversation_id=conversation_id, error=str(e))
            raise http_error(e)
        return {"conversation_id": conversation_id, "title": update.title}

    @app.put("/api/conversations/{conversation_id}/status")
    async def update_conversation_status(
        conversation_id: str,
        update: StatusUpdate,
        state: AppState = Depends(get_state),
    ) -> dict:
        try:
            await state.conversations.set_status(conversation_id, update.status)
        except ChatClientError as e:
            logger.error("update_status_error", conversation_id=conversation_id, error=str(e))
            raise http_error(e)
        return {"conversation_id": conversation_id, "status": update.status.value}

    @app.delete("/api/conversations/{conversation_id}")
    async def delete_conversation(conversation_id: str, state: AppState = Depends(get_state)) -> dict:
        try:
            await state.conversations.delete(conversation_id)
        except ChatClientError as e:
            logger.error("delete_conversation_error", conversation_id=conversation_id, error=str(e))
            raise http_error(e)
        return {"conversation_id": conversation_id, "deleted": True}

    @app.get("/api/session", response_model=SessionView)
    async def get_session(state: AppState = Depends(get_state)) -> SessionView:
        """Current reconciled view of the active conversation"""
        return session_view(state)

    @app.post("/api/session/select", response_model=SessionView)
    async def select_conversation(
        selection: ConversationSelect,
        state: AppState = Depends(get_state),
    ) -> SessionView:
        """Switches to a conversation, or refreshes it when already active"""
        await state.controller.select_conversation(selection.conversation_id)
        return session_view(state)

    @app.post("/api/session/messages", response_model=SessionView, status_code=202)
    async def send_message(
        message: MessageCreate,
        wait: bool = False,
        state: AppState = Depends(get_state),
    ) -> SessionView:
        """
        Sends a message. The optimistic pair is in the returned view; the
        reply streams in the background unless wait is set.
        Blank content or no selection leaves the view unchanged.
        """
        if wait:
            await state.controller.send_message(message.content)
        else:
            await state.controller.start_send(message.content)
        return session_view(state)

    @app.put("/api/session/messages/{message_id}", response_model=SessionView)
    async def edit_message(
        message_id: str,
        message: MessageCreate,
        state: AppState = Depends(get_state),
    ) -> SessionView:
        await state.controller.edit_message(message_id, message.content)
        return session_view(state)

    @app.post("/api/session/messages/{message_id}/regenerate", response_model=SessionView)
    async def regenerate_message(message_id: str, state: AppState = Depends(get_state)) -> SessionView:
        await state.controller.regenerate_message(message_id)
        return session_view(state)

    @app.post("/api/session/stop", response_model=SessionView)
    async def stop_stream(state: AppState = Depends(get_state)) -> SessionView:
        await state.controller.stop_stream()
        return session_view(state)

    @app.delete("/api/session/error", response_model=SessionView)
    async def clear_error(state: AppState = Depends(get_state)) -> SessionView:
        state.controller.clear_error()
        return session_view(state)

    @app.get("/metrics")
    async def metrics_endpoint():
        """Provides Prometheus metrics for system monitoring"""
        return Response(generate_latest(metrics.CUSTOM_REGISTRY), media_type="text/plain")

    return app


app = create_app()
