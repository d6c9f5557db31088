from __future__ import annotations

import contextlib
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, Query, Request, Response
from fastapi.responses import StreamingResponse

from chatrelay.api.schemas import (
    ChatRequest,
    ChatResponse,
    ConversationDetail,
    ConversationListResponse,
    ConversationSummary,
    CredentialsRequest,
    MessageListResponse,
    MessageResponse,
    ModelResponse,
    TokenResponse,
)
from chatrelay.logging import get_logger
from chatrelay.service.auth import AuthContext, IssuedToken
from chatrelay.service.completion import ModelInfo
from chatrelay.service.errors import AuthenticationError, NotFoundError
from chatrelay.service.runtime import get_runtime
from chatrelay.service.session import ChatTurn
from chatrelay.storage.models import Conversation, Message

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    principal = await runtime.auth.authenticate(authorization)
    if not principal:
        raise AuthenticationError("invalid or missing credentials")
    return principal


async def chat_rate_limit(principal: AuthContext = Depends(get_user)) -> AuthContext:
    """Admit the caller through the sliding-window gate before a chat turn."""
    await get_runtime().rate_gate.admit(principal.user_id)
    return principal


async def _get_owned_conversation(conversation_id: str, user_id: str) -> Conversation:
    conv = get_runtime().store.get_conversation(conversation_id, user_id=user_id)
    if not conv:
        raise NotFoundError("Conversation not found", detail={"conversation_id": conversation_id})
    return conv


def _turn_from_request(body: ChatRequest) -> ChatTurn:
    return ChatTurn.parse(
        body.message,
        body.model or get_runtime().settings.default_model,
        conversation_id=body.conversation_id,
        image=body.image,
    )


def _token_response(issued: IssuedToken) -> TokenResponse:
    return TokenResponse(
        access_token=issued.access_token,
        expires_in=issued.expires_in,
        user_id=issued.user.id,
        username=issued.user.username,
    )


def _conversation_summary(conv: Conversation) -> ConversationSummary:
    return ConversationSummary(
        id=conv.id, title=conv.title, created_at=conv.created_at, updated_at=conv.updated_at
    )


def _message_response(msg: Message) -> MessageResponse:
    return MessageResponse(
        id=msg.id,
        role=msg.role.value,
        content=msg.content,
        model=msg.model,
        image_url=msg.image_url,
        created_at=msg.created_at,
    )


def _model_response(model: ModelInfo) -> ModelResponse:
    return ModelResponse(
        id=model.id, name=model.name, free=model.free, supports_vision=model.supports_vision
    )


# auth


@router.post("/auth/register", response_model=TokenResponse, status_code=201)
async def register(body: CredentialsRequest):
    issued = await get_runtime().auth.register(body.username, body.password)
    return _token_response(issued)


@router.post("/auth/login", response_model=TokenResponse)
async def login(body: CredentialsRequest):
    issued = await get_runtime().auth.login(body.username, body.password)
    return _token_response(issued)


@router.post("/auth/logout", status_code=204)
async def logout(
    principal: AuthContext = Depends(get_user),
    authorization: Optional[str] = Header(None),
):
    await get_runtime().auth.logout(authorization)
    logger.info("user_logged_out", user_id=principal.user_id)
    return Response(status_code=204)


# chat


@router.post("/chat", response_model=ChatResponse)
async def chat(body: ChatRequest, principal: AuthContext = Depends(chat_rate_limit)):
    session = get_runtime().chat_session(principal.user_id, _turn_from_request(body))
    reply = await session.respond()
    return ChatResponse(
        content=reply.content,
        conversation_id=reply.conversation_id,
        message_id=reply.message_id,
    )


@router.post("/chat/stream")
async def chat_stream(
    body: ChatRequest,
    request: Request,
    principal: AuthContext = Depends(chat_rate_limit),
):
    session = get_runtime().stream_session(principal.user_id, _turn_from_request(body))
    # resolution errors must surface as HTTP errors before the stream is committed
    await session.open()

    async def _event_generator():
        async with contextlib.aclosing(session.events()) as events:
            async for event in events:
                if await request.is_disconnected():
                    logger.info(
                        "chat_stream_client_disconnected",
                        user_id=principal.user_id,
                        conversation_id=session.conversation.id,
                    )
                    break
                yield event.encode()

    return StreamingResponse(
        _event_generator(), media_type="text/event-stream", headers=SSE_HEADERS
    )


# models


@router.get("/models", response_model=List[ModelResponse])
async def list_models(principal: AuthContext = Depends(get_user)):
    models = await get_runtime().catalog.list_models()
    return [_model_response(m) for m in models]


@router.post("/models/refresh", response_model=List[ModelResponse])
async def refresh_models(principal: AuthContext = Depends(get_user)):
    models = await get_runtime().catalog.refresh()
    return [_model_response(m) for m in models]


# conversations


@router.post("/conversations", response_model=ConversationSummary, status_code=201)
async def create_conversation(principal: AuthContext = Depends(get_user)):
    conv = get_runtime().store.create_conversation(principal.user_id)
    return _conversation_summary(conv)


@router.get("/conversations", response_model=ConversationListResponse)
async def list_conversations(
    page: int = Query(0, ge=0),
    size: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    principal: AuthContext = Depends(get_user),
):
    store = get_runtime().store
    items = store.list_conversations(principal.user_id, offset=page * size, limit=size)
    total = store.count_conversations(principal.user_id)
    return ConversationListResponse(
        items=[_conversation_summary(c) for c in items],
        total_count=total,
        page=page,
        size=size,
        has_next=(page + 1) * size < total,
    )


@router.get("/conversations/{conversation_id}", response_model=ConversationDetail)
async def get_conversation(conversation_id: str, principal: AuthContext = Depends(get_user)):
    conv = await _get_owned_conversation(conversation_id, principal.user_id)
    messages = get_runtime().store.list_messages(conv.id)
    return ConversationDetail(
        **_conversation_summary(conv).model_dump(),
        messages=[_message_response(m) for m in messages],
    )


@router.delete("/conversations/{conversation_id}", status_code=204)
async def delete_conversation(conversation_id: str, principal: AuthContext = Depends(get_user)):
    deleted = get_runtime().store.delete_conversation(conversation_id, user_id=principal.user_id)
    if not deleted:
        raise NotFoundError("Conversation not found", detail={"conversation_id": conversation_id})
    logger.info("conversation_deleted", user_id=principal.user_id, conversation_id=conversation_id)
    return Response(status_code=204)


@router.get("/conversations/{conversation_id}/messages", response_model=MessageListResponse)
async def list_conversation_messages(
    conversation_id: str,
    page: int = Query(0, ge=0),
    size: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    principal: AuthContext = Depends(get_user),
):
    conv = await _get_owned_conversation(conversation_id, principal.user_id)
    store = get_runtime().store
    items = store.list_messages(conv.id, offset=page * size, limit=size)
    total = store.count_messages(conv.id)
    return MessageListResponse(
        items=[_message_response(m) for m in items],
        total_count=total,
        page=page,
        size=size,
        has_next=(page + 1) * size < total,
    )
