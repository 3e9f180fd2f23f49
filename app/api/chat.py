"""Knowledge chat API endpoints: conversations and streamed answers."""

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import StreamingResponse

from app.core.auth_middleware import AuthContext, require_auth
from app.core.background import spawn_detached
from app.core.chat_stream import ChatTurn, StreamingResponseCoordinator, index_user_message
from app.core.dependencies import get_conversation_store, get_coordinator, get_embedder
from app.core.errors import ModelCallError, PersistenceError, ScopeViolation
from app.core.interfaces import ConversationStore, EmbeddingProvider
from app.core.logging import get_logger
from app.core.rate_limiter import check_chat_rate_limit
from app.core.schemas_chat import (
    Conversation,
    ConversationList,
    CreateConversationRequest,
    ExchangeResult,
    MessageList,
    SendMessageRequest,
)

logger = get_logger(__name__)

router = APIRouter()

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


async def _get_owned_conversation(
    store: ConversationStore,
    conversation_id: str,
    auth: AuthContext,
) -> Conversation:
    """Load a conversation the caller owns; anything else is a 404."""
    conversation = await store.get_conversation(conversation_id)
    if (
        conversation is None
        or conversation.organization_id != auth.organization_id
        or conversation.user_id != auth.user_id
    ):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found")
    return conversation


@router.post("/conversations", response_model=Conversation, status_code=status.HTTP_201_CREATED)
async def create_conversation(
    request: CreateConversationRequest,
    auth: AuthContext = Depends(require_auth),
    store: ConversationStore = Depends(get_conversation_store),
) -> Conversation:
    """Create an empty conversation; the title is filled in after the first answer."""
    try:
        return await store.create_conversation(
            organization_id=auth.organization_id,
            user_id=auth.user_id,
            title=request.title,
            system_prompt=request.system_prompt,
            video_ids=request.video_ids,
            metadata=request.metadata,
        )
    except PersistenceError as e:
        logger.error(f"Failed to create conversation: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to create conversation") from e


@router.get("/conversations", response_model=ConversationList)
async def list_conversations(
    limit: int = Query(50, ge=1, le=200),
    auth: AuthContext = Depends(require_auth),
    store: ConversationStore = Depends(get_conversation_store),
) -> ConversationList:
    """List the caller's conversations in the current organization, most recent first."""
    conversations = await store.list_conversations(auth.organization_id, auth.user_id, limit=limit)
    return ConversationList(conversations=conversations)


@router.get("/conversations/{conversation_id}/messages")
async def list_messages(
    conversation_id: str,
    limit: int = Query(100, ge=1, le=200),
    auth: AuthContext = Depends(require_auth),
    store: ConversationStore = Depends(get_conversation_store),
) -> dict:
    """List the most recent messages of a conversation, oldest first."""
    await _get_owned_conversation(store, conversation_id, auth)
    messages = await store.get_messages(conversation_id, limit=limit)
    body = MessageList(messages=messages).model_dump(by_alias=True)
    body["conversationId"] = conversation_id
    return body


@router.post("/conversations/{conversation_id}/messages", response_model=None)
async def send_message(
    conversation_id: str,
    request: SendMessageRequest,
    auth: AuthContext = Depends(require_auth),
    store: ConversationStore = Depends(get_conversation_store),
    embedder: EmbeddingProvider = Depends(get_embedder),
    coordinator: StreamingResponseCoordinator = Depends(get_coordinator),
) -> StreamingResponse | ExchangeResult:
    """
    Send a message and get a knowledge-grounded answer.

    This endpoint:
    1. Verifies the caller owns the conversation
    2. Stores the user message (and indexes it in the background)
    3. Retrieves context from decisions, transcripts and topics
    4. Streams the answer as SSE (or returns it whole with stream=false)

    SSE events: ``source`` / ``chunk`` in model order, then ``done`` with the
    assistant message id (null if it is still being saved), or one ``error``.
    """
    check_chat_rate_limit(auth.organization_id)

    conversation = await _get_owned_conversation(store, conversation_id, auth)
    history = await store.get_messages(conversation_id)

    try:
        user_message = await store.create_message(conversation_id, "user", request.content)
    except PersistenceError as e:
        logger.error(f"Failed to store user message: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to store message") from e

    spawn_detached(
        index_user_message(store, embedder, user_message),
        name=f"index-user-message-{user_message.id}",
        conversation_id=conversation_id,
        message_id=user_message.id,
    )

    turn = ChatTurn(conversation=conversation, user_message=user_message, history=history)

    try:
        context = await coordinator.prepare(turn)
    except ScopeViolation as e:
        logger.error(f"Retrieval scope violation: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error") from e

    if request.stream:
        return StreamingResponse(
            coordinator.stream(turn, context),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )

    try:
        return await coordinator.complete(turn, context)
    except ModelCallError as e:
        logger.error(f"Chat model failed: {e}", exc_info=True)
        raise HTTPException(status_code=502, detail="The assistant is unavailable. Please try again.") from e
    except PersistenceError as e:
        logger.error(f"Failed to store assistant message: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to store message") from e
