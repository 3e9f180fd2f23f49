"""Chat streaming engine: retrieval, model relay, and detached persistence.

One StreamingResponseCoordinator serves every chat turn. Per turn:

    prepare()  -> RetrievalContext (degrades to empty on timeout/embeddings down)
    stream()   -> SSE frames: source* chunk* then done, or a single error
    complete() -> non-streaming variant returning the persisted exchange

The assistant message, its citation rows and the one-time conversation title
are written by a detached task so a slow or failing store never blocks or
breaks the stream the user sees.
"""

import asyncio
import json
import logging
import math
from collections.abc import AsyncIterator
from contextlib import aclosing
from dataclasses import dataclass, field
from enum import Enum
from uuid import uuid4

from app.core.background import spawn_detached
from app.core.config import get_settings
from app.core.errors import EmbeddingUnavailable, ModelCallError, PersistenceError, ScopeViolation
from app.core.interfaces import (
    ChatModel,
    ConversationStore,
    EmbeddingProvider,
    ModelChunk,
    ModelFinish,
    ModelSource,
)
from app.core.logging import get_logger, log_with_context
from app.core.retrieval import RetrievalContext, RetrievalContextAssembler, recent_history
from app.core.schemas_chat import Conversation, ExchangeResult, Message, SourceCitation, Usage

logger = get_logger(__name__)

TITLE_MAX_CHARS = 50
TITLE_ELLIPSIS = "..."

STREAM_ERROR_MESSAGE = "Something went wrong while generating the response. Please try again."
STREAM_TIMEOUT_MESSAGE = "The response took too long to generate. Please try again."


class StreamState(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    FINISHING = "finishing"
    CLOSED = "closed"
    ERRORED = "errored"


@dataclass
class ChatTurn:
    """Explicit inputs for one user message and its answer."""

    conversation: Conversation
    user_message: Message
    history: list[Message]  # messages before user_message, oldest first
    generation_id: str = field(default_factory=lambda: str(uuid4()))
    state: StreamState = StreamState.IDLE

    @property
    def organization_id(self) -> str:
        return self.conversation.organization_id

    @property
    def conversation_id(self) -> str:
        return self.conversation.id

    @property
    def is_first_exchange(self) -> bool:
        return not self.history


@dataclass
class PersistOutcome:
    message: Message | None = None
    citations_written: int = 0
    title_set: bool = False


def sse_event(data: dict) -> str:
    """Format a dict as an SSE data line."""
    return f"data: {json.dumps(data)}\n\n"


def round_relevance(relevance: float) -> int:
    """Round half-up: 87.5 -> 88, 87.4 -> 87."""
    return int(math.floor(relevance + 0.5))


def build_auto_title(content: str) -> str:
    """First 50 characters of the first user message, with an ellipsis if cut."""
    if len(content) > TITLE_MAX_CHARS:
        return content[:TITLE_MAX_CHARS] + TITLE_ELLIPSIS
    return content


def dedupe_citations(sources: list[SourceCitation]) -> list[SourceCitation]:
    """One citation per (type, id), keeping the highest relevance, first-seen order."""
    best: dict[tuple[str, str], SourceCitation] = {}
    for s in sources:
        key = (s.type, s.id)
        if key not in best or s.relevance > best[key].relevance:
            best[key] = s
    return list(best.values())


def rounded_citations(sources: list[SourceCitation]) -> list[SourceCitation]:
    return [
        s.model_copy(update={"relevance": round_relevance(s.relevance)})
        for s in dedupe_citations(sources)
    ]


# =============================================================================
# Background persistence
# =============================================================================


async def persist_exchange(
    store: ConversationStore,
    turn: ChatTurn,
    content: str,
    sources: list[SourceCitation],
    usage: Usage,
) -> PersistOutcome:
    """Write the assistant message, its citations and the first-turn title.

    Keyed by (conversation id, generation id) so a replay upserts instead of
    duplicating. Each step logs its own failure; citations need the message
    id and are skipped when the message write failed. Never raises.
    """
    outcome = PersistOutcome()
    citations = rounded_citations(sources)
    ids = {"conversation_id": turn.conversation_id, "generation_id": turn.generation_id}

    try:
        outcome.message = await store.create_message(
            conversation_id=turn.conversation_id,
            role="assistant",
            content=content,
            sources=citations,
            usage=usage,
            generation_id=turn.generation_id,
        )
    except Exception as e:
        log_with_context(logger, logging.ERROR, f"Failed to persist assistant message: {e}", exc_info=True, **ids)

    if outcome.message is not None and citations:
        try:
            await store.add_citations(outcome.message.id, citations)
            outcome.citations_written = len(citations)
        except Exception as e:
            log_with_context(
                logger,
                logging.ERROR,
                f"Failed to persist citations: {e}",
                exc_info=True,
                message_id=outcome.message.id,
                **ids,
            )
    elif outcome.message is None and citations:
        log_with_context(
            logger, logging.WARNING, "Skipping citations: assistant message was not persisted", **ids
        )

    if turn.conversation.title is None and turn.is_first_exchange:
        title = build_auto_title(turn.user_message.content)
        try:
            outcome.title_set = await store.update_conversation_title(turn.conversation_id, title)
        except Exception as e:
            log_with_context(
                logger,
                logging.ERROR,
                f"Failed to set conversation title: {e}",
                exc_info=True,
                message_id=outcome.message.id if outcome.message else None,
                **ids,
            )

    log_with_context(
        logger,
        logging.DEBUG,
        "Exchange persisted",
        message_id=outcome.message.id if outcome.message else None,
        citations=outcome.citations_written,
        title_set=outcome.title_set,
        **ids,
    )
    return outcome


async def index_user_message(store: ConversationStore, embedder: EmbeddingProvider, message: Message) -> None:
    """Embed a user message and store the vector. Failures are debug-logged only."""
    try:
        vector = await embedder.embed(message.content)
        await store.update_message_embedding(message.id, vector)
    except Exception as e:
        log_with_context(
            logger,
            logging.DEBUG,
            f"User message indexing skipped: {e}",
            conversation_id=message.conversation_id,
            message_id=message.id,
        )


# =============================================================================
# Coordinator
# =============================================================================


class StreamingResponseCoordinator:
    """Drives retrieval and the model for chat turns; per-turn state lives on ChatTurn."""

    def __init__(
        self,
        assembler: RetrievalContextAssembler,
        model: ChatModel,
        store: ConversationStore,
        retrieval_timeout: float | None = None,
        model_timeout: float | None = None,
        done_grace: float | None = None,
        history_limit: int | None = None,
    ):
        settings = get_settings()
        self.assembler = assembler
        self.model = model
        self.store = store
        self.retrieval_timeout = retrieval_timeout or settings.RETRIEVAL_TIMEOUT_SECONDS
        self.model_timeout = model_timeout or settings.MODEL_TIMEOUT_SECONDS
        self.done_grace = done_grace if done_grace is not None else settings.DONE_EVENT_GRACE_SECONDS
        self.history_limit = history_limit if history_limit is not None else settings.CHAT_HISTORY_LIMIT

    async def prepare(self, turn: ChatTurn) -> RetrievalContext:
        """
        Retrieve context for a turn under the retrieval deadline.

        Raises:
            ScopeViolation: Always propagated; never degraded
        """
        try:
            return await asyncio.wait_for(
                self.assembler.assemble(
                    organization_id=turn.organization_id,
                    query_text=turn.user_message.content,
                    history=turn.history,
                    scope_video_ids=turn.conversation.video_ids,
                    history_limit=self.history_limit,
                ),
                timeout=self.retrieval_timeout,
            )
        except ScopeViolation:
            raise
        except TimeoutError:
            log_with_context(
                logger,
                logging.WARNING,
                f"Retrieval exceeded {self.retrieval_timeout}s, answering without context",
                conversation_id=turn.conversation_id,
                generation_id=turn.generation_id,
            )
        except EmbeddingUnavailable as e:
            log_with_context(
                logger,
                logging.WARNING,
                f"Embeddings unavailable, answering without context: {e}",
                conversation_id=turn.conversation_id,
                generation_id=turn.generation_id,
            )
        except Exception as e:
            log_with_context(
                logger,
                logging.ERROR,
                f"Retrieval failed, answering without context: {e}",
                exc_info=True,
                conversation_id=turn.conversation_id,
                generation_id=turn.generation_id,
            )
        return RetrievalContext.empty(recent_history(turn.history, self.history_limit))

    def model_messages(self, turn: ChatTurn, context: RetrievalContext) -> list[Message]:
        messages: list[Message] = []
        if turn.conversation.system_prompt:
            messages.append(
                Message(
                    id="system",
                    conversation_id=turn.conversation_id,
                    role="system",
                    content=turn.conversation.system_prompt,
                )
            )
        messages.extend(context.history)
        messages.append(turn.user_message)
        return messages

    async def stream(self, turn: ChatTurn, context: RetrievalContext) -> AsyncIterator[str]:
        """Relay model events as SSE frames.

        Yields:
            ``source`` and ``chunk`` frames in model order, then ``done`` with
            the persisted message id (null if persistence is still running
            after the grace period), or a single ``error`` frame.
        """
        turn.state = StreamState.STREAMING
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.model_timeout
        finish: ModelFinish | None = None
        chunks = 0

        events = self.model.stream_generate(self.model_messages(turn, context), context)
        try:
            async with aclosing(events):
                while True:
                    try:
                        async with asyncio.timeout_at(deadline):
                            event = await anext(events)
                    except StopAsyncIteration:
                        break

                    if isinstance(event, ModelChunk):
                        chunks += 1
                        yield sse_event({"type": "chunk", "content": event.content})
                    elif isinstance(event, ModelSource):
                        yield sse_event({"type": "source", "source": event.source.model_dump(by_alias=True)})
                    elif isinstance(event, ModelFinish):
                        finish = event
                        break

            if finish is None:
                raise ModelCallError("Model stream ended without a finish event")
        except TimeoutError:
            turn.state = StreamState.ERRORED
            log_with_context(
                logger,
                logging.ERROR,
                f"Model exceeded {self.model_timeout}s after {chunks} chunks",
                conversation_id=turn.conversation_id,
                generation_id=turn.generation_id,
            )
            yield sse_event({"type": "error", "error": STREAM_TIMEOUT_MESSAGE})
            return
        except Exception as e:
            turn.state = StreamState.ERRORED
            log_with_context(
                logger,
                logging.ERROR,
                f"Error in chat stream after {chunks} chunks: {e}",
                exc_info=True,
                conversation_id=turn.conversation_id,
                generation_id=turn.generation_id,
            )
            yield sse_event({"type": "error", "error": STREAM_ERROR_MESSAGE})
            return

        turn.state = StreamState.FINISHING
        task = spawn_detached(
            persist_exchange(self.store, turn, finish.content, finish.sources, finish.usage),
            name=f"persist-exchange-{turn.generation_id}",
            conversation_id=turn.conversation_id,
            generation_id=turn.generation_id,
        )

        # Bounded wait; the task keeps running if the grace period expires
        done, _ = await asyncio.wait({task}, timeout=self.done_grace)
        message_id = None
        if task in done and not task.cancelled() and task.exception() is None:
            outcome = task.result()
            message_id = outcome.message.id if outcome.message else None

        turn.state = StreamState.CLOSED
        yield sse_event(
            {
                "type": "done",
                "messageId": message_id,
                "usage": finish.usage.model_dump(by_alias=True),
            }
        )

    async def complete(self, turn: ChatTurn, context: RetrievalContext) -> ExchangeResult:
        """
        Generate a full answer and persist it before returning.

        Raises:
            ModelCallError: If the model fails or exceeds its deadline
            PersistenceError: If the assistant message could not be saved
        """
        turn.state = StreamState.STREAMING
        try:
            response = await asyncio.wait_for(
                self.model.generate(self.model_messages(turn, context), context),
                timeout=self.model_timeout,
            )
        except TimeoutError as e:
            turn.state = StreamState.ERRORED
            raise ModelCallError(f"Model exceeded {self.model_timeout}s") from e
        except ModelCallError:
            turn.state = StreamState.ERRORED
            raise
        except Exception as e:
            turn.state = StreamState.ERRORED
            raise ModelCallError(f"Model call failed: {e}") from e

        turn.state = StreamState.FINISHING
        outcome = await persist_exchange(self.store, turn, response.content, response.sources, response.usage)
        if outcome.message is None:
            turn.state = StreamState.ERRORED
            raise PersistenceError(f"Assistant message for generation {turn.generation_id} was not saved")
        turn.state = StreamState.CLOSED

        return ExchangeResult(
            user_message=turn.user_message,
            assistant_message=outcome.message,
            sources=dedupe_citations(response.sources),
            usage=response.usage,
        )
