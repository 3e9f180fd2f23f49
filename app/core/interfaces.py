"""Collaborator protocols used by the retrieval, streaming and clustering core.

The concrete implementations live in app.db (Supabase) and app.core
(OpenAI embeddings, Anthropic chat/labels). Tests swap in the in-memory
fakes under tests/fakes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, AsyncIterator, Protocol, Union

from app.core.schemas_chat import Conversation, Message, SourceCitation, Usage
from app.core.schemas_knowledge import Candidate, ClusterLabel, KnowledgeVector

if TYPE_CHECKING:
    from app.core.retrieval import RetrievalContext


# =============================================================================
# Model events
# =============================================================================


@dataclass
class ModelChunk:
    content: str


@dataclass
class ModelSource:
    source: SourceCitation


@dataclass
class ModelFinish:
    content: str
    sources: list[SourceCitation] = field(default_factory=list)
    usage: Usage = field(default_factory=Usage)


ModelEvent = Union[ModelChunk, ModelSource, ModelFinish]


@dataclass
class ModelResponse:
    content: str
    sources: list[SourceCitation] = field(default_factory=list)
    usage: Usage = field(default_factory=Usage)


# =============================================================================
# Protocols
# =============================================================================


class EmbeddingProvider(Protocol):
    model: str

    async def embed(self, text: str) -> list[float]: ...


class ChatModel(Protocol):
    async def generate(self, messages: list[Message], context: RetrievalContext) -> ModelResponse: ...

    def stream_generate(
        self, messages: list[Message], context: RetrievalContext
    ) -> AsyncIterator[ModelEvent]: ...


class ClusterLabeler(Protocol):
    async def label(self, texts: list[str], tags: list[str]) -> ClusterLabel: ...


class ConversationStore(Protocol):
    async def get_conversation(self, conversation_id: str) -> Conversation | None: ...

    async def create_conversation(
        self,
        organization_id: str,
        user_id: str,
        title: str | None = None,
        system_prompt: str | None = None,
        video_ids: list[str] | None = None,
        metadata: dict | None = None,
    ) -> Conversation: ...

    async def list_conversations(self, organization_id: str, user_id: str, limit: int = 50) -> list[Conversation]: ...

    async def get_messages(self, conversation_id: str, limit: int | None = None) -> list[Message]: ...

    async def create_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        sources: list[SourceCitation] | None = None,
        usage: Usage | None = None,
        generation_id: str | None = None,
    ) -> Message: ...

    async def update_message_embedding(self, message_id: str, embedding: list[float]) -> None: ...

    async def add_citations(self, message_id: str, citations: list[SourceCitation]) -> None: ...

    async def update_conversation_title(self, conversation_id: str, title: str) -> bool: ...


class VectorStore(Protocol):
    async def query(
        self,
        organization_id: str,
        entity_types: list[str],
        query_vector: list[float],
        limit: int,
        score_threshold: float,
        video_ids: list[str] | None = None,
        exclude_video_id: str | None = None,
    ) -> list[Candidate]: ...

    async def get_vector(self, organization_id: str, entity_type: str, entity_id: str) -> KnowledgeVector | None: ...

    async def upsert(self, vector: KnowledgeVector) -> None: ...

    async def list_vectors(
        self,
        organization_id: str,
        entity_type: str,
        source_id: str | None = None,
        limit: int = 500,
    ) -> list[KnowledgeVector]: ...
