"""Pydantic schemas for conversations, messages and chat requests."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

MessageRole = Literal["user", "assistant", "system"]


class CamelModel(BaseModel):
    """Base model serialized with camelCase keys for the public API."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SourceCitation(CamelModel):
    """A knowledge entity the answer drew on; relevance is 0-100."""

    type: Literal["decision", "transcript_chunk", "video", "topic"]
    id: str
    relevance: float
    preview: str | None = None
    video_id: str | None = None
    timestamp: float | None = None


class Usage(CamelModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class Conversation(CamelModel):
    id: str
    organization_id: str
    user_id: str
    title: str | None = None
    system_prompt: str | None = None
    video_ids: list[str] | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: str | None = None
    updated_at: str | None = None


class Message(CamelModel):
    id: str
    conversation_id: str
    role: MessageRole
    content: str
    embedding: list[float] | None = Field(default=None, exclude=True)
    sources: list[SourceCitation] | None = None
    usage: Usage | None = None
    generation_id: str | None = None
    created_at: str | None = None


# =============================================================================
# Request / response bodies
# =============================================================================


class CreateConversationRequest(CamelModel):
    title: str | None = Field(default=None, max_length=200)
    system_prompt: str | None = Field(default=None, max_length=10000)
    video_ids: list[str] | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class SendMessageRequest(CamelModel):
    content: str = Field(..., min_length=1, max_length=10000)
    stream: bool = True


class ConversationList(CamelModel):
    conversations: list[Conversation] = Field(default_factory=list)


class MessageList(CamelModel):
    messages: list[Message] = Field(default_factory=list)


class ExchangeResult(CamelModel):
    """Body returned when a message is sent with stream=false."""

    user_message: Message
    assistant_message: Message | None = None
    sources: list[SourceCitation] = Field(default_factory=list)
    usage: Usage = Field(default_factory=Usage)
