"""Database operations for chat conversations, messages and citations.

The supabase client is synchronous; every call runs in a worker thread so a
slow write never stalls the event loop serving SSE streams.
"""

from __future__ import annotations

import asyncio
from typing import Any

from app.core.errors import PersistenceError
from app.core.logging import get_logger
from app.core.schemas_chat import Conversation, Message, SourceCitation, Usage
from app.db.supabase_client import get_supabase

logger = get_logger(__name__)

CONVERSATIONS_TABLE = "chat_conversations"
MESSAGES_TABLE = "chat_messages"
CITATIONS_TABLE = "chat_message_citations"

# Everything but the embedding column
_MESSAGE_COLUMNS = "id, conversation_id, role, content, sources, usage, generation_id, created_at"


def _conversation_from_row(row: dict[str, Any]) -> Conversation:
    return Conversation(
        id=str(row["id"]),
        organization_id=str(row["organization_id"]),
        user_id=str(row["user_id"]),
        title=row.get("title"),
        system_prompt=row.get("system_prompt"),
        video_ids=row.get("video_ids"),
        metadata=row.get("metadata") or {},
        created_at=row.get("created_at"),
        updated_at=row.get("updated_at"),
    )


def _message_from_row(row: dict[str, Any]) -> Message:
    sources = row.get("sources")
    usage = row.get("usage")
    return Message(
        id=str(row["id"]),
        conversation_id=str(row["conversation_id"]),
        role=row["role"],
        content=row.get("content") or "",
        sources=[SourceCitation.model_validate(s) for s in sources] if sources else None,
        usage=Usage.model_validate(usage) if usage else None,
        generation_id=row.get("generation_id"),
        created_at=row.get("created_at"),
    )


def _citation_row(message_id: str, citation: SourceCitation) -> dict[str, Any]:
    return {
        "message_id": message_id,
        "source_type": citation.type,
        "source_id": citation.id,
        "relevance_score": int(citation.relevance),
        "context_snippet": citation.preview,
        "video_id": citation.video_id,
        "timestamp_seconds": citation.timestamp,
    }


class SupabaseConversationStore:
    """ConversationStore over the chat_* tables."""

    # =========================================================================
    # Conversations
    # =========================================================================

    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        def _get():
            return (
                get_supabase()
                .table(CONVERSATIONS_TABLE)
                .select("*")
                .eq("id", conversation_id)
                .limit(1)
                .execute()
            )

        result = await asyncio.to_thread(_get)
        if result.data:
            return _conversation_from_row(result.data[0])
        return None

    async def create_conversation(
        self,
        organization_id: str,
        user_id: str,
        title: str | None = None,
        system_prompt: str | None = None,
        video_ids: list[str] | None = None,
        metadata: dict | None = None,
    ) -> Conversation:
        data = {
            "organization_id": organization_id,
            "user_id": user_id,
            "title": title,
            "system_prompt": system_prompt,
            "video_ids": video_ids,
            "metadata": metadata or {},
        }

        def _insert():
            return get_supabase().table(CONVERSATIONS_TABLE).insert(data).execute()

        result = await asyncio.to_thread(_insert)
        if not result.data:
            raise PersistenceError("Failed to create conversation")
        conversation = _conversation_from_row(result.data[0])
        logger.info(f"Created conversation {conversation.id} for organization {organization_id}")
        return conversation

    async def list_conversations(self, organization_id: str, user_id: str, limit: int = 50) -> list[Conversation]:
        def _list():
            return (
                get_supabase()
                .table(CONVERSATIONS_TABLE)
                .select("*")
                .eq("organization_id", organization_id)
                .eq("user_id", user_id)
                .order("updated_at", desc=True)
                .limit(limit)
                .execute()
            )

        result = await asyncio.to_thread(_list)
        return [_conversation_from_row(row) for row in result.data or []]

    async def update_conversation_title(self, conversation_id: str, title: str) -> bool:
        """Set the title only if it is still NULL. Returns whether this call wrote it."""

        def _update():
            return (
                get_supabase()
                .table(CONVERSATIONS_TABLE)
                .update({"title": title})
                .eq("id", conversation_id)
                .is_("title", "null")
                .execute()
            )

        result = await asyncio.to_thread(_update)
        return bool(result.data)

    # =========================================================================
    # Messages
    # =========================================================================

    async def get_messages(self, conversation_id: str, limit: int | None = None) -> list[Message]:
        """Messages oldest first; with a limit, the most recent ``limit`` of them."""

        def _get():
            query = (
                get_supabase()
                .table(MESSAGES_TABLE)
                .select(_MESSAGE_COLUMNS)
                .eq("conversation_id", conversation_id)
            )
            if limit is None:
                return query.order("created_at").execute()
            return query.order("created_at", desc=True).limit(limit).execute()

        result = await asyncio.to_thread(_get)
        rows = result.data or []
        if limit is not None:
            rows = list(reversed(rows))
        return [_message_from_row(row) for row in rows]

    async def create_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        sources: list[SourceCitation] | None = None,
        usage: Usage | None = None,
        generation_id: str | None = None,
    ) -> Message:
        """Insert a message; with a generation id, upsert on (conversation, generation)."""
        data = {
            "conversation_id": conversation_id,
            "role": role,
            "content": content,
            "sources": [s.model_dump() for s in sources] if sources else None,
            "usage": usage.model_dump() if usage else None,
            "generation_id": generation_id,
        }

        def _write():
            table = get_supabase().table(MESSAGES_TABLE)
            if generation_id:
                return table.upsert(data, on_conflict="conversation_id,generation_id").execute()
            return table.insert(data).execute()

        result = await asyncio.to_thread(_write)
        if not result.data:
            raise PersistenceError(f"Failed to write {role} message to conversation {conversation_id}")

        await asyncio.to_thread(self._touch_conversation, conversation_id)
        return _message_from_row(result.data[0])

    async def update_message_embedding(self, message_id: str, embedding: list[float]) -> None:
        def _update():
            return (
                get_supabase()
                .table(MESSAGES_TABLE)
                .update({"embedding": embedding})
                .eq("id", message_id)
                .execute()
            )

        await asyncio.to_thread(_update)

    async def add_citations(self, message_id: str, citations: list[SourceCitation]) -> None:
        if not citations:
            return
        rows = [_citation_row(message_id, c) for c in citations]

        def _upsert():
            return (
                get_supabase()
                .table(CITATIONS_TABLE)
                .upsert(rows, on_conflict="message_id,source_type,source_id")
                .execute()
            )

        await asyncio.to_thread(_upsert)

    @staticmethod
    def _touch_conversation(conversation_id: str) -> None:
        """Bump updated_at so recent conversations list first."""
        try:
            (
                get_supabase()
                .table(CONVERSATIONS_TABLE)
                .update({"updated_at": "now()"})
                .eq("id", conversation_id)
                .execute()
            )
        except Exception as e:
            logger.warning(f"Failed to touch conversation {conversation_id}: {e}")
