"""Knowledge vector storage, search and indexing.

One row per (organization, entity type, entity id, embedding model) in
``knowledge_vectors``. Nearest-neighbour search runs in Postgres through the
``match_knowledge_vectors`` RPC (pgvector cosine distance). The indexing
helpers build the text to embed for each entity type and upsert rows under
the configured embedding model; rows from other models are pruned separately.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any

from app.core.config import get_settings
from app.core.embeddings import embed_texts_async
from app.core.errors import EmbeddingUnavailable
from app.core.interfaces import EmbeddingProvider
from app.core.logging import get_logger
from app.core.schemas_knowledge import Candidate, KnowledgeVector
from app.db.supabase_client import get_supabase

logger = get_logger(__name__)

VECTORS_TABLE = "knowledge_vectors"
MATCH_RPC = "match_knowledge_vectors"

_VECTOR_CONFLICT = "organization_id,entity_type,entity_id,embedding_model"

PREVIEW_CHARS = 300
MIN_EMBED_TEXT = 10

# Maps entity_type -> builder of the text to embed from entity data.
EMBED_TEXT_BUILDERS: dict[str, Any] = {
    "decision": lambda e: _join(e.get("summary"), ": ", e.get("context")),
    "transcript_chunk": lambda e: _join(e.get("text") or e.get("content")),
    "topic": lambda e: _join(
        e.get("name"), " ", e.get("description"), " ", " ".join(e.get("keywords") or [])
    ),
    "video": lambda e: _join(
        e.get("title"), ": ", e.get("description"), "\n", (e.get("transcript") or "")[:4000]
    ),
    "content_item": lambda e: _join(e.get("title"), ": ", e.get("content") or e.get("text")),
}

# Maps entity_type -> builder of the short preview shown in citations
PREVIEW_BUILDERS: dict[str, Any] = {
    "decision": lambda e: e.get("summary"),
    "transcript_chunk": lambda e: e.get("text") or e.get("content"),
    "topic": lambda e: _join(e.get("name"), ": ", e.get("description")),
    "video": lambda e: e.get("title"),
    "content_item": lambda e: e.get("content") or e.get("text") or e.get("title"),
}


def _join(*parts: str | None) -> str:
    """Join non-None parts into a single string, skipping empties."""
    return "".join(p for p in parts if p).strip(" :\n")


def _parse_embedding(value: Any) -> list[float]:
    """pgvector columns come back from PostgREST as '[0.1,0.2,...]' strings."""
    if isinstance(value, str):
        return [float(x) for x in json.loads(value)]
    return [float(x) for x in value or []]


def _vector_from_row(row: dict[str, Any]) -> KnowledgeVector:
    return KnowledgeVector(
        organization_id=str(row["organization_id"]),
        entity_type=row["entity_type"],
        entity_id=str(row["entity_id"]),
        embedding=_parse_embedding(row.get("embedding")),
        embedding_model=row["embedding_model"],
        video_id=row.get("video_id"),
        source_id=row.get("source_id"),
        timestamp_start=row.get("timestamp_start"),
        timestamp_end=row.get("timestamp_end"),
        title=row.get("title"),
        text_preview=row.get("text_preview"),
        tags=row.get("tags") or [],
    )


def _candidate_from_row(row: dict[str, Any]) -> Candidate:
    return Candidate(
        entity_type=row["entity_type"],
        entity_id=str(row["entity_id"]),
        organization_id=str(row["organization_id"]),
        score=float(row.get("similarity") or 0.0),
        video_id=row.get("video_id"),
        text_preview=row.get("text_preview"),
        timestamp_start=row.get("timestamp_start"),
    )


# =============================================================================
# Store
# =============================================================================


class SupabaseVectorStore:
    """VectorStore over the knowledge_vectors table."""

    def __init__(self, embedding_model: str | None = None):
        self.embedding_model = embedding_model or get_settings().EMBEDDING_MODEL

    async def query(
        self,
        organization_id: str,
        entity_types: list[str],
        query_vector: list[float],
        limit: int,
        score_threshold: float,
        video_ids: list[str] | None = None,
        exclude_video_id: str | None = None,
    ) -> list[Candidate]:
        params = {
            "query_embedding": query_vector,
            "match_count": limit,
            "match_threshold": score_threshold,
            "filter_organization_id": organization_id,
            "filter_entity_types": entity_types,
            "filter_video_ids": video_ids,
            "filter_embedding_model": self.embedding_model,
            "exclude_video_id": exclude_video_id,
        }

        def _rpc():
            return get_supabase().rpc(MATCH_RPC, params).execute()

        result = await asyncio.to_thread(_rpc)
        return [_candidate_from_row(row) for row in result.data or []]

    async def get_vector(self, organization_id: str, entity_type: str, entity_id: str) -> KnowledgeVector | None:
        def _get():
            return (
                get_supabase()
                .table(VECTORS_TABLE)
                .select("*")
                .eq("organization_id", organization_id)
                .eq("entity_type", entity_type)
                .eq("entity_id", entity_id)
                .eq("embedding_model", self.embedding_model)
                .limit(1)
                .execute()
            )

        result = await asyncio.to_thread(_get)
        if result.data:
            return _vector_from_row(result.data[0])
        return None

    async def upsert(self, vector: KnowledgeVector) -> None:
        await self.upsert_many([vector])

    async def upsert_many(self, vectors: list[KnowledgeVector]) -> None:
        if not vectors:
            return
        rows = [v.model_dump() for v in vectors]

        def _upsert():
            return get_supabase().table(VECTORS_TABLE).upsert(rows, on_conflict=_VECTOR_CONFLICT).execute()

        await asyncio.to_thread(_upsert)

    async def list_vectors(
        self,
        organization_id: str,
        entity_type: str,
        source_id: str | None = None,
        limit: int = 500,
    ) -> list[KnowledgeVector]:
        def _list():
            query = (
                get_supabase()
                .table(VECTORS_TABLE)
                .select("*")
                .eq("organization_id", organization_id)
                .eq("entity_type", entity_type)
                .eq("embedding_model", self.embedding_model)
            )
            if source_id:
                query = query.eq("source_id", source_id)
            return query.order("entity_id").limit(limit).execute()

        result = await asyncio.to_thread(_list)
        return [_vector_from_row(row) for row in result.data or []]

    async def prune_stale_vectors(self, organization_id: str | None = None) -> int:
        """Delete rows embedded under any model other than the current one."""

        def _delete():
            query = get_supabase().table(VECTORS_TABLE).delete().neq("embedding_model", self.embedding_model)
            if organization_id:
                query = query.eq("organization_id", organization_id)
            return query.execute()

        result = await asyncio.to_thread(_delete)
        count = len(result.data or [])
        logger.info(f"Pruned {count} stale knowledge vectors (current model {self.embedding_model})")
        return count


# =============================================================================
# Indexing
# =============================================================================


def build_knowledge_vector(
    organization_id: str,
    entity_type: str,
    entity: dict[str, Any],
    embedding: list[float],
    embedding_model: str,
) -> KnowledgeVector:
    """Denormalize an entity's filter fields next to its embedding."""
    preview_builder = PREVIEW_BUILDERS.get(entity_type)
    preview = preview_builder(entity) if preview_builder else None
    return KnowledgeVector(
        organization_id=organization_id,
        entity_type=entity_type,
        entity_id=str(entity["id"]),
        embedding=embedding,
        embedding_model=embedding_model,
        video_id=str(entity["id"]) if entity_type == "video" else entity.get("video_id"),
        source_id=entity.get("source_id"),
        timestamp_start=entity.get("timestamp_start"),
        timestamp_end=entity.get("timestamp_end"),
        title=entity.get("title") or entity.get("name"),
        text_preview=(preview or "")[:PREVIEW_CHARS] or None,
        tags=list(entity.get("tags") or entity.get("keywords") or []),
    )


async def index_entity(
    store: SupabaseVectorStore,
    embedder: EmbeddingProvider,
    organization_id: str,
    entity_type: str,
    entity: dict[str, Any],
) -> bool:
    """Embed and store a single entity.

    Logs errors but never raises. Returns whether a vector was written.
    """
    builder = EMBED_TEXT_BUILDERS.get(entity_type)
    if not builder or not entity.get("id"):
        return False

    text = builder(entity)
    if not text or len(text.strip()) < MIN_EMBED_TEXT:
        return False

    try:
        embedding = await embedder.embed(text)
        await store.upsert(
            build_knowledge_vector(organization_id, entity_type, entity, embedding, embedder.model)
        )
        logger.debug(f"Indexed {entity_type} {entity['id']}")
        return True
    except EmbeddingUnavailable as e:
        logger.warning(f"Embedding unavailable for {entity_type} {entity['id']}: {e}")
    except Exception as e:
        logger.warning(f"Indexing failed for {entity_type} {entity['id']}: {e}")
    return False


async def index_entities_batch(
    store: SupabaseVectorStore,
    organization_id: str,
    entity_type: str,
    entities: list[dict[str, Any]],
) -> int:
    """Batch-embed entities of the same type (for backfill).

    Returns the number of entities successfully indexed.
    """
    builder = EMBED_TEXT_BUILDERS.get(entity_type)
    if not builder:
        return 0

    valid: list[tuple[dict[str, Any], str]] = []
    for entity in entities:
        if not entity.get("id"):
            continue
        text = builder(entity)
        if text and len(text.strip()) >= MIN_EMBED_TEXT:
            valid.append((entity, text.strip()))

    if not valid:
        return 0

    try:
        embeddings = await embed_texts_async([t for _, t in valid])
    except Exception as e:
        logger.error(f"Batch embedding failed for {entity_type}: {e}")
        return 0

    if len(embeddings) != len(valid):
        logger.warning(f"Embedding count mismatch: {len(embeddings)} vs {len(valid)}")
        return 0

    vectors = [
        build_knowledge_vector(organization_id, entity_type, entity, embedding, store.embedding_model)
        for (entity, _), embedding in zip(valid, embeddings, strict=True)
    ]
    try:
        await store.upsert_many(vectors)
    except Exception as e:
        logger.error(f"Batch vector upsert failed for {entity_type}: {e}")
        return 0

    logger.info(f"Batch-indexed {len(vectors)}/{len(entities)} {entity_type} entities")
    return len(vectors)
