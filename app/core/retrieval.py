"""Retrieval context assembly for knowledge chat.

Embeds the user's question, fans out nearest-neighbour queries across
decisions, transcript chunks and topics, then merges them into one ranked,
bounded candidate list that is handed to the chat model with the history.

Usage:
    from app.core.retrieval import RetrievalContextAssembler

    assembler = RetrievalContextAssembler(similarity_engine, embedder)
    context = await assembler.assemble(
        organization_id=org_id,
        query_text="What did we decide about pricing?",
        history=messages,
        scope_video_ids=["vid-1"],
    )
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

from app.core.config import get_settings
from app.core.interfaces import EmbeddingProvider
from app.core.logging import get_logger
from app.core.schemas_chat import Message
from app.core.schemas_knowledge import Candidate
from app.core.similarity import SimilarityEngine, check_scope, rank_candidates

logger = get_logger(__name__)

# Entity types that can be narrowed to a set of videos
VIDEO_SCOPED_TYPES = ["decision", "transcript_chunk"]
# Entity types searched across the whole organization
ORG_WIDE_TYPES = ["topic"]


# =============================================================================
# Result Model
# =============================================================================


@dataclass
class RetrievalContext:
    """Ranked candidates plus the conversation history sent to the model."""

    candidates: list[Candidate] = field(default_factory=list)
    history: list[Message] = field(default_factory=list)
    degraded: bool = False  # retrieval skipped (timeout / embeddings down)

    @classmethod
    def empty(cls, history: list[Message] | None = None) -> RetrievalContext:
        return cls(candidates=[], history=list(history or []), degraded=True)


def merge_candidates(groups: list[list[Candidate]], max_candidates: int) -> list[Candidate]:
    """Dedupe by (type, id) keeping the best score, rank, and bound the list."""
    best: dict[tuple[str, str], Candidate] = {}
    for group in groups:
        for c in group:
            existing = best.get(c.key)
            if existing is None or c.score > existing.score:
                best[c.key] = c
    return rank_candidates(list(best.values()))[:max_candidates]


def recent_history(history: list[Message], history_limit: int | None) -> list[Message]:
    """Most recent ``history_limit`` messages, verbatim (all when None)."""
    if history_limit is None:
        return list(history)
    if history_limit <= 0:
        return []
    return list(history[-history_limit:])


# =============================================================================
# Assembler
# =============================================================================


class RetrievalContextAssembler:
    """Builds a RetrievalContext for one chat turn."""

    def __init__(
        self,
        similarity: SimilarityEngine,
        embedder: EmbeddingProvider,
        max_candidates: int | None = None,
        score_threshold: float | None = None,
    ):
        settings = get_settings()
        self.similarity = similarity
        self.embedder = embedder
        self.max_candidates = max_candidates or settings.RETRIEVAL_MAX_CANDIDATES
        self.score_threshold = (
            score_threshold if score_threshold is not None else settings.RETRIEVAL_SCORE_THRESHOLD
        )

    async def assemble(
        self,
        organization_id: str,
        query_text: str,
        history: list[Message],
        scope_video_ids: list[str] | None = None,
        history_limit: int | None = None,
    ) -> RetrievalContext:
        """
        Assemble ranked candidates and history for a query.

        Args:
            organization_id: Requesting organization; every candidate must match
            query_text: The user's message
            history: Prior messages in the conversation, oldest first
            scope_video_ids: Restrict decisions and transcript chunks to these videos
            history_limit: Keep only the most recent N history messages

        Returns:
            RetrievalContext with at most max_candidates candidates

        Raises:
            EmbeddingUnavailable: If the query cannot be embedded
            ScopeViolation: If any candidate belongs to another organization
        """
        query_vector = await self.embedder.embed(query_text)

        video_ids = list(scope_video_ids) if scope_video_ids else None

        groups = await asyncio.gather(
            *(
                self.similarity.find_similar(
                    organization_id=organization_id,
                    entity_types=[entity_type],
                    query_vector=query_vector,
                    limit=self.max_candidates,
                    score_threshold=self.score_threshold,
                    video_ids=video_ids,
                )
                for entity_type in VIDEO_SCOPED_TYPES
            ),
            *(
                self.similarity.find_similar(
                    organization_id=organization_id,
                    entity_types=[entity_type],
                    query_vector=query_vector,
                    limit=self.max_candidates,
                    score_threshold=self.score_threshold,
                )
                for entity_type in ORG_WIDE_TYPES
            ),
        )

        candidates = merge_candidates(list(groups), self.max_candidates)
        check_scope(organization_id, candidates)

        logger.info(
            f"Retrieval: {sum(len(g) for g in groups)} hits -> {len(candidates)} candidates "
            f"(video scope: {len(video_ids) if video_ids else 'all'})"
        )

        return RetrievalContext(
            candidates=candidates,
            history=recent_history(history, history_limit),
        )
