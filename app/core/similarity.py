"""
Vector similarity search over the organization's knowledge vectors.

Provides:
1. Cosine helpers (pairwise matrix via sklearn, score clamping)
2. SimilarityEngine.find_similar - thresholded, deterministic, scope-checked
3. SimilarityEngine.find_similar_videos - videos close to a given video

Usage:
    from app.core.similarity import SimilarityEngine

    engine = SimilarityEngine(vector_store, embedder)
    candidates = await engine.find_similar(
        organization_id=org_id,
        entity_types=["decision"],
        query_vector=vector,
        limit=10,
        score_threshold=0.5,
    )
"""

import logging
from collections import defaultdict

import numpy as np
from sklearn.metrics.pairwise import cosine_similarity

from app.core.embeddings import MAX_EMBED_CHARS
from app.core.errors import EmbeddingUnavailable, ScopeViolation
from app.core.interfaces import EmbeddingProvider, VectorStore
from app.core.logging import get_logger, log_with_context
from app.core.schemas_knowledge import Candidate, KnowledgeVector, SimilarVideo

logger = get_logger(__name__)

# Entity types whose vectors carry a video_id and count toward video similarity
_VIDEO_EVIDENCE_TYPES = ["video", "transcript_chunk"]


# =============================================================================
# Cosine helpers
# =============================================================================


def normalize_score(raw: float) -> float:
    """Clamp a cosine similarity into the 0-1 range used everywhere downstream."""
    if raw != raw:  # NaN from a zero vector
        return 0.0
    return min(1.0, max(0.0, float(raw)))


def cosine(a: list[float], b: list[float]) -> float:
    """Cosine similarity of two vectors, clamped to 0-1."""
    va = np.asarray(a, dtype=float).reshape(1, -1)
    vb = np.asarray(b, dtype=float).reshape(1, -1)
    if not va.any() or not vb.any():
        return 0.0
    return normalize_score(cosine_similarity(va, vb)[0][0])


def similarity_matrix(vectors: list[list[float]]) -> np.ndarray:
    """Pairwise cosine matrix, clamped to 0-1."""
    if not vectors:
        return np.zeros((0, 0))
    matrix = cosine_similarity(np.asarray(vectors, dtype=float))
    return np.clip(np.nan_to_num(matrix), 0.0, 1.0)


def rank_candidates(candidates: list[Candidate]) -> list[Candidate]:
    """Order by score descending, then entity id ascending."""
    return sorted(candidates, key=lambda c: (-c.score, c.entity_id))


def check_scope(organization_id: str, candidates: list[Candidate] | list[KnowledgeVector]) -> None:
    """Raise ScopeViolation if any candidate or vector belongs to another organization."""
    for c in candidates:
        if c.organization_id != organization_id:
            log_with_context(
                logger,
                logging.ERROR,
                "Scope violation: candidate outside requested organization",
                organization_id=organization_id,
                entity_type=c.entity_type,
                entity_id=c.entity_id,
                found_organization_id=c.organization_id,
            )
            raise ScopeViolation(organization_id, c.entity_type, c.entity_id, c.organization_id)


# =============================================================================
# Engine
# =============================================================================


class SimilarityEngine:
    """Nearest-neighbour queries against a VectorStore."""

    def __init__(self, vector_store: VectorStore, embedder: EmbeddingProvider | None = None):
        self.vector_store = vector_store
        self.embedder = embedder

    async def find_similar(
        self,
        organization_id: str,
        entity_types: list[str],
        query_vector: list[float],
        limit: int = 10,
        score_threshold: float = 0.0,
        video_ids: list[str] | None = None,
        exclude_video_id: str | None = None,
    ) -> list[Candidate]:
        """
        Find the entities closest to a query vector.

        Scores are clamped to 0-1. A candidate scoring exactly the threshold
        is kept; anything below is dropped. ``exclude_video_id`` drops every
        row attached to that video inside the store, before the limit applies.

        Raises:
            ScopeViolation: If the store returned a foreign-organization row
        """
        if limit <= 0 or not entity_types:
            return []

        raw = await self.vector_store.query(
            organization_id=organization_id,
            entity_types=entity_types,
            query_vector=query_vector,
            limit=limit,
            score_threshold=score_threshold,
            video_ids=video_ids,
            exclude_video_id=exclude_video_id,
        )
        check_scope(organization_id, raw)

        kept = []
        for c in raw:
            score = normalize_score(c.score)
            if score < score_threshold:
                continue
            kept.append(c.model_copy(update={"score": score}))

        return rank_candidates(kept)[:limit]

    async def find_similar_videos(
        self,
        organization_id: str,
        video_id: str,
        limit: int = 5,
        threshold: float = 0.7,
        transcript: str | None = None,
    ) -> list[SimilarVideo]:
        """
        Find videos related to a given video.

        Uses the video's stored vector when present; otherwise embeds the
        head of its transcript and stores that vector best-effort. Evidence
        from the video vector and from transcript chunks is grouped per
        video, keeping the best score.

        Returns:
            Up to ``limit`` videos, never including ``video_id`` itself
        """
        stored = await self.vector_store.get_vector(organization_id, "video", video_id)
        if stored is not None:
            query_vector = stored.embedding
        else:
            query_vector = await self._embed_video_transcript(organization_id, video_id, transcript)
            if query_vector is None:
                return []

        candidates = await self.find_similar(
            organization_id=organization_id,
            entity_types=_VIDEO_EVIDENCE_TYPES,
            query_vector=query_vector,
            limit=max(limit, 1) * 4,
            score_threshold=threshold,
            exclude_video_id=video_id,
        )

        best: dict[str, float] = {}
        counts: dict[str, int] = defaultdict(int)
        for c in candidates:
            vid = c.entity_id if c.entity_type == "video" else c.video_id
            if not vid or vid == video_id:
                continue
            counts[vid] += 1
            best[vid] = max(best.get(vid, 0.0), c.score)

        ranked = sorted(best.items(), key=lambda kv: (-kv[1], kv[0]))[:limit]
        return [
            SimilarVideo(video_id=vid, similarity=score, matching_vectors=counts[vid])
            for vid, score in ranked
        ]

    async def _embed_video_transcript(
        self, organization_id: str, video_id: str, transcript: str | None
    ) -> list[float] | None:
        if not transcript or not transcript.strip() or self.embedder is None:
            logger.info(f"Video {video_id} has no stored vector and no transcript to embed")
            return None

        text = transcript[:MAX_EMBED_CHARS]
        try:
            vector = await self.embedder.embed(text)
        except EmbeddingUnavailable as e:
            logger.warning(f"Could not embed transcript for video {video_id}: {e}")
            return None

        try:
            await self.vector_store.upsert(
                KnowledgeVector(
                    organization_id=organization_id,
                    entity_type="video",
                    entity_id=video_id,
                    embedding=vector,
                    embedding_model=self.embedder.model,
                    video_id=video_id,
                    text_preview=text[:200],
                )
            )
        except Exception as e:
            logger.warning(f"Failed to store vector for video {video_id}: {e}")

        return vector
