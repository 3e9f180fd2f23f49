"""Automatic topic clustering over content-item vectors.

Greedy seed-based grouping by cosine similarity, then labeling. Labels come
from a model when one is available and requested; otherwise (or when the
model fails) they are derived from the most frequent keywords. Nothing is
persisted here; callers decide whether to create TopicCluster rows.
"""

from __future__ import annotations

import asyncio
import math
from collections import Counter

import numpy as np

from app.core.config import get_settings
from app.core.errors import ModelCallError
from app.core.interfaces import ClusterLabeler, VectorStore
from app.core.llm import get_anthropic_client, parse_llm_json
from app.core.logging import get_logger
from app.core.schemas_knowledge import (
    ClusterDescriptor,
    ClusteringResult,
    ClusterLabel,
    KnowledgeVector,
)
from app.core.similarity import check_scope, cosine, similarity_matrix
from app.core.topic_extraction import extract_topics_from_texts, topic_label

logger = get_logger(__name__)

# Member texts shown to the labeler
MAX_LABEL_TEXTS = 5
# Keyword tags added to each cluster
MAX_KEYWORD_TAGS = 5


# =============================================================================
# Greedy grouping
# =============================================================================


def greedy_cluster(
    matrix: np.ndarray,
    threshold: float,
    max_clusters: int,
) -> list[list[int]]:
    """Greedy seed-based clustering over a precomputed similarity matrix.

    Walk items in index order. Each unassigned item seeds a provisional
    cluster holding every other unassigned item with similarity >= threshold.
    Stops after ``max_clusters`` provisional clusters; later items stay
    unassigned.

    Returns:
        Provisional clusters as lists of item indices, seed first
    """
    n = matrix.shape[0]
    assigned = [False] * n
    clusters: list[list[int]] = []

    for i in range(n):
        if len(clusters) >= max_clusters:
            break
        if assigned[i]:
            continue

        members = [i]
        assigned[i] = True
        for j in range(i + 1, n):
            if not assigned[j] and matrix[i][j] >= threshold:
                members.append(j)
                assigned[j] = True

        clusters.append(members)

    return clusters


def common_tags(tag_lists: list[list[str]]) -> list[str]:
    """Tags carried by at least half of the members, most frequent first."""
    if not tag_lists:
        return []
    counts: Counter[str] = Counter()
    for tags in tag_lists:
        counts.update(set(tags or []))
    quorum = math.ceil(len(tag_lists) / 2)
    shared = [(tag, n) for tag, n in counts.items() if n >= quorum]
    return [tag for tag, _ in sorted(shared, key=lambda x: (-x[1], x[0]))]


def _member_text(vector: KnowledgeVector) -> str:
    return " ".join(p for p in (vector.title, vector.text_preview) if p)


# =============================================================================
# Engine
# =============================================================================


class TopicClusteringEngine:
    """Groups an organization's content items into topic clusters."""

    def __init__(
        self,
        vector_store: VectorStore,
        labeler: ClusterLabeler | None = None,
        max_items: int | None = None,
    ):
        self.vector_store = vector_store
        self.labeler = labeler
        self.max_items = max_items or get_settings().MAX_CLUSTER_ITEMS

    async def cluster(
        self,
        organization_id: str,
        source_id: str | None = None,
        min_cluster_size: int = 3,
        max_clusters: int = 20,
        similarity_threshold: float = 0.7,
        use_ai: bool = True,
    ) -> ClusteringResult:
        """
        Cluster content items in scope.

        Args:
            organization_id: Organization whose content items are grouped
            source_id: Restrict to one content source
            min_cluster_size: Smaller provisional clusters dissolve
            max_clusters: Cap on provisional clusters formed
            similarity_threshold: Min cosine similarity (inclusive) to the seed
            use_ai: Ask the labeler for names; keyword labels otherwise

        Returns:
            ClusteringResult with descriptors and unclustered item ids

        Raises:
            ScopeViolation: If the store returned a foreign-organization vector
        """
        vectors = await self.vector_store.list_vectors(
            organization_id, "content_item", source_id=source_id, limit=self.max_items + 1
        )

        check_scope(organization_id, vectors)

        truncated = len(vectors) > self.max_items
        if truncated:
            vectors = vectors[: self.max_items]
            logger.warning(
                f"Clustering capped at {self.max_items} content items for organization {organization_id}; "
                f"items past the cap are not in the result"
            )

        # Deterministic order; one vector per item
        by_id: dict[str, KnowledgeVector] = {}
        for v in vectors:
            by_id.setdefault(v.entity_id, v)
        items = [by_id[k] for k in sorted(by_id)]

        if len(items) < min_cluster_size:
            return ClusteringResult(clusters=[], unclustered_items=[v.entity_id for v in items], truncated=truncated)

        matrix = similarity_matrix([v.embedding for v in items])
        provisional = greedy_cluster(matrix, similarity_threshold, max_clusters)

        survivors = [members for members in provisional if len(members) >= min_cluster_size]
        clustered = {i for members in survivors for i in members}
        unclustered = [items[i].entity_id for i in range(len(items)) if i not in clustered]

        descriptors = await asyncio.gather(
            *(
                self._describe([items[i] for i in members], index, use_ai)
                for index, members in enumerate(survivors)
            )
        )

        logger.info(
            f"Clustered {len(items)} items into {len(descriptors)} clusters "
            f"({len(unclustered)} unclustered, {len(provisional)} provisional)"
        )

        return ClusteringResult(clusters=list(descriptors), unclustered_items=unclustered, truncated=truncated)

    async def _describe(self, members: list[KnowledgeVector], index: int, use_ai: bool) -> ClusterDescriptor:
        texts = [_member_text(m) for m in members]
        shared = common_tags([m.tags for m in members])
        keywords = extract_topics_from_texts(texts, max_topics=MAX_KEYWORD_TAGS)
        tags = shared + [k for k in keywords if k not in shared]

        centroid = np.mean(np.asarray([m.embedding for m in members], dtype=float), axis=0).tolist()
        member_scores = {m.entity_id: cosine(m.embedding, centroid) for m in members}

        name = topic_label(keywords) or f"Topic {index + 1}"
        description = None

        if use_ai and self.labeler is not None:
            label = await self._ai_label(texts, shared)
            if label is not None:
                name = label.name.strip() or name
                description = label.description
                tags = label.tags + [t for t in tags if t not in label.tags]

        return ClusterDescriptor(
            name=name,
            description=description,
            tags=tags,
            member_ids=[m.entity_id for m in members],
            centroid=centroid,
            member_scores=member_scores,
        )

    async def _ai_label(self, texts: list[str], tags: list[str]) -> ClusterLabel | None:
        """Ask the labeler for a name; None means use keyword labels."""
        sample = [t for t in texts if t][:MAX_LABEL_TEXTS]
        if not sample:
            return None
        try:
            return await self.labeler.label(sample, tags)
        except Exception as e:
            # Labeling is optional; keyword labels are the documented fallback
            logger.warning(f"Cluster labeling failed, using keyword label: {e}")
            return None


# =============================================================================
# Anthropic labeler
# =============================================================================


LABEL_PROMPT = """Based on these content titles, suggest a short topic name (2-4 words), \
a brief description (1 sentence) and up to 5 lowercase tags.

Titles:
{titles}

Tags: {tags}

Return as JSON: {{"name": "...", "description": "...", "tags": ["..."]}}"""


class AnthropicClusterLabeler:
    """ClusterLabeler backed by a small Anthropic model."""

    def __init__(self, model: str | None = None):
        self.model = model or get_settings().CLUSTER_LABEL_MODEL

    async def label(self, texts: list[str], tags: list[str]) -> ClusterLabel:
        client = get_anthropic_client()
        if client is None:
            raise ModelCallError("No Anthropic API key configured")

        prompt = LABEL_PROMPT.format(titles="\n".join(texts), tags=", ".join(tags) or "none")
        response = await client.messages.create(
            model=self.model,
            max_tokens=300,
            temperature=0.2,
            messages=[{"role": "user", "content": prompt}],
        )
        text = response.content[0].text if response.content else ""
        return parse_llm_json(text, ClusterLabel)
