"""Pydantic schemas for knowledge vectors, retrieval candidates and topic clusters."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

from app.core.schemas_chat import CamelModel, SourceCitation

EntityType = Literal["decision", "transcript_chunk", "video", "topic", "content_item"]

# Entity types that can be cited in an answer
CITABLE_TYPES: tuple[str, ...] = ("decision", "transcript_chunk", "video", "topic")


class KnowledgeVector(BaseModel):
    """One stored embedding for one entity under one embedding model."""

    organization_id: str
    entity_type: EntityType
    entity_id: str
    embedding: list[float]
    embedding_model: str
    video_id: str | None = None
    source_id: str | None = None
    timestamp_start: float | None = None
    timestamp_end: float | None = None
    title: str | None = None
    text_preview: str | None = None
    tags: list[str] = Field(default_factory=list)


class Candidate(BaseModel):
    """A knowledge entity returned by a similarity query."""

    entity_type: EntityType
    entity_id: str
    organization_id: str
    score: float  # cosine similarity clamped to 0-1
    video_id: str | None = None
    text_preview: str | None = None
    timestamp_start: float | None = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.entity_type, self.entity_id)

    @property
    def relevance(self) -> float:
        """Score on the 0-100 citation scale."""
        return self.score * 100

    def to_citation(self) -> SourceCitation:
        return SourceCitation(
            type=self.entity_type,
            id=self.entity_id,
            relevance=self.relevance,
            preview=self.text_preview,
            video_id=self.video_id,
            timestamp=self.timestamp_start,
        )


class SimilarVideo(CamelModel):
    video_id: str
    similarity: float
    matching_vectors: int = 1
    title: str | None = None


class ClusterDescriptor(CamelModel):
    """A clustering proposal; not persisted until the caller asks for it."""

    name: str
    description: str | None = None
    tags: list[str] = Field(default_factory=list)
    member_ids: list[str] = Field(default_factory=list)
    centroid: list[float] | None = Field(default=None, exclude=True)
    member_scores: dict[str, float] = Field(default_factory=dict, exclude=True)


class ClusteringResult(CamelModel):
    clusters: list[ClusterDescriptor] = Field(default_factory=list)
    unclustered_items: list[str] = Field(default_factory=list)
    # Set when more items were in scope than the engine loads; the rest were not considered
    truncated: bool = False


class ClusterLabel(BaseModel):
    name: str
    description: str | None = None
    tags: list[str] = Field(default_factory=list)


class TopicCluster(CamelModel):
    id: str
    organization_id: str
    name: str
    description: str | None = None
    keywords: list[str] = Field(default_factory=list)
    parent_id: str | None = None
    content_count: int = 0
    member_ids: list[str] = Field(default_factory=list)
    created_at: str | None = None
    updated_at: str | None = None


# =============================================================================
# Request bodies
# =============================================================================


class ClusteringRequest(CamelModel):
    organization_id: str
    source_id: str | None = None
    min_cluster_size: int = Field(default=3, ge=1, le=100)
    max_clusters: int = Field(default=20, ge=1, le=100)
    similarity_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    use_ai: bool = Field(default=True, alias="useAI")
    auto_create: bool = False


class CreateTopicClusterRequest(CamelModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=2000)
    keywords: list[str] = Field(default_factory=list)
    parent_id: str | None = None


class ClusterMembersRequest(CamelModel):
    item_ids: list[str] = Field(..., min_length=1)
    scores: dict[str, float] | None = None
