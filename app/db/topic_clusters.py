"""Database operations for topic clusters and their membership."""

from __future__ import annotations

import asyncio
from typing import Any

from app.core.logging import get_logger
from app.core.schemas_knowledge import ClusterDescriptor, TopicCluster
from app.core.similarity import SimilarityEngine
from app.db.supabase_client import get_supabase

logger = get_logger(__name__)

CLUSTERS_TABLE = "topic_clusters"
MEMBERS_TABLE = "topic_cluster_members"
CONTENT_ITEMS_TABLE = "content_items"

# Min similarity for an item to join an existing cluster
BEST_CLUSTER_THRESHOLD = 0.5

_CLUSTER_COLUMNS = (
    "id, organization_id, name, description, keywords, parent_id, content_count, created_at, updated_at"
)


def _cluster_from_row(row: dict[str, Any], member_ids: list[str] | None = None) -> TopicCluster:
    return TopicCluster(
        id=str(row["id"]),
        organization_id=str(row["organization_id"]),
        name=row["name"],
        description=row.get("description"),
        keywords=row.get("keywords") or [],
        parent_id=str(row["parent_id"]) if row.get("parent_id") else None,
        content_count=row.get("content_count") or 0,
        member_ids=member_ids or [],
        created_at=row.get("created_at"),
        updated_at=row.get("updated_at"),
    )


def _get_cluster_row(cluster_id: str) -> dict[str, Any] | None:
    response = (
        get_supabase()
        .table(CLUSTERS_TABLE)
        .select(_CLUSTER_COLUMNS)
        .eq("id", cluster_id)
        .limit(1)
        .execute()
    )
    return response.data[0] if response.data else None


def _member_ids(cluster_id: str) -> list[str]:
    response = (
        get_supabase()
        .table(MEMBERS_TABLE)
        .select("content_item_id")
        .eq("cluster_id", cluster_id)
        .order("content_item_id")
        .execute()
    )
    return [str(r["content_item_id"]) for r in response.data or []]


def _refresh_content_count(cluster_id: str) -> int:
    count = len(_member_ids(cluster_id))
    (
        get_supabase()
        .table(CLUSTERS_TABLE)
        .update({"content_count": count, "updated_at": "now()"})
        .eq("id", cluster_id)
        .execute()
    )
    return count


def create_topic_cluster(
    organization_id: str,
    name: str,
    description: str | None = None,
    keywords: list[str] | None = None,
    parent_id: str | None = None,
    centroid: list[float] | None = None,
) -> TopicCluster:
    """
    Create a topic cluster.

    Args:
        organization_id: Owning organization
        name: Display name
        description: Optional one-line description
        keywords: Keyword/tag list
        parent_id: Optional parent; must be a top-level cluster of the same organization
        centroid: Optional centroid embedding (clusters created from a clustering run)

    Returns:
        The created cluster

    Raises:
        ValueError: If the parent is missing, foreign, or itself nested
    """
    if parent_id:
        parent = _get_cluster_row(parent_id)
        if not parent or str(parent["organization_id"]) != organization_id:
            raise ValueError(f"Parent cluster {parent_id} not found")
        if parent.get("parent_id"):
            raise ValueError("Clusters can only be nested one level deep")

    data: dict[str, Any] = {
        "organization_id": organization_id,
        "name": name,
        "description": description,
        "keywords": keywords or [],
        "parent_id": parent_id,
        "content_count": 0,
    }
    if centroid is not None:
        data["embedding_centroid"] = centroid

    response = get_supabase().table(CLUSTERS_TABLE).insert(data).execute()
    if not response.data:
        raise ValueError("Failed to create topic cluster")

    cluster = _cluster_from_row(response.data[0])
    logger.info(f"Created topic cluster {cluster.id} '{name}' for organization {organization_id}")
    return cluster


def get_topic_cluster(cluster_id: str) -> TopicCluster | None:
    """Get a cluster with its member ids."""
    row = _get_cluster_row(cluster_id)
    if not row:
        return None
    return _cluster_from_row(row, _member_ids(cluster_id))


def list_topic_clusters(organization_id: str, parent_id: str | None = None) -> list[TopicCluster]:
    """List an organization's clusters, optionally the children of one parent."""
    query = (
        get_supabase()
        .table(CLUSTERS_TABLE)
        .select(_CLUSTER_COLUMNS)
        .eq("organization_id", organization_id)
    )
    if parent_id:
        query = query.eq("parent_id", parent_id)
    response = query.order("name").execute()
    return [_cluster_from_row(row) for row in response.data or []]


def find_foreign_content_items(organization_id: str, item_ids: list[str]) -> list[str]:
    """Ids that are not content items of this organization (unknown or foreign)."""
    wanted = list(dict.fromkeys(item_ids))
    if not wanted:
        return []
    response = (
        get_supabase()
        .table(CONTENT_ITEMS_TABLE)
        .select("id")
        .eq("organization_id", organization_id)
        .in_("id", wanted)
        .execute()
    )
    found = {str(r["id"]) for r in response.data or []}
    return [item_id for item_id in wanted if item_id not in found]


def add_cluster_members(
    cluster_id: str,
    item_ids: list[str],
    scores: dict[str, float] | None = None,
) -> int:
    """Add content items to a cluster (idempotent). Returns the new member count."""
    if not item_ids:
        return len(_member_ids(cluster_id))

    scores = scores or {}
    rows = [
        {
            "cluster_id": cluster_id,
            "content_item_id": item_id,
            "similarity_score": scores.get(item_id),
        }
        for item_id in dict.fromkeys(item_ids)
    ]
    get_supabase().table(MEMBERS_TABLE).upsert(rows, on_conflict="cluster_id,content_item_id").execute()
    return _refresh_content_count(cluster_id)


def remove_cluster_members(cluster_id: str, item_ids: list[str]) -> int:
    """Remove content items from a cluster. The cluster is kept even if emptied."""
    if item_ids:
        (
            get_supabase()
            .table(MEMBERS_TABLE)
            .delete()
            .eq("cluster_id", cluster_id)
            .in_("content_item_id", item_ids)
            .execute()
        )
    return _refresh_content_count(cluster_id)


def persist_clustering_result(organization_id: str, clusters: list[ClusterDescriptor]) -> list[TopicCluster]:
    """Create one TopicCluster per descriptor, with membership and scores."""
    created: list[TopicCluster] = []
    for descriptor in clusters:
        cluster = create_topic_cluster(
            organization_id=organization_id,
            name=descriptor.name,
            description=descriptor.description,
            keywords=descriptor.tags,
            centroid=descriptor.centroid,
        )
        count = add_cluster_members(cluster.id, descriptor.member_ids, descriptor.member_scores)
        created.append(cluster.model_copy(update={"content_count": count, "member_ids": list(descriptor.member_ids)}))

    logger.info(f"Persisted {len(created)} clusters for organization {organization_id}")
    return created


async def find_best_cluster(
    similarity: SimilarityEngine,
    organization_id: str,
    item_vector: list[float],
) -> tuple[str, float] | None:
    """Closest topic cluster for an item vector, or None below the join threshold."""
    matches = await similarity.find_similar(
        organization_id=organization_id,
        entity_types=["topic"],
        query_vector=item_vector,
        limit=1,
        score_threshold=BEST_CLUSTER_THRESHOLD,
    )
    if not matches:
        return None
    return matches[0].entity_id, matches[0].score


async def assign_to_best_cluster(
    similarity: SimilarityEngine,
    organization_id: str,
    item_id: str,
    item_vector: list[float],
) -> str | None:
    """Join an item to its closest existing cluster. Returns the cluster id, or None."""
    match = await find_best_cluster(similarity, organization_id, item_vector)
    if match is None:
        return None

    cluster_id, score = match
    await asyncio.to_thread(add_cluster_members, cluster_id, [item_id], {item_id: score})
    logger.debug(f"Assigned content item {item_id} to cluster {cluster_id} ({score:.2f})")
    return cluster_id


async def assign_content_items(
    similarity: SimilarityEngine,
    organization_id: str,
    item_ids: list[str],
) -> int:
    """Assign freshly indexed content items to existing clusters.

    Items without a stored vector or without a close enough cluster are left
    alone. Returns the number of items assigned.
    """
    assigned = 0
    for item_id in item_ids:
        vector = await similarity.vector_store.get_vector(organization_id, "content_item", item_id)
        if vector is None:
            continue
        if await assign_to_best_cluster(similarity, organization_id, item_id, vector.embedding):
            assigned += 1

    logger.info(f"Assigned {assigned}/{len(item_ids)} content items to existing clusters")
    return assigned
