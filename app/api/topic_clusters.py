"""Topic cluster API endpoints: auto-clustering and manual management."""

import asyncio

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.core.auth_middleware import AuthContext, require_auth
from app.core.dependencies import get_clustering_engine, get_embedder, get_vector_store
from app.core.errors import ScopeViolation
from app.core.interfaces import EmbeddingProvider
from app.core.logging import get_logger
from app.core.schemas_knowledge import (
    ClusteringRequest,
    ClusterMembersRequest,
    CreateTopicClusterRequest,
    TopicCluster,
)
from app.core.topic_clustering import TopicClusteringEngine
from app.db import topic_clusters as clusters_db
from app.db.knowledge_vectors import SupabaseVectorStore, index_entity

logger = get_logger(__name__)

router = APIRouter()


async def _get_org_cluster(cluster_id: str, auth: AuthContext) -> TopicCluster:
    cluster = await asyncio.to_thread(clusters_db.get_topic_cluster, cluster_id)
    if cluster is None or cluster.organization_id != auth.organization_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Cluster not found")
    return cluster


async def _index_topic(
    store: SupabaseVectorStore,
    embedder: EmbeddingProvider,
    cluster: TopicCluster,
) -> None:
    """Make a cluster retrievable as a ``topic`` in chat."""
    await index_entity(
        store,
        embedder,
        cluster.organization_id,
        "topic",
        {
            "id": cluster.id,
            "name": cluster.name,
            "description": cluster.description,
            "keywords": cluster.keywords,
        },
    )


@router.post("/clusters/auto")
async def auto_cluster(
    request: ClusteringRequest,
    auth: AuthContext = Depends(require_auth),
    engine: TopicClusteringEngine = Depends(get_clustering_engine),
    vector_store: SupabaseVectorStore = Depends(get_vector_store),
    embedder: EmbeddingProvider = Depends(get_embedder),
) -> dict:
    """
    Group content items into topic clusters.

    Returns a preview unless ``autoCreate`` is set, in which case each
    cluster is created with its members and indexed as a topic.
    """
    if request.organization_id != auth.organization_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not a member of this organization")

    try:
        result = await engine.cluster(
            organization_id=auth.organization_id,
            source_id=request.source_id,
            min_cluster_size=request.min_cluster_size,
            max_clusters=request.max_clusters,
            similarity_threshold=request.similarity_threshold,
            use_ai=request.use_ai,
        )
    except ScopeViolation as e:
        logger.error(f"Clustering scope violation: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error") from e

    created_ids: list[str] = []
    if request.auto_create and result.clusters:
        created = await asyncio.to_thread(
            clusters_db.persist_clustering_result, auth.organization_id, result.clusters
        )
        for cluster in created:
            await _index_topic(vector_store, embedder, cluster)
        created_ids = [c.id for c in created]

    body = result.model_dump(by_alias=True)
    body["createdClusterIds"] = created_ids
    return body


@router.post("/clusters", response_model=TopicCluster, status_code=status.HTTP_201_CREATED)
async def create_cluster(
    request: CreateTopicClusterRequest,
    auth: AuthContext = Depends(require_auth),
    vector_store: SupabaseVectorStore = Depends(get_vector_store),
    embedder: EmbeddingProvider = Depends(get_embedder),
) -> TopicCluster:
    """Create a topic cluster by hand."""
    try:
        cluster = await asyncio.to_thread(
            clusters_db.create_topic_cluster,
            auth.organization_id,
            request.name,
            request.description,
            request.keywords,
            request.parent_id,
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e

    await _index_topic(vector_store, embedder, cluster)
    return cluster


@router.get("/clusters")
async def list_clusters(
    parent_id: str | None = Query(None, alias="parentId"),
    auth: AuthContext = Depends(require_auth),
) -> dict:
    """List the organization's topic clusters."""
    clusters = await asyncio.to_thread(clusters_db.list_topic_clusters, auth.organization_id, parent_id)
    return {"clusters": [c.model_dump(by_alias=True) for c in clusters]}


@router.get("/clusters/{cluster_id}", response_model=TopicCluster)
async def get_cluster(
    cluster_id: str,
    auth: AuthContext = Depends(require_auth),
) -> TopicCluster:
    """Get a topic cluster with its member ids."""
    return await _get_org_cluster(cluster_id, auth)


@router.post("/clusters/{cluster_id}/members", response_model=TopicCluster)
async def add_members(
    cluster_id: str,
    request: ClusterMembersRequest,
    auth: AuthContext = Depends(require_auth),
) -> TopicCluster:
    """Add content items to a cluster. Every item must belong to the caller's organization."""
    await _get_org_cluster(cluster_id, auth)

    foreign = await asyncio.to_thread(
        clusters_db.find_foreign_content_items, auth.organization_id, request.item_ids
    )
    if foreign:
        logger.warning(f"Rejected {len(foreign)} unknown or foreign content items for cluster {cluster_id}")
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Content item not found")

    await asyncio.to_thread(clusters_db.add_cluster_members, cluster_id, request.item_ids, request.scores)
    return await _get_org_cluster(cluster_id, auth)


@router.delete("/clusters/{cluster_id}/members", response_model=TopicCluster)
async def remove_members(
    cluster_id: str,
    request: ClusterMembersRequest,
    auth: AuthContext = Depends(require_auth),
) -> TopicCluster:
    """Remove content items from a cluster; the cluster is kept even if emptied."""
    await _get_org_cluster(cluster_id, auth)
    await asyncio.to_thread(clusters_db.remove_cluster_members, cluster_id, request.item_ids)
    return await _get_org_cluster(cluster_id, auth)
