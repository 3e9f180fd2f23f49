"""API router for v1 endpoints."""

from fastapi import APIRouter

from app.api import chat, similarity, topic_clusters

router = APIRouter()

# Conversations and streamed answers
router.include_router(chat.router, tags=["chat"])

# Similar videos
router.include_router(similarity.router, tags=["similarity"])

# Topic clusters (auto-clustering + management)
router.include_router(topic_clusters.router, tags=["clusters"])
