"""Similar-content API endpoints."""

import asyncio

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.core.auth_middleware import AuthContext, require_auth
from app.core.config import get_settings
from app.core.dependencies import get_similarity_engine
from app.core.errors import ScopeViolation
from app.core.logging import get_logger
from app.core.similarity import SimilarityEngine
from app.db.videos import get_video, get_video_titles

logger = get_logger(__name__)

router = APIRouter()


@router.get("/videos/{video_id}/similar")
async def similar_videos(
    video_id: str,
    limit: int = Query(5, ge=1, le=50),
    threshold: float | None = Query(None, ge=0.0, le=1.0),
    auth: AuthContext = Depends(require_auth),
    engine: SimilarityEngine = Depends(get_similarity_engine),
) -> dict:
    """Videos in the same organization whose content is close to this one."""
    video = await asyncio.to_thread(get_video, video_id)
    if not video or str(video.get("organization_id")) != auth.organization_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Video not found")

    try:
        results = await engine.find_similar_videos(
            organization_id=auth.organization_id,
            video_id=video_id,
            limit=limit,
            threshold=threshold if threshold is not None else get_settings().SIMILAR_VIDEOS_THRESHOLD,
            transcript=video.get("transcript"),
        )
    except ScopeViolation as e:
        logger.error(f"Similar videos scope violation: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error") from e

    titles = await asyncio.to_thread(get_video_titles, [r.video_id for r in results])
    similar = [r.model_copy(update={"title": titles.get(r.video_id)}) for r in results]

    return {"similarVideos": [s.model_dump(by_alias=True) for s in similar]}
