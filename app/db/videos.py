"""Read-only access to videos for similarity lookups."""

from typing import Any

from app.db.supabase_client import get_supabase


def get_video(video_id: str) -> dict[str, Any] | None:
    """Get a video's id, organization, title and transcript."""
    response = (
        get_supabase()
        .table("videos")
        .select("id, organization_id, title, description, transcript")
        .eq("id", video_id)
        .limit(1)
        .execute()
    )
    return response.data[0] if response.data else None


def get_video_titles(video_ids: list[str]) -> dict[str, str]:
    """Map video id -> title for a batch of ids."""
    if not video_ids:
        return {}
    response = (
        get_supabase()
        .table("videos")
        .select("id, title")
        .in_("id", video_ids)
        .execute()
    )
    return {str(r["id"]): r.get("title") for r in response.data or [] if r.get("title")}
