#!/usr/bin/env python3
"""
Backfill knowledge_vectors for an organization.

Embeds decisions, transcript chunks, videos and content items under the
configured embedding model so they become retrievable in knowledge chat,
similar-video lookups and topic clustering.

Usage:
    python scripts/backfill_knowledge_vectors.py --organization-id ORG_ID [--batch-size 100] [--prune] [--assign-clusters]

Options:
    --organization-id: Organization to backfill
    --entity-types: Entity types to index (default: all)
    --batch-size: Number of entities embedded per request (default: 100)
    --prune: Delete vectors written by other embedding models afterwards
    --assign-clusters: Add indexed content items to their closest existing topic cluster
"""

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Any

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from app.core.logging import get_logger
from app.core.similarity import SimilarityEngine
from app.db.knowledge_vectors import SupabaseVectorStore, index_entities_batch
from app.db.supabase_client import get_supabase
from app.db.topic_clusters import assign_content_items

logger = get_logger(__name__)

# entity_type -> (source table, columns)
SOURCES: dict[str, tuple[str, str]] = {
    "decision": (
        "decisions",
        "id, organization_id, video_id, summary, context, tags, timestamp_start, timestamp_end",
    ),
    "transcript_chunk": (
        "transcript_chunks",
        "id, organization_id, video_id, text, timestamp_start, timestamp_end",
    ),
    "video": ("videos", "id, organization_id, title, description, transcript"),
    "content_item": ("content_items", "id, organization_id, source_id, title, content, tags"),
}


def fetch_page(entity_type: str, organization_id: str, offset: int, batch_size: int) -> list[dict[str, Any]]:
    table, columns = SOURCES[entity_type]
    response = (
        get_supabase()
        .table(table)
        .select(columns)
        .eq("organization_id", organization_id)
        .order("id")
        .range(offset, offset + batch_size - 1)
        .execute()
    )
    return response.data or []


async def backfill_entity_type(
    store: SupabaseVectorStore,
    organization_id: str,
    entity_type: str,
    batch_size: int,
    similarity: SimilarityEngine | None = None,
) -> tuple[int, int]:
    """Index every entity of one type. Returns (seen, indexed).

    With ``similarity`` set, indexed content items also join their closest
    existing topic cluster.
    """
    seen = 0
    indexed = 0
    offset = 0
    while True:
        page = await asyncio.to_thread(fetch_page, entity_type, organization_id, offset, batch_size)
        if not page:
            break
        seen += len(page)
        indexed += await index_entities_batch(store, organization_id, entity_type, page)
        if similarity is not None and entity_type == "content_item":
            await assign_content_items(similarity, organization_id, [str(e["id"]) for e in page])
        logger.info(f"{entity_type}: {indexed}/{seen} indexed so far")
        if len(page) < batch_size:
            break
        offset += batch_size
    return seen, indexed


async def run(
    organization_id: str,
    entity_types: list[str],
    batch_size: int,
    prune: bool,
    assign_clusters: bool = False,
) -> int:
    store = SupabaseVectorStore()
    similarity = SimilarityEngine(store) if assign_clusters else None
    failures = 0

    for entity_type in entity_types:
        seen, indexed = await backfill_entity_type(store, organization_id, entity_type, batch_size, similarity)
        logger.info(f"Backfilled {entity_type}: {indexed}/{seen}")
        failures += seen - indexed

    if prune:
        removed = await store.prune_stale_vectors(organization_id)
        logger.info(f"Pruned {removed} vectors from other embedding models")

    return failures


def main() -> None:
    parser = argparse.ArgumentParser(description="Backfill knowledge vectors for an organization")
    parser.add_argument("--organization-id", required=True, help="Organization to backfill")
    parser.add_argument(
        "--entity-types",
        nargs="+",
        choices=sorted(SOURCES),
        default=list(SOURCES),
        help="Entity types to index",
    )
    parser.add_argument("--batch-size", type=int, default=100, help="Entities per embedding request")
    parser.add_argument("--prune", action="store_true", help="Delete vectors from other embedding models")
    parser.add_argument(
        "--assign-clusters",
        action="store_true",
        help="Add indexed content items to their closest existing topic cluster",
    )
    args = parser.parse_args()

    failures = asyncio.run(
        run(args.organization_id, args.entity_types, args.batch_size, args.prune, args.assign_clusters)
    )
    if failures:
        # Entities with too little text are skipped and counted here too
        logger.warning(f"{failures} entities were not indexed")


if __name__ == "__main__":
    main()
