"""Format retrieval results for LLM context injection.

Numbered evidence items with entity type and, for transcript evidence, the
mm:ss offset inside the video. Always truncates from lowest-ranked
candidates first.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from app.core.retrieval import RetrievalContext

CONTEXT_HEADING = "## Relevant context from the knowledge base"

_TYPE_LABELS = {
    "decision": "Decision",
    "transcript_chunk": "Transcript",
    "video": "Video",
    "topic": "Topic",
}


def format_timestamp(seconds: float | None) -> str | None:
    """Seconds -> 'mm:ss' (minutes may exceed 59)."""
    if seconds is None or seconds < 0:
        return None
    total = int(seconds)
    return f"{total // 60:02d}:{total % 60:02d}"


def format_retrieval_for_context(context: RetrievalContext, max_tokens: int = 3000) -> str:
    """Format retrieval candidates for the system prompt.

    Args:
        context: RetrievalContext from the assembler
        max_tokens: Approximate max output size in tokens (~4 chars/token)

    Returns:
        Formatted block, or "" when there is nothing to cite
    """
    if not context.candidates:
        return ""

    max_chars = max_tokens * 4
    lines: list[str] = []
    chars_used = len(CONTEXT_HEADING)

    for i, candidate in enumerate(context.candidates):
        preview = (candidate.text_preview or "").strip().replace("\n", " ")[:500]

        tag = _TYPE_LABELS.get(candidate.entity_type, candidate.entity_type)
        ts = format_timestamp(candidate.timestamp_start)
        if ts:
            tag = f"{tag} {ts}"

        line = f"{i + 1}. [{tag}] {preview}".rstrip()

        if chars_used + len(line) > max_chars:
            break
        lines.append(line)
        chars_used += len(line) + 1

    if not lines:
        return ""

    return CONTEXT_HEADING + "\n" + "\n".join(lines)
