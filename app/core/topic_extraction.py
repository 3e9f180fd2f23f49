"""Keyword extraction for labeling topic clusters.

Pulls the most characteristic words out of content-item titles and previews.
Used as the zero-cost fallback when clusters are not labeled by a model,
and to add keyword tags to model-labeled clusters.
"""

import re
from collections import Counter


# Common stop words to filter out
STOP_WORDS = {
    "a", "an", "the", "is", "are", "was", "were", "be", "been", "being",
    "have", "has", "had", "do", "does", "did", "will", "would", "could",
    "should", "may", "might", "must", "shall", "can", "need",
    "and", "or", "but", "if", "then", "else", "when", "where", "why",
    "how", "what", "which", "who", "whom", "this", "that", "these",
    "those", "am", "to", "of", "in", "for", "on", "with", "at", "by",
    "from", "as", "into", "through", "during", "before", "after", "above",
    "below", "between", "under", "again", "further", "once", "here", "there",
    "all", "each", "few", "more", "most", "other", "some", "such",
    "no", "not", "only", "own", "same", "so", "than", "too", "very",
    "just", "also", "now", "it", "its", "we", "our", "you", "your", "they",
    "their", "i", "me", "my", "he", "she", "his", "her", "us", "them",
    "about", "like", "yeah", "okay", "ok", "um", "uh", "so", "really",
    "think", "going", "get", "got", "know", "let", "lets", "thing", "things",
    "video", "meeting", "call", "today", "week",
}

# Product/meeting vocabulary to prioritize
DOMAIN_KEYWORDS = {
    # Commercial
    "pricing", "billing", "invoice", "payment", "subscription", "budget",
    "cost", "revenue", "contract", "renewal", "discount", "plan", "plans",
    # Product
    "roadmap", "launch", "release", "feature", "onboarding", "design",
    "prototype", "feedback", "research", "experiment", "metrics", "analytics",
    # Engineering
    "api", "integration", "database", "security", "auth", "performance",
    "migration", "infrastructure", "deployment", "bug", "incident", "testing",
    # Organization
    "hiring", "staffing", "strategy", "marketing", "sales", "support",
    "customer", "customers", "partner", "partners", "legal", "compliance",
}


def extract_topics_from_text(text: str, max_topics: int = 10) -> list[str]:
    """
    Extract topic keywords from text.

    Args:
        text: Text to extract topics from
        max_topics: Maximum number of topics to return

    Returns:
        List of topic keywords, highest score first (ties alphabetical)
    """
    if not text:
        return []

    text = text.lower()

    # Words including hyphenated terms
    words = re.findall(r'\b[a-z][a-z0-9-]*[a-z0-9]\b', text)

    scored_topics: dict[str, int] = {}

    for word in words:
        if word in STOP_WORDS or len(word) < 3:
            continue

        score = 1
        if word in DOMAIN_KEYWORDS:
            score += 5
        if "-" in word:
            score += 2
        if any(c.isdigit() for c in word):
            score += 1

        scored_topics[word] = scored_topics.get(word, 0) + score

    sorted_topics = sorted(scored_topics.items(), key=lambda x: (-x[1], x[0]))

    return [topic for topic, _ in sorted_topics[:max_topics]]


def extract_topics_from_texts(texts: list[str], max_topics: int = 10) -> list[str]:
    """Extract topics across several texts, favouring words found in many of them."""
    if not texts:
        return []

    document_frequency: Counter[str] = Counter()
    for text in texts:
        document_frequency.update(set(extract_topics_from_text(text, max_topics=50)))

    combined = extract_topics_from_text(" ".join(t for t in texts if t), max_topics=50)
    rank = {word: i for i, word in enumerate(combined)}

    ordered = sorted(combined, key=lambda w: (-document_frequency[w], rank[w]))
    return ordered[:max_topics]


def topic_label(topics: list[str]) -> str | None:
    """Human-readable label from the top two topics, e.g. 'Pricing & Billing'."""
    if not topics:
        return None
    return " & ".join(t.replace("-", " ").title() for t in topics[:2])
