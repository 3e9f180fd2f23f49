"""OpenAI embeddings generation with validation."""

import asyncio

from openai import OpenAI

from app.core.config import get_settings
from app.core.errors import EmbeddingUnavailable
from app.core.logging import get_logger

logger = get_logger(__name__)

# Transcripts are embedded from their head only
MAX_EMBED_CHARS = 8000


def _get_client() -> OpenAI:
    """Get OpenAI client instance."""
    settings = get_settings()
    return OpenAI(api_key=settings.OPENAI_API_KEY)


def embed_texts(texts: list[str]) -> list[list[float]]:
    """
    Generate embeddings for a list of texts using OpenAI.

    Args:
        texts: List of text strings to embed

    Returns:
        List of embedding vectors (each vector is list of floats)

    Raises:
        ValueError: If embedding dimension doesn't match expected EMBEDDING_DIM
        Exception: If OpenAI API call fails
    """
    if not texts:
        return []

    settings = get_settings()
    client = _get_client()

    try:
        response = client.embeddings.create(
            model=settings.EMBEDDING_MODEL,
            input=[t[:MAX_EMBED_CHARS] for t in texts],
        )

        embeddings = []
        for i, embedding_obj in enumerate(response.data):
            embedding = embedding_obj.embedding

            if len(embedding) != settings.EMBEDDING_DIM:
                raise ValueError(
                    f"Embedding dimension mismatch for text {i}: "
                    f"expected {settings.EMBEDDING_DIM}, got {len(embedding)}"
                )

            embeddings.append(embedding)

        logger.debug(
            f"Generated {len(embeddings)} embeddings using {settings.EMBEDDING_MODEL}",
            extra={"extra_data": {"model": settings.EMBEDDING_MODEL, "count": len(embeddings)}},
        )

        return embeddings

    except Exception as e:
        logger.error(f"Failed to generate embeddings: {e}")
        raise


async def embed_texts_async(texts: list[str]) -> list[list[float]]:
    """Async wrapper around embed_texts using thread pool."""
    return await asyncio.to_thread(embed_texts, texts)


class OpenAIEmbeddingProvider:
    """EmbeddingProvider backed by the OpenAI embeddings endpoint."""

    def __init__(self, model: str | None = None):
        self.model = model or get_settings().EMBEDDING_MODEL

    async def embed(self, text: str) -> list[float]:
        if not text or not text.strip():
            raise EmbeddingUnavailable("Cannot embed empty text")
        try:
            vectors = await embed_texts_async([text])
        except Exception as e:
            raise EmbeddingUnavailable(str(e)) from e
        if not vectors:
            raise EmbeddingUnavailable("Embedding provider returned no vector")
        return vectors[0]
