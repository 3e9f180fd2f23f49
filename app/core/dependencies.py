"""Process-wide component instances, injected into routes with ``Depends``.

Tests replace any of these through ``app.dependency_overrides``.
"""

from functools import lru_cache

from app.core.chat_model import AnthropicChatModel
from app.core.chat_stream import StreamingResponseCoordinator
from app.core.embeddings import OpenAIEmbeddingProvider
from app.core.retrieval import RetrievalContextAssembler
from app.core.similarity import SimilarityEngine
from app.core.topic_clustering import AnthropicClusterLabeler, TopicClusteringEngine
from app.db.conversations import SupabaseConversationStore
from app.db.knowledge_vectors import SupabaseVectorStore


@lru_cache(maxsize=1)
def get_conversation_store() -> SupabaseConversationStore:
    return SupabaseConversationStore()


@lru_cache(maxsize=1)
def get_vector_store() -> SupabaseVectorStore:
    return SupabaseVectorStore()


@lru_cache(maxsize=1)
def get_embedder() -> OpenAIEmbeddingProvider:
    return OpenAIEmbeddingProvider()


@lru_cache(maxsize=1)
def get_similarity_engine() -> SimilarityEngine:
    return SimilarityEngine(get_vector_store(), get_embedder())


@lru_cache(maxsize=1)
def get_clustering_engine() -> TopicClusteringEngine:
    return TopicClusteringEngine(get_vector_store(), labeler=AnthropicClusterLabeler())


@lru_cache(maxsize=1)
def get_coordinator() -> StreamingResponseCoordinator:
    assembler = RetrievalContextAssembler(get_similarity_engine(), get_embedder())
    return StreamingResponseCoordinator(
        assembler=assembler,
        model=AnthropicChatModel(),
        store=get_conversation_store(),
    )
