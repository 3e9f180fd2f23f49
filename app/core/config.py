"""Configuration management for the Knowledge Chat Engine."""

from functools import lru_cache

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load environment variables from .env file (only if accessible)
try:
    load_dotenv()
except (PermissionError, OSError):
    # In sandboxed environments, .env might not be accessible
    # Environment variables should be set directly
    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    # Supabase configuration (required)
    SUPABASE_URL: str = Field(..., description="Supabase project URL")
    SUPABASE_SERVICE_ROLE_KEY: str = Field(..., description="Supabase service role key")
    SUPABASE_TIMEOUT_SECONDS: int = Field(default=10, description="PostgREST request timeout")

    # Provider keys
    OPENAI_API_KEY: str = Field(..., description="OpenAI API key (embeddings)")
    ANTHROPIC_API_KEY: str | None = Field(default=None, description="Anthropic API key (chat + labels)")

    # Environment
    CHAT_ENGINE_ENV: str = Field(default="dev", description="Environment: dev, staging, prod")

    # Embedding configuration
    EMBEDDING_MODEL: str = Field(
        default="text-embedding-3-small", description="OpenAI embedding model"
    )
    EMBEDDING_DIM: int = Field(default=1536, description="Embedding vector dimension")

    # Chat model configuration
    CHAT_MODEL: str = Field(default="claude-3-5-haiku-20241022", description="Model for chat answers")
    CHAT_RESPONSE_BUFFER: int = Field(default=4096, description="Max output tokens per answer")
    CLUSTER_LABEL_MODEL: str = Field(
        default="claude-3-5-haiku-20241022", description="Model for naming topic clusters"
    )

    # Retrieval
    RETRIEVAL_MAX_CANDIDATES: int = Field(default=20, description="Max candidates in a context window")
    RETRIEVAL_SCORE_THRESHOLD: float = Field(
        default=0.5, description="Min similarity (0-1) for a retrieval candidate"
    )
    RETRIEVAL_TIMEOUT_SECONDS: float = Field(
        default=8.0, description="Retrieval deadline; on expiry the answer uses an empty context"
    )
    CHAT_HISTORY_LIMIT: int | None = Field(
        default=None, description="Most recent history messages sent to the model (None = all)"
    )

    # Streaming
    MODEL_TIMEOUT_SECONDS: float = Field(default=120.0, description="Deadline for one model call")
    DONE_EVENT_GRACE_SECONDS: float = Field(
        default=2.0, description="How long the done event waits for the persisted message id"
    )
    SHUTDOWN_DRAIN_SECONDS: float = Field(
        default=10.0, description="How long shutdown waits for in-flight message writes"
    )

    # Similarity & clustering
    SIMILAR_VIDEOS_THRESHOLD: float = Field(default=0.7, description="Default similar-videos threshold")
    MAX_CLUSTER_ITEMS: int = Field(default=500, description="Max content items loaded for clustering")

    # Rate limiting
    CHAT_RATE_LIMIT_PER_MINUTE: int = Field(default=10, description="Sustained chat requests per org")
    CHAT_RATE_LIMIT_BURST: int = Field(default=15, description="Chat request burst size per org")


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Returns:
        Settings instance

    Raises:
        ValidationError: If required environment variables are missing
    """
    return Settings()
