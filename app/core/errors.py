"""Exception types shared by retrieval, streaming and persistence."""

from __future__ import annotations


class KnowledgeChatError(Exception):
    """Base class for errors raised by the knowledge chat core."""


class EmbeddingUnavailable(KnowledgeChatError):
    """The embedding provider could not produce a vector."""


class ScopeViolation(KnowledgeChatError):
    """A candidate resolved outside the requesting organization.

    Always indicates a retrieval-layer bug. Never swallowed.
    """

    def __init__(self, organization_id: str, entity_type: str, entity_id: str, found_organization_id: str | None):
        self.organization_id = organization_id
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.found_organization_id = found_organization_id
        super().__init__(
            f"{entity_type} {entity_id} belongs to organization {found_organization_id!r}, "
            f"requested scope was {organization_id!r}"
        )


class ModelCallError(KnowledgeChatError):
    """The chat model failed or timed out."""


class PersistenceError(KnowledgeChatError):
    """A conversation-store write did not return the expected row."""
