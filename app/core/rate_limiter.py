"""In-memory per-organization rate limiting for the chat endpoint."""

import time
from functools import lru_cache

from fastapi import HTTPException

from app.core.config import get_settings
from app.core.logging import get_logger

logger = get_logger(__name__)


class RateLimiter:
    """
    Token bucket rate limiter keyed by an arbitrary string.

    Buckets live in process memory, so limits apply per worker.
    """

    def __init__(self, requests_per_minute: int = 10, burst_size: int = 15):
        """
        Args:
            requests_per_minute: Sustained refill rate
            burst_size: Bucket capacity
        """
        self.requests_per_minute = requests_per_minute
        self.burst_size = burst_size
        self.refill_rate = requests_per_minute / 60.0  # tokens per second

        # key -> (tokens, last_refill_monotonic)
        self._buckets: dict[str, tuple[float, float]] = {}

    def _refill(self, key: str, now: float) -> float:
        tokens, last_refill = self._buckets.get(key, (float(self.burst_size), now))
        tokens = min(float(self.burst_size), tokens + (now - last_refill) * self.refill_rate)
        self._buckets[key] = (tokens, now)
        return tokens

    def check_limit(self, key: str, cost: float = 1.0) -> None:
        """
        Consume ``cost`` tokens for ``key``.

        Raises:
            HTTPException: 429 with Retry-After when the bucket is empty
        """
        now = time.monotonic()
        tokens = self._refill(key, now)

        if tokens >= cost:
            self._buckets[key] = (tokens - cost, now)
            return

        retry_after = int((cost - tokens) / self.refill_rate) + 1
        logger.warning(
            f"Rate limit exceeded for key: {key}, "
            f"tokens: {tokens:.2f}/{self.burst_size}, retry after: {retry_after}s"
        )
        raise HTTPException(
            status_code=429,
            detail=f"Rate limit exceeded. Try again in {retry_after} seconds.",
            headers={"Retry-After": str(retry_after)},
        )

    def remaining(self, key: str) -> int:
        return int(self._refill(key, time.monotonic()))

    def reset(self, key: str | None = None) -> None:
        """Forget one key, or every key when None."""
        if key is None:
            self._buckets.clear()
        else:
            self._buckets.pop(key, None)


@lru_cache(maxsize=1)
def get_chat_rate_limiter() -> RateLimiter:
    settings = get_settings()
    return RateLimiter(
        requests_per_minute=settings.CHAT_RATE_LIMIT_PER_MINUTE,
        burst_size=settings.CHAT_RATE_LIMIT_BURST,
    )


def check_chat_rate_limit(organization_id: str) -> None:
    """
    Check the chat rate limit for an organization.

    Raises:
        HTTPException: 429 if rate limited
    """
    get_chat_rate_limiter().check_limit(f"chat:{organization_id}")
