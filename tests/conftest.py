"""Pytest configuration and fixtures."""

import os

import pytest

# Set before any app import reads settings
os.environ.setdefault("SUPABASE_URL", "https://test.supabase.co")
os.environ.setdefault("SUPABASE_SERVICE_ROLE_KEY", "test-key")
os.environ.setdefault("OPENAI_API_KEY", "test-openai-key")
os.environ.setdefault("ANTHROPIC_API_KEY", "test-anthropic-key")
os.environ["CHAT_ENGINE_ENV"] = "test"


@pytest.fixture(scope="session", autouse=True)
def setup_test_env():
    """Make sure settings are rebuilt from the test environment."""
    from app.core.config import get_settings

    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
def reset_rate_limiter():
    """Each test starts with a full chat rate-limit bucket."""
    from app.core.rate_limiter import get_chat_rate_limiter

    get_chat_rate_limiter().reset()
    yield
