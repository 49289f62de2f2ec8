"""Pytest configuration and fixtures."""

import os

import pytest

# Settings are cached on first use, which can happen at import time
os.environ.setdefault("LOREFORGE_ENV", "test")
os.environ.setdefault("LLM_PROVIDER", "openai")
os.environ.setdefault("OPENAI_API_KEY", "test-openai-key")
os.environ.setdefault("SUPABASE_URL", "https://test.supabase.co")
os.environ.setdefault("SUPABASE_SERVICE_ROLE_KEY", "test-key")


@pytest.fixture(scope="session", autouse=True)
def setup_test_env():
    """Set up test environment variables."""
    os.environ["LOREFORGE_ENV"] = "test"
    os.environ["LLM_PROVIDER"] = "openai"
    os.environ["OPENAI_API_KEY"] = "test-openai-key"


@pytest.fixture
def settings():
    from loreforge.core.config import Settings

    return Settings(
        LOREFORGE_ENV="test",
        LLM_PROVIDER="openai",
        OPENAI_API_KEY="test-openai-key",
    )
