"""Configuration management for LoreForge."""

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

    # Environment
    LOREFORGE_ENV: str = Field(default="dev", description="Environment: dev, staging, prod")
    LOG_LEVEL: str | None = Field(default=None, description="Log level override (DEBUG, INFO, ...)")

    # LLM provider configuration
    LLM_PROVIDER: str = Field(
        default="openai", description="openai, anthropic, gemini, ollama, openrouter, none"
    )
    LLM_MODEL: str | None = Field(default=None, description="Model override for the provider")
    LLM_TEMPERATURE: float = Field(default=0.7, description="Sampling temperature")
    LLM_MAX_TOKENS: int = Field(default=8192, description="Max output tokens per call")
    LLM_TIMEOUT_SECONDS: float = Field(default=120.0, description="Per-call network timeout")

    OPENAI_API_KEY: str | None = Field(default=None, description="OpenAI API key")
    ANTHROPIC_API_KEY: str | None = Field(default=None, description="Anthropic API key")
    GEMINI_API_KEY: str | None = Field(default=None, description="Gemini API key")
    OPENROUTER_API_KEY: str | None = Field(default=None, description="OpenRouter API key")
    OLLAMA_BASE_URL: str = Field(
        default="http://localhost:11434", description="Local Ollama server URL"
    )

    # Supabase configuration (canon store)
    SUPABASE_URL: str | None = Field(default=None, description="Supabase project URL")
    SUPABASE_SERVICE_ROLE_KEY: str | None = Field(
        default=None, description="Supabase service role key"
    )

    # Canon retrieval budget
    CANON_MAX_FACTS: int = Field(default=80, description="Max facts before narrowing is required")
    CANON_MAX_FACT_CHARS: int = Field(
        default=24_000, description="Max aggregate fact characters before narrowing is required"
    )
    CANON_RETRIEVAL_LIMIT: int = Field(
        default=500, description="Max candidate facts pulled from the store per query"
    )

    # Chunked generation
    CHUNK_RECENT_WINDOW: int = Field(
        default=5, description="Previously generated sub-artifacts shown to each iteration"
    )
    CHUNK_SCALE_DEFAULTS: dict[str, int] = Field(
        default_factory=lambda: {"simple": 3, "moderate": 12, "complex": 30, "massive": 50},
        description="Fallback quantity per scale keyword when no explicit quantity is given",
    )
    CHUNK_MAX_ITERATIONS: int = Field(
        default=50, ge=1, description="Upper bound on iterations planned for a chunked stage"
    )

    # Stage output parsing
    STAGE_PARSE_MAX_ATTEMPTS: int = Field(
        default=3, description="Attempts per stage/chunk before a parse error is surfaced"
    )

    # Prompt character accounting
    PROMPT_MAX_CHARS: int = Field(default=7_800, description="Safe maximum prompt size")
    PROMPT_WARNING_CHARS: int = Field(default=7_200, description="Prompt size warning threshold")
    PRIOR_DECISIONS_MAX_CHARS: int = Field(
        default=1_500, description="Max characters of prior decisions embedded in a prompt"
    )

    # Orchestration guard
    MAX_GRAPH_STEPS: int = Field(default=8, description="Max node executions per stage graph run")


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Returns:
        Settings instance

    Raises:
        ValidationError: If environment variables hold invalid values
    """
    return Settings()
