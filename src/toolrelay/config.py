"""Configuration settings for the application."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Pydantic settings class for the application."""

    # Define the settings with default values and types
    # These will be loaded from environment variables or a .env file if not provided
    API_PORT: int = 8000
    DEBUG: bool = False
    LOG_LEVEL: str = "info"  # Options: debug, info, warning, error, critical

    # Tool providers (read-only JSON snapshot, re-read on every call)
    PROVIDERS_FILE: str = "./data/providers.json"

    # LLM Configuration
    MODEL_BASE_URL: str | None = None  # OpenAI-compatible server, e.g. http://localhost:11434/v1
    MODEL_NAME: str = "gpt-4o-mini"
    MODEL_API_KEY: str | None = None
    OPENAI_API_KEY: str | None = None

    # Agent loop
    MAX_TOOL_ROUNDS: int = 5
    PLANNER_ENABLED: bool = True
    PLANNER_MAX_TOKENS: int = 1024
    PLANNER_MAX_STEPS: int = 8

    # Connection pool
    POOL_MAX_IDLE_SECONDS: float = 300.0
    POOL_SWEEP_INTERVAL_SECONDS: float = 60.0

    class Config:
        """Configuration for Pydantic settings."""

        # Load environment variables from a .env file
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
