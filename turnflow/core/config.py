from __future__ import annotations

from pathlib import Path

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


PROJECT_ROOT = Path(__file__).resolve().parents[2]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=(str(PROJECT_ROOT / ".env"), str(PROJECT_ROOT / ".env.local")),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    LOG_LEVEL: str = "INFO"
    TURN_LOG_JSON: bool = True
    TURN_LOG_EXC_INFO: bool = False

    # Loop ceilings. The global ceiling is authoritative; per-node ceilings only
    # allow an earlier exit.
    TURN_MAX_ITERATIONS: int = 10
    TURN_MAX_EXECUTE_ITERATIONS: int = 5
    TURN_MAX_VALIDATE_ITERATIONS: int = 3

    # Latency budgets (milliseconds).
    TURN_TIMEOUT_TOTAL_MS: int = 120000
    TURN_TIMEOUT_MODEL_MS: int = 45000
    TURN_TIMEOUT_TOOL_MS: int = 30000

    # Prompt sizing.
    TURN_CHAT_HISTORY_MAX_CHARS: int = 4000
    TURN_TOOL_OUTPUT_MAX_CHARS: int = 1500
    TURN_MEMORY_DIGEST_MAX_CHARS: int = 1200

    TURN_FALLBACK_ENABLED: bool = True
    TURN_STEP_STORE_DIR: str | None = None

    OPENAI_API_KEY: str | None = None
    OPENAI_BASE_URL: str | None = Field(
        default=None,
        validation_alias=AliasChoices("OPENAI_BASE_URL", "OPENAI_API_BASE"),
    )
    OPENAI_MODEL: str = "gpt-4o-mini"
    LLM_TEMPERATURE: float = 0.1


settings = Settings()
