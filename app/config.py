"""Configuration utilities for the workflow execution service."""

from functools import lru_cache
from typing import List, Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class WorkflowSettings(BaseSettings):
    """Service settings, read from the environment and an optional ``.env`` file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "durable-workflow-engine"
    cors_origins: List[str] = ["http://localhost:3000"]
    redis_url: str = "redis://localhost:6379/0"
    log_level: str = "INFO"

    # Agent runtime used by agent_step and tool-like nodes
    llm_provider: Literal["openai", "anthropic"] = "openai"
    default_llm_model: str = "gpt-4o-mini"
    openai_api_key: Optional[str] = None
    anthropic_api_key: Optional[str] = None
    llm_max_tokens: int = 4000

    # Engine limits
    max_execution_steps: int = 2000
    default_node_timeout_ms: int = 5 * 60 * 1000
    default_run_timeout_ms: int = 30 * 60 * 1000

    # Reschedule queued/running runs left behind by a previous process
    recover_runs_on_startup: bool = True


@lru_cache
def get_settings() -> WorkflowSettings:
    """Return cached WorkflowSettings to avoid repeated environment parsing."""

    return WorkflowSettings()
