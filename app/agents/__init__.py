"""LLM agent integration for workflow nodes."""

from .prompt_executor import AgentConfigurationError, AgentPromptExecutor, LLMProvider

__all__ = [
    "AgentConfigurationError",
    "AgentPromptExecutor",
    "LLMProvider",
]
