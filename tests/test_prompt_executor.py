"""Tests for the LLM-backed agent prompt executor."""

from unittest.mock import AsyncMock, patch

import pytest

from app.agents.prompt_executor import AgentConfigurationError, AgentPromptExecutor
from app.config import WorkflowSettings


@pytest.mark.unit
@pytest.mark.asyncio
class TestAgentPromptExecutor:
    async def test_openai_completion(self, test_settings, mock_openai_client):
        executor = AgentPromptExecutor(test_settings)
        executor._openai_client = mock_openai_client

        result = await executor(
            "Summarize the ticket", working_directory="/srv/repo", model="gpt-4o", run_id="run-1"
        )

        assert result.content == "This is a mock AI response"
        assert result.prompt_tokens == 10
        assert result.completion_tokens == 20

        kwargs = mock_openai_client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "gpt-4o"
        assert kwargs["max_tokens"] == test_settings.llm_max_tokens
        system, user = kwargs["messages"]
        assert "Working directory: /srv/repo" in system["content"]
        assert "Workflow run: run-1" in system["content"]
        assert user == {"role": "user", "content": "Summarize the ticket"}

    async def test_default_model(self, test_settings, mock_openai_client):
        executor = AgentPromptExecutor(test_settings)
        executor._openai_client = mock_openai_client

        await executor("hello")

        kwargs = mock_openai_client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == test_settings.default_llm_model

    async def test_anthropic_completion(self, test_settings, mock_anthropic_client):
        settings = test_settings.model_copy(update={"llm_provider": "anthropic"})
        executor = AgentPromptExecutor(settings)
        executor._anthropic_client = mock_anthropic_client

        result = await executor("Summarize the ticket", model="claude-test")

        assert result.content == "This is a mock Claude response"
        assert result.prompt_tokens == 15
        assert result.completion_tokens == 25
        kwargs = mock_anthropic_client.messages.create.call_args.kwargs
        assert kwargs["system"].startswith("You are an automation agent")
        assert kwargs["messages"] == [{"role": "user", "content": "Summarize the ticket"}]

    async def test_missing_api_key(self):
        executor = AgentPromptExecutor(WorkflowSettings(_env_file=None, openai_api_key=None))

        with pytest.raises(AgentConfigurationError, match="OpenAI API key"):
            await executor("hello")

    async def test_transient_errors_are_retried(self, test_settings, mock_openai_client):
        response = mock_openai_client.chat.completions.create.return_value
        mock_openai_client.chat.completions.create = AsyncMock(
            side_effect=[RuntimeError("503"), response]
        )
        executor = AgentPromptExecutor(test_settings)
        executor._openai_client = mock_openai_client

        with patch.object(AgentPromptExecutor._call_llm.retry, "sleep", new=AsyncMock()):
            result = await executor("hello")

        assert result.content == "This is a mock AI response"
        assert mock_openai_client.chat.completions.create.await_count == 2
