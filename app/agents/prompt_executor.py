"""LLM-backed implementation of the agent prompt callable used by workflow nodes."""

from enum import Enum
from typing import Any, Dict, List, Optional, Union

import anthropic
import openai
from loguru import logger
from tenacity import retry, retry_if_not_exception_type, stop_after_attempt, wait_exponential

from ..config import WorkflowSettings
from ..models.workflow import AgentPromptResult


class LLMProvider(str, Enum):
    """Supported LLM providers."""

    OPENAI = "openai"
    ANTHROPIC = "anthropic"


class AgentConfigurationError(Exception):
    """Raised when the configured provider cannot be used (e.g. no API key)."""


class AgentPromptExecutor:
    """Runs one prompt against OpenAI or Anthropic and returns its text.

    Instances are callable and satisfy ``ExecuteAgentPrompt``.
    """

    def __init__(self, settings: WorkflowSettings):
        self.settings = settings
        self.provider = LLMProvider(settings.llm_provider)
        self._openai_client: Optional[openai.AsyncOpenAI] = None
        self._anthropic_client: Optional[anthropic.AsyncAnthropic] = None

    @property
    def llm_client(self) -> Union[openai.AsyncOpenAI, anthropic.AsyncAnthropic]:
        """Get the appropriate LLM client, creating it on first use."""
        if self.provider == LLMProvider.OPENAI:
            if not self._openai_client:
                if not self.settings.openai_api_key:
                    raise AgentConfigurationError("OpenAI API key is not configured.")
                self._openai_client = openai.AsyncOpenAI(api_key=self.settings.openai_api_key)
            return self._openai_client

        if not self._anthropic_client:
            if not self.settings.anthropic_api_key:
                raise AgentConfigurationError("Anthropic API key is not configured.")
            self._anthropic_client = anthropic.AsyncAnthropic(
                api_key=self.settings.anthropic_api_key
            )
        return self._anthropic_client

    async def __call__(
        self,
        prompt: str,
        *,
        working_directory: Optional[str] = None,
        model: Optional[str] = None,
        max_turns: Optional[int] = None,
        run_id: Optional[str] = None,
    ) -> AgentPromptResult:
        system_lines = ["You are an automation agent executing one step of a workflow run."]
        if working_directory:
            system_lines.append(f"Working directory: {working_directory}")
        if run_id:
            system_lines.append(f"Workflow run: {run_id}")

        messages = [
            {"role": "system", "content": "\n".join(system_lines)},
            {"role": "user", "content": prompt},
        ]
        resolved_model = model or self.settings.default_llm_model

        logger.debug(
            f"Agent prompt for run {run_id}: provider={self.provider.value} "
            f"model={resolved_model} max_turns={max_turns}"
        )
        return await self._call_llm(messages, resolved_model)

    @retry(
        retry=retry_if_not_exception_type(AgentConfigurationError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=4, max=10),
        reraise=True,
    )
    async def _call_llm(self, messages: List[Dict[str, Any]], model: str) -> AgentPromptResult:
        """Call LLM API with retry logic."""
        try:
            if self.provider == LLMProvider.OPENAI:
                return await self._call_openai(messages, model)
            return await self._call_anthropic(messages, model)
        except AgentConfigurationError:
            raise
        except Exception as e:
            logger.error(f"LLM API call failed: {e}")
            raise

    async def _call_openai(self, messages: List[Dict[str, Any]], model: str) -> AgentPromptResult:
        response = await self.llm_client.chat.completions.create(
            model=model,
            messages=messages,
            max_tokens=self.settings.llm_max_tokens,
        )
        data = response.model_dump()

        usage = data.get("usage") or {}
        choices = data.get("choices") or [{}]
        message = choices[0].get("message") or {}
        return AgentPromptResult(
            content=message.get("content") or "",
            prompt_tokens=usage.get("prompt_tokens"),
            completion_tokens=usage.get("completion_tokens"),
        )

    async def _call_anthropic(self, messages: List[Dict[str, Any]], model: str) -> AgentPromptResult:
        # Anthropic takes the system prompt separately
        system_message = None
        converted_messages = []
        for msg in messages:
            if msg["role"] == "system":
                system_message = msg["content"]
            else:
                converted_messages.append(msg)

        kwargs: Dict[str, Any] = {
            "model": model,
            "messages": converted_messages,
            "max_tokens": self.settings.llm_max_tokens,
        }
        if system_message:
            kwargs["system"] = system_message

        response = await self.llm_client.messages.create(**kwargs)
        data = response.model_dump()

        usage = data.get("usage") or {}
        text = "".join(
            block.get("text", "") for block in data.get("content") or [] if block.get("type") == "text"
        )
        return AgentPromptResult(
            content=text,
            prompt_tokens=usage.get("input_tokens"),
            completion_tokens=usage.get("output_tokens"),
        )
