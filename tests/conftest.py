"""Local test configuration for the workflow service."""

from __future__ import annotations

import sys
from collections.abc import AsyncGenerator
from pathlib import Path
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock, Mock

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient

# -- Path management ------------------------------------------------------
# The service uses a classic ``app/`` package layout. Adding the service
# root as the first ``sys.path`` entry keeps ``import app`` working when the
# package is not installed.
SERVICE_ROOT = Path(__file__).resolve().parent.parent
if str(SERVICE_ROOT) not in sys.path:
    sys.path.insert(0, str(SERVICE_ROOT))

from app.config import WorkflowSettings
from app.main import create_app
from app.models.workflow import AgentPromptResult
from app.workflows.state_manager import WorkflowStateManager


@pytest.fixture
def test_settings():
    """Provide test-specific settings."""
    return WorkflowSettings(
        app_name="durable-workflow-engine-test",
        cors_origins=["http://localhost:3000", "http://localhost:8000"],
        redis_url="redis://localhost:6379/15",
        openai_api_key="test-openai-key",
        anthropic_api_key="test-anthropic-key",
    )


@pytest.fixture
def app(test_settings):
    """Create FastAPI app with test settings."""
    return create_app(test_settings)


@pytest.fixture
def client(app):
    """Provide TestClient for the workflow service."""
    return TestClient(app)


@pytest_asyncio.fixture
async def redis_state_manager() -> AsyncGenerator[WorkflowStateManager, None]:
    """A real state manager running against an in-process fakeredis server."""
    import fakeredis
    import fakeredis.aioredis

    manager = WorkflowStateManager("redis://localhost:6379/15")
    manager._redis = fakeredis.aioredis.FakeRedis(
        server=fakeredis.FakeServer(), decode_responses=True
    )
    try:
        yield manager
    finally:
        await manager.disconnect()


class RecordingAgent:
    """Scripted stand-in for the agent prompt callable.

    ``responses`` are consumed in order; an ``Exception`` entry is raised
    instead of returned. Once exhausted, ``default`` is returned.
    """

    def __init__(self, responses: Optional[List[Any]] = None, default: str = "done") -> None:
        self.responses = list(responses or [])
        self.default = default
        self.calls: List[Dict[str, Any]] = []

    async def __call__(self, prompt: str, **options: Any) -> AgentPromptResult:
        self.calls.append({"prompt": prompt, **options})
        if self.responses:
            response = self.responses.pop(0)
            if isinstance(response, Exception):
                raise response
            return AgentPromptResult(content=str(response))
        return AgentPromptResult(content=self.default)


@pytest.fixture
def recording_agent() -> RecordingAgent:
    return RecordingAgent()


@pytest.fixture
def make_agent():
    """Factory for scripted agents: ``make_agent(["ok", RuntimeError("boom")])``."""
    return RecordingAgent


@pytest.fixture
def mock_openai_client():
    """Provide a mock OpenAI client."""
    mock_client = Mock()
    mock_response = Mock()
    mock_response.model_dump.return_value = {
        "choices": [
            {
                "message": {"role": "assistant", "content": "This is a mock AI response"},
                "finish_reason": "stop",
            }
        ],
        "usage": {"prompt_tokens": 10, "completion_tokens": 20, "total_tokens": 30},
    }
    mock_client.chat.completions.create = AsyncMock(return_value=mock_response)
    return mock_client


@pytest.fixture
def mock_anthropic_client():
    """Provide a mock Anthropic client."""
    mock_client = Mock()
    mock_response = Mock()
    mock_response.model_dump.return_value = {
        "role": "assistant",
        "content": [{"type": "text", "text": "This is a mock Claude response"}],
        "usage": {"input_tokens": 15, "output_tokens": 25},
    }
    mock_client.messages.create = AsyncMock(return_value=mock_response)
    return mock_client
