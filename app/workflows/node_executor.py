"""Default node executor dispatching on :class:`WorkflowNodeType`."""

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, Awaitable, Dict, Optional, Protocol

from loguru import logger

from ..models.workflow import (
    AgentPromptResult,
    NodeExecutionResult,
    WorkflowNode,
    WorkflowNodeType,
)
from .errors import NodeExecutionError
from .expressions import evaluate_condition
from .templates import render_string, render_value


class ExecuteAgentPrompt(Protocol):
    """Callable that runs one prompt against the agent runtime."""

    def __call__(
        self,
        prompt: str,
        *,
        working_directory: Optional[str] = None,
        model: Optional[str] = None,
        max_turns: Optional[int] = None,
        run_id: Optional[str] = None,
    ) -> Awaitable[AgentPromptResult]:
        ...


@dataclass
class NodeExecutionContext:
    """Everything a node may read while executing."""

    run_context: Dict[str, Any]
    node_outputs: Dict[str, Any]
    execute_agent_prompt: ExecuteAgentPrompt
    previous_output: Dict[str, Any] = field(default_factory=dict)

    def template_context(self) -> Dict[str, Any]:
        return {
            **self.run_context,
            "nodes": self.node_outputs,
            "current": self.previous_output,
        }


class NodeExecutor(Protocol):
    async def execute(
        self, node: WorkflowNode, context: NodeExecutionContext
    ) -> NodeExecutionResult:
        ...


_TOOL_LIKE = {
    WorkflowNodeType.TOOL,
    WorkflowNodeType.MCP_TOOL,
    WorkflowNodeType.CONNECTOR_TOOL,
    WorkflowNodeType.MEMORY_READ,
    WorkflowNodeType.MEMORY_WRITE,
    WorkflowNodeType.NOTIFICATION,
    WorkflowNodeType.SUBWORKFLOW,
}


def _optional_str(value: Any) -> Optional[str]:
    return value if isinstance(value, str) and value else None


def _optional_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    return value if isinstance(value, int) else None


class WorkflowNodeExecutor:
    """Executes a single node. Every :class:`WorkflowNodeType` has a branch."""

    async def execute(
        self, node: WorkflowNode, context: NodeExecutionContext
    ) -> NodeExecutionResult:
        template_context = context.template_context()

        if node.type in (WorkflowNodeType.START, WorkflowNodeType.END):
            return NodeExecutionResult(output={"ok": True})

        if node.type == WorkflowNodeType.WAIT:
            return await self._execute_wait(node, template_context)

        if node.type == WorkflowNodeType.CONDITION:
            expression = str(node.config.get("expression") or "").strip()
            if not expression:
                raise NodeExecutionError(f"condition node {node.id} has no expression.")
            result = evaluate_condition(expression, template_context)
            return NodeExecutionResult(output={"expression": expression, "result": result})

        if node.type == WorkflowNodeType.APPROVAL:
            return self._execute_approval(node, context)

        if node.type == WorkflowNodeType.AGENT_STEP:
            return await self._execute_agent_step(node, context, template_context)

        if node.type in _TOOL_LIKE:
            return await self._execute_tool_like(node, context, template_context)

        if node.type in (WorkflowNodeType.PARALLEL, WorkflowNodeType.LOOP):
            # Branch-level fan-out is not executed; these act as markers.
            return NodeExecutionResult(
                output={"passthrough": True, "node_type": node.type.value}
            )

        raise NodeExecutionError(f"Unsupported node type: {node.type}")

    async def _execute_wait(
        self, node: WorkflowNode, template_context: Dict[str, Any]
    ) -> NodeExecutionResult:
        raw = node.config.get("duration_ms", 0)
        resolved = render_value(raw, template_context).value
        try:
            duration_ms = max(0, int(float(resolved or 0)))
        except (TypeError, ValueError):
            duration_ms = 0

        logger.debug(f"Node {node.id} waiting {duration_ms}ms")
        await asyncio.sleep(duration_ms / 1000.0)
        return NodeExecutionResult(output={"waited_ms": duration_ms})

    def _execute_approval(
        self, node: WorkflowNode, context: NodeExecutionContext
    ) -> NodeExecutionResult:
        approvals = context.run_context.get("approvals") or {}
        approved = bool(node.config.get("auto_approve")) or approvals.get(node.id) is True
        if approved:
            return NodeExecutionResult(output={"approved": True})

        reason = str(node.config.get("reason") or "Approval required")
        return NodeExecutionResult(
            output={"approved": False, "reason": reason},
            pause_requested=True,
            pause_reason=reason,
        )

    async def _execute_agent_step(
        self,
        node: WorkflowNode,
        context: NodeExecutionContext,
        template_context: Dict[str, Any],
    ) -> NodeExecutionResult:
        template = str(node.config.get("prompt_template") or node.config.get("prompt") or "").strip()
        rendered = render_string(template, template_context)
        if not rendered.value.strip():
            raise NodeExecutionError(f"agent_step node {node.id} has an empty prompt_template.")

        result = await context.execute_agent_prompt(
            rendered.value,
            working_directory=_optional_str(node.config.get("working_directory")),
            model=_optional_str(node.config.get("model")),
            max_turns=_optional_int(node.config.get("max_turns")),
        )
        return NodeExecutionResult(
            output={
                "text": result.content,
                "prompt_tokens": result.prompt_tokens,
                "completion_tokens": result.completion_tokens,
                "missing_paths": rendered.missing_paths,
            }
        )

    async def _execute_tool_like(
        self,
        node: WorkflowNode,
        context: NodeExecutionContext,
        template_context: Dict[str, Any],
    ) -> NodeExecutionResult:
        node_config = {key: value for key, value in node.config.items() if key != "compensation"}
        rendered = render_value(node_config, template_context)
        config = rendered.value if isinstance(rendered.value, dict) else {}
        prompt = "\n".join(
            [
                f"Execute workflow node type: {node.type.value}",
                f"Node name: {node.display_name}",
                f"Node config JSON: {json.dumps(config, default=str)}",
                "Use available tools as needed and return a concise JSON summary in your final response.",
            ]
        )

        result = await context.execute_agent_prompt(
            prompt,
            working_directory=_optional_str(config.get("working_directory")),
            model=_optional_str(config.get("model")),
            max_turns=_optional_int(config.get("max_turns")),
        )
        return NodeExecutionResult(
            output={"text": result.content, "missing_paths": rendered.missing_paths}
        )
