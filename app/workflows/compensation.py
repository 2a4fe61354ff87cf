"""Best-effort compensation hook run between failed node attempts."""

from typing import Any, Dict, Optional

from loguru import logger
from pydantic import BaseModel, ValidationError

from ..models.workflow import CompensationConfig, WorkflowNode
from .node_executor import ExecuteAgentPrompt
from .templates import render_string

BEFORE_RETRY = "before_retry"

DEFAULT_COMPENSATION_PROMPT = (
    "A workflow node failed and is about to be retried.\n"
    "Node: {{compensation.node_id}} ({{compensation.node_type}})\n"
    "Attempt: {{compensation.attempt}}\n"
    "Error: {{compensation.error}}\n"
    "Undo or stabilize any partial side effects of the failed attempt so the "
    "retry is safe to run. Prefer idempotent actions and report what you "
    "changed in one short paragraph."
)


class CompensationOutcome(BaseModel):
    """What happened when the compensation hook ran."""

    attempted: bool = False
    applied: bool = False
    error: Optional[str] = None
    output: Optional[str] = None


class CompensationRunner:
    """Runs a node's ``config["compensation"]`` prompt before a retry.

    Failures are recorded on the outcome and logged; they never propagate.
    """

    def __init__(self, execute_agent_prompt: ExecuteAgentPrompt) -> None:
        self.execute_agent_prompt = execute_agent_prompt

    @staticmethod
    def config_for(node: WorkflowNode) -> Optional[CompensationConfig]:
        raw = node.config.get("compensation")
        if not isinstance(raw, dict):
            return None
        try:
            return CompensationConfig(**raw)
        except ValidationError as e:
            logger.warning(f"Ignoring invalid compensation config on node {node.id}: {e}")
            return None

    async def run(
        self,
        node: WorkflowNode,
        run_id: str,
        attempt: int,
        error: str,
        template_context: Dict[str, Any],
    ) -> CompensationOutcome:
        config = self.config_for(node)
        if not config or not config.enabled or config.strategy != BEFORE_RETRY:
            return CompensationOutcome()

        context = {
            **template_context,
            "compensation": {
                "node_id": node.id,
                "node_type": node.type.value,
                "attempt": attempt,
                "error": error,
                "run_id": run_id,
            },
        }
        prompt = render_string(config.prompt_template or DEFAULT_COMPENSATION_PROMPT, context).value

        try:
            result = await self.execute_agent_prompt(
                prompt,
                working_directory=config.working_directory,
                model=config.model,
                max_turns=config.max_turns,
                run_id=run_id,
            )
        except Exception as e:
            logger.warning(
                f"Compensation for node {node.id} (run {run_id}, attempt {attempt}) failed: {e}"
            )
            return CompensationOutcome(attempted=True, applied=False, error=str(e))

        logger.info(f"Compensation applied for node {node.id} (run {run_id}, attempt {attempt})")
        return CompensationOutcome(attempted=True, applied=True, output=result.content)
