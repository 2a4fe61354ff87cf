"""Durable workflow execution engine with checkpointed resume."""

import asyncio
import inspect
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Union

from loguru import logger

from ..models.workflow import (
    NodeRunStatus,
    RuntimeCheckpoint,
    WorkflowDefinition,
    WorkflowEdge,
    WorkflowEventType,
    WorkflowNode,
    WorkflowNodeType,
    WorkflowRun,
    WorkflowRunDetails,
    WorkflowRunStatus,
    EdgeCondition,
    utcnow,
)
from .compensation import CompensationOutcome, CompensationRunner
from .compiler import CompiledWorkflow
from .errors import (
    DefinitionNotFoundError,
    ExpressionError,
    MaxExecutionStepsExceededError,
    NodeNotFoundError,
    NodeTimeoutError,
    RunTimeoutError,
)
from .expressions import evaluate_condition
from .node_executor import (
    ExecuteAgentPrompt,
    NodeExecutionContext,
    NodeExecutor,
    WorkflowNodeExecutor,
)
from .retry_policy import compute_retry_delay, resolve_retry_policy, sleep_ms
from .state_manager import WorkflowStateManager

MAX_EXECUTION_STEPS = 2000
DEFAULT_RUN_TIMEOUT_MS = 30 * 60 * 1000
DEFAULT_NODE_TIMEOUT_MS = 5 * 60 * 1000
RESUME_REASON = "deterministic_resume_checkpoint"

# Statuses an execution may start from, and later fail from.
STARTABLE_STATUSES = (WorkflowRunStatus.QUEUED, WorkflowRunStatus.RUNNING)

ResolvedDefinition = Tuple[CompiledWorkflow, WorkflowDefinition]
DefinitionResolver = Callable[
    [WorkflowRun],
    Union[Optional[ResolvedDefinition], Awaitable[Optional[ResolvedDefinition]]],
]


@dataclass
class RunContextState:
    """Evaluation context shared by every node of one run."""

    run_context: Dict[str, Any]
    node_outputs: Dict[str, Any]
    previous_output: Dict[str, Any] = field(default_factory=dict)


@dataclass
class NodeAttemptResult:
    """Outcome of executing one node with retries."""

    output: Dict[str, Any] = field(default_factory=dict)
    node_run_id: Optional[str] = None
    pause_requested: bool = False
    pause_reason: Optional[str] = None
    aborted_status: Optional[WorkflowRunStatus] = None


@dataclass
class ResumePoint:
    from_node_id: str
    to_node_id: Optional[str]
    step: int
    output: Dict[str, Any]


class WorkflowEngine:
    """
    Run-to-completion step machine for workflow runs.

    Features:
    - Serial node execution with a hard step cap
    - Per-node timeouts and a coarse per-run deadline
    - Profile-driven retries with exponential backoff and jitter
    - Optional compensation hook before each retry
    - Checkpoint after every successful node for exactly-once resume
    - Cooperative pause/cancel by polling the persisted run status
    """

    def __init__(
        self,
        state_manager: WorkflowStateManager,
        execute_agent_prompt: ExecuteAgentPrompt,
        node_executor: Optional[NodeExecutor] = None,
        compensation_runner: Optional[CompensationRunner] = None,
        definition_resolver: Optional[DefinitionResolver] = None,
        max_execution_steps: int = MAX_EXECUTION_STEPS,
        default_node_timeout_ms: int = DEFAULT_NODE_TIMEOUT_MS,
        default_run_timeout_ms: int = DEFAULT_RUN_TIMEOUT_MS,
        sleep: Callable[[float], Awaitable[None]] = sleep_ms,
    ) -> None:
        """Initialize workflow engine with its collaborators."""
        self.state_manager = state_manager
        self.execute_agent_prompt = execute_agent_prompt
        self.node_executor = node_executor or WorkflowNodeExecutor()
        self.compensation_runner = compensation_runner or CompensationRunner(execute_agent_prompt)
        self._resolve_definition: DefinitionResolver = definition_resolver or (lambda run: None)
        self.max_execution_steps = max_execution_steps
        self.default_node_timeout_ms = default_node_timeout_ms
        self.default_run_timeout_ms = default_run_timeout_ms
        self._sleep = sleep

    def set_definition_resolver(self, resolver: DefinitionResolver) -> None:
        self._resolve_definition = resolver

    async def execute(self, run_id: str) -> WorkflowRun:
        """Drive a run until it completes, fails, pauses or is cancelled.

        Returns:
            The run as persisted when execution stopped.

        Raises:
            RunNotFoundError: if ``run_id`` does not exist
        """
        existing = await self.state_manager.get_by_id_or_throw(run_id)
        if existing.status not in STARTABLE_STATUSES:
            logger.info(f"Run {run_id} is {existing.status.value}, not executing")
            return existing

        resolved = self._resolve_definition(existing)
        if inspect.isawaitable(resolved):
            resolved = await resolved
        if not resolved:
            return await self._fail_run(
                existing,
                DefinitionNotFoundError(existing.workflow_id, run_id=run_id),
                existing.current_node_id,
            )

        compiled, definition = resolved
        context_state = await self._build_run_context_state(existing, definition)

        run = await self.state_manager.transition_status(
            run_id,
            STARTABLE_STATUSES,
            status=WorkflowRunStatus.RUNNING,
            started_at=existing.started_at or utcnow(),
            current_node_id=existing.current_node_id or compiled.start_node_id,
            error=None,
        )
        if run is None:
            # Paused or cancelled while still queued.
            return await self.state_manager.get_by_id_or_throw(run_id)
        await self.state_manager.append_event(
            run_id,
            WorkflowEventType.RUN_STARTED,
            {"workflow_id": run.workflow_id, "workflow_version": run.workflow_version},
        )
        logger.info(f"Workflow run started: {run_id} ({run.workflow_id} v{run.workflow_version})")

        current_node_id: Optional[str] = run.current_node_id
        steps = run.checkpoint.step if run.checkpoint else 0
        run_timeout_ms = definition.defaults.max_run_time_ms or self.default_run_timeout_ms
        run_deadline = run.started_at + timedelta(milliseconds=run_timeout_ms)

        try:
            resume = await self._detect_resume(run, compiled, definition, context_state)
            if resume:
                steps = resume.step
                current_node_id = resume.to_node_id
                context_state.previous_output = resume.output
                run = await self.state_manager.update_status(run_id, current_node_id=current_node_id)
                await self.state_manager.append_event(
                    run_id,
                    WorkflowEventType.RUN_RESUMED,
                    {
                        "from_node_id": resume.from_node_id,
                        "to_node_id": resume.to_node_id,
                        "checkpoint_step": resume.step,
                        "reason": RESUME_REASON,
                    },
                )
                logger.info(
                    f"Resuming run {run_id} from checkpoint: "
                    f"{resume.from_node_id} -> {resume.to_node_id}"
                )

            while current_node_id:
                if steps >= self.max_execution_steps:
                    raise MaxExecutionStepsExceededError(self.max_execution_steps)

                if await self._get_run_control_state(run_id):
                    return await self.state_manager.get_by_id_or_throw(run_id)
                if utcnow() > run_deadline:
                    raise RunTimeoutError(run_timeout_ms)

                steps += 1
                node = definition.find_node(current_node_id)
                if not node:
                    raise NodeNotFoundError(current_node_id)

                # Status is left alone so a concurrent pause/cancel is not overwritten.
                run = await self.state_manager.update_status(run_id, current_node_id=current_node_id)

                attempt = await self._execute_node_with_retry(run, definition, node, context_state, steps)
                if attempt.aborted_status:
                    return await self.state_manager.get_by_id_or_throw(run_id)

                if attempt.pause_requested:
                    paused = await self.state_manager.transition_status(
                        run_id,
                        (WorkflowRunStatus.RUNNING,),
                        status=WorkflowRunStatus.PAUSED,
                        current_node_id=current_node_id,
                        error=attempt.pause_reason,
                    )
                    if paused is None:
                        return await self.state_manager.get_by_id_or_throw(run_id)
                    await self.state_manager.append_event(
                        run_id,
                        WorkflowEventType.RUN_PAUSED,
                        {"node_id": current_node_id, "reason": attempt.pause_reason},
                    )
                    logger.info(f"Workflow run paused at {current_node_id}: {attempt.pause_reason}")
                    return paused

                context_state.node_outputs[node.id] = attempt.output
                context_state.previous_output = attempt.output

                if node.type == WorkflowNodeType.END:
                    break

                next_edge = self.select_next_edge(
                    compiled, node.id, attempt.output, context_state.run_context
                )
                next_node_id = next_edge.to_node if next_edge else None

                run = await self.state_manager.update_status(
                    run_id,
                    checkpoint=RuntimeCheckpoint(
                        step=steps,
                        completed_node_id=node.id,
                        next_node_id=next_node_id,
                        node_run_id=attempt.node_run_id,
                    ),
                )

                if await self._get_run_control_state(run_id):
                    return await self.state_manager.get_by_id_or_throw(run_id)

                current_node_id = next_node_id

            completed = await self.state_manager.transition_status(
                run_id,
                (WorkflowRunStatus.RUNNING,),
                status=WorkflowRunStatus.COMPLETED,
                completed_at=utcnow(),
                current_node_id=None,
                output={"nodes": context_state.node_outputs, "steps": steps},
                error=None,
            )
            if completed is None:
                return await self.state_manager.get_by_id_or_throw(run_id)
            await self.state_manager.append_event(
                run_id, WorkflowEventType.RUN_COMPLETED, {"steps": steps}
            )
            logger.info(f"Workflow run completed: {run_id} ({steps} steps)")
            return completed

        except Exception as e:
            return await self._fail_run(run, e, current_node_id)

    async def _fail_run(
        self, run: WorkflowRun, error: Exception, node_id: Optional[str]
    ) -> WorkflowRun:
        message = str(error) or error.__class__.__name__
        failed = await self.state_manager.transition_status(
            run.id,
            STARTABLE_STATUSES,
            status=WorkflowRunStatus.FAILED,
            completed_at=utcnow(),
            error=message,
        )
        if failed is None:
            # A pause or cancel landed first; it wins over the failure.
            logger.info(f"Run {run.id} stopped externally, not recording failure: {message}")
            return await self.state_manager.get_by_id_or_throw(run.id)

        logger.error(f"Workflow run failed: {run.id} - {message}")
        await self.state_manager.append_event(
            run.id, WorkflowEventType.RUN_FAILED, {"error": message, "node_id": node_id}
        )
        return failed

    async def _build_run_context_state(
        self, run: WorkflowRun, definition: WorkflowDefinition
    ) -> RunContextState:
        node_outputs: Dict[str, Any] = {}
        for node_run in await self.state_manager.get_node_runs(run.id):
            if node_run.status == NodeRunStatus.SUCCEEDED and node_run.output is not None:
                node_outputs[node_run.node_id] = node_run.output

        previous_output: Dict[str, Any] = {}
        if run.checkpoint:
            previous_output = node_outputs.get(run.checkpoint.completed_node_id, {})

        return RunContextState(
            run_context={
                "run": {
                    "id": run.id,
                    "input": run.input,
                    "trigger_context": run.trigger_context,
                },
                "trigger": run.trigger_context,
                "approvals": run.input.get("approvals") or {},
                "system": {"now": utcnow().isoformat()},
                "workflow": {"id": definition.id, "version": definition.version},
            },
            node_outputs=node_outputs,
            previous_output=previous_output,
        )

    async def _detect_resume(
        self,
        run: WorkflowRun,
        compiled: CompiledWorkflow,
        definition: WorkflowDefinition,
        context_state: RunContextState,
    ) -> Optional[ResumePoint]:
        """Detect a crash between a node's success and the hop to its successor.

        Only applies when the newest attempt of the checkpointed node is the
        checkpointed, succeeded attempt. A later attempt (a cycle revisiting
        the node) means the node has to run again.
        """
        checkpoint = run.checkpoint
        if not checkpoint or run.current_node_id != checkpoint.completed_node_id:
            return None

        attempts = [
            node_run
            for node_run in await self.state_manager.get_node_runs(run.id)
            if node_run.node_id == checkpoint.completed_node_id
        ]
        latest = attempts[-1] if attempts else None
        if (
            not latest
            or latest.id != checkpoint.node_run_id
            or latest.status != NodeRunStatus.SUCCEEDED
        ):
            return None

        output = latest.output or {}
        node = definition.find_node(checkpoint.completed_node_id)
        if checkpoint.next_node_id is not None:
            next_node_id: Optional[str] = checkpoint.next_node_id
        elif node is None or node.type == WorkflowNodeType.END:
            next_node_id = None
        else:
            edge = self.select_next_edge(compiled, node.id, output, context_state.run_context)
            next_node_id = edge.to_node if edge else None

        return ResumePoint(
            from_node_id=checkpoint.completed_node_id,
            to_node_id=next_node_id,
            step=checkpoint.step,
            output=output,
        )

    def _bind_agent_prompt(self, run_id: str) -> ExecuteAgentPrompt:
        async def execute_agent_prompt(prompt: str, **options: Any):
            return await self.execute_agent_prompt(prompt, **{**options, "run_id": run_id})

        return execute_agent_prompt

    async def _execute_node_with_retry(
        self,
        run: WorkflowRun,
        definition: WorkflowDefinition,
        node: WorkflowNode,
        context_state: RunContextState,
        step: int,
    ) -> NodeAttemptResult:
        """
        Execute a single node, retrying failed attempts per its retry policy.

        Every attempt gets its own node-run row, created before the executor
        is invoked. A successful, non-pausing attempt is checkpointed
        immediately.

        Raises:
            Exception: the last attempt's error once attempts are exhausted
        """
        policy = resolve_retry_policy(node, definition, run.input)
        timeout_ms = (
            node.timeout_ms or definition.defaults.node_timeout_ms or self.default_node_timeout_ms
        )
        execution_context = NodeExecutionContext(
            run_context=context_state.run_context,
            node_outputs=context_state.node_outputs,
            execute_agent_prompt=self._bind_agent_prompt(run.id),
            previous_output=context_state.previous_output,
        )
        last_error: Optional[Exception] = None

        for attempt in range(1, policy.max_attempts + 1):
            control_state = await self._get_run_control_state(run.id)
            if control_state:
                return NodeAttemptResult(aborted_status=control_state)

            started = time.monotonic()
            node_run = await self.state_manager.create_node_run(
                run.id,
                node.id,
                attempt,
                input={"run_input": run.input, "node_config": node.config},
            )
            await self.state_manager.append_event(
                run.id,
                WorkflowEventType.NODE_STARTED,
                {
                    "node_id": node.id,
                    "attempt": attempt,
                    "max_attempts": policy.max_attempts,
                    "node_type": node.type.value,
                },
            )
            logger.info(f"Executing node {node.id} (attempt {attempt}/{policy.max_attempts})")

            try:
                result = await asyncio.wait_for(
                    self.node_executor.execute(node, execution_context),
                    timeout=timeout_ms / 1000.0,
                )
            except asyncio.TimeoutError:
                last_error = NodeTimeoutError(node.id, timeout_ms)
            except Exception as e:
                last_error = e
            else:
                duration_ms = int((time.monotonic() - started) * 1000)
                await self.state_manager.update_node_run(
                    node_run.id,
                    status=NodeRunStatus.SUCCEEDED,
                    output=result.output,
                    error=None,
                    completed_at=utcnow(),
                    duration_ms=duration_ms,
                )
                await self.state_manager.append_event(
                    run.id,
                    WorkflowEventType.NODE_SUCCEEDED,
                    {
                        "node_id": node.id,
                        "attempt": attempt,
                        "duration_ms": duration_ms,
                        "pause_requested": result.pause_requested,
                    },
                )
                if not result.pause_requested:
                    await self.state_manager.update_status(
                        run.id,
                        checkpoint=RuntimeCheckpoint(
                            step=step,
                            completed_node_id=node.id,
                            next_node_id=None,
                            node_run_id=node_run.id,
                        ),
                    )
                return NodeAttemptResult(
                    output=result.output,
                    node_run_id=node_run.id,
                    pause_requested=result.pause_requested,
                    pause_reason=result.pause_reason,
                )

            error_message = str(last_error) or last_error.__class__.__name__
            duration_ms = int((time.monotonic() - started) * 1000)
            await self.state_manager.update_node_run(
                node_run.id,
                status=NodeRunStatus.FAILED,
                error=error_message,
                completed_at=utcnow(),
                duration_ms=duration_ms,
            )

            will_retry = attempt < policy.max_attempts
            compensation = CompensationOutcome()
            if will_retry:
                compensation = await self.compensation_runner.run(
                    node,
                    run.id,
                    attempt,
                    error_message,
                    execution_context.template_context(),
                )
                if compensation.attempted:
                    await self.state_manager.update_node_run(
                        node_run.id, output={"compensation": compensation.model_dump()}
                    )

            await self.state_manager.append_event(
                run.id,
                WorkflowEventType.NODE_FAILED,
                {
                    "node_id": node.id,
                    "attempt": attempt,
                    "error": error_message,
                    "duration_ms": duration_ms,
                    "will_retry": will_retry,
                    "compensation_attempted": compensation.attempted,
                    "compensation_applied": compensation.applied,
                    "compensation_error": compensation.error,
                },
            )

            if not will_retry:
                break

            delay = compute_retry_delay(policy, attempt)
            logger.warning(
                f"Node {node.id} failed on attempt {attempt}/{policy.max_attempts}: "
                f"{error_message}; retrying in {delay:.0f}ms"
            )
            await self._sleep(delay)

            control_state = await self._get_run_control_state(run.id)
            if control_state:
                return NodeAttemptResult(aborted_status=control_state)

        raise last_error

    async def _get_run_control_state(self, run_id: str) -> Optional[WorkflowRunStatus]:
        """Return ``paused``/``cancelled`` when an external actor stopped the run."""
        run = await self.state_manager.get_by_id(run_id)
        if run and run.status in (WorkflowRunStatus.PAUSED, WorkflowRunStatus.CANCELLED):
            return run.status
        return None

    def select_next_edge(
        self,
        compiled: CompiledWorkflow,
        node_id: str,
        output: Dict[str, Any],
        run_context: Dict[str, Any],
    ) -> Optional[WorkflowEdge]:
        """Pick the first matching outgoing edge in declaration order."""
        local_context = {**run_context, "current": output}

        for edge in compiled.edges_from(node_id):
            if edge.condition in (EdgeCondition.ALWAYS, EdgeCondition.SUCCESS):
                return edge

            if edge.condition != EdgeCondition.CUSTOM:
                continue

            expression = (edge.expression or "").strip()
            if not expression:
                continue
            try:
                if evaluate_condition(expression, local_context):
                    return edge
            except ExpressionError as e:
                logger.warning(f"Skipping edge {edge.id or edge.to_node}: {e}")

        return None

    async def get_run_with_details(self, run_id: str) -> WorkflowRunDetails:
        run = await self.state_manager.get_by_id_or_throw(run_id)
        node_runs = await self.state_manager.get_node_runs(run_id)
        events = await self.state_manager.list_events(run_id)
        return WorkflowRunDetails(run=run, node_runs=node_runs, events=events)
