"""Run orchestration around the workflow engine."""

import asyncio
import uuid
from datetime import datetime
from typing import Any, Collection, Dict, List, Optional, Tuple

from loguru import logger

from ..models.workflow import (
    NodeRunStatus,
    WorkflowDefinition,
    WorkflowEvent,
    WorkflowEventType,
    WorkflowRun,
    WorkflowRunDetails,
    WorkflowRunStatus,
    utcnow,
)
from .compiler import CompiledWorkflow, compile_workflow_definition
from .engine import STARTABLE_STATUSES, WorkflowEngine
from .errors import InvalidRunTransitionError

PAUSABLE = {WorkflowRunStatus.QUEUED, WorkflowRunStatus.RUNNING}
CANCELLABLE = {WorkflowRunStatus.QUEUED, WorkflowRunStatus.RUNNING, WorkflowRunStatus.PAUSED}
RESUMABLE = {WorkflowRunStatus.PAUSED}

RECOVERY_REASON = "restart_recovery"
INTERRUPTED_ATTEMPT_ERROR = "Interrupted before completion"


class WorkflowService:
    """
    Definition registry and run lifecycle operations.

    Definitions are persisted next to the runs, so any process sharing the
    store can execute or resume a run. Each run executes as a background
    ``asyncio.Task``; at most one task drives a given run at a time. Pause
    and cancel only change the persisted status, the engine notices at its
    next poll.
    """

    def __init__(self, engine: WorkflowEngine) -> None:
        self.engine = engine
        self.state_manager = engine.state_manager
        self._running_executions: Dict[str, asyncio.Task] = {}
        engine.set_definition_resolver(self._resolve_definition)

    # -- definitions ----------------------------------------------------------

    async def register_definition(self, definition: WorkflowDefinition) -> CompiledWorkflow:
        """Validate, compile and store a definition under ``(id, version)``.

        Raises:
            WorkflowValidationError: if the definition is not valid
        """
        compiled = compile_workflow_definition(definition)
        await self.state_manager.save_definition(definition)
        logger.info(
            f"Registered workflow: {definition.name or definition.id} "
            f"(ID: {definition.id}, Version: {definition.version})"
        )
        return compiled

    async def get_definition(
        self, workflow_id: str, version: Optional[int] = None
    ) -> WorkflowDefinition:
        """Return a definition, the latest version when ``version`` is omitted."""
        return await self.state_manager.get_definition_or_throw(workflow_id, version)

    async def _resolve_definition(
        self, run: WorkflowRun
    ) -> Optional[Tuple[CompiledWorkflow, WorkflowDefinition]]:
        definition = await self.state_manager.get_definition(run.workflow_id, run.workflow_version)
        if not definition:
            return None
        return compile_workflow_definition(definition), definition

    # -- runs -----------------------------------------------------------------

    async def start_run(
        self,
        workflow_id: str,
        version: Optional[int] = None,
        input: Optional[Dict[str, Any]] = None,
        trigger_type: str = "manual",
        trigger_context: Optional[Dict[str, Any]] = None,
        correlation_id: Optional[str] = None,
    ) -> WorkflowRun:
        """Create a queued run and start executing it in the background."""
        definition = await self.get_definition(workflow_id, version)

        run = WorkflowRun(
            id=str(uuid.uuid4()),
            workflow_id=definition.id,
            workflow_version=definition.version,
            status=WorkflowRunStatus.QUEUED,
            trigger_type=trigger_type,
            trigger_context=trigger_context or {},
            input=input or {},
            correlation_id=correlation_id,
        )
        await self.state_manager.create_run(run)
        logger.info(f"Created workflow run: {run.id} ({definition.id} v{definition.version})")

        self._schedule(run.id)
        return run

    async def _transition(
        self, run_id: str, allowed: Collection[WorkflowRunStatus], action: str, **updates: Any
    ) -> WorkflowRun:
        run = await self.state_manager.transition_status(run_id, allowed, **updates)
        if run is None:
            current = await self.state_manager.get_by_id_or_throw(run_id)
            raise InvalidRunTransitionError(run_id, current.status.value, action)
        return run

    async def pause_run(self, run_id: str) -> WorkflowRun:
        run = await self._transition(run_id, PAUSABLE, "pause", status=WorkflowRunStatus.PAUSED)
        await self.state_manager.append_event(
            run_id,
            WorkflowEventType.RUN_PAUSED,
            {"node_id": run.current_node_id, "reason": "Paused by user"},
        )
        logger.info(f"Workflow run paused by user: {run_id}")
        return run

    async def cancel_run(self, run_id: str) -> WorkflowRun:
        run = await self._transition(
            run_id,
            CANCELLABLE,
            "cancel",
            status=WorkflowRunStatus.CANCELLED,
            completed_at=utcnow(),
            error="Cancelled by user",
        )
        await self.state_manager.append_event(
            run_id, WorkflowEventType.RUN_CANCELLED, {"node_id": run.current_node_id}
        )
        logger.info(f"Workflow run cancelled: {run_id}")
        return run

    async def resume_run(self, run_id: str) -> WorkflowRun:
        """Grant approval for the current node and requeue the run."""
        run = await self.state_manager.get_by_id_or_throw(run_id)
        if run.status not in RESUMABLE:
            raise InvalidRunTransitionError(run_id, run.status.value, "resume")

        run_input = dict(run.input)
        if run.current_node_id:
            approvals = dict(run_input.get("approvals") or {})
            approvals[run.current_node_id] = True
            run_input["approvals"] = approvals

        run = await self._transition(
            run_id,
            RESUMABLE,
            "resume",
            status=WorkflowRunStatus.QUEUED,
            input=run_input,
            error=None,
        )
        await self.state_manager.append_event(
            run_id,
            WorkflowEventType.RUN_RESUMED,
            {"current_node_id": run.current_node_id, "reason": "manual_resume"},
        )
        logger.info(f"Workflow run resumed: {run_id} at {run.current_node_id}")

        self._schedule(run_id)
        return run

    async def recover_in_flight_runs(self) -> List[str]:
        """Reschedule runs a previous process left queued or running.

        Attempts still marked running were interrupted and are closed as
        failed. The engine then resumes from the run's checkpoint, or runs
        the interrupted node again.

        Returns:
            IDs of the rescheduled runs.
        """
        recovered: List[str] = []
        for status in STARTABLE_STATUSES:
            for run in await self.state_manager.list_runs(status=status, limit=None):
                if run.id in self._running_executions:
                    continue

                if status == WorkflowRunStatus.RUNNING:
                    for node_run in await self.state_manager.get_node_runs(run.id):
                        if node_run.status == NodeRunStatus.RUNNING:
                            await self.state_manager.update_node_run(
                                node_run.id,
                                status=NodeRunStatus.FAILED,
                                error=INTERRUPTED_ATTEMPT_ERROR,
                                completed_at=utcnow(),
                            )
                    await self.state_manager.append_event(
                        run.id,
                        WorkflowEventType.RUN_RESUMED,
                        {"current_node_id": run.current_node_id, "reason": RECOVERY_REASON},
                    )

                self._schedule(run.id)
                recovered.append(run.id)

        if recovered:
            logger.warning(f"Recovered {len(recovered)} in-flight workflow run(s) after restart")
        return recovered

    async def get_run_details(self, run_id: str) -> WorkflowRunDetails:
        return await self.engine.get_run_with_details(run_id)

    async def list_runs(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[WorkflowRunStatus] = None,
        limit: int = 50,
    ) -> List[WorkflowRun]:
        return await self.state_manager.list_runs(workflow_id, status, limit)

    async def list_events(
        self, run_id: str, since: Optional[datetime] = None
    ) -> List[WorkflowEvent]:
        await self.state_manager.get_by_id_or_throw(run_id)
        return await self.state_manager.list_events(run_id, since=since)

    # -- background execution -------------------------------------------------

    def _schedule(self, run_id: str) -> asyncio.Task:
        previous = self._running_executions.get(run_id)

        async def drive() -> WorkflowRun:
            if previous and not previous.done():
                # A paused/cancelled execution may still be unwinding.
                await asyncio.wait([previous])
            return await self.engine.execute(run_id)

        task = asyncio.create_task(drive())
        self._running_executions[run_id] = task
        task.add_done_callback(lambda t: self._on_execution_done(run_id, t))
        return task

    def _on_execution_done(self, run_id: str, task: asyncio.Task) -> None:
        if self._running_executions.get(run_id) is task:
            del self._running_executions[run_id]
        if task.cancelled():
            return
        error = task.exception()
        if error:
            logger.error(f"Execution task for run {run_id} crashed: {error}")

    async def wait_for_run(self, run_id: str) -> WorkflowRun:
        """Wait until no background task drives the run, then return it."""
        while True:
            task = self._running_executions.get(run_id)
            if not task or task.done():
                break
            await asyncio.wait([task])
        return await self.state_manager.get_by_id_or_throw(run_id)

    async def shutdown(self) -> None:
        """Cancel outstanding executions; their runs stay running for recovery."""
        tasks = list(self._running_executions.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._running_executions.clear()
        logger.info(f"Workflow service shut down ({len(tasks)} executions cancelled)")
