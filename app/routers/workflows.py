"""Workflow API endpoints for definitions and run lifecycle."""

from datetime import datetime
from typing import Any, Dict, List, Optional

import yaml
from fastapi import APIRouter, HTTPException, Query, status
from loguru import logger
from pydantic import ValidationError

from ..agents.prompt_executor import AgentPromptExecutor
from ..config import WorkflowSettings, get_settings
from ..models.workflow import (
    WorkflowCreateRequest,
    WorkflowDefinition,
    WorkflowRun,
    WorkflowRunDetails,
    WorkflowRunRequest,
    WorkflowRunStatus,
)
from ..workflows.engine import WorkflowEngine
from ..workflows.errors import (
    DefinitionNotFoundError,
    InvalidRunTransitionError,
    RunNotFoundError,
    WorkflowValidationError,
)
from ..workflows.service import WorkflowService
from ..workflows.state_manager import WorkflowStateManager

router = APIRouter(prefix="/api/v1/workflows", tags=["workflows"])

# Global instances (initialized on first request)
_settings: Optional[WorkflowSettings] = None
_service: Optional[WorkflowService] = None


def configure_workflow_service(settings: WorkflowSettings) -> None:
    """Use ``settings`` when the service is built on first request."""
    global _settings
    _settings = settings


def get_workflow_service() -> WorkflowService:
    """Get or create the workflow service instance."""
    global _service

    if not _service:
        settings = _settings or get_settings()
        state_manager = WorkflowStateManager(settings.redis_url)
        engine = WorkflowEngine(
            state_manager,
            AgentPromptExecutor(settings),
            max_execution_steps=settings.max_execution_steps,
            default_node_timeout_ms=settings.default_node_timeout_ms,
            default_run_timeout_ms=settings.default_run_timeout_ms,
        )
        _service = WorkflowService(engine)

    return _service


async def recover_workflow_runs() -> List[str]:
    """Reschedule runs left in flight by a previous process."""
    return await get_workflow_service().recover_in_flight_runs()


async def shutdown_workflow_service() -> None:
    global _service

    if _service:
        await _service.shutdown()
        await _service.state_manager.disconnect()
        _service = None


def _parse_definition(raw: Any) -> WorkflowDefinition:
    definition_dict = yaml.safe_load(raw) if isinstance(raw, str) else raw
    if not isinstance(definition_dict, dict):
        raise ValueError("Definition must be a mapping")
    return WorkflowDefinition.model_validate(definition_dict)


@router.post(
    "/definitions",
    response_model=WorkflowDefinition,
    status_code=status.HTTP_201_CREATED,
    summary="Register a workflow definition",
)
async def create_definition(request: WorkflowCreateRequest) -> WorkflowDefinition:
    """
    Register a workflow definition from YAML or JSON.

    Example workflow definition:
    ```yaml
    id: triage
    version: 1
    nodes:
      - {id: a, type: agent_step, config: {prompt_template: "Triage {{run.input.ticket}}"}}
      - {id: b, type: approval}
      - {id: c, type: end}
    edges:
      - {from: a, to: b, condition: always}
      - {from: b, to: c, condition: custom, expression: "eq(current.approved, true)"}
    ```
    """
    try:
        definition = _parse_definition(request.definition)
        await get_workflow_service().register_definition(definition)
    except (yaml.YAMLError, ValueError, ValidationError, WorkflowValidationError) as e:
        logger.error(f"Failed to register workflow: {e}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid workflow definition: {str(e)}",
        )

    logger.info(f"Created workflow: {definition.name or definition.id} (ID: {definition.id})")
    return definition


@router.get(
    "/definitions/{workflow_id}",
    response_model=WorkflowDefinition,
    summary="Get a workflow definition",
)
async def get_definition(workflow_id: str, version: Optional[int] = None) -> WorkflowDefinition:
    try:
        return await get_workflow_service().get_definition(workflow_id, version)
    except DefinitionNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.post(
    "/{workflow_id}/runs",
    status_code=status.HTTP_202_ACCEPTED,
    summary="Start a workflow run",
)
async def start_run(workflow_id: str, request: WorkflowRunRequest) -> Dict[str, Any]:
    """
    Start a run of the latest (or requested) version of a workflow.

    The run executes asynchronously. Use the returned run_id with
    ``GET /runs/{run_id}`` to follow its progress.
    """
    try:
        run = await get_workflow_service().start_run(
            workflow_id,
            version=request.version,
            input=request.input,
            trigger_type=request.trigger_type,
            trigger_context=request.trigger_context,
            correlation_id=request.correlation_id,
        )
    except DefinitionNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to start workflow run: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to start workflow run: {str(e)}",
        )

    logger.info(f"Started workflow run: {run.id}")
    return {
        "run_id": run.id,
        "workflow_id": run.workflow_id,
        "workflow_version": run.workflow_version,
        "status": run.status.value,
    }


@router.get("/runs", summary="List workflow runs")
async def list_runs(
    workflow_id: Optional[str] = None,
    status_filter: Optional[WorkflowRunStatus] = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=500),
) -> Dict[str, Any]:
    runs = await get_workflow_service().list_runs(workflow_id, status_filter, limit)
    return {
        "total": len(runs),
        "runs": [
            {
                "run_id": run.id,
                "workflow_id": run.workflow_id,
                "workflow_version": run.workflow_version,
                "status": run.status.value,
                "current_node_id": run.current_node_id,
                "created_at": run.created_at.isoformat(),
                "started_at": run.started_at.isoformat() if run.started_at else None,
                "completed_at": run.completed_at.isoformat() if run.completed_at else None,
            }
            for run in runs
        ],
    }


@router.get(
    "/runs/{run_id}",
    response_model=WorkflowRunDetails,
    summary="Get a run with its node attempts and events",
)
async def get_run(run_id: str) -> WorkflowRunDetails:
    try:
        return await get_workflow_service().get_run_details(run_id)
    except RunNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.get("/runs/{run_id}/events", summary="Get the audit trail of a run")
async def get_run_events(
    run_id: str,
    since: Optional[datetime] = Query(default=None, description="Only events after this timestamp"),
) -> Dict[str, Any]:
    try:
        events = await get_workflow_service().list_events(run_id, since=since)
    except RunNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    return {
        "run_id": run_id,
        "total": len(events),
        "events": [event.model_dump(mode="json") for event in events],
    }


async def _transition(run_id: str, action: str) -> WorkflowRun:
    service = get_workflow_service()
    operations = {
        "pause": service.pause_run,
        "cancel": service.cancel_run,
        "resume": service.resume_run,
    }
    try:
        return await operations[action](run_id)
    except RunNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except InvalidRunTransitionError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


@router.post("/runs/{run_id}/pause", response_model=WorkflowRun, summary="Pause a run")
async def pause_run(run_id: str) -> WorkflowRun:
    return await _transition(run_id, "pause")


@router.post("/runs/{run_id}/cancel", response_model=WorkflowRun, summary="Cancel a run")
async def cancel_run(run_id: str) -> WorkflowRun:
    return await _transition(run_id, "cancel")


@router.post(
    "/runs/{run_id}/resume",
    response_model=WorkflowRun,
    summary="Resume a paused run, approving its current node",
)
async def resume_run(run_id: str) -> WorkflowRun:
    return await _transition(run_id, "resume")
