"""State manager for workflow run persistence using Redis."""

import json
import uuid
from datetime import datetime, timezone
from typing import Any, Collection, Dict, List, Optional, Set

import redis.asyncio as aioredis
from loguru import logger

from ..models.workflow import (
    NodeRunStatus,
    WorkflowDefinition,
    WorkflowEvent,
    WorkflowEventType,
    WorkflowNodeRun,
    WorkflowRun,
    WorkflowRunStatus,
    utcnow,
)
from .errors import DefinitionNotFoundError, NodeRunNotFoundError, RunNotFoundError


class WorkflowStateManager:
    """Definition, run and event repositories backed by Redis.

    Definitions are JSON documents indexed by version per workflow id.
    Each run is one JSON document; node attempts are separate documents
    listed per run in creation order; events are an append-only list per
    run. ``update_status`` is an optimistic WATCH/MULTI read-modify-write
    so concurrent writers to the same run never lose each other's fields.
    """

    def __init__(self, redis_url: str = "redis://localhost:6379/0") -> None:
        """Initialize state manager with Redis connection settings."""
        self.redis_url = redis_url
        self._redis: Optional[aioredis.Redis] = None

    async def connect(self) -> None:
        """Establish Redis connection."""
        if not self._redis:
            self._redis = aioredis.from_url(
                self.redis_url, encoding="utf-8", decode_responses=True
            )
            logger.info("Connected to Redis for workflow state management")

    async def disconnect(self) -> None:
        """Close Redis connection."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None
            logger.info("Disconnected from Redis")

    async def _client(self) -> aioredis.Redis:
        if not self._redis:
            await self.connect()
        return self._redis

    def _definition_key(self, workflow_id: str, version: int) -> str:
        return f"workflow:definition:{workflow_id}:{version}"

    def _definition_versions_key(self, workflow_id: str) -> str:
        return f"workflow:definition_versions:{workflow_id}"

    def _run_key(self, run_id: str) -> str:
        return f"workflow:run:{run_id}"

    def _node_run_key(self, node_run_id: str) -> str:
        return f"workflow:node_run:{node_run_id}"

    def _node_runs_key(self, run_id: str) -> str:
        return f"workflow:node_runs:{run_id}"

    def _events_key(self, run_id: str) -> str:
        return f"workflow:events:{run_id}"

    def _all_runs_key(self) -> str:
        return "workflow:runs"

    def _workflow_index_key(self, workflow_id: str) -> str:
        return f"workflow:index:{workflow_id}"

    # -- definitions ---------------------------------------------------------

    async def save_definition(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        """Store a definition under its ``(id, version)``, replacing any previous copy."""
        client = await self._client()
        document = definition.model_dump(mode="json", by_alias=True)

        async with client.pipeline(transaction=True) as pipe:
            pipe.set(self._definition_key(definition.id, definition.version), json.dumps(document))
            pipe.zadd(self._definition_versions_key(definition.id), {str(definition.version): definition.version})
            await pipe.execute()

        logger.debug(f"Saved definition {definition.id} v{definition.version}")
        return definition

    async def get_definition(
        self, workflow_id: str, version: Optional[int] = None
    ) -> Optional[WorkflowDefinition]:
        """Load a definition, the highest stored version when ``version`` is omitted."""
        client = await self._client()
        if version is None:
            latest = await client.zrevrange(self._definition_versions_key(workflow_id), 0, 0)
            if not latest:
                return None
            version = int(latest[0])

        data = await client.get(self._definition_key(workflow_id, version))
        if not data:
            return None
        return WorkflowDefinition.model_validate(json.loads(data))

    async def get_definition_or_throw(
        self, workflow_id: str, version: Optional[int] = None
    ) -> WorkflowDefinition:
        definition = await self.get_definition(workflow_id, version)
        if not definition:
            raise DefinitionNotFoundError(workflow_id, version=version)
        return definition

    # -- runs ---------------------------------------------------------------

    async def create_run(self, run: WorkflowRun) -> WorkflowRun:
        """Persist a new run and index it by workflow."""
        client = await self._client()
        score = run.created_at.timestamp()

        async with client.pipeline(transaction=True) as pipe:
            pipe.set(self._run_key(run.id), json.dumps(run.model_dump(mode="json")))
            pipe.zadd(self._all_runs_key(), {run.id: score})
            pipe.zadd(self._workflow_index_key(run.workflow_id), {run.id: score})
            await pipe.execute()

        logger.debug(f"Created run {run.id} for workflow {run.workflow_id}")
        return run

    async def get_by_id(self, run_id: str) -> Optional[WorkflowRun]:
        client = await self._client()
        data = await client.get(self._run_key(run_id))
        if not data:
            return None
        return WorkflowRun(**json.loads(data))

    async def get_by_id_or_throw(self, run_id: str) -> WorkflowRun:
        run = await self.get_by_id(run_id)
        if not run:
            raise RunNotFoundError(run_id)
        return run

    async def update_status(self, run_id: str, **updates: Any) -> WorkflowRun:
        """Merge ``updates`` into the stored run atomically.

        Pass a field explicitly as ``None`` to clear it.
        """
        return await self._merge_run(run_id, None, updates)

    async def transition_status(
        self,
        run_id: str,
        from_statuses: Collection[WorkflowRunStatus],
        **updates: Any,
    ) -> Optional[WorkflowRun]:
        """Like ``update_status``, but only while the stored status is in ``from_statuses``.

        Returns:
            The updated run, or ``None`` when the stored status did not allow
            the transition and nothing was written.
        """
        return await self._merge_run(run_id, {s.value for s in from_statuses}, updates)

    async def _merge_run(
        self, run_id: str, allowed: Optional[Set[str]], updates: Dict[str, Any]
    ) -> Optional[WorkflowRun]:
        client = await self._client()
        key = self._run_key(run_id)
        updated: Optional[WorkflowRun] = None

        async def apply(pipe: Any) -> None:
            nonlocal updated
            data = await pipe.get(key)
            if not data:
                raise RunNotFoundError(run_id)
            stored = json.loads(data)
            if allowed is not None and stored.get("status") not in allowed:
                updated = None
                await pipe.unwatch()
                return
            merged = {**stored, **updates, "updated_at": utcnow()}
            updated = WorkflowRun.model_validate(merged)
            pipe.multi()
            pipe.set(key, json.dumps(updated.model_dump(mode="json")))

        await client.transaction(apply, key)
        if updated is None:
            logger.debug(f"Skipped update of run {run_id}: status not in {sorted(allowed)}")
        else:
            logger.debug(
                f"Updated run {run_id}: status={updated.status.value} "
                f"fields={sorted(updates)}"
            )
        return updated

    async def list_runs(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[WorkflowRunStatus] = None,
        limit: Optional[int] = 50,
    ) -> List[WorkflowRun]:
        """List runs newest first with optional filtering; ``limit=None`` lists all."""
        client = await self._client()
        index_key = (
            self._workflow_index_key(workflow_id) if workflow_id else self._all_runs_key()
        )
        run_ids = await client.zrevrange(index_key, 0, -1)

        runs: List[WorkflowRun] = []
        for run_id in run_ids:
            run = await self.get_by_id(run_id)
            if run and (not status or run.status == status):
                runs.append(run)
                if limit is not None and len(runs) >= limit:
                    break
        return runs

    # -- node runs ----------------------------------------------------------

    async def create_node_run(
        self,
        run_id: str,
        node_id: str,
        attempt: int,
        input: Optional[Dict[str, Any]] = None,
        status: NodeRunStatus = NodeRunStatus.RUNNING,
        output: Optional[Dict[str, Any]] = None,
    ) -> WorkflowNodeRun:
        """Record a node attempt before it executes."""
        client = await self._client()
        node_run = WorkflowNodeRun(
            id=str(uuid.uuid4()),
            run_id=run_id,
            node_id=node_id,
            attempt=attempt,
            status=status,
            input=input or {},
            output=output,
        )

        async with client.pipeline(transaction=True) as pipe:
            pipe.set(self._node_run_key(node_run.id), json.dumps(node_run.model_dump(mode="json")))
            pipe.rpush(self._node_runs_key(run_id), node_run.id)
            await pipe.execute()

        return node_run

    async def get_node_run(self, node_run_id: str) -> Optional[WorkflowNodeRun]:
        client = await self._client()
        data = await client.get(self._node_run_key(node_run_id))
        if not data:
            return None
        return WorkflowNodeRun(**json.loads(data))

    async def update_node_run(self, node_run_id: str, **updates: Any) -> WorkflowNodeRun:
        client = await self._client()
        existing = await self.get_node_run(node_run_id)
        if not existing:
            raise NodeRunNotFoundError(node_run_id)

        updated = WorkflowNodeRun.model_validate({**existing.model_dump(), **updates})
        await client.set(
            self._node_run_key(node_run_id), json.dumps(updated.model_dump(mode="json"))
        )
        return updated

    async def get_node_runs(self, run_id: str) -> List[WorkflowNodeRun]:
        """All attempts of a run in the order they were created."""
        client = await self._client()
        node_run_ids = await client.lrange(self._node_runs_key(run_id), 0, -1)

        node_runs = []
        for node_run_id in node_run_ids:
            node_run = await self.get_node_run(node_run_id)
            if node_run:
                node_runs.append(node_run)
        return node_runs

    # -- events -------------------------------------------------------------

    async def append_event(
        self,
        run_id: str,
        event_type: WorkflowEventType,
        payload: Optional[Dict[str, Any]] = None,
    ) -> WorkflowEvent:
        client = await self._client()
        event = WorkflowEvent(
            id=str(uuid.uuid4()),
            run_id=run_id,
            type=event_type,
            payload=payload or {},
        )
        await client.rpush(self._events_key(run_id), json.dumps(event.model_dump(mode="json")))
        logger.debug(f"Run {run_id} event: {event_type.value}")
        return event

    async def list_events(
        self, run_id: str, since: Optional[datetime] = None
    ) -> List[WorkflowEvent]:
        """Retrieve the audit trail of a run, optionally only events after ``since``."""
        client = await self._client()
        raw_events = await client.lrange(self._events_key(run_id), 0, -1)

        events = [WorkflowEvent(**json.loads(raw)) for raw in raw_events]
        if since is not None:
            if since.tzinfo is None:
                since = since.replace(tzinfo=timezone.utc)
            events = [event for event in events if event.ts > since]
        return events
