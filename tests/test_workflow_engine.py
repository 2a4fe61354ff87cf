"""Tests for the durable workflow engine."""

import asyncio
from datetime import timedelta
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock

import pytest

from app.models.workflow import (
    NodeExecutionResult,
    NodeRunStatus,
    RetryPolicy,
    RuntimeCheckpoint,
    WorkflowDefinition,
    WorkflowEventType,
    WorkflowRun,
    WorkflowRunStatus,
    utcnow,
)
from app.workflows.compiler import compile_workflow_definition
from app.workflows.engine import (
    MAX_EXECUTION_STEPS,
    RESUME_REASON,
    WorkflowEngine,
)
from app.workflows.state_manager import WorkflowStateManager

NO_BACKOFF = {"max_attempts": 1, "backoff_ms": 0}


def _definition(nodes, edges=None, **defaults) -> WorkflowDefinition:
    return WorkflowDefinition.model_validate(
        {"id": "wf", "version": 1, "nodes": nodes, "edges": edges or [], "defaults": defaults}
    )


def _engine(state_manager, agent, definition, **options) -> WorkflowEngine:
    compiled = compile_workflow_definition(definition)
    options.setdefault("sleep", AsyncMock())
    return WorkflowEngine(
        state_manager,
        agent,
        definition_resolver=lambda run: (compiled, definition),
        **options,
    )


async def _create_run(state_manager, **fields) -> WorkflowRun:
    run = WorkflowRun(id=fields.pop("id", "run-1"), workflow_id="wf", **fields)
    return await state_manager.create_run(run)


async def _event_types(state_manager, run_id="run-1") -> List[WorkflowEventType]:
    return [event.type for event in await state_manager.list_events(run_id)]


class ScriptedExecutor:
    """Node executor returning canned results per node id."""

    def __init__(self, results: Dict[str, List[Any]]) -> None:
        self.results = results
        self.calls: List[str] = []

    async def execute(self, node, context) -> NodeExecutionResult:
        self.calls.append(node.id)
        queue = self.results.get(node.id)
        result: Optional[Any] = queue.pop(0) if queue else None
        if isinstance(result, Exception):
            raise result
        if callable(result):
            return await result()
        return result or NodeExecutionResult(output={"ok": True})


@pytest.fixture
def three_node_definition():
    return _definition(
        [
            {"id": "triage", "type": "agent_step", "config": {"prompt_template": "Triage {{run.input.ticket}}"}},
            {"id": "check", "type": "condition", "config": {"expression": 'eq(current.status, "ok")'}},
            {"id": "done", "type": "end"},
        ],
        [
            {"from": "triage", "to": "check", "condition": "success"},
            {"from": "check", "to": "done", "condition": "always"},
        ],
        retry_profile="balanced",
    )


@pytest.mark.integration
@pytest.mark.asyncio
class TestWorkflowEngineExecution:
    async def test_three_node_run_with_retries(
        self, redis_state_manager, make_agent, three_node_definition
    ):
        agent = make_agent([RuntimeError("rate limited"), RuntimeError("rate limited"), "triaged"])
        sleep = AsyncMock()
        engine = _engine(redis_state_manager, agent, three_node_definition, sleep=sleep)
        await _create_run(redis_state_manager, input={"ticket": "T-1"})

        run = await engine.execute("run-1")

        assert run.status == WorkflowRunStatus.COMPLETED
        assert run.current_node_id is None
        assert run.error is None
        assert run.output["steps"] == 3
        assert run.output["nodes"]["triage"]["text"] == "triaged"
        assert run.output["nodes"]["check"]["result"] is False

        node_runs = await redis_state_manager.get_node_runs("run-1")
        triage_runs = [n for n in node_runs if n.node_id == "triage"]
        assert [(n.attempt, n.status) for n in triage_runs] == [
            (1, NodeRunStatus.FAILED),
            (2, NodeRunStatus.FAILED),
            (3, NodeRunStatus.SUCCEEDED),
        ]
        assert triage_runs[0].error == "rate limited"
        assert triage_runs[2].input["node_config"]["prompt_template"] == "Triage {{run.input.ticket}}"

        events = await redis_state_manager.list_events("run-1")
        types = [e.type for e in events]
        assert types[0] == WorkflowEventType.RUN_STARTED
        assert types[-1] == WorkflowEventType.RUN_COMPLETED
        failed = [e for e in events if e.type == WorkflowEventType.NODE_FAILED]
        assert [e.payload["will_retry"] for e in failed] == [True, True]
        assert all(e.payload["node_id"] == "triage" for e in failed)
        succeeded = [e.payload["node_id"] for e in events if e.type == WorkflowEventType.NODE_SUCCEEDED]
        assert succeeded == ["triage", "check", "done"]

        # balanced profile: 1000ms then 2000ms base delays with 20% jitter
        delays = [call.args[0] for call in sleep.await_args_list]
        assert 800 <= delays[0] <= 1200
        assert 1600 <= delays[1] <= 2400
        assert all(call["run_id"] == "run-1" for call in agent.calls)
        assert agent.calls[0]["prompt"] == "Triage T-1"

    async def test_exhausted_retries_fail_run(self, redis_state_manager, make_agent, three_node_definition):
        agent = make_agent([RuntimeError("down")] * 3)
        engine = _engine(redis_state_manager, agent, three_node_definition)
        await _create_run(redis_state_manager)

        run = await engine.execute("run-1")

        assert run.status == WorkflowRunStatus.FAILED
        assert run.error == "down"
        assert run.completed_at is not None
        events = await redis_state_manager.list_events("run-1")
        assert events[-1].type == WorkflowEventType.RUN_FAILED
        assert events[-1].payload == {"error": "down", "node_id": "triage"}
        assert [e.payload["will_retry"] for e in events if e.type == WorkflowEventType.NODE_FAILED] == [
            True,
            True,
            False,
        ]

    async def test_run_input_retry_profile(self, redis_state_manager, make_agent, three_node_definition):
        three_node_definition.defaults.retry_profile = None
        agent = make_agent([RuntimeError("down")] * 5)
        engine = _engine(redis_state_manager, agent, three_node_definition)
        await _create_run(redis_state_manager, input={"retryProfile": "fast_safe"})

        await engine.execute("run-1")

        assert len(await redis_state_manager.get_node_runs("run-1")) == 2

    async def test_pause_requested_by_node(self, redis_state_manager, recording_agent):
        definition = _definition(
            [{"id": "gate", "type": "approval"}, {"id": "end", "type": "end"}],
            [{"from": "gate", "to": "end"}],
        )
        executor = ScriptedExecutor(
            {"gate": [NodeExecutionResult(pause_requested=True, pause_reason="awaiting approval")]}
        )
        engine = _engine(redis_state_manager, recording_agent, definition, node_executor=executor)
        await _create_run(redis_state_manager)

        run = await engine.execute("run-1")

        assert run.status == WorkflowRunStatus.PAUSED
        assert run.error == "awaiting approval"
        assert run.current_node_id == "gate"
        assert run.checkpoint is None
        types = await _event_types(redis_state_manager)
        assert types[-1] == WorkflowEventType.RUN_PAUSED
        assert WorkflowEventType.RUN_COMPLETED not in types
        assert WorkflowEventType.RUN_FAILED not in types

    async def test_approval_resumes_after_grant(self, redis_state_manager, recording_agent):
        definition = _definition(
            [{"id": "gate", "type": "approval"}, {"id": "end", "type": "end"}],
            [{"from": "gate", "to": "end"}],
        )
        engine = _engine(redis_state_manager, recording_agent, definition)
        await _create_run(redis_state_manager)

        paused = await engine.execute("run-1")
        assert paused.error == "Approval required"

        await redis_state_manager.update_status(
            "run-1", status=WorkflowRunStatus.QUEUED, input={"approvals": {"gate": True}}
        )
        run = await engine.execute("run-1")

        assert run.status == WorkflowRunStatus.COMPLETED
        assert run.output["nodes"]["gate"] == {"approved": True}

    async def test_idempotent_resume_from_checkpoint(self, redis_state_manager, recording_agent):
        definition = _definition(
            [
                {"id": "a", "type": "agent_step", "config": {"prompt": "work"}},
                {"id": "b", "type": "end"},
            ],
            [{"from": "a", "to": "b"}],
        )
        node_run = await redis_state_manager.create_node_run(
            "run-1", "a", 1, status=NodeRunStatus.SUCCEEDED, output={"text": "already done"}
        )
        await _create_run(
            redis_state_manager,
            status=WorkflowRunStatus.RUNNING,
            started_at=utcnow(),
            current_node_id="a",
            checkpoint=RuntimeCheckpoint(step=1, completed_node_id="a", node_run_id=node_run.id),
        )
        engine = _engine(redis_state_manager, recording_agent, definition)

        run = await engine.execute("run-1")

        assert run.status == WorkflowRunStatus.COMPLETED
        assert recording_agent.calls == []
        assert run.output["steps"] == 2
        assert run.output["nodes"]["a"] == {"text": "already done"}
        assert [n.node_id for n in await redis_state_manager.get_node_runs("run-1")] == ["a", "b"]

        events = await redis_state_manager.list_events("run-1")
        assert [e.type for e in events[:2]] == [WorkflowEventType.RUN_STARTED, WorkflowEventType.RUN_RESUMED]
        assert events[1].payload == {
            "from_node_id": "a",
            "to_node_id": "b",
            "checkpoint_step": 1,
            "reason": RESUME_REASON,
        }

    async def test_resume_skipped_when_latest_attempt_is_not_checkpointed(
        self, redis_state_manager, recording_agent
    ):
        definition = _definition(
            [{"id": "a", "type": "agent_step", "config": {"prompt": "work"}}, {"id": "b", "type": "end"}],
            [{"from": "a", "to": "b"}],
        )
        checkpointed = await redis_state_manager.create_node_run(
            "run-1", "a", 1, status=NodeRunStatus.SUCCEEDED, output={"text": "first visit"}
        )
        await redis_state_manager.create_node_run("run-1", "a", 1, status=NodeRunStatus.FAILED)
        await _create_run(
            redis_state_manager,
            current_node_id="a",
            checkpoint=RuntimeCheckpoint(step=3, completed_node_id="a", node_run_id=checkpointed.id),
        )
        engine = _engine(redis_state_manager, recording_agent, definition)

        run = await engine.execute("run-1")

        assert run.status == WorkflowRunStatus.COMPLETED
        assert len(recording_agent.calls) == 1
        assert WorkflowEventType.RUN_RESUMED not in await _event_types(redis_state_manager)
        assert run.output["steps"] == 5

    async def test_cancel_during_backoff_stops_retries(self, redis_state_manager, make_agent):
        definition = _definition(
            [{"id": "a", "type": "tool"}, {"id": "b", "type": "end"}],
            [{"from": "a", "to": "b"}],
            retry_profile="strict_enterprise",
        )
        agent = make_agent([RuntimeError("flaky")] * 5)

        async def cancel_while_sleeping(delay_ms):
            await redis_state_manager.update_status(
                "run-1", status=WorkflowRunStatus.CANCELLED, error="Cancelled by user"
            )

        engine = _engine(redis_state_manager, agent, definition, sleep=cancel_while_sleeping)
        await _create_run(redis_state_manager)

        run = await engine.execute("run-1")

        assert run.status == WorkflowRunStatus.CANCELLED
        assert run.error == "Cancelled by user"
        types = await _event_types(redis_state_manager)
        assert types.count(WorkflowEventType.NODE_STARTED) == 1
        assert types[-1] == WorkflowEventType.NODE_FAILED
        assert WorkflowEventType.RUN_FAILED not in types

    async def test_external_pause_wins_over_in_flight_result(self, redis_state_manager, recording_agent):
        definition = _definition(
            [{"id": "a", "type": "tool"}, {"id": "b", "type": "tool"}, {"id": "c", "type": "end"}],
            [{"from": "a", "to": "b"}, {"from": "b", "to": "c"}],
        )

        async def pause_mid_call():
            await redis_state_manager.update_status("run-1", status=WorkflowRunStatus.PAUSED)
            return NodeExecutionResult(output={"ok": True})

        executor = ScriptedExecutor({"a": [pause_mid_call]})
        engine = _engine(redis_state_manager, recording_agent, definition, node_executor=executor)
        await _create_run(redis_state_manager)

        run = await engine.execute("run-1")

        assert run.status == WorkflowRunStatus.PAUSED
        assert executor.calls == ["a"]
        assert run.checkpoint.completed_node_id == "a"
        assert run.checkpoint.next_node_id == "b"

    async def test_cancel_wins_over_in_flight_pause_request(self, redis_state_manager, recording_agent):
        definition = _definition(
            [{"id": "gate", "type": "approval"}, {"id": "end", "type": "end"}],
            [{"from": "gate", "to": "end"}],
        )

        async def cancel_mid_call():
            await redis_state_manager.update_status(
                "run-1", status=WorkflowRunStatus.CANCELLED, error="Cancelled by user"
            )
            return NodeExecutionResult(pause_requested=True, pause_reason="awaiting approval")

        executor = ScriptedExecutor({"gate": [cancel_mid_call]})
        engine = _engine(redis_state_manager, recording_agent, definition, node_executor=executor)
        await _create_run(redis_state_manager)

        run = await engine.execute("run-1")

        assert run.status == WorkflowRunStatus.CANCELLED
        assert run.error == "Cancelled by user"
        assert WorkflowEventType.RUN_PAUSED not in await _event_types(redis_state_manager)

    async def test_stopped_run_is_not_executed(self, redis_state_manager, recording_agent):
        definition = _definition([{"id": "a", "type": "tool"}, {"id": "b", "type": "end"}], [{"from": "a", "to": "b"}])
        engine = _engine(redis_state_manager, recording_agent, definition)
        await _create_run(redis_state_manager, status=WorkflowRunStatus.CANCELLED, error="Cancelled by user")

        run = await engine.execute("run-1")

        assert run.status == WorkflowRunStatus.CANCELLED
        assert recording_agent.calls == []
        assert await _event_types(redis_state_manager) == []

    async def test_step_cap_on_cycle(self, redis_state_manager, recording_agent):
        definition = _definition(
            [{"id": "ping", "type": "loop"}, {"id": "pong", "type": "loop"}],
            [{"from": "ping", "to": "pong"}, {"from": "pong", "to": "ping"}],
        )
        engine = _engine(redis_state_manager, recording_agent, definition)
        await _create_run(redis_state_manager)

        run = await engine.execute("run-1")

        assert MAX_EXECUTION_STEPS == 2000
        assert run.status == WorkflowRunStatus.FAILED
        assert run.error == "Workflow exceeded max execution steps (2000)."
        assert len(await redis_state_manager.get_node_runs("run-1")) == 2000

    async def test_run_deadline(self, redis_state_manager, recording_agent):
        definition = _definition(
            [{"id": "a", "type": "tool"}, {"id": "b", "type": "end"}],
            [{"from": "a", "to": "b"}],
            max_run_time_ms=1000,
        )
        engine = _engine(redis_state_manager, recording_agent, definition)
        await _create_run(redis_state_manager, started_at=utcnow() - timedelta(seconds=5))

        run = await engine.execute("run-1")

        assert run.status == WorkflowRunStatus.FAILED
        assert run.error == "Run timed out after 1000ms"
        assert recording_agent.calls == []

    async def test_node_timeout_is_retryable_error(self, redis_state_manager, recording_agent):
        definition = _definition(
            [
                {"id": "slow", "type": "tool", "timeout_ms": 20, "retry": {"max_attempts": 2, "backoff_ms": 0}},
                {"id": "end", "type": "end"},
            ],
            [{"from": "slow", "to": "end"}],
        )

        async def hang():
            await asyncio.sleep(5)

        executor = ScriptedExecutor({"slow": [hang, hang]})
        engine = _engine(redis_state_manager, recording_agent, definition, node_executor=executor)
        await _create_run(redis_state_manager)

        run = await engine.execute("run-1")

        assert run.status == WorkflowRunStatus.FAILED
        assert run.error == "Node slow timed out after 20ms"
        node_runs = await redis_state_manager.get_node_runs("run-1")
        assert [n.status for n in node_runs] == [NodeRunStatus.FAILED, NodeRunStatus.FAILED]

    async def test_compensation_runs_before_retry(self, redis_state_manager, make_agent):
        definition = _definition(
            [
                {
                    "id": "deploy",
                    "type": "tool",
                    "retry": {"max_attempts": 2, "backoff_ms": 0},
                    "config": {
                        "target": "prod",
                        "compensation": {"enabled": True, "prompt_template": "Roll back {{compensation.node_id}}"},
                    },
                },
                {"id": "end", "type": "end"},
            ],
            [{"from": "deploy", "to": "end"}],
        )
        agent = make_agent([RuntimeError("half deployed"), "rolled back", "deployed"])
        engine = _engine(redis_state_manager, agent, definition)
        await _create_run(redis_state_manager)

        run = await engine.execute("run-1")

        assert run.status == WorkflowRunStatus.COMPLETED
        assert [call["prompt"] for call in agent.calls][1] == "Roll back deploy"
        first_attempt = (await redis_state_manager.get_node_runs("run-1"))[0]
        assert first_attempt.output["compensation"]["applied"] is True

        failed = [
            e for e in await redis_state_manager.list_events("run-1") if e.type == WorkflowEventType.NODE_FAILED
        ]
        assert failed[0].payload["compensation_attempted"] is True
        assert failed[0].payload["compensation_applied"] is True
        assert failed[0].payload["compensation_error"] is None

    async def test_missing_definition_fails_run(self, redis_state_manager, recording_agent):
        engine = WorkflowEngine(redis_state_manager, recording_agent)
        await _create_run(redis_state_manager)

        run = await engine.execute("run-1")

        assert run.status == WorkflowRunStatus.FAILED
        assert run.error == "Workflow definition not found for run run-1"

    async def test_missing_definition_does_not_override_cancel(self, redis_state_manager, recording_agent):
        async def cancel_then_miss(run):
            await redis_state_manager.update_status(
                run.id, status=WorkflowRunStatus.CANCELLED, error="Cancelled by user"
            )
            return None

        engine = WorkflowEngine(redis_state_manager, recording_agent, definition_resolver=cancel_then_miss)
        await _create_run(redis_state_manager)

        run = await engine.execute("run-1")

        assert run.status == WorkflowRunStatus.CANCELLED
        assert run.error == "Cancelled by user"
        assert WorkflowEventType.RUN_FAILED not in await _event_types(redis_state_manager)

    async def test_missing_node_fails_run(self, redis_state_manager, recording_agent):
        definition = _definition([{"id": "a", "type": "end"}])
        engine = _engine(redis_state_manager, recording_agent, definition)
        await _create_run(redis_state_manager, current_node_id="ghost")

        run = await engine.execute("run-1")

        assert run.status == WorkflowRunStatus.FAILED
        assert run.error == "Node not found: ghost"


@pytest.mark.unit
class TestEdgeSelection:
    def _select(self, edges, output, run_context=None):
        definition = _definition(
            [{"id": "a", "type": "tool"}, {"id": "x", "type": "end"}, {"id": "y", "type": "end"}],
            edges,
        )
        engine = WorkflowEngine(AsyncMock(spec=WorkflowStateManager), AsyncMock())
        compiled = compile_workflow_definition(definition)
        return engine.select_next_edge(compiled, "a", output, run_context or {})

    def test_always_edge_wins_over_matching_custom_edge(self):
        edge = self._select(
            [
                {"id": "plain", "from": "a", "to": "x", "condition": "always"},
                {"id": "guarded", "from": "a", "to": "y", "condition": "custom", "expression": "current.ok"},
            ],
            {"ok": True},
        )
        assert edge.id == "plain"

    def test_custom_edge_in_declaration_order(self):
        edges = [
            {"id": "approved", "from": "a", "to": "x", "condition": "custom", "expression": 'eq(current.verdict, "approve")'},
            {"id": "fallback", "from": "a", "to": "y", "condition": "success"},
        ]
        assert self._select(edges, {"verdict": "approve"}).id == "approved"
        assert self._select(edges, {"verdict": "reject"}).id == "fallback"

    def test_failure_edges_are_not_followed(self):
        assert self._select([{"from": "a", "to": "x", "condition": "failure"}], {}) is None

    def test_no_match_is_implicit_end(self):
        edge = self._select(
            [{"from": "a", "to": "x", "condition": "custom", "expression": "approvals.a"}],
            {},
            {"approvals": {}},
        )
        assert edge is None

    def test_custom_edge_sees_run_context(self):
        edge = self._select(
            [{"id": "vip", "from": "a", "to": "x", "condition": "custom", "expression": "run.input.vip"}],
            {},
            {"run": {"input": {"vip": True}}},
        )
        assert edge.id == "vip"
