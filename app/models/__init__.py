"""Data models package."""

from .workflow import (
    AgentPromptResult,
    CompensationConfig,
    EdgeCondition,
    NodeExecutionResult,
    NodeRunStatus,
    RetryPolicy,
    RetryProfile,
    RuntimeCheckpoint,
    ValidationReport,
    WorkflowCreateRequest,
    WorkflowDefaults,
    WorkflowDefinition,
    WorkflowEdge,
    WorkflowEvent,
    WorkflowEventType,
    WorkflowNode,
    WorkflowNodeRun,
    WorkflowNodeType,
    WorkflowRun,
    WorkflowRunDetails,
    WorkflowRunRequest,
    WorkflowRunStatus,
)

__all__ = [
    "AgentPromptResult",
    "CompensationConfig",
    "EdgeCondition",
    "NodeExecutionResult",
    "NodeRunStatus",
    "RetryPolicy",
    "RetryProfile",
    "RuntimeCheckpoint",
    "ValidationReport",
    "WorkflowCreateRequest",
    "WorkflowDefaults",
    "WorkflowDefinition",
    "WorkflowEdge",
    "WorkflowEvent",
    "WorkflowEventType",
    "WorkflowNode",
    "WorkflowNodeRun",
    "WorkflowNodeType",
    "WorkflowRun",
    "WorkflowRunDetails",
    "WorkflowRunRequest",
    "WorkflowRunStatus",
]
