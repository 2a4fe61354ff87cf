"""Workflow models and schemas for the durable run engine."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field, field_validator


def utcnow() -> datetime:
    """Timezone-aware current time used for every persisted timestamp."""
    return datetime.now(timezone.utc)


class WorkflowRunStatus(str, Enum):
    """Workflow run states."""

    QUEUED = "queued"
    RUNNING = "running"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    FAILED = "failed"


class NodeRunStatus(str, Enum):
    """Individual node attempt states."""

    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class WorkflowEventType(str, Enum):
    """Append-only audit log event types."""

    RUN_STARTED = "run_started"
    RUN_RESUMED = "run_resumed"
    RUN_PAUSED = "run_paused"
    RUN_CANCELLED = "run_cancelled"
    RUN_COMPLETED = "run_completed"
    RUN_FAILED = "run_failed"
    NODE_STARTED = "node_started"
    NODE_SUCCEEDED = "node_succeeded"
    NODE_FAILED = "node_failed"


class WorkflowNodeType(str, Enum):
    """Closed set of node types understood by the node executor."""

    START = "start"
    END = "end"
    TOOL = "tool"
    MCP_TOOL = "mcp_tool"
    CONNECTOR_TOOL = "connector_tool"
    AGENT_STEP = "agent_step"
    MEMORY_READ = "memory_read"
    MEMORY_WRITE = "memory_write"
    CONDITION = "condition"
    PARALLEL = "parallel"
    LOOP = "loop"
    WAIT = "wait"
    APPROVAL = "approval"
    SUBWORKFLOW = "subworkflow"
    NOTIFICATION = "notification"


class EdgeCondition(str, Enum):
    """Guard kinds for graph edges."""

    ALWAYS = "always"
    SUCCESS = "success"
    FAILURE = "failure"
    CUSTOM = "custom"


class RetryProfile(str, Enum):
    """Named retry presets."""

    FAST_SAFE = "fast_safe"
    BALANCED = "balanced"
    STRICT_ENTERPRISE = "strict_enterprise"


class RetryPolicy(BaseModel):
    """Retry configuration for failed node attempts."""

    max_attempts: int = Field(default=3, ge=1)
    backoff_ms: int = Field(default=1000, ge=0)
    max_backoff_ms: int = Field(default=20000, ge=0)
    jitter_ratio: float = Field(default=0.2, ge=0.0, le=1.0)


class CompensationConfig(BaseModel):
    """Remedial hook executed between failed attempts of a node."""

    enabled: bool = False
    strategy: str = "before_retry"
    prompt_template: Optional[str] = None
    max_turns: Optional[int] = Field(default=None, ge=1)
    model: Optional[str] = None
    working_directory: Optional[str] = None


class WorkflowNode(BaseModel):
    """Single node of a workflow definition.

    ``config`` is opaque to the engine except for the optional
    ``compensation`` sub-object.
    """

    id: str = Field(..., min_length=1, description="Unique node identifier")
    type: WorkflowNodeType
    name: Optional[str] = None
    config: Dict[str, Any] = Field(default_factory=dict)
    timeout_ms: Optional[int] = Field(default=None, gt=0)
    retry_profile: Optional[RetryProfile] = None
    retry: Optional[RetryPolicy] = None

    @property
    def display_name(self) -> str:
        return self.name or self.id


class WorkflowEdge(BaseModel):
    """Directed transition between two nodes."""

    id: Optional[str] = None
    from_node: str = Field(..., alias="from")
    to_node: str = Field(..., alias="to")
    condition: EdgeCondition = EdgeCondition.SUCCESS
    expression: Optional[str] = None
    label: Optional[str] = None

    model_config = {"populate_by_name": True}


class WorkflowDefaults(BaseModel):
    """Definition-wide execution defaults."""

    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    retry_profile: Optional[RetryProfile] = None
    node_timeout_ms: Optional[int] = Field(default=None, gt=0)
    max_run_time_ms: Optional[int] = Field(default=None, gt=0)
    working_directory: Optional[str] = None
    model: Optional[str] = None


class WorkflowDefinition(BaseModel):
    """Published, immutable workflow definition."""

    id: str = Field(..., min_length=1, description="Unique workflow identifier")
    version: int = Field(default=1, ge=1)
    name: str = Field(default="", max_length=120)
    description: Optional[str] = Field(default=None, max_length=1000)
    nodes: List[WorkflowNode] = Field(default_factory=list)
    edges: List[WorkflowEdge] = Field(default_factory=list)
    defaults: WorkflowDefaults = Field(default_factory=WorkflowDefaults)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def find_node(self, node_id: Optional[str]) -> Optional[WorkflowNode]:
        """Find a node by ID."""
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None


class RuntimeCheckpoint(BaseModel):
    """Durable marker of the last node known to have finished."""

    step: int = Field(..., ge=0)
    completed_node_id: str
    next_node_id: Optional[str] = None
    node_run_id: str
    recorded_at: datetime = Field(default_factory=utcnow)


class WorkflowRun(BaseModel):
    """One execution instance of a workflow definition."""

    id: str
    workflow_id: str
    workflow_version: int = Field(default=1, ge=1)
    status: WorkflowRunStatus = WorkflowRunStatus.QUEUED
    trigger_type: str = "manual"
    trigger_context: Dict[str, Any] = Field(default_factory=dict)
    input: Dict[str, Any] = Field(default_factory=dict)
    output: Dict[str, Any] = Field(default_factory=dict)
    checkpoint: Optional[RuntimeCheckpoint] = None
    current_node_id: Optional[str] = None
    error: Optional[str] = None
    correlation_id: Optional[str] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class WorkflowNodeRun(BaseModel):
    """One execution attempt of one node."""

    id: str
    run_id: str
    node_id: str
    attempt: int = Field(..., ge=1)
    status: NodeRunStatus = NodeRunStatus.RUNNING
    input: Dict[str, Any] = Field(default_factory=dict)
    output: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None


class WorkflowEvent(BaseModel):
    """Audit log entry for a run."""

    id: str
    run_id: str
    type: WorkflowEventType
    payload: Dict[str, Any] = Field(default_factory=dict)
    ts: datetime = Field(default_factory=utcnow)


class NodeExecutionResult(BaseModel):
    """What a node executor returns for one successful attempt."""

    output: Dict[str, Any] = Field(default_factory=dict)
    pause_requested: bool = False
    pause_reason: Optional[str] = None


class AgentPromptResult(BaseModel):
    """Result of a single agent prompt invocation."""

    content: str = ""
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None


class ValidationReport(BaseModel):
    """Outcome of static definition validation."""

    valid: bool
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class WorkflowCreateRequest(BaseModel):
    """API request for registering a workflow definition."""

    definition: Union[Dict[str, Any], str] = Field(
        ..., description="YAML/JSON workflow definition"
    )

    @field_validator("definition")
    @classmethod
    def validate_definition(cls, v: Union[Dict[str, Any], str]) -> Union[Dict[str, Any], str]:
        """Reject empty payloads early."""
        if isinstance(v, str) and not v.strip():
            raise ValueError("Definition cannot be empty")
        return v


class WorkflowRunRequest(BaseModel):
    """API request for starting a run."""

    version: Optional[int] = Field(default=None, ge=1)
    input: Dict[str, Any] = Field(default_factory=dict)
    trigger_type: str = "manual"
    trigger_context: Dict[str, Any] = Field(default_factory=dict)
    correlation_id: Optional[str] = None


class WorkflowRunDetails(BaseModel):
    """Run with its node attempts and audit trail."""

    run: WorkflowRun
    node_runs: List[WorkflowNodeRun] = Field(default_factory=list)
    events: List[WorkflowEvent] = Field(default_factory=list)
