"""Error taxonomy for workflow execution."""

from typing import List, Optional


class WorkflowError(Exception):
    """Base class for all workflow engine errors."""


class RunNotFoundError(WorkflowError):
    """Raised when a run id is unknown to the run repository."""

    def __init__(self, run_id: str) -> None:
        super().__init__(f"Workflow run not found: {run_id}")
        self.run_id = run_id


class NodeRunNotFoundError(WorkflowError):
    def __init__(self, node_run_id: str) -> None:
        super().__init__(f"Workflow node run not found: {node_run_id}")
        self.node_run_id = node_run_id


class DefinitionNotFoundError(WorkflowError):
    """Raised when no definition can be resolved for a run or workflow id."""

    def __init__(self, workflow_id: str, version: Optional[int] = None, run_id: Optional[str] = None) -> None:
        if run_id:
            message = f"Workflow definition not found for run {run_id}"
        elif version is not None:
            message = f"Workflow definition not found: {workflow_id} (version {version})"
        else:
            message = f"Workflow definition not found: {workflow_id}"
        super().__init__(message)
        self.workflow_id = workflow_id
        self.version = version


class NodeNotFoundError(WorkflowError):
    def __init__(self, node_id: Optional[str]) -> None:
        super().__init__(f"Node not found: {node_id}")
        self.node_id = node_id


class MaxExecutionStepsExceededError(WorkflowError):
    def __init__(self, max_steps: int) -> None:
        super().__init__(f"Workflow exceeded max execution steps ({max_steps}).")
        self.max_steps = max_steps


class RunTimeoutError(WorkflowError):
    def __init__(self, timeout_ms: int) -> None:
        super().__init__(f"Run timed out after {timeout_ms}ms")
        self.timeout_ms = timeout_ms


class NodeExecutionError(WorkflowError):
    """Raised by node executors for failures that should be retried."""


class NodeTimeoutError(NodeExecutionError):
    def __init__(self, node_id: str, timeout_ms: int) -> None:
        super().__init__(f"Node {node_id} timed out after {timeout_ms}ms")
        self.node_id = node_id
        self.timeout_ms = timeout_ms


class ExpressionError(WorkflowError):
    """Raised for expressions that do not match the expression grammar."""


class WorkflowValidationError(WorkflowError):
    def __init__(self, errors: List[str]) -> None:
        super().__init__(f"Workflow validation failed: {' | '.join(errors)}")
        self.errors = errors


class InvalidRunTransitionError(WorkflowError):
    def __init__(self, run_id: str, current: str, requested: str) -> None:
        super().__init__(f"Cannot {requested} run {run_id} in status '{current}'")
        self.run_id = run_id
        self.current = current
        self.requested = requested
