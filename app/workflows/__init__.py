"""Durable workflow engine: compilation, execution, persistence and run service."""

from .compiler import CompiledWorkflow, compile_workflow_definition, validate_workflow_definition
from .engine import WorkflowEngine
from .service import WorkflowService
from .state_manager import WorkflowStateManager

__all__ = [
    "CompiledWorkflow",
    "WorkflowEngine",
    "WorkflowService",
    "WorkflowStateManager",
    "compile_workflow_definition",
    "validate_workflow_definition",
]
