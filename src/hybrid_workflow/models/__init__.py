"""Workflow and execution models"""

from .workflow import (
    Workflow, Node, Edge, NodeType, ExecutionSettings,
    ErrorHandlingMode, RetryPolicy, BackoffStrategy
)
from .execution import (
    WorkflowExecution, NodeExecution, ExecutionContext, ResourceUsage,
    HumanInputRequest, ExecutionStatus, NodeExecutionStatus, RunPriority,
    ExecutionEvent, ExecutionEventType
)

__all__ = [
    "Workflow",
    "Node",
    "Edge",
    "NodeType",
    "ExecutionSettings",
    "ErrorHandlingMode",
    "RetryPolicy",
    "BackoffStrategy",
    "WorkflowExecution",
    "NodeExecution",
    "ExecutionContext",
    "ResourceUsage",
    "HumanInputRequest",
    "ExecutionStatus",
    "NodeExecutionStatus",
    "RunPriority",
    "ExecutionEvent",
    "ExecutionEventType"
]
