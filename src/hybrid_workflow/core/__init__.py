"""Core workflow engine components"""

from .engine import WorkflowEngine
from .scheduler import DependencyScheduler, RunQueue
from .parser import WorkflowParser
from .validator import WorkflowValidator, ValidationResult
from .circuit_breaker import CircuitBreakerRegistry, ToolMetricsStore
from .error_handler import RetryExecutor

__all__ = [
    "WorkflowEngine",
    "DependencyScheduler",
    "RunQueue",
    "WorkflowParser",
    "WorkflowValidator",
    "ValidationResult",
    "CircuitBreakerRegistry",
    "ToolMetricsStore",
    "RetryExecutor"
]
