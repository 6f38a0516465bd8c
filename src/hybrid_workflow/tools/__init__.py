"""Tool registry, invocation and chaining"""

from .models import (
    ToolType, ToolDefinition, ToolInvocation, ToolInvocationStatus,
    ChainStrategy, ChainStep, ChainResult
)
from .registry import ToolRegistry, LocalToolRegistry
from .backends import ToolBackend, FunctionToolBackend, RestToolBackend, ServiceToolBackend
from .invoker import ToolInvoker
from .chain import ToolChainExecutor

__all__ = [
    "ToolType",
    "ToolDefinition",
    "ToolInvocation",
    "ToolInvocationStatus",
    "ChainStrategy",
    "ChainStep",
    "ChainResult",
    "ToolRegistry",
    "LocalToolRegistry",
    "ToolBackend",
    "FunctionToolBackend",
    "RestToolBackend",
    "ServiceToolBackend",
    "ToolInvoker",
    "ToolChainExecutor"
]
