"""
Hybrid Workflow Runtime - 智能体、工具与人工节点的混合工作流引擎
"""

__version__ = "0.1.0"

from .core.engine import WorkflowEngine
from .core.parser import WorkflowParser
from .core.validator import WorkflowValidator
from .config import EngineSettings
from .models.workflow import Workflow, Node, Edge, NodeType
from .models.execution import WorkflowExecution, NodeExecution, RunPriority
from .tools.models import ToolDefinition, ToolType

__all__ = [
    "WorkflowEngine",
    "WorkflowParser",
    "WorkflowValidator",
    "EngineSettings",
    "Workflow",
    "Node",
    "Edge",
    "NodeType",
    "WorkflowExecution",
    "NodeExecution",
    "RunPriority",
    "ToolDefinition",
    "ToolType"
]
