"""
工作流定义模型
"""
from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional
from enum import Enum
from uuid import uuid4
from datetime import datetime


class NodeType(Enum):
    """节点类型（封闭集合）"""
    TRIGGER = "trigger"
    AGENT = "agent"
    TOOL = "tool"
    HYBRID = "hybrid"
    CONDITION = "condition"
    LOOP = "loop"
    HUMAN_INPUT = "human_input"
    TRANSFORMER = "transformer"


class ErrorHandlingMode(Enum):
    """运行级错误处理模式"""
    STOP = "stop"
    CONTINUE = "continue"
    RETRY = "retry"


class BackoffStrategy(Enum):
    """重试退避策略"""
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


@dataclass
class RetryPolicy:
    """重试策略"""
    max_retries: int = 3
    backoff: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    base_delay_ms: int = 1000
    retryable_errors: Optional[List[str]] = None  # None 表示所有错误都可重试

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "RetryPolicy":
        data = data or {}
        return cls(
            max_retries=int(data.get("max_retries", 3)),
            backoff=BackoffStrategy(data.get("backoff", "exponential")),
            base_delay_ms=int(data.get("base_delay_ms", 1000)),
            retryable_errors=data.get("retryable_errors")
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_retries": self.max_retries,
            "backoff": self.backoff.value,
            "base_delay_ms": self.base_delay_ms,
            "retryable_errors": self.retryable_errors
        }


@dataclass
class ExecutionSettings:
    """执行设置"""
    timeout: Optional[float] = None  # 运行超时（秒）
    max_concurrency: int = 10
    error_handling: ErrorHandlingMode = ErrorHandlingMode.STOP
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)


@dataclass
class Node:
    """工作流节点"""
    id: str
    type: NodeType
    name: str = ""
    config: Dict[str, Any] = field(default_factory=dict)
    timeout: Optional[float] = None  # 超时时间（秒）
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.name:
            self.name = self.id


@dataclass
class Edge:
    """工作流边"""
    source: str = ""  # 源节点ID
    target: str = ""  # 目标节点ID
    condition: Optional[str] = None  # 条件表达式
    id: str = field(default_factory=lambda: str(uuid4()))


@dataclass
class Workflow:
    """工作流定义"""
    id: str = field(default_factory=lambda: str(uuid4()))
    name: str = ""
    version: int = 1
    description: Optional[str] = None
    nodes: List[Node] = field(default_factory=list)
    edges: List[Edge] = field(default_factory=list)
    triggers: List[Dict[str, Any]] = field(default_factory=list)
    variables: Dict[str, Any] = field(default_factory=dict)  # 初始运行变量
    settings: ExecutionSettings = field(default_factory=ExecutionSettings)
    organization_id: Optional[str] = None
    created_by: Optional[str] = None
    is_active: bool = True
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)

    def get_node(self, node_id: str) -> Optional[Node]:
        """根据ID获取节点"""
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def get_incoming_edges(self, node_id: str) -> List[Edge]:
        return [edge for edge in self.edges if edge.target == node_id]

    def get_dependencies(self, node_id: str) -> List[str]:
        """获取节点的上游依赖（按边出现顺序去重）"""
        dependencies = []
        for edge in self.get_incoming_edges(node_id):
            if edge.source not in dependencies:
                dependencies.append(edge.source)
        return dependencies

    def get_downstream_nodes(self, node_id: str) -> List[Node]:
        """获取节点的下游节点"""
        downstream = []
        for edge in self.edges:
            if edge.source == node_id:
                target_node = self.get_node(edge.target)
                if target_node and target_node not in downstream:
                    downstream.append(target_node)
        return downstream

    def entry_nodes(self) -> List[Node]:
        """没有入边的节点"""
        targets = {edge.target for edge in self.edges}
        return [node for node in self.nodes if node.id not in targets]

    def exit_nodes(self) -> List[Node]:
        """没有出边的节点"""
        sources = {edge.source for edge in self.edges}
        return [node for node in self.nodes if node.id not in sources]
