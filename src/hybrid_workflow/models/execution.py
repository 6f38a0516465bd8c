"""
工作流执行模型
"""
from dataclasses import dataclass, field, asdict
from typing import Dict, Any, Optional, List
from enum import Enum
from datetime import datetime
from uuid import uuid4

from ..exceptions import InvalidRunStateError


class ExecutionStatus(Enum):
    """工作流执行状态"""
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = (
    ExecutionStatus.COMPLETED,
    ExecutionStatus.FAILED,
    ExecutionStatus.CANCELLED
)


class NodeExecutionStatus(Enum):
    """节点执行状态"""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


TERMINAL_NODE_STATUSES = (
    NodeExecutionStatus.COMPLETED,
    NodeExecutionStatus.FAILED,
    NodeExecutionStatus.SKIPPED
)


class RunPriority(Enum):
    """运行优先级"""
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return {
            RunPriority.LOW: 0,
            RunPriority.NORMAL: 1,
            RunPriority.HIGH: 2,
            RunPriority.CRITICAL: 3
        }[self]


@dataclass
class ResourceUsage:
    """资源使用计数"""
    elapsed_ms: float = 0.0
    memory_bytes: int = 0
    network_calls: int = 0
    payload_bytes: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class HumanInputRequest:
    """人工输入请求"""
    node_id: str
    prompt: str = ""
    input_type: str = "text"
    timeout: float = 300.0
    assignee: Optional[str] = None
    required: bool = True
    requested_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class ExecutionContext:
    """执行上下文，由单个运行独占"""
    run_id: str = ""
    workflow_id: str = ""
    variables: Dict[str, Any] = field(default_factory=dict)
    memory: Dict[str, Any] = field(default_factory=dict)  # 节点输出快照
    agent_state: Dict[str, Any] = field(default_factory=dict)
    tool_state: Dict[str, Any] = field(default_factory=dict)
    pending_human_inputs: Dict[str, HumanInputRequest] = field(default_factory=dict)
    session_id: Optional[str] = None
    user_id: Optional[str] = None
    organization_id: Optional[str] = None

    def get_variable(self, key: str, default: Any = None) -> Any:
        """获取变量值"""
        return self.variables.get(key, default)

    def set_variable(self, key: str, value: Any):
        """设置变量值"""
        self.variables[key] = value

    def get_node_output(self, node_id: str) -> Optional[Any]:
        """获取节点输出"""
        return self.memory.get(node_id)

    def set_node_output(self, node_id: str, output: Any):
        """设置节点输出"""
        self.memory[node_id] = output

    def identifiers(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "workflow_id": self.workflow_id,
            "session_id": self.session_id,
            "user_id": self.user_id,
            "organization_id": self.organization_id
        }


@dataclass
class NodeExecution:
    """节点执行记录，终态后不可修改"""
    node_id: str = ""
    execution_id: str = ""
    id: str = field(default_factory=lambda: str(uuid4()))
    status: NodeExecutionStatus = NodeExecutionStatus.PENDING
    input_data: Any = None
    output_data: Any = None
    error_info: Optional[Dict[str, Any]] = None
    retry_count: int = 0
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration: Optional[float] = None
    resource_usage: ResourceUsage = field(default_factory=ResourceUsage)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_NODE_STATUSES

    def _ensure_mutable(self, target: NodeExecutionStatus):
        if self.is_terminal:
            raise InvalidRunStateError(
                self.status.value, target.value,
                f"node record '{self.node_id}' is terminal"
            )

    def _finish(self):
        self.end_time = datetime.utcnow()
        if self.start_time:
            self.duration = (self.end_time - self.start_time).total_seconds()

    def start(self, input_data: Any = None):
        """开始执行"""
        if self.status != NodeExecutionStatus.PENDING:
            raise InvalidRunStateError(self.status.value, NodeExecutionStatus.RUNNING.value)
        self.status = NodeExecutionStatus.RUNNING
        self.input_data = input_data
        self.start_time = datetime.utcnow()

    def complete(self, output: Any):
        """完成执行"""
        self._ensure_mutable(NodeExecutionStatus.COMPLETED)
        self.status = NodeExecutionStatus.COMPLETED
        self.output_data = output
        self._finish()

    def fail(self, error: Exception):
        """执行失败"""
        self._ensure_mutable(NodeExecutionStatus.FAILED)
        self.status = NodeExecutionStatus.FAILED
        self.error_info = {
            "type": type(error).__name__,
            "message": str(error),
            "timestamp": datetime.utcnow().isoformat()
        }
        self._finish()

    def skip(self, reason: str = "", output: Any = None):
        """跳过执行"""
        self._ensure_mutable(NodeExecutionStatus.SKIPPED)
        self.status = NodeExecutionStatus.SKIPPED
        self.output_data = output
        if reason:
            self.metadata["skip_reason"] = reason
        self._finish()


@dataclass
class WorkflowExecution:
    """工作流执行实例"""
    id: str = field(default_factory=lambda: str(uuid4()))
    workflow_id: str = ""
    workflow_version: int = 1
    status: ExecutionStatus = ExecutionStatus.PENDING
    priority: RunPriority = RunPriority.NORMAL
    input: Any = None
    output: Any = None
    timeout: Optional[float] = None
    context: ExecutionContext = field(default_factory=ExecutionContext)
    node_executions: Dict[str, NodeExecution] = field(default_factory=dict)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration: Optional[float] = None
    error_message: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def _transition(self, target: ExecutionStatus, allowed: tuple):
        if self.status not in allowed:
            raise InvalidRunStateError(self.status.value, target.value)
        self.status = target
        self.updated_at = datetime.utcnow()

    def _finish(self):
        self.end_time = datetime.utcnow()
        if self.start_time:
            self.duration = (self.end_time - self.start_time).total_seconds()

    def start(self):
        """开始执行"""
        self._transition(ExecutionStatus.RUNNING, (ExecutionStatus.PENDING,))
        self.start_time = datetime.utcnow()

    def complete(self, output: Any = None):
        """完成执行"""
        self._transition(ExecutionStatus.COMPLETED, (ExecutionStatus.RUNNING,))
        self.output = output
        self._finish()

    def fail(self, error_message: str):
        """执行失败"""
        self._transition(
            ExecutionStatus.FAILED,
            (ExecutionStatus.PENDING, ExecutionStatus.RUNNING, ExecutionStatus.PAUSED)
        )
        self.error_message = error_message
        self._finish()

    def pause(self):
        """暂停执行"""
        self._transition(ExecutionStatus.PAUSED, (ExecutionStatus.RUNNING,))

    def resume(self):
        """恢复执行"""
        self._transition(ExecutionStatus.RUNNING, (ExecutionStatus.PAUSED,))

    def cancel(self):
        """取消执行"""
        self._transition(
            ExecutionStatus.CANCELLED,
            (ExecutionStatus.PENDING, ExecutionStatus.RUNNING, ExecutionStatus.PAUSED)
        )
        self._finish()

    def get_node_execution(self, node_id: str) -> Optional[NodeExecution]:
        """获取节点执行实例"""
        return self.node_executions.get(node_id)

    def create_node_execution(self, node_id: str) -> NodeExecution:
        """创建节点执行实例"""
        node_execution = NodeExecution(node_id=node_id, execution_id=self.id)
        self.node_executions[node_id] = node_execution
        return node_execution

    def is_terminal_state(self) -> bool:
        """是否为终止状态"""
        return self.status in TERMINAL_STATUSES

    def summary(self) -> Dict[str, Any]:
        """节点执行汇总"""
        records = list(self.node_executions.values())

        def count(status):
            return sum(1 for record in records if record.status == status)

        return {
            "total_nodes": len(records),
            "completed": count(NodeExecutionStatus.COMPLETED),
            "failed": count(NodeExecutionStatus.FAILED),
            "skipped": count(NodeExecutionStatus.SKIPPED),
            "failed_nodes": [
                {"node_id": record.node_id, "error": record.error_info}
                for record in records
                if record.status == NodeExecutionStatus.FAILED
            ]
        }


class ExecutionEventType(Enum):
    """执行事件类型"""
    RUN_STARTED = "run_started"
    RUN_COMPLETED = "run_completed"
    NODE_COMPLETED = "node_completed"
    HUMAN_INPUT_REQUIRED = "human_input_required"
    HUMAN_INPUT_RESPONSE = "human_input_response"
    WORKFLOW_CREATED = "workflow_created"
    WORKFLOW_UPDATED = "workflow_updated"
    WORKFLOW_DELETED = "workflow_deleted"


@dataclass
class ExecutionEvent:
    """执行事件"""
    event_type: ExecutionEventType
    run_id: Optional[str] = None
    node_id: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "event_type": self.event_type.value,
            "run_id": self.run_id,
            "node_id": self.node_id,
            "data": self.data,
            "timestamp": self.timestamp.isoformat()
        }
