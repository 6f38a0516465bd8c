"""
工具相关的数据模型定义
"""
from typing import Dict, Any, Optional, List
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
import uuid

from pydantic import BaseModel, Field, field_validator

from ..models.execution import ResourceUsage
from ..models.workflow import ErrorHandlingMode


class ToolType(Enum):
    """工具类型"""
    FUNCTION = "function"
    REST_API = "rest_api"
    RETRIEVAL = "retrieval"
    BROWSER_AUTOMATION = "browser_automation"
    DATABASE_QUERY = "database_query"


class ToolDefinition(BaseModel):
    """工具定义"""
    tool_id: str
    name: str = ""
    description: str = ""
    type: ToolType = ToolType.FUNCTION
    input_schema: Optional[Dict[str, Any]] = None
    output_schema: Optional[Dict[str, Any]] = None
    endpoint: Optional[str] = None
    method: str = "POST"
    authentication: Optional[Dict[str, Any]] = None  # {type: bearer|apikey|basic, ...}
    config: Dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True
    category: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    timeout: float = 30.0  # 秒
    created_at: datetime = Field(default_factory=datetime.utcnow)

    @field_validator("tool_id")
    @classmethod
    def tool_id_not_empty(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("tool_id must not be empty")
        return value

    @field_validator("method")
    @classmethod
    def normalize_method(cls, value: str) -> str:
        return value.upper()


class ToolInvocationStatus(Enum):
    """工具调用状态"""
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class ToolInvocation:
    """单次工具调用记录"""
    tool_id: str
    input: Any = None
    output: Any = None
    error: Optional[Dict[str, Any]] = None
    status: ToolInvocationStatus = ToolInvocationStatus.COMPLETED
    retry_count: int = 0
    resource_usage: ResourceUsage = field(default_factory=ResourceUsage)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    start_time: datetime = field(default_factory=datetime.utcnow)
    end_time: Optional[datetime] = None

    @property
    def succeeded(self) -> bool:
        return self.status == ToolInvocationStatus.COMPLETED

    @property
    def error_message(self) -> Optional[str]:
        return self.error.get("message") if self.error else None

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典"""
        return {
            "id": self.id,
            "tool_id": self.tool_id,
            "input": self.input,
            "output": self.output,
            "error": self.error,
            "status": self.status.value,
            "retry_count": self.retry_count,
            "resource_usage": self.resource_usage.to_dict()
        }


class ChainStrategy(Enum):
    """工具链组合策略"""
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"
    CONDITIONAL = "conditional"


@dataclass
class ChainStep:
    """工具链中的一步"""
    tool_id: str
    condition: Optional[str] = None  # 条件策略下的门控表达式

    @classmethod
    def of(cls, step: Any) -> "ChainStep":
        if isinstance(step, ChainStep):
            return step
        if isinstance(step, str):
            return cls(tool_id=step)
        return cls(tool_id=step["tool_id"], condition=step.get("condition"))


@dataclass
class ChainResult:
    """工具链聚合结果"""
    strategy: ChainStrategy
    error_handling: ErrorHandlingMode
    status: str = "completed"  # completed, failed
    records: List[ToolInvocation] = field(default_factory=list)
    final_output: Any = None
    error: Optional[str] = None

    @property
    def total(self) -> int:
        return len(self.records)

    @property
    def succeeded(self) -> int:
        return sum(1 for record in self.records if record.status == ToolInvocationStatus.COMPLETED)

    @property
    def failed(self) -> int:
        return sum(1 for record in self.records if record.status == ToolInvocationStatus.FAILED)

    @property
    def skipped(self) -> int:
        return sum(1 for record in self.records if record.status == ToolInvocationStatus.SKIPPED)

    @property
    def outputs(self) -> List[Any]:
        """成功调用的输出"""
        return [record.output for record in self.records if record.succeeded]

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典"""
        return {
            "strategy": self.strategy.value,
            "status": self.status,
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "outputs": self.outputs,
            "final_output": self.final_output,
            "error": self.error,
            "records": [record.to_dict() for record in self.records]
        }
