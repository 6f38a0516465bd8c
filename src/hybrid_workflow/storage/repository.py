"""
存储仓库接口与内存实现

长期历史由外部系统保存，引擎只依赖这里的接口。
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, List, Dict, Any, Callable

from ..models.workflow import Workflow
from ..models.execution import WorkflowExecution, ExecutionStatus, RunPriority


class WorkflowRepository(ABC):
    """工作流定义仓库"""

    @abstractmethod
    async def save(self, workflow: Workflow) -> str:
        pass

    @abstractmethod
    async def get(self, workflow_id: str) -> Optional[Workflow]:
        pass

    @abstractmethod
    async def list(
        self,
        offset: int = 0,
        limit: int = 100,
        filters: Optional[Dict[str, Any]] = None
    ) -> List[Workflow]:
        """
        列出工作流

        filters 支持 organization_id、is_active 以及 name（不区分大小写的子串匹配）
        """
        pass

    @abstractmethod
    async def update(self, workflow: Workflow) -> bool:
        pass

    @abstractmethod
    async def delete(self, workflow_id: str) -> bool:
        pass


class ExecutionRepository(ABC):
    """运行记录仓库"""

    @abstractmethod
    async def save(self, execution: WorkflowExecution) -> str:
        pass

    @abstractmethod
    async def get(self, execution_id: str) -> Optional[WorkflowExecution]:
        pass

    @abstractmethod
    async def list_by_workflow(
        self,
        workflow_id: str,
        status: Optional[ExecutionStatus] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        offset: int = 0,
        limit: int = 100,
        priority: Optional[RunPriority] = None
    ) -> List[WorkflowExecution]:
        """某个工作流的运行，最新提交的在前"""
        pass

    @abstractmethod
    async def update(self, execution: WorkflowExecution) -> bool:
        pass

    @abstractmethod
    async def delete(self, execution_id: str) -> bool:
        pass


class _InMemoryStore:
    """按ID保存对象的字典，update 时刷新 updated_at"""

    def __init__(self):
        self.items: Dict[str, Any] = {}

    async def save(self, item) -> str:
        self.items[item.id] = item
        return item.id

    async def get(self, item_id: str):
        return self.items.get(item_id)

    async def update(self, item) -> bool:
        if item.id not in self.items:
            return False
        item.updated_at = datetime.utcnow()
        self.items[item.id] = item
        return True

    async def delete(self, item_id: str) -> bool:
        return self.items.pop(item_id, None) is not None

    def _select(self, predicates: List[Callable[[Any], bool]]) -> List[Any]:
        return [item for item in self.items.values() if all(p(item) for p in predicates)]


class InMemoryWorkflowRepository(_InMemoryStore, WorkflowRepository):
    """内存工作流仓库"""

    async def list(
        self,
        offset: int = 0,
        limit: int = 100,
        filters: Optional[Dict[str, Any]] = None
    ) -> List[Workflow]:
        filters = filters or {}
        predicates = []
        if "organization_id" in filters:
            predicates.append(lambda w: w.organization_id == filters["organization_id"])
        if "is_active" in filters:
            predicates.append(lambda w: w.is_active == filters["is_active"])
        if "name" in filters:
            needle = filters["name"].lower()
            predicates.append(lambda w: needle in w.name.lower())

        return self._select(predicates)[offset:offset + limit]


class InMemoryExecutionRepository(_InMemoryStore, ExecutionRepository):
    """内存运行仓库"""

    async def list_by_workflow(
        self,
        workflow_id: str,
        status: Optional[ExecutionStatus] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        offset: int = 0,
        limit: int = 100,
        priority: Optional[RunPriority] = None
    ) -> List[WorkflowExecution]:
        predicates = [lambda e: e.workflow_id == workflow_id]
        if status:
            predicates.append(lambda e: e.status == status)
        if priority:
            predicates.append(lambda e: e.priority == priority)
        if start_time:
            predicates.append(lambda e: e.created_at >= start_time)
        if end_time:
            predicates.append(lambda e: e.created_at <= end_time)

        runs = sorted(self._select(predicates), key=lambda e: e.created_at, reverse=True)
        return runs[offset:offset + limit]
