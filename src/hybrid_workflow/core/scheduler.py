"""
依赖调度器与运行优先队列
"""
import asyncio
import heapq
import itertools
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Any, Callable

from ..models.workflow import Workflow, Node, ErrorHandlingMode
from ..models.execution import (
    WorkflowExecution, NodeExecutionStatus, RunPriority
)


logger = logging.getLogger(__name__)


@dataclass
class Admission:
    """节点准入结果"""
    run: bool
    reason: str = ""
    completed_dependencies: List[str] = field(default_factory=list)


class DependencyScheduler:
    """计算拓扑顺序并判断节点何时可以执行"""

    def __init__(self, edge_condition: Optional[Callable[[str, Any, Dict[str, Any]], bool]] = None):
        # edge_condition(condition, source_output, variables) -> bool
        self.edge_condition = edge_condition

    def topological_order(self, workflow: Workflow) -> List[str]:
        """依赖优先的深度优先遍历；调用方需保证图无环"""
        order: List[str] = []
        visited = set()

        def visit(node_id: str):
            if node_id in visited:
                return
            visited.add(node_id)
            for dep_id in workflow.get_dependencies(node_id):
                visit(dep_id)
            order.append(node_id)

        for node in workflow.nodes:
            visit(node.id)

        return order

    def execution_waves(self, workflow: Workflow) -> List[List[str]]:
        """按就绪波次分组节点"""
        depth: Dict[str, int] = {}
        for node_id in self.topological_order(workflow):
            deps = workflow.get_dependencies(node_id)
            depth[node_id] = max((depth[d] + 1 for d in deps), default=0)

        waves: List[List[str]] = []
        for node_id, level in depth.items():
            while len(waves) <= level:
                waves.append([])
            waves[level].append(node_id)
        return waves

    def ready_nodes(self, workflow: Workflow, execution: WorkflowExecution) -> List[Node]:
        """所有依赖都已到达终态的待执行节点"""
        ready = []
        for node_id in self.topological_order(workflow):
            record = execution.get_node_execution(node_id)
            if record is not None and record.status != NodeExecutionStatus.PENDING:
                continue

            deps = workflow.get_dependencies(node_id)
            if all(self._is_terminal(execution, dep) for dep in deps):
                ready.append(workflow.get_node(node_id))
        return ready

    @staticmethod
    def _is_terminal(execution: WorkflowExecution, node_id: str) -> bool:
        record = execution.get_node_execution(node_id)
        return record is not None and record.is_terminal

    def _edge_active(self, edge, execution: WorkflowExecution) -> bool:
        if not edge.condition:
            return True

        source = execution.get_node_execution(edge.source)
        output = source.output_data if source else None
        condition = edge.condition.strip()

        # 条件节点的分支简写
        if condition.lower() in ("true", "false"):
            result = output.get("result") if isinstance(output, dict) else output
            return bool(result) == (condition.lower() == "true")

        if self.edge_condition is None:
            return True
        return self.edge_condition(condition, output, execution.context.variables)

    def resolve_admission(
        self,
        workflow: Workflow,
        execution: WorkflowExecution,
        node_id: str,
        error_mode: ErrorHandlingMode
    ) -> Admission:
        """决定节点执行还是跳过"""
        incoming = workflow.get_incoming_edges(node_id)
        if not incoming:
            return Admission(run=True)

        completed: List[str] = []
        active_edges = 0
        unmet: List[str] = []

        for edge in incoming:
            record = execution.get_node_execution(edge.source)
            status = record.status if record else NodeExecutionStatus.PENDING

            if status == NodeExecutionStatus.COMPLETED:
                if self._edge_active(edge, execution):
                    active_edges += 1
                    if edge.source not in completed:
                        completed.append(edge.source)
            else:
                unmet.append(edge.source)

        if unmet and error_mode != ErrorHandlingMode.CONTINUE:
            return Admission(run=False, reason=f"dependencies not completed: {sorted(set(unmet))}")

        if active_edges == 0:
            if unmet:
                return Admission(run=False, reason=f"no completed dependencies: {sorted(set(unmet))}")
            return Admission(run=False, reason="no active incoming edge")

        return Admission(run=True, completed_dependencies=completed)

    def build_node_input(
        self,
        workflow: Workflow,
        execution: WorkflowExecution,
        node_id: str,
        admission: Optional[Admission] = None
    ) -> Any:
        """入口节点使用运行输入，其他节点按前驱ID聚合前驱输出"""
        if not workflow.get_incoming_edges(node_id):
            return execution.input

        sources = admission.completed_dependencies if admission else [
            dep for dep in workflow.get_dependencies(node_id)
            if execution.get_node_execution(dep)
            and execution.get_node_execution(dep).status == NodeExecutionStatus.COMPLETED
        ]
        return {
            source: execution.get_node_execution(source).output_data
            for source in sources
        }


@dataclass
class QueuedRun:
    """排队中的运行"""
    run_id: str
    priority: RunPriority = RunPriority.NORMAL
    sequence: int = 0
    enqueued_at: datetime = field(default_factory=datetime.utcnow)

    def __lt__(self, other):
        """用于优先队列比较"""
        if self.priority != other.priority:
            return self.priority.rank > other.priority.rank  # 高优先级先执行
        return self.sequence < other.sequence


class RunQueue:
    """待执行运行的优先队列，同优先级先进先出"""

    def __init__(self):
        self._heap: List[QueuedRun] = []
        self._removed = set()
        self._counter = itertools.count()
        self._available = asyncio.Condition()

    def __len__(self):
        return len(self._heap) - len(self._removed)

    async def put(self, run_id: str, priority: RunPriority = RunPriority.NORMAL):
        async with self._available:
            self._removed.discard(run_id)
            heapq.heappush(self._heap, QueuedRun(run_id, priority, next(self._counter)))
            self._available.notify()

    async def get(self) -> str:
        """取出优先级最高的运行，队列为空时等待"""
        async with self._available:
            while True:
                while self._heap:
                    item = heapq.heappop(self._heap)
                    if item.run_id in self._removed:
                        self._removed.discard(item.run_id)
                        continue
                    return item.run_id
                await self._available.wait()

    def remove(self, run_id: str) -> bool:
        """标记移除，出队时丢弃"""
        if any(item.run_id == run_id for item in self._heap) and run_id not in self._removed:
            self._removed.add(run_id)
            return True
        return False

    def peek_order(self) -> List[str]:
        """当前出队顺序"""
        return [item.run_id for item in sorted(self._heap) if item.run_id not in self._removed]
