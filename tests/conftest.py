"""
Pytest 配置和公共 fixtures
"""
import pytest

from hybrid_workflow.config import EngineSettings
from hybrid_workflow.core.circuit_breaker import CircuitBreakerRegistry, ToolMetricsStore
from hybrid_workflow.core.engine import WorkflowEngine
from hybrid_workflow.core.error_handler import RetryExecutor
from hybrid_workflow.core.executors import NodeRunContext
from hybrid_workflow.integrations import MockAgentRuntime, RecordingEventBus
from hybrid_workflow.models.execution import WorkflowExecution, ExecutionContext
from hybrid_workflow.models.workflow import Workflow, Node, Edge, NodeType
from hybrid_workflow.tools.invoker import ToolInvoker
from hybrid_workflow.tools.models import ToolDefinition
from hybrid_workflow.tools.registry import LocalToolRegistry


class FakeClock:
    """可手动推进的时钟"""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def clock():
    """创建假时钟"""
    return FakeClock()


@pytest.fixture
def sleeps():
    """记录重试等待时长（秒）"""
    return []


@pytest.fixture
def retry_executor(sleeps):
    """不真正等待的重试执行器"""
    async def fake_sleep(seconds):
        sleeps.append(seconds)

    return RetryExecutor(sleep=fake_sleep)


@pytest.fixture
def tool_registry():
    """创建工具注册表"""
    return LocalToolRegistry()


@pytest.fixture
def agent_runtime():
    """创建模拟智能体运行时"""
    return MockAgentRuntime()


@pytest.fixture
def event_bus():
    """创建事件总线"""
    return RecordingEventBus()


@pytest.fixture
def breakers(clock):
    """创建使用假时钟的熔断器集合"""
    return CircuitBreakerRegistry(failure_threshold=5, recovery_timeout=60.0, clock=clock)


@pytest.fixture
def metrics():
    """创建工具指标存储"""
    return ToolMetricsStore()


@pytest.fixture
def invoker(tool_registry, breakers, metrics, retry_executor):
    """创建工具调用器"""
    return ToolInvoker(
        tool_registry,
        breakers=breakers,
        metrics=metrics,
        retry_executor=retry_executor
    )


@pytest.fixture
def settings():
    """测试用引擎配置"""
    return EngineSettings(node_timeout=5.0, human_input_timeout=1.0)


@pytest.fixture
def engine(settings, event_bus, agent_runtime, tool_registry, retry_executor, breakers, metrics, invoker):
    """创建使用内存存储与模拟依赖的工作流引擎"""
    return WorkflowEngine(
        settings=settings,
        event_bus=event_bus,
        agent_runtime=agent_runtime,
        tool_registry=tool_registry,
        retry_executor=retry_executor,
        breakers=breakers,
        metrics=metrics,
        tool_invoker=invoker
    )


@pytest.fixture
def register_tool(tool_registry):
    """注册函数型工具的辅助函数"""
    async def _register(tool_id, handler, **kwargs):
        tool = ToolDefinition(tool_id=tool_id, **kwargs)
        await tool_registry.register_tool(tool, handler)
        return tool

    return _register


@pytest.fixture
def make_ctx():
    """构建单节点执行上下文，predecessor 非空时添加一条入边"""
    def _make(node, node_input=None, predecessor=None, variables=None):
        nodes = [node]
        edges = []
        if predecessor:
            nodes.insert(0, Node(id=predecessor, type=NodeType.TRIGGER))
            edges.append(Edge(source=predecessor, target=node.id))

        workflow = Workflow(nodes=nodes, edges=edges)
        execution = WorkflowExecution(workflow_id=workflow.id)
        execution.context = ExecutionContext(
            run_id=execution.id, workflow_id=workflow.id, variables=dict(variables or {})
        )
        return NodeRunContext(node=node, input=node_input, execution=execution, workflow=workflow)

    return _make


@pytest.fixture
def linear_workflow():
    """trigger -> double 的两节点工作流"""
    return {
        "workflow": {
            "name": "double-it",
            "nodes": [
                {"id": "start", "type": "trigger"},
                {"id": "double", "type": "tool", "tool": "double"},
            ],
            "edges": [
                {"from": "start", "to": "double"},
            ],
        }
    }
