"""
节点执行器与分派器
"""
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Any, Optional

import psutil

from ..config import EngineSettings
from ..exceptions import NodeExecutionError, NodeSkipped, WorkflowEngineError
from ..integrations.agent_runtime import AgentRuntime
from ..models.execution import WorkflowExecution, NodeExecution, ExecutionContext
from ..models.workflow import Workflow, Node, NodeType
from ..tools.invoker import ToolInvoker
from .expressions import ExpressionEvaluator, TemplateRenderer, build_names, extract_path
from .human_input import HumanInputBroker


logger = logging.getLogger(__name__)

LOOP_HARD_CAP = 100
NON_RETRYABLE_TOOL_ERRORS = ("validation", "circuit_open", "not_found", "inactive")


@dataclass
class NodeRunContext:
    """单个节点一次执行所需的全部信息"""
    node: Node
    input: Any
    execution: WorkflowExecution
    workflow: Workflow
    network_calls: int = 0

    @property
    def context(self) -> ExecutionContext:
        return self.execution.context

    @property
    def config(self) -> Dict[str, Any]:
        return self.node.config

    def has_predecessors(self) -> bool:
        return bool(self.workflow.get_incoming_edges(self.node.id))


class NodeExecutor(ABC):
    """节点执行器基类"""

    node_type: NodeType

    def __init__(self, renderer: Optional[TemplateRenderer] = None):
        self.renderer = renderer or TemplateRenderer()

    @abstractmethod
    async def execute(self, ctx: NodeRunContext) -> Any:
        """执行节点"""
        pass

    def payload(self, ctx: NodeRunContext) -> Any:
        """节点的有效输入：显式 input 模板优先，单一前驱时解包其输出"""
        if "input" in ctx.config:
            names = build_names(ctx.input, ctx.context.variables)
            return self.renderer.render(ctx.config["input"], names)

        data = ctx.input
        if ctx.has_predecessors() and isinstance(data, dict) and len(data) == 1:
            return next(iter(data.values()))
        return data

    @staticmethod
    def store_variable(ctx: NodeRunContext, value: Any):
        name = ctx.config.get("output_variable")
        if name:
            ctx.context.set_variable(name, value)


class TriggerNodeExecutor(NodeExecutor):
    """触发节点：透传运行输入"""

    node_type = NodeType.TRIGGER

    async def execute(self, ctx: NodeRunContext) -> Any:
        return ctx.input


class AgentNodeExecutor(NodeExecutor):
    """智能体节点执行器"""

    node_type = NodeType.AGENT

    def __init__(self, agent_runtime: AgentRuntime, renderer: Optional[TemplateRenderer] = None):
        super().__init__(renderer)
        self.agent_runtime = agent_runtime

    async def execute(self, ctx: NodeRunContext) -> Any:
        agent_id = ctx.config["agent_id"]
        agent_input = self.payload(ctx)

        ctx.network_calls += 1
        response = await self.agent_runtime.invoke_agent(
            agent_id,
            agent_input,
            session_id=ctx.context.session_id,
            context=ctx.context.identifiers()
        )

        result = {
            "agent_id": agent_id,
            "content": response.content,
            "output": response.output,
            "usage": response.token_usage
        }
        ctx.context.agent_state[agent_id] = result
        self.store_variable(ctx, response.output)
        return result


class ToolNodeExecutor(NodeExecutor):
    """工具节点执行器"""

    node_type = NodeType.TOOL

    def __init__(self, tool_invoker: ToolInvoker, renderer: Optional[TemplateRenderer] = None):
        super().__init__(renderer)
        self.tool_invoker = tool_invoker

    async def execute(self, ctx: NodeRunContext) -> Any:
        tool_id = ctx.config["tool_id"]
        record = await self.tool_invoker.invoke(
            tool_id, self.payload(ctx), ctx.context.identifiers()
        )
        ctx.network_calls += record.resource_usage.network_calls

        ctx.context.tool_state[tool_id] = {
            "last_invocation_id": record.id,
            "status": record.status.value,
            "retry_count": record.retry_count,
            "error": record.error
        }

        if not record.succeeded:
            error_type = (record.error or {}).get("type")
            raise NodeExecutionError(
                ctx.node.id,
                record.error_message or "tool invocation failed",
                retryable=error_type not in NON_RETRYABLE_TOOL_ERRORS
            )

        self.store_variable(ctx, record.output)
        return record.output


class ConditionNodeExecutor(NodeExecutor):
    """条件节点：只有表达式无法解析时才失败"""

    node_type = NodeType.CONDITION

    def __init__(self, evaluator: ExpressionEvaluator, renderer: Optional[TemplateRenderer] = None):
        super().__init__(renderer)
        self.evaluator = evaluator

    async def execute(self, ctx: NodeRunContext) -> Any:
        data = self.payload(ctx)
        result = self.evaluator.evaluate_condition(
            ctx.config["condition"], build_names(data, ctx.context.variables)
        )
        self.store_variable(ctx, result)
        return {"result": result, "branch": "true" if result else "false", "input": data}


class LoopNodeExecutor(NodeExecutor):
    """有界循环"""

    node_type = NodeType.LOOP

    def __init__(
        self,
        evaluator: ExpressionEvaluator,
        tool_invoker: ToolInvoker,
        default_max_iterations: int = LOOP_HARD_CAP,
        renderer: Optional[TemplateRenderer] = None
    ):
        super().__init__(renderer)
        self.evaluator = evaluator
        self.tool_invoker = tool_invoker
        self.default_max_iterations = default_max_iterations

    def _should_continue(self, ctx, condition, state, iteration, results, max_iterations) -> bool:
        if condition is None:
            return iteration < max_iterations
        names = build_names(
            state, ctx.context.variables,
            iteration=iteration,
            results=results,
            last=results[-1] if results else None
        )
        return bool(self.evaluator.evaluate(condition, names))

    async def _run_body(self, ctx: NodeRunContext, state: Any, iteration: int, results: list) -> Any:
        tool_id = ctx.config.get("tool_id")
        if tool_id:
            record = await self.tool_invoker.invoke(tool_id, state, ctx.context.identifiers())
            ctx.network_calls += record.resource_usage.network_calls
            if not record.succeeded:
                raise NodeExecutionError(
                    ctx.node.id, f"iteration {iteration} failed: {record.error_message}"
                )
            return record.output

        expression = ctx.config.get("expression")
        if expression:
            names = build_names(
                state, ctx.context.variables,
                iteration=iteration,
                results=results,
                last=results[-1] if results else None
            )
            return self.evaluator.evaluate(expression, names)

        return {"iteration": iteration}

    async def execute(self, ctx: NodeRunContext) -> Any:
        config = ctx.config
        max_iterations = min(
            int(config.get("max_iterations", self.default_max_iterations)), LOOP_HARD_CAP
        )
        condition = config.get("condition")
        has_body = bool(config.get("tool_id") or config.get("expression"))

        state = self.payload(ctx)
        results = []
        iteration = 0

        while True:
            try:
                keep_going = self._should_continue(
                    ctx, condition, state, iteration, results, max_iterations
                )
            except Exception as e:
                logger.warning(f"Loop node {ctx.node.id} condition raised, ending loop: {e}")
                completed, reason = True, "condition_error"
                break

            if not keep_going:
                completed = True
                reason = "condition_false" if condition is not None else "iterations_completed"
                break

            if iteration >= max_iterations:
                completed, reason = False, "max_iterations_reached"
                break

            result = await self._run_body(ctx, state, iteration, results)
            results.append(result)
            if has_body:
                state = result
            iteration += 1

        output = {
            "completed": completed,
            "reason": reason,
            "iterations": iteration,
            "results": results,
            "output": state
        }

        if not completed:
            logger.warning(f"Loop node {ctx.node.id} stopped at max_iterations={max_iterations}")
            if config.get("fail_on_max_iterations", False):
                raise NodeExecutionError(
                    ctx.node.id, f"loop reached max_iterations ({max_iterations})", retryable=False
                )

        self.store_variable(ctx, output)
        return output


class HumanInputNodeExecutor(NodeExecutor):
    """人工输入节点"""

    node_type = NodeType.HUMAN_INPUT

    def __init__(
        self,
        broker: HumanInputBroker,
        default_timeout: float = 300.0,
        renderer: Optional[TemplateRenderer] = None
    ):
        super().__init__(renderer)
        self.broker = broker
        self.default_timeout = default_timeout

    async def execute(self, ctx: NodeRunContext) -> Any:
        config = ctx.config
        data = self.payload(ctx)
        prompt = self.renderer.render(
            config.get("prompt", ""), build_names(data, ctx.context.variables)
        )

        result = await self.broker.request(
            ctx.context,
            ctx.node.id,
            prompt=prompt,
            input_type=config.get("input_type", "text"),
            timeout=float(config.get("timeout", self.default_timeout)),
            assignee=config.get("assignee"),
            required=config.get("required", True)
        )

        if result["status"] != "provided":
            raise NodeSkipped(ctx.node.id, result.get("reason") or result["status"], result)

        self.store_variable(ctx, result["value"])
        return result


class TransformerNodeExecutor(NodeExecutor):
    """数据转换节点：script / path / template"""

    node_type = NodeType.TRANSFORMER

    def __init__(self, evaluator: ExpressionEvaluator, renderer: Optional[TemplateRenderer] = None):
        super().__init__(renderer)
        self.evaluator = evaluator

    async def execute(self, ctx: NodeRunContext) -> Any:
        config = ctx.config
        transform_type = config["transform_type"]
        data = self.payload(ctx)
        names = build_names(data, ctx.context.variables)

        if transform_type == "script":
            result = self.evaluator.evaluate(config["script"], names)
        elif transform_type == "path":
            path = config["path"]
            if isinstance(path, dict):
                result = {name: extract_path(data, p) for name, p in path.items()}
            else:
                result = extract_path(data, path)
        elif transform_type == "template":
            result = self.renderer.render(config["template"], names)
        else:
            raise NodeExecutionError(ctx.node.id, f"Unknown transform_type: {transform_type}")

        self.store_variable(ctx, result)
        return result


class NodeDispatcher:
    """按节点类型分派执行，并记录资源使用"""

    def __init__(self, executors: Dict[NodeType, NodeExecutor]):
        missing = [t.value for t in NodeType if t not in executors]
        if missing:
            raise WorkflowEngineError(f"No executor registered for node types: {missing}")
        self.executors = dict(executors)
        self._process = psutil.Process()

    @classmethod
    def create_default(
        cls,
        agent_runtime: AgentRuntime,
        tool_invoker: ToolInvoker,
        broker: HumanInputBroker,
        settings: Optional[EngineSettings] = None,
        evaluator: Optional[ExpressionEvaluator] = None
    ) -> "NodeDispatcher":
        """创建覆盖全部节点类型的分派器"""
        from .hybrid import HybridNodeExecutor

        settings = settings or EngineSettings()
        evaluator = evaluator or ExpressionEvaluator()
        renderer = TemplateRenderer()

        executors = [
            TriggerNodeExecutor(renderer),
            AgentNodeExecutor(agent_runtime, renderer),
            ToolNodeExecutor(tool_invoker, renderer),
            HybridNodeExecutor(agent_runtime, tool_invoker, renderer),
            ConditionNodeExecutor(evaluator, renderer),
            LoopNodeExecutor(evaluator, tool_invoker, settings.loop_max_iterations, renderer),
            HumanInputNodeExecutor(broker, settings.human_input_timeout, renderer),
            TransformerNodeExecutor(evaluator, renderer),
        ]
        return cls({executor.node_type: executor for executor in executors})

    def _memory_bytes(self) -> int:
        try:
            return self._process.memory_info().rss
        except psutil.Error:
            return 0

    async def dispatch(
        self,
        node: Node,
        record: NodeExecution,
        execution: WorkflowExecution,
        workflow: Workflow
    ) -> Any:
        """执行节点，将资源使用写入节点记录"""
        ctx = NodeRunContext(
            node=node,
            input=record.input_data,
            execution=execution,
            workflow=workflow
        )
        executor = self.executors[node.type]
        started = time.monotonic()

        try:
            output = await executor.execute(ctx)
        finally:
            usage = record.resource_usage
            usage.elapsed_ms += (time.monotonic() - started) * 1000
            usage.memory_bytes = self._memory_bytes()
            usage.network_calls += ctx.network_calls

        execution.context.set_node_output(node.id, output)
        return output
