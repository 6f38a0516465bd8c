"""
混合节点：智能体与工具的组合策略
"""
import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Dict, Any, List, Optional, Sequence

from ..integrations.agent_runtime import AgentRuntime, AgentResponse
from ..models.workflow import NodeType
from ..tools.invoker import ToolInvoker
from ..tools.models import ToolInvocation
from .executors import NodeExecutor, NodeRunContext
from .expressions import TemplateRenderer


logger = logging.getLogger(__name__)

TOOL_MARKER = re.compile(r"\[TOOL:([^\]\s]+)\](.*?)\[/TOOL\]", re.DOTALL)
FENCED_BLOCK = re.compile(r"```(?:json|JSON)?\s*\n?(.*?)```", re.DOTALL)
STEP_TOOL_KEYS = ("tool_id", "tool", "id", "name")
STEP_INPUT_KEYS = ("input", "params", "parameters", "arguments", "args")
PLAN_KEYS = ("plan", "tools", "steps", "tool_calls")
JSON_START = re.compile(r"[\[{]")
MAX_SCAN_CHARS = 20000
MAX_DECODE_ATTEMPTS = 64


@dataclass
class PlanStep:
    """计划中的一次工具调用"""
    tool_id: str
    input: Any = None


@dataclass
class ToolPlan:
    """解析结果；error 非空表示解析失败，此时计划为空"""
    steps: List[PlanStep] = field(default_factory=list)
    error: Optional[str] = None
    dropped: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None


def _steps_from_json(data: Any) -> Optional[List[PlanStep]]:
    if isinstance(data, dict):
        for key in PLAN_KEYS:
            if isinstance(data.get(key), list):
                data = data[key]
                break
        else:
            if any(key in data for key in STEP_TOOL_KEYS):
                data = [data]
            else:
                return None

    if not isinstance(data, list):
        return None

    steps = []
    for item in data:
        if isinstance(item, str):
            steps.append(PlanStep(tool_id=item))
        elif isinstance(item, dict):
            tool_id = next((item[k] for k in STEP_TOOL_KEYS if isinstance(item.get(k), str)), None)
            if tool_id is None:
                continue
            tool_input = next((item[k] for k in STEP_INPUT_KEYS if k in item), None)
            steps.append(PlanStep(tool_id=tool_id, input=tool_input))
    return steps


def _json_candidates(text: str):
    for match in FENCED_BLOCK.finditer(text):
        yield match.group(1).strip()
    yield text.strip()

    # 只扫描文本开头部分，解码尝试次数有上限
    decoder = json.JSONDecoder()
    scanned = text[:MAX_SCAN_CHARS]
    position = 0
    for _ in range(MAX_DECODE_ATTEMPTS):
        match = JSON_START.search(scanned, position)
        if match is None:
            return
        position = match.start() + 1
        try:
            value, _ = decoder.raw_decode(scanned, match.start())
        except (json.JSONDecodeError, RecursionError):
            continue
        yield value


def parse_tool_plan(text: Any, allowed_tool_ids: Sequence[str]) -> ToolPlan:
    """
    从智能体的自由文本输出中尽力解析工具计划

    支持 [TOOL:id]{json}[/TOOL] 标记、```json 代码块以及文本中的 JSON 对象/数组。
    解析失败时返回空计划并带上 error；不在 allowed_tool_ids 中的步骤被丢弃。
    """
    if isinstance(text, (dict, list)):
        steps = _steps_from_json(text)
    elif not isinstance(text, str) or not text.strip():
        return ToolPlan(error="empty agent output")
    else:
        steps = None
        markers = TOOL_MARKER.findall(text)
        if markers:
            steps = []
            for tool_id, body in markers:
                body = body.strip()
                try:
                    tool_input = json.loads(body) if body else None
                except (json.JSONDecodeError, RecursionError):
                    tool_input = body
                steps.append(PlanStep(tool_id=tool_id, input=tool_input))
        else:
            for candidate in _json_candidates(text):
                if isinstance(candidate, str):
                    try:
                        candidate = json.loads(candidate)
                    except (json.JSONDecodeError, RecursionError):
                        continue
                steps = _steps_from_json(candidate)
                if steps is not None:
                    break

    if steps is None:
        return ToolPlan(error="no tool plan found in agent output")

    allowed = set(allowed_tool_ids)
    kept = [step for step in steps if step.tool_id in allowed]
    dropped = [step.tool_id for step in steps if step.tool_id not in allowed]
    return ToolPlan(steps=kept, dropped=dropped)


def _tool_result(record: ToolInvocation) -> Dict[str, Any]:
    return {
        "tool_id": record.tool_id,
        "status": record.status.value,
        "output": record.output,
        "error": record.error_message
    }


class HybridNodeExecutor(NodeExecutor):
    """混合节点执行器"""

    node_type = NodeType.HYBRID

    def __init__(
        self,
        agent_runtime: AgentRuntime,
        tool_invoker: ToolInvoker,
        renderer: Optional[TemplateRenderer] = None
    ):
        super().__init__(renderer)
        self.agent_runtime = agent_runtime
        self.tool_invoker = tool_invoker
        self.strategies = {
            "agent_first": self._agent_first,
            "tool_first": self._tool_first,
            "parallel": self._parallel,
            "coordinated": self._coordinated,
        }

    async def execute(self, ctx: NodeRunContext) -> Any:
        strategy = ctx.config.get("strategy", "agent_first")
        handler = self.strategies[strategy]
        result = await handler(ctx, self.payload(ctx))
        result["strategy"] = strategy

        agent_id = ctx.config["agent_id"]
        ctx.context.agent_state[agent_id] = {
            "content": result.get("content"),
            "output": result.get("output")
        }
        self.store_variable(ctx, result)
        return result

    async def _ask_agent(self, ctx: NodeRunContext, payload: Dict[str, Any]) -> AgentResponse:
        ctx.network_calls += 1
        return await self.agent_runtime.invoke_agent(
            ctx.config["agent_id"],
            payload,
            session_id=ctx.context.session_id,
            context=ctx.context.identifiers()
        )

    async def _run_tool(self, ctx: NodeRunContext, tool_id: str, tool_input: Any) -> Dict[str, Any]:
        record = await self.tool_invoker.invoke(tool_id, tool_input, ctx.context.identifiers())
        ctx.network_calls += record.resource_usage.network_calls
        ctx.context.tool_state[tool_id] = {
            "last_invocation_id": record.id,
            "status": record.status.value
        }
        return _tool_result(record)

    async def _run_plan(self, ctx: NodeRunContext, plan: ToolPlan, task: Any) -> List[Dict[str, Any]]:
        results = []
        for step in plan.steps:
            tool_input = step.input if step.input is not None else task
            results.append(await self._run_tool(ctx, step.tool_id, tool_input))
        return results

    def _plan(self, ctx: NodeRunContext, response: AgentResponse) -> ToolPlan:
        plan = parse_tool_plan(response.content, ctx.config["tool_ids"])
        if not plan.ok:
            logger.warning(f"Hybrid node {ctx.node.id}: could not parse tool plan ({plan.error})")
        if plan.dropped:
            logger.warning(f"Hybrid node {ctx.node.id}: dropped tools outside tool_ids: {plan.dropped}")
        return plan

    async def _agent_first(self, ctx: NodeRunContext, task: Any) -> Dict[str, Any]:
        """智能体规划，按序执行工具，再由智能体汇总"""
        tool_ids = ctx.config["tool_ids"]
        planning = await self._ask_agent(ctx, {
            "phase": "plan",
            "task": task,
            "available_tools": tool_ids
        })
        plan = self._plan(ctx, planning)
        tool_results = await self._run_plan(ctx, plan, task)

        final = await self._ask_agent(ctx, {
            "phase": "synthesize",
            "task": task,
            "tool_results": tool_results
        })
        return {
            "plan": [{"tool_id": s.tool_id, "input": s.input} for s in plan.steps],
            "plan_error": plan.error,
            "tool_results": tool_results,
            "content": final.content,
            "output": final.output
        }

    async def _tool_first(self, ctx: NodeRunContext, task: Any) -> Dict[str, Any]:
        """先执行全部工具，结果交给智能体"""
        tool_results = [
            await self._run_tool(ctx, tool_id, task) for tool_id in ctx.config["tool_ids"]
        ]
        response = await self._ask_agent(ctx, {"task": task, "tool_results": tool_results})
        return {
            "tool_results": tool_results,
            "content": response.content,
            "output": response.output
        }

    async def _parallel(self, ctx: NodeRunContext, task: Any) -> Dict[str, Any]:
        """智能体与工具并发执行，结果合并"""
        agent_call = self._ask_agent(ctx, {"task": task})
        tool_calls = [self._run_tool(ctx, tool_id, task) for tool_id in ctx.config["tool_ids"]]
        response, *tool_results = await asyncio.gather(agent_call, *tool_calls)
        return {
            "tool_results": tool_results,
            "content": response.content,
            "output": response.output
        }

    async def _coordinated(self, ctx: NodeRunContext, task: Any) -> Dict[str, Any]:
        """智能体与工具多轮交替，直到智能体不再提出计划"""
        tool_ids = ctx.config["tool_ids"]
        max_rounds = int(ctx.config.get("max_rounds", 3))
        rounds = []
        tool_results: List[Dict[str, Any]] = []

        for round_no in range(max_rounds):
            response = await self._ask_agent(ctx, {
                "phase": "plan",
                "round": round_no,
                "task": task,
                "available_tools": tool_ids,
                "tool_results": tool_results
            })
            plan = self._plan(ctx, response)
            if not plan.steps:
                break

            round_results = await self._run_plan(ctx, plan, task)
            tool_results.extend(round_results)
            rounds.append({
                "round": round_no,
                "plan": [s.tool_id for s in plan.steps],
                "tool_results": round_results
            })

        final = await self._ask_agent(ctx, {
            "phase": "synthesize",
            "task": task,
            "tool_results": tool_results
        })
        return {
            "rounds": rounds,
            "tool_results": tool_results,
            "content": final.content,
            "output": final.output
        }
