"""
工作流执行引擎测试
"""
import asyncio

import pytest

from hybrid_workflow.config import EngineSettings
from hybrid_workflow.core.engine import WorkflowEngine
from hybrid_workflow.exceptions import (
    WorkflowValidationError, WorkflowExecutionError, WorkflowNotFoundError, RunNotFoundError,
    InvalidRunStateError
)
from hybrid_workflow.integrations import MockAgentRuntime, HttpAgentRuntime
from hybrid_workflow.models.execution import ExecutionStatus, NodeExecutionStatus
from hybrid_workflow.tools.models import ToolType


async def wait_until(predicate, timeout=2.0):
    """轮询直到条件成立"""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


def statuses(run):
    return {node_id: record.status for node_id, record in run.node_executions.items()}


def workflow(nodes, edges, **settings):
    return {"name": "test", "settings": settings, "nodes": nodes, "edges": edges}


@pytest.fixture
async def double_tool(register_tool):
    calls = []

    def double(data, ctx):
        calls.append(data)
        return {"x": data["x"] * 2}

    await register_tool("double", double)
    return calls


@pytest.fixture
async def broken_tool(register_tool):
    def broken(data, ctx):
        raise RuntimeError("broken tool")

    await register_tool("broken", broken)


@pytest.fixture
async def hold_tool(register_tool):
    """在测试放行之前一直阻塞的工具"""
    gate = {"started": asyncio.Event(), "release": asyncio.Event()}

    async def hold(data, ctx):
        gate["started"].set()
        await gate["release"].wait()
        return data

    await register_tool("hold", hold)
    return gate


class TestEndToEnd:
    """完整运行"""

    @pytest.mark.asyncio
    async def test_trigger_then_tool(self, engine, linear_workflow, double_tool):
        """trigger -> double，输入 x=5 得到 x=10"""
        workflow_id = await engine.create_workflow(linear_workflow)
        run_id = await engine.submit_run(workflow_id, {"x": 5})

        run = await engine.run_now(run_id)

        assert run.status == ExecutionStatus.COMPLETED
        assert run.output == {"x": 10}
        assert double_tool == [{"x": 5}]
        assert statuses(run) == {
            "start": NodeExecutionStatus.COMPLETED,
            "double": NodeExecutionStatus.COMPLETED
        }
        assert run.summary()["completed"] == 2
        assert run.context.get_node_output("double") == {"x": 10}
        assert run.context.tool_state["double"]["status"] == "completed"

    @pytest.mark.asyncio
    async def test_three_node_chain(self, engine, register_tool, double_tool):
        """trigger -> A -> B：A 返回 x=5，B 翻倍"""
        await register_tool("produce", lambda data, ctx: {"x": 5})
        definition = workflow(
            nodes=[
                {"id": "start", "type": "trigger"},
                {"id": "a", "type": "tool", "tool": "produce"},
                {"id": "b", "type": "tool", "tool": "double"},
            ],
            edges=[{"from": "start", "to": "a"}, {"from": "a", "to": "b"}]
        )
        workflow_id = await engine.create_workflow(definition)
        run = await engine.run_now(await engine.submit_run(workflow_id, {}))

        assert run.output == {"x": 10}
        assert run.node_executions["a"].status == NodeExecutionStatus.COMPLETED
        assert run.node_executions["b"].status == NodeExecutionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_lifecycle_events(self, engine, event_bus, linear_workflow, double_tool):
        workflow_id = await engine.create_workflow(linear_workflow)
        run_id = await engine.submit_run(workflow_id, {"x": 1})
        await engine.run_now(run_id)

        assert event_bus.topics() == [
            "workflow_created", "run_started", "node_completed", "node_completed", "run_completed"
        ]
        completed = event_bus.by_topic("run_completed")[0].payload.data
        assert completed["run_id"] == run_id
        assert completed["status"] == "completed"
        assert completed["summary"]["total_nodes"] == 2
        node_events = [e.payload.data for e in event_bus.by_topic("node_completed")]
        assert [e["node_id"] for e in node_events] == ["start", "double"]

    @pytest.mark.asyncio
    async def test_condition_branches(self, engine, register_tool):
        """只执行条件为真的分支"""
        definition = workflow(
            nodes=[
                {"id": "start", "type": "trigger"},
                {"id": "check", "type": "condition", "config": {"condition": "input.x > 3"}},
                {"id": "big", "type": "transformer",
                 "config": {"transform_type": "template", "template": "big {{ input.input.x }}"}},
                {"id": "small", "type": "transformer",
                 "config": {"transform_type": "template", "template": "small"}},
            ],
            edges=[
                {"from": "start", "to": "check"},
                {"from": "check", "to": "big", "condition": "true"},
                {"from": "check", "to": "small", "condition": "false"},
            ]
        )
        workflow_id = await engine.create_workflow(definition)
        run = await engine.run_now(await engine.submit_run(workflow_id, {"x": 5}))

        assert run.status == ExecutionStatus.COMPLETED
        assert run.output == "big 5"
        assert statuses(run)["small"] == NodeExecutionStatus.SKIPPED
        assert run.node_executions["small"].metadata["skip_reason"] == "no active incoming edge"

    @pytest.mark.asyncio
    async def test_edge_expression_uses_variables(self, engine):
        definition = workflow(
            nodes=[
                {"id": "start", "type": "trigger"},
                {"id": "next", "type": "transformer", "config": {"transform_type": "path", "path": "x"}},
            ],
            edges=[{"from": "start", "to": "next", "condition": "input.x >= minimum"}]
        )
        definition["variables"] = {"minimum": 10}
        workflow_id = await engine.create_workflow(definition)

        low = await engine.run_now(await engine.submit_run(workflow_id, {"x": 3}))
        high = await engine.run_now(await engine.submit_run(workflow_id, {"x": 12}))

        assert statuses(low)["next"] == NodeExecutionStatus.SKIPPED
        assert high.output == 12

    @pytest.mark.asyncio
    async def test_agent_node_and_output_variable(self, engine, agent_runtime):
        agent_runtime.set_mock_handler("classifier", lambda data, ctx: {"intent": data["text"].upper()})
        definition = workflow(
            nodes=[
                {"id": "start", "type": "trigger"},
                {"id": "classify", "agent": "classifier", "config": {"output_variable": "intent"}},
            ],
            edges=[{"from": "start", "to": "classify"}]
        )
        workflow_id = await engine.create_workflow(definition)
        run = await engine.run_now(
            await engine.submit_run(workflow_id, {"text": "refund"}, session_id="s-1", submitted_by="u-1")
        )

        assert run.output["output"] == {"intent": "REFUND"}
        assert run.context.variables["intent"] == {"intent": "REFUND"}
        call = agent_runtime.calls_for("classifier")[0]
        assert call["session_id"] == "s-1"
        assert call["context"]["user_id"] == "u-1"
        assert run.node_executions["classify"].resource_usage.network_calls == 1


class TestErrorHandlingModes:
    """stop / continue / retry"""

    @pytest.mark.asyncio
    async def test_stop_mode(self, engine, double_tool, broken_tool):
        """失败后下游节点被跳过，运行失败"""
        definition = workflow(
            nodes=[
                {"id": "start", "type": "trigger"},
                {"id": "fail", "type": "tool", "tool": "broken"},
                {"id": "after", "type": "tool", "tool": "double"},
            ],
            edges=[{"from": "start", "to": "fail"}, {"from": "fail", "to": "after"}],
            error_handling="stop"
        )
        workflow_id = await engine.create_workflow(definition)
        run = await engine.run_now(await engine.submit_run(workflow_id, {"x": 1}))

        assert run.status == ExecutionStatus.FAILED
        assert run.error_message == "Node(s) failed: fail"
        assert statuses(run) == {
            "start": NodeExecutionStatus.COMPLETED,
            "fail": NodeExecutionStatus.FAILED,
            "after": NodeExecutionStatus.SKIPPED,
        }
        assert double_tool == []
        assert "broken tool" in run.node_executions["fail"].error_info["message"]

    @pytest.mark.asyncio
    async def test_stop_mode_lets_current_wave_finish(self, engine, double_tool, broken_tool):
        definition = workflow(
            nodes=[
                {"id": "start", "type": "trigger"},
                {"id": "fail", "type": "tool", "tool": "broken"},
                {"id": "sibling", "type": "tool", "tool": "double"},
            ],
            edges=[{"from": "start", "to": "fail"}, {"from": "start", "to": "sibling"}]
        )
        workflow_id = await engine.create_workflow(definition)
        run = await engine.run_now(await engine.submit_run(workflow_id, {"x": 2}))

        assert run.status == ExecutionStatus.FAILED
        assert statuses(run)["sibling"] == NodeExecutionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_continue_mode(self, engine, double_tool, broken_tool):
        """continue 模式下汇合节点只接收完成的前驱输出"""
        definition = workflow(
            nodes=[
                {"id": "start", "type": "trigger"},
                {"id": "fail", "type": "tool", "tool": "broken"},
                {"id": "double", "type": "tool", "tool": "double"},
                {"id": "merge", "type": "transformer", "config": {"transform_type": "path", "path": "x"}},
            ],
            edges=[
                {"from": "start", "to": "fail"},
                {"from": "start", "to": "double"},
                {"from": "fail", "to": "merge"},
                {"from": "double", "to": "merge"},
            ],
            error_handling="continue"
        )
        workflow_id = await engine.create_workflow(definition)
        run = await engine.run_now(await engine.submit_run(workflow_id, {"x": 5}))

        assert run.status == ExecutionStatus.COMPLETED
        assert run.output == 10
        assert run.node_executions["merge"].input_data == {"double": {"x": 10}}
        assert run.summary()["failed"] == 1

    @pytest.mark.asyncio
    async def test_retry_mode_recovers(self, engine, register_tool, sleeps):
        attempts = {"n": 0}

        def flaky(data, ctx):
            attempts["n"] += 1
            if attempts["n"] < 3:
                raise RuntimeError("boom")
            return "ok"

        await register_tool("flaky", flaky)
        definition = workflow(
            nodes=[{"id": "only", "type": "tool", "tool": "flaky"}],
            edges=[],
            error_handling="retry",
            retry_policy={"max_retries": 3, "backoff": "linear", "base_delay_ms": 100}
        )
        workflow_id = await engine.create_workflow(definition)
        run = await engine.run_now(await engine.submit_run(workflow_id))

        assert run.status == ExecutionStatus.COMPLETED
        assert run.output == "ok"
        assert run.node_executions["only"].retry_count == 2
        assert sleeps == [0.1, 0.2]

    @pytest.mark.asyncio
    async def test_retry_mode_exhausted(self, engine, broken_tool, sleeps):
        definition = workflow(
            nodes=[{"id": "only", "type": "tool", "tool": "broken"}],
            edges=[],
            error_handling="retry",
            retry_policy={"max_retries": 2, "backoff": "exponential", "base_delay_ms": 1000}
        )
        workflow_id = await engine.create_workflow(definition)
        run = await engine.run_now(await engine.submit_run(workflow_id))

        assert run.status == ExecutionStatus.FAILED
        assert run.node_executions["only"].retry_count == 2
        assert sleeps == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_retry_mode_skips_non_retryable(self, engine, sleeps):
        """工具不存在属于不可重试错误"""
        definition = workflow(
            nodes=[{"id": "only", "type": "tool", "tool": "ghost"}],
            edges=[],
            error_handling="retry"
        )
        workflow_id = await engine.create_workflow(definition)
        run = await engine.run_now(await engine.submit_run(workflow_id))

        assert run.status == ExecutionStatus.FAILED
        assert run.node_executions["only"].retry_count == 0
        assert sleeps == []


class TestTimeouts:

    @pytest.mark.asyncio
    async def test_node_timeout(self, engine, register_tool):
        async def slow(data, ctx):
            await asyncio.sleep(5)

        await register_tool("slow", slow)
        definition = workflow(
            nodes=[{"id": "wait", "type": "tool", "tool": "slow", "timeout": 0.05}],
            edges=[]
        )
        workflow_id = await engine.create_workflow(definition)
        run = await engine.run_now(await engine.submit_run(workflow_id))

        assert run.status == ExecutionStatus.FAILED
        assert "timeout after 0.05s" in run.node_executions["wait"].error_info["message"]

    @pytest.mark.asyncio
    async def test_run_timeout(self, engine, register_tool):
        """运行超时：执行中的节点失败，未执行的节点跳过"""
        async def slow(data, ctx):
            await asyncio.sleep(5)

        await register_tool("slow", slow)
        definition = workflow(
            nodes=[
                {"id": "wait", "type": "tool", "tool": "slow"},
                {"id": "after", "type": "trigger"},
            ],
            edges=[{"from": "wait", "to": "after"}]
        )
        workflow_id = await engine.create_workflow(definition)
        run = await engine.run_now(await engine.submit_run(workflow_id, timeout=0.05))

        assert run.status == ExecutionStatus.FAILED
        assert run.error_message == "Run timed out after 0.05s"
        assert statuses(run) == {
            "wait": NodeExecutionStatus.FAILED,
            "after": NodeExecutionStatus.SKIPPED,
        }


class TestHumanInputNodes:

    @pytest.fixture
    def approval_workflow(self):
        def build(required=True, timeout=5):
            return workflow(
                nodes=[
                    {"id": "start", "type": "trigger"},
                    {"id": "approve", "type": "human_input",
                     "config": {"prompt": "Approve order {{ input.order }}?",
                                "timeout": timeout, "required": required}},
                    {"id": "after", "type": "transformer", "config": {"transform_type": "path", "path": "value"}},
                ],
                edges=[{"from": "start", "to": "approve"}, {"from": "approve", "to": "after"}]
            )
        return build

    @pytest.mark.asyncio
    async def test_provided_input_resumes_run(self, engine, event_bus, approval_workflow):
        workflow_id = await engine.create_workflow(approval_workflow())
        run_id = await engine.submit_run(workflow_id, {"order": 42})
        task = asyncio.create_task(engine.run_now(run_id))

        await wait_until(lambda: engine.broker.is_waiting(run_id, "approve"))
        request = event_bus.by_topic("human_input_required")[0].payload
        assert request.data["prompt"] == "Approve order 42?"

        assert await engine.provide_human_input(run_id, "approve", "approved", "manager-1")
        run = await task

        assert run.status == ExecutionStatus.COMPLETED
        assert run.output == "approved"
        assert run.node_executions["approve"].output_data["responder_id"] == "manager-1"
        assert event_bus.by_topic("human_input_response")[0].payload.data["value"] == "approved"

    @pytest.mark.asyncio
    async def test_optional_timeout_skips_node(self, engine, approval_workflow):
        workflow_id = await engine.create_workflow(approval_workflow(required=False, timeout=0.01))
        run = await engine.run_now(await engine.submit_run(workflow_id, {"order": 1}))

        assert run.status == ExecutionStatus.COMPLETED
        assert statuses(run)["approve"] == NodeExecutionStatus.SKIPPED
        assert statuses(run)["after"] == NodeExecutionStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_required_timeout_fails(self, engine, approval_workflow):
        workflow_id = await engine.create_workflow(approval_workflow(required=True, timeout=0.01))
        run = await engine.run_now(await engine.submit_run(workflow_id, {"order": 1}))

        assert run.status == ExecutionStatus.FAILED
        assert run.node_executions["approve"].error_info["type"] == "HumanInputTimeoutError"

    @pytest.mark.asyncio
    async def test_input_timeout_longer_than_node_timeout(
        self, event_bus, agent_runtime, tool_registry, retry_executor, approval_workflow
    ):
        """人工输入节点只受自身等待超时约束"""
        engine = WorkflowEngine(
            settings=EngineSettings(node_timeout=0.05, human_input_timeout=1.0),
            event_bus=event_bus,
            agent_runtime=agent_runtime,
            tool_registry=tool_registry,
            retry_executor=retry_executor
        )
        workflow_id = await engine.create_workflow(approval_workflow(required=False, timeout=0.2))
        run = await engine.run_now(await engine.submit_run(workflow_id, {"order": 1}))

        assert run.status == ExecutionStatus.COMPLETED
        assert statuses(run)["approve"] == NodeExecutionStatus.SKIPPED
        assert run.node_executions["approve"].metadata["skip_reason"] == "timeout"

    @pytest.mark.asyncio
    async def test_input_for_unknown_run(self, engine):
        with pytest.raises(RunNotFoundError):
            await engine.provide_human_input("missing", "approve", "x")


class TestRunControl:
    """取消、暂停、恢复与优先级"""

    @pytest.fixture
    def hold_workflow(self):
        return workflow(
            nodes=[
                {"id": "hold", "type": "tool", "tool": "hold"},
                {"id": "after", "type": "trigger"},
            ],
            edges=[{"from": "hold", "to": "after"}]
        )

    @pytest.mark.asyncio
    async def test_cancel_pending_run(self, engine, event_bus, linear_workflow, double_tool):
        workflow_id = await engine.create_workflow(linear_workflow)
        run_id = await engine.submit_run(workflow_id, {"x": 1})

        run = await engine.cancel_run(run_id)

        assert run.status == ExecutionStatus.CANCELLED
        assert len(engine.run_queue) == 0
        assert event_bus.by_topic("run_completed")[0].payload.data["status"] == "cancelled"
        assert (await engine.wait_for_run(run_id, timeout=1)).status == ExecutionStatus.CANCELLED
        assert double_tool == []

    @pytest.mark.asyncio
    async def test_cancel_running_run(self, engine, hold_tool, hold_workflow):
        """进行中的节点完成后，剩余节点被跳过"""
        async with engine:
            workflow_id = await engine.create_workflow(hold_workflow)
            run_id = await engine.submit_run(workflow_id, {"v": 1})
            await asyncio.wait_for(hold_tool["started"].wait(), timeout=2)

            await engine.cancel_run(run_id)
            hold_tool["release"].set()
            run = await engine.wait_for_run(run_id, timeout=2)

        assert run.status == ExecutionStatus.CANCELLED
        assert statuses(run) == {
            "hold": NodeExecutionStatus.COMPLETED,
            "after": NodeExecutionStatus.SKIPPED,
        }
        assert run.node_executions["after"].metadata["skip_reason"] == "run cancelled"

    @pytest.mark.asyncio
    async def test_wait_returns_after_cancelled_run_settles(self, engine, event_bus, hold_tool, hold_workflow):
        """取消后 wait_for_run 等到 run_completed 发布才返回"""
        async with engine:
            workflow_id = await engine.create_workflow(hold_workflow)
            run_id = await engine.submit_run(workflow_id, {"v": 1})
            await asyncio.wait_for(hold_tool["started"].wait(), timeout=2)

            await engine.cancel_run(run_id)
            waiter = asyncio.create_task(engine.wait_for_run(run_id, timeout=2))
            await asyncio.sleep(0.05)
            assert not waiter.done()

            hold_tool["release"].set()
            run = await waiter

        assert event_bus.by_topic("run_completed")[0].payload.data["status"] == "cancelled"
        assert all(record.is_terminal for record in run.node_executions.values())

    @pytest.mark.asyncio
    async def test_stop_closes_out_running_run(self, engine, event_bus, hold_tool, hold_workflow):
        """引擎停止时，执行中的节点记为失败，其余节点记为跳过"""
        await engine.start()
        workflow_id = await engine.create_workflow(hold_workflow)
        run_id = await engine.submit_run(workflow_id, {"v": 1})
        await asyncio.wait_for(hold_tool["started"].wait(), timeout=2)

        await engine.stop()

        run = await engine.get_run(run_id)
        assert run.status == ExecutionStatus.CANCELLED
        assert statuses(run) == {
            "hold": NodeExecutionStatus.FAILED,
            "after": NodeExecutionStatus.SKIPPED,
        }
        assert run.node_executions["hold"].error_info["message"] == "run cancelled"
        completed = event_bus.by_topic("run_completed")
        assert [event.payload.run_id for event in completed] == [run_id]
        assert await engine.wait_for_run(run_id, timeout=1) is run

    @pytest.mark.asyncio
    async def test_pause_and_resume(self, engine, hold_tool, hold_workflow):
        async with engine:
            workflow_id = await engine.create_workflow(hold_workflow)
            run_id = await engine.submit_run(workflow_id, {"v": 1})
            await asyncio.wait_for(hold_tool["started"].wait(), timeout=2)

            await engine.pause_run(run_id)
            hold_tool["release"].set()
            run = await engine.get_run(run_id)
            await wait_until(lambda: statuses(run).get("hold") == NodeExecutionStatus.COMPLETED)
            await asyncio.sleep(0.05)

            # 暂停期间不启动新的波次
            assert run.status == ExecutionStatus.PAUSED
            assert "after" not in run.node_executions

            with pytest.raises(InvalidRunStateError):
                await engine.pause_run(run_id)

            await engine.resume_run(run_id)
            run = await engine.wait_for_run(run_id, timeout=2)

        assert run.status == ExecutionStatus.COMPLETED
        assert run.output == {"hold": {"v": 1}}

    @pytest.mark.asyncio
    async def test_priority_order(self, event_bus, tool_registry, retry_executor):
        """单个运行槽位时按优先级依次启动"""
        engine = WorkflowEngine(
            settings=EngineSettings(max_concurrent_runs=1),
            event_bus=event_bus,
            agent_runtime=MockAgentRuntime(),
            tool_registry=tool_registry,
            retry_executor=retry_executor
        )
        workflow_id = await engine.create_workflow(
            workflow(nodes=[{"id": "only", "type": "trigger"}], edges=[])
        )
        run_ids = {}
        for priority in ("low", "normal", "critical", "high"):
            run_ids[priority] = await engine.submit_run(workflow_id, priority=priority)

        async with engine:
            for run_id in run_ids.values():
                await engine.wait_for_run(run_id, timeout=2)

        started = [event.payload.run_id for event in event_bus.by_topic("run_started")]
        assert started == [run_ids[p] for p in ("critical", "high", "normal", "low")]

    @pytest.mark.asyncio
    async def test_unknown_run(self, engine):
        with pytest.raises(RunNotFoundError):
            await engine.cancel_run("missing")


class TestWorkflowManagement:

    @pytest.mark.asyncio
    async def test_invalid_workflow_refused(self, engine):
        definition = workflow(
            nodes=[{"id": "a", "type": "trigger"}, {"id": "b", "type": "trigger"}],
            edges=[{"from": "a", "to": "b"}, {"from": "b", "to": "a"}]
        )
        with pytest.raises(WorkflowValidationError) as exc_info:
            await engine.create_workflow(definition)
        assert "Workflow contains a cycle: a -> b -> a" in exc_info.value.errors
        assert await engine.list_workflows() == []

    def test_validate_workflow_reports_parse_errors(self, engine):
        result = engine.validate_workflow({"nodes": [{"id": "a", "type": "bogus"}]})
        assert not result.valid
        assert "Unknown node type" in result.errors[0]

    @pytest.mark.asyncio
    async def test_inactive_workflow_not_runnable(self, engine, linear_workflow):
        linear_workflow["workflow"]["is_active"] = False
        workflow_id = await engine.create_workflow(linear_workflow)
        with pytest.raises(WorkflowExecutionError, match="inactive"):
            await engine.submit_run(workflow_id)

    @pytest.mark.asyncio
    async def test_unknown_workflow(self, engine):
        with pytest.raises(WorkflowNotFoundError):
            await engine.submit_run("missing")

    @pytest.mark.asyncio
    async def test_update_bumps_version_and_keeps_snapshot(self, engine, linear_workflow, double_tool, register_tool):
        """已提交的运行使用提交时的定义"""
        await register_tool("triple", lambda data, ctx: {"x": data["x"] * 3})
        workflow_id = await engine.create_workflow(linear_workflow)
        run_id = await engine.submit_run(workflow_id, {"x": 2})

        linear_workflow["workflow"]["nodes"][1]["tool"] = "triple"
        updated = await engine.update_workflow(workflow_id, linear_workflow)
        assert updated.version == 2
        assert (await engine.get_workflow(workflow_id)).get_node("double").config["tool_id"] == "triple"

        run = await engine.run_now(run_id)
        assert run.output == {"x": 4}
        assert run.workflow_version == 1

        rerun = await engine.run_now(await engine.submit_run(workflow_id, {"x": 2}))
        assert rerun.output == {"x": 6}

    @pytest.mark.asyncio
    async def test_delete_workflow(self, engine, event_bus, linear_workflow):
        workflow_id = await engine.create_workflow(linear_workflow)
        assert await engine.delete_workflow(workflow_id)
        assert not await engine.delete_workflow(workflow_id)
        assert await engine.get_workflow(workflow_id) is None
        assert "workflow_deleted" in event_bus.topics()

    @pytest.mark.asyncio
    async def test_history_and_analytics(self, engine, linear_workflow, double_tool):
        workflow_id = await engine.create_workflow(linear_workflow)
        ok = await engine.run_now(await engine.submit_run(workflow_id, {"x": 1}, priority="high"))
        bad = await engine.run_now(await engine.submit_run(workflow_id, {"y": 1}))

        assert ok.status == ExecutionStatus.COMPLETED
        assert bad.status == ExecutionStatus.FAILED

        history = await engine.get_run_history(workflow_id)
        assert {run.id for run in history} == {ok.id, bad.id}
        assert [r.id for r in await engine.get_run_history(workflow_id, status="failed")] == [bad.id]
        assert [r.id for r in await engine.get_run_history(workflow_id, priority="high")] == [ok.id]

        analytics = await engine.get_workflow_analytics(workflow_id)
        assert analytics["total_executions"] == 2
        assert analytics["successful_executions"] == 1
        assert analytics["failed_executions"] == 1
        assert analytics["success_rate"] == 0.5


class TestToolFacade:

    @pytest.mark.asyncio
    async def test_chain_metrics_and_circuit_state(self, engine, double_tool):
        result = await engine.execute_tool_chain(["double", "double"], {"x": 1})
        assert result.final_output == {"x": 4}

        metrics = engine.get_tool_metrics("double")
        assert metrics["execution_count"] == 2
        assert engine.get_tool_metrics("unknown") is None
        assert [m["tool_id"] for m in engine.get_tool_metrics()] == ["double"]
        assert engine.get_circuit_state("double")["state"] == "closed"

        dry_run = await engine.test_tool("double", {"x": 3})
        assert dry_run["output"] == {"x": 6}
        assert engine.get_tool_metrics("double")["execution_count"] == 2


class TestClientLifecycle:
    """引擎停止时只关闭自己创建的 HTTP 客户端"""

    @pytest.mark.asyncio
    async def test_stop_closes_owned_clients(self):
        engine = WorkflowEngine(settings=EngineSettings(agent_service_url="http://agents.local"))
        rest_client = engine.tool_invoker.backends[ToolType.REST_API].client
        service_client = engine.tool_invoker.backends[ToolType.RETRIEVAL].client
        agent_client = engine.agent_runtime.client

        async with engine:
            pass

        assert rest_client.is_closed
        assert service_client.is_closed
        assert agent_client.is_closed

    @pytest.mark.asyncio
    async def test_injected_collaborators_left_open(self, invoker):
        runtime = HttpAgentRuntime("http://agents.local")
        engine = WorkflowEngine(agent_runtime=runtime, tool_invoker=invoker)
        agent_client = runtime.client
        rest_client = invoker.backends[ToolType.REST_API].client

        async with engine:
            pass

        assert not agent_client.is_closed
        assert not rest_client.is_closed

        await runtime.close()
        await invoker.close()
        assert agent_client.is_closed
        assert rest_client.is_closed

    @pytest.mark.asyncio
    async def test_close_without_start(self):
        """仅用 run_now 时也能释放客户端"""
        engine = WorkflowEngine(settings=EngineSettings(tool_service_url="http://tools.local"))
        client = engine.tool_invoker.backends[ToolType.DATABASE_QUERY].client

        await engine.close()

        assert client.is_closed
