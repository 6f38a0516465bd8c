"""
人工输入会合点测试
"""
import asyncio

import pytest

from hybrid_workflow.core.human_input import HumanInputBroker
from hybrid_workflow.exceptions import HumanInputTimeoutError
from hybrid_workflow.models.execution import ExecutionContext, ExecutionEvent, ExecutionEventType


@pytest.fixture
async def broker(event_bus):
    broker = HumanInputBroker(event_bus)
    await broker.start()
    yield broker
    await broker.stop()


async def _wait_until_waiting(broker, run_id, node_id):
    for _ in range(100):
        if broker.is_waiting(run_id, node_id):
            return
        await asyncio.sleep(0)
    raise AssertionError("request was never registered")


class TestHumanInputBroker:

    @pytest.mark.asyncio
    async def test_provide_resolves_request(self, broker, event_bus):
        """送达的响应作为请求结果返回"""
        context = ExecutionContext(run_id="r1")
        task = asyncio.create_task(broker.request(context, "approve", prompt="OK?", timeout=5))
        await _wait_until_waiting(broker, "r1", "approve")

        assert "approve" in context.pending_human_inputs
        required = event_bus.by_topic("human_input_required")
        assert required[0].payload.data["prompt"] == "OK?"

        assert broker.provide("r1", "approve", "yes", "alice")
        result = await task

        assert result == {"status": "provided", "value": "yes", "responder_id": "alice"}
        assert context.pending_human_inputs == {}
        assert not broker.is_waiting("r1", "approve")

    @pytest.mark.asyncio
    async def test_provide_without_waiter(self, broker):
        assert broker.provide("r1", "nobody", "x") is False

    @pytest.mark.asyncio
    async def test_optional_timeout_skips(self, broker):
        context = ExecutionContext(run_id="r1")
        result = await broker.request(context, "note", timeout=0.01, required=False)
        assert result == {"status": "skipped", "value": None, "reason": "timeout"}

    @pytest.mark.asyncio
    async def test_required_timeout_raises(self, broker):
        """必填请求超时抛出异常，迟到的响应被忽略"""
        context = ExecutionContext(run_id="r1")
        with pytest.raises(HumanInputTimeoutError):
            await broker.request(context, "approve", timeout=0.01, required=True)
        assert broker.provide("r1", "approve", "late") is False

    @pytest.mark.asyncio
    async def test_response_via_event_bus(self, broker, event_bus):
        context = ExecutionContext(run_id="r2")
        task = asyncio.create_task(broker.request(context, "pick", timeout=5))
        await _wait_until_waiting(broker, "r2", "pick")

        await event_bus.publish(
            ExecutionEventType.HUMAN_INPUT_RESPONSE.value,
            ExecutionEvent(
                event_type=ExecutionEventType.HUMAN_INPUT_RESPONSE,
                run_id="r2",
                node_id="pick",
                data={"value": 3, "responder_id": "bob"}
            )
        )
        assert (await task)["value"] == 3

    @pytest.mark.asyncio
    async def test_cancel_run(self, broker):
        context = ExecutionContext(run_id="r3")
        task = asyncio.create_task(broker.request(context, "a", timeout=5))
        await _wait_until_waiting(broker, "r3", "a")

        assert broker.cancel_run("r3") == 1
        assert (await task)["status"] == "cancelled"
