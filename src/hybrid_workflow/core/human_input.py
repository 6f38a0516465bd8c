"""
人工输入会合点
"""
import asyncio
import logging
from typing import Dict, Any, Optional, Tuple

from ..exceptions import HumanInputTimeoutError
from ..integrations.event_bus import EventBus, Event
from ..models.execution import (
    ExecutionContext, HumanInputRequest, ExecutionEvent, ExecutionEventType
)


logger = logging.getLogger(__name__)


class HumanInputBroker:
    """
    按 (run_id, node_id) 管理等待中的人工输入

    每个请求对应一个 future，与超时通过 asyncio.wait_for 竞争；
    响应可以直接调用 provide，也可以通过事件总线的 human_input_response 事件送达。
    """

    def __init__(self, event_bus: EventBus):
        self.event_bus = event_bus
        self._waiters: Dict[Tuple[str, str], asyncio.Future] = {}
        self._subscribed = False

    async def start(self):
        if not self._subscribed:
            await self.event_bus.subscribe(
                ExecutionEventType.HUMAN_INPUT_RESPONSE.value, self._on_response_event
            )
            self._subscribed = True

    async def stop(self):
        if self._subscribed:
            await self.event_bus.unsubscribe(
                ExecutionEventType.HUMAN_INPUT_RESPONSE.value, self._on_response_event
            )
            self._subscribed = False

    def is_waiting(self, run_id: str, node_id: str) -> bool:
        future = self._waiters.get((run_id, node_id))
        return future is not None and not future.done()

    async def request(
        self,
        context: ExecutionContext,
        node_id: str,
        prompt: str = "",
        input_type: str = "text",
        timeout: float = 300.0,
        assignee: Optional[str] = None,
        required: bool = True
    ) -> Dict[str, Any]:
        """登记请求并等待响应或超时"""
        key = (context.run_id, node_id)
        request = HumanInputRequest(
            node_id=node_id,
            prompt=prompt,
            input_type=input_type,
            timeout=timeout,
            assignee=assignee,
            required=required
        )
        future = asyncio.get_running_loop().create_future()
        self._waiters[key] = future
        context.pending_human_inputs[node_id] = request

        try:
            await self.event_bus.publish(
                ExecutionEventType.HUMAN_INPUT_REQUIRED.value,
                ExecutionEvent(
                    event_type=ExecutionEventType.HUMAN_INPUT_REQUIRED,
                    run_id=context.run_id,
                    node_id=node_id,
                    data={
                        "prompt": prompt,
                        "input_type": input_type,
                        "timeout": timeout,
                        "assignee": assignee,
                        "required": required
                    }
                )
            )

            try:
                # 超时后 wait_for 会取消 future，迟到的响应被忽略
                response = await asyncio.wait_for(future, timeout=timeout)
            except asyncio.TimeoutError:
                logger.info(f"Human input timed out for run {context.run_id} node {node_id}")
                if required:
                    raise HumanInputTimeoutError(context.run_id, node_id, timeout)
                return {"status": "skipped", "value": None, "reason": "timeout"}

            return response
        finally:
            if self._waiters.get(key) is future:
                del self._waiters[key]
            context.pending_human_inputs.pop(node_id, None)

    def provide(self, run_id: str, node_id: str, value: Any, responder_id: Optional[str] = None) -> bool:
        """送达响应；没有匹配的等待者时返回 False"""
        future = self._waiters.get((run_id, node_id))
        if future is None or future.done():
            return False

        future.set_result({"status": "provided", "value": value, "responder_id": responder_id})
        logger.info(f"Human input provided for run {run_id} node {node_id}")
        return True

    def cancel_run(self, run_id: str) -> int:
        """结束某个运行的所有等待"""
        cancelled = 0
        for (waiting_run, _), future in list(self._waiters.items()):
            if waiting_run == run_id and not future.done():
                future.set_result({"status": "cancelled", "value": None})
                cancelled += 1
        return cancelled

    async def _on_response_event(self, event: Event):
        payload = event.payload
        if isinstance(payload, ExecutionEvent):
            run_id, node_id, data = payload.run_id, payload.node_id, payload.data
        elif isinstance(payload, dict):
            run_id, node_id, data = payload.get("run_id"), payload.get("node_id"), payload
        else:
            logger.warning(f"Ignoring malformed human input response: {payload!r}")
            return

        if run_id and node_id:
            self.provide(run_id, node_id, data.get("value"), data.get("responder_id"))
