"""
智能体运行时集成 - 通过窄接口调用外部智能体能力
"""
from typing import Dict, Any, Optional, List, Callable, Union
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
import asyncio
import inspect
import json
import logging
import time
import uuid

import httpx

from ..exceptions import AgentNotFoundError, AgentExecutionError


logger = logging.getLogger(__name__)


@dataclass
class AgentResponse:
    """智能体响应"""
    agent_id: str
    content: str
    output: Dict[str, Any] = field(default_factory=dict)
    status: str = "success"  # success, error
    duration_ms: float = 0.0
    token_usage: Optional[Dict[str, int]] = None
    session_id: Optional[str] = None
    error: Optional[str] = None
    trace_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: datetime = field(default_factory=datetime.utcnow)

    @property
    def is_success(self) -> bool:
        """是否成功"""
        return self.status == "success"

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典"""
        result = {
            "agent_id": self.agent_id,
            "content": self.content,
            "output": self.output,
            "status": self.status,
            "duration_ms": self.duration_ms,
            "trace_id": self.trace_id
        }
        if self.token_usage:
            result["token_usage"] = self.token_usage
        if self.session_id:
            result["session_id"] = self.session_id
        if self.error:
            result["error"] = self.error
        return result


class AgentRuntime(ABC):
    """智能体运行时接口"""

    @abstractmethod
    async def invoke_agent(
        self,
        agent_id: str,
        input_data: Any,
        session_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ) -> AgentResponse:
        """调用智能体"""
        pass

    async def close(self):
        """释放资源"""
        pass


def _to_response(agent_id: str, result: Any, session_id: Optional[str], duration_ms: float) -> AgentResponse:
    if isinstance(result, AgentResponse):
        return result

    if isinstance(result, str):
        content, output = result, {"response": result}
    elif isinstance(result, dict):
        content, output = json.dumps(result, default=str), result
    else:
        content, output = json.dumps(result, default=str), {"response": result}

    return AgentResponse(
        agent_id=agent_id,
        content=content,
        output=output,
        duration_ms=duration_ms,
        session_id=session_id
    )


class MockAgentRuntime(AgentRuntime):
    """模拟智能体运行时（用于测试和本地运行）"""

    def __init__(self, echo_unknown: bool = False):
        self.echo_unknown = echo_unknown
        self.mock_responses: Dict[str, List[Any]] = {}
        self.mock_handlers: Dict[str, Callable] = {}
        self.mock_delays: Dict[str, float] = {}
        self.mock_errors: Dict[str, str] = {}
        self.calls: List[Dict[str, Any]] = []

    def set_mock_response(self, agent_id: str, *responses: Union[str, Dict[str, Any]]):
        """设置模拟响应；多个响应按调用顺序依次返回，最后一个重复使用"""
        self.mock_responses[agent_id] = list(responses)
        self.mock_errors.pop(agent_id, None)

    def set_mock_handler(self, agent_id: str, handler: Callable):
        """设置响应函数 handler(input_data, context)"""
        self.mock_handlers[agent_id] = handler
        self.mock_errors.pop(agent_id, None)

    def set_mock_delay(self, agent_id: str, delay_seconds: float):
        """设置模拟延迟"""
        self.mock_delays[agent_id] = delay_seconds

    def simulate_error(self, agent_id: str, error_message: str):
        """模拟错误响应"""
        self.mock_errors[agent_id] = error_message

    def calls_for(self, agent_id: str) -> List[Dict[str, Any]]:
        return [call for call in self.calls if call["agent_id"] == agent_id]

    def _is_known(self, agent_id: str) -> bool:
        return (
            agent_id in self.mock_responses
            or agent_id in self.mock_handlers
            or agent_id in self.mock_errors
        )

    async def invoke_agent(
        self,
        agent_id: str,
        input_data: Any,
        session_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ) -> AgentResponse:
        """调用模拟智能体"""
        if not self._is_known(agent_id) and not self.echo_unknown:
            raise AgentNotFoundError(agent_id)

        self.calls.append({
            "agent_id": agent_id,
            "input": input_data,
            "session_id": session_id,
            "context": context
        })

        start_time = time.monotonic()
        delay = self.mock_delays.get(agent_id, 0)
        if delay:
            await asyncio.sleep(delay)

        if agent_id in self.mock_errors:
            raise AgentExecutionError(self.mock_errors[agent_id], agent_id)

        if agent_id in self.mock_handlers:
            handler = self.mock_handlers[agent_id]
            try:
                result = handler(input_data, context)
                if inspect.isawaitable(result):
                    result = await result
            except Exception as e:
                raise AgentExecutionError(f"Execution failed: {e}", agent_id, e)
        elif agent_id in self.mock_responses:
            responses = self.mock_responses[agent_id]
            result = responses.pop(0) if len(responses) > 1 else responses[0]
        else:
            result = {"response": f"Mock response from {agent_id}", "input_received": input_data}

        duration_ms = (time.monotonic() - start_time) * 1000
        return _to_response(agent_id, result, session_id, duration_ms)


class HttpAgentRuntime(AgentRuntime):
    """通过 HTTP 调用外部智能体服务"""

    def __init__(
        self,
        base_url: str,
        timeout: float = 300.0,
        headers: Optional[Dict[str, str]] = None,
        client: Optional[httpx.AsyncClient] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.headers = headers or {}
        self._owns_client = client is None
        self._client = client

    @property
    def client(self) -> httpx.AsyncClient:
        """首次使用时创建客户端，关闭后可重新创建"""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, headers=self.headers)
        return self._client

    async def invoke_agent(
        self,
        agent_id: str,
        input_data: Any,
        session_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ) -> AgentResponse:
        """调用远程智能体"""
        url = f"{self.base_url}/agents/{agent_id}/invoke"
        start_time = time.monotonic()

        try:
            response = await self.client.post(url, json={
                "input": input_data,
                "session_id": session_id,
                "context": context or {}
            })
        except httpx.TimeoutException as e:
            raise AgentExecutionError(f"Agent call timeout: {e}", agent_id, e)
        except httpx.HTTPError as e:
            raise AgentExecutionError(f"Agent call network error: {e}", agent_id, e)

        if response.status_code == 404:
            raise AgentNotFoundError(agent_id)
        if response.status_code >= 400:
            raise AgentExecutionError(
                f"Agent service returned {response.status_code}: {response.text}", agent_id
            )

        body = response.json()
        duration_ms = (time.monotonic() - start_time) * 1000
        content = body.get("content")
        output = body.get("output") or {}

        return AgentResponse(
            agent_id=agent_id,
            content=content if isinstance(content, str) else json.dumps(output, default=str),
            output=output,
            duration_ms=duration_ms,
            token_usage=body.get("usage") or body.get("token_usage"),
            session_id=session_id
        )

    async def close(self):
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
