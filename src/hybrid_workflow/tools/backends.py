"""
工具后端 - 每种工具类型对应一个外部能力
"""
from typing import Dict, Any, Optional
from abc import ABC, abstractmethod
import inspect
import logging

import httpx

from .models import ToolDefinition, ToolType
from .registry import ToolRegistry
from ..exceptions import ToolExecutionError


logger = logging.getLogger(__name__)


class ToolBackend(ABC):
    """工具后端接口"""

    # 外部调用计入网络调用次数
    is_external: bool = True

    @abstractmethod
    async def execute(
        self,
        tool: ToolDefinition,
        input_data: Any,
        context: Optional[Dict[str, Any]] = None
    ) -> Any:
        """执行一次工具调用"""
        pass

    async def close(self):
        """释放后端持有的连接"""
        pass


class FunctionToolBackend(ToolBackend):
    """调用注册在注册表中的 Python 函数"""

    is_external = False

    def __init__(self, registry: ToolRegistry):
        self.registry = registry

    async def execute(self, tool, input_data, context=None):
        handler = self.registry.get_handler(tool.tool_id)
        if handler is None:
            raise ToolExecutionError(tool.tool_id, f"No handler registered for tool {tool.tool_id}")

        result = handler(input_data, context)
        if inspect.isawaitable(result):
            result = await result
        return result


def _http_error(tool_id: str, error: httpx.HTTPError) -> ToolExecutionError:
    if isinstance(error, httpx.TimeoutException):
        return ToolExecutionError(tool_id, f"Request timeout: {error}")
    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        return ToolExecutionError(
            tool_id, f"HTTP {status}: {error.response.text[:200]}", {"status_code": status}
        )
    return ToolExecutionError(tool_id, f"Network error: {error}")


class HttpToolBackend(ToolBackend):
    """持有 httpx 客户端的后端；未注入客户端时在首次使用时创建，并在 close 时关闭"""

    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        self._owns_client = client is None
        self._client = client

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient()
        return self._client

    async def close(self):
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None


class RestToolBackend(HttpToolBackend):
    """REST API 工具"""

    def _build_auth(self, tool: ToolDefinition):
        """根据认证配置生成请求头与 basic 认证"""
        headers = {}
        auth = None
        config = tool.authentication or {}
        auth_type = (config.get("type") or "").lower()

        if auth_type == "bearer":
            headers["Authorization"] = f"Bearer {config.get('token', '')}"
        elif auth_type == "apikey":
            headers[config.get("header", "X-API-Key")] = config.get("key", "")
        elif auth_type == "basic":
            auth = httpx.BasicAuth(config.get("username", ""), config.get("password", ""))

        return headers, auth

    async def execute(self, tool, input_data, context=None):
        headers, auth = self._build_auth(tool)
        headers.update(tool.config.get("headers", {}))
        method = tool.method

        request_kwargs: Dict[str, Any] = {"headers": headers, "timeout": tool.timeout}
        if auth is not None:
            request_kwargs["auth"] = auth
        if method in ("GET", "DELETE"):
            request_kwargs["params"] = input_data or {}
        else:
            request_kwargs["json"] = input_data

        try:
            response = await self.client.request(method, tool.endpoint, **request_kwargs)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise _http_error(tool.tool_id, e)

        if "application/json" in response.headers.get("content-type", ""):
            return response.json()
        return {"status_code": response.status_code, "text": response.text}


class ServiceToolBackend(HttpToolBackend):
    """检索、浏览器自动化与数据库查询，统一转发给外部工具服务"""

    def __init__(self, base_url: Optional[str], client: Optional[httpx.AsyncClient] = None):
        super().__init__(client)
        self.base_url = base_url.rstrip("/") if base_url else None

    def _build_payload(self, tool: ToolDefinition, input_data: Any, context: Optional[Dict[str, Any]]):
        payload = {
            "tool_id": tool.tool_id,
            "config": tool.config,
            "context": context or {}
        }
        if tool.type == ToolType.RETRIEVAL:
            payload["query"] = input_data
        elif tool.type == ToolType.BROWSER_AUTOMATION:
            actions = input_data.get("actions") if isinstance(input_data, dict) else None
            payload["actions"] = actions if actions is not None else tool.config.get("actions", [])
            payload["input"] = input_data
        else:
            payload["connection"] = tool.config.get("connection")
            payload["query"] = input_data
        return payload

    async def execute(self, tool, input_data, context=None):
        if not self.base_url:
            raise ToolExecutionError(
                tool.tool_id, f"No tool service configured for {tool.type.value} tools"
            )

        url = f"{self.base_url}/{tool.type.value}"
        try:
            response = await self.client.post(
                url,
                json=self._build_payload(tool, input_data, context),
                timeout=tool.timeout
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise _http_error(tool.tool_id, e)

        body = response.json()
        if isinstance(body, dict) and "output" in body:
            return body["output"]
        return body


def default_backends(
    registry: ToolRegistry,
    service_url: Optional[str] = None,
    client: Optional[httpx.AsyncClient] = None
) -> Dict[ToolType, ToolBackend]:
    """按工具类型创建默认后端"""
    service = ServiceToolBackend(service_url, client)
    return {
        ToolType.FUNCTION: FunctionToolBackend(registry),
        ToolType.REST_API: RestToolBackend(client),
        ToolType.RETRIEVAL: service,
        ToolType.BROWSER_AUTOMATION: service,
        ToolType.DATABASE_QUERY: service,
    }
