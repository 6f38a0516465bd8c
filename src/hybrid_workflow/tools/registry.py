"""
工具注册表
"""
from typing import Dict, Any, Optional, List, Callable
from abc import ABC, abstractmethod
import logging

from .models import ToolDefinition, ToolType


logger = logging.getLogger(__name__)


class ToolRegistry(ABC):
    """工具注册表接口"""

    @abstractmethod
    async def register_tool(self, tool_def: ToolDefinition, handler: Optional[Callable] = None):
        """注册工具"""
        pass

    @abstractmethod
    async def unregister_tool(self, tool_id: str):
        """注销工具"""
        pass

    @abstractmethod
    async def get_tool(self, tool_id: str) -> Optional[ToolDefinition]:
        """获取工具定义"""
        pass

    @abstractmethod
    async def list_tools(
        self,
        tool_type: Optional[ToolType] = None,
        category: Optional[str] = None,
        is_active: Optional[bool] = None,
        search: Optional[str] = None
    ) -> List[ToolDefinition]:
        """列出工具"""
        pass

    @abstractmethod
    def get_handler(self, tool_id: str) -> Optional[Callable]:
        """获取函数型工具的处理器"""
        pass


class LocalToolRegistry(ToolRegistry):
    """本地工具注册表实现"""

    def __init__(self):
        self.tools: Dict[str, ToolDefinition] = {}
        self.handlers: Dict[str, Callable] = {}

    async def register_tool(self, tool_def: ToolDefinition, handler: Optional[Callable] = None):
        """注册工具"""
        if handler is not None and not callable(handler):
            raise ValueError(f"Handler for tool {tool_def.tool_id} must be callable")

        self._validate_type_config(tool_def, handler)

        self.tools[tool_def.tool_id] = tool_def
        if handler is not None:
            self.handlers[tool_def.tool_id] = handler
        else:
            self.handlers.pop(tool_def.tool_id, None)

        logger.info(f"Registered tool: {tool_def.tool_id} ({tool_def.type.value})")

    def _validate_type_config(self, tool_def: ToolDefinition, handler: Optional[Callable]):
        """按工具类型检查必需配置"""
        if tool_def.type == ToolType.FUNCTION and handler is None:
            raise ValueError(f"Function tool {tool_def.tool_id} requires a handler")
        if tool_def.type == ToolType.REST_API and not tool_def.endpoint:
            raise ValueError(f"REST tool {tool_def.tool_id} requires an endpoint")
        if tool_def.type == ToolType.DATABASE_QUERY and not tool_def.config.get("connection"):
            raise ValueError(f"Database tool {tool_def.tool_id} requires config.connection")

    async def unregister_tool(self, tool_id: str):
        """注销工具"""
        if tool_id in self.tools:
            del self.tools[tool_id]
            self.handlers.pop(tool_id, None)
            logger.info(f"Unregistered tool: {tool_id}")

    async def get_tool(self, tool_id: str) -> Optional[ToolDefinition]:
        """获取工具定义"""
        return self.tools.get(tool_id)

    def get_handler(self, tool_id: str) -> Optional[Callable]:
        return self.handlers.get(tool_id)

    async def list_tools(
        self,
        tool_type: Optional[ToolType] = None,
        category: Optional[str] = None,
        is_active: Optional[bool] = None,
        search: Optional[str] = None
    ) -> List[ToolDefinition]:
        """列出工具"""
        tools = list(self.tools.values())

        if tool_type is not None:
            tools = [t for t in tools if t.type == tool_type]
        if category is not None:
            tools = [t for t in tools if t.category == category]
        if is_active is not None:
            tools = [t for t in tools if t.is_active == is_active]
        if search:
            needle = search.lower()
            tools = [
                t for t in tools
                if needle in t.name.lower()
                or needle in t.description.lower()
                or any(needle in tag.lower() for tag in t.tags)
            ]

        return sorted(tools, key=lambda t: t.name or t.tool_id)

    async def get_categories(self) -> List[str]:
        """获取所有工具分类"""
        return sorted({t.category for t in self.tools.values() if t.category})
