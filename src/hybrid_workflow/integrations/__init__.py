"""
集成模块 - 事件总线、智能体运行时与 Schema 验证
"""

from .event_bus import Event, EventBus, RecordingEventBus
from .agent_runtime import AgentRuntime, AgentResponse, MockAgentRuntime, HttpAgentRuntime
from .validators import SchemaValidator

__all__ = [
    "Event",
    "EventBus",
    "RecordingEventBus",
    "AgentRuntime",
    "AgentResponse",
    "MockAgentRuntime",
    "HttpAgentRuntime",
    "SchemaValidator",
]
