"""
进程内事件总线
"""
import asyncio
import inspect
from typing import Dict, Any, List, Callable
from dataclasses import dataclass, field
from datetime import datetime
import logging


logger = logging.getLogger(__name__)


@dataclass
class Event:
    """事件对象"""
    topic: str
    payload: Any
    timestamp: datetime = field(default_factory=datetime.utcnow)
    headers: Dict[str, str] = field(default_factory=dict)


class EventBus:
    """发布/订阅事件通道，订阅者异常不会传播给发布者"""

    def __init__(self):
        self.subscribers: Dict[str, List[Callable]] = {}
        self._lock = asyncio.Lock()

    async def publish(self, topic: str, payload: Any, headers: Dict[str, str] = None):
        """发布事件"""
        event = Event(
            topic=topic,
            payload=payload,
            headers=headers or {}
        )

        async with self._lock:
            subscribers = list(self.subscribers.get(topic, []))

        if subscribers:
            await asyncio.gather(
                *(self._notify_subscriber(subscriber, event) for subscriber in subscribers),
                return_exceptions=True
            )

        logger.debug(f"Published event to topic '{topic}' with {len(subscribers)} subscribers")

    async def subscribe(self, topic: str, handler: Callable):
        """订阅事件"""
        async with self._lock:
            self.subscribers.setdefault(topic, []).append(handler)

        logger.debug(f"Subscribed to topic '{topic}'")

    async def unsubscribe(self, topic: str, handler: Callable):
        """取消订阅"""
        async with self._lock:
            handlers = self.subscribers.get(topic)
            if handlers and handler in handlers:
                handlers.remove(handler)
                if not handlers:
                    del self.subscribers[topic]

        logger.debug(f"Unsubscribed from topic '{topic}'")

    async def _notify_subscriber(self, subscriber: Callable, event: Event):
        """通知订阅者"""
        try:
            result = subscriber(event)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"Error notifying subscriber for topic '{event.topic}': {e}", exc_info=True)


class RecordingEventBus(EventBus):
    """记录所有已发布事件的总线，便于查询与测试"""

    def __init__(self):
        super().__init__()
        self.events: List[Event] = []

    async def publish(self, topic: str, payload: Any, headers: Dict[str, str] = None):
        self.events.append(Event(topic=topic, payload=payload, headers=headers or {}))
        await super().publish(topic, payload, headers)

    def topics(self) -> List[str]:
        return [event.topic for event in self.events]

    def by_topic(self, topic: str) -> List[Event]:
        return [event for event in self.events if event.topic == topic]
