"""
熔断器与工具性能指标
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Any, Optional, List, Callable


logger = logging.getLogger(__name__)


class CircuitState(Enum):
    """熔断器状态"""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class KeyedLocks:
    """按键分配的 asyncio 锁"""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}

    def lock(self, key: str) -> asyncio.Lock:
        return self._locks.setdefault(key, asyncio.Lock())


@dataclass
class CircuitBreaker:
    """单个工具的熔断器"""
    tool_id: str
    failure_threshold: int = 5
    recovery_timeout: float = 60.0  # 秒
    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    last_failure_time: Optional[float] = None
    opened_at: Optional[float] = None
    trial_in_flight: bool = False

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    def allow_request(self, now: float) -> bool:
        """检查是否允许调用；冷却期结束后只放行一个试探调用"""
        if self.state == CircuitState.CLOSED:
            return True

        if self.state == CircuitState.OPEN:
            if self.last_failure_time is not None and now - self.last_failure_time >= self.recovery_timeout:
                self.state = CircuitState.HALF_OPEN
                self.trial_in_flight = True
                logger.info(f"Circuit breaker half-open for tool {self.tool_id}")
                return True
            return False

        # 半开状态
        if self.trial_in_flight:
            return False
        self.trial_in_flight = True
        return True

    def record_success(self):
        """成功调用"""
        if self.state != CircuitState.CLOSED:
            logger.info(f"Circuit breaker closed for tool {self.tool_id}")
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.opened_at = None
        self.trial_in_flight = False

    def record_failure(self, now: float):
        """失败调用"""
        self.failure_count += 1
        self.last_failure_time = now
        self.trial_in_flight = False

        if self.state == CircuitState.HALF_OPEN:
            self.state = CircuitState.OPEN
            logger.warning(f"Circuit breaker re-opened for tool {self.tool_id} after failed trial")
        elif self.state == CircuitState.CLOSED and self.failure_count >= self.failure_threshold:
            self.state = CircuitState.OPEN
            self.opened_at = now
            logger.warning(
                f"Circuit breaker opened for tool {self.tool_id} after {self.failure_count} failures"
            )

    def release_trial(self):
        """试探调用未真正执行时释放名额"""
        self.trial_in_flight = False

    def force_close(self):
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.opened_at = None
        self.trial_in_flight = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tool_id": self.tool_id,
            "state": self.state.value,
            "is_open": self.is_open,
            "failure_count": self.failure_count,
            "last_failure_time": self.last_failure_time,
            "opened_at": self.opened_at
        }


class CircuitBreakerRegistry:
    """所有工具共享的熔断器集合，按工具ID串行化更新"""

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        max_open_duration: float = 3600.0,
        clock: Callable[[], float] = time.monotonic
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.max_open_duration = max_open_duration
        self.clock = clock
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._locks = KeyedLocks()

    def _get_or_create(self, tool_id: str) -> CircuitBreaker:
        breaker = self._breakers.get(tool_id)
        if breaker is None:
            breaker = CircuitBreaker(
                tool_id=tool_id,
                failure_threshold=self.failure_threshold,
                recovery_timeout=self.recovery_timeout
            )
            self._breakers[tool_id] = breaker
        return breaker

    async def allow_request(self, tool_id: str) -> bool:
        async with self._locks.lock(tool_id):
            return self._get_or_create(tool_id).allow_request(self.clock())

    async def record_success(self, tool_id: str):
        async with self._locks.lock(tool_id):
            self._get_or_create(tool_id).record_success()

    async def record_failure(self, tool_id: str):
        async with self._locks.lock(tool_id):
            self._get_or_create(tool_id).record_failure(self.clock())

    async def release_trial(self, tool_id: str):
        async with self._locks.lock(tool_id):
            breaker = self._breakers.get(tool_id)
            if breaker:
                breaker.release_trial()

    def in_trial(self, tool_id: str) -> bool:
        """当前是否处于半开试探阶段"""
        breaker = self._breakers.get(tool_id)
        return breaker is not None and breaker.state == CircuitState.HALF_OPEN

    async def reset(self, tool_id: str):
        """手动关闭熔断器"""
        async with self._locks.lock(tool_id):
            breaker = self._breakers.get(tool_id)
            if breaker:
                breaker.force_close()

    def get(self, tool_id: str) -> Optional[CircuitBreaker]:
        return self._breakers.get(tool_id)

    def get_state(self, tool_id: str) -> Dict[str, Any]:
        breaker = self._breakers.get(tool_id)
        if breaker is None:
            return CircuitBreaker(tool_id=tool_id).to_dict()
        return breaker.to_dict()

    async def sweep(self) -> List[str]:
        """强制关闭打开时间超过上限的熔断器"""
        now = self.clock()
        closed = []
        for tool_id in list(self._breakers):
            async with self._locks.lock(tool_id):
                breaker = self._breakers[tool_id]
                if (
                    breaker.state != CircuitState.CLOSED
                    and breaker.opened_at is not None
                    and now - breaker.opened_at > self.max_open_duration
                ):
                    breaker.force_close()
                    closed.append(tool_id)

        if closed:
            logger.info(f"Circuit breaker sweep force-closed: {closed}")
        return closed

    async def run_sweeper(self, interval: float = 3600.0):
        """周期性清扫，直到被取消"""
        while True:
            await asyncio.sleep(interval)
            try:
                await self.sweep()
            except Exception as e:
                logger.error(f"Circuit breaker sweep failed: {e}", exc_info=True)


@dataclass
class ToolMetrics:
    """工具性能指标"""
    tool_id: str
    execution_count: int = 0
    success_count: int = 0
    failure_count: int = 0
    total_duration_ms: float = 0.0
    avg_duration_ms: float = 0.0
    ema_duration_ms: Optional[float] = None
    last_execution_time: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def success_rate(self) -> float:
        return self.success_count / self.execution_count if self.execution_count else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tool_id": self.tool_id,
            "execution_count": self.execution_count,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "success_rate": self.success_rate,
            "avg_duration_ms": self.avg_duration_ms,
            "ema_duration_ms": self.ema_duration_ms
        }


class ToolMetricsStore:
    """滚动性能指标，按工具ID串行化更新"""

    def __init__(self, ema_alpha: float = 0.2, clock: Callable[[], float] = time.time):
        self.ema_alpha = ema_alpha
        self.clock = clock
        self._metrics: Dict[str, ToolMetrics] = {}
        self._locks = KeyedLocks()

    async def record(self, tool_id: str, success: bool, duration_ms: float):
        async with self._locks.lock(tool_id):
            metrics = self._metrics.setdefault(tool_id, ToolMetrics(tool_id=tool_id))
            metrics.execution_count += 1
            if success:
                metrics.success_count += 1
            else:
                metrics.failure_count += 1

            metrics.total_duration_ms += duration_ms
            metrics.avg_duration_ms = metrics.total_duration_ms / metrics.execution_count
            if metrics.ema_duration_ms is None:
                metrics.ema_duration_ms = duration_ms
            else:
                metrics.ema_duration_ms = (
                    self.ema_alpha * duration_ms + (1 - self.ema_alpha) * metrics.ema_duration_ms
                )
            metrics.last_execution_time = self.clock()

    def get(self, tool_id: str) -> Optional[ToolMetrics]:
        return self._metrics.get(tool_id)

    def all(self) -> List[ToolMetrics]:
        return list(self._metrics.values())
