"""
重试策略执行器
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Iterable, Optional

from ..models.workflow import RetryPolicy, BackoffStrategy
from ..exceptions import (
    WorkflowValidationError, ToolInputValidationError, CircuitBreakerOpenError, NodeSkipped
)


logger = logging.getLogger(__name__)

# 这些错误无论策略如何都不重试
NON_RETRYABLE_ERRORS = (
    WorkflowValidationError,
    ToolInputValidationError,
    CircuitBreakerOpenError,
    NodeSkipped,
)


def calculate_retry_delay(attempt: int, policy: RetryPolicy) -> float:
    """计算第 attempt 次重试前的延迟（毫秒），attempt 从 0 开始"""
    if policy.backoff == BackoffStrategy.LINEAR:
        return policy.base_delay_ms * (attempt + 1)
    return policy.base_delay_ms * (2 ** attempt)


def is_retryable(error: BaseException, retryable_errors: Optional[Iterable[str]]) -> bool:
    """按错误消息子串判断是否可重试（忽略大小写）"""
    cause = getattr(error, "cause", None)
    if isinstance(error, NON_RETRYABLE_ERRORS) or isinstance(cause, NON_RETRYABLE_ERRORS):
        return False
    if getattr(error, "retryable", True) is False:
        return False

    if retryable_errors is None:
        return True

    message = str(error).lower()
    return any(pattern.lower() in message for pattern in retryable_errors)


class RetryExecutor:
    """带退避的有限重试"""

    def __init__(self, sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        self._sleep = sleep

    async def execute(
        self,
        operation: Callable[[], Awaitable[Any]],
        policy: RetryPolicy,
        on_retry: Optional[Callable[[int, Exception, float], Any]] = None
    ) -> Any:
        """
        执行操作，失败时按策略重试

        Args:
            operation: 无参协程函数，每次尝试调用一次
            policy: 重试策略
            on_retry: 每次重试前回调 (attempt, error, delay_ms)

        Returns:
            操作结果；重试耗尽时重新抛出最后一次错误
        """
        attempt = 0
        while True:
            try:
                return await operation()
            except Exception as e:
                if attempt >= policy.max_retries or not is_retryable(e, policy.retryable_errors):
                    raise

                delay_ms = calculate_retry_delay(attempt, policy)
                logger.info(
                    f"Retrying after {delay_ms}ms (attempt {attempt + 1}/{policy.max_retries}): {e}"
                )
                if on_retry:
                    on_retry(attempt + 1, e, delay_ms)

                await self._sleep(delay_ms / 1000)
                attempt += 1
