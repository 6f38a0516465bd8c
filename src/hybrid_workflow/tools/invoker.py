"""
工具调用器 - 熔断、校验、重试与指标
"""
import asyncio
import json
import logging
import time
from dataclasses import replace
from datetime import datetime
from typing import Dict, Any, Optional

from .backends import ToolBackend, default_backends
from .models import ToolDefinition, ToolInvocation, ToolInvocationStatus
from .registry import ToolRegistry
from ..config import DEFAULT_RETRYABLE_ERRORS
from ..core.circuit_breaker import CircuitBreakerRegistry, ToolMetricsStore
from ..core.error_handler import RetryExecutor
from ..exceptions import (
    ToolError, ToolNotFoundError, ToolInactiveError, ToolInputValidationError,
    CircuitBreakerOpenError, ToolExecutionError
)
from ..integrations.validators import SchemaValidator
from ..models.workflow import RetryPolicy, BackoffStrategy


logger = logging.getLogger(__name__)


def _payload_size(output: Any) -> int:
    if output is None:
        return 0
    if isinstance(output, (bytes, bytearray)):
        return len(output)
    if isinstance(output, str):
        return len(output.encode("utf-8"))
    return len(json.dumps(output, default=str).encode("utf-8"))


def _error_info(error: Exception) -> Dict[str, Any]:
    return {
        "type": error.error_type if isinstance(error, ToolError) else type(error).__name__,
        "message": str(error),
        "timestamp": datetime.utcnow().isoformat()
    }


class ToolInvoker:
    """执行单次工具调用，调用级失败不会抛出，而是返回失败记录"""

    def __init__(
        self,
        registry: ToolRegistry,
        breakers: Optional[CircuitBreakerRegistry] = None,
        metrics: Optional[ToolMetricsStore] = None,
        retry_executor: Optional[RetryExecutor] = None,
        validator: Optional[SchemaValidator] = None,
        backends: Optional[Dict[Any, ToolBackend]] = None,
        default_retry_policy: Optional[RetryPolicy] = None,
        service_url: Optional[str] = None
    ):
        self.registry = registry
        self.breakers = breakers or CircuitBreakerRegistry()
        self.metrics = metrics or ToolMetricsStore()
        self.retry_executor = retry_executor or RetryExecutor()
        self.validator = validator or SchemaValidator()
        self._owns_backends = backends is None
        self.backends = backends or default_backends(registry, service_url)
        self.default_retry_policy = default_retry_policy or RetryPolicy(
            max_retries=3,
            backoff=BackoffStrategy.EXPONENTIAL,
            base_delay_ms=1000,
            retryable_errors=list(DEFAULT_RETRYABLE_ERRORS)
        )

    def _policy_for(self, tool: ToolDefinition, override: Optional[RetryPolicy]) -> RetryPolicy:
        if override is not None:
            return override
        if tool.config.get("retry_policy"):
            return RetryPolicy.from_dict(tool.config["retry_policy"])
        return self.default_retry_policy

    def _failed(self, record: ToolInvocation, error: Exception, started: float) -> ToolInvocation:
        record.status = ToolInvocationStatus.FAILED
        record.error = _error_info(error)
        record.end_time = datetime.utcnow()
        record.resource_usage.elapsed_ms = (time.monotonic() - started) * 1000
        return record

    async def _resolve(self, tool_id: str, input_data: Any) -> ToolDefinition:
        tool = await self.registry.get_tool(tool_id)
        if tool is None:
            raise ToolNotFoundError(tool_id)
        if not tool.is_active:
            raise ToolInactiveError(tool_id)

        errors = self.validator.validate(input_data, tool.input_schema)
        if errors:
            raise ToolInputValidationError(tool_id, errors)
        return tool

    async def _call_backend(self, tool: ToolDefinition, input_data: Any, context: Optional[Dict[str, Any]]) -> Any:
        backend = self.backends.get(tool.type)
        if backend is None:
            raise ToolExecutionError(tool.tool_id, f"Unsupported tool type: {tool.type.value}")
        try:
            return await asyncio.wait_for(
                backend.execute(tool, input_data, context),
                timeout=tool.timeout
            )
        except asyncio.TimeoutError:
            raise ToolExecutionError(tool.tool_id, f"Tool {tool.tool_id} timeout after {tool.timeout}s")

    async def invoke(
        self,
        tool_id: str,
        input_data: Any,
        context: Optional[Dict[str, Any]] = None,
        retry_policy: Optional[RetryPolicy] = None
    ) -> ToolInvocation:
        """调用工具，返回调用记录"""
        record = ToolInvocation(tool_id=tool_id, input=input_data)
        started = time.monotonic()

        # 熔断器打开时直接拒绝，不计入失败
        if not await self.breakers.allow_request(tool_id):
            logger.warning(f"Circuit breaker open, rejecting call to tool {tool_id}")
            return self._failed(record, CircuitBreakerOpenError(tool_id), started)
        trial = self.breakers.in_trial(tool_id)

        try:
            return await self._invoke_admitted(record, input_data, context, retry_policy, started, trial)
        except asyncio.CancelledError:
            if trial:
                logger.warning(f"Trial call to tool {tool_id} cancelled, releasing half-open slot")
                await self.breakers.release_trial(tool_id)
            raise

    async def _invoke_admitted(
        self,
        record: ToolInvocation,
        input_data: Any,
        context: Optional[Dict[str, Any]],
        retry_policy: Optional[RetryPolicy],
        started: float,
        trial: bool
    ) -> ToolInvocation:
        tool_id = record.tool_id
        try:
            tool = await self._resolve(tool_id, input_data)
        except ToolError as e:
            if trial:
                await self.breakers.release_trial(tool_id)
            logger.warning(f"Tool call rejected: {e}")
            return self._failed(record, e, started)

        backend = self.backends.get(tool.type)
        external = backend.is_external if backend is not None else False

        # 半开试探只调用一次后端
        policy = self._policy_for(tool, retry_policy)
        if trial:
            policy = replace(policy, max_retries=0)

        async def attempt():
            if external:
                record.resource_usage.network_calls += 1
            return await self._call_backend(tool, input_data, context)

        def on_retry(attempt_no, error, delay_ms):
            record.retry_count = attempt_no
            logger.info(f"Retrying tool {tool_id} in {delay_ms}ms after error: {error}")

        try:
            output = await self.retry_executor.execute(attempt, policy, on_retry)
        except Exception as e:
            logger.error(f"Tool {tool_id} invocation failed: {e}")
            self._failed(record, e, started)
            await self.breakers.record_failure(tool_id)
            await self.metrics.record(tool_id, False, record.resource_usage.elapsed_ms)
            return record

        # 输出 schema 不匹配仅告警
        output_errors = self.validator.validate(output, tool.output_schema)
        if output_errors:
            logger.warning(f"Tool {tool_id} output does not match schema: {output_errors}")

        record.output = output
        record.status = ToolInvocationStatus.COMPLETED
        record.end_time = datetime.utcnow()
        record.resource_usage.elapsed_ms = (time.monotonic() - started) * 1000
        record.resource_usage.payload_bytes = _payload_size(output)

        await self.breakers.record_success(tool_id)
        await self.metrics.record(tool_id, True, record.resource_usage.elapsed_ms)

        logger.info(f"Tool {tool_id} invoked successfully in {record.resource_usage.elapsed_ms:.2f}ms")
        return record

    async def close(self):
        """关闭调用器自己创建的后端，共享的后端只关闭一次"""
        if not self._owns_backends:
            return
        unique = {id(backend): backend for backend in self.backends.values()}
        for backend in unique.values():
            await backend.close()

    async def test_tool(self, tool_id: str, input_data: Any) -> Dict[str, Any]:
        """试运行工具，不影响熔断器与指标"""
        started = time.monotonic()
        try:
            tool = await self._resolve(tool_id, input_data)
            output = await self._call_backend(tool, input_data, {"test": True})
        except Exception as e:
            return {
                "success": False,
                "error": str(e),
                "duration_ms": (time.monotonic() - started) * 1000
            }

        return {
            "success": True,
            "output": output,
            "duration_ms": (time.monotonic() - started) * 1000
        }
