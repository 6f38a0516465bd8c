"""
工具链执行器
"""
import asyncio
import logging
from datetime import datetime
from typing import Dict, Any, Optional, List, Sequence, Union

from .invoker import ToolInvoker
from .models import (
    ChainStrategy, ChainStep, ChainResult, ToolInvocation, ToolInvocationStatus
)
from ..core.expressions import ExpressionEvaluator, build_names
from ..exceptions import ExpressionError
from ..models.workflow import ErrorHandlingMode, RetryPolicy, BackoffStrategy


logger = logging.getLogger(__name__)

# retry 模式下失败工具的补充重试策略
FALLBACK_RETRY_POLICY = RetryPolicy(
    max_retries=2,
    backoff=BackoffStrategy.LINEAR,
    base_delay_ms=1000,
    retryable_errors=None
)


def _skipped(tool_id: str, input_data: Any, reason: str) -> ToolInvocation:
    return ToolInvocation(
        tool_id=tool_id,
        input=input_data,
        status=ToolInvocationStatus.SKIPPED,
        error={"type": "skipped", "message": reason},
        end_time=datetime.utcnow()
    )


class ToolChainExecutor:
    """
    组合多个工具调用

    sequential: 上一个工具的输出作为下一个工具的输入
    parallel: 所有工具并发处理同一输入，失败互不影响
    conditional: 按门控表达式决定是否执行，其余同 sequential
    """

    def __init__(
        self,
        invoker: ToolInvoker,
        evaluator: Optional[ExpressionEvaluator] = None,
        fallback_policy: RetryPolicy = FALLBACK_RETRY_POLICY
    ):
        self.invoker = invoker
        self.evaluator = evaluator or ExpressionEvaluator()
        self.fallback_policy = fallback_policy

    async def execute(
        self,
        steps: Sequence[Union[str, ChainStep, Dict[str, Any]]],
        input_data: Any,
        strategy: Union[str, ChainStrategy] = ChainStrategy.SEQUENTIAL,
        error_handling: Union[str, ErrorHandlingMode] = ErrorHandlingMode.STOP,
        context: Optional[Dict[str, Any]] = None,
        conditions: Optional[Dict[str, str]] = None
    ) -> ChainResult:
        """
        执行工具链

        Args:
            steps: 工具 ID 或 ChainStep 列表
            input_data: 链输入
            strategy: sequential / parallel / conditional
            error_handling: stop / continue / retry
            context: 透传给每次工具调用的上下文
            conditions: tool_id -> 门控表达式，补充 ChainStep.condition

        Returns:
            ChainResult，每个步骤都有对应记录
        """
        strategy = ChainStrategy(strategy)
        error_handling = ErrorHandlingMode(error_handling)
        chain_steps = [ChainStep.of(step) for step in steps]
        if conditions:
            for step in chain_steps:
                if step.condition is None and step.tool_id in conditions:
                    step.condition = conditions[step.tool_id]

        result = ChainResult(strategy=strategy, error_handling=error_handling)
        logger.info(
            f"Executing {strategy.value} tool chain of {len(chain_steps)} tools "
            f"(error handling: {error_handling.value})"
        )

        if strategy == ChainStrategy.PARALLEL:
            await self._parallel(chain_steps, input_data, error_handling, context, result)
        else:
            await self._sequential(
                chain_steps, input_data, error_handling, context, result,
                gated=strategy == ChainStrategy.CONDITIONAL
            )

        logger.info(
            f"Tool chain finished with status {result.status}: "
            f"{result.succeeded} succeeded, {result.failed} failed, {result.skipped} skipped"
        )
        return result

    async def _retry_once(self, tool_id: str, input_data: Any, context) -> ToolInvocation:
        logger.info(f"Retrying failed chain tool {tool_id} with fallback policy")
        record = await self.invoker.invoke(tool_id, input_data, context, self.fallback_policy)
        record.retry_count += 1
        return record

    def _gate_open(self, step: ChainStep, current: Any) -> bool:
        if not step.condition:
            return True
        try:
            return self.evaluator.evaluate_condition(step.condition, build_names(current, {}))
        except ExpressionError as e:
            logger.warning(f"Gate for tool {step.tool_id} could not be parsed, skipping: {e}")
            return False

    async def _sequential(
        self,
        steps: List[ChainStep],
        current: Any,
        error_handling: ErrorHandlingMode,
        context: Optional[Dict[str, Any]],
        result: ChainResult,
        gated: bool = False
    ):
        for index, step in enumerate(steps):
            if gated and not self._gate_open(step, current):
                result.records.append(_skipped(step.tool_id, current, "condition not met"))
                continue

            record = await self.invoker.invoke(step.tool_id, current, context)
            if not record.succeeded and error_handling == ErrorHandlingMode.RETRY:
                record = await self._retry_once(step.tool_id, current, context)
            result.records.append(record)

            if record.succeeded:
                current = record.output
                continue

            if error_handling == ErrorHandlingMode.CONTINUE:
                logger.warning(f"Chain tool {step.tool_id} failed, continuing: {record.error_message}")
                continue

            # stop，以及重试后仍失败的 retry
            result.status = "failed"
            result.error = f"Tool chain failed at {step.tool_id}: {record.error_message}"
            for remaining in steps[index + 1:]:
                result.records.append(
                    _skipped(remaining.tool_id, current, f"chain stopped at {step.tool_id}")
                )
            result.final_output = current
            return

        result.final_output = current

    async def _parallel(
        self,
        steps: List[ChainStep],
        input_data: Any,
        error_handling: ErrorHandlingMode,
        context: Optional[Dict[str, Any]],
        result: ChainResult
    ):
        records = list(await asyncio.gather(*[
            self.invoker.invoke(step.tool_id, input_data, context) for step in steps
        ]))

        if error_handling == ErrorHandlingMode.RETRY:
            failed = [i for i, record in enumerate(records) if not record.succeeded]
            retried = await asyncio.gather(*[
                self._retry_once(records[i].tool_id, input_data, context) for i in failed
            ])
            for i, record in zip(failed, retried):
                records[i] = record

        result.records.extend(records)
        result.final_output = {
            record.tool_id: record.output for record in records if record.succeeded
        }

        failures = [record for record in records if not record.succeeded]
        if failures and error_handling != ErrorHandlingMode.CONTINUE:
            result.status = "failed"
            result.error = "Parallel chain failed: " + ", ".join(
                f"{record.tool_id}: {record.error_message}" for record in failures
            )
