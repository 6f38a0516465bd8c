"""
工作流执行引擎
"""
import asyncio
import copy
import logging
from datetime import datetime
from typing import Dict, Any, Optional, List, Union, Callable

from ..config import EngineSettings
from ..exceptions import (
    WorkflowValidationError, WorkflowNotFoundError, WorkflowParseError,
    WorkflowTimeoutError, WorkflowExecutionError, RunNotFoundError,
    NodeExecutionError, NodeSkipped
)
from ..integrations.agent_runtime import AgentRuntime, HttpAgentRuntime, MockAgentRuntime
from ..integrations.event_bus import EventBus
from ..models.execution import (
    WorkflowExecution, ExecutionContext, ExecutionStatus, NodeExecution,
    NodeExecutionStatus, RunPriority, ExecutionEvent, ExecutionEventType
)
from ..models.workflow import Workflow, Node, NodeType, ErrorHandlingMode, RetryPolicy, BackoffStrategy
from ..storage.repository import (
    WorkflowRepository, ExecutionRepository,
    InMemoryWorkflowRepository, InMemoryExecutionRepository
)
from ..tools.chain import ToolChainExecutor
from ..tools.invoker import ToolInvoker
from ..tools.models import ToolDefinition, ChainResult
from ..tools.registry import ToolRegistry, LocalToolRegistry
from .circuit_breaker import CircuitBreakerRegistry, ToolMetricsStore
from .error_handler import RetryExecutor
from .executors import NodeDispatcher
from .expressions import ExpressionEvaluator, build_names
from .human_input import HumanInputBroker
from .parser import WorkflowParser
from .scheduler import DependencyScheduler, RunQueue
from .validator import WorkflowValidator, ValidationResult


logger = logging.getLogger(__name__)


class WorkflowEngine:
    """
    工作流执行引擎

    单个处理循环按优先级从队列取出运行；每个运行按就绪波次推进，
    波次内的节点并发执行（受 max_concurrency 限制），每一波开始前检查运行状态。
    """

    def __init__(
        self,
        settings: Optional[EngineSettings] = None,
        workflow_repository: Optional[WorkflowRepository] = None,
        execution_repository: Optional[ExecutionRepository] = None,
        event_bus: Optional[EventBus] = None,
        agent_runtime: Optional[AgentRuntime] = None,
        tool_registry: Optional[ToolRegistry] = None,
        retry_executor: Optional[RetryExecutor] = None,
        breakers: Optional[CircuitBreakerRegistry] = None,
        metrics: Optional[ToolMetricsStore] = None,
        tool_invoker: Optional[ToolInvoker] = None,
        dispatcher: Optional[NodeDispatcher] = None,
        evaluator: Optional[ExpressionEvaluator] = None
    ):
        self.settings = settings or EngineSettings()
        self.workflow_repository = workflow_repository or InMemoryWorkflowRepository()
        self.execution_repository = execution_repository or InMemoryExecutionRepository()
        self.event_bus = event_bus or EventBus()

        # 只释放引擎自己创建的客户端
        self._owns_agent_runtime = agent_runtime is None
        self._owns_tool_invoker = tool_invoker is None

        if agent_runtime is None:
            if self.settings.agent_service_url:
                agent_runtime = HttpAgentRuntime(self.settings.agent_service_url)
            else:
                agent_runtime = MockAgentRuntime()
        self.agent_runtime = agent_runtime

        self.tool_registry = tool_registry or LocalToolRegistry()
        self.retry_executor = retry_executor or RetryExecutor()
        self.breakers = breakers or CircuitBreakerRegistry(
            failure_threshold=self.settings.circuit_failure_threshold,
            recovery_timeout=self.settings.circuit_recovery_timeout,
            max_open_duration=self.settings.circuit_max_open
        )
        self.metrics = metrics or ToolMetricsStore()
        self.tool_invoker = tool_invoker or ToolInvoker(
            self.tool_registry,
            breakers=self.breakers,
            metrics=self.metrics,
            retry_executor=self.retry_executor,
            default_retry_policy=RetryPolicy(
                max_retries=3,
                backoff=BackoffStrategy.EXPONENTIAL,
                base_delay_ms=self.settings.retry_base_delay_ms,
                retryable_errors=list(self.settings.retryable_errors)
            ),
            service_url=self.settings.tool_service_url
        )

        self.evaluator = evaluator or ExpressionEvaluator()
        self.broker = HumanInputBroker(self.event_bus)
        self.dispatcher = dispatcher or NodeDispatcher.create_default(
            self.agent_runtime, self.tool_invoker, self.broker, self.settings, self.evaluator
        )
        self.chain_executor = ToolChainExecutor(self.tool_invoker, self.evaluator)

        self.parser = WorkflowParser()
        self.validator = WorkflowValidator()
        self.scheduler = DependencyScheduler(edge_condition=self._evaluate_edge)
        self.run_queue = RunQueue()

        # 运行时状态
        self._run_workflows: Dict[str, Workflow] = {}
        self._run_tasks: Dict[str, asyncio.Task] = {}
        self._done_events: Dict[str, asyncio.Event] = {}
        self._resume_events: Dict[str, asyncio.Event] = {}
        self._run_slots = asyncio.Semaphore(self.settings.max_concurrent_runs)
        self._processor_task: Optional[asyncio.Task] = None
        self._sweeper_task: Optional[asyncio.Task] = None
        self._running = False

    def _evaluate_edge(self, condition: str, output: Any, variables: Dict[str, Any]) -> bool:
        return self.evaluator.evaluate_condition(condition, build_names(output, variables))

    # ------------------------------------------------------------------
    # 生命周期
    # ------------------------------------------------------------------

    async def start(self):
        """启动队列处理循环与熔断器清扫任务"""
        if self._running:
            return
        self._running = True
        await self.broker.start()
        self._processor_task = asyncio.create_task(self._process_queue())
        self._sweeper_task = asyncio.create_task(
            self.breakers.run_sweeper(self.settings.circuit_sweep_interval)
        )
        logger.info("Workflow engine started")

    async def stop(self):
        """停止引擎，正在执行的运行会被取消，随后释放 HTTP 客户端"""
        if self._running:
            self._running = False

            tasks = [t for t in (self._processor_task, self._sweeper_task) if t]
            tasks.extend(self._run_tasks.values())
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

            self._processor_task = None
            self._sweeper_task = None
            await self.broker.stop()
            logger.info("Workflow engine stopped")

        await self.close()

    async def close(self):
        """关闭引擎创建的工具后端与智能体运行时连接"""
        if self._owns_tool_invoker:
            await self.tool_invoker.close()
        if self._owns_agent_runtime:
            await self.agent_runtime.close()

    async def __aenter__(self) -> "WorkflowEngine":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()

    # ------------------------------------------------------------------
    # 工作流定义管理
    # ------------------------------------------------------------------

    def _check(self, workflow: Workflow):
        result = self.validator.validate(workflow)
        if not result.valid:
            raise WorkflowValidationError(f"Workflow '{workflow.id}' is invalid", result.errors)
        for warning in result.warnings:
            logger.warning(f"Workflow {workflow.id}: {warning}")

    async def create_workflow(self, definition: Union[str, Dict[str, Any], Workflow]) -> str:
        """解析、验证并保存工作流"""
        workflow = self.parser.parse(definition)
        self._check(workflow)

        await self.workflow_repository.save(workflow)
        await self._publish(
            ExecutionEventType.WORKFLOW_CREATED,
            data={"workflow_id": workflow.id, "name": workflow.name, "version": workflow.version}
        )
        logger.info(f"Created workflow {workflow.id} ({workflow.name})")
        return workflow.id

    async def update_workflow(
        self,
        workflow_id: str,
        definition: Union[str, Dict[str, Any], Workflow]
    ) -> Workflow:
        """替换工作流定义，版本号加一"""
        existing = await self._require_workflow(workflow_id)
        workflow = self.parser.parse(definition)
        workflow.id = workflow_id
        workflow.version = existing.version + 1
        workflow.created_at = existing.created_at
        workflow.created_by = workflow.created_by or existing.created_by
        self._check(workflow)

        await self.workflow_repository.update(workflow)
        await self._publish(
            ExecutionEventType.WORKFLOW_UPDATED,
            data={"workflow_id": workflow_id, "version": workflow.version}
        )
        return workflow

    async def delete_workflow(self, workflow_id: str) -> bool:
        deleted = await self.workflow_repository.delete(workflow_id)
        if deleted:
            await self._publish(
                ExecutionEventType.WORKFLOW_DELETED, data={"workflow_id": workflow_id}
            )
        return deleted

    async def get_workflow(self, workflow_id: str) -> Optional[Workflow]:
        return await self.workflow_repository.get(workflow_id)

    async def list_workflows(
        self,
        offset: int = 0,
        limit: int = 100,
        filters: Optional[Dict[str, Any]] = None
    ) -> List[Workflow]:
        return await self.workflow_repository.list(offset=offset, limit=limit, filters=filters)

    def validate_workflow(self, definition: Union[str, Dict[str, Any], Workflow]) -> ValidationResult:
        """验证定义而不保存；解析失败也以错误形式返回"""
        try:
            workflow = self.parser.parse(definition)
        except WorkflowParseError as e:
            return ValidationResult(valid=False, errors=[str(e)])
        return self.validator.validate(workflow)

    async def _require_workflow(self, workflow_id: str) -> Workflow:
        workflow = await self.workflow_repository.get(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id)
        return workflow

    # ------------------------------------------------------------------
    # 工具
    # ------------------------------------------------------------------

    async def register_tool(self, tool_def: ToolDefinition, handler: Optional[Callable] = None):
        await self.tool_registry.register_tool(tool_def, handler)

    async def execute_tool_chain(
        self,
        steps: List[Any],
        input_data: Any,
        strategy: str = "sequential",
        error_handling: str = "stop",
        context: Optional[Dict[str, Any]] = None
    ) -> ChainResult:
        return await self.chain_executor.execute(steps, input_data, strategy, error_handling, context)

    async def test_tool(self, tool_id: str, input_data: Any) -> Dict[str, Any]:
        return await self.tool_invoker.test_tool(tool_id, input_data)

    def get_tool_metrics(self, tool_id: Optional[str] = None) -> Any:
        """单个工具或全部工具的性能指标"""
        if tool_id is None:
            return [m.to_dict() for m in self.metrics.all()]
        metrics = self.metrics.get(tool_id)
        return metrics.to_dict() if metrics else None

    def get_circuit_state(self, tool_id: str) -> Dict[str, Any]:
        return self.breakers.get_state(tool_id)

    # ------------------------------------------------------------------
    # 提交与控制
    # ------------------------------------------------------------------

    async def submit_run(
        self,
        workflow_id: str,
        input_data: Any = None,
        priority: Union[str, RunPriority] = RunPriority.NORMAL,
        timeout: Optional[float] = None,
        session_id: Optional[str] = None,
        submitted_by: Optional[str] = None,
        organization_id: Optional[str] = None
    ) -> str:
        """
        提交一次运行

        验证失败时抛出 WorkflowValidationError，不会入队。

        Returns:
            运行ID
        """
        workflow = await self._require_workflow(workflow_id)
        if not workflow.is_active:
            raise WorkflowExecutionError(f"Workflow is inactive: {workflow_id}")
        self._check(workflow)

        priority = RunPriority(priority)
        execution = WorkflowExecution(
            workflow_id=workflow.id,
            workflow_version=workflow.version,
            priority=priority,
            input=input_data,
            timeout=timeout if timeout is not None else workflow.settings.timeout,
            metadata={
                "submitted_by": submitted_by,
                "organization_id": organization_id or workflow.organization_id,
                "session_id": session_id
            }
        )
        execution.context = ExecutionContext(
            run_id=execution.id,
            workflow_id=workflow.id,
            variables=copy.deepcopy(workflow.variables),
            session_id=session_id,
            user_id=submitted_by,
            organization_id=organization_id or workflow.organization_id
        )

        # 运行期间定义的修改不影响已提交的运行
        self._run_workflows[execution.id] = copy.deepcopy(workflow)
        self._done_events[execution.id] = asyncio.Event()

        await self.execution_repository.save(execution)
        await self.run_queue.put(execution.id, priority)
        logger.info(f"Submitted run {execution.id} for workflow {workflow.id} ({priority.value})")
        return execution.id

    async def cancel_run(self, run_id: str) -> WorkflowExecution:
        """协作式取消：进行中的节点调用不会被中断"""
        execution = await self._require_run(run_id)
        was_pending = execution.status == ExecutionStatus.PENDING
        execution.cancel()
        await self.execution_repository.update(execution)

        self.broker.cancel_run(run_id)
        resume = self._resume_events.get(run_id)
        if resume:
            resume.set()

        if was_pending:
            self.run_queue.remove(run_id)
            await self._finish_run(execution)
        logger.info(f"Cancelled run {run_id}")
        return execution

    async def pause_run(self, run_id: str) -> WorkflowExecution:
        execution = await self._require_run(run_id)
        execution.pause()
        self._resume_events[run_id] = asyncio.Event()
        await self.execution_repository.update(execution)
        logger.info(f"Paused run {run_id}")
        return execution

    async def resume_run(self, run_id: str) -> WorkflowExecution:
        execution = await self._require_run(run_id)
        execution.resume()
        resume = self._resume_events.get(run_id)
        if resume:
            resume.set()
        await self.execution_repository.update(execution)
        logger.info(f"Resumed run {run_id}")
        return execution

    async def provide_human_input(
        self,
        run_id: str,
        node_id: str,
        value: Any,
        responder_id: Optional[str] = None
    ) -> bool:
        """送达人工输入并发布 human_input_response 事件"""
        await self._require_run(run_id)
        delivered = self.broker.provide(run_id, node_id, value, responder_id)
        await self._publish(
            ExecutionEventType.HUMAN_INPUT_RESPONSE,
            run_id=run_id,
            node_id=node_id,
            data={"value": value, "responder_id": responder_id}
        )
        if not delivered:
            logger.warning(f"No pending human input for run {run_id} node {node_id}")
        return delivered

    # ------------------------------------------------------------------
    # 查询
    # ------------------------------------------------------------------

    async def get_run(self, run_id: str) -> Optional[WorkflowExecution]:
        return await self.execution_repository.get(run_id)

    async def _require_run(self, run_id: str) -> WorkflowExecution:
        execution = await self.execution_repository.get(run_id)
        if execution is None:
            raise RunNotFoundError(run_id)
        return execution

    async def get_run_history(
        self,
        workflow_id: str,
        status: Optional[Union[str, ExecutionStatus]] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        offset: int = 0,
        limit: int = 100,
        priority: Optional[Union[str, RunPriority]] = None
    ) -> List[WorkflowExecution]:
        """按工作流查询运行历史，最新的在前"""
        return await self.execution_repository.list_by_workflow(
            workflow_id,
            status=ExecutionStatus(status) if status else None,
            start_time=start_time,
            end_time=end_time,
            offset=offset,
            limit=limit,
            priority=RunPriority(priority) if priority else None
        )

    async def wait_for_run(self, run_id: str, timeout: Optional[float] = None) -> WorkflowExecution:
        """
        等待运行结束

        取消后的运行状态会立即变为 cancelled，但要等进行中的节点收尾、
        run_completed 发布之后才返回。
        """
        execution = await self._require_run(run_id)
        event = self._done_events.get(run_id)
        if event is None:
            if execution.is_terminal_state():
                return execution
            event = self._done_events.setdefault(run_id, asyncio.Event())
        await asyncio.wait_for(event.wait(), timeout=timeout)
        return execution

    async def get_workflow_analytics(self, workflow_id: str) -> Dict[str, Any]:
        """工作流执行统计"""
        executions = await self.execution_repository.list_by_workflow(workflow_id, limit=10000)
        finished = [e for e in executions if e.is_terminal_state()]
        successful = [e for e in finished if e.status == ExecutionStatus.COMPLETED]
        durations = [e.duration for e in finished if e.duration is not None]

        return {
            "workflow_id": workflow_id,
            "total_executions": len(executions),
            "successful_executions": len(successful),
            "failed_executions": sum(1 for e in finished if e.status == ExecutionStatus.FAILED),
            "success_rate": len(successful) / len(finished) if finished else 0.0,
            "avg_duration": sum(durations) / len(durations) if durations else 0.0
        }

    # ------------------------------------------------------------------
    # 执行
    # ------------------------------------------------------------------

    async def _process_queue(self):
        """唯一的出队循环，一次只启动一个运行"""
        while self._running:
            run_id = await self.run_queue.get()
            await self._run_slots.acquire()

            execution = await self.execution_repository.get(run_id)
            if execution is None or execution.status != ExecutionStatus.PENDING:
                self._run_slots.release()
                continue

            task = asyncio.create_task(self._execute_run(execution))
            self._run_tasks[run_id] = task
            task.add_done_callback(lambda _t, rid=run_id: self._on_run_done(rid))

    def _on_run_done(self, run_id: str):
        self._run_tasks.pop(run_id, None)
        self._run_slots.release()

    async def run_now(self, run_id: str) -> WorkflowExecution:
        """绕过队列直接执行一个已提交的运行"""
        execution = await self._require_run(run_id)
        self.run_queue.remove(run_id)
        await self._execute_run(execution)
        return execution

    async def _execute_run(self, execution: WorkflowExecution):
        workflow = self._run_workflows.get(execution.id)
        if workflow is None:
            workflow = await self._require_workflow(execution.workflow_id)

        try:
            execution.start()
            await self.execution_repository.update(execution)
            await self._publish(
                ExecutionEventType.RUN_STARTED,
                run_id=execution.id,
                data={"workflow_id": workflow.id, "priority": execution.priority.value}
            )
            logger.info(f"Run {execution.id} started")

            if execution.timeout:
                await asyncio.wait_for(
                    self._run_waves(workflow, execution), timeout=execution.timeout
                )
            else:
                await self._run_waves(workflow, execution)

        except asyncio.TimeoutError:
            error = WorkflowTimeoutError(f"Run timed out after {execution.timeout}s")
            logger.error(f"Run {execution.id} timed out after {execution.timeout}s")
            self.broker.cancel_run(execution.id)
            await self._close_out(workflow, execution, str(error), error)
            if not execution.is_terminal_state():
                execution.fail(str(error))

        except asyncio.CancelledError:
            logger.warning(f"Run {execution.id} task cancelled")
            self.broker.cancel_run(execution.id)
            if not execution.is_terminal_state():
                execution.cancel()
            await self._close_out(workflow, execution, "run cancelled")
            raise

        except Exception as e:
            logger.error(f"Run {execution.id} failed: {e}", exc_info=True)
            await self._close_out(workflow, execution, f"run failed: {e}", e)
            if not execution.is_terminal_state():
                execution.fail(str(e))

        finally:
            await self._finish_run(execution)

    async def _finish_run(self, execution: WorkflowExecution):
        await self.execution_repository.update(execution)
        self._run_workflows.pop(execution.id, None)
        self._resume_events.pop(execution.id, None)

        await self._publish(
            ExecutionEventType.RUN_COMPLETED,
            run_id=execution.id,
            data={
                "run_id": execution.id,
                "status": execution.status.value,
                "duration": execution.duration,
                "summary": execution.summary()
            }
        )
        logger.info(
            f"Run {execution.id} finished with status {execution.status.value}"
            f" in {execution.duration or 0:.3f}s"
        )

        done = self._done_events.setdefault(execution.id, asyncio.Event())
        done.set()

    async def _checkpoint(self, execution: WorkflowExecution) -> bool:
        """每一波开始前检查状态；暂停时等待恢复，返回是否继续"""
        while execution.status == ExecutionStatus.PAUSED:
            resume = self._resume_events.setdefault(execution.id, asyncio.Event())
            await resume.wait()
        return execution.status == ExecutionStatus.RUNNING

    async def _run_waves(self, workflow: Workflow, execution: WorkflowExecution):
        settings = workflow.settings
        semaphore = asyncio.Semaphore(settings.max_concurrency or self.settings.max_concurrency)
        stopped = False

        while await self._checkpoint(execution):
            ready = self.scheduler.ready_nodes(workflow, execution)
            if not ready:
                break

            await asyncio.gather(*[
                self._run_node(workflow, execution, node, semaphore) for node in ready
            ])

            if settings.error_handling != ErrorHandlingMode.CONTINUE and any(
                execution.get_node_execution(node.id).status == NodeExecutionStatus.FAILED
                for node in ready
            ):
                stopped = True
                break

        if execution.status == ExecutionStatus.CANCELLED:
            await self._close_out(workflow, execution, "run cancelled")
            return

        if stopped:
            await self._close_out(workflow, execution, "run stopped after node failure")
            failed = execution.summary()["failed_nodes"]
            execution.fail(
                "Node(s) failed: " + ", ".join(item["node_id"] for item in failed)
            )
            return

        execution.complete(self._collect_output(workflow, execution))

    async def _run_node(
        self,
        workflow: Workflow,
        execution: WorkflowExecution,
        node: Node,
        semaphore: asyncio.Semaphore
    ):
        record = execution.get_node_execution(node.id) or execution.create_node_execution(node.id)
        admission = self.scheduler.resolve_admission(
            workflow, execution, node.id, workflow.settings.error_handling
        )

        if not admission.run:
            record.skip(admission.reason)
            logger.info(f"Node {node.id} skipped in run {execution.id}: {admission.reason}")
            await self._publish_node_completed(execution, record)
            return

        async with semaphore:
            if execution.status == ExecutionStatus.CANCELLED:
                record.skip("run cancelled")
            else:
                record.start(self.scheduler.build_node_input(workflow, execution, node.id, admission))
                try:
                    output = await self._dispatch(workflow, execution, node, record)
                except NodeSkipped as e:
                    record.skip(e.reason, e.output)
                except Exception as e:
                    logger.error(f"Node {node.id} failed in run {execution.id}: {e}")
                    record.fail(e)
                else:
                    record.complete(output)

        await self._publish_node_completed(execution, record)

    async def _dispatch(
        self,
        workflow: Workflow,
        execution: WorkflowExecution,
        node: Node,
        record: NodeExecution
    ) -> Any:
        # 人工输入节点只受等待超时约束
        if node.type == NodeType.HUMAN_INPUT:
            timeout = None
        else:
            timeout = node.timeout or self.settings.node_timeout

        async def attempt():
            try:
                return await asyncio.wait_for(
                    self.dispatcher.dispatch(node, record, execution, workflow),
                    timeout=timeout
                )
            except asyncio.TimeoutError:
                raise NodeExecutionError(node.id, f"timeout after {timeout}s")

        if workflow.settings.error_handling != ErrorHandlingMode.RETRY:
            return await attempt()

        def on_retry(attempt_no, error, delay_ms):
            record.retry_count = attempt_no
            logger.info(f"Retrying node {node.id} (attempt {attempt_no}) in {delay_ms}ms: {error}")

        return await self.retry_executor.execute(attempt, workflow.settings.retry_policy, on_retry)

    async def _close_out(
        self,
        workflow: Workflow,
        execution: WorkflowExecution,
        reason: str,
        error: Optional[Exception] = None
    ):
        """结束运行时，未执行的节点记为跳过，执行中的节点记为失败"""
        for node in workflow.nodes:
            record = execution.get_node_execution(node.id)
            if record is None:
                record = execution.create_node_execution(node.id)
            if record.status == NodeExecutionStatus.PENDING:
                record.skip(reason)
            elif record.status == NodeExecutionStatus.RUNNING:
                record.fail(error or WorkflowExecutionError(reason))
            else:
                continue
            await self._publish_node_completed(execution, record)

    @staticmethod
    def _collect_output(workflow: Workflow, execution: WorkflowExecution) -> Any:
        """单个出口节点时返回其输出，否则按节点ID聚合"""
        outputs = {}
        for node in workflow.exit_nodes():
            record = execution.get_node_execution(node.id)
            if record and record.status == NodeExecutionStatus.COMPLETED:
                outputs[node.id] = record.output_data

        if len(outputs) == 1:
            return next(iter(outputs.values()))
        return outputs

    # ------------------------------------------------------------------
    # 事件
    # ------------------------------------------------------------------

    async def _publish(
        self,
        event_type: ExecutionEventType,
        run_id: Optional[str] = None,
        node_id: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None
    ):
        event = ExecutionEvent(event_type=event_type, run_id=run_id, node_id=node_id, data=data or {})
        await self.event_bus.publish(event_type.value, event)

    async def _publish_node_completed(self, execution: WorkflowExecution, record: NodeExecution):
        data = {
            "run_id": execution.id,
            "node_id": record.node_id,
            "status": record.status.value
        }
        if record.error_info:
            data["error"] = record.error_info
        if "skip_reason" in record.metadata:
            data["reason"] = record.metadata["skip_reason"]

        await self._publish(
            ExecutionEventType.NODE_COMPLETED,
            run_id=execution.id,
            node_id=record.node_id,
            data=data
        )
