"""
混合工作流引擎异常定义
"""
from typing import Any, Dict, List, Optional


class WorkflowEngineError(Exception):
    """工作流引擎基础异常"""
    pass


class WorkflowParseError(WorkflowEngineError):
    """工作流解析异常"""
    pass


class WorkflowValidationError(WorkflowEngineError):
    """工作流验证异常"""
    def __init__(self, message: str, errors: Optional[List[str]] = None):
        self.errors = errors or []
        if self.errors:
            message = f"{message}: {'; '.join(self.errors)}"
        super().__init__(message)


class WorkflowNotFoundError(WorkflowEngineError):
    """工作流不存在"""
    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(f"Workflow not found: {workflow_id}")


class WorkflowExecutionError(WorkflowEngineError):
    """工作流执行异常"""
    pass


class RunNotFoundError(WorkflowExecutionError):
    """运行实例不存在"""
    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Run not found: {run_id}")


class InvalidRunStateError(WorkflowExecutionError):
    """非法状态转换"""
    def __init__(self, current_state: str, target_state: str, message: str = None):
        self.current_state = current_state
        self.target_state = target_state
        msg = f"Invalid state transition from '{current_state}' to '{target_state}'"
        if message:
            msg += f": {message}"
        super().__init__(msg)


class NodeExecutionError(WorkflowExecutionError):
    """节点执行异常"""
    def __init__(self, node_id: str, message: str, cause: Exception = None, retryable: bool = True):
        self.node_id = node_id
        self.cause = cause
        self.retryable = retryable
        super().__init__(f"Node '{node_id}' execution failed: {message}")


class NodeSkipped(WorkflowEngineError):
    """节点以跳过状态结束（非失败）"""
    def __init__(self, node_id: str, reason: str, output: Any = None):
        self.node_id = node_id
        self.reason = reason
        self.output = output
        super().__init__(f"Node '{node_id}' skipped: {reason}")


class WorkflowTimeoutError(WorkflowExecutionError):
    """工作流超时异常"""
    pass


class ExpressionError(WorkflowEngineError):
    """表达式无法解析"""
    def __init__(self, expression: str, message: str):
        self.expression = expression
        super().__init__(f"Invalid expression '{expression}': {message}")


class HumanInputTimeoutError(WorkflowExecutionError):
    """必填人工输入超时"""
    def __init__(self, run_id: str, node_id: str, timeout: float):
        self.run_id = run_id
        self.node_id = node_id
        self.timeout = timeout
        super().__init__(
            f"Human input for node '{node_id}' in run '{run_id}' timed out after {timeout}s"
        )


class ToolError(WorkflowEngineError):
    """工具调用基础异常"""

    error_type = "tool_error"

    def __init__(self, tool_id: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.tool_id = tool_id
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典"""
        return {
            "error_type": self.error_type,
            "tool_id": self.tool_id,
            "message": str(self),
            "details": self.details
        }


class ToolNotFoundError(ToolError):
    """工具未找到"""

    error_type = "not_found"

    def __init__(self, tool_id: str):
        super().__init__(tool_id, f"Tool not found: {tool_id}")


class ToolInactiveError(ToolError):
    """工具已停用"""

    error_type = "inactive"

    def __init__(self, tool_id: str):
        super().__init__(tool_id, f"Tool is inactive: {tool_id}")


class ToolInputValidationError(ToolError):
    """工具输入不符合 schema"""

    error_type = "validation"

    def __init__(self, tool_id: str, validation_errors: List[str]):
        self.validation_errors = validation_errors
        super().__init__(
            tool_id,
            f"Invalid input for tool {tool_id}: {validation_errors}",
            {"validation_errors": validation_errors}
        )


class CircuitBreakerOpenError(ToolError):
    """熔断器打开，快速失败"""

    error_type = "circuit_open"

    def __init__(self, tool_id: str):
        super().__init__(tool_id, f"Circuit breaker is open for tool: {tool_id}")


class ToolExecutionError(ToolError):
    """工具执行失败"""

    error_type = "execution"


class AgentRuntimeError(WorkflowEngineError):
    """智能体运行时基础异常"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class AgentNotFoundError(AgentRuntimeError):
    """智能体未找到异常"""

    def __init__(self, agent_id: str):
        super().__init__(
            f"Agent not found: {agent_id}",
            {"agent_id": agent_id}
        )


class AgentExecutionError(AgentRuntimeError):
    """智能体执行异常"""

    def __init__(self, message: str, agent_id: str, cause: Optional[Exception] = None):
        details = {"agent_id": agent_id}
        if cause:
            details["cause"] = str(cause)
            details["cause_type"] = type(cause).__name__

        super().__init__(message, details)
