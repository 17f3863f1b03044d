"""
工作流引擎异常定义
"""
from typing import Optional


class WorkflowEngineError(Exception):
    """工作流引擎基础异常"""
    pass


class WorkflowParseError(WorkflowEngineError):
    """工作流解析异常"""
    pass


class WorkflowValidationError(WorkflowEngineError):
    """工作流验证异常"""
    pass


class WorkflowNotFoundError(WorkflowEngineError):
    """工作流不存在"""
    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(f"workflow not found: {workflow_id}")


class WorkflowExecutionError(WorkflowEngineError):
    """工作流执行异常"""
    pass


class GraphError(WorkflowExecutionError):
    """图结构错误（循环依赖、控制输出扇出）"""
    def __init__(self, message: str, node_ids: Optional[list] = None):
        self.node_ids = list(node_ids or [])
        super().__init__(message)


class NodeError(WorkflowExecutionError):
    """节点执行异常，可被 try_catch 节点捕获"""
    def __init__(
        self,
        node_id: str,
        message: str,
        cause: Optional[Exception] = None,
        attempts: int = 1
    ):
        self.node_id = node_id
        self.cause = cause
        self.attempts = attempts
        super().__init__(message)


class NodeTimeoutError(NodeError):
    """节点执行超时"""
    def __init__(self, node_id: str, timeout_ms: int):
        self.timeout_ms = timeout_ms
        super().__init__(node_id, f"node execution timeout after {timeout_ms}ms")


class RecursionLimitError(WorkflowExecutionError):
    """子工作流递归调用或调用深度超限"""
    pass


class StepLimitError(WorkflowExecutionError):
    """执行步数超限"""
    def __init__(self, max_steps: int):
        self.max_steps = max_steps
        super().__init__(f"workflow exceeded max steps ({max_steps})")


class ConditionError(WorkflowExecutionError):
    """节点条件求值失败"""
    def __init__(self, node_id: str, cause: Exception):
        self.node_id = node_id
        self.cause = cause
        super().__init__(f"condition failed for node {node_id}: {cause}")


class PersistenceError(WorkflowEngineError):
    """执行状态持久化异常"""
    pass
