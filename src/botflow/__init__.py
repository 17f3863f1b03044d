"""
botflow-runtime - 聊天机器人可视化工作流引擎
"""

__version__ = "0.1.0"

from .core.engine import WorkflowEngine
from .core.parser import WorkflowParser
from .core.service import ExecutionService
from .integrations.action_registry import LocalActionRegistry, ActionDefinition
from .integrations.builtin_actions import register_builtin_actions
from .models.workflow import Workflow, Node, Edge
from .models.execution import (
    ActionExecutionResult, ExecuteContext, PendingExecution, ResumeState, RuntimeContext
)

__all__ = [
    "WorkflowEngine",
    "WorkflowParser",
    "ExecutionService",
    "LocalActionRegistry",
    "ActionDefinition",
    "register_builtin_actions",
    "Workflow",
    "Node",
    "Edge",
    "ActionExecutionResult",
    "ExecuteContext",
    "PendingExecution",
    "ResumeState",
    "RuntimeContext",
]
