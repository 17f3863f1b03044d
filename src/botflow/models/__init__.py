"""Workflow and execution models"""

from .workflow import (
    Workflow, Node, Edge, CONTROL_OUTPUTS, CONTROL_INPUTS,
    is_control_output, is_control_input
)
from .execution import (
    RuntimeContext, build_runtime_context, ExecuteContext,
    ActionExecutionResult, build_action_result,
    Continue, Branch, Suspend, NestedPending, NodeOutcome,
    EngineState, HandlerEntry, ResumeState, Continuation, PendingExecution,
    NodeTrace, NodeStatus
)

__all__ = [
    "Workflow",
    "Node",
    "Edge",
    "CONTROL_OUTPUTS",
    "CONTROL_INPUTS",
    "is_control_output",
    "is_control_input",
    "RuntimeContext",
    "build_runtime_context",
    "ExecuteContext",
    "ActionExecutionResult",
    "build_action_result",
    "Continue",
    "Branch",
    "Suspend",
    "NestedPending",
    "NodeOutcome",
    "EngineState",
    "HandlerEntry",
    "ResumeState",
    "Continuation",
    "PendingExecution",
    "NodeTrace",
    "NodeStatus"
]
