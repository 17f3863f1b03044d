"""Core workflow engine components"""

from .engine import WorkflowEngine
from .graph import topological_order, control_edge_map, validate_control_fanout
from .parser import WorkflowParser
from .service import ExecutionService, ExecutionRecord, ExecutionStatus

__all__ = [
    "WorkflowEngine",
    "topological_order",
    "control_edge_map",
    "validate_control_fanout",
    "WorkflowParser",
    "ExecutionService",
    "ExecutionRecord",
    "ExecutionStatus",
]
