"""Storage layer"""

from .repository import (
    WorkflowRepository, InMemoryWorkflowRepository,
    ExecutionStore, InMemoryExecutionStore, FileExecutionStore
)

__all__ = [
    "WorkflowRepository",
    "InMemoryWorkflowRepository",
    "ExecutionStore",
    "InMemoryExecutionStore",
    "FileExecutionStore",
]
