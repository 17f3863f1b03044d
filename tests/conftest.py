"""
Pytest 配置和公共 fixtures
"""
import pytest
from typing import Any, Dict, Iterable, Optional, Tuple

from botflow.core import WorkflowEngine
from botflow.config import EngineSettings
from botflow.integrations import LocalActionRegistry, RecordingTracer, register_builtin_actions
from botflow.models.workflow import Workflow, Node, Edge
from botflow.storage.repository import InMemoryWorkflowRepository, InMemoryExecutionStore


NodeSpec = Tuple[str, Optional[str], Dict[str, Any]]
EdgeSpec = Tuple[str, str, str, str]


def make_workflow(
    workflow_id: str,
    nodes: Iterable[NodeSpec],
    edges: Iterable[EdgeSpec] = (),
    **kwargs
) -> Workflow:
    """用 (id, action, data) 和 (源, 输出, 目标, 输入) 元组构造工作流"""
    workflow = Workflow(id=workflow_id, **kwargs)
    for node_id, action_id, data in nodes:
        workflow.nodes[node_id] = Node(id=node_id, action_id=action_id, data=dict(data or {}))
    for index, (source, output, target, target_input) in enumerate(edges):
        workflow.edges.append(Edge(
            id=f"e{index}",
            source_node=source,
            source_output=output,
            target_node=target,
            target_input=target_input,
        ))
    return workflow


def append_text(value: str, name: str = "trace") -> Dict[str, Any]:
    """set_variable 追加文本的节点参数"""
    return {"variable_name": name, "value": value, "operation": "append_text", "value_type": "string"}


@pytest.fixture
def workflow_factory():
    """工作流构造函数"""
    return make_workflow


@pytest.fixture
def append_text_params():
    return append_text


@pytest.fixture
def registry() -> LocalActionRegistry:
    """注册了内置动作的注册表"""
    registry = LocalActionRegistry()
    register_builtin_actions(registry)
    return registry


@pytest.fixture
def workflow_repository() -> InMemoryWorkflowRepository:
    return InMemoryWorkflowRepository()


@pytest.fixture
def execution_store() -> InMemoryExecutionStore:
    return InMemoryExecutionStore()


@pytest.fixture
def tracer() -> RecordingTracer:
    return RecordingTracer()


@pytest.fixture
def engine(registry, workflow_repository, tracer) -> WorkflowEngine:
    """使用内存仓库的工作流引擎"""
    return WorkflowEngine(
        registry,
        workflow_repository=workflow_repository,
        settings=EngineSettings(),
        tracer=tracer,
    )
