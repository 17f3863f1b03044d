"""
工作流定义模型
"""
from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional
from uuid import uuid4


CONTROL_OUTPUTS = frozenset({
    "__control__",
    "next",
    "true",
    "false",
    "loop",
    "done",
    "try",
    "catch",
    "success",
    "error",
    "default",
})
CONTROL_OUTPUT_PREFIXES = ("case_", "case:")
CONTROL_INPUTS = frozenset({"__control__", "control_input"})

# 无 flow_output 时沿用的默认控制输出
DEFAULT_CONTROL_OUTPUTS = ("__control__", "next")


def is_control_output(name: Optional[str]) -> bool:
    """是否为保留的控制输出名"""
    value = str(name or "").strip()
    if not value:
        return False
    if value in CONTROL_OUTPUTS:
        return True
    return value.startswith(CONTROL_OUTPUT_PREFIXES)


def is_control_input(name: Optional[str]) -> bool:
    """是否为控制输入端口"""
    return str(name or "").strip() in CONTROL_INPUTS


@dataclass
class Node:
    """工作流节点"""
    id: str
    action_id: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    position: Dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "action_id": self.action_id,
            "data": dict(self.data),
            "position": dict(self.position),
        }


@dataclass
class Edge:
    """工作流边"""
    source_node: str
    source_output: str
    target_node: str
    target_input: str
    id: str = field(default_factory=lambda: str(uuid4()))
    source_path: Optional[str] = None

    @property
    def is_control(self) -> bool:
        """控制边：源输出或目标输入使用保留名"""
        return is_control_input(self.target_input) or is_control_output(self.source_output)

    @property
    def targets_control_input(self) -> bool:
        return is_control_input(self.target_input)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "source_node": self.source_node,
            "source_output": self.source_output,
            "target_node": self.target_node,
            "target_input": self.target_input,
        }
        if self.source_path:
            data["source_path"] = self.source_path
        return data


@dataclass
class Workflow:
    """工作流定义"""
    id: str = field(default_factory=lambda: str(uuid4()))
    name: str = ""
    nodes: Dict[str, Node] = field(default_factory=dict)
    edges: List[Edge] = field(default_factory=list)
    description: Optional[str] = None
    max_steps: Optional[int] = None
    settings: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def get_node(self, node_id: str) -> Optional[Node]:
        """根据ID获取节点"""
        return self.nodes.get(node_id)

    @property
    def has_control_bus(self) -> bool:
        """任意边指向控制输入时进入控制总线模式"""
        return any(edge.targets_control_input for edge in self.edges)

    def incoming_edges(self, node_id: str) -> List[Edge]:
        return [edge for edge in self.edges if edge.target_node == node_id]

    def validate(self) -> List[str]:
        """验证工作流定义的合法性"""
        errors = []

        for node_id, node in self.nodes.items():
            if node.id != node_id:
                errors.append(f"Node key '{node_id}' does not match node id '{node.id}'")

        edge_ids = set()
        for edge in self.edges:
            if edge.id in edge_ids:
                errors.append(f"Duplicate edge id '{edge.id}'")
            edge_ids.add(edge.id)
            if edge.source_node not in self.nodes:
                errors.append(f"Edge '{edge.id}' source '{edge.source_node}' not found in nodes")
            if edge.target_node not in self.nodes:
                errors.append(f"Edge '{edge.id}' target '{edge.target_node}' not found in nodes")

        return errors

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "name": self.name,
            "nodes": {node_id: node.to_dict() for node_id, node in self.nodes.items()},
            "edges": [edge.to_dict() for edge in self.edges],
        }
        if self.description:
            data["description"] = self.description
        if self.max_steps:
            data["max_steps"] = self.max_steps
        if self.settings:
            data["settings"] = dict(self.settings)
        if self.metadata:
            data["metadata"] = dict(self.metadata)
        return data
