"""
工作流解析器
"""
import yaml
import json
from typing import Dict, Any, List, Union
from pathlib import Path

from ..models.workflow import Workflow, Node, Edge
from ..exceptions import WorkflowParseError, WorkflowValidationError
from ..integrations.validators import SchemaValidator


# 省略端口的简写边视为控制边
DEFAULT_EDGE_PORT = "__control__"

WORKFLOW_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "id": {"type": "string", "minLength": 1},
        "name": {"type": "string"},
        "description": {"type": ["string", "null"]},
        "max_steps": {"type": ["integer", "null"], "minimum": 1},
        "settings": {"type": "object"},
        "metadata": {"type": "object"},
        "nodes": {
            "type": ["object", "array"],
            "additionalProperties": {"$ref": "#/definitions/node"},
            "items": {"$ref": "#/definitions/node"},
        },
        "edges": {"type": "array", "items": {"$ref": "#/definitions/edge"}},
    },
    "required": ["id"],
    "definitions": {
        "node": {
            "type": "object",
            "properties": {
                "id": {"type": "string"},
                "action_id": {"type": ["string", "null"]},
                "action": {"type": ["string", "null"]},
                "data": {"type": "object"},
                "params": {"type": "object"},
                "position": {"type": "object"},
            },
        },
        "edge": {
            "type": "object",
            "properties": {
                "id": {"type": "string"},
                "source_node": {"type": "string"},
                "source_output": {"type": "string"},
                "target_node": {"type": "string"},
                "target_input": {"type": "string"},
                "source_path": {"type": ["string", "null"]},
                "from": {"type": "string"},
                "to": {"type": "string"},
            },
            "anyOf": [
                {"required": ["source_node", "target_node"]},
                {"required": ["from", "to"]},
            ],
        },
    },
}


class WorkflowParser:
    """工作流解析器"""

    def __init__(self):
        self.parsers = {
            'yaml': self._parse_yaml,
            'yml': self._parse_yaml,
            'json': self._parse_json
        }
        self.validator = SchemaValidator()

    def parse(self, source: Union[str, Path, Dict[str, Any]]) -> Workflow:
        """
        解析工作流定义

        Args:
            source: 工作流定义来源，可以是文件路径、字符串或字典

        Returns:
            Workflow: 解析后的工作流对象
        """
        if isinstance(source, dict):
            return self._parse_dict(source)

        if isinstance(source, Path):
            return self.parse_file(source)

        if isinstance(source, str):
            if "\n" not in source and len(source) < 4096:
                path = Path(source)
                if path.suffix.lower().lstrip('.') in self.parsers and path.is_file():
                    return self.parse_file(path)
            return self.parse_string(source)

        raise WorkflowParseError(f"Unsupported source type: {type(source)}")

    def parse_file(self, file_path: Union[str, Path]) -> Workflow:
        """解析工作流文件"""
        file_path = Path(file_path)
        suffix = file_path.suffix.lower().lstrip('.')
        if suffix not in self.parsers:
            raise WorkflowParseError(f"Unsupported file format: {suffix}")

        try:
            with open(file_path, 'r', encoding='utf-8') as f:
                content = f.read()
        except OSError as e:
            raise WorkflowParseError(f"Failed to read {file_path}: {e}")

        data = self.parsers[suffix](content)
        return self._parse_dict(data)

    def parse_string(self, content: str) -> Workflow:
        """解析工作流字符串，YAML 是 JSON 的超集"""
        data = self._parse_yaml(content)
        return self._parse_dict(data)

    def _parse_yaml(self, content: str) -> Dict[str, Any]:
        """解析YAML格式"""
        try:
            return yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise WorkflowParseError(f"Failed to parse YAML: {e}")

    def _parse_json(self, content: str) -> Dict[str, Any]:
        """解析JSON格式"""
        try:
            return json.loads(content)
        except json.JSONDecodeError as e:
            raise WorkflowParseError(f"Failed to parse JSON: {e}")

    def _parse_dict(self, data: Any) -> Workflow:
        """解析字典格式的工作流定义"""
        if not isinstance(data, dict):
            raise WorkflowParseError("Workflow definition must be a mapping")
        if isinstance(data.get('workflow'), dict):
            data = data['workflow']

        errors = self.validator.validate(data, WORKFLOW_SCHEMA)
        if errors:
            raise WorkflowValidationError(f"Workflow schema validation failed: {errors}")

        workflow = Workflow(
            id=str(data['id']),
            name=str(data.get('name') or ''),
            description=data.get('description'),
            max_steps=data.get('max_steps'),
            settings=dict(data.get('settings') or {}),
            metadata=dict(data.get('metadata') or {})
        )

        for node in self._parse_nodes(data.get('nodes') or {}):
            if node.id in workflow.nodes:
                raise WorkflowValidationError(f"Duplicate node id '{node.id}'")
            workflow.nodes[node.id] = node

        workflow.edges = [self._parse_edge(edge_data) for edge_data in data.get('edges') or []]

        # 验证工作流
        errors = workflow.validate()
        if errors:
            raise WorkflowValidationError(f"Workflow validation failed: {errors}")

        return workflow

    def _parse_nodes(self, nodes_data: Union[Dict[str, Any], List[Any]]) -> List[Node]:
        """节点可以是 id -> 定义 的映射，也可以是列表"""
        if isinstance(nodes_data, dict):
            items = [(node_id, node_data) for node_id, node_data in nodes_data.items()]
        else:
            items = [(None, node_data) for node_data in nodes_data]

        nodes = []
        for key, node_data in items:
            node_id = str(node_data.get('id') or key or '')
            if not node_id:
                raise WorkflowValidationError("Node is missing an id")
            nodes.append(self._parse_node(node_id, node_data))
        return nodes

    def _parse_node(self, node_id: str, data: Dict[str, Any]) -> Node:
        """解析节点"""
        action_id = data.get('action_id') or data.get('action')
        return Node(
            id=node_id,
            action_id=str(action_id) if action_id else None,
            data=dict(data.get('data') or data.get('params') or {}),
            position=dict(data.get('position') or {})
        )

    def _parse_edge(self, data: Dict[str, Any]) -> Edge:
        """解析边，支持 from/to 简写"""
        edge = Edge(
            source_node=str(data.get('source_node') or data.get('from') or ''),
            source_output=str(data.get('source_output') or DEFAULT_EDGE_PORT),
            target_node=str(data.get('target_node') or data.get('to') or ''),
            target_input=str(data.get('target_input') or DEFAULT_EDGE_PORT),
            source_path=data.get('source_path')
        )
        if data.get('id'):
            edge.id = str(data['id'])
        return edge
