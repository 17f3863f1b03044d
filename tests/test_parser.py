"""
工作流解析器测试
"""
import json
import pytest

from botflow.core.parser import WorkflowParser
from botflow.exceptions import WorkflowParseError, WorkflowValidationError


MAPPING_YAML = """
workflow:
  id: greet
  name: Greeting
  max_steps: 50
  nodes:
    ask:
      action: await_user_input
      params:
        prompt_template: "What is your name?"
    reply:
      action_id: set_variable
      data:
        variable_name: greeting
        value: "Hello {{ variables.user_input }}"
  edges:
    - from: ask
      to: reply
"""


class TestWorkflowParser:
    """工作流解析器测试类"""

    def setup_method(self):
        self.parser = WorkflowParser()

    def test_parse_mapping_nodes(self):
        """测试映射形式的节点与简写边"""
        workflow = self.parser.parse(MAPPING_YAML)

        assert workflow.id == "greet"
        assert workflow.name == "Greeting"
        assert workflow.max_steps == 50
        assert list(workflow.nodes) == ["ask", "reply"]
        assert workflow.nodes["ask"].action_id == "await_user_input"
        assert workflow.nodes["ask"].data["prompt_template"] == "What is your name?"
        assert workflow.nodes["reply"].data["variable_name"] == "greeting"

        edge = workflow.edges[0]
        assert (edge.source_node, edge.source_output) == ("ask", "__control__")
        assert (edge.target_node, edge.target_input) == ("reply", "__control__")
        assert workflow.has_control_bus

    def test_parse_list_nodes(self):
        data = {
            "id": "wf",
            "nodes": [
                {"id": "a", "action": "provide_static_string", "params": {"value": "x"}},
                {"id": "b", "action": "concat_strings"},
            ],
            "edges": [
                {"id": "link", "source_node": "a", "source_output": "output",
                 "target_node": "b", "target_input": "string_a", "source_path": "$"},
            ],
        }
        workflow = self.parser.parse(data)

        assert list(workflow.nodes) == ["a", "b"]
        assert workflow.edges[0].id == "link"
        assert workflow.edges[0].source_path == "$"
        assert not workflow.has_control_bus

    def test_parse_json_file(self, tmp_path):
        """测试从 JSON 文件解析"""
        path = tmp_path / "wf.json"
        path.write_text(json.dumps({"id": "from_file", "nodes": {"n1": {}}}), encoding="utf-8")

        workflow = self.parser.parse(str(path))

        assert workflow.id == "from_file"
        assert workflow.nodes["n1"].action_id is None

    def test_parse_yaml_file(self, tmp_path):
        path = tmp_path / "wf.yaml"
        path.write_text(MAPPING_YAML, encoding="utf-8")

        assert self.parser.parse_file(path).id == "greet"

    def test_unsupported_file_format(self, tmp_path):
        path = tmp_path / "wf.txt"
        path.write_text("id: x", encoding="utf-8")

        with pytest.raises(WorkflowParseError):
            self.parser.parse_file(path)

    def test_invalid_yaml(self):
        """测试无效的 YAML"""
        with pytest.raises(WorkflowParseError):
            self.parser.parse_string("id: [unclosed\nnodes: {")

    def test_non_mapping_definition(self):
        with pytest.raises(WorkflowParseError):
            self.parser.parse_string("- just\n- a list\n")

    def test_missing_id(self):
        """测试缺少工作流 id"""
        with pytest.raises(WorkflowValidationError) as exc_info:
            self.parser.parse({"nodes": {}})

        assert "'id' is a required property" in str(exc_info.value)

    def test_edge_to_unknown_node(self):
        data = {"id": "wf", "nodes": {"a": {}}, "edges": [{"from": "a", "to": "ghost"}]}

        with pytest.raises(WorkflowValidationError) as exc_info:
            self.parser.parse(data)

        assert "ghost" in str(exc_info.value)

    def test_duplicate_node_ids(self):
        data = {"id": "wf", "nodes": [{"id": "a"}, {"id": "a"}]}

        with pytest.raises(WorkflowValidationError) as exc_info:
            self.parser.parse(data)

        assert "Duplicate node id 'a'" in str(exc_info.value)

    def test_round_trip_through_dict(self):
        """测试 to_dict 的结果可以再次解析"""
        workflow = self.parser.parse(MAPPING_YAML)
        again = self.parser.parse(workflow.to_dict())

        assert again.to_dict() == workflow.to_dict()
