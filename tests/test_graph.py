"""
执行顺序与控制边测试
"""
import pytest

from botflow.core.graph import (
    control_edge_map, loop_back_edges, terminal_node_ids, topological_order, validate_control_fanout
)
from botflow.core.paths import extract_by_path, parse_path_tokens
from botflow.exceptions import GraphError


class TestTopologicalOrder:
    """执行顺序测试类"""

    def test_data_edges_order_nodes(self, workflow_factory):
        """测试数据边决定顺序"""
        workflow = workflow_factory(
            "wf",
            [("c", None, {}), ("a", None, {}), ("b", None, {})],
            [("a", "output", "b", "text"), ("b", "output", "c", "text")],
        )
        assert topological_order(workflow) == ["a", "b", "c"]

    def test_declaration_order_breaks_ties(self, workflow_factory):
        workflow = workflow_factory("wf", [("z", None, {}), ("y", None, {}), ("x", None, {})])
        assert topological_order(workflow) == ["z", "y", "x"]

    def test_control_bus_ignores_data_edges(self, workflow_factory):
        """测试控制总线模式只看控制边"""
        workflow = workflow_factory(
            "wf",
            [("n1", None, {}), ("n2", None, {}), ("n3", None, {})],
            [
                ("n3", "__control__", "n1", "__control__"),
                ("n1", "next", "n2", "control_input"),
                ("n2", "output", "n3", "text"),
            ],
        )
        assert workflow.has_control_bus
        assert topological_order(workflow) == ["n3", "n1", "n2"]

    def test_self_edges_are_skipped(self, workflow_factory):
        workflow = workflow_factory(
            "wf",
            [("loop", None, {}), ("after", None, {})],
            [("loop", "__control__", "loop", "__control__"), ("loop", "done", "after", "__control__")],
        )
        assert topological_order(workflow) == ["loop", "after"]

    def test_loop_back_edge_is_not_a_cycle(self, workflow_factory):
        """测试回到循环节点的控制边不参与排序"""
        workflow = workflow_factory(
            "wf",
            [("after", None, {}), ("body", None, {}), ("loop", None, {})],
            [
                ("loop", "loop", "body", "__control__"),
                ("body", "next", "loop", "__control__"),
                ("loop", "done", "after", "__control__"),
            ],
        )
        assert loop_back_edges(workflow) == {"e1"}
        assert topological_order(workflow) == ["loop", "body", "after"]

    def test_control_cycle_without_loop_fails(self, workflow_factory):
        workflow = workflow_factory(
            "wf",
            [("a", None, {}), ("b", None, {})],
            [("a", "next", "b", "__control__"), ("b", "next", "a", "__control__")],
        )
        with pytest.raises(GraphError):
            topological_order(workflow)

    def test_cycle_names_both_nodes(self, workflow_factory):
        """测试循环依赖报错包含两个节点"""
        workflow = workflow_factory(
            "wf",
            [("a", None, {}), ("b", None, {})],
            [("a", "output", "b", "text"), ("b", "output", "a", "text")],
        )
        with pytest.raises(GraphError) as exc_info:
            topological_order(workflow)

        message = str(exc_info.value)
        assert "cyclic dependency" in message
        assert "a" in exc_info.value.node_ids and "b" in exc_info.value.node_ids
        assert "a, b" in message


class TestControlEdges:
    """控制边测试类"""

    def test_control_edge_map_keeps_first(self, workflow_factory):
        workflow = workflow_factory(
            "wf",
            [("b", None, {}), ("t", None, {}), ("f", None, {})],
            [
                ("b", "true", "t", "__control__"),
                ("b", "false", "f", "__control__"),
                ("b", "output", "t", "text"),
            ],
        )
        assert control_edge_map(workflow) == {"b": {"true": "t", "false": "f"}}

    def test_fanout_rejected(self, workflow_factory):
        """测试同一控制输出连接多个节点"""
        workflow = workflow_factory(
            "wf",
            [("n1", None, {}), ("n2", None, {}), ("n3", None, {})],
            [("n1", "__control__", "n2", "__control__"), ("n1", "__control__", "n3", "__control__")],
        )
        with pytest.raises(GraphError) as exc_info:
            validate_control_fanout(workflow)

        assert str(exc_info.value) == (
            "ambiguous control output: node 'n1' output '__control__' connects to multiple nodes: n2, n3"
        )

    def test_fanout_from_plain_output_into_control_inputs_rejected(self, workflow_factory):
        """测试普通输出连到多个控制输入同样视为控制扇出"""
        workflow = workflow_factory(
            "wf",
            [("n1", None, {}), ("n2", None, {}), ("n3", None, {})],
            [("n1", "value", "n2", "__control__"), ("n1", "value", "n3", "control_input")],
        )
        with pytest.raises(GraphError) as exc_info:
            validate_control_fanout(workflow)

        assert "node 'n1' output 'value' connects to multiple nodes: n2, n3" in str(exc_info.value)
        assert control_edge_map(workflow) == {"n1": {"value": "n2"}}


    def test_duplicate_edges_to_same_target_allowed(self, workflow_factory):
        workflow = workflow_factory(
            "wf",
            [("n1", None, {}), ("n2", None, {})],
            [("n1", "next", "n2", "__control__"), ("n1", "next", "n2", "control_input")],
        )
        validate_control_fanout(workflow)

    def test_terminal_nodes(self, workflow_factory):
        workflow = workflow_factory(
            "wf",
            [("a", None, {}), ("b", None, {}), ("c", None, {})],
            [("a", "__control__", "b", "__control__"), ("b", "output", "c", "text")],
        )
        assert terminal_node_ids(workflow) == ["b", "c"]


class TestSourcePaths:
    """边取值路径测试类"""

    def test_parse_tokens(self):
        assert parse_path_tokens("$.items[0]['name']") == ["items", 0, "name"]

    def test_extract(self):
        payload = {"items": [{"name": "a"}, {"name": "b"}], "data": {"key": 1}}
        assert extract_by_path("$.items[1].name", payload) == "b"
        assert extract_by_path("data['key']", payload) == 1
        assert extract_by_path("items[5].name", payload) is None
        assert extract_by_path("data.key.deeper", payload) is None

    def test_unsupported_path(self):
        with pytest.raises(ValueError):
            extract_by_path("items[first]", {})
