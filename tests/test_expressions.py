"""
模板表达式测试
"""
import math

from botflow.core.expressions import (
    MISSING, build_template_context, coerce_to_bool, loose_equals, render,
    render_structure, to_number
)
from botflow.models.execution import RuntimeContext


class TestRender:
    """模板渲染测试类"""

    def test_render_paths(self):
        """测试点路径与下标"""
        context = {"user": {"name": "Ada", "tags": ["x", "y"]}}
        assert render("Hi {{ user.name }}!", context) == "Hi Ada!"
        assert render("{{ user.tags[1] }}", context) == "y"
        assert render("{{ user.tags.length }}", context) == "2"

    def test_missing_and_null_render_empty(self):
        """测试缺失路径和 null 渲染为空串"""
        assert render("[{{ nope.deep }}]", {}) == "[]"
        assert render("[{{ value }}]", {"value": None}) == "[]"

    def test_scalar_formatting(self):
        """测试标量格式"""
        context = {"flag": True, "whole": 2.0, "half": 0.5}
        assert render("{{ flag }} {{ whole }} {{ half }}", context) == "true 2 0.5"

    def test_containers_render_as_json(self):
        context = {"data": {"a": 1, "b": [1, 2]}}
        assert render("{{ data }}", context) == '{"a":1,"b":[1,2]}'

    def test_comparisons_are_loose(self):
        """测试宽松比较"""
        context = {"count": "10", "one": "1"}
        assert render("{{ count > 5 }}", context) == "true"
        assert render("{{ one == 1 }}", context) == "true"
        assert render("{{ one != 1 }}", context) == "false"
        assert render("{{ 'b' > 'a' }}", context) == "true"

    def test_filters(self):
        """测试 tojson 与 urlencode 过滤器"""
        context = {"payload": {"msg": "你好"}, "query": "a b&c"}
        assert render("{{ payload | tojson }}", context) == '{"msg":"你好"}'
        assert render("{{ query | urlencode }}", context) == "a%20b%26c"
        assert render("{{ query | unknown }}", context) == "a b&c"

    def test_quoted_pipe_is_literal(self):
        assert render("{{ 'a|b' }}", {}) == "a|b"

    def test_non_string_template(self):
        assert render(42, {}) == "42"
        assert render(None, {}) == ""

    def test_render_structure(self):
        """测试递归渲染"""
        rendered = render_structure(
            {"text": "{{ x }}", "items": ["{{ y }}", 3], "nested": {"z": "{{ x }}-{{ y }}"}},
            {"x": "a", "y": "b"}
        )
        assert rendered == {"text": "a", "items": ["b", 3], "nested": {"z": "a-b"}}


class TestValueSemantics:
    """宽松值语义测试类"""

    def test_to_number(self):
        assert to_number(None) == 0
        assert to_number("") == 0
        assert to_number(" 12 ") == 12
        assert to_number("1.5") == 1.5
        assert to_number("0x1f") == 31
        assert to_number(True) == 1
        assert math.isnan(to_number("abc"))
        assert math.isnan(to_number(MISSING))

    def test_loose_equals(self):
        assert loose_equals(0, "")
        assert loose_equals(True, "1")
        assert loose_equals(None, MISSING)
        assert not loose_equals(None, 0)
        assert not loose_equals("a", "b")

    def test_coerce_to_bool(self):
        """测试布尔转换"""
        for falsy in ("", "0", "false", "None", "null", "no", "off", 0, None, False):
            assert coerce_to_bool(falsy) is False
        for truthy in ("yes", "1", "anything", 3, [], {}, True):
            assert coerce_to_bool(truthy) is True


class TestTemplateContext:
    """模板上下文测试类"""

    def test_context_exposes_runtime_and_variables(self):
        runtime = RuntimeContext(chat_id="42", user_id="7", variables={"a": 1})
        variables = {"a": 2, "__trigger__": "menu"}
        context = build_template_context(
            action={"id": "x"},
            button={"id": "b1"},
            menu={"id": "m1"},
            runtime=runtime,
            variables=variables,
            nodes={"n1": {"out": "v"}},
            engine={"last_error": "boom"},
        )

        assert render("{{ runtime.chat_id }}/{{ runtime.variables.a }}", context) == "42/2"
        assert render("{{ nodes.n1.out }} {{ engine.last_error }}", context) == "v boom"
        assert context["__trigger__"] == "menu"
        assert render("{{ button.id }} {{ menu.id }}", context) == "b1 m1"
