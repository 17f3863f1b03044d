"""
内置动作与动作注册表测试
"""
import pytest

from botflow.integrations.action_registry import (
    ActionContext, ActionDefinition, ActionKind, LocalActionRegistry
)
from botflow.integrations.builtin_actions import (
    await_user_input, branch, coerce_value, concat_strings, for_each, json_parse,
    loop_counter, normalize_items, parse_cancel_keywords, provide_existing_ids,
    provide_placeholders, set_variable, show_notification, string_ops, switch
)
from botflow.models.execution import RuntimeContext, Suspend


def make_context(**variables) -> ActionContext:
    return ActionContext(runtime=RuntimeContext(chat_id="42", variables=variables))


class TestCoerceValue:
    """取值转换测试类"""

    @pytest.mark.parametrize("raw,expected", [
        ("42", 42),
        ("-1.5", -1.5),
        ("yes", True),
        ("Off", False),
        ("null", None),
        ('{"a": 1}', {"a": 1}),
        ("[1, 2]", [1, 2]),
        ("[not json", "[not json"),
        ("hello", "hello"),
        ("  ", "  "),
    ])
    def test_auto(self, raw, expected):
        assert coerce_value(raw, "auto") == expected

    def test_explicit_types(self):
        assert coerce_value(True, "string") == "true"
        assert coerce_value("3.0", "number") == 3
        assert coerce_value("on", "boolean") is True
        assert coerce_value("x", "null") is None
        assert coerce_value('["a"]', "json") == ["a"]

    def test_invalid_number(self):
        with pytest.raises(ValueError):
            coerce_value("abc", "number")


class TestSetVariable:
    """set_variable 测试类"""

    def test_set_nested_path_copies(self):
        """测试点路径写入不修改原对象"""
        profile = {"name": "Ada", "tags": {"a": 1}}
        context = make_context(profile=profile)

        outputs = set_variable({"variable_name": "profile.tags.b", "value": "2"}, context)

        assert outputs["profile"] == {"name": "Ada", "tags": {"a": 1, "b": 2}}
        assert outputs["variable_name"] == "profile.tags.b"
        assert outputs["value"] == 2
        assert profile == {"name": "Ada", "tags": {"a": 1}}

    def test_operations(self):
        context = make_context(text="ab", count=2, items=["x"])
        assert set_variable(
            {"variable_name": "text", "value": "c", "operation": "append_text"}, context
        )["text"] == "abc"
        assert set_variable(
            {"variable_name": "count", "value": "3", "operation": "increment"}, context
        )["count"] == 5
        assert set_variable(
            {"variable_name": "items", "value": "y", "operation": "push"}, context
        )["items"] == ["x", "y"]
        assert set_variable(
            {"variable_name": "fresh", "value": "y", "operation": "push"}, context
        )["fresh"] == ["y"]

    def test_increment_rejects_text(self):
        with pytest.raises(ValueError):
            set_variable({"variable_name": "n", "value": "abc", "operation": "increment"}, make_context())

    def test_requires_name(self):
        with pytest.raises(ValueError):
            set_variable({"variable_name": " . "}, make_context())


class TestFlowActions:
    """流程控制动作测试类"""

    def test_branch_wraps_bare_expression(self):
        outputs = branch({"expression": "variables.score > 5"}, make_context(score=7))
        assert outputs["__flow__"] == "true"
        assert outputs["condition_passed"] is True

    def test_switch(self):
        """测试 switch 匹配与默认分支"""
        params = {"value": "B", "case_1": "a", "case_2": "b", "case_insensitive": True}
        assert switch(params, make_context())["__flow__"] == "case_2"
        assert switch({**params, "case_insensitive": False}, make_context())["__flow__"] == "default"

    def test_loop_counter_state(self):
        context = make_context()
        first = loop_counter({"count": 1, "__node_id": "loop"}, context)
        assert first["__flow__"] == "loop"
        context.runtime.variables["_loop_loop"] = first["_loop_loop"]

        second = loop_counter({"count": 1, "__node_id": "loop"}, context)
        assert second["__flow__"] == "done"
        assert second["loop_index"] == 1

    def test_for_each_iterates(self):
        """测试 for_each 逐个产出元素"""
        context = make_context()
        seen = []
        while True:
            outputs = for_each({"items": "a, b", "loop_key": "fe"}, context)
            context.runtime.variables["_for_each_fe"] = outputs["_for_each_fe"]
            if outputs["__flow__"] == "done":
                break
            seen.append((outputs["item"], outputs["index1"]))

        assert seen == [("a", 1), ("b", 2)]
        assert outputs["total"] == 2

    def test_normalize_items(self):
        assert normalize_items('["x", 1]') == ["x", 1]
        assert normalize_items("") == []
        assert normalize_items(None) == []
        assert normalize_items(5) == [5]


class TestAwaitUserInput:
    """await_user_input 测试类"""

    def test_config(self):
        result = await_user_input(
            {"prompt_template": "Name?", "timeout_seconds": "0.2", "cancel_keywords": "stop\nquit, exit"},
            make_context(menu_id="main"),
        )

        assert isinstance(result, Suspend)
        config = result.await_config
        assert config["prompt"] == "Name?"
        assert config["timeout_seconds"] == 1
        assert config["cancel_keywords"] == ["stop", "quit", "exit"]
        assert config["prompt_display_mode"] == "button_label"
        assert config["menu_id"] == "main"

    def test_defaults(self):
        config = await_user_input({"prompt_display_mode": "header"}, make_context()).await_config
        assert config["timeout_seconds"] == 60
        assert config["prompt_display_mode"] == "menu_title"
        assert config["allow_empty"] is False

    def test_parse_cancel_keywords(self):
        assert parse_cancel_keywords(["a", " ", "b"]) == ["a", "b"]
        assert parse_cancel_keywords(None) == []


class TestUtilityActions:
    """工具类动作测试类"""

    def test_concat_strings(self):
        assert concat_strings({"string_a": "a", "string_b": None}, make_context()) == {"result": "a"}

    def test_json_parse(self):
        outputs = json_parse({"value": '{"a": [1]}'}, make_context())
        assert outputs["result"] == {"a": [1]}
        assert outputs["value_type"] == "object"
        assert outputs["text"] == '{"a": [1]}'

    def test_json_parse_invalid(self):
        """测试解析失败时输出错误而不是抛异常"""
        outputs = json_parse({"value": "{bad"}, make_context())
        assert outputs["is_valid"] is False
        assert outputs["error"]

        with pytest.raises(ValueError):
            json_parse({"value": "{bad", "fail_on_error": True}, make_context())

    def test_json_stringify_pretty(self):
        outputs = json_parse({"mode": "stringify", "value": {"a": 1}, "pretty": True, "indent": 2}, make_context())
        assert outputs["result"] == '{\n  "a": 1\n}'


class TestStringOps:
    """string_ops 测试类"""

    def test_split(self):
        outputs = string_ops({"operation": "split", "value": "a,b,,c"}, make_context())
        assert outputs["result"] == ["a", "b", "", "c"]
        assert outputs["items"] == ["a", "b", "", "c"]
        assert outputs["text"] == '["a","b","","c"]'
        assert outputs["length"] == 4

        chars = string_ops({"value": "abc", "delimiter": ""}, make_context())
        assert chars["result"] == ["a", "b", "c"]

    def test_join(self):
        """测试 join 优先解析 JSON 数组，否则按分隔符切分"""
        outputs = string_ops({"operation": "join", "items": '["x", 2, true]', "joiner": "-"}, make_context())
        assert outputs["result"] == "x-2-true"
        assert outputs["items"] == ["x", "2", "true"]
        assert outputs["length"] == 8

        outputs = string_ops({"operation": "join", "value": "a;b", "delimiter": ";", "joiner": " + "}, make_context())
        assert outputs["text"] == "a + b"
        assert string_ops({"operation": "join", "items": ["q"]}, make_context())["result"] == "q"

    def test_replace(self):
        assert string_ops(
            {"operation": "replace", "value": "a.b.c", "search": ".", "replace_with": "/"}, make_context()
        )["result"] == "a/b/c"
        assert string_ops(
            {"operation": "replace", "value": "A.b.a.B", "search": "a.b", "replace_with": "bye",
             "case_sensitive": False},
            make_context(),
        )["result"] == "bye.bye"
        assert string_ops({"operation": "replace", "value": "keep"}, make_context())["result"] == "keep"

    def test_substring_truncates_bounds(self):
        params = {"operation": "substring", "value": "abcdef"}
        assert string_ops({**params, "start": "1.9", "end": "3"}, make_context())["result"] == "bc"
        assert string_ops({**params, "start": -2}, make_context())["result"] == "ef"
        assert string_ops({**params, "start": "abc"}, make_context())["result"] == "abcdef"

    def test_contains(self):
        outputs = string_ops(
            {"operation": "contains", "value": "Hello", "search": "ELL", "case_sensitive": "false"}, make_context()
        )
        assert outputs["result"] is True
        assert outputs["contains"] is True
        assert outputs["text"] == "true"
        assert outputs["length"] == 4
        assert string_ops({"operation": "contains", "value": "Hello", "search": "ELL"}, make_context())["contains"] is False
        assert string_ops({"operation": "contains", "value": "Hello"}, make_context())["result"] is False

    def test_case_trim_length(self):
        assert string_ops({"operation": "to_upper", "value": "ab"}, make_context())["result"] == "AB"
        assert string_ops({"operation": "TO_LOWER", "value": "AB"}, make_context())["result"] == "ab"
        assert string_ops({"operation": "trim", "value": "  ab \n"}, make_context())["result"] == "ab"

        outputs = string_ops({"operation": "length", "value": "héllo"}, make_context())
        assert outputs["result"] == 5
        assert outputs["text"] == "5"
        assert outputs["length"] == 5

    def test_unknown_operation_passes_value_through(self):
        outputs = string_ops({"operation": "reverse", "value": 12}, make_context())
        assert outputs["result"] == "12"
        assert outputs["items"] == []


class TestRuntimeHelpers:
    """占位符与通知动作测试类"""

    def test_provide_placeholders(self):
        outputs = provide_placeholders({}, make_context())
        assert outputs["chat_id_placeholder"] == "{{ runtime.chat_id }}"
        assert outputs["menu_name_placeholder"] == "{{ runtime.variables.menu_name }}"
        assert len(outputs) == 8

    def test_provide_existing_ids(self):
        outputs = provide_existing_ids({"menu_id": "main", "workflow_id": None}, make_context())
        assert outputs == {
            "menu_id": "main", "button_id": "", "web_app_id": "", "local_action_id": "", "workflow_id": "",
        }

    @pytest.mark.asyncio
    async def test_show_notification_result(self, registry):
        """测试通知动作产生通知副作用而不是变量"""
        result = await registry.dispatch(
            registry.find("show_notification"), {"text": "Saved", "show_alert": "true"}, make_context()
        )

        assert result.notification == {"text": "Saved", "show_alert": True}
        assert result.variables == {}
        assert show_notification({}, make_context())["notification"] == {"text": "操作成功", "show_alert": False}


class TestActionRegistry:
    """动作注册表测试类"""

    @pytest.mark.asyncio
    async def test_modular_result_normalized(self):
        """测试处理器返回的映射被规范化为结果"""
        registry = LocalActionRegistry()
        registry.register_handler("greet", lambda params, context: {
            "new_text": f"hi {params['name']}", "__flow__": "next", "name": params["name"],
        })

        result = await registry.dispatch(registry.find("greet"), {"name": "Ada"}, make_context())

        assert result.new_text == "hi Ada"
        assert result.flow_output == "next"
        assert result.variables == {"name": "Ada"}
        assert result.should_edit_message

    @pytest.mark.asyncio
    async def test_parameter_schema(self, registry):
        with pytest.raises(ValueError) as exc_info:
            await registry.dispatch(registry.find("set_variable"), {"variable_name": 5}, make_context())

        assert "Invalid parameters for action set_variable" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_local_action_renders_parameters(self, registry):
        registry.register_action(ActionDefinition(
            action_id="shout",
            kind=ActionKind.LOCAL.value,
            config={"name": "concat_strings", "parameters": {"string_a": "{{ variables.word }}", "string_b": "!"}},
        ))

        result = await registry.dispatch(registry.find("shout"), {"word": "hey"}, make_context())

        assert result.variables == {"result": "hey!"}

    @pytest.mark.asyncio
    async def test_http_action_uses_transport(self):
        """测试 HTTP 动作渲染请求并交给传输层"""
        requests = []

        async def transport(request, context):
            requests.append(request)
            return {"status_code": 200, "text": '{"id": 7}'}

        registry = LocalActionRegistry(http_transport=transport)
        registry.register_action(ActionDefinition(
            action_id="lookup",
            kind=ActionKind.HTTP.value,
            config={"method": "post", "url": "https://api.example.com/users/{{ variables.user }}"},
        ))

        result = await registry.dispatch(registry.find("lookup"), {"user": "ada"}, make_context())

        assert requests[0]["method"] == "POST"
        assert requests[0]["url"] == "https://api.example.com/users/ada"
        assert result.variables == {"user": "ada"}
        assert result.new_text == ""

    @pytest.mark.asyncio
    async def test_http_preview(self):
        registry = LocalActionRegistry()
        registry.register_action(ActionDefinition(
            action_id="lookup", kind=ActionKind.HTTP.value, config={"url": "https://api.example.com"},
        ))
        context = make_context()
        context.preview = True

        result = await registry.dispatch(registry.find("lookup"), {}, context)

        assert result.variables["request"]["method"] == "GET"

    def test_modular_conflict(self, registry):
        with pytest.raises(ValueError):
            registry.register_action(ActionDefinition(action_id="branch", kind=ActionKind.HTTP.value))

    def test_builtin_catalogue(self, registry):
        """测试内置动作都以模块化动作注册"""
        action_ids = {definition.action_id for definition in registry.list_actions()}
        assert {"try_catch", "set_variable", "await_user_input", "sub_workflow", "delay", "string_ops"} <= action_ids
        assert all(definition.kind == ActionKind.MODULAR.value for definition in registry.list_actions())
