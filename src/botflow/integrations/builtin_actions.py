"""
内置节点动作

流程控制（try_catch、branch、switch、loop_counter、for_each）、
变量操作（set_variable）、人工输入（await_user_input）、
子工作流调用（sub_workflow）、字符串与 JSON 工具以及占位符、通知类动作。
"""
import asyncio
import copy
import json
import logging
import math
import re
from typing import Any, Dict, List, Optional, Tuple

from ..core.expressions import build_template_context, coerce_to_bool, render, to_number
from ..core.terminal_outputs import build_subworkflow_payload, extract_terminal_output_variables
from ..models.execution import ExecuteContext, NestedPending, Suspend
from .action_registry import ActionContext, ActionDefinition, ActionHandler, ActionRegistry


logger = logging.getLogger(__name__)

NUMBER_RE = re.compile(r"^-?\d+(\.\d+)?$")
TRUTHY_WORDS = ("true", "1", "yes", "on")
BOOLEAN_WORDS = ("true", "false", "1", "0", "yes", "no", "on", "off")
SWITCH_CASE_COUNT = 4
FOR_EACH_MAX_ITEMS = 5000
DEFAULT_PROMPT = "请输入内容："
DEFAULT_AWAIT_TIMEOUT_SECONDS = 60
DEFAULT_NOTIFICATION = "操作成功"


def _node_key(params: Dict[str, Any], fallback: str) -> str:
    return str(params.get("loop_key") or params.get("__node_id") or fallback)


def _first_param(params: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if params.get(key) is not None:
            return params[key]
    return None


def try_catch(params: Dict[str, Any], context: ActionContext):
    """标记 try 区域的开始，引擎在节点完成后压入处理器"""
    return {"__flow__": "try"}


# ---------------------------------------------------------------------------
# set_variable
# ---------------------------------------------------------------------------

def _split_path(name: str) -> List[str]:
    return [segment.strip() for segment in name.split(".") if segment.strip()]


def _get_by_path(source: Dict[str, Any], path: List[str]) -> Any:
    current: Any = source
    for segment in path:
        if not isinstance(current, dict):
            return None
        current = current.get(segment)
    return current


def _set_by_path(root: Any, path: List[str], value: Any) -> Any:
    """写入嵌套路径，沿途复制映射，原对象不被修改"""
    if not path:
        return value
    result = dict(root) if isinstance(root, dict) else {}
    cursor = result
    source = root
    for key in path[:-1]:
        source_child = source.get(key) if isinstance(source, dict) else None
        child = dict(source_child) if isinstance(source_child, dict) else {}
        cursor[key] = child
        cursor = child
        source = source_child
    cursor[path[-1]] = value
    return result


def _parse_boolean(raw: str) -> bool:
    return raw.strip().lower() in TRUTHY_WORDS


def coerce_value(value: Any, value_type: str) -> Any:
    """按 value_type 转换取值，auto 模式根据字面量推断"""
    value_type = str(value_type or "auto").strip().lower()
    if value_type == "null":
        return None
    if value_type == "string":
        return _text(value)
    if value_type == "number":
        number = to_number(value)
        if not math.isfinite(number):
            raise ValueError("value is not a valid number")
        return _integral(number)
    if value_type == "boolean":
        if isinstance(value, bool):
            return value
        return _parse_boolean(str(value or ""))
    if value_type == "json":
        if not isinstance(value, str):
            return value
        return json.loads(value)

    if not isinstance(value, str):
        return value
    trimmed = value.strip()
    if not trimmed:
        return value
    lowered = trimmed.lower()
    if lowered in BOOLEAN_WORDS:
        return _parse_boolean(trimmed)
    if lowered == "null":
        return None
    if NUMBER_RE.match(trimmed):
        return float(trimmed) if "." in trimmed else int(trimmed)
    if (trimmed.startswith("{") and trimmed.endswith("}")) or (trimmed.startswith("[") and trimmed.endswith("]")):
        try:
            return json.loads(trimmed)
        except ValueError:
            return value
    return value


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _integral(number: Any) -> Any:
    if isinstance(number, float) and number.is_integer():
        return int(number)
    return number


def apply_operation(current: Any, value: Any, operation: str) -> Any:
    operation = str(operation or "set").strip().lower()
    if operation == "append_text":
        return f"{_text(current)}{_text(value)}"
    if operation == "increment":
        base = to_number(0 if current is None else current)
        delta = to_number(0 if value is None else value)
        if not math.isfinite(base) or not math.isfinite(delta):
            raise ValueError("increment requires numeric values")
        total = base + delta
        return _integral(total)
    if operation == "push":
        if isinstance(current, list):
            return current + [value]
        if current is None:
            return [value]
        return [current, value]
    return value


def set_variable(params: Dict[str, Any], context: ActionContext):
    """设置变量，支持点路径和 set/append_text/increment/push 操作"""
    variable_name = str(params.get("variable_name") or "").strip()
    if not variable_name:
        raise ValueError("variable_name is required")
    path = _split_path(variable_name)
    if not path:
        raise ValueError("variable_name is invalid")

    variables = context.runtime.variables
    current = _get_by_path(variables, path)
    coerced = coerce_value(params.get("value"), params.get("value_type") or "auto")
    final_value = apply_operation(copy.deepcopy(current), coerced, params.get("operation") or "set")

    root_key = path[0]
    if len(path) == 1:
        patch = {root_key: final_value}
    else:
        patch = {root_key: _set_by_path(variables.get(root_key), path[1:], final_value)}

    return {**patch, "variable_name": variable_name, "value": final_value}


# ---------------------------------------------------------------------------
# 分支与循环
# ---------------------------------------------------------------------------

def branch(params: Dict[str, Any], context: ActionContext):
    """按条件表达式选择 true/false 分支"""
    raw = _first_param(params, "expression", "condition", "value")
    expression = "" if raw is None else str(raw)
    evaluated: Any = expression
    if expression:
        template = expression if "{{" in expression else f"{{{{ {expression} }}}}"
        template_context = build_template_context(
            action=params,
            button=context.button,
            menu=context.menu,
            runtime=context.runtime,
            variables=context.runtime.variables,
            nodes=context.node_outputs,
            engine=context.engine_state.to_dict(),
        )
        evaluated = render(template, template_context)
    passed = coerce_to_bool(evaluated)
    return {
        "__flow__": "true" if passed else "false",
        "condition_value": evaluated,
        "condition_passed": passed,
    }


def _switch_text(value: Any, insensitive: bool) -> str:
    text = _text(value)
    return text.lower() if insensitive else text


def switch(params: Dict[str, Any], context: ActionContext):
    """与 case_1..case_4 逐个比较，未命中走 default"""
    insensitive = coerce_to_bool(params.get("case_insensitive", False))
    value = _switch_text(_first_param(params, "value", "input", "switch_value"), insensitive)

    for index in range(1, SWITCH_CASE_COUNT + 1):
        raw_case = params.get(f"case_{index}")
        if raw_case is None or raw_case == "":
            continue
        case_value = _switch_text(raw_case, insensitive)
        if value == case_value:
            return {"__flow__": f"case_{index}", "matched_case": case_value, "matched_index": index}

    return {"__flow__": "default", "matched_case": None, "matched_index": None}


def loop_counter(params: Dict[str, Any], context: ActionContext):
    """固定次数循环：每次经过消耗一次，用完走 done"""
    key = _node_key(params, "loop")
    raw_total = _first_param(params, "count", "times", "total")
    total = to_number(raw_total or 0)
    total = max(0, int(total)) if math.isfinite(total) else 0
    reset = coerce_to_bool(params.get("reset", False))

    state_key = f"_loop_{key}"
    state = context.runtime.variables.get(state_key)
    if reset or not isinstance(state, dict) or state.get("total") != total:
        state = {"total": total, "remaining": total, "index": 0}
    else:
        state = dict(state)

    flow = "done"
    if state["remaining"] > 0:
        state["remaining"] -= 1
        state["index"] += 1
        flow = "loop"

    return {
        "__flow__": flow,
        "loop_index": state["index"],
        "loop_remaining": state["remaining"],
        "loop_total": state["total"],
        "loop_key": key,
        "loop_state_key": state_key,
        state_key: state,
    }


def normalize_items(raw: Any) -> List[Any]:
    """列表原样返回；字符串先按 JSON 数组解析，否则按逗号切分"""
    if isinstance(raw, list):
        return raw
    if raw is None:
        return []
    if isinstance(raw, str):
        trimmed = raw.strip()
        if not trimmed:
            return []
        try:
            parsed = json.loads(trimmed)
            if isinstance(parsed, list):
                return parsed
        except ValueError:
            pass
        return [entry.strip() for entry in trimmed.split(",") if entry.strip()]
    return [raw]


def for_each(params: Dict[str, Any], context: ActionContext):
    """逐个产出列表元素，遍历结束走 done"""
    key = _node_key(params, "for_each")
    reset = coerce_to_bool(params.get("reset", False))
    items = normalize_items(_first_param(params, "items", "list", "array"))[:FOR_EACH_MAX_ITEMS]

    state_key = f"_for_each_{key}"
    state = context.runtime.variables.get(state_key)
    if (
        reset
        or not isinstance(state, dict)
        or not isinstance(state.get("items"), list)
        or len(state["items"]) != len(items)
    ):
        state = {"items": items, "index": 0}
    else:
        state = {"items": list(state["items"]), "index": int(state.get("index") or 0)}

    total = len(state["items"])
    common = {"total": total, "loop_key": key, "loop_state_key": state_key}
    if state["index"] < total:
        index = state["index"]
        item = state["items"][index]
        state["index"] += 1
        return {
            "__flow__": "loop",
            "item": item,
            "index": index,
            "index1": index + 1,
            "remaining": total - state["index"],
            **common,
            state_key: state,
        }

    return {
        "__flow__": "done",
        "index": total,
        "index1": total,
        "remaining": 0,
        **common,
        state_key: state,
    }


# ---------------------------------------------------------------------------
# 人工输入
# ---------------------------------------------------------------------------

def parse_cancel_keywords(value: Any) -> List[str]:
    if not value:
        return []
    if isinstance(value, (list, tuple)):
        return [str(item).strip() for item in value if str(item).strip()]
    keywords = []
    for line in str(value).replace("\r", "\n").split("\n"):
        for section in line.split(","):
            if section.strip():
                keywords.append(section.strip())
    return keywords


def _display_mode(raw: Any) -> str:
    mode = str(raw or "button_label").lower()
    if mode in ("menu_title", "menu_header", "header", "menu"):
        return "menu_title"
    if mode in ("message_text", "message", "text"):
        return "message_text"
    return "button_label"


def await_user_input(params: Dict[str, Any], context: ActionContext):
    """挂起工作流等待用户输入，提示的展示由外部传输层负责"""
    timeout_seconds = to_number(params.get("timeout_seconds") or DEFAULT_AWAIT_TIMEOUT_SECONDS)
    if not math.isfinite(timeout_seconds):
        timeout_seconds = DEFAULT_AWAIT_TIMEOUT_SECONDS
    variables = context.runtime.variables

    config = {
        "prompt": str(params.get("prompt_template") or DEFAULT_PROMPT),
        "prompt_display_mode": _display_mode(params.get("prompt_display_mode")),
        "timeout_seconds": max(int(timeout_seconds), 1),
        "allow_empty": coerce_to_bool(params.get("allow_empty", False)),
        "retry_prompt_template": str(params.get("retry_prompt_template") or ""),
        "success_template": str(params.get("success_template") or ""),
        "timeout_template": str(params.get("timeout_template") or ""),
        "cancel_keywords": parse_cancel_keywords(params.get("cancel_keywords")),
        "cancel_template": str(params.get("cancel_template") or ""),
        "parse_mode": str(params.get("parse_mode") or "html"),
    }
    for key in ("menu_id", "button_id"):
        if variables.get(key):
            config[key] = str(variables[key])
    return Suspend(config)


# ---------------------------------------------------------------------------
# 子工作流
# ---------------------------------------------------------------------------

def _resumed_subworkflow_output(payload: Dict[str, Any]) -> Dict[str, Any]:
    if payload.get("throw_error"):
        raise RuntimeError(str(payload.get("subworkflow_error") or "sub_workflow failed"))
    success = bool(payload.get("subworkflow_success"))
    grouped = payload.get("subworkflow_terminal_outputs")
    variables = payload.get("subworkflow_variables")
    return {
        "__flow__": str(payload.get("__flow__") or ("success" if success else "error")),
        "subworkflow_success": success,
        "subworkflow_error": str(payload.get("subworkflow_error") or ""),
        "subworkflow_text": str(payload.get("subworkflow_text") or ""),
        "subworkflow_next_menu_id": str(payload.get("subworkflow_next_menu_id") or ""),
        "subworkflow_variables": variables if isinstance(variables, dict) else {},
        "subworkflow_terminal_outputs": grouped if isinstance(grouped, dict) else {},
        **extract_terminal_output_variables(payload),
    }


async def sub_workflow(params: Dict[str, Any], context: ActionContext):
    """
    调用子工作流

    恢复时优先消费引擎注入的子工作流结果；子工作流挂起时把挂起执行
    连同来源信息向上返回，由父工作流追加续体帧。
    """
    node_id = str(params.get("__node_id") or "").strip()
    injected = context.engine_state.consume_resume_payload(node_id)
    if injected is not None:
        return _resumed_subworkflow_output(injected)

    workflow_id = str(params.get("workflow_id") or "")
    if not workflow_id:
        raise ValueError("workflow_id is required")
    engine = context.engine
    if engine is None:
        raise RuntimeError("sub_workflow requires a workflow engine")

    workflow = await engine.load_workflow(workflow_id)
    extra = params.get("variables") if isinstance(params.get("variables"), dict) else {}
    child_ctx = ExecuteContext(
        runtime=context.runtime.copy({**context.runtime.variables, **extra}),
        env=context.env,
        button=context.button,
        menu=context.menu,
        preview=context.preview,
        tracer=context.tracer,
        call_stack=context.call_stack,
    )
    propagate_error = coerce_to_bool(params.get("propagate_error", False))

    logger.info(f"Node {node_id} calling sub workflow {workflow_id}")
    result = await engine.execute_workflow(child_ctx, workflow)

    if result.pending is not None:
        result.pending.meta = {
            **result.pending.meta,
            "source": "sub_workflow",
            "propagate_error": propagate_error,
        }
        return NestedPending(result.pending)

    if not result.success and propagate_error:
        raise RuntimeError(str(result.error or "sub_workflow failed"))
    return build_subworkflow_payload(workflow, result)


# ---------------------------------------------------------------------------
# 工具类动作
# ---------------------------------------------------------------------------

def provide_static_string(params: Dict[str, Any], context: ActionContext):
    return {"output": _text(params.get("value"))}


def concat_strings(params: Dict[str, Any], context: ActionContext):
    return {"result": f"{_text(params.get('string_a'))}{_text(params.get('string_b'))}"}


def _to_int(value: Any, fallback: int) -> int:
    if value is None:
        return fallback
    number = to_number(value)
    if not math.isfinite(number):
        return fallback
    return int(number)


def _text_items(value: Any, delimiter: str) -> List[str]:
    """join 的输入：列表、JSON 数组字符串或按分隔符切分的文本"""
    if isinstance(value, list):
        return [_text(entry) for entry in value]
    if value is None:
        return []
    if not isinstance(value, str):
        return [_text(value)]
    trimmed = value.strip()
    if trimmed.startswith("[") and trimmed.endswith("]"):
        try:
            parsed = json.loads(trimmed)
            if isinstance(parsed, list):
                return [_text(entry) for entry in parsed]
        except ValueError:
            pass
    if not trimmed:
        return []
    return list(trimmed) if delimiter == "" else trimmed.split(delimiter)


def string_ops(params: Dict[str, Any], context: ActionContext):
    """字符串操作：split/join/replace/substring/contains/trim/to_upper/to_lower/length"""
    operation = _text(params.get("operation") or "split").strip().lower()
    value = _text(params.get("value"))
    delimiter = _text(params["delimiter"]) if params.get("delimiter") is not None else ","
    joiner = _text(params["joiner"]) if params.get("joiner") is not None else ","
    search = _text(params.get("search"))
    replace_with = _text(params.get("replace_with"))
    start = _to_int(params.get("start"), 0)
    end = _to_int(params.get("end"), -1)
    case_sensitive = coerce_to_bool(params.get("case_sensitive", True))

    result: Any = value
    text = value
    items: List[str] = []
    contains = False

    if operation == "split":
        items = list(value) if delimiter == "" else value.split(delimiter)
        result = items
        text = json.dumps(items, ensure_ascii=False, separators=(",", ":"))
    elif operation == "join":
        items = _text_items(_first_param(params, "items", "value"), delimiter)
        text = result = joiner.join(items)
    elif operation == "replace":
        if search and case_sensitive:
            text = value.replace(search, replace_with)
        elif search:
            text = re.sub(re.escape(search), lambda match: replace_with, value, flags=re.IGNORECASE)
        result = text
    elif operation == "substring":
        text = result = value[start:end] if end >= 0 else value[start:]
    elif operation == "contains":
        if search:
            contains = search in value if case_sensitive else search.lower() in value.lower()
        result = contains
        text = _text(contains)
    elif operation == "trim":
        text = result = value.strip()
    elif operation == "to_upper":
        text = result = value.upper()
    elif operation == "to_lower":
        text = result = value.lower()
    elif operation == "length":
        result = len(value)
        text = str(result)

    if isinstance(result, (list, str)):
        length = len(result)
    elif isinstance(result, int) and not isinstance(result, bool):
        length = result
    else:
        length = len(text)

    return {"result": result, "text": text, "items": items, "contains": contains, "length": length}


def _json_type(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, list):
        return "array"
    if isinstance(value, dict):
        return "object"
    return "string"


def json_parse(params: Dict[str, Any], context: ActionContext):
    """解析或序列化 JSON；fail_on_error 为假时把错误放进输出"""
    mode = str(params.get("mode") or "parse").strip().lower()
    pretty = coerce_to_bool(params.get("pretty", False))
    indent_raw = to_number(params.get("indent") if params.get("indent") is not None else 2)
    indent = max(0, min(8, int(indent_raw))) if math.isfinite(indent_raw) else 2

    def _dump(value: Any) -> str:
        if isinstance(value, str):
            return value
        return json.dumps(value, ensure_ascii=False, indent=indent if pretty else None)

    try:
        if mode == "stringify":
            text = _dump(params.get("value"))
            return {"result": text, "text": text, "is_valid": True, "error": "", "value_type": "string"}
        value = params.get("value")
        parsed = json.loads(value or "") if isinstance(value, str) else value
        return {
            "result": parsed,
            "text": _dump(parsed),
            "is_valid": True,
            "error": "",
            "value_type": _json_type(parsed),
        }
    except (TypeError, ValueError) as e:
        if coerce_to_bool(params.get("fail_on_error", False)):
            raise
        return {"result": None, "text": "", "is_valid": False, "error": str(e), "value_type": "error"}


async def delay(params: Dict[str, Any], context: ActionContext):
    delay_ms = to_number(params.get("delay_ms") or 0)
    if math.isfinite(delay_ms) and delay_ms > 0 and not context.preview:
        await asyncio.sleep(delay_ms / 1000)
    return {"passthrough_output": params.get("passthrough_input")}


RUNTIME_PLACEHOLDERS = {
    "chat_id_placeholder": "{{ runtime.chat_id }}",
    "user_id_placeholder": "{{ runtime.user_id }}",
    "message_id_placeholder": "{{ runtime.message_id }}",
    "username_placeholder": "{{ runtime.username }}",
    "full_name_placeholder": "{{ runtime.full_name }}",
    "callback_data_placeholder": "{{ runtime.callback_data }}",
    "menu_id_placeholder": "{{ runtime.variables.menu_id }}",
    "menu_name_placeholder": "{{ runtime.variables.menu_name }}",
}

EXISTING_ID_KEYS = ("menu_id", "button_id", "web_app_id", "local_action_id", "workflow_id")


def provide_placeholders(params: Dict[str, Any], context: ActionContext):
    """输出常用运行时占位符模板，供下游节点再次渲染"""
    return dict(RUNTIME_PLACEHOLDERS)


def provide_existing_ids(params: Dict[str, Any], context: ActionContext):
    return {key: params[key] if params.get(key) is not None else "" for key in EXISTING_ID_KEYS}


def show_notification(params: Dict[str, Any], context: ActionContext):
    text = params.get("text")
    return {
        "notification": {
            "text": DEFAULT_NOTIFICATION if text is None else text,
            "show_alert": coerce_to_bool(params.get("show_alert", False)),
        }
    }


class BuiltinActions:
    """内置动作集合"""

    @staticmethod
    def definitions() -> List[Tuple[ActionDefinition, ActionHandler]]:
        def _define(action_id: str, name: str, description: str,
                    schema: Optional[Dict[str, Any]] = None) -> ActionDefinition:
            return ActionDefinition(
                action_id=action_id,
                name=name,
                description=description,
                parameters_schema=schema or {},
            )

        return [
            (_define("try_catch", "Try / Catch", "Catch downstream errors and jump to the catch branch."), try_catch),
            (_define(
                "set_variable", "Set Variable", "Set, append, increment or push a workflow variable.",
                {"type": "object", "properties": {"variable_name": {"type": "string"}}}
            ), set_variable),
            (_define("branch", "Branch", "Route to the true or false branch."), branch),
            (_define("switch", "Switch", "Route to the first matching case."), switch),
            (_define("loop_counter", "Loop Counter", "Loop a fixed number of times."), loop_counter),
            (_define("for_each", "For Each", "Iterate over a list of items."), for_each),
            (_define("await_user_input", "Await User Input", "Suspend until the user replies."), await_user_input),
            (_define(
                "sub_workflow", "Sub Workflow", "Run another workflow and expose its results.",
                {"type": "object", "properties": {"variables": {"type": "object"}}}
            ), sub_workflow),
            (_define("provide_static_string", "Static String", "Output a static string."), provide_static_string),
            (_define("concat_strings", "Concat Strings", "Concatenate two strings."), concat_strings),
            (_define(
                "string_ops", "String Operations",
                "Split, join, replace, slice or inspect a string.",
                {"type": "object", "properties": {
                    "operation": {"type": ["string", "null"]},
                    "items": {"type": ["array", "string", "null"]},
                }}
            ), string_ops),
            (_define("json_parse", "JSON Parse", "Parse or stringify JSON values."), json_parse),
            (_define("delay", "Delay", "Wait before continuing."), delay),
            (_define(
                "provide_placeholders", "Provide Placeholders", "Output common runtime placeholder templates."
            ), provide_placeholders),
            (_define(
                "provide_existing_ids", "Provide Existing IDs", "Output selected menu, button, action or workflow ids."
            ), provide_existing_ids),
            (_define(
                "show_notification", "Show Notification", "Show a notification to the user.",
                {"type": "object", "properties": {"text": {"type": ["string", "null"]}}}
            ), show_notification),
        ]

    @staticmethod
    def register_all(registry: ActionRegistry):
        """注册所有内置动作"""
        for definition, handler in BuiltinActions.definitions():
            registry.register_handler(definition.action_id, handler, definition)
        logger.debug("Registered builtin actions")


def register_builtin_actions(registry: ActionRegistry) -> ActionRegistry:
    BuiltinActions.register_all(registry)
    return registry
