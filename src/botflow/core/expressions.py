"""
模板表达式渲染器

模板中的 ``{{ expr }}`` 被替换为表达式的值。表达式语法：

    pipeline   := value ( "|" filter )*
    value      := operand ( op value )?          op: == != >= <= > <
    operand    := 'str' | "str" | number | true | false | null | none | path
    path       := ident ( "." ident | "[" digits "]" )*

比较运算使用宽松语义：数字与数字字符串相等，null 只等于自身。
渲染永远不抛异常：求值失败、路径不存在或值为 null 都渲染为空串。
"""
import json
import logging
import math
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Dict, Optional, Tuple, Union
from urllib.parse import quote


logger = logging.getLogger(__name__)

TOKEN_RE = re.compile(r"\{\{\s*([^}]+?)\s*\}\}")
NUMBER_RE = re.compile(r"^-?\d+(?:\.\d+)?$")
INDEX_RE = re.compile(r"\[(\d+)\]")
DECIMAL_RE = re.compile(r"^[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?$")

# 同一位置按此顺序匹配，保证 ">=" 优先于 ">"
COMPARISON_OPERATORS = ("==", "!=", ">=", "<=", ">", "<")
FALSY_STRINGS = frozenset({"", "0", "false", "none", "null", "no", "off"})
URLENCODE_SAFE = "-_.!~*'()"


class _Missing:
    """未解析路径的哨兵值，区别于显式的 None"""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self):
        return "MISSING"

    def __bool__(self):
        return False


MISSING = _Missing()


@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class PathRef:
    parts: Tuple[str, ...]


@dataclass(frozen=True)
class Comparison:
    left: "Expression"
    operator: str
    right: "Expression"


@dataclass(frozen=True)
class Pipeline:
    source: "Expression"
    filters: Tuple[str, ...] = ()


Expression = Union[Literal, PathRef, Comparison, Pipeline]


# ---------------------------------------------------------------------------
# 解析
# ---------------------------------------------------------------------------

def _split_outside_quotes(text: str, separator: str) -> list:
    parts = []
    quote_char = None
    current = []
    for ch in text:
        if quote_char:
            current.append(ch)
            if ch == quote_char:
                quote_char = None
            continue
        if ch in ("'", '"'):
            quote_char = ch
            current.append(ch)
            continue
        if ch == separator:
            parts.append("".join(current))
            current = []
            continue
        current.append(ch)
    parts.append("".join(current))
    return parts


def _find_operator(text: str) -> Optional[Tuple[int, str]]:
    """找到引号外最左侧的比较运算符"""
    quote_char = None
    for index, ch in enumerate(text):
        if quote_char:
            if ch == quote_char:
                quote_char = None
            continue
        if ch in ("'", '"'):
            quote_char = ch
            continue
        for operator in COMPARISON_OPERATORS:
            if text.startswith(operator, index):
                return index, operator
    return None


def _parse_operand(text: str) -> Expression:
    if len(text) >= 2 and text[0] == text[-1] and text[0] in ("'", '"'):
        return Literal(text[1:-1])

    if NUMBER_RE.match(text):
        return Literal(float(text) if "." in text else int(text))

    lowered = text.lower()
    if lowered == "true":
        return Literal(True)
    if lowered == "false":
        return Literal(False)
    if lowered in ("null", "none"):
        return Literal(None)

    path = INDEX_RE.sub(r".\1", text)
    return PathRef(tuple(part for part in path.split(".") if part))


def parse_value(text: str) -> Expression:
    """解析比较表达式或操作数"""
    text = text.strip()
    found = _find_operator(text)
    if found is None:
        return _parse_operand(text)
    index, operator = found
    left = text[:index].strip()
    right = text[index + len(operator):].strip()
    return Comparison(parse_value(left), operator, parse_value(right))


@lru_cache(maxsize=2048)
def parse_expression(text: str) -> Pipeline:
    """解析一个 {{ }} 内部的管道表达式"""
    stages = [part.strip() for part in _split_outside_quotes(text.strip(), "|")]
    stages = [stage for stage in stages if stage]
    if not stages:
        return Pipeline(Literal(""))
    return Pipeline(parse_value(stages[0]), tuple(stage.lower() for stage in stages[1:]))


# ---------------------------------------------------------------------------
# 宽松值语义
# ---------------------------------------------------------------------------

def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _format_number(value: Union[int, float]) -> str:
    if isinstance(value, float):
        if math.isnan(value):
            return "NaN"
        if math.isinf(value):
            return "Infinity" if value > 0 else "-Infinity"
        if value.is_integer():
            return str(int(value))
    return str(value)


def _normalize_numbers(value: Any) -> Any:
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, dict):
        return {str(key): _normalize_numbers(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalize_numbers(item) for item in value]
    return value


def to_json(value: Any) -> str:
    """紧凑 JSON 序列化，非 ASCII 字符原样保留"""
    return json.dumps(_normalize_numbers(value), ensure_ascii=False, separators=(",", ":"), default=str)


def to_display_string(value: Any) -> str:
    """渲染输出使用的字符串形式；容器渲染为 JSON"""
    if value is None or value is MISSING:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if _is_number(value):
        return _format_number(value)
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list, tuple)):
        return to_json(value)
    return str(value)


def _to_primitive(value: Any) -> Any:
    if isinstance(value, (list, tuple)):
        return ",".join("" if item is None or item is MISSING else to_display_string(_to_primitive(item))
                        for item in value)
    if isinstance(value, dict):
        return "[object Object]"
    return value


def to_number(value: Any) -> float:
    """宽松的数值转换，无法转换时返回 NaN"""
    if value is MISSING:
        return math.nan
    if value is None:
        return 0
    if isinstance(value, bool):
        return int(value)
    if _is_number(value):
        return value
    if isinstance(value, (list, tuple, dict)):
        return to_number(_to_primitive(value))
    text = str(value).strip()
    if not text:
        return 0
    if text in ("Infinity", "+Infinity"):
        return math.inf
    if text == "-Infinity":
        return -math.inf
    lowered = text.lower()
    for prefix, base in (("0x", 16), ("0o", 8), ("0b", 2)):
        if lowered.startswith(prefix):
            try:
                return int(text[2:], base)
            except ValueError:
                return math.nan
    if DECIMAL_RE.match(text):
        number = float(text)
        return int(number) if number.is_integer() and "e" not in lowered and "." not in text else number
    return math.nan


def loose_equals(left: Any, right: Any) -> bool:
    """宽松相等：数字与数字字符串可比较，null 与缺失值互等"""
    left_nullish = left is None or left is MISSING
    right_nullish = right is None or right is MISSING
    if left_nullish or right_nullish:
        return left_nullish and right_nullish

    if isinstance(left, bool) and isinstance(right, bool):
        return left == right
    if isinstance(left, bool):
        return loose_equals(int(left), right)
    if isinstance(right, bool):
        return loose_equals(left, int(right))

    if _is_number(left) and _is_number(right):
        return left == right
    if isinstance(left, str) and isinstance(right, str):
        return left == right
    if _is_number(left) and isinstance(right, str):
        return left == to_number(right)
    if isinstance(left, str) and _is_number(right):
        return to_number(left) == right

    left_container = isinstance(left, (dict, list, tuple))
    right_container = isinstance(right, (dict, list, tuple))
    if left_container and right_container:
        return left is right
    if left_container:
        return loose_equals(_to_primitive(left), right)
    if right_container:
        return loose_equals(left, _to_primitive(right))
    return left == right


def _relational(left: Any, right: Any, operator: str) -> bool:
    left = _to_primitive(left)
    right = _to_primitive(right)
    if isinstance(left, str) and isinstance(right, str):
        a, b = left, right
    else:
        a, b = to_number(left), to_number(right)
        if (isinstance(a, float) and math.isnan(a)) or (isinstance(b, float) and math.isnan(b)):
            return False
    if operator == ">":
        return a > b
    if operator == ">=":
        return a >= b
    if operator == "<":
        return a < b
    return a <= b


def _lookup(current: Any, part: str) -> Any:
    if current is None or current is MISSING:
        return MISSING
    if isinstance(current, dict):
        return current.get(part, MISSING)
    if isinstance(current, (list, tuple, str)):
        if part.isdigit():
            index = int(part)
            return current[index] if index < len(current) else MISSING
        if part == "length":
            return len(current)
        return MISSING
    if part.startswith("_"):
        return MISSING
    return getattr(current, part, MISSING)


# ---------------------------------------------------------------------------
# 求值
# ---------------------------------------------------------------------------

def evaluate(expression: Expression, context: Dict[str, Any]) -> Any:
    """对表达式树求值，未解析的路径返回 MISSING"""
    if isinstance(expression, Literal):
        return expression.value

    if isinstance(expression, PathRef):
        current: Any = context
        for part in expression.parts:
            current = _lookup(current, part)
            if current is MISSING:
                break
        return current

    if isinstance(expression, Comparison):
        left = evaluate(expression.left, context)
        right = evaluate(expression.right, context)
        if expression.operator == "==":
            return loose_equals(left, right)
        if expression.operator == "!=":
            return not loose_equals(left, right)
        return _relational(left, right, expression.operator)

    if isinstance(expression, Pipeline):
        value = evaluate(expression.source, context)
        for name in expression.filters:
            value = apply_filter(name, value)
        return value

    raise TypeError(f"Unsupported expression node: {type(expression).__name__}")


def apply_filter(name: str, value: Any) -> Any:
    """应用命名过滤器，未知过滤器保持原值"""
    if name == "tojson":
        if value is MISSING:
            return MISSING
        return to_json(value)
    if name == "urlencode":
        text = "" if value is None or value is MISSING else to_display_string(_to_primitive(value))
        return quote(text, safe=URLENCODE_SAFE)
    # zip 仅为兼容旧模板保留
    return value


def evaluate_text(expression_text: str, context: Dict[str, Any]) -> Any:
    return evaluate(parse_expression(expression_text), context)


def render(template: Any, context: Dict[str, Any]) -> str:
    """渲染模板字符串"""
    if not template:
        return ""
    if not isinstance(template, str):
        template = to_display_string(template)

    def _replace(match) -> str:
        try:
            return to_display_string(evaluate_text(match.group(1), context))
        except Exception as e:
            logger.debug(f"Template expression '{match.group(1)}' failed: {e}")
            return ""

    return TOKEN_RE.sub(_replace, template)


def render_structure(value: Any, context: Dict[str, Any]) -> Any:
    """递归渲染嵌套结构中的所有字符串叶子"""
    if isinstance(value, str):
        return render(value, context)
    if isinstance(value, (list, tuple)):
        return [render_structure(item, context) for item in value]
    if isinstance(value, dict):
        return {key: render_structure(item, context) for key, item in value.items()}
    return value


def coerce_to_bool(value: Any) -> bool:
    """把任意值转换为布尔值"""
    if isinstance(value, bool):
        return value
    if value is None or value is MISSING:
        return False
    if _is_number(value):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() not in FALSY_STRINGS
    if isinstance(value, (dict, list, tuple)):
        return True
    return bool(value)


def build_template_context(
    action: Dict[str, Any],
    button: Dict[str, Any],
    menu: Dict[str, Any],
    runtime: Any,
    variables: Dict[str, Any],
    nodes: Optional[Dict[str, Dict[str, Any]]] = None,
    engine: Optional[Dict[str, Any]] = None,
    **extra: Any
) -> Dict[str, Any]:
    """构造模板渲染上下文"""
    if isinstance(runtime, dict):
        runtime_view = runtime
    else:
        runtime_view = dict(vars(runtime))
        runtime_view["variables"] = variables
    context = {
        "action": action,
        "button": button,
        "menu": menu,
        "runtime": runtime_view,
        "variables": variables,
        "__trigger__": variables.get("__trigger__"),
        "nodes": nodes or {},
        "engine": engine or {},
    }
    context.update(extra)
    return context
