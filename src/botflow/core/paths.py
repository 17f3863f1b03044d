"""
边取值路径解析

支持 ``$.a.b``、``items[0]``、``data['key']`` 这类简单路径。
"""
import re
from typing import Any, List, Union


IDENT_RE = re.compile(r"[A-Za-z0-9_]")
INT_RE = re.compile(r"^-?\d+$")

PathToken = Union[str, int]


def parse_path_tokens(expression: str) -> List[PathToken]:
    """把路径表达式拆成键和下标"""
    expr = str(expression or "").strip()
    if expr.startswith("$"):
        expr = expr[1:]
    if expr.startswith("."):
        expr = expr[1:]

    tokens: List[PathToken] = []
    i = 0
    while i < len(expr):
        ch = expr[i]
        if ch == ".":
            i += 1
            continue
        if ch == "[":
            closing = expr.find("]", i + 1)
            if closing == -1:
                raise ValueError(f"invalid path expression: {expression}")
            inner = expr[i + 1:closing].strip()
            if len(inner) >= 2 and inner[0] == inner[-1] and inner[0] in ("'", '"'):
                tokens.append(inner[1:-1])
            elif INT_RE.match(inner):
                tokens.append(int(inner))
            else:
                raise ValueError(f"unsupported path expression: {expression}")
            i = closing + 1
            continue
        if not IDENT_RE.match(ch):
            raise ValueError(f"unsupported path expression: {expression}")
        start = i
        while i < len(expr) and IDENT_RE.match(expr[i]):
            i += 1
        tokens.append(expr[start:i])
    return tokens


def extract_by_path(expression: str, payload: Any) -> Any:
    """沿路径取值，任何一步无法继续时返回 None"""
    current = payload
    for token in parse_path_tokens(expression):
        if current is None:
            return None
        if isinstance(token, int):
            if not isinstance(current, list) or not 0 <= token < len(current):
                return None
            current = current[token]
        else:
            if not isinstance(current, dict):
                return None
            current = current.get(token)
    return current
