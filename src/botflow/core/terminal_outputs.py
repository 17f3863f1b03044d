"""
子工作流终端输出收集
"""
import re
from typing import Any, Dict, Optional, Tuple

from ..models.execution import ActionExecutionResult
from ..models.workflow import Workflow
from .graph import terminal_node_ids


TERMINAL_OUTPUT_PREFIX = "terminal_"

_UNSAFE_RE = re.compile(r"[^A-Za-z0-9_]")
_REPEATED_UNDERSCORE_RE = re.compile(r"_+")


def sanitize_output_token(raw: Any) -> str:
    value = _UNSAFE_RE.sub("_", str(raw or "").strip())
    if not value:
        return "value"
    return _REPEATED_UNDERSCORE_RE.sub("_", value)


def build_terminal_output_name(node_id: str, output_name: str) -> str:
    """terminal_{节点}__{输出}"""
    return f"{TERMINAL_OUTPUT_PREFIX}{sanitize_output_token(node_id)}__{sanitize_output_token(output_name)}"


def collect_terminal_outputs(
    workflow: Optional[Workflow],
    result: ActionExecutionResult
) -> Tuple[Dict[str, Dict[str, Any]], Dict[str, Any]]:
    """
    收集子工作流终端节点的输出

    没有终端节点时退化为所有产生过输出的节点。

    Returns:
        (按节点分组的输出, 扁平化的 terminal_* 变量)
    """
    snapshots = result.engine_state.nodes if result.engine_state is not None else {}
    terminal_ids = terminal_node_ids(workflow) if workflow is not None else []
    candidates = terminal_ids or list(snapshots.keys())

    grouped: Dict[str, Dict[str, Any]] = {}
    flattened: Dict[str, Any] = {}
    for node_id in candidates:
        node_id = str(node_id or "").strip()
        outputs = snapshots.get(node_id)
        if not node_id or not isinstance(outputs, dict):
            continue
        kept: Dict[str, Any] = {}
        for output_name, value in outputs.items():
            output_name = str(output_name or "").strip()
            if not output_name or output_name.startswith("__"):
                continue
            kept[output_name] = value
            flattened[build_terminal_output_name(node_id, output_name)] = value
        if kept:
            grouped[node_id] = kept
    return grouped, flattened


def build_subworkflow_payload(
    workflow: Optional[Workflow],
    result: ActionExecutionResult
) -> Dict[str, Any]:
    """把子工作流的结束结果转换为子工作流节点的输出"""
    grouped, flattened = collect_terminal_outputs(workflow, result)
    succeeded = bool(result.success)
    payload = {
        "__flow__": "success" if succeeded else "error",
        "subworkflow_success": succeeded,
        "subworkflow_error": "" if succeeded else str(result.error or "sub_workflow failed"),
        "subworkflow_text": str(result.new_text or ""),
        "subworkflow_next_menu_id": str(result.next_menu_id or ""),
        "subworkflow_variables": dict(result.variables or {}),
        "subworkflow_terminal_outputs": grouped,
    }
    payload.update(flattened)
    return payload


def extract_terminal_output_variables(payload: Dict[str, Any]) -> Dict[str, Any]:
    """挑出载荷中的 terminal_* 变量"""
    return {
        key: value
        for key, value in (payload or {}).items()
        if str(key).startswith(TERMINAL_OUTPUT_PREFIX)
    }
