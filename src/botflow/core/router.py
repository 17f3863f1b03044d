"""
控制流路由与 try/catch 处理器栈
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..models.execution import ActionExecutionResult, EngineState, HandlerEntry
from ..models.workflow import DEFAULT_CONTROL_OUTPUTS, Workflow
from .graph import control_edge_map


logger = logging.getLogger(__name__)

TRY_CATCH_ACTION = "try_catch"
CATCH_OUTPUT = "catch"


@dataclass
class RunState:
    """单次运行中累积的可变状态"""
    order: List[str]
    variables: Dict[str, Any]
    engine_state: EngineState
    node_outputs: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    text_parts: List[str] = field(default_factory=list)
    files_to_clean: List[str] = field(default_factory=list)
    final: ActionExecutionResult = field(default_factory=ActionExecutionResult)


def merge_side_effects(result: ActionExecutionResult, final: ActionExecutionResult, text_parts: List[str]):
    """把节点的消息类副作用合并到最终结果"""
    if result.new_message_chain:
        final.new_message_chain = result.new_message_chain
        final.new_text = None
        final.should_edit_message = False
        text_parts.clear()

    if not final.new_message_chain:
        if result.new_text:
            text_parts.append(result.new_text)
        if result.next_menu_id:
            final.next_menu_id = result.next_menu_id
        if result.parse_mode and result.new_text:
            final.parse_mode = result.parse_mode

    if result.notification:
        final.notification = result.notification
    if result.button_overrides:
        final.button_overrides.extend(result.button_overrides)
    if result.button_title:
        final.button_title = result.button_title


class ControlFlowRouter:
    """合并节点输出、维护处理器栈并决定下一个节点"""

    def __init__(self, workflow: Workflow, order: List[str]):
        self.workflow = workflow
        self.routes = control_edge_map(workflow)
        self.index_map = {node_id: index for index, node_id in enumerate(order)}

    def record_success(self, state: RunState, node_id: str, result: ActionExecutionResult, step: int):
        """节点正常完成：合并变量、记录快照、合并副作用"""
        if result.temp_files_to_clean:
            state.files_to_clean.extend(result.temp_files_to_clean)

        outputs = dict(result.variables) if isinstance(result.variables, dict) else {}
        state.node_outputs[node_id] = outputs
        state.variables.update(outputs)
        state.engine_state.record_node(node_id, outputs, step)
        merge_side_effects(result, state.final, state.text_parts)

        node = self.workflow.get_node(node_id)
        if node is not None and node.action_id == TRY_CATCH_ACTION:
            catch_target = self.routes.get(node_id, {}).get(CATCH_OUTPUT)
            if catch_target:
                state.engine_state.push_handler(HandlerEntry(try_node_id=node_id, catch_node_id=catch_target))
                logger.debug(f"Pushed try handler {node_id} -> {catch_target}")

    def recover(self, state: RunState, node_id: str, error: str) -> Optional[int]:
        """节点失败：弹出最近的处理器，返回 catch 节点下标；无法恢复时返回 None"""
        state.node_outputs[node_id] = {"error": error}
        entry = state.engine_state.pop_handler()
        if entry is None or entry.catch_node_id not in self.index_map:
            return None
        state.engine_state.record_error(error, node_id, entry.try_node_id)
        logger.info(f"Node {node_id} failed, jumping to catch node {entry.catch_node_id}")
        return self.index_map[entry.catch_node_id]

    def next_index(self, node_id: str, index: int, flow_output: Optional[str]) -> int:
        """按控制边跳转，没有匹配时顺序推进"""
        node_routes = self.routes.get(node_id, {})
        if flow_output:
            candidates = (flow_output,)
        else:
            candidates = DEFAULT_CONTROL_OUTPUTS
        for output in candidates:
            target = node_routes.get(output)
            if target is not None and target in self.index_map:
                return self.index_map[target]
        return index + 1
