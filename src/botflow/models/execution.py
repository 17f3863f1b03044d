"""
工作流执行模型

运行期数据都在这里定义：运行上下文、节点结果（带标签的结果变体）、
引擎私有状态、恢复快照与续体栈。所有可持久化的结构都提供
to_dict / from_dict，输出只包含 JSON 兼容的数据。
"""
import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Any, Optional, List, Union


# 旧版本把引擎簿记写在用户变量里，恢复时需要兼容这些键
ENGINE_STATE_KEY = "__engine__"
WORKFLOW_CALL_STACK_KEY = "__workflow_call_stack__"
SUBWORKFLOW_RESUME_KEY = "__subworkflow_resume__"

LEGACY_STATE_KEYS = (ENGINE_STATE_KEY, WORKFLOW_CALL_STACK_KEY, SUBWORKFLOW_RESUME_KEY)

NodeOutputs = Dict[str, Dict[str, Any]]


class NodeStatus(Enum):
    """节点追踪状态"""
    SUCCESS = "success"
    ERROR = "error"
    SKIPPED = "skipped"
    PENDING = "pending"


def _as_dict(value: Any) -> Dict[str, Any]:
    return dict(value) if isinstance(value, dict) else {}


def _as_str_list(value: Any) -> List[str]:
    if not isinstance(value, (list, tuple)):
        return []
    return [str(item) for item in value]


def clone_node_outputs(outputs: Optional[NodeOutputs]) -> NodeOutputs:
    """深拷贝节点输出表"""
    cloned: NodeOutputs = {}
    for node_id, variables in (outputs or {}).items():
        cloned[node_id] = copy.deepcopy(variables) if isinstance(variables, dict) else {}
    return cloned


def normalize_call_stack(raw: Any) -> List[str]:
    """规范化调用栈：去空、去重、保序"""
    if not isinstance(raw, (list, tuple)):
        return []
    stack: List[str] = []
    for entry in raw:
        value = str(entry or "").strip()
        if value and value not in stack:
            stack.append(value)
    return stack


@dataclass
class RuntimeContext:
    """运行上下文：聊天标识和可变变量包"""
    chat_id: str = "0"
    chat_type: Optional[str] = None
    message_id: Optional[int] = None
    thread_id: Optional[int] = None
    user_id: Optional[str] = None
    username: Optional[str] = None
    full_name: Optional[str] = None
    callback_data: Optional[str] = None
    variables: Dict[str, Any] = field(default_factory=dict)

    def copy(self, variables: Optional[Dict[str, Any]] = None) -> "RuntimeContext":
        """复制上下文，可替换变量包"""
        clone = copy.copy(self)
        clone.variables = dict(self.variables if variables is None else variables)
        return clone

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chat_id": self.chat_id,
            "chat_type": self.chat_type,
            "message_id": self.message_id,
            "thread_id": self.thread_id,
            "user_id": self.user_id,
            "username": self.username,
            "full_name": self.full_name,
            "callback_data": self.callback_data,
            "variables": copy.deepcopy(self.variables),
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "RuntimeContext":
        data = data or {}
        return cls(
            chat_id=str(data.get("chat_id", "0")),
            chat_type=data.get("chat_type"),
            message_id=data.get("message_id"),
            thread_id=data.get("thread_id"),
            user_id=data.get("user_id"),
            username=data.get("username"),
            full_name=data.get("full_name"),
            callback_data=data.get("callback_data"),
            variables=_as_dict(data.get("variables")),
        )


def build_runtime_context(payload: Dict[str, Any], menu_id: Optional[str] = None) -> RuntimeContext:
    """根据触发载荷构造运行上下文"""
    variables = _as_dict(payload.get("variables"))
    if menu_id and "menu_id" not in variables:
        variables["menu_id"] = menu_id

    def _opt_str(key: str) -> Optional[str]:
        value = payload.get(key)
        return str(value) if value else None

    def _opt_int(key: str) -> Optional[int]:
        value = payload.get(key)
        return int(value) if value else None

    return RuntimeContext(
        chat_id=str(payload.get("chat_id") if payload.get("chat_id") is not None else "0"),
        chat_type=_opt_str("chat_type"),
        message_id=_opt_int("message_id"),
        thread_id=_opt_int("thread_id"),
        user_id=_opt_str("user_id"),
        username=_opt_str("username"),
        full_name=_opt_str("full_name"),
        callback_data=_opt_str("callback_data"),
        variables=variables,
    )


@dataclass
class HandlerEntry:
    """try/catch 处理器栈条目"""
    try_node_id: str
    catch_node_id: str

    def to_dict(self) -> Dict[str, str]:
        return {"try_node_id": self.try_node_id, "catch_node_id": self.catch_node_id}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HandlerEntry":
        return cls(try_node_id=str(data.get("try_node_id", "")), catch_node_id=str(data.get("catch_node_id", "")))


@dataclass
class EngineState:
    """引擎私有状态，与用户变量分开携带"""
    try_stack: List[HandlerEntry] = field(default_factory=list)
    last_error: Optional[str] = None
    last_error_node_id: Optional[str] = None
    last_try_node_id: Optional[str] = None
    last_node_id: Optional[str] = None
    step: int = 0
    nodes: NodeOutputs = field(default_factory=dict)
    call_stack: List[str] = field(default_factory=list)
    subworkflow_resume: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    def push_handler(self, entry: HandlerEntry):
        self.try_stack.append(entry)

    def pop_handler(self) -> Optional[HandlerEntry]:
        if not self.try_stack:
            return None
        return self.try_stack.pop()

    def record_error(self, error: str, node_id: str, try_node_id: Optional[str] = None):
        """记录被捕获的错误"""
        self.last_error = error
        self.last_error_node_id = node_id
        if try_node_id:
            self.last_try_node_id = try_node_id

    def record_node(self, node_id: str, outputs: Dict[str, Any], step: int):
        """记录节点输出快照"""
        self.nodes[node_id] = outputs
        self.last_node_id = node_id
        self.step = step

    def consume_resume_payload(self, node_id: str) -> Optional[Dict[str, Any]]:
        """取出并删除注入给子工作流节点的恢复载荷"""
        if not node_id:
            return None
        payload = self.subworkflow_resume.pop(node_id, None)
        return payload if isinstance(payload, dict) else None

    def merge_legacy(self, variables: Dict[str, Any]):
        """从旧版变量包中提取引擎簿记并删除这些键

        侧通道中已有的值优先，旧值只补齐缺失的部分。
        """
        legacy = variables.pop(ENGINE_STATE_KEY, None)
        if isinstance(legacy, dict):
            if not self.try_stack:
                self.try_stack = [
                    HandlerEntry.from_dict(entry)
                    for entry in legacy.get("try_stack") or []
                    if isinstance(entry, dict)
                ]
            for key in ("last_error", "last_error_node_id", "last_try_node_id", "last_node_id"):
                if getattr(self, key) is None and legacy.get(key) is not None:
                    setattr(self, key, str(legacy[key]))
            if not self.step and isinstance(legacy.get("step"), int):
                self.step = legacy["step"]
            for node_id, outputs in _as_dict(legacy.get("nodes")).items():
                self.nodes.setdefault(node_id, _as_dict(outputs))

        legacy_stack = normalize_call_stack(variables.pop(WORKFLOW_CALL_STACK_KEY, None))
        if legacy_stack and not self.call_stack:
            self.call_stack = legacy_stack

        legacy_resume = variables.pop(SUBWORKFLOW_RESUME_KEY, None)
        if isinstance(legacy_resume, dict):
            for node_id, payload in legacy_resume.items():
                if isinstance(payload, dict):
                    self.subworkflow_resume.setdefault(node_id, payload)

    def copy(self) -> "EngineState":
        return EngineState.from_dict(self.to_dict())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "try_stack": [entry.to_dict() for entry in self.try_stack],
            "last_error": self.last_error,
            "last_error_node_id": self.last_error_node_id,
            "last_try_node_id": self.last_try_node_id,
            "last_node_id": self.last_node_id,
            "step": self.step,
            "nodes": clone_node_outputs(self.nodes),
            "call_stack": list(self.call_stack),
            "subworkflow_resume": copy.deepcopy(self.subworkflow_resume),
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "EngineState":
        data = data or {}
        return cls(
            try_stack=[
                HandlerEntry.from_dict(entry)
                for entry in data.get("try_stack") or []
                if isinstance(entry, dict)
            ],
            last_error=data.get("last_error"),
            last_error_node_id=data.get("last_error_node_id"),
            last_try_node_id=data.get("last_try_node_id"),
            last_node_id=data.get("last_node_id"),
            step=int(data.get("step") or 0),
            nodes=clone_node_outputs(_as_dict(data.get("nodes"))),
            call_stack=normalize_call_stack(data.get("call_stack")),
            subworkflow_resume=copy.deepcopy(_as_dict(data.get("subworkflow_resume"))),
        )


@dataclass
class ResumeState:
    """工作流恢复快照"""
    exec_order: List[str]
    next_index: int
    node_outputs: NodeOutputs = field(default_factory=dict)
    global_variables: Dict[str, Any] = field(default_factory=dict)
    final_text_parts: List[str] = field(default_factory=list)
    temp_files_to_clean: List[str] = field(default_factory=list)
    engine_state: Optional[EngineState] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "exec_order": list(self.exec_order),
            "next_index": self.next_index,
            "node_outputs": clone_node_outputs(self.node_outputs),
            "global_variables": copy.deepcopy(self.global_variables),
            "final_text_parts": list(self.final_text_parts),
            "temp_files_to_clean": list(self.temp_files_to_clean),
        }
        if self.engine_state is not None:
            data["engine_state"] = self.engine_state.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ResumeState":
        engine_state = data.get("engine_state")
        return cls(
            exec_order=_as_str_list(data.get("exec_order")),
            next_index=int(data.get("next_index") or 0),
            node_outputs=clone_node_outputs(_as_dict(data.get("node_outputs"))),
            global_variables=copy.deepcopy(_as_dict(data.get("global_variables"))),
            final_text_parts=_as_str_list(data.get("final_text_parts")),
            temp_files_to_clean=_as_str_list(data.get("temp_files_to_clean")),
            engine_state=EngineState.from_dict(engine_state) if isinstance(engine_state, dict) else None,
        )


@dataclass
class Continuation:
    """续体帧：嵌套子工作流结束后如何恢复祖先工作流"""
    workflow_id: str
    node_id: str
    exec_order: List[str]
    next_index: int
    node_outputs: NodeOutputs = field(default_factory=dict)
    global_variables: Dict[str, Any] = field(default_factory=dict)
    final_text_parts: List[str] = field(default_factory=list)
    temp_files_to_clean: List[str] = field(default_factory=list)
    engine_state: EngineState = field(default_factory=EngineState)
    runtime: RuntimeContext = field(default_factory=RuntimeContext)
    button: Dict[str, Any] = field(default_factory=dict)
    menu: Dict[str, Any] = field(default_factory=dict)
    propagate_error: bool = False
    type: str = "sub_workflow"

    def resume_state(self) -> ResumeState:
        return ResumeState(
            exec_order=list(self.exec_order),
            next_index=self.next_index,
            node_outputs=clone_node_outputs(self.node_outputs),
            global_variables=copy.deepcopy(self.global_variables),
            final_text_parts=list(self.final_text_parts),
            temp_files_to_clean=list(self.temp_files_to_clean),
            engine_state=self.engine_state.copy(),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "workflow_id": self.workflow_id,
            "node_id": self.node_id,
            "exec_order": list(self.exec_order),
            "next_index": self.next_index,
            "node_outputs": clone_node_outputs(self.node_outputs),
            "global_variables": copy.deepcopy(self.global_variables),
            "final_text_parts": list(self.final_text_parts),
            "temp_files_to_clean": list(self.temp_files_to_clean),
            "engine_state": self.engine_state.to_dict(),
            "runtime": self.runtime.to_dict(),
            "button": copy.deepcopy(self.button),
            "menu": copy.deepcopy(self.menu),
            "sub_workflow": {"propagate_error": self.propagate_error},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Continuation":
        sub_workflow = _as_dict(data.get("sub_workflow"))
        return cls(
            type=str(data.get("type") or "sub_workflow"),
            workflow_id=str(data.get("workflow_id", "")),
            node_id=str(data.get("node_id", "")),
            exec_order=_as_str_list(data.get("exec_order")),
            next_index=int(data.get("next_index") or 0),
            node_outputs=clone_node_outputs(_as_dict(data.get("node_outputs"))),
            global_variables=copy.deepcopy(_as_dict(data.get("global_variables"))),
            final_text_parts=_as_str_list(data.get("final_text_parts")),
            temp_files_to_clean=_as_str_list(data.get("temp_files_to_clean")),
            engine_state=EngineState.from_dict(_as_dict(data.get("engine_state"))),
            runtime=RuntimeContext.from_dict(_as_dict(data.get("runtime"))),
            button=_as_dict(data.get("button")),
            menu=_as_dict(data.get("menu")),
            propagate_error=bool(sub_workflow.get("propagate_error", data.get("propagate_error", False))),
        )


@dataclass
class PendingExecution:
    """挂起的执行：最内层等待点及祖先续体栈"""
    workflow_id: str = ""
    node_id: str = ""
    exec_order: List[str] = field(default_factory=list)
    next_index: int = 0
    node_outputs: NodeOutputs = field(default_factory=dict)
    global_variables: Dict[str, Any] = field(default_factory=dict)
    final_text_parts: List[str] = field(default_factory=list)
    temp_files_to_clean: List[str] = field(default_factory=list)
    engine_state: EngineState = field(default_factory=EngineState)
    runtime: Optional[RuntimeContext] = None
    button: Dict[str, Any] = field(default_factory=dict)
    menu: Dict[str, Any] = field(default_factory=dict)
    await_config: Dict[str, Any] = field(default_factory=dict)
    meta: Dict[str, Any] = field(default_factory=dict)
    continuations: List[Continuation] = field(default_factory=list)

    def resume_state(self) -> ResumeState:
        return ResumeState(
            exec_order=list(self.exec_order),
            next_index=self.next_index,
            node_outputs=clone_node_outputs(self.node_outputs),
            global_variables=copy.deepcopy(self.global_variables),
            final_text_parts=list(self.final_text_parts),
            temp_files_to_clean=list(self.temp_files_to_clean),
            engine_state=self.engine_state.copy(),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "workflow_id": self.workflow_id,
            "node_id": self.node_id,
            "exec_order": list(self.exec_order),
            "next_index": self.next_index,
            "node_outputs": clone_node_outputs(self.node_outputs),
            "global_variables": copy.deepcopy(self.global_variables),
            "final_text_parts": list(self.final_text_parts),
            "temp_files_to_clean": list(self.temp_files_to_clean),
            "engine_state": self.engine_state.to_dict(),
            "runtime": self.runtime.to_dict() if self.runtime else None,
            "button": copy.deepcopy(self.button),
            "menu": copy.deepcopy(self.menu),
            "await": copy.deepcopy(self.await_config),
            "meta": copy.deepcopy(self.meta),
            "continuations": [frame.to_dict() for frame in self.continuations],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PendingExecution":
        runtime = data.get("runtime")
        return cls(
            workflow_id=str(data.get("workflow_id") or ""),
            node_id=str(data.get("node_id") or ""),
            exec_order=_as_str_list(data.get("exec_order")),
            next_index=int(data.get("next_index") or 0),
            node_outputs=clone_node_outputs(_as_dict(data.get("node_outputs"))),
            global_variables=copy.deepcopy(_as_dict(data.get("global_variables"))),
            final_text_parts=_as_str_list(data.get("final_text_parts")),
            temp_files_to_clean=_as_str_list(data.get("temp_files_to_clean")),
            engine_state=EngineState.from_dict(_as_dict(data.get("engine_state"))),
            runtime=RuntimeContext.from_dict(runtime) if isinstance(runtime, dict) else None,
            button=_as_dict(data.get("button")),
            menu=_as_dict(data.get("menu")),
            await_config=_as_dict(data.get("await")),
            meta=_as_dict(data.get("meta")),
            continuations=[
                Continuation.from_dict(frame)
                for frame in data.get("continuations") or []
                if isinstance(frame, dict)
            ],
        )


@dataclass
class Continue:
    """正常完成，顺序推进"""
    variables: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Branch:
    """正常完成并选择控制输出"""
    output: str
    variables: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Suspend:
    """当前工作流挂起等待外部输入"""
    await_config: Dict[str, Any] = field(default_factory=dict)


@dataclass
class NestedPending:
    """嵌套子工作流挂起，需要向上冒泡"""
    pending: PendingExecution


NodeOutcome = Union[Continue, Branch, Suspend, NestedPending]


@dataclass
class ActionExecutionResult:
    """动作或工作流执行结果"""
    success: bool = True
    error: Optional[str] = None
    flow_output: Optional[str] = None
    new_text: Optional[str] = None
    parse_mode: Optional[str] = None
    next_menu_id: Optional[str] = None
    button_overrides: List[Dict[str, Any]] = field(default_factory=list)
    button_title: Optional[str] = None
    notification: Optional[Dict[str, Any]] = None
    new_message_chain: Optional[List[Any]] = None
    should_edit_message: bool = False
    temp_files_to_clean: List[str] = field(default_factory=list)
    variables: Optional[Dict[str, Any]] = None
    engine_state: Optional[EngineState] = None
    pending: Optional[PendingExecution] = None

    @property
    def outcome(self) -> NodeOutcome:
        """结果对应的标签变体"""
        if self.pending is not None:
            if self.pending.workflow_id:
                return NestedPending(self.pending)
            return Suspend(self.pending.await_config)
        variables = dict(self.variables or {})
        if self.flow_output:
            return Branch(self.flow_output, variables)
        return Continue(variables)

    @classmethod
    def failure(cls, error: str) -> "ActionExecutionResult":
        return cls(success=False, error=error)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"success": self.success}
        for key in (
            "error", "flow_output", "new_text", "parse_mode", "next_menu_id",
            "button_title", "notification", "new_message_chain",
        ):
            value = getattr(self, key)
            if value is not None:
                data[key] = copy.deepcopy(value)
        if self.button_overrides:
            data["button_overrides"] = copy.deepcopy(self.button_overrides)
        data["should_edit_message"] = self.should_edit_message
        data["temp_files_to_clean"] = list(self.temp_files_to_clean)
        if self.variables is not None:
            data["data"] = {"variables": copy.deepcopy(self.variables)}
        if self.engine_state is not None:
            data["engine_state"] = self.engine_state.to_dict()
        if self.pending is not None:
            data["pending"] = self.pending.to_dict()
        return data


# 动作返回映射中的保留字段
RESULT_SPECIAL_KEYS = frozenset({
    "new_text",
    "parse_mode",
    "next_menu_id",
    "button_overrides",
    "notification",
    "new_message_chain",
    "temp_files_to_clean",
    "button_title",
    "flow_output",
})


def build_action_result(raw: Any) -> ActionExecutionResult:
    """把处理器返回值规范化为执行结果

    支持三种形式：ActionExecutionResult、标签变体、带保留键的映射。
    """
    if isinstance(raw, ActionExecutionResult):
        return raw
    if isinstance(raw, Continue):
        return ActionExecutionResult(variables=dict(raw.variables))
    if isinstance(raw, Branch):
        return ActionExecutionResult(flow_output=raw.output, variables=dict(raw.variables))
    if isinstance(raw, Suspend):
        return ActionExecutionResult(pending=PendingExecution(await_config=dict(raw.await_config)))
    if isinstance(raw, NestedPending):
        return ActionExecutionResult(pending=raw.pending)
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        return ActionExecutionResult.failure(f"invalid action result type: {type(raw).__name__}")

    if "__pending__" in raw:
        nested = raw["__pending__"]
        if isinstance(nested, PendingExecution):
            return ActionExecutionResult(pending=nested)
        if not isinstance(nested, dict):
            return ActionExecutionResult.failure("invalid __pending__ payload")
        if not isinstance(nested.get("await"), dict):
            return ActionExecutionResult.failure("invalid __pending__.await payload")
        return ActionExecutionResult(pending=PendingExecution.from_dict(nested))

    if "__await__" in raw:
        return ActionExecutionResult(pending=PendingExecution(await_config=_as_dict(raw["__await__"])))

    flow = raw.get("__flow__")
    if not isinstance(flow, str):
        flow = raw.get("flow_output") if isinstance(raw.get("flow_output"), str) else None

    variables = {
        key: value
        for key, value in raw.items()
        if key not in RESULT_SPECIAL_KEYS and not str(key).startswith("__")
    }

    def _str_or_none(key: str) -> Optional[str]:
        value = raw.get(key)
        return value if isinstance(value, str) else None

    return ActionExecutionResult(
        success=True,
        should_edit_message=bool(
            raw.get("new_text") or raw.get("next_menu_id")
            or raw.get("button_overrides") or raw.get("button_title")
        ),
        flow_output=flow or None,
        new_text=_str_or_none("new_text"),
        parse_mode=_str_or_none("parse_mode"),
        next_menu_id=_str_or_none("next_menu_id"),
        button_overrides=list(raw["button_overrides"]) if isinstance(raw.get("button_overrides"), list) else [],
        notification=raw.get("notification") if isinstance(raw.get("notification"), dict) else None,
        new_message_chain=list(raw["new_message_chain"]) if isinstance(raw.get("new_message_chain"), list) else None,
        temp_files_to_clean=_as_str_list(raw.get("temp_files_to_clean")),
        button_title=_str_or_none("button_title"),
        variables=variables,
    )


@dataclass
class ExecuteContext:
    """一次工作流执行的外部上下文"""
    runtime: RuntimeContext = field(default_factory=RuntimeContext)
    env: Dict[str, Any] = field(default_factory=dict)
    button: Dict[str, Any] = field(default_factory=dict)
    menu: Dict[str, Any] = field(default_factory=dict)
    preview: bool = False
    tracer: Any = None
    call_stack: List[str] = field(default_factory=list)


@dataclass
class NodeTrace:
    """节点追踪记录"""
    workflow_id: str
    node_id: str
    action_id: str
    action_kind: str
    allowed: bool
    status: NodeStatus
    started_at: float
    finished_at: float
    duration_ms: float
    flow_output: Optional[str] = None
    rendered_params: Optional[Dict[str, Any]] = None
    result: Optional[ActionExecutionResult] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "workflow_id": self.workflow_id,
            "node_id": self.node_id,
            "action_id": self.action_id,
            "action_kind": self.action_kind,
            "allowed": self.allowed,
            "status": self.status.value,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "duration_ms": self.duration_ms,
            "flow_output": self.flow_output,
            "rendered_params": copy.deepcopy(self.rendered_params),
            "result": self.result.to_dict() if self.result else None,
            "error": self.error,
        }
