"""
动作注册表：节点背后的动作处理器能力
"""
from typing import Dict, Any, Optional, List, Callable
from dataclasses import dataclass, field
from abc import ABC, abstractmethod
from enum import Enum
import inspect
import logging
import time

import httpx

from ..core.expressions import build_template_context, render_structure
from ..models.execution import (
    ActionExecutionResult, EngineState, RuntimeContext, build_action_result
)
from .http_action import (
    HttpActionError, HttpxTransport, apply_extractor, build_request, map_variables,
    render_result, response_view
)
from .validators import SchemaValidator


logger = logging.getLogger(__name__)


class ActionKind(Enum):
    """动作类型"""
    MODULAR = "modular"
    HTTP = "http"
    LOCAL = "local"
    WORKFLOW = "workflow"


@dataclass
class ActionDefinition:
    """动作定义"""
    action_id: str
    kind: str = ActionKind.MODULAR.value
    name: str = ""
    description: str = ""
    config: Dict[str, Any] = field(default_factory=dict)
    limits: Dict[str, Any] = field(default_factory=dict)
    parameters_schema: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ActionDefinition":
        return cls(
            action_id=str(data.get("id") or data.get("action_id") or ""),
            kind=str(data.get("kind") or ActionKind.HTTP.value),
            name=str(data.get("name") or ""),
            description=str(data.get("description") or ""),
            config=dict(data.get("config") or {}),
            limits=dict(data.get("limits") or {}),
            parameters_schema=dict(data.get("parameters_schema") or {}),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class ActionContext:
    """传给动作处理器的上下文"""
    runtime: RuntimeContext
    env: Dict[str, Any] = field(default_factory=dict)
    button: Dict[str, Any] = field(default_factory=dict)
    menu: Dict[str, Any] = field(default_factory=dict)
    preview: bool = False
    engine: Any = None
    engine_state: EngineState = field(default_factory=EngineState)
    call_stack: List[str] = field(default_factory=list)
    workflow_id: str = ""
    node_id: str = ""
    node_outputs: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    tracer: Any = None


ActionHandler = Callable[[Dict[str, Any], ActionContext], Any]
HttpTransport = Callable[[Dict[str, Any], ActionContext], Any]


class ActionRegistry(ABC):
    """动作注册表接口"""

    @abstractmethod
    def register_handler(
        self,
        action_id: str,
        handler: ActionHandler,
        definition: Optional[ActionDefinition] = None
    ):
        """注册模块化动作处理器"""
        pass

    @abstractmethod
    def register_action(self, definition: ActionDefinition):
        """注册 http/local 等声明式动作"""
        pass

    @abstractmethod
    def find(self, action_id: str) -> Optional[ActionDefinition]:
        """查找动作定义"""
        pass

    @abstractmethod
    async def dispatch(
        self,
        definition: ActionDefinition,
        params: Dict[str, Any],
        context: ActionContext
    ) -> ActionExecutionResult:
        """执行动作"""
        pass


class LocalActionRegistry(ActionRegistry):
    """进程内动作注册表实现"""

    def __init__(self, http_transport: Optional[HttpTransport] = None):
        self.handlers: Dict[str, ActionHandler] = {}
        self.definitions: Dict[str, ActionDefinition] = {}
        self.http_transport = http_transport or HttpxTransport()
        self.validator = SchemaValidator()

    def register_handler(
        self,
        action_id: str,
        handler: ActionHandler,
        definition: Optional[ActionDefinition] = None
    ):
        """注册模块化动作处理器"""
        if not callable(handler):
            raise ValueError(f"Handler for action {action_id} must be callable")
        self.handlers[action_id] = handler
        self.definitions[action_id] = definition or ActionDefinition(action_id=action_id)
        self.definitions[action_id].kind = ActionKind.MODULAR.value
        logger.debug(f"Registered action handler: {action_id}")

    def register_action(self, definition: ActionDefinition):
        """注册 http/local 等声明式动作"""
        if definition.action_id in self.handlers:
            raise ValueError(f"Action {definition.action_id} is already registered as a modular handler")
        self.definitions[definition.action_id] = definition
        logger.debug(f"Registered {definition.kind} action: {definition.action_id}")

    def find(self, action_id: str) -> Optional[ActionDefinition]:
        return self.definitions.get(action_id)

    def list_actions(self) -> List[ActionDefinition]:
        return list(self.definitions.values())

    def validate_parameters(self, definition: ActionDefinition, params: Dict[str, Any]) -> List[str]:
        """按动作的参数 schema 验证"""
        return self.validator.validate(params, definition.parameters_schema)

    async def dispatch(
        self,
        definition: ActionDefinition,
        params: Dict[str, Any],
        context: ActionContext
    ) -> ActionExecutionResult:
        """按动作类型分派"""
        errors = self.validate_parameters(definition, params)
        if errors:
            raise ValueError(f"Invalid parameters for action {definition.action_id}: {errors}")

        kind = definition.kind
        if kind == ActionKind.MODULAR.value:
            return await self.run_handler(definition.action_id, params, context)
        if kind == ActionKind.LOCAL.value:
            return await self._dispatch_local(definition, params, context)
        if kind == ActionKind.HTTP.value:
            return await self._dispatch_http(definition, params, context)
        if kind == ActionKind.WORKFLOW.value:
            return ActionExecutionResult.failure("nested workflow is not supported")
        return ActionExecutionResult.failure(f"unknown action kind: {kind}")

    async def run_handler(
        self,
        action_id: str,
        params: Dict[str, Any],
        context: ActionContext
    ) -> ActionExecutionResult:
        """调用模块化处理器并规范化返回值"""
        handler = self.handlers.get(action_id)
        if handler is None:
            return ActionExecutionResult.failure(f"modular action not supported: {action_id}")

        start_time = time.time()
        try:
            if inspect.iscoroutinefunction(handler):
                raw = await handler(params, context)
            else:
                raw = handler(params, context)
                if inspect.isawaitable(raw):
                    raw = await raw
        except Exception as e:
            logger.error(f"Action {action_id} invocation failed: {e}", exc_info=True)
            raise

        duration_ms = (time.time() - start_time) * 1000
        logger.debug(f"Action {action_id} invoked successfully in {duration_ms:.2f}ms")
        return build_action_result(raw)

    def _params_context(self, definition: ActionDefinition, params: Dict[str, Any], context: ActionContext):
        variables = {**context.runtime.variables, **params}
        runtime = context.runtime.copy(variables)
        return build_template_context(
            action={"id": definition.action_id, "kind": definition.kind, "config": definition.config},
            button=context.button,
            menu=context.menu,
            runtime=runtime,
            variables=variables,
            nodes=context.node_outputs,
            engine=context.engine_state.to_dict(),
        )

    async def _dispatch_local(
        self,
        definition: ActionDefinition,
        params: Dict[str, Any],
        context: ActionContext
    ) -> ActionExecutionResult:
        name = str(definition.config.get("name") or "")
        if not name:
            return ActionExecutionResult.failure("local action missing name")
        if name not in self.handlers:
            return ActionExecutionResult.failure(f"local action not supported: {name}")
        if context.preview:
            return ActionExecutionResult(new_text=f"preview of local action '{name}'", variables={})

        rendered = render_structure(
            definition.config.get("parameters") or {},
            self._params_context(definition, params, context)
        )
        if not isinstance(rendered, dict):
            return ActionExecutionResult.failure("local action parameters must be an object")
        return await self.run_handler(name, rendered, context)

    async def _dispatch_http(
        self,
        definition: ActionDefinition,
        params: Dict[str, Any],
        context: ActionContext
    ) -> ActionExecutionResult:
        config = definition.config
        request_cfg = config.get("request") or {
            "method": config.get("method"),
            "url": config.get("url"),
            "headers": config.get("headers"),
            "body": config.get("body"),
            "timeout": config.get("timeout"),
        }
        base_context = self._params_context(definition, params, context)
        runtime_variables = base_context["variables"]

        try:
            request = build_request(request_cfg, base_context)
            if context.preview:
                raw_response = {}
            else:
                start_time = time.time()
                try:
                    raw_response = self.http_transport(request, context)
                    if inspect.isawaitable(raw_response):
                        raw_response = await raw_response
                except httpx.HTTPError as e:
                    raise HttpActionError(f"http request failed: {e}")
                duration_ms = (time.time() - start_time) * 1000
                logger.debug(f"HTTP action {definition.action_id} finished in {duration_ms:.2f}ms")

            response = response_view(raw_response)
            variables = dict(runtime_variables)

            def _context(extracted):
                return {**base_context, "variables": variables, "response": response, "extracted": extracted}

            parse_cfg = config.get("parse") or {}
            extracted = apply_extractor(parse_cfg, config, response, _context(None))
            map_variables(parse_cfg.get("variables"), variables, runtime_variables, response, _context(extracted))
            rendered = render_result(config, _context(extracted))
        except HttpActionError as e:
            logger.warning(f"HTTP action {definition.action_id} failed: {e}")
            return ActionExecutionResult.failure(str(e))

        result = ActionExecutionResult(
            new_text=rendered["new_text"],
            parse_mode=rendered["parse_mode"],
            next_menu_id=rendered["next_menu_id"],
            button_title=rendered.get("button_title"),
            should_edit_message=rendered["should_edit_message"],
            variables=variables,
        )
        if context.preview:
            result.variables["request"] = request
        return result
