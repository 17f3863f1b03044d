"""
节点调用管线

准备参数 -> 渲染 -> 解析执行策略 -> 条件门 -> 按动作类型分派（带超时与重试）
-> 输出追踪记录。
"""
import inspect
import logging
import time
from typing import Any, Dict, Optional

from ..exceptions import ConditionError, NodeError
from ..integrations.action_registry import ActionContext, ActionRegistry
from ..models.execution import (
    ActionExecutionResult, EngineState, ExecuteContext, NodeStatus, NodeTrace
)
from ..models.workflow import Node, Workflow, is_control_input
from .expressions import build_template_context, coerce_to_bool, render, render_structure
from .paths import extract_by_path
from .policy import resolve_policy, run_with_policy, strip_policy_params


logger = logging.getLogger(__name__)

CONDITION_KEY = "__condition__"
NODE_ID_KEY = "__node_id"


def resolve_edge_inputs(
    workflow: Workflow,
    node_id: str,
    params: Dict[str, Any],
    node_outputs: Dict[str, Dict[str, Any]]
):
    """把上游节点已产生的输出经非控制边写入目标输入"""
    for edge in workflow.incoming_edges(node_id):
        if is_control_input(edge.target_input):
            continue
        output = node_outputs.get(edge.source_node)
        if not output or edge.source_output not in output:
            continue
        value = output[edge.source_output]
        source_path = str(edge.source_path or "").strip()
        if source_path:
            try:
                value = extract_by_path(source_path, value)
            except ValueError:
                value = None
        params[edge.target_input] = value


def evaluate_condition(config: Any, node_id: str, context: Dict[str, Any]) -> bool:
    """求值节点条件门，返回是否允许执行"""
    if not isinstance(config, dict):
        return True
    mode = str(config.get("mode") or "always").lower()
    if mode == "always":
        return True
    if mode == "never":
        return False

    context.setdefault("inputs", {})
    try:
        if mode == "expression":
            expression = str(config.get("expression") or "")
            if not expression.strip():
                return False
            return coerce_to_bool(render(expression, context))
        if mode == "linked":
            link = config.get("link") or {}
            if not isinstance(link, dict):
                raise ValueError("condition link must be an object")
            if link.get("template"):
                return coerce_to_bool(render(str(link["template"]), context))
            target = str(link.get("target_input") or link.get("target_input_port") or "")
            inputs = context.get("inputs") or {}
            return coerce_to_bool(inputs.get(target) if isinstance(inputs, dict) else None)
    except Exception as e:
        raise ConditionError(node_id, e)
    return True


async def emit_trace(tracer: Any, trace: NodeTrace):
    """把追踪记录交给 tracer，tracer 的任何失败都不影响执行"""
    if tracer is None:
        return
    try:
        sink = getattr(tracer, "on_node_trace", None) or tracer
        outcome = sink(trace)
        if inspect.isawaitable(outcome):
            await outcome
    except Exception as e:
        logger.warning(f"Tracer failed for node {trace.node_id}: {e}")


class NodeInvoker:
    """执行单个工作流节点"""

    def __init__(self, registry: ActionRegistry, engine: Any = None):
        self.registry = registry
        self.engine = engine

    async def invoke(
        self,
        ctx: ExecuteContext,
        workflow: Workflow,
        node: Node,
        variables: Dict[str, Any],
        node_outputs: Dict[str, Dict[str, Any]],
        engine_state: EngineState
    ) -> ActionExecutionResult:
        """执行节点，失败时抛出 NodeError 或 ConditionError"""
        if not node.action_id:
            return ActionExecutionResult(variables={})

        started_at = time.time()
        action_id = node.action_id

        async def _trace(action_kind: str, allowed: bool, status: NodeStatus,
                         rendered_params: Optional[Dict[str, Any]] = None,
                         result: Optional[ActionExecutionResult] = None,
                         error: Optional[str] = None):
            finished_at = time.time()
            await emit_trace(ctx.tracer, NodeTrace(
                workflow_id=workflow.id,
                node_id=node.id,
                action_id=action_id,
                action_kind=action_kind,
                allowed=allowed,
                status=status,
                started_at=started_at,
                finished_at=finished_at,
                duration_ms=max(0.0, (finished_at - started_at) * 1000),
                flow_output=result.flow_output if result else None,
                rendered_params=rendered_params,
                result=result,
                error=error,
            ))

        definition = self.registry.find(action_id)
        if definition is None:
            error = f"workflow {workflow.id} node {node.id} missing action {action_id}"
            await _trace("missing", False, NodeStatus.ERROR, error=error)
            raise NodeError(node.id, error)

        params = dict(node.data)
        params.setdefault(NODE_ID_KEY, node.id)
        condition = params.pop(CONDITION_KEY, None)
        resolve_edge_inputs(workflow, node.id, params, node_outputs)

        runtime = ctx.runtime.copy(variables)
        render_context = build_template_context(
            action=node.data,
            button=ctx.button,
            menu=ctx.menu,
            runtime=runtime,
            variables=variables,
            nodes=node_outputs,
            engine=engine_state.to_dict(),
        )
        rendered = render_structure(params, render_context)
        policy = resolve_policy(rendered, definition.limits)
        action_params = strip_policy_params(rendered)

        try:
            allowed = evaluate_condition(condition, node.id, {**render_context, "inputs": action_params})
        except ConditionError as e:
            await _trace(definition.kind, False, NodeStatus.ERROR, action_params, error=str(e))
            raise
        if not allowed:
            logger.info(f"Node {node.id} skipped by condition")
            await _trace(definition.kind, False, NodeStatus.SKIPPED, action_params)
            return ActionExecutionResult(variables={})

        action_context = ActionContext(
            runtime=runtime,
            env=ctx.env,
            button=ctx.button,
            menu=ctx.menu,
            preview=ctx.preview,
            engine=self.engine,
            engine_state=engine_state,
            call_stack=list(engine_state.call_stack),
            workflow_id=workflow.id,
            node_id=node.id,
            node_outputs=node_outputs,
            tracer=ctx.tracer,
        )

        try:
            result = await run_with_policy(
                lambda: self.registry.dispatch(definition, action_params, action_context),
                policy,
                node.id
            )
        except NodeError as e:
            error = f"workflow {workflow.id} node {action_id} failed: {e}"
            await _trace(definition.kind, True, NodeStatus.ERROR, action_params, error=error)
            raise NodeError(node.id, error, cause=e.cause, attempts=e.attempts)

        if result.pending is not None:
            status = NodeStatus.PENDING
        elif result.success:
            status = NodeStatus.SUCCESS
        else:
            status = NodeStatus.ERROR
        await _trace(definition.kind, True, status, action_params, result=result,
                     error=None if result.success else result.error)

        if not result.success:
            raise NodeError(node.id, result.error or f"node {node.id} failed")
        return result
