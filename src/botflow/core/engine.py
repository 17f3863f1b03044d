"""
工作流执行引擎
"""
import copy
import dataclasses
import logging
import math
from typing import Any, Dict, List, Optional, Union

from ..config import EngineSettings
from ..exceptions import (
    GraphError, NodeError, RecursionLimitError, StepLimitError,
    WorkflowEngineError, WorkflowExecutionError, WorkflowNotFoundError
)
from ..integrations.action_registry import (
    ActionContext, ActionDefinition, ActionKind, ActionRegistry
)
from ..models.execution import (
    LEGACY_STATE_KEYS, ActionExecutionResult, Branch, Continuation, EngineState,
    ExecuteContext, NestedPending, ResumeState, RuntimeContext, Suspend,
    PendingExecution, clone_node_outputs
)
from ..models.workflow import Workflow
from ..storage.repository import WorkflowRepository
from .graph import topological_order, validate_control_fanout
from .invocation import NodeInvoker
from .router import ControlFlowRouter, RunState
from .terminal_outputs import build_subworkflow_payload


logger = logging.getLogger(__name__)

EMPTY_WORKFLOW_TEXT = "workflow is empty"
SUB_WORKFLOW_SOURCE = "sub_workflow"


def _positive_int(raw: Any) -> int:
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return 0
    if not math.isfinite(value) or value <= 0:
        return 0
    return int(value)


class WorkflowEngine:
    """工作流执行引擎"""

    def __init__(
        self,
        registry: ActionRegistry,
        workflow_repository: Optional[WorkflowRepository] = None,
        settings: Optional[EngineSettings] = None,
        tracer: Any = None
    ):
        self.registry = registry
        self.workflow_repository = workflow_repository
        self.settings = settings or EngineSettings()
        self.tracer = tracer
        self.invoker = NodeInvoker(registry, engine=self)

    async def load_workflow(self, workflow_id: str) -> Workflow:
        """从仓库加载工作流，不存在时抛出 WorkflowNotFoundError"""
        workflow = None
        if self.workflow_repository is not None and workflow_id:
            workflow = await self.workflow_repository.get(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id)
        return workflow

    def resolve_max_steps(self, workflow: Workflow, runtime: RuntimeContext) -> int:
        """运行时变量优先，其次工作流设置，最后使用全局默认值"""
        from_runtime = _positive_int(runtime.variables.get("max_steps"))
        if from_runtime:
            return from_runtime
        workflow_limit = workflow.max_steps
        if workflow_limit is None:
            workflow_limit = workflow.settings.get("max_steps")
        return _positive_int(workflow_limit) or self.settings.max_steps

    def enter_call_stack(self, workflow: Workflow, inherited: List[str]) -> List[str]:
        """递归保护：拒绝自调用和过深的嵌套，返回压入当前工作流后的调用栈"""
        if workflow.id in inherited:
            chain = " -> ".join(inherited + [workflow.id])
            raise RecursionLimitError(f"detected recursive workflow call: {chain}")
        if len(inherited) >= self.settings.max_call_depth:
            raise RecursionLimitError(
                f"workflow call depth exceeded limit ({self.settings.max_call_depth})"
            )
        return inherited + [workflow.id]

    async def execute_workflow(
        self,
        ctx: ExecuteContext,
        workflow: Workflow,
        resume_state: Optional[ResumeState] = None
    ) -> ActionExecutionResult:
        """
        执行工作流

        Args:
            ctx: 执行上下文
            workflow: 工作流定义
            resume_state: 恢复快照，提供时跳过排序、扇出校验与递归保护

        Returns:
            ActionExecutionResult: 运行失败不抛异常，错误信息放在 error 字段
        """
        if ctx.tracer is None and self.tracer is not None:
            ctx = dataclasses.replace(ctx, tracer=self.tracer)
        try:
            return await self._run(ctx, workflow, resume_state)
        except WorkflowEngineError as e:
            logger.error(f"Workflow {workflow.id} failed: {e}")
            return ActionExecutionResult.failure(str(e))

    def _fresh_state(self, ctx: ExecuteContext, workflow: Workflow) -> RunState:
        order = topological_order(workflow)
        validate_control_fanout(workflow)

        variables = dict(ctx.runtime.variables)
        legacy = EngineState()
        legacy.merge_legacy(variables)
        inherited = list(ctx.call_stack) or legacy.call_stack

        engine_state = EngineState(call_stack=self.enter_call_stack(workflow, inherited))
        return RunState(order=order, variables=variables, engine_state=engine_state)

    def _resumed_state(self, resume_state: ResumeState) -> RunState:
        variables = copy.deepcopy(resume_state.global_variables)
        if resume_state.engine_state is not None:
            engine_state = resume_state.engine_state.copy()
        else:
            engine_state = EngineState()
        engine_state.merge_legacy(variables)
        return RunState(
            order=list(resume_state.exec_order),
            variables=variables,
            engine_state=engine_state,
            node_outputs=clone_node_outputs(resume_state.node_outputs),
            text_parts=list(resume_state.final_text_parts),
            files_to_clean=list(resume_state.temp_files_to_clean),
        )

    async def _run(
        self,
        ctx: ExecuteContext,
        workflow: Workflow,
        resume_state: Optional[ResumeState]
    ) -> ActionExecutionResult:
        if not workflow.nodes:
            return ActionExecutionResult(new_text=EMPTY_WORKFLOW_TEXT, variables={})

        if resume_state is None:
            state = self._fresh_state(ctx, workflow)
            index = 0
            logger.info(f"Starting workflow {workflow.id} ({len(state.order)} nodes)")
        else:
            state = self._resumed_state(resume_state)
            index = resume_state.next_index
            logger.info(f"Resuming workflow {workflow.id} at index {index}")

        router = ControlFlowRouter(workflow, state.order)
        max_steps = self.resolve_max_steps(workflow, ctx.runtime)
        steps = 0

        while index < len(state.order):
            if steps >= max_steps:
                raise StepLimitError(max_steps)
            steps += 1

            node_id = state.order[index]
            node = workflow.get_node(node_id)
            if node is None:
                raise GraphError(f"node {node_id} not found in workflow {workflow.id}", node_ids=[node_id])

            try:
                result = await self.invoker.invoke(
                    ctx, workflow, node, state.variables, state.node_outputs, state.engine_state
                )
            except NodeError as e:
                target = router.recover(state, node_id, str(e))
                if target is None:
                    raise
                index = target
                continue

            outcome = result.outcome
            if isinstance(outcome, NestedPending) and outcome.pending.workflow_id != workflow.id:
                return self._bubble(ctx, workflow, state, node_id, index, outcome.pending)
            if isinstance(outcome, (Suspend, NestedPending)):
                return self._suspend(ctx, workflow, state, node_id, index, result)

            router.record_success(state, node_id, result, steps)
            flow_output = outcome.output if isinstance(outcome, Branch) else None
            index = router.next_index(node_id, index, flow_output)

        logger.info(f"Workflow {workflow.id} completed in {steps} steps")
        return self._finish(state)

    def _user_variables(self, state: RunState) -> Dict[str, Any]:
        return {key: value for key, value in state.variables.items() if key not in LEGACY_STATE_KEYS}

    def _suspend(
        self,
        ctx: ExecuteContext,
        workflow: Workflow,
        state: RunState,
        node_id: str,
        index: int,
        result: ActionExecutionResult
    ) -> ActionExecutionResult:
        """当前工作流挂起：记录从下一个节点继续的快照"""
        pending = result.pending
        pending.workflow_id = workflow.id
        pending.node_id = node_id
        pending.exec_order = list(state.order)
        pending.next_index = index + 1
        pending.node_outputs = clone_node_outputs(state.node_outputs)
        pending.global_variables = copy.deepcopy(state.variables)
        pending.final_text_parts = list(state.text_parts)
        pending.temp_files_to_clean = list(state.files_to_clean)
        pending.engine_state = state.engine_state.copy()
        pending.runtime = ctx.runtime.copy()
        pending.button = dict(ctx.button)
        pending.menu = dict(ctx.menu)

        logger.info(f"Workflow {workflow.id} suspended at node {node_id}")
        result.engine_state = state.engine_state
        result.variables = self._user_variables(state)
        return result

    def _bubble(
        self,
        ctx: ExecuteContext,
        workflow: Workflow,
        state: RunState,
        node_id: str,
        index: int,
        pending: PendingExecution
    ) -> ActionExecutionResult:
        """子工作流挂起：追加续体帧，子工作流节点恢复时重新执行"""
        source = str(pending.meta.get("source") or "")
        if source != SUB_WORKFLOW_SOURCE:
            raise WorkflowExecutionError(
                f"node {node_id} returned unsupported nested pending from workflow {pending.workflow_id}"
            )

        pending.continuations.append(Continuation(
            workflow_id=workflow.id,
            node_id=node_id,
            exec_order=list(state.order),
            next_index=index,
            node_outputs=clone_node_outputs(state.node_outputs),
            global_variables=copy.deepcopy(state.variables),
            final_text_parts=list(state.text_parts),
            temp_files_to_clean=list(state.files_to_clean),
            engine_state=state.engine_state.copy(),
            runtime=ctx.runtime.copy(),
            button=dict(ctx.button),
            menu=dict(ctx.menu),
            propagate_error=bool(pending.meta.get("propagate_error")),
        ))

        logger.info(
            f"Workflow {workflow.id} node {node_id} waiting on nested workflow {pending.workflow_id} "
            f"({len(pending.continuations)} continuation frames)"
        )
        return ActionExecutionResult(
            pending=pending,
            engine_state=state.engine_state,
            variables=self._user_variables(state),
        )

    def _finish(self, state: RunState) -> ActionExecutionResult:
        final = state.final
        if state.text_parts and not final.new_message_chain:
            final.new_text = "\n".join(state.text_parts)
        final.should_edit_message = bool(
            (final.new_text or final.next_menu_id or final.button_overrides or final.button_title)
            and not final.new_message_chain
        )
        final.success = True
        final.variables = self._user_variables(state)
        final.engine_state = state.engine_state
        final.temp_files_to_clean = list(state.files_to_clean)
        return final

    async def execute_single_action_or_workflow(
        self,
        ctx: ExecuteContext,
        action: Union[ActionDefinition, Dict[str, Any]]
    ) -> ActionExecutionResult:
        """临时执行单个动作或工作流动作，preview=True 时为试运行"""
        definition = action if isinstance(action, ActionDefinition) else ActionDefinition.from_dict(action)

        if definition.kind == ActionKind.WORKFLOW.value:
            workflow_id = str(definition.config.get("workflow_id") or "")
            if not workflow_id:
                return ActionExecutionResult.failure("workflow action missing workflow_id")
            try:
                workflow = await self.load_workflow(workflow_id)
            except WorkflowNotFoundError as e:
                return ActionExecutionResult.failure(str(e))
            return await self.execute_workflow(ctx, workflow)

        registered = self.registry.find(definition.action_id)
        if definition.kind == ActionKind.MODULAR.value or (
            registered is not None and registered.kind == ActionKind.MODULAR.value
        ):
            target = registered or definition
            params = dict(definition.config)
        else:
            target = definition
            params = {}

        action_context = ActionContext(
            runtime=ctx.runtime,
            env=ctx.env,
            button=ctx.button,
            menu=ctx.menu,
            preview=ctx.preview,
            engine=self,
            engine_state=EngineState(call_stack=list(ctx.call_stack)),
            call_stack=list(ctx.call_stack),
            tracer=ctx.tracer or self.tracer,
        )
        try:
            return await self.registry.dispatch(target, params, action_context)
        except Exception as e:
            logger.error(f"Action {definition.action_id} failed: {e}", exc_info=True)
            return ActionExecutionResult.failure(str(e) or type(e).__name__)

    async def resume(
        self,
        pending: PendingExecution,
        inputs: Optional[Dict[str, Any]] = None,
        env: Optional[Dict[str, Any]] = None
    ) -> ActionExecutionResult:
        """
        恢复挂起的执行

        先以 inputs 作为挂起节点的输出恢复最内层工作流，再由内向外逐帧
        恢复祖先工作流，子工作流结果注入到对应的子工作流节点。途中再次
        挂起时，新的挂起执行携带剩余的续体帧。
        """
        inputs = dict(inputs or {})
        try:
            workflow = await self.load_workflow(pending.workflow_id)
        except WorkflowNotFoundError as e:
            return ActionExecutionResult.failure(str(e))

        resume_state = pending.resume_state()
        resume_state.node_outputs[pending.node_id] = inputs
        resume_state.global_variables.update(inputs)
        resume_state.engine_state.record_node(pending.node_id, dict(inputs), resume_state.engine_state.step)
        runtime = (pending.runtime or RuntimeContext()).copy(resume_state.global_variables)
        ctx = ExecuteContext(
            runtime=runtime,
            env=dict(env or {}),
            button=dict(pending.button),
            menu=dict(pending.menu),
        )
        result = await self.execute_workflow(ctx, workflow, resume_state)

        frames = list(pending.continuations)
        child = workflow
        while frames:
            if result.pending is not None:
                result.pending.continuations.extend(frames)
                return result

            frame = frames.pop(0)
            failed = not result.success
            payload = build_subworkflow_payload(child, result)
            if failed and frame.propagate_error:
                payload["throw_error"] = True

            try:
                parent = await self.load_workflow(frame.workflow_id)
            except WorkflowNotFoundError as e:
                return ActionExecutionResult.failure(str(e))

            parent_state = frame.resume_state()
            parent_state.engine_state.subworkflow_resume[frame.node_id] = payload
            ctx = ExecuteContext(
                runtime=frame.runtime.copy(parent_state.global_variables),
                env=dict(env or {}),
                button=dict(frame.button),
                menu=dict(frame.menu),
            )
            logger.info(f"Replaying continuation {frame.workflow_id}/{frame.node_id}")
            result = await self.execute_workflow(ctx, parent, parent_state)
            child = parent

        return result
