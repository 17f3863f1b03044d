"""
执行服务：启动、持久化挂起、接收用户输入并恢复
"""
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Union
from uuid import uuid4

from ..exceptions import PersistenceError
from ..integrations.event_bus import (
    EventBus, WORKFLOW_COMPLETED, WORKFLOW_FAILED, WORKFLOW_SUSPENDED
)
from ..models.execution import ActionExecutionResult, ExecuteContext, PendingExecution, RuntimeContext
from ..models.workflow import Workflow
from ..storage.repository import ExecutionStore
from .engine import WorkflowEngine
from .expressions import render


logger = logging.getLogger(__name__)

SUSPENDED_AT_KEY = "suspended_at"


class ExecutionStatus(Enum):
    """执行状态"""
    COMPLETED = "completed"
    SUSPENDED = "suspended"
    FAILED = "failed"
    AWAITING = "awaiting"


class UserInputStatus(Enum):
    """用户输入结果"""
    SUCCESS = "success"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


@dataclass
class ExecutionRecord:
    """一次启动或恢复的结果"""
    execution_id: Optional[str]
    status: ExecutionStatus
    result: Optional[ActionExecutionResult] = None
    status_text: str = ""

    @property
    def pending(self) -> Optional[PendingExecution]:
        return self.result.pending if self.result else None


def resolve_user_input_status(
    await_config: Dict[str, Any],
    text: str,
    suspended_at: Optional[float],
    now: float
) -> Optional[UserInputStatus]:
    """判定输入状态；空输入且不允许为空时返回 None 表示忽略"""
    timeout_seconds = max(int(await_config.get("timeout_seconds") or 0), 0)
    if timeout_seconds and suspended_at is not None and now > suspended_at + max(timeout_seconds, 1):
        return UserInputStatus.TIMEOUT

    trimmed = text.strip()
    cancel_keywords = {
        str(keyword).strip().lower()
        for keyword in await_config.get("cancel_keywords") or []
        if str(keyword).strip()
    }
    if cancel_keywords and trimmed.lower() in cancel_keywords:
        return UserInputStatus.CANCELLED

    if not trimmed and not await_config.get("allow_empty"):
        return None
    return UserInputStatus.SUCCESS


def build_user_input_outputs(
    text: str,
    status: UserInputStatus,
    message_id: Optional[int] = None,
    timestamp: Optional[int] = None
) -> Dict[str, Any]:
    """等待节点恢复后的输出变量"""
    return {
        "user_input": text,
        "user_input_status": status.value,
        "user_input_is_timeout": status == UserInputStatus.TIMEOUT,
        "user_input_is_cancelled": status == UserInputStatus.CANCELLED,
        "user_input_message_id": message_id,
        "user_input_timestamp": timestamp,
    }


def status_text_for(await_config: Dict[str, Any], status: UserInputStatus, text: str) -> str:
    """按输入状态选择回显文本"""
    if status == UserInputStatus.SUCCESS:
        template = str(await_config.get("success_template") or "")
        return render(template, {"user_input": text, "input": text}) if template else ""
    if status == UserInputStatus.TIMEOUT:
        return str(await_config.get("timeout_template") or "")
    return str(
        await_config.get("cancel_template")
        or await_config.get("timeout_template")
        or await_config.get("prompt")
        or ""
    )


class ExecutionService:
    """把引擎和执行存储、事件总线组合起来"""

    def __init__(
        self,
        engine: WorkflowEngine,
        store: ExecutionStore,
        event_bus: Optional[EventBus] = None,
        env: Optional[Dict[str, Any]] = None
    ):
        self.engine = engine
        self.store = store
        self.event_bus = event_bus
        self.env = dict(env or {})

    async def start(
        self,
        workflow: Union[str, Workflow],
        runtime: Optional[RuntimeContext] = None,
        button: Optional[Dict[str, Any]] = None,
        menu: Optional[Dict[str, Any]] = None,
        preview: bool = False
    ) -> ExecutionRecord:
        """启动工作流；挂起时持久化并登记等待映射"""
        if isinstance(workflow, str):
            workflow = await self.engine.load_workflow(workflow)

        ctx = ExecuteContext(
            runtime=runtime or RuntimeContext(),
            env=self.env,
            button=dict(button or {}),
            menu=dict(menu or {}),
            preview=preview,
        )
        result = await self.engine.execute_workflow(ctx, workflow)
        return await self._settle(workflow.id, result)

    async def resume(self, execution_id: str, inputs: Optional[Dict[str, Any]] = None) -> ExecutionRecord:
        """用给定输出恢复挂起的执行"""
        pending = await self.store.get(execution_id)
        if pending is None:
            raise PersistenceError(f"execution not found: {execution_id}")

        result = await self.engine.resume(pending, inputs or {}, env=self.env)
        await self.store.delete(execution_id)
        return await self._settle(pending.workflow_id, result, execution_id)

    async def submit_user_input(
        self,
        chat_id: str,
        user_id: Optional[str],
        text: str,
        message_id: Optional[int] = None,
        now: Optional[float] = None
    ) -> Optional[ExecutionRecord]:
        """
        处理会话中的用户回复

        Returns:
            没有等待中的执行时返回 None；空输入被忽略时状态为 AWAITING
        """
        execution_id = await self.store.find_await(chat_id, user_id)
        if execution_id is None:
            return None
        pending = await self.store.get(execution_id)
        if pending is None:
            logger.warning(f"Await mapping points to missing execution {execution_id}")
            await self.store.release_await(chat_id, user_id)
            return None

        now = time.time() if now is None else now
        config = pending.await_config
        suspended_at = pending.meta.get(SUSPENDED_AT_KEY)
        status = resolve_user_input_status(
            config, text, float(suspended_at) if suspended_at is not None else None, now
        )
        if status is None:
            logger.info(f"Ignoring empty input for execution {execution_id}")
            return ExecutionRecord(
                execution_id=execution_id,
                status=ExecutionStatus.AWAITING,
                status_text=str(config.get("retry_prompt_template") or ""),
            )

        await self.store.release_await(chat_id, user_id)
        inputs = build_user_input_outputs(text, status, message_id, int(now))
        record = await self.resume(execution_id, inputs)
        record.status_text = status_text_for(config, status, text)
        return record

    async def _settle(
        self,
        workflow_id: str,
        result: ActionExecutionResult,
        execution_id: Optional[str] = None
    ) -> ExecutionRecord:
        if result.pending is not None:
            execution_id = execution_id or str(uuid4())
            pending = result.pending
            pending.meta[SUSPENDED_AT_KEY] = time.time()
            await self.store.save(execution_id, pending)
            runtime = pending.runtime or RuntimeContext()
            await self.store.bind_await(runtime.chat_id, runtime.user_id, execution_id)
            logger.info(f"Execution {execution_id} suspended at {pending.workflow_id}/{pending.node_id}")
            await self._publish(WORKFLOW_SUSPENDED, {
                "execution_id": execution_id,
                "workflow_id": pending.workflow_id,
                "node_id": pending.node_id,
                "await": pending.await_config,
            })
            return ExecutionRecord(execution_id, ExecutionStatus.SUSPENDED, result)

        if result.success:
            await self._publish(WORKFLOW_COMPLETED, {"execution_id": execution_id, "workflow_id": workflow_id})
            return ExecutionRecord(execution_id, ExecutionStatus.COMPLETED, result)

        logger.warning(f"Workflow {workflow_id} failed: {result.error}")
        await self._publish(WORKFLOW_FAILED, {
            "execution_id": execution_id,
            "workflow_id": workflow_id,
            "error": result.error,
        })
        return ExecutionRecord(execution_id, ExecutionStatus.FAILED, result)

    async def _publish(self, topic: str, payload: Dict[str, Any]):
        if self.event_bus is not None:
            await self.event_bus.publish(topic, payload)
