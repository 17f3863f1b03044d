"""
工作流运行时使用示例
"""
import asyncio
import logging
from pathlib import Path

from botflow import ExecutionService, WorkflowEngine, WorkflowParser
from botflow.config import EngineSettings, configure_logging
from botflow.integrations import EventBus, LocalActionRegistry, LoggingTracer, register_builtin_actions
from botflow.integrations.event_bus import WORKFLOW_COMPLETED, WORKFLOW_SUSPENDED
from botflow.models.execution import ExecuteContext, RuntimeContext
from botflow.storage import InMemoryExecutionStore, InMemoryWorkflowRepository


EXAMPLES_DIR = Path(__file__).parent

logger = logging.getLogger(__name__)


async def setup_service():
    """设置执行服务"""
    # 创建组件
    workflow_repo = InMemoryWorkflowRepository()
    registry = LocalActionRegistry()
    event_bus = EventBus()

    # 注册内置动作和一个自定义动作
    register_builtin_actions(registry)
    registry.register_handler("shout", lambda params, context: {
        "new_text": str(params.get("text") or "").upper()
    })

    parser = WorkflowParser()
    for name in ("ask_name.yaml", "onboarding.yaml"):
        await workflow_repo.save(parser.parse_file(EXAMPLES_DIR / name))

    engine = WorkflowEngine(registry, workflow_repo, settings=EngineSettings.from_env(), tracer=LoggingTracer())

    async def on_event(event):
        logger.info(f"event {event.topic}: {event.payload.get('workflow_id')}")

    event_bus.subscribe(WORKFLOW_SUSPENDED, on_event)
    event_bus.subscribe(WORKFLOW_COMPLETED, on_event)

    return ExecutionService(engine, InMemoryExecutionStore(), event_bus=event_bus)


async def example_single_run(service: ExecutionService):
    """无挂起的临时工作流示例"""
    print("\n=== 临时工作流示例 ===")

    workflow = WorkflowParser().parse({
        "id": "shout_demo",
        "nodes": {
            "name": {"action": "set_variable", "params": {"variable_name": "name", "value": "ada"}},
            "loud": {"action": "shout", "params": {"text": "hello {{ variables.name }}"}},
        },
        "edges": [{"from": "name", "to": "loud"}],
    })
    result = await service.engine.execute_workflow(ExecuteContext(), workflow)
    print(f"输出文本: {result.new_text}")


async def example_suspend_and_resume(service: ExecutionService):
    """子工作流挂起与恢复示例"""
    print("\n=== 挂起与恢复示例 ===")

    runtime = RuntimeContext(chat_id="1001", user_id="42", username="ada")
    record = await service.start("onboarding", runtime=runtime)
    print(f"状态: {record.status.value}, 等待提示: {record.pending.await_config['prompt']}")
    print(f"续体帧: {[frame.workflow_id for frame in record.pending.continuations]}")

    # 空输入会被忽略
    ignored = await service.submit_user_input("1001", "42", "  ")
    print(f"空输入: {ignored.status.value}")

    record = await service.submit_user_input("1001", "42", "Ada")
    print(f"状态: {record.status.value}, 回显: {record.status_text}")
    print(f"总结: {record.result.variables['summary']}")


async def main():
    configure_logging("INFO")
    service = await setup_service()
    await example_single_run(service)
    await example_suspend_and_resume(service)


if __name__ == "__main__":
    asyncio.run(main())
