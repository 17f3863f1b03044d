"""
节点追踪实现
"""
import logging
from typing import List

from ..models.execution import NodeStatus, NodeTrace
from .event_bus import NODE_TRACE, EventBus


class LoggingTracer:
    """每个节点写一条日志"""

    def __init__(self, logger_name: str = "botflow.tracing"):
        self.logger = logging.getLogger(logger_name)

    def on_node_trace(self, trace: NodeTrace):
        message = (
            f"[{trace.workflow_id}] node {trace.node_id} ({trace.action_id}/{trace.action_kind}) "
            f"{trace.status.value} in {trace.duration_ms:.2f}ms"
        )
        if trace.flow_output:
            message += f" -> {trace.flow_output}"
        if trace.status == NodeStatus.ERROR:
            self.logger.warning(f"{message}: {trace.error}")
        else:
            self.logger.info(message)


class RecordingTracer:
    """在内存中记录追踪，主要用于测试和调试"""

    def __init__(self):
        self.traces: List[NodeTrace] = []

    def on_node_trace(self, trace: NodeTrace):
        self.traces.append(trace)

    def node_ids(self) -> List[str]:
        return [trace.node_id for trace in self.traces]

    def by_status(self, status: NodeStatus) -> List[NodeTrace]:
        return [trace for trace in self.traces if trace.status == status]


class EventBusTracer:
    """把追踪发布到事件总线的 node.trace 主题"""

    def __init__(self, event_bus: EventBus, topic: str = NODE_TRACE):
        self.event_bus = event_bus
        self.topic = topic

    async def on_node_trace(self, trace: NodeTrace):
        await self.event_bus.publish(self.topic, trace.to_dict())
