"""
执行生命周期事件
"""
import inspect
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional


logger = logging.getLogger(__name__)

WORKFLOW_COMPLETED = "workflow.completed"
WORKFLOW_SUSPENDED = "workflow.suspended"
WORKFLOW_FAILED = "workflow.failed"
NODE_TRACE = "node.trace"

# 订阅所有主题
ANY_TOPIC = "*"

Listener = Callable[["Event"], Any]


@dataclass
class Event:
    """生命周期事件，payload 至少带 workflow_id"""
    topic: str
    payload: Dict[str, Any]
    created_at: float = field(default_factory=time.time)

    @property
    def workflow_id(self) -> Optional[str]:
        return self.payload.get("workflow_id")

    @property
    def execution_id(self) -> Optional[str]:
        return self.payload.get("execution_id")


class EventBus:
    """按主题分发执行事件；监听器按订阅顺序依次调用，异常只记日志"""

    def __init__(self):
        self.subscribers: Dict[str, List[Listener]] = {}

    def subscribe(self, topic: str, listener: Listener):
        self.subscribers.setdefault(topic, []).append(listener)
        logger.debug(f"Listener added for '{topic}'")

    def unsubscribe(self, topic: str, listener: Listener):
        listeners = self.subscribers.get(topic, [])
        if listener in listeners:
            listeners.remove(listener)
        if not listeners:
            self.subscribers.pop(topic, None)

    def listeners_for(self, topic: str) -> List[Listener]:
        return list(self.subscribers.get(topic, [])) + list(self.subscribers.get(ANY_TOPIC, []))

    async def publish(self, topic: str, payload: Dict[str, Any]) -> Event:
        """发布事件并等待所有监听器处理完"""
        event = Event(topic=topic, payload=dict(payload or {}))
        listeners = self.listeners_for(topic)
        for listener in listeners:
            try:
                outcome = listener(event)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                logger.error(f"Listener for '{topic}' failed: {e}", exc_info=True)
        logger.debug(f"Event '{topic}' delivered to {len(listeners)} listeners")
        return event
