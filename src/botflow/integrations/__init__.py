"""External system integrations"""

# Action Registry
from .action_registry import (
    ActionRegistry,
    LocalActionRegistry,
    ActionDefinition,
    ActionContext,
    ActionKind
)

# Builtin Actions
from .builtin_actions import BuiltinActions, register_builtin_actions

# HTTP Actions
from .http_action import HttpxTransport

# Event Bus
from .event_bus import EventBus, Event

# Tracing
from .tracing import LoggingTracer, RecordingTracer, EventBusTracer

# Validators
from .validators import SchemaValidator

__all__ = [
    # Action Registry
    "ActionRegistry",
    "LocalActionRegistry",
    "ActionDefinition",
    "ActionContext",
    "ActionKind",

    # Builtin Actions
    "BuiltinActions",
    "register_builtin_actions",

    # HTTP Actions
    "HttpxTransport",

    # Event Bus
    "EventBus",
    "Event",

    # Tracing
    "LoggingTracer",
    "RecordingTracer",
    "EventBusTracer",

    # Validators
    "SchemaValidator",
]
