"""
事件模块

编排器通过 GenerationEventSink 向调用方推送生成事件。
"""

from core.events.channel import (
    CallbackEventSink,
    GenerationEvent,
    GenerationEventSink,
    NullEventSink,
    QueueEventSink,
)

__all__ = [
    "CallbackEventSink",
    "GenerationEvent",
    "GenerationEventSink",
    "NullEventSink",
    "QueueEventSink",
]
