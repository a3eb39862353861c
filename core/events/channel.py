"""
生成事件输出通道

编排器不依赖任何具体的推送机制（窗口、WebSocket、CLI），
调用方提供一个实现 GenerationEventSink 的对象接收事件。

事件类型：
- generation_start: 助手消息已创建，开始生成
- content_updated: 内容块发生变化（每次变更后发送）
- generation_end: 正常结束
- generation_cancelled: 用户取消
- generation_error: 生成失败
"""

import asyncio
import inspect
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Literal, Optional, Protocol, Union

from logger import get_logger

logger = get_logger("events.channel")

GenerationEventType = Literal[
    "generation_start",
    "content_updated",
    "generation_end",
    "generation_cancelled",
    "generation_error",
]


@dataclass
class GenerationEvent:
    """生成事件"""

    type: GenerationEventType
    conversation_id: str
    message_id: str
    data: Dict[str, Any] = field(default_factory=dict)


class GenerationEventSink(Protocol):
    """事件输出协议"""

    async def emit(self, event: GenerationEvent) -> None:
        ...


class NullEventSink:
    """丢弃所有事件"""

    async def emit(self, event: GenerationEvent) -> None:
        return None


class CallbackEventSink:
    """
    回调输出

    回调可以是同步函数或协程函数；回调异常只记录日志，不影响生成。
    """

    def __init__(self, callback: Callable[[GenerationEvent], Union[None, Awaitable[None]]]):
        self._callback = callback

    async def emit(self, event: GenerationEvent) -> None:
        try:
            result = self._callback(event)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.warning(f"⚠️ 事件回调失败: type={event.type}, error={e}")


class QueueEventSink:
    """队列输出（消费方通过 get 逐个读取）"""

    def __init__(self, maxsize: int = 0):
        self.queue: "asyncio.Queue[GenerationEvent]" = asyncio.Queue(maxsize=maxsize)

    async def emit(self, event: GenerationEvent) -> None:
        await self.queue.put(event)

    async def get(self, timeout: Optional[float] = None) -> GenerationEvent:
        if timeout is None:
            return await self.queue.get()
        return await asyncio.wait_for(self.queue.get(), timeout)
