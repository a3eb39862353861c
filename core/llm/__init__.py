"""
LLM 服务模块

提供统一的后端流式接口。

模块结构：
- base.py: token 计算、ChatEntry、BaseLLMService 抽象基类
- events.py: 流式事件（封闭标签联合）
- think_tags.py: 内联 <think> 标签拆分
- openai.py: OpenAI 兼容实现
- registry.py: 后端注册表
"""

from .base import (
    BaseLLMService,
    ChatEntry,
    count_tokens,
    strip_think_sections,
)
from .events import (
    ContentDelta,
    ImageData,
    ReasoningDelta,
    StreamEnd,
    StreamError,
    StreamEvent,
    ToolCallEnd,
    ToolCallError,
    ToolCallLimitReached,
    ToolCallStart,
    UsageTotalsEvent,
)
from .registry import BackendNotFoundError, BackendRegistry

__all__ = [
    "BaseLLMService",
    "ChatEntry",
    "count_tokens",
    "strip_think_sections",
    "ContentDelta",
    "ImageData",
    "ReasoningDelta",
    "StreamEnd",
    "StreamError",
    "StreamEvent",
    "ToolCallEnd",
    "ToolCallError",
    "ToolCallLimitReached",
    "ToolCallStart",
    "UsageTotalsEvent",
    "BackendNotFoundError",
    "BackendRegistry",
]
