"""
流式事件定义

后端适配器按到达顺序产出的事件（封闭的标签联合类型）。
消费方使用 match + assert_never 穷举处理，新增事件类型时
类型检查器会指出未处理的分支。
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Union

from models.usage import UsageTotals


@dataclass(frozen=True)
class ContentDelta:
    kind: Literal["content"] = field(default="content", init=False)
    text: str = ""


@dataclass(frozen=True)
class ReasoningDelta:
    kind: Literal["reasoning"] = field(default="reasoning", init=False)
    text: str = ""


@dataclass(frozen=True)
class ToolCallStart:
    """工具调用开始"""

    kind: Literal["tool_call_start"] = field(default="tool_call_start", init=False)
    tool_call_id: Optional[str] = None
    name: Optional[str] = None
    params: str = ""
    server_name: Optional[str] = None
    server_description: Optional[str] = None


@dataclass(frozen=True)
class ToolCallEnd:
    """
    工具调用结束

    raw_response 为工具返回的原始结构（可能包含网页资源），
    response 为其文本形式。
    """

    kind: Literal["tool_call_end"] = field(default="tool_call_end", init=False)
    tool_call_id: Optional[str] = None
    name: Optional[str] = None
    response: str = ""
    raw_response: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class ToolCallError:
    kind: Literal["tool_call_error"] = field(default="tool_call_error", init=False)
    tool_call_id: Optional[str] = None
    name: Optional[str] = None
    error: str = ""


@dataclass(frozen=True)
class ToolCallLimitReached:
    """工具调用次数达到上限（可通过 continue 恢复）"""

    kind: Literal["tool_call_limit"] = field(default="tool_call_limit", init=False)
    tool_call_id: Optional[str] = None
    name: Optional[str] = None
    params: str = ""
    server_name: Optional[str] = None
    server_description: Optional[str] = None


@dataclass(frozen=True)
class ImageData:
    kind: Literal["image"] = field(default="image", init=False)
    data: str = ""
    mime_type: str = "image/png"


@dataclass(frozen=True)
class UsageTotalsEvent:
    kind: Literal["usage"] = field(default="usage", init=False)
    usage: UsageTotals = field(default_factory=UsageTotals)


@dataclass(frozen=True)
class StreamEnd:
    """流结束（可携带汇总 usage）"""

    kind: Literal["end"] = field(default="end", init=False)
    usage: Optional[UsageTotals] = None


@dataclass(frozen=True)
class StreamError:
    """上游错误"""

    kind: Literal["error"] = field(default="error", init=False)
    cause: str = ""


StreamEvent = Union[
    ContentDelta,
    ReasoningDelta,
    ToolCallStart,
    ToolCallEnd,
    ToolCallError,
    ToolCallLimitReached,
    ImageData,
    UsageTotalsEvent,
    StreamEnd,
    StreamError,
]

__all__: List[str] = [
    "ContentDelta",
    "ReasoningDelta",
    "ToolCallStart",
    "ToolCallEnd",
    "ToolCallError",
    "ToolCallLimitReached",
    "ImageData",
    "UsageTotalsEvent",
    "StreamEnd",
    "StreamError",
    "StreamEvent",
]
