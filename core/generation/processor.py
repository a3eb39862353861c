"""
流事件处理器

把后端按序产出的 StreamEvent 应用到 GenerationState 的内容块列表上。

块列表规则：
- 同一条消息内同一时刻最多一个块处于非终态（loading/optimizing/reading）
- 打开新块前先把所有非终态块关闭为 success
- 连续的同类文本增量原地追加
- 除 search 块（总是插在首位）外，块按到达顺序追加
"""

import json
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Type, Union, assert_never

from core.llm.events import (
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
from logger import get_logger
from models.chat import (
    ActionBlock,
    BlockStatus,
    ImageBlock,
    ImagePayload,
    ReasoningBlock,
    SearchBlock,
    SearchResult,
    TextContentBlock,
    ToolCallBlock,
    ToolCallInfo,
)
from models.usage import UsageTotals

from .state import GenerationState
from .store import now_ms

logger = get_logger("generation.processor")

# 工具返回中携带结构化网页结果的资源类型
SEARCH_WEBPAGE_MIME = "application/x-search-webpage"


@dataclass
class EventOutcome:
    """单个事件的处理结果"""

    content_changed: bool = False
    first_token: bool = False
    search_results: List[SearchResult] = field(default_factory=list)
    ended: bool = False
    error: Optional[str] = None


def close_open_blocks(state: GenerationState) -> bool:
    """关闭所有非终态块，返回是否有块被修改"""
    changed = False
    for block in state.blocks:
        if block.is_open:
            block.status = BlockStatus.SUCCESS
            changed = True
    return changed


def parse_webpage_resources(raw_response: Optional[Dict[str, Any]]) -> List[SearchResult]:
    """
    从工具返回中解析网页资源

    格式：
    {"content": [{"type": "resource", "resource": {"mimeType": "application/x-search-webpage", "text": "{...}"}}]}
    """
    if not raw_response:
        return []
    parts = raw_response.get("content")
    if not isinstance(parts, list):
        return []

    results: List[SearchResult] = []
    for part in parts:
        if not isinstance(part, dict) or part.get("type") != "resource":
            continue
        resource = part.get("resource") or {}
        if resource.get("mimeType") != SEARCH_WEBPAGE_MIME:
            continue
        try:
            page = json.loads(resource.get("text") or "{}")
        except json.JSONDecodeError as e:
            logger.warning(f"⚠️ 网页资源解析失败: {e}")
            continue
        if not isinstance(page, dict):
            continue
        results.append(
            SearchResult(
                title=page.get("title", ""),
                url=page.get("url", ""),
                content=page.get("content", ""),
                description=page.get("description", ""),
                icon=page.get("icon", ""),
            )
        )
    return results


class StreamEventProcessor:
    """
    流事件处理器

    apply() 原地修改 state，返回 EventOutcome 供编排器决定是否持久化、
    是否保存搜索附件以及流是否结束。
    """

    def __init__(self, clock: Callable[[], int] = now_ms):
        self._clock = clock

    def apply(self, state: GenerationState, event: StreamEvent) -> EventOutcome:
        match event:
            case ContentDelta(text=text):
                return self._apply_text(state, TextContentBlock, text)
            case ReasoningDelta(text=text):
                return self._apply_text(state, ReasoningBlock, text)
            case ToolCallStart():
                return self._apply_tool_call_start(state, event)
            case ToolCallEnd() | ToolCallError():
                return self._apply_tool_call_finish(state, event)
            case ToolCallLimitReached():
                return self._apply_tool_call_limit(state, event)
            case ImageData(data=data, mime_type=mime_type):
                close_open_blocks(state)
                state.blocks.append(
                    ImageBlock(
                        status=BlockStatus.SUCCESS,
                        timestamp=self._clock(),
                        image_data=ImagePayload(data=data, mime_type=mime_type),
                    )
                )
                return EventOutcome(content_changed=True)
            case UsageTotalsEvent(usage=usage):
                self._record_usage(state, usage)
                return EventOutcome()
            case StreamEnd(usage=usage):
                if usage is not None:
                    self._record_usage(state, usage)
                return EventOutcome(ended=True)
            case StreamError(cause=cause):
                return EventOutcome(error=cause or "unknown error")
            case _:
                assert_never(event)

    # ============================================================
    # 文本 / 推理增量
    # ============================================================

    def _apply_text(
        self,
        state: GenerationState,
        block_type: Type[Union[TextContentBlock, ReasoningBlock]],
        text: str,
    ) -> EventOutcome:
        if not text:
            return EventOutcome()

        now = self._clock()
        outcome = EventOutcome(content_changed=True)

        if state.first_token_time is None:
            state.first_token_time = now
            outcome.first_token = True

        if block_type is ReasoningBlock:
            if state.reasoning_start_time is None:
                state.reasoning_start_time = now
            state.last_reasoning_time = now

        blocks = state.blocks
        last = blocks[-1] if blocks else None
        if isinstance(last, block_type) and last.status == BlockStatus.LOADING:
            last.content += text
        else:
            close_open_blocks(state)
            blocks.append(block_type(content=text, status=BlockStatus.LOADING, timestamp=now))
        return outcome

    # ============================================================
    # 工具调用
    # ============================================================

    def _apply_tool_call_start(self, state: GenerationState, event: ToolCallStart) -> EventOutcome:
        close_open_blocks(state)
        state.blocks.append(
            ToolCallBlock(
                status=BlockStatus.LOADING,
                timestamp=self._clock(),
                tool_call=ToolCallInfo(
                    id=event.tool_call_id,
                    name=event.name,
                    params=event.params,
                    server_name=event.server_name,
                    server_description=event.server_description,
                ),
            )
        )
        return EventOutcome(content_changed=True)

    def _apply_tool_call_finish(
        self, state: GenerationState, event: Union[ToolCallEnd, ToolCallError]
    ) -> EventOutcome:
        target = self._find_loading_tool_call(state, event.tool_call_id, event.name)
        if target is None:
            logger.debug(f"未找到匹配的工具调用块: id={event.tool_call_id}, name={event.name}")
            return EventOutcome()

        if isinstance(event, ToolCallError):
            target.status = BlockStatus.ERROR
            target.tool_call.response = event.error
            return EventOutcome(content_changed=True)

        target.status = BlockStatus.SUCCESS
        target.tool_call.response = event.response
        outcome = EventOutcome(content_changed=True)

        results = parse_webpage_resources(event.raw_response)
        if results:
            outcome.search_results = self._merge_search_results(state, results)
        return outcome

    @staticmethod
    def _find_loading_tool_call(
        state: GenerationState, tool_call_id: Optional[str], name: Optional[str]
    ) -> Optional[ToolCallBlock]:
        """按 id（优先）或 name 查找最近的 loading 工具调用块"""
        for block in reversed(state.blocks):
            if not isinstance(block, ToolCallBlock) or block.status != BlockStatus.LOADING:
                continue
            if tool_call_id:
                if block.tool_call.id == tool_call_id:
                    return block
            elif name and block.tool_call.name == name:
                return block
        return None

    def _merge_search_results(
        self, state: GenerationState, results: List[SearchResult]
    ) -> List[SearchResult]:
        """合并到首位 search 块，不存在时在首位插入"""
        blocks = state.blocks
        first = blocks[0] if blocks else None
        if isinstance(first, SearchBlock):
            offset = first.total
            first.total += len(results)
        else:
            offset = 0
            blocks.insert(
                0,
                SearchBlock(status=BlockStatus.SUCCESS, timestamp=self._clock(), total=len(results)),
            )
        return [r.model_copy(update={"rank": offset + i + 1}) for i, r in enumerate(results)]

    def _apply_tool_call_limit(self, state: GenerationState, event: ToolCallLimitReached) -> EventOutcome:
        close_open_blocks(state)
        state.blocks.append(
            ActionBlock(
                status=BlockStatus.SUCCESS,
                timestamp=self._clock(),
                action_type="maxToolCallsReached",
                tool_call=ToolCallInfo(
                    id=event.tool_call_id,
                    name=event.name,
                    params=event.params,
                    server_name=event.server_name,
                    server_description=event.server_description,
                ),
                need_continue=True,
            )
        )
        return EventOutcome(content_changed=True)

    # ============================================================
    # Usage
    # ============================================================

    @staticmethod
    def _record_usage(state: GenerationState, usage: UsageTotals) -> None:
        state.usage = usage
        if usage.prompt_tokens > 0:
            state.prompt_tokens = usage.prompt_tokens
