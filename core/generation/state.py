"""
生成状态

包含：
- CancellationToken: 协作式取消令牌（只在挂起点检查）
- GenerationPhase: 生成状态机阶段
- GenerationState: 单次生成的瞬态状态（只存在内存中，按消息 ID 索引）
- GenerationRegistry: 活跃生成注册表（唯一的共享可变资源，锁保护）
- build_final_metadata: 正常结束时计算持久化元数据
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional

from logger import get_logger
from models.chat import (
    Message,
    MessageMetadata,
    ReasoningBlock,
    TextContentBlock,
)
from models.usage import UsageTotals

logger = get_logger("generation.state")


class GenerationCancelledError(Exception):
    """生成被用户取消（内部信号，不向调用方抛出）"""

    pass


class CancellationToken:
    """
    协作式取消令牌

    stop 请求只设置标志；编排流程在准备阶段开头、搜索前后、
    调用后端前以及每个流事件之间调用 raise_if_cancelled()。
    """

    def __init__(self):
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise GenerationCancelledError()


class GenerationPhase(str, Enum):
    """生成状态机阶段"""

    IDLE = "idle"
    PREPARING = "preparing"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    CANCELLING = "cancelling"
    FAILING = "failing"
    DONE = "done"


@dataclass
class GenerationState:
    """
    单次生成的瞬态状态

    时间戳均为毫秒。message 为正在构建的助手消息，
    其内容块只被本次生成自己的流程修改。
    """

    message: Message
    conversation_id: str
    user_message_id: Optional[str]
    start_time: int
    provider_id: str = ""
    model_id: str = ""
    first_token_time: Optional[int] = None
    prompt_tokens: int = 0
    reasoning_start_time: Optional[int] = None
    last_reasoning_time: Optional[int] = None
    token: CancellationToken = field(default_factory=CancellationToken)
    is_searching: bool = False
    usage: Optional[UsageTotals] = None
    phase: GenerationPhase = GenerationPhase.IDLE
    # 继续生成时已有的助手正文（None 表示新一轮生成）
    continuation: Optional[str] = None

    @property
    def message_id(self) -> str:
        return self.message.id

    @property
    def blocks(self) -> list:
        return self.message.content


class GenerationRegistry:
    """
    活跃生成注册表

    结构性修改（创建/移除）在锁内完成；每个消息 ID 最多对应一个活跃生成。
    编排器之外的代码不直接访问内部字典。
    """

    def __init__(self):
        self._states: Dict[str, GenerationState] = {}
        self._lock = asyncio.Lock()

    async def add(self, state: GenerationState) -> None:
        async with self._lock:
            if state.message_id in self._states:
                raise ValueError(f"消息已有活跃生成: {state.message_id}")
            self._states[state.message_id] = state

    async def remove(self, message_id: str) -> Optional[GenerationState]:
        async with self._lock:
            return self._states.pop(message_id, None)

    def get(self, message_id: str) -> Optional[GenerationState]:
        return self._states.get(message_id)

    def by_conversation(self, conversation_id: str) -> List[GenerationState]:
        return [s for s in self._states.values() if s.conversation_id == conversation_id]

    def __contains__(self, message_id: str) -> bool:
        return message_id in self._states

    def __len__(self) -> int:
        return len(self._states)


def estimate_completion_tokens(state: GenerationState, token_counter: Callable[[str], int]) -> int:
    """本地估算输出 token（正文 + 推理内容）"""
    total = 0
    for block in state.blocks:
        if isinstance(block, (TextContentBlock, ReasoningBlock)):
            total += token_counter(block.content)
    return total


def build_final_metadata(
    state: GenerationState,
    now: int,
    token_counter: Callable[[str], int],
) -> MessageMetadata:
    """
    计算正常结束时的元数据

    后端上报的 usage 优先于本地估算；生成时长从首 token 开始计，
    没有收到 token 时从开始时间计。
    """
    prompt_tokens = state.prompt_tokens
    if state.usage is not None:
        completion_tokens = state.usage.completion_tokens
        if state.usage.prompt_tokens > 0:
            prompt_tokens = state.usage.prompt_tokens
    else:
        completion_tokens = estimate_completion_tokens(state, token_counter)

    anchor = state.first_token_time if state.first_token_time is not None else state.start_time
    generation_time = max(now - anchor, 0)
    tokens_per_second = completion_tokens / (generation_time / 1000) if generation_time > 0 else 0.0

    metadata = MessageMetadata(
        total_tokens=prompt_tokens + completion_tokens,
        input_tokens=prompt_tokens,
        output_tokens=completion_tokens,
        generation_time=generation_time,
        first_token_time=(state.first_token_time - state.start_time) if state.first_token_time is not None else 0,
        tokens_per_second=round(tokens_per_second, 2),
        model=state.model_id or None,
        provider=state.provider_id or None,
    )
    if state.reasoning_start_time is not None:
        metadata.reasoning_start_time = state.reasoning_start_time - state.start_time
        last = state.last_reasoning_time if state.last_reasoning_time is not None else state.reasoning_start_time
        metadata.reasoning_end_time = last - state.start_time
    return metadata
