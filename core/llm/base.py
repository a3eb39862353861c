"""
LLM 服务基础模块

包含：
- 统一的 token 计算函数（tiktoken）
- 数据类（ChatEntry）
- 抽象基类（BaseLLMService）

设计原则：
1. 只提供异步接口
2. 流式输出统一为 core.llm.events 中的事件
3. 易于扩展（任何 OpenAI 兼容或自定义后端）
"""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Union

import tiktoken

from .events import StreamEvent

# ============================================================
# 统一的 Token 计算（使用 tiktoken cl100k_base）
# ============================================================

# 全局 tokenizer 缓存
_tiktoken_encoder = None


def _get_tiktoken_encoder():
    """获取 tiktoken encoder（延迟初始化，全局缓存）"""
    global _tiktoken_encoder
    if _tiktoken_encoder is None:
        _tiktoken_encoder = tiktoken.get_encoding("cl100k_base")
    return _tiktoken_encoder


def count_tokens(text: str) -> int:
    """
    计算文本的 token 数量（使用 tiktoken cl100k_base）

    cl100k_base 编码适用于主流模型的近似计算。

    Args:
        text: 要计算的文本

    Returns:
        token 数量
    """
    if not text:
        return 0
    encoder = _get_tiktoken_encoder()
    return len(encoder.encode(text))


# ============================================================
# 数据类
# ============================================================


@dataclass
class ChatEntry:
    """
    发给后端的一条角色消息

    content 为字符串，或 OpenAI 风格的多模态片段列表：
    ```python
    [
        {"type": "image_url", "image_url": {"url": "data:image/png;base64,..."}},
        {"type": "text", "text": "..."},
    ]
    ```
    """

    role: str
    content: Union[str, List[Dict[str, Any]]]

    def to_dict(self) -> Dict[str, Any]:
        return {"role": self.role, "content": self.content}


_THINK_SECTION_RE = re.compile(r"<think>.*?</think>", re.DOTALL)

TITLE_PROMPT = (
    "Summarize the conversation above into a short title of no more than 10 words, "
    "in the same language as the conversation. Return only the title, without quotes "
    "or punctuation at the end."
)


def strip_think_sections(text: str) -> str:
    """去掉 <think>...</think> 段落"""
    return _THINK_SECTION_RE.sub("", text).strip()


# ============================================================
# 抽象基类
# ============================================================


class BaseLLMService(ABC):
    """
    LLM 服务抽象基类

    所有后端实现必须继承此类并实现：
    - stream_completion: 流式补全，按到达顺序产出 StreamEvent
    - stop_stream: 请求协作式终止某条消息的流
    - quick_completion: 非流式短补全（查询改写、标题生成）

    使用示例：
    ```python
    async for event in llm.stream_completion(entries, "gpt-4o", 0.7, 2000, message_id="m1"):
        match event:
            case ContentDelta(text=text):
                print(text, end="")
    ```
    """

    provider_id: str = ""

    @abstractmethod
    def stream_completion(
        self,
        entries: List[ChatEntry],
        model_id: str,
        temperature: float,
        max_tokens: int,
        *,
        message_id: str,
    ) -> AsyncIterator[StreamEvent]:
        """
        流式补全

        Args:
            entries: 角色消息列表
            model_id: 模型 ID
            temperature: 温度
            max_tokens: 最大输出 token
            message_id: 正在生成的助手消息 ID（用于 stop_stream）

        Yields:
            StreamEvent，最后一个事件为 StreamEnd 或 StreamError
        """

    @abstractmethod
    async def stop_stream(self, message_id: str) -> None:
        """请求终止消息对应的流（协作式）"""

    @abstractmethod
    async def quick_completion(self, entries: List[ChatEntry], model_id: str) -> str:
        """非流式短补全，返回文本"""

    async def summary_title(self, entries: List[ChatEntry], model_id: str) -> str:
        """
        生成对话标题

        推理模型可能在输出中夹带 <think> 段落，这里统一去除。
        """
        prompt_entries = list(entries) + [ChatEntry(role="user", content=TITLE_PROMPT)]
        title = await self.quick_completion(prompt_entries, model_id)
        return strip_think_sections(title)
