"""
Prompt 构建器 - 上下文窗口预算

构建流程：
1. 计算搜索提示词、系统提示词、当前用户内容（含 URL 补充）的 token，作为预留
2. 剩余预算 = 上下文长度 - 预留；剩余 <= 0 时不带历史
3. 从新到旧遍历历史，累加到下一条会超出剩余预算为止，再恢复时间顺序
   （单条超预算的消息整条丢弃，不截断）
4. 格式化为角色消息：system、历史、Artifacts 指令、最后一轮用户消息
   （有搜索结果时搜索提示词替代原始用户内容；支持视觉时带图片）
5. 合并相邻同角色消息
6. 重新估算最终 prompt token（文本 + 图片固定成本）
"""

import json
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Union

from core.llm.base import ChatEntry, count_tokens
from logger import get_logger
from models.chat import (
    ConversationSettings,
    Message,
    MessageFile,
    SearchResult,
    TextContentBlock,
    dump_blocks,
)

from .content_enricher import ContentEnricher
from .file_context import get_file_context, image_token_cost, split_files
from .templates import ARTIFACTS_PROMPT, CONTINUE_PROMPT, generate_search_prompt

logger = get_logger("prompt.builder")

TokenCounter = Callable[[str], int]


@dataclass
class PromptBuildResult:
    """构建结果"""

    entries: List[ChatEntry]
    prompt_tokens: int
    selected_history: List[Message] = field(default_factory=list)
    reserved_tokens: int = 0


# ============================================================
# 历史消息
# ============================================================


def message_token_text(message: Message) -> str:
    """估算 token 用的消息文本（用户：文本 + 文件上下文；助手：序列化内容块）"""
    if message.role == "user":
        content = message.user_content
        return f"{content.text}{get_file_context(content.files)}"
    return json.dumps(dump_blocks(message.blocks), ensure_ascii=False)


def select_context_messages(
    history: List[Message],
    user_message_id: Optional[str],
    remaining: int,
    token_counter: TokenCounter = count_tokens,
) -> List[Message]:
    """
    选择上下文消息

    从最新一条开始向前累加，遇到第一条放不下的消息即停止；
    结果是最新消息的最长前缀，按时间正序返回。
    """
    if remaining <= 0:
        return []

    selected: List[Message] = []
    used = 0
    for message in reversed([m for m in history if m.id != user_message_id]):
        tokens = token_counter(message_token_text(message))
        if used + tokens > remaining:
            break
        selected.append(message)
        used += tokens

    selected.reverse()
    return selected


def format_history_entry(message: Message) -> Optional[ChatEntry]:
    if message.role == "user":
        content = message.user_content
        return ChatEntry(role="user", content=f"{content.text}{get_file_context(content.files)}")

    text = "\n".join(b.content for b in message.blocks if isinstance(b, TextContentBlock))
    if not text:
        # 没有正文的助手消息不进入上下文
        return None
    return ChatEntry(role="assistant", content=text)


# ============================================================
# 合并
# ============================================================


def _as_parts(content: Union[str, List[Dict[str, Any]]]) -> List[Dict[str, Any]]:
    if isinstance(content, str):
        return [{"type": "text", "text": content}]
    return list(content)


def _merge_content(
    previous: Union[str, List[Dict[str, Any]]],
    current: Union[str, List[Dict[str, Any]]],
) -> Union[str, List[Dict[str, Any]]]:
    if isinstance(previous, str) and isinstance(current, str):
        return f"{previous}\n{current}"

    parts = _as_parts(previous) + _as_parts(current)
    others = [p for p in parts if p.get("type") != "text"]
    texts = [p.get("text", "") for p in parts if p.get("type") == "text"]
    if texts:
        others.append({"type": "text", "text": "\n".join(texts)})
    return others


def merge_consecutive_entries(entries: List[ChatEntry]) -> List[ChatEntry]:
    """合并相邻同角色消息（文本拼接；多模态片段中非文本片段依次保留，文本合并到末尾）"""
    merged: List[ChatEntry] = []
    for entry in entries:
        if merged and merged[-1].role == entry.role:
            merged[-1] = ChatEntry(role=entry.role, content=_merge_content(merged[-1].content, entry.content))
        else:
            merged.append(ChatEntry(role=entry.role, content=entry.content))
    return merged


# ============================================================
# 构建器
# ============================================================


class PromptBuilder:
    """
    Prompt 构建器

    token_counter 可注入（默认 tiktoken cl100k_base）。
    """

    def __init__(self, token_counter: TokenCounter = count_tokens):
        self.token_counter = token_counter

    def build(
        self,
        settings: ConversationSettings,
        user_message: Message,
        history: List[Message],
        search_results: Optional[List[SearchResult]] = None,
        url_results: Optional[List[SearchResult]] = None,
        vision: bool = False,
        continuation: Optional[str] = None,
    ) -> PromptBuildResult:
        """
        构建发给后端的消息列表

        Args:
            settings: 对话设置（系统提示词、上下文长度、artifacts）
            user_message: 触发本轮的用户消息
            history: 主线历史（可包含 user_message，会被排除）
            search_results: 搜索结果（None 表示未搜索）
            url_results: URL 补充结果
            vision: 模型是否支持图片
            continuation: 继续生成时已有的助手正文

        Returns:
            PromptBuildResult
        """
        tc = self.token_counter
        payload = user_message.user_content
        documents, images = split_files(payload.files)
        if not vision:
            images = []

        user_content = f"{payload.text}{get_file_context(documents)}"
        artifacts = settings.artifacts == 1

        search_prompt = (
            generate_search_prompt(user_content, search_results, artifacts=artifacts)
            if search_results is not None
            else ""
        )
        enriched = f"\n\n{ContentEnricher.render(url_results)}" if url_results else ""

        reserved = (
            (tc(search_prompt) if search_prompt else 0)
            + (tc(settings.system_prompt) if settings.system_prompt else 0)
            + tc(user_content + enriched)
        )
        if continuation is not None:
            reserved += tc(continuation) + tc(CONTINUE_PROMPT)

        remaining = settings.context_length - reserved
        selected = select_context_messages(history, user_message.id, remaining, tc)

        entries = self._format(settings, selected, search_prompt or user_content, enriched, images, artifacts)
        if continuation is not None:
            entries.append(ChatEntry(role="assistant", content=continuation))
            entries.append(ChatEntry(role="user", content=CONTINUE_PROMPT))

        merged = merge_consecutive_entries(entries)
        prompt_tokens = self._count_prompt_tokens(merged, images)

        logger.debug(
            f"Prompt 构建完成: reserved={reserved}, remaining={remaining}, "
            f"history={len(selected)}/{len(history)}, entries={len(merged)}, prompt_tokens={prompt_tokens}"
        )
        return PromptBuildResult(
            entries=merged,
            prompt_tokens=prompt_tokens,
            selected_history=selected,
            reserved_tokens=reserved,
        )

    @staticmethod
    def _format(
        settings: ConversationSettings,
        history: List[Message],
        final_content: str,
        enriched: str,
        images: List[MessageFile],
        artifacts: bool,
    ) -> List[ChatEntry]:
        entries: List[ChatEntry] = []
        if settings.system_prompt:
            entries.append(ChatEntry(role="system", content=settings.system_prompt))

        for message in history:
            entry = format_history_entry(message)
            if entry is not None:
                entries.append(entry)

        if artifacts:
            entries.append(ChatEntry(role="user", content=ARTIFACTS_PROMPT))

        text = (final_content + enriched).strip()
        if images:
            parts: List[Dict[str, Any]] = [
                {"type": "image_url", "image_url": {"url": f.content, "detail": "auto"}} for f in images
            ]
            parts.append({"type": "text", "text": text})
            entries.append(ChatEntry(role="user", content=parts))
        else:
            entries.append(ChatEntry(role="user", content=text))
        return entries

    def _count_prompt_tokens(self, entries: List[ChatEntry], images: List[MessageFile]) -> int:
        total = 0
        for entry in entries:
            if isinstance(entry.content, str):
                total += self.token_counter(entry.content)
            else:
                text = "".join(p.get("text", "") for p in entry.content if p.get("type") == "text")
                total += self.token_counter(text) + image_token_cost(images)
        return total
