"""
搜索子流程

search 块状态流转：

    loading(total=0) → optimizing → reading → loading(total=N) → success | error

步骤：
1. 收集有界的历史上下文（纯文本）
2. 调用 quick_completion 改写搜索词（失败时使用原始查询）
3. 调用搜索引擎
4. 每条结果保存为 search_result 附件
5. 块标记为 success

每一步之前检查取消；取消时停止搜索引擎请求，块标记为 error 并向上传播取消。
其它失败只记录日志，返回空结果，生成继续进行。
"""

from typing import Awaitable, Callable, List

from core.generation.state import GenerationCancelledError, GenerationState
from core.generation.store import MessageStore, now_ms
from core.llm.base import BaseLLMService, ChatEntry, count_tokens, strip_think_sections
from core.prompt.builder import select_context_messages
from core.prompt.file_context import get_file_context
from core.prompt.templates import build_rewrite_prompt
from logger import get_logger, log_execution_time
from models.chat import (
    ERROR_USER_CANCELED,
    BlockStatus,
    Conversation,
    Message,
    SearchBlock,
    SearchResult,
    TextContentBlock,
)

from .base import BaseSearchEngine

logger = get_logger("search.subflow")

SEARCH_RESULT_ATTACHMENT = "search_result"

Flush = Callable[[], Awaitable[None]]


def format_search_context(messages: List[Message]) -> str:
    lines = []
    for message in messages:
        if message.role == "user":
            content = message.user_content
            lines.append(f"user: {content.text}{get_file_context(content.files)}")
        else:
            text = "".join(b.content for b in message.blocks if isinstance(b, TextContentBlock))
            lines.append(f"assistant: {text}")
    return "\n".join(lines)


class SearchSubflow:
    """
    搜索子流程

    flush 回调由编排器提供：持久化当前内容块并通知调用方。
    """

    def __init__(
        self,
        store: MessageStore,
        engine: BaseSearchEngine,
        token_counter: Callable[[str], int] = count_tokens,
        clock: Callable[[], int] = now_ms,
    ):
        self.store = store
        self.engine = engine
        self.token_counter = token_counter
        self._clock = clock

    async def run(
        self,
        state: GenerationState,
        conversation: Conversation,
        query: str,
        history: List[Message],
        rewrite_backend: BaseLLMService,
        rewrite_model_id: str,
        flush: Flush,
    ) -> List[SearchResult]:
        token = state.token
        token.raise_if_cancelled()

        block = SearchBlock(status=BlockStatus.LOADING, total=0, timestamp=self._clock())
        state.blocks.insert(0, block)
        state.is_searching = True
        await flush()

        try:
            context_messages = select_context_messages(
                history,
                state.user_message_id,
                conversation.settings.context_length,
                self.token_counter,
            )
            context = format_search_context(context_messages)
            token.raise_if_cancelled()

            block.status = BlockStatus.OPTIMIZING
            await flush()
            optimized = await self._rewrite_query(query, context, rewrite_backend, rewrite_model_id)
            token.raise_if_cancelled()

            block.status = BlockStatus.READING
            await flush()
            with log_execution_time("搜索查询", logger):
                results = await self.engine.search(conversation.id, optimized)
            token.raise_if_cancelled()

            block.status = BlockStatus.LOADING
            block.total = len(results)
            await flush()

            for result in results:
                token.raise_if_cancelled()
                attachment_id = await self.store.add_attachment(
                    state.message_id, SEARCH_RESULT_ATTACHMENT, result.model_dump(mode="json")
                )
                block.attachment_ids.append(attachment_id)
            token.raise_if_cancelled()

            block.status = BlockStatus.SUCCESS
            await flush()
            return results

        except GenerationCancelledError:
            await self._mark_cancelled(state, conversation, block, flush)
            raise
        except Exception as e:
            if token.cancelled:
                # stop_search 中断请求导致的失败按取消处理
                await self._mark_cancelled(state, conversation, block, flush)
                raise GenerationCancelledError() from e
            logger.error(f"❌ 搜索失败，继续无搜索结果生成: {e}", exc_info=True)
            block.status = BlockStatus.ERROR
            block.content = str(e)
            await flush()
            return []
        finally:
            state.is_searching = False

    async def _mark_cancelled(
        self, state: GenerationState, conversation: Conversation, block: SearchBlock, flush: Flush
    ) -> None:
        await self.engine.stop_search(conversation.id)
        block.status = BlockStatus.ERROR
        block.content = ERROR_USER_CANCELED
        state.is_searching = False
        await flush()

    async def _rewrite_query(
        self,
        query: str,
        context: str,
        backend: BaseLLMService,
        model_id: str,
    ) -> str:
        """改写搜索词，失败时退回原始查询"""
        prompt = build_rewrite_prompt(query, context, self.engine.name)
        try:
            rewritten = await backend.quick_completion([ChatEntry(role="user", content=prompt)], model_id)
        except Exception as e:
            logger.warning(f"⚠️ 搜索词改写失败，使用原始查询: {e}")
            return query
        rewritten = strip_think_sections(rewritten or "")
        logger.debug(f"搜索词改写: {query!r} -> {rewritten!r}")
        return rewritten or query
