"""
生成编排器 - Generation Orchestrator

负责单轮用户消息的完整生成流程：

    Idle → Preparing → Streaming → {Finalizing, Cancelling, Failing} → Done

- Preparing: 读取对话设置、用户消息和有界历史；可选执行搜索子流程和 URL 补充；
  构建 prompt
- Streaming: 调用后端流式接口，每个事件交给 StreamEventProcessor，
  内容每次变化后立即持久化并通知调用方
- Cancelling: stop 请求只设置取消标志，在挂起点被观察到后关闭所有未完成块、
  追加 cancel 块、请求后端停止
- Finalizing: 正常结束，计算元数据并标记 sent
- Failing: 其它异常记录为 error 块，消息标记 error，异常抛给调用方

每条助手消息最多一个活跃生成；同一对话同时只能有一个活跃生成由调用层保证，
编排器本身支持多个对话并行生成。
"""

import asyncio
import copy
import math
from contextlib import aclosing
from typing import Any, Callable, Dict, List, Optional, Tuple

from config.model_configs import supports_vision
from core.events.channel import GenerationEvent, GenerationEventSink, GenerationEventType, NullEventSink
from core.llm.base import BaseLLMService, count_tokens
from core.llm.registry import BackendNotFoundError, BackendRegistry
from core.prompt.builder import PromptBuilder
from core.prompt.content_enricher import ContentEnricher
from core.search.base import BaseSearchEngine
from core.search.subflow import SEARCH_RESULT_ATTACHMENT, SearchSubflow
from logger import clear_request_context, get_logger, log_execution_time, set_request_context
from models.chat import (
    ERROR_NO_MODEL_RESPONSE,
    ERROR_REQUEST_FAILED,
    ERROR_SESSION_INTERRUPTED,
    ERROR_USER_CANCELED,
    ActionBlock,
    BlockStatus,
    Conversation,
    ErrorBlock,
    ImageBlock,
    Message,
    MessageMetadata,
    ReasoningBlock,
    SearchBlock,
    SearchResult,
    TextContentBlock,
    ToolCallBlock,
    dump_blocks,
)

from .errors import (
    BackendStreamError,
    ContinueNotAllowedError,
    ConversationNotFoundError,
    GenerationNotFoundError,
    MessageNotFoundError,
)
from .processor import StreamEventProcessor, close_open_blocks
from .state import (
    GenerationCancelledError,
    GenerationPhase,
    GenerationRegistry,
    GenerationState,
    build_final_metadata,
)
from .store import MessageStore, now_ms, sort_key

logger = get_logger("generation.orchestrator")

# 设置项（覆盖用户消息上的开关，None 表示不覆盖）
SETTING_WEB_SEARCH = "input_webSearch"
SETTING_DEEP_THINKING = "input_deepThinking"
# 搜索词改写使用的模型：{"provider_id": ..., "model_id": ...}
SETTING_SEARCH_ASSISTANT = "search_assistant"

# 历史消息条数上限 = max(2, ceil(上下文长度 / 300))
HISTORY_TOKENS_PER_MESSAGE = 300

# 产出这些块才算模型有响应
_RESPONSE_BLOCK_TYPES = (TextContentBlock, ReasoningBlock, ToolCallBlock, ImageBlock)


class GenerationOrchestrator:
    """
    生成编排器

    使用示例：
    ```python
    orchestrator = GenerationOrchestrator(store=store, backends=backends, sink=sink)

    # 后台生成，立即拿到助手消息
    message = await orchestrator.start_generation(conversation_id)
    final = await orchestrator.wait(message.id)

    # 或者分两步：先创建状态，再在当前协程内运行
    state = await orchestrator.prepare_generation(conversation_id)
    final = await orchestrator.run_generation(state.message_id)
    ```
    """

    def __init__(
        self,
        store: MessageStore,
        backends: BackendRegistry,
        search_engine: Optional[BaseSearchEngine] = None,
        sink: Optional[GenerationEventSink] = None,
        registry: Optional[GenerationRegistry] = None,
        prompt_builder: Optional[PromptBuilder] = None,
        content_enricher: Optional[ContentEnricher] = None,
        token_counter: Callable[[str], int] = count_tokens,
        clock: Callable[[], int] = now_ms,
        vision_resolver: Callable[[str], bool] = supports_vision,
    ):
        """
        Args:
            store: 消息存储
            backends: 后端注册表（按对话设置的 provider_id 选择）
            search_engine: 搜索引擎（None 表示不支持联网搜索）
            sink: 事件输出（默认丢弃）
            registry: 活跃生成注册表
            prompt_builder: Prompt 构建器（默认使用 token_counter）
            content_enricher: URL 内容补充（None 表示不补充）
            token_counter: token 估算函数
            clock: 毫秒时钟
            vision_resolver: 判断模型是否支持图片输入
        """
        self.store = store
        self.backends = backends
        self.search_engine = search_engine
        self.sink: GenerationEventSink = sink or NullEventSink()
        self.registry = registry or GenerationRegistry()
        self.token_counter = token_counter
        self.prompt_builder = prompt_builder or PromptBuilder(token_counter)
        self.content_enricher = content_enricher
        self.vision_resolver = vision_resolver
        self._clock = clock
        self.processor = StreamEventProcessor(clock)
        self._tasks: Dict[str, asyncio.Task] = {}

    # ============================================================
    # 对外接口
    # ============================================================

    async def start_generation(self, conversation_id: str, query_message_id: Optional[str] = None) -> Message:
        """
        开始生成（后台任务）

        Args:
            conversation_id: 对话 ID
            query_message_id: 为空时回复最后一条用户消息；
                指向用户消息时回复该消息；指向助手消息时重新生成一个变体

        Returns:
            新建的助手消息（pending）
        """
        state = await self.prepare_generation(conversation_id, query_message_id)
        self._spawn(state.message_id)
        return state.message.model_copy(deep=True)

    async def continue_generation(self, conversation_id: str, query_message_id: str) -> Message:
        """
        在工具调用次数达到上限后继续生成

        消息最后一个 action 块必须标记 need_continue；继续时清除该标记，
        消息回到 pending，带着已有正文和继续指令重新进入流式阶段。
        """
        conversation = await self._require_conversation(conversation_id)
        self._require_backend(conversation.settings.provider_id)

        message = await self.store.get_message(query_message_id)
        if message is None or message.conversation_id != conversation_id or message.role != "assistant":
            raise MessageNotFoundError(query_message_id, "需要该对话中的助手消息")
        if message.id in self.registry:
            raise ContinueNotAllowedError(f"消息正在生成中: {message.id}")
        if not message.parent_id:
            raise MessageNotFoundError(query_message_id, "缺少对应的用户消息")

        action = next((b for b in reversed(message.blocks) if isinstance(b, ActionBlock)), None)
        if action is None or not action.need_continue:
            raise ContinueNotAllowedError(f"消息不可继续生成: {message.id}")

        action.need_continue = False
        message.status = "pending"
        await self.store.update_content(message.id, message.blocks)
        await self.store.update_status(message.id, "pending")

        continuation = "\n".join(b.content for b in message.blocks if isinstance(b, TextContentBlock))
        state = GenerationState(
            message=message,
            conversation_id=conversation_id,
            user_message_id=message.parent_id,
            start_time=self._clock(),
            provider_id=conversation.settings.provider_id,
            model_id=conversation.settings.model_id,
            continuation=continuation,
        )
        await self.registry.add(state)
        logger.info(f"▶️ 继续生成: conversation_id={conversation_id}, message_id={message.id}")
        await self._emit(state, "generation_start", {"continue": True})

        self._spawn(state.message_id)
        return message.model_copy(deep=True)

    async def stop_generation(self, message_id: str) -> bool:
        """
        请求停止生成

        只设置取消标志并通知搜索引擎/后端停止；收尾由生成流程在下一个挂起点完成。

        Returns:
            是否存在对应的活跃生成
        """
        state = self.registry.get(message_id)
        if state is None:
            return False

        state.token.cancel()
        logger.info(f"🛑 请求停止生成: message_id={message_id}, phase={state.phase.value}")

        if state.is_searching and self.search_engine is not None:
            try:
                await self.search_engine.stop_search(state.conversation_id)
            except Exception as e:
                logger.warning(f"⚠️ 停止搜索失败: {e}")

        await self._stop_backend(state)
        return True

    async def stop_all_generations(self, conversation_id: str) -> int:
        """停止对话下的所有活跃生成，返回停止的数量"""
        stopped = 0
        for state in self.registry.by_conversation(conversation_id):
            if await self.stop_generation(state.message_id):
                stopped += 1
        return stopped

    def get_active_state(self, message_id: str) -> Optional[GenerationState]:
        """只读快照（副本）"""
        state = self.registry.get(message_id)
        return copy.deepcopy(state) if state is not None else None

    def is_generating(self, conversation_id: str) -> bool:
        return bool(self.registry.by_conversation(conversation_id))

    async def wait(self, message_id: str) -> Optional[Message]:
        """
        等待后台生成结束

        生成失败时抛出对应异常；没有对应任务时直接返回当前持久化的消息。
        """
        task = self._tasks.get(message_id)
        if task is None:
            return await self.store.get_message(message_id)
        return await asyncio.shield(task)

    async def recover_interrupted_messages(self) -> int:
        """
        启动恢复

        上次进程遗留的 pending 助手消息视为中断：追加 sessionInterrupted 错误块并标记 error。
        """
        recovered = 0
        for message in await self.store.list_messages_by_status("pending"):
            if message.role != "assistant" or message.id in self.registry:
                continue
            blocks = list(message.blocks)
            for block in blocks:
                if block.is_open:
                    block.status = BlockStatus.ERROR
            blocks.append(
                ErrorBlock(content=ERROR_SESSION_INTERRUPTED, status=BlockStatus.ERROR, timestamp=self._clock())
            )
            await self.store.update_content(message.id, blocks)
            await self.store.update_status(message.id, "error")
            recovered += 1

        if recovered:
            logger.warning(f"⚠️ 已恢复 {recovered} 条中断的消息")
        return recovered

    async def get_search_results(self, message_id: str) -> List[SearchResult]:
        payloads = await self.store.get_attachments(message_id, SEARCH_RESULT_ATTACHMENT)
        results = [SearchResult.model_validate(p) for p in payloads]
        return sorted(results, key=lambda r: r.rank)

    # ============================================================
    # 准备
    # ============================================================

    async def prepare_generation(
        self, conversation_id: str, query_message_id: Optional[str] = None
    ) -> GenerationState:
        """
        创建助手消息和生成状态（不开始流式）

        引用的对话/消息不存在时直接抛出，不创建任何状态。
        """
        conversation = await self._require_conversation(conversation_id)
        settings = conversation.settings
        self._require_backend(settings.provider_id)

        user_message, is_variant = await self._resolve_user_message(conversation_id, query_message_id)

        assistant = await self.store.create_message(
            conversation_id,
            "assistant",
            [],
            parent_id=user_message.id,
            is_variant=is_variant,
            status="pending",
            metadata=MessageMetadata(model=settings.model_id, provider=settings.provider_id),
        )
        state = GenerationState(
            message=assistant,
            conversation_id=conversation_id,
            user_message_id=user_message.id,
            start_time=self._clock(),
            provider_id=settings.provider_id,
            model_id=settings.model_id,
        )
        await self.registry.add(state)

        logger.info(
            f"🚀 创建生成: conversation_id={conversation_id}, message_id={assistant.id}, "
            f"model={settings.provider_id}/{settings.model_id}, variant={is_variant}"
        )
        await self._emit(state, "generation_start", {"parent_id": user_message.id, "is_variant": is_variant})
        return state

    async def _resolve_user_message(
        self, conversation_id: str, query_message_id: Optional[str]
    ) -> Tuple[Message, bool]:
        """返回 (触发本轮的用户消息, 是否生成变体)"""
        if not query_message_id:
            user_message = await self.store.get_last_user_message(conversation_id)
            if user_message is None:
                raise MessageNotFoundError("", f"对话中没有用户消息: {conversation_id}")
            return user_message, False

        query = await self.store.get_message(query_message_id)
        if query is None or query.conversation_id != conversation_id:
            raise MessageNotFoundError(query_message_id)
        if query.role == "user":
            return query, False

        # 重试助手消息：回复同一条用户消息，生成变体
        if not query.parent_id:
            raise MessageNotFoundError(query_message_id, "缺少对应的用户消息")
        user_message = await self.store.get_message(query.parent_id)
        if user_message is None:
            raise MessageNotFoundError(query.parent_id)
        return user_message, True

    async def _require_conversation(self, conversation_id: str) -> Conversation:
        conversation = await self.store.get_conversation(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(conversation_id)
        return conversation

    def _require_backend(self, provider_id: str) -> BaseLLMService:
        return self.backends.get(provider_id)

    # ============================================================
    # 运行
    # ============================================================

    def _spawn(self, message_id: str) -> None:
        task = asyncio.create_task(self.run_generation(message_id), name=f"generation-{message_id}")
        self._tasks[message_id] = task

        def _done(t: asyncio.Task) -> None:
            self._tasks.pop(message_id, None)
            if not t.cancelled():
                # 异常已通过 generation_error 事件上报，这里只标记为已读取
                t.exception()

        task.add_done_callback(_done)

    async def run_generation(self, message_id: str) -> Optional[Message]:
        """
        运行生成直到结束

        用户取消时正常返回；其它失败在记录 error 块后重新抛出。

        Returns:
            最终持久化的助手消息
        """
        state = self.registry.get(message_id)
        if state is None:
            raise GenerationNotFoundError(message_id)

        set_request_context(conversation_id=state.conversation_id, message_id=message_id)
        try:
            with log_execution_time("生成", logger):
                await self._run(state)
        except GenerationCancelledError:
            await self._handle_cancel(state)
        except Exception as e:
            await self._handle_failure(state, e)
            raise
        finally:
            state.phase = GenerationPhase.DONE
            await self.registry.remove(message_id)
            clear_request_context()

        return await self.store.get_message(message_id)

    async def _run(self, state: GenerationState) -> None:
        token = state.token

        # ---------- Preparing ----------
        state.phase = GenerationPhase.PREPARING
        token.raise_if_cancelled()

        conversation = await self._require_conversation(state.conversation_id)
        settings = conversation.settings
        user_message = await self.store.get_message(state.user_message_id)
        if user_message is None:
            raise MessageNotFoundError(state.user_message_id)
        backend = self._require_backend(state.provider_id)

        history = await self._load_history(conversation, user_message)
        payload = user_message.user_content
        search_enabled = await self._resolve_flag(SETTING_WEB_SEARCH, payload.search)
        think_enabled = await self._resolve_flag(SETTING_DEEP_THINKING, payload.think)
        logger.debug(
            f"准备生成: history={len(history)}, search={search_enabled}, think={think_enabled}, "
            f"continue={state.continuation is not None}"
        )

        search_results: Optional[List[SearchResult]] = None
        url_results: List[SearchResult] = []
        if state.continuation is None:
            if search_enabled and self.search_engine is not None:
                token.raise_if_cancelled()
                rewrite_backend, rewrite_model_id = await self._resolve_search_assistant(backend, state.model_id)
                subflow = SearchSubflow(self.store, self.search_engine, self.token_counter, self._clock)
                search_results = await subflow.run(
                    state,
                    conversation,
                    payload.text,
                    history,
                    rewrite_backend,
                    rewrite_model_id,
                    flush=lambda: self._flush(state),
                )
                token.raise_if_cancelled()

            if self.content_enricher is not None:
                url_results = await self._enrich_urls(payload.text)
                token.raise_if_cancelled()

        build = self.prompt_builder.build(
            settings,
            user_message,
            history,
            search_results=search_results,
            url_results=url_results,
            vision=self.vision_resolver(state.model_id),
            continuation=state.continuation,
        )
        await self._update_generation_state(state, build.prompt_tokens)

        # ---------- Streaming ----------
        token.raise_if_cancelled()
        state.phase = GenerationPhase.STREAMING

        stream = backend.stream_completion(
            build.entries,
            state.model_id,
            settings.temperature,
            settings.max_tokens,
            message_id=state.message_id,
        )
        async with aclosing(stream):
            async for event in stream:
                token.raise_if_cancelled()
                outcome = self.processor.apply(state, event)
                if outcome.error is not None:
                    raise BackendStreamError(outcome.error)
                if outcome.search_results:
                    await self._save_search_results(state, outcome.search_results)
                if outcome.content_changed:
                    await self._flush(state)
                if outcome.ended:
                    break

        token.raise_if_cancelled()

        # ---------- Finalizing ----------
        state.phase = GenerationPhase.FINALIZING
        await self._finalize(state)

    async def _load_history(self, conversation: Conversation, user_message: Message) -> List[Message]:
        """触发消息之前的主线消息（条数有界）"""
        history = await self.store.query_history(conversation.id)
        anchor = sort_key(user_message)
        prior = [m for m in history if m.id != user_message.id and sort_key(m) < anchor]
        limit = max(2, math.ceil(conversation.settings.context_length / HISTORY_TOKENS_PER_MESSAGE))
        return prior[-limit:]

    async def _resolve_flag(self, key: str, default: bool) -> bool:
        value = await self.store.get_setting(key)
        return default if value is None else bool(value)

    async def _resolve_search_assistant(
        self, backend: BaseLLMService, model_id: str
    ) -> Tuple[BaseLLMService, str]:
        """搜索词改写模型：配置了 search_assistant 且后端存在时使用它，否则用当前模型"""
        assistant = await self.store.get_setting(SETTING_SEARCH_ASSISTANT)
        if isinstance(assistant, dict):
            provider_id = assistant.get("provider_id")
            assistant_model = assistant.get("model_id")
            if provider_id and assistant_model and provider_id in self.backends:
                return self.backends.get(provider_id), assistant_model
        return backend, model_id

    async def _enrich_urls(self, text: str) -> List[SearchResult]:
        """链接内容补充失败不影响本轮生成"""
        try:
            return await self.content_enricher.extract_and_enrich(text)
        except Exception as e:
            logger.warning(f"⚠️ 链接内容补充失败，继续生成: {e}", exc_info=True)
            return []

    async def _update_generation_state(self, state: GenerationState, prompt_tokens: int) -> None:
        """prompt 构建完成：记录 prompt token，重置计时"""
        state.prompt_tokens = prompt_tokens
        state.start_time = self._clock()
        state.first_token_time = None
        await self.store.update_metadata(
            state.message_id,
            {
                "total_tokens": prompt_tokens,
                "input_tokens": prompt_tokens,
                "model": state.model_id,
                "provider": state.provider_id,
            },
        )

    async def _save_search_results(self, state: GenerationState, results: List[SearchResult]) -> None:
        """工具返回的网页结果保存为附件，ID 记到首位 search 块"""
        block = state.blocks[0] if state.blocks else None
        for result in results:
            attachment_id = await self.store.add_attachment(
                state.message_id, SEARCH_RESULT_ATTACHMENT, result.model_dump(mode="json")
            )
            if isinstance(block, SearchBlock):
                block.attachment_ids.append(attachment_id)

    async def _flush(self, state: GenerationState) -> None:
        """持久化当前内容块并通知调用方"""
        await self.store.update_content(state.message_id, state.blocks)
        await self._emit(state, "content_updated", {"content": dump_blocks(state.blocks)})

    # ============================================================
    # 终止路径
    # ============================================================

    async def _finalize(self, state: GenerationState) -> None:
        close_open_blocks(state)
        if not any(isinstance(b, _RESPONSE_BLOCK_TYPES) for b in state.blocks):
            logger.warning(f"⚠️ 模型没有返回内容: message_id={state.message_id}")
            state.blocks.append(
                ErrorBlock(content=ERROR_NO_MODEL_RESPONSE, status=BlockStatus.ERROR, timestamp=self._clock())
            )

        metadata = build_final_metadata(state, self._clock(), self.token_counter)
        state.message.metadata = metadata
        state.message.status = "sent"

        await self.store.update_content(state.message_id, state.blocks)
        await self.store.update_metadata(state.message_id, metadata.model_dump(mode="json"))
        await self.store.update_status(state.message_id, "sent")

        logger.info(
            f"✅ 生成完成: message_id={state.message_id}, tokens={metadata.input_tokens}+{metadata.output_tokens}, "
            f"time={metadata.generation_time}ms, tps={metadata.tokens_per_second}"
        )
        await self._emit(
            state,
            "generation_end",
            {"content": dump_blocks(state.blocks), "metadata": metadata.model_dump(mode="json")},
        )

    async def _handle_cancel(self, state: GenerationState) -> None:
        state.phase = GenerationPhase.CANCELLING
        close_open_blocks(state)
        state.blocks.append(
            ErrorBlock(content=ERROR_USER_CANCELED, status=BlockStatus.CANCEL, timestamp=self._clock())
        )
        state.message.status = "error"

        # 后端流此时已由 aclosing 关闭，停止请求只在 stop_generation 中发送
        metadata = build_final_metadata(state, self._clock(), self.token_counter)
        try:
            await self.store.update_content(state.message_id, state.blocks)
            await self.store.update_metadata(state.message_id, metadata.model_dump(mode="json"))
            await self.store.update_status(state.message_id, "error")
        except Exception as e:
            # 对话被删除时消息已不存在
            logger.warning(f"⚠️ 保存取消状态失败: message_id={state.message_id}, error={e}")

        logger.info(f"🛑 生成已取消: message_id={state.message_id}")
        await self._emit(state, "generation_cancelled", {"content": dump_blocks(state.blocks)})

    async def _handle_failure(self, state: GenerationState, error: Exception) -> None:
        state.phase = GenerationPhase.FAILING
        logger.error(f"❌ 生成失败: message_id={state.message_id}, error={error}", exc_info=True)

        for block in state.blocks:
            if block.is_open:
                block.status = BlockStatus.ERROR
        state.blocks.append(
            ErrorBlock(
                content=str(error) or ERROR_REQUEST_FAILED,
                status=BlockStatus.ERROR,
                timestamp=self._clock(),
            )
        )
        state.message.status = "error"

        try:
            await self.store.update_content(state.message_id, state.blocks)
            await self.store.update_status(state.message_id, "error")
        except Exception as e:
            logger.error(f"❌ 保存失败状态出错: message_id={state.message_id}, error={e}", exc_info=True)

        await self._emit(state, "generation_error", {"error": str(error), "content": dump_blocks(state.blocks)})

    async def _stop_backend(self, state: GenerationState) -> None:
        try:
            backend = self.backends.get(state.provider_id)
        except BackendNotFoundError:
            return
        try:
            await backend.stop_stream(state.message_id)
        except Exception as e:
            logger.warning(f"⚠️ 停止后端流失败: {e}")

    async def _emit(self, state: GenerationState, event_type: GenerationEventType, data: Dict[str, Any]) -> None:
        await self.sink.emit(
            GenerationEvent(
                type=event_type,
                conversation_id=state.conversation_id,
                message_id=state.message_id,
                data=data,
            )
        )
