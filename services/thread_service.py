"""
对话线程服务层 - Thread Service

职责：
1. 对话创建与设置管理（合并全局默认值和模型默认参数）
2. 发送消息 / 重试 / 继续 / 停止，委托给 GenerationOrchestrator
3. 保证同一对话同时只有一个活跃生成
4. 对话重命名、清空上下文，消息编辑、删除和变体查询
5. 对话标题生成

设计原则：
- Service 层只通过 MessageStore 读写数据
- 生成流程全部由编排器负责，这里只做前置校验和参数组装
"""

import asyncio
from typing import Any, Dict, List, Optional, Tuple

from config.model_configs import get_model_config
from core.generation.errors import ConversationNotFoundError, MessageNotFoundError
from core.generation.orchestrator import GenerationOrchestrator
from core.generation.store import MessageStore
from core.llm.base import ChatEntry
from core.prompt.builder import format_history_entry
from logger import get_logger
from models.chat import (
    Conversation,
    ConversationSettings,
    Message,
    MessageFile,
    UserMessageContent,
)
from services.settings_service import SettingsService

logger = get_logger("thread_service")

# 标题生成使用的历史消息条数
TITLE_CONTEXT_MESSAGES = 4


class ThreadServiceError(Exception):
    """线程服务异常基类"""

    pass


class ConversationBusyError(ThreadServiceError):
    """对话已有活跃生成"""

    def __init__(self, conversation_id: str):
        self.conversation_id = conversation_id
        super().__init__(f"对话正在生成中: {conversation_id}")


class ThreadService:
    """
    对话线程服务

    使用示例：
    ```python
    service = ThreadService(store, orchestrator, settings=get_settings_service())
    conv = await service.create_conversation()
    user_msg, assistant_msg = await service.send_message(conv.id, "你好")
    final = await service.wait_for(assistant_msg.id)
    ```
    """

    def __init__(
        self,
        store: MessageStore,
        orchestrator: GenerationOrchestrator,
        settings: Optional[SettingsService] = None,
    ):
        self.store = store
        self.orchestrator = orchestrator
        self.settings = settings
        self._start_lock = asyncio.Lock()

    # ==================== 对话 ====================

    async def _default_settings(self) -> ConversationSettings:
        """全局默认设置 + 模型默认参数"""
        defaults = ConversationSettings()
        if self.settings is not None:
            default_model = await self.settings.get_setting("default_model", {})
            if isinstance(default_model, dict):
                defaults.provider_id = default_model.get("provider_id") or defaults.provider_id
                defaults.model_id = default_model.get("model_id") or defaults.model_id
            defaults.system_prompt = await self.settings.get_setting("default_system_prompt", "")
        return self._apply_model_defaults(defaults, defaults.model_id)

    @staticmethod
    def _apply_model_defaults(settings: ConversationSettings, model_id: str) -> ConversationSettings:
        config = get_model_config(model_id)
        return settings.model_copy(
            update={
                "context_length": config.context_length,
                "max_tokens": config.max_tokens,
                "temperature": config.temperature,
            }
        )

    async def create_conversation(
        self,
        title: str = "",
        settings: Optional[Dict[str, Any]] = None,
    ) -> Conversation:
        """
        创建对话

        最近一个对话还没有任何消息时直接复用它（只更新设置），避免产生空对话。

        Args:
            title: 标题
            settings: 覆盖的设置项（其余使用默认值）
        """
        overrides = settings or {}
        merged = await self._default_settings()
        if "model_id" in overrides:
            merged = self._apply_model_defaults(merged, overrides["model_id"])
        merged = ConversationSettings.model_validate({**merged.model_dump(), **overrides})

        conversations = await self.store.list_conversations()
        if conversations:
            latest = conversations[0]
            if not await self.store.query_history(latest.id):
                logger.info(f"♻️ 复用空对话: {latest.id}")
                return await self.store.update_conversation(latest.id, title=title, settings=merged)

        conversation = await self.store.create_conversation(title=title, settings=merged)
        logger.info(f"✅ 对话创建成功: id={conversation.id}, model={merged.provider_id}/{merged.model_id}")
        return conversation

    async def get_conversation(self, conversation_id: str) -> Conversation:
        conversation = await self.store.get_conversation(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(conversation_id)
        return conversation

    async def update_conversation_settings(self, conversation_id: str, **updates: Any) -> Conversation:
        """
        更新对话设置

        切换模型时重新套用该模型的默认参数（本次显式传入的项除外）。
        """
        conversation = await self.get_conversation(conversation_id)
        current = conversation.settings

        model_id = updates.get("model_id")
        if model_id and model_id != current.model_id:
            current = self._apply_model_defaults(current, model_id)

        merged = ConversationSettings.model_validate({**current.model_dump(), **updates})
        return await self.store.update_conversation(conversation_id, settings=merged)

    async def delete_conversation(self, conversation_id: str) -> None:
        await self.orchestrator.stop_all_generations(conversation_id)
        await self.store.delete_conversation(conversation_id)

    async def get_messages(self, conversation_id: str) -> List[Message]:
        """主线消息（变体挂在 variants 下）"""
        await self.get_conversation(conversation_id)
        return await self.store.query_history(conversation_id)

    async def rename_conversation(self, conversation_id: str, title: str) -> Conversation:
        await self.get_conversation(conversation_id)
        return await self.store.update_conversation(conversation_id, title=title)

    async def clear_context(self, conversation_id: str) -> int:
        """停止活跃生成并清空消息，保留对话和设置"""
        await self.get_conversation(conversation_id)
        await self.orchestrator.stop_all_generations(conversation_id)
        removed = await self.store.delete_messages(conversation_id)
        logger.info(f"🧹 已清空对话上下文: conversation_id={conversation_id}, messages={removed}")
        return removed

    # ==================== 消息 ====================

    async def edit_message(self, message_id: str, text: str) -> Message:
        """修改用户消息文本（附件和开关保持不变）"""
        message = await self._require_message(message_id)
        if message.role != "user":
            raise ThreadServiceError(f"只能编辑用户消息: {message_id}")
        content = message.user_content.model_copy(update={"text": text})
        await self.store.update_content(message_id, content)
        return await self._require_message(message_id)

    async def delete_message(self, message_id: str) -> None:
        """删除消息；正在生成的消息先停止"""
        await self._require_message(message_id)
        if await self.orchestrator.stop_generation(message_id):
            await self.orchestrator.wait(message_id)
        await self.store.delete_message(message_id)

    async def get_message_variants(self, message_id: str) -> List[Message]:
        """同一用户消息下的其它回复变体"""
        await self._require_message(message_id)
        return await self.store.get_variants(message_id)

    # ==================== 生成 ====================

    def _ensure_idle(self, conversation_id: str) -> None:
        if self.orchestrator.is_generating(conversation_id):
            raise ConversationBusyError(conversation_id)

    async def send_message(
        self,
        conversation_id: str,
        text: str,
        files: Optional[List[MessageFile]] = None,
        search: bool = False,
        think: bool = False,
    ) -> Tuple[Message, Message]:
        """
        发送用户消息并开始生成

        Returns:
            (用户消息, 助手消息)

        Raises:
            ConversationNotFoundError: 对话不存在
            ConversationBusyError: 对话已有活跃生成
        """
        conversation = await self.get_conversation(conversation_id)

        async with self._start_lock:
            self._ensure_idle(conversation_id)

            content = UserMessageContent(text=text, files=files or [], search=search, think=think)
            user_message = await self.store.create_message(conversation_id, "user", content, status="sent")
            if conversation.is_new:
                await self.store.update_conversation(conversation_id, is_new=False)

            assistant = await self.orchestrator.start_generation(conversation_id)

        logger.info(f"📨 消息已发送: conversation_id={conversation_id}, user={user_message.id}, assistant={assistant.id}")
        return user_message, assistant

    async def retry_message(self, message_id: str) -> Message:
        """重新生成助手消息（产生变体）"""
        message = await self._require_message(message_id)
        async with self._start_lock:
            self._ensure_idle(message.conversation_id)
            return await self.orchestrator.start_generation(message.conversation_id, message_id)

    async def continue_message(self, conversation_id: str, message_id: str) -> Message:
        """工具调用次数达到上限后继续生成"""
        async with self._start_lock:
            self._ensure_idle(conversation_id)
            return await self.orchestrator.continue_generation(conversation_id, message_id)

    async def stop_message(self, message_id: str) -> bool:
        return await self.orchestrator.stop_generation(message_id)

    async def stop_conversation(self, conversation_id: str) -> int:
        return await self.orchestrator.stop_all_generations(conversation_id)

    async def wait_for(self, message_id: str) -> Optional[Message]:
        return await self.orchestrator.wait(message_id)

    async def _require_message(self, message_id: str) -> Message:
        message = await self.store.get_message(message_id)
        if message is None:
            raise MessageNotFoundError(message_id)
        return message

    # ==================== 标题 ====================

    async def summarize_title(self, conversation_id: str) -> str:
        """
        根据最近几轮对话生成标题并保存

        生成失败时保留原标题。
        """
        conversation = await self.get_conversation(conversation_id)
        history = await self.store.query_history(conversation_id)

        entries: List[ChatEntry] = []
        for message in history[-TITLE_CONTEXT_MESSAGES:]:
            entry = format_history_entry(message)
            if entry is not None:
                entries.append(entry)
        if not entries:
            return conversation.title

        backend = self.orchestrator.backends.get(conversation.settings.provider_id)
        try:
            title = await backend.summary_title(entries, conversation.settings.model_id)
        except Exception as e:
            logger.warning(f"⚠️ 标题生成失败，保留原标题: {e}")
            return conversation.title

        title = title.strip().strip('"').strip()
        if not title:
            return conversation.title
        await self.store.update_conversation(conversation_id, title=title)
        logger.info(f"🏷️ 标题已更新: conversation_id={conversation_id}, title={title!r}")
        return title
