"""
SQLite 消息存储

LocalMessageStore 实现 core.generation.store.MessageStore 协议，
ORM 行与 models.chat 的 pydantic 模型在这里互相转换。
设置项委托给 settings provider（通常是 SettingsService）。
"""

import time
from typing import Any, Callable, Dict, List, Optional, Protocol

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from infra.local_store import crud
from infra.local_store.models import LocalConversation, LocalMessage
from logger import get_logger
from models.chat import (
    Conversation,
    ConversationSettings,
    Message,
    MessageMetadata,
    MessageStatus,
    UserMessageContent,
)

logger = get_logger("local_store.store")


def _now_ms() -> int:
    return int(time.time() * 1000)


class SettingsProvider(Protocol):
    async def get_setting(self, key: str) -> Any:
        ...


def _dump_content(content: Any) -> Any:
    """内容 → 可 JSON 序列化的结构"""
    if isinstance(content, UserMessageContent):
        return content.model_dump(mode="json")
    if isinstance(content, list):
        return [b.model_dump(mode="json") if hasattr(b, "model_dump") else b for b in content]
    return content


def _to_conversation(row: LocalConversation) -> Conversation:
    return Conversation(
        id=row.id,
        title=row.title,
        settings=ConversationSettings.model_validate(row.settings),
        created_at=row.created_at,
        updated_at=row.updated_at,
        is_pinned=row.is_pinned,
        is_new=row.is_new,
    )


def _to_message(row: LocalMessage) -> Message:
    content = row.content
    if row.role == "user":
        content = UserMessageContent.model_validate(content if isinstance(content, dict) else {})
    elif not isinstance(content, list):
        content = []
    return Message.model_validate(
        {
            "id": row.id,
            "conversation_id": row.conversation_id,
            "parent_id": row.parent_id,
            "role": row.role,
            "order_seq": row.order_seq,
            "created_at": row.created_at,
            "status": row.status,
            "content": content,
            "metadata": row.extra_data,
            "is_variant": row.is_variant,
        }
    )


class LocalMessageStore:
    """
    SQLite 消息存储

    使用示例：
    ```python
    engine = create_local_engine(db_dir="/tmp/threadloom")
    await init_local_database(engine)
    store = LocalMessageStore(create_local_session_factory(engine), settings=settings_service)
    ```
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Optional[SettingsProvider] = None,
        clock: Callable[[], int] = _now_ms,
    ):
        self._session_factory = session_factory
        self._settings = settings
        self._clock = clock

    # ==================== 对话 ====================

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        async with self._session_factory() as session:
            row = await crud.get_conversation(session, conversation_id)
            return _to_conversation(row) if row else None

    async def create_conversation(
        self, title: str = "", settings: Optional[ConversationSettings] = None
    ) -> Conversation:
        settings = settings or ConversationSettings()
        async with self._session_factory() as session:
            row = await crud.create_conversation(
                session, self._clock(), title=title, settings=settings.model_dump(mode="json")
            )
            logger.debug(f"对话已创建: {row.id}")
            return _to_conversation(row)

    async def update_conversation(self, conversation_id: str, **fields: Any) -> Conversation:
        settings = fields.pop("settings", None)
        if isinstance(settings, ConversationSettings):
            settings = settings.model_dump(mode="json")
        async with self._session_factory() as session:
            row = await crud.update_conversation(
                session, conversation_id, self._clock(), settings=settings, **fields
            )
            if row is None:
                raise KeyError(conversation_id)
            return _to_conversation(row)

    async def list_conversations(self) -> List[Conversation]:
        async with self._session_factory() as session:
            rows = await crud.list_conversations(session)
            return [_to_conversation(r) for r in rows]

    async def delete_conversation(self, conversation_id: str) -> None:
        async with self._session_factory() as session:
            await crud.delete_conversation(session, conversation_id)

    # ==================== 消息 ====================

    async def create_message(
        self,
        conversation_id: str,
        role: str,
        content: Any,
        parent_id: Optional[str] = None,
        is_variant: bool = False,
        status: MessageStatus = "pending",
        metadata: Optional[MessageMetadata] = None,
    ) -> Message:
        async with self._session_factory() as session:
            row = await crud.create_message(
                session,
                conversation_id,
                role,
                _dump_content(content),
                self._clock(),
                parent_id=parent_id,
                is_variant=is_variant,
                status=status,
                metadata=(metadata or MessageMetadata()).model_dump(mode="json"),
            )
            return _to_message(row)

    async def get_message(self, message_id: str) -> Optional[Message]:
        async with self._session_factory() as session:
            row = await crud.get_message(session, message_id)
            return _to_message(row) if row else None

    async def _update(self, message_id: str, **kwargs: Any) -> None:
        async with self._session_factory() as session:
            row = await crud.update_message(session, message_id, self._clock(), **kwargs)
            if row is None:
                raise KeyError(message_id)

    async def update_content(self, message_id: str, content: Any) -> None:
        await self._update(message_id, content=_dump_content(content))

    async def update_status(self, message_id: str, status: MessageStatus) -> None:
        await self._update(message_id, status=status)

    async def update_metadata(self, message_id: str, metadata: Dict[str, Any]) -> None:
        await self._update(message_id, metadata=metadata)

    async def add_attachment(self, message_id: str, kind: str, payload: Dict[str, Any]) -> str:
        async with self._session_factory() as session:
            attachment = await crud.create_attachment(session, message_id, kind, payload, self._clock())
            return attachment.id

    async def get_attachments(self, message_id: str, kind: str) -> List[Dict[str, Any]]:
        async with self._session_factory() as session:
            rows = await crud.list_attachments(session, message_id, kind)
            return [r.payload for r in rows]

    async def query_history(self, conversation_id: str) -> List[Message]:
        async with self._session_factory() as session:
            rows = await crud.list_messages(session, conversation_id)

        messages = [_to_message(r) for r in rows]
        variants = [m for m in messages if m.is_variant]
        main_line = [m for m in messages if not m.is_variant]
        for message in main_line:
            if message.role == "assistant":
                message.variants = [v for v in variants if v.parent_id == message.parent_id]
        return main_line

    async def get_last_user_message(self, conversation_id: str) -> Optional[Message]:
        async with self._session_factory() as session:
            row = await crud.get_last_user_message(session, conversation_id)
            return _to_message(row) if row else None

    async def list_messages_by_status(self, status: MessageStatus) -> List[Message]:
        async with self._session_factory() as session:
            rows = await crud.list_messages_by_status(session, status)
            return [_to_message(r) for r in rows]

    async def get_variants(self, message_id: str) -> List[Message]:
        async with self._session_factory() as session:
            row = await crud.get_message(session, message_id)
            if row is None or not row.parent_id:
                return []
            rows = await crud.list_variants(session, row.parent_id, exclude_id=message_id)
            return [_to_message(r) for r in rows]

    async def delete_message(self, message_id: str) -> None:
        async with self._session_factory() as session:
            await crud.delete_message(session, message_id, self._clock())

    async def delete_messages(self, conversation_id: str) -> int:
        async with self._session_factory() as session:
            return await crud.delete_messages(session, conversation_id, self._clock())

    # ==================== 设置 ====================

    async def get_setting(self, key: str) -> Any:
        if self._settings is None:
            return None
        return await self._settings.get_setting(key)
