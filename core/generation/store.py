"""
消息存储协议

职责：
1. 定义 MessageStore Protocol（编排器依赖的存储接口）
2. 提供 InMemoryMessageStore（进程内实现，用于测试和嵌入场景）

当前实现：
- InMemoryMessageStore（本文件）
- LocalMessageStore（infra/local_store/store.py，SQLite）

所有方法都是异步的；同一进程内读己之写。
"""

import time
import uuid
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional, Protocol

from logger import get_logger
from models.chat import (
    Conversation,
    ConversationSettings,
    Message,
    MessageMetadata,
    MessageStatus,
    UserMessageContent,
)

logger = get_logger("generation.store")


def now_ms() -> int:
    return int(time.time() * 1000)


class MessageStore(Protocol):
    """消息存储协议"""

    # ==================== 对话 ====================

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        ...

    async def create_conversation(
        self, title: str = "", settings: Optional[ConversationSettings] = None
    ) -> Conversation:
        ...

    async def update_conversation(self, conversation_id: str, **fields: Any) -> Conversation:
        """更新对话字段（title / settings / is_new / is_pinned）"""
        ...

    async def list_conversations(self) -> List[Conversation]:
        """按更新时间倒序"""
        ...

    async def delete_conversation(self, conversation_id: str) -> None:
        ...

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
        ...

    async def get_message(self, message_id: str) -> Optional[Message]:
        ...

    async def update_content(self, message_id: str, content: Any) -> None:
        """覆盖写入消息内容（内容块列表或用户载荷）"""
        ...

    async def update_status(self, message_id: str, status: MessageStatus) -> None:
        ...

    async def update_metadata(self, message_id: str, metadata: Dict[str, Any]) -> None:
        """浅合并元数据"""
        ...

    async def add_attachment(self, message_id: str, kind: str, payload: Dict[str, Any]) -> str:
        """追加附件，返回附件 ID"""
        ...

    async def get_attachments(self, message_id: str, kind: str) -> List[Dict[str, Any]]:
        ...

    async def query_history(self, conversation_id: str) -> List[Message]:
        """主线消息（按 created_at、order_seq 排序），变体挂在 variants 下"""
        ...

    async def get_last_user_message(self, conversation_id: str) -> Optional[Message]:
        ...

    async def list_messages_by_status(self, status: MessageStatus) -> List[Message]:
        ...

    async def get_variants(self, message_id: str) -> List[Message]:
        ...

    async def delete_message(self, message_id: str) -> None:
        """删除单条消息及其附件"""
        ...

    async def delete_messages(self, conversation_id: str) -> int:
        """清空对话消息，返回删除条数"""
        ...

    # ==================== 设置 ====================

    async def get_setting(self, key: str) -> Any:
        ...


def sort_key(message: Message):
    return (message.created_at, message.order_seq)


class InMemoryMessageStore:
    """
    内存消息存储

    实现 MessageStore 协议。返回的消息均为副本，
    调用方修改返回值不会影响存储内容。
    """

    def __init__(
        self,
        settings: Optional[Dict[str, Any]] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self._clock = clock
        self._settings: Dict[str, Any] = dict(settings or {})
        self._conversations: Dict[str, Conversation] = {}
        self._messages: Dict[str, Message] = {}
        self._attachments: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        self._seq: Dict[str, int] = defaultdict(int)

    # ==================== 对话 ====================

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        conversation = self._conversations.get(conversation_id)
        return conversation.model_copy(deep=True) if conversation else None

    async def create_conversation(
        self, title: str = "", settings: Optional[ConversationSettings] = None
    ) -> Conversation:
        now = self._clock()
        conversation = Conversation(
            id=str(uuid.uuid4()),
            title=title,
            settings=settings or ConversationSettings(),
            created_at=now,
            updated_at=now,
        )
        self._conversations[conversation.id] = conversation
        return conversation.model_copy(deep=True)

    async def update_conversation(self, conversation_id: str, **fields: Any) -> Conversation:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            raise KeyError(conversation_id)
        updated = conversation.model_copy(update={**fields, "updated_at": self._clock()}, deep=True)
        self._conversations[conversation_id] = Conversation.model_validate(updated.model_dump())
        return self._conversations[conversation_id].model_copy(deep=True)

    async def list_conversations(self) -> List[Conversation]:
        items = sorted(self._conversations.values(), key=lambda c: c.updated_at, reverse=True)
        return [c.model_copy(deep=True) for c in items]

    async def delete_conversation(self, conversation_id: str) -> None:
        self._conversations.pop(conversation_id, None)
        for message_id in [m.id for m in self._messages.values() if m.conversation_id == conversation_id]:
            self._messages.pop(message_id, None)
            self._attachments.pop(message_id, None)

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
        self._seq[conversation_id] += 1
        message = Message(
            id=str(uuid.uuid4()),
            conversation_id=conversation_id,
            parent_id=parent_id,
            role=role,
            order_seq=self._seq[conversation_id],
            created_at=self._clock(),
            status=status,
            content=content,
            metadata=metadata or MessageMetadata(),
            is_variant=is_variant,
        )
        self._messages[message.id] = message
        return message.model_copy(deep=True)

    async def get_message(self, message_id: str) -> Optional[Message]:
        message = self._messages.get(message_id)
        return message.model_copy(deep=True) if message else None

    def _require(self, message_id: str) -> Message:
        message = self._messages.get(message_id)
        if message is None:
            raise KeyError(message_id)
        return message

    async def update_content(self, message_id: str, content: Any) -> None:
        message = self._require(message_id)
        if isinstance(content, UserMessageContent):
            message.content = content.model_copy(deep=True)
        else:
            message.content = [block.model_copy(deep=True) for block in content]

    async def update_status(self, message_id: str, status: MessageStatus) -> None:
        self._require(message_id).status = status

    async def update_metadata(self, message_id: str, metadata: Dict[str, Any]) -> None:
        message = self._require(message_id)
        merged = {**message.metadata.model_dump(), **metadata}
        message.metadata = MessageMetadata.model_validate(merged)

    async def add_attachment(self, message_id: str, kind: str, payload: Dict[str, Any]) -> str:
        attachment_id = str(uuid.uuid4())
        self._attachments[message_id].append({"id": attachment_id, "kind": kind, "payload": dict(payload)})
        return attachment_id

    async def get_attachments(self, message_id: str, kind: str) -> List[Dict[str, Any]]:
        return [dict(a["payload"]) for a in self._attachments.get(message_id, []) if a["kind"] == kind]

    async def query_history(self, conversation_id: str) -> List[Message]:
        messages = [m for m in self._messages.values() if m.conversation_id == conversation_id]
        main_line = sorted((m for m in messages if not m.is_variant), key=sort_key)
        result = []
        for message in main_line:
            item = message.model_copy(deep=True)
            item.variants = [
                v.model_copy(deep=True)
                for v in sorted(messages, key=sort_key)
                if v.is_variant and v.parent_id == message.parent_id and message.role == "assistant"
            ]
            result.append(item)
        return result

    async def get_last_user_message(self, conversation_id: str) -> Optional[Message]:
        users = [
            m for m in self._messages.values()
            if m.conversation_id == conversation_id and m.role == "user"
        ]
        if not users:
            return None
        return max(users, key=sort_key).model_copy(deep=True)

    async def list_messages_by_status(self, status: MessageStatus) -> List[Message]:
        return [
            m.model_copy(deep=True)
            for m in sorted(self._messages.values(), key=sort_key)
            if m.status == status
        ]

    async def get_variants(self, message_id: str) -> List[Message]:
        message = self._messages.get(message_id)
        if message is None:
            return []
        return [
            m.model_copy(deep=True)
            for m in sorted(self._messages.values(), key=sort_key)
            if m.is_variant and m.parent_id == message.parent_id and m.id != message_id
        ]

    async def delete_message(self, message_id: str) -> None:
        self._messages.pop(message_id, None)
        self._attachments.pop(message_id, None)

    async def delete_messages(self, conversation_id: str) -> int:
        message_ids = [m.id for m in self._messages.values() if m.conversation_id == conversation_id]
        for message_id in message_ids:
            await self.delete_message(message_id)
        return len(message_ids)

    # ==================== 设置 ====================

    async def get_setting(self, key: str) -> Any:
        return self._settings.get(key)

    def set_setting(self, key: str, value: Any) -> None:
        self._settings[key] = value
