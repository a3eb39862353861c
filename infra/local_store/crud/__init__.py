"""
本地存储 CRUD 操作

底层使用 SQLite，每个函数接收 AsyncSession，写操作自行提交。
"""

from infra.local_store.crud.attachment import create_attachment, list_attachments
from infra.local_store.crud.conversation import (
    create_conversation,
    delete_conversation,
    get_conversation,
    list_conversations,
    touch_conversation,
    update_conversation,
)
from infra.local_store.crud.message import (
    create_message,
    delete_message,
    delete_messages,
    get_last_user_message,
    get_message,
    list_messages,
    list_messages_by_status,
    list_variants,
    update_message,
)

__all__ = [
    # 对话
    "create_conversation",
    "get_conversation",
    "update_conversation",
    "touch_conversation",
    "list_conversations",
    "delete_conversation",
    # 消息
    "create_message",
    "get_message",
    "update_message",
    "list_messages",
    "get_last_user_message",
    "list_messages_by_status",
    "list_variants",
    "delete_message",
    "delete_messages",
    # 附件
    "create_attachment",
    "list_attachments",
]
