"""
本地存储层（100% 本地）

SQLite 保存对话、消息和消息附件：

┌────────────────────────────────────────────────┐
│                存储层（SQLite）                  │
│  ┌─────────────┐ ┌─────────────┐ ┌──────────┐  │
│  │ conversations│ │ messages    │ │attachments│ │
│  └─────────────┘ └─────────────┘ └──────────┘  │
└────────────────────────────────────────────────┘

使用入口：
    from infra.local_store import create_local_message_store

    store = await create_local_message_store(settings=settings_service)
    conv = await store.create_conversation(title="新对话")
"""

from typing import Optional

# 引擎（高级用法 / 测试）
from infra.local_store.engine import (
    close_local_engine,
    create_local_engine,
    create_local_session_factory,
    get_local_engine,
    get_local_session_factory,
    init_local_database,
)

# 模型
from infra.local_store.models import (
    LocalAttachment,
    LocalBase,
    LocalConversation,
    LocalMessage,
)

# 消息存储
from infra.local_store.store import LocalMessageStore, SettingsProvider


async def create_local_message_store(
    settings: Optional[SettingsProvider] = None,
    db_dir: Optional[str] = None,
) -> LocalMessageStore:
    """
    创建 SQLite 消息存储

    db_dir 为空时使用全局引擎（用户数据目录下的 db/threadloom.db）。
    """
    if db_dir is None:
        factory = await get_local_session_factory()
    else:
        engine = create_local_engine(db_dir=db_dir)
        await init_local_database(engine)
        factory = create_local_session_factory(engine)
    return LocalMessageStore(factory, settings=settings)


__all__ = [
    # 引擎
    "create_local_engine",
    "create_local_session_factory",
    "init_local_database",
    "get_local_engine",
    "get_local_session_factory",
    "close_local_engine",
    # 模型
    "LocalBase",
    "LocalConversation",
    "LocalMessage",
    "LocalAttachment",
    # 存储
    "LocalMessageStore",
    "SettingsProvider",
    "create_local_message_store",
]
