"""
本地对话 CRUD 操作

底层使用 SQLite + TEXT(JSON) 存储，时间戳由调用方传入（毫秒）。
"""

from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from infra.local_store.models import LocalConversation, _to_json

# 允许通过 update_conversation 修改的列
_UPDATABLE_FIELDS = {"title", "is_pinned", "is_new"}


async def create_conversation(
    session: AsyncSession,
    now: int,
    title: str = "",
    settings: Optional[Dict[str, Any]] = None,
    conversation_id: Optional[str] = None,
) -> LocalConversation:
    """
    创建对话

    Args:
        session: 数据库会话
        now: 当前时间（毫秒）
        title: 对话标题
        settings: 对话设置
        conversation_id: 可选的对话 ID

    Returns:
        创建的对话对象
    """
    conv = LocalConversation(
        id=conversation_id or str(uuid4()),
        title=title,
        settings_json=_to_json(settings or {}),
        created_at=now,
        updated_at=now,
        is_pinned=False,
        is_new=True,
    )
    session.add(conv)
    await session.commit()
    await session.refresh(conv)
    return conv


async def get_conversation(
    session: AsyncSession,
    conversation_id: str,
) -> Optional[LocalConversation]:
    """获取对话"""
    return await session.get(LocalConversation, conversation_id)


async def update_conversation(
    session: AsyncSession,
    conversation_id: str,
    now: int,
    settings: Optional[Dict[str, Any]] = None,
    **fields: Any,
) -> Optional[LocalConversation]:
    """
    更新对话

    settings 整体覆盖；其它字段只接受 title / is_pinned / is_new。
    """
    conv = await get_conversation(session, conversation_id)
    if not conv:
        return None

    unknown = set(fields) - _UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"不支持更新的对话字段: {sorted(unknown)}")

    for key, value in fields.items():
        setattr(conv, key, value)
    if settings is not None:
        conv.settings_json = _to_json(settings)
    conv.updated_at = now

    await session.commit()
    await session.refresh(conv)
    return conv


async def touch_conversation(session: AsyncSession, conversation_id: str, now: int) -> None:
    """更新 updated_at（不提交）"""
    conv = await session.get(LocalConversation, conversation_id)
    if conv:
        conv.updated_at = now


async def list_conversations(
    session: AsyncSession,
    limit: int = 100,
    offset: int = 0,
) -> List[LocalConversation]:
    """按更新时间倒序（置顶不影响排序，由调用方处理）"""
    query = (
        select(LocalConversation)
        .order_by(LocalConversation.updated_at.desc())
        .limit(limit)
        .offset(offset)
    )
    result = await session.execute(query)
    return list(result.scalars().all())


async def delete_conversation(session: AsyncSession, conversation_id: str) -> bool:
    """删除对话（消息和附件由外键级联删除）"""
    result = await session.execute(
        delete(LocalConversation).where(LocalConversation.id == conversation_id)
    )
    await session.commit()
    return result.rowcount > 0
