"""
本地消息 CRUD 操作

底层使用 SQLite + TEXT(JSON) 存储。
order_seq 在同一对话内单调递增，用于同一毫秒内创建的消息排序。
"""

from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from infra.local_store.crud.conversation import touch_conversation
from infra.local_store.models import LocalMessage, _from_json, _to_json


async def _next_order_seq(session: AsyncSession, conversation_id: str) -> int:
    result = await session.execute(
        select(func.max(LocalMessage.order_seq)).where(LocalMessage.conversation_id == conversation_id)
    )
    return (result.scalar() or 0) + 1


async def create_message(
    session: AsyncSession,
    conversation_id: str,
    role: str,
    content: Any,
    now: int,
    parent_id: Optional[str] = None,
    is_variant: bool = False,
    status: str = "pending",
    metadata: Optional[Dict[str, Any]] = None,
    message_id: Optional[str] = None,
) -> LocalMessage:
    """
    创建消息

    Args:
        session: 数据库会话
        conversation_id: 对话 ID
        role: 角色（user/assistant）
        content: 消息内容（用户载荷 dict 或内容块 list）
        now: 当前时间（毫秒）
        parent_id: 父消息 ID（助手消息指向用户消息）
        is_variant: 是否为重试产生的变体
        status: 状态
        metadata: 元数据
        message_id: 消息 ID（可选）

    Returns:
        创建的消息对象
    """
    msg = LocalMessage(
        id=message_id or str(uuid4()),
        conversation_id=conversation_id,
        parent_id=parent_id,
        role=role,
        order_seq=await _next_order_seq(session, conversation_id),
        created_at=now,
        status=status,
        is_variant=is_variant,
        content_json=_to_json(content),
        metadata_json=_to_json(metadata or {}),
    )
    session.add(msg)
    await touch_conversation(session, conversation_id, now)

    await session.commit()
    await session.refresh(msg)
    return msg


async def get_message(
    session: AsyncSession,
    message_id: str,
) -> Optional[LocalMessage]:
    """获取消息"""
    return await session.get(LocalMessage, message_id)


async def update_message(
    session: AsyncSession,
    message_id: str,
    now: int,
    content: Optional[Any] = None,
    status: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Optional[LocalMessage]:
    """
    更新消息

    Args:
        session: 数据库会话
        message_id: 消息 ID
        now: 当前时间（毫秒），用于更新对话的 updated_at
        content: 消息内容（整体覆盖）
        status: 状态
        metadata: 元数据（浅合并）

    Returns:
        更新后的消息对象，不存在时返回 None
    """
    msg = await get_message(session, message_id)
    if not msg:
        return None

    if content is not None:
        msg.content_json = _to_json(content)
    if status is not None:
        msg.status = status
    if metadata is not None:
        existing = _from_json(msg.metadata_json, {})
        existing.update(metadata)
        msg.metadata_json = _to_json(existing)

    await touch_conversation(session, msg.conversation_id, now)

    await session.commit()
    await session.refresh(msg)
    return msg


async def list_messages(
    session: AsyncSession,
    conversation_id: str,
    include_variants: bool = True,
) -> List[LocalMessage]:
    """对话的消息列表（按 created_at、order_seq 正序）"""
    query = select(LocalMessage).where(LocalMessage.conversation_id == conversation_id)
    if not include_variants:
        query = query.where(LocalMessage.is_variant.is_(False))
    query = query.order_by(LocalMessage.created_at.asc(), LocalMessage.order_seq.asc())
    result = await session.execute(query)
    return list(result.scalars().all())


async def get_last_user_message(
    session: AsyncSession,
    conversation_id: str,
) -> Optional[LocalMessage]:
    query = (
        select(LocalMessage)
        .where(LocalMessage.conversation_id == conversation_id, LocalMessage.role == "user")
        .order_by(LocalMessage.created_at.desc(), LocalMessage.order_seq.desc())
        .limit(1)
    )
    result = await session.execute(query)
    return result.scalars().first()


async def list_messages_by_status(
    session: AsyncSession,
    status: str,
) -> List[LocalMessage]:
    query = (
        select(LocalMessage)
        .where(LocalMessage.status == status)
        .order_by(LocalMessage.created_at.asc(), LocalMessage.order_seq.asc())
    )
    result = await session.execute(query)
    return list(result.scalars().all())


async def list_variants(
    session: AsyncSession,
    parent_id: str,
    exclude_id: Optional[str] = None,
) -> List[LocalMessage]:
    """同一父消息下的变体"""
    query = select(LocalMessage).where(
        LocalMessage.parent_id == parent_id,
        LocalMessage.is_variant.is_(True),
    )
    if exclude_id:
        query = query.where(LocalMessage.id != exclude_id)
    query = query.order_by(LocalMessage.created_at.asc(), LocalMessage.order_seq.asc())
    result = await session.execute(query)
    return list(result.scalars().all())


async def delete_message(
    session: AsyncSession,
    message_id: str,
    now: int,
) -> bool:
    """删除单条消息（附件由外键级联删除）"""
    msg = await get_message(session, message_id)
    if not msg:
        return False
    conversation_id = msg.conversation_id
    await session.delete(msg)
    await touch_conversation(session, conversation_id, now)
    await session.commit()
    return True


async def delete_messages(
    session: AsyncSession,
    conversation_id: str,
    now: int,
) -> int:
    """清空对话的全部消息，保留对话本身"""
    result = await session.execute(
        delete(LocalMessage).where(LocalMessage.conversation_id == conversation_id)
    )
    await touch_conversation(session, conversation_id, now)
    await session.commit()
    return result.rowcount
