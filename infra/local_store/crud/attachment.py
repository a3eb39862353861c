"""
本地消息附件 CRUD 操作
"""

from typing import Any, Dict, List
from uuid import uuid4

from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession

from infra.local_store.models import LocalAttachment, _to_json


async def create_attachment(
    session: AsyncSession,
    message_id: str,
    kind: str,
    payload: Dict[str, Any],
    now: int,
) -> LocalAttachment:
    """创建附件"""
    attachment = LocalAttachment(
        id=str(uuid4()),
        message_id=message_id,
        kind=kind,
        created_at=now,
        payload_json=_to_json(payload),
    )
    session.add(attachment)
    await session.commit()
    return attachment


async def list_attachments(
    session: AsyncSession,
    message_id: str,
    kind: str,
) -> List[LocalAttachment]:
    """按创建顺序返回附件"""
    query = (
        select(LocalAttachment)
        .where(LocalAttachment.message_id == message_id, LocalAttachment.kind == kind)
        .order_by(LocalAttachment.created_at.asc(), text("attachments.rowid"))
    )
    result = await session.execute(query)
    return list(result.scalars().all())
