"""
SQLite 本地存储表模型

- 不使用 JSONB → 使用 TEXT + JSON 序列化
- 时间戳统一为毫秒整数（与 models.chat 一致）
"""

import json
from typing import Any, Dict, Optional

from sqlalchemy import Boolean, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class LocalBase(DeclarativeBase):
    """SQLite 专用声明式基类"""
    pass


# ==================== JSON 辅助 ====================


def _to_json(value: Any) -> str:
    """Python 对象 → JSON 字符串"""
    if value is None:
        return "{}"
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False)


def _from_json(value: Optional[str], default: Any = None) -> Any:
    """JSON 字符串 → Python 对象"""
    if value is None:
        return default if default is not None else {}
    if isinstance(value, (dict, list)):
        return value
    try:
        return json.loads(value)
    except (json.JSONDecodeError, TypeError):
        return default if default is not None else {}


# ==================== 对话表 ====================


class LocalConversation(LocalBase):
    """本地对话表（settings 存储为 TEXT JSON）"""

    __tablename__ = "conversations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    title: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    settings_json: Mapped[str] = mapped_column("settings", Text, nullable=False, default="{}")
    created_at: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[int] = mapped_column(Integer, nullable=False, default=0, index=True)
    is_pinned: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_new: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    messages: Mapped[list["LocalMessage"]] = relationship(
        back_populates="conversation",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    @property
    def settings(self) -> Dict[str, Any]:
        return _from_json(self.settings_json, {})

    @settings.setter
    def settings(self, value: Dict[str, Any]):
        self.settings_json = _to_json(value)

    def __repr__(self) -> str:
        return f"<LocalConversation(id={self.id}, title={self.title})>"


# ==================== 消息表 ====================


class LocalMessage(LocalBase):
    """
    本地消息表

    content 格式：
    - 用户消息: {"text": "...", "files": [...], "search": false, "think": false}
    - 助手消息: [{"type": "content", "content": "...", "status": "success", ...}, ...]
    """

    __tablename__ = "messages"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    conversation_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    parent_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    role: Mapped[str] = mapped_column(String(20), nullable=False)
    order_seq: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending", index=True)
    is_variant: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    content_json: Mapped[str] = mapped_column("content", Text, nullable=False, default="[]")
    metadata_json: Mapped[str] = mapped_column("metadata", Text, nullable=False, default="{}")

    conversation: Mapped["LocalConversation"] = relationship(back_populates="messages")
    attachments: Mapped[list["LocalAttachment"]] = relationship(
        back_populates="message",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        Index("idx_local_msg_conv_order", "conversation_id", "created_at", "order_seq"),
    )

    @property
    def content(self) -> Any:
        return _from_json(self.content_json, [])

    @content.setter
    def content(self, value: Any):
        self.content_json = _to_json(value)

    @property
    def extra_data(self) -> Dict[str, Any]:
        return _from_json(self.metadata_json, {})

    @extra_data.setter
    def extra_data(self, value: Dict[str, Any]):
        self.metadata_json = _to_json(value)

    def __repr__(self) -> str:
        return f"<LocalMessage(id={self.id}, role={self.role}, status={self.status})>"


# ==================== 附件表 ====================


class LocalAttachment(LocalBase):
    """
    消息附件表

    kind 区分附件类型（目前为 search_result），payload 为 JSON。
    """

    __tablename__ = "attachments"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    message_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("messages.id", ondelete="CASCADE"),
        nullable=False,
    )
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    created_at: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    payload_json: Mapped[str] = mapped_column("payload", Text, nullable=False, default="{}")

    message: Mapped["LocalMessage"] = relationship(back_populates="attachments")

    __table_args__ = (
        Index("idx_local_attachment_msg_kind", "message_id", "kind"),
    )

    @property
    def payload(self) -> Dict[str, Any]:
        return _from_json(self.payload_json, {})

    def __repr__(self) -> str:
        return f"<LocalAttachment(id={self.id}, kind={self.kind})>"
