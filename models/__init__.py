"""
数据模型包

导出所有 Pydantic 模型
"""

from .chat import (
    ERROR_NO_MODEL_RESPONSE,
    ERROR_REQUEST_FAILED,
    ERROR_SESSION_INTERRUPTED,
    ERROR_USER_CANCELED,
    NON_TERMINAL_STATUSES,
    ActionBlock,
    BlockStatus,
    ContentBlock,
    Conversation,
    ConversationSettings,
    ErrorBlock,
    ImageBlock,
    ImagePayload,
    Message,
    MessageFile,
    MessageMetadata,
    ReasoningBlock,
    SearchBlock,
    SearchResult,
    TextContentBlock,
    ToolCallBlock,
    ToolCallInfo,
    UserMessageContent,
    dump_blocks,
)
from .usage import UsageTotals

__all__ = [
    "ERROR_NO_MODEL_RESPONSE",
    "ERROR_REQUEST_FAILED",
    "ERROR_SESSION_INTERRUPTED",
    "ERROR_USER_CANCELED",
    "NON_TERMINAL_STATUSES",
    "ActionBlock",
    "BlockStatus",
    "ContentBlock",
    "Conversation",
    "ConversationSettings",
    "ErrorBlock",
    "ImageBlock",
    "ImagePayload",
    "Message",
    "MessageFile",
    "MessageMetadata",
    "ReasoningBlock",
    "SearchBlock",
    "SearchResult",
    "TextContentBlock",
    "ToolCallBlock",
    "ToolCallInfo",
    "UserMessageContent",
    "UsageTotals",
    "dump_blocks",
]
