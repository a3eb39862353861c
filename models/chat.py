"""
对话数据模型

包含：
- 对话与对话设置（Conversation, ConversationSettings）
- 消息内容块（ContentBlock 联合类型，按 type 字段区分）
- 用户消息载荷（UserMessageContent, MessageFile）
- 消息与元数据（Message, MessageMetadata）
- 搜索结果（SearchResult）

时间戳统一使用毫秒（epoch ms）。
"""

from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field


# ============================================================
# 错误标记（前端按 key 本地化显示）
# ============================================================

ERROR_NO_MODEL_RESPONSE = "common.error.noModelResponse"
ERROR_USER_CANCELED = "common.error.userCanceledGeneration"
ERROR_SESSION_INTERRUPTED = "common.error.sessionInterrupted"
ERROR_REQUEST_FAILED = "common.error.requestFailed"


# ============================================================
# 对话
# ============================================================


class ConversationSettings(BaseModel):
    """对话设置"""

    system_prompt: str = Field("", description="系统提示词")
    temperature: float = Field(0.7, description="温度参数")
    max_tokens: int = Field(2000, description="最大输出 token 数")
    context_length: int = Field(1000, description="上下文窗口预算（token）")
    provider_id: str = Field("openai", description="后端 ID")
    model_id: str = Field("gpt-4o", description="模型 ID")
    artifacts: int = Field(0, description="Artifacts 模式（0 关闭 / 1 开启）")


class Conversation(BaseModel):
    """对话"""

    id: str
    title: str = ""
    settings: ConversationSettings = Field(default_factory=ConversationSettings)
    created_at: int = 0
    updated_at: int = 0
    is_pinned: bool = False
    is_new: bool = True


# ============================================================
# Content Block 模型（助手消息内容块）
# ============================================================


class BlockStatus(str, Enum):
    """内容块状态"""

    LOADING = "loading"
    OPTIMIZING = "optimizing"
    READING = "reading"
    SUCCESS = "success"
    ERROR = "error"
    CANCEL = "cancel"


# 非终态：同一条消息内同一时刻最多一个块处于这些状态
NON_TERMINAL_STATUSES = frozenset({BlockStatus.LOADING, BlockStatus.OPTIMIZING, BlockStatus.READING})


class _BlockBase(BaseModel):
    status: BlockStatus = BlockStatus.LOADING
    timestamp: int = 0

    @property
    def is_open(self) -> bool:
        return self.status in NON_TERMINAL_STATUSES


class TextContentBlock(_BlockBase):
    """正文块"""

    type: Literal["content"] = "content"
    content: str = ""


class ReasoningBlock(_BlockBase):
    """推理过程块"""

    type: Literal["reasoning_content"] = "reasoning_content"
    content: str = ""


class ToolCallInfo(BaseModel):
    """工具调用描述"""

    id: Optional[str] = None
    name: Optional[str] = None
    params: Optional[str] = Field(None, description="序列化后的参数")
    server_name: Optional[str] = None
    server_description: Optional[str] = None
    response: Optional[str] = None


class ToolCallBlock(_BlockBase):
    """
    工具调用块

    tool-call-start 时以 loading 打开，tool-call-end / tool-call-error
    时按 id（优先）或 name 匹配并关闭。
    """

    type: Literal["tool_call"] = "tool_call"
    content: str = ""
    tool_call: ToolCallInfo = Field(default_factory=ToolCallInfo)


class ImagePayload(BaseModel):
    data: str
    mime_type: str = "image/png"


class ImageBlock(_BlockBase):
    """图片块（内联数据）"""

    type: Literal["image"] = "image"
    content: str = "image"
    image_data: ImagePayload


class SearchBlock(_BlockBase):
    """搜索块，始终位于内容列表首位"""

    type: Literal["search"] = "search"
    content: str = ""
    total: int = 0
    attachment_ids: List[str] = Field(default_factory=list)


class ActionBlock(_BlockBase):
    """
    动作块

    目前只有 maxToolCallsReached：工具调用次数达到上限，
    need_continue=True 表示可通过 continue 重新进入生成。
    """

    type: Literal["action"] = "action"
    content: str = ""
    action_type: str = "maxToolCallsReached"
    tool_call: Optional[ToolCallInfo] = None
    need_continue: bool = True


class ErrorBlock(_BlockBase):
    """错误块（content 为错误标记或错误信息）"""

    type: Literal["error"] = "error"
    content: str = ""


# Content Block 联合类型（按 type 判别）
ContentBlock = Annotated[
    Union[
        TextContentBlock,
        ReasoningBlock,
        ToolCallBlock,
        ImageBlock,
        SearchBlock,
        ActionBlock,
        ErrorBlock,
    ],
    Field(discriminator="type"),
]


# ============================================================
# 用户消息载荷
# ============================================================


class MessageFile(BaseModel):
    """用户消息附带的文件"""

    name: str
    path: str = ""
    mime_type: str = ""
    content: str = Field("", description="文件文本内容或图片 data URL")
    token: int = Field(0, description="文件 token 数（图片为固定成本）")


class UserMessageContent(BaseModel):
    """用户消息内容"""

    text: str = ""
    files: List[MessageFile] = Field(default_factory=list)
    search: bool = False
    think: bool = False


# ============================================================
# 消息
# ============================================================


class MessageMetadata(BaseModel):
    """
    消息元数据（均为派生值）

    时间单位为毫秒，reasoning_start_time / reasoning_end_time
    为相对生成开始的偏移量。
    """

    total_tokens: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    generation_time: int = 0
    first_token_time: int = 0
    tokens_per_second: float = 0.0
    reasoning_start_time: Optional[int] = None
    reasoning_end_time: Optional[int] = None
    model: Optional[str] = None
    provider: Optional[str] = None


MessageRole = Literal["user", "assistant"]
MessageStatus = Literal["pending", "sent", "error"]


class Message(BaseModel):
    """
    消息

    用户消息的 content 为 UserMessageContent，
    助手消息的 content 为内容块列表。
    """

    id: str
    conversation_id: str
    parent_id: Optional[str] = None
    role: MessageRole
    order_seq: int = 0
    created_at: int = 0
    status: MessageStatus = "pending"
    content: Union[UserMessageContent, List[ContentBlock]] = Field(default_factory=list)
    metadata: MessageMetadata = Field(default_factory=MessageMetadata)
    is_variant: bool = False
    variants: List["Message"] = Field(default_factory=list)

    @property
    def user_content(self) -> UserMessageContent:
        if isinstance(self.content, UserMessageContent):
            return self.content
        return UserMessageContent()

    @property
    def blocks(self) -> List[Any]:
        if isinstance(self.content, list):
            return self.content
        return []


# ============================================================
# 搜索结果
# ============================================================


class SearchResult(BaseModel):
    """搜索结果"""

    title: str = ""
    url: str = ""
    content: str = ""
    description: str = ""
    icon: str = ""
    rank: int = 0


def dump_blocks(blocks: List[Any]) -> List[Dict[str, Any]]:
    """序列化内容块列表（用于持久化）"""
    return [block.model_dump(mode="json") for block in blocks]
