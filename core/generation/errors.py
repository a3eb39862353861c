"""
生成编排异常

用户取消不是错误：GenerationCancelledError 只在编排器内部传播，
最终落为 cancel 状态的块，调用方看到的是正常返回。
"""


class GenerationError(Exception):
    """生成异常基类"""

    pass


class ConversationNotFoundError(GenerationError):
    """对话不存在"""

    def __init__(self, conversation_id: str):
        self.conversation_id = conversation_id
        super().__init__(f"对话不存在: {conversation_id}")


class MessageNotFoundError(GenerationError):
    """消息不存在（或不是预期角色）"""

    def __init__(self, message_id: str, detail: str = ""):
        self.message_id = message_id
        super().__init__(f"消息不存在: {message_id}" + (f"（{detail}）" if detail else ""))


class GenerationNotFoundError(GenerationError):
    """没有对应的活跃生成"""

    def __init__(self, message_id: str):
        self.message_id = message_id
        super().__init__(f"没有活跃的生成: {message_id}")


class ContinueNotAllowedError(GenerationError):
    """消息不处于可继续状态（最后一个 action 块未标记 need_continue）"""

    pass


class BackendStreamError(GenerationError):
    """后端流返回错误事件"""

    def __init__(self, cause: str):
        self.cause = cause
        super().__init__(cause)
