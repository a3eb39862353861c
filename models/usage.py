"""
Usage 模型 - 后端上报的 Token 使用信息
"""

from pydantic import BaseModel, Field


class UsageTotals(BaseModel):
    """Token 使用统计（后端上报值优先于本地估算）"""

    prompt_tokens: int = Field(0, description="输入 tokens")
    completion_tokens: int = Field(0, description="输出 tokens")
    total_tokens: int = Field(0, description="总 tokens")
