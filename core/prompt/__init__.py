"""
Prompt 模块

- builder.py: 上下文预算与消息格式化
- templates.py: 搜索 / Artifacts / 改写 / 继续生成提示词
- file_context.py: 文件上下文
- content_enricher.py: URL 内容补充
"""

from core.prompt.builder import (
    PromptBuilder,
    PromptBuildResult,
    merge_consecutive_entries,
    select_context_messages,
)
from core.prompt.content_enricher import ContentEnricher
from core.prompt.file_context import get_file_context, is_image_file

__all__ = [
    "PromptBuilder",
    "PromptBuildResult",
    "merge_consecutive_entries",
    "select_context_messages",
    "ContentEnricher",
    "get_file_context",
    "is_image_file",
]
