"""
文件上下文

把用户消息附带的文件渲染为文本上下文，图片文件单独走多模态通道。
"""

import re
from typing import Iterable, List

from models.chat import MessageFile

_IMAGE_EXT_RE = re.compile(r"\.(jpg|jpeg|png|gif|bmp|webp|svg)$", re.IGNORECASE)

# 图片没有 token 信息时的固定成本
DEFAULT_IMAGE_TOKENS = 1600


def is_image_file(file: MessageFile) -> bool:
    """按 MIME 类型或扩展名判断图片"""
    if file.mime_type and file.mime_type.startswith("image/"):
        return True
    return bool(_IMAGE_EXT_RE.search(file.name or ""))


def split_files(files: Iterable[MessageFile]) -> tuple[List[MessageFile], List[MessageFile]]:
    """拆分为 (非图片文件, 图片文件)"""
    documents: List[MessageFile] = []
    images: List[MessageFile] = []
    for file in files:
        (images if is_image_file(file) else documents).append(file)
    return documents, images


def get_file_context(files: Iterable[MessageFile]) -> str:
    """
    文件文本上下文

    没有文件时返回空字符串；否则返回：

    <files>
    <file>
    <name>a.txt</name>
    <mime_type>text/plain</mime_type>
    <content>...</content>
    </file>
    </files>
    """
    files = list(files)
    if not files:
        return ""
    parts = ["\n<files>"]
    for file in files:
        parts.append(
            "<file>\n"
            f"<name>{file.name}</name>\n"
            f"<mime_type>{file.mime_type}</mime_type>\n"
            f"<content>{file.content}</content>\n"
            "</file>"
        )
    parts.append("</files>")
    return "\n".join(parts)


def image_token_cost(files: Iterable[MessageFile]) -> int:
    return sum(file.token or DEFAULT_IMAGE_TOKENS for file in files)
