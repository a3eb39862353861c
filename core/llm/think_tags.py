"""
<think> 标签拆分

部分 OpenAI 兼容模型把推理过程内联在正文中：

    <think>推理过程</think>最终回答

流式输出时标签可能被拆在多个 chunk 之间，这里用滑动缓冲区处理：
缓冲区末尾可能是标签前缀的部分暂不输出，等下一个 chunk 再判断。

只有结束标签没有开始标签时（部分模型省略开头的 <think>），
结束标签之前的内容按推理内容处理。
"""

from typing import List, Literal, Tuple

THINK_OPEN = "<think>"
THINK_CLOSE = "</think>"

SegmentKind = Literal["content", "reasoning"]
Segment = Tuple[SegmentKind, str]


def _partial_tag_suffix(buffer: str, tags: Tuple[str, ...]) -> int:
    """返回缓冲区末尾可能是某个标签前缀的长度"""
    longest = 0
    for tag in tags:
        for size in range(min(len(tag) - 1, len(buffer)), 0, -1):
            if tag.startswith(buffer[-size:]):
                longest = max(longest, size)
                break
    return longest


class ThinkTagSplitter:
    """
    流式 <think> 标签拆分器

    使用示例：
    ```python
    splitter = ThinkTagSplitter()
    for kind, text in splitter.feed(chunk):
        ...
    for kind, text in splitter.flush():
        ...
    ```
    """

    def __init__(self):
        self._buffer = ""
        self._in_think = False

    @property
    def in_think(self) -> bool:
        return self._in_think

    def feed(self, text: str) -> List[Segment]:
        self._buffer += text
        segments: List[Segment] = []

        while self._buffer:
            if self._in_think:
                end = self._buffer.find(THINK_CLOSE)
                if end >= 0:
                    self._emit(segments, "reasoning", self._buffer[:end])
                    self._buffer = self._buffer[end + len(THINK_CLOSE):]
                    self._in_think = False
                    continue
                keep = _partial_tag_suffix(self._buffer, (THINK_CLOSE,))
                self._emit(segments, "reasoning", self._buffer[: len(self._buffer) - keep])
                self._buffer = self._buffer[len(self._buffer) - keep:]
                break

            start = self._buffer.find(THINK_OPEN)
            orphan_end = self._buffer.find(THINK_CLOSE)

            if start >= 0 and (orphan_end < 0 or start < orphan_end):
                self._emit(segments, "content", self._buffer[:start])
                self._buffer = self._buffer[start + len(THINK_OPEN):]
                self._in_think = True
                continue

            if orphan_end >= 0:
                # 只有结束标签：之前的内容视为推理
                self._emit(segments, "reasoning", self._buffer[:orphan_end])
                self._buffer = self._buffer[orphan_end + len(THINK_CLOSE):]
                continue

            keep = _partial_tag_suffix(self._buffer, (THINK_OPEN, THINK_CLOSE))
            self._emit(segments, "content", self._buffer[: len(self._buffer) - keep])
            self._buffer = self._buffer[len(self._buffer) - keep:]
            break

        return segments

    def flush(self) -> List[Segment]:
        """流结束时输出缓冲区剩余内容"""
        segments: List[Segment] = []
        self._emit(segments, "reasoning" if self._in_think else "content", self._buffer)
        self._buffer = ""
        return segments

    @staticmethod
    def _emit(segments: List[Segment], kind: SegmentKind, text: str) -> None:
        if not text:
            return
        if segments and segments[-1][0] == kind:
            segments[-1] = (kind, segments[-1][1] + text)
        else:
            segments.append((kind, text))
