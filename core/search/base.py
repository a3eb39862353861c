"""
搜索引擎抽象

所有搜索引擎实现必须继承 BaseSearchEngine 并实现 search。
"""

from abc import ABC, abstractmethod
from typing import List

from models.chat import SearchResult


class SearchEngineError(Exception):
    """搜索引擎调用失败"""

    pass


class BaseSearchEngine(ABC):
    """搜索引擎基类"""

    name: str = "search"

    @abstractmethod
    async def search(self, conversation_id: str, query: str) -> List[SearchResult]:
        """
        执行搜索

        Args:
            conversation_id: 对话ID（用于 stop_search 定位进行中的请求）
            query: 搜索词

        Returns:
            按排名排序的搜索结果
        """

    async def stop_search(self, conversation_id: str) -> None:
        """停止对话进行中的搜索（默认无操作）"""
        return None
