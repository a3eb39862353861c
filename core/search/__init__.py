"""
搜索模块

- base.py: 搜索引擎抽象
- searxng.py: SearXNG 实现
- subflow.py: 生成前的搜索子流程
"""

from core.search.base import BaseSearchEngine, SearchEngineError
from core.search.searxng import SearxngSearchEngine
from core.search.subflow import SEARCH_RESULT_ATTACHMENT, SearchSubflow

__all__ = [
    "BaseSearchEngine",
    "SearchEngineError",
    "SearxngSearchEngine",
    "SEARCH_RESULT_ATTACHMENT",
    "SearchSubflow",
]
