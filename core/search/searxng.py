"""
SearXNG 搜索引擎

通过 SearXNG 的 JSON API（/search?format=json）检索网页。
网络层错误按 infra.resilience 的重试策略退避重试。
"""

import asyncio
from typing import Any, Dict, List, Optional, Set
from urllib.parse import urlparse

import httpx

from infra.resilience import with_retry
from logger import get_logger
from models.chat import SearchResult

from .base import BaseSearchEngine, SearchEngineError

logger = get_logger("search.searxng")


def _favicon(url: str) -> str:
    host = urlparse(url).netloc
    return f"https://{host}/favicon.ico" if host else ""


class SearxngSearchEngine(BaseSearchEngine):
    """
    SearXNG 搜索引擎

    使用示例：
    ```python
    engine = SearxngSearchEngine(base_url="http://localhost:8080")
    results = await engine.search("conv-1", "python asyncio")
    ```
    """

    name = "searxng"

    def __init__(
        self,
        base_url: str,
        max_results: int = 5,
        timeout: float = 15.0,
        language: str = "auto",
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.max_results = max_results
        self.timeout = timeout
        self.language = language
        self._client = client
        self._inflight: Dict[str, asyncio.Task] = {}
        self._stopped: Set[str] = set()

    async def search(self, conversation_id: str, query: str) -> List[SearchResult]:
        task = asyncio.create_task(self._request(query))
        self._inflight[conversation_id] = task
        try:
            payload = await task
        except asyncio.CancelledError:
            if conversation_id in self._stopped:
                raise SearchEngineError("搜索已停止")
            raise
        except httpx.HTTPError as e:
            raise SearchEngineError(f"SearXNG 请求失败: {e}") from e
        finally:
            self._inflight.pop(conversation_id, None)
            self._stopped.discard(conversation_id)

        results = self._parse(payload)
        logger.info(f"🔍 搜索完成: query={query!r}, results={len(results)}")
        return results

    async def stop_search(self, conversation_id: str) -> None:
        task = self._inflight.get(conversation_id)
        if task is not None and not task.done():
            self._stopped.add(conversation_id)
            task.cancel()
            logger.info(f"🛑 已停止搜索: conversation_id={conversation_id}")

    @with_retry()
    async def _request(self, query: str) -> Dict[str, Any]:
        params = {"q": query, "format": "json", "language": self.language}
        if self._client is not None:
            response = await self._client.get(f"{self.base_url}/search", params=params)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(f"{self.base_url}/search", params=params)
        response.raise_for_status()
        return response.json()

    def _parse(self, payload: Dict[str, Any]) -> List[SearchResult]:
        results: List[SearchResult] = []
        for item in (payload.get("results") or [])[: self.max_results]:
            url = item.get("url", "")
            if not url:
                continue
            content = item.get("content", "") or ""
            results.append(
                SearchResult(
                    title=item.get("title", "") or url,
                    url=url,
                    content=content,
                    description=content[:200],
                    icon=_favicon(url),
                    rank=len(results) + 1,
                )
            )
        return results
