"""
URL 内容补充 - 基于 Crawl4AI

从用户文本中提取 URL，用 Crawl4AI 渲染页面并生成过滤后的 Markdown，
拼接为附加在最后一轮用户消息后的参考内容。

单个 URL 抓取失败（无效链接、超时、内容过短）只记录日志并跳过。
"""

import asyncio
import re
from typing import Any, Callable, List, Optional

from crawl4ai import (
    AsyncWebCrawler,
    BrowserConfig,
    CacheMode,
    CrawlerRunConfig,
)
from crawl4ai.content_filter_strategy import PruningContentFilter
from crawl4ai.markdown_generation_strategy import DefaultMarkdownGenerator

from logger import get_logger
from models.chat import SearchResult

logger = get_logger("prompt.content_enricher")

_URL_RE = re.compile(r"https?://[^\s<>\"'）)\]]+")

MAX_URLS = 3
# 正文截断长度（字符）
MAX_CONTENT_CHARS = 4000
# 少于该长度视为没有提取到有效内容
MIN_CONTENT_CHARS = 50

# ============================================================
# 默认配置
# ============================================================

DEFAULT_BROWSER_CONFIG = BrowserConfig(
    headless=True,
    user_agent_mode="random",
    ignore_https_errors=True,
    verbose=False,
)

DEFAULT_CRAWLER_CONFIG = CrawlerRunConfig(
    cache_mode=CacheMode.BYPASS,
    page_timeout=15000,
    markdown_generator=DefaultMarkdownGenerator(
        content_filter=PruningContentFilter(
            threshold=0.4,
            threshold_type="fixed",
        )
    ),
)


def extract_urls(text: str) -> List[str]:
    """提取文本中的 URL（去重，保持出现顺序）"""
    seen = []
    for url in _URL_RE.findall(text or ""):
        url = url.rstrip(".,;:!?，。")
        if url not in seen:
            seen.append(url)
    return seen


class ContentEnricher:
    """
    URL 内容补充器

    使用示例：
    ```python
    enricher = ContentEnricher()
    results = await enricher.extract_and_enrich(user_text)
    block = ContentEnricher.render(results)
    ```
    """

    def __init__(
        self,
        browser_config: Optional[BrowserConfig] = None,
        crawler_config: Optional[CrawlerRunConfig] = None,
        crawler_factory: Optional[Callable[..., Any]] = None,
    ):
        """
        Args:
            browser_config: 浏览器配置
            crawler_config: 单次抓取配置
            crawler_factory: 创建爬虫的工厂（接收 config 关键字参数，返回异步上下文管理器）
        """
        self.browser_config = browser_config or DEFAULT_BROWSER_CONFIG
        self.crawler_config = crawler_config or DEFAULT_CRAWLER_CONFIG
        self._crawler_factory = crawler_factory or AsyncWebCrawler

    async def extract_and_enrich(self, text: str) -> List[SearchResult]:
        urls = extract_urls(text)[:MAX_URLS]
        if not urls:
            return []

        logger.info(f"📡 抓取用户消息中的链接: {len(urls)} 个")
        try:
            async with self._crawler_factory(config=self.browser_config) as crawler:
                results = await asyncio.gather(*(self._fetch(crawler, url) for url in urls))
        except Exception as e:
            logger.warning(f"⚠️ 网页抓取器不可用: {e}")
            return []

        enriched = [r for r in results if r is not None]
        for rank, result in enumerate(enriched, start=1):
            result.rank = rank
        logger.info(f"✅ 链接抓取完成: {len(enriched)}/{len(urls)} 成功")
        return enriched

    async def _fetch(self, crawler: Any, url: str) -> Optional[SearchResult]:
        try:
            result = await crawler.arun(url=url, config=self.crawler_config)
        except Exception as e:
            logger.warning(f"⚠️ URL 抓取异常: {url} - {e}")
            return None

        if not result.success:
            logger.warning(f"⚠️ URL 抓取失败: {url} - {result.error_message}")
            return None

        raw_md = result.markdown.raw_markdown if result.markdown else ""
        fit_md = result.markdown.fit_markdown if result.markdown else ""
        content = (fit_md or raw_md or "").strip()
        if len(content) < MIN_CONTENT_CHARS:
            logger.debug(f"跳过内容过短的页面: {url} ({len(content)} 字符)")
            return None

        metadata = result.metadata or {}
        return SearchResult(
            title=(metadata.get("title") or "").strip() or url,
            url=url,
            content=content[:MAX_CONTENT_CHARS],
            description=(metadata.get("description") or "").strip(),
        )

    @staticmethod
    def render(results: List[SearchResult]) -> str:
        """渲染为附加在用户消息后的参考内容块"""
        if not results:
            return ""
        pages = "\n\n".join(
            f"<url>{r.url}</url>\n<title>{r.title}</title>\n"
            + (f"<description>{r.description}</description>\n" if r.description else "")
            + f"<content>{r.content}</content>"
            for r in results
        )
        return (
            "The user's message contains the following links. "
            "Their content is provided for reference:\n"
            f"<webpages>\n{pages}\n</webpages>"
        )
