"""
测试公共夹具

- FakeBackend: 按脚本产出流事件的后端
- FakeSearchEngine: 返回固定结果的搜索引擎
- word_count: 确定性的 token 估算（按空白分词计数）
- FakeClock: 每次读取递增的毫秒时钟
"""

import os

# 测试不写日志文件
os.environ.setdefault("THREADLOOM_LOG_FILE", "false")

import asyncio
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import pytest

from core.events.channel import GenerationEvent
from core.generation.orchestrator import GenerationOrchestrator
from core.generation.store import InMemoryMessageStore
from core.llm.base import BaseLLMService, ChatEntry
from core.llm.events import StreamEvent
from core.llm.registry import BackendRegistry
from core.search.base import BaseSearchEngine, SearchEngineError
from models.chat import ConversationSettings, SearchResult, UserMessageContent


def word_count(text: str) -> int:
    return len(text.split())


class FakeClock:
    """每次调用前进 step 毫秒"""

    def __init__(self, start: int = 1_000_000, step: int = 10):
        self.now = start
        self.step = step

    def __call__(self) -> int:
        self.now += self.step
        return self.now


class FakeBackend(BaseLLMService):
    """
    脚本化后端

    scripts 中每一项对应一次 stream_completion 调用的事件序列；
    gate 不为 None 时，产出第 pause_after 个事件后等待 gate 被 set。
    """

    def __init__(
        self,
        scripts: Optional[List[Sequence[StreamEvent]]] = None,
        provider_id: str = "fake",
        rewrite: Optional[str] = "rewritten query",
        rewrite_error: Optional[Exception] = None,
    ):
        self.provider_id = provider_id
        self.scripts = list(scripts or [])
        self.rewrite = rewrite
        self.rewrite_error = rewrite_error
        self.calls: List[Dict[str, Any]] = []
        self.quick_calls: List[List[ChatEntry]] = []
        self.stopped: List[str] = []
        self.gate: Optional[asyncio.Event] = None
        self.pause_after = 0
        self.paused = asyncio.Event()
        self.closed = False

    async def stream_completion(
        self,
        entries: List[ChatEntry],
        model_id: str,
        temperature: float,
        max_tokens: int,
        *,
        message_id: str,
    ) -> AsyncIterator[StreamEvent]:
        self.calls.append(
            {
                "entries": entries,
                "model_id": model_id,
                "temperature": temperature,
                "max_tokens": max_tokens,
                "message_id": message_id,
            }
        )
        events = self.scripts.pop(0) if self.scripts else []
        try:
            for index, event in enumerate(events):
                if self.gate is not None and index == self.pause_after:
                    self.paused.set()
                    await self.gate.wait()
                yield event
        finally:
            self.closed = True

    async def stop_stream(self, message_id: str) -> None:
        self.stopped.append(message_id)
        if self.gate is not None:
            self.gate.set()

    async def quick_completion(self, entries: List[ChatEntry], model_id: str) -> str:
        self.quick_calls.append(entries)
        if self.rewrite_error is not None:
            raise self.rewrite_error
        return self.rewrite or ""


class FakeSearchEngine(BaseSearchEngine):
    name = "fake"

    def __init__(self, results: Optional[List[SearchResult]] = None, error: Optional[Exception] = None):
        self.results = results or []
        self.error = error
        self.queries: List[str] = []
        self.stopped: List[str] = []
        self.gate: Optional[asyncio.Event] = None
        self.started = asyncio.Event()

    async def search(self, conversation_id: str, query: str) -> List[SearchResult]:
        self.queries.append(query)
        self.started.set()
        if self.gate is not None:
            await self.gate.wait()
            if conversation_id in self.stopped:
                raise SearchEngineError("搜索已停止")
        if self.error is not None:
            raise self.error
        return [r.model_copy() for r in self.results]

    async def stop_search(self, conversation_id: str) -> None:
        self.stopped.append(conversation_id)
        if self.gate is not None:
            self.gate.set()


class RecordingSink:
    def __init__(self):
        self.events: List[GenerationEvent] = []

    async def emit(self, event: GenerationEvent) -> None:
        self.events.append(event)

    def types(self) -> List[str]:
        return [e.type for e in self.events]


def make_results(count: int) -> List[SearchResult]:
    return [
        SearchResult(
            title=f"page {i}",
            url=f"https://example.com/{i}",
            content=f"content of page {i}",
            description=f"desc {i}",
            rank=i,
        )
        for i in range(1, count + 1)
    ]


# ============================================================
# Fixtures
# ============================================================


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock) -> InMemoryMessageStore:
    return InMemoryMessageStore(clock=clock)


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def backends(backend) -> BackendRegistry:
    registry = BackendRegistry()
    registry.register(backend)
    return registry


@pytest.fixture
def search_engine() -> FakeSearchEngine:
    return FakeSearchEngine(results=make_results(2))


@pytest.fixture
def orchestrator(store, backends, search_engine, sink, clock) -> GenerationOrchestrator:
    return GenerationOrchestrator(
        store=store,
        backends=backends,
        search_engine=search_engine,
        sink=sink,
        token_counter=word_count,
        clock=clock,
        vision_resolver=lambda model_id: False,
    )


@pytest.fixture
async def conversation(store):
    return await store.create_conversation(
        title="test",
        settings=ConversationSettings(provider_id="fake", model_id="fake-model", context_length=1000),
    )


@pytest.fixture
async def user_message(store, conversation):
    return await store.create_message(
        conversation.id, "user", UserMessageContent(text="hello there"), status="sent"
    )
