"""
搜索子流程 / SearXNG 引擎测试
"""

import asyncio

import httpx
import pytest

from core.generation.state import GenerationCancelledError, GenerationState
from core.search.base import SearchEngineError
from core.search.searxng import SearxngSearchEngine
from core.search.subflow import SEARCH_RESULT_ATTACHMENT, SearchSubflow, format_search_context
from infra.resilience import RetryConfig, get_retry_config, set_retry_config
from models.chat import (
    ERROR_USER_CANCELED,
    BlockStatus,
    Message,
    SearchBlock,
    TextContentBlock,
    UserMessageContent,
)

from conftest import word_count


async def _state(store, conversation, user_message) -> GenerationState:
    assistant = await store.create_message(conversation.id, "assistant", [], parent_id=user_message.id)
    return GenerationState(
        message=assistant,
        conversation_id=conversation.id,
        user_message_id=user_message.id,
        start_time=0,
    )


class _FlushRecorder:
    """记录每次 flush 时首位 search 块的状态"""

    def __init__(self, state: GenerationState):
        self.state = state
        self.statuses = []

    async def __call__(self) -> None:
        block = self.state.blocks[0]
        self.statuses.append((block.status, block.total))


@pytest.fixture
def subflow(store, search_engine, clock) -> SearchSubflow:
    return SearchSubflow(store, search_engine, word_count, clock)


# ===========================================================================
# 子流程
# ===========================================================================


class TestSearchSubflow:
    async def test_block_state_progression(self, subflow, store, backend, conversation, user_message):
        state = await _state(store, conversation, user_message)
        flush = _FlushRecorder(state)

        results = await subflow.run(state, conversation, "hello", [], backend, "fake-model", flush)

        assert [status for status, _ in flush.statuses] == [
            BlockStatus.LOADING,
            BlockStatus.OPTIMIZING,
            BlockStatus.READING,
            BlockStatus.LOADING,
            BlockStatus.SUCCESS,
        ]
        assert flush.statuses[0][1] == 0
        assert flush.statuses[3][1] == 2
        assert len(results) == 2
        assert state.is_searching is False

        block = state.blocks[0]
        assert isinstance(block, SearchBlock)
        assert len(block.attachment_ids) == 2
        saved = await store.get_attachments(state.message_id, SEARCH_RESULT_ATTACHMENT)
        assert [p["url"] for p in saved] == ["https://example.com/1", "https://example.com/2"]

    async def test_rewrite_strips_think_sections(self, subflow, store, backend, search_engine, conversation, user_message):
        backend.rewrite = "<think>let me see</think>python asyncio"
        state = await _state(store, conversation, user_message)

        await subflow.run(state, conversation, "how to use asyncio", [], backend, "fake-model", _FlushRecorder(state))

        assert search_engine.queries == ["python asyncio"]

    async def test_empty_rewrite_falls_back_to_query(self, subflow, store, backend, search_engine, conversation, user_message):
        backend.rewrite = ""
        state = await _state(store, conversation, user_message)

        await subflow.run(state, conversation, "original", [], backend, "fake-model", _FlushRecorder(state))

        assert search_engine.queries == ["original"]

    async def test_rewrite_prompt_contains_history(self, subflow, store, backend, conversation, user_message):
        state = await _state(store, conversation, user_message)
        earlier = Message(
            id="h1", conversation_id=conversation.id, role="user", content=UserMessageContent(text="earlier topic")
        )

        await subflow.run(state, conversation, "follow up", [earlier], backend, "fake-model", _FlushRecorder(state))

        prompt = backend.quick_calls[0][0].content
        assert "user: earlier topic" in prompt
        assert "follow up" in prompt
        assert "fake" in prompt

    async def test_engine_failure_returns_empty(self, subflow, store, backend, search_engine, conversation, user_message):
        search_engine.error = SearchEngineError("engine down")
        state = await _state(store, conversation, user_message)

        results = await subflow.run(state, conversation, "q", [], backend, "fake-model", _FlushRecorder(state))

        assert results == []
        assert state.blocks[0].status == BlockStatus.ERROR
        assert state.blocks[0].content == "engine down"
        assert state.is_searching is False

    async def test_cancelled_before_start(self, subflow, store, backend, search_engine, conversation, user_message):
        state = await _state(store, conversation, user_message)
        state.token.cancel()

        with pytest.raises(GenerationCancelledError):
            await subflow.run(state, conversation, "q", [], backend, "fake-model", _FlushRecorder(state))

        assert state.blocks == []
        assert search_engine.queries == []

    async def test_cancelled_during_rewrite(self, subflow, store, backend, search_engine, conversation, user_message):
        state = await _state(store, conversation, user_message)

        async def cancelling_rewrite(entries, model_id):
            state.token.cancel()
            return "ignored"

        backend.quick_completion = cancelling_rewrite

        with pytest.raises(GenerationCancelledError):
            await subflow.run(state, conversation, "q", [], backend, "fake-model", _FlushRecorder(state))

        block = state.blocks[0]
        assert block.status == BlockStatus.ERROR
        assert block.content == ERROR_USER_CANCELED
        assert search_engine.queries == []
        assert conversation.id in search_engine.stopped


class TestFormatSearchContext:
    def test_formats_user_and_assistant_text(self):
        messages = [
            Message(id="u", conversation_id="c", role="user", content=UserMessageContent(text="question")),
            Message(
                id="a",
                conversation_id="c",
                role="assistant",
                content=[TextContentBlock(content="answer", status=BlockStatus.SUCCESS)],
            ),
        ]

        assert format_search_context(messages) == "user: question\nassistant: answer"


# ===========================================================================
# SearXNG
# ===========================================================================


@pytest.fixture
def fast_retry():
    original = get_retry_config()
    set_retry_config(RetryConfig(max_retries=1, base_delay=0.0))
    yield
    set_retry_config(original)


def _searxng(handler) -> SearxngSearchEngine:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return SearxngSearchEngine(base_url="http://searx.local/", max_results=2, client=client)


class TestSearxngSearchEngine:
    async def test_parses_and_limits_results(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            return httpx.Response(
                200,
                json={
                    "results": [
                        {"title": "One", "url": "https://one.example.com/a", "content": "first"},
                        {"title": "", "url": "https://two.example.com", "content": None},
                        {"title": "No url"},
                        {"title": "Three", "url": "https://three.example.com"},
                    ]
                },
            )

        results = await _searxng(handler).search("c1", "python")

        assert "format=json" in seen["url"]
        assert "q=python" in seen["url"]
        assert [r.rank for r in results] == [1, 2]
        assert results[0].icon == "https://one.example.com/favicon.ico"
        assert results[0].description == "first"
        assert results[1].title == "https://two.example.com"
        assert results[1].content == ""

    async def test_http_error_becomes_engine_error(self):
        engine = _searxng(lambda request: httpx.Response(500))

        with pytest.raises(SearchEngineError):
            await engine.search("c1", "python")

    async def test_retries_unavailable_status(self, fast_retry):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            if len(calls) == 1:
                return httpx.Response(503)
            return httpx.Response(200, json={"results": [{"url": "https://ok.example.com"}]})

        results = await _searxng(handler).search("c1", "python")

        assert len(calls) == 2
        assert results[0].url == "https://ok.example.com"

    async def test_stop_search_interrupts_request(self):
        release = asyncio.Event()

        async def handler(request: httpx.Request) -> httpx.Response:
            await release.wait()
            return httpx.Response(200, json={"results": []})

        engine = _searxng(handler)
        task = asyncio.create_task(engine.search("c1", "slow"))
        await asyncio.sleep(0.01)
        await engine.stop_search("c1")

        with pytest.raises(SearchEngineError):
            await task
