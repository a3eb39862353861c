"""
PromptBuilder 单元测试

token 估算使用按空白分词计数，便于精确构造预算场景。
"""

import pytest

from core.llm.base import ChatEntry
from core.prompt.builder import (
    PromptBuilder,
    merge_consecutive_entries,
    select_context_messages,
)
from core.prompt.file_context import DEFAULT_IMAGE_TOKENS, get_file_context
from core.prompt.templates import ARTIFACTS_PROMPT, CONTINUE_PROMPT, generate_search_prompt
from models.chat import (
    BlockStatus,
    ConversationSettings,
    Message,
    MessageFile,
    SearchResult,
    TextContentBlock,
    UserMessageContent,
)

from conftest import word_count


def _words(count: int, word: str = "w") -> str:
    return " ".join([word] * count)


def _user(message_id: str, text: str, files=None) -> Message:
    return Message(
        id=message_id,
        conversation_id="c1",
        role="user",
        content=UserMessageContent(text=text, files=files or []),
    )


def _assistant(message_id: str, text: str) -> Message:
    blocks = [TextContentBlock(content=text, status=BlockStatus.SUCCESS)] if text else []
    return Message(id=message_id, conversation_id="c1", role="assistant", content=blocks)


@pytest.fixture
def builder() -> PromptBuilder:
    return PromptBuilder(word_count)


# ===========================================================================
# 历史选择
# ===========================================================================


class TestContextSelection:
    """从最新消息开始累加，到第一条放不下的消息为止"""

    def test_budget_selects_exactly_one_history_message(self, builder):
        settings = ConversationSettings(system_prompt=_words(10, "sys"), context_length=300)
        history = [_user(f"h{i}", _words(150, f"h{i}")) for i in range(3)]
        query = _user("q", _words(50, "q"))

        result = builder.build(settings, query, history)

        assert result.reserved_tokens == 60
        assert [m.id for m in result.selected_history] == ["h2"]

    def test_no_history_when_reserve_exceeds_budget(self, builder):
        settings = ConversationSettings(context_length=20)
        history = [_user("h0", "short")]
        query = _user("q", _words(30))

        result = builder.build(settings, query, history)

        assert result.selected_history == []
        assert [e.role for e in result.entries] == ["user"]

    def test_stops_at_first_message_that_does_not_fit(self):
        history = [_user("old", "a b"), _user("big", _words(100)), _user("new", "c d")]

        selected = select_context_messages(history, None, 50, word_count)

        assert [m.id for m in selected] == ["new"]

    def test_excludes_triggering_message(self):
        history = [_user("a", "one"), _user("q", "two")]

        selected = select_context_messages(history, "q", 100, word_count)

        assert [m.id for m in selected] == ["a"]

    def test_selection_keeps_chronological_order(self):
        history = [_user("a", "x"), _assistant("b", "y"), _user("c", "z")]

        selected = select_context_messages(history, None, 1000, word_count)

        assert [m.id for m in selected] == ["a", "b", "c"]


# ===========================================================================
# 格式化
# ===========================================================================


class TestFormatting:
    def test_system_history_and_query(self, builder):
        settings = ConversationSettings(system_prompt="be brief", context_length=1000)
        history = [_user("h1", "hi"), _assistant("h2", "hello")]

        result = builder.build(settings, _user("q", "how are you"), history)

        assert [(e.role, e.content) for e in result.entries] == [
            ("system", "be brief"),
            ("user", "hi"),
            ("assistant", "hello"),
            ("user", "how are you"),
        ]
        assert result.prompt_tokens == 2 + 1 + 1 + 3

    def test_assistant_without_text_is_skipped_and_users_merge(self, builder):
        settings = ConversationSettings(context_length=1000)
        history = [_user("h1", "first"), _assistant("h2", "")]

        result = builder.build(settings, _user("q", "second"), history)

        assert len(result.entries) == 1
        assert result.entries[0].content == "first\nsecond"

    def test_document_files_rendered_as_context(self, builder):
        doc = MessageFile(name="notes.txt", mime_type="text/plain", content="file body")
        result = builder.build(ConversationSettings(), _user("q", "summarize", files=[doc]), [])

        content = result.entries[-1].content
        assert content.startswith("summarize")
        assert "<name>notes.txt</name>" in content
        assert "<content>file body</content>" in content

    def test_artifacts_instruction_precedes_query(self, builder):
        settings = ConversationSettings(artifacts=1)

        result = builder.build(settings, _user("q", "write a report"), [])

        assert len(result.entries) == 1
        assert result.entries[0].content == f"{ARTIFACTS_PROMPT}\nwrite a report"

    def test_search_prompt_replaces_query(self, builder):
        results = [
            SearchResult(title="A", url="https://a", content="alpha", rank=1),
            SearchResult(title="B", url="https://b", content="beta", rank=2),
        ]

        result = builder.build(ConversationSettings(), _user("q", "what is new"), [], search_results=results)

        content = result.entries[-1].content
        assert "[webpage 1 begin]" in content
        assert "[webpage 2 end]" in content
        assert content.rstrip().endswith("what is new")

    def test_search_without_results_reserves_query_as_search_prompt(self, builder):
        """搜索成功但没有结果：提示词为原始查询，仍计入预留"""
        no_search = builder.build(ConversationSettings(), _user("q", "what is new"), [])
        empty = builder.build(ConversationSettings(), _user("q", "what is new"), [], search_results=[])

        assert empty.entries[-1].content == "what is new"
        assert empty.reserved_tokens == no_search.reserved_tokens + 3

    def test_url_results_appended(self, builder):
        pages = [SearchResult(title="Doc", url="https://docs.example.com", content="page text", rank=1)]

        result = builder.build(ConversationSettings(), _user("q", "see https://docs.example.com"), [], url_results=pages)

        content = result.entries[-1].content
        assert content.startswith("see https://docs.example.com")
        assert "<url>https://docs.example.com</url>" in content

    def test_continuation_appends_assistant_and_instruction(self, builder):
        result = builder.build(ConversationSettings(), _user("q", "go"), [], continuation="partial answer")

        assert [(e.role, e.content) for e in result.entries[-2:]] == [
            ("assistant", "partial answer"),
            ("user", CONTINUE_PROMPT),
        ]


# ===========================================================================
# 图片
# ===========================================================================


class TestVision:
    def _image(self, token: int = 0) -> MessageFile:
        return MessageFile(name="cat.png", mime_type="image/png", content="data:image/png;base64,AAAA", token=token)

    def test_images_sent_as_parts_when_supported(self, builder):
        result = builder.build(ConversationSettings(), _user("q", "what is this", files=[self._image()]), [], vision=True)

        parts = result.entries[-1].content
        assert parts[0]["type"] == "image_url"
        assert parts[0]["image_url"]["url"] == "data:image/png;base64,AAAA"
        assert parts[-1] == {"type": "text", "text": "what is this"}
        assert result.prompt_tokens == 3 + DEFAULT_IMAGE_TOKENS

    def test_image_token_overrides_default_cost(self, builder):
        result = builder.build(ConversationSettings(), _user("q", "look", files=[self._image(token=85)]), [], vision=True)

        assert result.prompt_tokens == 1 + 85

    def test_images_dropped_without_vision(self, builder):
        result = builder.build(ConversationSettings(), _user("q", "what is this", files=[self._image()]), [])

        assert result.entries[-1].content == "what is this"
        assert result.prompt_tokens == 3


# ===========================================================================
# 合并 / 模板
# ===========================================================================


class TestMerge:
    def test_text_entries_joined_with_newline(self):
        merged = merge_consecutive_entries(
            [ChatEntry(role="user", content="a"), ChatEntry(role="user", content="b"), ChatEntry(role="assistant", content="c")]
        )

        assert [(e.role, e.content) for e in merged] == [("user", "a\nb"), ("assistant", "c")]

    def test_multimodal_keeps_images_and_merges_text_last(self):
        image = {"type": "image_url", "image_url": {"url": "data:x"}}
        merged = merge_consecutive_entries(
            [
                ChatEntry(role="user", content="intro"),
                ChatEntry(role="user", content=[image, {"type": "text", "text": "question"}]),
            ]
        )

        assert merged[0].content == [image, {"type": "text", "text": "intro\nquestion"}]


class TestTemplates:
    def test_search_prompt_without_results_is_query(self):
        assert generate_search_prompt("plain", []) == "plain"

    def test_search_prompt_uses_given_date(self):
        prompt = generate_search_prompt("q", [SearchResult(url="https://a", rank=1)], today="2024-01-02")

        assert "Today is 2024-01-02" in prompt

    def test_empty_file_context(self):
        assert get_file_context([]) == ""
