"""
ThreadService 测试

内存存储 + 脚本化后端；设置服务使用 tmp_path 下的配置文件。
"""

import asyncio

import pytest
import yaml

from config.model_configs import get_model_config
from core.generation.errors import ConversationNotFoundError, MessageNotFoundError
from core.llm.events import ContentDelta, StreamEnd
from services.settings_service import SettingsService
from services.thread_service import ConversationBusyError, ThreadService, ThreadServiceError


@pytest.fixture
def settings(tmp_path) -> SettingsService:
    path = tmp_path / "config.yaml"
    path.write_text(
        yaml.dump(
            {
                "default_model": {"provider_id": "fake", "model_id": "gpt-4o-mini"},
                "default_system_prompt": "be helpful",
            }
        ),
        encoding="utf-8",
    )
    return SettingsService(config_path=path)


@pytest.fixture
def service(store, orchestrator, settings) -> ThreadService:
    return ThreadService(store, orchestrator, settings=settings)


# ===========================================================================
# 对话
# ===========================================================================


class TestConversations:
    async def test_defaults_from_settings_and_model(self, service):
        conversation = await service.create_conversation(title="first")

        expected = get_model_config("gpt-4o-mini")
        assert conversation.settings.provider_id == "fake"
        assert conversation.settings.model_id == "gpt-4o-mini"
        assert conversation.settings.system_prompt == "be helpful"
        assert conversation.settings.context_length == expected.context_length
        assert conversation.settings.max_tokens == expected.max_tokens

    async def test_overrides_apply_model_defaults_then_explicit_values(self, service):
        conversation = await service.create_conversation(
            settings={"model_id": "qwen-max", "temperature": 0.1}
        )

        assert conversation.settings.model_id == "qwen-max"
        assert conversation.settings.context_length == get_model_config("qwen-max").context_length
        assert conversation.settings.temperature == 0.1

    async def test_empty_latest_conversation_is_reused(self, service, backend):
        first = await service.create_conversation(title="a")
        again = await service.create_conversation(title="b")

        assert again.id == first.id
        assert again.title == "b"

        backend.scripts = [[ContentDelta(text="ok"), StreamEnd()]]
        _, assistant = await service.send_message(first.id, "hello")
        await service.wait_for(assistant.id)

        fresh = await service.create_conversation(title="c")
        assert fresh.id != first.id

    async def test_missing_conversation(self, service):
        with pytest.raises(ConversationNotFoundError):
            await service.get_conversation("missing")

    async def test_switching_model_reapplies_defaults(self, service):
        conversation = await service.create_conversation()

        updated = await service.update_conversation_settings(conversation.id, model_id="unknown-model", max_tokens=100)

        assert updated.settings.model_id == "unknown-model"
        assert updated.settings.context_length == get_model_config("unknown-model").context_length
        assert updated.settings.max_tokens == 100

    async def test_same_model_keeps_custom_values(self, service):
        conversation = await service.create_conversation()
        await service.update_conversation_settings(conversation.id, context_length=2000)

        updated = await service.update_conversation_settings(conversation.id, model_id="gpt-4o-mini")

        assert updated.settings.context_length == 2000


# ===========================================================================
# 生成
# ===========================================================================


class TestGeneration:
    async def test_send_message_generates_reply(self, service, store, backend):
        conversation = await service.create_conversation()
        backend.scripts = [[ContentDelta(text="hi!"), StreamEnd()]]

        user, assistant = await service.send_message(conversation.id, "hello", search=False)
        final = await service.wait_for(assistant.id)

        assert user.user_content.text == "hello"
        assert assistant.parent_id == user.id
        assert final.status == "sent"
        assert final.blocks[0].content == "hi!"
        assert (await store.get_conversation(conversation.id)).is_new is False
        assert backend.calls[0]["entries"][0].content == "be helpful"

    async def test_busy_conversation_rejected(self, service, backend):
        conversation = await service.create_conversation()
        backend.scripts = [[ContentDelta(text="a"), ContentDelta(text="b"), StreamEnd()]]
        backend.gate = asyncio.Event()
        backend.pause_after = 1

        _, assistant = await service.send_message(conversation.id, "first")
        await backend.paused.wait()

        with pytest.raises(ConversationBusyError):
            await service.send_message(conversation.id, "second")
        with pytest.raises(ConversationBusyError):
            await service.retry_message(assistant.id)

        backend.gate.set()
        await service.wait_for(assistant.id)
        assert len(await service.get_messages(conversation.id)) == 2

    async def test_stop_message(self, service, backend):
        conversation = await service.create_conversation()
        backend.scripts = [[ContentDelta(text="a"), ContentDelta(text="b"), StreamEnd()]]
        backend.gate = asyncio.Event()
        backend.pause_after = 1

        _, assistant = await service.send_message(conversation.id, "first")
        await backend.paused.wait()

        assert await service.stop_message(assistant.id) is True
        final = await service.wait_for(assistant.id)
        assert final.status == "error"

    async def test_retry_produces_variant(self, service, backend):
        conversation = await service.create_conversation()
        backend.scripts = [[ContentDelta(text="one"), StreamEnd()], [ContentDelta(text="two"), StreamEnd()]]

        _, assistant = await service.send_message(conversation.id, "hello")
        await service.wait_for(assistant.id)
        variant = await service.retry_message(assistant.id)
        await service.wait_for(variant.id)

        messages = await service.get_messages(conversation.id)
        assert [m.role for m in messages] == ["user", "assistant"]
        assert [v.id for v in messages[1].variants] == [variant.id]

    async def test_retry_unknown_message(self, service):
        with pytest.raises(MessageNotFoundError):
            await service.retry_message("missing")

    async def test_delete_stops_active_generation(self, service, store, backend):
        conversation = await service.create_conversation()
        backend.scripts = [[ContentDelta(text="a"), ContentDelta(text="b"), StreamEnd()]]
        backend.gate = asyncio.Event()
        backend.pause_after = 1

        _, assistant = await service.send_message(conversation.id, "first")
        await backend.paused.wait()
        await service.delete_conversation(conversation.id)

        assert await store.get_conversation(conversation.id) is None
        assert assistant.id in backend.stopped
        assert await service.wait_for(assistant.id) is None


# ===========================================================================
# 标题
# ===========================================================================


class TestTitle:
    async def _chat(self, service, backend):
        conversation = await service.create_conversation(title="old")
        backend.scripts = [[ContentDelta(text="Paris is lovely"), StreamEnd()]]
        _, assistant = await service.send_message(conversation.id, "plan a trip to Paris")
        await service.wait_for(assistant.id)
        return conversation

    async def test_title_saved(self, service, store, backend):
        conversation = await self._chat(service, backend)
        backend.rewrite = '"Paris Trip"'

        title = await service.summarize_title(conversation.id)

        assert title == "Paris Trip"
        assert (await store.get_conversation(conversation.id)).title == "Paris Trip"
        prompt = backend.quick_calls[-1]
        assert [e.content for e in prompt[:2]] == ["plan a trip to Paris", "Paris is lovely"]

    async def test_failure_keeps_old_title(self, service, store, backend):
        conversation = await self._chat(service, backend)
        backend.rewrite_error = RuntimeError("quota exceeded")

        assert await service.summarize_title(conversation.id) == "old"
        assert (await store.get_conversation(conversation.id)).title == "old"

    async def test_empty_history_skips_backend(self, service, backend):
        conversation = await service.create_conversation(title="untitled")

        assert await service.summarize_title(conversation.id) == "untitled"
        assert backend.quick_calls == []


# ===========================================================================
# 对话与消息管理
# ===========================================================================


class TestManagement:
    async def _turn(self, service, backend, conversation_id, reply="ok"):
        backend.scripts = [[ContentDelta(text=reply), StreamEnd()]]
        user, assistant = await service.send_message(conversation_id, "hello")
        await service.wait_for(assistant.id)
        return user, assistant

    async def test_rename_conversation(self, service, store):
        conversation = await service.create_conversation(title="old")

        renamed = await service.rename_conversation(conversation.id, "new name")

        assert renamed.title == "new name"
        assert (await store.get_conversation(conversation.id)).title == "new name"

    async def test_rename_missing_conversation(self, service):
        with pytest.raises(ConversationNotFoundError):
            await service.rename_conversation("missing", "x")

    async def test_clear_context_keeps_conversation(self, service, store, backend):
        conversation = await service.create_conversation()
        await self._turn(service, backend, conversation.id)

        removed = await service.clear_context(conversation.id)

        assert removed == 2
        assert await service.get_messages(conversation.id) == []
        assert (await store.get_conversation(conversation.id)).settings.model_id == "gpt-4o-mini"

    async def test_edit_user_message(self, service, backend):
        conversation = await service.create_conversation()
        user, assistant = await self._turn(service, backend, conversation.id)

        edited = await service.edit_message(user.id, "hello again")

        assert edited.user_content.text == "hello again"
        with pytest.raises(ThreadServiceError):
            await service.edit_message(assistant.id, "nope")

    async def test_delete_message(self, service, store, backend):
        conversation = await service.create_conversation()
        _, assistant = await self._turn(service, backend, conversation.id)

        await service.delete_message(assistant.id)

        assert await store.get_message(assistant.id) is None
        assert [m.role for m in await service.get_messages(conversation.id)] == ["user"]
        with pytest.raises(MessageNotFoundError):
            await service.delete_message(assistant.id)

    async def test_delete_generating_message_stops_it_first(self, service, store, backend):
        conversation = await service.create_conversation()
        backend.scripts = [[ContentDelta(text="a"), ContentDelta(text="b"), StreamEnd()]]
        backend.gate = asyncio.Event()
        backend.pause_after = 1

        _, assistant = await service.send_message(conversation.id, "first")
        await backend.paused.wait()
        await service.delete_message(assistant.id)

        assert assistant.id in backend.stopped
        assert await store.get_message(assistant.id) is None
        assert service.orchestrator.is_generating(conversation.id) is False

    async def test_get_message_variants(self, service, backend):
        conversation = await service.create_conversation()
        _, assistant = await self._turn(service, backend, conversation.id, reply="one")
        backend.scripts = [[ContentDelta(text="two"), StreamEnd()]]
        variant = await service.retry_message(assistant.id)
        await service.wait_for(variant.id)

        assert [m.id for m in await service.get_message_variants(assistant.id)] == [variant.id]
        assert await service.get_message_variants(variant.id) == []
