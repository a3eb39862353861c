"""
SettingsService 测试（配置文件位于 tmp_path）
"""

import pytest
import yaml

from services.settings_service import DEFAULT_SETTINGS, SettingsService


@pytest.fixture
def config_path(tmp_path):
    return tmp_path / "config.yaml"


@pytest.fixture
def service(config_path) -> SettingsService:
    return SettingsService(config_path=config_path)


class TestReading:
    async def test_defaults_when_file_missing(self, service):
        settings = await service.get_settings()

        assert settings == DEFAULT_SETTINGS
        assert settings is not DEFAULT_SETTINGS

    async def test_dotted_key_lookup(self, service):
        assert await service.get_setting("search.engine") == "searxng"
        assert await service.get_setting("search.missing", "fallback") == "fallback"
        assert await service.get_setting("max_tool_calls.nested", 1) == 1

    async def test_none_value_returns_default(self, service):
        assert await service.get_setting("input_webSearch") is None
        assert await service.get_setting("input_webSearch", False) is False

    async def test_file_values_merge_over_defaults(self, config_path, service):
        config_path.write_text(yaml.dump({"search": {"max_results": 9}, "input_webSearch": True}), encoding="utf-8")

        assert await service.get_setting("search.max_results") == 9
        assert await service.get_setting("search.engine") == "searxng"
        assert await service.get_setting("input_webSearch") is True

    async def test_invalid_yaml_falls_back_to_defaults(self, config_path, service):
        config_path.write_text("search: [unclosed", encoding="utf-8")

        assert await service.get_setting("search.engine") == "searxng"

    async def test_non_mapping_file_ignored(self, config_path, service):
        config_path.write_text("- a\n- b\n", encoding="utf-8")

        assert await service.get_settings() == DEFAULT_SETTINGS

    async def test_cache_until_invalidated(self, config_path, service):
        assert await service.get_setting("max_tool_calls") == 50
        config_path.write_text(yaml.dump({"max_tool_calls": 5}), encoding="utf-8")

        assert await service.get_setting("max_tool_calls") == 50
        service.invalidate_cache()
        assert await service.get_setting("max_tool_calls") == 5


class TestProviders:
    async def test_api_key_read_from_env(self, service, monkeypatch):
        monkeypatch.setenv("DEEPSEEK_API_KEY", "sk-deep")
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)

        providers = await service.get_provider_configs()

        assert providers["deepseek"]["api_key"] == "sk-deep"
        assert providers["openai"]["api_key"] == ""
        assert await service.get_configured_providers() == ["deepseek", "ollama"]

    async def test_configured_key_wins_over_env(self, service, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
        await service.update_settings({"providers": {"openai": {"api_key": "sk-file"}}})

        providers = await service.get_provider_configs()

        assert providers["openai"]["api_key"] == "sk-file"


class TestWriting:
    async def test_update_persists_to_file(self, config_path, service):
        settings = await service.update_settings({"input_webSearch": True, "search": {"base_url": "http://searx"}})

        assert settings["search"]["base_url"] == "http://searx"
        saved = yaml.safe_load(config_path.read_text(encoding="utf-8"))
        assert saved == {"input_webSearch": True, "search": {"base_url": "http://searx"}}

        reloaded = SettingsService(config_path=config_path)
        assert await reloaded.get_setting("search.base_url") == "http://searx"
        assert await reloaded.get_setting("search.max_results") == 5

    async def test_empty_string_deletes_key(self, config_path, service):
        await service.update_settings({"default_system_prompt": "be nice", "search": {"timeout": 3.0}})
        await service.update_settings({"default_system_prompt": "", "search": {"timeout": ""}})

        saved = yaml.safe_load(config_path.read_text(encoding="utf-8"))
        assert "default_system_prompt" not in saved
        assert saved["search"] == {}
        assert await service.get_setting("search.timeout") == 15.0
