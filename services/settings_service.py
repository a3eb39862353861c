"""
设置服务 - Settings Service

统一管理应用配置，配置存储在 {user_data_dir}/config.yaml
（环境变量 THREADLOOM_CONFIG 可指定其它路径）。

核心功能：
- 异步读写 config.yaml（aiofiles + pyyaml），读取结果带缓存
- 与 DEFAULT_SETTINGS 深度合并，缺省项使用默认值
- get_setting(key) 支持点号路径（如 "search.base_url"），供消息存储读取生成开关
- 后端 API Key 未写入配置时从环境变量读取
"""

import copy
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiofiles
import yaml

from logger import get_logger
from utils.app_paths import get_user_config_path

logger = get_logger("settings_service")

# ==================== 配置结构定义 ====================

DEFAULT_SETTINGS: Dict[str, Any] = {
    # 后端（OpenAI 兼容接口）
    "providers": {
        "openai": {
            "base_url": "https://api.openai.com/v1",
            "api_key": "",
            "api_key_env": "OPENAI_API_KEY",
        },
        "deepseek": {
            "base_url": "https://api.deepseek.com/v1",
            "api_key": "",
            "api_key_env": "DEEPSEEK_API_KEY",
        },
        "ollama": {
            "base_url": "http://localhost:11434/v1",
            "api_key": "ollama",
            "api_key_env": "",
        },
    },
    # 新建对话的默认模型
    "default_model": {"provider_id": "openai", "model_id": "gpt-4o"},
    # 新建对话的默认系统提示词
    "default_system_prompt": "",
    # 搜索引擎
    "search": {
        "engine": "searxng",
        "base_url": "http://localhost:8080",
        "max_results": 5,
        "timeout": 15.0,
    },
    # 搜索词改写模型（为空时使用对话模型）
    "search_assistant": None,
    # 输入框开关（None 表示以用户消息上的开关为准）
    "input_webSearch": None,
    "input_deepThinking": None,
    # 单次生成最多工具调用次数
    "max_tool_calls": 50,
    "app": {"log_level": "INFO"},
}


def _deep_merge(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    """overrides 覆盖 base（字典递归合并，返回新字典）"""
    merged = copy.deepcopy(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _apply_updates(target: Dict[str, Any], updates: Dict[str, Any]) -> None:
    """原地应用更新；值为空字符串时删除该项"""
    for key, value in updates.items():
        if value == "":
            target.pop(key, None)
        elif isinstance(value, dict) and isinstance(target.get(key), dict):
            _apply_updates(target[key], value)
        else:
            target[key] = copy.deepcopy(value)


class SettingsService:
    """
    设置服务

    使用示例：
    ```python
    service = SettingsService()
    base_url = await service.get_setting("search.base_url")
    await service.update_settings({"input_webSearch": True})
    ```
    """

    def __init__(self, config_path: Optional[Path] = None):
        self._config_path = config_path
        # 文件中的原始内容（不含默认值）
        self._raw_cache: Optional[Dict[str, Any]] = None

    @property
    def config_path(self) -> Path:
        return self._config_path or get_user_config_path()

    # ==================== 文件读写 ====================

    async def _load_raw(self) -> Dict[str, Any]:
        """加载配置文件内容（带缓存）"""
        if self._raw_cache is not None:
            return self._raw_cache

        path = self.config_path
        if not path.exists():
            self._raw_cache = {}
            return self._raw_cache

        try:
            async with aiofiles.open(path, "r", encoding="utf-8") as f:
                content = await f.read()
            loaded = yaml.safe_load(content) or {}
            if not isinstance(loaded, dict):
                logger.warning(f"⚠️ 配置文件格式不正确（顶层不是映射），已忽略: {path}")
                loaded = {}
            self._raw_cache = loaded
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"加载配置失败: {e}", exc_info=True)
            self._raw_cache = {}

        return self._raw_cache

    async def _save_raw(self, settings: Dict[str, Any]) -> None:
        path = self.config_path
        path.parent.mkdir(parents=True, exist_ok=True)

        async with aiofiles.open(path, "w", encoding="utf-8") as f:
            content = yaml.dump(
                settings,
                default_flow_style=False,
                allow_unicode=True,
                sort_keys=False,
            )
            await f.write(content)

        self._raw_cache = settings
        logger.info(f"配置已保存: {path}")

    def invalidate_cache(self) -> None:
        """清除配置缓存（外部修改配置文件后调用）"""
        self._raw_cache = None

    # ==================== 读取 ====================

    async def get_settings(self) -> Dict[str, Any]:
        """完整配置（默认值 + 文件内容）"""
        return _deep_merge(DEFAULT_SETTINGS, await self._load_raw())

    async def get_setting(self, key: str, default: Any = None) -> Any:
        """
        读取单个配置项

        Args:
            key: 配置键，支持点号路径（"search.base_url"）
            default: 不存在时的返回值
        """
        node: Any = await self.get_settings()
        for part in key.split("."):
            if not isinstance(node, dict) or part not in node:
                return default
            node = node[part]
        return default if node is None else node

    async def get_provider_configs(self) -> Dict[str, Dict[str, Any]]:
        """
        后端配置

        api_key 为空时读取 api_key_env 指定的环境变量。
        """
        providers = await self.get_setting("providers", {})
        resolved: Dict[str, Dict[str, Any]] = {}
        for provider_id, config in providers.items():
            if not isinstance(config, dict):
                continue
            item = dict(config)
            if not item.get("api_key") and item.get("api_key_env"):
                item["api_key"] = os.getenv(item["api_key_env"], "")
            resolved[provider_id] = item
        return resolved

    async def get_configured_providers(self) -> List[str]:
        """已配置 API Key 的后端 ID"""
        providers = await self.get_provider_configs()
        return [pid for pid, config in providers.items() if config.get("api_key")]

    # ==================== 写入 ====================

    async def update_settings(self, updates: Dict[str, Any]) -> Dict[str, Any]:
        """
        更新配置

        Args:
            updates: 嵌套的配置更新，空字符串表示删除
                例: {"providers": {"openai": {"api_key": "sk-..."}}}

        Returns:
            更新后的完整配置
        """
        raw = copy.deepcopy(await self._load_raw())
        _apply_updates(raw, updates)
        await self._save_raw(raw)
        return await self.get_settings()


# ==================== 全局单例 ====================

_default_service: Optional[SettingsService] = None


def get_settings_service() -> SettingsService:
    global _default_service
    if _default_service is None:
        _default_service = SettingsService()
    return _default_service
