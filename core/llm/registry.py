"""
LLM 后端注册表

集中管理 provider_id -> 后端实例的映射，避免分散的 if-elif 链。
注册表是显式持有的实例（由调用方创建并注入编排器），不使用全局状态。

使用方式：
```python
from core.llm.registry import BackendRegistry

registry = BackendRegistry()
registry.register(OpenAICompatibleService(provider_id="openai"))

backend = registry.get("openai")
```
"""

from typing import Dict, List, Optional

from logger import get_logger

from .base import BaseLLMService

logger = get_logger("llm.registry")


class BackendNotFoundError(LookupError):
    """后端未注册"""

    def __init__(self, provider_id: str, available: Optional[List[str]] = None):
        self.provider_id = provider_id
        self.available = available or []
        super().__init__(
            f"后端未注册: {provider_id}（可用: {', '.join(self.available) or '无'}）"
        )


class BackendRegistry:
    """LLM 后端注册表"""

    def __init__(self):
        self._backends: Dict[str, BaseLLMService] = {}

    def register(self, backend: BaseLLMService, provider_id: Optional[str] = None) -> None:
        """
        注册后端

        Args:
            backend: 后端实例
            provider_id: 注册名（默认使用 backend.provider_id）
        """
        key = (provider_id or backend.provider_id).lower()
        if not key:
            raise ValueError("provider_id 不能为空")

        if key in self._backends:
            logger.warning(f"⚠️ 后端 '{key}' 已注册，将被覆盖")

        self._backends[key] = backend
        logger.debug(f"✅ 注册 LLM 后端: {key}")

    def get(self, provider_id: str) -> BaseLLMService:
        backend = self._backends.get(provider_id.lower())
        if backend is None:
            raise BackendNotFoundError(provider_id, self.list())
        return backend

    def list(self) -> List[str]:
        return list(self._backends.keys())

    def __contains__(self, provider_id: str) -> bool:
        return provider_id.lower() in self._backends
