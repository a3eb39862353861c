"""
服务层包

提供业务逻辑封装，供 CLI / UI 层调用
"""

from .settings_service import DEFAULT_SETTINGS, SettingsService, get_settings_service
from .thread_service import ConversationBusyError, ThreadService, ThreadServiceError

__all__ = [
    # Settings Service
    "SettingsService",
    "get_settings_service",
    "DEFAULT_SETTINGS",
    # Thread Service
    "ThreadService",
    "ThreadServiceError",
    "ConversationBusyError",
]
