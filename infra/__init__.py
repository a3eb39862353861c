"""
Infrastructure 层 - 基础设施服务

┌─────────────────────────────────────────────────────────────┐
│                        infra/                               │
├─────────────────────────────────────────────────────────────┤
│  local_store/ │ 本地存储 (SQLite + aiosqlite)                │
│               │ 对话/消息/附件                                │
├─────────────────────────────────────────────────────────────┤
│  resilience/  │ 弹性机制 (指数退避重试)                       │
│               │ 搜索引擎 HTTP 调用保护                        │
└─────────────────────────────────────────────────────────────┘
"""

# ==================== Local Store (SQLite) ====================
from infra.local_store import LocalMessageStore, create_local_message_store

# ==================== Resilience ====================
from infra.resilience import RetryConfig, with_retry

__all__ = [
    # Local Store
    "LocalMessageStore",
    "create_local_message_store",
    # Resilience
    "RetryConfig",
    "with_retry",
]
