"""
容错与弹性模块

提供外部调用的指数退避重试
"""

from infra.resilience.retry import RetryConfig, get_retry_config, set_retry_config, with_retry

__all__ = [
    "RetryConfig",
    "get_retry_config",
    "set_retry_config",
    "with_retry",
]
