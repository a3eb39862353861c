"""
重试机制模块

为外部 HTTP 调用（搜索引擎等）提供带指数退避的重试装饰器。
"""

import asyncio
import functools
from dataclasses import dataclass, field
from typing import Any, Callable, FrozenSet, Optional, Tuple, Type

import httpx

from logger import get_logger

logger = get_logger("resilience.retry")


@dataclass
class RetryConfig:
    """重试配置"""
    max_retries: int = 2                    # 最大重试次数
    base_delay: float = 0.5                 # 基础延迟（秒）
    max_delay: float = 10.0                 # 最大延迟（秒）
    exponential_base: float = 2.0           # 指数退避基数
    retryable_errors: Tuple[Type[Exception], ...] = (
        httpx.TransportError,
        ConnectionError,
        asyncio.TimeoutError,
    )
    # 429 / 502 / 503 / 504
    retryable_status_codes: FrozenSet[int] = field(default_factory=lambda: frozenset({429, 502, 503, 504}))


# 全局重试配置实例
_retry_config = RetryConfig()


def get_retry_config() -> RetryConfig:
    """获取全局重试配置"""
    return _retry_config


def set_retry_config(config: RetryConfig) -> None:
    """设置全局重试配置"""
    global _retry_config
    _retry_config = config
    logger.info(f"✅ 重试配置已更新: max_retries={config.max_retries}, base_delay={config.base_delay}s")


def _calculate_delay(attempt: int, config: RetryConfig) -> float:
    """指数退避延迟（attempt 从 0 开始）"""
    delay = config.base_delay * (config.exponential_base ** attempt)
    return min(delay, config.max_delay)


def _is_retryable_error(error: Exception, config: RetryConfig) -> bool:
    """网络层错误和部分 HTTP 状态码可重试，其余直接抛出"""
    if isinstance(error, config.retryable_errors):
        return True
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code in config.retryable_status_codes
    return False


def with_retry(max_retries: Optional[int] = None, base_delay: Optional[float] = None):
    """
    重试装饰器

    Args:
        max_retries: 最大重试次数（默认取全局配置）
        base_delay: 基础延迟（秒）

    使用示例:
        @with_retry(max_retries=3, base_delay=1.0)
        async def call_external_api():
            ...
    """
    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            config = get_retry_config()
            if base_delay is not None:
                config = RetryConfig(
                    max_retries=config.max_retries,
                    base_delay=base_delay,
                    max_delay=config.max_delay,
                    exponential_base=config.exponential_base,
                    retryable_errors=config.retryable_errors,
                    retryable_status_codes=config.retryable_status_codes,
                )
            attempts = (max_retries if max_retries is not None else config.max_retries) + 1

            for attempt in range(attempts):
                try:
                    result = await func(*args, **kwargs)
                    if attempt > 0:
                        logger.info(f"✅ {func.__name__} 重试成功 (尝试 {attempt + 1}/{attempts})")
                    return result
                except Exception as e:
                    if not _is_retryable_error(e, config):
                        raise
                    if attempt >= attempts - 1:
                        logger.error(f"❌ {func.__name__} 失败（已达最大重试次数 {attempts - 1}）: {e}")
                        raise

                    delay = _calculate_delay(attempt, config)
                    logger.warning(
                        f"⚠️ {func.__name__} 失败，{delay:.2f}s 后重试 (尝试 {attempt + 1}/{attempts}): {e}"
                    )
                    await asyncio.sleep(delay)

        return wrapper
    return decorator
