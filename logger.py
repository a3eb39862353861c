"""
日志管理模块

提供统一的日志接口，支持上下文追踪和性能监控。

快速开始:
=========

```python
from logger import get_logger, set_request_context, log_execution_time

logger = get_logger("generation")

# 设置请求上下文（在生成入口处调用一次）
set_request_context(conversation_id="conv-456", message_id="msg-789")

# 记录日志（自动包含上下文信息）
logger.info("开始生成")
logger.error("发生错误", exc_info=True)

# 性能监控
with log_execution_time("搜索查询", logger):
    results = await engine.search(...)
```

日志输出:
========
- 控制台：彩色易读格式（开发环境）
- 文件：JSON 格式，便于检索和快速定位
"""
import json
import logging
import os
import sys
import time
import traceback
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

# ============================================================
# 配置
# ============================================================

ROOT_LOGGER_NAME = "threadloom"


def _get_log_dir() -> Path:
    """获取日志目录，统一使用 app_paths 管理路径"""
    from utils.app_paths import get_logs_dir

    return get_logs_dir()


LOG_CONFIG = {
    "level": os.getenv("THREADLOOM_LOG_LEVEL", "INFO").upper(),
    "console_enabled": True,
    "file_enabled": os.getenv("THREADLOOM_LOG_FILE", "true").lower() in ("1", "true", "yes"),
    "file_name": "app.log",
    "error_file_name": "error.log",
    "max_size": 20 * 1024 * 1024,  # 20MB
    "backup_count": 5,
}

# ============================================================
# 上下文变量（用于追踪生成请求）
# ============================================================
_conversation_id: ContextVar[str] = ContextVar('conversation_id', default='')
_message_id: ContextVar[str] = ContextVar('message_id', default='')


def set_request_context(conversation_id: str = '', message_id: str = '') -> None:
    """
    设置请求上下文（在生成入口处调用）

    ContextVar 绑定在当前 asyncio Task 上，并发生成互不干扰。

    Args:
        conversation_id: 对话ID
        message_id: 消息ID
    """
    if conversation_id:
        _conversation_id.set(conversation_id)
    if message_id:
        _message_id.set(message_id)


def clear_request_context() -> None:
    """清除请求上下文（在生成结束时调用）"""
    _conversation_id.set('')
    _message_id.set('')


@contextmanager
def log_execution_time(operation: str, logger: Optional[logging.Logger] = None):
    """
    记录操作执行时间

    Args:
        operation: 操作名称
        logger: 日志记录器（可选）
    """
    if logger is None:
        logger = logging.getLogger(ROOT_LOGGER_NAME)

    start = time.perf_counter()
    try:
        yield
    finally:
        duration_ms = (time.perf_counter() - start) * 1000
        logger.info(f"{operation} 完成", extra={
            "operation": operation,
            "duration_ms": round(duration_ms, 2)
        })


# ============================================================
# 格式化器
# ============================================================

class _ContextFilter(logging.Filter):
    """添加上下文信息到日志记录"""

    def filter(self, record: logging.LogRecord) -> bool:
        record.conversation_id = _conversation_id.get() or '-'
        record.message_id = _message_id.get() or '-'
        return True


class _ConsoleFormatter(logging.Formatter):
    """控制台格式化器（彩色易读）"""

    COLORS = {
        'DEBUG': '\033[36m',     # 青色
        'INFO': '\033[32m',      # 绿色
        'WARNING': '\033[33m',   # 黄色
        'ERROR': '\033[31m',     # 红色
        'CRITICAL': '\033[35m',  # 紫色
    }
    RESET = '\033[0m'

    def __init__(self):
        super().__init__(
            fmt='%(asctime)s [%(levelname)s] [%(conversation_id)s:%(message_id)s] %(name)s: %(message)s',
            datefmt='%H:%M:%S'
        )
        self.use_colors = sys.stderr.isatty()

    def format(self, record: logging.LogRecord) -> str:
        if self.use_colors:
            record = logging.makeLogRecord(record.__dict__)
            color = self.COLORS.get(record.levelname, '')
            record.levelname = f"{color}{record.levelname}{self.RESET}"
        return super().format(record)


class _JsonFormatter(logging.Formatter):
    """
    JSON 格式化器（用于文件输出）

    输出示例:
    {"ts":"2024-01-01T12:00:00.123Z","level":"INFO","conv":"c-456","msg_id":"m-1","logger":"generation","msg":"开始生成"}
    """

    # 排除的内置属性
    _RESERVED = {
        'name', 'msg', 'args', 'created', 'levelname', 'levelno',
        'pathname', 'filename', 'module', 'exc_info', 'exc_text',
        'stack_info', 'lineno', 'funcName', 'msecs', 'relativeCreated',
        'thread', 'threadName', 'processName', 'process', 'message',
        'taskName', 'conversation_id', 'message_id'
    }

    def format(self, record: logging.LogRecord) -> str:
        log = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(timespec='milliseconds'),
            "level": record.levelname,
            "conv": getattr(record, 'conversation_id', '-'),
            "msg_id": getattr(record, 'message_id', '-'),
            "logger": record.name.replace(f'{ROOT_LOGGER_NAME}.', ''),
            "file": f"{record.filename}:{record.lineno}",
            "func": record.funcName or "-",
            "msg": record.getMessage(),
        }

        # 添加异常信息
        if record.exc_info:
            log["error"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "msg": str(record.exc_info[1]) if record.exc_info[1] else None,
                "trace": ''.join(traceback.format_exception(*record.exc_info)).strip()
            }

        # 添加 extra 字段
        for key, value in record.__dict__.items():
            if key not in self._RESERVED:
                try:
                    json.dumps(value)
                    log[key] = value
                except (TypeError, ValueError):
                    log[key] = str(value)

        return json.dumps(log, ensure_ascii=False, default=str)


# ============================================================
# Logger 管理
# ============================================================

class _LoggerManager:
    """日志管理器（单例）"""

    _initialized = False
    _loggers: dict[str, logging.Logger] = {}

    @classmethod
    def setup(cls) -> None:
        """初始化日志系统"""
        if cls._initialized:
            return

        root = logging.getLogger(ROOT_LOGGER_NAME)
        root.setLevel(LOG_CONFIG["level"])
        root.handlers.clear()
        root.propagate = False

        context_filter = _ContextFilter()

        # 控制台处理器（stderr，避免与 CLI 流式输出混在一起）
        if LOG_CONFIG["console_enabled"]:
            console = logging.StreamHandler(sys.stderr)
            console.setLevel(LOG_CONFIG["level"])
            console.setFormatter(_ConsoleFormatter())
            console.addFilter(context_filter)
            root.addHandler(console)

        # 文件日志（JSON 格式）
        if LOG_CONFIG["file_enabled"]:
            try:
                log_dir = _get_log_dir()
            except OSError:
                # 只读文件系统：仅保留控制台输出
                log_dir = None

            if log_dir is not None:
                file_handler = RotatingFileHandler(
                    log_dir / LOG_CONFIG["file_name"],
                    maxBytes=LOG_CONFIG["max_size"],
                    backupCount=LOG_CONFIG["backup_count"],
                    encoding="utf-8"
                )
                file_handler.setLevel(LOG_CONFIG["level"])
                file_handler.setFormatter(_JsonFormatter())
                file_handler.addFilter(context_filter)
                root.addHandler(file_handler)

                # 错误日志文件
                error_handler = RotatingFileHandler(
                    log_dir / LOG_CONFIG["error_file_name"],
                    maxBytes=LOG_CONFIG["max_size"],
                    backupCount=LOG_CONFIG["backup_count"],
                    encoding="utf-8"
                )
                error_handler.setLevel(logging.ERROR)
                error_handler.setFormatter(_JsonFormatter())
                error_handler.addFilter(context_filter)
                root.addHandler(error_handler)

        cls._initialized = True

    @classmethod
    def get(cls, name: Optional[str] = None) -> logging.Logger:
        """
        获取日志记录器

        Args:
            name: 日志记录器名称（不提供则使用根记录器）
        """
        if not cls._initialized:
            cls.setup()

        name = name or ROOT_LOGGER_NAME
        full_name = name if name.startswith(ROOT_LOGGER_NAME) else f"{ROOT_LOGGER_NAME}.{name}"
        if full_name not in cls._loggers:
            cls._loggers[full_name] = logging.getLogger(full_name)

        return cls._loggers[full_name]


# ============================================================
# 公开接口
# ============================================================

def get_logger(name: Optional[str] = None) -> logging.Logger:
    """
    获取日志记录器

    Args:
        name: 日志记录器名称，如 "generation.orchestrator"

    Returns:
        日志记录器实例
    """
    return _LoggerManager.get(name)


def set_level(level: str) -> None:
    """
    设置日志级别

    Args:
        level: 日志级别 ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL')
    """
    LOG_CONFIG["level"] = level.upper()
    root = logging.getLogger(ROOT_LOGGER_NAME)
    root.setLevel(level.upper())
    for handler in root.handlers:
        if handler.level != logging.ERROR:
            handler.setLevel(level.upper())
