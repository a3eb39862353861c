"""
SQLite 异步引擎

对话、消息和附件都保存在本地 SQLite（100% 本地）。

特性：
- aiosqlite 异步驱动
- WAL 模式（支持并发读写）
- 自动建表
"""

import os
from pathlib import Path
from typing import Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from logger import get_logger
from utils.app_paths import get_db_dir

logger = get_logger("local_store.engine")


def _get_default_db_dir() -> str:
    """数据库目录（环境变量 THREADLOOM_DB_DIR 优先）"""
    env_override = os.getenv("THREADLOOM_DB_DIR")
    if env_override:
        return env_override
    return str(get_db_dir())


def _get_default_db_name() -> str:
    return os.getenv("THREADLOOM_DB_NAME", "threadloom.db")


def _resolve_db_path(db_dir: Optional[str] = None, db_name: Optional[str] = None) -> Path:
    """
    解析数据库文件路径

    Args:
        db_dir: 数据库目录（默认：用户数据目录下的 db/）
        db_name: 数据库文件名（默认：threadloom.db）

    Returns:
        数据库文件完整路径
    """
    directory = Path(db_dir or _get_default_db_dir())
    directory.mkdir(parents=True, exist_ok=True)
    return directory / (db_name or _get_default_db_name())


def create_local_engine(
    db_dir: Optional[str] = None,
    db_name: Optional[str] = None,
    echo: bool = False,
) -> AsyncEngine:
    """
    创建 SQLite 异步引擎

    Args:
        db_dir: 数据库目录
        db_name: 数据库文件名
        echo: 是否输出 SQL 日志

    Returns:
        AsyncEngine 实例
    """
    db_path = _resolve_db_path(db_dir, db_name)
    url = f"sqlite+aiosqlite:///{db_path}"

    engine = create_async_engine(
        url,
        echo=echo or os.getenv("THREADLOOM_DB_ECHO", "false").lower() == "true",
        # 单连接，保证 WAL 下写入串行
        pool_size=1,
        max_overflow=0,
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _set_sqlite_pragma(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA busy_timeout=5000")
        cursor.execute("PRAGMA temp_store=MEMORY")
        cursor.close()

    logger.info(f"SQLite 引擎已创建: {db_path}")
    return engine


def create_local_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """创建异步会话工厂"""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def init_local_database(engine: AsyncEngine) -> None:
    """
    初始化数据库（建表）

    在应用启动时调用，可重复执行。
    """
    from infra.local_store.models import LocalBase

    async with engine.begin() as conn:
        await conn.run_sync(LocalBase.metadata.create_all)

    logger.info("SQLite 数据库初始化完成")


# ==================== 全局单例 ====================

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


async def get_local_engine() -> AsyncEngine:
    """获取全局 SQLite 引擎（懒初始化）"""
    global _engine
    if _engine is None:
        _engine = create_local_engine()
        await init_local_database(_engine)
    return _engine


async def get_local_session_factory() -> async_sessionmaker[AsyncSession]:
    """获取全局会话工厂（懒初始化）"""
    global _session_factory
    if _session_factory is None:
        engine = await get_local_engine()
        _session_factory = create_local_session_factory(engine)
    return _session_factory


async def close_local_engine() -> None:
    """关闭 SQLite 引擎（应用退出时调用）"""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None
        logger.info("SQLite 引擎已关闭")
