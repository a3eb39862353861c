"""
应用路径管理器

统一管理桌面端的可写数据路径：

- user_data_dir: 可写数据（数据库、日志、用户配置）
  优先级：
    1. 命令行参数 --data-dir
    2. 环境变量 THREADLOOM_DATA_DIR
    3. 平台标准用户数据目录
       - macOS: ~/Library/Application Support/com.threadloom.app/
       - Windows: %APPDATA%/threadloom/
       - Linux: ~/.local/share/threadloom/
"""

import os
import sys
from pathlib import Path
from typing import Optional

# 应用标识
APP_ID = "com.threadloom.app"
APP_NAME = "threadloom"

# 命令行参数键
_CLI_DATA_DIR_KEY = "--data-dir"

# 缓存（避免重复计算）
_user_data_dir: Optional[Path] = None


def get_user_data_dir() -> Path:
    """
    获取用户数据目录（可写数据）

    存储: 数据库、日志、用户配置 (config.yaml)

    Returns:
        可写的用户数据目录路径
    """
    global _user_data_dir
    if _user_data_dir is not None:
        return _user_data_dir

    # 1. 命令行参数优先
    data_dir = _get_cli_arg(_CLI_DATA_DIR_KEY)
    if data_dir:
        _user_data_dir = Path(data_dir)
        _user_data_dir.mkdir(parents=True, exist_ok=True)
        return _user_data_dir

    # 2. 环境变量
    env_dir = os.getenv("THREADLOOM_DATA_DIR")
    if env_dir:
        _user_data_dir = Path(env_dir)
        _user_data_dir.mkdir(parents=True, exist_ok=True)
        return _user_data_dir

    # 3. 平台标准用户数据目录
    _user_data_dir = _get_platform_data_dir()
    _user_data_dir.mkdir(parents=True, exist_ok=True)
    return _user_data_dir


def get_db_dir() -> Path:
    """本地数据库目录（threadloom.db）"""
    d = get_user_data_dir() / "db"
    d.mkdir(parents=True, exist_ok=True)
    return d


def get_logs_dir() -> Path:
    """获取日志目录"""
    d = get_user_data_dir() / "logs"
    d.mkdir(parents=True, exist_ok=True)
    return d


def get_user_config_path() -> Path:
    """获取用户配置文件路径（config.yaml）"""
    env_path = os.getenv("THREADLOOM_CONFIG")
    if env_path:
        return Path(env_path)
    return get_user_data_dir() / "config.yaml"


# ==================== 内部辅助函数 ====================


def _get_cli_arg(key: str) -> Optional[str]:
    """
    从命令行参数提取值

    支持两种格式：
    - --key value
    - --key=value
    """
    args = sys.argv[1:]
    for i, arg in enumerate(args):
        if arg == key and i + 1 < len(args):
            return args[i + 1]
        if arg.startswith(f"{key}="):
            return arg.split("=", 1)[1]
    return None


def _get_platform_data_dir() -> Path:
    """获取平台标准用户数据目录"""
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / APP_ID
    elif sys.platform == "win32":
        appdata = os.getenv("APPDATA")
        if appdata:
            return Path(appdata) / APP_NAME
        return Path.home() / "AppData" / "Roaming" / APP_NAME
    else:
        xdg_data = os.getenv("XDG_DATA_HOME")
        if xdg_data:
            return Path(xdg_data) / APP_NAME
        return Path.home() / ".local" / "share" / APP_NAME


def reset_cache() -> None:
    """重置路径缓存（仅用于测试）"""
    global _user_data_dir
    _user_data_dir = None
