"""
工具模块

提供路径管理等辅助函数
"""
