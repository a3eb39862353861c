"""
配置模块

- model_configs.py: 按模型 ID 匹配的默认参数
"""
