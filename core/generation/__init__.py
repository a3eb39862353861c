"""
生成编排模块

- orchestrator.py: GenerationOrchestrator（对外入口）
- state.py: 生成状态、取消令牌、活跃生成注册表
- processor.py: 流事件处理器
- store.py: 消息存储协议与内存实现
- errors.py: 异常定义
"""
