"""
threadloom Core Module

核心组件：
- llm: 后端流式接口、token 计算、后端注册表
- prompt: Prompt 构建与上下文预算
- search: 搜索子流程
- generation: 生成编排（状态机、流事件处理、活跃生成注册表）
- events: 生成事件输出通道
"""
