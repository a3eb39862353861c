"""
模型默认配置

按模型 ID 匹配默认参数（上下文长度、最大输出、温度、是否支持图片）。
创建对话或切换模型时，用这些默认值填充对话设置。

匹配规则：按 MODEL_CONFIGS 的顺序，第一个包含于模型 ID（小写）的关键字生效；
都不匹配时使用 DEFAULT_MODEL_CONFIG。
"""

from dataclasses import dataclass
from typing import Dict, List, Tuple


@dataclass(frozen=True)
class ModelConfig:
    """模型默认配置"""

    context_length: int
    max_tokens: int
    temperature: float = 0.7
    vision: bool = False
    reasoning: bool = False


DEFAULT_MODEL_CONFIG = ModelConfig(context_length=4096, max_tokens=2048)

# 关键字 -> 配置（越具体的关键字越靠前）
MODEL_CONFIGS: List[Tuple[str, ModelConfig]] = [
    ("gpt-4o-mini", ModelConfig(context_length=128000, max_tokens=16384, vision=True)),
    ("gpt-4o", ModelConfig(context_length=128000, max_tokens=16384, vision=True)),
    ("gpt-4.1", ModelConfig(context_length=1047576, max_tokens=32768, vision=True)),
    ("o1", ModelConfig(context_length=200000, max_tokens=100000, temperature=1.0, reasoning=True)),
    ("o3", ModelConfig(context_length=200000, max_tokens=100000, temperature=1.0, vision=True, reasoning=True)),
    ("gpt-4", ModelConfig(context_length=8192, max_tokens=4096)),
    ("gpt-3.5", ModelConfig(context_length=16385, max_tokens=4096)),
    ("deepseek-reasoner", ModelConfig(context_length=65536, max_tokens=8192, temperature=0.6, reasoning=True)),
    ("deepseek-r1", ModelConfig(context_length=65536, max_tokens=8192, temperature=0.6, reasoning=True)),
    ("deepseek", ModelConfig(context_length=65536, max_tokens=8192)),
    ("qwen-vl", ModelConfig(context_length=32768, max_tokens=8192, vision=True)),
    ("qwq", ModelConfig(context_length=131072, max_tokens=8192, temperature=0.6, reasoning=True)),
    ("qwen", ModelConfig(context_length=131072, max_tokens=8192)),
    ("glm-4v", ModelConfig(context_length=8192, max_tokens=1024, vision=True)),
    ("glm", ModelConfig(context_length=128000, max_tokens=4096)),
    ("gemini", ModelConfig(context_length=1048576, max_tokens=8192, vision=True)),
    ("claude", ModelConfig(context_length=200000, max_tokens=8192, vision=True)),
    ("llama", ModelConfig(context_length=8192, max_tokens=2048)),
]

_cache: Dict[str, ModelConfig] = {}


def get_model_config(model_id: str) -> ModelConfig:
    """获取模型默认配置"""
    key = (model_id or "").lower()
    if key in _cache:
        return _cache[key]

    config = DEFAULT_MODEL_CONFIG
    for pattern, candidate in MODEL_CONFIGS:
        if pattern in key:
            config = candidate
            break

    _cache[key] = config
    return config


def supports_vision(model_id: str) -> bool:
    return get_model_config(model_id).vision
