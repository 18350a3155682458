"""Handoff Provider -- LLM 调用抽象层

分类器通过这里访问 LiteLLM Proxy：主模型失败时按需降级到备用模型。
"""

# 核心组件
from .client import LiteLLMClient

# 配置
from .config import ProviderConfig, load_provider_config

# 异常
from .exceptions import MalformedResponseError, ProviderError, ProxyUnreachableError
from .fallback import FallbackManager

# 数据模型
from .models import ModelCallResult, TokenUsage
from .parsing import extract_json_object

__all__ = [
    "ModelCallResult",
    "TokenUsage",
    "LiteLLMClient",
    "FallbackManager",
    "ProviderConfig",
    "load_provider_config",
    "extract_json_object",
    "ProviderError",
    "ProxyUnreachableError",
    "MalformedResponseError",
]
