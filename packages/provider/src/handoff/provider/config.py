"""ProviderConfig -- Provider 配置加载

从环境变量加载配置，不硬编码 provider/模型名：
模型名都是 LiteLLM Proxy 中的 model group。
"""

import os
from typing import Literal

import structlog
from pydantic import BaseModel, Field, SecretStr

log = structlog.get_logger()


class ProviderConfig(BaseModel):
    """Provider 包配置 -- 从环境变量加载

    环境变量:
        LITELLM_PROXY_URL: Proxy 地址（默认 http://localhost:4000）
        LITELLM_PROXY_KEY: Proxy 访问密钥
        HANDOFF_LLM_MODE: 分类器模式（litellm/heuristic）
        HANDOFF_LLM_TIMEOUT_S: 调用超时（秒，默认 30）
        HANDOFF_CLASSIFIER_MODEL: 分类主模型 group（默认 main）
        HANDOFF_CLASSIFIER_FALLBACK_MODEL: 分类备用模型 group（默认 fallback，空串表示不降级）
    """

    proxy_base_url: str = Field(
        default="http://localhost:4000",
        description="LiteLLM Proxy 基础 URL",
    )
    proxy_api_key: SecretStr = Field(
        default=SecretStr(""),
        description="Proxy 访问密钥（不是 LLM provider API key）",
    )
    llm_mode: Literal["litellm", "heuristic"] = Field(
        default="litellm",
        description="分类器模式：litellm 调用模型，heuristic 使用本地关键词规则",
    )
    timeout_s: int = Field(
        default=30,
        ge=1,
        description="LLM 调用超时（秒）",
    )
    classifier_model: str = Field(default="main", description="分类主模型 group")
    fallback_model: str = Field(
        default="fallback",
        description="分类备用模型 group，空串表示不降级",
    )


def load_provider_config() -> ProviderConfig:
    """从环境变量加载 Provider 配置

    Returns:
        ProviderConfig 实例
    """
    kwargs: dict = {}

    if val := os.environ.get("LITELLM_PROXY_URL"):
        kwargs["proxy_base_url"] = val

    if val := os.environ.get("LITELLM_PROXY_KEY"):
        kwargs["proxy_api_key"] = SecretStr(val)

    if val := os.environ.get("HANDOFF_LLM_MODE"):
        kwargs["llm_mode"] = val

    if val := os.environ.get("HANDOFF_LLM_TIMEOUT_S"):
        try:
            kwargs["timeout_s"] = int(val)
        except ValueError:
            log.warning(
                "invalid_timeout_config",
                env_var="HANDOFF_LLM_TIMEOUT_S",
                value=val,
                fallback=30,
            )

    if val := os.environ.get("HANDOFF_CLASSIFIER_MODEL"):
        kwargs["classifier_model"] = val

    # 显式设置为空串表示关闭降级
    val = os.environ.get("HANDOFF_CLASSIFIER_FALLBACK_MODEL")
    if val is not None:
        kwargs["fallback_model"] = val.strip()

    return ProviderConfig(**kwargs)
