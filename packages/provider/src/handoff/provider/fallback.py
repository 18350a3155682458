"""FallbackManager -- 降级管理器

Lazy probe 策略：每次调用时先尝试 primary，失败则切换到 fallback。
不维护显式的"降级状态"标记。
"""

import structlog

from .exceptions import ProviderError
from .models import ModelCallResult

log = structlog.get_logger()


class FallbackManager:
    """降级管理器

    降级链: 主模型 group -> 备用模型 group（可以是同一个 Proxy 上的另一组模型）。
    """

    def __init__(
        self,
        primary,
        fallback=None,
        fallback_alias: str | None = None,
    ) -> None:
        """初始化降级管理器

        Args:
            primary: 主 LLM 客户端（LiteLLMClient 或测试替身）
            fallback: 降级客户端，None 表示无降级
            fallback_alias: 降级调用使用的 model group，None 沿用请求的 alias
        """
        self._primary = primary
        self._fallback = fallback
        self._fallback_alias = fallback_alias

    async def call_with_fallback(
        self,
        messages: list[dict[str, str]],
        model_alias: str = "main",
        **kwargs,
    ) -> ModelCallResult:
        """带降级的 LLM 调用

        Returns:
            ModelCallResult
            - primary 成功: is_fallback=False
            - fallback 成功: is_fallback=True, fallback_reason=<错误描述>

        Raises:
            ProviderError: primary 失败且无 fallback，或双方均失败
        """
        primary_error: Exception | None = None
        try:
            return await self._primary.complete(
                messages=messages,
                model_alias=model_alias,
                **kwargs,
            )
        except Exception as e:
            primary_error = e
            log.warning(
                "primary_failed_attempting_fallback",
                error=str(e),
                model_alias=model_alias,
            )

        if self._fallback is None:
            raise ProviderError(
                f"Primary 调用失败且无 fallback 配置: {primary_error}",
                recoverable=False,
            ) from primary_error

        fallback_alias = self._fallback_alias or model_alias
        try:
            result = await self._fallback.complete(
                messages=messages,
                model_alias=fallback_alias,
                **kwargs,
            )
        except Exception as fallback_error:
            log.error(
                "both_primary_and_fallback_failed",
                primary_error=str(primary_error),
                fallback_error=str(fallback_error),
            )
            raise ProviderError(
                f"Primary 和 Fallback 均失败。Primary: {primary_error}; "
                f"Fallback: {fallback_error}",
                recoverable=False,
            ) from fallback_error

        log.info(
            "fallback_activated",
            fallback_reason=str(primary_error),
            model_alias=model_alias,
            fallback_alias=fallback_alias,
        )
        return result.model_copy(
            update={
                "is_fallback": True,
                "fallback_reason": f"Primary 失败: {primary_error}",
            }
        )
