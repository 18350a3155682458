"""structlog 配置模块

dev 模式：pretty print 可读输出；json 模式：结构化 JSON 输出。
邮件正文不进日志：事件字典中的正文字段只保留长度。
"""

import logging
import os

import structlog

# 出现在日志上下文中时只记录长度的正文字段
BODY_KEYS = frozenset({"plain_body", "raw_content", "body"})

# 第三方库日志压到 WARNING，避免每次分类调用都刷屏
_NOISY_LOGGERS = ("LiteLLM", "LiteLLM Router", "httpx", "httpcore", "aiosqlite")


def redact_bodies(logger, method_name: str, event_dict: dict) -> dict:
    """structlog processor：正文字段替换为 <N chars>"""
    for key in BODY_KEYS & event_dict.keys():
        value = event_dict[key]
        if isinstance(value, str):
            event_dict[key] = f"<{len(value)} chars>"
    return event_dict


def setup_logging(log_format: str | None = None, log_level: str | None = None) -> None:
    """初始化 structlog 配置

    Args:
        log_format: "json" 或 "dev"，None 时读取 HANDOFF_LOG_FORMAT（默认 dev）
        log_level: 日志级别，None 时读取 HANDOFF_LOG_LEVEL（默认 INFO）
    """
    log_format = log_format or os.environ.get("HANDOFF_LOG_FORMAT", "dev")
    log_level = log_level or os.environ.get("HANDOFF_LOG_LEVEL", "INFO")

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        redact_bodies,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format == "json":
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer(
            ensure_ascii=False
        )
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler()
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=renderer,
            foreign_pre_chain=shared_processors,
        )
    )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
