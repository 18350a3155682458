"""配置常量模块 -- 可通过环境变量覆盖

包含数据库路径、ledger 容量上限、置信度阈值、幂等集合上限、
沉默升级时间窗等可配置常量。
"""

import os
from pathlib import Path

import structlog

log = structlog.get_logger()


def _get_base_dir() -> Path:
    """获取项目 data 基础目录"""
    return Path(os.environ.get("HANDOFF_DATA_DIR", "data"))


def get_db_path() -> str:
    """获取 SQLite 数据库路径"""
    return os.environ.get(
        "HANDOFF_DB_PATH",
        str(_get_base_dir() / "sqlite" / "handoff.db"),
    )


def _env_number(name: str, default, cast=int, minimum=None):
    """读取数值型环境变量；非法值记录告警并回落默认值"""
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = cast(raw)
    except ValueError:
        log.warning("invalid_numeric_config", env_var=name, value=raw, fallback=default)
        return default
    if minimum is not None and value < minimum:
        log.warning("config_below_minimum", env_var=name, value=value, minimum=minimum)
        return minimum
    return value


# ledger 最多保留的事件数
LEDGER_MAX_EVENTS: int = _env_number("HANDOFF_LEDGER_MAX_EVENTS", 30, minimum=1)

# ledger 序列化后的最大字符数（单元格上限约 50000，留出余量）；低于下限时按下限处理
LEDGER_MIN_CHARS: int = 4000
LEDGER_MAX_CHARS: int = _env_number(
    "HANDOFF_LEDGER_MAX_CHARS", 45000, minimum=LEDGER_MIN_CHARS
)

# 超出字符上限时先裁剪到最近 N 条
LEDGER_TRIM_TO_EVENTS: int = 20

# 单条事件正文截断长度与标记
LEDGER_CONTENT_TRUNCATE_CHARS: int = 500
TRUNCATION_MARKER: str = "... [truncated]"

# 裁剪到最后一步时发送者地址的最大长度（RFC 5321 地址上限）
SENDER_IDENTITY_MAX_CHARS: int = 254

# 最近消息片段长度
SNIPPET_MAX_CHARS: int = 160

# 同一发送者相同内容的去重时间窗（毫秒）
DUPLICATE_WINDOW_MS: int = 1000

# 派生字段与意图的置信度门槛
CONFIDENCE_THRESHOLD: float = _env_number(
    "HANDOFF_CONFIDENCE_THRESHOLD", 0.6, cast=float, minimum=0.0
)

# 正则日期提取器的置信度（低于分类器，仅填补空字段）
SECONDARY_EXTRACTOR_CONFIDENCE: float = 0.65

# 每个任务保留的已处理消息 ID 数
PROCESSED_IDS_MAX: int = _env_number("HANDOFF_PROCESSED_IDS_MAX", 500, minimum=1)

# 受托方沉默多久后发送跟进 / 升级到委托方（小时）
FOLLOW_UP_HOURS: int = _env_number("HANDOFF_FOLLOW_UP_HOURS", 24, minimum=1)
ESCALATION_HOURS: int = _env_number("HANDOFF_ESCALATION_HOURS", 48, minimum=1)
