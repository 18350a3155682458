"""ConversationEvent Domain Model

Ledger 中的一条不可变记录。同一任务的 ledger 内 id 唯一；
同一发送者 1 秒内的相同内容视为重复，不会被追加。
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from .enums import SenderRole

# ConversationEvent.type 常用取值
EVENT_TYPE_REPLY = "reply"
EVENT_TYPE_MESSAGE = "message"
EVENT_TYPE_SYSTEM_NOTE = "system_note"


class ConversationEvent(BaseModel):
    """ConversationEvent 数据模型

    ledger append-only，事件本身不可修改；
    仅 ledger 的容量裁剪会丢弃或截断旧事件（生成新副本）。
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default="", description="稳定的消息标识，缺失时本地生成")
    timestamp: datetime | None = Field(default=None, description="消息时间，缺失时取当前时间")
    sender_role: SenderRole = Field(description="发送者角色")
    sender_identity: str = Field(default="", description="发送者地址（已归一化）")
    type: str = Field(default="system", description="自由标签，如 reply / system_note")
    content: str = Field(default="", description="清洗后的正文")
    raw_content: str | None = Field(
        default=None,
        description="清洗前的原文，仅与 content 不同时保留，用于诊断",
    )
    metadata: dict[str, Any] = Field(default_factory=dict, description="开放元数据")


class LastMessageSummary(BaseModel):
    """最近一条消息的展示摘要，避免展示时解析整个 ledger"""

    timestamp: datetime | None = Field(default=None, description="最近事件时间")
    sender: str = Field(default="", description="最近事件发送者")
    snippet: str = Field(default="", description="折叠空白后的正文片段（<=160 字符）")
