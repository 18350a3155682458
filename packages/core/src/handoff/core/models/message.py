"""InboundMessage Domain Model

消息协作方投递的入站消息统一格式：{id, threadId, from, plainBody, timestamp}。
"""

from datetime import UTC, datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator


class InboundMessage(BaseModel):
    """入站消息

    JSON 中的 from / threadId / plainBody 通过 alias 映射。
    """

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(max_length=998, description="消息协作方提供的稳定消息 ID（不超过一行邮件头）")
    thread_id: str = Field(default="", alias="threadId", description="会话线程标识")
    sender: str = Field(alias="from", description="发件人，可带显示名，如 'Name <addr>'")
    plain_body: str = Field(default="", alias="plainBody", description="纯文本正文（未清洗）")
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="消息时间",
    )

    @field_validator("timestamp")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        """不带时区的时间按 UTC 处理"""
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


class IngestResult(BaseModel):
    """Message Gateway ingest 结果"""

    task_id: str = Field(description="关联的 Task ID")
    message_id: str = Field(description="消息 ID")
    skipped: bool = Field(default=False, description="是否因已处理而跳过")
