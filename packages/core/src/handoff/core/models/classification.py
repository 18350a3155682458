"""分类适配器的输入输出模型

适配器被视为不可信、可能失败的外部函数：
所有输出字段都有安全的空默认值，ClassificationResult.empty() 即“没有新信息”。
"""

from pydantic import BaseModel, Field

from .enums import ConversationState, MessageIntent, Party, TaskStatus
from .task import DerivedSnapshot, FieldProvenance, PendingChange, PendingDecision


class IntentClassification(BaseModel):
    """最新一条消息的意图"""

    intent: MessageIntent = Field(default=MessageIntent.OTHER, description="意图")
    message_id: str = Field(default="", description="被分类的消息 ID")
    parameter: str | None = Field(default=None, description="变更请求涉及的参数")
    proposed_value: str | None = Field(default=None, description="变更请求的提议值")
    confidence: float = Field(default=0.0, ge=0.0, le=1.0, description="置信度")
    reasoning: str = Field(default="", description="分类理由")


class ClassificationRequest(BaseModel):
    """适配器输入：完整会话 transcript + 当前参数 + 当前未决状态"""

    task_id: str
    transcript: str = Field(description="按时间排序、逐行标注发送方和消息 ID 的 transcript")
    latest_message_id: str = Field(default="", description="本次分类的消息 ID，默认最新一条非系统消息")
    latest_sender: Party | None = Field(default=None, description="该消息发送方")
    latest_content: str = Field(default="", description="该消息正文")
    status: TaskStatus
    conversation_state: ConversationState = Field(
        default=ConversationState.ACTIVE,
        description="当前会话状态",
    )
    effective_parameters: dict[str, str | None] = Field(default_factory=dict)
    proposed_parameters: dict[str, str | None] = Field(default_factory=dict)
    pending_decision: PendingDecision | None = None
    pending_changes: list[PendingChange] = Field(default_factory=list)


class ClassificationResult(BaseModel):
    """适配器输出

    conversation_state 保留原始字符串，由 Reconciliation Engine 校验。
    """

    conversation_state: str = Field(default="", description="粗粒度会话状态（未校验）")
    pending_changes: list[PendingChange] = Field(default_factory=list)
    summary: str = Field(default="", description="一句话摘要")
    requires_action: bool = Field(default=False)
    task_snapshot: DerivedSnapshot = Field(default_factory=DerivedSnapshot)
    provenance: dict[str, FieldProvenance] = Field(default_factory=dict)
    intent: IntentClassification | None = Field(default=None)

    @classmethod
    def empty(cls) -> "ClassificationResult":
        return cls()
