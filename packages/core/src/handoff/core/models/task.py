"""Task Domain Model

任务记录是一行扁平文档：生命周期状态、有效参数、提议参数、会话状态、
未决变更/协商、ledger、派生快照及其来源、已处理消息 ID 集合。
各组件只写自己拥有的字段（见 store.task_store 中的字段分组）。
"""

from datetime import date, datetime

from pydantic import BaseModel, Field
from ulid import ULID

from .enums import (
    ChangeStatus,
    ConversationState,
    DecisionOutcome,
    DecisionStage,
    Party,
    TaskStatus,
    TrackedParameter,
)
from .event import ConversationEvent

# DerivedSnapshot 中受置信度门控的字段
SNAPSHOT_FIELDS: tuple[str, ...] = (
    "name",
    "due_date_effective",
    "due_date_proposed",
    "scope_summary",
)


class PendingChange(BaseModel):
    """从会话中提取出的一条未决变更请求

    多条 PendingChange 可并存（不同参数），与单槽确认协议相互独立。
    """

    id: str = Field(default_factory=lambda: str(ULID()), description="变更 ID")
    parameter: TrackedParameter = Field(description="变更的参数")
    change_type: str = Field(default="update", description="变更类型")
    current_value: str | None = Field(default=None, description="当前值")
    proposed_value: str | None = Field(default=None, description="提议值")
    requested_by: Party = Field(description="提出方")
    awaiting_from: Party | None = Field(default=None, description="等待哪一方回应")
    requires_approval: bool = Field(default=True, description="是否需要对方批准")
    status: ChangeStatus = Field(default=ChangeStatus.PENDING, description="变更状态")
    reasoning: str = Field(default="", description="提取理由")


class PendingDecision(BaseModel):
    """单一参数上唯一进行中的双方协商"""

    type: str = Field(description="协商类型，如 due_date_change")
    parameter: TrackedParameter = Field(description="协商的参数")
    current_value: str | None = Field(default=None, description="协商开始时的有效值")
    proposed_value: str = Field(description="提议值")
    requested_by: Party = Field(description="提出方")
    awaiting_from: Party = Field(description="等待确认方，总是提出方的对方")
    stage: DecisionStage = Field(default=DecisionStage.PROPOSED, description="协商阶段")
    message_id: str = Field(description="产生当前提议的消息 ID")
    created_at: datetime = Field(description="创建时间")


class ResolvedDecision(BaseModel):
    """协商历史条目"""

    parameter: TrackedParameter
    proposed_value: str
    requested_by: Party
    outcome: DecisionOutcome
    message_id: str = Field(default="", description="结束协商的消息 ID")
    resolved_at: datetime


class FieldProvenance(BaseModel):
    """派生字段的来源记录"""

    source_message_id: str = Field(default="", description="来源消息 ID")
    source_snippet: str = Field(default="", description="来源片段")
    confidence: float = Field(default=0.0, ge=0.0, le=1.0, description="置信度 0-1")
    extracted_at: datetime | None = Field(default=None, description="提取时间")


class DerivedSnapshot(BaseModel):
    """分类器对任务真实参数的当前重建结果"""

    name: str | None = Field(default=None, description="任务名称")
    due_date_effective: str | None = Field(default=None, description="当前有效截止日期")
    due_date_proposed: str | None = Field(default=None, description="被提议的截止日期")
    scope_summary: str | None = Field(default=None, description="范围摘要")


class Task(BaseModel):
    """Task 数据模型"""

    task_id: str = Field(description="唯一标识，ULID 格式")
    created_at: datetime = Field(description="创建时间")
    updated_at: datetime = Field(description="更新时间")
    status: TaskStatus = Field(default=TaskStatus.DRAFTED, description="生命周期状态")

    # 有效参数
    name: str = Field(description="任务名称")
    due_date: date | None = Field(default=None, description="有效截止日期")
    scope: str = Field(default="", description="范围描述")

    # 提议参数（存在未决协商时填充）
    proposed_name: str | None = Field(default=None, description="提议名称")
    proposed_due_date: date | None = Field(default=None, description="提议截止日期")
    proposed_scope: str | None = Field(default=None, description="提议范围")

    # 参与方
    delegator_address: str = Field(description="委托方地址")
    delegate_address: str | None = Field(default=None, description="受托方地址")
    thread_id: str | None = Field(default=None, description="会话线程标识")
    assigned_at: datetime | None = Field(default=None, description="指派时间")

    # 会话状态
    conversation_state: ConversationState = Field(
        default=ConversationState.ACTIVE,
        description="细粒度会话状态",
    )
    awaiting_party: Party | None = Field(
        default=None,
        description="协商被拒后需要先行动的一方",
    )
    pending_changes: list[PendingChange] = Field(
        default_factory=list,
        description="未决变更列表（有序）",
    )
    pending_decision: PendingDecision | None = Field(
        default=None,
        description="唯一进行中的协商",
    )
    negotiation_history: list[ResolvedDecision] = Field(
        default_factory=list,
        description="已结束的协商",
    )
    last_confirmation_summary: str = Field(default="", description="最近一次确认摘要")

    # Ledger 与摘要
    conversation_history: list[ConversationEvent] = Field(
        default_factory=list,
        description="会话 ledger",
    )
    message_count: int = Field(default=0, ge=0, description="ledger 事件数")
    last_message_at: datetime | None = Field(default=None, description="最近消息时间")
    last_message_sender: str = Field(default="", description="最近消息发送者")
    last_message_snippet: str = Field(default="", description="最近消息片段")
    last_delegator_message_at: datetime | None = Field(default=None)
    last_delegate_message_at: datetime | None = Field(default=None)

    # 派生状态
    summary: str = Field(default="", description="会话一句话摘要")
    requires_action: bool = Field(default=False, description="是否需要委托方行动")
    derived_snapshot: DerivedSnapshot = Field(
        default_factory=DerivedSnapshot,
        description="派生参数快照",
    )
    derived_provenance: dict[str, FieldProvenance] = Field(
        default_factory=dict,
        description="快照字段 -> 来源",
    )
    last_analyzed_at: datetime | None = Field(default=None, description="最近分析时间")

    # 幂等
    processed_message_ids: list[str] = Field(
        default_factory=list,
        description="已处理的消息 ID（按处理顺序）",
    )

    # 沉默升级标记
    follow_up_sent_at: datetime | None = Field(default=None, description="跟进提醒发送时间")
    escalated_at: datetime | None = Field(default=None, description="升级至委托方时间")

    def effective_value(self, parameter: TrackedParameter) -> str | None:
        """参数的有效值（字符串形式）"""
        if parameter is TrackedParameter.DUE_DATE:
            return self.due_date.isoformat() if self.due_date else None
        if parameter is TrackedParameter.SCOPE:
            return self.scope or None
        return self.name or None
