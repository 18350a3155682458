"""Handoff Core Domain Models -- 公共类型导出

所有公共模型类型从此入口导入。
"""

from .classification import (
    ClassificationRequest,
    ClassificationResult,
    IntentClassification,
)
from .enums import (
    AGREEMENT_INTENTS,
    ATTENTION_STATES,
    DECISION_STATES,
    LEGACY_STATUS_MAP,
    TERMINAL_STATES,
    VALID_TRANSITIONS,
    ChangeStatus,
    ConversationState,
    DecisionOutcome,
    DecisionStage,
    MessageIntent,
    Party,
    SenderRole,
    TaskStatus,
    TrackedParameter,
    needs_attention,
    normalize_status,
    validate_transition,
)
from .event import (
    EVENT_TYPE_MESSAGE,
    EVENT_TYPE_REPLY,
    EVENT_TYPE_SYSTEM_NOTE,
    ConversationEvent,
    LastMessageSummary,
)
from .message import InboundMessage, IngestResult
from .task import (
    SNAPSHOT_FIELDS,
    DerivedSnapshot,
    FieldProvenance,
    PendingChange,
    PendingDecision,
    ResolvedDecision,
    Task,
)

__all__ = [
    # 枚举
    "TaskStatus",
    "ConversationState",
    "SenderRole",
    "Party",
    "TrackedParameter",
    "ChangeStatus",
    "DecisionStage",
    "DecisionOutcome",
    "MessageIntent",
    # 状态机
    "VALID_TRANSITIONS",
    "TERMINAL_STATES",
    "LEGACY_STATUS_MAP",
    "ATTENTION_STATES",
    "DECISION_STATES",
    "AGREEMENT_INTENTS",
    "validate_transition",
    "normalize_status",
    "needs_attention",
    # Task
    "Task",
    "PendingChange",
    "PendingDecision",
    "ResolvedDecision",
    "DerivedSnapshot",
    "FieldProvenance",
    "SNAPSHOT_FIELDS",
    # Ledger
    "ConversationEvent",
    "LastMessageSummary",
    "EVENT_TYPE_REPLY",
    "EVENT_TYPE_MESSAGE",
    "EVENT_TYPE_SYSTEM_NOTE",
    # Message
    "InboundMessage",
    "IngestResult",
    # Classification
    "ClassificationRequest",
    "ClassificationResult",
    "IntentClassification",
]
