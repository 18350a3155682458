"""枚举定义 -- 生命周期状态、会话状态、参与方、参数与意图

包含 TaskStatus 生命周期状态机、ConversationState 细粒度会话状态，
以及 VALID_TRANSITIONS 合法流转映射、TERMINAL_STATES 终态集合、
历史状态字符串的归一化映射。
"""

from enum import StrEnum


class TaskStatus(StrEnum):
    """Task 生命周期状态（粗粒度）"""

    DRAFTED = "drafted"
    AWAITING_FIRST_RESPONSE = "awaiting_first_response"
    ACTIVE = "active"
    BLOCKED = "blocked"
    COMPLETION_PENDING = "completion_pending"

    # 终态
    CLOSED = "closed"
    CANCELLED = "cancelled"


# 合法状态流转；cancelled 可由任何非终态到达
VALID_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.DRAFTED: {TaskStatus.AWAITING_FIRST_RESPONSE, TaskStatus.CANCELLED},
    TaskStatus.AWAITING_FIRST_RESPONSE: {TaskStatus.ACTIVE, TaskStatus.CANCELLED},
    TaskStatus.ACTIVE: {
        TaskStatus.BLOCKED,
        TaskStatus.COMPLETION_PENDING,
        TaskStatus.CANCELLED,
    },
    TaskStatus.BLOCKED: {
        TaskStatus.ACTIVE,
        TaskStatus.COMPLETION_PENDING,
        TaskStatus.CANCELLED,
    },
    TaskStatus.COMPLETION_PENDING: {
        TaskStatus.CLOSED,
        TaskStatus.ACTIVE,
        TaskStatus.CANCELLED,
    },
    # closed 只能通过 reopen 回到 active
    TaskStatus.CLOSED: {TaskStatus.ACTIVE},
    TaskStatus.CANCELLED: set(),
}

TERMINAL_STATES: set[TaskStatus] = {
    TaskStatus.CLOSED,
    TaskStatus.CANCELLED,
}

# 历史状态字符串 -> 当前生命周期状态
LEGACY_STATUS_MAP: dict[str, TaskStatus] = {
    "draft": TaskStatus.DRAFTED,
    "new": TaskStatus.DRAFTED,
    "ai_assist": TaskStatus.DRAFTED,
    "review_ai_assist": TaskStatus.DRAFTED,
    "scheduling_conflict": TaskStatus.DRAFTED,
    "assigned": TaskStatus.AWAITING_FIRST_RESPONSE,
    "not_active": TaskStatus.AWAITING_FIRST_RESPONSE,
    "on_time": TaskStatus.ACTIVE,
    "slow_progress": TaskStatus.ACTIVE,
    "pending_action": TaskStatus.ACTIVE,
    "review_date": TaskStatus.ACTIVE,
    "review_date_boss_approved": TaskStatus.ACTIVE,
    "review_date_boss_rejected": TaskStatus.ACTIVE,
    "review_date_boss_proposed": TaskStatus.ACTIVE,
    "review_scope": TaskStatus.ACTIVE,
    "review_scope_clarified": TaskStatus.ACTIVE,
    "review_role": TaskStatus.ACTIVE,
    "review_stagnation": TaskStatus.ACTIVE,
    "review_update": TaskStatus.ACTIVE,
    "scheduled": TaskStatus.ACTIVE,
    "reopened": TaskStatus.ACTIVE,
    "on_hold": TaskStatus.BLOCKED,
    "someday": TaskStatus.BLOCKED,
    "completed": TaskStatus.COMPLETION_PENDING,
    "done_pending_review": TaskStatus.COMPLETION_PENDING,
    "done": TaskStatus.CLOSED,
}


class ConversationState(StrEnum):
    """会话状态（细粒度），独立于生命周期状态"""

    ACTIVE = "active"
    UPDATE_RECEIVED = "update_received"
    CHANGE_REQUESTED = "change_requested"
    COMPLETION_PENDING = "completion_pending"
    BLOCKER_REPORTED = "blocker_reported"
    AWAITING_COUNTERPART = "awaiting_counterpart"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    COUNTERPART_PROPOSED = "counterpart_proposed"
    NEGOTIATING = "negotiating"
    RESOLVED = "resolved"
    REJECTED = "rejected"


# 需要委托方关注的会话状态
ATTENTION_STATES: set[ConversationState] = {
    ConversationState.CHANGE_REQUESTED,
    ConversationState.COMPLETION_PENDING,
    ConversationState.BLOCKER_REPORTED,
    ConversationState.NEGOTIATING,
}

# 存在未决协商时与之一致的会话状态
DECISION_STATES: set[ConversationState] = {
    ConversationState.CHANGE_REQUESTED,
    ConversationState.AWAITING_COUNTERPART,
    ConversationState.AWAITING_CONFIRMATION,
    ConversationState.COUNTERPART_PROPOSED,
    ConversationState.NEGOTIATING,
}


class SenderRole(StrEnum):
    """Ledger 事件发送者角色"""

    DELEGATOR = "delegator"
    DELEGATE = "delegate"
    SYSTEM = "system"


class Party(StrEnum):
    """协商参与方"""

    DELEGATOR = "delegator"
    DELEGATE = "delegate"

    @property
    def counterpart(self) -> "Party":
        return Party.DELEGATE if self is Party.DELEGATOR else Party.DELEGATOR


class TrackedParameter(StrEnum):
    """被追踪的任务参数"""

    NAME = "name"
    DUE_DATE = "due_date"
    SCOPE = "scope"


class ChangeStatus(StrEnum):
    """PendingChange 状态"""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CONFIRMED = "confirmed"


class DecisionStage(StrEnum):
    """PendingDecision 阶段

    approved 表示委托方已同意受托方的请求，仍需受托方最终确认。
    """

    PROPOSED = "proposed"
    APPROVED = "approved"


class DecisionOutcome(StrEnum):
    """协商结束方式"""

    APPLIED = "applied"
    REJECTED = "rejected"
    SUPERSEDED = "superseded"


class MessageIntent(StrEnum):
    """最新一条消息的意图分类"""

    ACCEPTANCE = "acceptance"
    CONFIRMATION = "confirmation"
    CHANGE_REQUEST = "change_request"
    REJECTION = "rejection"
    SCOPE_QUESTION = "scope_question"
    ROLE_REJECTION = "role_rejection"
    COMPLETION_CLAIM = "completion_claim"
    BLOCKER = "blocker"
    PROGRESS_UPDATE = "progress_update"
    OTHER = "other"


# 视为同意/确认的意图
AGREEMENT_INTENTS: set[MessageIntent] = {
    MessageIntent.ACCEPTANCE,
    MessageIntent.CONFIRMATION,
}


def validate_transition(from_status: TaskStatus, to_status: TaskStatus) -> bool:
    """验证状态流转是否合法

    Args:
        from_status: 当前状态
        to_status: 目标状态

    Returns:
        True 如果流转合法，否则 False
    """
    allowed = VALID_TRANSITIONS.get(from_status, set())
    return to_status in allowed


def normalize_status(raw: str | None) -> TaskStatus:
    """将存储中的状态字符串归一化为 TaskStatus

    已是合法值的直接返回；历史值按 LEGACY_STATUS_MAP 映射；
    空值或未知值回落为 drafted。
    """
    if not raw:
        return TaskStatus.DRAFTED
    key = raw.strip().lower().replace(" ", "_")
    if key in LEGACY_STATUS_MAP:
        return LEGACY_STATUS_MAP[key]
    try:
        return TaskStatus(key)
    except ValueError:
        return TaskStatus.DRAFTED


def needs_attention(state: ConversationState | str | None) -> bool:
    """会话状态是否需要委托方关注"""
    return state in ATTENTION_STATES
