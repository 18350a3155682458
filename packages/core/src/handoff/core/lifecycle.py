"""Task Lifecycle State Machine

drafted -> awaiting_first_response -> active <-> blocked -> completion_pending -> closed，
以及可由任何非终态到达的 cancelled。生命周期状态比会话状态粗：
协商、更新等会话状态变化发生时生命周期状态保持 active。
"""

from datetime import UTC, datetime
from enum import StrEnum

import structlog

from .exceptions import InvalidTransitionError
from .models.enums import ConversationState, TaskStatus, validate_transition
from .models.task import Task

log = structlog.get_logger()


class LifecycleEvent(StrEnum):
    """驱动生命周期流转的事件"""

    ASSIGNED = "assigned"
    FIRST_RESPONSE = "first_response"
    BLOCKER_REPORTED = "blocker_reported"
    BLOCKER_CLEARED = "blocker_cleared"
    COMPLETION_CLAIMED = "completion_claimed"
    COMPLETION_APPROVED = "completion_approved"
    COMPLETION_REJECTED = "completion_rejected"
    CANCELLED = "cancelled"
    REOPENED = "reopened"


EVENT_TARGETS: dict[LifecycleEvent, TaskStatus] = {
    LifecycleEvent.ASSIGNED: TaskStatus.AWAITING_FIRST_RESPONSE,
    LifecycleEvent.FIRST_RESPONSE: TaskStatus.ACTIVE,
    LifecycleEvent.BLOCKER_REPORTED: TaskStatus.BLOCKED,
    LifecycleEvent.BLOCKER_CLEARED: TaskStatus.ACTIVE,
    LifecycleEvent.COMPLETION_CLAIMED: TaskStatus.COMPLETION_PENDING,
    LifecycleEvent.COMPLETION_APPROVED: TaskStatus.CLOSED,
    LifecycleEvent.COMPLETION_REJECTED: TaskStatus.ACTIVE,
    LifecycleEvent.CANCELLED: TaskStatus.CANCELLED,
    LifecycleEvent.REOPENED: TaskStatus.ACTIVE,
}

# 事件对应的会话状态（None 表示保持不变）
_EVENT_CONVERSATION_STATES: dict[LifecycleEvent, ConversationState | None] = {
    LifecycleEvent.ASSIGNED: ConversationState.ACTIVE,
    LifecycleEvent.FIRST_RESPONSE: None,
    LifecycleEvent.BLOCKER_REPORTED: ConversationState.BLOCKER_REPORTED,
    LifecycleEvent.BLOCKER_CLEARED: ConversationState.UPDATE_RECEIVED,
    LifecycleEvent.COMPLETION_CLAIMED: ConversationState.COMPLETION_PENDING,
    LifecycleEvent.COMPLETION_APPROVED: ConversationState.RESOLVED,
    LifecycleEvent.COMPLETION_REJECTED: ConversationState.ACTIVE,
    LifecycleEvent.CANCELLED: None,
    LifecycleEvent.REOPENED: ConversationState.ACTIVE,
}

# 这些事件允许从 awaiting_first_response 隐式经过 active
_IMPLIES_FIRST_RESPONSE = {
    LifecycleEvent.BLOCKER_REPORTED,
    LifecycleEvent.COMPLETION_CLAIMED,
}


def transition(
    task: Task,
    event: LifecycleEvent,
    now: datetime | None = None,
) -> Task:
    """严格流转：非法时抛出 InvalidTransitionError

    Args:
        task: 当前任务
        event: 生命周期事件
        now: 当前时间

    Returns:
        更新了 status / conversation_state / updated_at 的新 Task
    """
    target = EVENT_TARGETS[event]
    if not validate_transition(task.status, target):
        raise InvalidTransitionError(task.task_id, task.status.value, target.value)

    now = now or datetime.now(UTC)
    update: dict = {"status": target, "updated_at": now}
    state = _EVENT_CONVERSATION_STATES[event]
    if state is not None:
        update["conversation_state"] = state
    if event is LifecycleEvent.ASSIGNED:
        update["assigned_at"] = now

    log.info(
        "lifecycle_transition",
        task_id=task.task_id,
        lifecycle_event=event.value,
        from_status=task.status.value,
        to_status=target.value,
    )
    return task.model_copy(update=update)


def advance(
    task: Task,
    event: LifecycleEvent,
    now: datetime | None = None,
) -> Task:
    """消息驱动的宽松流转

    - 已处于目标状态时不变
    - 待首次回复时，受阻/完成声明先隐式进入 active
    - 非法流转只记录告警，返回原任务
    """
    target = EVENT_TARGETS[event]
    if task.status is target:
        return task

    if (
        event in _IMPLIES_FIRST_RESPONSE
        and task.status is TaskStatus.AWAITING_FIRST_RESPONSE
    ):
        task = transition(task, LifecycleEvent.FIRST_RESPONSE, now)

    try:
        return transition(task, event, now)
    except InvalidTransitionError:
        log.warning(
            "lifecycle_transition_ignored",
            task_id=task.task_id,
            lifecycle_event=event.value,
            status=task.status.value,
        )
        return task
