"""静默检测 -- 等待被委托方回复超时后的跟进与升级

只有在等待被委托方时才计时：待首次回复、协商等待其确认、或 awaiting_party 指向被委托方。
计时起点是派发时间与委托方最近一条消息中较晚者；被委托方此后有任何消息即不再静默。
follow_up_sent_at / escalated_at 是类型化的任务字段，某个动作只有在其标记为空
或早于当前计时起点时才再次到期。
"""

from datetime import UTC, datetime, timedelta
from enum import StrEnum

import structlog

from . import config
from .models.enums import TERMINAL_STATES, Party, TaskStatus
from .models.task import Task

log = structlog.get_logger()


class SilenceAction(StrEnum):
    """静默检测结果"""

    NONE = "none"
    FOLLOW_UP = "follow_up"
    ESCALATE = "escalate"


def awaiting_delegate(task: Task) -> bool:
    """当前是否在等待被委托方"""
    if task.status in TERMINAL_STATES or not task.delegate_address:
        return False
    if task.status is TaskStatus.AWAITING_FIRST_RESPONSE:
        return True
    decision = task.pending_decision
    if decision is not None and decision.awaiting_from is Party.DELEGATE:
        return True
    return task.awaiting_party is Party.DELEGATE


def silence_started_at(task: Task) -> datetime | None:
    """静默计时起点"""
    candidates = [t for t in (task.assigned_at, task.last_delegator_message_at) if t]
    if not candidates:
        return None
    return max(candidates)


def _flag_is_stale(flag: datetime | None, reference: datetime) -> bool:
    return flag is None or flag < reference


def evaluate_silence(
    task: Task,
    now: datetime | None = None,
    follow_up_after: timedelta | None = None,
    escalate_after: timedelta | None = None,
) -> SilenceAction:
    """判断任务是否需要跟进或升级（不修改任务）"""
    if not awaiting_delegate(task):
        return SilenceAction.NONE
    started = silence_started_at(task)
    if started is None:
        return SilenceAction.NONE
    if task.last_delegate_message_at and task.last_delegate_message_at >= started:
        return SilenceAction.NONE

    now = now or datetime.now(UTC)
    follow_up_after = follow_up_after or timedelta(hours=config.FOLLOW_UP_HOURS)
    escalate_after = escalate_after or timedelta(hours=config.ESCALATION_HOURS)
    silent_for = now - started

    if silent_for >= escalate_after and _flag_is_stale(task.escalated_at, started):
        return SilenceAction.ESCALATE
    if silent_for >= follow_up_after and _flag_is_stale(task.follow_up_sent_at, started):
        return SilenceAction.FOLLOW_UP
    return SilenceAction.NONE


def record_silence_action(
    task: Task,
    action: SilenceAction,
    now: datetime | None = None,
) -> Task:
    """记录已发出的跟进/升级通知"""
    if action is SilenceAction.NONE:
        return task
    now = now or datetime.now(UTC)
    field = "escalated_at" if action is SilenceAction.ESCALATE else "follow_up_sent_at"
    log.info("silence_action_recorded", task_id=task.task_id, action=action.value)
    return task.model_copy(update={field: now, "updated_at": now})
