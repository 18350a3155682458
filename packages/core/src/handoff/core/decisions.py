"""Pending Decision Manager -- 单槽双方确认协议

一方提出新值 -> 等待对方明确确认后才生效：
- none -> proposed：任一方提出变更，awaiting_from 总是对方
- proposed -> applied：被等待方确认/接受；提议值成为有效值，槽位清空
- proposed -> proposed：被等待方提出不同的值（反提议），角色互换，旧提议作废
- proposed -> none：仅在明确拒绝时

受托方提出、委托方同意时先进入 approved 阶段，仍需受托方最终确认。
所有操作都是纯函数：输入 Task，返回新的 Task，不做持久化。
"""

from datetime import UTC, date, datetime
from enum import StrEnum

import structlog
from pydantic import BaseModel, Field

from .dates import normalize_date_value, parse_iso_date
from .models.enums import (
    ChangeStatus,
    ConversationState,
    DecisionOutcome,
    DecisionStage,
    Party,
    TrackedParameter,
)
from .models.task import (
    FieldProvenance,
    PendingChange,
    PendingDecision,
    ResolvedDecision,
    Task,
)

log = structlog.get_logger()

_PARAMETER_LABELS = {
    TrackedParameter.DUE_DATE: "Due date",
    TrackedParameter.SCOPE: "Scope",
    TrackedParameter.NAME: "Task name",
}

# 参数 -> (有效值字段, 提议值字段, 快照有效字段, 快照提议字段)
_PARAMETER_FIELDS = {
    TrackedParameter.DUE_DATE: (
        "due_date",
        "proposed_due_date",
        "due_date_effective",
        "due_date_proposed",
    ),
    TrackedParameter.SCOPE: ("scope", "proposed_scope", "scope_summary", None),
    TrackedParameter.NAME: ("name", "proposed_name", "name", None),
}


class DecisionAction(StrEnum):
    """一次协商操作的结果"""

    PROPOSED = "proposed"
    COUNTER_PROPOSED = "counter_proposed"
    APPROVED = "approved"
    APPLIED = "applied"
    REJECTED = "rejected"
    RECORDED_ONLY = "recorded_only"
    IGNORED = "ignored"


class DecisionResult(BaseModel):
    """协商操作返回值"""

    task: Task
    action: DecisionAction
    summary: str = Field(default="", description="一句话说明")


class PendingDecisionManager:
    """Pending Decision Manager"""

    def __init__(self, today: date | None = None) -> None:
        """
        Args:
            today: 无年份日期的参考日期（测试注入），None 取当天
        """
        self._today = today

    def propose(
        self,
        task: Task,
        parameter: TrackedParameter,
        proposed_value: str | None,
        by: Party,
        message_id: str,
        now: datetime | None = None,
    ) -> DecisionResult:
        """一方为参数提出新值"""
        now = now or datetime.now(UTC)
        value = self._normalize(parameter, proposed_value)
        if value is None:
            return DecisionResult(task=task, action=DecisionAction.IGNORED)

        if parameter is TrackedParameter.DUE_DATE and parse_iso_date(value) is None:
            log.info(
                "proposal_value_unparsable",
                task_id=task.task_id,
                message_id=message_id,
                value=value,
            )
            task = _upsert_change(task, parameter, value, by, "日期无法识别，需澄清")
            return DecisionResult(task=task, action=DecisionAction.RECORDED_ONLY)

        decision = task.pending_decision
        if decision is None:
            if value == task.effective_value(parameter):
                return DecisionResult(task=task, action=DecisionAction.IGNORED)
            return self._open(task, parameter, value, by, message_id, now)

        if decision.parameter is not parameter:
            log.info(
                "decision_slot_busy",
                task_id=task.task_id,
                message_id=message_id,
                busy_parameter=decision.parameter.value,
                parameter=parameter.value,
            )
            task = _upsert_change(task, parameter, value, by, "已有进行中的协商")
            return DecisionResult(task=task, action=DecisionAction.RECORDED_ONLY)

        if value == decision.proposed_value:
            if by is decision.awaiting_from:
                return self.accept(task, by, message_id, now)
            return DecisionResult(task=task, action=DecisionAction.IGNORED)

        state = (
            ConversationState.NEGOTIATING
            if by is decision.awaiting_from
            else _proposal_state(by)
        )
        return self._replace(task, decision, value, by, message_id, now, state)

    def accept(
        self,
        task: Task,
        by: Party,
        message_id: str,
        now: datetime | None = None,
    ) -> DecisionResult:
        """被等待方接受/确认当前提议"""
        now = now or datetime.now(UTC)
        decision = task.pending_decision
        if decision is None or by is not decision.awaiting_from:
            return DecisionResult(task=task, action=DecisionAction.IGNORED)

        if (
            decision.stage is DecisionStage.PROPOSED
            and decision.requested_by is Party.DELEGATE
            and by is Party.DELEGATOR
        ):
            approved = decision.model_copy(
                update={
                    "stage": DecisionStage.APPROVED,
                    "awaiting_from": Party.DELEGATE,
                    "message_id": message_id,
                }
            )
            task = task.model_copy(
                update={
                    "pending_decision": approved,
                    "conversation_state": ConversationState.AWAITING_CONFIRMATION,
                    "awaiting_party": None,
                    "pending_changes": _set_change_status(
                        task.pending_changes,
                        decision.parameter,
                        ChangeStatus.APPROVED,
                        Party.DELEGATE,
                    ),
                    "updated_at": now,
                }
            )
            summary = (
                f"{_PARAMETER_LABELS[decision.parameter]} change to {decision.proposed_value} "
                "was approved by the delegator and awaits the delegate's confirmation."
            )
            log.info(
                "decision_approved_awaiting_confirmation",
                task_id=task.task_id,
                message_id=message_id,
                parameter=decision.parameter.value,
            )
            return DecisionResult(task=task, action=DecisionAction.APPROVED, summary=summary)

        return self._apply(task, decision, by, message_id, now)

    def reject(
        self,
        task: Task,
        by: Party,
        message_id: str,
        now: datetime | None = None,
    ) -> DecisionResult:
        """被等待方明确拒绝当前提议；由对方接着行动"""
        now = now or datetime.now(UTC)
        decision = task.pending_decision
        if decision is None or by is not decision.awaiting_from:
            return DecisionResult(task=task, action=DecisionAction.IGNORED)

        task = task.model_copy(
            update={
                **_clear_proposed(decision.parameter),
                "pending_decision": None,
                "pending_changes": _drop_changes(task.pending_changes, decision.parameter),
                "negotiation_history": [
                    *task.negotiation_history,
                    _history(decision, DecisionOutcome.REJECTED, message_id, now),
                ],
                "conversation_state": ConversationState.AWAITING_COUNTERPART,
                "awaiting_party": by.counterpart,
                "updated_at": now,
            }
        )
        summary = (
            f"{_PARAMETER_LABELS[decision.parameter]} change to {decision.proposed_value} "
            f"was rejected by the {by.value}."
        )
        log.info(
            "decision_rejected",
            task_id=task.task_id,
            message_id=message_id,
            parameter=decision.parameter.value,
            rejected_by=by.value,
        )
        return DecisionResult(task=task, action=DecisionAction.REJECTED, summary=summary)

    def _normalize(self, parameter: TrackedParameter, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        if parameter is TrackedParameter.DUE_DATE:
            return normalize_date_value(value, self._today)
        return value.strip()

    def _open(
        self,
        task: Task,
        parameter: TrackedParameter,
        value: str,
        by: Party,
        message_id: str,
        now: datetime,
    ) -> DecisionResult:
        decision = PendingDecision(
            type=f"{parameter.value}_change",
            parameter=parameter,
            current_value=task.effective_value(parameter),
            proposed_value=value,
            requested_by=by,
            awaiting_from=by.counterpart,
            message_id=message_id,
            created_at=now,
        )
        task = _with_decision(task, decision, _proposal_state(by), now)
        log.info(
            "decision_proposed",
            task_id=task.task_id,
            message_id=message_id,
            parameter=parameter.value,
            requested_by=by.value,
        )
        summary = (
            f"The {by.value} proposed changing {_PARAMETER_LABELS[parameter].lower()} "
            f"to {value}."
        )
        return DecisionResult(task=task, action=DecisionAction.PROPOSED, summary=summary)

    def _replace(
        self,
        task: Task,
        old: PendingDecision,
        value: str,
        by: Party,
        message_id: str,
        now: datetime,
        state: ConversationState,
    ) -> DecisionResult:
        """新提议替换旧提议（反提议或提出方修改），旧提议记为 superseded"""
        decision = old.model_copy(
            update={
                "proposed_value": value,
                "requested_by": by,
                "awaiting_from": by.counterpart,
                "stage": DecisionStage.PROPOSED,
                "message_id": message_id,
                "created_at": now,
            }
        )
        task = task.model_copy(
            update={
                "negotiation_history": [
                    *task.negotiation_history,
                    _history(old, DecisionOutcome.SUPERSEDED, message_id, now),
                ],
            }
        )
        task = _with_decision(task, decision, state, now)
        log.info(
            "decision_counter_proposed",
            task_id=task.task_id,
            message_id=message_id,
            parameter=old.parameter.value,
            requested_by=by.value,
        )
        summary = (
            f"The {by.value} counter-proposed {_PARAMETER_LABELS[old.parameter].lower()} "
            f"{value} instead of {old.proposed_value}."
        )
        return DecisionResult(
            task=task, action=DecisionAction.COUNTER_PROPOSED, summary=summary
        )

    def _apply(
        self,
        task: Task,
        decision: PendingDecision,
        by: Party,
        message_id: str,
        now: datetime,
    ) -> DecisionResult:
        parameter = decision.parameter
        effective_field, _, snapshot_field, snapshot_proposed = _PARAMETER_FIELDS[parameter]
        value = decision.proposed_value
        effective = parse_iso_date(value) if parameter is TrackedParameter.DUE_DATE else value

        snapshot_update = {snapshot_field: value}
        provenance = dict(task.derived_provenance)
        provenance[snapshot_field] = FieldProvenance(
            source_message_id=message_id,
            source_snippet=f"confirmed by {by.value}",
            confidence=1.0,
            extracted_at=now,
        )
        if snapshot_proposed:
            snapshot_update[snapshot_proposed] = None
            provenance.pop(snapshot_proposed, None)

        label = _PARAMETER_LABELS[parameter]
        if decision.current_value:
            summary = (
                f"{label} changed from {decision.current_value} to {value}, "
                f"requested by the {decision.requested_by.value} and confirmed by the {by.value}."
            )
        else:
            summary = (
                f"{label} set to {value}, requested by the {decision.requested_by.value} "
                f"and confirmed by the {by.value}."
            )

        task = task.model_copy(
            update={
                effective_field: effective,
                **_clear_proposed(parameter),
                "pending_decision": None,
                "pending_changes": _drop_changes(task.pending_changes, parameter),
                "negotiation_history": [
                    *task.negotiation_history,
                    _history(decision, DecisionOutcome.APPLIED, message_id, now),
                ],
                "derived_snapshot": task.derived_snapshot.model_copy(update=snapshot_update),
                "derived_provenance": provenance,
                "conversation_state": ConversationState.RESOLVED,
                "awaiting_party": None,
                "last_confirmation_summary": summary,
                "updated_at": now,
            }
        )
        log.info(
            "decision_applied",
            task_id=task.task_id,
            message_id=message_id,
            parameter=parameter.value,
            value=value,
        )
        return DecisionResult(task=task, action=DecisionAction.APPLIED, summary=summary)


def _proposal_state(by: Party) -> ConversationState:
    if by is Party.DELEGATE:
        return ConversationState.CHANGE_REQUESTED
    return ConversationState.COUNTERPART_PROPOSED


def _with_decision(
    task: Task,
    decision: PendingDecision,
    state: ConversationState,
    now: datetime,
) -> Task:
    _, proposed_field, _, _ = _PARAMETER_FIELDS[decision.parameter]
    proposed = (
        parse_iso_date(decision.proposed_value)
        if decision.parameter is TrackedParameter.DUE_DATE
        else decision.proposed_value
    )
    task = _upsert_change(
        task,
        decision.parameter,
        decision.proposed_value,
        decision.requested_by,
        "",
    )
    return task.model_copy(
        update={
            proposed_field: proposed,
            "pending_decision": decision,
            "conversation_state": state,
            "awaiting_party": None,
            "requires_action": decision.awaiting_from is Party.DELEGATOR,
            "updated_at": now,
        }
    )


def _clear_proposed(parameter: TrackedParameter) -> dict:
    _, proposed_field, _, _ = _PARAMETER_FIELDS[parameter]
    return {proposed_field: None}


def _upsert_change(
    task: Task,
    parameter: TrackedParameter,
    value: str,
    by: Party,
    reasoning: str,
) -> Task:
    """每个参数最多保留一条 PendingChange，新的替换旧的（保持原位置）"""
    change = PendingChange(
        parameter=parameter,
        current_value=task.effective_value(parameter),
        proposed_value=value,
        requested_by=by,
        awaiting_from=by.counterpart,
        reasoning=reasoning,
    )
    changes = list(task.pending_changes)
    for index, existing in enumerate(changes):
        if existing.parameter is parameter:
            changes[index] = change.model_copy(update={"id": existing.id})
            break
    else:
        changes.append(change)
    return task.model_copy(update={"pending_changes": changes})


def _set_change_status(
    changes: list[PendingChange],
    parameter: TrackedParameter,
    status: ChangeStatus,
    awaiting_from: Party | None,
) -> list[PendingChange]:
    return [
        c.model_copy(update={"status": status, "awaiting_from": awaiting_from})
        if c.parameter is parameter
        else c
        for c in changes
    ]


def _drop_changes(
    changes: list[PendingChange], parameter: TrackedParameter
) -> list[PendingChange]:
    return [c for c in changes if c.parameter is not parameter]


def _history(
    decision: PendingDecision,
    outcome: DecisionOutcome,
    message_id: str,
    now: datetime,
) -> ResolvedDecision:
    return ResolvedDecision(
        parameter=decision.parameter,
        proposed_value=decision.proposed_value,
        requested_by=decision.requested_by,
        outcome=outcome,
        message_id=message_id,
        resolved_at=now,
    )
