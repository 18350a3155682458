"""Reconciliation Engine -- 把分类器的不确定输出合并进持久任务状态

reconcile(task_id) 从 ledger 构建 transcript，调用分类适配器，然后依次：
1. 保留未决变更：适配器只能可靠发现“新”请求，不能证明旧请求已消失
2. 等待确认覆盖：存在未决协商时，分类器给出 resolved/active 不足以结束等待
3. 置信度门控的字段合并：新值非空且置信度达到阈值才替换，否则原值和来源保持不变
4. 持久化会话状态、未决变更、摘要、派生快照及来源、分析时间

同一 ledger 内容重复执行结果相同，可以在每条消息后运行，也可以被外部强制触发。
"""

from datetime import UTC, date, datetime
from typing import Protocol

import structlog
from pydantic import BaseModel, Field

from . import config
from .dates import extract_date, normalize_date_value
from .exceptions import ClassificationFailure, TaskNotFoundError
from .models.classification import (
    ClassificationRequest,
    ClassificationResult,
    IntentClassification,
)
from .models.enums import (
    DECISION_STATES,
    ConversationState,
    DecisionOutcome,
    DecisionStage,
    MessageIntent,
    Party,
    SenderRole,
    TrackedParameter,
)
from .models.event import ConversationEvent
from .models.task import (
    SNAPSHOT_FIELDS,
    DerivedSnapshot,
    FieldProvenance,
    PendingChange,
    PendingDecision,
    Task,
)
from .store.protocols import TaskRepository
from .store.task_store import RECONCILE_FIELDS

log = structlog.get_logger()

_DATE_SNAPSHOT_FIELDS = {"due_date_effective", "due_date_proposed"}
_FORCEABLE_STATES = {ConversationState.RESOLVED, ConversationState.ACTIVE}


class ClassificationAdapter(Protocol):
    """分类适配器接口：任何异常或畸形输出都视为“没有新信息”"""

    async def classify(self, request: ClassificationRequest) -> ClassificationResult:
        ...


class ReconcileOutcome(BaseModel):
    """一次对账的结果"""

    task: Task
    snapshot: DerivedSnapshot
    conversation_state: ConversationState
    intent: IntentClassification | None = Field(
        default=None,
        description="本次分类消息的意图（已做置信度门控）",
    )
    classified: bool = Field(default=True, description="分类器是否给出了可用结果")


def _role_label(event: ConversationEvent) -> str:
    return event.sender_role.value.upper()


def build_transcript(history: list[ConversationEvent]) -> str:
    """按时间排序的 transcript，每行标注发送方和消息 ID"""
    lines = []
    for event in sorted(history, key=lambda e: e.timestamp):
        who = _role_label(event)
        if event.sender_identity:
            who = f"{who} ({event.sender_identity})"
        lines.append(f"[{event.id}] {event.timestamp.isoformat()} {who}: {event.content}")
    return "\n".join(lines)


def latest_party_event(history: list[ConversationEvent]) -> ConversationEvent | None:
    """最新一条非系统事件"""
    events = [e for e in history if e.sender_role is not SenderRole.SYSTEM]
    if not events:
        return None
    return max(events, key=lambda e: e.timestamp)


def build_request(task: Task, message_id: str | None = None) -> ClassificationRequest:
    """构建分类请求

    message_id 指定本次要分类的消息；未给出或不在 ledger 中时取最新一条非系统消息。
    乱序投递时较早的消息也按它自己的内容和发送方分类。
    """
    latest = None
    if message_id:
        latest = next(
            (
                e
                for e in task.conversation_history
                if e.id == message_id and e.sender_role is not SenderRole.SYSTEM
            ),
            None,
        )
    if latest is None:
        latest = latest_party_event(task.conversation_history)
    return ClassificationRequest(
        task_id=task.task_id,
        transcript=build_transcript(task.conversation_history),
        latest_message_id=latest.id if latest else "",
        latest_sender=Party(latest.sender_role.value) if latest else None,
        latest_content=latest.content if latest else "",
        status=task.status,
        conversation_state=task.conversation_state,
        effective_parameters={
            p.value: task.effective_value(p) for p in TrackedParameter
        },
        proposed_parameters={
            TrackedParameter.NAME.value: task.proposed_name,
            TrackedParameter.DUE_DATE.value: (
                task.proposed_due_date.isoformat() if task.proposed_due_date else None
            ),
            TrackedParameter.SCOPE.value: task.proposed_scope,
        },
        pending_decision=task.pending_decision,
        pending_changes=task.pending_changes,
    )


def coerce_state(raw: str | None) -> ConversationState:
    """校验会话状态，未知值回落 active"""
    try:
        return ConversationState((raw or "").strip().lower())
    except ValueError:
        log.warning("invalid_conversation_state", value=raw, fallback="active")
        return ConversationState.ACTIVE


def awaiting_state_for(decision: PendingDecision) -> ConversationState:
    if decision.stage is DecisionStage.APPROVED:
        return ConversationState.AWAITING_CONFIRMATION
    return ConversationState.AWAITING_COUNTERPART


def apply_awaiting_override(task: Task, proposed: ConversationState) -> ConversationState:
    """存在未决协商（或等待某方行动）时，不允许分类器直接给出 resolved/active"""
    decision = task.pending_decision
    if decision is not None and proposed in _FORCEABLE_STATES:
        if task.conversation_state in DECISION_STATES:
            forced = task.conversation_state
        else:
            forced = awaiting_state_for(decision)
        log.info(
            "awaiting_confirmation_override",
            task_id=task.task_id,
            proposed=proposed.value,
            forced=forced.value,
            awaiting_from=decision.awaiting_from.value,
        )
        return forced
    if (
        decision is None
        and task.awaiting_party is not None
        and proposed is ConversationState.RESOLVED
    ):
        return ConversationState.AWAITING_COUNTERPART
    return proposed


def merge_pending_changes(task: Task, incoming: list[PendingChange]) -> list[PendingChange]:
    """按参数合并：新提取的替换同参数旧条目，未提及的旧条目保留

    与已结束协商（同参数同值）相同的条目被丢弃，避免旧请求复活。
    """
    resolved = {
        (h.parameter, h.proposed_value)
        for h in task.negotiation_history
        if h.outcome in (DecisionOutcome.APPLIED, DecisionOutcome.REJECTED)
    }
    merged = list(task.pending_changes)
    for change in incoming:
        if (change.parameter, change.proposed_value) in resolved:
            continue
        live = task.pending_decision
        if live is not None and live.parameter is change.parameter:
            # 进行中的协商由 Pending Decision Manager 维护
            continue
        for index, existing in enumerate(merged):
            if existing.parameter is change.parameter:
                merged[index] = change.model_copy(update={"id": existing.id})
                break
        else:
            merged.append(change)
    return merged


def _normalize_field(name: str, value: str | None, today: date | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    if not value:
        return None
    if name in _DATE_SNAPSHOT_FIELDS:
        return normalize_date_value(value, today)
    return value


def merge_snapshot(
    current: DerivedSnapshot,
    current_provenance: dict[str, FieldProvenance],
    incoming: DerivedSnapshot,
    incoming_provenance: dict[str, FieldProvenance],
    threshold: float,
    today: date | None = None,
) -> tuple[DerivedSnapshot, dict[str, FieldProvenance]]:
    """置信度门控的字段合并

    新值非空且其来源置信度 >= threshold 才替换；否则保留原值和原来源。
    """
    values = current.model_dump()
    provenance = dict(current_provenance)
    for name in SNAPSHOT_FIELDS:
        value = _normalize_field(name, getattr(incoming, name), today)
        source = incoming_provenance.get(name)
        if value is None or source is None or source.confidence < threshold:
            continue
        values[name] = value
        provenance[name] = source
    return DerivedSnapshot(**values), provenance


def secondary_extraction(
    task: Task,
    incoming: DerivedSnapshot,
    now: datetime,
    today: date | None = None,
) -> tuple[DerivedSnapshot, dict[str, FieldProvenance]]:
    """正则日期提取：只填补分类器与已存快照都为空的 due_date_proposed"""
    if incoming.due_date_proposed or task.derived_snapshot.due_date_proposed:
        return DerivedSnapshot(), {}
    latest = latest_party_event(task.conversation_history)
    if latest is None:
        return DerivedSnapshot(), {}
    found = extract_date(latest.content, today)
    if found is None or found == task.due_date:
        return DerivedSnapshot(), {}
    provenance = FieldProvenance(
        source_message_id=latest.id,
        source_snippet=latest.content[:160],
        confidence=config.SECONDARY_EXTRACTOR_CONFIDENCE,
        extracted_at=now,
    )
    return (
        DerivedSnapshot(due_date_proposed=found.isoformat()),
        {"due_date_proposed": provenance},
    )


def gate_intent(
    intent: IntentClassification | None,
    request: ClassificationRequest,
    threshold: float,
    today: date | None = None,
) -> IntentClassification | None:
    """意图门控：置信度不足或不是针对最新消息的意图不予采用

    变更请求缺少参数或提议值时，用正则日期提取补齐。
    """
    if intent is None:
        return None
    if intent.message_id and intent.message_id != request.latest_message_id:
        log.info(
            "intent_for_stale_message",
            task_id=request.task_id,
            message_id=intent.message_id,
            latest_message_id=request.latest_message_id,
        )
        return None
    if intent.confidence < threshold:
        log.info(
            "intent_below_threshold",
            task_id=request.task_id,
            message_id=request.latest_message_id,
            intent=intent.intent.value,
            confidence=intent.confidence,
        )
        return None

    update: dict = {"message_id": request.latest_message_id}
    if intent.intent is MessageIntent.CHANGE_REQUEST:
        parameter = intent.parameter
        value = intent.proposed_value
        if not parameter or parameter == TrackedParameter.DUE_DATE.value:
            if not value:
                found = extract_date(request.latest_content, today)
                value = found.isoformat() if found else None
            if value:
                parameter = TrackedParameter.DUE_DATE.value
        update["parameter"] = parameter
        update["proposed_value"] = value
    return intent.model_copy(update=update)


def merge_classification(
    task: Task,
    result: ClassificationResult,
    threshold: float,
    now: datetime,
    today: date | None = None,
) -> Task:
    """把一次分类结果合并进任务（纯函数）"""
    state = apply_awaiting_override(task, coerce_state(result.conversation_state))
    pending_changes = merge_pending_changes(task, result.pending_changes)

    snapshot, provenance = merge_snapshot(
        task.derived_snapshot,
        task.derived_provenance,
        result.task_snapshot,
        result.provenance,
        threshold,
        today,
    )
    secondary, secondary_provenance = secondary_extraction(
        task, result.task_snapshot, now, today
    )
    snapshot, provenance = merge_snapshot(
        snapshot, provenance, secondary, secondary_provenance, threshold, today
    )

    return task.model_copy(
        update={
            "conversation_state": state,
            "pending_changes": pending_changes,
            "summary": result.summary.strip() or task.summary,
            "requires_action": result.requires_action,
            "derived_snapshot": snapshot,
            "derived_provenance": provenance,
            "last_analyzed_at": now,
            "updated_at": now,
        }
    )


class ReconciliationEngine:
    """Reconciliation Engine"""

    def __init__(
        self,
        task_store: TaskRepository,
        adapter: ClassificationAdapter,
        confidence_threshold: float | None = None,
        today: date | None = None,
    ) -> None:
        """
        Args:
            task_store: 任务存储
            adapter: 分类适配器
            confidence_threshold: 字段/意图置信度门槛，None 使用配置值
            today: 无年份日期的参考日期（测试注入）
        """
        self._task_store = task_store
        self._adapter = adapter
        self._threshold = (
            config.CONFIDENCE_THRESHOLD
            if confidence_threshold is None
            else confidence_threshold
        )
        self._today = today

    async def reconcile(self, task_id: str, message_id: str | None = None) -> ReconcileOutcome:
        """对账并持久化

        message_id 为刚摄入的消息时，意图只针对该消息给出。

        Raises:
            TaskNotFoundError: 任务不存在
            PersistenceWriteFailure: 写入失败
        """
        task = await self._task_store.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)

        request = build_request(task, message_id)
        try:
            result = await self._adapter.classify(request)
        except ClassificationFailure as e:
            log.warning(
                "classification_failed",
                task_id=task_id,
                message_id=request.latest_message_id,
                error=str(e),
            )
            return self._unchanged(task)
        except Exception as e:
            log.warning(
                "classification_adapter_error",
                task_id=task_id,
                message_id=request.latest_message_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return self._unchanged(task)

        now = datetime.now(UTC)
        merged = merge_classification(task, result, self._threshold, now, self._today)
        await self._task_store.save_task(merged, RECONCILE_FIELDS)

        intent = gate_intent(result.intent, request, self._threshold, self._today)
        log.info(
            "task_reconciled",
            task_id=task_id,
            message_id=request.latest_message_id,
            conversation_state=merged.conversation_state.value,
            pending_changes=len(merged.pending_changes),
            intent=intent.intent.value if intent else None,
        )
        return ReconcileOutcome(
            task=merged,
            snapshot=merged.derived_snapshot,
            conversation_state=merged.conversation_state,
            intent=intent,
        )

    @staticmethod
    def _unchanged(task: Task) -> ReconcileOutcome:
        return ReconcileOutcome(
            task=task,
            snapshot=task.derived_snapshot,
            conversation_state=task.conversation_state,
            intent=None,
            classified=False,
        )
