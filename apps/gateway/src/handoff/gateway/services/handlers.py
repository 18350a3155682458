"""委托方 / 受托方消息处理

每条消息的处理顺序：
1. 清洗正文并追加到 Conversation Ledger
2. 运行 Reconciliation Engine，得到派生状态与本条消息的意图（乱序投递时也只分类本条）
3. 按发送方角色把意图映射到协商协议和生命周期
4. 写回协商与生命周期字段

对账失败只记录日志（意图为空，协商与生命周期保持不变）；
持久化失败向上抛出，由 MessageGateway 保证消息不被标记为已处理。
"""

from datetime import UTC, datetime

import structlog
from handoff.core.cleaning import clean_email_body, normalize_address
from handoff.core.decisions import DecisionAction, DecisionResult, PendingDecisionManager
from handoff.core.exceptions import PersistenceWriteFailure, TaskNotFoundError
from handoff.core.ledger import ConversationLedger, make_snippet
from handoff.core.lifecycle import LifecycleEvent, advance
from handoff.core.models import (
    AGREEMENT_INTENTS,
    EVENT_TYPE_REPLY,
    ConversationEvent,
    ConversationState,
    InboundMessage,
    IntentClassification,
    MessageIntent,
    Party,
    SenderRole,
    Task,
    TaskStatus,
    TrackedParameter,
)
from handoff.core.reconciliation import ReconciliationEngine, ReconcileOutcome
from handoff.core.store.protocols import TaskRepository
from handoff.core.store.task_store import DECISION_FIELDS, LIFECYCLE_FIELDS
from pydantic import BaseModel, Field

log = structlog.get_logger()

# 受托方这些意图视为首次回复
_FIRST_RESPONSE_INTENTS = {
    MessageIntent.ACCEPTANCE,
    MessageIntent.CONFIRMATION,
    MessageIntent.PROGRESS_UPDATE,
    MessageIntent.CHANGE_REQUEST,
    MessageIntent.SCOPE_QUESTION,
}

_HANDLER_FIELDS = DECISION_FIELDS | LIFECYCLE_FIELDS


class HandlerOutcome(BaseModel):
    """一条消息的处理结果"""

    task: Task
    appended: bool = Field(description="是否追加到 ledger（内容重复时为 False）")
    intent: IntentClassification | None = None
    decision_action: DecisionAction | None = None
    reconciled: bool = False


class ConversationHandler:
    """按发送方角色分派的消息处理器"""

    def __init__(
        self,
        task_store: TaskRepository,
        ledger: ConversationLedger,
        engine: ReconciliationEngine,
        decisions: PendingDecisionManager | None = None,
    ) -> None:
        self._task_store = task_store
        self._ledger = ledger
        self._engine = engine
        self._decisions = decisions or PendingDecisionManager()

    async def handle(
        self,
        task: Task,
        role: SenderRole,
        message: InboundMessage,
    ) -> HandlerOutcome:
        """处理一条已关联任务、已识别发送方的消息"""
        task_id = task.task_id
        content = clean_email_body(message.plain_body)
        event = ConversationEvent(
            id=message.id,
            timestamp=message.timestamp,
            sender_role=role,
            sender_identity=normalize_address(message.sender),
            type=EVENT_TYPE_REPLY,
            content=content,
            raw_content=message.plain_body,
        )
        appended = await self._ledger.append(task_id, event)
        if not appended:
            current = await self._task_store.get_task(task_id) or task
            if not any(e.id == message.id for e in current.conversation_history):
                return HandlerOutcome(task=current, appended=False)
            # 上次处理在追加 ledger 之后中断（未标记已处理），继续完成剩余步骤
            log.info("message_processing_resumed", task_id=task_id, message_id=message.id)

        outcome = await self._reconcile(task_id, message.id)
        if outcome is not None:
            task = outcome.task
        else:
            task = await self._task_store.get_task(task_id)
            if task is None:
                raise TaskNotFoundError(task_id)
        intent = outcome.intent if outcome else None
        if intent is not None and intent.message_id != message.id:
            # 意图属于另一条消息，不能记在本条发送方名下
            log.warning(
                "intent_for_other_message",
                task_id=task_id,
                message_id=message.id,
                intent_message_id=intent.message_id,
            )
            intent = None

        now = datetime.now(UTC)
        party = Party(role.value)
        before = task
        if task.awaiting_party is party:
            task = task.model_copy(update={"awaiting_party": None, "updated_at": now})

        result: DecisionResult | None = None
        notes: list[str] = []
        if intent is not None:
            if party is Party.DELEGATOR:
                task, result, notes = self._on_delegator(task, intent, content, now)
            else:
                task, result, notes = self._on_delegate(task, intent, content, now)

        if task is not before:
            await self._task_store.save_task(task, _HANDLER_FIELDS)

        if result is not None and result.summary:
            notes.append(result.summary)
        for note in notes:
            await self._ledger.append_system_note(task_id, note, message_id=message.id)

        log.info(
            "message_handled",
            task_id=task_id,
            message_id=message.id,
            sender_role=role.value,
            intent=intent.intent.value if intent else None,
            decision_action=result.action.value if result else None,
            status=task.status.value,
            conversation_state=task.conversation_state.value,
        )
        return HandlerOutcome(
            task=task,
            appended=appended,
            intent=intent,
            decision_action=result.action if result else None,
            reconciled=outcome is not None and outcome.classified,
        )

    async def _reconcile(self, task_id: str, message_id: str) -> ReconcileOutcome | None:
        try:
            return await self._engine.reconcile(task_id, message_id=message_id)
        except PersistenceWriteFailure:
            raise
        except Exception as e:
            log.error(
                "reconcile_failed",
                task_id=task_id,
                message_id=message_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return None

    def _propose(
        self,
        task: Task,
        intent: IntentClassification,
        by: Party,
        now: datetime,
    ) -> DecisionResult | None:
        try:
            parameter = TrackedParameter(intent.parameter or TrackedParameter.DUE_DATE.value)
        except ValueError:
            log.info(
                "change_request_unknown_parameter",
                task_id=task.task_id,
                message_id=intent.message_id,
                parameter=intent.parameter,
            )
            return None
        return self._decisions.propose(
            task, parameter, intent.proposed_value, by, intent.message_id, now
        )

    def _on_delegator(
        self,
        task: Task,
        intent: IntentClassification,
        content: str,
        now: datetime,
    ) -> tuple[Task, DecisionResult | None, list[str]]:
        notes: list[str] = []
        result: DecisionResult | None = None
        kind = intent.intent

        if kind is MessageIntent.CHANGE_REQUEST:
            result = self._propose(task, intent, Party.DELEGATOR, now)
        elif kind in AGREEMENT_INTENTS:
            if task.pending_decision is not None:
                result = self._decisions.accept(task, Party.DELEGATOR, intent.message_id, now)
            elif task.status is TaskStatus.COMPLETION_PENDING:
                task = advance(task, LifecycleEvent.COMPLETION_APPROVED, now)
                task = task.model_copy(update={"requires_action": False})
        elif kind is MessageIntent.REJECTION:
            if task.pending_decision is not None:
                result = self._decisions.reject(task, Party.DELEGATOR, intent.message_id, now)
            elif task.status is TaskStatus.COMPLETION_PENDING:
                task = advance(task, LifecycleEvent.COMPLETION_REJECTED, now)
                task = task.model_copy(update={"awaiting_party": Party.DELEGATE})
                notes.append(f"Completion rejected by the delegator: {make_snippet(content)}")

        if result is not None:
            task = result.task
        return task, result, notes

    def _on_delegate(
        self,
        task: Task,
        intent: IntentClassification,
        content: str,
        now: datetime,
    ) -> tuple[Task, DecisionResult | None, list[str]]:
        notes: list[str] = []
        result: DecisionResult | None = None
        kind = intent.intent

        if (
            task.status is TaskStatus.AWAITING_FIRST_RESPONSE
            and kind in _FIRST_RESPONSE_INTENTS
        ):
            task = advance(task, LifecycleEvent.FIRST_RESPONSE, now)

        if kind is MessageIntent.CHANGE_REQUEST:
            result = self._propose(task, intent, Party.DELEGATE, now)
        elif kind in AGREEMENT_INTENTS:
            result = self._decisions.accept(task, Party.DELEGATE, intent.message_id, now)
        elif kind is MessageIntent.REJECTION:
            result = self._decisions.reject(task, Party.DELEGATE, intent.message_id, now)
        elif kind is MessageIntent.BLOCKER:
            task = advance(task, LifecycleEvent.BLOCKER_REPORTED, now)
            task = task.model_copy(update={"requires_action": True})
        elif kind is MessageIntent.COMPLETION_CLAIM:
            task = advance(task, LifecycleEvent.COMPLETION_CLAIMED, now)
            task = task.model_copy(update={"requires_action": True})
        elif kind is MessageIntent.PROGRESS_UPDATE:
            if task.status is TaskStatus.BLOCKED:
                task = advance(task, LifecycleEvent.BLOCKER_CLEARED, now)
            elif task.pending_decision is None:
                task = task.model_copy(
                    update={"conversation_state": ConversationState.UPDATE_RECEIVED}
                )
        elif kind is MessageIntent.ROLE_REJECTION:
            task = task.model_copy(
                update={
                    "conversation_state": ConversationState.REJECTED,
                    "requires_action": True,
                }
            )
            notes.append(f"Delegate declined the task: {make_snippet(content)}")
        elif kind is MessageIntent.SCOPE_QUESTION:
            task = task.model_copy(update={"requires_action": True})

        if result is not None:
            task = result.task
        return task, result, notes
