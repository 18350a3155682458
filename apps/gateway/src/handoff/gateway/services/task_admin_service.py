"""TaskAdminService -- 委托方侧的任务管理操作

创建、派发、取消、完成审核、重新打开、强制对账。
生命周期使用严格流转：非法操作抛出 InvalidTransitionError（HTTP 409）。
"""

from datetime import UTC, date, datetime

import structlog
from handoff.core.cleaning import normalize_address, task_reference
from handoff.core.exceptions import TaskNotFoundError
from handoff.core.ledger import ConversationLedger
from handoff.core.lifecycle import LifecycleEvent, transition
from handoff.core.models import Party, Task, TaskStatus
from handoff.core.reconciliation import ReconcileOutcome, ReconciliationEngine
from handoff.core.store.protocols import TaskRepository
from handoff.core.store.task_store import LIFECYCLE_FIELDS
from ulid import ULID

from .locks import TaskLockRegistry

log = structlog.get_logger()


class TaskAdminService:
    """任务管理服务"""

    def __init__(
        self,
        task_store: TaskRepository,
        ledger: ConversationLedger,
        engine: ReconciliationEngine | None = None,
        locks: TaskLockRegistry | None = None,
    ) -> None:
        self._task_store = task_store
        self._ledger = ledger
        self._engine = engine
        self._locks = locks or TaskLockRegistry()

    async def create_task(
        self,
        name: str,
        delegator_address: str,
        due_date: date | None = None,
        scope: str = "",
        delegate_address: str | None = None,
    ) -> Task:
        """创建草稿任务"""
        now = datetime.now(UTC)
        task = Task(
            task_id=str(ULID()),
            created_at=now,
            updated_at=now,
            status=TaskStatus.DRAFTED,
            name=name.strip(),
            due_date=due_date,
            scope=scope,
            delegator_address=normalize_address(delegator_address),
            delegate_address=normalize_address(delegate_address) or None,
        )
        await self._task_store.create_task(task)
        await self._ledger.append_system_note(
            task.task_id,
            f"Task created: {task.name} ({task_reference(task.task_id)})",
        )
        log.info("task_created", task_id=task.task_id, status=task.status.value)
        return await self.get_task(task.task_id)

    async def get_task(self, task_id: str) -> Task:
        task = await self._task_store.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    async def list_tasks(self, status: str | None = None) -> list[Task]:
        return await self._task_store.list_tasks(status)

    async def _apply(
        self,
        task_id: str,
        event: LifecycleEvent,
        note: str | None = None,
        **update,
    ) -> Task:
        async with self._locks.hold(task_id):
            task = await self.get_task(task_id)
            now = datetime.now(UTC)
            if update:
                task = task.model_copy(update=update)
            task = transition(task, event, now)
            await self._task_store.save_task(task, LIFECYCLE_FIELDS)
            if note:
                await self._ledger.append_system_note(
                    task_id, note, lifecycle_event=event.value
                )
        await self._locks.release_if_terminal(task_id, task.status)
        return await self.get_task(task_id)

    async def assign_task(
        self,
        task_id: str,
        delegate_address: str,
        thread_id: str | None = None,
    ) -> Task:
        """派发给受托方：drafted -> awaiting_first_response"""
        address = normalize_address(delegate_address)
        update: dict = {"delegate_address": address}
        if thread_id:
            update["thread_id"] = thread_id
        return await self._apply(
            task_id,
            LifecycleEvent.ASSIGNED,
            f"Task assigned to {address}",
            **update,
        )

    async def cancel_task(self, task_id: str, reason: str = "") -> Task:
        """取消任务（任何非终态）"""
        note = f"Task cancelled: {reason}" if reason else "Task cancelled"
        return await self._apply(task_id, LifecycleEvent.CANCELLED, note)

    async def review_completion(
        self,
        task_id: str,
        approved: bool,
        reason: str = "",
    ) -> Task:
        """审核受托方的完成声明

        驳回时回到 active，原因记入 ledger，等待受托方继续。
        """
        if approved:
            note = "Completion approved by the delegator"
            if reason:
                note = f"{note}: {reason}"
            return await self._apply(
                task_id,
                LifecycleEvent.COMPLETION_APPROVED,
                note,
                requires_action=False,
            )
        note = "Completion rejected by the delegator"
        if reason:
            note = f"{note}: {reason}"
        return await self._apply(
            task_id,
            LifecycleEvent.COMPLETION_REJECTED,
            note,
            awaiting_party=Party.DELEGATE,
            requires_action=False,
        )

    async def reopen_task(self, task_id: str, reason: str = "") -> Task:
        """重新打开已关闭的任务"""
        note = f"Task reopened: {reason}" if reason else "Task reopened"
        return await self._apply(task_id, LifecycleEvent.REOPENED, note)

    async def reconcile(self, task_id: str) -> ReconcileOutcome:
        """外部强制对账"""
        if self._engine is None:
            raise RuntimeError("reconciliation engine is not configured")
        async with self._locks.hold(task_id):
            return await self._engine.reconcile(task_id)
