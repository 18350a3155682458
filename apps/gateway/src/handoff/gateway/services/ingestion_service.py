"""MessageGateway -- 入站消息的唯一入口

ingest(message) 的步骤：
1. 关联任务：先按 thread_id 查找，再在正文中严格匹配 TASK-<ULID> 引用
2. 幂等检查：已处理过的消息直接返回 skipped
3. 识别发送方角色：与任务的委托方/受托方地址比较（地址先归一化）
4. 交给 ConversationHandler（ledger 追加 + 对账 + 协商/生命周期）
5. 处理成功后才标记已处理

推送与轮询 sweep 可能重复投递同一条消息，幂等标记是唯一的安全网。
"""

import structlog
from handoff.core.cleaning import extract_task_reference, normalize_address
from handoff.core.exceptions import CorrelationError, HandoffError, UnknownSenderError
from handoff.core.idempotency import IdempotencyTracker
from handoff.core.models import InboundMessage, IngestResult, SenderRole, Task
from handoff.core.store.protocols import TaskRepository
from handoff.core.store.task_store import LIFECYCLE_FIELDS

from .handlers import ConversationHandler
from .locks import TaskLockRegistry

log = structlog.get_logger()


def resolve_sender_role(task: Task, sender: str) -> SenderRole | None:
    """按归一化地址识别发送方；两方地址相同时委托方优先"""
    address = normalize_address(sender)
    if not address:
        return None
    if address == normalize_address(task.delegator_address):
        return SenderRole.DELEGATOR
    if task.delegate_address and address == normalize_address(task.delegate_address):
        return SenderRole.DELEGATE
    return None


class MessageGateway:
    """消息网关"""

    def __init__(
        self,
        task_store: TaskRepository,
        handler: ConversationHandler,
        tracker: IdempotencyTracker | None = None,
        locks: TaskLockRegistry | None = None,
    ) -> None:
        self._task_store = task_store
        self._handler = handler
        self._tracker = tracker or IdempotencyTracker(task_store)
        self._locks = locks or TaskLockRegistry()

    async def correlate(self, message: InboundMessage) -> Task:
        """把消息关联到任务

        Raises:
            CorrelationError: thread 与正文引用都无法匹配
        """
        if message.thread_id:
            task = await self._task_store.find_task_by_thread(message.thread_id)
            if task is not None:
                return task

        reference = extract_task_reference(message.plain_body)
        if reference:
            task = await self._task_store.get_task(reference)
            if task is not None:
                return await self._bind_thread(task, message)

        log.warning(
            "message_uncorrelated",
            message_id=message.id,
            thread_id=message.thread_id,
        )
        raise CorrelationError(message.id, message.thread_id)

    async def _bind_thread(self, task: Task, message: InboundMessage) -> Task:
        """按引用找到的任务若尚未绑定线程，记录该线程"""
        if not message.thread_id or task.thread_id:
            return task
        async with self._locks.hold(task.task_id):
            current = await self._task_store.get_task(task.task_id)
            if current is None or current.thread_id:
                return current or task
            bound = current.model_copy(update={"thread_id": message.thread_id})
            await self._task_store.save_task(bound, LIFECYCLE_FIELDS)
        log.info(
            "thread_bound",
            task_id=task.task_id,
            message_id=message.id,
            thread_id=message.thread_id,
        )
        return bound

    async def ingest(self, message: InboundMessage) -> IngestResult:
        """处理一条入站消息

        Raises:
            CorrelationError: 无法关联任务（需人工分拣）
            UnknownSenderError: 发件人不是任务双方（丢弃）
            PersistenceWriteFailure: 存储写入失败（未标记，可安全重试）
        """
        task = await self.correlate(message)
        task_id = task.task_id

        async with self._locks.hold(task_id):
            if await self._tracker.has_processed(task_id, message.id):
                log.info("message_already_processed", task_id=task_id, message_id=message.id)
                return IngestResult(task_id=task_id, message_id=message.id, skipped=True)

            current = await self._task_store.get_task(task_id) or task
            role = resolve_sender_role(current, message.sender)
            if role is None:
                log.warning(
                    "unknown_sender",
                    task_id=task_id,
                    message_id=message.id,
                    sender=normalize_address(message.sender),
                )
                raise UnknownSenderError(message.sender, task_id, message.id)

            try:
                outcome = await self._handler.handle(current, role, message)
            except HandoffError as e:
                log.error(
                    "message_handling_failed",
                    task_id=task_id,
                    message_id=message.id,
                    error=str(e),
                    error_type=type(e).__name__,
                    recoverable=e.recoverable,
                )
                raise

            await self._tracker.mark_processed(task_id, message.id)

        await self._locks.release_if_terminal(task_id, outcome.task.status)
        log.info(
            "message_ingested",
            task_id=task_id,
            message_id=message.id,
            sender_role=role.value,
            appended=outcome.appended,
        )
        return IngestResult(task_id=task_id, message_id=message.id)
