"""Idempotency Tracker -- 每个任务已处理消息 ID 集合

投递是至少一次的（轮询和推送都可能触发），副作用必须至多一次：
处理前检查，只有处理成功写入之后才标记。
"""

import structlog

from . import config
from .exceptions import TaskNotFoundError
from .store.protocols import TaskRepository
from .store.task_store import TRACKER_FIELDS

log = structlog.get_logger()


class IdempotencyTracker:
    """已处理消息 ID 集合，保留最近 max_ids 个"""

    def __init__(self, task_store: TaskRepository, max_ids: int | None = None) -> None:
        self._task_store = task_store
        self._max_ids = max_ids or config.PROCESSED_IDS_MAX

    async def has_processed(self, task_id: str, message_id: str) -> bool:
        task = await self._task_store.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return message_id in task.processed_message_ids

    async def mark_processed(self, task_id: str, message_id: str) -> bool:
        """标记消息已处理

        Returns:
            False 如果此前已标记
        """
        task = await self._task_store.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        if message_id in task.processed_message_ids:
            return False

        processed = [*task.processed_message_ids, message_id][-self._max_ids :]
        await self._task_store.save_task(
            task.model_copy(update={"processed_message_ids": processed}),
            TRACKER_FIELDS,
        )
        log.debug("message_marked_processed", task_id=task_id, message_id=message_id)
        return True
