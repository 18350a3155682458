"""任务级锁 -- 序列化同一进程内对同一任务的读改写

持久层没有事务原语：同一任务的 ingest、管理操作都先取这里的锁。
跨进程的重复投递由 Idempotency Tracker 兜底。
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from handoff.core.models import TERMINAL_STATES, TaskStatus


class TaskLockRegistry:
    """task_id -> asyncio.Lock"""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._guard = asyncio.Lock()

    async def _get_lock(self, task_id: str) -> asyncio.Lock:
        async with self._guard:
            lock = self._locks.get(task_id)
            if lock is None:
                lock = asyncio.Lock()
                self._locks[task_id] = lock
            return lock

    @asynccontextmanager
    async def hold(self, task_id: str) -> AsyncIterator[None]:
        lock = await self._get_lock(task_id)
        async with lock:
            yield

    async def release_if_terminal(self, task_id: str, status: TaskStatus) -> None:
        """任务进入终态后清理锁，避免字典无限增长"""
        if status not in TERMINAL_STATES:
            return
        async with self._guard:
            lock = self._locks.get(task_id)
            if lock is not None and not lock.locked():
                self._locks.pop(task_id, None)

    def __len__(self) -> int:
        return len(self._locks)
