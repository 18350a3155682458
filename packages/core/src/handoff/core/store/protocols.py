"""Store Protocol 接口定义

TaskRepository 只假设按 key 读写一行：没有多行事务，没有锁。
使用 Python Protocol 实现结构化子类型（duck typing）。
"""

from collections.abc import Iterable
from typing import Protocol

from ..models.task import Task


class TaskRepository(Protocol):
    """Task 存储接口"""

    async def create_task(self, task: Task) -> None:
        """创建任务记录"""
        ...

    async def get_task(self, task_id: str) -> Task | None:
        """根据 task_id 查询任务"""
        ...

    async def save_task(self, task: Task, fields: Iterable[str] | None = None) -> None:
        """写入任务记录；fields 指定时只写这些列"""
        ...

    async def find_task_by_thread(self, thread_id: str) -> Task | None:
        """按会话线程查找任务"""
        ...

    async def list_tasks(self, status: str | None = None) -> list[Task]:
        """查询任务列表，支持按状态筛选"""
        ...

    async def list_open_threads(self) -> list[Task]:
        """有会话线程且未结束的任务"""
        ...
