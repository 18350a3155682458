"""TaskStore SQLite 实现

存储层只提供按 task_id 读写一行，不提供多行事务或锁。
save_task 支持按列分组写入：每个组件只写自己拥有的列，
避免一个组件的读-改-写覆盖另一个组件刚写入的列。
"""

import json
from collections.abc import Iterable
from typing import Any

import aiosqlite
import structlog

from ..exceptions import PersistenceWriteFailure
from ..models.enums import TERMINAL_STATES, normalize_status
from ..models.task import Task

log = structlog.get_logger()

TASK_COLUMNS: tuple[str, ...] = tuple(Task.model_fields)

# 以 JSON 文本存储的列
JSON_COLUMNS: frozenset[str] = frozenset(
    {
        "pending_changes",
        "pending_decision",
        "negotiation_history",
        "conversation_history",
        "derived_snapshot",
        "derived_provenance",
        "processed_message_ids",
    }
)

# 各组件拥有的列
LEDGER_FIELDS: frozenset[str] = frozenset(
    {
        "conversation_history",
        "message_count",
        "last_message_at",
        "last_message_sender",
        "last_message_snippet",
        "last_delegator_message_at",
        "last_delegate_message_at",
        "updated_at",
    }
)
TRACKER_FIELDS: frozenset[str] = frozenset({"processed_message_ids"})
RECONCILE_FIELDS: frozenset[str] = frozenset(
    {
        "conversation_state",
        "pending_changes",
        "summary",
        "requires_action",
        "derived_snapshot",
        "derived_provenance",
        "last_analyzed_at",
        "updated_at",
    }
)
DECISION_FIELDS: frozenset[str] = frozenset(
    {
        "name",
        "due_date",
        "scope",
        "proposed_name",
        "proposed_due_date",
        "proposed_scope",
        "conversation_state",
        "awaiting_party",
        "pending_changes",
        "pending_decision",
        "negotiation_history",
        "last_confirmation_summary",
        "derived_snapshot",
        "derived_provenance",
        "requires_action",
        "updated_at",
    }
)
LIFECYCLE_FIELDS: frozenset[str] = frozenset(
    {
        "status",
        "scope",
        "delegate_address",
        "thread_id",
        "assigned_at",
        "conversation_state",
        "awaiting_party",
        "requires_action",
        "updated_at",
    }
)
ESCALATION_FIELDS: frozenset[str] = frozenset(
    {"follow_up_sent_at", "escalated_at", "updated_at"}
)


class SqliteTaskStore:
    """TaskRepository 的 SQLite 实现"""

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    async def create_task(self, task: Task) -> None:
        """创建任务记录"""
        row = self._task_to_columns(task)
        placeholders = ", ".join("?" for _ in TASK_COLUMNS)
        try:
            await self._conn.execute(
                f"INSERT INTO tasks ({', '.join(TASK_COLUMNS)}) VALUES ({placeholders})",
                tuple(row[c] for c in TASK_COLUMNS),
            )
            await self._conn.commit()
        except aiosqlite.Error as e:
            log.error("task_create_failed", task_id=task.task_id, error=str(e))
            raise PersistenceWriteFailure(
                f"创建任务失败: {e}", task_id=task.task_id
            ) from e

    async def get_task(self, task_id: str) -> Task | None:
        """根据 task_id 查询任务"""
        cursor = await self._conn.execute(
            "SELECT * FROM tasks WHERE task_id = ?",
            (task_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return self._row_to_task(cursor.description, row)

    async def save_task(self, task: Task, fields: Iterable[str] | None = None) -> None:
        """写入任务记录（单条语句 + commit）

        Args:
            task: 任务
            fields: 只写入这些列；None 表示整行 upsert

        Raises:
            PersistenceWriteFailure: 存储写入失败或任务不存在
        """
        row = self._task_to_columns(task)
        if fields is None:
            columns = TASK_COLUMNS
            updates = ", ".join(f"{c} = excluded.{c}" for c in columns if c != "task_id")
            sql = (
                f"INSERT INTO tasks ({', '.join(columns)}) "
                f"VALUES ({', '.join('?' for _ in columns)}) "
                f"ON CONFLICT(task_id) DO UPDATE SET {updates}"
            )
            params: tuple[Any, ...] = tuple(row[c] for c in columns)
        else:
            columns = tuple(sorted(set(fields)))
            unknown = set(columns) - set(TASK_COLUMNS)
            if unknown or "task_id" in columns:
                raise ValueError(f"不可写入的列: {sorted(unknown) or ['task_id']}")
            sql = (
                f"UPDATE tasks SET {', '.join(f'{c} = ?' for c in columns)} "
                "WHERE task_id = ?"
            )
            params = (*(row[c] for c in columns), task.task_id)

        try:
            cursor = await self._conn.execute(sql, params)
            missing = fields is not None and cursor.rowcount == 0
            await self._conn.commit()
        except aiosqlite.Error as e:
            log.error(
                "task_write_failed",
                task_id=task.task_id,
                fields=list(columns),
                error=str(e),
            )
            raise PersistenceWriteFailure(
                f"写入任务失败: {e}", task_id=task.task_id
            ) from e

        if missing:
            raise PersistenceWriteFailure(
                f"任务 {task.task_id} 不存在，无法部分写入", task_id=task.task_id
            )

    async def find_task_by_thread(self, thread_id: str) -> Task | None:
        """按会话线程查找任务（同一线程多个任务时取最新创建的）"""
        if not thread_id:
            return None
        cursor = await self._conn.execute(
            "SELECT * FROM tasks WHERE thread_id = ? ORDER BY created_at DESC LIMIT 1",
            (thread_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return self._row_to_task(cursor.description, row)

    async def list_tasks(self, status: str | None = None) -> list[Task]:
        """查询任务列表，支持按状态筛选，按 created_at 倒序"""
        if status:
            cursor = await self._conn.execute(
                "SELECT * FROM tasks WHERE status = ? ORDER BY created_at DESC",
                (status,),
            )
        else:
            cursor = await self._conn.execute(
                "SELECT * FROM tasks ORDER BY created_at DESC"
            )
        rows = await cursor.fetchall()
        return [self._row_to_task(cursor.description, row) for row in rows]

    async def list_open_threads(self) -> list[Task]:
        """有会话线程且未结束的任务"""
        tasks = await self.list_tasks()
        return [t for t in tasks if t.thread_id and t.status not in TERMINAL_STATES]

    @staticmethod
    def _task_to_columns(task: Task) -> dict[str, Any]:
        """将 Task 模型转换为列值"""
        data = task.model_dump(mode="json")
        row: dict[str, Any] = {}
        for column in TASK_COLUMNS:
            value = data[column]
            if column in JSON_COLUMNS:
                value = None if value is None else json.dumps(value, ensure_ascii=False)
            elif isinstance(value, bool):
                value = int(value)
            row[column] = value
        return row

    @staticmethod
    def _row_to_task(description, row) -> Task:
        """将数据库行转换为 Task 模型"""
        data = dict(zip((d[0] for d in description), row, strict=True))
        for column in JSON_COLUMNS:
            if data.get(column) is not None:
                data[column] = json.loads(data[column])
        data["status"] = normalize_status(data.get("status"))
        data["requires_action"] = bool(data.get("requires_action"))
        return Task.model_validate(data)
