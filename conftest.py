"""全局 pytest 配置 -- 临时 SQLite 数据库与任务构造 fixture"""

from collections.abc import AsyncGenerator
from datetime import UTC, date, datetime
from pathlib import Path

import aiosqlite
import pytest
import pytest_asyncio


@pytest_asyncio.fixture
async def tmp_db_path(tmp_path: Path) -> Path:
    """提供临时 SQLite 数据库路径"""
    return tmp_path / "test.db"


@pytest_asyncio.fixture
async def db_conn(tmp_db_path: Path) -> AsyncGenerator[aiosqlite.Connection, None]:
    """提供已初始化的临时 SQLite 数据库连接"""
    from handoff.core.store.sqlite_init import init_db

    conn = await aiosqlite.connect(str(tmp_db_path))
    conn.row_factory = aiosqlite.Row
    await init_db(conn)
    yield conn
    await conn.close()


@pytest.fixture
def make_task():
    """构造 Task 的工厂：默认是一个已派发、等待首次回复的任务"""
    from handoff.core.models import Task, TaskStatus
    from ulid import ULID

    def _make(**overrides):
        now = datetime(2026, 1, 2, 9, 0, tzinfo=UTC)
        data = {
            "task_id": str(ULID()),
            "created_at": now,
            "updated_at": now,
            "status": TaskStatus.AWAITING_FIRST_RESPONSE,
            "name": "Quarterly report",
            "due_date": date(2026, 1, 10),
            "scope": "Draft the Q4 report",
            "delegator_address": "boss@example.com",
            "delegate_address": "dev@example.com",
            "thread_id": "thread-1",
            "assigned_at": now,
        }
        data.update(overrides)
        return Task(**data)

    return _make
