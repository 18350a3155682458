"""packages/core 测试配置 -- 核心层 fixture"""

from collections.abc import AsyncGenerator
from pathlib import Path

import pytest_asyncio
from handoff.core.store import StoreGroup, create_store_group


@pytest_asyncio.fixture
async def store_group(tmp_path: Path) -> AsyncGenerator[StoreGroup, None]:
    """核心层临时 StoreGroup"""
    group = await create_store_group(str(tmp_path / "core_test.db"))
    yield group
    await group.conn.close()


@pytest_asyncio.fixture
async def task_store(store_group: StoreGroup):
    return store_group.task_store


@pytest_asyncio.fixture
async def stored_task(task_store, make_task):
    """已写入数据库的任务"""
    task = make_task()
    await task_store.create_task(task)
    return task
