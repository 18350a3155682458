"""apps/gateway 测试配置 -- FastAPI AsyncClient + 临时 DB + 关键词分类器

ASGITransport 不触发 lifespan，这里直接在 app.state 上装配服务；
参考日期固定为 2026-01-01，使无年份日期的解析结果稳定。
"""

import os
from collections.abc import AsyncGenerator
from datetime import date
from pathlib import Path

import pytest_asyncio
from httpx import ASGITransport, AsyncClient

TODAY = date(2026, 1, 1)


@pytest_asyncio.fixture
async def gateway_tmp_dir(tmp_path: Path) -> Path:
    """Gateway 临时数据目录"""
    db_dir = tmp_path / "sqlite"
    db_dir.mkdir(parents=True, exist_ok=True)
    return tmp_path


@pytest_asyncio.fixture
async def app(gateway_tmp_dir: Path):
    """创建测试用 FastAPI app 实例（heuristic 分类器）"""
    db_path = str(gateway_tmp_dir / "sqlite" / "test.db")
    os.environ["HANDOFF_DB_PATH"] = db_path
    os.environ["HANDOFF_LLM_MODE"] = "heuristic"

    from handoff.core.store import create_store_group
    from handoff.gateway.main import attach_services, create_app
    from handoff.gateway.services.classifier_service import HeuristicClassificationAdapter
    from handoff.provider import ProviderConfig

    application = create_app()
    store_group = await create_store_group(db_path)
    application.state.provider_config = ProviderConfig(llm_mode="heuristic")
    application.state.litellm_client = None
    attach_services(
        application,
        store_group,
        HeuristicClassificationAdapter(today=TODAY),
        today=TODAY,
    )
    yield application

    await store_group.conn.close()
    for key in ["HANDOFF_DB_PATH", "HANDOFF_LLM_MODE"]:
        os.environ.pop(key, None)


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """提供 httpx AsyncClient 用于测试"""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


@pytest_asyncio.fixture
async def task_store(app):
    return app.state.store_group.task_store


@pytest_asyncio.fixture
async def assigned_task(app):
    """已派发、绑定 thread-1、等待首次回复的任务"""
    service = app.state.admin_service
    task = await service.create_task(
        name="Quarterly report",
        delegator_address="Boss <boss@example.com>",
        due_date=date(2026, 1, 10),
        scope="Draft the Q4 report",
    )
    return await service.assign_task(task.task_id, "Dev <dev@example.com>", "thread-1")
