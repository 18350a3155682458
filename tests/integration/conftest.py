"""集成测试共享 fixture

app 直接在 app.state 上装配（ASGITransport 不触发 lifespan），
分类器使用关键词规则，参考日期固定为 2026-01-01。
"""

import os
from collections.abc import AsyncGenerator
from datetime import date
from pathlib import Path

import pytest_asyncio
from handoff.core.store import create_store_group
from handoff.gateway.main import attach_services, create_app
from handoff.gateway.services.classifier_service import HeuristicClassificationAdapter
from handoff.provider import ProviderConfig
from httpx import ASGITransport, AsyncClient

TODAY = date(2026, 1, 1)


async def build_app(db_path: str):
    """创建并装配一个 app，返回 (app, store_group)"""
    app = create_app()
    store_group = await create_store_group(db_path)
    app.state.provider_config = ProviderConfig(llm_mode="heuristic")
    app.state.litellm_client = None
    attach_services(app, store_group, HeuristicClassificationAdapter(today=TODAY), today=TODAY)
    return app, store_group


@pytest_asyncio.fixture
async def integration_app(tmp_path: Path):
    """集成测试用 FastAPI app"""
    db_path = str(tmp_path / "integration.db")
    os.environ["HANDOFF_DB_PATH"] = db_path
    os.environ["HANDOFF_LLM_MODE"] = "heuristic"

    app, store_group = await build_app(db_path)
    yield app

    await store_group.conn.close()
    os.environ.pop("HANDOFF_DB_PATH", None)
    os.environ.pop("HANDOFF_LLM_MODE", None)


@pytest_asyncio.fixture
async def client(integration_app) -> AsyncGenerator[AsyncClient, None]:
    async with AsyncClient(
        transport=ASGITransport(app=integration_app),
        base_url="http://test",
    ) as ac:
        yield ac


@pytest_asyncio.fixture
async def delegated_task(client) -> dict:
    """通过 HTTP 创建并派发的任务（thread-e2e）"""
    resp = await client.post(
        "/api/tasks",
        json={
            "name": "Vendor contract",
            "delegator_address": "Alice Manager <alice@corp.example>",
            "due_date": "2026-01-12",
            "scope": "Negotiate renewal terms",
        },
    )
    task_id = resp.json()["task"]["task_id"]
    resp = await client.post(
        f"/api/tasks/{task_id}/assign",
        json={"delegate_address": "Bob <bob@corp.example>", "thread_id": "thread-e2e"},
    )
    assert resp.status_code == 200
    return resp.json()["task"]


@pytest_asyncio.fixture
async def app_factory():
    """按数据库路径创建 app 的工厂（模拟进程重启）"""
    return build_app
