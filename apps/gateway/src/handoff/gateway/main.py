"""FastAPI 应用主文件

app 创建 + lifespan 管理：DB 初始化/关闭、分类器选择、服务装配、路由注册。
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import date

import structlog
from fastapi import FastAPI
from handoff.core.config import get_db_path
from handoff.core.decisions import PendingDecisionManager
from handoff.core.idempotency import IdempotencyTracker
from handoff.core.ledger import ConversationLedger
from handoff.core.reconciliation import ClassificationAdapter, ReconciliationEngine
from handoff.core.store import StoreGroup, create_store_group
from handoff.provider import (
    FallbackManager,
    LiteLLMClient,
    ProviderConfig,
    load_provider_config,
)

from .errors import install_error_handlers
from .middleware.logging_config import setup_logging
from .middleware.logging_mw import LoggingMiddleware
from .middleware.trace_mw import TraceMiddleware
from .routes import health, inbound, silence, tasks
from .services.classifier_service import (
    HeuristicClassificationAdapter,
    LLMClassificationAdapter,
)
from .services.handlers import ConversationHandler
from .services.ingestion_service import MessageGateway
from .services.locks import TaskLockRegistry
from .services.sweep_service import SweepService
from .services.task_admin_service import TaskAdminService

log = structlog.get_logger()


def build_classifier(
    provider_config: ProviderConfig,
) -> tuple[ClassificationAdapter, LiteLLMClient | None]:
    """按 llm_mode 选择分类适配器

    Returns:
        (adapter, litellm_client)，heuristic 模式下 litellm_client 为 None
    """
    if provider_config.llm_mode == "heuristic":
        log.info("classifier_initialized", mode="heuristic")
        return HeuristicClassificationAdapter(), None

    litellm_client = LiteLLMClient(
        proxy_base_url=provider_config.proxy_base_url,
        proxy_api_key=provider_config.proxy_api_key.get_secret_value(),
        timeout_s=provider_config.timeout_s,
    )
    # 备用模型走同一个 Proxy，只是 model group 不同
    fallback_manager = FallbackManager(
        primary=litellm_client,
        fallback=litellm_client if provider_config.fallback_model else None,
        fallback_alias=provider_config.fallback_model or None,
    )
    log.info(
        "classifier_initialized",
        mode="litellm",
        proxy_url=provider_config.proxy_base_url,
        model=provider_config.classifier_model,
        fallback_model=provider_config.fallback_model or None,
        timeout_s=provider_config.timeout_s,
    )
    adapter = LLMClassificationAdapter(
        fallback_manager,
        model_alias=provider_config.classifier_model,
    )
    return adapter, litellm_client


def attach_services(
    app: FastAPI,
    store_group: StoreGroup,
    adapter: ClassificationAdapter,
    today: date | None = None,
) -> None:
    """在 app.state 上装配 Store 与各服务"""
    task_store = store_group.task_store
    locks = TaskLockRegistry()
    ledger = ConversationLedger(task_store)
    engine = ReconciliationEngine(task_store, adapter, today=today)
    handler = ConversationHandler(
        task_store,
        ledger,
        engine,
        PendingDecisionManager(today=today),
    )
    gateway = MessageGateway(task_store, handler, IdempotencyTracker(task_store), locks)

    app.state.store_group = store_group
    app.state.task_locks = locks
    app.state.engine = engine
    app.state.gateway = gateway
    app.state.admin_service = TaskAdminService(task_store, ledger, engine, locks)
    app.state.sweep_service = SweepService(task_store, gateway)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """应用生命周期管理：启动时初始化 DB 和服务，关闭时清理连接"""
    store_group = await create_store_group(get_db_path())

    provider_config = load_provider_config()
    app.state.provider_config = provider_config
    adapter, litellm_client = build_classifier(provider_config)
    app.state.litellm_client = litellm_client

    attach_services(app, store_group, adapter)

    yield

    if getattr(app.state, "store_group", None):
        await app.state.store_group.conn.close()


def create_app() -> FastAPI:
    """创建 FastAPI 应用实例"""
    app = FastAPI(
        title="Handoff Gateway",
        version="0.1.0",
        description="委托任务会话对账服务 API",
        lifespan=lifespan,
    )

    # 注册中间件（顺序：先 Trace 后 Logging）
    app.add_middleware(TraceMiddleware)
    app.add_middleware(LoggingMiddleware)

    setup_logging()
    install_error_handlers(app)

    app.include_router(inbound.router, tags=["inbound"])
    app.include_router(tasks.router, tags=["tasks"])
    app.include_router(silence.router, tags=["silence"])
    app.include_router(health.router, tags=["health"])

    return app


# 默认 app 实例（uvicorn 入口）
app = create_app()
