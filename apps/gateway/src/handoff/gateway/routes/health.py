"""健康检查路由

GET /health: Liveness 检查，永远返回 200。
GET /ready: Readiness 检查，包含 SQLite 连通性、磁盘空间、分类器模式，
            profile=llm/full 时额外探测 LiteLLM Proxy。
"""

import shutil

import structlog
from fastapi import APIRouter, Query, Request
from starlette.responses import JSONResponse

log = structlog.get_logger()

router = APIRouter()


@router.get("/health")
async def health():
    """Liveness 检查 -- 永远返回 200"""
    return {"status": "ok"}


@router.get("/ready")
async def ready(
    request: Request,
    profile: str | None = Query(
        default=None,
        description="core（默认）仅核心检查；llm/full 包含 LiteLLM Proxy 健康检查",
    ),
):
    """Readiness 检查 -- 验证核心依赖可用性"""
    effective_profile = profile or "core"

    checks = {}
    all_ok = True

    # 1. SQLite 连通性
    try:
        store_group = request.app.state.store_group
        cursor = await store_group.conn.execute("SELECT 1")
        await cursor.fetchone()
        checks["sqlite"] = "ok"
    except Exception as e:
        checks["sqlite"] = f"error: {str(e)}"
        all_ok = False

    # 2. 磁盘空间
    try:
        disk_usage = shutil.disk_usage("/")
        checks["disk_space_mb"] = disk_usage.free // (1024 * 1024)
    except Exception:
        checks["disk_space_mb"] = 0
        all_ok = False

    # 3. 分类器模式
    provider_config = getattr(request.app.state, "provider_config", None)
    checks["classifier"] = provider_config.llm_mode if provider_config else "unknown"

    # 4. LiteLLM Proxy
    litellm_client = getattr(request.app.state, "litellm_client", None)
    if effective_profile in ("llm", "full") and litellm_client is not None:
        try:
            if await litellm_client.health_check():
                checks["litellm_proxy"] = "ok"
            else:
                checks["litellm_proxy"] = "unreachable"
                all_ok = False
        except Exception as e:
            log.warning("health_check_error", error=str(e))
            checks["litellm_proxy"] = "unreachable"
            all_ok = False
    else:
        # heuristic 模式或 profile=core：不探测 Proxy
        checks["litellm_proxy"] = "skipped"

    return JSONResponse(
        status_code=200 if all_ok else 503,
        content={
            "status": "ready" if all_ok else "not_ready",
            "profile": effective_profile,
            "checks": checks,
        },
    )
