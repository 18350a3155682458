"""TraceMiddleware -- 为任务相关请求绑定 trace_id

从 /api/tasks/{task_id}/... 或 /api/silence/{task_id}/... 路径中提取 task_id。
入站消息的 trace 在 MessageGateway 关联任务后由日志字段 task_id 提供。
"""

import re

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

_TASK_PATH_RE = re.compile(r"/api/(?:tasks|silence)/([0-9A-HJKMNP-TV-Z]{26})(?:/|$)")


class TraceMiddleware(BaseHTTPMiddleware):
    """任务级追踪中间件"""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        match = _TASK_PATH_RE.search(request.url.path)
        if match:
            structlog.contextvars.bind_contextvars(trace_id=f"trace-{match.group(1)}")
        return await call_next(request)
