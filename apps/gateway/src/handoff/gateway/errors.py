"""HandoffError -> HTTP 错误响应

响应体沿用 {"error": {"code", "message"}} 结构。
"""

import structlog
from fastapi import FastAPI, Request
from handoff.core.exceptions import (
    CorrelationError,
    HandoffError,
    InvalidTransitionError,
    PersistenceWriteFailure,
    TaskNotFoundError,
    UnknownSenderError,
)
from starlette.responses import JSONResponse

log = structlog.get_logger()

# (异常类型, HTTP 状态码, 错误码)，按顺序匹配
ERROR_STATUS: list[tuple[type[HandoffError], int, str]] = [
    (CorrelationError, 422, "CORRELATION_FAILED"),
    (UnknownSenderError, 403, "UNKNOWN_SENDER"),
    (TaskNotFoundError, 404, "TASK_NOT_FOUND"),
    (InvalidTransitionError, 409, "INVALID_TRANSITION"),
    (PersistenceWriteFailure, 503, "PERSISTENCE_UNAVAILABLE"),
]


def error_response(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": {"code": code, "message": message}},
    )


async def handoff_error_handler(request: Request, exc: HandoffError) -> JSONResponse:
    for error_type, status_code, code in ERROR_STATUS:
        if isinstance(exc, error_type):
            break
    else:
        status_code, code = 500, "INTERNAL_ERROR"

    log.warning(
        "request_failed",
        error_code=code,
        task_id=exc.task_id,
        message_id=exc.message_id,
        recoverable=exc.recoverable,
    )
    return error_response(status_code, code, str(exc))


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(HandoffError, handoff_error_handler)
