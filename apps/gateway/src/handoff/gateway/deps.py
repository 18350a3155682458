"""依赖注入模块 -- 通过 FastAPI Depends 注入 Store 与服务实例

实例通过 app.state 管理，在 lifespan 中初始化/清理。
"""

from fastapi import Request
from handoff.core.store import StoreGroup

from .services.ingestion_service import MessageGateway
from .services.sweep_service import SweepService
from .services.task_admin_service import TaskAdminService


def get_store_group(request: Request) -> StoreGroup:
    """从 app.state 获取 StoreGroup 实例"""
    return request.app.state.store_group


def get_gateway(request: Request) -> MessageGateway:
    """从 app.state 获取 MessageGateway 实例"""
    return request.app.state.gateway


def get_admin_service(request: Request) -> TaskAdminService:
    """从 app.state 获取 TaskAdminService 实例"""
    return request.app.state.admin_service


def get_sweep_service(request: Request) -> SweepService:
    """从 app.state 获取 SweepService 实例"""
    return request.app.state.sweep_service
