"""入站消息路由

POST /api/inbound: 推送投递入口（webhook）。
- 200: 已处理（skipped=true 表示此前已处理过）
- 403: 发件人不是任务双方
- 422: 无法关联到任务
- 503: 存储写入失败，可重试
"""

from fastapi import APIRouter, Depends
from handoff.core.models import InboundMessage, IngestResult

from ..deps import get_gateway

router = APIRouter()


@router.post("/api/inbound", response_model=IngestResult)
async def receive_inbound(
    body: InboundMessage,
    gateway=Depends(get_gateway),
):
    """接收一条入站消息"""
    return await gateway.ingest(body)
