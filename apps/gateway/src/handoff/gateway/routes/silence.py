"""静默检测路由

GET /api/silence: 列出需要跟进或升级的任务（只读）。
POST /api/silence/{task_id}/sent: 通知发出后记录标记。
"""

from datetime import UTC, datetime

from fastapi import APIRouter, Depends
from handoff.core.escalation import SilenceAction, silence_started_at
from pydantic import BaseModel

from ..deps import get_sweep_service
from ..services.sweep_service import SilenceNotice

router = APIRouter()


class SilenceListResponse(BaseModel):
    notices: list[SilenceNotice]


class NoticeSentRequest(BaseModel):
    action: SilenceAction


@router.get("/api/silence", response_model=SilenceListResponse)
async def list_silence(sweep=Depends(get_sweep_service)):
    return SilenceListResponse(notices=await sweep.check_silence(datetime.now(UTC)))


@router.post("/api/silence/{task_id}/sent")
async def notice_sent(
    task_id: str,
    body: NoticeSentRequest,
    sweep=Depends(get_sweep_service),
):
    """记录 follow_up_sent_at / escalated_at"""
    task = await sweep.record_notice_sent(
        SilenceNotice(
            task_id=task_id,
            action=body.action,
            task_name="",
            delegator_address="",
        )
    )
    return {
        "task_id": task.task_id,
        "follow_up_sent_at": task.follow_up_sent_at,
        "escalated_at": task.escalated_at,
        "silent_since": silence_started_at(task),
    }
