"""任务路由

GET  /api/tasks                      任务列表，支持 status 筛选
POST /api/tasks                      创建草稿任务
GET  /api/tasks/{task_id}            任务详情
POST /api/tasks/{task_id}/assign     派发给受托方
POST /api/tasks/{task_id}/cancel     取消
POST /api/tasks/{task_id}/completion 审核完成声明
POST /api/tasks/{task_id}/reopen     重新打开
POST /api/tasks/{task_id}/reconcile  强制对账
"""

from datetime import date

from fastapi import APIRouter, Depends, Query
from handoff.core.cleaning import task_reference
from handoff.core.models import Task, needs_attention
from pydantic import BaseModel, Field
from starlette.responses import JSONResponse

from ..deps import get_admin_service

router = APIRouter()


class TaskSummary(BaseModel):
    """任务摘要（列表项）"""

    task_id: str
    reference: str
    name: str
    status: str
    conversation_state: str
    due_date: date | None
    delegate_address: str | None
    requires_action: bool
    needs_attention: bool
    last_message_snippet: str
    updated_at: str


class TaskListResponse(BaseModel):
    tasks: list[TaskSummary]


class CreateTaskRequest(BaseModel):
    name: str = Field(min_length=1, description="任务名称")
    delegator_address: str = Field(min_length=1, description="委托方地址")
    due_date: date | None = Field(default=None, description="截止日期")
    scope: str = Field(default="", description="范围描述")
    delegate_address: str | None = Field(default=None, description="受托方地址")


class AssignRequest(BaseModel):
    delegate_address: str = Field(min_length=1)
    thread_id: str | None = None


class ReasonRequest(BaseModel):
    reason: str = ""


class CompletionReviewRequest(BaseModel):
    approved: bool
    reason: str = ""


def _summary(task: Task) -> TaskSummary:
    return TaskSummary(
        task_id=task.task_id,
        reference=task_reference(task.task_id),
        name=task.name,
        status=task.status.value,
        conversation_state=task.conversation_state.value,
        due_date=task.due_date,
        delegate_address=task.delegate_address,
        requires_action=task.requires_action,
        needs_attention=needs_attention(task.conversation_state),
        last_message_snippet=task.last_message_snippet,
        updated_at=task.updated_at.isoformat(),
    )


def _detail(task: Task) -> dict:
    data = task.model_dump(mode="json", exclude={"processed_message_ids"})
    return {
        "task": data,
        "reference": task_reference(task.task_id),
        "needs_attention": needs_attention(task.conversation_state),
    }


@router.get("/api/tasks", response_model=TaskListResponse)
async def list_tasks(
    status: str | None = Query(default=None, description="按状态筛选"),
    service=Depends(get_admin_service),
):
    """查询任务列表，按 created_at 倒序"""
    tasks = await service.list_tasks(status)
    return TaskListResponse(tasks=[_summary(t) for t in tasks])


@router.post("/api/tasks")
async def create_task(body: CreateTaskRequest, service=Depends(get_admin_service)):
    task = await service.create_task(
        name=body.name,
        delegator_address=body.delegator_address,
        due_date=body.due_date,
        scope=body.scope,
        delegate_address=body.delegate_address,
    )
    return JSONResponse(status_code=201, content=_detail(task))


@router.get("/api/tasks/{task_id}")
async def get_task_detail(task_id: str, service=Depends(get_admin_service)):
    return _detail(await service.get_task(task_id))


@router.post("/api/tasks/{task_id}/assign")
async def assign_task(
    task_id: str,
    body: AssignRequest,
    service=Depends(get_admin_service),
):
    task = await service.assign_task(task_id, body.delegate_address, body.thread_id)
    return _detail(task)


@router.post("/api/tasks/{task_id}/cancel")
async def cancel_task(
    task_id: str,
    body: ReasonRequest | None = None,
    service=Depends(get_admin_service),
):
    """取消非终态任务；终态任务返回 409"""
    task = await service.cancel_task(task_id, body.reason if body else "")
    return _detail(task)


@router.post("/api/tasks/{task_id}/completion")
async def review_completion(
    task_id: str,
    body: CompletionReviewRequest,
    service=Depends(get_admin_service),
):
    task = await service.review_completion(task_id, body.approved, body.reason)
    return _detail(task)


@router.post("/api/tasks/{task_id}/reopen")
async def reopen_task(
    task_id: str,
    body: ReasonRequest | None = None,
    service=Depends(get_admin_service),
):
    task = await service.reopen_task(task_id, body.reason if body else "")
    return _detail(task)


@router.post("/api/tasks/{task_id}/reconcile")
async def reconcile_task(task_id: str, service=Depends(get_admin_service)):
    outcome = await service.reconcile(task_id)
    return {
        "task_id": task_id,
        "classified": outcome.classified,
        "conversation_state": outcome.conversation_state.value,
        "snapshot": outcome.snapshot.model_dump(mode="json"),
        "intent": outcome.intent.model_dump(mode="json") if outcome.intent else None,
    }
