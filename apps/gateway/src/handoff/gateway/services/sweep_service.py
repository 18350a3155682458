"""定时 sweep -- 轮询收件箱与静默检测

sweep_inbox 会重新发现推送路径已经处理过的消息，幂等性完全依赖 Idempotency Tracker。
check_silence 只给出到期的通知，发送成功后由调用方 record_notice_sent 落标记。
"""

from datetime import UTC, datetime
from typing import Protocol

import structlog
from handoff.core.escalation import (
    SilenceAction,
    evaluate_silence,
    record_silence_action,
    silence_started_at,
)
from handoff.core.exceptions import HandoffError, TaskNotFoundError
from handoff.core.models import InboundMessage, Task
from handoff.core.store.protocols import TaskRepository
from handoff.core.store.task_store import ESCALATION_FIELDS
from pydantic import BaseModel, Field

from .ingestion_service import MessageGateway

log = structlog.get_logger()


class MessageSource(Protocol):
    """消息来源（邮箱、聊天平台等）"""

    async def fetch_thread(self, thread_id: str) -> list[InboundMessage]:
        ...


class SweepReport(BaseModel):
    """一次收件箱 sweep 的统计"""

    threads: int = 0
    messages: int = 0
    ingested: int = 0
    skipped: int = 0
    failed: int = 0
    errors: list[str] = Field(default_factory=list, description="失败原因（task/message 标识）")


class SilenceNotice(BaseModel):
    """到期的跟进或升级通知"""

    task_id: str
    action: SilenceAction
    task_name: str
    delegator_address: str
    delegate_address: str | None = None
    silent_since: datetime | None = None


class SweepService:
    """收件箱 sweep 与静默检测"""

    def __init__(self, task_store: TaskRepository, gateway: MessageGateway) -> None:
        self._task_store = task_store
        self._gateway = gateway

    async def sweep_inbox(self, source: MessageSource) -> SweepReport:
        """重新拉取所有未结束任务的线程，逐条 ingest"""
        report = SweepReport()
        tasks = await self._task_store.list_open_threads()
        for task in tasks:
            report.threads += 1
            try:
                messages = await source.fetch_thread(task.thread_id)
            except Exception as e:
                log.warning(
                    "sweep_fetch_failed",
                    task_id=task.task_id,
                    thread_id=task.thread_id,
                    error=str(e),
                )
                report.errors.append(f"{task.task_id}: {e}")
                continue

            for message in sorted(messages, key=lambda m: m.timestamp):
                report.messages += 1
                try:
                    result = await self._gateway.ingest(message)
                except HandoffError as e:
                    report.failed += 1
                    report.errors.append(f"{task.task_id}/{message.id}: {e}")
                    log.warning(
                        "sweep_message_failed",
                        task_id=task.task_id,
                        message_id=message.id,
                        error=str(e),
                        recoverable=e.recoverable,
                    )
                    continue
                if result.skipped:
                    report.skipped += 1
                else:
                    report.ingested += 1

        log.info(
            "inbox_sweep_completed",
            threads=report.threads,
            messages=report.messages,
            ingested=report.ingested,
            skipped=report.skipped,
            failed=report.failed,
        )
        return report

    async def check_silence(self, now: datetime | None = None) -> list[SilenceNotice]:
        """列出需要跟进或升级的任务（不写入）"""
        now = now or datetime.now(UTC)
        notices = []
        for task in await self._task_store.list_open_threads():
            action = evaluate_silence(task, now)
            if action is SilenceAction.NONE:
                continue
            notices.append(
                SilenceNotice(
                    task_id=task.task_id,
                    action=action,
                    task_name=task.name,
                    delegator_address=task.delegator_address,
                    delegate_address=task.delegate_address,
                    silent_since=silence_started_at(task),
                )
            )
        if notices:
            log.info("silence_notices_due", count=len(notices))
        return notices

    async def record_notice_sent(
        self,
        notice: SilenceNotice,
        now: datetime | None = None,
    ) -> Task:
        """通知发出后记录 follow_up_sent_at / escalated_at"""
        task = await self._task_store.get_task(notice.task_id)
        if task is None:
            raise TaskNotFoundError(notice.task_id)
        task = record_silence_action(task, notice.action, now)
        await self._task_store.save_task(task, ESCALATION_FIELDS)
        return task
