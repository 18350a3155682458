"""Conversation Ledger -- 每个任务的 append-only 会话事件日志

append 流程：归一化事件 -> 去重（相同 id，或同一发送者 1 秒内相同内容）->
追加 -> 事件数上限 -> 序列化大小上限（逐步裁剪）-> 重算最近消息摘要 -> 单次写入。
"""

import json
import re
from datetime import UTC, datetime, timedelta

import structlog
from ulid import ULID

from . import config
from .exceptions import DuplicateMessageError, SizeLimitExceeded, TaskNotFoundError
from .models.enums import SenderRole
from .models.event import ConversationEvent, LastMessageSummary
from .store.protocols import TaskRepository
from .store.task_store import LEDGER_FIELDS

log = structlog.get_logger()

_WHITESPACE = re.compile(r"\s+")


def normalize_event(event: ConversationEvent, now: datetime | None = None) -> ConversationEvent:
    """补齐本地 id、时间（统一为带时区）；raw_content 与 content 相同时不保留"""
    now = now or datetime.now(UTC)
    update: dict = {}
    if not event.id:
        update["id"] = f"local_{ULID()}"
    if event.timestamp is None:
        update["timestamp"] = now
    elif event.timestamp.tzinfo is None:
        update["timestamp"] = event.timestamp.replace(tzinfo=UTC)
    if event.raw_content is not None:
        if event.raw_content == event.content:
            update["raw_content"] = None
        else:
            update["metadata"] = {
                **event.metadata,
                "was_content_cleaned": True,
                "original_length": len(event.raw_content),
                "cleaned_length": len(event.content),
            }
    return event.model_copy(update=update) if update else event


def check_duplicate(
    history: list[ConversationEvent],
    event: ConversationEvent,
    window_ms: int = config.DUPLICATE_WINDOW_MS,
) -> None:
    """重复时抛出 DuplicateMessageError"""
    window = timedelta(milliseconds=window_ms)
    for existing in history:
        if existing.id == event.id:
            raise DuplicateMessageError(f"事件 {event.id} 已存在", message_id=event.id)
        if (
            existing.content == event.content
            and existing.sender_identity == event.sender_identity
            and existing.sender_role == event.sender_role
            and abs(existing.timestamp - event.timestamp) < window
        ):
            raise DuplicateMessageError(
                f"事件 {event.id} 与 {existing.id} 内容重复",
                message_id=event.id,
            )


def serialized_size(history: list[ConversationEvent]) -> int:
    """ledger 序列化后的字符数（与存储列的 JSON 编码一致）"""
    return len(
        json.dumps(
            [e.model_dump(mode="json") for e in history],
            ensure_ascii=False,
        )
    )


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + config.TRUNCATION_MARKER


def _keep_recent(history: list[ConversationEvent]) -> list[ConversationEvent]:
    return history[-config.LEDGER_TRIM_TO_EVENTS :]


def _truncate_contents(history: list[ConversationEvent]) -> list[ConversationEvent]:
    limit = config.LEDGER_CONTENT_TRUNCATE_CHARS
    return [
        e.model_copy(update={"content": _truncate(e.content, limit), "raw_content": None})
        for e in history
    ]


def _drop_oldest(history: list[ConversationEvent], max_chars: int) -> list[ConversationEvent]:
    while len(history) > 1 and serialized_size(history) > max_chars:
        history = history[1:]
    return history


def _shrink_latest(history: list[ConversationEvent], max_chars: int) -> list[ConversationEvent]:
    latest = history[-1]
    latest = latest.model_copy(
        update={
            "metadata": {},
            "raw_content": None,
            "sender_identity": _truncate(
                latest.sender_identity, config.SENDER_IDENTITY_MAX_CHARS
            ),
        }
    )
    overflow = serialized_size([latest]) - max_chars
    if overflow > 0:
        keep = max(len(latest.content) - overflow - len(config.TRUNCATION_MARKER), 0)
        latest = latest.model_copy(
            update={"content": latest.content[:keep] + config.TRUNCATION_MARKER}
        )
    return [latest]


def enforce_size_bound(
    history: list[ConversationEvent],
    max_chars: int = config.LEDGER_MAX_CHARS,
) -> list[ConversationEvent]:
    """逐步裁剪直到序列化大小不超过上限，每一步后重新检查

    1. 只保留最近 20 条
    2. 单条正文截断到 500 字符并丢弃 raw_content
    3. 从最旧开始继续丢弃（至少保留最近一条）
    4. 清空最近一条的元数据，截断发送者地址并进一步截断正文

    max_chars 低于 LEDGER_MIN_CHARS 时按下限处理，保证最近一条总能放下。

    Raises:
        SizeLimitExceeded: 所有步骤之后仍超限
    """
    max_chars = max(max_chars, config.LEDGER_MIN_CHARS)
    steps = [
        ("keep_recent", _keep_recent),
        ("truncate_contents", _truncate_contents),
        ("drop_oldest", lambda h: _drop_oldest(h, max_chars)),
        ("shrink_latest", lambda h: _shrink_latest(h, max_chars)),
    ]
    for name, step in steps:
        size = serialized_size(history)
        if size <= max_chars:
            return history
        history = step(history)
        log.info(
            "ledger_size_bound_applied",
            step=name,
            size_before=size,
            events=len(history),
        )

    size = serialized_size(history)
    if size > max_chars:
        raise SizeLimitExceeded(f"ledger 大小 {size} 超出上限 {max_chars}")
    return history


def make_snippet(content: str, limit: int = config.SNIPPET_MAX_CHARS) -> str:
    """折叠空白并截断到 limit 字符"""
    collapsed = _WHITESPACE.sub(" ", content or "").strip()
    if len(collapsed) <= limit:
        return collapsed
    return collapsed[: limit - 3] + "..."


def summarize(history: list[ConversationEvent]) -> LastMessageSummary:
    """最近事件的展示摘要"""
    if not history:
        return LastMessageSummary()
    latest = max(history, key=lambda e: e.timestamp)
    return LastMessageSummary(
        timestamp=latest.timestamp,
        sender=latest.sender_identity or latest.sender_role.value,
        snippet=make_snippet(latest.content),
    )


class ConversationLedger:
    """Conversation Ledger

    只写 ledger 相关列，不触碰对账/协商字段。
    """

    def __init__(
        self,
        task_store: TaskRepository,
        max_events: int | None = None,
        max_chars: int | None = None,
    ) -> None:
        self._task_store = task_store
        self._max_events = max_events or config.LEDGER_MAX_EVENTS
        self._max_chars = max(max_chars or config.LEDGER_MAX_CHARS, config.LEDGER_MIN_CHARS)

    async def append(self, task_id: str, event: ConversationEvent) -> bool:
        """追加事件

        Returns:
            True 已追加；False 为重复事件，未做任何修改

        Raises:
            TaskNotFoundError: 任务不存在
            PersistenceWriteFailure: 写入失败
        """
        task = await self._task_store.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)

        now = datetime.now(UTC)
        event = normalize_event(event, now)
        history = list(task.conversation_history)
        try:
            check_duplicate(history, event)
        except DuplicateMessageError as e:
            log.info("ledger_duplicate_skipped", task_id=task_id, message_id=event.id, reason=str(e))
            return False

        history.append(event)
        if len(history) > self._max_events:
            history = history[-self._max_events :]
        history = enforce_size_bound(history, self._max_chars)

        summary = summarize(history)
        update = {
            "conversation_history": history,
            "message_count": len(history),
            "last_message_at": summary.timestamp,
            "last_message_sender": summary.sender,
            "last_message_snippet": summary.snippet,
            "updated_at": now,
        }
        if event.sender_role is SenderRole.DELEGATOR:
            update["last_delegator_message_at"] = _latest(
                task.last_delegator_message_at, event.timestamp
            )
        elif event.sender_role is SenderRole.DELEGATE:
            update["last_delegate_message_at"] = _latest(
                task.last_delegate_message_at, event.timestamp
            )

        await self._task_store.save_task(task.model_copy(update=update), LEDGER_FIELDS)
        log.info(
            "ledger_event_appended",
            task_id=task_id,
            message_id=event.id,
            sender_role=event.sender_role.value,
            events=len(history),
        )
        return True

    async def append_system_note(self, task_id: str, content: str, **metadata) -> bool:
        """追加系统备注（如完成被驳回、重新打开的原因）"""
        now = datetime.now(UTC)
        event = ConversationEvent(
            id=f"system_{ULID()}",
            timestamp=now,
            sender_role=SenderRole.SYSTEM,
            type="system_note",
            content=content,
            metadata=metadata,
        )
        return await self.append(task_id, event)


def _latest(current: datetime | None, candidate: datetime) -> datetime:
    if current is None or candidate > current:
        return candidate
    return current
