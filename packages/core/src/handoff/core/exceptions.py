"""Core 异常体系

只有 CorrelationError 与 UnknownSenderError 需要人工处理（recoverable=False）；
其余异常预期在下一次重试或 sweep 中自愈。
"""


class HandoffError(Exception):
    """Core 包基础异常"""

    def __init__(
        self,
        message: str,
        recoverable: bool = True,
        task_id: str | None = None,
        message_id: str | None = None,
    ) -> None:
        """
        Args:
            message: 错误描述
            recoverable: 是否可通过重试或 sweep 恢复
            task_id: 关联的任务 ID（日志上下文）
            message_id: 关联的消息 ID（日志上下文）
        """
        super().__init__(message)
        self.recoverable = recoverable
        self.task_id = task_id
        self.message_id = message_id


class CorrelationError(HandoffError):
    """消息无法关联到任何任务 -- 不自动重试，等待人工分拣"""

    def __init__(self, message_id: str, thread_id: str = "") -> None:
        super().__init__(
            f"无法关联消息 {message_id}（thread={thread_id or '-'}）到任何任务",
            recoverable=False,
            message_id=message_id,
        )
        self.thread_id = thread_id


class UnknownSenderError(HandoffError):
    """发件人既不是委托方也不是受托方 -- 丢弃并记录，不重试"""

    def __init__(self, sender: str, task_id: str, message_id: str) -> None:
        super().__init__(
            f"未知发件人 {sender}",
            recoverable=False,
            task_id=task_id,
            message_id=message_id,
        )
        self.sender = sender


class DuplicateMessageError(HandoffError):
    """重复消息 -- 在 ledger 去重内部捕获，视为 no-op"""


class ClassificationFailure(HandoffError):
    """分类适配器调用失败或输出无法解析 -- 对账时保留原有状态"""


class SizeLimitExceeded(HandoffError):
    """ledger 在所有裁剪步骤后仍超出容量上限"""


class PersistenceWriteFailure(HandoffError):
    """存储写入失败 -- 本次 ingest 视为未处理，不标记幂等"""


class TaskNotFoundError(HandoffError):
    """任务不存在"""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"任务 {task_id} 不存在", recoverable=False, task_id=task_id)


class InvalidTransitionError(HandoffError, ValueError):
    """非法的生命周期状态流转"""

    def __init__(self, task_id: str, from_status: str, to_status: str) -> None:
        super().__init__(
            f"任务 {task_id} 不能从 {from_status} 流转到 {to_status}",
            recoverable=False,
            task_id=task_id,
        )
        self.from_status = from_status
        self.to_status = to_status
