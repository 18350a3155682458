"""静默检测测试

测试内容：
1. 只在等待受托方时计时
2. 跟进与升级的时间窗
3. 标记早于计时起点时重新到期
4. 受托方回复后不再静默
"""

from datetime import UTC, datetime, timedelta

import pytest
from handoff.core.escalation import (
    SilenceAction,
    awaiting_delegate,
    evaluate_silence,
    record_silence_action,
    silence_started_at,
)
from handoff.core.models import Party, TaskStatus

ASSIGNED = datetime(2026, 1, 2, 9, 0, tzinfo=UTC)
FOLLOW_UP = timedelta(hours=24)
ESCALATE = timedelta(hours=48)


def _evaluate(task, hours):
    return evaluate_silence(task, ASSIGNED + timedelta(hours=hours), FOLLOW_UP, ESCALATE)


class TestAwaitingDelegate:
    """是否在等待受托方"""

    def test_awaiting_first_response(self, make_task):
        assert awaiting_delegate(make_task()) is True

    def test_active_without_pending_is_not_waiting(self, make_task):
        assert awaiting_delegate(make_task(status=TaskStatus.ACTIVE)) is False

    def test_awaiting_party_delegate(self, make_task):
        task = make_task(status=TaskStatus.ACTIVE, awaiting_party=Party.DELEGATE)
        assert awaiting_delegate(task) is True

    @pytest.mark.parametrize("status", [TaskStatus.CLOSED, TaskStatus.CANCELLED])
    def test_terminal_never_waits(self, make_task, status):
        assert awaiting_delegate(make_task(status=status)) is False

    def test_no_delegate(self, make_task):
        assert awaiting_delegate(make_task(delegate_address=None)) is False


class TestEvaluateSilence:
    """时间窗与标记"""

    @pytest.mark.parametrize(
        ("hours", "expected"),
        [
            (1, SilenceAction.NONE),
            (24, SilenceAction.FOLLOW_UP),
            (30, SilenceAction.FOLLOW_UP),
            (48, SilenceAction.ESCALATE),
        ],
    )
    def test_windows(self, make_task, hours, expected):
        assert _evaluate(make_task(), hours) is expected

    def test_follow_up_not_repeated(self, make_task):
        task = make_task(follow_up_sent_at=ASSIGNED + timedelta(hours=25))
        assert _evaluate(task, 30) is SilenceAction.NONE

    def test_escalation_after_follow_up(self, make_task):
        task = make_task(follow_up_sent_at=ASSIGNED + timedelta(hours=25))
        assert _evaluate(task, 49) is SilenceAction.ESCALATE

    def test_escalation_not_repeated(self, make_task):
        task = make_task(
            follow_up_sent_at=ASSIGNED + timedelta(hours=25),
            escalated_at=ASSIGNED + timedelta(hours=49),
        )
        assert _evaluate(task, 60) is SilenceAction.NONE

    def test_delegate_reply_stops_clock(self, make_task):
        task = make_task(last_delegate_message_at=ASSIGNED + timedelta(hours=2))
        assert _evaluate(task, 72) is SilenceAction.NONE

    def test_new_delegator_message_restarts_clock(self, make_task):
        nudge = ASSIGNED + timedelta(hours=50)
        task = make_task(
            status=TaskStatus.ACTIVE,
            awaiting_party=Party.DELEGATE,
            last_delegate_message_at=ASSIGNED + timedelta(hours=2),
            last_delegator_message_at=nudge,
            follow_up_sent_at=ASSIGNED + timedelta(hours=26),
        )
        assert silence_started_at(task) == nudge
        assert _evaluate(task, 60) is SilenceAction.NONE
        assert _evaluate(task, 75) is SilenceAction.FOLLOW_UP

    def test_not_waiting(self, make_task):
        assert _evaluate(make_task(status=TaskStatus.ACTIVE), 100) is SilenceAction.NONE


class TestRecordSilenceAction:
    """记录已发送通知"""

    def test_follow_up_flag(self, make_task):
        now = ASSIGNED + timedelta(hours=24)
        task = record_silence_action(make_task(), SilenceAction.FOLLOW_UP, now)
        assert task.follow_up_sent_at == now
        assert task.escalated_at is None

    def test_escalate_flag(self, make_task):
        now = ASSIGNED + timedelta(hours=48)
        task = record_silence_action(make_task(), SilenceAction.ESCALATE, now)
        assert task.escalated_at == now

    def test_none_is_noop(self, make_task):
        task = make_task()
        assert record_silence_action(task, SilenceAction.NONE) is task
