"""Reconciliation Engine 测试

测试内容：
1. transcript 构建与分类请求（可指定要分类的消息）
2. 置信度门控的快照合并（低置信度不覆盖原值和来源）
3. 未决变更合并：保留未提及的旧条目，丢弃已结束协商
4. 等待确认覆盖：存在未决协商时分类器的 resolved/active 被改写
5. 适配器失败/异常时不写入
6. 意图门控与正则日期补齐
"""

from datetime import UTC, date, datetime, timedelta
from unittest.mock import AsyncMock

import pytest
from handoff.core.exceptions import ClassificationFailure, TaskNotFoundError
from handoff.core.models import (
    ClassificationRequest,
    ClassificationResult,
    ConversationEvent,
    ConversationState,
    DecisionOutcome,
    DecisionStage,
    DerivedSnapshot,
    FieldProvenance,
    IntentClassification,
    MessageIntent,
    Party,
    PendingChange,
    PendingDecision,
    ResolvedDecision,
    SenderRole,
    TaskStatus,
    TrackedParameter,
)
from handoff.core.reconciliation import (
    ReconciliationEngine,
    apply_awaiting_override,
    build_request,
    build_transcript,
    coerce_state,
    gate_intent,
    merge_pending_changes,
    merge_snapshot,
)

TODAY = date(2026, 1, 1)
T0 = datetime(2026, 1, 3, 10, 0, tzinfo=UTC)


def _event(event_id, content, role=SenderRole.DELEGATE, minutes=0):
    identity = {
        SenderRole.DELEGATE: "dev@example.com",
        SenderRole.DELEGATOR: "boss@example.com",
        SenderRole.SYSTEM: "",
    }[role]
    return ConversationEvent(
        id=event_id,
        timestamp=T0 + timedelta(minutes=minutes),
        sender_role=role,
        sender_identity=identity,
        type="reply",
        content=content,
    )


def _source(message_id="m1", confidence=0.9):
    return FieldProvenance(
        source_message_id=message_id,
        source_snippet="...",
        confidence=confidence,
        extracted_at=T0,
    )


def _decision(**overrides):
    data = {
        "type": "due_date_change",
        "parameter": TrackedParameter.DUE_DATE,
        "current_value": "2026-01-10",
        "proposed_value": "2026-01-15",
        "requested_by": Party.DELEGATE,
        "awaiting_from": Party.DELEGATOR,
        "message_id": "m1",
        "created_at": T0,
    }
    data.update(overrides)
    return PendingDecision(**data)


class StaticAdapter:
    """总是返回同一结果的分类适配器"""

    def __init__(self, result: ClassificationResult) -> None:
        self.result = result
        self.requests: list[ClassificationRequest] = []

    async def classify(self, request: ClassificationRequest) -> ClassificationResult:
        self.requests.append(request)
        return self.result


async def _store_with_history(task_store, make_task, *events, **overrides):
    task = make_task(status=TaskStatus.ACTIVE, conversation_history=list(events), **overrides)
    await task_store.create_task(task)
    return task


class TestTranscript:
    """transcript 与请求"""

    def test_transcript_sorted_and_labelled(self):
        history = [
            _event("m2", "Jan 15?", minutes=5),
            _event("b1", "Please start", role=SenderRole.DELEGATOR),
        ]
        lines = build_transcript(history).splitlines()
        assert lines[0].startswith("[b1] 2026-01-03T10:00:00+00:00 DELEGATOR (boss@example.com):")
        assert lines[1].endswith("DELEGATE (dev@example.com): Jan 15?")

    def test_request_uses_latest_party_message(self, make_task):
        task = make_task(
            conversation_history=[
                _event("m1", "Working on it"),
                _event("s1", "note", role=SenderRole.SYSTEM, minutes=10),
            ],
            proposed_due_date=date(2026, 1, 15),
        )
        request = build_request(task)
        assert request.latest_message_id == "m1"
        assert request.latest_sender is Party.DELEGATE
        assert request.latest_content == "Working on it"
        assert request.effective_parameters["due_date"] == "2026-01-10"
        assert request.proposed_parameters["due_date"] == "2026-01-15"
        assert request.status is TaskStatus.AWAITING_FIRST_RESPONSE

    def test_request_targets_given_message(self, make_task):
        task = make_task(
            conversation_history=[
                _event("m1", "Can we move it to Jan 15?"),
                _event("m3", "Confirmed", minutes=20),
                _event("m2", "Let me look at the budget first", SenderRole.DELEGATOR, 10),
            ]
        )
        request = build_request(task, "m2")
        assert request.latest_message_id == "m2"
        assert request.latest_sender is Party.DELEGATOR
        assert request.latest_content == "Let me look at the budget first"

    def test_request_unknown_message_falls_back_to_latest(self, make_task):
        task = make_task(
            conversation_history=[
                _event("m1", "Working on it"),
                _event("s1", "note", role=SenderRole.SYSTEM, minutes=10),
            ]
        )
        assert build_request(task, "missing").latest_message_id == "m1"
        assert build_request(task, "s1").latest_message_id == "m1"

    def test_request_without_messages(self, make_task):
        request = build_request(make_task())
        assert request.latest_message_id == ""
        assert request.latest_sender is None
        assert request.transcript == ""


class TestMergeSnapshot:
    """置信度门控"""

    def test_high_confidence_replaces(self):
        current = DerivedSnapshot(scope_summary="old")
        snapshot, provenance = merge_snapshot(
            current,
            {"scope_summary": _source("m0")},
            DerivedSnapshot(scope_summary="new"),
            {"scope_summary": _source("m1", 0.9)},
            0.6,
        )
        assert snapshot.scope_summary == "new"
        assert provenance["scope_summary"].source_message_id == "m1"

    def test_low_confidence_keeps_value_and_source(self):
        current = DerivedSnapshot(scope_summary="old")
        snapshot, provenance = merge_snapshot(
            current,
            {"scope_summary": _source("m0")},
            DerivedSnapshot(scope_summary="new"),
            {"scope_summary": _source("m1", 0.3)},
            0.6,
        )
        assert snapshot.scope_summary == "old"
        assert provenance["scope_summary"].source_message_id == "m0"

    def test_empty_value_never_replaces(self):
        current = DerivedSnapshot(name="Quarterly report")
        snapshot, _ = merge_snapshot(
            current, {}, DerivedSnapshot(name="  "), {"name": _source()}, 0.6
        )
        assert snapshot.name == "Quarterly report"

    def test_missing_provenance_is_not_trusted(self):
        snapshot, _ = merge_snapshot(
            DerivedSnapshot(), {}, DerivedSnapshot(name="New name"), {}, 0.6
        )
        assert snapshot.name is None

    def test_dates_normalized(self):
        snapshot, _ = merge_snapshot(
            DerivedSnapshot(),
            {},
            DerivedSnapshot(due_date_proposed="January 15"),
            {"due_date_proposed": _source()},
            0.6,
            TODAY,
        )
        assert snapshot.due_date_proposed == "2026-01-15"


class TestPendingChanges:
    """未决变更合并"""

    def _change(self, parameter=TrackedParameter.DUE_DATE, value="2026-01-15"):
        return PendingChange(
            parameter=parameter,
            proposed_value=value,
            requested_by=Party.DELEGATE,
            awaiting_from=Party.DELEGATOR,
        )

    def test_unmentioned_changes_kept(self, make_task):
        existing = self._change(TrackedParameter.SCOPE, "Summary only")
        task = make_task(pending_changes=[existing])
        merged = merge_pending_changes(task, [self._change()])
        assert [c.parameter for c in merged] == [TrackedParameter.SCOPE, TrackedParameter.DUE_DATE]

    def test_same_parameter_replaced_keeps_id(self, make_task):
        existing = self._change(value="2026-01-14")
        task = make_task(pending_changes=[existing])
        merged = merge_pending_changes(task, [self._change(value="2026-01-15")])
        assert len(merged) == 1
        assert merged[0].id == existing.id
        assert merged[0].proposed_value == "2026-01-15"

    def test_resolved_history_not_revived(self, make_task):
        task = make_task(
            negotiation_history=[
                ResolvedDecision(
                    parameter=TrackedParameter.DUE_DATE,
                    proposed_value="2026-01-15",
                    requested_by=Party.DELEGATE,
                    outcome=DecisionOutcome.APPLIED,
                    resolved_at=T0,
                )
            ]
        )
        assert merge_pending_changes(task, [self._change()]) == []

    def test_live_decision_parameter_skipped(self, make_task):
        existing = self._change()
        task = make_task(pending_decision=_decision(), pending_changes=[existing])
        merged = merge_pending_changes(task, [self._change(value="2026-02-01")])
        assert merged == [existing]


class TestAwaitingOverride:
    """等待确认覆盖"""

    def test_resolved_forced_to_current_decision_state(self, make_task):
        task = make_task(
            pending_decision=_decision(),
            conversation_state=ConversationState.CHANGE_REQUESTED,
        )
        assert (
            apply_awaiting_override(task, ConversationState.RESOLVED)
            is ConversationState.CHANGE_REQUESTED
        )

    def test_approved_stage_forced_to_awaiting_confirmation(self, make_task):
        task = make_task(
            pending_decision=_decision(stage=DecisionStage.APPROVED, awaiting_from=Party.DELEGATE),
            conversation_state=ConversationState.ACTIVE,
        )
        assert (
            apply_awaiting_override(task, ConversationState.ACTIVE)
            is ConversationState.AWAITING_CONFIRMATION
        )

    def test_proposed_stage_forced_to_awaiting_counterpart(self, make_task):
        task = make_task(pending_decision=_decision(), conversation_state=ConversationState.ACTIVE)
        assert (
            apply_awaiting_override(task, ConversationState.RESOLVED)
            is ConversationState.AWAITING_COUNTERPART
        )

    def test_other_states_pass_through(self, make_task):
        task = make_task(pending_decision=_decision())
        assert (
            apply_awaiting_override(task, ConversationState.NEGOTIATING)
            is ConversationState.NEGOTIATING
        )

    def test_awaiting_party_blocks_resolved(self, make_task):
        task = make_task(awaiting_party=Party.DELEGATE)
        assert (
            apply_awaiting_override(task, ConversationState.RESOLVED)
            is ConversationState.AWAITING_COUNTERPART
        )

    def test_no_decision_passes_through(self, make_task):
        task = make_task()
        assert apply_awaiting_override(task, ConversationState.RESOLVED) is ConversationState.RESOLVED

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("negotiating", ConversationState.NEGOTIATING),
            (" Resolved ", ConversationState.RESOLVED),
            ("on_fire", ConversationState.ACTIVE),
            ("", ConversationState.ACTIVE),
            (None, ConversationState.ACTIVE),
        ],
    )
    def test_coerce_state(self, raw, expected):
        assert coerce_state(raw) is expected


class TestGateIntent:
    """意图门控"""

    def _request(self, make_task, content="Can we move it to Jan 15?"):
        task = make_task(conversation_history=[_event("m1", content)])
        return build_request(task)

    def test_below_threshold_dropped(self, make_task):
        intent = IntentClassification(intent=MessageIntent.ACCEPTANCE, confidence=0.4)
        assert gate_intent(intent, self._request(make_task), 0.6) is None

    def test_stale_message_dropped(self, make_task):
        intent = IntentClassification(
            intent=MessageIntent.ACCEPTANCE, confidence=0.9, message_id="m0"
        )
        assert gate_intent(intent, self._request(make_task), 0.6) is None

    def test_message_id_filled(self, make_task):
        intent = IntentClassification(intent=MessageIntent.ACCEPTANCE, confidence=0.9)
        gated = gate_intent(intent, self._request(make_task), 0.6)
        assert gated.message_id == "m1"

    def test_change_request_value_extracted(self, make_task):
        intent = IntentClassification(intent=MessageIntent.CHANGE_REQUEST, confidence=0.9)
        gated = gate_intent(intent, self._request(make_task), 0.6, TODAY)
        assert gated.parameter == "due_date"
        assert gated.proposed_value == "2026-01-15"

    def test_change_request_for_scope_kept(self, make_task):
        intent = IntentClassification(
            intent=MessageIntent.CHANGE_REQUEST,
            confidence=0.9,
            parameter="scope",
            proposed_value="Summary only",
        )
        gated = gate_intent(intent, self._request(make_task), 0.6, TODAY)
        assert gated.parameter == "scope"
        assert gated.proposed_value == "Summary only"


class TestReconciliationEngine:
    """reconcile 端到端"""

    async def test_reconcile_persists_derived_state(self, task_store, make_task):
        task = await _store_with_history(
            task_store, make_task, _event("m1", "Scope is just the summary deck")
        )
        result = ClassificationResult(
            conversation_state="update_received",
            summary="Delegate narrowed the scope.",
            requires_action=True,
            task_snapshot=DerivedSnapshot(scope_summary="Summary deck"),
            provenance={"scope_summary": _source("m1", 0.8)},
            intent=IntentClassification(intent=MessageIntent.PROGRESS_UPDATE, confidence=0.8),
        )
        adapter = StaticAdapter(result)
        engine = ReconciliationEngine(task_store, adapter, confidence_threshold=0.6, today=TODAY)

        outcome = await engine.reconcile(task.task_id)

        assert outcome.classified is True
        assert outcome.conversation_state is ConversationState.UPDATE_RECEIVED
        assert outcome.intent.intent is MessageIntent.PROGRESS_UPDATE
        assert outcome.intent.message_id == "m1"
        stored = await task_store.get_task(task.task_id)
        assert stored.summary == "Delegate narrowed the scope."
        assert stored.requires_action is True
        assert stored.derived_snapshot.scope_summary == "Summary deck"
        assert stored.last_analyzed_at is not None
        assert adapter.requests[0].latest_message_id == "m1"

    async def test_reconcile_classifies_given_message(self, task_store, make_task):
        task = await _store_with_history(
            task_store,
            make_task,
            _event("m1", "Can we move it to Jan 15?"),
            _event("m3", "Confirmed", minutes=20),
            _event("m2", "Let me look at the budget first", SenderRole.DELEGATOR, 10),
        )
        result = ClassificationResult(
            intent=IntentClassification(intent=MessageIntent.OTHER, confidence=0.9),
        )
        adapter = StaticAdapter(result)
        engine = ReconciliationEngine(task_store, adapter, confidence_threshold=0.6, today=TODAY)

        outcome = await engine.reconcile(task.task_id, message_id="m2")

        assert adapter.requests[0].latest_message_id == "m2"
        assert adapter.requests[0].latest_sender is Party.DELEGATOR
        assert outcome.intent.message_id == "m2"

    async def test_intent_for_other_message_dropped(self, task_store, make_task):
        task = await _store_with_history(
            task_store,
            make_task,
            _event("m1", "Can we move it to Jan 15?"),
            _event("m3", "Confirmed", minutes=20),
            _event("m2", "Let me look at the budget first", SenderRole.DELEGATOR, 10),
        )
        result = ClassificationResult(
            intent=IntentClassification(
                intent=MessageIntent.CONFIRMATION, message_id="m3", confidence=0.9
            ),
        )
        engine = ReconciliationEngine(task_store, StaticAdapter(result), today=TODAY)

        outcome = await engine.reconcile(task.task_id, message_id="m2")

        assert outcome.intent is None

    async def test_reconcile_is_idempotent(self, task_store, make_task):
        task = await _store_with_history(task_store, make_task, _event("m1", "All good"))
        result = ClassificationResult(
            conversation_state="active",
            summary="Nothing new.",
            task_snapshot=DerivedSnapshot(name="Quarterly report"),
            provenance={"name": _source("m1", 0.9)},
        )
        engine = ReconciliationEngine(task_store, StaticAdapter(result), confidence_threshold=0.6)
        first = await engine.reconcile(task.task_id)
        second = await engine.reconcile(task.task_id)
        assert first.snapshot == second.snapshot
        assert first.conversation_state is second.conversation_state

    async def test_secondary_extractor_fills_proposed_date(self, task_store, make_task):
        task = await _store_with_history(
            task_store, make_task, _event("m1", "Could we do Jan 20 instead?")
        )
        engine = ReconciliationEngine(
            task_store,
            StaticAdapter(ClassificationResult(conversation_state="change_requested")),
            confidence_threshold=0.6,
            today=TODAY,
        )
        outcome = await engine.reconcile(task.task_id)
        assert outcome.snapshot.due_date_proposed == "2026-01-20"
        stored = await task_store.get_task(task.task_id)
        assert stored.derived_provenance["due_date_proposed"].confidence == pytest.approx(0.65)

    async def test_secondary_extractor_ignores_current_due_date(self, task_store, make_task):
        task = await _store_with_history(
            task_store, make_task, _event("m1", "Still on track for Jan 10")
        )
        engine = ReconciliationEngine(
            task_store, StaticAdapter(ClassificationResult()), today=TODAY
        )
        outcome = await engine.reconcile(task.task_id)
        assert outcome.snapshot.due_date_proposed is None

    async def test_pending_decision_survives_resolved_classification(self, task_store, make_task):
        task = await _store_with_history(
            task_store,
            make_task,
            _event("m1", "Can we move it to Jan 15?"),
            pending_decision=_decision(),
            conversation_state=ConversationState.CHANGE_REQUESTED,
        )
        engine = ReconciliationEngine(
            task_store, StaticAdapter(ClassificationResult(conversation_state="resolved"))
        )
        outcome = await engine.reconcile(task.task_id)
        assert outcome.conversation_state is ConversationState.CHANGE_REQUESTED
        stored = await task_store.get_task(task.task_id)
        assert stored.pending_decision == task.pending_decision

    @pytest.mark.parametrize(
        "error",
        [ClassificationFailure("bad json"), RuntimeError("adapter crashed")],
    )
    async def test_adapter_failure_leaves_task_unchanged(self, task_store, make_task, error):
        task = await _store_with_history(
            task_store,
            make_task,
            _event("m1", "hello"),
            summary="previous summary",
        )
        adapter = AsyncMock()
        adapter.classify.side_effect = error
        engine = ReconciliationEngine(task_store, adapter)

        outcome = await engine.reconcile(task.task_id)

        assert outcome.classified is False
        assert outcome.intent is None
        stored = await task_store.get_task(task.task_id)
        assert stored.summary == "previous summary"
        assert stored.last_analyzed_at is None

    async def test_missing_task(self, task_store):
        engine = ReconciliationEngine(task_store, StaticAdapter(ClassificationResult()))
        with pytest.raises(TaskNotFoundError):
            await engine.reconcile("missing")
