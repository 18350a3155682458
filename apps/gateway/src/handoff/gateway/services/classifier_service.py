"""分类适配器实现

- LLMClassificationAdapter: 通过 FallbackManager 调用 LiteLLM Proxy，要求模型输出 JSON
- HeuristicClassificationAdapter: 本地关键词规则，无需模型（离线/测试环境）

两者都实现 handoff.core.reconciliation.ClassificationAdapter；
调用失败或输出无法解析时抛出 ClassificationFailure，由引擎按“没有新信息”处理。
"""

import json
import re
from datetime import UTC, date, datetime

import structlog
from handoff.core.dates import extract_date
from handoff.core.exceptions import ClassificationFailure
from handoff.core.ledger import make_snippet
from handoff.core.models import (
    ClassificationRequest,
    ClassificationResult,
    ConversationState,
    DerivedSnapshot,
    FieldProvenance,
    IntentClassification,
    MessageIntent,
    Party,
    PendingChange,
    TrackedParameter,
)
from handoff.core.models.task import SNAPSHOT_FIELDS
from handoff.provider import FallbackManager, ProviderError, extract_json_object
from pydantic import ValidationError

log = structlog.get_logger()

SYSTEM_PROMPT = """You track a delegated task discussed over email between a DELEGATOR \
(who assigned the task) and a DELEGATE (who does it).
Read the transcript and reply with a single JSON object with these keys:
- "conversation_state": one of active, update_received, change_requested, \
completion_pending, blocker_reported, awaiting_counterpart, awaiting_confirmation, \
counterpart_proposed, negotiating, resolved, rejected
- "pending_changes": list of {"parameter": "name"|"due_date"|"scope", \
"proposed_value": str, "requested_by": "delegator"|"delegate", "reasoning": str}
- "summary": one sentence describing where the conversation stands
- "requires_action": true if the delegator must act
- "task_snapshot": {"name", "due_date_effective", "due_date_proposed", "scope_summary"}, \
dates as YYYY-MM-DD, null when unknown
- "provenance": per snapshot field {"source_message_id", "source_snippet", "confidence"}
- "intent": {"intent": one of acceptance, confirmation, change_request, rejection, \
scope_question, role_rejection, completion_claim, blocker, progress_update, other, \
"message_id": the given latest_message_id, "parameter", "proposed_value", \
"confidence": 0-1, "reasoning"}
The intent describes only the message with id latest_message_id, even when \
the transcript holds later messages. Never treat a proposal as agreed \
until the other party explicitly confirms it."""


def build_messages(request: ClassificationRequest) -> list[dict[str, str]]:
    """组装 chat messages"""
    context = {
        "status": request.status.value,
        "conversation_state": request.conversation_state.value,
        "effective_parameters": request.effective_parameters,
        "proposed_parameters": request.proposed_parameters,
        "pending_decision": (
            request.pending_decision.model_dump(mode="json")
            if request.pending_decision
            else None
        ),
        "pending_changes": [c.model_dump(mode="json") for c in request.pending_changes],
        "latest_message_id": request.latest_message_id,
    }
    user = (
        "Current task state:\n"
        f"{json.dumps(context, ensure_ascii=False, indent=2)}\n\n"
        f"Transcript:\n{request.transcript}"
    )
    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": user},
    ]


def _as_bool(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "yes", "1")
    return bool(value)


def _as_text(value) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _parse_changes(raw, request: ClassificationRequest) -> list[PendingChange]:
    changes: list[PendingChange] = []
    if not isinstance(raw, list):
        return changes
    for item in raw:
        if not isinstance(item, dict):
            continue
        data = dict(item)
        data.pop("id", None)
        if not data.get("requested_by") and request.latest_sender is not None:
            data["requested_by"] = request.latest_sender.value
        if data.get("requested_by") and not data.get("awaiting_from"):
            try:
                data["awaiting_from"] = Party(data["requested_by"]).counterpart.value
            except ValueError:
                pass
        try:
            change = PendingChange.model_validate(data)
        except ValidationError as e:
            log.debug("pending_change_skipped", task_id=request.task_id, error=str(e))
            continue
        if change.current_value is None:
            change = change.model_copy(
                update={"current_value": request.effective_parameters.get(change.parameter.value)}
            )
        changes.append(change)
    return changes


def _parse_provenance(raw, task_id: str, now: datetime) -> dict[str, FieldProvenance]:
    provenance: dict[str, FieldProvenance] = {}
    if not isinstance(raw, dict):
        return provenance
    for name, item in raw.items():
        if name not in SNAPSHOT_FIELDS or not isinstance(item, dict):
            continue
        try:
            source = FieldProvenance.model_validate(item)
        except ValidationError as e:
            log.debug("provenance_skipped", task_id=task_id, field=name, error=str(e))
            continue
        if source.extracted_at is None:
            source = source.model_copy(update={"extracted_at": now})
        provenance[name] = source
    return provenance


def _parse_intent(raw, request: ClassificationRequest) -> IntentClassification | None:
    if not isinstance(raw, dict):
        return None
    data = dict(raw)
    data.setdefault("message_id", request.latest_message_id)
    try:
        return IntentClassification.model_validate(data)
    except ValidationError as e:
        log.debug("intent_skipped", task_id=request.task_id, error=str(e))
        return None


def parse_classification(data: dict, request: ClassificationRequest) -> ClassificationResult:
    """宽松解析模型输出

    单个条目不合法时跳过该条目；顶层结构不合法时抛出 ClassificationFailure。
    """
    now = datetime.now(UTC)
    snapshot_raw = data.get("task_snapshot")
    snapshot_raw = snapshot_raw if isinstance(snapshot_raw, dict) else {}
    try:
        return ClassificationResult(
            conversation_state=str(data.get("conversation_state") or ""),
            pending_changes=_parse_changes(data.get("pending_changes"), request),
            summary=str(data.get("summary") or ""),
            requires_action=_as_bool(data.get("requires_action", False)),
            task_snapshot=DerivedSnapshot(
                **{name: _as_text(snapshot_raw.get(name)) for name in SNAPSHOT_FIELDS}
            ),
            provenance=_parse_provenance(data.get("provenance"), request.task_id, now),
            intent=_parse_intent(data.get("intent"), request),
        )
    except ValidationError as e:
        raise ClassificationFailure(
            f"分类结果结构不合法: {e}",
            task_id=request.task_id,
            message_id=request.latest_message_id,
        ) from e


class LLMClassificationAdapter:
    """基于 LiteLLM Proxy 的分类适配器"""

    def __init__(
        self,
        fallback_manager: FallbackManager,
        model_alias: str = "main",
        max_tokens: int | None = 1024,
    ) -> None:
        self._fallback_manager = fallback_manager
        self._model_alias = model_alias
        self._max_tokens = max_tokens

    async def classify(self, request: ClassificationRequest) -> ClassificationResult:
        try:
            result = await self._fallback_manager.call_with_fallback(
                build_messages(request),
                model_alias=self._model_alias,
                max_tokens=self._max_tokens,
                response_format={"type": "json_object"},
            )
        except ProviderError as e:
            raise ClassificationFailure(
                f"分类调用失败: {e}",
                task_id=request.task_id,
                message_id=request.latest_message_id,
            ) from e

        try:
            data = extract_json_object(result.content)
        except ProviderError as e:
            raise ClassificationFailure(
                f"分类输出无法解析: {e}",
                task_id=request.task_id,
                message_id=request.latest_message_id,
            ) from e

        log.debug(
            "classification_received",
            task_id=request.task_id,
            message_id=request.latest_message_id,
            model_name=result.model_name,
            is_fallback=result.is_fallback,
        )
        return parse_classification(data, request)


# ============================================================
# 关键词规则
# ============================================================

_RULES: list[tuple[MessageIntent, re.Pattern[str], float]] = [
    (
        MessageIntent.ROLE_REJECTION,
        re.compile(
            r"\b(not my (job|task|responsibility)|wrong person|not the right person"
            r"|can'?t take (this|it) on|cannot take (this|it) on)\b",
            re.IGNORECASE,
        ),
        0.8,
    ),
    (
        MessageIntent.COMPLETION_CLAIM,
        re.compile(
            r"(^\s*(done|finished|completed)\b"
            r"|\b(it'?s|is|are|i'?ve|i have|has been|have been|all)\s+"
            r"(now\s+)?(done|finished|completed|delivered|shipped)\b)",
            re.IGNORECASE,
        ),
        0.8,
    ),
    (
        MessageIntent.BLOCKER,
        re.compile(
            r"\b(blocked|stuck|blocker|waiting on|can'?t proceed|cannot proceed)\b",
            re.IGNORECASE,
        ),
        0.8,
    ),
    (
        MessageIntent.REJECTION,
        re.compile(
            r"(\b(reject(ed)?|declined?|not approved|can'?t approve|cannot approve"
            r"|not acceptable|doesn'?t work|won'?t work)\b|^\s*no\b)",
            re.IGNORECASE,
        ),
        0.75,
    ),
    (
        MessageIntent.CONFIRMATION,
        re.compile(r"\b(confirm(ed|ing)?)\b", re.IGNORECASE),
        0.85,
    ),
    (
        MessageIntent.ACCEPTANCE,
        re.compile(
            r"\b(approved?|accept(ed)?|agreed?|sounds good|works for me|that works"
            r"|\w+ works|ok(ay)?|yes|sure|will do|on it|got it)\b",
            re.IGNORECASE,
        ),
        0.75,
    ),
    (
        MessageIntent.PROGRESS_UPDATE,
        re.compile(
            r"\b(progress|working on|started|halfway|on track|making headway|update)\b",
            re.IGNORECASE,
        ),
        0.7,
    ),
]

_CHANGE_RE = re.compile(
    r"\b(move|push|extend|extension|postpone|delay|change|reschedule|instead|shift"
    r"|how about|what about|more time|need until)\b",
    re.IGNORECASE,
)

_INTENT_STATES = {
    MessageIntent.CHANGE_REQUEST: ConversationState.CHANGE_REQUESTED,
    MessageIntent.COMPLETION_CLAIM: ConversationState.COMPLETION_PENDING,
    MessageIntent.BLOCKER: ConversationState.BLOCKER_REPORTED,
    MessageIntent.PROGRESS_UPDATE: ConversationState.UPDATE_RECEIVED,
    MessageIntent.ROLE_REJECTION: ConversationState.REJECTED,
    MessageIntent.ACCEPTANCE: ConversationState.ACTIVE,
    MessageIntent.CONFIRMATION: ConversationState.ACTIVE,
    MessageIntent.REJECTION: ConversationState.ACTIVE,
    MessageIntent.SCOPE_QUESTION: ConversationState.ACTIVE,
}

# 受托方这些意图需要委托方处理
_DELEGATOR_ACTION_INTENTS = {
    MessageIntent.CHANGE_REQUEST,
    MessageIntent.COMPLETION_CLAIM,
    MessageIntent.BLOCKER,
    MessageIntent.SCOPE_QUESTION,
    MessageIntent.ROLE_REJECTION,
}


class HeuristicClassificationAdapter:
    """关键词规则分类器

    只分类请求指定的那条消息；快照中的有效参数直接取自任务记录。
    """

    def __init__(self, today: date | None = None) -> None:
        self._today = today

    def classify_text(
        self,
        content: str,
    ) -> tuple[MessageIntent, float, str | None]:
        """返回 (intent, confidence, 提议日期 ISO)"""
        found = extract_date(content, self._today)
        if found is not None and _CHANGE_RE.search(content):
            return MessageIntent.CHANGE_REQUEST, 0.8, found.isoformat()
        for intent, pattern, confidence in _RULES:
            if pattern.search(content):
                return intent, confidence, None
        if "?" in content:
            return MessageIntent.SCOPE_QUESTION, 0.6, None
        return MessageIntent.OTHER, 0.3, None

    async def classify(self, request: ClassificationRequest) -> ClassificationResult:
        now = datetime.now(UTC)
        content = request.latest_content
        sender = request.latest_sender
        if sender is None or not content:
            return ClassificationResult(conversation_state=request.conversation_state.value)

        intent, confidence, proposed = self.classify_text(content)
        source = FieldProvenance(
            source_message_id=request.latest_message_id,
            source_snippet=make_snippet(content),
            confidence=confidence,
            extracted_at=now,
        )
        record = FieldProvenance(confidence=1.0, extracted_at=now)

        effective = request.effective_parameters
        snapshot = {
            "name": effective.get(TrackedParameter.NAME.value),
            "due_date_effective": effective.get(TrackedParameter.DUE_DATE.value),
            "scope_summary": effective.get(TrackedParameter.SCOPE.value),
        }
        provenance = {name: record for name, value in snapshot.items() if value}

        changes: list[PendingChange] = []
        if intent is MessageIntent.CHANGE_REQUEST and proposed:
            snapshot["due_date_proposed"] = proposed
            provenance["due_date_proposed"] = source
            changes.append(
                PendingChange(
                    parameter=TrackedParameter.DUE_DATE,
                    current_value=effective.get(TrackedParameter.DUE_DATE.value),
                    proposed_value=proposed,
                    requested_by=sender,
                    awaiting_from=sender.counterpart,
                    reasoning=make_snippet(content),
                )
            )

        state = _INTENT_STATES.get(intent, request.conversation_state)
        return ClassificationResult(
            conversation_state=state.value,
            pending_changes=changes,
            summary=f"Latest from the {sender.value}: {make_snippet(content)}",
            requires_action=(
                sender is Party.DELEGATE and intent in _DELEGATOR_ACTION_INTENTS
            ),
            task_snapshot=DerivedSnapshot(**snapshot),
            provenance=provenance,
            intent=IntentClassification(
                intent=intent,
                message_id=request.latest_message_id,
                parameter=TrackedParameter.DUE_DATE.value if proposed else None,
                proposed_value=proposed,
                confidence=confidence,
                reasoning="keyword rules",
            ),
        )
