"""截止日期协商端到端测试

受托方请求改期 -> 委托方批准 -> 受托方确认 -> 生效日期更新，以及乱序到达的消息，
全程通过 /api/inbound 推送消息，通过 /api/tasks 观察状态。
"""

BOB = "Bob <bob@corp.example>"
ALICE = "Alice Manager <alice@corp.example>"


async def _send(client, message_id: str, sender: str, body: str, minutes: int) -> dict:
    resp = await client.post(
        "/api/inbound",
        json={
            "id": message_id,
            "threadId": "thread-e2e",
            "from": sender,
            "plainBody": body,
            "timestamp": f"2026-01-05T09:{minutes:02d}:00Z",
        },
    )
    assert resp.status_code == 200
    return resp.json()


async def _task(client, task_id: str) -> dict:
    resp = await client.get(f"/api/tasks/{task_id}")
    assert resp.status_code == 200
    return resp.json()


class TestDateNegotiation:
    """改期协商：提议、批准、确认"""

    async def test_change_approved_and_confirmed(self, client, delegated_task):
        task_id = delegated_task["task_id"]

        await _send(client, "m1", BOB, "Can we move it to Jan 15?", 0)
        data = await _task(client, task_id)
        task = data["task"]
        assert task["status"] == "active"
        assert task["conversation_state"] == "change_requested"
        assert task["pending_decision"]["proposed_value"] == "2026-01-15"
        assert task["pending_decision"]["awaiting_from"] == "delegator"
        assert task["due_date"] == "2026-01-12"
        assert data["needs_attention"] is True

        await _send(client, "m2", ALICE, "Approved, Jan 15 works", 10)
        task = (await _task(client, task_id))["task"]
        assert task["conversation_state"] == "awaiting_confirmation"
        assert task["pending_decision"]["awaiting_from"] == "delegate"
        assert task["due_date"] == "2026-01-12"

        await _send(client, "m3", BOB, "Confirmed", 20)
        task = (await _task(client, task_id))["task"]
        assert task["due_date"] == "2026-01-15"
        assert task["conversation_state"] == "resolved"
        assert task["pending_decision"] is None
        assert len(task["negotiation_history"]) == 1

        notes = [e["content"] for e in task["conversation_history"] if e["type"] == "system_note"]
        assert any(n.startswith("Due date changed from 2026-01-12 to 2026-01-15") for n in notes)

    async def test_late_delivery_keeps_its_own_intent(self, client, delegated_task):
        task_id = delegated_task["task_id"]

        await _send(client, "m1", BOB, "Can we move it to Jan 15?", 0)
        await _send(client, "m3", BOB, "Confirmed", 20)
        # 委托方 09:10 的消息最后才到达，不能继承 09:20 那条 "Confirmed" 的意图
        await _send(client, "m2", ALICE, "Let me look at the budget first", 10)

        task = (await _task(client, task_id))["task"]
        assert task["conversation_state"] != "awaiting_confirmation"
        assert task["pending_decision"]["stage"] == "proposed"
        assert task["pending_decision"]["awaiting_from"] == "delegator"
        assert task["due_date"] == "2026-01-12"

        await _send(client, "m4", ALICE, "Approved, Jan 15 works", 30)
        task = (await _task(client, task_id))["task"]
        assert task["conversation_state"] == "awaiting_confirmation"

    async def test_change_rejected(self, client, delegated_task):
        task_id = delegated_task["task_id"]

        await _send(client, "m1", BOB, "Can we push to Jan 20?", 0)
        await _send(client, "m2", ALICE, "No, that will not do", 5)

        task = (await _task(client, task_id))["task"]
        assert task["due_date"] == "2026-01-12"
        assert task["pending_decision"] is None
        assert task["negotiation_history"][0]["outcome"] == "rejected"

    async def test_proposer_cannot_accept_own_change(self, client, delegated_task):
        task_id = delegated_task["task_id"]

        await _send(client, "m1", BOB, "Can we move it to Jan 15?", 0)
        await _send(client, "m2", BOB, "Sounds good to me", 5)

        task = (await _task(client, task_id))["task"]
        assert task["due_date"] == "2026-01-12"
        assert task["pending_decision"]["awaiting_from"] == "delegator"
