"""进程重启持久性集成测试

重启后任务、ledger 与已处理消息集合完整；
推送路径处理过的消息在重启后再次投递（或被 sweep 重新发现）不会重复处理。
"""

from pathlib import Path

from httpx import ASGITransport, AsyncClient

MESSAGE = {
    "id": "<CAF=reply-1@mail.example>",
    "threadId": "thread-durable",
    "from": "Bob <bob@corp.example>",
    "plainBody": "Can we move it to Jan 15?",
}


class TestRestartDurability:
    """重启后数据完整、幂等仍然成立"""

    async def test_processed_messages_survive_restart(self, tmp_path: Path, app_factory):
        db_path = str(tmp_path / "durable.db")

        # 第一次启动：创建、派发、处理一条消息
        app1, sg1 = await app_factory(db_path)
        async with AsyncClient(transport=ASGITransport(app=app1), base_url="http://test") as c1:
            resp = await c1.post(
                "/api/tasks",
                json={
                    "name": "Durable task",
                    "delegator_address": "alice@corp.example",
                    "due_date": "2026-01-12",
                },
            )
            task_id = resp.json()["task"]["task_id"]
            await c1.post(
                f"/api/tasks/{task_id}/assign",
                json={"delegate_address": "bob@corp.example", "thread_id": "thread-durable"},
            )
            resp = await c1.post("/api/inbound", json=MESSAGE)
            assert resp.json()["skipped"] is False
        await sg1.conn.close()

        # 第二次启动：同一消息再次投递
        app2, sg2 = await app_factory(db_path)
        try:
            async with AsyncClient(
                transport=ASGITransport(app=app2), base_url="http://test"
            ) as c2:
                resp = await c2.post("/api/inbound", json=MESSAGE)
                assert resp.status_code == 200
                assert resp.json()["skipped"] is True

                data = (await c2.get(f"/api/tasks/{task_id}")).json()
                task = data["task"]
                assert task["name"] == "Durable task"
                assert task["pending_decision"]["proposed_value"] == "2026-01-15"
                replies = [e for e in task["conversation_history"] if e["type"] == "reply"]
                assert [e["id"] for e in replies] == [MESSAGE["id"]]

            stored = await sg2.task_store.get_task(task_id)
            assert stored.processed_message_ids == [MESSAGE["id"]]
        finally:
            await sg2.conn.close()
