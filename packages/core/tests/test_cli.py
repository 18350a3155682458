"""python -m handoff.core 命令行测试"""

import sys
from datetime import UTC, datetime, timedelta

import pytest
from handoff.core import __main__ as cli
from handoff.core.store import create_store_group


class TestSilenceReport:
    """silence-report 命令"""

    async def test_lists_due_tasks(self, tmp_path, monkeypatch, capsys, make_task):
        db_path = str(tmp_path / "cli.db")
        monkeypatch.setenv("HANDOFF_DB_PATH", db_path)

        group = await create_store_group(db_path)
        overdue = make_task(assigned_at=datetime.now(UTC) - timedelta(days=5))
        fresh = make_task(assigned_at=datetime.now(UTC))
        await group.task_store.create_task(overdue)
        await group.task_store.create_task(fresh)
        await group.conn.close()

        await cli.silence_report()

        out = capsys.readouterr().out
        assert overdue.task_id in out
        assert "escalate" in out
        assert fresh.task_id not in out
        assert "共检查 2 个任务，1 个需要处理" in out

    def test_usage_without_command(self, monkeypatch):
        monkeypatch.setattr(sys, "argv", ["handoff.core"])
        with pytest.raises(SystemExit) as exc_info:
            cli.main()
        assert exc_info.value.code == 1

    def test_unknown_command(self, monkeypatch, capsys):
        monkeypatch.setattr(sys, "argv", ["handoff.core", "rebuild"])
        with pytest.raises(SystemExit):
            cli.main()
        assert "未知命令: rebuild" in capsys.readouterr().out
