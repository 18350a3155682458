"""CLI 入口模块 -- python -m handoff.core <command>

支持的命令：
  silence-report  列出需要跟进或升级的任务（只读，不写入标记）
"""

import asyncio
import sys

from .config import get_db_path


def main() -> None:
    """CLI 主入口"""
    if len(sys.argv) < 2:
        print("用法: python -m handoff.core <command>")
        print("命令:")
        print("  silence-report  列出需要跟进或升级的任务")
        sys.exit(1)

    command = sys.argv[1]

    if command == "silence-report":
        asyncio.run(silence_report())
    else:
        print(f"未知命令: {command}")
        print("可用命令: silence-report")
        sys.exit(1)


async def silence_report() -> None:
    """打印静默任务报告"""
    from .escalation import SilenceAction, evaluate_silence
    from .store import create_store_group

    db_path = get_db_path()
    print(f"数据库路径: {db_path}")

    store_group = await create_store_group(db_path)

    try:
        tasks = await store_group.task_store.list_open_threads()
        due = 0
        for task in tasks:
            action = evaluate_silence(task)
            if action is SilenceAction.NONE:
                continue
            due += 1
            print(f"{task.task_id}  {action.value:<10} {task.delegate_address}  {task.name}")
        print(f"共检查 {len(tasks)} 个任务，{due} 个需要处理")
    finally:
        await store_group.conn.close()


if __name__ == "__main__":
    main()
