"""SQLite 数据库初始化

PRAGMA 配置 + tasks 表 DDL + 索引创建。
每个任务是一行扁平记录，嵌套结构以 JSON 文本列存储。
使用 aiosqlite 异步操作。
"""

import aiosqlite

# tasks 表 DDL
_TASKS_DDL = """
CREATE TABLE IF NOT EXISTS tasks (
    task_id                    TEXT PRIMARY KEY,
    created_at                 TEXT NOT NULL,
    updated_at                 TEXT NOT NULL,
    status                     TEXT NOT NULL DEFAULT 'drafted',

    name                       TEXT NOT NULL DEFAULT '',
    due_date                   TEXT,
    scope                      TEXT NOT NULL DEFAULT '',
    proposed_name              TEXT,
    proposed_due_date          TEXT,
    proposed_scope             TEXT,

    delegator_address          TEXT NOT NULL DEFAULT '',
    delegate_address           TEXT,
    thread_id                  TEXT,
    assigned_at                TEXT,

    conversation_state         TEXT NOT NULL DEFAULT 'active',
    awaiting_party             TEXT,
    pending_changes            TEXT NOT NULL DEFAULT '[]',
    pending_decision           TEXT,
    negotiation_history        TEXT NOT NULL DEFAULT '[]',
    last_confirmation_summary  TEXT NOT NULL DEFAULT '',

    conversation_history       TEXT NOT NULL DEFAULT '[]',
    message_count              INTEGER NOT NULL DEFAULT 0,
    last_message_at            TEXT,
    last_message_sender        TEXT NOT NULL DEFAULT '',
    last_message_snippet       TEXT NOT NULL DEFAULT '',
    last_delegator_message_at  TEXT,
    last_delegate_message_at   TEXT,

    summary                    TEXT NOT NULL DEFAULT '',
    requires_action            INTEGER NOT NULL DEFAULT 0,
    derived_snapshot           TEXT NOT NULL DEFAULT '{}',
    derived_provenance         TEXT NOT NULL DEFAULT '{}',
    last_analyzed_at           TEXT,

    processed_message_ids      TEXT NOT NULL DEFAULT '[]',

    follow_up_sent_at          TEXT,
    escalated_at               TEXT
);
"""

_TASKS_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status);",
    "CREATE INDEX IF NOT EXISTS idx_tasks_thread_id ON tasks(thread_id);",
    "CREATE INDEX IF NOT EXISTS idx_tasks_created_at ON tasks(created_at DESC);",
]


async def init_db(conn: aiosqlite.Connection) -> None:
    """初始化数据库：设置 PRAGMA + 创建表 + 创建索引

    Args:
        conn: aiosqlite 数据库连接
    """
    await conn.execute("PRAGMA journal_mode = WAL;")
    await conn.execute("PRAGMA busy_timeout = 5000;")

    await conn.execute(_TASKS_DDL)
    for idx_sql in _TASKS_INDEXES:
        await conn.execute(idx_sql)

    await conn.commit()


async def verify_wal_mode(conn: aiosqlite.Connection) -> bool:
    """验证 WAL 模式是否生效

    Returns:
        True 如果 WAL 模式已启用
    """
    cursor = await conn.execute("PRAGMA journal_mode;")
    row = await cursor.fetchone()
    return row is not None and row[0].lower() == "wal"
