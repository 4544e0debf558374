"""SQLite 数据库初始化

PRAGMA 配置 + 三张表 DDL + 索引创建。
金额列使用 TEXT 存储（18 位精度金额超出 SQLite INTEGER 范围）。
"""

import aiosqlite

# dispatch_records 表 DDL（幂等账本）
_DISPATCH_DDL = """
CREATE TABLE IF NOT EXISTS dispatch_records (
    message_id           TEXT PRIMARY KEY,
    kind                 TEXT NOT NULL,
    source_chain         TEXT NOT NULL,
    property_id          INTEGER NOT NULL,
    amount               TEXT NOT NULL DEFAULT '0',
    destination_amount   TEXT,
    status               TEXT NOT NULL DEFAULT 'PENDING',
    retry_count          INTEGER NOT NULL DEFAULT 0,
    last_error           TEXT NOT NULL DEFAULT '',
    destination_tx_hash  TEXT,
    source_block_height  INTEGER NOT NULL DEFAULT 0,
    next_attempt_at      TEXT,
    event                TEXT,
    created_at           TEXT NOT NULL,
    updated_at           TEXT NOT NULL
);
"""

_DISPATCH_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_dispatch_status ON dispatch_records(status);",
    # 到期重试扫描
    (
        "CREATE INDEX IF NOT EXISTS idx_dispatch_next_attempt "
        "ON dispatch_records(status, next_attempt_at);"
    ),
    "CREATE INDEX IF NOT EXISTS idx_dispatch_property ON dispatch_records(property_id);",
]

# chain_cursors 表 DDL（每条链一个游标，由对应 observer 独占）
_CURSORS_DDL = """
CREATE TABLE IF NOT EXISTS chain_cursors (
    chain         TEXT PRIMARY KEY,
    block_height  INTEGER NOT NULL,
    updated_at    TEXT NOT NULL
);
"""

# property_stages 表 DDL（阶段同步状态）
_STAGES_DDL = """
CREATE TABLE IF NOT EXISTS property_stages (
    property_id         INTEGER PRIMARY KEY,
    state               TEXT NOT NULL DEFAULT 'SETTLED',
    settled_stage       INTEGER NOT NULL DEFAULT 0,
    pending_target      INTEGER,
    pending_message_id  TEXT,
    pending_since       TEXT,
    resubmit_count      INTEGER NOT NULL DEFAULT 0,
    updated_at          TEXT NOT NULL
);
"""

_STAGES_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_stages_state ON property_stages(state);",
]


async def init_db(conn: aiosqlite.Connection) -> None:
    """初始化数据库：设置 PRAGMA + 创建表 + 创建索引

    Args:
        conn: aiosqlite 数据库连接
    """
    await conn.execute("PRAGMA journal_mode = WAL;")
    await conn.execute("PRAGMA foreign_keys = ON;")
    await conn.execute("PRAGMA busy_timeout = 5000;")

    await conn.execute(_DISPATCH_DDL)
    await conn.execute(_CURSORS_DDL)
    await conn.execute(_STAGES_DDL)

    for idx_sql in _DISPATCH_INDEXES + _STAGES_INDEXES:
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
