"""CursorStore SQLite 实现 -- 每条链的观察游标

游标只在该批事件全部交给账本之后才保存，
崩溃后从旧游标重放是安全的（账本去重）。
"""

from datetime import UTC, datetime

import aiosqlite

from ..models import ChainCursor, ChainId


class SqliteCursorStore:
    """CursorStore 的 SQLite 实现"""

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    async def get_cursor(self, chain: ChainId) -> ChainCursor | None:
        cursor = await self._conn.execute(
            "SELECT chain, block_height FROM chain_cursors WHERE chain = ?",
            (ChainId(chain).value,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return ChainCursor(chain=row[0], block_height=row[1])

    async def save_cursor(self, cursor: ChainCursor) -> None:
        """保存游标（upsert）"""
        try:
            await self._conn.execute(
                """
                INSERT INTO chain_cursors (chain, block_height, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(chain) DO UPDATE
                SET block_height = excluded.block_height, updated_at = excluded.updated_at
                """,
                (cursor.chain.value, cursor.block_height, datetime.now(UTC).isoformat()),
            )
            await self._conn.commit()
        except Exception:
            await self._conn.rollback()
            raise

    async def list_cursors(self) -> list[ChainCursor]:
        cursor = await self._conn.execute(
            "SELECT chain, block_height FROM chain_cursors ORDER BY chain"
        )
        rows = await cursor.fetchall()
        return [ChainCursor(chain=row[0], block_height=row[1]) for row in rows]
