"""StageStore SQLite 实现 -- 资产阶段同步状态

未出现过的资产视为 Settled(OPEN_TO_FUND)。
"""

from datetime import UTC, datetime

import aiosqlite

from ..models import PropertyStage, PropertyStageState, StageSyncState

_COLUMNS = (
    "property_id, state, settled_stage, pending_target, pending_message_id, "
    "pending_since, resubmit_count, updated_at"
)


class SqliteStageStore:
    """StageStore 的 SQLite 实现"""

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    async def get_state(self, property_id: int) -> PropertyStageState:
        """查询资产阶段状态，不存在时返回默认 Settled(OPEN_TO_FUND)"""
        cursor = await self._conn.execute(
            f"SELECT {_COLUMNS} FROM property_stages WHERE property_id = ?",
            (property_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return PropertyStageState(property_id=property_id)
        return self._row_to_state(row)

    async def save_state(self, state: PropertyStageState) -> None:
        """保存阶段状态（upsert）"""
        try:
            await self._conn.execute(
                f"""
                INSERT INTO property_stages ({_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(property_id) DO UPDATE SET
                    state = excluded.state,
                    settled_stage = excluded.settled_stage,
                    pending_target = excluded.pending_target,
                    pending_message_id = excluded.pending_message_id,
                    pending_since = excluded.pending_since,
                    resubmit_count = excluded.resubmit_count,
                    updated_at = excluded.updated_at
                """,
                (
                    state.property_id,
                    state.state.value,
                    int(state.settled_stage),
                    int(state.pending_target) if state.pending_target is not None else None,
                    state.pending_message_id,
                    state.pending_since.isoformat() if state.pending_since else None,
                    state.resubmit_count,
                    datetime.now(UTC).isoformat(),
                ),
            )
            await self._conn.commit()
        except Exception:
            await self._conn.rollback()
            raise

    async def list_awaiting(self) -> list[PropertyStageState]:
        """查询所有等待对侧确认的资产"""
        cursor = await self._conn.execute(
            f"SELECT {_COLUMNS} FROM property_stages WHERE state = ? ORDER BY property_id",
            (StageSyncState.AWAITING_DESTINATION_ACK.value,),
        )
        rows = await cursor.fetchall()
        return [self._row_to_state(row) for row in rows]

    @staticmethod
    def _row_to_state(row: aiosqlite.Row) -> PropertyStageState:
        return PropertyStageState(
            property_id=row[0],
            state=row[1],
            settled_stage=PropertyStage(row[2]),
            pending_target=PropertyStage(row[3]) if row[3] is not None else None,
            pending_message_id=row[4],
            pending_since=datetime.fromisoformat(row[5]) if row[5] else None,
            resubmit_count=row[6],
            updated_at=datetime.fromisoformat(row[7]),
        )
