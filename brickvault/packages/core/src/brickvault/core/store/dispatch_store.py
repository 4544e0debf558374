"""DispatchStore SQLite 实现 -- 幂等账本

每个 message id 一条记录。所有状态变更都是带状态条件的 UPDATE（compare-and-set），
并在同一把 asyncio.Lock 下执行读改写，保证单写者语义：
- try_begin 仅在记录不存在或为 FAILED_RETRYABLE 时成功
- complete 对同一 id 至多成功一次
"""

import asyncio
from datetime import UTC, datetime

import aiosqlite

from ..models import (
    IN_FLIGHT_STATES,
    CanonicalEvent,
    DispatchRecord,
    DispatchStatus,
    EventKind,
    LedgerTotals,
    validate_dispatch_transition,
)

_COLUMNS = (
    "message_id, kind, source_chain, property_id, amount, destination_amount, status, "
    "retry_count, last_error, destination_tx_hash, source_block_height, next_attempt_at, "
    "event, created_at, updated_at"
)

_TRANSFER_SIGN = {EventKind.DEPOSIT: 1, EventKind.WITHDRAWAL: -1}


def _sources_of(target: DispatchStatus, *excluded: DispatchStatus) -> str:
    """由 VALID_DISPATCH_TRANSITIONS 推导可流转到 target 的状态，渲染为 SQL IN 列表"""
    sources = [
        status.value
        for status in DispatchStatus
        if status not in excluded and validate_dispatch_transition(status, target)
    ]
    return "(" + ", ".join(f"'{value}'" for value in sources) + ")"


_RESUMABLE = _sources_of(DispatchStatus.PENDING)
_SUBMITTABLE = _sources_of(DispatchStatus.SUBMITTED)
_COMPLETABLE = _sources_of(DispatchStatus.CONFIRMED)
# FAILED_PERMANENT -> FAILED_RETRYABLE 只走人工重置 reset()
_RETRYABLE_FROM = _sources_of(DispatchStatus.FAILED_RETRYABLE, DispatchStatus.FAILED_PERMANENT)
_RESETTABLE = _sources_of(
    DispatchStatus.FAILED_RETRYABLE, DispatchStatus.PENDING, DispatchStatus.SUBMITTED
)
_PERMANENT_FROM = _sources_of(DispatchStatus.FAILED_PERMANENT)


class LedgerConflictError(Exception):
    """非法账本状态流转（如重复 complete）"""

    def __init__(
        self,
        message_id: str,
        current: DispatchStatus | None,
        attempted: DispatchStatus,
    ) -> None:
        super().__init__(
            f"Ledger conflict for {message_id}: {current or 'MISSING'} -> {attempted}"
        )
        self.message_id = message_id
        self.current = current
        self.attempted = attempted


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


class SqliteDispatchStore:
    """幂等账本的 SQLite 实现"""

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn
        self._lock = asyncio.Lock()

    async def _write(self, sql: str, params: tuple) -> int:
        """执行单条写语句并提交，返回影响行数；失败回滚"""
        try:
            cursor = await self._conn.execute(sql, params)
            rowcount = cursor.rowcount
            await self._conn.commit()
        except Exception:
            await self._conn.rollback()
            raise
        return rowcount

    async def try_begin(self, message_id: str, event: CanonicalEvent | None = None) -> bool:
        """尝试开始派发

        记录不存在时插入 PENDING（需提供 event）；记录为 FAILED_RETRYABLE 时
        转回 PENDING 并 retry_count + 1；其他状态返回 False。

        Raises:
            ValueError: 记录不存在且未提供 event
        """
        now = _now_iso()
        async with self._lock:
            resumed = await self._write(
                f"""
                UPDATE dispatch_records
                SET status = 'PENDING', retry_count = retry_count + 1,
                    next_attempt_at = NULL, updated_at = ?
                WHERE message_id = ? AND status IN {_RESUMABLE}
                """,
                (now, message_id),
            )
            if resumed == 1:
                return True

            if event is None:
                if await self._get_status(message_id) is None:
                    raise ValueError(f"event required to begin new message {message_id}")
                return False

            inserted = await self._write(
                f"""
                INSERT OR IGNORE INTO dispatch_records ({_COLUMNS})
                VALUES (?, ?, ?, ?, ?, NULL, 'PENDING', 0, '', NULL, ?, NULL, ?, ?, ?)
                """,
                (
                    message_id,
                    event.kind.value,
                    event.source_chain.value,
                    event.property_id,
                    str(event.amount),
                    event.source_block_height,
                    event.model_dump_json(),
                    now,
                    now,
                ),
            )
            return inserted == 1

    async def mark_submitted(self, message_id: str, destination_tx_hash: str) -> None:
        """PENDING -> SUBMITTED，记录目标链交易哈希"""
        async with self._lock:
            updated = await self._write(
                f"""
                UPDATE dispatch_records
                SET status = 'SUBMITTED', destination_tx_hash = ?, updated_at = ?
                WHERE message_id = ? AND status IN {_SUBMITTABLE}
                """,
                (destination_tx_hash, _now_iso(), message_id),
            )
            if updated != 1:
                await self._raise_conflict(message_id, DispatchStatus.SUBMITTED)

    async def complete(
        self,
        message_id: str,
        destination_tx_hash: str | None,
        destination_amount: int | None = None,
    ) -> None:
        """-> CONFIRMED（只写一次）

        Raises:
            LedgerConflictError: 记录不存在或不处于 PENDING / SUBMITTED
        """
        async with self._lock:
            updated = await self._write(
                f"""
                UPDATE dispatch_records
                SET status = 'CONFIRMED',
                    destination_tx_hash = COALESCE(?, destination_tx_hash),
                    destination_amount = COALESCE(?, destination_amount),
                    last_error = '', next_attempt_at = NULL, updated_at = ?
                WHERE message_id = ? AND status IN {_COMPLETABLE}
                """,
                (
                    destination_tx_hash,
                    str(destination_amount) if destination_amount is not None else None,
                    _now_iso(),
                    message_id,
                ),
            )
            if updated != 1:
                await self._raise_conflict(message_id, DispatchStatus.CONFIRMED)

    async def fail(
        self,
        message_id: str,
        error: str,
        permanent: bool,
        next_attempt_at: datetime | None = None,
    ) -> None:
        """-> FAILED_RETRYABLE / FAILED_PERMANENT

        Args:
            message_id: 消息 ID
            error: 失败原因
            permanent: True 表示不可重试
            next_attempt_at: 可重试时的下次尝试时间
        """
        target = DispatchStatus.FAILED_PERMANENT if permanent else DispatchStatus.FAILED_RETRYABLE
        allowed = _PERMANENT_FROM if permanent else _RETRYABLE_FROM
        async with self._lock:
            updated = await self._write(
                f"""
                UPDATE dispatch_records
                SET status = ?, last_error = ?, next_attempt_at = ?, updated_at = ?
                WHERE message_id = ? AND status IN {allowed}
                """,
                (
                    target.value,
                    error,
                    None if permanent or next_attempt_at is None else next_attempt_at.isoformat(),
                    _now_iso(),
                    message_id,
                ),
            )
            if updated != 1:
                await self._raise_conflict(message_id, target)

    async def reset(self, message_id: str) -> bool:
        """人工重置：FAILED_PERMANENT -> FAILED_RETRYABLE，retry_count 清零并立即到期

        Returns:
            True 如果记录被重置
        """
        now = _now_iso()
        async with self._lock:
            updated = await self._write(
                f"""
                UPDATE dispatch_records
                SET status = 'FAILED_RETRYABLE', retry_count = 0, next_attempt_at = ?,
                    last_error = 'manual reset: ' || last_error, updated_at = ?
                WHERE message_id = ? AND status IN {_RESETTABLE}
                """,
                (now, now, message_id),
            )
        return updated == 1

    async def recover_in_flight(self, reason: str) -> int:
        """将遗留的 PENDING / SUBMITTED 记录转为立即到期的 FAILED_RETRYABLE

        用于启动恢复和停机清理，避免记录无限期停留在 PENDING。

        Returns:
            恢复的记录数
        """
        now = _now_iso()
        async with self._lock:
            return await self._write(
                f"""
                UPDATE dispatch_records
                SET status = 'FAILED_RETRYABLE', last_error = ?, next_attempt_at = ?,
                    updated_at = ?
                WHERE status IN {_RETRYABLE_FROM}
                """,
                (reason, now, now),
            )

    async def get(self, message_id: str) -> DispatchRecord | None:
        """根据 message id 查询记录"""
        cursor = await self._conn.execute(
            f"SELECT {_COLUMNS} FROM dispatch_records WHERE message_id = ?",
            (message_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return self._row_to_record(row)

    async def list_records(
        self, status: DispatchStatus | str | None = None, limit: int = 100
    ) -> list[DispatchRecord]:
        """查询记录列表，支持按状态筛选，按 updated_at 倒序"""
        if status:
            cursor = await self._conn.execute(
                f"SELECT {_COLUMNS} FROM dispatch_records WHERE status = ? "
                "ORDER BY updated_at DESC LIMIT ?",
                (DispatchStatus(status).value, limit),
            )
        else:
            cursor = await self._conn.execute(
                f"SELECT {_COLUMNS} FROM dispatch_records ORDER BY updated_at DESC LIMIT ?",
                (limit,),
            )
        rows = await cursor.fetchall()
        return [self._row_to_record(row) for row in rows]

    async def list_due_retries(self, now: datetime, limit: int = 100) -> list[DispatchRecord]:
        """查询到期的 FAILED_RETRYABLE 记录（按来源区块高度排序）"""
        cursor = await self._conn.execute(
            f"""
            SELECT {_COLUMNS} FROM dispatch_records
            WHERE status = 'FAILED_RETRYABLE'
              AND (next_attempt_at IS NULL OR next_attempt_at <= ?)
            ORDER BY source_block_height, created_at
            LIMIT ?
            """,
            (now.isoformat(), limit),
        )
        rows = await cursor.fetchall()
        return [self._row_to_record(row) for row in rows]

    async def count_by_status(self) -> dict[DispatchStatus, int]:
        """各状态记录数（缺失状态计 0）"""
        counts = {status: 0 for status in DispatchStatus}
        cursor = await self._conn.execute(
            "SELECT status, COUNT(*) FROM dispatch_records GROUP BY status"
        )
        for status, count in await cursor.fetchall():
            counts[DispatchStatus(status)] = count
        return counts

    async def property_ids(self) -> list[int]:
        """有存取记录的资产 ID"""
        cursor = await self._conn.execute(
            "SELECT DISTINCT property_id FROM dispatch_records "
            "WHERE kind IN ('DEPOSIT', 'WITHDRAWAL') ORDER BY property_id"
        )
        return [row[0] for row in await cursor.fetchall()]

    async def ledger_totals(self, property_id: int) -> LedgerTotals:
        """汇总单个资产的存取金额（取出计负）"""
        totals = LedgerTotals(property_id=property_id)
        cursor = await self._conn.execute(
            """
            SELECT kind, status, amount, destination_amount FROM dispatch_records
            WHERE property_id = ? AND kind IN ('DEPOSIT', 'WITHDRAWAL')
            """,
            (property_id,),
        )
        for kind, status, amount, destination_amount in await cursor.fetchall():
            sign = _TRANSFER_SIGN[EventKind(kind)]
            source = sign * int(amount)
            status = DispatchStatus(status)
            totals.observed_source += source
            if status == DispatchStatus.CONFIRMED:
                totals.confirmed_source += source
                totals.confirmed_destination += sign * int(destination_amount or 0)
            elif status in IN_FLIGHT_STATES:
                totals.in_flight_source += source
                if source < 0:
                    totals.in_flight_withdrawal_source += source
            elif status == DispatchStatus.FAILED_PERMANENT:
                totals.stuck_source += source
        return totals

    async def _get_status(self, message_id: str) -> DispatchStatus | None:
        cursor = await self._conn.execute(
            "SELECT status FROM dispatch_records WHERE message_id = ?",
            (message_id,),
        )
        row = await cursor.fetchone()
        return DispatchStatus(row[0]) if row else None

    async def _raise_conflict(self, message_id: str, attempted: DispatchStatus) -> None:
        current = await self._get_status(message_id)
        raise LedgerConflictError(message_id, current, attempted)

    @staticmethod
    def _row_to_record(row: aiosqlite.Row) -> DispatchRecord:
        """将数据库行转换为 DispatchRecord 模型"""
        return DispatchRecord(
            message_id=row[0],
            kind=row[1],
            source_chain=row[2],
            property_id=row[3],
            amount=int(row[4]),
            destination_amount=int(row[5]) if row[5] is not None else None,
            status=row[6],
            retry_count=row[7],
            last_error=row[8],
            destination_tx_hash=row[9],
            source_block_height=row[10],
            next_attempt_at=datetime.fromisoformat(row[11]) if row[11] else None,
            event=CanonicalEvent.model_validate_json(row[12]) if row[12] else None,
            created_at=datetime.fromisoformat(row[13]),
            updated_at=datetime.fromisoformat(row[14]),
        )
