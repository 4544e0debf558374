"""LogBuffer -- 内存日志环形缓冲

作为 structlog processor 挂在处理链上，保留最近 N 条日志供 GET /api/logs 查询。
category 为 logger 名（模块路径），message 为事件名。
"""

import itertools
from collections import Counter, deque
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel

LOG_LEVELS = ("debug", "info", "warning", "error", "critical")

# 事件字典中不进入 data 的字段
_RESERVED_KEYS = {"event", "level", "logger", "timestamp"}


class LogEntry(BaseModel):
    id: str
    timestamp: datetime
    level: str
    category: str
    message: str
    data: dict[str, Any] = {}


def _jsonable(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return str(value)


class LogBuffer:
    """最近日志的环形缓冲"""

    def __init__(self, max_entries: int = 1000) -> None:
        self._entries: deque[LogEntry] = deque(maxlen=max_entries)
        self._counter = itertools.count(1)

    def __call__(self, logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
        """structlog processor：记录一条日志后原样返回 event_dict"""
        level = str(event_dict.get("level", method_name)).lower()
        if level == "warn":
            level = "warning"
        self._entries.append(
            LogEntry(
                id=f"log-{next(self._counter)}",
                timestamp=datetime.now(UTC),
                level=level,
                category=str(event_dict.get("logger") or getattr(logger, "name", "") or "root"),
                message=str(event_dict.get("event", "")),
                data={
                    key: _jsonable(value)
                    for key, value in event_dict.items()
                    if key not in _RESERVED_KEYS
                },
            )
        )
        return event_dict

    def query(
        self,
        level: str | None = None,
        category: str | None = None,
        limit: int | None = None,
        offset: int = 0,
        since: datetime | None = None,
    ) -> list[LogEntry]:
        """按条件查询，最新在前"""
        entries = [
            entry
            for entry in reversed(self._entries)
            if (level is None or entry.level == level.lower())
            and (category is None or entry.category == category)
            and (since is None or entry.timestamp >= since)
        ]
        end = None if limit is None else offset + limit
        return entries[offset:end]

    def stats(self) -> dict[str, Any]:
        by_level = {level: 0 for level in LOG_LEVELS}
        by_level.update(Counter(entry.level for entry in self._entries))
        return {
            "total": len(self._entries),
            "by_level": by_level,
            "by_category": dict(Counter(entry.category for entry in self._entries)),
            "oldest": self._entries[0].timestamp.isoformat() if self._entries else None,
            "newest": self._entries[-1].timestamp.isoformat() if self._entries else None,
        }

    def categories(self) -> list[str]:
        return sorted({entry.category for entry in self._entries})

    def clear(self) -> None:
        self._entries.clear()
        self._counter = itertools.count(1)
