"""
SQLite 数据库管理
异步 SQLite 操作，存储任务统计、历史记录和运行状态快照
"""

import json
import time
import aiosqlite
from pathlib import Path
from datetime import datetime
from typing import Any

from .models import QuestRecord

# 状态快照的有效期 (秒)
STATE_MAX_AGE = 3600


class Database:
    """异步 SQLite 数据库"""

    def __init__(self, db_path: str = "data/questpilot.db"):
        self.db_path = db_path
        self._db: aiosqlite.Connection | None = None

    async def connect(self) -> None:
        """连接数据库并初始化表"""
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row
        await self._init_tables()

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    async def _init_tables(self) -> None:
        """创建数据库表"""
        await self._db.executescript("""
            CREATE TABLE IF NOT EXISTS statistics (
                id INTEGER PRIMARY KEY DEFAULT 1,
                quests_completed INTEGER DEFAULT 0,
                quests_failed INTEGER DEFAULT 0,
                total_time_spent INTEGER DEFAULT 0,
                start_time TEXT
            );

            CREATE TABLE IF NOT EXISTS quest_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                status TEXT NOT NULL,
                time TEXT NOT NULL,
                duration INTEGER DEFAULT 0,
                error TEXT DEFAULT ''
            );

            CREATE TABLE IF NOT EXISTS state (
                key TEXT PRIMARY KEY,
                data_json TEXT DEFAULT '{}',
                saved_at REAL NOT NULL
            );
        """)
        await self._db.commit()

    # ── Statistics ────────────────────────────────────

    async def save_statistics(self, data: dict[str, Any]) -> None:
        """保存统计计数"""
        await self._db.execute("""
            INSERT OR REPLACE INTO statistics
            (id, quests_completed, quests_failed, total_time_spent, start_time)
            VALUES (1, ?, ?, ?, ?)
        """, (
            data["quests_completed"],
            data["quests_failed"],
            data["total_time_spent"],
            data["start_time"],
        ))
        await self._db.commit()

    async def load_statistics(self) -> dict[str, Any] | None:
        """加载统计计数"""
        async with self._db.execute("SELECT * FROM statistics WHERE id=1") as cursor:
            row = await cursor.fetchone()
            if not row:
                return None
            return {
                "quests_completed": row["quests_completed"],
                "quests_failed": row["quests_failed"],
                "total_time_spent": row["total_time_spent"],
                "start_time": row["start_time"],
            }

    # ── History ───────────────────────────────────────

    async def add_record(self, record: QuestRecord) -> None:
        await self._db.execute(
            "INSERT INTO quest_history (name, status, time, duration, error) VALUES (?, ?, ?, ?, ?)",
            (record.name, record.status, record.time.isoformat(), record.duration, record.error),
        )
        await self._db.commit()

    async def get_history(self, limit: int = 100) -> list[QuestRecord]:
        """按时间顺序返回最近的记录"""
        async with self._db.execute(
            "SELECT * FROM quest_history ORDER BY id DESC LIMIT ?", (limit,)
        ) as cursor:
            rows = await cursor.fetchall()
            return [
                QuestRecord(
                    name=row["name"],
                    status=row["status"],
                    time=datetime.fromisoformat(row["time"]),
                    duration=row["duration"] or 0,
                    error=row["error"] or "",
                )
                for row in reversed(rows)
            ]

    async def clear_history(self) -> None:
        await self._db.execute("DELETE FROM quest_history")
        await self._db.commit()

    # ── State ─────────────────────────────────────────

    async def save_state(self, key: str, data: dict[str, Any]) -> None:
        """保存运行状态快照"""
        await self._db.execute(
            "INSERT OR REPLACE INTO state (key, data_json, saved_at) VALUES (?, ?, ?)",
            (key, json.dumps(data, default=str), time.time()),
        )
        await self._db.commit()

    async def load_state(self, key: str, max_age: float = STATE_MAX_AGE) -> dict[str, Any] | None:
        """加载状态快照，超过有效期的快照会被删除"""
        async with self._db.execute(
            "SELECT data_json, saved_at FROM state WHERE key=?", (key,)
        ) as cursor:
            row = await cursor.fetchone()
        if not row:
            return None
        if time.time() - row["saved_at"] > max_age:
            await self._db.execute("DELETE FROM state WHERE key=?", (key,))
            await self._db.commit()
            return None
        return json.loads(row["data_json"])
