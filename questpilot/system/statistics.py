"""
任务统计
完成/失败计数、累计耗时、历史记录; 开启 auto_save 时写入数据库
"""

from datetime import datetime

from ..storage.database import Database
from ..storage.models import QuestRecord

# 内存中保留的历史条数
MAX_HISTORY = 200


class Statistics:
    """任务统计"""

    def __init__(self, db: Database | None = None):
        self.db = db
        self.quests_completed = 0
        self.quests_failed = 0
        self.total_time_spent = 0        # 秒
        self.history: list[QuestRecord] = []
        self.start_time = datetime.now()

    async def load(self) -> None:
        """从数据库恢复统计"""
        if not self.db:
            return
        saved = await self.db.load_statistics()
        if saved:
            self.quests_completed = saved["quests_completed"]
            self.quests_failed = saved["quests_failed"]
            self.total_time_spent = saved["total_time_spent"]
            if saved["start_time"]:
                self.start_time = datetime.fromisoformat(saved["start_time"])
        self.history = await self.db.get_history(MAX_HISTORY)

    async def add_completed(self, quest_name: str, time_spent: int) -> None:
        self.quests_completed += 1
        self.total_time_spent += time_spent
        await self._record(QuestRecord(name=quest_name, status="completed", duration=time_spent))

    async def add_failed(self, quest_name: str, error: str) -> None:
        self.quests_failed += 1
        await self._record(QuestRecord(name=quest_name, status="failed", error=error))

    async def reset(self) -> None:
        self.quests_completed = 0
        self.quests_failed = 0
        self.total_time_spent = 0
        self.history = []
        self.start_time = datetime.now()
        if self.db:
            await self.db.clear_history()
            await self.db.save_statistics(self.to_dict())

    async def _record(self, record: QuestRecord) -> None:
        self.history.append(record)
        if len(self.history) > MAX_HISTORY:
            self.history = self.history[-MAX_HISTORY:]
        if self.db:
            await self.db.add_record(record)
            await self.db.save_statistics(self.to_dict())

    def to_dict(self) -> dict:
        return {
            "quests_completed": self.quests_completed,
            "quests_failed": self.quests_failed,
            "total_time_spent": self.total_time_spent,
            "start_time": self.start_time.isoformat(),
        }

    def get_report(self) -> str:
        """文字统计报告"""
        total_minutes = self.total_time_spent // 60
        avg_time = (
            self.total_time_spent // self.quests_completed // 60
            if self.quests_completed > 0 else 0
        )
        last_quest = self.history[-1].name if self.history else "N/A"

        lines = [
            "📊 任务统计",
            "━━━━━━━━━━━━━━━━━━━━━━",
            f"✅ 已完成: {self.quests_completed}",
            f"❌ 失败: {self.quests_failed}",
            f"⏱️  累计耗时: {total_minutes} 分钟",
            f"📈 平均耗时: {avg_time} 分钟/任务",
            f"📅 最近任务: {last_quest}",
            f"🕐 会话开始: {self.start_time.strftime('%Y-%m-%d %H:%M:%S')}",
        ]
        return "\n".join(lines)
