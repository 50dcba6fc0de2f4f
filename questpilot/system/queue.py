"""
任务队列
按 id 去重 (终身)，优先应用排在弹出端，同优先级后入先出

所有修改都是同步的 (内部没有 await)，
因此后台轮询的入队不会与调度器的出队在事件循环上交错。
"""

import asyncio
from typing import Iterable

from ..storage.models import Quest, TimeEstimate


class QuestQueue:
    """待处理任务队列"""

    def __init__(self, priority_apps: Iterable[str] = ()):
        self.priority_apps = set(priority_apps)
        self._items: list[Quest] = []      # 队尾为下一个弹出
        self._seen: set[str] = set()
        self._available = asyncio.Event()

    def __len__(self) -> int:
        return len(self._items)

    def is_priority(self, quest: Quest) -> bool:
        return bool(self.priority_apps) and quest.matches_app(self.priority_apps)

    def seen(self, quest_id: str) -> bool:
        return quest_id in self._seen

    def enqueue_many(self, quests: Iterable[Quest]) -> list[Quest]:
        """入队，已见过的 id 直接跳过，返回真正新增的任务"""
        added: list[Quest] = []
        for quest in quests:
            if quest.id in self._seen:
                continue
            self._seen.add(quest.id)
            self._items.append(quest)
            added.append(quest)

        if added:
            # 稳定排序: 优先应用移到弹出端，其余保持入队顺序
            self._items.sort(key=self.is_priority)
            self._available.set()
        return added

    def pop_next(self) -> Quest | None:
        """弹出下一个任务，队列为空时返回 None"""
        if not self._items:
            self._available.clear()
            return None
        quest = self._items.pop()
        if not self._items:
            self._available.clear()
        return quest

    def snapshot(self) -> list[Quest]:
        """按弹出顺序返回当前队列"""
        return list(reversed(self._items))

    async def wait_for_items(self) -> None:
        """阻塞直到队列非空"""
        while not self._items:
            self._available.clear()
            await self._available.wait()


def estimate_time_remaining(quests: Iterable[Quest]) -> TimeEstimate:
    """估算全部任务的剩余时间"""
    total_seconds = sum(q.remaining for q in quests)
    return TimeEstimate(
        total_seconds=total_seconds,
        hours=total_seconds // 3600,
        minutes=(total_seconds % 3600) // 60,
    )
