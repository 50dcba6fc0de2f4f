"""
任务调度器
从队列取任务 → 交给对应执行器 → 记录结果 → 冷却 → 下一个

同一时间只运行一个任务。暂停标志只保存在调度器里，执行器通过 is_paused 读取。
被暂停打断的任务会保留下来，恢复后从最后确认的进度继续。
"""

import asyncio
import random
import time
from enum import Enum
from typing import Any, Awaitable, Callable

from ..core.config import SchedulerConfig
from ..core.events import EventBus, EventType
from ..core.logger import get_logger
from ..storage.models import Quest, TaskType
from .notification import Reporter
from .queue import QuestQueue
from .runners import TaskRunner, select_runner
from .statistics import Statistics

log = get_logger("scheduler")


class SchedulerState(str, Enum):
    IDLE = "idle"
    DISPATCHING = "dispatching"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    COOLDOWN = "cooldown"
    PAUSED = "paused"
    DRAINED = "drained"
    STOPPED = "stopped"


class QuestScheduler:
    """顺序任务调度器"""

    def __init__(
        self,
        queue: QuestQueue,
        runners: dict[TaskType, TaskRunner],
        reporter: Reporter,
        event_bus: EventBus,
        statistics: Statistics | None = None,
        config: SchedulerConfig | None = None,
        keep_alive: bool = False,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
    ):
        self.queue = queue
        self.runners = runners
        self.reporter = reporter
        self.bus = event_bus
        self.stats = statistics or Statistics()
        self.config = config or SchedulerConfig()
        self.keep_alive = keep_alive
        self._clock = clock
        self._sleep = sleep
        self._rng = rng or random.Random()

        self.state = SchedulerState.IDLE
        self.current: Quest | None = None
        self.quests_run = 0
        self._suspended: Quest | None = None
        self._paused = False
        self._resume = asyncio.Event()
        self._resume.set()
        self._stopped = False
        self._started_at: float | None = None

    # ── 暂停 / 恢复 ────────────────────────────────────

    @property
    def paused(self) -> bool:
        return self._paused

    def is_paused(self) -> bool:
        return self._paused

    async def pause(self) -> None:
        if self._paused:
            return
        self._paused = True
        self._resume.clear()
        log.info("⏸️ 已暂停")
        await self.bus.emit_simple(EventType.SCHEDULER_PAUSED)

    async def resume(self) -> None:
        if not self._paused:
            return
        self._paused = False
        self._resume.set()
        log.info("▶️ 已恢复")
        await self.bus.emit_simple(EventType.SCHEDULER_RESUMED)

    async def toggle_pause(self) -> bool:
        """切换暂停状态，返回切换后的状态"""
        if self._paused:
            await self.resume()
        else:
            await self.pause()
        return self._paused

    def stop(self) -> None:
        self._stopped = True
        self._resume.set()

    # ── 主循环 ────────────────────────────────────────

    async def run(self) -> SchedulerState:
        """运行直到队列耗尽 (keep_alive 时继续等待新任务)、达到限制或被停止"""
        self._started_at = self._clock()

        while not self._stopped:
            if self._paused:
                self._set_state(SchedulerState.PAUSED)
                self.reporter.on_status("⏸️ 已暂停")
                await self._resume.wait()
                continue

            limit = self._limit_reached()
            if limit:
                self.reporter.on_status(f"⏹️ 已停止: {limit}")
                self._set_state(SchedulerState.STOPPED)
                return self.state

            self._set_state(SchedulerState.DISPATCHING)
            quest = self._take_next()

            if quest is None:
                self._set_state(SchedulerState.DRAINED)
                self.reporter.on_status("🎉 所有任务已完成!")
                await self.bus.emit_simple(EventType.QUEUE_DRAINED, quests_run=self.quests_run)
                if not self.keep_alive:
                    return self.state
                await self.queue.wait_for_items()
                continue

            outcome = await self._run_quest(quest)
            if outcome is None:
                continue

            self._set_state(SchedulerState.COOLDOWN)
            await self._sleep(self._cooldown(outcome))
            self._set_state(SchedulerState.IDLE)

        self._set_state(SchedulerState.STOPPED)
        return self.state

    async def _run_quest(self, quest: Quest) -> SchedulerState | None:
        """运行单个任务; 被暂停打断时返回 None"""
        self._set_state(SchedulerState.RUNNING)
        self.current = quest
        started = self._clock()

        log.info("🎯 开始: %s (%s)", quest.name, quest.application_name)
        log.info("📋 类型: %s  ⏱️ 进度: %d/%ds", quest.task_type.value, quest.progress, quest.target)
        self.reporter.on_status(f"🎯 {quest.name}")
        await self.bus.emit_simple(EventType.QUEST_STARTED, quest=quest.to_dict())

        def on_progress(progress: int, total: int) -> None:
            self.reporter.on_progress(quest.name, progress, total, len(self.queue))

        try:
            runner = select_runner(self.runners, quest)
            session = await runner.run(quest, on_progress, self.is_paused, on_estimate=on_progress)
        except Exception as e:
            return await self._record_failure(quest, e)
        finally:
            self.current = None

        if not session.completed:
            # 以执行器返回时看到的暂停状态为准
            if session.paused:
                self._suspended = quest
                log.info("⏸️ 任务已挂起: %s (%d/%ds)", quest.name, quest.progress, quest.target)
                return None
            return await self._record_failure(quest, RuntimeError("执行器未完成任务就返回了"))

        time_spent = int(self._clock() - started)
        self.quests_run += 1
        await self.stats.add_completed(quest.name, time_spent)
        log.info("✅ 任务完成: %s", quest.name)
        await self.reporter.on_completed(quest.name)
        await self.bus.emit_simple(EventType.QUEST_COMPLETED, quest=quest.to_dict(), time_spent=time_spent)
        self._set_state(SchedulerState.COMPLETED)
        return self.state

    async def _record_failure(self, quest: Quest, error: Exception) -> SchedulerState:
        message = str(error) or error.__class__.__name__
        self.quests_run += 1
        log.error("处理任务出错: %s: %s", quest.name, message)
        await self.stats.add_failed(quest.name, message)
        await self.reporter.on_failed(quest.name, message)
        await self.bus.emit_simple(
            EventType.QUEST_FAILED,
            quest=quest.to_dict(),
            error=message,
            kind=error.__class__.__name__,
        )
        self._set_state(SchedulerState.FAILED)
        return self.state

    def _take_next(self) -> Quest | None:
        if self._suspended is not None:
            quest, self._suspended = self._suspended, None
            return quest
        return self.queue.pop_next()

    def _cooldown(self, outcome: SchedulerState) -> float:
        if outcome == SchedulerState.FAILED:
            return self.config.failure_cooldown
        return self._rng.uniform(self.config.cooldown_min, self.config.cooldown_max)

    def _limit_reached(self) -> str | None:
        cfg = self.config
        if cfg.max_quests_per_run is not None and self.quests_run >= cfg.max_quests_per_run:
            return f"本次已处理 {self.quests_run} 个任务"
        if cfg.max_session_minutes is not None and self._started_at is not None:
            if self._clock() - self._started_at >= cfg.max_session_minutes * 60:
                return f"已运行超过 {cfg.max_session_minutes} 分钟"
        return None

    def _set_state(self, state: SchedulerState) -> None:
        if state != self.state:
            log.debug("调度状态: %s → %s", self.state.value, state.value)
        self.state = state

    def snapshot(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "paused": self._paused,
            "current_quest": self.current.to_dict() if self.current else None,
            "suspended_quest": self._suspended.to_dict() if self._suspended else None,
            "queue_depth": len(self.queue),
            "quests_run": self.quests_run,
        }
