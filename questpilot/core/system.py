"""
Quest Autopilot - 主系统
串联数据源、调度器、执行器、通知与控制接口
"""

import asyncio
from datetime import datetime

import uvicorn

from .config import load_config, Config
from .events import Event, EventBus, EventType
from .logger import get_logger, setup_logging
from ..host.environment import Environment, MemoryEnvironment
from ..host.source import HttpQuestSource, QuestSource, select_eligible
from ..host.transport import HttpTransport, RequestTransport
from ..storage.database import Database
from ..storage.models import Quest
from ..system.notification import NotificationEngine
from ..system.queue import QuestQueue, estimate_time_remaining
from ..system.request import ResilientRequest
from ..system.runners import RunnerContext, build_runners
from ..system.scheduler import QuestScheduler
from ..system.statistics import Statistics
from ..system.stealth import StealthTimer, profile_from_config
from ..api.server import app as fastapi_app, set_system_ref

log = get_logger("system")

STATE_KEY = "scheduler"


class QuestPilotSystem:
    """系统核心"""

    def __init__(
        self,
        config: Config | None = None,
        transport: RequestTransport | None = None,
        source: QuestSource | None = None,
        environment: Environment | None = None,
        event_bus: EventBus | None = None,
    ):
        self.config = config or load_config()
        setup_logging(self.config.logging)
        self.bus = event_bus or EventBus()
        self.running = False
        self.start_time: datetime | None = None

        features = self.config.features
        self.db = Database(self.config.storage.database) if features.auto_save else None

        # 宿主能力
        self.transport = transport or HttpTransport(self.config.transport)
        self.source = source or HttpQuestSource(self.transport)
        env_cfg = self.config.environment
        self.environment = environment or MemoryEnvironment(
            self.bus,
            supports_spoofing=env_cfg.desktop,
            private_channel_ids=env_cfg.private_channel_ids,
            guild_voice_channel_ids=env_cfg.guild_voice_channel_ids,
        )
        if environment is None and env_cfg.desktop:
            log.warning("⚠️ 内存环境不会产生心跳事件，桌面/直播任务将一直等到超时; 请注入宿主环境适配器")

        # 引擎
        self.stealth = StealthTimer(
            profile_from_config(self.config.stealth),
            enabled=features.stealth_mode,
        )
        self.request = ResilientRequest.from_config(self.config.retry)
        self.queue = QuestQueue(self.config.filters.priority_apps)
        self.runners = build_runners(RunnerContext(
            request=self.request,
            transport=self.transport,
            stealth=self.stealth,
            environment=self.environment,
            bus=self.bus,
            heartbeat_interval=self.config.scheduler.heartbeat_interval,
            spoof_timeout=self.config.scheduler.spoof_timeout_minutes * 60,
        ))

        notification_cfg = self.config.notification.model_copy(
            update={"enabled": self.config.notification.enabled and features.notifications}
        )
        self.notification_engine = NotificationEngine(notification_cfg, self.bus)
        self.stats = Statistics(self.db)
        self.scheduler = QuestScheduler(
            self.queue,
            self.runners,
            self.notification_engine,
            self.bus,
            statistics=self.stats,
            config=self.config.scheduler,
            keep_alive=self.config.auto_check.enabled,
        )

        self._tasks: list[asyncio.Task] = []

        # 暂停状态变化时保存快照
        self.bus.on(EventType.SCHEDULER_PAUSED, self._on_pause_changed)
        self.bus.on(EventType.SCHEDULER_RESUMED, self._on_pause_changed)

    async def start(self) -> None:
        """启动系统"""
        log.info("🚀 %s v%s", self.config.system.name, self.config.system.version)
        log.info(
            "📱 环境: %s",
            "桌面客户端" if self.environment.supports_spoofing else "非桌面 (部分任务不可用)",
        )

        if self.db:
            await self.db.connect()
            await self.stats.load()
            saved = await self.db.load_state(STATE_KEY)
            if saved and saved.get("paused"):
                log.info("恢复上次的暂停状态")
                await self.scheduler.pause()

        self.running = True
        self.start_time = datetime.now()
        await self.bus.emit_simple(EventType.SYSTEM_START)

        await self.load_quests()
        estimate = estimate_time_remaining(self.queue.snapshot())
        log.info("⏰ 预计总耗时: %dh %dm", estimate.hours, estimate.minutes)

        set_system_ref(self)

        self._tasks = [asyncio.create_task(self.scheduler.run())]
        if self.config.auto_check.enabled:
            self._tasks.append(asyncio.create_task(self._auto_check_loop()))
        if self.config.web.enabled:
            log.info("🌐 控制接口: http://%s:%d", self.config.web.host, self.config.web.port)
            self._tasks.append(asyncio.create_task(self._start_web()))

        await asyncio.gather(*self._tasks)

    async def stop(self) -> None:
        """停止系统"""
        log.info("系统关闭中...")
        self.running = False
        self.scheduler.stop()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        if self.db:
            await self._save_state()
            await self.db.close()
        if isinstance(self.transport, HttpTransport):
            await self.transport.close()
        await self.bus.emit_simple(EventType.SYSTEM_STOP)
        log.info("✅ 系统已安全关闭")

    async def load_quests(self) -> list[Quest]:
        """首次加载任务"""
        quests = await self.source.list_quests()
        added = self.queue.enqueue_many(self._eligible(quests))
        log.info("📋 已加载 %d 个任务", len(added))
        return added

    async def discover(self) -> list[Quest]:
        """拉取新出现的任务并入队"""
        quests = await self.source.list_quests()
        fresh = [q for q in quests if not self.queue.seen(q.id)]
        added = self.queue.enqueue_many(self._eligible(fresh))
        if added:
            log.info("🆕 发现 %d 个新任务!", len(added))
            await self.bus.emit_simple(
                EventType.QUESTS_DISCOVERED,
                quests=[q.to_dict() for q in added],
            )
        return added

    def _eligible(self, quests: list[Quest]) -> list[Quest]:
        return select_eligible(
            quests,
            desktop=self.environment.supports_spoofing,
            skip_apps=self.config.filters.skip_apps,
        )

    async def _auto_check_loop(self) -> None:
        """定时检查新任务 (暂停时跳过)"""
        interval = self.config.auto_check.interval
        while self.running:
            await asyncio.sleep(interval)
            if self.scheduler.paused:
                continue
            try:
                await self.discover()
            except Exception as e:
                log.warning("自动检查失败: %s", e)

    async def _start_web(self) -> None:
        """启动控制接口"""
        config = uvicorn.Config(
            fastapi_app,
            host=self.config.web.host,
            port=self.config.web.port,
            log_level="warning",
        )
        server = uvicorn.Server(config)
        await server.serve()

    async def _on_pause_changed(self, event: Event) -> None:
        await self._save_state()

    async def _save_state(self) -> None:
        if not self.db:
            return
        await self.db.save_state(STATE_KEY, {
            "paused": self.scheduler.paused,
            "state": self.scheduler.state.value,
            "queue_depth": len(self.queue),
        })


async def main():
    """入口"""
    system = QuestPilotSystem()
    try:
        await system.start()
    except (KeyboardInterrupt, asyncio.CancelledError):
        await system.stop()
    except Exception as e:
        log.critical("❌ 致命错误: %s", e, exc_info=True)
        await system.stop()


if __name__ == "__main__":
    asyncio.run(main())
