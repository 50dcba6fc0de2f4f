"""
任务执行器
每种任务类型一个状态机，把任务从当前进度推进到完成

- 视频: 轮询上报观看进度，进度不超过报名以来的真实时长 + 10 秒
- 活动: 每 20 秒一次心跳，直到服务端进度达标
- 桌面游戏 / 直播: 伪装进程或直播来源，等待宿主发出的心跳成功事件

进度只在服务端确认后写入任务；暂停时在下一个检查点退出，保留最后确认的进度
"""

import asyncio
import math
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from ..core.errors import (
    ApplicationDataError,
    QuestPilotError,
    QuestTimeoutError,
    UnsupportedEnvironmentError,
    UnsupportedTaskTypeError,
)
from ..core.events import Event, EventBus, EventType
from ..core.logger import get_logger
from ..host.environment import Environment, RunningGame, SpoofDescriptor, StreamMetadata, spoofed
from ..host.transport import RequestTransport, Response
from ..storage.models import ProcessingSession, Quest, TaskType
from .request import ResilientRequest
from .stealth import StealthTimer

log = get_logger("runner")

ProgressCallback = Callable[[int, int], None]
PausedCheck = Callable[[], bool]

# 视频进度允许领先真实时长的秒数
VIDEO_LEAD_SEC = 10
# 两次视频上报之间的固定间隔
VIDEO_TICK_SEC = 1.0
# 伪装任务的估算刷新间隔
ESTIMATE_TICK_SEC = 1.0


@dataclass
class RunnerContext:
    """执行器共享的依赖"""
    request: ResilientRequest
    transport: RequestTransport
    stealth: StealthTimer
    environment: Environment
    bus: EventBus
    clock: Callable[[], float] = time.time
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    heartbeat_interval: float = 20.0
    spoof_timeout: float = 30 * 60.0


class TaskRunner(ABC):
    """执行器基类"""

    task_types: tuple[TaskType, ...] = ()

    def __init__(self, ctx: RunnerContext):
        self.ctx = ctx

    @abstractmethod
    async def run(
        self,
        quest: Quest,
        on_progress: ProgressCallback,
        is_paused: PausedCheck,
        on_estimate: ProgressCallback | None = None,
    ) -> ProcessingSession:
        ...

    def _new_session(self, quest: Quest) -> ProcessingSession:
        now = self.ctx.clock()
        return ProcessingSession(
            quest=quest,
            last_known_progress=quest.progress,
            last_update_time=now,
            started_at=now,
        )

    async def _post(self, path: str, body: dict[str, Any]) -> Response:
        return await self.ctx.request.execute(lambda: self.ctx.transport.post(path, body))

    async def _get(self, path: str) -> Response:
        return await self.ctx.request.execute(lambda: self.ctx.transport.get(path))


class VideoRunner(TaskRunner):
    """WATCH_VIDEO / WATCH_VIDEO_ON_MOBILE"""

    task_types = (TaskType.WATCH_VIDEO, TaskType.WATCH_VIDEO_ON_MOBILE)

    def max_allowed(self, quest: Quest) -> int:
        """报名至今的秒数 + 10，模拟真实播放节奏的上限"""
        return math.floor(self.ctx.clock() - quest.enrolled_at.timestamp()) + VIDEO_LEAD_SEC

    async def run(self, quest, on_progress, is_paused, on_estimate=None):
        if quest.enrolled_at is None:
            raise QuestPilotError(f"任务未报名: {quest.name}")

        session = self._new_session(quest)
        stealth = self.ctx.stealth
        log.info("🎬 开始视频任务: %s", quest.name)

        while quest.progress < quest.target and not session.completed:
            if is_paused():
                return session.suspend()

            max_allowed = self.max_allowed(quest)
            step = stealth.next_step_delay()
            timestamp = quest.progress + step

            if max_allowed - quest.progress >= step:
                reported = min(quest.target, max_allowed, timestamp + stealth.jitter())
                resp = await self._report(quest, reported)
                session.completed = _completed(resp)
                confirmed = quest.target if session.completed else min(quest.target, timestamp)
                session.confirm(confirmed, self.ctx.clock())
                on_progress(quest.progress, quest.target)
                log.debug("进度: %d/%ds", quest.progress, quest.target)

            if is_paused():
                return session.suspend()

            pause_ms = stealth.maybe_pause()
            if pause_ms:
                log.debug("💤 随机停顿: %dms", pause_ms)
                await self.ctx.sleep(pause_ms / 1000)

            await self.ctx.sleep(VIDEO_TICK_SEC)

        if not session.completed:
            if is_paused():
                return session.suspend()
            await self._report(quest, quest.target)
            session.confirm(quest.target, self.ctx.clock())
            session.completed = True
            on_progress(quest.progress, quest.target)

        return session

    async def _report(self, quest: Quest, timestamp: float) -> Response:
        return await self._post(f"/quests/{quest.id}/video-progress", {"timestamp": timestamp})


class ActivityRunner(TaskRunner):
    """PLAY_ACTIVITY: 周期性心跳"""

    task_types = (TaskType.PLAY_ACTIVITY,)

    def resolve_channel_id(self) -> str:
        """优先第一个私聊频道，否则第一个服务器语音频道"""
        env = self.ctx.environment
        private = env.private_channel_ids()
        if private:
            return private[0]
        voice = env.guild_voice_channel_ids()
        if voice:
            return voice[0]
        raise UnsupportedEnvironmentError("找不到可用的语音频道")

    async def run(self, quest, on_progress, is_paused, on_estimate=None):
        session = self._new_session(quest)
        stream_key = f"call:{self.resolve_channel_id()}:1"
        path = f"/quests/{quest.id}/heartbeat"
        log.info("🎮 开始活动任务: %s", quest.name)

        while quest.progress < quest.target:
            if is_paused():
                return session.suspend()

            resp = await self._post(path, {"stream_key": stream_key, "terminal": False})
            session.confirm(_progress_value(resp.body, quest), self.ctx.clock())
            on_progress(quest.progress, quest.target)

            if quest.progress >= quest.target:
                break
            await self.ctx.sleep(self.ctx.heartbeat_interval)

        if is_paused():
            return session.suspend()

        await self._post(path, {"stream_key": stream_key, "terminal": True})
        session.completed = True
        return session


class SpoofRunner(TaskRunner):
    """桌面游戏 / 直播的共同流程"""

    @abstractmethod
    async def build_descriptor(self, quest: Quest) -> SpoofDescriptor:
        ...

    def announce(self, quest: Quest) -> None:
        pass

    async def run(self, quest, on_progress, is_paused, on_estimate=None):
        env = self.ctx.environment
        if not env.supports_spoofing:
            raise UnsupportedEnvironmentError(f"该任务需要桌面客户端: {quest.name}")

        session = self._new_session(quest)
        descriptor = await self.build_descriptor(quest)

        async def on_heartbeat(event: Event) -> None:
            progress = heartbeat_progress(quest, event.data)
            if progress is None or session.completed:
                return
            session.confirm(progress, self.ctx.clock())
            log.debug("心跳进度: %d/%d", quest.progress, quest.target)
            on_progress(quest.progress, quest.target)
            if quest.progress >= quest.target:
                session.completed = True

        deadline = self.ctx.clock() + self.ctx.spoof_timeout
        async with spoofed(env, descriptor):
            with self.ctx.bus.subscribe(EventType.HEARTBEAT_SUCCESS, on_heartbeat):
                self.announce(quest)
                while not session.completed:
                    if is_paused():
                        return session.suspend()
                    if self.ctx.clock() >= deadline:
                        raise QuestTimeoutError(f"任务超时: {quest.name}")
                    await self.ctx.sleep(ESTIMATE_TICK_SEC)
                    if on_estimate and not session.completed and not is_paused():
                        on_estimate(session.estimate(self.ctx.clock()), quest.target)

        return session

    def _pid(self) -> int:
        return self.ctx.stealth.rng.randint(1000, 30999)


class DesktopRunner(SpoofRunner):
    """PLAY_ON_DESKTOP: 伪装一个正在运行的游戏进程"""

    task_types = (TaskType.PLAY_ON_DESKTOP,)

    async def build_descriptor(self, quest: Quest) -> RunningGame:
        resp = await self._get(f"/applications/public?application_ids={quest.application_id}")
        apps = resp.body or []
        app = apps[0] if apps else None
        if not app or not app.get("executables"):
            raise ApplicationDataError(f"无法获取应用数据: {quest.application_name}")

        exe = next((x for x in app["executables"] if x.get("os") == "win32"), None)
        if exe is None:
            raise ApplicationDataError(f"找不到 Windows 可执行文件: {quest.application_name}")

        exe_name = exe["name"].replace(">", "")
        name = app.get("name") or quest.application_name
        pid = self._pid()
        return RunningGame(
            id=quest.application_id,
            name=name,
            pid=pid,
            exe_name=exe_name,
            exe_path=f"c:/program files/{name.lower()}/{exe_name}",
            cmd_line=f"C:\\Program Files\\{name}\\{exe_name}",
            process_name=name,
            start=self.ctx.clock() * 1000,
            pid_path=[pid],
        )

    def announce(self, quest: Quest) -> None:
        log.info("✅ 已伪装游戏: %s，预计 %d 分钟", quest.application_name, math.ceil(quest.remaining / 60))


class StreamRunner(SpoofRunner):
    """STREAM_ON_DESKTOP: 伪装直播来源，需要语音频道里还有另一位真实用户"""

    task_types = (TaskType.STREAM_ON_DESKTOP,)

    async def build_descriptor(self, quest: Quest) -> StreamMetadata:
        return StreamMetadata(id=quest.application_id, pid=self._pid(), source_name=None)

    def announce(self, quest: Quest) -> None:
        log.info(
            "✅ 已伪装直播: %s。在语音频道中直播任意窗口 %d 分钟",
            quest.application_name, math.ceil(quest.remaining / 60),
        )
        log.warning("⚠️ 语音频道中至少需要 1 位其他用户!")


RUNNER_CLASSES: tuple[type[TaskRunner], ...] = (VideoRunner, ActivityRunner, DesktopRunner, StreamRunner)


def build_runners(ctx: RunnerContext) -> dict[TaskType, TaskRunner]:
    """为每种任务类型创建执行器，缺少任何一种都视为编程错误"""
    runners: dict[TaskType, TaskRunner] = {}
    for cls in RUNNER_CLASSES:
        runner = cls(ctx)
        for task_type in cls.task_types:
            runners[task_type] = runner

    missing = set(TaskType) - runners.keys()
    if missing:
        raise RuntimeError(f"缺少执行器: {sorted(t.value for t in missing)}")
    return runners


def select_runner(runners: dict[TaskType, TaskRunner], quest: Quest) -> TaskRunner:
    runner = runners.get(quest.task_type)
    if runner is None:
        raise UnsupportedTaskTypeError(f"不支持的任务类型: {quest.task_type}")
    return runner


def heartbeat_progress(quest: Quest, data: dict[str, Any]) -> int | None:
    """从心跳事件中取出服务端确认的进度; 不属于该任务时返回 None"""
    user_status = data.get("user_status") or data.get("userStatus")
    if not user_status:
        return None
    quest_id = data.get("quest_id") or user_status.get("quest_id") or user_status.get("questId")
    if quest_id is not None and str(quest_id) != quest.id:
        return None

    if quest.config_version == 1:
        value = user_status.get("stream_progress_seconds", user_status.get("streamProgressSeconds"))
        return int(value or 0)
    progress = (user_status.get("progress") or {}).get(quest.task_type.value) or {}
    return math.floor(progress.get("value") or 0)


def _progress_value(body: Any, quest: Quest) -> int:
    if not isinstance(body, dict):
        return quest.progress
    entry = (body.get("progress") or {}).get(quest.task_type.value) or {}
    value = entry.get("value")
    return quest.progress if value is None else int(value)


def _completed(resp: Response) -> bool:
    return isinstance(resp.body, dict) and resp.body.get("completed_at") is not None
