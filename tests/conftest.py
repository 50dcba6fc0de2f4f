import asyncio
import random
from datetime import datetime, timezone

import pytest

from questpilot.core.events import EventBus
from questpilot.host.environment import MemoryEnvironment
from questpilot.host.transport import Response
from questpilot.storage.models import ProcessingSession, Quest, StealthProfile, TaskType
from questpilot.system.request import ResilientRequest
from questpilot.system.runners import RunnerContext
from questpilot.system.stealth import StealthTimer

START = 1_700_000_000.0


class FakeClock:
    """可控时钟: sleep 只推进时间并让出一次事件循环"""

    def __init__(self, start: float = START):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


class FakeTransport:
    """记录所有请求，响应由 handler(method, path, body) 决定"""

    def __init__(self, handler=None):
        self.calls: list[tuple[str, str, dict | None]] = []
        self.handler = handler or (lambda method, path, body: Response(200, {}))

    async def get(self, path):
        self.calls.append(("GET", path, None))
        return self.handler("GET", path, None)

    async def post(self, path, body):
        self.calls.append(("POST", path, body))
        return self.handler("POST", path, body)

    def posts(self, suffix: str = "") -> list[dict]:
        return [body for method, path, body in self.calls if method == "POST" and path.endswith(suffix)]


class RecordingReporter:
    def __init__(self):
        self.progress: list[tuple[str, int, int, int]] = []
        self.statuses: list[str] = []
        self.completed: list[str] = []
        self.failed: list[tuple[str, str]] = []

    def on_progress(self, quest_name, progress, total, queue_depth):
        self.progress.append((quest_name, progress, total, queue_depth))

    def on_status(self, message):
        self.statuses.append(message)

    async def on_completed(self, quest_name):
        self.completed.append(quest_name)

    async def on_failed(self, quest_name, error):
        self.failed.append((quest_name, error))


class InstantRunner:
    """直接把任务推进到完成; fail_ids 中的任务抛出异常"""

    def __init__(self, fail_ids=()):
        self.fail_ids = set(fail_ids)
        self.calls: list[str] = []

    async def run(self, quest, on_progress, is_paused, on_estimate=None):
        self.calls.append(quest.id)
        if quest.id in self.fail_ids:
            raise RuntimeError(f"boom: {quest.id}")
        session = ProcessingSession(quest=quest, last_known_progress=quest.progress)
        session.confirm(quest.target, START)
        session.completed = True
        on_progress(quest.progress, quest.target)
        return session


def make_quest(
    quest_id: str = "q1",
    task_type: TaskType = TaskType.WATCH_VIDEO,
    target: int = 600,
    progress: int = 0,
    app_name: str = "Game",
    app_id: str = "100",
    enrolled_at: float | None = START - 100_000,
    config_version: int = 2,
) -> Quest:
    return Quest(
        id=quest_id,
        task_type=task_type,
        target=target,
        progress=progress,
        name=f"Quest {quest_id}",
        application_id=app_id,
        application_name=app_name,
        enrolled_at=datetime.fromtimestamp(enrolled_at, tz=timezone.utc) if enrolled_at is not None else None,
        config_version=config_version,
    )


def quest_payload(
    quest_id: str = "q1",
    task: str = "WATCH_VIDEO",
    target: int = 600,
    progress: int = 0,
    app_name: str = "Game",
    app_id: str = "100",
    enrolled: bool = True,
    completed: bool = False,
    expires_at: str = "2099-01-01T00:00:00Z",
) -> dict:
    """宿主返回的 camelCase 任务数据"""
    return {
        "id": quest_id,
        "config": {
            "expiresAt": expires_at,
            "configVersion": 2,
            "application": {"id": app_id, "name": app_name},
            "messages": {"questName": f"Quest {quest_id}"},
            "taskConfig": {"tasks": {task: {"target": target}}},
        },
        "userStatus": {
            "enrolledAt": "2024-01-01T00:00:00Z" if enrolled else None,
            "completedAt": "2024-01-02T00:00:00Z" if completed else None,
            "progress": {task: {"value": progress}} if progress else {},
        },
    }


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def reporter():
    return RecordingReporter()


@pytest.fixture
def environment(bus):
    return MemoryEnvironment(bus, supports_spoofing=True, private_channel_ids=["dm1"])


@pytest.fixture
def make_context(clock, bus, environment):
    """按需创建执行器上下文 (不含随机停顿)"""

    def factory(transport, **overrides):
        stealth = StealthTimer(StealthProfile(random_pause_chance=0.0), rng=random.Random(42))
        params = dict(
            request=ResilientRequest(sleep=clock.sleep),
            transport=transport,
            stealth=stealth,
            environment=environment,
            bus=bus,
            clock=clock,
            sleep=clock.sleep,
        )
        params.update(overrides)
        return RunnerContext(**params)

    return factory
