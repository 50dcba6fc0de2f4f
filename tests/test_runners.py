import asyncio
import math

import pytest

from questpilot.core.errors import (
    ApplicationDataError,
    QuestTimeoutError,
    TransientRequestFailure,
    UnsupportedEnvironmentError,
)
from questpilot.core.events import EventType
from questpilot.host.environment import MemoryEnvironment, RunningGame, StreamMetadata
from questpilot.host.transport import Response
from questpilot.storage.models import TaskType
from questpilot.system.runners import (
    ActivityRunner,
    DesktopRunner,
    SpoofRunner,
    StreamRunner,
    TaskRunner,
    VideoRunner,
    build_runners,
    heartbeat_progress,
)

from conftest import START, FakeTransport, make_quest


class VideoServer:
    """模拟视频进度接口，记录每次上报时的时钟"""

    def __init__(self, clock, target, signal_completion=True):
        self.clock = clock
        self.target = target
        self.signal_completion = signal_completion
        self.reports: list[tuple[float, float]] = []

    def __call__(self, method, path, body):
        self.reports.append((self.clock.now, body["timestamp"]))
        done = self.signal_completion and body["timestamp"] >= self.target
        return Response(200, {"completed_at": "2025-01-01T00:00:00Z" if done else None})


def progress_recorder():
    seen = []

    def on_progress(progress, total):
        seen.append((progress, total))

    return seen, on_progress


def never_paused():
    return False


class TestVideoRunner:
    """视频任务"""

    @pytest.mark.asyncio
    async def test_completes_with_single_terminal_report(self, clock, make_context):
        server = VideoServer(clock, target=600)
        ctx = make_context(FakeTransport(server))
        quest = make_quest(target=600)
        seen, on_progress = progress_recorder()

        session = await VideoRunner(ctx).run(quest, on_progress, never_paused)

        assert session.completed
        assert quest.progress == 600
        stamps = [ts for _, ts in server.reports]
        assert all(0 < ts <= 600 for ts in stamps)
        assert stamps == sorted(stamps)
        assert stamps.count(600) == 1
        assert stamps[-1] == 600
        values = [p for p, _ in seen]
        assert values == sorted(values)
        assert seen[-1] == (600, 600)

    @pytest.mark.asyncio
    async def test_never_exceeds_elapsed_ceiling(self, clock, make_context):
        server = VideoServer(clock, target=60, signal_completion=False)
        ctx = make_context(FakeTransport(server))
        quest = make_quest(target=60, enrolled_at=START)

        session = await VideoRunner(ctx).run(quest, lambda p, t: None, never_paused)

        assert session.completed
        for now, ts in server.reports:
            assert ts <= math.floor(now - START) + 10
        # 服务端没有确认完成时补发一次终止上报
        assert server.reports[-1][1] == 60
        assert [ts for _, ts in server.reports].count(60) == 2

    @pytest.mark.asyncio
    async def test_pause_keeps_confirmed_progress(self, clock, make_context):
        server = VideoServer(clock, target=600)
        ctx = make_context(FakeTransport(server))
        quest = make_quest(target=600)
        seen, on_progress = progress_recorder()

        session = await VideoRunner(ctx).run(quest, on_progress, lambda: len(seen) >= 3)

        assert not session.completed
        assert len(server.reports) == 3
        paused_at = quest.progress
        assert 0 < paused_at < 600
        assert session.last_known_progress == paused_at

        session = await VideoRunner(ctx).run(quest, on_progress, never_paused)
        assert session.completed
        assert server.reports[3][1] > paused_at
        assert quest.progress == 600

    @pytest.mark.asyncio
    async def test_already_complete_sends_only_terminal(self, clock, make_context):
        server = VideoServer(clock, target=100, signal_completion=False)
        ctx = make_context(FakeTransport(server))
        quest = make_quest(target=100, progress=100)

        session = await VideoRunner(ctx).run(quest, lambda p, t: None, never_paused)

        assert session.completed
        assert [ts for _, ts in server.reports] == [100]

    @pytest.mark.asyncio
    async def test_request_failure_propagates(self, clock, make_context):
        def failing(method, path, body):
            raise ConnectionError("offline")

        ctx = make_context(FakeTransport(failing))
        with pytest.raises(TransientRequestFailure):
            await VideoRunner(ctx).run(make_quest(target=600), lambda p, t: None, never_paused)


class TestActivityRunner:
    """活动任务心跳"""

    @staticmethod
    def heartbeat_server(step=20):
        state = {"value": 0}

        def handler(method, path, body):
            if not body["terminal"]:
                state["value"] += step
            return Response(200, {"progress": {"PLAY_ACTIVITY": {"value": state["value"]}}})

        return handler

    @pytest.mark.asyncio
    async def test_heartbeats_until_target(self, clock, make_context):
        transport = FakeTransport(self.heartbeat_server())
        ctx = make_context(transport)
        quest = make_quest(task_type=TaskType.PLAY_ACTIVITY, target=60)
        seen, on_progress = progress_recorder()

        session = await ActivityRunner(ctx).run(quest, on_progress, never_paused)

        assert session.completed
        bodies = transport.posts("/heartbeat")
        assert [b["terminal"] for b in bodies] == [False, False, False, True]
        assert all(b["stream_key"] == "call:dm1:1" for b in bodies)
        assert [p for p, _ in seen] == [20, 40, 60]
        assert clock.sleeps == [20.0, 20.0]

    @pytest.mark.asyncio
    async def test_falls_back_to_guild_voice_channel(self, clock, bus, make_context):
        env = MemoryEnvironment(bus, guild_voice_channel_ids=["v1", "v2"])
        transport = FakeTransport(self.heartbeat_server(step=100))
        ctx = make_context(transport, environment=env)

        await ActivityRunner(ctx).run(make_quest(task_type=TaskType.PLAY_ACTIVITY, target=60), lambda p, t: None, never_paused)

        assert transport.posts()[0]["stream_key"] == "call:v1:1"

    @pytest.mark.asyncio
    async def test_no_channel_available(self, bus, make_context):
        ctx = make_context(FakeTransport(), environment=MemoryEnvironment(bus))
        with pytest.raises(UnsupportedEnvironmentError):
            await ActivityRunner(ctx).run(make_quest(task_type=TaskType.PLAY_ACTIVITY), lambda p, t: None, never_paused)

    @pytest.mark.asyncio
    async def test_pause_skips_terminal_heartbeat(self, clock, make_context):
        transport = FakeTransport(self.heartbeat_server())
        ctx = make_context(transport)
        quest = make_quest(task_type=TaskType.PLAY_ACTIVITY, target=60)
        seen, on_progress = progress_recorder()

        session = await ActivityRunner(ctx).run(quest, on_progress, lambda: len(seen) >= 1)

        assert not session.completed
        assert quest.progress == 20
        assert all(not b["terminal"] for b in transport.posts())
        assert session.paused

    @pytest.mark.asyncio
    async def test_null_progress_keeps_last_value(self, clock, make_context):
        transport = FakeTransport(lambda method, path, body: Response(200, {"progress": {"PLAY_ACTIVITY": {"value": None}}}))
        ctx = make_context(transport)
        quest = make_quest(task_type=TaskType.PLAY_ACTIVITY, target=60, progress=10)
        seen, on_progress = progress_recorder()

        session = await ActivityRunner(ctx).run(quest, on_progress, lambda: len(seen) >= 1)

        assert not session.completed
        assert quest.progress == 10
        assert seen == [(10, 60)]


def app_server(executables):
    def handler(method, path, body):
        assert path == "/applications/public?application_ids=100"
        return Response(200, [{"id": "100", "name": "Game", "executables": executables}])

    return handler


async def emit_heartbeat_when_ready(bus, quest, value, key=None):
    """等执行器订阅心跳事件后再模拟宿主推送"""
    while bus.handler_count(EventType.HEARTBEAT_SUCCESS) == 0:
        await asyncio.sleep(0)
    await bus.emit_simple(EventType.HEARTBEAT_SUCCESS, quest_id="other", user_status={
        "progress": {quest.task_type.value: {"value": quest.target}},
    })
    user_status = {key: value} if key else {"progress": {quest.task_type.value: {"value": value}}}
    await bus.emit_simple(EventType.HEARTBEAT_SUCCESS, quest_id=quest.id, user_status=user_status)


REAL_GAME = RunningGame(
    id="1", name="Real", pid=42, exe_name="real.exe", exe_path="c:/real.exe",
    cmd_line="real.exe", process_name="Real", start=0,
)


class TestDesktopRunner:
    """桌面游戏伪装"""

    @pytest.mark.asyncio
    async def test_spoofs_and_restores(self, clock, bus, make_context):
        env = MemoryEnvironment(bus, supports_spoofing=True, running_games=[REAL_GAME])
        ctx = make_context(FakeTransport(app_server([
            {"os": "linux", "name": "game"},
            {"os": "win32", "name": ">game.exe"},
        ])), environment=env)
        quest = make_quest(task_type=TaskType.PLAY_ON_DESKTOP, target=900)
        installed = []

        async def on_games(event):
            installed.append(event.data["games"])

        bus.on(EventType.RUNNING_GAMES_CHANGE, on_games)
        host = asyncio.create_task(emit_heartbeat_when_ready(bus, quest, 900))
        seen, on_progress = progress_recorder()

        session = await DesktopRunner(ctx).run(quest, on_progress, never_paused)
        await host

        assert session.completed
        assert quest.progress == 900
        assert seen == [(900, 900)]
        fake = installed[0][0]
        assert fake["exe_name"] == "game.exe"
        assert fake["exe_path"] == "c:/program files/game/game.exe"
        assert 1000 <= fake["pid"] <= 30999
        assert env.get_running_games() == [REAL_GAME]
        assert bus.handler_count(EventType.HEARTBEAT_SUCCESS) == 0

    @pytest.mark.asyncio
    async def test_timeout_restores_environment(self, clock, bus, make_context):
        env = MemoryEnvironment(bus, supports_spoofing=True, running_games=[REAL_GAME])
        ctx = make_context(
            FakeTransport(app_server([{"os": "win32", "name": "game.exe"}])),
            environment=env,
            spoof_timeout=5.0,
        )
        quest = make_quest(task_type=TaskType.PLAY_ON_DESKTOP, target=900)
        estimates, on_estimate = progress_recorder()

        with pytest.raises(QuestTimeoutError):
            await DesktopRunner(ctx).run(quest, lambda p, t: None, never_paused, on_estimate=on_estimate)

        assert env.get_running_games() == [REAL_GAME]
        assert bus.handler_count(EventType.HEARTBEAT_SUCCESS) == 0
        assert quest.progress == 0
        assert [p for p, _ in estimates] == [1, 2, 3, 4, 5]

    @pytest.mark.asyncio
    async def test_missing_windows_executable(self, make_context):
        ctx = make_context(FakeTransport(app_server([{"os": "darwin", "name": "game.app"}])))
        with pytest.raises(ApplicationDataError):
            await DesktopRunner(ctx).run(make_quest(task_type=TaskType.PLAY_ON_DESKTOP), lambda p, t: None, never_paused)

    @pytest.mark.asyncio
    async def test_requires_desktop(self, bus, make_context):
        transport = FakeTransport()
        ctx = make_context(transport, environment=MemoryEnvironment(bus, supports_spoofing=False))
        with pytest.raises(UnsupportedEnvironmentError):
            await DesktopRunner(ctx).run(make_quest(task_type=TaskType.PLAY_ON_DESKTOP), lambda p, t: None, never_paused)
        assert transport.calls == []

    @pytest.mark.asyncio
    async def test_pause_exits_and_restores(self, clock, bus, make_context):
        env = MemoryEnvironment(bus, supports_spoofing=True, running_games=[REAL_GAME])
        ctx = make_context(FakeTransport(app_server([{"os": "win32", "name": "game.exe"}])), environment=env)
        quest = make_quest(task_type=TaskType.PLAY_ON_DESKTOP, target=900)

        session = await DesktopRunner(ctx).run(quest, lambda p, t: None, lambda: clock.now - START >= 3)

        assert not session.completed
        assert session.paused
        assert env.get_running_games() == [REAL_GAME]


class TestStreamRunner:
    @pytest.mark.asyncio
    async def test_stream_version_one_progress(self, clock, bus, make_context):
        previous = StreamMetadata(id="orig", pid=1, source_name="Screen")
        env = MemoryEnvironment(bus, supports_spoofing=True, stream_metadata=previous)
        ctx = make_context(FakeTransport(), environment=env)
        quest = make_quest(task_type=TaskType.STREAM_ON_DESKTOP, target=300, config_version=1)

        host = asyncio.create_task(emit_heartbeat_when_ready(bus, quest, 300, key="stream_progress_seconds"))
        session = await StreamRunner(ctx).run(quest, lambda p, t: None, never_paused)
        await host

        assert session.completed
        assert quest.progress == 300
        assert env.get_stream_metadata() == previous

    @pytest.mark.asyncio
    async def test_timeout_restores_stream_metadata(self, clock, bus, make_context):
        previous = StreamMetadata(id="orig", pid=1, source_name="Screen")
        env = MemoryEnvironment(bus, supports_spoofing=True, stream_metadata=previous)
        ctx = make_context(FakeTransport(), environment=env, spoof_timeout=5.0)
        quest = make_quest(task_type=TaskType.STREAM_ON_DESKTOP, target=300)

        with pytest.raises(QuestTimeoutError):
            await StreamRunner(ctx).run(quest, lambda p, t: None, never_paused)

        assert env.get_stream_metadata() == previous
        assert bus.handler_count(EventType.HEARTBEAT_SUCCESS) == 0
        assert quest.progress == 0


class TestDispatch:
    def test_every_task_type_has_runner(self, make_context):
        runners = build_runners(make_context(FakeTransport()))
        assert set(runners) == set(TaskType)
        assert runners[TaskType.WATCH_VIDEO] is runners[TaskType.WATCH_VIDEO_ON_MOBILE]
        assert isinstance(runners[TaskType.STREAM_ON_DESKTOP], StreamRunner)

    def test_heartbeat_progress_filters_other_quests(self):
        quest = make_quest("q1", task_type=TaskType.PLAY_ON_DESKTOP, target=100)
        data = {"quest_id": "q2", "user_status": {"progress": {"PLAY_ON_DESKTOP": {"value": 50}}}}
        assert heartbeat_progress(quest, data) is None
        data["quest_id"] = "q1"
        assert heartbeat_progress(quest, data) == 50
        assert heartbeat_progress(quest, {}) is None

    def test_runner_bases_are_abstract(self, make_context):
        ctx = make_context(FakeTransport())
        with pytest.raises(TypeError):
            TaskRunner(ctx)
        with pytest.raises(TypeError):
            SpoofRunner(ctx)

        class NoDescriptor(SpoofRunner):
            task_types = (TaskType.PLAY_ON_DESKTOP,)

        with pytest.raises(TypeError):
            NoDescriptor(ctx)
