"""
宿主环境能力
- 是否支持伪装 (桌面客户端)
- 语音频道查询
- 进程列表 / 直播信息的替换与恢复

伪装通过 install/restore 成对完成，spoofed() 保证任何退出路径都会恢复
"""

from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass, field
from typing import Any, AsyncIterator, Iterable, Protocol, Union

from ..core.events import EventBus, EventType
from ..core.logger import get_logger

log = get_logger("environment")


@dataclass
class RunningGame:
    """伪造的运行中进程"""
    id: str
    name: str
    pid: int
    exe_name: str
    exe_path: str
    cmd_line: str
    process_name: str
    start: float
    hidden: bool = False
    is_launcher: bool = False
    pid_path: list[int] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class StreamMetadata:
    """伪造的直播来源"""
    id: str
    pid: int
    source_name: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


SpoofDescriptor = Union[RunningGame, StreamMetadata]


@dataclass
class SpoofHandle:
    descriptor: SpoofDescriptor
    previous: Any = None
    restored: bool = False


class Environment(Protocol):
    supports_spoofing: bool

    def private_channel_ids(self) -> list[str]: ...

    def guild_voice_channel_ids(self) -> list[str]: ...

    async def install(self, descriptor: SpoofDescriptor) -> SpoofHandle: ...

    async def restore(self, handle: SpoofHandle) -> None: ...


@asynccontextmanager
async def spoofed(environment: Environment, descriptor: SpoofDescriptor) -> AsyncIterator[SpoofHandle]:
    """作用域内安装伪装，退出时恢复 (包括超时和异常)"""
    handle = await environment.install(descriptor)
    try:
        yield handle
    finally:
        await environment.restore(handle)


class MemoryEnvironment:
    """内存中的宿主环境，进程列表变化通过事件总线广播"""

    def __init__(
        self,
        event_bus: EventBus,
        supports_spoofing: bool = False,
        private_channel_ids: Iterable[str] = (),
        guild_voice_channel_ids: Iterable[str] = (),
        running_games: Iterable[RunningGame] = (),
        stream_metadata: StreamMetadata | None = None,
    ):
        self.bus = event_bus
        self.supports_spoofing = supports_spoofing
        self._private_channels = list(private_channel_ids)
        self._guild_voice_channels = list(guild_voice_channel_ids)
        self.running_games: list[RunningGame] = list(running_games)
        self.stream_metadata = stream_metadata

    def private_channel_ids(self) -> list[str]:
        return list(self._private_channels)

    def guild_voice_channel_ids(self) -> list[str]:
        return list(self._guild_voice_channels)

    def get_running_games(self) -> list[RunningGame]:
        return list(self.running_games)

    def get_game_for_pid(self, pid: int) -> RunningGame | None:
        return next((g for g in self.running_games if g.pid == pid), None)

    def get_stream_metadata(self) -> StreamMetadata | None:
        return self.stream_metadata

    async def install(self, descriptor: SpoofDescriptor) -> SpoofHandle:
        if isinstance(descriptor, RunningGame):
            handle = SpoofHandle(descriptor, previous=list(self.running_games))
            self.running_games = [descriptor]
            await self._games_changed(removed=handle.previous, added=[descriptor])
        else:
            handle = SpoofHandle(descriptor, previous=self.stream_metadata)
            self.stream_metadata = descriptor
            await self.bus.emit_simple(EventType.STREAM_METADATA_CHANGE, metadata=descriptor.to_dict())
        log.debug("已安装伪装: %s", descriptor)
        return handle

    async def restore(self, handle: SpoofHandle) -> None:
        if handle.restored:
            return
        handle.restored = True
        if isinstance(handle.descriptor, RunningGame):
            self.running_games = list(handle.previous)
            await self._games_changed(removed=[handle.descriptor], added=handle.previous)
        else:
            self.stream_metadata = handle.previous
            await self.bus.emit_simple(
                EventType.STREAM_METADATA_CHANGE,
                metadata=handle.previous.to_dict() if handle.previous else None,
            )
        log.debug("已恢复原始环境: %s", handle.descriptor)

    async def _games_changed(self, removed: list[RunningGame], added: list[RunningGame]) -> None:
        await self.bus.emit_simple(
            EventType.RUNNING_GAMES_CHANGE,
            removed=[g.to_dict() for g in removed],
            added=[g.to_dict() for g in added],
            games=[g.to_dict() for g in self.running_games],
        )
