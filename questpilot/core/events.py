"""
事件总线
宿主环境 (心跳成功、进程列表、直播信息) 与引擎之间的异步发布/订阅
"""

import asyncio
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable

from .logger import get_logger

log = get_logger("events")

# 保留的事件历史条数
HISTORY_SIZE = 1000


class EventType(Enum):
    # 宿主环境
    HEARTBEAT_SUCCESS = "quests_send_heartbeat_success"
    RUNNING_GAMES_CHANGE = "running_games_change"
    STREAM_METADATA_CHANGE = "stream_metadata_change"

    # 任务生命周期
    QUESTS_DISCOVERED = "quests_discovered"
    QUEST_STARTED = "quest_started"
    QUEST_PROGRESS = "quest_progress"
    QUEST_COMPLETED = "quest_completed"
    QUEST_FAILED = "quest_failed"
    QUEUE_DRAINED = "queue_drained"

    # 调度器
    SCHEDULER_PAUSED = "scheduler_paused"
    SCHEDULER_RESUMED = "scheduler_resumed"

    NOTIFICATION_PUSH = "notification_push"

    SYSTEM_START = "system_start"
    SYSTEM_STOP = "system_stop"


@dataclass
class Event:
    type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)
    source: str = "engine"


Handler = Callable[[Event], Awaitable[None]]


class Subscription:
    """可取消的订阅，cancel() 多次调用只生效一次"""

    def __init__(self, bus: "EventBus", event_type: EventType, handler: Handler):
        self._bus = bus
        self.event_type = event_type
        self.handler = handler
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def cancel(self) -> bool:
        if not self._active:
            return False
        self._active = False
        self._bus.off(self.event_type, self.handler)
        return True

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info) -> None:
        self.cancel()


class EventBus:
    """单事件循环内的发布/订阅"""

    def __init__(self, history_size: int = HISTORY_SIZE):
        self._subscribers: defaultdict[EventType, list[Handler]] = defaultdict(list)
        self._history: deque[Event] = deque(maxlen=history_size)

    def on(self, event_type: EventType, handler: Handler) -> None:
        self._subscribers[event_type].append(handler)

    def off(self, event_type: EventType, handler: Handler) -> None:
        handlers = self._subscribers[event_type]
        if handler in handlers:
            handlers.remove(handler)

    def subscribe(self, event_type: EventType, handler: Handler) -> Subscription:
        """注册处理器，返回的订阅对象负责注销"""
        self.on(event_type, handler)
        return Subscription(self, event_type, handler)

    def handler_count(self, event_type: EventType) -> int:
        return len(self._subscribers.get(event_type, ()))

    async def emit(self, event: Event) -> None:
        """分发事件; 单个处理器出错只记录日志，不影响其他处理器"""
        self._history.append(event)

        # 处理器可能在回调里注销自己，先复制一份
        handlers = list(self._subscribers.get(event.type, ()))
        if not handlers:
            return

        outcomes = await asyncio.gather(*(h(event) for h in handlers), return_exceptions=True)
        for handler, outcome in zip(handlers, outcomes):
            if isinstance(outcome, Exception):
                log.error(
                    "事件处理失败 (%s, %s): %s",
                    event.type.value, getattr(handler, "__qualname__", handler), outcome,
                )

    async def emit_simple(self, event_type: EventType, **data) -> None:
        await self.emit(Event(type=event_type, data=data))

    def get_history(self, event_type: EventType | None = None, limit: int = 50) -> list[Event]:
        events = [e for e in self._history if event_type is None or e.type == event_type]
        return events[-limit:]
