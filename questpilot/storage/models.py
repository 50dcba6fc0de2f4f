"""
数据模型 - 任务、会话、限流状态、伪装配置
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from ..core.errors import UnsupportedTaskTypeError


class TaskType(str, Enum):
    WATCH_VIDEO = "WATCH_VIDEO"
    PLAY_ON_DESKTOP = "PLAY_ON_DESKTOP"
    STREAM_ON_DESKTOP = "STREAM_ON_DESKTOP"
    PLAY_ACTIVITY = "PLAY_ACTIVITY"
    WATCH_VIDEO_ON_MOBILE = "WATCH_VIDEO_ON_MOBILE"


# 查找顺序即声明顺序
SUPPORTED_TASKS: tuple[TaskType, ...] = tuple(TaskType)

# 仅桌面客户端可完成
DESKTOP_ONLY_TASKS = frozenset({TaskType.PLAY_ON_DESKTOP, TaskType.STREAM_ON_DESKTOP})


def extract_task_type(task_config: dict[str, Any] | None) -> TaskType | None:
    """从任务配置中取出当前生效的任务类型

    解析、时间估算、执行都只走这一个入口。
    """
    if not task_config:
        return None
    tasks = task_config.get("tasks") or {}
    for task_type in SUPPORTED_TASKS:
        if tasks.get(task_type.value) is not None:
            return task_type
    return None


def _pick(data: dict[str, Any], *keys: str, default: Any = None) -> Any:
    """按顺序取第一个存在的键 (兼容 camelCase / snake_case)"""
    for key in keys:
        if data.get(key) is not None:
            return data[key]
    return default


def _parse_time(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        dt = datetime.fromtimestamp(value / 1000 if value > 1e11 else value, tz=timezone.utc)
    else:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


@dataclass
class Quest:
    """任务数据模型"""
    id: str
    task_type: TaskType
    target: int                          # 完成所需秒数
    progress: int = 0                    # 服务端已确认的秒数
    name: str = ""
    application_id: str = ""
    application_name: str = ""
    enrolled_at: datetime | None = None
    expires_at: datetime | None = None
    completed_at: datetime | None = None
    config_version: int = 2

    def __post_init__(self):
        self.target = max(0, int(self.target))
        self.set_progress(self.progress)
        if not self.name:
            self.name = self.application_name or self.id

    def set_progress(self, value: float) -> int:
        """写入进度，始终夹在 [0, target] 内"""
        self.progress = max(0, min(self.target, int(value)))
        return self.progress

    @property
    def remaining(self) -> int:
        return self.target - self.progress

    @property
    def is_desktop_only(self) -> bool:
        return self.task_type in DESKTOP_ONLY_TASKS

    def is_eligible(self, now: datetime | None = None) -> bool:
        """已报名、未完成、未过期"""
        now = now or datetime.now(timezone.utc)
        if self.enrolled_at is None or self.completed_at is not None:
            return False
        if self.expires_at is not None and now >= self.expires_at:
            return False
        return True

    def matches_app(self, apps: set[str] | list[str]) -> bool:
        return self.application_name in apps or self.application_id in apps

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> "Quest":
        """从宿主返回的任务数据构建 Quest"""
        config = data.get("config") or {}
        user_status = _pick(data, "userStatus", "user_status", default={}) or {}
        task_config = _pick(config, "taskConfig", "task_config", "taskConfigV2", "task_config_v2")

        task_type = extract_task_type(task_config)
        if task_type is None:
            raise UnsupportedTaskTypeError(f"任务 {data.get('id')} 没有可支持的任务类型")

        application = config.get("application") or {}
        messages = config.get("messages") or {}
        progress_map = user_status.get("progress") or {}
        done = (progress_map.get(task_type.value) or {}).get("value", 0)

        return cls(
            id=str(data["id"]),
            task_type=task_type,
            target=task_config["tasks"][task_type.value]["target"],
            progress=int(done or 0),
            name=_pick(messages, "questName", "quest_name", default=""),
            application_id=str(application.get("id", "")),
            application_name=application.get("name", ""),
            enrolled_at=_parse_time(_pick(user_status, "enrolledAt", "enrolled_at")),
            expires_at=_parse_time(_pick(config, "expiresAt", "expires_at")),
            completed_at=_parse_time(_pick(user_status, "completedAt", "completed_at")),
            config_version=int(_pick(config, "configVersion", "config_version", default=2)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "task_type": self.task_type.value,
            "target": self.target,
            "progress": self.progress,
            "application_id": self.application_id,
            "application_name": self.application_name,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }


@dataclass
class ProcessingSession:
    """一次任务运行的临时状态"""
    quest: Quest
    last_known_progress: int = 0
    last_update_time: float = 0.0
    started_at: float = 0.0
    completed: bool = False
    paused: bool = False                 # 因暂停而提前返回

    def suspend(self) -> "ProcessingSession":
        """在暂停检查点上标记并返回自身"""
        self.paused = True
        return self

    def confirm(self, progress: float, now: float) -> int:
        """记录服务端确认的进度"""
        self.last_known_progress = self.quest.set_progress(progress)
        self.last_update_time = now
        return self.last_known_progress

    def estimate(self, now: float) -> int:
        """两次心跳之间的线性外推，仅用于展示"""
        elapsed = int(max(0.0, now - self.last_update_time))
        return min(self.quest.target, self.last_known_progress + elapsed)


@dataclass
class RateLimitState:
    """连续 429 计数"""
    hits: int = 0

    def hit(self) -> int:
        self.hits += 1
        return self.hits

    def reset(self) -> None:
        self.hits = 0

    def delay(self, base: float, cap: float) -> float:
        return min(cap, base * (2 ** self.hits))


@dataclass(frozen=True)
class StealthProfile:
    """伪装节奏配置"""
    min_speed_sec: int = 5
    max_speed_sec: int = 9
    random_pause_chance: float = 0.1
    pause_min_ms: int = 3000
    pause_max_ms: int = 8000


@dataclass
class TimeEstimate:
    total_seconds: int
    hours: int
    minutes: int


@dataclass
class QuestRecord:
    """统计历史中的一条记录"""
    name: str
    status: str                          # completed | failed
    time: datetime = field(default_factory=datetime.now)
    duration: int = 0
    error: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status,
            "time": self.time.isoformat(),
            "duration": self.duration,
            "error": self.error,
        }
