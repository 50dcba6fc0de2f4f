"""
任务数据源
从宿主拉取任务列表，并筛出可以处理的任务
"""

from datetime import datetime, timezone
from typing import Any, Iterable, Protocol

from ..core.errors import QuestPilotError
from ..core.logger import get_logger
from ..storage.models import Quest
from .transport import RequestTransport

log = get_logger("source")


class QuestSource(Protocol):
    async def list_quests(self) -> list[Quest]: ...


class HttpQuestSource:
    """通过请求传输层获取当前用户的任务"""

    def __init__(self, transport: RequestTransport, path: str = "/quests/@me"):
        self.transport = transport
        self.path = path

    async def list_quests(self) -> list[Quest]:
        resp = await self.transport.get(self.path)
        return parse_quests(resp.body)


def parse_quests(body: Any) -> list[Quest]:
    """解析任务列表，无法识别的条目跳过"""
    raw = body.get("quests", []) if isinstance(body, dict) else (body or [])
    quests = []
    for item in raw:
        try:
            quests.append(Quest.from_payload(item))
        except (QuestPilotError, KeyError, TypeError, ValueError) as e:
            log.debug("跳过任务 %s: %s", item.get("id") if isinstance(item, dict) else item, e)
    return quests


def select_eligible(
    quests: Iterable[Quest],
    desktop: bool,
    skip_apps: Iterable[str] = (),
    now: datetime | None = None,
) -> list[Quest]:
    """筛选可处理任务; 非桌面环境下剔除桌面专属任务并给出警告"""
    now = now or datetime.now(timezone.utc)
    skip = set(skip_apps)

    eligible = [q for q in quests if q.is_eligible(now) and not q.matches_app(skip)]
    if desktop:
        return eligible

    skipped = [q for q in eligible if q.is_desktop_only]
    if skipped:
        log.warning("⚠️ %d 个任务被跳过 (需要桌面客户端):", len(skipped))
        for q in skipped:
            log.warning("   - %s (%s) [%s]", q.name, q.application_name, q.task_type.value)
    return [q for q in eligible if not q.is_desktop_only]
