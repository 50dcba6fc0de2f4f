"""
通知引擎
调度器的上报出口: 进度快照、状态信息、桌面通知
"""

import math
import platform
import subprocess
from collections import deque
from datetime import datetime
from typing import Protocol

from ..core.config import NotificationConfig
from ..core.events import Event, EventBus, EventType
from ..core.logger import get_logger

log = get_logger("notification")

# 控制接口未取走时最多缓存的通知数
MAX_PENDING = 100

WINDOWS_TOAST = (
    "[Windows.UI.Notifications.ToastNotificationManager, Windows.UI.Notifications, ContentType = WindowsRuntime] | Out-Null; "
    "$xml = [Windows.UI.Notifications.ToastNotificationManager]::GetTemplateContent("
    "[Windows.UI.Notifications.ToastTemplateType]::ToastText02); "
    "$texts = $xml.GetElementsByTagName('text'); "
    "$texts[0].AppendChild($xml.CreateTextNode('{title}')) | Out-Null; "
    "$texts[1].AppendChild($xml.CreateTextNode('{message}')) | Out-Null; "
    "[Windows.UI.Notifications.ToastNotificationManager]::CreateToastNotifier('Quest Autopilot')"
    ".Show([Windows.UI.Notifications.ToastNotification]::new($xml))"
)


class Reporter(Protocol):
    def on_progress(self, quest_name: str, progress: int, total: int, queue_depth: int) -> None: ...

    def on_status(self, message: str) -> None: ...

    async def on_completed(self, quest_name: str) -> None: ...

    async def on_failed(self, quest_name: str, error: str) -> None: ...


def _applescript_quote(text: str) -> str:
    return text.replace("\\", "\\\\").replace('"', '\\"')


def desktop_command(system: str, title: str, message: str) -> list[str] | None:
    """按平台生成桌面通知命令，不支持的平台返回 None"""
    if system == "Linux":
        return ["notify-send", title, message, "--urgency=normal"]
    if system == "Darwin":
        script = f'display notification "{_applescript_quote(message)}" with title "{_applescript_quote(title)}"'
        return ["osascript", "-e", script]
    if system == "Windows":
        script = WINDOWS_TOAST.format(title=title.replace("'", "''"), message=message.replace("'", "''"))
        return ["powershell", "-NoProfile", "-Command", script]
    return None


class NotificationEngine:
    """实现 Reporter，同时给控制接口提供当前进度和待取通知"""

    def __init__(self, config: NotificationConfig, event_bus: EventBus):
        self.config = config
        self.bus = event_bus
        self.platform = platform.system()
        self.status = "等待任务..."
        self.progress: dict | None = None
        self._pending: deque[dict] = deque(maxlen=MAX_PENDING)

        self.bus.on(EventType.QUEUE_DRAINED, self._on_queue_drained)

    # ── Reporter ──────────────────────────────────────

    def on_progress(self, quest_name: str, progress: int, total: int, queue_depth: int) -> None:
        percent = math.floor(progress / total * 100) if total else 100
        self.progress = {
            "quest": quest_name,
            "progress": progress,
            "total": total,
            "percent": percent,
            "remaining_minutes": math.ceil((total - progress) / 60),
            "queue_depth": queue_depth,
        }
        log.debug("%s: %d/%ds (%d%%) 队列: %d", quest_name, progress, total, percent, queue_depth)

    def on_status(self, message: str) -> None:
        self.status = message
        log.info(message)

    async def on_completed(self, quest_name: str) -> None:
        await self.push("任务完成!", f"✅ {quest_name} 已完成", style="quest")

    async def on_failed(self, quest_name: str, error: str) -> None:
        await self.push("任务失败", f"❌ {quest_name}\n{error}", style="warning")

    # ── 推送 ──────────────────────────────────────────

    async def push(self, title: str, message: str, style: str = "info") -> None:
        if not self.config.enabled:
            return

        notification = {
            "title": title,
            "message": message,
            "style": style,
            "timestamp": datetime.now().isoformat(),
        }
        self._pending.append(notification)
        log.info("[%s] %s", title, message.replace("\n", " "))

        if self.config.desktop:
            self._notify_desktop(title, message)

        await self.bus.emit_simple(EventType.NOTIFICATION_PUSH, notification=notification)

    def pop_pending(self) -> list[dict]:
        """取走所有待推送通知"""
        pending = list(self._pending)
        self._pending.clear()
        return pending

    async def _on_queue_drained(self, event: Event) -> None:
        self.progress = None
        await self.push("全部完成!", "所有任务都已处理完毕")

    def _notify_desktop(self, title: str, message: str) -> None:
        command = desktop_command(self.platform, title, message)
        if command is None:
            return
        try:
            subprocess.Popen(command, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
        except OSError as e:
            log.warning("桌面通知失败: %s", e)
