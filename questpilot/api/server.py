"""
FastAPI 控制接口
查看运行状态、队列、统计，切换暂停
"""

from datetime import datetime

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from ..system.queue import estimate_time_remaining

app = FastAPI(title="Quest Autopilot", version="0.1.0")

# 全局引用 (在 system.py 启动时注入)
_system_ref = None


def set_system_ref(system):
    global _system_ref
    _system_ref = system


def _not_ready() -> JSONResponse:
    return JSONResponse({"error": "系统未初始化"}, status_code=503)


@app.get("/api/status")
async def get_status():
    """获取调度器状态和当前进度"""
    if not _system_ref:
        return _not_ready()

    notifier = _system_ref.notification_engine
    return {
        "system": {
            "name": _system_ref.config.system.name,
            "version": _system_ref.config.system.version,
            "running": _system_ref.running,
            "desktop": _system_ref.environment.supports_spoofing,
            "uptime": str(datetime.now() - _system_ref.start_time) if _system_ref.start_time else None,
        },
        "scheduler": _system_ref.scheduler.snapshot(),
        "status": notifier.status,
        "progress": notifier.progress,
    }


@app.get("/api/queue")
async def get_queue():
    """按处理顺序列出待处理任务"""
    if not _system_ref:
        return _not_ready()

    quests = _system_ref.queue.snapshot()
    estimate = estimate_time_remaining(quests)
    return {
        "quests": [q.to_dict() for q in quests],
        "estimate": {"hours": estimate.hours, "minutes": estimate.minutes},
    }


@app.post("/api/pause")
async def toggle_pause():
    """暂停 / 恢复"""
    if not _system_ref:
        return _not_ready()

    paused = await _system_ref.scheduler.toggle_pause()
    return {"paused": paused}


@app.get("/api/stats")
async def get_stats():
    """获取任务统计"""
    if not _system_ref:
        return _not_ready()

    stats = _system_ref.stats
    return {
        **stats.to_dict(),
        "history": [r.to_dict() for r in stats.history[-20:]],
        "report": stats.get_report(),
    }


@app.post("/api/stats/reset")
async def reset_stats():
    """清空统计"""
    if not _system_ref:
        return _not_ready()

    await _system_ref.stats.reset()
    return {"success": True}


@app.get("/api/notifications")
async def get_notifications():
    """获取待推送通知"""
    if not _system_ref:
        return _not_ready()

    return {"notifications": _system_ref.notification_engine.pop_pending()}
