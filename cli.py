#!/usr/bin/env python3
"""
Quest Autopilot - 命令行工具
用法:
  python3 cli.py status      # 查看调度状态
  python3 cli.py queue       # 查看待处理任务
  python3 cli.py pause       # 暂停 / 恢复
  python3 cli.py stats       # 查看统计
  python3 cli.py reset       # 清空统计
"""

import sys
import httpx

API = "http://127.0.0.1:8888"


def fetch(path: str) -> dict:
    try:
        r = httpx.get(f"{API}{path}", timeout=10)
        return r.json()
    except httpx.HTTPError as e:
        print(f"❌ 无法连接系统: {e}")
        print("   请确保系统正在运行: python3 -m questpilot.core")
        sys.exit(1)


def post(path: str, data=None) -> dict:
    try:
        r = httpx.post(f"{API}{path}", json=data, timeout=10)
        return r.json()
    except httpx.HTTPError as e:
        print(f"❌ 请求失败: {e}")
        sys.exit(1)


def progress_bar(percent: int, length: int = 25) -> str:
    filled = int(percent / 100 * length)
    return "█" * filled + "░" * (length - filled)


def cmd_status():
    d = fetch("/api/status")
    if "error" in d:
        print(f"  ❌ {d['error']}")
        return
    s = d["system"]
    sched = d["scheduler"]

    print()
    print(f"  🚀 {s['name']} v{s['version']}")
    print(f"  状态: {'🟢 运行中' if s['running'] else '🔴 停止'}  调度: {sched['state']}")
    print(f"  环境: {'桌面客户端' if s['desktop'] else '非桌面'}")
    print(f"  运行时间: {s.get('uptime') or 'N/A'}")
    print(f"  {d['status']}")
    print()

    p = d.get("progress")
    if p:
        print(f"  🎯 {p['quest']}")
        print(f"  [{progress_bar(p['percent'])}] {p['progress']}/{p['total']}s ({p['percent']}%)")
        print(f"  ⏱️ 剩余约 {p['remaining_minutes']} 分钟  队列: {p['queue_depth']}")
    elif sched["paused"]:
        print("  ⏸️ 已暂停")
    else:
        print("  (当前没有运行中的任务)")
    print()


def cmd_queue():
    d = fetch("/api/queue")
    if "error" in d:
        print(f"  ❌ {d['error']}")
        return
    quests = d["quests"]
    if not quests:
        print("  队列为空。")
        return

    est = d["estimate"]
    print()
    print(f"  📋 待处理任务 ({len(quests)})  预计 {est['hours']}h {est['minutes']}m")
    print()
    for i, q in enumerate(quests, 1):
        print(f"  {i}. {q['name']} [{q['task_type']}]")
        print(f"      {q['application_name']} | {q['progress']}/{q['target']}s | ID: {q['id']}")
    print()


def cmd_pause():
    r = post("/api/pause")
    if "error" in r:
        print(f"  ❌ {r['error']}")
    elif r.get("paused"):
        print("  ⏸️ 已暂停")
    else:
        print("  ▶️ 已恢复")


def cmd_stats():
    d = fetch("/api/stats")
    if "error" in d:
        print(f"  ❌ {d['error']}")
        return
    print()
    print(d["report"])
    if d["history"]:
        print()
        print("  最近记录:")
        for h in d["history"][-10:]:
            icon = "✅" if h["status"] == "completed" else "❌"
            print(f"    {icon} {h['name']}")
    print()


def cmd_reset():
    r = post("/api/stats/reset")
    if r.get("success"):
        print("  🗑️ 统计已清空")
    else:
        print(f"  ❌ {r.get('error', '重置失败')}")


COMMANDS = {
    "status": cmd_status,
    "queue": cmd_queue,
    "pause": cmd_pause,
    "stats": cmd_stats,
    "reset": cmd_reset,
}


def main():
    if len(sys.argv) < 2:
        print(__doc__)
        return

    cmd = COMMANDS.get(sys.argv[1].lower())
    if cmd:
        cmd()
    else:
        print(__doc__)


if __name__ == "__main__":
    main()
