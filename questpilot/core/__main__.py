"""
Quest Autopilot - 模块入口
python -m questpilot.core
"""
import asyncio
from .system import main

if __name__ == "__main__":
    asyncio.run(main())
