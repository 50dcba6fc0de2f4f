"""
日志配置
所有模块共用 questpilot 命名空间下的 logger
"""

import logging
from pathlib import Path

from .config import LoggingConfig

__all__ = ["logger", "get_logger", "setup_logging"]

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

logger = logging.getLogger("questpilot")


def get_logger(name: str) -> logging.Logger:
    """获取子 logger，例如 questpilot.scheduler"""
    return logger.getChild(name)


def setup_logging(config: LoggingConfig) -> None:
    """安装控制台 (和可选的文件) 输出"""
    level = logging.DEBUG if config.debug else getattr(logging, config.level.upper(), logging.INFO)
    logger.setLevel(level)

    if logger.handlers:
        return

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    logger.addHandler(console)

    if config.file:
        Path(config.file).parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(config.file, encoding="utf-8")
        fh.setFormatter(formatter)
        logger.addHandler(fh)
