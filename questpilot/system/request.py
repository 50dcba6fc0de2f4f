"""
弹性请求
普通失败: 有限次重试，指数退避
限流 (429): 不计入重试次数，退避上限 30 秒，一直重试直到成功或出现非限流错误
"""

import asyncio
from typing import Awaitable, Callable, TypeVar

from ..core.config import RetryConfig
from ..core.errors import TransientRequestFailure, is_rate_limited
from ..core.logger import get_logger
from ..storage.models import RateLimitState

log = get_logger("request")

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


class ResilientRequest:
    """包装单次异步网络操作"""

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 2.0,
        rate_limit_base: float = 1.0,
        rate_limit_cap: float = 30.0,
        sleep: Sleep = asyncio.sleep,
    ):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.rate_limit_base = rate_limit_base
        self.rate_limit_cap = rate_limit_cap
        self.rate_limit = RateLimitState()
        self._sleep = sleep

    @classmethod
    def from_config(cls, config: RetryConfig, sleep: Sleep = asyncio.sleep) -> "ResilientRequest":
        return cls(
            max_attempts=config.max_attempts,
            base_delay=config.base_delay_ms / 1000,
            rate_limit_base=config.rate_limit_base_ms / 1000,
            rate_limit_cap=config.rate_limit_cap_ms / 1000,
            sleep=sleep,
        )

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """执行操作，成功时清零限流计数"""
        attempt = 0
        while True:
            try:
                result = await operation()
            except Exception as e:
                if is_rate_limited(e):
                    self.rate_limit.hit()
                    delay = self.rate_limit.delay(self.rate_limit_base, self.rate_limit_cap)
                    log.warning("⚠️ 触发限流! 等待 %.1fs 后重试 (连续 %d 次)", delay, self.rate_limit.hits)
                    await self._sleep(delay)
                    continue

                attempt += 1
                if attempt >= self.max_attempts:
                    raise TransientRequestFailure(
                        f"请求失败 ({attempt}/{self.max_attempts}): {e}",
                        attempts=attempt,
                    ) from e

                delay = self.base_delay * (2 ** (attempt - 1))
                log.warning("第 %d/%d 次尝试失败，等待 %.1fs... (%s)", attempt, self.max_attempts, delay, e)
                await self._sleep(delay)
                continue

            self.rate_limit.reset()
            return result
