"""
伪装节奏
随机化每一步推进的秒数，并偶尔插入一段停顿
"""

import random

from ..core.config import StealthConfig
from ..storage.models import StealthProfile

# 关闭伪装模式时的固定步长
DEFAULT_STEP_SEC = 7


def next_step_delay(profile: StealthProfile, rng: random.Random | None = None) -> int:
    """在 [min_speed_sec, max_speed_sec] 内均匀取一个整数秒"""
    rng = rng or random
    return rng.randint(profile.min_speed_sec, profile.max_speed_sec)


def maybe_pause(profile: StealthProfile, rng: random.Random | None = None) -> int | None:
    """以 random_pause_chance 的概率返回一段停顿 (毫秒)，否则 None"""
    rng = rng or random
    if rng.random() < profile.random_pause_chance:
        return rng.randint(profile.pause_min_ms, profile.pause_max_ms)
    return None


def profile_from_config(config: StealthConfig) -> StealthProfile:
    return StealthProfile(
        min_speed_sec=config.min_speed,
        max_speed_sec=config.max_speed,
        random_pause_chance=config.random_pause_chance,
        pause_min_ms=config.pause_min_ms,
        pause_max_ms=config.pause_max_ms,
    )


class StealthTimer:
    """绑定一份配置和一个可替换的随机源"""

    def __init__(
        self,
        profile: StealthProfile,
        enabled: bool = True,
        rng: random.Random | None = None,
    ):
        self.profile = profile
        self.enabled = enabled
        self.rng = rng or random.Random()

    def next_step_delay(self) -> int:
        if not self.enabled:
            return DEFAULT_STEP_SEC
        return next_step_delay(self.profile, self.rng)

    def maybe_pause(self) -> int | None:
        if not self.enabled:
            return None
        return maybe_pause(self.profile, self.rng)

    def jitter(self) -> float:
        """亚秒级抖动 [0, 1)"""
        return self.rng.random()
