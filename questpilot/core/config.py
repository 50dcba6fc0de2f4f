"""
配置管理模块
加载 YAML 配置，支持默认配置 + 本地覆盖
"""

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, model_validator


class SystemConfig(BaseModel):
    name: str = "Quest Autopilot"
    version: str = "0.1.0"


class FeaturesConfig(BaseModel):
    notifications: bool = True
    stealth_mode: bool = True
    auto_save: bool = True


class StealthConfig(BaseModel):
    min_speed: int = 5               # 每步推进秒数下限
    max_speed: int = 9               # 每步推进秒数上限
    random_pause_chance: float = Field(default=0.1, ge=0.0, le=1.0)
    pause_min_ms: int = 3000
    pause_max_ms: int = 8000

    @model_validator(mode="after")
    def _check_bounds(self) -> "StealthConfig":
        if self.min_speed > self.max_speed:
            raise ValueError("stealth.min_speed 不能大于 max_speed")
        if self.pause_min_ms > self.pause_max_ms:
            raise ValueError("stealth.pause_min_ms 不能大于 pause_max_ms")
        return self


class RetryConfig(BaseModel):
    max_attempts: int = Field(default=3, ge=1)
    base_delay_ms: int = 2000
    rate_limit_base_ms: int = 1000
    rate_limit_cap_ms: int = 30000


class FiltersConfig(BaseModel):
    priority_apps: list[str] = Field(default_factory=list)
    skip_apps: list[str] = Field(default_factory=list)


class AutoCheckConfig(BaseModel):
    enabled: bool = True
    interval: int = 30               # 秒


class SchedulerConfig(BaseModel):
    cooldown_min: float = 2.0        # 任务间冷却 (秒)
    cooldown_max: float = 2.0
    failure_cooldown: float = 2.0
    max_quests_per_run: int | None = None
    max_session_minutes: int | None = None
    spoof_timeout_minutes: int = 30
    heartbeat_interval: int = 20     # 活动任务心跳间隔 (秒)


class TransportConfig(BaseModel):
    api_base: str = "https://discord.com/api/v9"
    token: str = ""
    timeout: float = 10.0
    user_agent: str = ""


class EnvironmentConfig(BaseModel):
    desktop: bool = False
    private_channel_ids: list[str] = Field(default_factory=list)
    guild_voice_channel_ids: list[str] = Field(default_factory=list)


class NotificationConfig(BaseModel):
    enabled: bool = True
    desktop: bool = True


class WebConfig(BaseModel):
    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = 8888


class StorageConfig(BaseModel):
    database: str = "data/questpilot.db"


class LoggingConfig(BaseModel):
    level: str = "INFO"
    debug: bool = False
    file: str | None = None


class Config(BaseModel):
    system: SystemConfig = Field(default_factory=SystemConfig)
    features: FeaturesConfig = Field(default_factory=FeaturesConfig)
    stealth: StealthConfig = Field(default_factory=StealthConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    filters: FiltersConfig = Field(default_factory=FiltersConfig)
    auto_check: AutoCheckConfig = Field(default_factory=AutoCheckConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    transport: TransportConfig = Field(default_factory=TransportConfig)
    environment: EnvironmentConfig = Field(default_factory=EnvironmentConfig)
    notification: NotificationConfig = Field(default_factory=NotificationConfig)
    web: WebConfig = Field(default_factory=WebConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def load_config(config_dir: str | Path = "config") -> Config:
    """加载配置文件，优先级: local.yaml > default.yaml"""
    config_dir = Path(config_dir)
    data: dict[str, Any] = {}

    # 加载默认配置
    default_path = config_dir / "default.yaml"
    if default_path.exists():
        with open(default_path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

    # 加载本地覆盖
    local_path = config_dir / "local.yaml"
    if local_path.exists():
        with open(local_path, encoding="utf-8") as f:
            local_data = yaml.safe_load(f) or {}
            data = _deep_merge(data, local_data)

    # 从环境变量读取 token
    if not data.get("transport", {}).get("token"):
        env_token = os.environ.get("QUESTPILOT_TOKEN", "")
        if env_token:
            data.setdefault("transport", {})["token"] = env_token

    return Config(**data)


def _deep_merge(base: dict, override: dict) -> dict:
    """深度合并两个字典"""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result
