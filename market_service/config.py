"""
行情数据服务配置模块
支持从环境变量读取配置，自动检测 Docker 容器环境并启用服务发现
"""

import os
from functools import lru_cache
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _is_docker() -> bool:
    """检测当前是否运行在 Docker 容器内"""
    return (
        os.path.exists("/.dockerenv")
        or os.environ.get("DOCKER_CONTAINER", "").lower() in ("1", "true", "yes")
    )


def _default_redis_host() -> str:
    """Docker 环境使用服务名 'redis'，本地使用 'localhost'"""
    return "redis" if _is_docker() else "localhost"


class MarketServiceSettings(BaseSettings):
    """行情数据服务配置"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── 基础配置 ──────────────────────────────────────────
    HOST: str = Field(default="0.0.0.0")
    PORT: int = Field(default=3001)
    DEBUG: bool = Field(default=False)
    ALLOWED_ORIGINS: List[str] = Field(
        default_factory=lambda: ["*"]
    )

    # ── Redis 配置（支持服务发现） ─────────────────────────
    REDIS_HOST: str = Field(default_factory=_default_redis_host)
    REDIS_PORT: int = Field(default=6379)
    REDIS_PASSWORD: str = Field(default="")
    REDIS_DB: int = Field(default=0)
    REDIS_ENABLED: bool = Field(default=True)
    REDIS_MAX_CONNECTIONS: int = Field(default=20)

    # ── Redis 重连策略 ────────────────────────────────────
    REDIS_CONNECT_MAX_ATTEMPTS: int = Field(default=10)
    REDIS_BACKOFF_STEP_MS: int = Field(default=100)     # 每次重试递增的等待时间
    REDIS_BACKOFF_CAP_MS: int = Field(default=3000)     # 单次等待上限
    REDIS_MAX_RETRY_SECONDS: int = Field(default=3600)  # 单轮重连总时长上限
    REDIS_RECONNECT_INTERVAL: int = Field(default=30)   # 断线后后台重连的冷却间隔（秒）

    @property
    def REDIS_URL(self) -> str:
        if self.REDIS_PASSWORD:
            return f"redis://:{self.REDIS_PASSWORD}@{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    # ── 缓存 TTL 策略（秒） ───────────────────────────────
    HISTORY_CACHE_TTL: int = Field(default=3600)    # 历史 K 线
    QUOTE_CACHE_TTL: int = Field(default=60)        # 实时报价
    PROFILE_CACHE_TTL: int = Field(default=86400)   # 公司资料

    # ── 数据源配置 ─────────────────────────────────────────
    DEFAULT_PERIOD: str = Field(default="1d")
    DEFAULT_RANGE: str = Field(default="1mo")
    SEARCH_MAX_RESULTS: int = Field(default=15)

    # ── 日志配置 ──────────────────────────────────────────
    LOG_LEVEL: str = Field(default="INFO")


@lru_cache
def get_settings() -> MarketServiceSettings:
    """获取全局配置（单例）"""
    return MarketServiceSettings()


settings = get_settings()
