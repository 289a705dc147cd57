"""
Redis 连接管理模块
以显式状态机管理异步 Redis 连接：

    DISCONNECTED ──connect──▶ CONNECTING ──ready──▶ CONNECTED
         ▲                        │                     │
         └────────error───────────┴───────error─────────┘
    CONNECTED / DISCONNECTED ──close──▶ DISCONNECTING ──end──▶ DISCONNECTED

连接失败不会抛给调用方，服务以无缓存的降级模式继续运行；
运行期出现连接错误时在后台自动重连。
"""

import asyncio
import logging
import time
from enum import Enum
from typing import Callable, Optional

from redis.asyncio import ConnectionPool, Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from market_service.config import MarketServiceSettings

logger = logging.getLogger(__name__)

# 视为"连接已断开"的异常类型，其余 Redis 错误（如 WRONGTYPE）不影响连接状态
_CONNECTION_ERRORS = (RedisConnectionError, RedisTimeoutError, OSError)


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"


def backoff_delay(attempt: int, step_ms: int = 100, cap_ms: int = 3000) -> float:
    """第 attempt 次失败后的等待秒数：min(attempt × step, cap)"""
    return min(attempt * step_ms, cap_ms) / 1000.0


class RedisConnection:
    """Redis 连接，由应用生命周期显式创建 (connect) 和关闭 (close)"""

    def __init__(
        self,
        url: str,
        *,
        enabled: bool = True,
        max_connections: int = 20,
        max_attempts: int = 10,
        backoff_step_ms: int = 100,
        backoff_cap_ms: int = 3000,
        max_retry_seconds: float = 3600,
        reconnect_interval: float = 30,
        display_host: str = "",
        client_factory: Optional[Callable[[], Redis]] = None,
    ):
        self._url = url
        self._enabled = enabled
        self._max_connections = max_connections
        self._max_attempts = max(1, max_attempts)
        self._backoff_step_ms = backoff_step_ms
        self._backoff_cap_ms = backoff_cap_ms
        self._max_retry_seconds = max_retry_seconds
        self._reconnect_interval = reconnect_interval
        self._display_host = display_host
        self._client_factory = client_factory

        self._client: Optional[Redis] = None
        self._pool: Optional[ConnectionPool] = None
        self._state = ConnectionState.DISCONNECTED
        self._closing = False
        self._last_attempt: Optional[float] = None
        self._reconnect_task: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(cls, cfg: MarketServiceSettings) -> "RedisConnection":
        return cls(
            cfg.REDIS_URL,
            enabled=cfg.REDIS_ENABLED,
            max_connections=cfg.REDIS_MAX_CONNECTIONS,
            max_attempts=cfg.REDIS_CONNECT_MAX_ATTEMPTS,
            backoff_step_ms=cfg.REDIS_BACKOFF_STEP_MS,
            backoff_cap_ms=cfg.REDIS_BACKOFF_CAP_MS,
            max_retry_seconds=cfg.REDIS_MAX_RETRY_SECONDS,
            reconnect_interval=cfg.REDIS_RECONNECT_INTERVAL,
            display_host=f"{cfg.REDIS_HOST}:{cfg.REDIS_PORT}",
        )

    # ── 状态查询 ──────────────────────────────────────────

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED and self._client is not None

    @property
    def client(self) -> Optional[Redis]:
        """获取 Redis 客户端（未连接时为 None）"""
        return self._client if self.is_connected else None

    @property
    def reconnecting(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    # ── 客户端事件 ────────────────────────────────────────

    def _on_connect(self) -> None:
        self._state = ConnectionState.CONNECTING

    def _on_ready(self) -> None:
        self._state = ConnectionState.CONNECTED
        logger.info(f"✅ Redis 连接成功: {self._display_host}")

    def _on_error(self, exc: BaseException) -> None:
        if self._state is ConnectionState.DISCONNECTING:
            return
        if self._state is ConnectionState.CONNECTED:
            logger.warning(f"⚠️ Redis 连接中断: {exc}")
        self._state = ConnectionState.DISCONNECTED

    def _on_end(self) -> None:
        self._state = ConnectionState.DISCONNECTED
        logger.info("Redis 连接已关闭")

    # ── 连接 / 重连 ───────────────────────────────────────

    def _create_client(self) -> Redis:
        if self._client_factory is not None:
            return self._client_factory()
        self._pool = ConnectionPool.from_url(
            self._url,
            max_connections=self._max_connections,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=10,
        )
        return Redis(connection_pool=self._pool)

    async def connect(self) -> bool:
        """建立 Redis 连接，返回是否成功（不抛出异常）"""
        if not self._enabled:
            logger.info("Redis 未启用，跳过初始化")
            return False
        if self.is_connected:
            return True
        self._closing = False
        ok = await self._connect_with_retry()
        if not ok:
            logger.warning("⚠️ Redis 不可用，缓存降级为直连数据源模式")
        return ok

    async def _connect_with_retry(self) -> bool:
        started = time.monotonic()
        attempt = 0
        while not self._closing:
            attempt += 1
            self._last_attempt = time.monotonic()
            self._on_connect()
            try:
                if self._client is None:
                    self._client = self._create_client()
                await self._client.ping()
            except Exception as exc:
                self._on_error(exc)
                elapsed = time.monotonic() - started
                if attempt >= self._max_attempts or elapsed >= self._max_retry_seconds:
                    logger.warning(f"⚠️ Redis 连接失败（已尝试 {attempt} 次）: {exc}")
                    return False
                delay = backoff_delay(attempt, self._backoff_step_ms, self._backoff_cap_ms)
                logger.debug(f"Redis 连接失败，{delay:.1f}s 后重试（第 {attempt} 次）: {exc}")
                await asyncio.sleep(delay)
                continue
            if self._closing:
                break
            self._on_ready()
            return True
        return False

    def report_error(self, exc: BaseException) -> None:
        """缓存操作失败时由调用方上报；连接类错误会触发后台重连"""
        if not isinstance(exc, _CONNECTION_ERRORS):
            return
        self._on_error(exc)
        self._schedule_reconnect()

    def ensure_reconnecting(self) -> None:
        """断线状态下的热路径钩子：超过冷却间隔后在后台尝试重连"""
        if not self._enabled or self._closing or self._state is not ConnectionState.DISCONNECTED:
            return
        if self._last_attempt is not None and (
            time.monotonic() - self._last_attempt < self._reconnect_interval
        ):
            return
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self._closing or not self._enabled or self.reconnecting:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._reconnect_task = loop.create_task(self._reconnect())

    async def _reconnect(self) -> None:
        logger.info("🔄 Redis 后台重连中...")
        if await self._connect_with_retry():
            logger.info("✅ Redis 后台重连成功")

    async def close(self) -> None:
        """关闭 Redis 连接并停止后台重连"""
        self._closing = True
        self._state = ConnectionState.DISCONNECTING
        task = self._reconnect_task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._reconnect_task = None
        if self._client is not None:
            try:
                await self._client.aclose()
            except Exception as exc:
                logger.debug(f"关闭 Redis 客户端失败: {exc}")
            self._client = None
        if self._pool is not None:
            await self._pool.disconnect()
            self._pool = None
        self._on_end()

    async def check_health(self) -> dict:
        """检查 Redis 连接健康状态"""
        if not self._enabled:
            return {"status": "disabled"}
        client = self.client
        if client is None:
            return {"status": self._state.value, "reconnecting": self.reconnecting}
        try:
            await client.ping()
            return {"status": "healthy", "host": self._display_host}
        except Exception as exc:
            self.report_error(exc)
            return {"status": "unhealthy", "error": str(exc)}
