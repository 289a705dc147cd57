"""
Layer 2 – 缓存层
Redis 读写 + 确定性键派生 + 按数据类别的 TTL 策略

热路径操作（get / set / delete / exists / clear）从不抛出异常：
Redis 不可用时一律降级为"未命中 / 写入失败"，服务仍可直连数据源工作。
管理类操作（list_keys / inspect）在断线时显式抛出 CacheUnavailableError。
"""

import hashlib
import json
import logging
from enum import Enum
from typing import Any, Dict, List, Optional

from market_service.config import settings
from market_service.db import RedisConnection

logger = logging.getLogger(__name__)

_MAX_KEY_LENGTH = 200


class CacheUnavailableError(RuntimeError):
    """缓存后端不可用（仅管理类操作抛出）"""


class CacheCategory(str, Enum):
    """可缓存的数据类别，值即键前缀。搜索结果始终实时获取，不在此列"""

    HISTORY = "stock"
    QUOTE = "quote"
    PROFILE = "company"

    @property
    def ttl(self) -> int:
        return {
            CacheCategory.HISTORY: settings.HISTORY_CACHE_TTL,
            CacheCategory.QUOTE: settings.QUOTE_CACHE_TTL,
            CacheCategory.PROFILE: settings.PROFILE_CACHE_TTL,
        }[self]


# 各类别键的参数个数：历史 K 线 (symbol, period, range)，其余 (symbol)
_KEY_ARITY = {
    CacheCategory.HISTORY: 3,
    CacheCategory.QUOTE: 1,
    CacheCategory.PROFILE: 1,
}


# ── 键派生 ────────────────────────────────────────────────

def _make_key(namespace: str, *parts: str) -> str:
    """生成规范化缓存键"""
    raw = ":".join([namespace] + list(parts))
    if len(raw) > _MAX_KEY_LENGTH:
        raw = namespace + ":" + hashlib.md5(raw.encode()).hexdigest()
    return raw


def key_for(category, *params: str) -> str:
    """
    由 (类别, 查询参数) 派生缓存键，纯函数

    第一个参数为股票代码，统一转为小写，其余参数原样保留：
        key_for("stock", "AAPL", "1d", "1mo")  → "stock:aapl:1d:1mo"
        key_for("quote", "AAPL")               → "quote:aapl"
    """
    try:
        category = CacheCategory(category)
    except ValueError:
        raise ValueError(f"不可缓存的数据类别: {category!r}") from None
    expected = _KEY_ARITY[category]
    if len(params) != expected:
        raise ValueError(
            f"{category.value} 缓存键需要 {expected} 个参数，实际为 {len(params)} 个"
        )
    symbol, *rest = params
    return _make_key(category.value, str(symbol).strip().lower(), *(str(p) for p in rest))


def history_key(symbol: str, period: str, range_: str) -> str:
    return key_for(CacheCategory.HISTORY, symbol, period, range_)


def quote_key(symbol: str) -> str:
    return key_for(CacheCategory.QUOTE, symbol)


def profile_key(symbol: str) -> str:
    return key_for(CacheCategory.PROFILE, symbol)


def _format_ttl(ttl: int) -> str:
    return "never" if ttl == -1 else f"{ttl}s"


class CacheLayer:
    """Redis 缓存层，连接由外部注入"""

    def __init__(self, connection: RedisConnection):
        self._conn = connection

    @property
    def is_connected(self) -> bool:
        return self._conn.is_connected

    def _client(self):
        client = self._conn.client
        if client is None:
            self._conn.ensure_reconnecting()
        return client

    # ── 热路径 ────────────────────────────────────────────

    async def get(self, key: str) -> Optional[Any]:
        client = self._client()
        if client is None:
            return None
        try:
            raw = await client.get(key)
        except Exception as exc:
            logger.warning(f"Redis 读取失败 {key}: {exc}")
            self._conn.report_error(exc)
            return None
        if raw is None:
            logger.debug(f"缓存未命中: {key}")
            return None
        try:
            value = json.loads(raw)
        except ValueError as exc:
            logger.warning(f"缓存值解析失败，视为未命中 {key}: {exc}")
            return None
        logger.debug(f"缓存命中: {key}")
        return value

    async def set(self, key: str, value: Any, ttl: int) -> bool:
        if ttl is None or ttl <= 0:
            logger.warning(f"无效的缓存 TTL {ttl!r}，跳过写入: {key}")
            return False
        client = self._client()
        if client is None:
            return False
        try:
            serialized = json.dumps(value, ensure_ascii=False, default=str)
        except (TypeError, ValueError) as exc:
            logger.warning(f"缓存值序列化失败 {key}: {exc}")
            return False
        try:
            await client.setex(key, ttl, serialized)
        except Exception as exc:
            logger.warning(f"Redis 写入失败 {key}: {exc}")
            self._conn.report_error(exc)
            return False
        logger.debug(f"缓存写入: {key} (TTL {ttl}s)")
        return True

    async def delete(self, key: str) -> bool:
        client = self._client()
        if client is None:
            return False
        try:
            return await client.delete(key) == 1
        except Exception as exc:
            logger.warning(f"Redis 删除失败 {key}: {exc}")
            self._conn.report_error(exc)
            return False

    async def exists(self, key: str) -> bool:
        client = self._client()
        if client is None:
            return False
        try:
            return await client.exists(key) == 1
        except Exception as exc:
            logger.warning(f"Redis EXISTS 失败 {key}: {exc}")
            self._conn.report_error(exc)
            return False

    async def clear(self) -> bool:
        client = self._client()
        if client is None:
            return False
        try:
            await client.flushall()
        except Exception as exc:
            logger.warning(f"Redis FLUSHALL 失败: {exc}")
            self._conn.report_error(exc)
            return False
        logger.info("🧹 缓存已清空")
        return True

    # ── 管理 / 调试 ───────────────────────────────────────

    def _admin_client(self):
        client = self._client()
        if client is None:
            raise CacheUnavailableError("Redis 未连接")
        return client

    async def list_keys(self, pattern: str = "*") -> List[Dict[str, Any]]:
        """列出所有缓存键及其剩余 TTL、类型、类别"""
        client = self._admin_client()
        try:
            keys = sorted(await client.keys(pattern))
            result = []
            for key in keys:
                ttl = await client.ttl(key)
                if ttl == -2:
                    # 枚举期间已过期
                    continue
                result.append({
                    "key": key,
                    "ttl": _format_ttl(ttl),
                    "type": await client.type(key),
                    "category": key.split(":")[0],
                })
        except Exception as exc:
            self._conn.report_error(exc)
            raise CacheUnavailableError(str(exc)) from exc
        return result

    async def inspect(self, key: str) -> Optional[Dict[str, Any]]:
        """查看单个键的原始值、TTL、类型和字节大小，不存在时返回 None"""
        client = self._admin_client()
        try:
            raw = await client.get(key)
            if raw is None:
                return None
            ttl = await client.ttl(key)
            key_type = await client.type(key)
        except Exception as exc:
            self._conn.report_error(exc)
            raise CacheUnavailableError(str(exc)) from exc
        try:
            value = json.loads(raw)
        except ValueError:
            value = raw
        return {
            "key": key,
            "value": value,
            "ttl": _format_ttl(ttl),
            "type": key_type,
            "size": len(raw.encode("utf-8")),
        }

    async def status(self) -> Dict[str, Any]:
        return {
            "connected": self._conn.is_connected,
            "state": self._conn.state.value,
            "reconnecting": self._conn.reconnecting,
        }
