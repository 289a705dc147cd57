"""
测试公共设施
  - 内存版异步 Redis 替身（可控时钟，用于模拟 TTL 过期与断线）
  - 示例 K 线生成
"""

import fnmatch
import math
import os
import sys

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

# 确保仓库根目录（market_service/ 的父目录）在 sys.path
ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)


class FakeRedis:
    """只实现缓存层用到的命令；fail=True 时所有命令抛出连接错误"""

    def __init__(self):
        self._data = {}
        self.now = 0.0
        self.fail = False
        self.closed = False
        self.pings = 0

    def _check(self):
        if self.fail:
            raise RedisConnectionError("Connection refused")

    def _entry(self, key):
        entry = self._data.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and expires_at <= self.now:
            del self._data[key]
            return None
        return entry

    async def ping(self):
        self.pings += 1
        self._check()
        return True

    async def get(self, key):
        self._check()
        entry = self._entry(key)
        return entry[0] if entry else None

    async def set(self, key, value):
        self._check()
        self._data[key] = (value, None)
        return True

    async def setex(self, key, ttl, value):
        self._check()
        self._data[key] = (value, self.now + ttl)
        return True

    async def delete(self, *keys):
        self._check()
        return sum(1 for k in keys if self._entry(k) and self._data.pop(k))

    async def exists(self, *keys):
        self._check()
        return sum(1 for k in keys if self._entry(k))

    async def flushall(self):
        self._check()
        self._data.clear()
        return True

    async def keys(self, pattern="*"):
        self._check()
        return [k for k in list(self._data) if self._entry(k) and fnmatch.fnmatch(k, pattern)]

    async def ttl(self, key):
        self._check()
        entry = self._entry(key)
        if entry is None:
            return -2
        if entry[1] is None:
            return -1
        return int(math.ceil(entry[1] - self.now))

    async def type(self, key):
        self._check()
        return "string" if self._entry(key) else "none"

    async def aclose(self):
        self.closed = True


def make_connection(fake, **kwargs):
    from market_service.db import RedisConnection
    kwargs.setdefault("backoff_step_ms", 0)
    kwargs.setdefault("display_host", "fake:6379")
    return RedisConnection("redis://fake:6379/0", client_factory=lambda: fake, **kwargs)


def sample_records(n: int = 30, start_ts: int = 1_704_067_200) -> list:
    """生成确定性的 K 线原始记录（日线）"""
    records = []
    close = 100.0
    for i in range(n):
        close = round(close * (1.01 if i % 3 else 0.985), 2)
        records.append({
            "t": start_ts + i * 86400,
            "open": round(close * 0.99, 2),
            "high": round(close * 1.01, 2),
            "low": round(close * 0.98, 2),
            "close": close,
            "volume": 1_000_000 + i * 1000,
        })
    return records


@pytest.fixture
def fake_redis():
    return FakeRedis()
