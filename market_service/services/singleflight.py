"""
单飞 (single-flight) 合并
同一键的并发未命中只触发一次上游拉取，其余调用方等待同一个结果。
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict

logger = logging.getLogger(__name__)


class SingleFlight:
    """以键为粒度合并并发中的协程调用，调用结束（成功或失败）后立即释放"""

    def __init__(self):
        self._inflight: Dict[str, asyncio.Future] = {}

    def __len__(self) -> int:
        return len(self._inflight)

    async def do(self, key: str, fn: Callable[[], Awaitable[Any]]) -> Any:
        while True:
            pending = self._inflight.get(key)
            if pending is None:
                break
            logger.debug(f"合并并发请求: {key}")
            # 等待方自身被取消时 wait 会抛出 CancelledError；发起方被取消则不会
            await asyncio.wait({pending})
            if not pending.cancelled():
                return pending.result()
            logger.debug(f"发起方已取消，重新执行: {key}")

        future = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        try:
            result = await fn()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as exc:
            future.set_exception(exc)
            # 没有其他等待者时避免 "exception was never retrieved" 警告
            future.exception()
            raise
        else:
            future.set_result(result)
            return result
        finally:
            self._inflight.pop(key, None)
