"""
行情数据服务
整合数据获取、缓存、处理三层，对外提供统一的行情数据访问接口：
先按查询参数派生缓存键查缓存，未命中再拉取上游、标准化、按类别 TTL 写入缓存。
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from pydantic import ValidationError

from market_service.config import settings
from market_service.layers.acquisition import AcquisitionLayer, DataNotFoundError
from market_service.layers.cache import (
    CacheCategory,
    CacheLayer,
    history_key,
    profile_key,
    quote_key,
)
from market_service.layers.processing import ProcessingLayer, now_iso
from market_service.models.market import OHLCVSeries
from market_service.services.singleflight import SingleFlight

logger = logging.getLogger(__name__)


class MarketService:
    """行情数据业务服务（缓存由应用生命周期注入）"""

    def __init__(
        self,
        cache: CacheLayer,
        acquisition: Optional[AcquisitionLayer] = None,
        processing: Optional[ProcessingLayer] = None,
    ):
        self._cache = cache
        self._acq = acquisition or AcquisitionLayer()
        self._proc = processing or ProcessingLayer()
        self._flight = SingleFlight()

    async def _read_through(
        self,
        key: str,
        category: CacheCategory,
        fetch: Callable[[], Awaitable[Dict[str, Any]]],
        force_refresh: bool = False,
    ) -> Tuple[Dict[str, Any], bool]:
        """返回 (数据, 是否来自缓存)"""
        if not force_refresh:
            cached = await self._cache.get(key)
            if isinstance(cached, dict):
                logger.info(f"📦 缓存命中: {key}")
                return cached, True
            if cached is not None:
                logger.warning(
                    f"缓存值结构无效（{type(cached).__name__}），视为未命中: {key}"
                )

        logger.info(f"🌐 缓存未命中，拉取最新数据: {key}")

        async def load() -> Dict[str, Any]:
            value = await fetch()
            if await self._cache.set(key, value, category.ttl):
                logger.info(f"💾 已缓存: {key} (TTL {category.ttl}s)")
            return value

        return await self._flight.do(key, load), False

    # ── 历史 K 线 ─────────────────────────────────────────

    async def get_history(
        self,
        symbol: str,
        period: Optional[str] = None,
        range_: Optional[str] = None,
        force_refresh: bool = False,
    ) -> Dict[str, Any]:
        """
        获取历史 K 线（缓存 1 小时）

        Args:
            symbol: 股票代码
            period: K 线周期，如 1d / 1h / 5m
            range_: 时间区间，如 1mo / 6mo / 1y
            force_refresh: 是否跳过缓存直接拉取
        """
        period = period or settings.DEFAULT_PERIOD
        range_ = range_ or settings.DEFAULT_RANGE

        async def fetch() -> Dict[str, Any]:
            records = await asyncio.to_thread(self._acq.get_history, symbol, period, range_)
            series = self._proc.build_series(symbol, period, range_, records)
            if not series.bars:
                raise DataNotFoundError(f"未找到 {symbol} 的有效 K 线数据")
            return series.model_dump()

        doc, cached = await self._read_through(
            history_key(symbol, period, range_), CacheCategory.HISTORY, fetch, force_refresh
        )
        return {**doc, "cached": cached}

    async def _load_series(
        self,
        symbol: str,
        period: Optional[str],
        range_: Optional[str],
        force_refresh: bool = False,
    ) -> Tuple[OHLCVSeries, bool]:
        doc = await self.get_history(symbol, period, range_, force_refresh=force_refresh)
        try:
            return OHLCVSeries.model_validate(doc), doc["cached"]
        except ValidationError as exc:
            if not doc.get("cached"):
                raise
            # 缓存中的结构无法解析，按未命中处理
            logger.warning(f"缓存的 K 线结构无效，重新拉取 {symbol}: {exc}")
        doc = await self.get_history(symbol, period, range_, force_refresh=True)
        return OHLCVSeries.model_validate(doc), False

    async def get_series(
        self, symbol: str, period: Optional[str] = None, range_: Optional[str] = None
    ) -> OHLCVSeries:
        """获取 K 线序列模型"""
        series, _ = await self._load_series(symbol, period, range_)
        return series

    async def get_chart(
        self,
        symbol: str,
        period: Optional[str] = None,
        range_: Optional[str] = None,
        force_refresh: bool = False,
    ) -> Dict[str, Any]:
        """历史 K 线的图表结构 {chart: {t, o, h, l, c, v}, ...}"""
        series, cached = await self._load_series(symbol, period, range_, force_refresh)
        return {
            "symbol": series.symbol,
            "period": series.period,
            "range": series.range,
            "count": len(series.bars),
            "chart": self._proc.to_chart_payload(series),
            "fetchTime": series.fetchTime,
            "cached": cached,
        }

    # ── 报价 / 公司资料 ───────────────────────────────────

    async def get_quote(self, symbol: str, force_refresh: bool = False) -> Dict[str, Any]:
        """获取实时报价（缓存 1 分钟）"""
        async def fetch() -> Dict[str, Any]:
            info = await asyncio.to_thread(self._acq.get_quote, symbol)
            return self._proc.normalize_quote(info)

        doc, cached = await self._read_through(
            quote_key(symbol), CacheCategory.QUOTE, fetch, force_refresh
        )
        return {**doc, "cached": cached}

    async def get_profile(self, symbol: str, force_refresh: bool = False) -> Dict[str, Any]:
        """获取公司资料（缓存 24 小时）"""
        async def fetch() -> Dict[str, Any]:
            info = await asyncio.to_thread(self._acq.get_profile, symbol)
            return self._proc.normalize_profile(info)

        doc, cached = await self._read_through(
            profile_key(symbol), CacheCategory.PROFILE, fetch, force_refresh
        )
        return {**doc, "cached": cached}

    # ── 代码搜索 ──────────────────────────────────────────

    async def search(self, query: Optional[str]) -> Dict[str, Any]:
        """代码搜索，始终实时拉取，不经过缓存"""
        text = (query or "").strip()
        if not text:
            return {"query": query, "results": [], "fetchTime": now_iso(), "cached": False}

        logger.info(f"🔍 实时搜索: {text!r}")
        quotes = await asyncio.to_thread(self._acq.search, text)
        return {
            "query": query,
            "results": self._proc.normalize_search_results(quotes),
            "fetchTime": now_iso(),
            "cached": False,
        }
