"""
Layer 1 – 数据获取层
从上游行情提供商（Yahoo Finance，通过 yfinance）拉取原始数据，
向上层提供历史 K 线、实时报价、公司资料、代码搜索四类接口。

上游调用失败抛出 ProviderError，上游明确无数据抛出 DataNotFoundError，
两者由请求处理层区分对待，缓存层不会掩盖其中任何一种。
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from market_service.config import settings

logger = logging.getLogger(__name__)


# ── 周期 / 区间映射 ───────────────────────────────────────
_VALID_INTERVALS = {
    "1m", "2m", "5m", "15m", "30m", "60m", "90m",
    "1h", "1d", "5d", "1wk", "1mo", "3mo",
}
_DEFAULT_INTERVAL = "1d"

_RANGE_DAYS = {
    "1d": 1,
    "5d": 5,
    "1mo": 30,
    "3mo": 90,
    "6mo": 180,
    "1y": 365,
    "2y": 730,
}
_DEFAULT_RANGE_DAYS = 30


class ProviderError(RuntimeError):
    """上游数据源调用失败（网络异常、限流、接口错误等）"""


class DataNotFoundError(LookupError):
    """上游未返回该代码的任何数据"""


def resolve_interval(period: str) -> str:
    """前端周期映射为 Yahoo Finance 支持的 K 线间隔，不支持的回退为 1d"""
    return period if period in _VALID_INTERVALS else _DEFAULT_INTERVAL


def resolve_start(range_: str, now: Optional[datetime] = None) -> datetime:
    """根据时间区间计算起始时间，不支持的区间回退为 30 天"""
    now = now or datetime.now(tz=timezone.utc)
    return now - timedelta(days=_RANGE_DAYS.get(range_, _DEFAULT_RANGE_DAYS))


class AcquisitionLayer:
    """数据获取层：封装 yfinance，提供统一的数据拉取接口（同步调用）"""

    def __init__(self, search_max_results: Optional[int] = None):
        self._search_max_results = search_max_results or settings.SEARCH_MAX_RESULTS

    # ── 历史 K 线 ─────────────────────────────────────────

    def get_history(self, symbol: str, period: str, range_: str) -> List[Dict[str, Any]]:
        """获取历史 K 线原始记录，t 为 Unix 秒"""
        interval = resolve_interval(period)
        end = datetime.now(tz=timezone.utc)
        start = resolve_start(range_, end)
        try:
            import yfinance as yf
            df = yf.Ticker(symbol).history(
                start=start, end=end, interval=interval, auto_adjust=False
            )
        except Exception as exc:
            logger.warning(f"历史数据获取失败（{symbol} {interval}）: {exc}")
            raise ProviderError(f"历史数据获取失败: {exc}") from exc

        if df is None or df.empty:
            raise DataNotFoundError(f"未找到 {symbol} 的历史数据")

        records = []
        for ts, row in df.iterrows():
            records.append({
                "t": int(ts.timestamp()),
                "open": row.get("Open"),
                "high": row.get("High"),
                "low": row.get("Low"),
                "close": row.get("Close"),
                "volume": row.get("Volume"),
            })
        logger.info(f"历史数据获取成功: {symbol} {interval} {range_}，共 {len(records)} 条")
        return records

    # ── 报价 / 公司资料 ───────────────────────────────────

    def _ticker_info(self, symbol: str) -> Dict[str, Any]:
        try:
            import yfinance as yf
            info = yf.Ticker(symbol).info
        except Exception as exc:
            logger.warning(f"行情信息获取失败（{symbol}）: {exc}")
            raise ProviderError(f"行情信息获取失败: {exc}") from exc
        return info or {}

    def get_quote(self, symbol: str) -> Dict[str, Any]:
        """获取报价快照（原始 info 字典）"""
        info = self._ticker_info(symbol)
        if info.get("regularMarketPrice") is None and info.get("currentPrice") is None:
            raise DataNotFoundError(f"未找到 {symbol} 的报价")
        return info

    def get_profile(self, symbol: str) -> Dict[str, Any]:
        """获取公司资料（原始 info 字典）"""
        info = self._ticker_info(symbol)
        if not (info.get("shortName") or info.get("longName")):
            raise DataNotFoundError(f"未找到 {symbol} 的公司资料")
        return info

    # ── 代码搜索 ──────────────────────────────────────────

    def search(self, query: str) -> List[Dict[str, Any]]:
        """按关键词搜索代码（原始 quotes 列表）"""
        try:
            import yfinance as yf
            result = yf.Search(
                query, max_results=self._search_max_results, news_count=0
            )
            return list(result.quotes or [])
        except Exception as exc:
            logger.warning(f"代码搜索失败（{query!r}）: {exc}")
            raise ProviderError(f"代码搜索失败: {exc}") from exc
